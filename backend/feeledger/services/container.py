# feeledger/services/container.py
#
# Builds the service graph once per process. main.py stores the
# result on app.state; tests build one around an InMemoryFeeDB
# and fake gateway / notifier.

from dataclasses import dataclass
from typing import Optional

from feeledger.core.database import FeeDB, build_db
from feeledger.services.activity_service import ActivityLog
from feeledger.services.ledger_service import LedgerService
from feeledger.services.notification_service import N8nNotifier
from feeledger.services.payment_service import PaymentRecorder
from feeledger.services.subscription_service import SubscriptionEngine
from feeledger.services.template_service import TemplateCatalog
from feeledger.services.upgrade_service import SemesterUpgradeCoordinator
from feeledger.utils.gateway import RazorpayGateway
from feeledger.utils.idempotency import IdempotencyStore


@dataclass
class Services:
    db: FeeDB
    gateway: RazorpayGateway
    notifier: N8nNotifier
    idempotency: IdempotencyStore
    activity: ActivityLog
    catalog: TemplateCatalog
    ledgers: LedgerService
    payments: PaymentRecorder
    subscriptions: SubscriptionEngine
    upgrades: SemesterUpgradeCoordinator


def build_services(
    db: Optional[FeeDB] = None,
    gateway: Optional[RazorpayGateway] = None,
    notifier: Optional[N8nNotifier] = None,
    idempotency: Optional[IdempotencyStore] = None,
) -> Services:
    db = db or build_db()
    gateway = gateway or RazorpayGateway()
    notifier = notifier or N8nNotifier()
    idempotency = idempotency or IdempotencyStore()

    activity = ActivityLog(db)
    catalog = TemplateCatalog(db)
    ledgers = LedgerService(db, catalog, activity, notifier)
    payments = PaymentRecorder(db, gateway, activity, notifier, idempotency)
    subscriptions = SubscriptionEngine(db, gateway, payments, activity, notifier, idempotency)
    upgrades = SemesterUpgradeCoordinator(db, catalog, ledgers, activity, notifier)

    return Services(
        db=db, gateway=gateway, notifier=notifier, idempotency=idempotency,
        activity=activity, catalog=catalog, ledgers=ledgers, payments=payments,
        subscriptions=subscriptions, upgrades=upgrades,
    )
