# ============================================================
# feeledger/services/subscription_service.py
#
# SubscriptionEngine: installment (EMI) plans against a ledger.
#
# Lifecycle (driven by Razorpay webhooks):
#
#   created → authenticated → active → completed
#                               │  ├──→ halted  ──→ active
#                               │  ├──→ paused  ──→ active
#                               └──┴──→ cancelled
#   cancelled / completed / expired are terminal.
#
# payment.captured, order.paid and payment.failed without a
# subscription id belong to ordinary checkouts and are handed to
# PaymentRecorder.
#
# Webhooks are redelivered and arrive out of order, so:
#   - an illegal status move is logged and ignored, never an error
#   - a charge is posted at most once per gateway payment id:
#       1. claim "charge:<payment id>" in the idempotency store
#       2. durable check: a Payment with that gateway_payment_id
#       3. post through PaymentRecorder (unique index is the last guard)
#     A claim is released again if processing fails, so the
#     gateway's redelivery gets a clean second attempt.
#
# Scheduling is computed, never waited on: an external scheduler
# polls due_for_charge() / due_for_retry().
# ============================================================

from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple
import logging

from pydantic import ValidationError as PydanticValidationError

from feeledger.core.config import settings
from feeledger.core.database import FeeDB, LEDGERS, STUDENTS, SUBSCRIPTIONS
from feeledger.core.errors import (
    ConflictError, HaltedSubscriptionError, NotFoundError, SignatureInvalidError,
    ValidationError,
)
from feeledger.core.unit_of_work import mutate_with_retry
from feeledger.schemas.common import ZERO, money
from feeledger.schemas.ledger import StudentFeeLedger
from feeledger.schemas.notifications import NotificationType
from feeledger.schemas.payments import GatewayRefs, Payment, PaymentMethod, PaymentMode, PaymentSource
from feeledger.schemas.subscriptions import (
    ALLOWED_TRANSITIONS, TERMINAL_STATUSES, CustomerDetails, FailedAttempt, InstallmentRecord,
    Subscription, SubscriptionCreate, SubscriptionStats, SubscriptionStatus, WebhookEventRecord,
    WebhookEventStatus, WebhookOutcome, WebhookPayload,
)
from feeledger.services.activity_service import ActivityLog
from feeledger.services.notification_service import N8nNotifier
from feeledger.services.payment_service import SYSTEM_ACTOR, PaymentRecorder
from feeledger.utils.dates import add_periods, ensure_aware, utcnow
from feeledger.utils.gateway import RazorpayGateway, from_paise
from feeledger.utils.idempotency import IdempotencyStore

logger = logging.getLogger(__name__)

# subscription.<name> → status it asks for
STATUS_EVENTS = {
    "authenticated": SubscriptionStatus.authenticated,
    "activated": SubscriptionStatus.active,
    "resumed": SubscriptionStatus.active,
    "completed": SubscriptionStatus.completed,
    "halted": SubscriptionStatus.halted,
    "cancelled": SubscriptionStatus.cancelled,
    "paused": SubscriptionStatus.paused,
}

# Checkout payments; reconciled by PaymentRecorder.
CHECKOUT_EVENTS = {"payment.captured", "order.paid"}


def _entity(payload: Dict[str, Any], name: str) -> Dict[str, Any]:
    """payload["payment"]["entity"], or {} when absent/malformed."""
    part = payload.get(name) or {}
    entity = part.get("entity") if isinstance(part, dict) else None
    return entity if isinstance(entity, dict) else {}


def _event(event_type: str, event_id: Optional[str], status: WebhookEventStatus,
           note: Optional[str] = None) -> WebhookEventRecord:
    return WebhookEventRecord(
        event_type=event_type, event_id=event_id,
        processed_at=utcnow(), status=status, note=note,
    )


class SubscriptionEngine:

    def __init__(
        self,
        db: FeeDB,
        gateway: RazorpayGateway,
        recorder: PaymentRecorder,
        activity: ActivityLog,
        notifier: N8nNotifier,
        idempotency: IdempotencyStore,
    ):
        self.db = db
        self.gateway = gateway
        self.recorder = recorder
        self.activity = activity
        self.notifier = notifier
        self.idempotency = idempotency

    # ── Reads ────────────────────────────────────────────────
    def get(self, subscription_id: str) -> Subscription:
        row = self.db.select_one(SUBSCRIPTIONS, subscription_id)
        if not row:
            raise NotFoundError("Subscription not found",
                                detail={"subscription_id": subscription_id})
        return Subscription.model_validate(row)

    def find_by_gateway_id(self, gateway_subscription_id: str) -> Optional[Subscription]:
        row = self.db.find_one(SUBSCRIPTIONS, gateway_subscription_id=gateway_subscription_id)
        return Subscription.model_validate(row) if row else None

    def list_subscriptions(
        self,
        student_id: Optional[str] = None,
        ledger_id: Optional[str] = None,
        status: Optional[SubscriptionStatus] = None,
    ) -> List[Subscription]:
        eq = {}
        if student_id:
            eq["student_id"] = student_id
        if ledger_id:
            eq["ledger_id"] = ledger_id
        if status:
            eq["status"] = status
        rows = self.db.select(SUBSCRIPTIONS, eq=eq, order_by="created_at", desc=True)
        return [Subscription.model_validate(r) for r in rows]

    def due_for_charge(self, now: Optional[datetime] = None) -> List[Subscription]:
        """Active plans whose next installment is due. Polled by the scheduler."""
        now = now or utcnow()
        rows = self.db.select(
            SUBSCRIPTIONS,
            eq={"status": SubscriptionStatus.active},
            lte={"next_charge_at": now},
            order_by="next_charge_at",
        )
        subs = [Subscription.model_validate(r) for r in rows]
        return [s for s in subs if s.completed_installments < s.total_installments]

    def due_for_retry(self, now: Optional[datetime] = None) -> List[Subscription]:
        now = now or utcnow()
        due = []
        for sub in self.list_subscriptions(status=SubscriptionStatus.active):
            failure = sub.failure_for(sub.next_installment_number)
            if failure and failure.next_retry_at and failure.next_retry_at <= now:
                due.append(sub)
        return due

    def stats(self) -> SubscriptionStats:
        stats = SubscriptionStats()
        for row in self.db.select(SUBSCRIPTIONS):
            sub = Subscription.model_validate(row)
            stats.total_subscriptions += 1
            stats.by_status[sub.status.value] = stats.by_status.get(sub.status.value, 0) + 1
            stats.total_amount += sub.total_amount
            stats.total_collected += sum((i.amount for i in sub.paid_installments), ZERO)
        stats.total_amount = money(stats.total_amount)
        stats.total_collected = money(stats.total_collected)
        return stats

    def _mutate(self, subscription_id: str, fn):
        self.get(subscription_id)
        return mutate_with_retry(self.db, SUBSCRIPTIONS, subscription_id, Subscription, fn)

    # ── Creation & admin actions ─────────────────────────────
    async def create(self, body: SubscriptionCreate, actor: str) -> Subscription:
        installment = money(body.installment_amount)
        total = money(body.total_amount)
        if money(installment * body.total_installments) != total:
            raise ValidationError(
                "installment_amount × total_installments must equal total_amount",
                detail={"installment_amount": str(installment),
                        "total_installments": body.total_installments,
                        "total_amount": str(total)},
            )

        row = self.db.select_one(LEDGERS, body.ledger_id)
        if not row:
            raise NotFoundError("Fee ledger not found", detail={"ledger_id": body.ledger_id})
        ledger = StudentFeeLedger.model_validate(row).recompute()
        if total > ledger.balance_due:
            raise ValidationError(
                "Plan total exceeds the ledger's balance due",
                detail={"total_amount": str(total), "balance_due": str(ledger.balance_due)},
            )
        for existing in self.list_subscriptions(ledger_id=ledger.id):
            if not existing.is_terminal:
                raise ConflictError(
                    "This ledger already has an open installment plan",
                    detail={"subscription_id": existing.id, "status": existing.status.value},
                )

        start = ensure_aware(body.start_date) or utcnow()
        end = add_periods(start, body.plan_type, body.total_installments)

        student = self.db.select_one(STUDENTS, ledger.student_id) or {}
        customer = CustomerDetails(
            name=body.customer_name
            or f"{student.get('first_name', '')} {student.get('last_name', '')}".strip() or None,
            email=body.customer_email or student.get("email"),
            phone=body.customer_phone or student.get("phone"),
        )

        label = f"Fees {ledger.academic_year}" + (f" sem {ledger.semester}" if ledger.semester else "")
        plan_id = await self.gateway.create_plan(body.plan_type, installment, label)
        customer_id = await self.gateway.create_customer(customer.name, customer.email, customer.phone)
        remote = await self.gateway.create_subscription(
            plan_id, customer_id, body.total_installments, start,
            {"ledger_id": ledger.id, "student_id": ledger.student_id},
        )

        sub = Subscription(
            student_id=ledger.student_id,
            ledger_id=ledger.id,
            gateway_subscription_id=remote["subscription_id"],
            gateway_plan_id=plan_id,
            gateway_customer_id=customer_id,
            auth_url=remote.get("short_url"),
            plan_type=body.plan_type,
            total_amount=total,
            installment_amount=installment,
            total_installments=body.total_installments,
            status=SubscriptionStatus.created,
            start_date=start,
            end_date=end,
            next_charge_at=start,
            notes=body.notes,
            created_by=actor,
            academic_year=ledger.academic_year,
            semester=ledger.semester,
            customer=customer,
        )
        self.db.insert(SUBSCRIPTIONS, sub.to_row())

        logger.info(
            f"Subscription {sub.id} ({sub.gateway_subscription_id}) created for ledger "
            f"{ledger.id}: {sub.total_installments} × {installment} {sub.plan_type.value}"
        )
        await self.activity.log_activity(
            action="subscription.created", user_id=actor,
            entity_type="subscription", entity_id=sub.id,
            metadata={"ledger_id": ledger.id, "total_amount": str(total),
                      "installments": sub.total_installments, "plan_type": sub.plan_type.value},
        )
        await self._notify_status(sub, "Installment plan created")
        return sub

    async def approve(self, subscription_id: str, actor: str, notes: Optional[str] = None) -> Subscription:
        def apply(sub: Subscription) -> None:
            if sub.status != SubscriptionStatus.created:
                raise ConflictError(
                    f"Only newly created plans can be approved (status is {sub.status.value})"
                )
            sub.status = SubscriptionStatus.authenticated
            sub.approved_by = actor
            if notes:
                sub.notes = f"{sub.notes}\n{notes}" if sub.notes else notes

        sub, _ = self._mutate(subscription_id, apply)
        await self.activity.log_activity(
            action="subscription.approved", user_id=actor,
            entity_type="subscription", entity_id=sub.id,
        )
        await self._notify_status(sub, "Installment plan approved")
        return sub

    async def cancel(self, subscription_id: str, actor: str, reason: str) -> Subscription:
        sub = self.get(subscription_id)
        if sub.is_terminal:
            raise ConflictError(f"Subscription is already {sub.status.value}")

        # Gateway first: if it refuses, our record stays as it was.
        await self.gateway.cancel_subscription(sub.gateway_subscription_id)

        def apply(sub: Subscription) -> None:
            if sub.is_terminal:
                raise ConflictError(f"Subscription is already {sub.status.value}")
            sub.status = SubscriptionStatus.cancelled
            sub.next_charge_at = None
            sub.cancelled_by = actor
            sub.cancellation_reason = reason
            sub.cancelled_at = utcnow()

        sub, _ = self._mutate(subscription_id, apply)
        logger.info(f"Subscription {sub.id} cancelled by {actor}: {reason}")
        await self.activity.log_activity(
            action="subscription.cancelled", user_id=actor,
            entity_type="subscription", entity_id=sub.id, metadata={"reason": reason},
        )
        await self._notify_status(sub, "Installment plan cancelled")
        return sub

    # ── Failures & retries ───────────────────────────────────
    async def on_charge_failure(
        self,
        subscription_id: str,
        reason: str,
        gateway_payment_id: Optional[str] = None,
        event_type: Optional[str] = None,
        event_id: Optional[str] = None,
    ) -> Subscription:
        """
        Count a failed attempt for the next installment. At
        SUBSCRIPTION_MAX_RETRIES the plan is halted and no further
        automatic retry is scheduled.
        """
        now = utcnow()

        def apply(sub: Subscription) -> bool:
            if sub.is_terminal:
                raise ConflictError(f"Subscription is {sub.status.value}")
            number = sub.next_installment_number
            failure = sub.failure_for(number)
            if failure is None:
                failure = FailedAttempt(installment_number=number, failed_at=now, reason=reason)
                sub.failed_payments.append(failure)
            elif gateway_payment_id and failure.gateway_payment_id == gateway_payment_id:
                # Same attempt reported twice
                return False

            failure.retry_count += 1
            failure.failed_at = now
            failure.reason = reason
            failure.gateway_payment_id = gateway_payment_id

            halted_now = False
            if failure.retry_count >= settings.SUBSCRIPTION_MAX_RETRIES:
                failure.next_retry_at = None
                halted_now = sub.status != SubscriptionStatus.halted
                sub.status = SubscriptionStatus.halted
            else:
                failure.next_retry_at = now + timedelta(hours=settings.SUBSCRIPTION_RETRY_DELAY_HOURS)

            if event_type:
                sub.webhook_events.append(_event(
                    event_type, event_id, WebhookEventStatus.processed,
                    f"installment {number} failed ({failure.retry_count})",
                ))
            return halted_now

        sub, halted_now = self._mutate(subscription_id, apply)
        logger.warning(f"Charge failed for subscription {sub.id}: {reason}")
        if halted_now:
            logger.warning(f"Subscription {sub.id} halted after {settings.SUBSCRIPTION_MAX_RETRIES} failures")
            await self.activity.log_activity(
                action="subscription.halted", user_id=SYSTEM_ACTOR,
                entity_type="subscription", entity_id=sub.id, metadata={"reason": reason},
            )
            await self._notify_status(sub, "Installment plan halted after repeated payment failures")
        return sub

    async def retry_failed_payment(
        self, subscription_id: str, installment_number: int, actor: Optional[str] = None
    ) -> Subscription:
        """Ask for an immediate retry of a failed installment."""
        def apply(sub: Subscription) -> None:
            if sub.status == SubscriptionStatus.halted:
                raise HaltedSubscriptionError()
            if sub.is_terminal:
                raise ConflictError(f"Subscription is {sub.status.value}")
            failure = sub.failure_for(installment_number)
            if failure is None:
                raise NotFoundError(
                    f"No failed attempt recorded for installment {installment_number}"
                )
            if failure.retry_count >= settings.SUBSCRIPTION_MAX_RETRIES:
                raise HaltedSubscriptionError()
            failure.next_retry_at = utcnow()

        sub, _ = self._mutate(subscription_id, apply)
        await self.activity.log_activity(
            action="subscription.retry_scheduled", user_id=actor,
            entity_type="subscription", entity_id=sub.id,
            metadata={"installment_number": installment_number},
        )
        return sub

    # ── Webhooks ─────────────────────────────────────────────
    async def handle_webhook(
        self, raw_body: bytes, signature: Optional[str], event_id: Optional[str] = None
    ) -> WebhookOutcome:
        """Entry point for POST /webhooks/razorpay."""
        if not self.gateway.verify_webhook_signature(raw_body, signature or ""):
            logger.warning(f"Rejected webhook with bad signature (event {event_id})")
            raise SignatureInvalidError("Webhook signature verification failed")

        try:
            body = WebhookPayload.model_validate_json(raw_body)
        except PydanticValidationError as e:
            logger.warning(f"Malformed webhook body (event {event_id}): {e}")
            raise ValidationError("Malformed webhook body")

        claim = f"event:{event_id}" if event_id else None
        if claim and not self.idempotency.claim(claim):
            logger.info(f"Duplicate webhook event {event_id} ({body.event})")
            return WebhookOutcome(status="duplicate", event_type=body.event)

        try:
            outcome = await self.on_webhook_event(body.event, body.payload, event_id)
        except Exception as e:
            if claim:
                self.idempotency.release(claim)
            logger.error(f"Webhook {body.event} ({event_id}) failed: {e}", exc_info=True)
            self._record_failed_event(body, event_id, str(e))
            raise

        logger.info(f"Webhook {body.event} ({event_id}) → {outcome.status}")
        return outcome

    async def on_webhook_event(
        self, event_type: str, payload: Dict[str, Any], event_id: Optional[str] = None
    ) -> WebhookOutcome:
        payload = payload or {}
        sub_entity = _entity(payload, "subscription")
        pay_entity = _entity(payload, "payment")

        if event_type in CHECKOUT_EVENTS:
            return await self.recorder.on_gateway_capture(
                event_type, pay_entity, _entity(payload, "order"),
            )

        if event_type == "payment.failed":
            gateway_sub_id = pay_entity.get("subscription_id")
            if not gateway_sub_id:
                return await self.recorder.on_gateway_failure(event_type, pay_entity)
            sub = self.find_by_gateway_id(gateway_sub_id)
            if sub is None:
                logger.warning(f"payment.failed for unknown subscription {gateway_sub_id}")
                return WebhookOutcome(status="ignored", event_type=event_type,
                                      detail="unknown subscription")
            if sub.is_terminal:
                return self._ignore(sub, event_type, event_id, f"subscription is {sub.status.value}")
            reason = pay_entity.get("error_description") or pay_entity.get("error_reason") \
                or "Payment failed"
            sub = await self.on_charge_failure(
                sub.id, reason, pay_entity.get("id"), event_type, event_id,
            )
            return WebhookOutcome(status="processed", event_type=event_type,
                                  subscription_id=sub.id, detail=sub.status.value)

        name = event_type.removeprefix("subscription.")
        gateway_sub_id = sub_entity.get("id") or pay_entity.get("subscription_id")
        if name != "charged" and name not in STATUS_EVENTS:
            logger.info(f"Ignoring unhandled webhook event {event_type}")
            return WebhookOutcome(status="ignored", event_type=event_type, detail="unhandled event")
        if not gateway_sub_id:
            logger.warning(f"{event_type} without a subscription id")
            return WebhookOutcome(status="ignored", event_type=event_type,
                                  detail="missing subscription id")

        sub = self.find_by_gateway_id(gateway_sub_id)
        if sub is None:
            logger.warning(f"{event_type} for unknown subscription {gateway_sub_id}")
            return WebhookOutcome(status="ignored", event_type=event_type,
                                  detail="unknown subscription")

        if name == "charged":
            return await self._on_charged(sub, pay_entity, event_type, event_id)
        return await self._on_status_event(sub, STATUS_EVENTS[name], event_type, event_id)

    async def _on_charged(
        self, sub: Subscription, pay_entity: Dict[str, Any], event_type: str, event_id: Optional[str]
    ) -> WebhookOutcome:
        gateway_payment_id = pay_entity.get("id")
        if not gateway_payment_id:
            return self._ignore(sub, event_type, event_id, "charge without a payment id")

        claim = f"charge:{gateway_payment_id}"
        if not self.idempotency.claim(claim):
            logger.info(f"Charge {gateway_payment_id} already claimed; skipping")
            return WebhookOutcome(status="duplicate", event_type=event_type, subscription_id=sub.id)
        try:
            return await self._post_charge(sub, pay_entity, gateway_payment_id, event_type, event_id)
        except Exception:
            self.idempotency.release(claim)
            raise

    async def _post_charge(
        self,
        sub: Subscription,
        pay_entity: Dict[str, Any],
        gateway_payment_id: str,
        event_type: str,
        event_id: Optional[str],
    ) -> WebhookOutcome:
        # The caller read the plan before taking the charge claim
        sub = self.get(sub.id)
        existing = self.recorder.find_by_gateway_payment_id(gateway_payment_id)
        if existing:
            if existing.subscription_id == sub.id and sub.installment_for(gateway_payment_id) is None:
                # Payment landed but the plan was never advanced; finish the job.
                logger.warning(f"Repairing subscription {sub.id} for payment {existing.id}")
                sub = self._advance(sub.id, existing, event_type, event_id)
                return WebhookOutcome(status="processed", event_type=event_type,
                                      subscription_id=sub.id, detail="repaired")
            return WebhookOutcome(status="duplicate", event_type=event_type, subscription_id=sub.id)

        if sub.is_terminal:
            return self._ignore(sub, event_type, event_id, f"subscription is {sub.status.value}")
        if sub.completed_installments >= sub.total_installments:
            return self._ignore(sub, event_type, event_id, "all installments already posted")

        if "amount" in pay_entity:
            charged: Decimal = from_paise(pay_entity["amount"])
            if charged != sub.installment_amount:
                logger.warning(
                    f"Charge {gateway_payment_id} was {charged}, plan installment is "
                    f"{sub.installment_amount}; posting the installment amount"
                )

        number = sub.next_installment_number
        try:
            payment = await self.recorder.record(
                sub.ledger_id, sub.installment_amount, [],
                PaymentMode.online, PaymentMethod.subscription, SYSTEM_ACTOR,
                GatewayRefs(order_id=pay_entity.get("order_id"), payment_id=gateway_payment_id),
                source=PaymentSource.subscription_auto,
                allow_credit=True,
                subscription_id=sub.id,
                installment_number=number,
                notes=f"Installment {number} of {sub.total_installments}",
            )
        except ConflictError:
            payment = self.recorder.find_by_gateway_payment_id(gateway_payment_id)
            if payment is None:
                raise

        sub = self._advance(sub.id, payment, event_type, event_id)
        if sub.status == SubscriptionStatus.completed:
            await self.activity.log_activity(
                action="subscription.completed", user_id=SYSTEM_ACTOR,
                entity_type="subscription", entity_id=sub.id,
            )
            await self._notify_status(sub, "All installments paid")
        return WebhookOutcome(status="processed", event_type=event_type, subscription_id=sub.id,
                              detail=f"installment {sub.completed_installments}/{sub.total_installments}")

    def _advance(
        self, subscription_id: str, payment: Payment, event_type: str, event_id: Optional[str]
    ) -> Subscription:
        """Book a posted charge on the plan. Never past total_installments."""
        def apply(sub: Subscription) -> None:
            if sub.installment_for(payment.gateway_payment_id):
                return
            if sub.completed_installments >= sub.total_installments:
                logger.warning(f"Subscription {sub.id} already complete; payment {payment.id} not booked")
                return
            number = sub.next_installment_number
            sub.paid_installments.append(InstallmentRecord(
                installment_number=number,
                gateway_payment_id=payment.gateway_payment_id,
                payment_id=payment.id,
                amount=payment.amount,
                paid_at=payment.date,
                receipt_number=payment.receipt_number,
            ))
            sub.completed_installments += 1

            if sub.completed_installments == sub.total_installments:
                sub.status = SubscriptionStatus.completed
                sub.next_charge_at = None
            else:
                sub.status = SubscriptionStatus.active
                # From the start date so month-end clamping never drifts
                sub.next_charge_at = add_periods(sub.start_date, sub.plan_type,
                                                 sub.completed_installments)

            failure = sub.failure_for(number)
            if failure:
                failure.next_retry_at = None
            sub.webhook_events.append(_event(
                event_type, event_id, WebhookEventStatus.processed, f"installment {number} posted",
            ))

        sub, _ = self._mutate(subscription_id, apply)
        return sub

    async def _on_status_event(
        self,
        sub: Subscription,
        target: SubscriptionStatus,
        event_type: str,
        event_id: Optional[str],
    ) -> WebhookOutcome:
        def apply(sub: Subscription) -> Tuple[str, str]:
            if target == SubscriptionStatus.completed and \
                    sub.completed_installments != sub.total_installments:
                note = (f"completed reported at {sub.completed_installments}/"
                        f"{sub.total_installments} installments")
            elif sub.status == target:
                note = f"already {target.value}"
            elif target not in ALLOWED_TRANSITIONS[sub.status]:
                note = f"illegal move {sub.status.value} → {target.value}"
            else:
                previous = sub.status
                sub.status = target
                if target in TERMINAL_STATUSES:
                    sub.next_charge_at = None
                if target == SubscriptionStatus.cancelled:
                    sub.cancelled_at = utcnow()
                    sub.cancelled_by = sub.cancelled_by or SYSTEM_ACTOR
                note = f"{previous.value} → {target.value}"
                sub.webhook_events.append(_event(event_type, event_id, WebhookEventStatus.processed, note))
                return "processed", note

            logger.info(f"Ignoring {event_type} for subscription {sub.id}: {note}")
            sub.webhook_events.append(_event(event_type, event_id, WebhookEventStatus.ignored, note))
            return "ignored", note

        sub, (status, note) = self._mutate(sub.id, apply)
        if status == "processed":
            await self.activity.log_activity(
                action=f"subscription.{sub.status.value}", user_id=SYSTEM_ACTOR,
                entity_type="subscription", entity_id=sub.id, metadata={"event": event_type},
            )
            await self._notify_status(sub, f"Installment plan is now {sub.status.value}")
        return WebhookOutcome(status=status, event_type=event_type, subscription_id=sub.id, detail=note)

    def _ignore(
        self, sub: Subscription, event_type: str, event_id: Optional[str], note: str
    ) -> WebhookOutcome:
        logger.info(f"Ignoring {event_type} for subscription {sub.id}: {note}")

        def apply(doc: Subscription) -> None:
            doc.webhook_events.append(_event(event_type, event_id, WebhookEventStatus.ignored, note))

        self._mutate(sub.id, apply)
        return WebhookOutcome(status="ignored", event_type=event_type, subscription_id=sub.id, detail=note)

    def _record_failed_event(self, body: WebhookPayload, event_id: Optional[str], error: str) -> None:
        try:
            gateway_sub_id = _entity(body.payload, "subscription").get("id") \
                or _entity(body.payload, "payment").get("subscription_id")
            sub = self.find_by_gateway_id(gateway_sub_id) if gateway_sub_id else None
            if sub is None:
                return

            def apply(doc: Subscription) -> None:
                doc.webhook_events.append(
                    _event(body.event, event_id, WebhookEventStatus.failed, error[:300])
                )

            self._mutate(sub.id, apply)
        except Exception as e:
            logger.error(f"Could not record failed webhook {event_id}: {e}")

    async def _notify_status(self, sub: Subscription, message: str) -> None:
        await self.notifier.notify(
            sub.student_id, NotificationType.subscription_status_change,
            title=f"Installment plan {sub.status.value}",
            message=message,
            entity_type="subscription", entity_id=sub.id,
        )
