# ============================================================
# feeledger/services/payment_service.py
#
# PaymentRecorder: turns money received into a Payment record
# and the matching fee-item allocations on one ledger.
#
# Three ways money arrives:
#   manual entry   → cash / cheque / UPI typed in by an accountant
#   gateway        → Razorpay checkout, confirmed by signature
#   subscription   → installment charge posted by SubscriptionEngine
#
# Allocation is greedy, in the order the caller names the items:
#   remaining = amount
#   for item in paid_for:
#       applied = min(remaining, item.original_amount - item.paid)
#       item.paid += applied; remaining -= applied
#       stop when remaining == 0
#
# Whatever is left over is never dropped:
#   manual entry            → ValidationError, nothing recorded
#   gateway / subscription  → kept as payment.unallocated_amount
#                             and ledger.credit_balance, with a warning
#
# The ledger update and the payment insert commit together in one
# UnitOfWork. A lost version race re-reads the ledger and
# re-allocates from scratch.
# ============================================================

from datetime import datetime
from decimal import Decimal
from io import BytesIO
from typing import Any, Dict, List, Optional, Tuple
import logging

from feeledger.core.config import settings
from feeledger.core.database import FeeDB, LEDGERS, PAYMENTS, STUDENTS
from feeledger.core.errors import (
    ConflictError, NotFoundError, SignatureInvalidError, ValidationError,
)
from feeledger.core.unit_of_work import UnitOfWork, retry_on_stale
from feeledger.schemas.common import ZERO, money
from feeledger.schemas.ledger import StudentFeeLedger
from feeledger.schemas.notifications import NotificationType
from feeledger.schemas.payments import (
    ChequeDetails, ChequeStatus, ConfirmGatewayPaymentRequest, CreateOrderResponse,
    GatewayRefs, Payment, PaymentAllocation, PaymentMethod, PaymentMode, PaymentSource,
    MethodBreakdown, PaymentStats, PaymentStatus, ReceiptView, RecordPaymentRequest,
    RefundStatus,
)
from feeledger.schemas.subscriptions import WebhookOutcome
from feeledger.services.activity_service import ActivityLog
from feeledger.services.notification_service import N8nNotifier
from feeledger.utils.dates import ensure_aware, utcnow
from feeledger.utils.gateway import RazorpayGateway, from_paise
from feeledger.utils.idempotency import IdempotencyStore
from feeledger.utils.pdf_receipt import generate_receipt_pdf
from feeledger.utils.receipt import ReceiptNumberGenerator, format_receipt_number

logger = logging.getLogger(__name__)

# Actor stamped on everything the gateway posts by itself.
SYSTEM_ACTOR = "system:razorpay"

# Gateway statuses that mean the money is ours.
SETTLED_GATEWAY_STATUSES = {"captured", "authorized"}

# Statuses whose money is actually held.
COLLECTED_STATUSES = {PaymentStatus.confirmed, PaymentStatus.verified}


def allocate(
    ledger: StudentFeeLedger, paid_for: List[str], amount: Decimal
) -> Tuple[List[PaymentAllocation], Decimal]:
    """
    Apply `amount` to the named items in order. Mutates the ledger's
    items and returns (allocations, unallocated remainder).
    """
    remaining = money(amount)
    allocations: List[PaymentAllocation] = []
    for item_id in paid_for:
        if remaining <= ZERO:
            break
        item = ledger.item(item_id)
        applied = min(remaining, item.balance)
        if applied <= ZERO:
            continue
        item.paid += applied
        item.last_updated = utcnow()
        remaining -= applied
        allocations.append(PaymentAllocation(
            fee_item_id=item.id, category_id=item.category_id,
            name=item.name, amount=applied,
        ))
    return allocations, remaining


def reverse_allocations(ledger: StudentFeeLedger, payment: Payment) -> None:
    """Undo what `payment` put on the ledger (refund / rejected cheque)."""
    for alloc in payment.allocations:
        item = ledger.item(alloc.fee_item_id)
        if item is None:
            logger.warning(
                f"Fee item {alloc.fee_item_id} from payment {payment.id} "
                f"no longer on ledger {ledger.id}"
            )
            continue
        item.paid = max(ZERO, item.paid - alloc.amount)
        item.last_updated = utcnow()
    if payment.unallocated_amount > ZERO:
        ledger.credit_balance = max(ZERO, ledger.credit_balance - payment.unallocated_amount)


def _resolve_targets(ledger: StudentFeeLedger, paid_for: List[str]) -> List[str]:
    if not paid_for:
        return ledger.outstanding_item_ids()
    seen, targets = set(), []
    for item_id in paid_for:
        item = ledger.item(item_id)
        if item is None:
            raise ValidationError("Unknown fee item", detail={"item_id": item_id})
        if not item.is_included:
            raise ValidationError(f"'{item.name}' is excluded from this ledger",
                                  detail={"item_id": item_id})
        if item_id not in seen:
            seen.add(item_id)
            targets.append(item_id)
    return targets


class PaymentRecorder:

    def __init__(
        self,
        db: FeeDB,
        gateway: RazorpayGateway,
        activity: ActivityLog,
        notifier: N8nNotifier,
        idempotency: IdempotencyStore,
        receipts: Optional[ReceiptNumberGenerator] = None,
    ):
        self.db = db
        self.gateway = gateway
        self.activity = activity
        self.notifier = notifier
        self.idempotency = idempotency
        self.receipts = receipts or ReceiptNumberGenerator(db)

    # ── Reads ────────────────────────────────────────────────
    def get(self, payment_id: str) -> Payment:
        row = self.db.select_one(PAYMENTS, payment_id)
        if not row:
            raise NotFoundError("Payment not found", detail={"payment_id": payment_id})
        return Payment.model_validate(row)

    def find_by_gateway_payment_id(self, gateway_payment_id: str) -> Optional[Payment]:
        row = self.db.find_one(PAYMENTS, gateway_payment_id=gateway_payment_id)
        return Payment.model_validate(row) if row else None

    def list_payments(
        self,
        ledger_id: Optional[str] = None,
        student_id: Optional[str] = None,
        status: Optional[PaymentStatus] = None,
    ) -> List[Payment]:
        eq = {}
        if ledger_id:
            eq["ledger_id"] = ledger_id
        if student_id:
            eq["student_id"] = student_id
        if status:
            eq["status"] = status
        rows = self.db.select(PAYMENTS, eq=eq, order_by="date", desc=True)
        return [Payment.model_validate(r) for r in rows]

    def stats(
        self,
        academic_year: Optional[str] = None,
        semester: Optional[int] = None,
        date_from: Optional[datetime] = None,
        date_to: Optional[datetime] = None,
        recent_limit: int = 10,
    ) -> PaymentStats:
        """
        Collections dashboard over the payments matching the filters.
        Both date bounds are inclusive.
        """
        eq = {}
        if academic_year:
            eq["academic_year"] = academic_year
        if semester is not None:
            eq["semester"] = semester
        date_from, date_to = ensure_aware(date_from), ensure_aware(date_to)

        payments = []
        for row in self.db.select(PAYMENTS, eq=eq, order_by="date", desc=True):
            payment = Payment.model_validate(row)
            paid_on = ensure_aware(payment.date)
            if date_from and paid_on < date_from:
                continue
            if date_to and paid_on > date_to:
                continue
            payments.append(payment)

        stats = PaymentStats(total_payments=len(payments), recent=payments[:recent_limit])
        collected = 0
        for p in payments:
            stats.total_amount += p.amount
            stats.by_status[p.status.value] = stats.by_status.get(p.status.value, 0) + 1
            breakdown = stats.by_method.setdefault(p.method.value, MethodBreakdown())
            breakdown.count += 1
            breakdown.total_amount += p.amount
            if p.mode == PaymentMode.online:
                stats.online_payments += 1
            else:
                stats.offline_payments += 1
            if p.status in COLLECTED_STATUSES:
                stats.total_collected += p.amount
                collected += 1
            elif p.status == PaymentStatus.refunded:
                stats.total_refunded += p.refund_amount or p.amount
            elif p.status == PaymentStatus.pending and p.requires_verification:
                stats.pending_verification += 1

        stats.total_amount = money(stats.total_amount)
        stats.total_collected = money(stats.total_collected)
        stats.total_refunded = money(stats.total_refunded)
        stats.average_payment = money(stats.total_collected / collected) if collected else ZERO
        for breakdown in stats.by_method.values():
            breakdown.total_amount = money(breakdown.total_amount)
        return stats

    # ── Recording ────────────────────────────────────────────
    async def record(
        self,
        ledger_id: str,
        amount: Decimal,
        paid_for: List[str],
        mode: PaymentMode,
        method: PaymentMethod,
        actor: str,
        gateway_refs: Optional[GatewayRefs] = None,
        *,
        source: Optional[PaymentSource] = None,
        requires_verification: Optional[bool] = None,
        cheque_details: Optional[ChequeDetails] = None,
        notes: Optional[str] = None,
        allow_credit: bool = False,
        subscription_id: Optional[str] = None,
        installment_number: Optional[int] = None,
        date: Optional[datetime] = None,
    ) -> Payment:
        amount = money(amount) if amount is not None else ZERO
        if amount <= ZERO:
            raise ValidationError("Payment amount must be greater than zero")
        if not self.db.select_one(LEDGERS, ledger_id):
            raise NotFoundError("Fee ledger not found", detail={"ledger_id": ledger_id})

        if requires_verification is None:
            requires_verification = mode == PaymentMode.offline and method == PaymentMethod.cheque
        if requires_verification:
            status = PaymentStatus.pending
        elif subscription_id or (
            mode == PaymentMode.online and gateway_refs and gateway_refs.payment_id
        ):
            status = PaymentStatus.verified
        else:
            status = PaymentStatus.confirmed

        if source is None:
            source = PaymentSource.subscription_auto if subscription_id else (
                PaymentSource.student_portal if mode == PaymentMode.online
                else PaymentSource.admin_entry
            )

        # Drawn once; a retried attempt keeps the same number.
        receipt_number = self.receipts.next()

        def attempt() -> Tuple[Payment, StudentFeeLedger]:
            ledger = StudentFeeLedger.model_validate(self.db.require_one(LEDGERS, ledger_id))
            targets = _resolve_targets(ledger, paid_for)
            allocations, remainder = allocate(ledger, targets, amount)

            if remainder > ZERO:
                if not allow_credit:
                    raise ValidationError(
                        "Payment exceeds the outstanding balance of the selected fee items",
                        detail={"amount": str(amount), "excess": str(remainder)},
                    )
                ledger.credit_balance += remainder
                logger.warning(
                    f"Payment of {amount} on ledger {ledger_id} left {remainder} unallocated; "
                    f"kept as credit"
                )

            ledger.last_modified_by = actor
            ledger.recompute()

            payment = Payment(
                student_id=ledger.student_id,
                ledger_id=ledger.id,
                mode=mode,
                method=method,
                amount=amount,
                date=date or utcnow(),
                allocations=allocations,
                unallocated_amount=remainder,
                receipt_number=receipt_number,
                gateway=gateway_refs,
                gateway_payment_id=gateway_refs.payment_id if gateway_refs else None,
                status=status,
                requires_verification=requires_verification,
                subscription_id=subscription_id,
                installment_number=installment_number,
                source=source,
                cheque_details=cheque_details,
                notes=notes,
                academic_year=ledger.academic_year,
                semester=ledger.semester,
                added_by=actor,
            )

            uow = UnitOfWork(self.db)
            uow.update(LEDGERS, ledger.id, ledger.to_row(), expected_version=ledger.version)
            uow.insert(PAYMENTS, payment.to_row())
            uow.commit()
            return payment, ledger

        payment, ledger = retry_on_stale(attempt)

        logger.info(
            f"Payment {payment.id} recorded: {amount} on ledger {ledger_id} "
            f"receipt={receipt_number} status={status.value}"
        )
        await self.activity.log_activity(
            action="payment.recorded", user_id=actor,
            entity_type="payment", entity_id=payment.id,
            metadata={"ledger_id": ledger_id, "amount": str(amount),
                      "method": method.value, "receipt_number": receipt_number},
        )
        await self.notifier.notify(
            payment.student_id, NotificationType.payment_received,
            title="Payment received",
            message=(f"We received {amount} (receipt {format_receipt_number(receipt_number)}). "
                     f"Balance due: {money(ledger.balance_due)}"),
            entity_type="payment", entity_id=payment.id,
        )
        return payment

    async def record_manual(self, body: RecordPaymentRequest, actor: str) -> Payment:
        """Accountant-entered payment. Excess over the targeted items is refused."""
        refs = GatewayRefs(payment_id=body.transaction_id) if body.transaction_id else None
        return await self.record(
            body.ledger_id, body.amount, body.paid_for, body.mode, body.method, actor, refs,
            source=body.source,
            requires_verification=body.requires_verification,
            cheque_details=body.cheque_details,
            notes=body.notes,
        )

    # ── Verification ─────────────────────────────────────────
    async def verify(
        self, payment_id: str, approved: bool, actor: str, notes: Optional[str] = None
    ) -> Payment:
        """
        pending → verified (approved) or failed (rejected).
        A rejection takes the allocations back off the ledger.
        """
        def attempt() -> Payment:
            payment = self.get(payment_id)
            if payment.status == PaymentStatus.refunded:
                raise ConflictError("Refunded payments cannot be verified")
            if payment.status != PaymentStatus.pending:
                raise ConflictError(
                    f"Only pending payments can be verified (status is {payment.status.value})"
                )
            expected = payment.version

            payment.requires_verification = False
            payment.verified_by = actor
            payment.verified_at = utcnow()
            payment.verification_notes = notes
            uow = UnitOfWork(self.db)

            if approved:
                payment.status = PaymentStatus.verified
                if payment.cheque_details:
                    payment.cheque_details.status = ChequeStatus.cleared
            else:
                payment.status = PaymentStatus.failed
                if payment.cheque_details:
                    payment.cheque_details.status = ChequeStatus.bounced
                row = self.db.select_one(LEDGERS, payment.ledger_id)
                if row:
                    ledger = StudentFeeLedger.model_validate(row)
                    reverse_allocations(ledger, payment)
                    ledger.last_modified_by = actor
                    ledger.recompute()
                    uow.update(LEDGERS, ledger.id, ledger.to_row(), expected_version=ledger.version)

            uow.update(PAYMENTS, payment.id, payment.to_row(), expected_version=expected)
            stored = uow.commit()[-1]
            return Payment.model_validate(stored)

        payment = retry_on_stale(attempt)
        logger.info(f"Payment {payment_id} {payment.status.value} by {actor}")
        await self.activity.log_activity(
            action="payment.verified" if approved else "payment.rejected",
            user_id=actor, entity_type="payment", entity_id=payment_id,
            metadata={"notes": notes},
        )
        return payment

    # ── Refunds ──────────────────────────────────────────────
    async def refund(self, payment_id: str, reason: str, actor: str) -> Payment:
        """
        Terminal. Online payments are refunded at the gateway first;
        if the gateway refuses, nothing here changes.
        """
        payment = self.get(payment_id)
        if payment.status == PaymentStatus.refunded:
            raise ConflictError("Payment is already refunded")
        if payment.status in (PaymentStatus.pending, PaymentStatus.failed):
            raise ConflictError(
                f"A {payment.status.value} payment cannot be refunded",
            )

        refund_id = None
        if payment.mode == PaymentMode.online and payment.gateway_payment_id:
            # One gateway refund per payment. The claim is kept after a
            # successful call; it is released only when the gateway refuses.
            claim = f"refund:{payment_id}"
            if not self.idempotency.claim(claim):
                raise ConflictError("A refund for this payment is already in progress",
                                    detail={"payment_id": payment_id})
            try:
                result = await self.gateway.create_refund(
                    payment.gateway_payment_id, payment.amount,
                    {"reason": reason, "receipt": payment.receipt_number},
                )
            except Exception:
                self.idempotency.release(claim)
                raise
            refund_id = result["refund_id"]

        def attempt() -> Payment:
            current = self.get(payment_id)
            if current.status == PaymentStatus.refunded:
                raise ConflictError("Payment is already refunded")
            expected = current.version
            uow = UnitOfWork(self.db)

            row = self.db.select_one(LEDGERS, current.ledger_id)
            if row:
                ledger = StudentFeeLedger.model_validate(row)
                reverse_allocations(ledger, current)
                ledger.last_modified_by = actor
                ledger.recompute()
                uow.update(LEDGERS, ledger.id, ledger.to_row(), expected_version=ledger.version)

            current.status = PaymentStatus.refunded
            current.refund_amount = current.amount
            current.refund_status = RefundStatus.full
            current.refund_reason = reason
            current.refund_id = refund_id
            current.refunded_at = utcnow()
            current.requires_verification = False
            uow.update(PAYMENTS, current.id, current.to_row(), expected_version=expected)
            return Payment.model_validate(uow.commit()[-1])

        refunded = retry_on_stale(attempt)
        logger.info(f"Payment {payment_id} refunded by {actor} (gateway refund {refund_id})")
        await self.activity.log_activity(
            action="payment.refunded", user_id=actor,
            entity_type="payment", entity_id=payment_id,
            metadata={"reason": reason, "amount": str(refunded.amount), "refund_id": refund_id},
        )
        return refunded

    # ── Gateway checkout ─────────────────────────────────────
    async def create_order(self, ledger_id: str, amount: Decimal, actor: str) -> CreateOrderResponse:
        """
        Replay protection: the same (ledger, amount, actor) inside the
        idempotency TTL gets the order already created.
        """
        amount = money(amount)
        if amount <= ZERO:
            raise ValidationError("Order amount must be greater than zero")
        row = self.db.select_one(LEDGERS, ledger_id)
        if not row:
            raise NotFoundError("Fee ledger not found", detail={"ledger_id": ledger_id})
        ledger = StudentFeeLedger.model_validate(row).recompute()
        if ledger.balance_due <= ZERO:
            raise ValidationError("This ledger is already fully paid")

        cache_key = f"{ledger_id}:{amount}:{actor}"
        cached = self.idempotency.get_order(cache_key)
        if cached:
            logger.info(f"Replaying order {cached['order_id']} for ledger {ledger_id}")
            return CreateOrderResponse.model_validate(cached)

        receipt_ref = f"lg_{ledger.id[:12]}_{utcnow():%y%m%d%H%M%S}"
        order = await self.gateway.create_order(
            amount, settings.CURRENCY, receipt_ref,
            {"ledger_id": ledger.id, "student_id": ledger.student_id},
        )
        response = CreateOrderResponse(
            order_id=order["order_id"],
            amount=amount,
            currency=order["currency"],
            receipt=receipt_ref,
            key_id=self.gateway.key_id,
        )
        self.idempotency.remember_order(cache_key, response.model_dump(mode="json"))
        return response

    async def confirm_gateway_payment(
        self, body: ConfirmGatewayPaymentRequest, actor: str
    ) -> Payment:
        """Idempotent on the gateway payment id."""
        if not self.gateway.verify_signature(body.order_id, body.payment_id, body.signature):
            logger.warning(f"Bad checkout signature for order {body.order_id}")
            raise SignatureInvalidError("Payment signature verification failed")

        existing = self.find_by_gateway_payment_id(body.payment_id)
        if existing:
            return existing

        info = await self.gateway.get_payment(body.payment_id)
        if info["status"] not in SETTLED_GATEWAY_STATUSES:
            raise ValidationError(
                f"Gateway payment is {info['status']}, not captured",
                detail={"payment_id": body.payment_id},
            )

        try:
            return await self.record(
                body.ledger_id, info["amount"], body.paid_for,
                PaymentMode.online, PaymentMethod.razorpay, actor,
                GatewayRefs(order_id=body.order_id, payment_id=body.payment_id,
                            signature=body.signature),
                source=PaymentSource.student_portal,
                notes=body.notes,
                allow_credit=True,
            )
        except ConflictError:
            # Another request posted the same gateway payment first.
            existing = self.find_by_gateway_payment_id(body.payment_id)
            if existing:
                return existing
            raise

    # ── Gateway webhooks ─────────────────────────────────────
    async def on_gateway_capture(
        self, event_type: str, pay_entity: Dict[str, Any], order_entity: Dict[str, Any]
    ) -> WebhookOutcome:
        """
        payment.captured / order.paid for a checkout payment. Posts it
        when the browser never made it back to /payments/confirm;
        otherwise the payment is already here and this is a duplicate.
        """
        gateway_payment_id = pay_entity.get("id")
        if not gateway_payment_id:
            return WebhookOutcome(status="ignored", event_type=event_type,
                                  detail="missing payment id")
        if pay_entity.get("subscription_id") or pay_entity.get("invoice_id"):
            # Installments are booked on subscription.charged
            return WebhookOutcome(status="ignored", event_type=event_type,
                                  detail="installment payment")
        gateway_status = pay_entity.get("status")
        if gateway_status and gateway_status not in SETTLED_GATEWAY_STATUSES:
            return WebhookOutcome(status="ignored", event_type=event_type,
                                  detail=f"payment is {gateway_status}")

        existing = self.find_by_gateway_payment_id(gateway_payment_id)
        if existing:
            return WebhookOutcome(status="duplicate", event_type=event_type,
                                  payment_id=existing.id)

        order_id = pay_entity.get("order_id") or order_entity.get("id")
        ledger_id = await self._ledger_for(pay_entity, order_entity, order_id)
        if not ledger_id or not self.db.select_one(LEDGERS, ledger_id):
            logger.warning(
                f"{event_type} {gateway_payment_id} (order {order_id}) matches no fee ledger"
            )
            return WebhookOutcome(status="ignored", event_type=event_type,
                                  detail="no fee ledger for this payment")

        if "amount" in pay_entity:
            amount = from_paise(pay_entity["amount"])
        else:
            amount = (await self.gateway.get_payment(gateway_payment_id))["amount"]

        try:
            payment = await self.record(
                ledger_id, amount, [],
                PaymentMode.online, PaymentMethod.razorpay, SYSTEM_ACTOR,
                GatewayRefs(order_id=order_id, payment_id=gateway_payment_id),
                source=PaymentSource.student_portal,
                allow_credit=True,
                notes=f"Reconciled from {event_type}",
            )
        except ConflictError:
            existing = self.find_by_gateway_payment_id(gateway_payment_id)
            if existing:
                return WebhookOutcome(status="duplicate", event_type=event_type,
                                      payment_id=existing.id)
            raise

        logger.info(f"Reconciled {gateway_payment_id} from {event_type} as payment {payment.id}")
        return WebhookOutcome(status="processed", event_type=event_type, payment_id=payment.id,
                              detail=f"receipt {format_receipt_number(payment.receipt_number)}")

    async def _ledger_for(
        self, pay_entity: Dict[str, Any], order_entity: Dict[str, Any], order_id: Optional[str]
    ) -> Optional[str]:
        """notes.ledger_id on the payment, then on the order, then on the order at the gateway."""
        for entity in (pay_entity, order_entity):
            notes = entity.get("notes")
            if isinstance(notes, dict) and notes.get("ledger_id"):
                return notes["ledger_id"]
        if order_id:
            order = await self.gateway.get_order(order_id)
            return order["notes"].get("ledger_id")
        return None

    async def on_gateway_failure(self, event_type: str, pay_entity: Dict[str, Any]) -> WebhookOutcome:
        """
        payment.failed outside a subscription. Only a recorded payment
        still awaiting verification is affected: it is rejected, which
        takes its allocations back off the ledger.
        """
        gateway_payment_id = pay_entity.get("id")
        existing = (
            self.find_by_gateway_payment_id(gateway_payment_id) if gateway_payment_id else None
        )
        if existing is None:
            # A failed checkout never reached the ledger
            return WebhookOutcome(status="ignored", event_type=event_type,
                                  detail="no recorded payment")
        if existing.status != PaymentStatus.pending:
            logger.warning(
                f"{event_type} for payment {existing.id}, which is {existing.status.value}"
            )
            return WebhookOutcome(status="ignored", event_type=event_type,
                                  payment_id=existing.id,
                                  detail=f"payment is {existing.status.value}")

        reason = pay_entity.get("error_description") or pay_entity.get("error_reason") \
            or "Payment failed at the gateway"
        payment = await self.verify(existing.id, False, SYSTEM_ACTOR, reason)
        return WebhookOutcome(status="processed", event_type=event_type,
                              payment_id=payment.id, detail=payment.status.value)

    # ── Receipts ─────────────────────────────────────────────
    def receipt(self, payment_id: str) -> ReceiptView:
        payment = self.get(payment_id)
        row = self.db.select_one(LEDGERS, payment.ledger_id)
        if row:
            ledger = StudentFeeLedger.model_validate(row).recompute()
            net, paid, remaining = ledger.net_amount, ledger.total_paid, ledger.balance_due
        else:
            # Ledger removed by an upgrade rollback
            net = paid = remaining = ZERO
        return ReceiptView(
            receipt_number=payment.receipt_number,
            payment_id=payment.id,
            date=payment.date,
            student_id=payment.student_id,
            amount=money(payment.amount),
            mode=payment.mode,
            method=payment.method,
            status=payment.status,
            transaction_id=payment.gateway_payment_id,
            semester=payment.semester,
            academic_year=payment.academic_year,
            net_amount=money(net),
            total_paid=money(paid),
            remaining_balance=money(remaining),
            allocations=payment.allocations,
            unallocated_amount=money(payment.unallocated_amount),
            added_by=payment.added_by,
            verified_by=payment.verified_by,
            notes=payment.notes,
        )

    def receipt_pdf(self, payment_id: str) -> BytesIO:
        view = self.receipt(payment_id)
        student = self.db.select_one(STUDENTS, view.student_id)
        student_name = (
            f"{student.get('first_name', '')} {student.get('last_name', '')}".strip()
            if student else None
        )
        return generate_receipt_pdf(
            view, institution_name=settings.APP_NAME, student_name=student_name,
        )
