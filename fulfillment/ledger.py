"""
PaymentLedger: full payments, deposits and remaining-balance payments.

Every proof starts out `pending` and only an administrator can verify it.
The ledger never moves `status`; it only gates which transitions the state
machine will accept.
"""
from datetime import datetime
from decimal import Decimal
from typing import Optional

from database.models import Payment
from .authorizer import Action, RoleAuthorizer
from .errors import InvalidTransition, ValidationError
from .interfaces import Actor
from .states import DepositStatus, NotificationType, PaymentKind, PaymentReviewStatus
from .timeline import append_event, emit

SUBMIT_ACTIONS = {
    PaymentKind.FULL: Action.SUBMIT_FULL_PAYMENT,
    PaymentKind.DEPOSIT: Action.SUBMIT_DEPOSIT,
    PaymentKind.REMAINING: Action.SUBMIT_REMAINING_PAYMENT,
}


class PaymentLedger:

    def __init__(self, authorizer: Optional[RoleAuthorizer] = None):
        self.authorizer = authorizer or RoleAuthorizer()

    # Queries

    @staticmethod
    def current(order, kind: PaymentKind) -> Optional[Payment]:
        """Latest proof of the given kind on file, if any."""
        records = [p for p in order.payments if p.kind == PaymentKind(kind).value]
        return records[-1] if records else None

    @staticmethod
    def remaining_amount(order) -> Decimal:
        if not order.requires_deposit:
            return Decimal("0")
        return Decimal(order.total_price) - Decimal(order.deposit_amount)

    def has_verified_upfront_payment(self, order) -> bool:
        """Admin-approval precondition: a verified full payment or a paid deposit."""
        if order.requires_deposit:
            return order.deposit_status == DepositStatus.PAID.value
        full = self.current(order, PaymentKind.FULL)
        return full is not None and full.status == PaymentReviewStatus.VERIFIED.value

    def remaining_settled(self, order) -> bool:
        if self.remaining_amount(order) <= 0:
            return True
        remaining = self.current(order, PaymentKind.REMAINING)
        return remaining is not None and remaining.status == PaymentReviewStatus.VERIFIED.value

    def amount_due(self, order, kind: PaymentKind) -> Decimal:
        kind = PaymentKind(kind)
        if kind == PaymentKind.DEPOSIT:
            return Decimal(order.deposit_amount)
        if kind == PaymentKind.REMAINING:
            return self.remaining_amount(order)
        return Decimal(order.total_price)

    # Commands

    def submit(self, order, actor: Actor, kind: PaymentKind, proof_reference: str,
               now: datetime) -> Payment:
        kind = PaymentKind(kind)
        self.authorizer.authorize(actor, order, SUBMIT_ACTIONS[kind])
        return self.record_proof(order, actor, kind, proof_reference, now)

    def record_proof(self, order, actor: Optional[Actor], kind: PaymentKind,
                     proof_reference: str, now: datetime) -> Payment:
        """Store a proof reference after authorization; also used at checkout."""
        kind = PaymentKind(kind)
        if not proof_reference or not proof_reference.strip():
            raise ValidationError("A payment proof reference is required", guard="missing_proof_reference")
        self._check_kind_applies(order, kind)

        record = self.current(order, kind)
        if record is not None and record.status == PaymentReviewStatus.VERIFIED.value:
            raise InvalidTransition(
                f"A verified {kind.value} payment is already on file",
                guard="proof_already_verified", kind=kind.value,
            )

        amount = self.amount_due(order, kind)
        if record is None:
            record = Payment(
                kind=kind.value,
                status=PaymentReviewStatus.PENDING.value,
                amount=amount,
                proof_reference=proof_reference,
                submitted_at=now,
            )
            order.payments.append(record)
            label = "payment_submitted"
        else:
            record.proof_reference = proof_reference
            record.amount = amount
            record.submitted_at = now
            label = "payment_resubmitted"

        if kind == PaymentKind.REMAINING:
            order.remaining_payment_proof = proof_reference
        order.payment_status = PaymentReviewStatus.PENDING.value
        append_event(order, label, now, actor, notes=kind.value)
        return record

    def verify(self, order, actor: Actor, kind: PaymentKind, now: datetime) -> Payment:
        kind = PaymentKind(kind)
        self.authorizer.authorize(actor, order, Action.VERIFY_PAYMENT)

        record = self.current(order, kind)
        if record is None:
            raise InvalidTransition(
                f"No {kind.value} payment proof on file", guard="no_proof_on_file", kind=kind.value,
            )
        if record.status == PaymentReviewStatus.VERIFIED.value:
            raise InvalidTransition(
                f"The {kind.value} payment is already verified",
                guard="proof_already_verified", kind=kind.value,
            )

        record.status = PaymentReviewStatus.VERIFIED.value
        record.verified_at = now
        record.verified_by = actor.user_id
        if kind == PaymentKind.DEPOSIT:
            order.deposit_status = DepositStatus.PAID.value

        still_pending = any(p.status == PaymentReviewStatus.PENDING.value for p in order.payments)
        order.payment_status = (
            PaymentReviewStatus.PENDING.value if still_pending else PaymentReviewStatus.VERIFIED.value
        )
        append_event(order, "payment_verified", now, actor, notes=kind.value)
        emit(order, NotificationType.PAYMENT_VERIFIED, now, kind=kind, amount=record.amount)
        return record

    def _check_kind_applies(self, order, kind: PaymentKind) -> None:
        if kind == PaymentKind.FULL and order.requires_deposit:
            raise InvalidTransition(
                "This order is paid through a deposit; submit a deposit proof",
                guard="deposit_flow_applies",
            )
        if kind == PaymentKind.DEPOSIT:
            if not order.requires_deposit:
                raise InvalidTransition("This order does not take a deposit", guard="no_deposit_required")
            if order.deposit_status == DepositStatus.PAID.value:
                raise InvalidTransition("The deposit is already paid", guard="deposit_already_paid")
        if kind == PaymentKind.REMAINING:
            if self.remaining_amount(order) <= 0:
                raise InvalidTransition("There is no remaining balance to pay", guard="no_remaining_balance")
            if order.deposit_status != DepositStatus.PAID.value:
                raise InvalidTransition(
                    "The deposit must be paid before the remaining balance",
                    guard="deposit_not_paid",
                )
