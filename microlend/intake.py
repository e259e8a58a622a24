"""
Payment Intake Module

Validates an incoming remittance against its schedule, records it in the
payment ledger and updates the borrower's credit score.

Cash payments settle immediately: the payment and the score update are written
in one storage transaction. Electronic payments are recorded as pending, a
checkout session is requested from the gateway, and the score only moves when
the gateway confirms the payment through complete_payment. A cancelled payment
never scores and never counts toward any total again.
"""

from decimal import Decimal
from datetime import datetime, date, timezone
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Any, Union

from .audit import AuditTrail, AuditEventType
from .credit_score import CreditScore, CreditScoreLedger
from .currency import Money, ZERO, quantize_amount, to_decimal
from .errors import ConflictError, NotFoundError, ValidationError, Result, LendingError
from .gateway import CheckoutClient, GatewayError
from .loans import LoanService, parse_modality
from .logging_config import get_logger, log_action
from .payments import Payment, PaymentLedger, PaymentModality, PaymentStatus
from .reconciliation import ReconciliationEngine
from .schedule import PaymentSchedule, ScheduleStore, utc_date
from .storage import StorageInterface

logger = get_logger("microlend.intake")


def is_on_time(now: datetime, next_unmet: Optional[date]) -> bool:
    """A repayment is on time when it arrives no later than the next unmet due date"""
    if next_unmet is None:
        return True
    return utc_date(now) <= next_unmet


@dataclass
class PaymentReceipt:
    """What the borrower gets back from a submission or a settlement callback"""
    payment: Payment
    on_time: bool
    total_paid: Decimal
    remaining_balance: Decimal
    credit_score: Optional[CreditScore] = None
    loan_completed: bool = False
    checkout_url: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "payment_id": self.payment.id,
            "schedule_id": self.payment.schedule_id,
            "amount": str(self.payment.amount),
            "payment_date": self.payment.payment_date.isoformat(),
            "modality": self.payment.modality.value,
            "status": self.payment.status.value,
            "on_time": self.on_time,
            "total_paid": str(self.total_paid),
            "remaining_balance": str(self.remaining_balance),
            "credit_score": self.credit_score.score if self.credit_score else None,
            "loan_completed": self.loan_completed,
            "checkout_reference": self.payment.checkout_reference,
            "checkout_url": self.checkout_url,
        }


class PaymentIntake:
    """
    Orchestrates payment submission and the gateway settlement callbacks
    """

    def __init__(
        self,
        storage: StorageInterface,
        schedule_store: ScheduleStore,
        payment_ledger: PaymentLedger,
        reconciliation: ReconciliationEngine,
        credit_scores: CreditScoreLedger,
        loan_service: LoanService,
        gateway: CheckoutClient,
        audit_trail: AuditTrail,
        clock: Optional[Callable[[], datetime]] = None
    ):
        self.storage = storage
        self.schedule_store = schedule_store
        self.payment_ledger = payment_ledger
        self.reconciliation = reconciliation
        self.credit_scores = credit_scores
        self.loan_service = loan_service
        self.gateway = gateway
        self.audit_trail = audit_trail
        self.clock = clock or (lambda: datetime.now(timezone.utc))

    def submit_payment(
        self,
        schedule_id: str,
        borrower_id: str,
        amount: Union[Decimal, int, str],
        timestamp: Optional[datetime] = None,
        notes: Optional[str] = None,
        modality: Optional[Union[PaymentModality, str]] = None
    ) -> Result:
        """
        Submit a payment against a schedule

        Args:
            schedule_id: Payable the payment is for
            borrower_id: Requesting borrower; must own the schedule
            amount: Amount paid
            timestamp: Payment date, defaults to now
            notes: Free-form remarks
            modality: cash or ecash, defaults to the schedule's modality

        Returns:
            Result carrying a PaymentReceipt (201 on success)
        """
        try:
            schedule = self.reconciliation.load_owned_schedule(schedule_id, borrower_id)
            amount = self._validate_amount(amount)
            modality = parse_modality(modality or schedule.payment_modality)
        except LendingError as e:
            logger.warning("Payment rejected", extra={"user_id": borrower_id, "resource": schedule_id,
                                                       "action": "submit_payment", "extra": {"reason": e.message}})
            return Result.from_error(e)

        try:
            if modality.settles_immediately:
                receipt = self._submit_cash(schedule, amount, timestamp, notes)
            else:
                receipt = self._submit_ecash(schedule, amount, timestamp, notes)
        except LendingError as e:
            logger.warning("Payment rejected", extra={"user_id": borrower_id, "resource": schedule_id,
                                                       "action": "submit_payment", "extra": {"reason": e.message}})
            return Result.from_error(e)

        log_action(
            logger, "info", f"Payment submitted: {modality.value}",
            user_id=borrower_id, action="submit_payment", resource=f"payment:{receipt.payment.id}",
            extra={
                "schedule_id": schedule_id,
                "amount": Money(amount, schedule.currency).to_string(),
                "status": receipt.payment.status.value,
                "on_time": receipt.on_time,
                "remaining_balance": str(receipt.remaining_balance),
            }
        )
        return Result.ok(receipt, message="Payment submitted successfully", status_code=201)

    def _validate_amount(self, amount) -> Decimal:
        try:
            amount = quantize_amount(to_decimal(amount))
        except ValueError as e:
            raise ValidationError(str(e))
        if amount <= 0:
            raise ValidationError(f"Payment amount must be greater than 0, got {amount}")
        return amount

    def _check_balance(self, schedule: PaymentSchedule, amount: Decimal):
        """Reconcile the schedule and refuse payments beyond full settlement"""
        report = self.reconciliation.report_for(schedule)
        if report.total_paid + amount > schedule.total_payable:
            raise ConflictError(
                f"Payment of {Money(amount, schedule.currency).to_string()} exceeds the remaining balance of "
                f"{Money(report.remaining_balance, schedule.currency).to_string()} on payable {schedule.id}"
            )
        return report

    def _submit_cash(self, schedule, amount, timestamp, notes) -> PaymentReceipt:
        now = self.clock()
        with self.storage.atomic():
            report = self._check_balance(schedule, amount)
            on_time = is_on_time(now, report.next_unmet_due_date)

            payment = self.payment_ledger.record_payment(
                schedule_id=schedule.id,
                borrower_id=schedule.borrower_id,
                amount=amount,
                payment_date=timestamp or now,
                notes=notes,
                modality=PaymentModality.CASH,
                status=PaymentStatus.COMPLETED,
                on_time=on_time,
            )
            self._audit_payment(AuditEventType.PAYMENT_RECORDED, payment)
            score = self._score(payment.borrower_id, on_time)
            loan_completed = self._complete_loan_if_settled(schedule)

        total_paid = report.total_paid + amount
        return PaymentReceipt(
            payment=payment,
            on_time=on_time,
            total_paid=total_paid,
            remaining_balance=max(schedule.total_payable - total_paid, ZERO),
            credit_score=score,
            loan_completed=loan_completed,
        )

    def _submit_ecash(self, schedule, amount, timestamp, notes) -> PaymentReceipt:
        now = self.clock()
        with self.storage.atomic():
            report = self._check_balance(schedule, amount)
            on_time = is_on_time(now, report.next_unmet_due_date)

            payment = self.payment_ledger.record_payment(
                schedule_id=schedule.id,
                borrower_id=schedule.borrower_id,
                amount=amount,
                payment_date=timestamp or now,
                notes=notes,
                modality=PaymentModality.ECASH,
                status=PaymentStatus.PENDING,
                on_time=on_time,
            )
            self._audit_payment(AuditEventType.PAYMENT_RECORDED, payment)

        # The gateway call happens outside the transaction; a failure cancels the pending payment
        try:
            session = self.gateway.create_checkout_session(
                payment_id=payment.id,
                amount=payment.amount,
                currency=schedule.currency.code,
                borrower_id=payment.borrower_id,
            )
        except Exception as e:
            # No checkout reference means no callback will ever release the reserved balance
            self._release_pending(payment)
            if isinstance(e, GatewayError):
                raise
            raise GatewayError(f"Checkout failed for payment {payment.id}: {e}") from e

        self.payment_ledger.attach_checkout_reference(payment.id, session.reference)
        payment = self.payment_ledger.get_payment(payment.id)

        total_paid = report.total_paid + amount
        return PaymentReceipt(
            payment=payment,
            on_time=on_time,
            total_paid=total_paid,
            remaining_balance=max(schedule.total_payable - total_paid, ZERO),
            checkout_url=session.checkout_url,
        )

    def complete_payment(self, payment_id: str) -> Result:
        """Gateway confirmed a pending payment: mark it completed and score it"""
        try:
            with self.storage.atomic():
                payment = self.payment_ledger.transition_status(payment_id, PaymentStatus.COMPLETED)
                # Timeliness was decided when the borrower submitted
                on_time = True if payment.on_time is None else payment.on_time
                self._audit_payment(AuditEventType.PAYMENT_COMPLETED, payment)
                score = self._score(payment.borrower_id, on_time)

                schedule = self.schedule_store.get(payment.schedule_id)
                if schedule is None:
                    raise NotFoundError(f"Payable {payment.schedule_id} not found")
                loan_completed = self._complete_loan_if_settled(schedule)
        except LendingError as e:
            logger.warning("Payment completion rejected", extra={"resource": payment_id,
                                                                  "extra": {"reason": e.message}})
            return Result.from_error(e)

        total_paid = self.payment_ledger.sum_payments(schedule.id)
        receipt = PaymentReceipt(
            payment=payment,
            on_time=on_time,
            total_paid=total_paid,
            remaining_balance=max(schedule.total_payable - total_paid, ZERO),
            credit_score=score,
            loan_completed=loan_completed,
        )
        log_action(
            logger, "info", "Payment completed",
            user_id=payment.borrower_id, action="complete_payment", resource=f"payment:{payment_id}",
            extra={"on_time": on_time, "score": score.score, "loan_completed": loan_completed}
        )
        return Result.ok(receipt, message="Payment completed")

    def cancel_payment(self, payment_id: str) -> Result:
        """Gateway abandoned a pending payment; it is excluded from every total from now on"""
        try:
            payment = self.payment_ledger.transition_status(payment_id, PaymentStatus.CANCELLED)
        except LendingError as e:
            logger.warning("Payment cancellation rejected", extra={"resource": payment_id,
                                                                    "extra": {"reason": e.message}})
            return Result.from_error(e)

        self._audit_payment(AuditEventType.PAYMENT_CANCELLED, payment)
        log_action(logger, "info", "Payment cancelled", user_id=payment.borrower_id,
                   action="cancel_payment", resource=f"payment:{payment_id}")
        return Result.ok(payment, message="Payment cancelled")

    def payment_summary(self, schedule_id: str) -> Result:
        """Totals for a schedule without the per-slot breakdown"""
        schedule = self.schedule_store.get(schedule_id)
        if schedule is None:
            return Result.fail(NotFoundError.kind, f"Payable {schedule_id} not found")

        payments = self.payment_ledger.list_payments(schedule_id)
        total_paid = quantize_amount(sum((p.amount for p in payments), ZERO))
        return Result.ok({
            "schedule_id": schedule_id,
            "total_payable": schedule.total_payable,
            "total_paid": total_paid,
            "remaining_balance": max(schedule.total_payable - total_paid, ZERO),
            "payment_count": len(payments),
            "pending_count": sum(1 for p in payments if p.status == PaymentStatus.PENDING),
            "fully_paid": total_paid >= schedule.total_payable,
        }, message="Payment summary retrieved")

    def _release_pending(self, payment: Payment) -> None:
        """Cancel a pending payment whose checkout could not be opened"""
        try:
            self.payment_ledger.transition_status(payment.id, PaymentStatus.CANCELLED)
            self._audit_payment(AuditEventType.PAYMENT_CANCELLED, payment, reason="checkout_failed")
        except Exception:
            # The checkout error is what the caller sees
            logger.exception("Could not cancel payment after checkout failure",
                             extra={"resource": payment.id, "user_id": payment.borrower_id})

    def _score(self, borrower_id: str, on_time: bool) -> CreditScore:
        if self.credit_scores.get_score(borrower_id) is None:
            self.credit_scores.initialize(borrower_id)
        return self.credit_scores.apply_repayment_outcome(borrower_id, on_time)

    def _complete_loan_if_settled(self, schedule: PaymentSchedule) -> bool:
        """Close the loan once completed payments cover the total payable"""
        settled = sum(
            (p.amount for p in self.payment_ledger.list_payments(schedule.id)
             if p.status == PaymentStatus.COMPLETED),
            ZERO
        )
        if settled < schedule.total_payable:
            return False
        return self.loan_service.mark_completed(schedule.loan_id)

    def _audit_payment(self, event_type: AuditEventType, payment: Payment, reason: Optional[str] = None):
        metadata = {
            "schedule_id": payment.schedule_id,
            "amount": payment.amount,
            "modality": payment.modality.value,
            "on_time": payment.on_time,
        }
        if reason:
            metadata["reason"] = reason
        self.audit_trail.log_event(
            event_type=event_type,
            entity_type="payment",
            entity_id=payment.id,
            user_id=payment.borrower_id,
            metadata=metadata
        )
