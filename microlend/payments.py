"""
Payment Ledger Module

Append-only record of borrower remittances against a payment schedule.
Amounts and dates never change once recorded; only the lifecycle status of
an electronic payment moves from pending to completed or cancelled.
"""

from decimal import Decimal
from datetime import datetime, timezone
from dataclasses import dataclass
from enum import Enum
from typing import Dict, List, Optional, Any
import logging
import uuid

from .currency import ZERO, quantize_amount, to_decimal
from .errors import NotFoundError, ValidationError
from .storage import StorageInterface, StorageRecord

logger = logging.getLogger("microlend.payments")


class PaymentStatus(Enum):
    """Payment lifecycle states"""
    PENDING = "pending"        # Awaiting gateway settlement
    COMPLETED = "completed"    # Settled
    CANCELLED = "cancelled"    # Abandoned checkout, never counted


class PaymentModality(Enum):
    """Settlement modality"""
    CASH = "cash"    # Settles immediately
    ECASH = "ecash"  # Card/e-wallet checkout, settles on callback

    @property
    def settles_immediately(self) -> bool:
        return self is PaymentModality.CASH


# Statuses that count toward sums and reconciliation
COUNTED_STATUSES = (PaymentStatus.PENDING, PaymentStatus.COMPLETED)


@dataclass
class Payment(StorageRecord):
    """A single borrower remittance"""
    schedule_id: str
    borrower_id: str
    amount: Decimal
    payment_date: datetime
    modality: PaymentModality
    status: PaymentStatus = PaymentStatus.COMPLETED
    notes: str = ""
    on_time: Optional[bool] = None            # Timeliness captured at intake
    checkout_reference: Optional[str] = None
    settled_at: Optional[datetime] = None

    @property
    def is_counted(self) -> bool:
        return self.status in COUNTED_STATUSES

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Payment':
        cls.validate_document(data)
        settled_at = data.get('settled_at')
        return cls(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            schedule_id=data['schedule_id'],
            borrower_id=data['borrower_id'],
            amount=Decimal(data['amount']),
            payment_date=datetime.fromisoformat(data['payment_date']),
            modality=PaymentModality(data['modality']),
            status=PaymentStatus(data.get('status', PaymentStatus.COMPLETED.value)),
            notes=data.get('notes') or "",
            on_time=data.get('on_time'),
            checkout_reference=data.get('checkout_reference'),
            settled_at=datetime.fromisoformat(settled_at) if settled_at else None,
        )


def _as_utc(moment: datetime) -> datetime:
    if moment.tzinfo is None:
        return moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc)


class PaymentLedger:
    """
    Append and query operations over the payments table
    """

    def __init__(self, storage: StorageInterface):
        self.storage = storage
        self.payments_table = "payments"

    def record_payment(
        self,
        schedule_id: str,
        borrower_id: str,
        amount: Decimal,
        payment_date: Optional[datetime] = None,
        notes: Optional[str] = None,
        modality: PaymentModality = PaymentModality.CASH,
        status: PaymentStatus = PaymentStatus.COMPLETED,
        on_time: Optional[bool] = None
    ) -> Payment:
        """
        Append a payment

        Raises:
            ValidationError: If amount is not positive
        """
        try:
            amount = quantize_amount(to_decimal(amount))
        except ValueError as e:
            raise ValidationError(str(e))
        # Checked after rounding so sub-cent amounts cannot be stored as 0.00
        if amount <= 0:
            raise ValidationError(f"Payment amount must be greater than 0, got {amount}")

        now = datetime.now(timezone.utc)
        payment = Payment(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            schedule_id=schedule_id,
            borrower_id=borrower_id,
            amount=amount,
            payment_date=_as_utc(payment_date or now),
            modality=modality,
            status=status,
            notes=notes or "",
            on_time=on_time,
            settled_at=now if status == PaymentStatus.COMPLETED else None,
        )
        self.storage.insert(self.payments_table, payment.id, payment.to_dict())

        logger.info(
            "Payment recorded",
            extra={"action": "record_payment", "resource": payment.id, "user_id": borrower_id,
                   "extra": {"schedule_id": schedule_id, "amount": str(payment.amount),
                             "status": status.value}}
        )
        return payment

    def get_payment(self, payment_id: str) -> Optional[Payment]:
        """Get payment by ID"""
        data = self.storage.load(self.payments_table, payment_id)
        if data:
            return Payment.from_dict(data)
        return None

    def list_payments(self, schedule_id: str, include_cancelled: bool = False) -> List[Payment]:
        """Payments for a schedule, oldest payment date first"""
        return self._query({"schedule_id": schedule_id}, include_cancelled)

    def list_borrower_payments(self, borrower_id: str, include_cancelled: bool = False) -> List[Payment]:
        """Payments made by a borrower across schedules, oldest payment date first"""
        return self._query({"borrower_id": borrower_id}, include_cancelled)

    def sum_payments(self, schedule_id: str) -> Decimal:
        """Total of counted payments for a schedule"""
        total = sum((p.amount for p in self.list_payments(schedule_id)), ZERO)
        return quantize_amount(total)

    def transition_status(self, payment_id: str, new_status: PaymentStatus) -> Payment:
        """
        Move a pending payment to completed or cancelled

        Raises:
            NotFoundError: If the payment does not exist
            ValidationError: If the target status is pending or the payment
                already left the pending state
        """
        if new_status == PaymentStatus.PENDING:
            raise ValidationError("A payment cannot be moved back to pending")

        current = self.get_payment(payment_id)
        if current is None:
            raise NotFoundError(f"Payment {payment_id} not found")

        now = datetime.now(timezone.utc)
        changes = {"status": new_status.value, "updated_at": now.isoformat()}
        if new_status == PaymentStatus.COMPLETED:
            changes["settled_at"] = now.isoformat()

        applied = self.storage.update(
            self.payments_table, payment_id, changes,
            expected={"status": PaymentStatus.PENDING.value}
        )
        if not applied:
            latest = self.get_payment(payment_id)
            raise ValidationError(
                f"Payment {payment_id} is {latest.status.value if latest else 'missing'}, "
                f"only pending payments can become {new_status.value}"
            )

        logger.info(
            "Payment status changed",
            extra={"action": "transition_payment", "resource": payment_id,
                   "extra": {"from": PaymentStatus.PENDING.value, "to": new_status.value}}
        )
        return self.get_payment(payment_id)

    def attach_checkout_reference(self, payment_id: str, reference: str) -> None:
        """Store the gateway checkout reference on a pending payment"""
        self.storage.update(
            self.payments_table, payment_id,
            {"checkout_reference": reference},
            expected={"status": PaymentStatus.PENDING.value}
        )

    def _query(self, filters: Dict[str, Any], include_cancelled: bool) -> List[Payment]:
        payments = [Payment.from_dict(data) for data in self.storage.find(self.payments_table, filters)]
        if not include_cancelled:
            payments = [p for p in payments if p.is_counted]

        # Sort by payment date; recording order breaks ties
        payments.sort(key=lambda p: (p.payment_date, p.created_at))
        return payments
