"""
Reconciliation Engine Module

Projects the payments recorded against a schedule onto its due dates.

The projection is a left fold over the ordered due dates. The state threaded
through the fold is immutable: the carry-forward advance balance, the payments
not yet consumed (oldest first) and the slots emitted so far. For each due date:

* the next payment, if dated on or before the due date, is consumed together
  with the carried balance: a full period is credited (Paid when paid on the
  due date, Advance when paid before it) and any excess is carried forward,
  otherwise everything available is credited and the slot is Partial;
* with no eligible payment, a carried balance is applied (AdvanceApplied);
  otherwise the slot is Unpaid.

Payments left over after the last due date, and any balance still carried,
become trailing Advance slots one month after the last due date, so every
payment amount appears in the report exactly once. Consumption is forward-only:
a payment made after a due date never back-fills that slot.
"""

from decimal import Decimal
from datetime import date, datetime
from dataclasses import dataclass, field
from enum import Enum
from functools import reduce
from typing import Dict, List, Optional, Tuple, Any
import logging

from .currency import ZERO, quantize_amount
from .errors import NotFoundError, Result, UnauthorizedError, LendingError
from .payments import Payment, PaymentLedger
from .schedule import PaymentSchedule, ScheduleStore, add_months, utc_date

logger = logging.getLogger("microlend.reconciliation")


class SlotStatus(Enum):
    """Per-due-date reconciliation status"""
    UNPAID = "Unpaid"
    PARTIAL = "Partial"
    PAID = "Paid"
    ADVANCE = "Advance"
    ADVANCE_APPLIED = "AdvanceApplied"


SETTLING_STATUSES = (SlotStatus.PAID, SlotStatus.ADVANCE, SlotStatus.ADVANCE_APPLIED)


@dataclass(frozen=True)
class ScheduleSlot:
    """One due date's projection; derived on read, never stored"""
    due_date: date
    required_amount: Decimal
    amount_paid: Decimal          # amount of the matched payment, if any
    actual_payment: Decimal       # amount credited to this period
    status: SlotStatus
    payment_date: Optional[datetime] = None
    payment_id: Optional[str] = None
    trailing: bool = False        # beyond the scheduled due dates

    @property
    def is_settled(self) -> bool:
        return self.status in SETTLING_STATUSES and self.actual_payment >= self.required_amount

    @property
    def outstanding(self) -> Decimal:
        return max(self.required_amount - self.actual_payment, ZERO)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "due_date": self.due_date.isoformat(),
            "payment_date": self.payment_date.isoformat() if self.payment_date else None,
            "payment_id": self.payment_id,
            "amount_paid": str(self.amount_paid),
            "required_amount": str(self.required_amount),
            "actual_payment": str(self.actual_payment),
            "status": self.status.value,
            "trailing": self.trailing,
        }


@dataclass(frozen=True)
class FoldState:
    """Immutable state threaded through the reconciliation fold"""
    advance_balance: Decimal = ZERO
    remaining: Tuple[Payment, ...] = ()
    slots: Tuple[ScheduleSlot, ...] = ()
    unpaid_dates: Tuple[date, ...] = ()


def _without_payment(state: FoldState, due_date: date, required: Decimal) -> FoldState:
    """Due date with no eligible payment: draw on the carried balance or leave it unpaid"""
    if state.advance_balance > ZERO:
        applied = min(state.advance_balance, required)
        slot = ScheduleSlot(
            due_date=due_date,
            required_amount=required,
            amount_paid=ZERO,
            actual_payment=applied,
            status=SlotStatus.ADVANCE_APPLIED,
        )
        return FoldState(
            advance_balance=state.advance_balance - applied,
            remaining=state.remaining,
            slots=state.slots + (slot,),
            unpaid_dates=state.unpaid_dates,
        )

    slot = ScheduleSlot(
        due_date=due_date,
        required_amount=required,
        amount_paid=ZERO,
        actual_payment=ZERO,
        status=SlotStatus.UNPAID,
    )
    return FoldState(
        advance_balance=state.advance_balance,
        remaining=state.remaining,
        slots=state.slots + (slot,),
        unpaid_dates=state.unpaid_dates + (due_date,),
    )


def _with_payment(state: FoldState, due_date: date, required: Decimal) -> FoldState:
    """Consume the head payment against this due date"""
    payment, rest = state.remaining[0], state.remaining[1:]
    available = payment.amount + state.advance_balance

    if available >= required:
        actual = required
        balance = available - required
        status = SlotStatus.ADVANCE if utc_date(payment.payment_date) < due_date else SlotStatus.PAID
    else:
        actual = available
        balance = ZERO
        status = SlotStatus.PARTIAL

    slot = ScheduleSlot(
        due_date=due_date,
        required_amount=required,
        amount_paid=payment.amount,
        actual_payment=actual,
        status=status,
        payment_date=payment.payment_date,
        payment_id=payment.id,
    )
    return FoldState(
        advance_balance=balance,
        remaining=rest,
        slots=state.slots + (slot,),
        unpaid_dates=state.unpaid_dates,
    )


def reconcile_period(state: FoldState, period: Tuple[date, Decimal]) -> FoldState:
    """One step of the fold"""
    due_date, required = period
    if state.remaining and utc_date(state.remaining[0].payment_date) <= due_date:
        return _with_payment(state, due_date, required)
    return _without_payment(state, due_date, required)


def _trailing_slots(state: FoldState, synthetic_due: date) -> Tuple[ScheduleSlot, ...]:
    slots = []
    if state.advance_balance > ZERO:
        # Carry left over after the final due date
        slots.append(ScheduleSlot(
            due_date=synthetic_due,
            required_amount=ZERO,
            amount_paid=ZERO,
            actual_payment=state.advance_balance,
            status=SlotStatus.ADVANCE,
            trailing=True,
        ))
    for payment in state.remaining:
        slots.append(ScheduleSlot(
            due_date=synthetic_due,
            required_amount=ZERO,
            amount_paid=payment.amount,
            actual_payment=payment.amount,
            status=SlotStatus.ADVANCE,
            payment_date=payment.payment_date,
            payment_id=payment.id,
            trailing=True,
        ))
    return tuple(slots)


def sort_payments(payments: List[Payment]) -> Tuple[Payment, ...]:
    """Counted payments ordered by payment date, recording order breaking ties"""
    counted = [p for p in payments if p.is_counted]
    return tuple(sorted(counted, key=lambda p: (p.payment_date, p.created_at)))


def build_schedule_slots(schedule: PaymentSchedule, payments: List[Payment]) -> Tuple[List[ScheduleSlot], List[date]]:
    """
    Run the fold over a schedule and its payments

    Returns:
        (slots including trailing ones, unpaid due dates)
    """
    periods = list(zip(schedule.due_dates, schedule.period_amounts()))
    final = reduce(reconcile_period, periods, FoldState(remaining=sort_payments(payments)))

    synthetic_due = add_months(schedule.due_dates[-1], 1)
    slots = list(final.slots) + list(_trailing_slots(final, synthetic_due))
    return slots, list(final.unpaid_dates)


def next_unmet_due_date(slots: List[ScheduleSlot]) -> Optional[date]:
    """First scheduled due date whose period is not fully settled"""
    for slot in slots:
        if not slot.trailing and not slot.is_settled:
            return slot.due_date
    return None


@dataclass
class ScheduleReport:
    """Reconciled view of one schedule"""
    schedule_id: str
    borrower_id: str
    slots: List[ScheduleSlot]
    unpaid_dates: List[date]
    total_payable: Decimal
    total_paid: Decimal
    monthly_required: Decimal
    final_period_amount: Decimal
    payment_count: int
    next_unmet_due_date: Optional[date] = None
    status_counts: Dict[str, int] = field(default_factory=dict)

    @property
    def remaining_balance(self) -> Decimal:
        return max(self.total_payable - self.total_paid, ZERO)

    @property
    def is_fully_paid(self) -> bool:
        return self.total_paid >= self.total_payable

    @property
    def total_credited(self) -> Decimal:
        return quantize_amount(sum((s.actual_payment for s in self.slots), ZERO))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "schedule_id": self.schedule_id,
            "borrower_id": self.borrower_id,
            "slots": [slot.to_dict() for slot in self.slots],
            "summary": {
                "total_payable": str(self.total_payable),
                "total_paid": str(self.total_paid),
                "remaining_balance": str(self.remaining_balance),
                "monthly_required": str(self.monthly_required),
                "final_period_amount": str(self.final_period_amount),
                "payment_count": self.payment_count,
                "is_fully_paid": self.is_fully_paid,
                "next_unmet_due_date": self.next_unmet_due_date.isoformat() if self.next_unmet_due_date else None,
                "unpaid_dates": [d.isoformat() for d in self.unpaid_dates],
                "status_counts": self.status_counts,
            },
        }


def build_schedule_report(schedule: PaymentSchedule, payments: List[Payment]) -> ScheduleReport:
    """Pure report over a schedule and a snapshot of its payments"""
    slots, unpaid_dates = build_schedule_slots(schedule, payments)
    counted = sort_payments(payments)

    status_counts = {status.value: 0 for status in SlotStatus}
    for slot in slots:
        if not slot.trailing:
            status_counts[slot.status.value] += 1

    return ScheduleReport(
        schedule_id=schedule.id,
        borrower_id=schedule.borrower_id,
        slots=slots,
        unpaid_dates=unpaid_dates,
        total_payable=schedule.total_payable,
        total_paid=quantize_amount(sum((p.amount for p in counted), ZERO)),
        monthly_required=schedule.monthly_required,
        final_period_amount=schedule.plan.final_period_amount,
        payment_count=len(counted),
        next_unmet_due_date=next_unmet_due_date(slots),
        status_counts=status_counts,
    )


class ReconciliationEngine:
    """
    Loads a schedule and its payments and reconciles them for the owning borrower
    """

    def __init__(self, schedule_store: ScheduleStore, payment_ledger: PaymentLedger):
        self.schedule_store = schedule_store
        self.payment_ledger = payment_ledger

    def load_owned_schedule(self, schedule_id: str, borrower_id: str) -> PaymentSchedule:
        """
        Raises:
            NotFoundError: If the schedule does not exist
            UnauthorizedError: If the schedule belongs to another borrower
        """
        schedule = self.schedule_store.get(schedule_id)
        if schedule is None:
            raise NotFoundError(f"Payable {schedule_id} not found")
        if schedule.borrower_id != borrower_id:
            raise UnauthorizedError(f"Borrower {borrower_id} does not own payable {schedule_id}")
        return schedule

    def report_for(self, schedule: PaymentSchedule) -> ScheduleReport:
        """Reconcile an already-loaded schedule"""
        return build_schedule_report(schedule, self.payment_ledger.list_payments(schedule.id))

    def get_schedule_report(self, schedule_id: str, borrower_id: str) -> Result:
        """Report for a schedule, checked for ownership before anything is computed"""
        try:
            schedule = self.load_owned_schedule(schedule_id, borrower_id)
        except LendingError as e:
            logger.warning("Schedule report rejected", extra={"user_id": borrower_id, "resource": schedule_id,
                                                               "extra": {"reason": e.message}})
            return Result.from_error(e)

        return Result.ok(self.report_for(schedule), message="Payment schedule retrieved")
