"""
Schedule Generator Module

Turns an approved loan's principal, simple interest rate and term into a
monthly payment plan: total payable, per-period required amounts and the
ordered due dates. Generation is pure; persistence belongs to the loan service.
"""

from decimal import Decimal
from datetime import datetime, timezone, date
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Union, Any
import calendar

from .currency import Currency, quantize_amount, to_decimal
from .errors import Result, ValidationError
from .storage import StorageInterface, StorageRecord

MAX_INTEREST_RATE = Decimal('100')


def add_months(start_date: date, months: int) -> date:
    """Add months to a date, clamping the day to the end of shorter months"""
    month = start_date.month - 1 + months
    year = start_date.year + month // 12
    month = month % 12 + 1
    day = min(start_date.day, calendar.monthrange(year, month)[1])
    return date(year, month, day)


def utc_date(moment: Union[datetime, date]) -> date:
    """Calendar date of a moment in UTC; naive datetimes are taken as UTC"""
    if isinstance(moment, datetime):
        if moment.tzinfo is not None:
            moment = moment.astimezone(timezone.utc)
        return moment.date()
    return moment


@dataclass
class PaymentPlan:
    """Amortization plan produced by generate_schedule"""
    total_payable: Decimal
    term_months: int
    monthly_required: Decimal
    final_period_amount: Decimal
    due_dates: List[date] = field(default_factory=list)

    def period_amounts(self) -> List[Decimal]:
        """Required amount per period; the last one absorbs the rounding remainder"""
        amounts = [self.monthly_required] * self.term_months
        if amounts:
            amounts[-1] = self.final_period_amount
        return amounts

    def to_dict(self) -> Dict[str, Any]:
        return {
            'total_payable': str(self.total_payable),
            'term_months': self.term_months,
            'monthly_required': str(self.monthly_required),
            'final_period_amount': str(self.final_period_amount),
            'due_dates': [d.isoformat() for d in self.due_dates],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'PaymentPlan':
        return cls(
            total_payable=Decimal(data['total_payable']),
            term_months=int(data['term_months']),
            monthly_required=Decimal(data['monthly_required']),
            final_period_amount=Decimal(data['final_period_amount']),
            due_dates=[date.fromisoformat(d) for d in data['due_dates']],
        )


def build_plan(
    principal: Union[Decimal, int, str],
    interest_rate_percent: Union[Decimal, int, str],
    term_months: int,
    approval_date: Union[datetime, date]
) -> PaymentPlan:
    """
    Build a payment plan, raising ValidationError on bad input

    total = round(principal * (1 + rate / 100), 2)
    monthly = round(total / term, 2)
    due date n = approval date (UTC) + n calendar months, n = 1..term

    The final period takes total - monthly * (term - 1). Terms too long for the
    total, where that remainder would be zero or negative (0.10 over 6 months
    rounds to 0.02 a month and leaves 0.00), are rejected rather than given an
    empty last installment.
    """
    if isinstance(term_months, bool) or not isinstance(term_months, int) or term_months <= 0:
        raise ValidationError(f"Term must be a positive whole number of months, got {term_months!r}")

    try:
        principal = to_decimal(principal)
        rate = to_decimal(interest_rate_percent)
    except ValueError as e:
        raise ValidationError(str(e))

    if principal <= 0:
        raise ValidationError(f"Principal must be greater than 0, got {principal}")
    if rate < 0 or rate > MAX_INTEREST_RATE:
        raise ValidationError(f"Interest rate must be between 0 and 100 percent, got {rate}")

    total_payable = quantize_amount(principal * (Decimal('1') + rate / Decimal('100')))
    monthly_required = quantize_amount(total_payable / Decimal(term_months))
    final_period_amount = total_payable - monthly_required * (term_months - 1)
    if monthly_required <= 0 or final_period_amount <= 0:
        raise ValidationError(
            f"Total payable {total_payable} cannot be split into {term_months} payments of at least 0.01"
        )

    # Each due date is computed from the anchor, never from the previous due date
    anchor = utc_date(approval_date)
    due_dates = [add_months(anchor, n) for n in range(1, term_months + 1)]

    return PaymentPlan(
        total_payable=total_payable,
        term_months=term_months,
        monthly_required=monthly_required,
        final_period_amount=final_period_amount,
        due_dates=due_dates,
    )


def generate_schedule(
    principal: Union[Decimal, int, str],
    interest_rate_percent: Union[Decimal, int, str],
    term_months: int,
    approval_date: Union[datetime, date]
) -> Result:
    """Generate a payment plan; validation problems come back as a failed Result"""
    try:
        plan = build_plan(principal, interest_rate_percent, term_months, approval_date)
    except ValidationError as e:
        return Result.from_error(e)
    return Result.ok(plan, message="Schedule generated")


@dataclass
class PaymentSchedule(StorageRecord):
    """Persisted payable for one loan agreement; its id is the loan id"""
    loan_id: str
    borrower_id: str
    lender_id: str
    principal: Decimal
    interest_rate: Decimal
    payment_modality: str
    plan: PaymentPlan
    approval_date: datetime
    currency: Currency = Currency.PHP

    @property
    def total_payable(self) -> Decimal:
        return self.plan.total_payable

    @property
    def monthly_required(self) -> Decimal:
        return self.plan.monthly_required

    @property
    def term_months(self) -> int:
        return self.plan.term_months

    @property
    def due_dates(self) -> List[date]:
        return self.plan.due_dates

    def period_amounts(self) -> List[Decimal]:
        return self.plan.period_amounts()

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result['plan'] = self.plan.to_dict()
        result['currency'] = self.currency.code
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'PaymentSchedule':
        cls.validate_document(data)
        return cls(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            loan_id=data['loan_id'],
            borrower_id=data['borrower_id'],
            lender_id=data['lender_id'],
            principal=Decimal(data['principal']),
            interest_rate=Decimal(data['interest_rate']),
            payment_modality=data['payment_modality'],
            plan=PaymentPlan.from_dict(data['plan']),
            approval_date=datetime.fromisoformat(data['approval_date']),
            currency=Currency[data.get('currency', Currency.PHP.code)],
        )


class ScheduleStore:
    """Persistence for payment schedules, one document per loan"""

    def __init__(self, storage: StorageInterface):
        self.storage = storage
        self.schedules_table = "payment_schedules"

    def provision(self, schedule: PaymentSchedule) -> bool:
        """Insert the schedule unless the loan already has one"""
        return self.storage.insert(self.schedules_table, schedule.id, schedule.to_dict())

    def get(self, schedule_id: str) -> Optional[PaymentSchedule]:
        """Get schedule by ID"""
        data = self.storage.load(self.schedules_table, schedule_id)
        if data:
            return PaymentSchedule.from_dict(data)
        return None

    def exists(self, schedule_id: str) -> bool:
        return self.storage.exists(self.schedules_table, schedule_id)

    def list_for_borrower(self, borrower_id: str) -> List[PaymentSchedule]:
        """All schedules owned by a borrower, oldest approval first"""
        schedules = [
            PaymentSchedule.from_dict(data)
            for data in self.storage.find(self.schedules_table, {"borrower_id": borrower_id})
        ]
        schedules.sort(key=lambda s: s.approval_date)
        return schedules
