"""
Test suite for the reconciliation engine

Tests the per-due-date projection of payments: settlement statuses, carry
forward, trailing advances, conservation of paid amounts, and the ownership
checks that run before any computation.
"""

import pytest
import random
from decimal import Decimal
from datetime import datetime, timezone, date, timedelta
from unittest.mock import Mock

from microlend.errors import ErrorKind
from microlend.payments import Payment, PaymentLedger, PaymentModality, PaymentStatus
from microlend.reconciliation import (
    FoldState, ReconciliationEngine, SlotStatus, build_schedule_report, build_schedule_slots,
    next_unmet_due_date, reconcile_period
)
from microlend.schedule import PaymentSchedule, ScheduleStore, build_plan
from microlend.storage import InMemoryStorage


APPROVED_AT = datetime(2024, 1, 15, 9, 0, tzinfo=timezone.utc)
DUE_1, DUE_2, DUE_3 = date(2024, 2, 15), date(2024, 3, 15), date(2024, 4, 15)


def make_schedule(principal="10000", rate="10", term=3, schedule_id="LOAN1", borrower_id="B1"):
    return PaymentSchedule(
        id=schedule_id,
        created_at=APPROVED_AT,
        updated_at=APPROVED_AT,
        loan_id=schedule_id,
        borrower_id=borrower_id,
        lender_id="L1",
        principal=Decimal(principal),
        interest_rate=Decimal(rate),
        payment_modality="cash",
        plan=build_plan(principal, rate, term, APPROVED_AT),
        approval_date=APPROVED_AT,
    )


_counter = {"n": 0}


def make_payment(amount, when, status=PaymentStatus.COMPLETED, schedule_id="LOAN1"):
    _counter["n"] += 1
    if isinstance(when, date) and not isinstance(when, datetime):
        when = datetime(when.year, when.month, when.day, 12, 0, tzinfo=timezone.utc)
    return Payment(
        id=f"P{_counter['n']:04d}",
        created_at=APPROVED_AT + timedelta(seconds=_counter["n"]),
        updated_at=APPROVED_AT,
        schedule_id=schedule_id,
        borrower_id="B1",
        amount=Decimal(amount),
        payment_date=when,
        modality=PaymentModality.CASH,
        status=status,
    )


def statuses(slots):
    return [slot.status for slot in slots]


class TestScenarios:
    """Reference scenarios against 10,000 at 10% over 3 months"""

    def setup_method(self):
        self.schedule = make_schedule()

    def test_no_payments(self):
        """Test every due date is unpaid without payments"""
        report = build_schedule_report(self.schedule, [])

        assert statuses(report.slots) == [SlotStatus.UNPAID] * 3
        assert report.unpaid_dates == [DUE_1, DUE_2, DUE_3]
        assert report.total_paid == Decimal("0.00")
        assert report.remaining_balance == Decimal("11000.00")
        assert report.next_unmet_due_date == DUE_1
        assert not report.is_fully_paid

    def test_exact_payments_on_due_dates(self):
        """Test exact payments on due dates are Paid"""
        payments = [make_payment("3666.67", DUE_1), make_payment("3666.67", DUE_2), make_payment("3666.66", DUE_3)]
        report = build_schedule_report(self.schedule, payments)

        assert statuses(report.slots) == [SlotStatus.PAID] * 3
        # The last period requires the remainder, so no false Partial
        assert report.slots[2].required_amount == Decimal("3666.66")
        assert report.is_fully_paid
        assert report.next_unmet_due_date is None
        assert report.unpaid_dates == []

    def test_double_payment_on_first_due_date(self):
        """Test a double payment carries into the next period"""
        report = build_schedule_report(self.schedule, [make_payment("7333.34", DUE_1)])

        assert statuses(report.slots) == [SlotStatus.PAID, SlotStatus.ADVANCE_APPLIED, SlotStatus.UNPAID]
        assert report.slots[0].actual_payment == Decimal("3666.67")
        assert report.slots[0].amount_paid == Decimal("7333.34")
        assert report.slots[1].actual_payment == Decimal("3666.67")
        assert report.slots[1].payment_id is None
        assert report.unpaid_dates == [DUE_3]
        assert report.next_unmet_due_date == DUE_3

    def test_double_payment_before_first_due_date(self):
        """Test an early double payment is an Advance carried forward"""
        report = build_schedule_report(self.schedule, [make_payment("7333.34", date(2024, 2, 1))])

        assert statuses(report.slots) == [SlotStatus.ADVANCE, SlotStatus.ADVANCE_APPLIED, SlotStatus.UNPAID]

    def test_partial_payment(self):
        """Test a short payment is Partial and leaves no carry"""
        report = build_schedule_report(self.schedule, [make_payment("1000", date(2024, 2, 10))])
        first = report.slots[0]

        assert first.status == SlotStatus.PARTIAL
        assert first.actual_payment == Decimal("1000")
        assert first.outstanding == Decimal("2666.67")
        assert not first.is_settled
        # Nothing is carried out of a partial period
        assert report.slots[1].status == SlotStatus.UNPAID
        assert report.next_unmet_due_date == DUE_1

    def test_same_day_payment_is_paid_not_advance(self):
        """Test a payment on the due date is Paid, not Advance"""
        late_in_day = datetime(2024, 2, 15, 23, 59, tzinfo=timezone.utc)
        report = build_schedule_report(self.schedule, [make_payment("3666.67", late_in_day)])

        assert report.slots[0].status == SlotStatus.PAID

    def test_payment_date_compared_in_utc(self):
        """Test payment dates are compared as UTC dates"""
        manila = timezone(timedelta(hours=8))
        # Feb 16 in Manila is still Feb 15 in UTC
        paid_at = datetime(2024, 2, 16, 6, 0, tzinfo=manila)
        report = build_schedule_report(self.schedule, [make_payment("3666.67", paid_at)])

        assert report.slots[0].status == SlotStatus.PAID

    def test_late_payment_never_back_fills(self):
        """A payment after a due date is consumed by the next due date"""
        report = build_schedule_report(self.schedule, [make_payment("3666.67", date(2024, 2, 20))])

        assert statuses(report.slots) == [SlotStatus.UNPAID, SlotStatus.ADVANCE, SlotStatus.UNPAID]
        assert report.unpaid_dates == [DUE_1, DUE_3]
        assert report.next_unmet_due_date == DUE_1

    def test_one_payment_per_due_date(self):
        """Test each due date consumes at most one payment"""
        payments = [make_payment("1000", date(2024, 2, 1)), make_payment("2666.67", date(2024, 2, 5))]
        report = build_schedule_report(self.schedule, payments)

        assert statuses(report.slots) == [SlotStatus.PARTIAL, SlotStatus.PARTIAL, SlotStatus.UNPAID]
        assert report.slots[1].payment_id == payments[1].id

    def test_payment_after_last_due_date_becomes_trailing_advance(self):
        """Test payments after the last due date land in trailing slots"""
        payment = make_payment("500", date(2024, 5, 1))
        report = build_schedule_report(self.schedule, [payment])

        assert statuses(report.slots[:3]) == [SlotStatus.UNPAID] * 3
        trailing = report.slots[3]
        assert trailing.trailing
        assert trailing.status == SlotStatus.ADVANCE
        assert trailing.due_date == date(2024, 5, 15)
        assert trailing.actual_payment == Decimal("500")
        assert trailing.payment_id == payment.id
        assert report.total_credited == Decimal("500.00")

    def test_leftover_carry_becomes_trailing_advance(self):
        """Test carry left after the last due date lands in a trailing slot"""
        report = build_schedule_report(self.schedule, [make_payment("12000", date(2024, 2, 1))])

        assert statuses(report.slots) == [
            SlotStatus.ADVANCE, SlotStatus.ADVANCE_APPLIED, SlotStatus.ADVANCE_APPLIED, SlotStatus.ADVANCE
        ]
        assert report.slots[3].trailing
        assert report.slots[3].actual_payment == Decimal("1000.00")
        assert report.total_credited == Decimal("12000.00")

    def test_cancelled_payments_are_ignored(self):
        """Test cancelled payments never reach the report"""
        payments = [
            make_payment("3666.67", DUE_1, status=PaymentStatus.CANCELLED),
            make_payment("3666.67", DUE_2, status=PaymentStatus.PENDING),
        ]
        report = build_schedule_report(self.schedule, payments)

        assert statuses(report.slots) == [SlotStatus.UNPAID, SlotStatus.PAID, SlotStatus.UNPAID]
        assert report.total_paid == Decimal("3666.67")
        assert report.payment_count == 1

    def test_status_counts_skip_trailing_slots(self):
        """Test status counts cover scheduled due dates only"""
        report = build_schedule_report(self.schedule, [make_payment("12000", date(2024, 2, 1))])

        assert report.status_counts["Advance"] == 1
        assert report.status_counts["AdvanceApplied"] == 2
        assert sum(report.status_counts.values()) == 3

    def test_report_serialization(self):
        """Test the report serializes amounts as strings"""
        data = build_schedule_report(self.schedule, [make_payment("1000", date(2024, 2, 10))]).to_dict()

        assert data["slots"][0]["status"] == "Partial"
        assert data["slots"][0]["due_date"] == "2024-02-15"
        assert data["slots"][0]["actual_payment"] == "1000.00"
        assert data["summary"]["remaining_balance"] == "10000.00"
        assert data["summary"]["next_unmet_due_date"] == "2024-02-15"


class TestFold:
    """The fold step is usable without a store"""

    def test_step_threads_state(self):
        """Test one fold step returns the next state"""
        payment = make_payment("5000", date(2024, 2, 1))
        state = reconcile_period(FoldState(remaining=(payment,)), (DUE_1, Decimal("3666.67")))

        assert state.advance_balance == Decimal("1333.33")
        assert state.remaining == ()
        assert state.slots[0].status == SlotStatus.ADVANCE

        state = reconcile_period(state, (DUE_2, Decimal("3666.67")))
        assert state.advance_balance == Decimal("0")
        assert state.slots[1].status == SlotStatus.ADVANCE_APPLIED
        assert state.slots[1].actual_payment == Decimal("1333.33")

    def test_input_state_is_not_mutated(self):
        """Test a fold step leaves its input state untouched"""
        start = FoldState(remaining=(make_payment("100", date(2024, 2, 1)),))
        reconcile_period(start, (DUE_1, Decimal("3666.67")))

        assert start.slots == ()
        assert len(start.remaining) == 1

    def test_next_unmet_due_date(self):
        """Test the next unmet due date follows settled slots"""
        schedule = make_schedule()
        slots, _ = build_schedule_slots(schedule, [make_payment("3666.67", DUE_1)])
        assert next_unmet_due_date(slots) == DUE_2


class TestProperties:
    """Conservation and no double counting over generated payment histories"""

    @pytest.mark.parametrize("seed", range(25))
    def test_conservation_and_single_use(self, seed):
        """Test random payments are conserved and used once"""
        rng = random.Random(seed)
        schedule = make_schedule(principal=str(rng.randint(1000, 50000)), rate=str(rng.randint(0, 30)),
                                 term=rng.randint(1, 12))

        payments = []
        for _ in range(rng.randint(0, 15)):
            when = APPROVED_AT + timedelta(days=rng.randint(0, 450))
            amount = Decimal(rng.randint(1, 500000)) / Decimal(100)
            status = rng.choice([PaymentStatus.COMPLETED, PaymentStatus.COMPLETED, PaymentStatus.PENDING,
                                 PaymentStatus.CANCELLED])
            payments.append(make_payment(str(amount), when, status=status))

        report = build_schedule_report(schedule, payments)
        counted = [p for p in payments if p.status != PaymentStatus.CANCELLED]

        assert report.total_credited == sum((p.amount for p in counted), Decimal("0.00"))

        matched = [slot.payment_id for slot in report.slots if slot.payment_id]
        assert sorted(matched) == sorted(p.id for p in counted)

        scheduled = [slot for slot in report.slots if not slot.trailing]
        assert [slot.due_date for slot in scheduled] == schedule.due_dates
        for slot in scheduled:
            assert slot.actual_payment <= slot.required_amount


class TestReconciliationEngine:
    """Loading, ownership checks and report results"""

    def setup_method(self):
        self.storage = InMemoryStorage()
        self.schedules = ScheduleStore(self.storage)
        self.ledger = PaymentLedger(self.storage)
        self.engine = ReconciliationEngine(self.schedules, self.ledger)
        self.schedules.provision(make_schedule())

    def test_report_for_owner(self):
        """Test the owner receives the report"""
        self.ledger.record_payment("LOAN1", "B1", "3666.67", datetime(2024, 2, 10, tzinfo=timezone.utc))

        result = self.engine.get_schedule_report("LOAN1", "B1")

        assert result.success
        assert result.message == "Payment schedule retrieved"
        assert statuses(result.data.slots) == [SlotStatus.ADVANCE, SlotStatus.UNPAID, SlotStatus.UNPAID]

    def test_missing_schedule(self):
        """Test a missing payable is NotFound"""
        result = self.engine.get_schedule_report("nope", "B1")

        assert result.error == ErrorKind.NOT_FOUND
        assert result.status_code == 404
        assert "nope" in result.message

    def test_other_borrower_rejected_before_computation(self):
        """Test other borrowers are rejected before payments are read"""
        ledger = Mock(wraps=self.ledger)
        engine = ReconciliationEngine(self.schedules, ledger)

        result = engine.get_schedule_report("LOAN1", "B2")

        assert result.error == ErrorKind.UNAUTHORIZED
        assert result.status_code == 403
        ledger.list_payments.assert_not_called()
