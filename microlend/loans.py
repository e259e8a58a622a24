"""
Loan Module

Handles loan requests, lender approval or denial, and provisioning of the
payment schedule that an approval creates. A loan gets exactly one agreement
and one schedule; both are keyed by the loan request id so the store's
insert-if-absent rejects any second provisioning.
"""

from decimal import Decimal
from datetime import datetime, timezone
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, List, Optional, Any, Union
import logging
import uuid

from .audit import AuditTrail, AuditEventType
from .credit_score import CreditScoreLedger
from .currency import Currency, quantize_amount, to_decimal
from .errors import ConflictError, NotFoundError, ValidationError, Result, LendingError
from .payments import PaymentModality
from .schedule import PaymentSchedule, ScheduleStore, build_plan
from .storage import StorageInterface, StorageRecord

logger = logging.getLogger("microlend.loans")


class LoanStatus(Enum):
    """Loan request lifecycle states"""
    PENDING = "pending"        # Submitted, awaiting a lender
    ACTIVE = "active"          # Approved, schedule provisioned
    DENIED = "denied"          # Rejected by a lender
    COMPLETED = "completed"    # Schedule fully paid


class LoanType(Enum):
    """Purpose categories offered to borrowers"""
    PERSONAL = "personal"
    MICRO_BUSINESS = "micro_business"
    EMERGENCY = "emergency"
    EDUCATION = "education"
    MEDICAL = "medical"
    HOME_IMPROVEMENT = "home_improvement"


@dataclass
class LoanRequest(StorageRecord):
    """A borrower's request for a loan"""
    borrower_id: str
    requested_amount: Decimal
    loan_type: LoanType
    purpose: str = ""
    status: LoanStatus = LoanStatus.PENDING
    lender_id: Optional[str] = None
    decided_at: Optional[datetime] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'LoanRequest':
        cls.validate_document(data)
        decided_at = data.get('decided_at')
        return cls(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            borrower_id=data['borrower_id'],
            requested_amount=Decimal(data['requested_amount']),
            loan_type=LoanType(data['loan_type']),
            purpose=data.get('purpose') or "",
            status=LoanStatus(data.get('status', LoanStatus.PENDING.value)),
            lender_id=data.get('lender_id'),
            decided_at=datetime.fromisoformat(decided_at) if decided_at else None,
        )


@dataclass
class LoanAgreement(StorageRecord):
    """Terms a lender approved; immutable once created"""
    loan_id: str
    borrower_id: str
    lender_id: str
    principal: Decimal
    interest_rate: Decimal
    term_months: int
    payment_modality: PaymentModality

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'LoanAgreement':
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
            term_months=int(data['term_months']),
            payment_modality=PaymentModality(data['payment_modality']),
        )


def parse_modality(modality: Union[PaymentModality, str]) -> PaymentModality:
    """Accept enum members or their names/values, case-insensitively"""
    if isinstance(modality, PaymentModality):
        return modality
    try:
        return PaymentModality(str(modality).strip().lower())
    except ValueError:
        raise ValidationError(f"Unknown payment modality '{modality}', expected cash or ecash")


class LoanService:
    """
    Manages loan requests and their approval into agreements and schedules
    """

    def __init__(
        self,
        storage: StorageInterface,
        schedule_store: ScheduleStore,
        credit_scores: CreditScoreLedger,
        audit_trail: AuditTrail,
        currency: Currency = Currency.PHP,
        clock: Optional[Callable[[], datetime]] = None
    ):
        self.storage = storage
        self.schedule_store = schedule_store
        self.credit_scores = credit_scores
        self.audit_trail = audit_trail
        self.currency = currency
        self.clock = clock or (lambda: datetime.now(timezone.utc))

        self.requests_table = "loan_requests"
        self.agreements_table = "loan_agreements"

    def create_loan_request(
        self,
        borrower_id: str,
        requested_amount: Union[Decimal, int, str],
        loan_type: Union[LoanType, str] = LoanType.PERSONAL,
        purpose: str = ""
    ) -> Result:
        """
        Submit a pending loan request

        The borrower's credit score is created with the first request.
        """
        try:
            if not borrower_id:
                raise ValidationError("Borrower id is required")
            try:
                amount = to_decimal(requested_amount)
            except ValueError as e:
                raise ValidationError(str(e))
            if amount <= 0:
                raise ValidationError(f"Requested amount must be greater than 0, got {amount}")
            try:
                loan_type = LoanType(loan_type) if not isinstance(loan_type, LoanType) else loan_type
            except ValueError:
                raise ValidationError(f"Unknown loan type '{loan_type}'")
        except LendingError as e:
            return Result.from_error(e)

        now = self.clock()
        request = LoanRequest(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            borrower_id=borrower_id,
            requested_amount=quantize_amount(amount),
            loan_type=loan_type,
            purpose=purpose or "",
        )
        self.storage.insert(self.requests_table, request.id, request.to_dict())
        self.credit_scores.initialize(borrower_id)

        self.audit_trail.log_event(
            event_type=AuditEventType.LOAN_REQUESTED,
            entity_type="loan",
            entity_id=request.id,
            user_id=borrower_id,
            metadata={"requested_amount": request.requested_amount, "loan_type": loan_type.value}
        )
        logger.info("Loan request submitted", extra={"user_id": borrower_id, "resource": request.id,
                                                      "action": "create_loan_request"})
        return Result.ok(request, message="Loan request submitted successfully", status_code=201)

    def get_loan_request(self, loan_id: str) -> Optional[LoanRequest]:
        """Get loan request by ID"""
        data = self.storage.load(self.requests_table, loan_id)
        if data:
            return LoanRequest.from_dict(data)
        return None

    def list_loan_requests(self, borrower_id: str) -> List[LoanRequest]:
        """All requests of a borrower, oldest first"""
        requests = [LoanRequest.from_dict(d) for d in self.storage.find(self.requests_table, {"borrower_id": borrower_id})]
        requests.sort(key=lambda r: r.created_at)
        return requests

    def get_agreement(self, loan_id: str) -> Optional[LoanAgreement]:
        """Get the agreement created when the loan was approved"""
        data = self.storage.load(self.agreements_table, loan_id)
        if data:
            return LoanAgreement.from_dict(data)
        return None

    def approve_loan(
        self,
        loan_id: str,
        principal: Union[Decimal, int, str],
        interest_rate: Union[Decimal, int, str],
        term_months: int,
        modality: Union[PaymentModality, str] = PaymentModality.CASH,
        lender_id: str = ""
    ) -> Result:
        """
        Approve a pending request: create its agreement and provision its schedule

        Returns:
            Result carrying the PaymentSchedule; Conflict if the loan already has one
        """
        try:
            return Result.ok(
                self._approve(loan_id, principal, interest_rate, term_months, modality, lender_id),
                message="Loan approved and payable created",
                status_code=201
            )
        except LendingError as e:
            logger.warning("Loan approval rejected", extra={"resource": loan_id, "user_id": lender_id or None,
                                                             "extra": {"reason": e.message}})
            return Result.from_error(e)

    def _approve(self, loan_id, principal, interest_rate, term_months, modality, lender_id) -> PaymentSchedule:
        request = self.get_loan_request(loan_id)
        if request is None:
            raise NotFoundError(f"Loan request {loan_id} not found")
        if self.schedule_store.exists(loan_id):
            raise ConflictError(f"Loan {loan_id} already has a payable")
        if request.status != LoanStatus.PENDING:
            raise ConflictError(f"Loan {loan_id} is {request.status.value}, only pending loans can be approved")

        modality = parse_modality(modality)
        approved_at = self.clock()
        plan = build_plan(principal, interest_rate, term_months, approved_at)
        principal = quantize_amount(principal)
        rate = to_decimal(interest_rate)

        schedule = PaymentSchedule(
            id=loan_id,
            created_at=approved_at,
            updated_at=approved_at,
            loan_id=loan_id,
            borrower_id=request.borrower_id,
            lender_id=lender_id,
            principal=principal,
            interest_rate=rate,
            payment_modality=modality.value,
            plan=plan,
            approval_date=approved_at,
            currency=self.currency,
        )
        agreement = LoanAgreement(
            id=loan_id,
            created_at=approved_at,
            updated_at=approved_at,
            loan_id=loan_id,
            borrower_id=request.borrower_id,
            lender_id=lender_id,
            principal=principal,
            interest_rate=rate,
            term_months=term_months,
            payment_modality=modality,
        )

        with self.storage.atomic():
            if not self.schedule_store.provision(schedule):
                raise ConflictError(f"Loan {loan_id} already has a payable")
            if not self.storage.insert(self.agreements_table, agreement.id, agreement.to_dict()):
                raise ConflictError(f"Loan {loan_id} already has an agreement")
            moved = self.storage.update(
                self.requests_table, loan_id,
                {"status": LoanStatus.ACTIVE.value, "lender_id": lender_id,
                 "decided_at": approved_at.isoformat(), "updated_at": approved_at.isoformat()},
                expected={"status": LoanStatus.PENDING.value}
            )
            if not moved:
                raise ConflictError(f"Loan {loan_id} was decided concurrently")

        self.audit_trail.log_event(
            event_type=AuditEventType.LOAN_APPROVED,
            entity_type="loan",
            entity_id=loan_id,
            user_id=lender_id or None,
            metadata={
                "borrower_id": request.borrower_id,
                "principal": principal,
                "interest_rate": rate,
                "term_months": term_months,
                "payment_modality": modality.value,
            }
        )
        self.audit_trail.log_event(
            event_type=AuditEventType.SCHEDULE_GENERATED,
            entity_type="schedule",
            entity_id=schedule.id,
            metadata={
                "total_payable": plan.total_payable,
                "monthly_required": plan.monthly_required,
                "final_period_amount": plan.final_period_amount,
                "first_due_date": plan.due_dates[0],
                "last_due_date": plan.due_dates[-1],
            }
        )
        logger.info(
            "Loan approved",
            extra={"resource": loan_id, "user_id": lender_id or None, "action": "approve_loan",
                   "extra": {"total_payable": str(plan.total_payable), "term_months": term_months}}
        )
        return schedule

    def deny_loan(self, loan_id: str, lender_id: str = "") -> Result:
        """Reject a pending request"""
        request = self.get_loan_request(loan_id)
        if request is None:
            return Result.fail(NotFoundError.kind, f"Loan request {loan_id} not found")

        now = self.clock()
        moved = self.storage.update(
            self.requests_table, loan_id,
            {"status": LoanStatus.DENIED.value, "lender_id": lender_id,
             "decided_at": now.isoformat(), "updated_at": now.isoformat()},
            expected={"status": LoanStatus.PENDING.value}
        )
        if not moved:
            current = self.get_loan_request(loan_id)
            return Result.fail(
                ConflictError.kind,
                f"Loan {loan_id} is {current.status.value}, only pending loans can be denied"
            )

        self.audit_trail.log_event(
            event_type=AuditEventType.LOAN_DENIED,
            entity_type="loan",
            entity_id=loan_id,
            user_id=lender_id or None,
            metadata={"borrower_id": request.borrower_id}
        )
        return Result.ok(self.get_loan_request(loan_id), message="Loan request denied")

    def mark_completed(self, loan_id: str) -> bool:
        """Move an active loan to completed; False if it was not active"""
        now = self.clock()
        moved = self.storage.update(
            self.requests_table, loan_id,
            {"status": LoanStatus.COMPLETED.value, "updated_at": now.isoformat()},
            expected={"status": LoanStatus.ACTIVE.value}
        )
        if moved:
            self.audit_trail.log_event(
                event_type=AuditEventType.LOAN_COMPLETED,
                entity_type="loan",
                entity_id=loan_id,
                metadata={"completed_at": now}
            )
            logger.info("Loan completed", extra={"resource": loan_id, "action": "complete_loan"})
        return moved
