"""
Credit Score Module

Per-borrower credit score derived from repayment timeliness. Scores start at
600, move +20 for an on-time repayment and -30 for a missed one, and are
clamped to [300, 850]. Updates are compare-and-swap writes on a version field
so concurrent repayment events never lose an increment.
"""

from datetime import datetime, timezone
from dataclasses import dataclass
from typing import Dict, Optional, Any
import logging

from .audit import AuditTrail, AuditEventType
from .errors import ConflictError, NotFoundError, Result, LendingError
from .storage import StorageInterface, StorageRecord

logger = logging.getLogger("microlend.credit_score")

INITIAL_SCORE = 600
MIN_SCORE = 300
MAX_SCORE = 850
ON_TIME_STEP = 20
MISSED_STEP = -30


def clamp_score(score: int) -> int:
    """Clamp a score to the [300, 850] band"""
    return max(MIN_SCORE, min(MAX_SCORE, score))


def score_category(score: int) -> str:
    """Map a numeric score to its reporting band"""
    if score < 580:
        return "Poor"
    elif score < 670:
        return "Fair"
    elif score < 740:
        return "Good"
    elif score < 800:
        return "Very Good"
    return "Excellent"


@dataclass
class CreditScore(StorageRecord):
    """Credit score record keyed by borrower id"""
    borrower_id: str
    score: int = INITIAL_SCORE
    # Incremented on every repayment event, not once per loan
    total_loans: int = 0
    successful_repayments: int = 0
    missed_repayments: int = 0
    last_updated: Optional[datetime] = None
    version: int = 0

    @property
    def category(self) -> str:
        return score_category(self.score)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'CreditScore':
        cls.validate_document(data)
        last_updated = data.get('last_updated')
        return cls(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            borrower_id=data['borrower_id'],
            score=int(data['score']),
            total_loans=int(data['total_loans']),
            successful_repayments=int(data['successful_repayments']),
            missed_repayments=int(data['missed_repayments']),
            last_updated=datetime.fromisoformat(last_updated) if last_updated else None,
            version=int(data['version']),
        )

    def apply_outcome(self, on_time: bool, now: datetime) -> Dict[str, Any]:
        """Field changes produced by one repayment outcome"""
        if on_time:
            score = self.score + ON_TIME_STEP
            successful, missed = self.successful_repayments + 1, self.missed_repayments
        else:
            score = self.score + MISSED_STEP
            successful, missed = self.successful_repayments, self.missed_repayments + 1

        return {
            'score': clamp_score(score),
            'total_loans': self.total_loans + 1,
            'successful_repayments': successful,
            'missed_repayments': missed,
            'last_updated': now.isoformat(),
            'updated_at': now.isoformat(),
            'version': self.version + 1,
        }


class CreditScoreLedger:
    """
    Owns the credit_scores table
    """

    def __init__(self, storage: StorageInterface, audit_trail: AuditTrail, max_retries: int = 10):
        self.storage = storage
        self.audit_trail = audit_trail
        self.max_retries = max_retries
        self.scores_table = "credit_scores"

    def initialize(self, borrower_id: str) -> Result:
        """
        Create a borrower's score at 600 if none exists

        Idempotent: an existing record is returned untouched.
        """
        now = datetime.now(timezone.utc)
        record = CreditScore(
            id=borrower_id,
            created_at=now,
            updated_at=now,
            borrower_id=borrower_id,
            last_updated=now,
        )

        created = self.storage.insert(self.scores_table, borrower_id, record.to_dict())
        if not created:
            return Result.ok(self.get_score(borrower_id), message="Credit score already initialized")

        self.audit_trail.log_event(
            event_type=AuditEventType.CREDIT_SCORE_INITIALIZED,
            entity_type="credit_score",
            entity_id=borrower_id,
            metadata={"score": INITIAL_SCORE}
        )
        logger.info("Credit score initialized", extra={"user_id": borrower_id, "action": "initialize_score"})
        return Result.ok(record, message="Credit score initialized", status_code=201)

    def get_score(self, borrower_id: str) -> Optional[CreditScore]:
        """Get a borrower's score record"""
        data = self.storage.load(self.scores_table, borrower_id)
        if data:
            return CreditScore.from_dict(data)
        return None

    def get_score_result(self, borrower_id: str) -> Result:
        """Score lookup as a Result, for callers that need a structured not-found"""
        score = self.get_score(borrower_id)
        if score is None:
            return Result.fail(NotFoundError.kind, f"Credit score not found for borrower {borrower_id}")
        return Result.ok(score, message="Credit score retrieved")

    def record_repayment_outcome(self, borrower_id: str, on_time: bool) -> Result:
        """Apply one repayment outcome"""
        try:
            return Result.ok(self.apply_repayment_outcome(borrower_id, on_time), message="Credit score updated")
        except LendingError as e:
            return Result.from_error(e)

    def apply_repayment_outcome(self, borrower_id: str, on_time: bool) -> CreditScore:
        """
        Compare-and-swap update of the score record

        Raises:
            NotFoundError: If the borrower has no score record
            ConflictError: If every retry lost the race to another writer
        """
        for _ in range(self.max_retries):
            current = self.get_score(borrower_id)
            if current is None:
                raise NotFoundError(f"Credit score not found for borrower {borrower_id}")

            changes = current.apply_outcome(on_time, datetime.now(timezone.utc))
            if self.storage.update(self.scores_table, borrower_id, changes,
                                   expected={"version": current.version}):
                break
            logger.debug("Credit score version moved, retrying", extra={"user_id": borrower_id})
        else:
            raise ConflictError(
                f"Credit score for borrower {borrower_id} is being updated concurrently, "
                f"gave up after {self.max_retries} attempts"
            )

        self.audit_trail.log_event(
            event_type=AuditEventType.CREDIT_SCORE_UPDATED,
            entity_type="credit_score",
            entity_id=borrower_id,
            metadata={
                "on_time": on_time,
                "previous_score": current.score,
                "score": changes['score'],
                "version": changes['version'],
            }
        )
        logger.info(
            "Credit score updated",
            extra={"user_id": borrower_id, "action": "record_repayment_outcome",
                   "extra": {"on_time": on_time, "from": current.score, "to": changes['score']}}
        )
        return self.get_score(borrower_id)
