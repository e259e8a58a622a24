"""
Lending system container and FastAPI dependency
"""

from datetime import datetime
from typing import Callable, Optional
import logging

from fastapi import HTTPException

from ..audit import AuditTrail
from ..config import MicrolendConfig, get_config
from ..credit_score import CreditScoreLedger
from ..currency import Currency
from ..errors import Result
from ..gateway import CheckoutClient, MockCheckoutClient
from ..intake import PaymentIntake
from ..loans import LoanService
from ..payments import PaymentLedger
from ..reconciliation import ReconciliationEngine
from ..schedule import ScheduleStore
from ..storage import StorageInterface, create_storage

logger = logging.getLogger("microlend.api")


class LendingSystem:
    """Lending engine with all components wired to one store"""

    def __init__(
        self,
        storage: Optional[StorageInterface] = None,
        gateway: Optional[CheckoutClient] = None,
        config: Optional[MicrolendConfig] = None,
        clock: Optional[Callable[[], datetime]] = None
    ):
        self.config = config or get_config()
        self.storage = storage or create_storage(self.config.storage_backend, self.config.database_path)

        self.audit_trail = AuditTrail(self.storage, enabled=self.config.enable_audit_logging)
        self.schedule_store = ScheduleStore(self.storage)
        self.payment_ledger = PaymentLedger(self.storage)
        self.credit_scores = CreditScoreLedger(
            self.storage, self.audit_trail, max_retries=self.config.score_update_max_retries
        )
        self.loan_service = LoanService(
            self.storage, self.schedule_store, self.credit_scores, self.audit_trail,
            currency=Currency[self.config.default_currency], clock=clock
        )
        self.reconciliation = ReconciliationEngine(self.schedule_store, self.payment_ledger)
        self.gateway = gateway or self._create_gateway()
        self.intake = PaymentIntake(
            self.storage, self.schedule_store, self.payment_ledger, self.reconciliation,
            self.credit_scores, self.loan_service, self.gateway, self.audit_trail, clock=clock
        )

    def _create_gateway(self) -> CheckoutClient:
        """Real checkout client when a URL is configured, otherwise the offline mock"""
        if not self.config.checkout_gateway_url:
            logger.info("No checkout gateway configured, using mock client")
            return MockCheckoutClient()

        return CheckoutClient(
            base_url=self.config.checkout_gateway_url,
            timeout=self.config.checkout_gateway_timeout,
            api_key=self.config.checkout_gateway_api_key or None
        )

    def close(self) -> None:
        self.gateway.close()
        self.storage.close()


_lending_system: Optional[LendingSystem] = None


def get_lending_system() -> LendingSystem:
    """Dependency returning the process-wide lending system, built on first use"""
    global _lending_system
    if _lending_system is None:
        _lending_system = LendingSystem()
    return _lending_system


def raise_for_result(result: Result) -> None:
    """Turn a failed Result into the matching HTTP error"""
    if not result.success:
        raise HTTPException(status_code=result.status_code, detail=result.to_response())
