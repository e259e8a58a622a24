"""
Checkout Gateway Client Module

REST client for the electronic-payment checkout provider. The engine only asks
the provider for a checkout session; settlement arrives later through the
completion and cancellation callbacks handled by payment intake.
"""

import httpx
import logging
import time
from dataclasses import dataclass
from typing import Optional
from decimal import Decimal

from .errors import LendingError

logger = logging.getLogger("microlend.gateway")


class GatewayError(LendingError):
    """Checkout provider could not create a session"""
    pass


@dataclass
class CheckoutSession:
    """Session handed back by the checkout provider"""
    reference: str
    checkout_url: str
    latency_ms: float = 0.0


class CheckoutClient:
    """REST client for the checkout provider"""

    def __init__(
        self,
        base_url: str = "http://localhost:8081",
        timeout: float = 5.0,
        api_key: Optional[str] = None,
        transport: Optional[httpx.BaseTransport] = None
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.api_key = api_key
        self._client = httpx.Client(timeout=timeout, transport=transport)

    def create_checkout_session(
        self,
        payment_id: str,
        amount: Decimal,
        currency: str,
        borrower_id: str,
        description: str = ""
    ) -> CheckoutSession:
        """Open a checkout session for a pending payment

        Raises:
            GatewayError: If the provider is unreachable or rejects the request
        """
        start = time.time()
        headers = {}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"

        # Amounts cross the wire as decimal strings, never floats
        body = {
            "reference_id": payment_id,
            "amount": str(amount),
            "currency": currency,
            "customer_id": borrower_id,
            "description": description or f"Loan repayment {payment_id}",
        }

        try:
            response = self._client.post(f"{self.base_url}/checkout/sessions", json=body, headers=headers)
        except httpx.HTTPError as e:
            logger.error(f"Checkout provider connection failed: {e}")
            raise GatewayError(f"Checkout provider unavailable: {e}")

        latency_ms = (time.time() - start) * 1000
        if response.status_code not in (200, 201):
            logger.warning(f"Checkout provider returned {response.status_code}: {response.text}")
            raise GatewayError(f"Checkout provider rejected payment {payment_id} with status {response.status_code}")

        try:
            data = response.json()
            reference = data.get("id") or data.get("reference")
            checkout_url = data.get("checkout_url", "")
        except (ValueError, AttributeError) as e:
            logger.warning(f"Checkout provider sent an unreadable body: {e}")
            raise GatewayError(f"Checkout provider returned a malformed response for payment {payment_id}")
        if not reference:
            raise GatewayError(f"Checkout provider returned no reference for payment {payment_id}")

        return CheckoutSession(
            reference=reference,
            checkout_url=checkout_url,
            latency_ms=latency_ms
        )

    def health_check(self) -> bool:
        """Check if the provider is reachable"""
        try:
            r = self._client.get(f"{self.base_url}/health")
            return r.status_code == 200
        except httpx.HTTPError:
            return False

    def close(self):
        """Close the HTTP client"""
        self._client.close()


class MockCheckoutClient(CheckoutClient):
    """Offline client for tests and local runs; sessions are derived from the payment id"""

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self.sessions = []

    def create_checkout_session(
        self,
        payment_id: str,
        amount: Decimal,
        currency: str,
        borrower_id: str,
        description: str = ""
    ) -> CheckoutSession:
        session = CheckoutSession(
            reference=f"cs_{payment_id.replace('-', '')[:16]}",
            checkout_url=f"{self.base_url}/checkout/{payment_id}",
            latency_ms=0.0
        )
        self.sessions.append(session)
        return session

    def health_check(self) -> bool:
        return True
