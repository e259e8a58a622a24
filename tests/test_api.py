"""
API integration tests

Drives the FastAPI application end to end against an in-memory lending system.
"""

from datetime import datetime, timezone
from fastapi.testclient import TestClient

from microlend.api import create_app
from microlend.api.dependencies import LendingSystem, get_lending_system
from microlend.config import MicrolendConfig
from microlend.gateway import MockCheckoutClient
from microlend.storage import InMemoryStorage


class TestLendingAPI:
    """Loan request to repayment over HTTP"""

    def setup_method(self):
        self.now = datetime(2024, 1, 15, 9, 0, tzinfo=timezone.utc)
        self.system = LendingSystem(
            storage=InMemoryStorage(),
            gateway=MockCheckoutClient(),
            config=MicrolendConfig(storage_backend="memory"),
            clock=lambda: self.now
        )
        self.app = create_app()
        self.app.dependency_overrides[get_lending_system] = lambda: self.system
        self.client = TestClient(self.app)

    def teardown_method(self):
        self.app.dependency_overrides.clear()

    def _approved_loan(self, modality="cash"):
        response = self.client.post("/loans/requests", json={
            "borrower_id": "B1", "amount": "10000", "loan_type": "micro_business", "purpose": "inventory"
        })
        assert response.status_code == 201
        loan_id = response.json()["data"]["id"]

        response = self.client.post(f"/loans/{loan_id}/approve", json={
            "lender_id": "L1", "principal": "10000", "interest_rate": "10", "term_months": 3, "modality": modality
        })
        assert response.status_code == 201
        return loan_id

    def _pay(self, schedule_id, amount, **extra):
        return self.client.post("/payments", json={
            "schedule_id": schedule_id, "borrower_id": "B1", "amount": amount, **extra
        })

    def test_health(self):
        """Test the health endpoint reports the service as healthy"""
        response = self.client.get("/health")

        assert response.status_code == 200
        assert response.json()["status"] == "healthy"

    def test_loan_lifecycle(self):
        """Test request, approval, payment, report and score over HTTP"""
        loan_id = self._approved_loan()

        loan = self.client.get(f"/loans/{loan_id}").json()
        assert loan["loan"]["status"] == "active"
        assert loan["agreement"]["principal"] == "10000.00"

        schedules = self.client.get("/schedules", params={"borrower_id": "B1"}).json()["schedules"]
        assert [s["id"] for s in schedules] == [loan_id]
        assert schedules[0]["plan"]["total_payable"] == "11000.00"

        self.now = datetime(2024, 2, 10, tzinfo=timezone.utc)
        response = self._pay(loan_id, "3666.67", notes="first installment")

        assert response.status_code == 201
        receipt = response.json()["data"]
        assert receipt["on_time"] is True
        assert receipt["status"] == "completed"
        assert receipt["remaining_balance"] == "7333.33"
        assert receipt["credit_score"] == 620

        report = self.client.get(f"/schedules/{loan_id}/report", params={"borrower_id": "B1"}).json()["data"]
        assert [slot["status"] for slot in report["slots"]] == ["Advance", "Unpaid", "Unpaid"]
        assert report["summary"]["total_paid"] == "3666.67"

        summary = self.client.get(f"/schedules/{loan_id}/summary").json()["data"]
        assert summary["remaining_balance"] == "7333.33"
        assert summary["payment_count"] == 1

        score = self.client.get("/scores/B1").json()["data"]
        assert score["score"] == 620
        assert score["category"] == "Fair"

        payments = self.client.get("/payments", params={"borrower_id": "B1"}).json()["payments"]
        assert len(payments) == 1

    def test_overpayment_conflict(self):
        """Test an overpayment maps to 409 with a formatted balance"""
        loan_id = self._approved_loan()

        response = self._pay(loan_id, "11000.01")

        assert response.status_code == 409
        detail = response.json()["detail"]
        assert detail["error"] == "conflict"
        assert "PHP 11,000.00" in detail["message"]

    def test_report_for_other_borrower_is_forbidden(self):
        """Test another borrower's report request maps to 403"""
        loan_id = self._approved_loan()

        response = self.client.get(f"/schedules/{loan_id}/report", params={"borrower_id": "B2"})

        assert response.status_code == 403
        assert response.json()["detail"]["error"] == "unauthorized"

    def test_not_found(self):
        """Test missing scores, loans and payables map to 404"""
        assert self.client.get("/scores/nobody").status_code == 404
        assert self.client.get("/loans/missing").status_code == 404
        assert self.client.get("/schedules/missing/summary").status_code == 404

    def test_invalid_approval_terms(self):
        """Test invalid approval terms map to 400"""
        response = self.client.post("/loans/requests", json={"borrower_id": "B1", "amount": "5000"})
        loan_id = response.json()["data"]["id"]

        response = self.client.post(f"/loans/{loan_id}/approve", json={
            "lender_id": "L1", "principal": "5000", "interest_rate": "10", "term_months": 0
        })

        assert response.status_code == 400
        assert response.json()["detail"]["error"] == "validation"

    def test_second_approval_conflict(self):
        """Test approving an approved loan maps to 409"""
        loan_id = self._approved_loan()

        response = self.client.post(f"/loans/{loan_id}/approve", json={
            "lender_id": "L2", "principal": "5000", "interest_rate": "5", "term_months": 6
        })

        assert response.status_code == 409

    def test_deny_loan(self):
        """Test denying a pending loan over HTTP"""
        response = self.client.post("/loans/requests", json={"borrower_id": "B1", "amount": "5000"})
        loan_id = response.json()["data"]["id"]

        response = self.client.post(f"/loans/{loan_id}/deny", json={"lender_id": "L1"})

        assert response.status_code == 200
        assert response.json()["data"]["status"] == "denied"

    def test_electronic_payment_callbacks(self):
        """Test gateway completion and cancellation callbacks"""
        loan_id = self._approved_loan(modality="ecash")

        pending = self._pay(loan_id, "500").json()["data"]
        assert pending["status"] == "pending"
        assert pending["checkout_url"].endswith(pending["payment_id"])

        completed = self.client.post(f"/payments/{pending['payment_id']}/complete")
        assert completed.status_code == 200
        assert completed.json()["data"]["status"] == "completed"

        other = self._pay(loan_id, "250").json()["data"]
        cancelled = self.client.post(f"/payments/{other['payment_id']}/cancel")
        assert cancelled.json()["data"]["status"] == "cancelled"

        # A settled payment cannot be cancelled afterwards
        again = self.client.post(f"/payments/{pending['payment_id']}/cancel")
        assert again.status_code == 400

        summary = self.client.get(f"/schedules/{loan_id}/summary").json()["data"]
        assert summary["total_paid"] == "500.00"

    def test_missing_fields_rejected_by_schema(self):
        """Test request models reject incomplete bodies"""
        response = self.client.post("/payments", json={"borrower_id": "B1"})
        assert response.status_code == 422
