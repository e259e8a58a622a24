"""
Pydantic schemas for API requests
"""

from datetime import datetime
from typing import Optional
from pydantic import BaseModel, Field


# Loan schemas
class CreateLoanRequestModel(BaseModel):
    borrower_id: str
    amount: str = Field(..., description="Decimal amount as string")
    loan_type: str = "personal"
    purpose: str = ""


class ApproveLoanModel(BaseModel):
    lender_id: str
    principal: str = Field(..., description="Decimal amount as string")
    interest_rate: str = Field(..., description="Simple interest in percent, 0 to 100")
    term_months: int
    modality: str = "cash"


class DenyLoanModel(BaseModel):
    lender_id: str


# Payment schemas
class SubmitPaymentModel(BaseModel):
    schedule_id: str
    borrower_id: str
    amount: str = Field(..., description="Decimal amount as string")
    payment_date: Optional[datetime] = None  # ISO timestamp, UTC when no offset is given
    notes: Optional[str] = None
    modality: Optional[str] = None  # Defaults to the schedule's modality
