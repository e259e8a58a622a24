"""
Loan endpoints
"""

from fastapi import APIRouter, HTTPException, Depends, status

from .dependencies import LendingSystem, get_lending_system, raise_for_result
from .schemas import CreateLoanRequestModel, ApproveLoanModel, DenyLoanModel


router = APIRouter()


@router.post("/requests", status_code=status.HTTP_201_CREATED)
async def create_loan_request(
    request: CreateLoanRequestModel,
    system: LendingSystem = Depends(get_lending_system)
):
    """Submit a loan request"""
    result = system.loan_service.create_loan_request(
        borrower_id=request.borrower_id,
        requested_amount=request.amount,
        loan_type=request.loan_type,
        purpose=request.purpose
    )
    raise_for_result(result)
    return result.to_response(data=result.data.to_dict())


@router.get("/requests")
async def list_loan_requests(
    borrower_id: str,
    system: LendingSystem = Depends(get_lending_system)
):
    """List a borrower's loan requests"""
    requests = system.loan_service.list_loan_requests(borrower_id)
    return {"loan_requests": [r.to_dict() for r in requests]}


@router.get("/{loan_id}")
async def get_loan(
    loan_id: str,
    system: LendingSystem = Depends(get_lending_system)
):
    """Get a loan request with its agreement, if approved"""
    request = system.loan_service.get_loan_request(loan_id)
    if not request:
        raise HTTPException(status_code=404, detail="Loan not found")

    agreement = system.loan_service.get_agreement(loan_id)
    return {
        "loan": request.to_dict(),
        "agreement": agreement.to_dict() if agreement else None
    }


@router.post("/{loan_id}/approve", status_code=status.HTTP_201_CREATED)
async def approve_loan(
    loan_id: str,
    request: ApproveLoanModel,
    system: LendingSystem = Depends(get_lending_system)
):
    """Approve a pending loan and create its payable"""
    result = system.loan_service.approve_loan(
        loan_id=loan_id,
        principal=request.principal,
        interest_rate=request.interest_rate,
        term_months=request.term_months,
        modality=request.modality,
        lender_id=request.lender_id
    )
    raise_for_result(result)
    return result.to_response(data=result.data.to_dict())


@router.post("/{loan_id}/deny")
async def deny_loan(
    loan_id: str,
    request: DenyLoanModel,
    system: LendingSystem = Depends(get_lending_system)
):
    """Deny a pending loan"""
    result = system.loan_service.deny_loan(loan_id, lender_id=request.lender_id)
    raise_for_result(result)
    return result.to_response(data=result.data.to_dict())
