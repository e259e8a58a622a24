"""
Payment endpoints, including the checkout gateway callbacks
"""

from fastapi import APIRouter, Depends, status

from .dependencies import LendingSystem, get_lending_system, raise_for_result
from .schemas import SubmitPaymentModel


router = APIRouter()


@router.post("", status_code=status.HTTP_201_CREATED)
async def submit_payment(
    request: SubmitPaymentModel,
    system: LendingSystem = Depends(get_lending_system)
):
    """Submit a payment against a payable"""
    result = system.intake.submit_payment(
        schedule_id=request.schedule_id,
        borrower_id=request.borrower_id,
        amount=request.amount,
        timestamp=request.payment_date,
        notes=request.notes,
        modality=request.modality
    )
    raise_for_result(result)
    return result.to_response(data=result.data.to_dict())


@router.get("")
async def list_borrower_payments(
    borrower_id: str,
    include_cancelled: bool = False,
    system: LendingSystem = Depends(get_lending_system)
):
    """List a borrower's payments across payables"""
    payments = system.payment_ledger.list_borrower_payments(borrower_id, include_cancelled=include_cancelled)
    return {"payments": [p.to_dict() for p in payments]}


@router.post("/{payment_id}/complete")
async def complete_payment(
    payment_id: str,
    system: LendingSystem = Depends(get_lending_system)
):
    """Gateway callback: payment settled"""
    result = system.intake.complete_payment(payment_id)
    raise_for_result(result)
    return result.to_response(data=result.data.to_dict())


@router.post("/{payment_id}/cancel")
async def cancel_payment(
    payment_id: str,
    system: LendingSystem = Depends(get_lending_system)
):
    """Gateway callback: checkout abandoned"""
    result = system.intake.cancel_payment(payment_id)
    raise_for_result(result)
    return result.to_response(data=result.data.to_dict())
