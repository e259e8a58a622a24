"""
Payable (schedule) endpoints
"""

from fastapi import APIRouter, Depends

from .dependencies import LendingSystem, get_lending_system, raise_for_result


router = APIRouter()


@router.get("/{schedule_id}/report")
async def get_schedule_report(
    schedule_id: str,
    borrower_id: str,
    system: LendingSystem = Depends(get_lending_system)
):
    """Reconciled per-due-date view of a payable, for its borrower only"""
    result = system.reconciliation.get_schedule_report(schedule_id, borrower_id)
    raise_for_result(result)
    return result.to_response(data=result.data.to_dict())


@router.get("/{schedule_id}/summary")
async def get_payment_summary(
    schedule_id: str,
    system: LendingSystem = Depends(get_lending_system)
):
    """Payment totals for a payable"""
    result = system.intake.payment_summary(schedule_id)
    raise_for_result(result)
    summary = {key: str(value) if not isinstance(value, (bool, int, str)) else value
               for key, value in result.data.items()}
    return result.to_response(data=summary)


@router.get("")
async def list_borrower_schedules(
    borrower_id: str,
    system: LendingSystem = Depends(get_lending_system)
):
    """List the payables of a borrower"""
    schedules = system.schedule_store.list_for_borrower(borrower_id)
    return {"schedules": [s.to_dict() for s in schedules]}
