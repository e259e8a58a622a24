"""
Credit score endpoints
"""

from fastapi import APIRouter, Depends

from .dependencies import LendingSystem, get_lending_system, raise_for_result


router = APIRouter()


@router.get("/{borrower_id}")
async def get_credit_score(
    borrower_id: str,
    system: LendingSystem = Depends(get_lending_system)
):
    """Get a borrower's credit score and its category"""
    result = system.credit_scores.get_score_result(borrower_id)
    raise_for_result(result)

    score = result.data
    data = score.to_dict()
    data["category"] = score.category
    return result.to_response(data=data)
