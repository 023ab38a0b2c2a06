from fastapi import APIRouter, Depends

from app.core.security import get_current_operator
from app.models.run import Operator

router = APIRouter()


@router.get("/me", response_model=Operator)
async def read_current_operator(operator: Operator = Depends(get_current_operator)):
    """
    Returns the operator named by the bearer token.
    Useful to check a token before approving anything with it.
    """
    return operator
