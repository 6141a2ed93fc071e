from fastapi import APIRouter, Depends, HTTPException

from app.api.deps import get_verifier
from app.core.exceptions import SettlementError
from app.schemas.balance import BalanceCheckRequest, BalanceCheckResponse
from app.services.balance_service import BalanceVerifier

router = APIRouter()


@router.post("/check", response_model=BalanceCheckResponse)
async def check_balance(
    request: BalanceCheckRequest,
    verifier: BalanceVerifier = Depends(get_verifier)
):
    """Check whether a wallet holds enough of a token on a chain"""
    try:
        check = await verifier.check_balance(
            request.wallet_address,
            request.chain_id,
            request.token_type,
            request.required_amount
        )
    except SettlementError as e:
        raise HTTPException(status_code=e.status_code, detail=e.to_dict())

    return BalanceCheckResponse(
        sufficient=check.sufficient,
        current_balance=check.current_balance,
        required_balance=check.required_balance,
        token_address=check.token_address,
        token_symbol=check.token_symbol,
        chain_id=request.chain_id
    )
