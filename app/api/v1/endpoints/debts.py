from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import ValidationError

from app.api.deps import get_ledger
from app.core.exceptions import SettlementError
from app.models.debt import Identity
from app.schemas.debt import DebtCreate, DebtResponse, UserDebtsResponse
from app.services.ledger_service import SettlementLedger

router = APIRouter()


@router.post("/", response_model=DebtResponse, status_code=status.HTTP_201_CREATED)
async def create_debt(
    debt_in: DebtCreate,
    ledger: SettlementLedger = Depends(get_ledger)
):
    """Record a debt owed to the payer by one or more owers"""
    try:
        debt = debt_in.to_debt()
    except ValidationError as e:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=[err["msg"] for err in e.errors()]
        )
    try:
        debt = await ledger.create_debt(debt)
    except SettlementError as e:
        raise HTTPException(status_code=e.status_code, detail=e.to_dict())
    return DebtResponse.from_debt(debt)


@router.get("/", response_model=UserDebtsResponse)
async def list_debts(
    wallet_address: str = Query(..., pattern=r"^0x[0-9a-fA-F]{40}$"),
    ledger: SettlementLedger = Depends(get_ledger)
):
    """Debts a wallet takes part in: owed to it, owed by it, and completed"""
    result = await ledger.query_for_user(Identity(wallet_address=wallet_address))
    return UserDebtsResponse(
        owed=[DebtResponse.from_debt(d) for d in result.owed],
        owing=[DebtResponse.from_debt(d) for d in result.owing],
        completed=[DebtResponse.from_debt(d) for d in result.completed]
    )


@router.get("/{debt_id}", response_model=DebtResponse)
async def get_debt(
    debt_id: str,
    ledger: SettlementLedger = Depends(get_ledger)
):
    """Get a debt with its settlement attempts"""
    try:
        debt = await ledger.require_debt(debt_id)
    except SettlementError as e:
        raise HTTPException(status_code=e.status_code, detail=e.to_dict())
    return DebtResponse.from_debt(debt)
