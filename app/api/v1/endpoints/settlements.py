from fastapi import APIRouter, Depends, HTTPException, Query

from app.api.deps import get_coordinator
from app.core.exceptions import SettlementError
from app.schemas.debt import DebtResponse
from app.schemas.settlement import (
    PaymentIntent,
    PrepareDirectRequest,
    PrepareRequest,
    SubmitRequest,
)
from app.services.settlement_service import SettlementCoordinator

router = APIRouter()


@router.post("/prepare", response_model=PaymentIntent)
async def prepare_settlement(
    request: PrepareRequest,
    coordinator: SettlementCoordinator = Depends(get_coordinator)
):
    """Build the payment intent for an ower's share of a debt (no side effects)"""
    try:
        return await coordinator.prepare(
            request.debt_id,
            request.ower,
            request.source_chain,
            request.token_type
        )
    except SettlementError as e:
        raise HTTPException(status_code=e.status_code, detail=e.to_dict())


@router.post("/prepare-direct", response_model=PaymentIntent)
async def prepare_direct_settlement(
    request: PrepareDirectRequest,
    coordinator: SettlementCoordinator = Depends(get_coordinator)
):
    """Build a payment intent for an ad hoc payment between two wallets"""
    try:
        return await coordinator.prepare_direct(
            request.payer,
            request.ower,
            request.amount,
            request.source_chain,
            request.token_type,
            request.debt_id
        )
    except SettlementError as e:
        raise HTTPException(status_code=e.status_code, detail=e.to_dict())


@router.post("/submit", response_model=DebtResponse)
async def submit_settlement(
    request: SubmitRequest,
    wait_for_confirmation: bool = Query(False),
    coordinator: SettlementCoordinator = Depends(get_coordinator)
):
    """
    Record a signed and broadcast payment transaction.

    Same transaction hash, same result. With wait_for_confirmation a
    same-chain transfer is polled until it confirms or fails.
    """
    try:
        debt = await coordinator.submit(
            request.debt_id,
            request.ower,
            request.intent,
            request.transaction_hash
        )
        attempt = debt.attempt_for_transaction(request.transaction_hash)
        if wait_for_confirmation and attempt is not None and attempt.is_direct_transfer:
            debt = await coordinator.wait_for_direct_confirmation(debt.id, attempt.id)
    except SettlementError as e:
        raise HTTPException(status_code=e.status_code, detail=e.to_dict())
    return DebtResponse.from_debt(debt)


@router.post("/{debt_id}/attempts/{attempt_id}/confirm", response_model=DebtResponse)
async def confirm_direct_settlement(
    debt_id: str,
    attempt_id: str,
    coordinator: SettlementCoordinator = Depends(get_coordinator)
):
    """Check a same-chain attempt's confirmation depth and finalize it if ready"""
    try:
        debt = await coordinator.confirm_direct(debt_id, attempt_id)
    except SettlementError as e:
        raise HTTPException(status_code=e.status_code, detail=e.to_dict())
    return DebtResponse.from_debt(debt)
