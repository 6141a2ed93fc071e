from fastapi import APIRouter, Depends, HTTPException, status

from app.api.deps import get_reconciler
from app.clients.bridge_client import parse_message_state
from app.core.exceptions import SettlementError
from app.schemas.debt import DebtResponse
from app.schemas.settlement import BridgeDeliveryEvent
from app.services.reconciler import BridgeReconciler

router = APIRouter()


@router.post("/events", status_code=status.HTTP_202_ACCEPTED)
async def bridge_delivery_event(
    event: BridgeDeliveryEvent,
    reconciler: BridgeReconciler = Depends(get_reconciler)
):
    """
    Delivery notification from a destination-chain watcher.

    The notification only triggers a re-check of the bridge status API.
    Duplicates and events for finished attempts are accepted and ignored.
    Unknown messages are accepted too; polling picks them up once the
    submission is recorded.
    """
    try:
        debt = await reconciler.handle_delivery(
            event.message_id,
            parse_message_state(event.state),
            destination_transaction_hash=event.destination_transaction_hash,
            destination_block_number=event.destination_block_number,
            reason=event.reason
        )
    except SettlementError as e:
        raise HTTPException(status_code=e.status_code, detail=e.to_dict())

    if debt is None:
        return {"accepted": True, "matched": False}
    return {
        "accepted": True,
        "matched": True,
        "debt": DebtResponse.from_debt(debt).model_dump(mode="json")
    }
