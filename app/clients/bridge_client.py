"""
CCIP message status client.

Resolves a bridge message id to its delivery state using the CCIP explorer
API. Only three outcomes matter to settlement: still travelling, delivered
on the destination chain, or failed.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional

import httpx

from app.core.exceptions import BridgeStatusQueryFailed

logger = logging.getLogger(__name__)


class BridgeMessageState(str, Enum):
    PENDING = "pending"
    DELIVERED = "delivered"
    FAILED = "failed"


# The explorer reports a numeric state or a state name; watchers send ours
_DELIVERED_STATES = {2, "2", "SUCCESS", "DELIVERED"}
_FAILED_STATES = {3, "3", "FAILURE", "FAILED"}


@dataclass
class BridgeMessageStatus:
    message_id: str
    state: BridgeMessageState
    raw_state: Any = None
    destination_transaction_hash: Optional[str] = None
    destination_block_number: Optional[int] = None

    @property
    def is_terminal(self) -> bool:
        return self.state != BridgeMessageState.PENDING


def parse_message_state(raw_state: Any) -> BridgeMessageState:
    if isinstance(raw_state, str):
        raw_state = raw_state.upper()
    if raw_state in _DELIVERED_STATES:
        return BridgeMessageState.DELIVERED
    if raw_state in _FAILED_STATES:
        return BridgeMessageState.FAILED
    return BridgeMessageState.PENDING


class CcipStatusClient:
    """Async client for the CCIP explorer message API."""

    def __init__(
        self,
        base_url: str,
        timeout: float = 20.0,
        client: Optional[httpx.AsyncClient] = None
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._client = client or httpx.AsyncClient(timeout=timeout)

    async def get_message_status(self, message_id: str) -> BridgeMessageStatus:
        """
        Look up a message.

        A 404 means the explorer has not indexed the message yet and is
        reported as pending. Timeouts, transport errors and other HTTP errors
        raise BridgeStatusQueryFailed.
        """
        url = f"{self.base_url}/{message_id}"
        try:
            response = await self._client.get(url, timeout=self.timeout)
            if response.status_code == 404:
                return BridgeMessageStatus(message_id, BridgeMessageState.PENDING)
            response.raise_for_status()
            data: Dict[str, Any] = response.json()
        except httpx.TimeoutException as exc:
            logger.warning(f"Bridge status query timed out for {message_id}")
            raise BridgeStatusQueryFailed(
                f"Bridge status query timed out for {message_id}",
                message_id=message_id
            ) from exc
        except httpx.HTTPStatusError as exc:
            logger.warning(f"Bridge status API returned {exc.response.status_code} for {message_id}")
            raise BridgeStatusQueryFailed(
                f"Bridge status API error {exc.response.status_code}",
                message_id=message_id
            ) from exc
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning(f"Bridge status query failed for {message_id}: {exc}")
            raise BridgeStatusQueryFailed(
                f"Bridge status query failed: {exc}",
                message_id=message_id
            ) from exc

        raw_state = data.get("state")
        block = data.get("receiptBlock") or data.get("destinationBlockNumber")
        return BridgeMessageStatus(
            message_id=message_id,
            state=parse_message_state(raw_state),
            raw_state=raw_state,
            destination_transaction_hash=data.get("receiptTransactionHash"),
            destination_block_number=int(block) if block is not None else None
        )

    async def aclose(self) -> None:
        await self._client.aclose()
