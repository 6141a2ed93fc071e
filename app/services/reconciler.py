"""
Bridge completion reconciler.

Closes the gap between "transaction broadcast" and "funds delivered" for
cross-chain attempts:

1. Each sweep loads every submitted attempt from the ledger
2. Attempts not yet due (per-attempt exponential backoff) are skipped
3. Attempts without a bridge message id get it from the source receipt
4. The bridge status API decides: delivered -> confirm, failed -> fail
5. Attempts older than the ceiling fail as undelivered

Delivery events pushed by a watcher go through handle_delivery. An event only
triggers a re-check against the bridge status API and is idempotent, so
duplicate or forged notifications are harmless. Query errors
only postpone the next poll; they never decide an outcome.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Dict, Optional

from app.clients.bridge_client import BridgeMessageState, BridgeMessageStatus, CcipStatusClient
from app.clients.chain_client import ChainClient
from app.core.exceptions import (
    AlreadySettled,
    InvalidAttemptReference,
    DuplicateSubmission,
    TransientSettlementError,
)
from app.models.base import utcnow
from app.models.debt import DIRECT_TRANSFER, BlockInfo, Debt, SettlementAttempt
from app.services.settlement_service import SettlementCoordinator

logger = logging.getLogger(__name__)

SUPERSEDED = "superseded: share already settled by another attempt"
CEILING_EXCEEDED = "confirmation ceiling exceeded"

@dataclass
class _PollState:
    next_poll_at: datetime
    delay: float
    polls: int = 0


@dataclass
class SweepReport:
    checked: int = 0
    confirmed: int = 0
    failed: int = 0
    pending: int = 0
    errors: int = 0
    skipped: int = 0

    def add(self, outcome: str) -> None:
        setattr(self, outcome, getattr(self, outcome) + 1)


@dataclass
class ReconcilerPolicy:
    initial_delay: float = 30.0
    max_delay: float = 600.0
    backoff_factor: float = 2.0
    ceiling: timedelta = field(default_factory=lambda: timedelta(hours=24))
    sweep_interval: float = 15.0
    concurrency: int = 10
    sweep_direct_transfers: bool = True


class BridgeReconciler:
    def __init__(
        self,
        coordinator: SettlementCoordinator,
        bridge_client: CcipStatusClient,
        chain_client: ChainClient,
        policy: Optional[ReconcilerPolicy] = None,
        clock: Callable[[], datetime] = utcnow
    ):
        self.coordinator = coordinator
        self.bridge_client = bridge_client
        self.chain_client = chain_client
        self.policy = policy or ReconcilerPolicy()
        self.clock = clock
        self._schedule: Dict[str, _PollState] = {}
        self._task: Optional[asyncio.Task] = None
        self._stop = asyncio.Event()

    # ===== LIFECYCLE =====

    def start(self) -> None:
        if self._task is None or self._task.done():
            self._stop = asyncio.Event()
            self._task = asyncio.create_task(self.run(), name="bridge-reconciler")
            logger.info("Bridge reconciler started")

    async def stop(self) -> None:
        self._stop.set()
        if self._task is not None:
            await self._task
            self._task = None
            logger.info("Bridge reconciler stopped")

    async def run(self) -> None:
        while not self._stop.is_set():
            try:
                report = await self.run_once()
                if report.checked:
                    logger.info(f"Reconciler sweep: {report}")
            except Exception:
                # the loop outlives any single failed sweep
                logger.exception("Reconciler sweep failed")
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=self.policy.sweep_interval)
            except asyncio.TimeoutError:
                pass

    # ===== POLLING =====

    async def run_once(self) -> SweepReport:
        """One pass over every in-flight attempt that is due."""
        report = SweepReport()
        now = self.clock()
        in_flight = await self.coordinator.ledger.list_in_flight()

        live_ids = {attempt.id for _, attempt in in_flight}
        for attempt_id in list(self._schedule):
            if attempt_id not in live_ids:
                del self._schedule[attempt_id]

        due = []
        for debt_id, attempt in in_flight:
            if attempt.is_direct_transfer and not self.policy.sweep_direct_transfers:
                continue
            state = self._schedule.get(attempt.id)
            if state is not None and state.next_poll_at > now:
                report.add("skipped")
                continue
            due.append((debt_id, attempt))

        semaphore = asyncio.Semaphore(self.policy.concurrency)

        async def reconcile(debt_id: str, attempt: SettlementAttempt) -> None:
            async with semaphore:
                outcome = await self.reconcile_attempt(debt_id, attempt, now)
            report.checked += 1
            report.add(outcome)

        await asyncio.gather(*(reconcile(d, a) for d, a in due))
        return report

    async def reconcile_attempt(self, debt_id: str, attempt: SettlementAttempt, now: datetime) -> str:
        """Advance one attempt; returns confirmed, failed, pending or errors."""
        try:
            return await self._advance(debt_id, attempt, now)
        except TransientSettlementError as exc:
            logger.warning(f"Reconcile of attempt {attempt.id} postponed: {exc.message}")
            self._backoff(attempt.id, now)
            return "errors"

    async def _advance(self, debt_id: str, attempt: SettlementAttempt, now: datetime) -> str:
        if attempt.is_direct_transfer:
            return await self._reconcile_direct(debt_id, attempt, now)

        if attempt.bridge_message_id is None:
            resolved = await self._resolve_message(debt_id, attempt)
            if resolved is not None:
                return resolved
            if attempt.bridge_message_id is None:
                return await self._pending_or_expired(debt_id, attempt, now)

        status = await self.bridge_client.get_message_status(attempt.bridge_message_id)
        if status.state == BridgeMessageState.DELIVERED:
            return await self._confirm(debt_id, attempt, status)
        if status.state == BridgeMessageState.FAILED:
            return await self._fail(debt_id, attempt, f"bridge message failed (state {status.raw_state})")
        return await self._pending_or_expired(debt_id, attempt, now)

    async def _reconcile_direct(self, debt_id: str, attempt: SettlementAttempt, now: datetime) -> str:
        try:
            debt = await self.coordinator.confirm_direct(debt_id, attempt.id)
        except AlreadySettled:
            return await self._fail(debt_id, attempt, SUPERSEDED)
        current = debt.find_attempt(attempt.id)
        if current is not None and current.is_terminal:
            self._schedule.pop(attempt.id, None)
            return "confirmed" if current.status == "confirmed" else "failed"
        return await self._pending_or_expired(debt_id, attempt, now)

    async def _resolve_message(self, debt_id: str, attempt: SettlementAttempt) -> Optional[str]:
        """Fill in a missing bridge message id from the source receipt."""
        tx_status = await self.chain_client.get_transaction_status(attempt.source_chain, attempt.transaction_hash)
        if tx_status.reverted:
            return await self._fail(debt_id, attempt, "source transaction reverted")
        if not tx_status.found:
            return None

        message_id = await self.chain_client.get_bridge_message_id(attempt.source_chain, attempt.transaction_hash)
        if message_id is None:
            return await self._fail(debt_id, attempt, "no bridge message emitted by source transaction")
        try:
            await self.coordinator.attach_bridge_message(debt_id, attempt.id, message_id)
        except (InvalidAttemptReference, DuplicateSubmission) as exc:
            logger.error(f"Cannot attach bridge message to attempt {attempt.id}: {exc.message}")
            return await self._fail(debt_id, attempt, exc.message)
        attempt.bridge_message_id = message_id
        logger.info(f"Attempt {attempt.id} resolved bridge message {message_id}")
        return None

    async def _pending_or_expired(self, debt_id: str, attempt: SettlementAttempt, now: datetime) -> str:
        if now - attempt.submitted_at > self.policy.ceiling:
            return await self._fail(debt_id, attempt, CEILING_EXCEEDED)
        self._backoff(attempt.id, now)
        return "pending"

    def _backoff(self, attempt_id: str, now: datetime) -> None:
        state = self._schedule.get(attempt_id)
        if state is None:
            delay = self.policy.initial_delay
            state = _PollState(next_poll_at=now, delay=delay)
            self._schedule[attempt_id] = state
        else:
            delay = min(state.delay * self.policy.backoff_factor, self.policy.max_delay)
        state.delay = delay
        state.polls += 1
        state.next_poll_at = now + timedelta(seconds=delay)

    async def _confirm(self, debt_id: str, attempt: SettlementAttempt, status: BridgeMessageStatus) -> str:
        self._schedule.pop(attempt.id, None)
        block_info = BlockInfo(
            block_number=status.destination_block_number,
            destination_transaction_hash=status.destination_transaction_hash
        )
        try:
            await self.coordinator.finalize_confirmed(debt_id, attempt.id, block_info)
        except AlreadySettled:
            # another attempt already paid this share
            return await self._fail(debt_id, attempt, SUPERSEDED)
        except InvalidAttemptReference as exc:
            logger.error(f"Delivered message for attempt {attempt.id} rejected: {exc.message}")
            return "errors"
        return "confirmed"

    async def _fail(self, debt_id: str, attempt: SettlementAttempt, reason: str) -> str:
        self._schedule.pop(attempt.id, None)
        try:
            await self.coordinator.finalize_failed(debt_id, attempt.id, reason)
        except InvalidAttemptReference as exc:
            logger.error(f"Failure for attempt {attempt.id} rejected: {exc.message}")
            return "errors"
        return "failed"

    # ===== EVENT-DRIVEN =====

    async def handle_delivery(
        self,
        message_id: str,
        state: BridgeMessageState,
        destination_transaction_hash: Optional[str] = None,
        destination_block_number: Optional[int] = None,
        reason: Optional[str] = None
    ) -> Optional[Debt]:
        """
        React to a pushed delivery notification.

        The event only prompts a re-check: the outcome is whatever the bridge
        status API reports for the message. Unknown message ids return None
        (the submission may not be recorded yet; polling picks it up later).
        Same-chain transfers have no bridge message and are never matched.
        Notifications for terminal attempts return the debt unchanged.
        """
        message_id = message_id.lower()
        if message_id == DIRECT_TRANSFER:
            logger.warning("Delivery event names the same-chain sentinel, ignoring")
            return None
        found = await self.coordinator.ledger.find_by_bridge_message(message_id)
        if found is None:
            logger.warning(f"Delivery event for unknown bridge message {message_id}")
            return None

        debt, attempt = found
        if attempt.is_terminal or state == BridgeMessageState.PENDING:
            return debt

        status = await self.bridge_client.get_message_status(message_id)
        if status.state != state:
            logger.warning(
                f"Delivery event for {message_id} says {state.value}, "
                f"bridge reports {status.state.value}"
            )
        if status.state == BridgeMessageState.DELIVERED:
            if status.destination_transaction_hash is None:
                status.destination_transaction_hash = destination_transaction_hash
            if status.destination_block_number is None:
                status.destination_block_number = destination_block_number
            await self._confirm(debt.id, attempt, status)
        elif status.state == BridgeMessageState.FAILED:
            await self._fail(debt.id, attempt, reason or f"bridge message failed (state {status.raw_state})")
        else:
            return debt
        return await self.coordinator.ledger.require_debt(debt.id)
