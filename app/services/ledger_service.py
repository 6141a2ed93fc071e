"""
Settlement ledger - the only writer of debt and attempt state.

Every mutation of a debt runs under that debt's asyncio lock (serialising
writers inside this process) and is persisted with a version-checked replace
(serialising writers across processes). A lost race reloads and re-applies
the transition, so submissions for different owers of one debt never
overwrite each other. Different debts never wait on each other.
"""

import asyncio
import logging
import weakref
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Tuple

from pymongo.errors import DuplicateKeyError

from app.core.exceptions import (
    AlreadySettled,
    ConcurrentModification,
    DebtNotFound,
    DuplicateSubmission,
    InvalidAttemptReference,
    OwerNotFound,
)
from app.models.base import utcnow
from app.models.debt import (
    DIRECT_TRANSFER,
    AttemptStatus,
    BlockInfo,
    Debt,
    DebtStatus,
    Identity,
    SettlementAttempt,
)
from app.repositories.debt_repo import DebtRepository

logger = logging.getLogger(__name__)

# A transition mutates the debt in place and returns True when it changed it
Transition = Callable[[Debt], bool]


@dataclass
class UserDebts:
    """Debts one identity participates in, split by what they mean to them."""
    owed: List[Debt] = field(default_factory=list)
    owing: List[Debt] = field(default_factory=list)
    completed: List[Debt] = field(default_factory=list)


class SettlementLedger:
    def __init__(self, repository: DebtRepository, max_retries: int = 5):
        self.repository = repository
        self.max_retries = max_retries
        self._locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()

    def _lock_for(self, debt_id: str) -> asyncio.Lock:
        lock = self._locks.get(debt_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[debt_id] = lock
        return lock

    # ===== READS =====

    async def get_debt(self, debt_id: str) -> Optional[Debt]:
        return await self.repository.get(debt_id)

    async def require_debt(self, debt_id: str) -> Debt:
        debt = await self.repository.get(debt_id)
        if debt is None:
            raise DebtNotFound(f"Debt {debt_id} not found", debt_id=debt_id)
        return debt

    async def find_by_bridge_message(self, message_id: str) -> Optional[Tuple[Debt, SettlementAttempt]]:
        if message_id == DIRECT_TRANSFER:
            return None
        debt = await self.repository.find_by_bridge_message_id(message_id)
        if debt is None:
            return None
        for attempt in debt.settlement_records:
            if attempt.bridge_message_id == message_id:
                return debt, attempt
        return None

    async def list_in_flight(self) -> List[Tuple[str, SettlementAttempt]]:
        """(debt id, attempt) for every attempt still awaiting an outcome."""
        in_flight = []
        for debt in await self.repository.find_in_flight():
            for attempt in debt.settlement_records:
                if attempt.status == AttemptStatus.SUBMITTED:
                    in_flight.append((debt.id, attempt))
        return in_flight

    async def query_for_user(self, identity: Identity) -> UserDebts:
        """
        Partition the identity's debts.

        - owed: pending debts where the identity is the payer
        - owing: pending debts where the identity still has an unpaid share
        - completed: everything else the identity takes part in
        """
        result = UserDebts()
        for debt in await self.repository.find_for_wallet(identity.wallet_address):
            if debt.status == DebtStatus.COMPLETED:
                result.completed.append(debt)
            elif debt.payer.matches(identity):
                result.owed.append(debt)
            elif debt.find_ower(identity) is not None and not debt.is_ower_settled(identity):
                result.owing.append(debt)
            else:
                result.completed.append(debt)
        return result

    # ===== CREATION =====

    async def create_debt(self, debt: Debt) -> Debt:
        """Record a newly originated debt."""
        debt.status = DebtStatus.PENDING
        debt.settlement_records = []
        debt.version = 1
        await self.repository.insert(debt)
        logger.info(f"Debt {debt.id} created: {len(debt.owers)} ower(s), total {debt.total_amount}")
        return debt

    async def open_debt(self, debt: Debt) -> Tuple[Debt, bool]:
        """
        Insert debt unless one with the same id exists.

        Returns (stored debt, created). The insert is the atomic step: a
        concurrent caller loses on the duplicate key and reads the winner.
        """
        try:
            return await self.create_debt(debt), True
        except DuplicateKeyError:
            existing = await self.repository.get(debt.id)
            if existing is None:
                raise
            return existing, False

    # ===== TRANSITIONS =====

    async def _mutate(self, debt_id: str, transition: Transition) -> Debt:
        async with self._lock_for(debt_id):
            for _ in range(self.max_retries):
                debt = await self.require_debt(debt_id)
                expected_version = debt.version
                if not transition(debt):
                    return debt

                debt.version = expected_version + 1
                debt.updated_at = utcnow()
                try:
                    saved = await self.repository.replace(debt, expected_version)
                except DuplicateKeyError as exc:
                    raise DuplicateSubmission(
                        "Transaction already recorded against another debt",
                        debt_id=debt_id
                    ) from exc
                if saved:
                    return debt
                logger.warning(f"Version conflict on debt {debt_id} at v{expected_version}, retrying")

        raise ConcurrentModification(
            f"Debt {debt_id} is being modified concurrently, try again",
            debt_id=debt_id
        )

    async def record_submission(self, debt_id: str, ower: Identity, attempt: SettlementAttempt) -> Debt:
        """
        Append a submitted attempt for ower.

        Replaying the same transaction hash for the same ower returns the
        current debt unchanged; reusing it for anything else is a
        DuplicateSubmission.
        """
        other = await self.repository.find_by_transaction_hash(attempt.transaction_hash)
        if other is not None and other.id != debt_id:
            raise DuplicateSubmission(
                f"Transaction {attempt.transaction_hash} is already recorded on debt {other.id}",
                debt_id=debt_id,
                transaction_hash=attempt.transaction_hash
            )
        if attempt.bridge_message_id and not attempt.is_direct_transfer:
            await self._check_message_free(debt_id, attempt.bridge_message_id)

        def transition(debt: Debt) -> bool:
            existing = debt.attempt_for_transaction(attempt.transaction_hash)
            if existing is not None:
                if existing.ower.matches(ower):
                    return False
                raise DuplicateSubmission(
                    f"Transaction {attempt.transaction_hash} already recorded for another ower",
                    debt_id=debt.id,
                    transaction_hash=attempt.transaction_hash
                )

            if debt.status == DebtStatus.COMPLETED:
                raise AlreadySettled(f"Debt {debt.id} is already settled", debt_id=debt.id)
            if debt.find_ower(ower) is None:
                raise OwerNotFound(
                    f"{ower.wallet_address} does not owe on debt {debt.id}",
                    debt_id=debt.id
                )
            if debt.is_ower_settled(ower):
                raise AlreadySettled(
                    f"Share of {ower.wallet_address} on debt {debt.id} is already settled",
                    debt_id=debt.id
                )
            if debt.find_attempt(attempt.id) is not None:
                raise DuplicateSubmission(f"Attempt {attempt.id} already recorded", debt_id=debt.id)
            if attempt.bridge_message_id and not attempt.is_direct_transfer:
                _check_message_unused(debt, attempt.bridge_message_id)

            attempt.ower = ower
            attempt.status = AttemptStatus.SUBMITTED
            debt.settlement_records.append(attempt)
            return True

        debt = await self._mutate(debt_id, transition)
        logger.info(
            f"Attempt {attempt.id} submitted on debt {debt_id}: "
            f"tx {attempt.transaction_hash} from chain {attempt.source_chain}"
        )
        return debt

    async def record_confirmation(self, debt_id: str, attempt_id: str, block_info: BlockInfo) -> Debt:
        """
        Mark an attempt confirmed and complete the debt once every ower is paid.

        Idempotent: confirming a confirmed attempt changes nothing.
        """
        completed_now = False

        def transition(debt: Debt) -> bool:
            nonlocal completed_now
            attempt = _require_attempt(debt, attempt_id)
            if attempt.status == AttemptStatus.CONFIRMED:
                return False
            if attempt.status == AttemptStatus.FAILED:
                raise InvalidAttemptReference(
                    f"Attempt {attempt_id} already failed and cannot be confirmed",
                    debt_id=debt.id,
                    attempt_id=attempt_id
                )
            if debt.is_ower_settled(attempt.ower):
                raise AlreadySettled(
                    f"Share of {attempt.ower.wallet_address} on debt {debt.id} "
                    f"was settled by another attempt",
                    debt_id=debt.id,
                    attempt_id=attempt_id
                )

            now = utcnow()
            attempt.status = AttemptStatus.CONFIRMED
            attempt.block_number = block_info.block_number
            attempt.confirmations = block_info.confirmations
            attempt.destination_transaction_hash = block_info.destination_transaction_hash
            attempt.finalized_at = now

            if debt.all_owers_settled():
                debt.status = DebtStatus.COMPLETED
                debt.completed_at = now
                completed_now = True
            return True

        debt = await self._mutate(debt_id, transition)
        if completed_now:
            logger.info(f"Debt {debt_id} completed by attempt {attempt_id}")
        return debt

    async def record_failure(self, debt_id: str, attempt_id: str, reason: str) -> Debt:
        """Mark an attempt failed; the debt stays open for a new attempt."""
        def transition(debt: Debt) -> bool:
            attempt = _require_attempt(debt, attempt_id)
            if attempt.status == AttemptStatus.FAILED:
                return False
            if attempt.status == AttemptStatus.CONFIRMED:
                raise InvalidAttemptReference(
                    f"Attempt {attempt_id} is confirmed and cannot fail",
                    debt_id=debt.id,
                    attempt_id=attempt_id
                )
            attempt.status = AttemptStatus.FAILED
            attempt.failure_reason = reason
            attempt.finalized_at = utcnow()
            return True

        debt = await self._mutate(debt_id, transition)
        logger.info(f"Attempt {attempt_id} on debt {debt_id} failed: {reason}")
        return debt

    async def assign_bridge_message(self, debt_id: str, attempt_id: str, message_id: str) -> Debt:
        """Attach a bridge message id to an attempt that did not have one."""
        message_id = message_id.lower()
        await self._check_message_free(debt_id, message_id)

        def transition(debt: Debt) -> bool:
            attempt = _require_attempt(debt, attempt_id)
            if attempt.bridge_message_id == message_id:
                return False
            if attempt.bridge_message_id is not None:
                raise InvalidAttemptReference(
                    f"Attempt {attempt_id} already has bridge message {attempt.bridge_message_id}",
                    debt_id=debt.id,
                    attempt_id=attempt_id
                )
            _check_message_unused(debt, message_id)
            attempt.bridge_message_id = message_id
            return True

        return await self._mutate(debt_id, transition)

    async def _check_message_free(self, debt_id: str, message_id: str) -> None:
        other = await self.repository.find_by_bridge_message_id(message_id)
        if other is not None and other.id != debt_id:
            raise DuplicateSubmission(
                f"Bridge message {message_id} belongs to debt {other.id}",
                debt_id=debt_id
            )


def _require_attempt(debt: Debt, attempt_id: str) -> SettlementAttempt:
    attempt = debt.find_attempt(attempt_id)
    if attempt is None:
        raise InvalidAttemptReference(
            f"Attempt {attempt_id} does not exist on debt {debt.id}",
            debt_id=debt.id,
            attempt_id=attempt_id
        )
    return attempt


def _check_message_unused(debt: Debt, message_id: str) -> None:
    for attempt in debt.settlement_records:
        if attempt.bridge_message_id == message_id:
            raise DuplicateSubmission(
                f"Bridge message {message_id} already used by attempt {attempt.id}",
                debt_id=debt.id
            )
