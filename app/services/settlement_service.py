"""
Settlement coordinator - orchestration entry point for one payment attempt.

prepare   : validate + balance check -> PaymentIntent (no ledger writes)
submit    : record the signed, broadcast transaction as a submitted attempt
confirm   : same-chain attempts confirm here once deep enough
finalize  : bridge outcomes arrive from the reconciler and go to the ledger
"""

import asyncio
import logging
import time
from decimal import Decimal
from typing import Optional

from app.clients.chain_client import ChainClient
from app.core.chains import ChainRegistry, TokenType
from app.core.exceptions import (
    ChainQueryFailed,
    InsufficientBalance,
    InvalidAttemptReference,
    InvalidIntent,
    InvalidTransactionHash,
)
from app.models.debt import (
    DIRECT_TRANSFER,
    AttemptStatus,
    BlockInfo,
    Debt,
    DebtStatus,
    Identity,
    Ower,
    SettlementAttempt,
    is_transaction_hash,
)
from app.schemas.settlement import PaymentIntent
from app.services.balance_service import BalanceVerifier
from app.services.intent_service import PaymentIntentBuilder
from app.services.ledger_service import SettlementLedger
from app.utils.amounts import from_base_units

logger = logging.getLogger(__name__)


class SettlementCoordinator:
    def __init__(
        self,
        registry: ChainRegistry,
        ledger: SettlementLedger,
        verifier: BalanceVerifier,
        builder: PaymentIntentBuilder,
        chain_client: ChainClient,
        bridge_explorer_url: str = "https://ccip.chain.link/msg",
        direct_confirmations: int = 2
    ):
        self.registry = registry
        self.ledger = ledger
        self.verifier = verifier
        self.builder = builder
        self.chain_client = chain_client
        self.bridge_explorer_url = bridge_explorer_url.rstrip("/")
        self.direct_confirmations = direct_confirmations

    # ===== PREPARE (dry run) =====

    async def prepare(
        self,
        debt_id: str,
        ower: Identity,
        source_chain: str,
        token_type: TokenType
    ) -> PaymentIntent:
        """
        Build a payment intent for ower's share of debt_id.

        Fails fast with the first error: DebtNotFound, DebtAlreadySettled,
        OwerNotFound, UnsupportedChain, UnsupportedToken, BalanceQueryFailed
        or InsufficientBalance. Nothing is persisted.
        """
        debt = await self.ledger.require_debt(debt_id)
        intent = self.builder.build_intent(debt, ower, source_chain, token_type)
        await self._ensure_balance(intent)
        return intent

    async def prepare_direct(
        self,
        payer: Identity,
        ower: Identity,
        amount: Decimal,
        source_chain: str,
        token_type: TokenType,
        debt_id: Optional[str] = None
    ) -> PaymentIntent:
        """Intent for a payment that is not tied to a tracked debt."""
        intent = self.builder.build_direct_intent(payer, ower, amount, source_chain, token_type, debt_id)
        await self._ensure_balance(intent)
        return intent

    async def _ensure_balance(self, intent: PaymentIntent) -> None:
        token = self.registry.token(intent.source_chain, intent.token_type_code)
        check = await self.verifier.check_balance(
            intent.ower.wallet_address,
            intent.source_chain,
            intent.token_type_code,
            from_base_units(intent.amount_base_units, token.decimals)
        )
        if not check.sufficient:
            raise InsufficientBalance(
                f"Insufficient {check.token_symbol} balance on chain {intent.source_chain}",
                current_balance=check.current_balance,
                required_balance=check.required_balance
            )

    # ===== SUBMIT =====

    async def submit(
        self,
        debt_id: str,
        ower: Identity,
        intent: PaymentIntent,
        transaction_hash: str
    ) -> Debt:
        """
        Record a broadcast transaction as a submitted attempt.

        The transaction hash is the idempotency key: retrying with the same
        hash returns the debt as first recorded. A debt id with no stored
        debt is created from the intent (ad hoc payment) with an atomic
        insert.
        """
        if not is_transaction_hash(transaction_hash):
            raise InvalidTransactionHash(f"Invalid transaction hash: {transaction_hash}")
        transaction_hash = transaction_hash.lower()
        if intent.debt_id != debt_id:
            raise InvalidIntent(f"Intent was prepared for debt {intent.debt_id}", debt_id=debt_id)
        if not intent.ower.matches(ower):
            raise InvalidIntent("Intent was prepared for another ower", debt_id=debt_id)

        debt = await self.ledger.get_debt(debt_id)
        if debt is None:
            debt, created = await self.ledger.open_debt(self._debt_from_intent(intent))
            if created:
                logger.info(f"Created debt {debt_id} for direct payment from {ower.wallet_address}")

        replay = debt.attempt_for_transaction(transaction_hash)
        if replay is not None and replay.ower.matches(ower):
            return debt

        if debt.status == DebtStatus.PENDING and not debt.is_ower_settled(ower):
            self.builder.verify_intent(debt, intent)

        attempt = await self._build_attempt(ower, intent, transaction_hash)
        return await self.ledger.record_submission(debt_id, ower, attempt)

    def _debt_from_intent(self, intent: PaymentIntent) -> Debt:
        token = self.registry.token(intent.source_chain, intent.token_type_code)
        amount = from_base_units(intent.amount_base_units, token.decimals)
        return Debt(
            id=intent.debt_id,
            payer=intent.recipient,
            owers=[Ower(identity=intent.ower, amount=amount)],
            token_type=intent.token_type_code,
            description=f"Direct {token.symbol} transfer"
        )

    async def _build_attempt(
        self,
        ower: Identity,
        intent: PaymentIntent,
        transaction_hash: str
    ) -> SettlementAttempt:
        source = self.registry.lookup(intent.source_chain)
        if intent.same_chain:
            message_id = DIRECT_TRANSFER
            explorer_url = source.explorer_url(transaction_hash)
        else:
            message_id = await self._resolve_message_id(intent.source_chain, transaction_hash)
            explorer_url = self.bridge_explorer_url_for(message_id, source.explorer_url(transaction_hash))

        return SettlementAttempt(
            ower=ower,
            source_chain=intent.source_chain,
            destination_chain=intent.destination_chain,
            token_type=intent.token_type_code,
            amount_base_units=intent.amount_base_units,
            transaction_hash=transaction_hash,
            bridge_message_id=message_id,
            explorer_url=explorer_url
        )

    async def _resolve_message_id(self, chain_id: str, transaction_hash: str) -> Optional[str]:
        # Unresolved ids are filled in later by the reconciler
        try:
            return await self.chain_client.get_bridge_message_id(chain_id, transaction_hash)
        except ChainQueryFailed as exc:
            logger.warning(f"Bridge message id for {transaction_hash} not resolved yet: {exc.message}")
            return None

    def bridge_explorer_url_for(self, message_id: Optional[str], fallback: str) -> str:
        if not message_id:
            return fallback
        return f"{self.bridge_explorer_url}/{message_id}"

    # ===== SAME-CHAIN CONFIRMATION =====

    async def confirm_direct(self, debt_id: str, attempt_id: str) -> Debt:
        """
        Check a same-chain attempt against the source chain.

        Confirms once the transaction is direct_confirmations blocks deep,
        fails it if the transaction reverted, otherwise leaves it submitted.
        """
        debt = await self.ledger.require_debt(debt_id)
        attempt = debt.find_attempt(attempt_id)
        if attempt is None:
            raise InvalidAttemptReference(
                f"Attempt {attempt_id} does not exist on debt {debt_id}",
                debt_id=debt_id,
                attempt_id=attempt_id
            )
        if not attempt.is_direct_transfer:
            raise InvalidAttemptReference(
                f"Attempt {attempt_id} is cross-chain and settles through the bridge",
                debt_id=debt_id,
                attempt_id=attempt_id
            )
        if attempt.status != AttemptStatus.SUBMITTED:
            return debt

        status = await self.chain_client.get_transaction_status(attempt.source_chain, attempt.transaction_hash)
        if status.reverted:
            return await self.ledger.record_failure(debt_id, attempt_id, "source transaction reverted")
        if status.found and status.confirmations >= self.direct_confirmations:
            return await self.ledger.record_confirmation(
                debt_id,
                attempt_id,
                BlockInfo(block_number=status.block_number, confirmations=status.confirmations)
            )
        return debt

    async def wait_for_direct_confirmation(
        self,
        debt_id: str,
        attempt_id: str,
        timeout: float = 120.0,
        poll_interval: float = 4.0
    ) -> Debt:
        """Poll confirm_direct until the attempt is terminal or timeout passes."""
        deadline = time.monotonic() + timeout
        while True:
            try:
                debt = await self.confirm_direct(debt_id, attempt_id)
                attempt = debt.find_attempt(attempt_id)
                if attempt is not None and attempt.is_terminal:
                    return debt
            except ChainQueryFailed as exc:
                logger.warning(f"Confirmation check for {attempt_id} failed: {exc.message}")
                debt = None
            if time.monotonic() >= deadline:
                return debt if debt is not None else await self.ledger.require_debt(debt_id)
            await asyncio.sleep(poll_interval)

    # ===== FINALIZE (from the reconciler) =====

    async def finalize_confirmed(self, debt_id: str, attempt_id: str, block_info: BlockInfo) -> Debt:
        return await self.ledger.record_confirmation(debt_id, attempt_id, block_info)

    async def finalize_failed(self, debt_id: str, attempt_id: str, reason: str) -> Debt:
        return await self.ledger.record_failure(debt_id, attempt_id, reason)

    async def attach_bridge_message(self, debt_id: str, attempt_id: str, message_id: str) -> Debt:
        return await self.ledger.assign_bridge_message(debt_id, attempt_id, message_id)
