from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Dict, List, Optional, Tuple
from unittest.mock import AsyncMock, MagicMock

import asyncio
import pytest
from fastapi.testclient import TestClient
from pymongo.errors import DuplicateKeyError

from app.clients.bridge_client import BridgeMessageState, BridgeMessageStatus
from app.clients.chain_client import TransactionStatus
from app.core.chains import ChainRegistry, TokenType
from app.core.exceptions import BridgeStatusQueryFailed, ChainQueryFailed
from app.main import app
from app.models.debt import AttemptStatus, Debt, Identity, Ower
from app.services.balance_service import BalanceVerifier
from app.services.intent_service import PaymentIntentBuilder
from app.services.ledger_service import SettlementLedger
from app.services.reconciler import BridgeReconciler, ReconcilerPolicy
from app.services.settlement_service import SettlementCoordinator

SETTLEMENT_CHAIN = "84532"   # Base Sepolia
REMOTE_CHAIN = "11155111"    # Ethereum Sepolia

PAYER_WALLET = "0x" + "a" * 40
OWER_WALLET = "0x" + "b" * 40
SECOND_OWER_WALLET = "0x" + "c" * 40
STRANGER_WALLET = "0x" + "d" * 40


def tx_hash(n: int) -> str:
    return "0x" + format(n, "064x")


def message_id(n: int) -> str:
    return "0x" + format(n + 0xabc000, "064x")


class InMemoryDebtRepository:
    """
    Stand-in for DebtRepository with the same contract.

    Documents are stored as dumped dicts and re-validated on every read, so
    callers never share state. Duplicate ids and transaction hashes raise
    DuplicateKeyError, mirroring the unique indexes.
    """

    def __init__(self):
        self.docs: Dict[str, dict] = {}
        self.replace_calls = 0

    def _load(self, doc: Optional[dict]) -> Optional[Debt]:
        return Debt.model_validate(doc) if doc is not None else None

    def _hashes(self, doc: dict) -> List[str]:
        return [a["transaction_hash"] for a in doc.get("settlement_records", [])]

    def _check_hashes(self, doc: dict) -> None:
        for other_id, other in self.docs.items():
            if other_id == doc["_id"]:
                continue
            if set(self._hashes(doc)) & set(self._hashes(other)):
                raise DuplicateKeyError("E11000 duplicate key error: settlement_records.transaction_hash")

    async def get(self, debt_id: str) -> Optional[Debt]:
        await asyncio.sleep(0)
        return self._load(self.docs.get(debt_id))

    async def insert(self, debt: Debt) -> Debt:
        await asyncio.sleep(0)
        doc = debt.to_document()
        if doc["_id"] in self.docs:
            raise DuplicateKeyError("E11000 duplicate key error: _id")
        self._check_hashes(doc)
        self.docs[doc["_id"]] = doc
        return debt

    async def replace(self, debt: Debt, expected_version: int) -> bool:
        await asyncio.sleep(0)
        self.replace_calls += 1
        stored = self.docs.get(debt.id)
        if stored is None or stored["version"] != expected_version:
            return False
        doc = debt.to_document()
        self._check_hashes(doc)
        self.docs[debt.id] = doc
        return True

    async def find_by_transaction_hash(self, tx_hash: str) -> Optional[Debt]:
        for doc in self.docs.values():
            if tx_hash.lower() in self._hashes(doc):
                return self._load(doc)
        return None

    async def find_by_bridge_message_id(self, message_id: str) -> Optional[Debt]:
        for doc in self.docs.values():
            if any(a["bridge_message_id"] == message_id for a in doc["settlement_records"]):
                return self._load(doc)
        return None

    async def find_for_wallet(self, wallet_address: str) -> List[Debt]:
        wallet = wallet_address.lower()
        found = [
            doc for doc in self.docs.values()
            if doc["payer"]["wallet_address"] == wallet
            or any(o["identity"]["wallet_address"] == wallet for o in doc["owers"])
        ]
        found.sort(key=lambda doc: doc["created_at"], reverse=True)
        return [self._load(doc) for doc in found]

    async def find_in_flight(self) -> List[Debt]:
        return [
            self._load(doc) for doc in self.docs.values()
            if any(a["status"] == AttemptStatus.SUBMITTED.value for a in doc["settlement_records"])
        ]


class FakeChainClient:
    """Scripted chain state keyed by chain id, token and wallet / tx hash."""

    def __init__(self):
        self.balances: Dict[Tuple[str, str, str], int] = {}
        self.transactions: Dict[str, TransactionStatus] = {}
        self.message_ids: Dict[str, Optional[str]] = {}
        self.fail_queries = False
        self.balance_calls = 0
        self.message_id_calls = 0

    def set_balance(self, chain_id: str, token_address: str, wallet: str, base_units: int) -> None:
        self.balances[(chain_id, token_address.lower(), wallet.lower())] = base_units

    async def get_token_balance(self, chain_id: str, token_address: str, wallet_address: str) -> int:
        self.balance_calls += 1
        if self.fail_queries:
            raise ChainQueryFailed("RPC unavailable", chain_id=chain_id)
        return self.balances.get((chain_id, token_address.lower(), wallet_address.lower()), 0)

    async def get_transaction_status(self, chain_id: str, tx_hash: str) -> TransactionStatus:
        if self.fail_queries:
            raise ChainQueryFailed("RPC unavailable", chain_id=chain_id)
        return self.transactions.get(tx_hash.lower(), TransactionStatus(found=False))

    async def get_bridge_message_id(self, chain_id: str, tx_hash: str) -> Optional[str]:
        self.message_id_calls += 1
        if self.fail_queries:
            raise ChainQueryFailed("RPC unavailable", chain_id=chain_id)
        return self.message_ids.get(tx_hash.lower())

    async def aclose(self) -> None:
        pass


class FakeBridgeClient:
    """Returns scripted states per message id; the last one repeats."""

    def __init__(self):
        self.scripts: Dict[str, List[BridgeMessageState]] = {}
        self.calls: Dict[str, int] = {}
        self.fail_queries = False

    def script(self, message_id: str, *states: BridgeMessageState) -> None:
        self.scripts[message_id] = list(states)

    async def get_message_status(self, message_id: str) -> BridgeMessageStatus:
        self.calls[message_id] = self.calls.get(message_id, 0) + 1
        if self.fail_queries:
            raise BridgeStatusQueryFailed("bridge API unavailable", message_id=message_id)
        states = self.scripts.get(message_id, [BridgeMessageState.PENDING])
        state = states.pop(0) if len(states) > 1 else states[0]
        delivered = state == BridgeMessageState.DELIVERED
        return BridgeMessageStatus(
            message_id=message_id,
            state=state,
            raw_state=state.value,
            destination_transaction_hash=tx_hash(0xdead) if delivered else None,
            destination_block_number=1234 if delivered else None
        )

    async def aclose(self) -> None:
        pass


class FakeClock:
    def __init__(self, start: Optional[datetime] = None):
        self.now = start or datetime.now(timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


@pytest.fixture
def payer():
    return Identity(username="alice", wallet_address=PAYER_WALLET)


@pytest.fixture
def ower():
    return Identity(username="bob", wallet_address=OWER_WALLET)


@pytest.fixture
def second_ower():
    return Identity(username="carol", wallet_address=SECOND_OWER_WALLET)


@pytest.fixture
def stranger():
    return Identity(username="mallory", wallet_address=STRANGER_WALLET)


@pytest.fixture
def registry():
    return ChainRegistry.from_settings(SETTLEMENT_CHAIN)


@pytest.fixture
def repository():
    return InMemoryDebtRepository()


@pytest.fixture
def ledger(repository):
    return SettlementLedger(repository, max_retries=5)


@pytest.fixture
def chain_client():
    return FakeChainClient()


@pytest.fixture
def bridge_client():
    return FakeBridgeClient()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def verifier(registry, chain_client):
    return BalanceVerifier(registry, chain_client)


@pytest.fixture
def builder(registry):
    return PaymentIntentBuilder(registry)


@pytest.fixture
def coordinator(registry, ledger, verifier, builder, chain_client):
    return SettlementCoordinator(
        registry,
        ledger,
        verifier,
        builder,
        chain_client,
        direct_confirmations=2
    )


@pytest.fixture
def reconciler(coordinator, bridge_client, chain_client, clock):
    policy = ReconcilerPolicy(
        initial_delay=30,
        max_delay=120,
        backoff_factor=2.0,
        ceiling=timedelta(hours=24),
        sweep_interval=0.01,
        concurrency=4
    )
    return BridgeReconciler(coordinator, bridge_client, chain_client, policy, clock=clock)


@pytest.fixture
def make_debt(payer, ower):
    """Build (not store) a debt; defaults to one ower owing 1.00 USDC."""
    def _make(owers=None, token_type=TokenType.USDC, description="Dinner"):
        owers = owers or [(ower, "1.00")]
        return Debt(
            payer=payer,
            owers=[Ower(identity=identity, amount=Decimal(amount)) for identity, amount in owers],
            token_type=token_type,
            description=description
        )
    return _make


@pytest.fixture
def fund(registry, chain_client):
    """Give a wallet a balance of a token (display amount) on a chain."""
    def _fund(wallet: str, chain_id: str, amount: str, token_type=TokenType.USDC):
        token = registry.token(chain_id, token_type)
        base_units = int(Decimal(amount).scaleb(token.decimals))
        chain_client.set_balance(chain_id, token.address, wallet, base_units)
    return _fund


@pytest.fixture
def mock_db():
    """Motor database double: attribute and item access give AsyncMock collections."""
    db = MagicMock()
    collection = MagicMock()
    collection.find_one = AsyncMock()
    collection.insert_one = AsyncMock()
    collection.replace_one = AsyncMock()
    db.__getitem__.return_value = collection
    return db


@pytest.fixture
def client():
    """TestClient without lifespan; routes get services via dependency_overrides."""
    test_client = TestClient(app)
    yield test_client
    app.dependency_overrides.clear()
