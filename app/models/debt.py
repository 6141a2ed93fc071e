"""
Debt model - obligations and the settlement attempts made against them.

Design principles:
- One document per debt, attempts embedded and append-only
- Display amounts are Decimal (stored as strings), attempt amounts are
  integer base units (stored as strings, 18-decimal tokens overflow int64)
- Debt status: pending -> completed (terminal)
- Attempt status: submitted -> confirmed | failed (both terminal)
- `version` is bumped on every write for optimistic concurrency
"""

import re
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import Field, field_serializer, field_validator, model_validator

from app.core.chains import TOKEN_DECIMALS, TokenType
from app.core.exceptions import InvalidAmount
from app.models.base import DocumentModel, new_id, utcnow
from app.utils.amounts import to_base_units

DIRECT_TRANSFER = "direct-transfer"

_ADDRESS_RE = re.compile(r"^0x[0-9a-fA-F]{40}$")
_TX_HASH_RE = re.compile(r"^0x[0-9a-fA-F]{64}$")


def is_transaction_hash(value: str) -> bool:
    return bool(_TX_HASH_RE.match(value or ""))


class DebtStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"


class AttemptStatus(str, Enum):
    SUBMITTED = "submitted"
    CONFIRMED = "confirmed"
    FAILED = "failed"


class Identity(DocumentModel):
    """A party: display name plus the wallet that identifies them."""
    username: str = ""
    wallet_address: str

    @field_validator("wallet_address")
    @classmethod
    def _normalise_wallet(cls, value: str) -> str:
        if not _ADDRESS_RE.match(value):
            raise ValueError(f"Invalid wallet address: {value}")
        return value.lower()

    def matches(self, other: "Identity") -> bool:
        return self.wallet_address == other.wallet_address


class Ower(DocumentModel):
    identity: Identity
    amount: Decimal

    @field_validator("amount")
    @classmethod
    def _positive(cls, value: Decimal) -> Decimal:
        if not value.is_finite() or value <= 0:
            raise ValueError("Ower amount must be positive")
        return value

    @field_serializer("amount")
    def _amount_str(self, value: Decimal) -> str:
        return str(value)


class BlockInfo(DocumentModel):
    """Where and how deeply a settlement was confirmed."""
    block_number: Optional[int] = None
    confirmations: int = 0
    destination_transaction_hash: Optional[str] = None


class SettlementAttempt(DocumentModel):
    """One broadcast transaction made toward an ower's share of a debt."""
    id: str = Field(default_factory=new_id)
    ower: Identity
    source_chain: str
    destination_chain: str
    token_type: TokenType
    amount_base_units: int
    transaction_hash: str
    bridge_message_id: Optional[str] = None
    status: AttemptStatus = AttemptStatus.SUBMITTED
    explorer_url: str = ""

    block_number: Optional[int] = None
    confirmations: int = 0
    destination_transaction_hash: Optional[str] = None
    failure_reason: Optional[str] = None

    submitted_at: datetime = Field(default_factory=utcnow)
    finalized_at: Optional[datetime] = None

    @field_validator("transaction_hash")
    @classmethod
    def _normalise_hash(cls, value: str) -> str:
        if not is_transaction_hash(value):
            raise ValueError(f"Invalid transaction hash: {value}")
        return value.lower()

    @field_serializer("amount_base_units")
    def _base_units_str(self, value: int) -> str:
        return str(value)

    @property
    def is_direct_transfer(self) -> bool:
        return self.bridge_message_id == DIRECT_TRANSFER

    @property
    def is_terminal(self) -> bool:
        return self.status != AttemptStatus.SUBMITTED


class Debt(DocumentModel):
    """
    Obligation of one or more owers to a payer.

    Invariants:
    - total_amount == sum(owers.amount)
    - ower wallets are distinct
    - at most one confirmed attempt per ower
    - completed iff every ower has a confirmed attempt
    """
    id: str = Field(default_factory=new_id, validation_alias="_id", serialization_alias="_id")
    payer: Identity
    owers: List[Ower] = Field(min_length=1)
    total_amount: Optional[Decimal] = None
    token_type: TokenType = TokenType.USDC
    description: str = ""

    status: DebtStatus = DebtStatus.PENDING
    settlement_records: List[SettlementAttempt] = []

    version: int = 1
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None

    @model_validator(mode="after")
    def _check_owers(self) -> "Debt":
        wallets = [o.identity.wallet_address for o in self.owers]
        if len(set(wallets)) != len(wallets):
            raise ValueError("Owers must be distinct parties")

        # every share must be payable in whole base units of the token
        decimals = TOKEN_DECIMALS[self.token_type]
        for ower in self.owers:
            try:
                to_base_units(ower.amount, decimals)
            except InvalidAmount as exc:
                raise ValueError(exc.message)

        owed = sum((o.amount for o in self.owers), Decimal(0))
        if self.total_amount is None:
            self.total_amount = owed
        elif self.total_amount != owed:
            raise ValueError(
                f"total_amount {self.total_amount} does not equal sum of owers {owed}"
            )
        return self

    @field_serializer("total_amount")
    def _total_str(self, value: Optional[Decimal]) -> Optional[str]:
        return None if value is None else str(value)

    def find_ower(self, identity: Identity) -> Optional[Ower]:
        for ower in self.owers:
            if ower.identity.matches(identity):
                return ower
        return None

    def find_attempt(self, attempt_id: str) -> Optional[SettlementAttempt]:
        for attempt in self.settlement_records:
            if attempt.id == attempt_id:
                return attempt
        return None

    def attempt_for_transaction(self, tx_hash: str) -> Optional[SettlementAttempt]:
        tx_hash = tx_hash.lower()
        for attempt in self.settlement_records:
            if attempt.transaction_hash == tx_hash:
                return attempt
        return None

    def confirmed_attempt_for(self, identity: Identity) -> Optional[SettlementAttempt]:
        for attempt in self.settlement_records:
            if attempt.status == AttemptStatus.CONFIRMED and attempt.ower.matches(identity):
                return attempt
        return None

    def is_ower_settled(self, identity: Identity) -> bool:
        return self.confirmed_attempt_for(identity) is not None

    def all_owers_settled(self) -> bool:
        return all(self.is_ower_settled(o.identity) for o in self.owers)

    def to_document(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True)
