from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from pydantic import BaseModel, Field, field_serializer

from app.core.chains import TOKEN_SYMBOLS, TokenType
from app.models.debt import Debt, Identity, Ower, SettlementAttempt


class DebtCreate(BaseModel):
    """Request body for recording a new debt."""
    payer: Identity
    owers: List[Ower] = Field(min_length=1)
    total_amount: Optional[Decimal] = None
    token_type: TokenType = TokenType.USDC
    description: str = ""

    def to_debt(self) -> Debt:
        return Debt(
            payer=self.payer,
            owers=self.owers,
            total_amount=self.total_amount,
            token_type=self.token_type,
            description=self.description
        )


class DebtResponse(BaseModel):
    id: str
    payer: Identity
    owers: List[Ower]
    total_amount: Decimal
    token_type: TokenType
    token_symbol: str
    description: str
    status: str
    settled_owers: List[str] = []  # wallet addresses with a confirmed attempt
    settlement_records: List[SettlementAttempt]
    version: int
    created_at: datetime
    updated_at: datetime
    completed_at: Optional[datetime] = None

    @field_serializer("total_amount")
    def _total_str(self, value: Decimal) -> str:
        return str(value)

    @classmethod
    def from_debt(cls, debt: Debt) -> "DebtResponse":
        return cls(
            id=debt.id,
            payer=debt.payer,
            owers=debt.owers,
            total_amount=debt.total_amount,
            token_type=debt.token_type,
            token_symbol=TOKEN_SYMBOLS[TokenType(debt.token_type)],
            description=debt.description,
            status=debt.status,
            settled_owers=[
                o.identity.wallet_address for o in debt.owers
                if debt.is_ower_settled(o.identity)
            ],
            settlement_records=debt.settlement_records,
            version=debt.version,
            created_at=debt.created_at,
            updated_at=debt.updated_at,
            completed_at=debt.completed_at
        )


class UserDebtsResponse(BaseModel):
    """Debts of one wallet, split into owed to them, owed by them, and done."""
    owed: List[DebtResponse] = []
    owing: List[DebtResponse] = []
    completed: List[DebtResponse] = []
