from decimal import Decimal

from pydantic import BaseModel, Field

from app.core.chains import TokenType


class BalanceCheckRequest(BaseModel):
    wallet_address: str = Field(pattern=r"^0x[0-9a-fA-F]{40}$")
    chain_id: str
    token_type: TokenType = TokenType.USDC
    required_amount: Decimal = Field(ge=0)


class BalanceCheckResponse(BaseModel):
    sufficient: bool
    current_balance: str
    required_balance: str
    token_address: str
    token_symbol: str
    chain_id: str
