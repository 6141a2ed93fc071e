from decimal import Decimal
from typing import Optional, Union

from pydantic import BaseModel, Field, field_serializer, field_validator

from app.core.chains import TokenType
from app.models.base import is_valid_id
from app.models.debt import Identity


class PaymentIntent(BaseModel):
    """Everything an external signer needs to call payRecipient."""
    intent_id: str
    debt_id: str
    ower: Identity
    recipient: Identity
    source_chain: str
    destination_chain: str
    contract_address: str
    token_address: str
    amount_base_units: int = Field(ge=0)
    destination_chain_selector: str
    token_type_code: TokenType
    same_chain: bool
    gas_limit: int = 250000

    @field_validator("debt_id")
    @classmethod
    def _valid_debt_id(cls, value: str) -> str:
        if not is_valid_id(value):
            raise ValueError("Invalid debt id")
        return value

    @field_serializer("amount_base_units")
    def _base_units_str(self, value: int) -> str:
        return str(value)


class PrepareRequest(BaseModel):
    debt_id: str
    ower: Identity
    source_chain: str
    token_type: TokenType = TokenType.USDC


class PrepareDirectRequest(BaseModel):
    """Ad hoc payment outside a tracked debt."""
    payer: Identity
    ower: Identity
    amount: Decimal = Field(gt=0)
    source_chain: str
    token_type: TokenType = TokenType.USDC
    debt_id: Optional[str] = None


class SubmitRequest(BaseModel):
    debt_id: str
    ower: Identity
    intent: PaymentIntent
    transaction_hash: str


class BridgeDeliveryEvent(BaseModel):
    """Delivery notification pushed by a destination-chain watcher."""
    message_id: str
    state: Union[int, str]
    destination_transaction_hash: Optional[str] = None
    destination_block_number: Optional[int] = None
    reason: Optional[str] = None
