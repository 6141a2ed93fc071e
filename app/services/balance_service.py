import logging
from dataclasses import dataclass

from app.clients.chain_client import ChainClient
from app.core.chains import ChainRegistry, TokenType
from app.core.exceptions import BalanceQueryFailed, ChainQueryFailed
from app.utils.amounts import AmountLike, format_amount, to_base_units

logger = logging.getLogger(__name__)


@dataclass
class BalanceCheck:
    sufficient: bool
    current_balance: str
    required_balance: str
    current_base_units: int
    required_base_units: int
    token_address: str
    token_symbol: str


class BalanceVerifier:
    """Answers whether a wallet holds enough of a token. Read-only."""

    def __init__(self, registry: ChainRegistry, chain_client: ChainClient):
        self.registry = registry
        self.chain_client = chain_client

    async def check_balance(
        self,
        wallet_address: str,
        chain_id: str,
        token_type: TokenType,
        required_amount: AmountLike
    ) -> BalanceCheck:
        """
        Compare the on-chain balance with required_amount (display units).

        Raises UnsupportedChain/UnsupportedToken for unknown inputs and
        BalanceQueryFailed when the chain cannot be queried; a failed query
        is never reported as insufficient.
        """
        token = self.registry.token(chain_id, token_type)
        required = to_base_units(required_amount, token.decimals)

        try:
            current = await self.chain_client.get_token_balance(
                str(chain_id), token.address, wallet_address
            )
        except ChainQueryFailed as exc:
            raise BalanceQueryFailed(
                f"Could not read {token.symbol} balance on chain {chain_id}",
                chain_id=str(chain_id),
                token_type=int(token_type)
            ) from exc

        return BalanceCheck(
            sufficient=current >= required,
            current_balance=format_amount(current, token.decimals),
            required_balance=format_amount(required, token.decimals),
            current_base_units=current,
            required_base_units=required,
            token_address=token.address,
            token_symbol=token.symbol
        )
