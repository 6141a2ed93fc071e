"""
Chain RPC client

Read-only web3 access to the supported chains: ERC-20 balances, transaction
confirmation depth, and the bridge message id emitted by the payment
splitter contract. Every call is bounded by the configured RPC timeout and
failures surface as ChainQueryFailed.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional

from web3 import AsyncHTTPProvider, AsyncWeb3, Web3
from web3.exceptions import TransactionNotFound

from app.core.chains import ChainRegistry
from app.core.exceptions import ChainQueryFailed

logger = logging.getLogger(__name__)

ERC20_BALANCE_ABI = [
    {
        "inputs": [{"internalType": "address", "name": "account", "type": "address"}],
        "name": "balanceOf",
        "outputs": [{"internalType": "uint256", "name": "", "type": "uint256"}],
        "stateMutability": "view",
        "type": "function"
    }
]


@dataclass
class TransactionStatus:
    """Source-chain view of a broadcast transaction."""
    found: bool
    succeeded: bool = False
    block_number: Optional[int] = None
    confirmations: int = 0

    @property
    def reverted(self) -> bool:
        return self.found and not self.succeeded


def extract_bridge_message_id(receipt: Mapping[str, Any], emitter: str) -> Optional[str]:
    """
    Pull the CCIP message id out of a payment transaction receipt.

    The splitter contract emits DirectPaymentSent with the message id as its
    first indexed topic; logs from other contracts (token transfers, the
    CCIP router) are ignored.
    """
    emitter = emitter.lower()
    for log in receipt.get("logs", []):
        address = str(log.get("address", "")).lower()
        topics = log.get("topics", [])
        if address != emitter or len(topics) < 2:
            continue
        topic = topics[1]
        message_id = topic if isinstance(topic, str) else Web3.to_hex(topic)
        if len(message_id) == 66:
            return message_id.lower()
    return None


class ChainClient:
    """Async web3 access to every chain in the registry."""

    def __init__(self, registry: ChainRegistry, timeout: float = 5.0):
        self.registry = registry
        self.timeout = timeout
        self._web3: Dict[str, AsyncWeb3] = {}

    def _w3(self, chain_id: str) -> AsyncWeb3:
        chain = self.registry.lookup(chain_id)
        w3 = self._web3.get(chain.chain_id)
        if w3 is None:
            w3 = AsyncWeb3(AsyncHTTPProvider(
                chain.rpc_endpoint,
                request_kwargs={"timeout": self.timeout}
            ))
            self._web3[chain.chain_id] = w3
        return w3

    async def _call(self, chain_id: str, description: str, awaitable):
        try:
            return await asyncio.wait_for(awaitable, timeout=self.timeout)
        except asyncio.TimeoutError as exc:
            logger.warning(f"RPC timeout on chain {chain_id}: {description}")
            raise ChainQueryFailed(
                f"RPC call timed out on chain {chain_id}: {description}",
                chain_id=chain_id
            ) from exc

    async def get_token_balance(self, chain_id: str, token_address: str, wallet_address: str) -> int:
        """ERC-20 balance of wallet_address in base units."""
        w3 = self._w3(chain_id)
        contract = w3.eth.contract(
            address=Web3.to_checksum_address(token_address),
            abi=ERC20_BALANCE_ABI
        )
        try:
            balance = await self._call(
                chain_id,
                f"balanceOf({wallet_address})",
                contract.functions.balanceOf(Web3.to_checksum_address(wallet_address)).call()
            )
        except ChainQueryFailed:
            raise
        except Exception as exc:
            logger.warning(f"Balance query failed on chain {chain_id}: {exc}")
            raise ChainQueryFailed(
                f"Balance query failed on chain {chain_id}: {exc}",
                chain_id=chain_id
            ) from exc
        return int(balance)

    async def _get_receipt(self, chain_id: str, tx_hash: str):
        w3 = self._w3(chain_id)
        try:
            return await self._call(chain_id, f"receipt {tx_hash}", w3.eth.get_transaction_receipt(tx_hash))
        except TransactionNotFound:
            return None
        except ChainQueryFailed:
            raise
        except Exception as exc:
            logger.warning(f"Receipt query failed on chain {chain_id} for {tx_hash}: {exc}")
            raise ChainQueryFailed(
                f"Receipt query failed on chain {chain_id}: {exc}",
                chain_id=chain_id
            ) from exc

    async def get_transaction_status(self, chain_id: str, tx_hash: str) -> TransactionStatus:
        """Receipt status and confirmation depth of a transaction."""
        receipt = await self._get_receipt(chain_id, tx_hash)
        if receipt is None:
            return TransactionStatus(found=False)

        w3 = self._w3(chain_id)
        try:
            latest = await self._call(chain_id, "block_number", w3.eth.block_number)
        except ChainQueryFailed:
            raise
        except Exception as exc:
            raise ChainQueryFailed(
                f"Block number query failed on chain {chain_id}: {exc}",
                chain_id=chain_id
            ) from exc

        block_number = receipt["blockNumber"]
        return TransactionStatus(
            found=True,
            succeeded=receipt["status"] == 1,
            block_number=block_number,
            confirmations=max(latest - block_number + 1, 0)
        )

    async def get_bridge_message_id(self, chain_id: str, tx_hash: str) -> Optional[str]:
        """Bridge message id from the splitter contract logs, if mined."""
        receipt = await self._get_receipt(chain_id, tx_hash)
        if receipt is None:
            return None
        emitter = self.registry.lookup(chain_id).contract_address
        return extract_bridge_message_id(receipt, emitter)

    async def aclose(self) -> None:
        for w3 in self._web3.values():
            disconnect = getattr(w3.provider, "disconnect", None)
            if disconnect is not None:
                await disconnect()
        self._web3.clear()
