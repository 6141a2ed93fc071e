"""
Chain registry - static metadata for supported chains and tokens.

Every chain carries its CCIP selector, RPC endpoint, the deployed payment
splitter contract, a block explorer and the settlement-eligible token
contracts. The registry is built once at startup and never mutated.
"""

from dataclasses import dataclass, field
from enum import IntEnum
from typing import Dict, Iterable, List, Mapping, Optional, Union

from app.core.exceptions import UnsupportedChain, UnsupportedToken


class TokenType(IntEnum):
    """Token codes as understood by the splitter contract's TokenType enum."""
    USDC = 0
    CCIP_BNM = 1
    CCIP_LNM = 2


TOKEN_SYMBOLS: Dict[TokenType, str] = {
    TokenType.USDC: "USDC",
    TokenType.CCIP_BNM: "CCIP-BnM",
    TokenType.CCIP_LNM: "CCIP-LnM",
}

TOKEN_DECIMALS: Dict[TokenType, int] = {
    TokenType.USDC: 6,
    TokenType.CCIP_BNM: 18,
    TokenType.CCIP_LNM: 18,
}


@dataclass(frozen=True)
class TokenConfig:
    token_type: TokenType
    address: str
    decimals: int

    @property
    def symbol(self) -> str:
        return TOKEN_SYMBOLS[self.token_type]


@dataclass(frozen=True)
class ChainConfig:
    chain_id: str
    name: str
    bridge_selector: str
    rpc_endpoint: str
    contract_address: str
    explorer_tx_url: str
    tokens: Mapping[TokenType, TokenConfig] = field(default_factory=dict)

    def token(self, token_type: Union[TokenType, int]) -> TokenConfig:
        try:
            return self.tokens[TokenType(token_type)]
        except (KeyError, ValueError):
            raise UnsupportedToken(
                f"Token {token_type} is not supported on chain {self.chain_id}",
                chain_id=self.chain_id,
                token_type=int(token_type)
            )

    def token_address(self, token_type: Union[TokenType, int]) -> str:
        return self.token(token_type).address

    def explorer_url(self, tx_hash: str) -> str:
        return f"{self.explorer_tx_url}{tx_hash}"


def _tokens(usdc: str, bnm: str, lnm: str) -> Dict[TokenType, TokenConfig]:
    addresses = {
        TokenType.USDC: usdc,
        TokenType.CCIP_BNM: bnm,
        TokenType.CCIP_LNM: lnm,
    }
    return {
        token_type: TokenConfig(token_type, address, TOKEN_DECIMALS[token_type])
        for token_type, address in addresses.items()
    }


DEFAULT_CHAINS: List[ChainConfig] = [
    ChainConfig(
        chain_id="11155111",
        name="Ethereum Sepolia",
        bridge_selector="16015286601757825753",
        rpc_endpoint="https://ethereum-sepolia-rpc.publicnode.com",
        contract_address="0xf3d63a2De78d34A875c7578c979d4cfa11c5E32b",
        explorer_tx_url="https://sepolia.etherscan.io/tx/",
        tokens=_tokens(
            usdc="0x1c7D4B196Cb0C7B01d743Fbc6116a902379C7238",
            bnm="0x84F1bb3a3D82c9A6CF52c87a4F8dD5Ee5d23b4Fb",
            lnm="0x466D489b6d36E7E3b824ef491C225F5830E81cC1",
        ),
    ),
    ChainConfig(
        chain_id="421614",
        name="Arbitrum Sepolia",
        bridge_selector="3478487238524512106",
        rpc_endpoint="https://sepolia-rollup.arbitrum.io/rpc",
        contract_address="0x1F8BeBCaEbf0d2e59e800e8c41888c41fCD3d0cf",
        explorer_tx_url="https://sepolia.arbiscan.io/tx/",
        tokens=_tokens(
            usdc="0x75faf114eafb1BDbe2F0316DF893fd58CE46AA4d",
            bnm="0xA8C0c11bf64AF62CDCA6f93D3769B88BdD7cb93D",
            lnm="0x139E99f0ab4084E14e6bb7DacA289a91a2d92927",
        ),
    ),
    ChainConfig(
        chain_id="84532",
        name="Base Sepolia",
        bridge_selector="10344971235874465080",
        rpc_endpoint="https://sepolia.base.org",
        contract_address="0x8398302f3E48eE7BcA257c9a13f9661d5F2C1c60",
        explorer_tx_url="https://sepolia.basescan.org/tx/",
        tokens=_tokens(
            usdc="0x036CbD53842c5426634e7929541eC2318f3dCF7e",
            bnm="0x88A2d74F47a237a62e7A51cdDa67270CE381555e",
            lnm="0xF1623862e4c9f9Fba1Ac0181C4fF53B4f958F065",
        ),
    ),
]


class ChainRegistry:
    """Read-only lookup of chain metadata."""

    def __init__(self, chains: Iterable[ChainConfig], settlement_chain_id: str):
        self._chains: Dict[str, ChainConfig] = {c.chain_id: c for c in chains}
        self.settlement_chain = self.lookup(settlement_chain_id)

    @classmethod
    def from_settings(
        cls,
        settlement_chain_id: str,
        rpc_overrides: Optional[Mapping[str, str]] = None
    ) -> "ChainRegistry":
        """Build the default registry, swapping in configured RPC endpoints."""
        rpc_overrides = rpc_overrides or {}
        chains = []
        for chain in DEFAULT_CHAINS:
            endpoint = rpc_overrides.get(chain.chain_id, chain.rpc_endpoint)
            chains.append(ChainConfig(
                chain_id=chain.chain_id,
                name=chain.name,
                bridge_selector=chain.bridge_selector,
                rpc_endpoint=endpoint,
                contract_address=chain.contract_address,
                explorer_tx_url=chain.explorer_tx_url,
                tokens=chain.tokens,
            ))
        return cls(chains, settlement_chain_id)

    def lookup(self, chain_id: Union[str, int]) -> ChainConfig:
        chain = self._chains.get(str(chain_id))
        if chain is None:
            raise UnsupportedChain(
                f"Unsupported chain: {chain_id}",
                chain_id=str(chain_id)
            )
        return chain

    def token(self, chain_id: Union[str, int], token_type: Union[TokenType, int]) -> TokenConfig:
        return self.lookup(chain_id).token(token_type)

    def is_settlement_chain(self, chain_id: Union[str, int]) -> bool:
        return str(chain_id) == self.settlement_chain.chain_id

    @property
    def chain_ids(self) -> List[str]:
        return list(self._chains)
