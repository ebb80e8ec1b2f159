"""On-chain token balance reads.

Balances always come from chain state (ERC-20 ``balanceOf``), never from the
ledger. Raw values are smallest-unit integers; ``formatted`` applies the
token's configured decimals.
"""

import logging
from dataclasses import asdict, dataclass
from typing import Optional

from gaslesspay.chain.erc20 import ERC20Reader
from gaslesspay.errors import ValidationError
from gaslesspay.tokens import NetworkConfig, TokenConfig, format_units

logger = logging.getLogger(__name__)


@dataclass
class TokenBalance:
    """Balance of one token at one address."""

    raw: int
    formatted: str
    decimals: int
    symbol: str
    token_address: Optional[str] = None
    network: Optional[str] = None
    error: Optional[str] = None

    def to_dict(self) -> dict:
        data = asdict(self)
        data["raw"] = str(self.raw)
        return data


class BalanceService:
    """Reads token balances for addresses on the configured network."""

    def __init__(self, reader: ERC20Reader, network: NetworkConfig):
        self.reader = reader
        self.network = network

    def get_token(self, symbol: str) -> TokenConfig:
        """Resolve a supported token.

        Raises:
            ValidationError: If the token is not supported on this network
        """
        token = self.network.get_token(symbol)
        if token is None:
            raise ValidationError(f"Unsupported token: {symbol}")
        return token

    async def check_balance(self, address: str, token_symbol: str) -> TokenBalance:
        """Read one token balance.

        Raises:
            ValidationError: Unsupported token
            RpcError: Chain read failed
        """
        token = self.get_token(token_symbol)
        raw = await self.reader.balance_of(token.address, address)
        return TokenBalance(
            raw=raw,
            formatted=format_units(raw, token.decimals),
            decimals=token.decimals,
            symbol=token.symbol,
            token_address=token.address,
            network=self.network.name,
        )

    async def get_all_balances(self, address: str) -> list[TokenBalance]:
        """Read every supported token; failed reads become zero entries with an error."""
        balances = []
        for symbol, token in self.network.tokens.items():
            try:
                balances.append(await self.check_balance(address, symbol))
            except Exception as e:
                logger.warning(f"Failed to fetch {symbol} balance for {address}: {e}")
                balances.append(
                    TokenBalance(
                        raw=0,
                        formatted="0",
                        decimals=token.decimals,
                        symbol=symbol,
                        token_address=token.address,
                        network=self.network.name,
                        error=str(e),
                    )
                )
        return balances
