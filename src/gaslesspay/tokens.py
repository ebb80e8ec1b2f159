"""Supported networks, token contracts and unit conversion."""

from dataclasses import dataclass, field
from decimal import ROUND_UP, Decimal, InvalidOperation, localcontext
from typing import Optional

from gaslesspay.errors import ValidationError


@dataclass(frozen=True)
class TokenConfig:
    """ERC-20 token deployed on a network."""

    symbol: str
    address: str
    decimals: int
    name: str


@dataclass(frozen=True)
class NetworkConfig:
    """EVM network with its supported stablecoins."""

    name: str
    chain_id: int
    is_testnet: bool
    explorer_url: str
    native_symbol: str = "ETH"
    tokens: dict[str, TokenConfig] = field(default_factory=dict)

    def get_token(self, symbol: str) -> Optional[TokenConfig]:
        return self.tokens.get(symbol.upper())

    @property
    def supported_tokens(self) -> list[str]:
        return list(self.tokens.keys())


NETWORKS: dict[str, NetworkConfig] = {
    "arbitrum-sepolia": NetworkConfig(
        name="arbitrum-sepolia",
        chain_id=421614,
        is_testnet=True,
        explorer_url="https://sepolia.arbiscan.io",
        tokens={
            "USDC": TokenConfig(
                symbol="USDC",
                address="0x75faf114eafb1BDbe2F0316DF893fd58CE46AA4d",
                decimals=6,
                name="USD Coin",
            ),
            "USDT": TokenConfig(
                symbol="USDT",
                address="0x30fA2FbE15c1EaDfbEF28C188b7B8dbd3c1Ff2eB",
                decimals=6,
                name="Tether USD",
            ),
        },
    ),
    "base-sepolia": NetworkConfig(
        name="base-sepolia",
        chain_id=84532,
        is_testnet=True,
        explorer_url="https://sepolia.basescan.org",
        tokens={
            "USDC": TokenConfig(
                symbol="USDC",
                address="0x036CbD53842c5426634e7929541eC2318f3dCF7e",
                decimals=6,
                name="USDC",
            ),
        },
    ),
    "arbitrum": NetworkConfig(
        name="arbitrum",
        chain_id=42161,
        is_testnet=False,
        explorer_url="https://arbiscan.io",
        tokens={
            "USDC": TokenConfig(
                symbol="USDC",
                address="0xaf88d065e77c8cC2239327C5EDb3A432268e5831",
                decimals=6,
                name="USD Coin",
            ),
            "USDT": TokenConfig(
                symbol="USDT",
                address="0xFd086bC7CD5C481DCC9C85ebE478A1C0b69FCbb9",
                decimals=6,
                name="Tether USD",
            ),
        },
    ),
}


def get_network(name: str) -> NetworkConfig:
    """Look up a network by name.

    Raises:
        ValidationError: If the network is not configured
    """
    network = NETWORKS.get(name.lower())
    if network is None:
        raise ValidationError(f"Unsupported network: {name}")
    return network


# Enough significant digits for any uint256 amount at any token precision
UNIT_PRECISION = 100


def round_up_to_decimals(amount: Decimal, decimals: int) -> Decimal:
    """Round a positive amount up to the token's smallest unit."""
    with localcontext() as ctx:
        ctx.prec = UNIT_PRECISION
        return amount.quantize(Decimal(1).scaleb(-decimals), rounding=ROUND_UP)


def parse_units(amount: str | Decimal | int, decimals: int) -> int:
    """Convert a human-readable positive amount to smallest-unit integer.

    "40" with 6 decimals becomes 40_000_000. Amounts with more fractional
    digits than the token supports are rejected rather than rounded.
    """
    try:
        value = Decimal(str(amount).strip())
    except (InvalidOperation, ValueError):
        raise ValidationError(f"Invalid amount: {amount}")

    if not value.is_finite() or value <= 0:
        raise ValidationError(f"Amount must be a positive number: {amount}")

    with localcontext() as ctx:
        ctx.prec = UNIT_PRECISION
        scaled = value.scaleb(decimals)
        whole = scaled == scaled.to_integral_value()
    if not whole:
        raise ValidationError(f"Amount {amount} has more than {decimals} decimal places")
    return int(scaled)


def format_units(raw: int | Decimal, decimals: int) -> str:
    """Convert a smallest-unit integer to a plain decimal string."""
    with localcontext() as ctx:
        ctx.prec = UNIT_PRECISION
        value = Decimal(int(raw)).scaleb(-decimals)
    text = format(value, "f")
    if "." in text:
        text = text.rstrip("0").rstrip(".")
    return text or "0"
