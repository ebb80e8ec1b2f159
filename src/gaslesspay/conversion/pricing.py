"""USD valuation used when a transfer record is created.

A fixed table keeps ``amount_usd`` deterministic; the value is computed
once per record and never refreshed.
"""

from decimal import ROUND_HALF_UP, Decimal
from typing import Optional

DEFAULT_USD_RATES: dict[str, Decimal] = {
    "USDC": Decimal("1.00"),
    "USDT": Decimal("1.00"),
    "ETH": Decimal("2400.00"),
    "BTC": Decimal("45000.00"),
}

USD_PRECISION = Decimal("0.000000001")


class FixedUsdPriceTable:
    """Static symbol -> USD rate lookup; unknown symbols are valued at 1.00."""

    def __init__(self, rates: Optional[dict[str, Decimal]] = None):
        self.rates = dict(rates or DEFAULT_USD_RATES)

    def rate(self, symbol: str) -> Decimal:
        return self.rates.get(symbol.upper(), Decimal("1.00"))

    def usd_value(self, symbol: str, amount: Decimal) -> Decimal:
        return (amount * self.rate(symbol)).quantize(USD_PRECISION, rounding=ROUND_HALF_UP)
