"""Rate-quote providers.

Each provider is independent and exposes the same ``convert`` capability:
- CoinMarketCap: general-purpose price conversion (primary)
- CoinGecko: simple price API (secondary)
- Binance P2P: best counter-offer for pairs involving the local fiat
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional, Protocol

import httpx

logger = logging.getLogger(__name__)


class ProviderError(Exception):
    """A single provider could not produce a quote."""


@dataclass
class ConversionQuote:
    """Converted amount from one provider."""

    amount: Decimal
    from_currency: str
    to_currency: str
    converted_amount: Decimal
    provider: str
    last_updated: str = field(
        default_factory=lambda: datetime.now(timezone.utc).isoformat()
    )

    @property
    def rate(self) -> Decimal:
        if self.amount == 0:
            return Decimal("0")
        return self.converted_amount / self.amount

    def to_dict(self) -> dict:
        return {
            "amount": str(self.amount),
            "from_currency": self.from_currency,
            "to_currency": self.to_currency,
            "converted_amount": str(self.converted_amount),
            "provider": self.provider,
            "last_updated": self.last_updated,
        }


class RateProvider(Protocol):
    """Anything that can convert an amount between two currencies."""

    name: str

    async def convert(
        self, amount: Decimal, from_currency: str, to_currency: str
    ) -> ConversionQuote: ...


class _HttpProvider:
    """Shared request plumbing; holds no quote state."""

    def __init__(self, timeout: float = 30.0, client: Optional[httpx.AsyncClient] = None):
        self.timeout = timeout
        self._client = client

    async def _request(self, method: str, url: str, **kwargs) -> dict:
        try:
            if self._client is not None:
                response = await self._client.request(method, url, timeout=self.timeout, **kwargs)
            else:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    response = await client.request(method, url, **kwargs)
        except httpx.HTTPError as e:
            raise ProviderError(f"request failed: {e}")

        if response.status_code != 200:
            raise ProviderError(f"HTTP {response.status_code}: {response.text[:200]}")
        return response.json()


class CoinMarketCapProvider(_HttpProvider):
    """CoinMarketCap price-conversion endpoint."""

    name = "CoinMarketCap"

    def __init__(
        self,
        api_key: str,
        api_url: str = "https://pro-api.coinmarketcap.com/v2/tools/price-conversion",
        timeout: float = 30.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        super().__init__(timeout, client)
        self.api_key = api_key
        self.api_url = api_url

    async def convert(
        self, amount: Decimal, from_currency: str, to_currency: str
    ) -> ConversionQuote:
        data = await self._request(
            "GET",
            self.api_url,
            headers={"X-CMC_PRO_API_KEY": self.api_key, "Accept": "application/json"},
            params={"amount": str(amount), "symbol": from_currency, "convert": to_currency},
        )

        entries = data.get("data") or []
        # v2 returns a list per symbol match; v1 returns a single object
        entry = entries[0] if isinstance(entries, list) and entries else entries
        quote = (entry or {}).get("quote", {}).get(to_currency) if entry else None
        if not quote or quote.get("price") is None:
            raise ProviderError(f"Unable to get quote for {to_currency}")

        return ConversionQuote(
            amount=amount,
            from_currency=from_currency,
            to_currency=to_currency,
            converted_amount=Decimal(str(quote["price"])),
            provider=self.name,
            last_updated=quote.get("last_updated") or datetime.now(timezone.utc).isoformat(),
        )


# CoinGecko identifies assets by slug, not ticker
COINGECKO_IDS = {
    "USDT": "tether",
    "USDC": "usd-coin",
    "ETH": "ethereum",
    "BTC": "bitcoin",
}


class CoinGeckoProvider(_HttpProvider):
    """CoinGecko simple price endpoint."""

    name = "CoinGecko"

    def __init__(
        self,
        api_url: str = "https://api.coingecko.com/api/v3/simple/price",
        timeout: float = 30.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        super().__init__(timeout, client)
        self.api_url = api_url

    @staticmethod
    def coin_id(currency: str) -> str:
        return COINGECKO_IDS.get(currency.upper(), currency.lower())

    async def convert(
        self, amount: Decimal, from_currency: str, to_currency: str
    ) -> ConversionQuote:
        coin_id = self.coin_id(from_currency)
        vs_currency = to_currency.lower()
        data = await self._request(
            "GET", self.api_url, params={"ids": coin_id, "vs_currencies": vs_currency}
        )

        rate = (data.get(coin_id) or {}).get(vs_currency)
        if not rate:
            raise ProviderError(f"Unable to get rate for {from_currency} to {to_currency}")

        return ConversionQuote(
            amount=amount,
            from_currency=from_currency,
            to_currency=to_currency,
            converted_amount=amount * Decimal(str(rate)),
            provider=self.name,
        )


class BinanceP2PProvider(_HttpProvider):
    """Binance P2P order book: best single advertisement for a fiat pair."""

    name = "Binance P2P"
    page_size = 1

    def __init__(
        self,
        fiat: str = "NGN",
        api_url: str = "https://p2p.binance.com/bapi/c2c/v2/friendly/c2c/adv/search",
        timeout: float = 30.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        super().__init__(timeout, client)
        self.fiat = fiat.upper()
        self.api_url = api_url

    def supports(self, from_currency: str, to_currency: str) -> bool:
        return self.fiat in (from_currency.upper(), to_currency.upper())

    async def convert(
        self, amount: Decimal, from_currency: str, to_currency: str
    ) -> ConversionQuote:
        if not self.supports(from_currency, to_currency):
            raise ProviderError(f"Binance P2P only supports {self.fiat} conversions")

        selling_fiat = from_currency.upper() == self.fiat
        asset = to_currency if selling_fiat else from_currency
        data = await self._request(
            "POST",
            self.api_url,
            json={
                "asset": asset.upper(),
                "fiat": self.fiat,
                "tradeType": "SELL" if selling_fiat else "BUY",
                "page": 1,
                "rows": self.page_size,
            },
        )

        offers = data.get("data") or []
        best = offers[0].get("adv") if offers else None
        if not best or not best.get("price"):
            raise ProviderError("No available offers found")

        price = Decimal(str(best["price"]))
        converted = amount / price if selling_fiat else amount * price

        return ConversionQuote(
            amount=amount,
            from_currency=from_currency,
            to_currency=to_currency,
            converted_amount=converted,
            provider=self.name,
        )
