"""Currency conversion with ordered provider fallback and a short-lived cache."""

import logging
import time
from decimal import Decimal
from typing import Callable, Optional

from gaslesspay.conversion.providers import ConversionQuote, RateProvider
from gaslesspay.errors import ConversionError, ValidationError

logger = logging.getLogger(__name__)

CacheKey = tuple[str, str, str]


class ConversionEngine:
    """Tries providers in order until one returns a quote.

    Pairs involving the local fiat go to the peer-marketplace provider first;
    every pair then falls back to the primary and secondary aggregators.
    Quotes are cached by (amount, from, to). The cache is not locked:
    concurrent misses for the same key may each reach upstream.
    """

    def __init__(
        self,
        peer_marketplace: RateProvider,
        primary: RateProvider,
        secondary: RateProvider,
        local_fiat: str = "NGN",
        cache_ttl: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.peer_marketplace = peer_marketplace
        self.primary = primary
        self.secondary = secondary
        self.local_fiat = local_fiat.upper()
        self.cache_ttl = cache_ttl
        self._clock = clock
        self._cache: dict[CacheKey, tuple[float, ConversionQuote]] = {}

    def providers_for(self, from_currency: str, to_currency: str) -> list[RateProvider]:
        """Ordered providers applicable to a pair."""
        providers: list[RateProvider] = []
        if self.local_fiat in (from_currency, to_currency):
            providers.append(self.peer_marketplace)
        providers.extend([self.primary, self.secondary])
        return providers

    def _cache_get(self, key: CacheKey) -> Optional[ConversionQuote]:
        entry = self._cache.get(key)
        if entry is None:
            return None
        expires_at, quote = entry
        if self._clock() >= expires_at:
            del self._cache[key]
            return None
        return quote

    def _cache_put(self, key: CacheKey, quote: ConversionQuote) -> None:
        self._cache[key] = (self._clock() + self.cache_ttl, quote)

    def clear_cache(self) -> None:
        self._cache.clear()

    async def convert(
        self, amount: Decimal | str, from_currency: str, to_currency: str
    ) -> ConversionQuote:
        """Convert an amount, serving from cache when fresh.

        Raises:
            ValidationError: Non-positive or malformed amount
            ConversionError: Every applicable provider failed
        """
        try:
            value = Decimal(str(amount))
        except ArithmeticError:
            raise ValidationError(f"Invalid amount: {amount}")
        if not value.is_finite() or value <= 0:
            raise ValidationError(f"Amount must be positive: {amount}")

        from_currency = from_currency.upper()
        to_currency = to_currency.upper()
        key = (str(value.normalize()), from_currency, to_currency)

        cached = self._cache_get(key)
        if cached is not None:
            logger.debug(f"Conversion cache hit for {key}")
            return cached

        errors: dict[str, str] = {}
        for provider in self.providers_for(from_currency, to_currency):
            try:
                quote = await provider.convert(value, from_currency, to_currency)
            except Exception as e:
                logger.warning(f"{provider.name} conversion failed: {e}")
                errors[provider.name] = str(e)
                continue

            self._cache_put(key, quote)
            return quote

        raise ConversionError(
            f"All conversion providers failed for {from_currency}->{to_currency}", errors
        )
