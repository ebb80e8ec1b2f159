"""Currency conversion across rate-quote providers."""

from gaslesspay.conversion.engine import ConversionEngine
from gaslesspay.conversion.pricing import FixedUsdPriceTable
from gaslesspay.conversion.providers import (
    BinanceP2PProvider,
    CoinGeckoProvider,
    CoinMarketCapProvider,
    ConversionQuote,
    ProviderError,
    RateProvider,
)

__all__ = [
    "BinanceP2PProvider",
    "CoinGeckoProvider",
    "CoinMarketCapProvider",
    "ConversionEngine",
    "ConversionQuote",
    "FixedUsdPriceTable",
    "ProviderError",
    "RateProvider",
]
