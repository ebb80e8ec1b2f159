"""Application configuration using pydantic-settings.

Network, relay and fee-sponsor settings for gasless token transfers.
"""

from decimal import Decimal
from functools import lru_cache
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ======================
    # Environment
    # ======================
    environment: str = Field(default="development", description="Runtime environment")
    debug: bool = Field(default=True, description="Enable debug mode")

    # ======================
    # Database
    # ======================
    database_url: str = Field(
        default="sqlite+aiosqlite:///./data/gaslesspay.db",
        description="Database connection URL",
    )

    # ======================
    # Network
    # ======================
    network_name: str = Field(default="arbitrum-sepolia", description="Active network")
    rpc_url: str = Field(
        default="https://sepolia-rollup.arbitrum.io/rpc", description="Chain RPC URL"
    )
    bundler_url: str = Field(default="", description="ERC-4337 bundler/relay URL")
    entry_point_address: str = Field(
        default="0x0000000071727De22E5E9d8BAf0edAc6f37da032",
        description="ERC-4337 v0.7 entry point",
    )

    # ======================
    # Fee sponsor (paymaster)
    # ======================
    paymaster_address: Optional[str] = Field(
        default=None, description="Token paymaster that sponsors network fees"
    )
    sponsor_allowance: Decimal = Field(
        default=Decimal("10"), description="Whole tokens the paymaster may claim per operation"
    )
    paymaster_verification_gas_limit: int = Field(default=200_000)
    paymaster_post_op_gas_limit: int = Field(default=15_000)

    # Used when the relay cannot quote fees or gas
    fallback_max_fee_per_gas: int = Field(default=100 * 10**9, description="100 gwei")
    fallback_max_priority_fee_per_gas: int = Field(default=1 * 10**9, description="1 gwei")
    fallback_call_gas_limit: int = Field(default=150_000)
    fallback_verification_gas_limit: int = Field(default=500_000)
    fallback_pre_verification_gas: int = Field(default=100_000)

    # ======================
    # Relay timing
    # ======================
    http_timeout: float = Field(default=30.0, description="Outbound HTTP timeout (seconds)")
    receipt_timeout: float = Field(default=120.0, description="Max wait for inclusion receipt")
    receipt_poll_interval: float = Field(default=2.0, description="Receipt poll interval")

    # ======================
    # Conversion providers
    # ======================
    local_fiat_currency: str = Field(default="NGN", description="Local fiat for P2P quotes")
    cmc_api_key: str = Field(default="", description="CoinMarketCap API key")
    cmc_api_url: str = Field(
        default="https://pro-api.coinmarketcap.com/v2/tools/price-conversion"
    )
    coingecko_api_url: str = Field(default="https://api.coingecko.com/api/v3/simple/price")
    binance_p2p_url: str = Field(
        default="https://p2p.binance.com/bapi/c2c/v2/friendly/c2c/adv/search"
    )
    conversion_cache_ttl: float = Field(default=30.0, description="Quote cache TTL (seconds)")

    # ======================
    # Platform
    # ======================
    platform_fee_rate: Decimal = Field(default=Decimal("0.01"), description="1% platform fee")
    max_page_size: int = Field(default=100, description="History page size cap")
    sender_lock_timeout: float = Field(
        default=180.0, description="Max wait for another transfer by the same sender"
    )
    stale_transaction_minutes: int = Field(
        default=30, description="Age after which in-flight records are reconciled"
    )

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.environment.lower() == "production"

    def get_safe_dict(self) -> dict:
        """Return settings dict with secrets redacted."""
        return {
            "environment": self.environment,
            "debug": self.debug,
            "database_url": self._redact_url(self.database_url),
            "network": {
                "name": self.network_name,
                "rpc": self.rpc_url,
                "bundler": "***" if self.bundler_url else "(not set)",
                "entry_point": self.entry_point_address,
                "paymaster": self.paymaster_address or "(not set)",
            },
            "conversion": {
                "local_fiat": self.local_fiat_currency,
                "cmc_api_key": "***" if self.cmc_api_key else "(not set)",
                "cache_ttl": self.conversion_cache_ttl,
            },
            "platform": {
                "fee_rate": str(self.platform_fee_rate),
                "sender_lock_timeout": self.sender_lock_timeout,
            },
        }

    @staticmethod
    def _redact_url(url: str) -> str:
        """Redact sensitive parts of database URL."""
        if "://" in url and "@" in url:
            proto, rest = url.split("://", 1)
            if "@" in rest:
                creds, host = rest.rsplit("@", 1)
                if ":" in creds:
                    user, _ = creds.split(":", 1)
                    return f"{proto}://{user}:***@{host}"
        return url


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
