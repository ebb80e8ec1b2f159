"""Explicit construction of the service graph.

Build one AppContext at process start and hand it to whatever serves
requests; nothing in the package keeps module-level service instances.
"""

import logging
from dataclasses import dataclass
from typing import Optional

import httpx

from gaslesspay.chain.erc20 import ERC20Reader
from gaslesspay.chain.rpc import JsonRpcClient
from gaslesspay.config import Settings, get_settings
from gaslesspay.conversion.engine import ConversionEngine
from gaslesspay.conversion.pricing import FixedUsdPriceTable
from gaslesspay.conversion.providers import (
    BinanceP2PProvider,
    CoinGeckoProvider,
    CoinMarketCapProvider,
)
from gaslesspay.crypto import KeyVault, PasswordKeyVault
from gaslesspay.gasless.bundler import BundlerClient
from gaslesspay.gasless.engine import GaslessExecutionEngine
from gaslesspay.ledger.database import Database
from gaslesspay.services.balances import BalanceService
from gaslesspay.services.invoices import InvoiceSettlement
from gaslesspay.services.orchestrator import TransactionOrchestrator
from gaslesspay.services.reconciliation import ReconciliationService
from gaslesspay.services.recipients import RecipientResolver
from gaslesspay.tokens import get_network
from gaslesspay.utils.locks import KeyedLockRegistry

logger = logging.getLogger(__name__)


@dataclass
class AppContext:
    settings: Settings
    db: Database
    http: httpx.AsyncClient
    balances: BalanceService
    resolver: RecipientResolver
    engine: GaslessExecutionEngine
    conversion: ConversionEngine
    orchestrator: TransactionOrchestrator
    invoices: InvoiceSettlement
    reconciliation: ReconciliationService

    async def close(self) -> None:
        await self.http.aclose()
        await self.db.dispose()


def build_context(
    settings: Optional[Settings] = None,
    vault: Optional[KeyVault] = None,
    http: Optional[httpx.AsyncClient] = None,
) -> AppContext:
    """Wire every service from settings."""
    settings = settings or get_settings()
    network = get_network(settings.network_name)
    http = http or httpx.AsyncClient(timeout=settings.http_timeout)

    db = Database(settings.database_url, echo=settings.debug and not settings.is_production)

    chain_rpc = JsonRpcClient(settings.rpc_url, timeout=settings.http_timeout, client=http)
    bundler_rpc = JsonRpcClient(
        settings.bundler_url or settings.rpc_url, timeout=settings.http_timeout, client=http
    )
    reader = ERC20Reader(chain_rpc)

    balances = BalanceService(reader, network)
    resolver = RecipientResolver(db)
    bundler = BundlerClient(
        bundler_rpc,
        settings.entry_point_address,
        receipt_timeout=settings.receipt_timeout,
        poll_interval=settings.receipt_poll_interval,
    )
    engine = GaslessExecutionEngine(network, reader, bundler, settings)

    conversion = ConversionEngine(
        peer_marketplace=BinanceP2PProvider(
            fiat=settings.local_fiat_currency,
            api_url=settings.binance_p2p_url,
            timeout=settings.http_timeout,
            client=http,
        ),
        primary=CoinMarketCapProvider(
            api_key=settings.cmc_api_key,
            api_url=settings.cmc_api_url,
            timeout=settings.http_timeout,
            client=http,
        ),
        secondary=CoinGeckoProvider(
            api_url=settings.coingecko_api_url, timeout=settings.http_timeout, client=http
        ),
        local_fiat=settings.local_fiat_currency,
        cache_ttl=settings.conversion_cache_ttl,
    )

    orchestrator = TransactionOrchestrator(
        db=db,
        resolver=resolver,
        balances=balances,
        engine=engine,
        vault=vault or PasswordKeyVault(),
        prices=FixedUsdPriceTable(),
        locks=KeyedLockRegistry(default_timeout=settings.sender_lock_timeout),
        lock_timeout=settings.sender_lock_timeout,
        max_page_size=settings.max_page_size,
    )

    logger.info(f"Context built for {network.name} (chain {network.chain_id})")
    return AppContext(
        settings=settings,
        db=db,
        http=http,
        balances=balances,
        resolver=resolver,
        engine=engine,
        conversion=conversion,
        orchestrator=orchestrator,
        invoices=InvoiceSettlement(db, orchestrator),
        reconciliation=ReconciliationService(
            db,
            chain_rpc,
            stale_after_minutes=settings.stale_transaction_minutes,
            bundler=bundler,
        ),
    )
