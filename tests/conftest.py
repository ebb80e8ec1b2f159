"""Pytest configuration and fixtures."""

import os
from contextlib import asynccontextmanager
from typing import AsyncGenerator
from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio
from eth_account import Account
from sqlalchemy.ext.asyncio import AsyncSession

# Set test environment
os.environ["ENVIRONMENT"] = "test"
os.environ["DEBUG"] = "false"

from gaslesspay.config import Settings
from gaslesspay.errors import SigningError
from gaslesspay.gasless.bundler import GasEstimate, GasPrice, UserOperationReceipt
from gaslesspay.gasless.engine import GaslessExecutionEngine
from gaslesspay.ledger.database import Database
from gaslesspay.ledger.repository import LedgerRepository
from gaslesspay.services.balances import BalanceService
from gaslesspay.services.orchestrator import TransactionOrchestrator
from gaslesspay.services.recipients import RecipientResolver
from gaslesspay.tokens import get_network

NETWORK = get_network("arbitrum-sepolia")
USDC = NETWORK.get_token("USDC")

SIGNING_KEY = "0x" + "4c" * 32
SIGNING_PASSWORD = "correct horse"

BOB_SMART_ACCOUNT = "0x1111111111111111111111111111111111111111"
ALICE_SMART_ACCOUNT = "0x2222222222222222222222222222222222222222"
ALICE_WALLET = "0x3333333333333333333333333333333333333333"
EXTERNAL_ADDRESS = "0x9999999999999999999999999999999999999999"
PAYMASTER = "0x4444444444444444444444444444444444444444"

TX_HASH = "0x" + "ab" * 32
USER_OP_HASH = "0x" + "cd" * 32


class FakeRpc:
    """Answers entry point getNonce with zero."""

    def __init__(self):
        self.calls = []

    async def eth_call(self, to: str, data: str) -> str:
        self.calls.append((to, data))
        return "0x" + "00" * 32


class FakeChain:
    """In-memory ERC-20 state standing in for ERC20Reader."""

    def __init__(self):
        self.rpc = FakeRpc()
        self.balances: dict[tuple[str, str], int] = {}
        self.token_name = "USD Coin"
        self.failing_tokens: set[str] = set()

    def set_balance(self, token: str, owner: str, amount: int) -> None:
        self.balances[(token.lower(), owner.lower())] = amount

    async def balance_of(self, token: str, owner: str) -> int:
        if token.lower() in self.failing_tokens:
            raise ConnectionError("RPC unavailable")
        return self.balances.get((token.lower(), owner.lower()), 0)

    async def name(self, token: str) -> str:
        return self.token_name

    async def nonces(self, token: str, owner: str) -> int:
        return 0


class StaticKeyVault:
    """Key vault that hands out one fixed account for the right password."""

    def __init__(self, private_key: str = SIGNING_KEY, password: str = SIGNING_PASSWORD):
        self.account = Account.from_key(private_key)
        self.password = password
        self.unlocks = 0

    @asynccontextmanager
    async def unlock(self, encrypted_key, user_id, password):
        if password != self.password:
            raise SigningError("Unable to unlock signing key: invalid password")
        self.unlocks += 1
        yield self.account


def make_bundler() -> MagicMock:
    """Relay spy that accepts every operation and reports inclusion."""
    bundler = MagicMock()
    bundler.get_gas_price = AsyncMock(
        return_value=GasPrice(max_fee_per_gas=2_000_000_000, max_priority_fee_per_gas=1_000_000)
    )
    bundler.estimate_gas = AsyncMock(
        return_value=GasEstimate(
            call_gas_limit=120_000, verification_gas_limit=300_000, pre_verification_gas=60_000
        )
    )
    bundler.send_user_operation = AsyncMock(return_value=USER_OP_HASH)
    bundler.wait_for_receipt = AsyncMock(
        return_value=UserOperationReceipt(
            user_op_hash=USER_OP_HASH,
            success=True,
            transaction_hash=TX_HASH,
            block_number=1234,
            gas_used=210_000,
        )
    )
    return bundler


@pytest.fixture
def settings() -> Settings:
    return Settings(
        _env_file=None,
        environment="test",
        network_name="arbitrum-sepolia",
        paymaster_address=PAYMASTER,
        bundler_url="http://bundler.test",
        rpc_url="http://rpc.test",
    )


@pytest_asyncio.fixture
async def db(tmp_path) -> AsyncGenerator[Database, None]:
    """File-backed database so concurrent sessions see each other's commits."""
    database = Database(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}")
    await database.create_all()
    yield database
    await database.dispose()


@pytest_asyncio.fixture
async def db_session(db: Database) -> AsyncGenerator[AsyncSession, None]:
    async with db.session() as session:
        yield session


@pytest_asyncio.fixture
async def ledger_repo(db_session: AsyncSession) -> LedgerRepository:
    """Create ledger repository for testing."""
    return LedgerRepository(db_session)


@pytest_asyncio.fixture
async def users(db: Database) -> dict[str, int]:
    """bob (sender), alice (recipient) and carol (no smart account)."""
    async with db.session() as session:
        repo = LedgerRepository(session)
        bob = await repo.create_user(
            username="bob",
            email="bob@example.com",
            smart_account_address=BOB_SMART_ACCOUNT,
            encrypted_private_key="sealed",
            first_name="Bob",
        )
        alice = await repo.create_user(
            username="alice",
            email="Alice@Example.com",
            smart_account_address=ALICE_SMART_ACCOUNT,
            wallet_address=ALICE_WALLET,
            first_name="Alice",
            last_name="Liddell",
        )
        carol = await repo.create_user(username="carol", email="carol@example.com")
        return {"bob": bob.id, "alice": alice.id, "carol": carol.id}


@pytest.fixture
def chain() -> FakeChain:
    return FakeChain()


@pytest.fixture
def bundler() -> MagicMock:
    return make_bundler()


@pytest.fixture
def vault() -> StaticKeyVault:
    return StaticKeyVault()


@pytest.fixture
def engine(chain, bundler, settings) -> GaslessExecutionEngine:
    return GaslessExecutionEngine(
        NETWORK, chain, bundler, settings, clock=lambda: 1_700_000_000
    )


@pytest.fixture
def orchestrator(db, chain, engine, vault) -> TransactionOrchestrator:
    return TransactionOrchestrator(
        db=db,
        resolver=RecipientResolver(db),
        balances=BalanceService(chain, NETWORK),
        engine=engine,
        vault=vault,
        lock_timeout=10.0,
    )
