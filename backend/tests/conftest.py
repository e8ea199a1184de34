"""
Shared fixtures: a temporary SQLite ledger wired to the in-memory chain node
and banking provider from ``tests.fakes``.
"""

import pytest
import pytest_asyncio

from chain.signer import AdminSigner
from config import Settings
from database.connection import create_engine, create_session_factory, init_db
from database.ledger_store import LedgerStore
from reconciliation.services.reconciliation_service import ReconciliationService
from services.settlement_executor import SettlementExecutor

from tests.fakes import ADMIN_KEY, CONTRACT_ADDRESS, FakeBankingProvider, FakeChainClient


@pytest.fixture
def test_settings(tmp_path) -> Settings:
    return Settings(
        ENVIRONMENT="test",
        DATABASE_URL=f"sqlite+aiosqlite:///{tmp_path}/ledger.sqlite",
        RPC_URL="http://127.0.0.1:8545",
        CONTRACT_ADDRESS=CONTRACT_ADDRESS,
        TOKEN_ADDRESS="0x" + "33" * 20,
        ADMIN_PRIVATE_KEY=ADMIN_KEY,
        SETTLEMENT_CONFIRMATION_TIMEOUT=1,
        SETTLEMENT_POLL_INTERVAL=0.01,
        SETTLEMENT_RETRY_DELAYS=[0, 0, 0],
        OBSERVER_ENABLED=False,
        BANKING_SIMULATED_DELAY=0,
    )


@pytest_asyncio.fixture
async def store(tmp_path):
    engine = create_engine(f"sqlite+aiosqlite:///{tmp_path}/store.sqlite")
    await init_db(engine)
    yield LedgerStore(create_session_factory(engine))
    await engine.dispose()


@pytest.fixture
def chain() -> FakeChainClient:
    return FakeChainClient()


@pytest.fixture
def signer(chain) -> AdminSigner:
    return AdminSigner(ADMIN_KEY, chain, max_attempts=3, retry_delays=(0, 0, 0))


@pytest.fixture
def executor(chain, signer) -> SettlementExecutor:
    return SettlementExecutor(chain, signer, decimals=chain.decimals, confirmation_timeout=1, poll_interval=0.01)


@pytest.fixture
def banking() -> FakeBankingProvider:
    return FakeBankingProvider()


@pytest.fixture
def service(store, banking, executor) -> ReconciliationService:
    return ReconciliationService(store, banking, executor)
