"""
Application context.

Everything that used to be process-global (database engine, chain client,
admin signer, cached token decimals) is built once by ``build_context`` at
startup and handed to the components that need it. The lifespan owns the
context and closes it on shutdown.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from fastapi import Request
from sqlalchemy.ext.asyncio import AsyncEngine

from chain.client import ChainClient, Web3ChainClient
from chain.signer import AdminSigner
from config import Settings
from core.errors import SignerConfigurationError
from database.connection import create_engine, create_session_factory, init_db
from database.ledger_store import LedgerStore
from reconciliation.services.reconciliation_service import ReconciliationService
from services.banking_provider import BankingProvider, create_banking_provider
from services.chain_observer import ChainObserver
from services.settlement_executor import SettlementExecutor

logger = logging.getLogger(__name__)


@dataclass
class AppContext:
    settings: Settings
    engine: AsyncEngine
    store: LedgerStore
    chain: ChainClient
    signer: AdminSigner
    banking_provider: BankingProvider
    token_decimals: int
    executor: SettlementExecutor
    observer: ChainObserver
    service: ReconciliationService

    async def close(self):
        await self.banking_provider.close()
        await self.chain.close()
        await self.engine.dispose()
        logger.info("Application context closed")


async def build_context(
    settings: Settings,
    chain: Optional[ChainClient] = None,
    banking_provider: Optional[BankingProvider] = None
) -> AppContext:
    """
    Wire the reconciliation core from settings.

    ``chain`` and ``banking_provider`` may be injected (tests, alternative
    nodes); otherwise they are built from settings.

    Raises:
        SignerConfigurationError: admin key missing or malformed
        ValueError: other required chain settings missing
    """
    if not settings.ADMIN_PRIVATE_KEY:
        raise SignerConfigurationError("ADMIN_PRIVATE_KEY is required; the service cannot settle without it")

    if chain is None:
        missing = settings.validate_chain_config()
        if missing:
            raise ValueError(f"Chain configuration incomplete: {', '.join(missing)}")
        chain = Web3ChainClient(settings.RPC_URL, settings.CONTRACT_ADDRESS, settings.TOKEN_ADDRESS)

    signer = AdminSigner(
        settings.ADMIN_PRIVATE_KEY,
        chain,
        max_attempts=settings.SETTLEMENT_MAX_SUBMIT_ATTEMPTS,
        retry_delays=tuple(settings.SETTLEMENT_RETRY_DELAYS),
    )

    engine = create_engine(settings.DATABASE_URL, echo=settings.debug_enabled)
    await init_db(engine)
    store = LedgerStore(create_session_factory(engine))

    # Read once; cached for the process lifetime
    decimals = await chain.token_decimals()
    logger.info(f"Token decimals: {decimals}, admin signer: {signer.address}")

    executor = SettlementExecutor(
        chain,
        signer,
        decimals,
        confirmation_timeout=settings.SETTLEMENT_CONFIRMATION_TIMEOUT,
        poll_interval=settings.SETTLEMENT_POLL_INTERVAL,
    )
    observer = ChainObserver(
        chain,
        store,
        poll_interval=settings.OBSERVER_POLL_INTERVAL,
        confirmations=settings.OBSERVER_CONFIRMATIONS,
        start_block=settings.OBSERVER_START_BLOCK,
        max_block_range=settings.OBSERVER_MAX_BLOCK_RANGE,
        queue_size=settings.OBSERVER_QUEUE_SIZE,
        max_backoff=settings.OBSERVER_MAX_BACKOFF,
    )

    if banking_provider is None:
        banking_provider = create_banking_provider(settings)

    service = ReconciliationService(store, banking_provider, executor)

    return AppContext(
        settings=settings,
        engine=engine,
        store=store,
        chain=chain,
        signer=signer,
        banking_provider=banking_provider,
        token_decimals=decimals,
        executor=executor,
        observer=observer,
        service=service,
    )


def get_reconciliation_service(request: Request) -> ReconciliationService:
    return request.app.state.context.service
