"""
Administrative Signer

Holds the single administrative key that is the bridge contract's sole
minting authority. Key custody is outside this service: whoever holds the
key can mint arbitrary balances, so it is loaded once, never logged, and
used only through this class.

All submissions are serialized through one lock. The nonce is tracked
locally from the account's pending transaction count and re-read from the
node whenever a broadcast outcome is unknown.
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, Optional, Sequence

from eth_account import Account

from chain.client import ChainClient, NonceConflictError, TransactionAlreadyKnownError
from core.errors import SettlementFailedError, SignerConfigurationError, UpstreamUnavailableError
from utils.identifiers import to_hex

logger = logging.getLogger(__name__)

TransactionBuilder = Callable[[int], Awaitable[Dict[str, Any]]]


class AdminSigner:
    """Signs and broadcasts admin transactions one at a time."""

    def __init__(
        self,
        private_key: str,
        chain: ChainClient,
        max_attempts: int = 3,
        retry_delays: Sequence[float] = (1.0, 3.0, 9.0)
    ):
        if not private_key:
            raise SignerConfigurationError("ADMIN_PRIVATE_KEY is not set")
        try:
            self._account = Account.from_key(private_key)
        except (ValueError, TypeError) as e:
            raise SignerConfigurationError(f"ADMIN_PRIVATE_KEY is malformed: {type(e).__name__}") from None

        self.chain = chain
        self.max_attempts = max(1, max_attempts)
        self.retry_delays = list(retry_delays) or [0.0]
        self._lock = asyncio.Lock()
        self._nonce: Optional[int] = None

    @property
    def address(self) -> str:
        return self._account.address

    async def _next_nonce(self) -> int:
        if self._nonce is None:
            self._nonce = await self.chain.get_transaction_count(self.address)
            logger.info(f"Admin nonce synced from node: {self._nonce}")
        return self._nonce

    def _delay(self, attempt: int) -> float:
        return self.retry_delays[min(attempt, len(self.retry_delays) - 1)]

    async def submit(self, build_transaction: TransactionBuilder) -> str:
        """
        Build, sign and broadcast one transaction; returns its hash.

        Transient node errors rebroadcast the identical signed bytes so a
        broadcast that actually landed is never duplicated under a new
        nonce. A nonce conflict re-signs with a fresh nonce unless our own
        earlier broadcast is already known to the node.

        Reverts and insufficient funds propagate immediately.
        """
        async with self._lock:
            signed = None
            nonce = None
            last_error: Optional[Exception] = None

            for attempt in range(self.max_attempts):
                try:
                    if signed is None:
                        nonce = await self._next_nonce()
                        tx = await build_transaction(nonce)
                        signed = self._account.sign_transaction(tx)

                    tx_hash = to_hex(signed.hash)
                    try:
                        await self.chain.send_raw_transaction(signed.raw_transaction)
                    except TransactionAlreadyKnownError:
                        logger.info(f"Transaction {tx_hash} already known to node")

                    self._nonce = nonce + 1
                    return tx_hash

                except NonceConflictError as e:
                    last_error = e
                    if signed is not None and await self._already_broadcast(to_hex(signed.hash)):
                        self._nonce = nonce + 1
                        return to_hex(signed.hash)
                    logger.warning(f"Nonce conflict at nonce {nonce}, resyncing: {e}")
                    signed = None
                    self._nonce = None

                except UpstreamUnavailableError as e:
                    last_error = e
                    logger.warning(f"Broadcast attempt {attempt + 1}/{self.max_attempts} failed: {e}")

                if attempt < self.max_attempts - 1:
                    await asyncio.sleep(self._delay(attempt))

            # Outcome of the last broadcast is unknown; re-read the nonce next time
            self._nonce = None
            raise SettlementFailedError(
                f"broadcast failed after {self.max_attempts} attempts: {last_error}",
                tx_hash=to_hex(signed.hash) if signed is not None else None
            )

    async def _already_broadcast(self, tx_hash: str) -> bool:
        try:
            return await self.chain.transaction_exists(tx_hash)
        except UpstreamUnavailableError:
            return False
