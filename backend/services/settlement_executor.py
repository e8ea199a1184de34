"""
Settlement Executor

Off-chain to on-chain leg of reconciliation: turns a confirmed fiat deposit
into a call to the bridge contract's ``deposit(to, amount, onrampId)``.

- Amounts arrive in display units and are scaled by the token decimals read
  once at startup.
- Submission goes through the AdminSigner (serialized, nonce-managed).
- Confirmation waits are bounded; a missing receipt is a
  SettlementTimeoutError carrying the transaction hash, never an
  indefinite block.
"""

import logging
from typing import Awaitable, Callable, Optional

from web3 import Web3

from chain.client import ChainClient, ChainError, ReceiptTimeoutError
from chain.signer import AdminSigner
from core.errors import (
    InvalidInputError,
    SettlementFailedError,
    SettlementTimeoutError,
    UpstreamUnavailableError,
)
from utils.identifiers import correlation_id_to_bytes, is_correlation_id

logger = logging.getLogger(__name__)

SubmittedCallback = Callable[[str], Awaitable[None]]

MAX_UINT256 = 2 ** 256 - 1


def scale_amount(amount: int, decimals: int) -> int:
    """Display units -> token base units. Integers only, no float rounding."""
    if isinstance(amount, bool) or not isinstance(amount, int):
        raise InvalidInputError("amount", "amount must be an integer")
    if amount <= 0:
        raise InvalidInputError("amount", "amount must be positive")
    scaled = amount * 10 ** decimals
    if scaled > MAX_UINT256:
        raise InvalidInputError("amount", "amount exceeds the token's uint256 range")
    return scaled


class SettlementExecutor:
    """Submits deposit settlements and waits for their confirmation."""

    def __init__(
        self,
        chain: ChainClient,
        signer: AdminSigner,
        decimals: int,
        confirmation_timeout: float = 120.0,
        poll_interval: float = 2.0
    ):
        self.chain = chain
        self.signer = signer
        self.decimals = decimals
        self.confirmation_timeout = confirmation_timeout
        self.poll_interval = poll_interval

    async def settle(
        self,
        user_address: str,
        amount: int,
        onramp_id: str,
        on_submitted: Optional[SubmittedCallback] = None
    ) -> str:
        """
        Mint ``amount`` display units to ``user_address`` tagged with
        ``onramp_id`` and wait for confirmation.

        Args:
            user_address: Recipient address
            amount: Positive integer in display units
            onramp_id: bytes32 correlation id as 0x-hex
            on_submitted: Awaited with the tx hash right after broadcast

        Returns:
            Transaction hash of the confirmed settlement

        Raises:
            SettlementFailedError: submission failed or execution reverted
            SettlementTimeoutError: no receipt within the confirmation bound
        """
        if not Web3.is_address(user_address):
            raise InvalidInputError("userAddress", "userAddress is not a valid address")
        if not is_correlation_id(onramp_id):
            raise InvalidInputError("onrampId", "onrampId must be a 0x-prefixed 32-byte hex string")

        scaled = scale_amount(amount, self.decimals)
        recipient = Web3.to_checksum_address(user_address)
        onramp_bytes = correlation_id_to_bytes(onramp_id)

        async def build(nonce: int):
            return await self.chain.build_deposit_transaction(
                self.signer.address, recipient, scaled, onramp_bytes, nonce
            )

        try:
            tx_hash = await self.signer.submit(build)
        except ChainError as e:
            logger.error(f"Settlement submission rejected for onramp {onramp_id}: {e}")
            raise SettlementFailedError(str(e)) from e

        logger.info(
            f"Settlement submitted: onramp {onramp_id} amount {amount} "
            f"({scaled} base units) tx {tx_hash}"
        )

        if on_submitted is not None:
            await on_submitted(tx_hash)

        return await self.confirm(tx_hash)

    async def transaction_known(self, tx_hash: str) -> bool:
        """Whether the node has seen a previously broadcast settlement."""
        return await self.chain.transaction_exists(tx_hash)

    async def confirm(self, tx_hash: str) -> str:
        """Wait for an already broadcast settlement to confirm."""
        try:
            receipt = await self.chain.wait_for_receipt(
                tx_hash, self.confirmation_timeout, self.poll_interval
            )
        except ReceiptTimeoutError as e:
            logger.warning(f"Settlement {tx_hash} not confirmed within {self.confirmation_timeout}s")
            raise SettlementTimeoutError(tx_hash, self.confirmation_timeout) from e
        except UpstreamUnavailableError as e:
            # Broadcast already happened; outcome unknown until the node is back
            logger.warning(f"Lost chain node while confirming {tx_hash}: {e}")
            raise SettlementTimeoutError(tx_hash, self.confirmation_timeout) from e
        except ChainError as e:
            raise SettlementFailedError(str(e), tx_hash=tx_hash) from e

        if receipt.get("status") != 1:
            logger.error(f"Settlement {tx_hash} reverted in block {receipt.get('blockNumber')}")
            raise SettlementFailedError("transaction reverted", tx_hash=tx_hash)

        logger.info(f"Settlement confirmed: {tx_hash} in block {receipt.get('blockNumber')}")
        return tx_hash
