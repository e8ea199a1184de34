"""
Chain Client

Thin async wrapper over a JSON-RPC node for the calls the service makes:
token decimals, event log reads, nonce lookup, deposit transaction building,
raw broadcast and receipt waits.

Node and transport errors are translated at this boundary:
- connection problems -> UpstreamUnavailableError
- JSON-RPC rejections -> the ChainError subclasses below
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional

import aiohttp
from web3 import AsyncWeb3, AsyncHTTPProvider
from web3.exceptions import (
    ContractLogicError,
    MismatchedABI,
    TimeExhausted,
    TransactionNotFound,
    Web3RPCError,
    Web3ValidationError,
)

from chain.contracts import BRIDGE_CONTRACT_ABI, ERC20_DECIMALS_ABI
from core.errors import UpstreamUnavailableError
from utils.identifiers import to_hex

logger = logging.getLogger(__name__)


# ==================== CHAIN ERRORS ====================

class ChainError(Exception):
    """The node rejected a request."""
    pass


class ExecutionRevertedError(ChainError):
    """Contract execution reverted (raised during gas estimation or in a receipt)."""
    pass


class InsufficientFundsError(ChainError):
    """Admin account cannot pay for gas."""
    pass


class NonceConflictError(ChainError):
    """Nonce already used or replacement underpriced."""
    pass


class TransactionAlreadyKnownError(ChainError):
    """The exact signed transaction is already in the node's pool."""
    pass


class InvalidCallError(ChainError):
    """Arguments the contract ABI cannot encode (e.g. a uint256 overflow)."""
    pass


class ReceiptTimeoutError(ChainError):
    """No receipt within the wait bound."""
    pass


_RPC_ERROR_PATTERNS = [
    (("already known", "known transaction"), TransactionAlreadyKnownError),
    (("nonce too low", "replacement transaction underpriced", "nonce has already been used"), NonceConflictError),
    (("insufficient funds",), InsufficientFundsError),
    (("execution reverted", "revert"), ExecutionRevertedError),
]


def classify_rpc_error(message: str) -> ChainError:
    """Map a node error message to the most specific ChainError."""
    lowered = message.lower()
    for needles, error_class in _RPC_ERROR_PATTERNS:
        if any(n in lowered for n in needles):
            return error_class(message)
    return ChainError(message)


# ==================== INTERFACE ====================

class ChainClient(ABC):
    """Calls the reconciliation core needs from a chain node."""

    @abstractmethod
    async def chain_id(self) -> int:
        ...

    @abstractmethod
    async def block_number(self) -> int:
        ...

    @abstractmethod
    async def token_decimals(self) -> int:
        ...

    @abstractmethod
    async def get_event_logs(self, event_name: str, from_block: int, to_block: int) -> List[Dict[str, Any]]:
        """
        Decoded logs of one contract event in [from_block, to_block].

        Each log is a dict with ``args``, ``transactionHash`` (0x-hex),
        ``logIndex`` and ``blockNumber``.
        """
        ...

    @abstractmethod
    async def get_transaction_count(self, address: str) -> int:
        """Pending nonce of an account."""
        ...

    @abstractmethod
    async def build_deposit_transaction(
        self,
        sender: str,
        to: str,
        amount: int,
        onramp_id: bytes,
        nonce: int
    ) -> Dict[str, Any]:
        ...

    @abstractmethod
    async def send_raw_transaction(self, raw_transaction: bytes) -> str:
        ...

    @abstractmethod
    async def transaction_exists(self, tx_hash: str) -> bool:
        ...

    @abstractmethod
    async def wait_for_receipt(self, tx_hash: str, timeout: float, poll_interval: float) -> Dict[str, Any]:
        """Receipt as a dict with ``status`` and ``blockNumber``; ReceiptTimeoutError on timeout."""
        ...

    async def close(self):
        pass


# ==================== WEB3 IMPLEMENTATION ====================

class Web3ChainClient(ChainClient):
    """ChainClient backed by web3.py's AsyncWeb3 over HTTP."""

    def __init__(
        self,
        rpc_url: str,
        contract_address: str,
        token_address: str,
        request_timeout: float = 30.0
    ):
        self.w3 = AsyncWeb3(AsyncHTTPProvider(
            rpc_url,
            request_kwargs={"timeout": aiohttp.ClientTimeout(total=request_timeout)}
        ))
        self.contract = self.w3.eth.contract(
            address=AsyncWeb3.to_checksum_address(contract_address),
            abi=BRIDGE_CONTRACT_ABI
        )
        self.token = self.w3.eth.contract(
            address=AsyncWeb3.to_checksum_address(token_address),
            abi=ERC20_DECIMALS_ABI
        )
        self._chain_id: Optional[int] = None

    @asynccontextmanager
    async def _rpc(self, operation: str):
        try:
            yield
        except (aiohttp.ClientError, asyncio.TimeoutError, ConnectionError) as e:
            logger.warning(f"Chain node unreachable during {operation}: {e}")
            raise UpstreamUnavailableError("chain node", f"{operation}: {e}") from e
        except ContractLogicError as e:
            raise ExecutionRevertedError(str(e)) from e
        except (MismatchedABI, Web3ValidationError) as e:
            logger.error(f"Rejected call arguments during {operation}: {e}")
            raise InvalidCallError(str(e)) from e
        except Web3RPCError as e:
            raise classify_rpc_error(str(e)) from e

    async def chain_id(self) -> int:
        if self._chain_id is None:
            async with self._rpc("eth_chainId"):
                self._chain_id = await self.w3.eth.chain_id
        return self._chain_id

    async def block_number(self) -> int:
        async with self._rpc("eth_blockNumber"):
            return await self.w3.eth.block_number

    async def token_decimals(self) -> int:
        async with self._rpc("decimals"):
            return int(await self.token.functions.decimals().call())

    async def get_event_logs(self, event_name: str, from_block: int, to_block: int) -> List[Dict[str, Any]]:
        event = getattr(self.contract.events, event_name)()
        async with self._rpc(f"eth_getLogs({event_name})"):
            logs = await event.get_logs(from_block=from_block, to_block=to_block)

        return [
            {
                "event": event_name,
                "args": dict(log["args"]),
                "transactionHash": to_hex(log["transactionHash"]),
                "logIndex": int(log["logIndex"]),
                "blockNumber": int(log["blockNumber"]),
            }
            for log in logs
        ]

    async def get_transaction_count(self, address: str) -> int:
        async with self._rpc("eth_getTransactionCount"):
            return await self.w3.eth.get_transaction_count(address, "pending")

    async def build_deposit_transaction(
        self,
        sender: str,
        to: str,
        amount: int,
        onramp_id: bytes,
        nonce: int
    ) -> Dict[str, Any]:
        chain_id = await self.chain_id()
        async with self._rpc("build deposit"):
            return await self.contract.functions.deposit(to, amount, onramp_id).build_transaction({
                "from": sender,
                "nonce": nonce,
                "chainId": chain_id,
            })

    async def send_raw_transaction(self, raw_transaction: bytes) -> str:
        async with self._rpc("eth_sendRawTransaction"):
            return to_hex(await self.w3.eth.send_raw_transaction(raw_transaction))

    async def transaction_exists(self, tx_hash: str) -> bool:
        async with self._rpc("eth_getTransactionByHash"):
            try:
                await self.w3.eth.get_transaction(tx_hash)
            except TransactionNotFound:
                return False
        return True

    async def wait_for_receipt(self, tx_hash: str, timeout: float, poll_interval: float) -> Dict[str, Any]:
        async with self._rpc("eth_getTransactionReceipt"):
            try:
                receipt = await self.w3.eth.wait_for_transaction_receipt(
                    tx_hash, timeout=timeout, poll_latency=poll_interval
                )
            except TimeExhausted as e:
                raise ReceiptTimeoutError(str(e)) from e

        return {
            "transactionHash": to_hex(receipt["transactionHash"]),
            "status": int(receipt["status"]),
            "blockNumber": int(receipt["blockNumber"]),
        }

    async def close(self):
        await self.w3.provider.disconnect()
