"""
Chain Observer

On-chain to off-chain leg of reconciliation. Reads the bridge contract's
``Withdrawal`` and ``Bridge`` events and appends one ledger row per log for
the external payout and relay workers.

Delivery model:
- A reader polls the node from the persisted watermark up to
  ``head - confirmations`` in bounded block windows. Logs newer than the
  confirmation depth are provisional and not read yet.
- Windows go through a bounded queue to a single writer; a slow database
  stalls the reader instead of growing a backlog.
- The writer inserts rows, then advances the watermark. Delivery is
  at-least-once; the record id ``<txHash>:<logIndex>`` is deterministic, so
  a redelivered log hits DuplicateKeyError and is skipped.
- ``run()`` survives node and database errors with capped exponential
  backoff and resumes from the watermark.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from chain.client import ChainClient
from chain.contracts import BRIDGE_EVENT, OBSERVED_EVENTS, WITHDRAWAL_EVENT
from core.errors import DuplicateKeyError
from database.ledger_store import LedgerStore, RecordKind
from sentry_integration import capture_exception
from utils.identifiers import to_hex

logger = logging.getLogger(__name__)


@dataclass
class LogBatch:
    """Logs of one event for one block window."""
    event_name: str
    from_block: int
    to_block: int
    logs: List[Dict[str, Any]]


def derive_record_id(log: Dict[str, Any]) -> str:
    """Deterministic local id for a log: ``<txHash>:<logIndex>``."""
    return f"{to_hex(log['transactionHash'])}:{int(log['logIndex'])}"


def withdrawal_record(log: Dict[str, Any]) -> Dict[str, Any]:
    args = log["args"]
    return {
        "id": derive_record_id(log),
        "user_address": args["user"],
        "amount": int(args["amount"]),
        "offramp_id": to_hex(args["offRampId"]),
        "block_number": log.get("blockNumber"),
        "tx_hash": to_hex(log["transactionHash"]),
        "processed": False,
    }


def bridge_record(log: Dict[str, Any]) -> Dict[str, Any]:
    args = log["args"]
    return {
        "id": derive_record_id(log),
        "user_address": args["user"],
        "amount": int(args["amount"]),
        "destination_chain_id": int(args["destinationChainId"]),
        "block_number": log.get("blockNumber"),
        "tx_hash": to_hex(log["transactionHash"]),
        "processed": False,
    }


_EVENT_HANDLERS = {
    WITHDRAWAL_EVENT: (RecordKind.WITHDRAWAL, withdrawal_record),
    BRIDGE_EVENT: (RecordKind.BRIDGE, bridge_record),
}


class ChainObserver:
    """Polls contract events into the ledger."""

    def __init__(
        self,
        chain: ChainClient,
        store: LedgerStore,
        poll_interval: float = 5.0,
        confirmations: int = 3,
        start_block: Optional[int] = None,
        max_block_range: int = 2000,
        queue_size: int = 16,
        max_backoff: float = 60.0,
    ):
        self.chain = chain
        self.store = store
        self.poll_interval = poll_interval
        self.confirmations = max(0, confirmations)
        self.start_block = start_block
        self.max_block_range = max(1, max_block_range)
        self.max_backoff = max_backoff
        self.queue: asyncio.Queue = asyncio.Queue(maxsize=max(1, queue_size))
        self._stopping = asyncio.Event()

    # ==================== INGESTION ====================

    async def handle_logs(self, event_name: str, logs: List[Dict[str, Any]]) -> int:
        """
        Append one ledger row per log. Accepts empty batches.

        Returns:
            Number of new rows (redelivered logs are skipped)
        """
        kind, to_record = _EVENT_HANDLERS[event_name]
        inserted = 0

        for log in logs:
            if not log.get("args"):
                logger.warning(f"Skipping undecoded {event_name} log: {log.get('transactionHash')}")
                continue

            record = to_record(log)
            try:
                await self.store.put(kind, record)
            except DuplicateKeyError:
                logger.debug(f"{event_name} {record['id']} already recorded")
                continue

            inserted += 1
            logger.info(
                f"{event_name} event recorded: {record['id']} user {record['user_address']} "
                f"amount {record['amount']}"
            )

        return inserted

    async def process_batch(self, batch: LogBatch) -> int:
        """Write a batch, then move the watermark past it."""
        inserted = await self.handle_logs(batch.event_name, batch.logs)
        await self.store.set_cursor(batch.event_name, batch.to_block)
        return inserted

    # ==================== READER ====================

    async def _first_block(self, event_name: str, safe_head: int) -> int:
        cursor = await self.store.get_cursor(event_name)
        if cursor is not None:
            return cursor + 1
        if self.start_block is not None:
            return self.start_block
        # No history requested: start at the current safe head
        return safe_head

    async def poll_once(self) -> int:
        """
        Queue every confirmed, not yet ingested block window.

        Returns:
            Number of windows queued
        """
        head = await self.chain.block_number()
        safe_head = head - self.confirmations
        if safe_head < 0:
            return 0

        queued = 0
        for event_name in OBSERVED_EVENTS:
            from_block = await self._first_block(event_name, safe_head)
            while from_block <= safe_head and not self._stopping.is_set():
                to_block = min(from_block + self.max_block_range - 1, safe_head)
                logs = await self.chain.get_event_logs(event_name, from_block, to_block)
                await self.queue.put(LogBatch(event_name, from_block, to_block, logs))
                queued += 1
                from_block = to_block + 1

        return queued

    # ==================== LOOPS ====================

    async def _reader(self):
        failures = 0
        while not self._stopping.is_set():
            try:
                await self.poll_once()
                await self.queue.join()
                failures = 0
                delay = self.poll_interval
            except asyncio.CancelledError:
                raise
            except Exception as e:
                failures += 1
                delay = min(self.poll_interval * (2 ** failures), self.max_backoff)
                logger.error(f"Chain observer poll failed ({failures} in a row), retrying in {delay:.1f}s: {e}")
                capture_exception(e, component="chain_observer")

            try:
                await asyncio.wait_for(self._stopping.wait(), timeout=delay)
            except asyncio.TimeoutError:
                pass

    async def _writer(self):
        while True:
            batch = await self.queue.get()
            try:
                await self._write_with_retry(batch)
            finally:
                self.queue.task_done()

    async def _write_with_retry(self, batch: LogBatch):
        failures = 0
        while True:
            try:
                await self.process_batch(batch)
                return
            except asyncio.CancelledError:
                raise
            except Exception as e:
                failures += 1
                delay = min(self.poll_interval * (2 ** failures), self.max_backoff)
                logger.error(
                    f"Failed to write {batch.event_name} blocks {batch.from_block}-{batch.to_block}, "
                    f"retrying in {delay:.1f}s: {e}"
                )
                capture_exception(e, component="chain_observer", event=batch.event_name)
                await asyncio.sleep(delay)

    async def run(self):
        """Long-lived observer task; returns after ``stop()``."""
        self._stopping.clear()
        logger.info(
            f"Chain observer started: events {list(OBSERVED_EVENTS)}, "
            f"{self.confirmations} confirmations, poll every {self.poll_interval}s"
        )
        writer = asyncio.create_task(self._writer())
        try:
            await self._reader()
        finally:
            writer.cancel()
            try:
                await writer
            except asyncio.CancelledError:
                pass
            logger.info("Chain observer stopped")

    def stop(self):
        self._stopping.set()
