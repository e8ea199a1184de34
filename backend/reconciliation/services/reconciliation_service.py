"""
Reconciliation Service

Core business logic correlating banking events with on-chain settlement:
- Issuing onramp ids bound to a provider virtual account
- Recording deposit webhooks (idempotent on bankReference + onrampId)
- Driving and persisting settlement of recorded deposits
- Manual retry and restart recovery of unfinished settlements
- Offramp registration and processed-flag updates
- Audit logging

The deposit row is proof of fiat receipt. It is committed before any chain
call and is never rolled back, whatever happens to its settlement.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from web3 import Web3

from core.errors import (
    DuplicateDepositError,
    DuplicateKeyError,
    InvalidInputError,
    NotFoundError,
    SettlementFailedError,
    SettlementInProgressError,
    SettlementTimeoutError,
)
from database.ledger_models import SettlementStatus
from database.ledger_store import LedgerStore, RecordKind, PROCESSABLE_KINDS
from reconciliation.lifecycle import (
    OnrampState,
    RESUMABLE_STATUSES,
    RETRYABLE_STATUSES,
    onramp_state,
)
from logging_config import set_request_context
from sentry_integration import capture_exception
from services.banking_provider import BankingProvider
from services.settlement_executor import SettlementExecutor, scale_amount
from utils.identifiers import is_correlation_id, new_correlation_id

logger = logging.getLogger(__name__)


class ReconciliationAuditEvent:
    """Audit event types for reconciliation operations."""
    ONRAMP_INITIATED = "reconciliation.onramp_initiated"
    DEPOSIT_RECORDED = "reconciliation.deposit_recorded"
    DEPOSIT_REPLAYED = "reconciliation.deposit_replayed"
    SETTLEMENT_SUBMITTED = "reconciliation.settlement_submitted"
    SETTLEMENT_CONFIRMED = "reconciliation.settlement_confirmed"
    SETTLEMENT_FAILED = "reconciliation.settlement_failed"
    SETTLEMENT_TIMEOUT = "reconciliation.settlement_timeout"
    SETTLEMENT_RETRIED = "reconciliation.settlement_retried"
    OFFRAMP_REGISTERED = "reconciliation.offramp_registered"
    RECORD_PROCESSED = "reconciliation.record_processed"


def log_reconciliation_event(
    event_type: str,
    onramp_id: Optional[str],
    details: Dict[str, Any],
    actor: str = "system"
):
    """Log reconciliation event for audit trail."""
    log_entry = {
        "event": event_type,
        "onramp_id": onramp_id,
        "details": details,
        "actor": actor,
        "timestamp": datetime.now(timezone.utc).isoformat()
    }
    logger.info(f"Reconciliation event: {event_type}", extra=log_entry)


# ==================== INPUT VALIDATION ====================

def _require_address(value: Any, field: str = "userAddress") -> str:
    if not value:
        raise InvalidInputError(field)
    if not isinstance(value, str) or not Web3.is_address(value):
        raise InvalidInputError(field, f"{field} is not a valid address")
    return Web3.to_checksum_address(value)


def _require_text(value: Any, field: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise InvalidInputError(field)
    return value.strip()


def _require_amount(value: Any) -> int:
    if value is None:
        raise InvalidInputError("amount")
    if isinstance(value, bool) or not isinstance(value, int):
        raise InvalidInputError("amount", "amount must be an integer")
    if value <= 0:
        raise InvalidInputError("amount", "amount must be positive")
    return value


def _require_correlation_id(value: Any, field: str) -> str:
    if not value:
        raise InvalidInputError(field)
    if not is_correlation_id(value):
        raise InvalidInputError(field, f"{field} must be a 0x-prefixed 32-byte hex string")
    return value.lower()


class ReconciliationService:
    """
    Orchestrates the onramp lifecycle.

    INITIATED -> DEPOSIT_RECORDED -> SETTLED | SETTLEMENT_FAILED | SETTLEMENT_TIMEOUT
    """

    def __init__(
        self,
        store: LedgerStore,
        banking_provider: BankingProvider,
        executor: SettlementExecutor
    ):
        self.store = store
        self.banking_provider = banking_provider
        self.executor = executor

    # ==================== ONRAMP ====================

    async def initiate(self, user_address: str) -> Dict[str, Any]:
        """
        Issue an onramp id and the virtual account the user pays into.

        Returns:
            {onrampId, virtualAccount, bankName}

        Raises:
            InvalidInputError: missing or malformed address
            UpstreamUnavailableError: banking provider unreachable
        """
        user_address = _require_address(user_address)

        account = await self.banking_provider.obtain_virtual_account(user_address)

        record = {
            "user_address": user_address,
            "virtual_account": account.virtual_account,
            "bank_name": account.bank_name,
            "account_name": account.account_name,
        }
        row = await self._put_with_fresh_id(RecordKind.ONRAMP_REQUEST, "onramp_id", record)
        set_request_context(correlation_id=row["onrampId"])

        log_reconciliation_event(
            ReconciliationAuditEvent.ONRAMP_INITIATED,
            row["onrampId"],
            {"user_address": user_address, "bank_name": account.bank_name}
        )

        return {
            "onrampId": row["onrampId"],
            "virtualAccount": row["virtualAccount"],
            "bankName": row["bankName"],
        }

    async def record_deposit(
        self,
        bank_reference: str,
        user_address: str,
        amount: int,
        onramp_id: str
    ) -> Dict[str, Any]:
        """
        Record a confirmed fiat deposit and settle it on-chain.

        Args:
            bank_reference: Provider reference of the incoming transfer
            user_address: Address the onramp was initiated for
            amount: Positive integer in display units
            onramp_id: Id issued by ``initiate``

        Returns:
            {depositId, txHash, settlementStatus}

        Raises:
            InvalidInputError: missing/malformed fields or address mismatch
            NotFoundError: onramp id was never issued
            DuplicateDepositError: replayed (bank_reference, onramp_id)
            SettlementFailedError / SettlementTimeoutError: deposit is kept
        """
        bank_reference = _require_text(bank_reference, "bankReference")
        user_address = _require_address(user_address)
        amount = _require_amount(amount)
        onramp_id = _require_correlation_id(onramp_id, "onrampId")
        set_request_context(correlation_id=onramp_id)
        # Nothing is persisted for an amount the contract call could never encode
        scale_amount(amount, self.executor.decimals)

        # Never settle against an onramp id this service did not issue
        request = await self.store.get(RecordKind.ONRAMP_REQUEST, onramp_id)
        if request["userAddress"] != user_address:
            raise InvalidInputError("userAddress", "userAddress does not match the onramp request")

        await self._raise_if_replayed(bank_reference, onramp_id)

        record = {
            "bank_reference": bank_reference,
            "user_address": user_address,
            "amount": amount,
            "onramp_id": onramp_id,
        }
        deposit = await self._put_deposit(record)

        log_reconciliation_event(
            ReconciliationAuditEvent.DEPOSIT_RECORDED,
            onramp_id,
            {"deposit_id": deposit["id"], "bank_reference": bank_reference, "amount": amount}
        )

        tx_hash = await self._drive_settlement(deposit)
        return {
            "depositId": deposit["id"],
            "txHash": tx_hash,
            "settlementStatus": SettlementStatus.SETTLED.value,
        }

    async def _raise_if_replayed(self, bank_reference: str, onramp_id: str):
        existing = await self.store.find_deposit(bank_reference, onramp_id)
        if existing is None:
            return

        settlement = await self.store.get_settlement(existing["id"])
        log_reconciliation_event(
            ReconciliationAuditEvent.DEPOSIT_REPLAYED,
            onramp_id,
            {
                "deposit_id": existing["id"],
                "bank_reference": bank_reference,
                "settlement_status": settlement["status"] if settlement else None
            }
        )
        raise DuplicateDepositError(existing, settlement)

    async def _put_deposit(self, record: Dict[str, Any]) -> Dict[str, Any]:
        for attempt in range(2):
            try:
                return await self.store.put_deposit({**record, "id": new_correlation_id()})
            except DuplicateKeyError:
                # A concurrent delivery of the same webhook won the insert
                await self._raise_if_replayed(record["bank_reference"], record["onramp_id"])
                if attempt == 1:
                    raise
                logger.warning("Deposit id collision, regenerating")

    async def _put_with_fresh_id(
        self,
        kind: RecordKind,
        key_attr: str,
        record: Dict[str, Any]
    ) -> Dict[str, Any]:
        """Insert with a new correlation id, regenerating once on collision."""
        for attempt in range(2):
            try:
                return await self.store.put(kind, {**record, key_attr: new_correlation_id()})
            except DuplicateKeyError:
                if attempt == 1:
                    raise
                logger.warning(f"{kind.value} id collision, regenerating")

    # ==================== SETTLEMENT ====================

    async def _drive_settlement(self, deposit: Dict[str, Any]) -> str:
        """Settle a PENDING deposit, persisting every step."""
        deposit_id = deposit["id"]
        onramp_id = deposit["onrampId"]

        async def on_submitted(tx_hash: str):
            await self.store.update_settlement(
                deposit_id, SettlementStatus.SUBMITTED, tx_hash=tx_hash, increment_attempts=True
            )
            log_reconciliation_event(
                ReconciliationAuditEvent.SETTLEMENT_SUBMITTED,
                onramp_id,
                {"deposit_id": deposit_id, "tx_hash": tx_hash}
            )

        try:
            tx_hash = await self.executor.settle(
                deposit["userAddress"], int(deposit["amount"]), onramp_id, on_submitted=on_submitted
            )
        except (SettlementFailedError, SettlementTimeoutError) as e:
            await self._record_settlement_error(deposit_id, onramp_id, e)
            raise
        except Exception as e:
            logger.exception(f"Unexpected settlement error for deposit {deposit_id}")
            failure = SettlementFailedError(f"unexpected error: {e}")
            await self._record_settlement_error(deposit_id, onramp_id, failure)
            raise failure from e

        return await self._record_settled(deposit_id, onramp_id, tx_hash)

    async def _confirm_submitted(self, deposit_id: str, onramp_id: str, tx_hash: str) -> str:
        """Wait for an already broadcast settlement and persist the outcome."""
        try:
            await self.executor.confirm(tx_hash)
        except (SettlementFailedError, SettlementTimeoutError) as e:
            await self._record_settlement_error(deposit_id, onramp_id, e)
            raise

        return await self._record_settled(deposit_id, onramp_id, tx_hash)

    async def _record_settled(self, deposit_id: str, onramp_id: str, tx_hash: str) -> str:
        await self.store.update_settlement(deposit_id, SettlementStatus.SETTLED, tx_hash=tx_hash)
        log_reconciliation_event(
            ReconciliationAuditEvent.SETTLEMENT_CONFIRMED,
            onramp_id,
            {"deposit_id": deposit_id, "tx_hash": tx_hash}
        )
        return tx_hash

    async def _record_settlement_error(self, deposit_id: str, onramp_id: str, error: Exception):
        error.deposit_id = deposit_id

        if isinstance(error, SettlementTimeoutError):
            status = SettlementStatus.TIMEOUT
            event = ReconciliationAuditEvent.SETTLEMENT_TIMEOUT
        else:
            status = SettlementStatus.FAILED
            event = ReconciliationAuditEvent.SETTLEMENT_FAILED

        await self.store.update_settlement(
            deposit_id, status, tx_hash=getattr(error, "tx_hash", None), error=str(error)
        )
        log_reconciliation_event(
            event,
            onramp_id,
            {"deposit_id": deposit_id, "tx_hash": getattr(error, "tx_hash", None), "error": str(error)}
        )
        capture_exception(error, deposit_id=deposit_id, onramp_id=onramp_id)

    async def retry_settlement(self, deposit_id: str) -> Dict[str, Any]:
        """
        Manually resubmit a FAILED or TIMEOUT settlement.

        A transaction the node already knows is re-confirmed instead of
        resubmitted. Settled deposits return their hash without a chain call.

        Raises:
            NotFoundError: unknown deposit
            SettlementInProgressError: settlement is PENDING or SUBMITTED
            SettlementFailedError / SettlementTimeoutError
        """
        deposit = await self.store.get(RecordKind.DEPOSIT, deposit_id)
        settlement = await self._require_settlement(deposit_id)

        if settlement["status"] == SettlementStatus.SETTLED.value:
            return self._settlement_result(deposit_id, settlement["txHash"])

        previous_tx = settlement["txHash"]
        onramp_id = deposit["onrampId"]

        if previous_tx and await self.executor.transaction_known(previous_tx):
            if not await self.store.claim_settlement(deposit_id, RETRYABLE_STATUSES, SettlementStatus.SUBMITTED):
                raise await self._in_progress(deposit_id)

            log_reconciliation_event(
                ReconciliationAuditEvent.SETTLEMENT_RETRIED,
                onramp_id,
                {"deposit_id": deposit_id, "mode": "confirm", "tx_hash": previous_tx}
            )
            try:
                tx_hash = await self._confirm_submitted(deposit_id, onramp_id, previous_tx)
                return self._settlement_result(deposit_id, tx_hash)
            except SettlementFailedError:
                # Reverted or rejected; fall through to a fresh submission
                if not await self.store.claim_settlement(
                    deposit_id, (SettlementStatus.FAILED,), SettlementStatus.PENDING
                ):
                    raise await self._in_progress(deposit_id)
        elif not await self.store.claim_settlement(deposit_id, RETRYABLE_STATUSES, SettlementStatus.PENDING):
            raise await self._in_progress(deposit_id)

        log_reconciliation_event(
            ReconciliationAuditEvent.SETTLEMENT_RETRIED,
            onramp_id,
            {"deposit_id": deposit_id, "mode": "resubmit", "previous_tx_hash": previous_tx}
        )
        tx_hash = await self._drive_settlement(deposit)
        return self._settlement_result(deposit_id, tx_hash)

    async def _in_progress(self, deposit_id: str) -> SettlementInProgressError:
        settlement = await self._require_settlement(deposit_id)
        return SettlementInProgressError(deposit_id, settlement["status"])

    async def _require_settlement(self, deposit_id: str) -> Dict[str, Any]:
        settlement = await self.store.get_settlement(deposit_id)
        if settlement is None:
            raise NotFoundError("settlement", deposit_id)
        return settlement

    @staticmethod
    def _settlement_result(deposit_id: str, tx_hash: str) -> Dict[str, Any]:
        return {
            "depositId": deposit_id,
            "txHash": tx_hash,
            "settlementStatus": SettlementStatus.SETTLED.value,
        }

    async def pending_settlements(self) -> List[Dict[str, Any]]:
        """Settlements a restart left PENDING or SUBMITTED."""
        return await self.store.list_settlements(RESUMABLE_STATUSES)

    async def resume_pending_settlements(
        self,
        settlements: Optional[List[Dict[str, Any]]] = None
    ) -> Dict[str, int]:
        """
        Restart recovery pass.

        PENDING settlements were never broadcast and are settled now;
        SUBMITTED ones are re-confirmed by hash. Pass the snapshot taken
        before requests were served so in-flight request settlements are
        not picked up twice.

        Returns:
            Counts of settled, failed and timed out settlements
        """
        if settlements is None:
            settlements = await self.pending_settlements()

        summary = {"resumed": len(settlements), "settled": 0, "failed": 0, "timeout": 0}
        if not settlements:
            return summary

        logger.info(f"Resuming {len(settlements)} unfinished settlement(s)")

        for settlement in settlements:
            deposit_id = settlement["depositId"]
            set_request_context(correlation_id=settlement["onrampId"])
            try:
                if settlement["status"] == SettlementStatus.SUBMITTED.value and settlement["txHash"]:
                    await self._confirm_submitted(deposit_id, settlement["onrampId"], settlement["txHash"])
                else:
                    deposit = await self.store.get(RecordKind.DEPOSIT, deposit_id)
                    await self._drive_settlement(deposit)
                summary["settled"] += 1
            except SettlementTimeoutError:
                summary["timeout"] += 1
            except SettlementFailedError:
                summary["failed"] += 1
            except Exception as e:
                # One bad row must not stop recovery of the rest
                logger.error(f"Recovery of settlement {deposit_id} failed: {e}")
                capture_exception(e, deposit_id=deposit_id)
                summary["failed"] += 1

        logger.info(
            f"Settlement recovery complete: {summary['settled']} settled, "
            f"{summary['failed']} failed, {summary['timeout']} timed out"
        )
        return summary

    # ==================== OFFRAMP ====================

    async def register_offramp(self, user_address: str, bank_account: str) -> Dict[str, Any]:
        """Register the bank account a user's withdrawals pay out to."""
        user_address = _require_address(user_address)
        bank_account = _require_text(bank_account, "bankAccount")

        row = await self._put_with_fresh_id(
            RecordKind.OFFRAMP,
            "offramp_id",
            {"user_address": user_address, "bank_account": bank_account}
        )

        log_reconciliation_event(
            ReconciliationAuditEvent.OFFRAMP_REGISTERED,
            None,
            {"offramp_id": row["offRampId"], "user_address": user_address}
        )
        return {"offRampId": row["offRampId"]}

    async def mark_processed(self, kind: RecordKind, record_id: str) -> Dict[str, Any]:
        """
        Flag a withdrawal or bridge as handled by the payout/relay worker.

        Idempotent: a second call reports ``changed: False``.
        """
        if kind not in PROCESSABLE_KINDS:
            raise InvalidInputError("kind", f"{kind.value} records cannot be processed")

        changed = await self.store.mark_processed(kind, record_id)
        if changed:
            log_reconciliation_event(
                ReconciliationAuditEvent.RECORD_PROCESSED,
                None,
                {"kind": kind.value, "record_id": record_id}
            )
        return {"id": record_id, "processed": True, "changed": changed}

    # ==================== QUERIES ====================

    async def get_onramp_status(self, onramp_id: str) -> Dict[str, Any]:
        """Onramp request, its deposits with settlements, and lifecycle state."""
        onramp_id = _require_correlation_id(onramp_id, "onrampId")
        request = await self.store.get(RecordKind.ONRAMP_REQUEST, onramp_id)

        deposits = await self.store.list_deposits_for_onramp(onramp_id)
        settlements = []
        for deposit in deposits:
            settlement = await self.store.get_settlement(deposit["id"])
            settlements.append(settlement)
            deposit["settlement"] = settlement

        state: OnrampState = onramp_state(settlements)
        return {
            **request,
            "state": state.value,
            "deposits": deposits,
        }

    async def get_settlement(self, deposit_id: str) -> Dict[str, Any]:
        await self.store.get(RecordKind.DEPOSIT, deposit_id)
        return await self._require_settlement(deposit_id)

    async def list_records(self, kind: RecordKind) -> List[Dict[str, Any]]:
        return await self.store.list(kind)
