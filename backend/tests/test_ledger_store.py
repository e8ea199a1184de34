"""
Unit Tests for the Ledger Store

Tests persistence contracts:
- put / get / list in insertion order
- DuplicateKeyError on key collisions
- Idempotent processed-flag flip
- Deposit + settlement atomic insert and replay constraint
- Settlement compare-and-set
- Observer cursors

Run with: pytest tests/test_ledger_store.py -v
"""

import pytest

from core.errors import DuplicateKeyError, NotFoundError
from database.ledger_models import SettlementStatus
from database.ledger_store import RecordKind

from tests.fakes import USER_ADDRESS, OTHER_ADDRESS


def withdrawal(record_id: str, user: str = USER_ADDRESS, amount: int = 10):
    return {
        "id": record_id,
        "user_address": user,
        "amount": amount,
        "offramp_id": "0x" + "01" * 32,
        "block_number": 5,
        "tx_hash": "0x" + "02" * 32,
        "processed": False,
    }


def deposit(deposit_id: str, bank_reference: str = "B1", onramp_id: str = "0x" + "ab" * 32):
    return {
        "id": deposit_id,
        "bank_reference": bank_reference,
        "user_address": USER_ADDRESS,
        "amount": 50,
        "onramp_id": onramp_id,
    }


class TestLedgerRows:

    @pytest.mark.asyncio
    async def test_put_and_get(self, store):
        row = await store.put(RecordKind.WITHDRAWAL, withdrawal("w1"))

        assert row["id"] == "w1"
        assert row["processed"] is False
        assert await store.get(RecordKind.WITHDRAWAL, "w1") == row

    @pytest.mark.asyncio
    async def test_timestamps_read_back_as_utc(self, store):
        written = await store.put(RecordKind.WITHDRAWAL, withdrawal("w1"))

        listed = (await store.list(RecordKind.WITHDRAWAL))[0]

        assert written["createdAt"].endswith("+00:00")
        assert listed["createdAt"] == written["createdAt"]

    @pytest.mark.asyncio
    async def test_duplicate_key(self, store):
        await store.put(RecordKind.WITHDRAWAL, withdrawal("w1"))

        with pytest.raises(DuplicateKeyError) as exc_info:
            await store.put(RecordKind.WITHDRAWAL, withdrawal("w1", user=OTHER_ADDRESS))

        assert exc_info.value.kind == "withdrawals"
        assert exc_info.value.key == "w1"

    @pytest.mark.asyncio
    async def test_get_missing(self, store):
        with pytest.raises(NotFoundError):
            await store.get(RecordKind.BRIDGE, "nope")

    @pytest.mark.asyncio
    async def test_list_in_insertion_order(self, store):
        for record_id in ["w3", "w1", "w2"]:
            await store.put(RecordKind.WITHDRAWAL, withdrawal(record_id))

        rows = await store.list(RecordKind.WITHDRAWAL)
        assert [r["id"] for r in rows] == ["w3", "w1", "w2"]

    @pytest.mark.asyncio
    async def test_list_empty(self, store):
        assert await store.list(RecordKind.DEPOSIT) == []

    @pytest.mark.asyncio
    async def test_large_amount_survives(self, store):
        amount = 2 ** 255 + 7
        await store.put(RecordKind.WITHDRAWAL, withdrawal("w1", amount=amount))

        row = await store.get(RecordKind.WITHDRAWAL, "w1")
        assert row["amount"] == amount


class TestMarkProcessed:

    @pytest.mark.asyncio
    async def test_second_call_is_noop(self, store):
        await store.put(RecordKind.WITHDRAWAL, withdrawal("w1"))

        assert await store.mark_processed(RecordKind.WITHDRAWAL, "w1") is True
        assert await store.mark_processed(RecordKind.WITHDRAWAL, "w1") is False

        row = await store.get(RecordKind.WITHDRAWAL, "w1")
        assert row["processed"] is True

    @pytest.mark.asyncio
    async def test_missing_record(self, store):
        with pytest.raises(NotFoundError):
            await store.mark_processed(RecordKind.WITHDRAWAL, "missing")

    @pytest.mark.asyncio
    async def test_only_withdrawals_and_bridges(self, store):
        with pytest.raises(ValueError):
            await store.mark_processed(RecordKind.DEPOSIT, "d1")


class TestDeposits:

    @pytest.mark.asyncio
    async def test_put_deposit_creates_pending_settlement(self, store):
        row = await store.put_deposit(deposit("d1"))

        settlement = await store.get_settlement("d1")
        assert row["amount"] == 50
        assert settlement["status"] == SettlementStatus.PENDING.value
        assert settlement["onrampId"] == row["onrampId"]
        assert settlement["attempts"] == 0

    @pytest.mark.asyncio
    async def test_same_reference_and_onramp_rejected(self, store):
        await store.put_deposit(deposit("d1"))

        with pytest.raises(DuplicateKeyError):
            await store.put_deposit(deposit("d2"))

        assert len(await store.list(RecordKind.DEPOSIT)) == 1
        assert await store.get_settlement("d2") is None

    @pytest.mark.asyncio
    async def test_other_reference_allowed(self, store):
        await store.put_deposit(deposit("d1", bank_reference="B1"))
        await store.put_deposit(deposit("d2", bank_reference="B2"))

        rows = await store.list_deposits_for_onramp("0x" + "ab" * 32)
        assert [r["id"] for r in rows] == ["d1", "d2"]

    @pytest.mark.asyncio
    async def test_find_deposit(self, store):
        await store.put_deposit(deposit("d1"))

        found = await store.find_deposit("B1", "0x" + "ab" * 32)
        assert found["id"] == "d1"
        assert await store.find_deposit("B9", "0x" + "ab" * 32) is None


class TestSettlements:

    @pytest.mark.asyncio
    async def test_update_settlement(self, store):
        await store.put_deposit(deposit("d1"))

        row = await store.update_settlement(
            "d1", SettlementStatus.SUBMITTED, tx_hash="0xabc", increment_attempts=True
        )
        assert row["status"] == "SUBMITTED"
        assert row["txHash"] == "0xabc"
        assert row["attempts"] == 1

        row = await store.update_settlement("d1", SettlementStatus.FAILED, error="boom")
        assert row["txHash"] == "0xabc"
        assert row["lastError"] == "boom"

    @pytest.mark.asyncio
    async def test_claim_is_compare_and_set(self, store):
        await store.put_deposit(deposit("d1"))
        await store.update_settlement("d1", SettlementStatus.FAILED, error="boom")

        retryable = (SettlementStatus.FAILED, SettlementStatus.TIMEOUT)
        assert await store.claim_settlement("d1", retryable, SettlementStatus.PENDING) is True
        assert await store.claim_settlement("d1", retryable, SettlementStatus.PENDING) is False

        settlement = await store.get_settlement("d1")
        assert settlement["status"] == "PENDING"
        assert settlement["lastError"] is None

    @pytest.mark.asyncio
    async def test_list_by_status(self, store):
        await store.put_deposit(deposit("d1", bank_reference="B1"))
        await store.put_deposit(deposit("d2", bank_reference="B2"))
        await store.update_settlement("d2", SettlementStatus.SETTLED, tx_hash="0x1")

        pending = await store.list_settlements([SettlementStatus.PENDING])
        assert [s["depositId"] for s in pending] == ["d1"]
        assert len(await store.list_settlements()) == 2


class TestCursors:

    @pytest.mark.asyncio
    async def test_cursor_round_trip(self, store):
        assert await store.get_cursor("Withdrawal") is None

        await store.set_cursor("Withdrawal", 10)
        await store.set_cursor("Withdrawal", 25)

        assert await store.get_cursor("Withdrawal") == 25
        assert await store.get_cursor("Bridge") is None
