"""
Unit Tests for the Settlement Executor and Admin Signer

Tests:
- Display-unit scaling by token decimals
- Confirmed, reverted and timed out settlements
- Serialized submission with sequential nonces
- Rebroadcast and nonce resync on node errors
- Signing key validation

Run with: pytest tests/test_settlement_executor.py -v
"""

import asyncio

import pytest
from unittest.mock import AsyncMock

from chain.client import ExecutionRevertedError, NonceConflictError, TransactionAlreadyKnownError
from chain.signer import AdminSigner
from core.errors import (
    InvalidInputError,
    SettlementFailedError,
    SettlementTimeoutError,
    SignerConfigurationError,
    UpstreamUnavailableError,
)
from services.settlement_executor import scale_amount
from utils.identifiers import new_correlation_id

from tests.fakes import USER_ADDRESS


class TestScaleAmount:

    def test_scales_by_decimals(self):
        assert scale_amount(1000, 6) == 1000 * 10 ** 6

    def test_zero_decimals(self):
        assert scale_amount(7, 0) == 7

    @pytest.mark.parametrize("amount", [0, -5, 1.5, "10", True])
    def test_rejects_non_positive_integers(self, amount):
        with pytest.raises(InvalidInputError):
            scale_amount(amount, 6)

    def test_rejects_amount_beyond_uint256(self):
        largest = (2 ** 256 - 1) // 10 ** 18

        assert scale_amount(largest, 18) <= 2 ** 256 - 1
        with pytest.raises(InvalidInputError):
            scale_amount(largest + 1, 18)


class TestSettle:

    @pytest.mark.asyncio
    async def test_settle_passes_scaled_amount(self, executor, chain):
        onramp_id = new_correlation_id()

        tx_hash = await executor.settle(USER_ADDRESS, 1000, onramp_id)

        assert tx_hash == chain.sent[0]
        assert len(chain.built) == 1
        call = chain.built[0]
        assert call["amount"] == 1000 * 10 ** 6
        assert call["to"] == USER_ADDRESS
        assert call["onramp_id"] == bytes.fromhex(onramp_id[2:])

    @pytest.mark.asyncio
    async def test_on_submitted_runs_before_confirmation(self, executor, chain):
        seen = []
        on_submitted = AsyncMock(side_effect=lambda tx_hash: seen.append(tx_hash))

        tx_hash = await executor.settle(USER_ADDRESS, 5, new_correlation_id(), on_submitted=on_submitted)

        on_submitted.assert_awaited_once_with(tx_hash)
        assert seen == [tx_hash]

    @pytest.mark.asyncio
    async def test_reverted_receipt(self, executor, chain):
        chain.receipt_status = 0

        with pytest.raises(SettlementFailedError) as exc_info:
            await executor.settle(USER_ADDRESS, 5, new_correlation_id())

        assert exc_info.value.tx_hash == chain.sent[0]
        assert "reverted" in exc_info.value.reason

    @pytest.mark.asyncio
    async def test_receipt_timeout(self, executor, chain):
        chain.receipt_timeout = True

        with pytest.raises(SettlementTimeoutError) as exc_info:
            await executor.settle(USER_ADDRESS, 5, new_correlation_id())

        assert exc_info.value.tx_hash == chain.sent[0]

    @pytest.mark.asyncio
    async def test_node_lost_during_confirmation_is_timeout(self, executor, chain):
        chain.wait_for_receipt = AsyncMock(side_effect=UpstreamUnavailableError("chain node", "down"))

        with pytest.raises(SettlementTimeoutError):
            await executor.settle(USER_ADDRESS, 5, new_correlation_id())

    @pytest.mark.asyncio
    async def test_revert_during_build_is_failure(self, executor, chain):
        chain.build_deposit_transaction = AsyncMock(side_effect=ExecutionRevertedError("execution reverted"))

        with pytest.raises(SettlementFailedError):
            await executor.settle(USER_ADDRESS, 5, new_correlation_id())

        assert chain.sent == []

    @pytest.mark.asyncio
    async def test_invalid_inputs_never_reach_chain(self, executor, chain):
        with pytest.raises(InvalidInputError):
            await executor.settle("0xnotanaddress", 5, new_correlation_id())
        with pytest.raises(InvalidInputError):
            await executor.settle(USER_ADDRESS, 5, "0x1234")
        with pytest.raises(InvalidInputError):
            await executor.settle(USER_ADDRESS, 0, new_correlation_id())

        assert chain.built == []


class TestAdminSigner:

    @pytest.mark.asyncio
    async def test_concurrent_settlements_get_sequential_nonces(self, executor, chain):
        chain.nonce = 7

        hashes = await asyncio.gather(*[
            executor.settle(USER_ADDRESS, 1, new_correlation_id()) for _ in range(5)
        ])

        assert len(set(hashes)) == 5
        assert [b["nonce"] for b in chain.built] == [7, 8, 9, 10, 11]

    @pytest.mark.asyncio
    async def test_transient_error_rebroadcasts_same_transaction(self, signer, chain, executor):
        chain.send_errors = [UpstreamUnavailableError("chain node", "connection reset")]

        tx_hash = await executor.settle(USER_ADDRESS, 1, new_correlation_id())

        # Built and signed once, broadcast twice
        assert len(chain.built) == 1
        assert chain.sent == [tx_hash]

    @pytest.mark.asyncio
    async def test_already_known_counts_as_broadcast(self, signer, chain):
        chain.send_errors = [TransactionAlreadyKnownError("already known")]
        build = AsyncMock(return_value={
            "to": USER_ADDRESS, "value": 0, "gas": 21000, "gasPrice": 1, "nonce": 0, "chainId": 31337
        })

        tx_hash = await signer.submit(build)

        assert tx_hash.startswith("0x")
        build.assert_awaited_once_with(0)

    @pytest.mark.asyncio
    async def test_nonce_conflict_resyncs(self, chain, executor):
        chain.send_errors = [NonceConflictError("nonce too low")]

        await executor.settle(USER_ADDRESS, 1, new_correlation_id())

        assert len(chain.built) == 2
        assert len(chain.sent) == 1

    @pytest.mark.asyncio
    async def test_gives_up_after_max_attempts(self, chain, executor):
        chain.send_errors = [UpstreamUnavailableError("chain node", "down") for _ in range(3)]

        with pytest.raises(SettlementFailedError) as exc_info:
            await executor.settle(USER_ADDRESS, 1, new_correlation_id())

        assert exc_info.value.tx_hash is not None
        assert chain.sent == []

    @pytest.mark.parametrize("key", ["", "0x1234", "not-a-key"])
    def test_bad_key_is_configuration_error(self, chain, key):
        with pytest.raises(SignerConfigurationError):
            AdminSigner(key, chain)

    def test_error_does_not_leak_key(self, chain):
        key = "0x" + "zz" * 32
        with pytest.raises(SignerConfigurationError) as exc_info:
            AdminSigner(key, chain)
        assert key not in str(exc_info.value)
