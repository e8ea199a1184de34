"""
Unit Tests for the web3 Chain Client boundary

Tests:
- Node error messages map to ChainError subclasses
- Arguments the ABI cannot encode surface as a ChainError

Run with: pytest tests/test_chain_client.py -v
"""

import pytest

from chain.client import (
    ChainError,
    ExecutionRevertedError,
    InsufficientFundsError,
    InvalidCallError,
    NonceConflictError,
    TransactionAlreadyKnownError,
    Web3ChainClient,
    classify_rpc_error,
)

from tests.fakes import CONTRACT_ADDRESS, USER_ADDRESS


class TestClassifyRpcError:

    @pytest.mark.parametrize("message,error_class", [
        ("already known", TransactionAlreadyKnownError),
        ("nonce too low: next nonce 8, tx nonce 7", NonceConflictError),
        ("replacement transaction underpriced", NonceConflictError),
        ("insufficient funds for gas * price + value", InsufficientFundsError),
        ("execution reverted: not admin", ExecutionRevertedError),
    ])
    def test_known_messages(self, message, error_class):
        assert type(classify_rpc_error(message)) is error_class

    def test_unknown_message_is_generic(self):
        assert type(classify_rpc_error("header not found")) is ChainError


class TestWeb3ChainClient:

    @pytest.fixture
    def client(self):
        client = Web3ChainClient("http://127.0.0.1:8545", CONTRACT_ADDRESS, "0x" + "33" * 20)
        client._chain_id = 31337
        return client

    @pytest.mark.asyncio
    async def test_uint256_overflow_is_chain_error(self, client):
        with pytest.raises(InvalidCallError):
            await client.build_deposit_transaction(USER_ADDRESS, USER_ADDRESS, 2 ** 256, b"\x00" * 32, 0)
