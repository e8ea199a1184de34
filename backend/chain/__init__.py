"""
Chain access: contract interface, node client and the admin signer.
"""

from chain.contracts import BRIDGE_CONTRACT_ABI, ERC20_DECIMALS_ABI, OBSERVED_EVENTS
from chain.client import (
    ChainClient,
    Web3ChainClient,
    ChainError,
    ExecutionRevertedError,
    InsufficientFundsError,
    NonceConflictError,
    TransactionAlreadyKnownError,
    InvalidCallError,
    ReceiptTimeoutError,
)
from chain.signer import AdminSigner

__all__ = [
    'BRIDGE_CONTRACT_ABI',
    'ERC20_DECIMALS_ABI',
    'OBSERVED_EVENTS',
    'ChainClient',
    'Web3ChainClient',
    'ChainError',
    'ExecutionRevertedError',
    'InsufficientFundsError',
    'NonceConflictError',
    'TransactionAlreadyKnownError',
    'InvalidCallError',
    'ReceiptTimeoutError',
    'AdminSigner',
]
