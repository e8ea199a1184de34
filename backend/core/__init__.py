"""
Core Module

Error taxonomy shared by every layer, and the application context
(``core.context``, imported directly to keep this package import-light).
"""

from .errors import (
    ReconciliationError,
    InvalidInputError,
    DuplicateKeyError,
    DuplicateDepositError,
    NotFoundError,
    SettlementFailedError,
    SettlementTimeoutError,
    SettlementInProgressError,
    UpstreamUnavailableError,
    SignerConfigurationError,
)

__all__ = [
    'ReconciliationError',
    'InvalidInputError',
    'DuplicateKeyError',
    'DuplicateDepositError',
    'NotFoundError',
    'SettlementFailedError',
    'SettlementTimeoutError',
    'SettlementInProgressError',
    'UpstreamUnavailableError',
    'SignerConfigurationError',
]
