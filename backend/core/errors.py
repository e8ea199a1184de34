"""
Reconciliation error taxonomy.

Every failure the core can surface has a stable ``code`` so the HTTP layer
and log aggregation can tell replays, unknown ids and settlement failures
apart without string matching.
"""

from typing import Any, Dict, Optional


class ReconciliationError(Exception):
    """Base class for all errors raised by the reconciliation core."""

    code = "reconciliation_error"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.code, "message": self.message}


class InvalidInputError(ReconciliationError):
    """Malformed or missing request fields."""

    code = "invalid_input"

    def __init__(self, field: str, message: Optional[str] = None):
        super().__init__(message or f"{field} is required")
        self.field = field

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.code, "parameter": self.field, "message": self.message}


class DuplicateKeyError(ReconciliationError):
    """Identifier collision or replayed write."""

    code = "duplicate_key"

    def __init__(self, kind: str, key: str):
        super().__init__(f"{kind} {key} already exists")
        self.kind = kind
        self.key = key


class DuplicateDepositError(DuplicateKeyError):
    """
    A deposit webhook was replayed for an already recorded
    (bankReference, onrampId) pair.

    Carries the existing deposit and its settlement so the caller can answer
    the replay without touching the chain.
    """

    def __init__(self, deposit: Dict[str, Any], settlement: Optional[Dict[str, Any]]):
        super().__init__("deposit", deposit["id"])
        self.deposit = deposit
        self.settlement = settlement


class NotFoundError(ReconciliationError):
    """Referenced record or correlation id does not exist."""

    code = "not_found"

    def __init__(self, kind: str, key: str):
        super().__init__(f"{kind} {key} not found")
        self.kind = kind
        self.key = key


class SettlementFailedError(ReconciliationError):
    """
    On-chain submission or confirmation failed: node error, reverted
    execution, insufficient admin balance or an unresolved nonce conflict.

    The deposit row is never rolled back when this is raised.
    """

    code = "settlement_failed"

    def __init__(self, reason: str, tx_hash: Optional[str] = None, deposit_id: Optional[str] = None):
        super().__init__(f"Settlement failed: {reason}")
        self.reason = reason
        self.tx_hash = tx_hash
        self.deposit_id = deposit_id


class SettlementTimeoutError(ReconciliationError):
    """The settlement transaction was broadcast but no receipt arrived in time."""

    code = "settlement_timeout"

    def __init__(self, tx_hash: str, timeout: float, deposit_id: Optional[str] = None):
        super().__init__(f"Transaction {tx_hash} not confirmed within {timeout}s")
        self.tx_hash = tx_hash
        self.timeout = timeout
        self.deposit_id = deposit_id


class SettlementInProgressError(ReconciliationError):
    """A retry was requested while a settlement is still pending or submitted."""

    code = "settlement_in_progress"

    def __init__(self, deposit_id: str, status: str):
        super().__init__(f"Settlement of deposit {deposit_id} is {status}")
        self.deposit_id = deposit_id
        self.status = status


class UpstreamUnavailableError(ReconciliationError):
    """Banking provider or chain node unreachable."""

    code = "upstream_unavailable"

    def __init__(self, service: str, reason: str):
        super().__init__(f"{service} unavailable: {reason}")
        self.service = service
        self.reason = reason


class SignerConfigurationError(ReconciliationError):
    """
    The administrative signing key is missing or malformed.

    The admin key is the sole minting authority of the bridge contract. Its
    custody is outside this service, and its compromise is a total-loss
    event, so any problem loading it is fatal at startup.
    """

    code = "signer_configuration"
