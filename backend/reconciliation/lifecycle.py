"""
Onramp Lifecycle

States of one onramp as seen by the reconciliation core:

    INITIATED -> DEPOSIT_RECORDED -> SETTLED
                                  -> SETTLEMENT_FAILED  (retryable)
                                  -> SETTLEMENT_TIMEOUT (retryable, re-confirmed first)

The state is derived from the ledger: an OnrampRequest without deposits is
INITIATED; otherwise the latest deposit's settlement row decides.
"""

from enum import Enum
from typing import Any, Dict, List, Optional

from database.ledger_models import SettlementStatus


class OnrampState(str, Enum):
    INITIATED = "INITIATED"
    DEPOSIT_RECORDED = "DEPOSIT_RECORDED"
    SETTLED = "SETTLED"
    SETTLEMENT_FAILED = "SETTLEMENT_FAILED"
    SETTLEMENT_TIMEOUT = "SETTLEMENT_TIMEOUT"


SETTLEMENT_TO_STATE = {
    SettlementStatus.PENDING.value: OnrampState.DEPOSIT_RECORDED,
    SettlementStatus.SUBMITTED.value: OnrampState.DEPOSIT_RECORDED,
    SettlementStatus.SETTLED.value: OnrampState.SETTLED,
    SettlementStatus.FAILED.value: OnrampState.SETTLEMENT_FAILED,
    SettlementStatus.TIMEOUT.value: OnrampState.SETTLEMENT_TIMEOUT,
}

# Settlements a retry may act on
RETRYABLE_STATUSES = (SettlementStatus.FAILED, SettlementStatus.TIMEOUT)

# Settlements the startup recovery pass resumes
RESUMABLE_STATUSES = (SettlementStatus.PENDING, SettlementStatus.SUBMITTED)


def settlement_state(settlement: Optional[Dict[str, Any]]) -> OnrampState:
    if settlement is None:
        return OnrampState.DEPOSIT_RECORDED
    return SETTLEMENT_TO_STATE[settlement["status"]]


def onramp_state(settlements: List[Optional[Dict[str, Any]]]) -> OnrampState:
    """State of an onramp given its deposits' settlements, oldest first."""
    if not settlements:
        return OnrampState.INITIATED
    return settlement_state(settlements[-1])
