"""
Reconciliation Module

Correlates banking events with on-chain transactions:
- Onramp ids bound to provider virtual accounts
- Idempotent deposit recording and settlement
- Settlement retry and restart recovery
- Offramp registration
- Audit trail for all operations
"""

from reconciliation.lifecycle import OnrampState, onramp_state
from reconciliation.services.reconciliation_service import (
    ReconciliationService,
    ReconciliationAuditEvent,
    log_reconciliation_event,
)

__all__ = [
    # Lifecycle
    'OnrampState',
    'onramp_state',
    # Service
    'ReconciliationService',
    'ReconciliationAuditEvent',
    'log_reconciliation_event',
]
