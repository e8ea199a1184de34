from .connection import Base, create_engine, create_session_factory, init_db, normalize_database_url

from .ledger_models import (
    OnrampRequestDB, OfframpRegistrationDB, DepositDB, WithdrawalDB, BridgeDB,
    SettlementDB, ChainCursorDB, SettlementStatus
)
from .ledger_store import LedgerStore, RecordKind

__all__ = [
    'Base', 'create_engine', 'create_session_factory', 'init_db', 'normalize_database_url',
    # Ledger models
    'OnrampRequestDB', 'OfframpRegistrationDB', 'DepositDB', 'WithdrawalDB', 'BridgeDB',
    'SettlementDB', 'ChainCursorDB', 'SettlementStatus',
    # Store
    'LedgerStore', 'RecordKind',
]
