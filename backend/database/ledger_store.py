"""
Ledger Store

Durable, append-biased table store for the reconciliation ledger.

Contract:
- put(kind, record): insert a new row, DuplicateKeyError if the key exists
- list(kind): all rows of a kind in insertion order
- get(kind, key): one row, NotFoundError if absent
- mark_processed(kind, key): flip the processed flag of a withdrawal or
  bridge; NotFoundError if absent, no-op if already processed

Each write is its own transaction. There is no business logic here; rows are
returned as their camelCase API representation.
"""

import logging
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from core.errors import DuplicateKeyError, NotFoundError
from database.ledger_models import (
    OnrampRequestDB, OfframpRegistrationDB, DepositDB, WithdrawalDB, BridgeDB,
    SettlementDB, ChainCursorDB, SettlementStatus
)

logger = logging.getLogger(__name__)


class RecordKind(str, Enum):
    """Ledger record kinds, valued by table name."""
    ONRAMP_REQUEST = "onramp_requests"
    OFFRAMP = "offramps"
    DEPOSIT = "deposits"
    WITHDRAWAL = "withdrawals"
    BRIDGE = "bridges"


# kind -> (model, key column attribute)
_MODELS = {
    RecordKind.ONRAMP_REQUEST: (OnrampRequestDB, "onramp_id"),
    RecordKind.OFFRAMP: (OfframpRegistrationDB, "offramp_id"),
    RecordKind.DEPOSIT: (DepositDB, "id"),
    RecordKind.WITHDRAWAL: (WithdrawalDB, "id"),
    RecordKind.BRIDGE: (BridgeDB, "id"),
}

PROCESSABLE_KINDS = frozenset({RecordKind.WITHDRAWAL, RecordKind.BRIDGE})


class LedgerStore:
    """Persistence for ledger rows, settlements and observer cursors."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    # ==================== LEDGER ROWS ====================

    async def put(self, kind: RecordKind, record: Dict[str, Any]) -> Dict[str, Any]:
        """Persist a new row. Fields are given by column attribute name."""
        model, key_attr = _MODELS[kind]
        row = model(**record)

        async with self.session_factory() as session:
            session.add(row)
            try:
                await session.commit()
            except IntegrityError as e:
                await session.rollback()
                logger.debug(f"Duplicate {kind.value} row rejected: {e.orig}")
                raise DuplicateKeyError(kind.value, str(record.get(key_attr)))

        return row.to_dict()

    async def list(self, kind: RecordKind) -> List[Dict[str, Any]]:
        model, _ = _MODELS[kind]
        async with self.session_factory() as session:
            result = await session.execute(select(model).order_by(model.seq))
            return [row.to_dict() for row in result.scalars()]

    async def get(self, kind: RecordKind, key: str) -> Dict[str, Any]:
        model, key_attr = _MODELS[kind]
        async with self.session_factory() as session:
            result = await session.execute(
                select(model).where(getattr(model, key_attr) == key)
            )
            row = result.scalar_one_or_none()

        if row is None:
            raise NotFoundError(kind.value, key)
        return row.to_dict()

    async def mark_processed(self, kind: RecordKind, key: str) -> bool:
        """
        Flip the processed flag of a withdrawal or bridge.

        Returns True if this call flipped it, False if it was already set.
        """
        if kind not in PROCESSABLE_KINDS:
            raise ValueError(f"{kind.value} rows have no processed flag")

        model, key_attr = _MODELS[kind]
        key_column = getattr(model, key_attr)

        async with self.session_factory() as session:
            result = await session.execute(
                update(model)
                .where(key_column == key, model.processed.is_(False))
                .values(processed=True)
            )
            await session.commit()

            if result.rowcount == 1:
                return True

            exists = await session.execute(select(model.seq).where(key_column == key))
            if exists.scalar_one_or_none() is None:
                raise NotFoundError(kind.value, key)

        return False

    # ==================== DEPOSITS ====================

    async def put_deposit(self, record: Dict[str, Any]) -> Dict[str, Any]:
        """
        Persist a deposit together with its PENDING settlement row.

        Both rows commit in one transaction so a crash can never leave fiat
        receipt evidence without a settlement the recovery pass can find.
        """
        deposit = DepositDB(**record)
        settlement = SettlementDB(
            deposit_id=record["id"],
            onramp_id=record["onramp_id"],
            status=SettlementStatus.PENDING.value,
        )

        async with self.session_factory() as session:
            session.add_all([deposit, settlement])
            try:
                await session.commit()
            except IntegrityError as e:
                await session.rollback()
                logger.debug(f"Duplicate deposit rejected: {e.orig}")
                raise DuplicateKeyError(RecordKind.DEPOSIT.value, record["id"])

        return deposit.to_dict()

    async def find_deposit(self, bank_reference: str, onramp_id: str) -> Optional[Dict[str, Any]]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(DepositDB).where(
                    DepositDB.bank_reference == bank_reference,
                    DepositDB.onramp_id == onramp_id,
                )
            )
            row = result.scalar_one_or_none()
        return row.to_dict() if row else None

    async def list_deposits_for_onramp(self, onramp_id: str) -> List[Dict[str, Any]]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(DepositDB).where(DepositDB.onramp_id == onramp_id).order_by(DepositDB.seq)
            )
            return [row.to_dict() for row in result.scalars()]

    # ==================== SETTLEMENTS ====================

    async def get_settlement(self, deposit_id: str) -> Optional[Dict[str, Any]]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(SettlementDB).where(SettlementDB.deposit_id == deposit_id)
            )
            row = result.scalar_one_or_none()
        return row.to_dict() if row else None

    async def update_settlement(
        self,
        deposit_id: str,
        status: SettlementStatus,
        tx_hash: Optional[str] = None,
        error: Optional[str] = None,
        increment_attempts: bool = False
    ) -> Dict[str, Any]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(SettlementDB).where(SettlementDB.deposit_id == deposit_id)
            )
            row = result.scalar_one_or_none()
            if row is None:
                raise NotFoundError("settlement", deposit_id)

            row.status = status.value
            if tx_hash is not None:
                row.tx_hash = tx_hash
            row.last_error = error
            if increment_attempts:
                row.attempts = (row.attempts or 0) + 1

            await session.commit()
            return row.to_dict()

    async def claim_settlement(
        self,
        deposit_id: str,
        from_statuses: Iterable[SettlementStatus],
        status: SettlementStatus
    ) -> bool:
        """
        Compare-and-set on the settlement status.

        Returns True if the row was in one of ``from_statuses`` and now holds
        ``status``; False if another caller moved it first.
        """
        async with self.session_factory() as session:
            result = await session.execute(
                update(SettlementDB)
                .where(
                    SettlementDB.deposit_id == deposit_id,
                    SettlementDB.status.in_([s.value for s in from_statuses]),
                )
                .values(status=status.value, last_error=None)
            )
            await session.commit()
        return result.rowcount == 1

    async def list_settlements(
        self,
        statuses: Optional[Iterable[SettlementStatus]] = None
    ) -> List[Dict[str, Any]]:
        query = select(SettlementDB).order_by(SettlementDB.seq)
        if statuses:
            query = query.where(SettlementDB.status.in_([s.value for s in statuses]))

        async with self.session_factory() as session:
            result = await session.execute(query)
            return [row.to_dict() for row in result.scalars()]

    # ==================== CHAIN CURSORS ====================

    async def get_cursor(self, event_name: str) -> Optional[int]:
        async with self.session_factory() as session:
            row = await session.get(ChainCursorDB, event_name)
        return row.last_block if row else None

    async def set_cursor(self, event_name: str, block_number: int):
        async with self.session_factory() as session:
            row = await session.get(ChainCursorDB, event_name)
            if row is None:
                session.add(ChainCursorDB(event_name=event_name, last_block=block_number))
            else:
                row.last_block = block_number
            await session.commit()
