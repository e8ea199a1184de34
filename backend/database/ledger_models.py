"""
RampBridge Core - Ledger Database Models

The durable ledger correlating banking events with on-chain transactions.

Tables:
- onramp_requests: Issued onramp ids and their virtual accounts (immutable)
- offramps: Offramp bank registrations (immutable)
- deposits: Fiat receipts reported by the banking webhook (immutable)
- withdrawals: Withdrawal events observed on-chain (processed flag only)
- bridges: Bridge events observed on-chain (processed flag only)
- settlements: Settlement progress per deposit
- chain_cursors: Last fully ingested block per observed event

Every ledger table has an integer ``seq`` surrogate so listings come back in
insertion order on both SQLite and PostgreSQL; the string id is unique and is
the key used for every lookup.
"""

from datetime import datetime, timezone
from enum import Enum as PyEnum

from sqlalchemy import (
    Column, String, Text, Integer, BigInteger, Boolean, DateTime,
    UniqueConstraint, Index
)
from sqlalchemy.types import TypeDecorator

from database.connection import Base


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value: datetime) -> str:
    if value is None:
        return None
    # SQLite hands DateTime(timezone=True) back naive; values are always written as UTC
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc).isoformat()
    return value.astimezone(timezone.utc).isoformat()


class UInt256(TypeDecorator):
    """Unsigned integer up to 2**256 - 1 stored as decimal text."""

    impl = String(78)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        value = int(value)
        if value < 0 or value >= 2 ** 256:
            raise ValueError(f"Amount out of uint256 range: {value}")
        return str(value)

    def process_result_value(self, value, dialect):
        return int(value) if value is not None else None


# ==================== ENUMS ====================

class SettlementStatus(str, PyEnum):
    """Settlement progress of a recorded deposit"""
    PENDING = "PENDING"        # Deposit recorded, nothing broadcast yet
    SUBMITTED = "SUBMITTED"    # Broadcast, awaiting confirmation
    SETTLED = "SETTLED"        # Receipt with success status observed
    FAILED = "FAILED"          # Submission failed or execution reverted
    TIMEOUT = "TIMEOUT"        # Broadcast but not confirmed in time


# ==================== DATABASE MODELS ====================

class OnrampRequestDB(Base):
    __tablename__ = "onramp_requests"

    seq = Column(Integer, primary_key=True, autoincrement=True)
    onramp_id = Column(String(66), nullable=False, unique=True)
    user_address = Column(String(42), nullable=False, index=True)
    account_name = Column(Text, nullable=True)
    virtual_account = Column(String(64), nullable=False)
    bank_name = Column(Text, nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utc_now)

    def to_dict(self) -> dict:
        return {
            "onrampId": self.onramp_id,
            "userAddress": self.user_address,
            "accountName": self.account_name,
            "virtualAccount": self.virtual_account,
            "bankName": self.bank_name,
            "createdAt": _iso(self.created_at),
        }


class OfframpRegistrationDB(Base):
    __tablename__ = "offramps"

    seq = Column(Integer, primary_key=True, autoincrement=True)
    offramp_id = Column(String(66), nullable=False, unique=True)
    user_address = Column(String(42), nullable=False, index=True)
    bank_account = Column(Text, nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utc_now)

    def to_dict(self) -> dict:
        return {
            "offRampId": self.offramp_id,
            "userAddress": self.user_address,
            "bankAccount": self.bank_account,
            "createdAt": _iso(self.created_at),
        }


class DepositDB(Base):
    """
    Fiat receipt evidence.

    Never updated or deleted, even when settlement fails. A replayed webhook
    is rejected by the (bank_reference, onramp_id) constraint.
    """
    __tablename__ = "deposits"

    seq = Column(Integer, primary_key=True, autoincrement=True)
    id = Column(String(66), nullable=False, unique=True)
    bank_reference = Column(String(255), nullable=False)
    user_address = Column(String(42), nullable=False)
    amount = Column(UInt256, nullable=False)
    onramp_id = Column(String(66), nullable=False, index=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utc_now)

    __table_args__ = (
        UniqueConstraint("bank_reference", "onramp_id", name="uq_deposits_bank_reference_onramp"),
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "bankReference": self.bank_reference,
            "userAddress": self.user_address,
            "amount": self.amount,
            "onrampId": self.onramp_id,
            "createdAt": _iso(self.created_at),
        }


class WithdrawalDB(Base):
    __tablename__ = "withdrawals"

    seq = Column(Integer, primary_key=True, autoincrement=True)
    id = Column(String(80), nullable=False, unique=True)
    user_address = Column(String(42), nullable=False, index=True)
    amount = Column(UInt256, nullable=False)
    offramp_id = Column(String(66), nullable=False, index=True)
    block_number = Column(BigInteger, nullable=True)
    tx_hash = Column(String(66), nullable=True)
    processed = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utc_now)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "userAddress": self.user_address,
            "amount": self.amount,
            "offRampId": self.offramp_id,
            "blockNumber": self.block_number,
            "txHash": self.tx_hash,
            "processed": bool(self.processed),
            "createdAt": _iso(self.created_at),
        }


class BridgeDB(Base):
    __tablename__ = "bridges"

    seq = Column(Integer, primary_key=True, autoincrement=True)
    id = Column(String(80), nullable=False, unique=True)
    user_address = Column(String(42), nullable=False, index=True)
    amount = Column(UInt256, nullable=False)
    destination_chain_id = Column(UInt256, nullable=False)
    block_number = Column(BigInteger, nullable=True)
    tx_hash = Column(String(66), nullable=True)
    processed = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utc_now)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "userAddress": self.user_address,
            "amount": self.amount,
            "destinationChainId": self.destination_chain_id,
            "blockNumber": self.block_number,
            "txHash": self.tx_hash,
            "processed": bool(self.processed),
            "createdAt": _iso(self.created_at),
        }


class SettlementDB(Base):
    """One row per deposit tracking the off-chain to on-chain leg."""
    __tablename__ = "settlements"

    seq = Column(Integer, primary_key=True, autoincrement=True)
    deposit_id = Column(String(66), nullable=False, unique=True)
    onramp_id = Column(String(66), nullable=False, index=True)
    status = Column(String(20), nullable=False, default=SettlementStatus.PENDING.value)
    tx_hash = Column(String(66), nullable=True)
    attempts = Column(Integer, nullable=False, default=0)
    last_error = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utc_now)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now)

    __table_args__ = (
        Index("idx_settlements_status", "status"),
    )

    def to_dict(self) -> dict:
        return {
            "depositId": self.deposit_id,
            "onrampId": self.onramp_id,
            "status": self.status,
            "txHash": self.tx_hash,
            "attempts": self.attempts,
            "lastError": self.last_error,
            "createdAt": _iso(self.created_at),
            "updatedAt": _iso(self.updated_at),
        }


class ChainCursorDB(Base):
    """Observer watermark: last block whose logs are fully written."""
    __tablename__ = "chain_cursors"

    event_name = Column(String(64), primary_key=True)
    last_block = Column(BigInteger, nullable=False)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now)
