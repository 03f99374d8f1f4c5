import uuid
from enum import Enum

from sqlalchemy import JSON, Boolean, Column, DateTime, Float, ForeignKey, Index, Integer, String, Text, UniqueConstraint

from game_rewards.database import Base, utcnow


def new_id() -> str:
    return uuid.uuid4().hex


class TransactionStatus(str, Enum):
    PENDING = "pending"
    CREDITED = "credited"
    REJECTED = "rejected"
    DUPLICATE = "duplicate"


class ReconciliationStatus(str, Enum):
    PENDING = "pending"
    MATCHED = "matched"
    DISCREPANT = "discrepant"
    RESOLVED = "resolved"


class ReportStatus(str, Enum):
    GENERATED = "generated"
    REVIEWED = "reviewed"
    RESOLVED = "resolved"


class DiscrepancyKind(str, Enum):
    MISSING_INTERNAL = "missing_internal"
    MISSING_PROVIDER = "missing_provider"
    AMOUNT_MISMATCH = "amount_mismatch"
    STATUS_MISMATCH = "status_mismatch"


class User(Base):
    __tablename__ = "users"
    id = Column(String, primary_key=True)
    points = Column(Integer, nullable=False, default=0)
    total_points = Column(Integer, nullable=False, default=0)
    total_earnings = Column(Integer, nullable=False, default=0)
    fraud_flagged = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow)


class GameSession(Base):
    __tablename__ = "game_sessions"
    id = Column(String(32), primary_key=True, default=new_id)
    user_id = Column(String, index=True, nullable=False)
    provider = Column(String, nullable=False)
    game_id = Column(String, nullable=False)
    session_token = Column(String, unique=True, index=True, nullable=False)
    expires_at = Column(DateTime, nullable=False)
    used = Column(Boolean, nullable=False, default=False)
    used_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow)


class GameTransaction(Base):
    __tablename__ = "game_transactions"
    id = Column(String(32), primary_key=True, default=new_id)
    provider_transaction_id = Column(String, nullable=False)
    provider = Column(String, nullable=False)
    user_id = Column(String, index=True, nullable=False)
    raw_value = Column(Float, nullable=False)
    value_type = Column(String, nullable=False)
    points_credited = Column(Integer, nullable=False, default=0)
    status = Column(String, nullable=False)  # credited|rejected
    reconciliation_status = Column(String, nullable=False, default=ReconciliationStatus.PENDING.value)
    reconciliation_notes = Column(Text, nullable=True)
    signature_valid = Column(Boolean, nullable=False, default=True)
    game_id = Column(String, nullable=True)
    session_id = Column(String, nullable=True)
    request_id = Column(String, nullable=True)
    fraud_signals = Column(JSON, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow)
    # The idempotency key. Enforced by the database, not by a prior lookup.
    __table_args__ = (
        UniqueConstraint("provider", "provider_transaction_id", name="uq_provider_transaction"),
        Index("ix_game_transactions_provider_created", "provider", "created_at"),
    )


class BalanceLedgerEntry(Base):
    __tablename__ = "balance_ledger"
    id = Column(Integer, primary_key=True)
    user_id = Column(String, index=True, nullable=False)
    amount = Column(Integer, nullable=False)
    entry_type = Column(String, nullable=False, default="credit")
    source = Column(String, nullable=False)
    source_id = Column(String, index=True, nullable=True)
    provider = Column(String, nullable=True)
    provider_transaction_id = Column(String, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)


class SuspiciousEvent(Base):
    __tablename__ = "suspicious_events"
    id = Column(Integer, primary_key=True)
    user_id = Column(String, index=True, nullable=False)
    event_type = Column(String, nullable=False)
    provider = Column(String, nullable=True)
    transaction_id = Column(String, nullable=True)
    details = Column(JSON, nullable=False, default=dict)
    risk_score = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime, nullable=False, default=utcnow)


class WebhookMetric(Base):
    __tablename__ = "webhook_metrics"
    id = Column(Integer, primary_key=True)
    provider = Column(String, index=True, nullable=False)
    timestamp = Column(DateTime, index=True, nullable=False)
    success = Column(Boolean, nullable=False)
    latency_ms = Column(Float, nullable=False)
    rejected = Column(Boolean, nullable=False, default=False)
    points_credited = Column(Integer, nullable=True)


class ReconciliationReport(Base):
    __tablename__ = "reconciliation_reports"
    id = Column(Integer, primary_key=True)
    provider = Column(String, index=True, nullable=False)
    date = Column(String, nullable=False)  # YYYY-MM-DD
    provider_transaction_count = Column(Integer, nullable=False)
    internal_transaction_count = Column(Integer, nullable=False)
    total_points_credited = Column(Integer, nullable=False)
    matched_count = Column(Integer, nullable=False)
    discrepancy_count = Column(Integer, nullable=False)
    discrepancy_ids = Column(JSON, nullable=False, default=list)
    status = Column(String, nullable=False, default=ReportStatus.GENERATED.value)
    notes = Column(Text, nullable=True)
    generated_at = Column(DateTime, nullable=False, default=utcnow)
    reviewed_at = Column(DateTime, nullable=True)


class Discrepancy(Base):
    __tablename__ = "reconciliation_discrepancies"
    id = Column(Integer, primary_key=True)
    report_id = Column(Integer, ForeignKey("reconciliation_reports.id"), index=True, nullable=False)
    transaction_id = Column(String, nullable=False)
    provider_transaction_id = Column(String, nullable=True)
    kind = Column(String, nullable=False)
    expected_value = Column(Integer, nullable=True)
    actual_value = Column(Integer, nullable=True)
    details = Column(String, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
