import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from game_rewards.balance import BalanceStore, SqlBalanceStore
from game_rewards.config import GameProvider
from game_rewards.contracts.callbacks import CreditMetadata
from game_rewards.database import utcnow
from game_rewards.errors import BalanceStoreError, CreditingFailed, TransactionNotFound
from game_rewards.logging_config import get_logger, log_event
from game_rewards.models import GameTransaction, ReconciliationStatus, TransactionStatus, new_id


logger = get_logger(__name__)


@dataclass
class CreditResult:
    success: bool
    is_duplicate: bool
    transaction_id: Optional[str]
    points_credited: int
    status: TransactionStatus
    new_balance: Optional[int] = None


class CreditingLedger:
    """
    Applies game rewards exactly once per (provider, provider transaction id).

    The ledger row is inserted before the balance is touched. The unique
    constraint on the key decides which of several concurrent deliveries wins;
    the losers roll back and report a duplicate.
    """

    def __init__(self, balance_store: BalanceStore | None = None):
        self.balance_store = balance_store or SqlBalanceStore()

    def credit_reward(self, db: Session, user_id: str, points: int, metadata: CreditMetadata) -> CreditResult:
        if points <= 0:
            raise ValueError("points must be positive")
        now = utcnow()
        txn = self._build_transaction(user_id, points, TransactionStatus.CREDITED, metadata, now)
        duplicate = self._insert_unique(db, txn, metadata)
        if duplicate is not None:
            return duplicate
        try:
            new_balance = self.balance_store.credit_user(
                db,
                user_id,
                points,
                source_id=txn.id,
                provider=metadata.provider.value,
                provider_transaction_id=metadata.providerTransactionId,
                created_at=now,
            )
            db.commit()
        except (SQLAlchemyError, BalanceStoreError) as exc:
            db.rollback()
            logger.error(
                "Crediting failed provider=%s providerTransactionId=%s userId=%s error=%s",
                metadata.provider.value,
                metadata.providerTransactionId,
                user_id,
                exc,
            )
            raise CreditingFailed(f"failed to credit wallet: {exc}") from exc
        logger.info(
            "Credited game reward provider=%s providerTransactionId=%s userId=%s points=%s transactionId=%s",
            metadata.provider.value,
            metadata.providerTransactionId,
            user_id,
            points,
            txn.id,
        )
        return CreditResult(
            success=True,
            is_duplicate=False,
            transaction_id=txn.id,
            points_credited=points,
            status=TransactionStatus.CREDITED,
            new_balance=new_balance,
        )

    def record_rejection(self, db: Session, user_id: str, metadata: CreditMetadata) -> CreditResult:
        """
        Record a zero-point outcome (below the conversion minimum) under the
        same uniqueness rule as credits.
        """
        txn = self._build_transaction(user_id, 0, TransactionStatus.REJECTED, metadata, utcnow())
        duplicate = self._insert_unique(db, txn, metadata)
        if duplicate is not None:
            return duplicate
        try:
            db.commit()
        except SQLAlchemyError as exc:
            db.rollback()
            raise CreditingFailed(f"failed to record rejected transaction: {exc}") from exc
        return CreditResult(
            success=True,
            is_duplicate=False,
            transaction_id=txn.id,
            points_credited=0,
            status=TransactionStatus.REJECTED,
        )

    def _build_transaction(
        self,
        user_id: str,
        points: int,
        status: TransactionStatus,
        metadata: CreditMetadata,
        now: datetime,
    ) -> GameTransaction:
        return GameTransaction(
            id=new_id(),
            provider_transaction_id=metadata.providerTransactionId,
            provider=metadata.provider.value,
            user_id=user_id,
            raw_value=metadata.rawValue,
            value_type=metadata.valueType.value,
            points_credited=points,
            status=status.value,
            reconciliation_status=ReconciliationStatus.PENDING.value,
            signature_valid=metadata.signatureValid,
            game_id=metadata.gameId,
            session_id=metadata.sessionId,
            request_id=metadata.requestId,
            fraud_signals=metadata.fraudSignals,
            created_at=now,
            updated_at=now,
        )

    def _insert_unique(self, db: Session, txn: GameTransaction, metadata: CreditMetadata) -> Optional[CreditResult]:
        db.add(txn)
        try:
            db.flush()
        except IntegrityError:
            db.rollback()
            existing = find_transaction(db, metadata.provider, metadata.providerTransactionId)
            log_event(
                logger,
                logging.INFO,
                "duplicate_transaction",
                provider=metadata.provider.value,
                providerTransactionId=metadata.providerTransactionId,
                existingTransactionId=existing.id if existing else None,
            )
            return CreditResult(
                success=True,
                is_duplicate=True,
                transaction_id=existing.id if existing else None,
                points_credited=0,
                status=TransactionStatus.DUPLICATE,
            )
        except SQLAlchemyError as exc:
            db.rollback()
            raise CreditingFailed(f"failed to record transaction: {exc}") from exc
        return None


def find_transaction(db: Session, provider: GameProvider, provider_transaction_id: str) -> Optional[GameTransaction]:
    return (
        db.query(GameTransaction)
        .filter(GameTransaction.provider == provider.value)
        .filter(GameTransaction.provider_transaction_id == provider_transaction_id)
        .first()
    )


def list_transactions(
    db: Session,
    provider: Optional[GameProvider] = None,
    user_id: Optional[str] = None,
    status: Optional[str] = None,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    page: int = 1,
    limit: int = 50,
) -> tuple[list[GameTransaction], int]:
    query = db.query(GameTransaction)
    if provider:
        query = query.filter(GameTransaction.provider == provider.value)
    if user_id:
        query = query.filter(GameTransaction.user_id == user_id)
    if status:
        query = query.filter(GameTransaction.status == status)
    if start:
        query = query.filter(GameTransaction.created_at >= start)
    if end:
        query = query.filter(GameTransaction.created_at <= end)
    total = query.count()
    records = (
        query.order_by(GameTransaction.created_at.desc(), GameTransaction.id)
        .offset((page - 1) * limit)
        .limit(limit)
        .all()
    )
    return records, total


def get_unreconciled_transactions(db: Session, provider: GameProvider, limit: int = 100) -> list[GameTransaction]:
    return (
        db.query(GameTransaction)
        .filter(GameTransaction.provider == provider.value)
        .filter(GameTransaction.reconciliation_status == ReconciliationStatus.PENDING.value)
        .order_by(GameTransaction.created_at.desc())
        .limit(limit)
        .all()
    )


def update_reconciliation_status(
    db: Session,
    transaction_id: str,
    status: ReconciliationStatus,
    notes: Optional[str] = None,
) -> GameTransaction:
    txn = db.get(GameTransaction, transaction_id)
    if txn is None:
        raise TransactionNotFound(f"transaction {transaction_id} not found")
    txn.reconciliation_status = status.value
    txn.reconciliation_notes = notes
    txn.updated_at = utcnow()
    db.add(txn)
    db.commit()
    db.refresh(txn)
    return txn
