from datetime import datetime
from typing import Optional, Protocol

from sqlalchemy.orm import Session

from game_rewards.errors import UnknownBalanceAccount
from game_rewards.models import BalanceLedgerEntry, User


class BalanceStore(Protocol):
    def credit_user(
        self,
        db: Session,
        user_id: str,
        points: int,
        *,
        source_id: str,
        provider: str,
        provider_transaction_id: str,
        created_at: datetime,
    ) -> Optional[int]:
        ...


class SqlBalanceStore:
    """
    User balances kept in the ``users`` table with a ``balance_ledger`` history.

    Writes join the caller's unit of work; the caller commits.
    """

    source = "game"

    def credit_user(
        self,
        db: Session,
        user_id: str,
        points: int,
        *,
        source_id: str,
        provider: str,
        provider_transaction_id: str,
        created_at: datetime,
    ) -> Optional[int]:
        updated = (
            db.query(User)
            .filter(User.id == user_id)
            .update(
                {
                    User.points: User.points + points,
                    User.total_points: User.total_points + points,
                    User.total_earnings: User.total_earnings + points,
                    User.updated_at: created_at,
                },
                synchronize_session=False,
            )
        )
        if not updated:
            raise UnknownBalanceAccount(f"user {user_id} not found")
        db.add(
            BalanceLedgerEntry(
                user_id=user_id,
                amount=points,
                entry_type="credit",
                source=self.source,
                source_id=source_id,
                provider=provider,
                provider_transaction_id=provider_transaction_id,
                created_at=created_at,
            )
        )
        db.flush()
        return db.query(User.points).filter(User.id == user_id).scalar()
