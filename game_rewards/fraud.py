import json
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Optional, Protocol

from sqlalchemy import func
from sqlalchemy.orm import Session

from game_rewards.config import GameProvider, Settings
from game_rewards.database import utcnow
from game_rewards.logging_config import get_logger
from game_rewards.models import GameTransaction, SuspiciousEvent, TransactionStatus, User


logger = get_logger(__name__)

INVALID_SIGNATURE_RISK = 40
PAYLOAD_SNIPPET_LENGTH = 500


@dataclass
class FraudCheckResult:
    passed: bool
    risk_score: int
    signals: list[str] = field(default_factory=list)
    should_flag: bool = False


class FraudGate(Protocol):
    def check(
        self,
        db: Session,
        user_id: str,
        provider: GameProvider,
        session_user_id: Optional[str] = None,
    ) -> FraudCheckResult:
        ...


def log_suspicious_event(
    db: Session,
    user_id: str,
    event_type: str,
    provider: Optional[GameProvider],
    details: dict,
    risk_score: int,
    transaction_id: Optional[str] = None,
) -> SuspiciousEvent:
    event = SuspiciousEvent(
        user_id=user_id,
        event_type=event_type,
        provider=provider.value if provider else None,
        transaction_id=transaction_id,
        details=details,
        risk_score=risk_score,
        created_at=utcnow(),
    )
    db.add(event)
    db.commit()
    logger.warning(
        "Suspicious event logged userId=%s eventType=%s provider=%s riskScore=%s",
        user_id,
        event_type,
        event.provider,
        risk_score,
    )
    return event


def log_invalid_signature(
    db: Session,
    provider: GameProvider,
    transaction_id: str,
    user_id: Optional[str],
    payload: dict,
) -> SuspiciousEvent:
    return log_suspicious_event(
        db,
        user_id or "unknown",
        "invalid_signature",
        provider,
        {"payload": json.dumps(payload, default=str)[:PAYLOAD_SNIPPET_LENGTH]},
        INVALID_SIGNATURE_RISK,
        transaction_id=transaction_id,
    )


class VelocityFraudGate:
    """
    Default scorer: session/user mismatch, credit velocity, provider hopping
    and recent suspicious history each add to a risk score capped at 100.
    """

    def __init__(
        self,
        max_credits_per_minute: int = 5,
        max_credits_per_hour: int = 50,
        max_credits_per_day: int = 200,
        flag_threshold: int = 100,
    ):
        self.max_credits_per_minute = max_credits_per_minute
        self.max_credits_per_hour = max_credits_per_hour
        self.max_credits_per_day = max_credits_per_day
        self.flag_threshold = flag_threshold

    @classmethod
    def from_settings(cls, settings: Settings) -> "VelocityFraudGate":
        return cls(
            max_credits_per_minute=settings.fraud_max_credits_per_minute,
            max_credits_per_hour=settings.fraud_max_credits_per_hour,
            max_credits_per_day=settings.fraud_max_credits_per_day,
            flag_threshold=settings.fraud_flag_threshold,
        )

    def check(
        self,
        db: Session,
        user_id: str,
        provider: GameProvider,
        session_user_id: Optional[str] = None,
    ) -> FraudCheckResult:
        signals: list[str] = []
        risk_score = 0

        if session_user_id and session_user_id != user_id:
            signals.append("user_id_mismatch")
            risk_score += 50
            log_suspicious_event(
                db, user_id, "user_id_mismatch", provider,
                {"sessionUserId": session_user_id, "callbackUserId": user_id}, 50,
            )

        now = utcnow()
        minute_count = self._credited_since(db, user_id, now - timedelta(minutes=1))
        hour_count = self._credited_since(db, user_id, now - timedelta(hours=1))
        day_count = self._credited_since(db, user_id, now - timedelta(days=1))

        if minute_count >= self.max_credits_per_minute:
            signals.append("rate_limit_minute_exceeded")
            risk_score += 30
            log_suspicious_event(
                db, user_id, "rate_limit_exceeded", provider,
                {"type": "minute", "count": minute_count, "limit": self.max_credits_per_minute}, 30,
            )
        if hour_count >= self.max_credits_per_hour:
            signals.append("rate_limit_hour_exceeded")
            risk_score += 20
        if day_count >= self.max_credits_per_day:
            signals.append("rate_limit_day_exceeded")
            risk_score += 25
            log_suspicious_event(
                db, user_id, "daily_velocity_exceeded", provider,
                {"count": day_count, "limit": self.max_credits_per_day}, 25,
            )

        recent_providers = (
            db.query(func.count(func.distinct(GameTransaction.provider)))
            .filter(GameTransaction.user_id == user_id)
            .filter(GameTransaction.created_at >= now - timedelta(minutes=15))
            .scalar()
        )
        if recent_providers >= 3:
            signals.append("multiple_providers_short_time")
            risk_score += 15

        recent_events = (
            db.query(func.count(SuspiciousEvent.id))
            .filter(SuspiciousEvent.user_id == user_id)
            .filter(SuspiciousEvent.created_at >= now - timedelta(days=1))
            .scalar()
        )
        if recent_events >= 3:
            signals.append("repeated_suspicious_activity")
            risk_score += 20

        should_flag = risk_score >= self.flag_threshold
        if should_flag:
            self._flag_user(db, user_id, signals, risk_score)

        return FraudCheckResult(
            passed=not signals,
            risk_score=min(risk_score, 100),
            signals=signals,
            should_flag=should_flag,
        )

    def _credited_since(self, db: Session, user_id: str, since) -> int:
        return (
            db.query(func.count(GameTransaction.id))
            .filter(GameTransaction.user_id == user_id)
            .filter(GameTransaction.status == TransactionStatus.CREDITED.value)
            .filter(GameTransaction.created_at >= since)
            .scalar()
        )

    def _flag_user(self, db: Session, user_id: str, signals: list[str], risk_score: int) -> None:
        db.query(User).filter(User.id == user_id).update(
            {User.fraud_flagged: True, User.updated_at: utcnow()}, synchronize_session=False
        )
        db.commit()
        logger.warning("User flagged for fraud review userId=%s signals=%s riskScore=%s", user_id, signals, risk_score)
