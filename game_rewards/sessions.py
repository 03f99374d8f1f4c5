import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional
from urllib.parse import quote

from sqlalchemy.orm import Session

from game_rewards.adapters import get_adapter
from game_rewards.config import GameProvider, ProviderConfig, ProviderRegistry
from game_rewards.database import utcnow
from game_rewards.errors import ProviderDisabled, UserNotFound
from game_rewards.logging_config import get_logger
from game_rewards.models import GameSession, User


logger = get_logger(__name__)

# 32 random bytes, 256 bits of entropy
SESSION_TOKEN_BYTES = 32


@dataclass
class SessionGrant:
    session_id: str
    session_token: str
    launch_url: str
    sdk_config: dict
    expires_at: datetime


def generate_session_token() -> str:
    return secrets.token_urlsafe(SESSION_TOKEN_BYTES)


def build_launch_url(config: ProviderConfig, user_id: str, game_id: str, session_token: str) -> str:
    template = config.launch_url_template or get_adapter(config.provider).default_launch_url
    substitutions = {
        "{userId}": user_id,
        "{gameId}": game_id,
        "{sessionToken}": session_token,
        "{appId}": config.app_id or "",
    }
    for placeholder, value in substitutions.items():
        template = template.replace(placeholder, quote(value, safe=""))
    return template


class SessionManager:
    """
    Issues short-lived launch sessions binding a user to a provider and game.

    Expiry is checked when a token is validated; nothing sweeps old sessions.
    """

    def __init__(self, registry: ProviderRegistry, ttl_seconds: int = 1800, clock: Callable[[], datetime] = utcnow):
        self.registry = registry
        self.ttl_seconds = ttl_seconds
        self.clock = clock

    def create_session(self, db: Session, user_id: str, provider: GameProvider, game_id: str) -> SessionGrant:
        if not self.registry.is_enabled(provider):
            raise ProviderDisabled(f"Provider {provider.value} is not enabled")
        config = self.registry.get(provider)
        if db.get(User, user_id) is None:
            raise UserNotFound("User not found")

        now = self.clock()
        session = GameSession(
            user_id=user_id,
            provider=provider.value,
            game_id=game_id,
            session_token=generate_session_token(),
            expires_at=now + timedelta(seconds=self.ttl_seconds),
            used=False,
            created_at=now,
        )
        db.add(session)
        db.commit()
        db.refresh(session)
        logger.info(
            "Created game session sessionId=%s userId=%s provider=%s gameId=%s expiresAt=%s",
            session.id,
            user_id,
            provider.value,
            game_id,
            session.expires_at.isoformat(),
        )
        return SessionGrant(
            session_id=session.id,
            session_token=session.session_token,
            launch_url=build_launch_url(config, user_id, game_id, session.session_token),
            sdk_config=get_adapter(provider).sdk_config(config, user_id, game_id),
            expires_at=session.expires_at,
        )

    def validate_session(self, db: Session, session_token: Optional[str]) -> Optional[GameSession]:
        # Unknown and expired tokens look the same to the caller.
        if not session_token:
            return None
        session = db.query(GameSession).filter(GameSession.session_token == session_token).first()
        if session is None or self.clock() > session.expires_at:
            return None
        return session

    def mark_used(self, db: Session, session_id: str) -> bool:
        """
        Flip ``used`` to true once. Returns False if it was already used.
        """
        updated = (
            db.query(GameSession)
            .filter(GameSession.id == session_id)
            .filter(GameSession.used.is_(False))
            .update({GameSession.used: True, GameSession.used_at: self.clock()}, synchronize_session=False)
        )
        db.commit()
        return bool(updated)
