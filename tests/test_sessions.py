from datetime import datetime, timedelta
from urllib.parse import parse_qs, urlparse

import pytest

from game_rewards.config import GameProvider
from game_rewards.errors import ProviderDisabled, UserNotFound
from game_rewards.sessions import SessionManager

from conftest import make_registry, seed_user


class FakeClock:
    def __init__(self):
        self.now = datetime(2026, 3, 1, 12, 0, 0)

    def __call__(self):
        return self.now

    def advance(self, seconds: int):
        self.now += timedelta(seconds=seconds)


def test_create_and_validate_session(db):
    seed_user(db, "user 1")
    clock = FakeClock()
    manager = SessionManager(make_registry(), ttl_seconds=1800, clock=clock)

    grant = manager.create_session(db, "user 1", GameProvider.GAMEZOP, "snake/2")
    assert len(grant.session_token) >= 43
    assert grant.expires_at == clock.now + timedelta(seconds=1800)
    assert grant.sdk_config == {"partnerId": "gamezop-app", "userId": "user 1", "gameId": "snake/2"}

    # Launch URL parameters are percent-encoded
    url = urlparse(grant.launch_url)
    assert url.path.endswith("/play/snake%2F2")
    query = parse_qs(url.query)
    assert query["userId"] == ["user 1"]
    assert query["sessionToken"] == [grant.session_token]

    session = manager.validate_session(db, grant.session_token)
    assert session is not None
    assert session.user_id == "user 1"
    assert manager.validate_session(db, "not-a-token") is None
    assert manager.validate_session(db, None) is None


def test_session_expires(db):
    seed_user(db)
    clock = FakeClock()
    manager = SessionManager(make_registry(), ttl_seconds=60, clock=clock)
    grant = manager.create_session(db, "user-1", GameProvider.ADJOE, "app")

    clock.advance(60)
    assert manager.validate_session(db, grant.session_token) is not None
    clock.advance(1)
    assert manager.validate_session(db, grant.session_token) is None


def test_tokens_are_unique(db):
    seed_user(db)
    manager = SessionManager(make_registry())
    tokens = {manager.create_session(db, "user-1", GameProvider.QUREKA, "quiz").session_token for _ in range(20)}
    assert len(tokens) == 20


def test_mark_used_only_once(db):
    seed_user(db)
    manager = SessionManager(make_registry())
    grant = manager.create_session(db, "user-1", GameProvider.GAMEZOP, "snake")
    assert manager.mark_used(db, grant.session_id) is True
    assert manager.mark_used(db, grant.session_id) is False
    db.expire_all()
    assert manager.validate_session(db, grant.session_token).used is True


def test_create_session_errors(db):
    seed_user(db)
    manager = SessionManager(make_registry(disabled=(GameProvider.ADJOE,)))
    with pytest.raises(ProviderDisabled):
        manager.create_session(db, "user-1", GameProvider.ADJOE, "app")
    with pytest.raises(UserNotFound):
        manager.create_session(db, "nobody", GameProvider.GAMEZOP, "snake")
