import sys
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from game_rewards.adapters import get_adapter  # noqa: E402
from game_rewards.config import (  # noqa: E402
    DEFAULT_CONVERSION_RULES,
    GameProvider,
    ProviderConfig,
    ProviderRegistry,
    Settings,
)
from game_rewards.database import Base, build_engine, build_session_factory  # noqa: E402
from game_rewards.main import create_app  # noqa: E402
from game_rewards.models import User  # noqa: E402
from game_rewards.security import sign_payload  # noqa: E402


TEST_SECRETS = {
    GameProvider.GAMEZOP: "gamezop-test-secret",
    GameProvider.ADJOE: "adjoe-test-secret",
    GameProvider.QUREKA: "qureka-test-secret",
}
AUTH = {"Authorization": "Bearer testtoken"}


def make_registry(rules=None, disabled=()):
    rules = rules or {}
    return ProviderRegistry([
        ProviderConfig(
            provider=provider,
            api_key=f"{provider.value}-key",
            webhook_secret=TEST_SECRETS[provider],
            app_id=f"{provider.value}-app",
            enabled=provider not in disabled,
            conversion_rules=rules.get(provider, DEFAULT_CONVERSION_RULES[provider]),
        )
        for provider in GameProvider
    ])


def signed(provider: GameProvider, payload: dict) -> dict:
    body = dict(payload)
    body["signature"] = sign_payload(get_adapter(provider), body, TEST_SECRETS[provider])
    return body


def seed_user(db, user_id: str = "user-1", points: int = 0) -> User:
    user = User(id=user_id, points=points, total_points=points, total_earnings=points)
    db.add(user)
    db.commit()
    return user


@pytest.fixture(scope="function")
def settings(tmp_path):
    """
    Settings pointing at a disposable SQLite file, isolated from any local .env.
    """
    return Settings(
        _env_file=None,
        db_url=f"sqlite:///{tmp_path / 'test.db'}",
        bearer_token="testtoken",
        metrics_flush_interval_seconds=0.05,
    )


@pytest.fixture
def registry():
    return make_registry()


@pytest.fixture
def session_factory(settings):
    engine = build_engine(settings.db_url)
    Base.metadata.create_all(bind=engine)
    yield build_session_factory(engine)
    engine.dispose()


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def app(settings, registry):
    return create_app(settings=settings, registry=registry)


@pytest.fixture
def client(app):
    with TestClient(app) as client:
        yield client
