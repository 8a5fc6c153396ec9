"""Fixtures for the HTTP layer: a TestClient over the per-test database."""

import pytest
from fastapi.testclient import TestClient

from escrow_api import create_app
from escrow_api.rate_limit import SlidingWindowRateLimiter
from escrow_config import get_active_config

CRON_SECRET = "cron-test-secret"


def auth_headers(actor) -> dict[str, str]:
    return {"X-User-Id": str(actor.actor_id), "X-User-Role": actor.role.value}


def cron_headers(secret: str = CRON_SECRET) -> dict[str, str]:
    return {"Authorization": f"Bearer {secret}"}


@pytest.fixture
def make_client(session_factory, gateway, notifier, clock):
    """Build a TestClient; ``environ`` is overlaid on the default config set."""

    def _build(environ=None, rate_limiter=None) -> TestClient:
        env = {"ESCROW_CRON_SECRET": CRON_SECRET} if environ is None else environ
        app = create_app(
            config=get_active_config(environ=env),
            session_factory=session_factory,
            gateway=gateway,
            notifier=notifier,
            clock=clock,
            rate_limiter=rate_limiter,
        )
        return TestClient(app)

    return _build


@pytest.fixture
def client(make_client) -> TestClient:
    return make_client()


@pytest.fixture
def limited_client(make_client) -> TestClient:
    return make_client(rate_limiter=SlidingWindowRateLimiter(2, 60))
