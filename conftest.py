"""
Shared pytest fixtures.

Every test gets its own in-memory Redis (fakeredis with Lua support) so the
Lua scripts run exactly as they would against a real server.
"""

import time

import fakeredis
import pytest

from audit_logger import AuditLogger
from authorization_code_store import AuthorizationCodeStore
from client_registry import ClientRegistry
from config import ServerConfig
from jwt_signer import JwtSigner
from session_tokens import SessionTokenService
from user_directory import UserDirectory

TEST_JWT_SECRET = "test-signing-secret-that-is-long-enough-for-hs256"
TEST_REDIRECT_URI = "http://localhost:3000/callback"


class FakeClock:
    """Settable time source for services that take a clock."""

    def __init__(self, now: float = None):
        # Whole seconds near real time so signed tokens are not already expired
        self.now = float(int(time.time())) if now is None else now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def redis_client():
    client = fakeredis.FakeRedis(decode_responses=True)
    yield client
    client.flushall()


@pytest.fixture
def config():
    return ServerConfig(
        issuer="http://auth.test",
        jwt_secret=TEST_JWT_SECRET,
        rate_limit_enabled=False,
        seed_default_clients=False,
        code_sweep_interval=0,
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def audit(redis_client):
    return AuditLogger(redis_client=redis_client)


@pytest.fixture
def signer(config):
    return JwtSigner(config)


@pytest.fixture
def session_tokens(signer, config):
    return SessionTokenService(signer, config)


@pytest.fixture
def code_store(redis_client, clock):
    return AuthorizationCodeStore(redis_client, clock=clock)


@pytest.fixture
def registry(redis_client, code_store, audit, clock):
    return ClientRegistry(redis_client, code_store=code_store, audit=audit, clock=clock)


@pytest.fixture
def directory(redis_client, clock):
    return UserDirectory(redis_client, clock=clock)


@pytest.fixture
def public_client(registry):
    client, _ = registry.register(
        client_name="Test SPA",
        redirect_uris=[TEST_REDIRECT_URI, "http://localhost:3000/cb?tenant=acme"],
        client_id="test-spa",
    )
    return client


@pytest.fixture
def user(directory):
    return directory.create_user("alice", "alice@example.com", "correct horse battery staple")
