"""Shared test fixtures and configuration for backend tests."""
import pytest
from fastapi.testclient import TestClient

from app.auth.identity import Identity, JWTIdentityProvider
from app.chat.runtime import build_runtime, set_runtime
from app.chat.store import InMemoryRoomStore
from app.config import AppConfig, JWTSecrets, Secrets, reset_config, set_config
from app.main import app

TEST_SECRET = "test-secret"


def make_config(**sections) -> AppConfig:
    """AppConfig signed with the test secret; keyword args replace whole sections."""
    return AppConfig(secrets=Secrets(jwt=JWTSecrets(secret_key=TEST_SECRET)), **sections)


def install_runtime(config: AppConfig):
    set_config(config)
    runtime = build_runtime(config, store=InMemoryRoomStore())
    set_runtime(runtime)
    return runtime


@pytest.fixture
def runtime():
    """Install a fresh in-memory chat runtime for the app under test."""
    runtime = install_runtime(make_config())
    yield runtime
    set_runtime(None)
    reset_config()


@pytest.fixture
def chat_client(runtime):
    """TestClient sharing one event loop across every request and socket.

    Sockets opened from a client that is not entered each get their own loop,
    and fan-out between them would cross loops.
    """
    with TestClient(app) as client:
        yield client


@pytest.fixture
def make_token():
    """Issue bearer tokens signed with the test secret."""
    provider = JWTIdentityProvider(secret_key=TEST_SECRET)

    def _make(user_id: str, username: str = None) -> str:
        return provider.create_token(user_id, username or user_id.title())

    return _make


@pytest.fixture
def alice():
    return Identity(userId="alice", displayName="Alice")


@pytest.fixture
def bob():
    return Identity(userId="bob", displayName="Bob")


@pytest.fixture
def carol():
    return Identity(userId="carol", displayName="Carol")


@pytest.fixture
def configure_runtime(runtime):
    """Replace the installed runtime with one built from custom config sections."""
    def _configure(**sections):
        return install_runtime(make_config(**sections))

    return _configure
