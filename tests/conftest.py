from collections import namedtuple
from datetime import datetime, timedelta, timezone

import pytest

from airc_core.config import AIRCConfig
from airc_core.crypto import ed25519_generate, format_key
from airc_core.policy import PolicyConfig
from airc_core.service import IdentityService
from airc_core.storage import InMemoryStorage, SQLiteStorage

# After the default cutover, so the policy is strict unless overridden
NOW = datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)
CUTOVER = datetime(2026, 2, 1, tzinfo=timezone.utc)

Identity = namedtuple("Identity", "handle signing_priv public_key recovery_priv recovery_key")


class Clock:
    def __init__(self, now=NOW):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, **kw):
        self.now += timedelta(**kw)


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def make_config():
    def _make(strict=None, cutover=CUTOVER, **overrides):
        return AIRCConfig(
            policy=PolicyConfig(cutover=cutover, strict_override=strict),
            session_secret="test-session-secret",
            **overrides,
        )
    return _make


@pytest.fixture
def config(make_config):
    return make_config()


@pytest.fixture
def store():
    return InMemoryStorage()


@pytest.fixture(params=["memory", "sqlite"])
def any_store(request, tmp_path):
    if request.param == "memory":
        yield InMemoryStorage()
    else:
        s = SQLiteStorage(str(tmp_path / "airc.db"))
        yield s
        s.close()


@pytest.fixture
def service(store, config, clock):
    return IdentityService(store, config, clock)


@pytest.fixture
def make_identity(service):
    """Create an identity through the service; returns its private and public keys."""
    def _make(handle="alice", with_recovery=True, with_key=True):
        signing_priv, signing_pub = ed25519_generate()
        recovery_priv, recovery_pub = ed25519_generate()
        public_key = format_key(signing_pub)
        recovery_key = format_key(recovery_pub) if with_recovery else None
        service.create_identity(handle, public_key if with_key else None, recovery_key, origin=f"origin-{handle}")
        return Identity(handle, signing_priv, public_key,
                        recovery_priv if with_recovery else None, recovery_key)
    return _make
