"""
airc_core.config
----------------
Immutable runtime configuration, resolved once at start-up.

Every handler receives the same AIRCConfig; nothing in the identity layer
reads the environment after this point.
"""

from __future__ import annotations
import os, secrets
from dataclasses import dataclass, field
from typing import Dict, Mapping, Optional, Tuple

from . import constants as C
from .logger import get_logger
from .policy import PolicyConfig

log = get_logger("AIRC.Config")


def _int(env: Mapping[str, str], name: str, default: int) -> int:
    raw = env.get(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}")


@dataclass(frozen=True)
class AIRCConfig:
    policy: PolicyConfig
    session_secret: str
    timestamp_window: int = C.TIMESTAMP_WINDOW
    skew_warning: int = C.TIMESTAMP_SKEW_WARNING
    proof_nonce_ttl: int = C.PROOF_NONCE_TTL
    message_nonce_ttl: int = C.MESSAGE_NONCE_TTL
    quarantine_days: int = C.QUARANTINE_DAYS
    key_event_cap: int = C.KEY_EVENT_CAP
    session_ttl: int = C.SESSION_TTL
    origin_salt: str = "salt"
    rate_limits: Dict[str, Tuple[int, int]] = field(default_factory=lambda: dict(C.RATE_LIMITS))

    def __post_init__(self):
        # A timestamp is accepted for `window` seconds either side of now, so a
        # nonce must be remembered for the full 2*window span it can be replayed in.
        span = 2 * self.timestamp_window
        for name in ("message_nonce_ttl", "proof_nonce_ttl"):
            if getattr(self, name) < span:
                raise ValueError(
                    f"{name}={getattr(self, name)}s is shorter than twice the timestamp window ({span}s)"
                )

    def nonce_ttl(self, scope: str) -> int:
        return self.message_nonce_ttl if scope == "message" else self.proof_nonce_ttl

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "AIRCConfig":
        env = os.environ if env is None else env

        secret = env.get("AIRC_SESSION_SECRET")
        if not secret:
            if env.get("AIRC_ENV", "").lower() == "production":
                raise RuntimeError("AIRC_SESSION_SECRET must be set in production")
            log.warning("AIRC_SESSION_SECRET not set; using an ephemeral development secret")
            secret = "INSECURE_DEV_ONLY_" + secrets.token_hex(16)

        return cls(
            policy=PolicyConfig.from_env(env),
            session_secret=secret,
            timestamp_window=_int(env, "AIRC_TIMESTAMP_WINDOW", C.TIMESTAMP_WINDOW),
            proof_nonce_ttl=_int(env, "AIRC_PROOF_NONCE_TTL", C.PROOF_NONCE_TTL),
            message_nonce_ttl=_int(env, "AIRC_MESSAGE_NONCE_TTL", C.MESSAGE_NONCE_TTL),
            quarantine_days=_int(env, "AIRC_QUARANTINE_DAYS", C.QUARANTINE_DAYS),
            session_ttl=_int(env, "AIRC_SESSION_TTL", C.SESSION_TTL),
            origin_salt=env.get("AIRC_ORIGIN_SALT", "salt"),
        )
