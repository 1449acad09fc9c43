"""
airc_core.sessions
------------------
Session tokens bound to a handle's current signing key, and the outbox that
carries post-mutation side effects.

Token layout: base64url(JSON{sid, handle, fpr, exp}) + "." + base64url(HMAC-SHA256).
A token is valid only while (a) its MAC checks out, (b) it has not expired,
(c) the handle's current key fingerprint still equals `fpr` and (d) its
session row still exists. Rotation and revocation enqueue an
`invalidate_sessions` outbox entry in the same transaction as the key
change; `drain_outbox` deletes the rows and leaves failed entries pending
for the next drain.
"""

from __future__ import annotations
import base64, binascii, hashlib, hmac, json
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional, Tuple

from .config import AIRCConfig
from .constants import STATUS_ACTIVE
from .crypto import compute_pubkey_fingerprint, constant_time_equals
from .errors import ForbiddenError, NotFoundError
from .logger import get_logger
from .storage import OutboxEntry, SessionRecord, StorageProvider
from .utils import iso, new_id, utc_now

log = get_logger("AIRC.Session")

INVALIDATE_SESSIONS = "invalidate_sessions"


def _b64url(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def _b64url_decode(data: str) -> bytes:
    return base64.urlsafe_b64decode(data + "=" * (-len(data) % 4))


def invalidation_entry(handle: str, key: Optional[str], now: datetime) -> Optional[OutboxEntry]:
    if not key:
        return None
    return OutboxEntry(kind=INVALIDATE_SESSIONS, handle=handle,
                       payload={"key_fpr": compute_pubkey_fingerprint(key)}, created_at=iso(now))


@dataclass(frozen=True)
class SessionCheck:
    valid: bool
    error: Optional[str] = None
    handle: Optional[str] = None
    expires_at: Optional[datetime] = None


@dataclass(frozen=True)
class DrainResult:
    processed: int = 0
    failed: int = 0
    sessions_invalidated: int = 0


class SessionManager:
    def __init__(self, store: StorageProvider, config: AIRCConfig):
        self.store = store
        self.config = config
        self._secret = config.session_secret.encode("utf-8")

    def _mac(self, payload: bytes) -> str:
        return _b64url(hmac.new(self._secret, payload, hashlib.sha256).digest())

    def issue(self, handle: str, now: Optional[datetime] = None) -> Tuple[str, datetime]:
        now = now or utc_now()
        ident = self.store.get_identity(handle)
        if ident is None:
            raise NotFoundError(f"No identity found for handle: {handle}")
        if ident.status != STATUS_ACTIVE or not ident.public_key:
            raise ForbiddenError("Sessions require an active identity with a registered key",
                                 code="identity_inactive")

        expires = now + timedelta(seconds=self.config.session_ttl)
        fpr = compute_pubkey_fingerprint(ident.public_key)
        sid = new_id()
        self.store.put_session(SessionRecord(token_id=sid, handle=handle, key_fpr=fpr,
                                             expires_at=iso(expires), created_at=iso(now)))
        payload = json.dumps({"sid": sid, "handle": handle, "fpr": fpr, "exp": int(expires.timestamp())},
                             separators=(",", ":"), sort_keys=True).encode("utf-8")
        return f"{_b64url(payload)}.{self._mac(payload)}", expires

    def verify(self, token: str, handle: str, now: Optional[datetime] = None) -> SessionCheck:
        now = now or utc_now()
        if not token or not isinstance(token, str):
            return SessionCheck(False, "missing_token")
        parts = token.split(".")
        if len(parts) != 2:
            return SessionCheck(False, "invalid_token_format")

        try:
            payload = _b64url_decode(parts[0])
            claims = json.loads(payload)
        except (binascii.Error, ValueError):
            return SessionCheck(False, "invalid_token_encoding")

        if not constant_time_equals(parts[1], self._mac(payload)):
            return SessionCheck(False, "invalid_signature")

        expires = datetime.fromtimestamp(claims["exp"], tz=timezone.utc)
        if now > expires:
            return SessionCheck(False, "token_expired")
        if claims["handle"] != handle:
            return SessionCheck(False, "handle_mismatch")

        ident = self.store.get_identity(handle)
        if ident is None or ident.status != STATUS_ACTIVE or not ident.public_key:
            return SessionCheck(False, "identity_inactive")
        if not constant_time_equals(compute_pubkey_fingerprint(ident.public_key), claims["fpr"]):
            return SessionCheck(False, "key_rotated")
        if self.store.get_session(claims["sid"]) is None:
            return SessionCheck(False, "session_revoked")
        return SessionCheck(True, handle=handle, expires_at=expires)

    def invalidate(self, handle: str, key_fpr: str) -> int:
        removed = self.store.delete_sessions(handle, key_fpr)
        log.info(f"[SESSION] invalidated {removed} sessions handle={handle}")
        return removed

    def drain_outbox(self, limit: int = 100) -> DrainResult:
        processed = failed = invalidated = 0
        for entry in self.store.pending_outbox(limit):
            try:
                if entry.kind != INVALIDATE_SESSIONS:
                    raise ValueError(f"unknown outbox kind {entry.kind}")
                invalidated += self.invalidate(entry.handle, entry.payload["key_fpr"])
                self.store.complete_outbox(entry.id)
                processed += 1
            except Exception:
                failed += 1
                log.exception(f"[OUTBOX] entry {entry.id} ({entry.kind}) failed; left pending")
                try:
                    self.store.fail_outbox(entry.id)
                except Exception:
                    log.exception(f"[OUTBOX] could not record failure for entry {entry.id}")
        return DrainResult(processed, failed, invalidated)
