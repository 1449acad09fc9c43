"""
airc_core.service
-----------------
Identity operations: create, ownership-proof key registration, key rotation
and revocation.

Each operation is a stateless, single-pass pipeline. Correctness under
concurrency comes from the store's atomic primitives (nonce claim,
rate-limit increment, key compare-and-swap); nothing here holds a lock.

Rotation pipeline (revocation mirrors it):
  1 parse        typed proof, handle matches path, nonce format
  2 timestamp    inside the configured window
  3 lookup       404 when unknown
  4 status       403 when revoked / suspended
  5 recovery     400 when no recovery key on file
  6 stored keys  500 when stored keys do not parse
  7 signature    recovery key only, 401 otherwise
  8 rate limit   429, no nonce consumed
  9 nonce        401 on replay, 503 when the replay store is down
 10 freshness    400 when old_key is not the stored key
 11 CAS          409 when another rotation won the race
 12 effects      session invalidation via outbox, audit
"""

from __future__ import annotations
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, Optional

from . import audit as events
from .audit import AuditLog
from .config import AIRCConfig
from .constants import STATUS_ACTIVE, STATUS_REVOKED, STATUS_SUSPENDED
from .crypto import (
    KeyFormatError, compute_pubkey_fingerprint, format_key, keys_equal, parse_key, validate_timestamp,
)
from .errors import (
    AIRCError, AuthenticationError, ConflictError, ForbiddenError, InternalError, NotFoundError,
    RateLimitedError, ReplayError, StorageUnavailableError, ValidationError,
)
from .handles import is_reserved, normalize_handle
from .logger import get_logger
from .nonces import NonceTracker
from .proofs import parse_ownership_proof, parse_revocation_proof, parse_rotation_proof
from .quarantine import QuarantineManager
from .ratelimit import RateLimiter
from .registry import KeyRegistry
from .sessions import SessionManager, invalidation_entry
from .storage import CasResult, ClaimResult, IdentityRecord, KeyEvent, StorageProvider
from .utils import hash_origin, iso, utc_now

log = get_logger("AIRC.Identity")


@dataclass(frozen=True)
class IdentityCreated:
    handle: str
    public_key: Optional[str]
    has_recovery_key: bool
    created_at: str
    reclaimed: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": True,
            "handle": self.handle,
            "public_key": self.public_key,
            "has_recovery_key": self.has_recovery_key,
            "created_at": self.created_at,
            "reclaimed": self.reclaimed,
        }


@dataclass(frozen=True)
class KeyRegistered:
    handle: str
    public_key: str
    is_key_change: bool
    registered_at: str
    headers: Dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": True,
            "handle": self.handle,
            "publicKey": self.public_key,
            "isKeyChange": self.is_key_change,
            "registeredAt": self.registered_at,
            "message": "Public key successfully rotated" if self.is_key_change
            else "Public key successfully registered",
        }


@dataclass(frozen=True)
class KeyRotated:
    handle: str
    new_key: str
    rotated_at: str
    sessions_invalidated: int = 0
    headers: Dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": True,
            "handle": self.handle,
            "new_key": self.new_key,
            "rotated_at": self.rotated_at,
            "message": "Signing key rotated successfully",
        }


@dataclass(frozen=True)
class IdentityRevoked:
    handle: str
    revoked_at: str
    quarantine_expires_at: str
    reason: str
    sessions_invalidated: int = 0
    headers: Dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": True,
            "handle": self.handle,
            "revoked_at": self.revoked_at,
            "quarantine_expires_at": self.quarantine_expires_at,
            "reason": self.reason,
            "message": "Identity revoked",
        }


def _audit_handle(raw: Any) -> str:
    try:
        return normalize_handle(raw)
    except ValidationError:
        return str(raw)[:50]


def _fpr(key: Optional[str]) -> Optional[str]:
    try:
        return compute_pubkey_fingerprint(key) if key else None
    except KeyFormatError:
        return None


class IdentityService:
    def __init__(
        self,
        store: StorageProvider,
        config: AIRCConfig,
        clock: Callable[[], datetime] = utc_now,
        nonce_store: Optional[StorageProvider] = None,
    ):
        self.store = store
        self.config = config
        self.clock = clock
        self.audit = AuditLog(store, config)
        self.nonces = NonceTracker(nonce_store or store, config)
        self.limiter = RateLimiter(store, config)
        self.quarantine = QuarantineManager(store, config)
        self.sessions = SessionManager(store, config)
        self.registry = KeyRegistry(store, self.quarantine, self.audit, clock)

    # ------------------------------------------------------------------
    # shared steps
    # ------------------------------------------------------------------
    def _check_timestamp(self, timestamp: Any, now: datetime) -> None:
        check = validate_timestamp(timestamp, self.config.timestamp_window, now, self.config.skew_warning)
        if not check.valid:
            raise ValidationError(check.message, code=check.error, details={"skew_seconds": check.skew})
        if check.warning:
            log.warning(f"[TIME] {check.warning}")

    def _lookup(self, handle: str) -> IdentityRecord:
        ident = self.store.get_identity(handle)
        if ident is None:
            raise NotFoundError(f"No identity found for handle: {handle}")
        return ident

    @staticmethod
    def _require_mutable(ident: IdentityRecord, action: str) -> None:
        if ident.status == STATUS_REVOKED:
            raise ForbiddenError(f"Cannot {action} for revoked identity", code="identity_revoked")
        if ident.status == STATUS_SUSPENDED:
            raise ForbiddenError(f"Cannot {action} for suspended identity", code="identity_suspended")

    @staticmethod
    def _stored_key(value: Optional[str], name: str) -> bytes:
        try:
            return parse_key(value)
        except KeyFormatError as e:
            log.error(f"[KEYS] stored {name} does not parse: {e}")
            raise InternalError("Stored key is corrupt", code="key_format_error")

    def _claim_proof_nonce(self, nonce: str, handle: str, scope: str, now: datetime, origin_hash: str) -> None:
        # Identity mutations fail closed when replay protection is unavailable
        try:
            result = self.nonces.claim(nonce, handle, scope, now, origin_hash)
        except StorageUnavailableError as e:
            log.error(f"[NONCE] replay store unavailable during {scope}: {e}")
            raise StorageUnavailableError("Replay protection unavailable", code="replay_protection_unavailable")
        if result is ClaimResult.REPLAYED:
            raise ReplayError("Nonce has already been used")

    def _drain(self) -> int:
        try:
            return self.sessions.drain_outbox().sessions_invalidated
        except Exception:
            # Entries stay in the outbox and are retried on the next drain
            log.exception("[OUTBOX] drain failed; side effects remain pending")
            return 0

    def _audited(self, event_type: str, handle: Any, origin: Optional[str], now: datetime,
                 ctx: Dict[str, Any], label: str, fn: Callable[[], Any]):
        who = _audit_handle(handle)
        try:
            result = fn()
        except RateLimitedError as e:
            self.audit.record(events.RATE_LIMITED, who, False,
                              {**ctx, "operation": e.operation, "retry_after": e.retry_after}, origin, now)
            raise
        except AIRCError as e:
            self.audit.record(event_type, who, False, {**ctx, "error": e.code}, origin, now)
            raise
        except Exception as e:
            log.exception(f"[{label}] unexpected error handle={who}")
            self.audit.record(event_type, who, False,
                              {**ctx, "error": "internal_error", "message": str(e)}, origin, now)
            raise InternalError(f"An error occurred during {label}") from e
        self.audit.record(event_type, who, True, ctx, origin, now)
        return result

    # ------------------------------------------------------------------
    # create
    # ------------------------------------------------------------------
    def create_identity(
        self,
        handle: Any,
        public_key: Optional[str] = None,
        recovery_key: Optional[str] = None,
        origin: Optional[str] = None,
    ) -> IdentityCreated:
        now = self.clock()
        ctx: Dict[str, Any] = {}

        def run() -> IdentityCreated:
            h = normalize_handle(handle)
            if is_reserved(h):
                raise ValidationError("Handle is reserved", code="handle_reserved")

            self.limiter.check("registration", h, origin, now).raise_if_limited()

            q = self.quarantine.active(h, now)
            if q is not None:
                raise ForbiddenError("Handle is quarantined after revocation", code="handle_quarantined",
                                     details={"quarantine_expires_at": q.expires_at})

            keys: Dict[str, Optional[str]] = {"public_key": None, "recovery_key": None}
            for name, value in (("public_key", public_key), ("recovery_key", recovery_key)):
                if value:
                    try:
                        keys[name] = format_key(parse_key(value))
                    except KeyFormatError as e:
                        raise ValidationError(f"{name}: {e}", code="invalid_key_format", details={"field": name})
            if keys["public_key"] and keys["public_key"] == keys["recovery_key"]:
                raise ValidationError("Recovery key must differ from the signing key", code="recovery_key_reuse")
            ctx["key_fpr"] = _fpr(keys["public_key"])
            ctx["recovery_fpr"] = _fpr(keys["recovery_key"])

            stamp = iso(now)
            rec = IdentityRecord(handle=h, public_key=keys["public_key"], recovery_key=keys["recovery_key"],
                                 status=STATUS_ACTIVE, created_at=stamp, updated_at=stamp)
            reclaimed = False
            if not self.store.create_identity(rec):
                existing = self.store.get_identity(h)
                if existing is None or existing.status != STATUS_REVOKED \
                        or self.store.reclaim_identity(rec) is not CasResult.UPDATED:
                    raise ConflictError(f"Handle @{h} is already taken", code="handle_taken")
                reclaimed = True
            log.info(f"[IDENTITY] created handle={h} reclaimed={reclaimed}")
            return IdentityCreated(h, rec.public_key, rec.recovery_key is not None, stamp, reclaimed)

        return self._audited(events.IDENTITY_CREATED, handle, origin, now, ctx, "registration", run)

    # ------------------------------------------------------------------
    # ownership-proof registration
    # ------------------------------------------------------------------
    def register_key(self, handle: Any, public_key: Any, proof: Any, origin: Optional[str] = None) -> KeyRegistered:
        now = self.clock()
        ctx: Dict[str, Any] = {}

        def run() -> KeyRegistered:
            h = normalize_handle(handle)
            try:
                raw = parse_key(public_key)
            except KeyFormatError:
                raise ValidationError("Invalid public key format. Expected: ed25519:base64...",
                                      code="invalid_key_format")
            candidate = format_key(raw)
            ctx["key_fpr"] = _fpr(candidate)

            ownership = parse_ownership_proof(h, proof)
            ctx["timestamp"] = ownership.timestamp
            self._check_timestamp(ownership.timestamp, now)

            if not ownership.verify(raw):
                raise AuthenticationError("Invalid ownership proof. Signature verification failed.",
                                          code="invalid_proof")

            ident = self._lookup(h)
            self._require_mutable(ident, "register a key")
            rl = self.limiter.check("key_registration", h, origin, now)
            rl.raise_if_limited()

            is_change = bool(ident.public_key) and ident.public_key != candidate
            if is_change and ident.recovery_key:
                raise ForbiddenError("Identity has a recovery key; key changes must use rotation",
                                     code="rotation_required")
            if ident.recovery_key and keys_equal(self._stored_key(ident.recovery_key, "recovery_key"), raw):
                raise ValidationError("Signing key must differ from the recovery key", code="recovery_key_reuse")

            stamp = iso(now)
            entry = invalidation_entry(h, ident.public_key, now) if is_change else None
            result = self.store.set_public_key(h, ident.public_key, candidate, stamp, [entry] if entry else [])
            if result is CasResult.STALE:
                raise ConflictError("Identity was modified during key registration. Please retry.")
            try:
                self.store.append_key_event(
                    KeyEvent(handle=h, action="key_changed" if is_change else "key_registered",
                             key_fpr=ctx["key_fpr"], created_at=stamp),
                    self.config.key_event_cap,
                )
            except AIRCError:
                log.exception(f"[KEYS] key event log write failed handle={h}")
            if is_change:
                self._drain()
            ctx["is_key_change"] = is_change
            log.info(f"[KEYS] {'changed' if is_change else 'registered'} key for @{h}")
            return KeyRegistered(h, candidate, is_change, stamp, rl.headers)

        return self._audited(events.KEY_REGISTRATION, handle, origin, now, ctx, "key registration", run)

    # ------------------------------------------------------------------
    # rotation
    # ------------------------------------------------------------------
    def rotate_key(self, handle: Any, payload: Any, origin: Optional[str] = None) -> KeyRotated:
        now = self.clock()
        ctx: Dict[str, Any] = {}

        def run() -> KeyRotated:
            h = normalize_handle(handle)
            proof = parse_rotation_proof(payload, path_handle=h)
            ctx.update(nonce=proof.nonce, timestamp=proof.timestamp,
                       old_key_fpr=_fpr(proof.old_key), new_key_fpr=_fpr(proof.new_key))

            self._check_timestamp(proof.timestamp, now)
            ident = self._lookup(h)
            self._require_mutable(ident, "rotate key")
            if not ident.recovery_key:
                raise ValidationError(
                    "No recovery key registered for this identity. Recovery key is required for rotation.",
                    code="no_recovery_key",
                )
            if not ident.public_key:
                raise ValidationError("No signing key registered for this identity", code="no_signing_key")

            recovery_raw = self._stored_key(ident.recovery_key, "recovery_key")
            current_raw = self._stored_key(ident.public_key, "public_key")

            if not proof.verify(recovery_raw):
                raise AuthenticationError("Rotation proof signature verification failed", code="invalid_proof")

            rl = self.limiter.check("rotation", h, origin, now)
            rl.raise_if_limited()

            self._claim_proof_nonce(proof.nonce, h, "rotation", now, self.origin_hash(origin))

            if not keys_equal(parse_key(proof.old_key), current_raw):
                raise ValidationError("old_key in proof does not match current signing key", code="key_mismatch")
            new_raw = parse_key(proof.new_key)
            if keys_equal(new_raw, recovery_raw):
                raise ValidationError("new_key must differ from the recovery key", code="recovery_key_reuse")

            new_key = format_key(new_raw)
            stamp = iso(now)
            result = self.store.compare_and_swap_key(
                h, ident.public_key, new_key, stamp, [invalidation_entry(h, ident.public_key, now)],
            )
            if result is CasResult.STALE:
                raise ConflictError("Signing key was modified during rotation. Please retry.")

            invalidated = self._drain()
            ctx["rotated_at"] = stamp
            log.info(f"[ROTATION] rotated key for @{h}")
            return KeyRotated(h, new_key, stamp, invalidated, rl.headers)

        return self._audited(events.KEY_ROTATION, handle, origin, now, ctx, "key rotation", run)

    # ------------------------------------------------------------------
    # revocation
    # ------------------------------------------------------------------
    def revoke_identity(self, handle: Any, payload: Any, origin: Optional[str] = None) -> IdentityRevoked:
        now = self.clock()
        ctx: Dict[str, Any] = {}

        def run() -> IdentityRevoked:
            h = normalize_handle(handle)
            proof = parse_revocation_proof(payload, path_handle=h)
            ctx.update(nonce=proof.nonce, timestamp=proof.timestamp, reason=proof.reason)

            self._check_timestamp(proof.timestamp, now)
            ident = self._lookup(h)
            if ident.status == STATUS_REVOKED:
                raise ForbiddenError("Identity is already revoked", code="identity_revoked")
            if not ident.recovery_key:
                raise ValidationError(
                    "No recovery key registered for this identity. Recovery key is required for revocation.",
                    code="no_recovery_key",
                )
            recovery_raw = self._stored_key(ident.recovery_key, "recovery_key")

            if not proof.verify(recovery_raw):
                raise AuthenticationError("Revocation proof signature verification failed", code="invalid_proof")

            rl = self.limiter.check("revocation", h, origin, now)
            rl.raise_if_limited()

            self._claim_proof_nonce(proof.nonce, h, "revocation", now, self.origin_hash(origin))

            previous_fpr = _fpr(ident.public_key)
            quarantine = self.quarantine.build(h, now, proof.reason, previous_fpr)
            entry = invalidation_entry(h, ident.public_key, now)
            result = self.store.revoke_identity(h, iso(now), quarantine, [entry] if entry else [])
            if result is CasResult.STALE:
                raise ConflictError("Identity was modified during revocation. Please retry.")

            invalidated = self._drain()
            ctx.update(previous_key_fpr=previous_fpr, quarantine_expires_at=quarantine.expires_at)
            log.warning(f"[REVOCATION] revoked @{h} reason={proof.reason}")
            return IdentityRevoked(h, quarantine.revoked_at, quarantine.expires_at, proof.reason,
                                   invalidated, rl.headers)

        return self._audited(events.IDENTITY_REVOKED, handle, origin, now, ctx, "revocation", run)

    def origin_hash(self, origin: Optional[str]) -> str:
        return hash_origin(origin, self.config.origin_salt)
