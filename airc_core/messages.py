"""
airc_core.messages
------------------
Authentication gate for chat messages.

Unsigned messages are governed by the enforcement phase (see policy.py);
signed messages are always verified in full, whatever the phase:

  nonce format -> timestamp window -> sender key -> signature -> nonce claim

A replay-store outage does not block delivery: the message goes through
with an explicit `replay_warning` on the decision.
"""

from __future__ import annotations
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, Optional

from .config import AIRCConfig
from .constants import STATUS_REVOKED, STATUS_SUSPENDED
from .crypto import KeyFormatError, is_valid_nonce, parse_key, validate_timestamp
from .errors import (
    AIRCError, AuthenticationError, ForbiddenError, InternalError, ReplayError,
    StorageUnavailableError, ValidationError,
)
from .handles import normalize_handle
from .logger import get_logger
from .nonces import NonceTracker
from .policy import EnforcementPhase
from .proofs import SignedMessage, parse_signed_message
from .ratelimit import RateLimiter
from .storage import ClaimResult, StorageProvider
from .utils import hash_origin, utc_now

log = get_logger("AIRC.Messages")


@dataclass(frozen=True)
class GateDecision:
    message: SignedMessage
    sender: str
    recipient: str
    signed: bool
    phase: EnforcementPhase
    warning: Optional[str] = None
    replay_warning: Optional[str] = None
    headers: Dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {
            "success": True,
            "from": self.sender,
            "to": self.recipient,
            "signed": self.signed,
            "strict_mode": self.phase is EnforcementPhase.STRICT,
        }
        if self.warning:
            body["warning"] = self.warning
        if self.replay_warning:
            body["replay_warning"] = self.replay_warning
        return body


class MessageGate:
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
        self.nonces = NonceTracker(nonce_store or store, config)
        self.limiter = RateLimiter(store, config)

    def check(self, payload: Any, origin: Optional[str] = None) -> GateDecision:
        """
        Decide whether a message may be delivered.

        Raises an AIRCError (with the enforcement headers attached) when it
        may not; returns a GateDecision otherwise.
        """
        now = self.clock()
        policy_headers = self.config.policy.headers(now)
        try:
            return self._check(payload, origin, now, policy_headers)
        except AIRCError as e:
            e.headers = {**policy_headers, **e.headers}
            raise

    def _check(self, payload: Any, origin: Optional[str], now: datetime,
               policy_headers: Dict[str, str]) -> GateDecision:
        msg = parse_signed_message(payload)
        sender = normalize_handle(msg.sender)
        recipient = normalize_handle(msg.recipient)
        phase = self.config.policy.phase_at(now)

        self.limiter.check("message", sender, origin, now).raise_if_limited()

        if not msg.is_signed:
            if phase is EnforcementPhase.STRICT:
                raise AuthenticationError("Message signature is required", code="signature_required")
            return GateDecision(msg, sender, recipient, False, phase,
                                warning=self.config.policy.deprecation_warning(), headers=policy_headers)

        if not msg.nonce:
            raise ValidationError("Nonce is required for signed messages", code="nonce_required")
        if not is_valid_nonce(msg.nonce):
            raise ValidationError("Nonce must be 32 hex characters", code="invalid_nonce")
        if msg.timestamp is None:
            raise ValidationError("Timestamp is required for signed messages", code="timestamp_required")
        check = validate_timestamp(msg.timestamp, self.config.timestamp_window, now, self.config.skew_warning)
        if not check.valid:
            raise ValidationError(check.message, code=check.error, details={"skew_seconds": check.skew})

        ident = self.store.get_identity(sender)
        if ident is None or not ident.public_key:
            raise AuthenticationError(f"No public key registered for @{sender}", code="sender_key_not_found")
        if ident.status == STATUS_REVOKED:
            raise ForbiddenError("Sender identity is revoked", code="identity_revoked")
        if ident.status == STATUS_SUSPENDED:
            raise ForbiddenError("Sender identity is suspended", code="identity_suspended")
        try:
            sender_key = parse_key(ident.public_key)
        except KeyFormatError as e:
            log.error(f"[MESSAGE] stored key for @{sender} does not parse: {e}")
            raise InternalError("Stored key is corrupt", code="key_format_error")

        if not msg.verify(sender_key):
            log.warning(f"[MESSAGE] bad signature from @{sender}")
            raise AuthenticationError("Message signature verification failed", code="invalid_signature")

        replay_warning = None
        try:
            claimed = self.nonces.claim(msg.nonce, sender, "message", now,
                                        hash_origin(origin, self.config.origin_salt))
        except StorageUnavailableError as e:
            log.error(f"[MESSAGE] replay store unavailable; delivering without replay check: {e}")
            replay_warning = "Replay protection unavailable; nonce was not recorded"
        else:
            if claimed is ClaimResult.REPLAYED:
                raise ReplayError("Message nonce has already been used")

        return GateDecision(msg, sender, recipient, True, phase, replay_warning=replay_warning,
                            headers=policy_headers)
