"""
airc_core.proofs
----------------
Typed proof and signed-message variants.

Every payload that arrives over the wire passes through exactly one parse
function here and comes out either as a typed value or as a
ProofFormatError. Downstream code never inspects raw dicts.

Signing rules:
- Rotation / Revocation / SignedMessage sign the canonical JSON of every field
  except `signature` (fields with no value are omitted).
- Ownership proofs sign "<normalized_handle>:<timestamp>" and travel as
  "<timestamp>|<signature>" because ISO timestamps contain colons.
"""

from __future__ import annotations
from dataclasses import dataclass, asdict, replace
from datetime import datetime
from typing import Any, Dict, Optional, Union

from .constants import REVOCATION_REASONS
from .crypto import (
    KeyFormatError, generate_nonce, is_valid_nonce, ownership_message, parse_key,
    sign_payload, verify_signature, ed25519_sign,
)
from .errors import ProofFormatError, ValidationError
from .handles import normalize_handle
from .utils import b64e, canonical_json, iso, utc_now

OP_ROTATE = "rotate"
OP_REVOKE = "revoke"

Timestamp = Union[str, int, float]


class _SignedPayload:
    """Shared canonical-encoding behaviour for dict-shaped signed payloads."""

    def to_dict(self) -> Dict[str, Any]:
        raise NotImplementedError

    def unsigned_dict(self) -> Dict[str, Any]:
        return {k: v for k, v in self.to_dict().items() if k != "signature" and v is not None}

    def to_signing_bytes(self) -> bytes:
        return canonical_json(self.unsigned_dict())

    def sign(self, priv_raw: bytes):
        return replace(self, signature=sign_payload(priv_raw, self.to_dict()))

    def verify(self, pub_raw: bytes) -> bool:
        return verify_signature(pub_raw, self.signature, self.to_signing_bytes())


@dataclass(frozen=True)
class OwnershipProof:
    handle: str          # normalized
    timestamp: str
    signature: str

    def to_signing_bytes(self) -> bytes:
        return ownership_message(self.handle, self.timestamp)

    def verify(self, pub_raw: bytes) -> bool:
        return verify_signature(pub_raw, self.signature, self.to_signing_bytes())

    def encode(self) -> str:
        return f"{self.timestamp}|{self.signature}"

    @classmethod
    def create(cls, handle: str, priv_raw: bytes, now: Optional[datetime] = None) -> "OwnershipProof":
        handle = normalize_handle(handle)
        ts = iso(now or utc_now())
        sig = b64e(ed25519_sign(priv_raw, ownership_message(handle, ts)))
        return cls(handle=handle, timestamp=ts, signature=sig)


@dataclass(frozen=True)
class RotationProof(_SignedPayload):
    handle: str
    timestamp: Timestamp
    nonce: str
    old_key: str
    new_key: str
    signature: Optional[str] = None
    operation: str = OP_ROTATE

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def create(cls, handle: str, old_key: str, new_key: str, now: Optional[datetime] = None) -> "RotationProof":
        return cls(handle=handle, timestamp=iso(now or utc_now()), nonce=generate_nonce(),
                   old_key=old_key, new_key=new_key)


@dataclass(frozen=True)
class RevocationProof(_SignedPayload):
    handle: str
    timestamp: Timestamp
    nonce: str
    reason: str = "voluntary"
    signature: Optional[str] = None
    operation: str = OP_REVOKE

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def create(cls, handle: str, reason: str = "voluntary", now: Optional[datetime] = None) -> "RevocationProof":
        return cls(handle=handle, timestamp=iso(now or utc_now()), nonce=generate_nonce(), reason=reason)


@dataclass(frozen=True)
class SignedMessage(_SignedPayload):
    sender: str
    recipient: str
    body: str
    timestamp: Optional[Timestamp] = None
    nonce: Optional[str] = None
    signature: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "from": self.sender,
            "to": self.recipient,
            "body": self.body,
            "timestamp": self.timestamp,
            "nonce": self.nonce,
            "signature": self.signature,
        }

    @property
    def is_signed(self) -> bool:
        return bool(self.signature)

    @classmethod
    def create(cls, sender: str, recipient: str, body: str, now: Optional[datetime] = None) -> "SignedMessage":
        return cls(sender=sender, recipient=recipient, body=body,
                   timestamp=iso(now or utc_now()), nonce=generate_nonce())


Proof = Union[RotationProof, RevocationProof]


# ------------------------------------------------------------------
# Parsing
# ------------------------------------------------------------------
def _require(data: Dict[str, Any], fields) -> None:
    for name in fields:
        value = data.get(name)
        if value is None or value == "":
            raise ProofFormatError(f"Missing required field: {name}", code="missing_field",
                                   details={"field": name})


def _require_str(data: Dict[str, Any], fields) -> None:
    for name in fields:
        if not isinstance(data[name], str):
            raise ProofFormatError(f"Field {name} must be a string", code="invalid_field",
                                   details={"field": name})


def _check_timestamp_type(value: Any) -> None:
    if isinstance(value, bool) or not isinstance(value, (str, int, float)):
        raise ProofFormatError("Timestamp must be a string or number", code="invalid_timestamp")


def _check_key(data: Dict[str, Any], name: str) -> None:
    try:
        parse_key(data[name])
    except KeyFormatError as e:
        raise ProofFormatError(f"{name} is not a valid AIRC key: {e}", code="invalid_key_format",
                               details={"field": name})


def _check_common(data: Any, operation: str, path_handle: Optional[str]) -> Dict[str, Any]:
    if not isinstance(data, dict):
        raise ProofFormatError("Missing proof object", code="invalid_request_body")
    _require(data, ("operation",))
    if data["operation"] != operation:
        raise ProofFormatError(f"Expected operation '{operation}', got '{data['operation']}'",
                               code="invalid_operation")
    _require(data, ("handle", "timestamp", "nonce"))
    _require_str(data, ("handle", "nonce"))
    _check_timestamp_type(data["timestamp"])
    if path_handle is not None:
        try:
            same = normalize_handle(data["handle"]) == normalize_handle(path_handle)
        except ValidationError:
            same = False
        if not same:
            raise ProofFormatError(
                f"Proof handle '{data['handle']}' does not match '{path_handle}'",
                code="handle_mismatch",
            )
    if not is_valid_nonce(data["nonce"]):
        raise ProofFormatError("Nonce must be 32 hex characters", code="invalid_nonce")
    return data


def parse_rotation_proof(data: Any, path_handle: Optional[str] = None) -> RotationProof:
    data = _check_common(data, OP_ROTATE, path_handle)
    _require(data, ("old_key", "new_key", "signature"))
    _require_str(data, ("old_key", "new_key", "signature"))
    _check_key(data, "old_key")
    _check_key(data, "new_key")
    if data["old_key"] == data["new_key"]:
        raise ProofFormatError("new_key must differ from old_key", code="key_unchanged")
    return RotationProof(
        handle=data["handle"], timestamp=data["timestamp"], nonce=data["nonce"],
        old_key=data["old_key"], new_key=data["new_key"], signature=data["signature"],
    )


def parse_revocation_proof(data: Any, path_handle: Optional[str] = None) -> RevocationProof:
    data = _check_common(data, OP_REVOKE, path_handle)
    _require(data, ("reason", "signature"))
    _require_str(data, ("reason", "signature"))
    if data["reason"] not in REVOCATION_REASONS:
        raise ProofFormatError(f"Unknown revocation reason: {data['reason']}", code="invalid_reason",
                               details={"allowed": list(REVOCATION_REASONS)})
    return RevocationProof(
        handle=data["handle"], timestamp=data["timestamp"], nonce=data["nonce"],
        reason=data["reason"], signature=data["signature"],
    )


def parse_proof(data: Any, path_handle: Optional[str] = None) -> Proof:
    """Dispatch on the operation tag."""
    operation = data.get("operation") if isinstance(data, dict) else None
    if operation == OP_ROTATE:
        return parse_rotation_proof(data, path_handle)
    if operation == OP_REVOKE:
        return parse_revocation_proof(data, path_handle)
    raise ProofFormatError(f"Unknown operation: {operation!r}", code="invalid_operation")


def parse_ownership_proof(handle: str, raw: Any) -> OwnershipProof:
    if not isinstance(raw, str) or "|" not in raw:
        raise ProofFormatError("Invalid proof format. Expected: timestamp|signature")
    timestamp, _, signature = raw.partition("|")
    if not timestamp or not signature:
        raise ProofFormatError("Invalid proof format. Expected: timestamp|signature")
    return OwnershipProof(handle=normalize_handle(handle), timestamp=timestamp, signature=signature)


def parse_signed_message(data: Any) -> SignedMessage:
    if not isinstance(data, dict):
        raise ProofFormatError("Message body must be an object", code="invalid_request_body")
    _require(data, ("from", "to", "body"))
    _require_str(data, ("from", "to", "body"))
    signature = data.get("signature") or None
    if signature is not None and not isinstance(signature, str):
        raise ProofFormatError("Field signature must be a string", code="invalid_field",
                               details={"field": "signature"})
    nonce = data.get("nonce")
    if nonce is not None and not isinstance(nonce, str):
        raise ProofFormatError("Field nonce must be a string", code="invalid_field", details={"field": "nonce"})
    timestamp = data.get("timestamp")
    if timestamp is not None:
        _check_timestamp_type(timestamp)
    return SignedMessage(
        sender=data["from"], recipient=data["to"], body=data["body"],
        timestamp=timestamp, nonce=nonce, signature=signature,
    )
