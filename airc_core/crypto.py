"""
airc_core.crypto
----------------
Cryptographic primitives for AIRC identity operations:

- Ed25519 keypair generation, sign and verify
- AIRC key wire format ("ed25519:" + base64 of the 32 raw bytes)
- Canonical payload signing (sorted-key, whitespace-free JSON, signature excluded)
- Ownership-proof message construction
- Nonce generation and timestamp-window validation
- Constant-time comparisons for keys and MACs

No custom crypto: everything delegates to `cryptography`.
"""

from __future__ import annotations
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional, Tuple, Union
from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives.asymmetric import ed25519
import hashlib, hmac, re, secrets

from .constants import KEY_PREFIX, KEY_BYTES, NONCE_BYTES, NONCE_HEX_LEN, TIMESTAMP_WINDOW, TIMESTAMP_SKEW_WARNING
from .utils import b64e, b64d, canonical_json, parse_timestamp, utc_now

_NONCE_RE = re.compile(r"^[0-9a-fA-F]{%d}$" % NONCE_HEX_LEN)


class KeyFormatError(ValueError):
    pass


# --------- Ed25519 (sign/verify) ----------
def ed25519_generate() -> Tuple[bytes, bytes]:
    sk = ed25519.Ed25519PrivateKey.generate()
    pk = sk.public_key()
    return sk.private_bytes_raw(), pk.public_bytes_raw()


def ed25519_sign(priv_raw: bytes, data: bytes) -> bytes:
    sk = ed25519.Ed25519PrivateKey.from_private_bytes(priv_raw)
    return sk.sign(data)


def ed25519_verify(pub_raw: bytes, sig: bytes, data: bytes) -> bool:
    try:
        ed25519.Ed25519PublicKey.from_public_bytes(pub_raw).verify(sig, data)
        return True
    except (InvalidSignature, ValueError):
        return False


def public_from_private(priv_raw: bytes) -> bytes:
    return ed25519.Ed25519PrivateKey.from_private_bytes(priv_raw).public_key().public_bytes_raw()


# --------- AIRC key format ----------
def format_key(pub_raw: bytes) -> str:
    if len(pub_raw) != KEY_BYTES:
        raise KeyFormatError(f"Ed25519 public keys are {KEY_BYTES} bytes, got {len(pub_raw)}")
    return KEY_PREFIX + b64e(pub_raw)


def parse_key(key: Any) -> bytes:
    """Decode an AIRC key string to its raw 32 bytes, or raise KeyFormatError."""
    if not isinstance(key, str) or not key.startswith(KEY_PREFIX):
        raise KeyFormatError("Expected ed25519:base64...")
    try:
        raw = b64d(key[len(KEY_PREFIX):])
    except ValueError as e:
        raise KeyFormatError(str(e)) from e
    if len(raw) != KEY_BYTES:
        raise KeyFormatError(f"Ed25519 public keys are {KEY_BYTES} bytes, got {len(raw)}")
    return raw


def is_valid_key(key: Any) -> bool:
    try:
        parse_key(key)
        return True
    except KeyFormatError:
        return False


def keys_equal(a: bytes, b: bytes) -> bool:
    return hmac.compare_digest(a, b)


def constant_time_equals(a: Union[str, bytes], b: Union[str, bytes]) -> bool:
    if isinstance(a, str):
        a = a.encode("utf-8")
    if isinstance(b, str):
        b = b.encode("utf-8")
    return hmac.compare_digest(a, b)


def compute_pubkey_fingerprint(key: str) -> str:
    """
    Stable fingerprint for an AIRC public key.

    Audit entries, sessions and quarantine records carry this instead of the
    key itself. SHA-256 over the raw bytes, truncated to 32 hex chars.
    """
    raw = parse_key(key)
    return hashlib.sha256(raw).hexdigest()[:32]


# --------- Nonces ----------
def generate_nonce(nbytes: int = NONCE_BYTES) -> str:
    return secrets.token_hex(nbytes)


def is_valid_nonce(nonce: Any) -> bool:
    return isinstance(nonce, str) and bool(_NONCE_RE.match(nonce))


# --------- Canonical payload signing ----------
def unsigned_view(payload: Dict[str, Any]) -> Dict[str, Any]:
    return {k: v for k, v in payload.items() if k != "signature" and v is not None}


def sign_payload(priv_raw: bytes, payload: Dict[str, Any]) -> str:
    return b64e(ed25519_sign(priv_raw, canonical_json(unsigned_view(payload))))


def verify_signature(pub_raw: bytes, signature_b64: Any, data: bytes) -> bool:
    if not isinstance(signature_b64, str) or not signature_b64:
        return False
    try:
        sig = b64d(signature_b64)
    except ValueError:
        return False
    return ed25519_verify(pub_raw, sig, data)


def verify_payload(pub_raw: bytes, payload: Dict[str, Any]) -> bool:
    return verify_signature(pub_raw, payload.get("signature"), canonical_json(unsigned_view(payload)))


# --------- Ownership proofs ----------
def ownership_message(handle: str, timestamp: str) -> bytes:
    return f"{handle}:{timestamp}".encode("utf-8")


# --------- Timestamps ----------
@dataclass(frozen=True)
class TimestampCheck:
    valid: bool
    error: Optional[str] = None
    message: Optional[str] = None
    skew: Optional[int] = None
    warning: Optional[str] = None


def validate_timestamp(
    timestamp: Any,
    window: int = TIMESTAMP_WINDOW,
    now: Optional[datetime] = None,
    skew_warning: int = TIMESTAMP_SKEW_WARNING,
) -> TimestampCheck:
    ts = parse_timestamp(timestamp)
    if ts is None:
        return TimestampCheck(False, "invalid_timestamp", "Could not parse timestamp")

    now = now or utc_now()
    delta = (now - ts).total_seconds()
    skew = int(abs(delta))

    if abs(delta) > window:
        direction = "future" if delta < 0 else "past"
        return TimestampCheck(
            False, "timestamp_expired",
            f"Timestamp is {skew}s in the {direction} (max {window}s)", skew,
        )
    if skew > skew_warning:
        return TimestampCheck(True, skew=skew, warning=f"Clock skew detected: {skew}s")
    return TimestampCheck(True, skew=skew)
