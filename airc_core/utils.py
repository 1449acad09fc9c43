"""
airc_core.utils
---------------
Lightweight helpers for timestamps, base64, canonical JSON and hashing.
Everything that is signed or compared across processes goes through here so
the byte sequences stay deterministic.
"""

from __future__ import annotations
import base64, binascii, json, uuid, hashlib
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Union

_TS_FMT = "%Y-%m-%dT%H:%M:%S.%fZ"


def b64e(b: bytes) -> str:
    return base64.b64encode(b).decode("ascii")


def b64d(s: str) -> bytes:
    """Strict base64 decode; raises ValueError on anything malformed."""
    try:
        return base64.b64decode(s.encode("ascii"), validate=True)
    except (binascii.Error, UnicodeEncodeError) as e:
        raise ValueError(f"invalid base64: {e}") from e


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def iso(dt: datetime) -> str:
    # Fixed-width UTC form so stored values compare lexically
    return dt.astimezone(timezone.utc).strftime(_TS_FMT)


def parse_iso(s: str) -> datetime:
    return datetime.strptime(s, _TS_FMT).replace(tzinfo=timezone.utc)


def parse_timestamp(value: Union[str, int, float]) -> Optional[datetime]:
    """
    Accept an ISO-8601 string or a Unix timestamp in seconds or milliseconds.
    Returns None when the value cannot be interpreted.
    """
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        seconds = value / 1000.0 if value > 1e12 else float(value)
        try:
            return datetime.fromtimestamp(seconds, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    if isinstance(value, str) and value:
        text = value.strip()
        if text.endswith("Z") or text.endswith("z"):
            text = text[:-1] + "+00:00"
        try:
            dt = datetime.fromisoformat(text)
        except ValueError:
            return None
        if dt.tzinfo is None:
            dt = dt.replace(tzinfo=timezone.utc)
        try:
            return dt.astimezone(timezone.utc)
        except (OverflowError, ValueError):
            # offset pushes the instant outside datetime's range
            return None
    return None


def new_id() -> str:
    return uuid.uuid4().hex


def canonical_json(obj: Dict[str, Any]) -> bytes:
    # Deterministic, minimal JSON for signing
    return json.dumps(obj, separators=(",", ":"), sort_keys=True, ensure_ascii=False).encode("utf-8")


def sha256(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def hash_origin(origin: Optional[str], salt: str) -> str:
    """Salted, truncated digest of a client address. Raw addresses are never stored."""
    return sha256(((origin or "unknown") + salt).encode("utf-8"))[:16]
