# airc_core/storage/models.py
from __future__ import annotations
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional

from airc_core.constants import STATUS_ACTIVE


class CasResult(str, Enum):
    """Outcome of a compare-and-swap against stored identity state."""
    UPDATED = "updated"
    STALE = "stale"


class ClaimResult(str, Enum):
    CLAIMED = "claimed"
    REPLAYED = "replayed"


@dataclass
class IdentityRecord:
    """
    Storage-level representation of an AIRC identity.

    Storage-agnostic: any provider (SQLite, memory, Postgres) round-trips it.
    All timestamps are fixed-width ISO strings (see airc_core.utils.iso).
    """
    handle: str
    public_key: Optional[str] = None
    recovery_key: Optional[str] = None
    status: str = STATUS_ACTIVE   # active | suspended | revoked
    key_rotated_at: Optional[str] = None
    revoked_at: Optional[str] = None
    created_at: str = ""
    updated_at: str = ""


@dataclass
class NonceRecord:
    nonce: str
    handle: str
    operation: str   # rotation | revocation | message
    expires_at: str
    origin_hash: Optional[str] = None


@dataclass
class AuditEntry:
    event_type: str
    handle: str
    success: bool
    details: Dict[str, Any] = field(default_factory=dict)
    origin_hash: Optional[str] = None
    created_at: str = ""
    id: Optional[int] = None


@dataclass
class QuarantineRecord:
    handle: str
    revoked_at: str
    expires_at: str
    reason: Optional[str] = None
    previous_key_fpr: Optional[str] = None


@dataclass
class KeyEvent:
    handle: str
    action: str   # key_registered | key_changed
    key_fpr: str
    created_at: str


@dataclass
class SessionRecord:
    token_id: str
    handle: str
    key_fpr: str
    expires_at: str
    created_at: str = ""


@dataclass
class OutboxEntry:
    """A required side effect recorded in the same transaction as the mutation that caused it."""
    kind: str
    handle: str
    payload: Dict[str, Any] = field(default_factory=dict)
    created_at: str = ""
    attempts: int = 0
    id: Optional[int] = None


@dataclass
class RateCounter:
    key: str
    count: int
    reset_at: str
