"""
airc_core.audit
---------------
Append-only record of identity operation attempts.

Writes are best-effort with respect to the response: a failed audit write is
logged at ERROR with the full entry (so it still reaches the log pipeline)
and never blocks or rolls back the operation being audited. Callers put
key fingerprints, never keys, into `details`.
"""

from __future__ import annotations
import json
from datetime import datetime
from typing import Any, Dict, List, Optional

from .config import AIRCConfig
from .logger import get_logger
from .storage import AuditEntry, StorageProvider
from .utils import hash_origin, iso, utc_now

log = get_logger("AIRC.Audit")

KEY_ROTATION = "key_rotation"
IDENTITY_REVOKED = "identity_revoked"
IDENTITY_CREATED = "identity_created"
KEY_REGISTRATION = "key_registration"
RATE_LIMITED = "rate_limited"
STATUS_CHANGE = "status_change"


class AuditLog:
    def __init__(self, store: StorageProvider, config: AIRCConfig):
        self.store = store
        self.config = config

    def record(
        self,
        event_type: str,
        handle: str,
        success: bool,
        details: Optional[Dict[str, Any]] = None,
        origin: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> bool:
        entry = AuditEntry(
            event_type=event_type,
            handle=handle,
            success=success,
            details=details or {},
            origin_hash=hash_origin(origin, self.config.origin_salt),
            created_at=iso(now or utc_now()),
        )
        try:
            self.store.append_audit(entry)
            return True
        except Exception:
            log.exception("[AUDIT] write failed; entry=" + json.dumps({
                "event_type": entry.event_type,
                "handle": entry.handle,
                "success": entry.success,
                "details": entry.details,
                "origin_hash": entry.origin_hash,
                "created_at": entry.created_at,
            }, sort_keys=True, default=str))
            return False

    def history(self, handle: Optional[str] = None, limit: int = 100) -> List[AuditEntry]:
        return self.store.list_audit(handle, limit)
