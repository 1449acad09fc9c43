"""
airc_core.registry
------------------
Read side of the identity store, plus operator status changes.

Presence, inbox, board and reputation services consume the identity layer
only through `resolve_key` and `is_active`.
"""

from __future__ import annotations
from datetime import datetime
from typing import Callable, Optional

from .audit import AuditLog, STATUS_CHANGE
from .constants import STATUS_ACTIVE, STATUS_SUSPENDED
from .errors import ConflictError, NotFoundError, ValidationError
from .handles import normalize_handle
from .logger import get_logger
from .quarantine import QuarantineManager
from .storage import CasResult, IdentityRecord, StorageProvider
from .utils import iso, utc_now

log = get_logger("AIRC.Registry")


class KeyRegistry:
    def __init__(
        self,
        store: StorageProvider,
        quarantine: QuarantineManager,
        audit: AuditLog,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.store = store
        self.quarantine = quarantine
        self.audit = audit
        self.clock = clock

    def get(self, handle: str) -> Optional[IdentityRecord]:
        try:
            return self.store.get_identity(normalize_handle(handle))
        except ValidationError:
            return None

    def resolve_key(self, handle: str) -> Optional[str]:
        rec = self.get(handle)
        return rec.public_key if rec else None

    def is_active(self, handle: str) -> bool:
        rec = self.get(handle)
        if rec is None or rec.status != STATUS_ACTIVE:
            return False
        return not self.quarantine.is_quarantined(rec.handle, self.clock())

    def _set_status(self, handle: str, status: str, actor: Optional[str]) -> IdentityRecord:
        handle = normalize_handle(handle)
        now = self.clock()
        if self.store.get_identity(handle) is None:
            raise NotFoundError(f"No identity found for handle: {handle}")
        result = self.store.set_status(handle, status, iso(now))
        self.audit.record(STATUS_CHANGE, handle, result is CasResult.UPDATED,
                          {"status": status, "actor": actor}, now=now)
        if result is CasResult.STALE:
            raise ConflictError("Identity is revoked and can no longer change status",
                                code="identity_revoked")
        log.info(f"[REGISTRY] handle={handle} status={status} actor={actor}")
        return self.store.get_identity(handle)

    def suspend(self, handle: str, actor: Optional[str] = None) -> IdentityRecord:
        return self._set_status(handle, STATUS_SUSPENDED, actor)

    def reinstate(self, handle: str, actor: Optional[str] = None) -> IdentityRecord:
        return self._set_status(handle, STATUS_ACTIVE, actor)
