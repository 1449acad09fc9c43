"""Cooldown that keeps a revoked handle from being re-registered."""

from __future__ import annotations
from datetime import datetime, timedelta
from typing import Optional

from .config import AIRCConfig
from .logger import get_logger
from .storage import QuarantineRecord, StorageProvider
from .utils import iso, parse_iso, utc_now

log = get_logger("AIRC.Quarantine")


class QuarantineManager:
    def __init__(self, store: StorageProvider, config: AIRCConfig):
        self.store = store
        self.config = config

    def build(self, handle: str, revoked_at: datetime, reason: Optional[str],
              previous_key_fpr: Optional[str] = None) -> QuarantineRecord:
        expires = revoked_at + timedelta(days=self.config.quarantine_days)
        return QuarantineRecord(handle=handle, revoked_at=iso(revoked_at), expires_at=iso(expires),
                                reason=reason, previous_key_fpr=previous_key_fpr)

    def active(self, handle: str, now: Optional[datetime] = None) -> Optional[QuarantineRecord]:
        """Return the live quarantine for `handle`, sweeping it first if it has expired."""
        now = now or utc_now()
        rec = self.store.get_quarantine(handle)
        if rec is None:
            return None
        if parse_iso(rec.expires_at) <= now:
            if self.store.delete_quarantine(handle, iso(now)):
                log.info(f"[QUARANTINE] expired handle={handle}")
            return None
        return rec

    def is_quarantined(self, handle: str, now: Optional[datetime] = None) -> bool:
        return self.active(handle, now) is not None

    def sweep(self, now: Optional[datetime] = None) -> int:
        removed = self.store.purge_expired_quarantines(iso(now or utc_now()))
        if removed:
            log.info(f"[QUARANTINE] swept {removed} expired records")
        return removed
