from dataclasses import replace
from datetime import timedelta
from typing import Dict, List, Optional, Sequence
import copy, itertools, threading

from airc_core.constants import STATUS_ACTIVE, STATUS_REVOKED
from airc_core.storage.models import (
    AuditEntry, CasResult, ClaimResult, IdentityRecord, KeyEvent, NonceRecord,
    OutboxEntry, QuarantineRecord, RateCounter, SessionRecord,
)
from airc_core.storage.provider import StorageProvider
from airc_core.utils import iso, parse_iso


class InMemoryStorage(StorageProvider):
    """Process-local provider for tests and single-node development. One lock makes every call atomic."""

    def __init__(self):
        self._lock = threading.RLock()
        self._ids = itertools.count(1)
        self.identities: Dict[str, IdentityRecord] = {}
        self.nonces: Dict[str, NonceRecord] = {}
        self.counters: Dict[str, RateCounter] = {}
        self.audit: List[AuditEntry] = []
        self.quarantine: Dict[str, QuarantineRecord] = {}
        self.key_events: Dict[str, List[KeyEvent]] = {}
        self.sessions: Dict[str, SessionRecord] = {}
        self.outbox: List[OutboxEntry] = []

    def _enqueue(self, outbox: Sequence[OutboxEntry]) -> None:
        for e in outbox:
            self.outbox.append(replace(e, id=next(self._ids), attempts=0))

    # identities
    def create_identity(self, rec: IdentityRecord) -> bool:
        with self._lock:
            if rec.handle in self.identities:
                return False
            self.identities[rec.handle] = copy.copy(rec)
            return True

    def get_identity(self, handle: str) -> Optional[IdentityRecord]:
        with self._lock:
            rec = self.identities.get(handle)
            return copy.copy(rec) if rec else None

    def set_public_key(self, handle, expected_key, public_key, now, outbox=()) -> CasResult:
        with self._lock:
            rec = self.identities.get(handle)
            if not rec or rec.public_key != expected_key or rec.status != STATUS_ACTIVE:
                return CasResult.STALE
            rec.public_key = public_key
            rec.updated_at = now
            self._enqueue(outbox)
            return CasResult.UPDATED

    def compare_and_swap_key(self, handle, old_key, new_key, now, outbox=()) -> CasResult:
        with self._lock:
            rec = self.identities.get(handle)
            if not rec or rec.public_key != old_key or rec.status != STATUS_ACTIVE:
                return CasResult.STALE
            rec.public_key = new_key
            rec.key_rotated_at = now
            rec.updated_at = now
            self._enqueue(outbox)
            return CasResult.UPDATED

    def revoke_identity(self, handle, now, quarantine, outbox=()) -> CasResult:
        with self._lock:
            rec = self.identities.get(handle)
            if not rec or rec.status == STATUS_REVOKED:
                return CasResult.STALE
            rec.status = STATUS_REVOKED
            rec.revoked_at = now
            rec.updated_at = now
            self.quarantine[quarantine.handle] = copy.copy(quarantine)
            self._enqueue(outbox)
            return CasResult.UPDATED

    def reclaim_identity(self, rec: IdentityRecord) -> CasResult:
        with self._lock:
            existing = self.identities.get(rec.handle)
            q = self.quarantine.get(rec.handle)
            if not existing or existing.status != STATUS_REVOKED or (q and q.expires_at > rec.created_at):
                return CasResult.STALE
            self.identities[rec.handle] = copy.copy(rec)
            return CasResult.UPDATED

    def set_status(self, handle, status, now) -> CasResult:
        with self._lock:
            rec = self.identities.get(handle)
            if not rec or rec.status == STATUS_REVOKED:
                return CasResult.STALE
            rec.status = status
            rec.updated_at = now
            return CasResult.UPDATED

    # replay guard
    def claim_nonce(self, rec: NonceRecord, now: str) -> ClaimResult:
        with self._lock:
            existing = self.nonces.get(rec.nonce)
            if existing and existing.expires_at > now:
                return ClaimResult.REPLAYED
            self.nonces[rec.nonce] = copy.copy(rec)
            return ClaimResult.CLAIMED

    def purge_expired_nonces(self, now: str) -> int:
        with self._lock:
            expired = [n for n, r in self.nonces.items() if r.expires_at <= now]
            for n in expired:
                del self.nonces[n]
            return len(expired)

    # rate limiting
    def hit_rate_counter(self, key, window_seconds, now) -> RateCounter:
        with self._lock:
            counter = self.counters.get(key)
            if counter is None or counter.reset_at <= now:
                reset_at = iso(parse_iso(now) + timedelta(seconds=window_seconds))
                counter = RateCounter(key=key, count=1, reset_at=reset_at)
            else:
                counter = replace(counter, count=counter.count + 1)
            self.counters[key] = counter
            return copy.copy(counter)

    # audit
    def append_audit(self, entry: AuditEntry) -> None:
        with self._lock:
            self.audit.append(replace(entry, id=next(self._ids), details=copy.deepcopy(entry.details)))

    def list_audit(self, handle=None, limit=100) -> List[AuditEntry]:
        with self._lock:
            rows = [e for e in reversed(self.audit) if handle is None or e.handle == handle]
            return [copy.deepcopy(e) for e in rows[:limit]]

    # quarantine
    def get_quarantine(self, handle):
        with self._lock:
            rec = self.quarantine.get(handle)
            return copy.copy(rec) if rec else None

    def delete_quarantine(self, handle, now) -> bool:
        with self._lock:
            rec = self.quarantine.get(handle)
            if rec and rec.expires_at <= now:
                del self.quarantine[handle]
                return True
            return False

    def purge_expired_quarantines(self, now) -> int:
        with self._lock:
            expired = [h for h, r in self.quarantine.items() if r.expires_at <= now]
            for h in expired:
                del self.quarantine[h]
            return len(expired)

    # key events
    def append_key_event(self, event: KeyEvent, cap: int) -> None:
        with self._lock:
            events = self.key_events.setdefault(event.handle, [])
            events.insert(0, copy.copy(event))
            del events[cap:]

    def list_key_events(self, handle) -> List[KeyEvent]:
        with self._lock:
            return list(self.key_events.get(handle, []))

    # sessions + outbox
    def put_session(self, rec: SessionRecord) -> None:
        with self._lock:
            self.sessions[rec.token_id] = copy.copy(rec)

    def get_session(self, token_id):
        with self._lock:
            rec = self.sessions.get(token_id)
            return copy.copy(rec) if rec else None

    def delete_sessions(self, handle, key_fpr) -> int:
        with self._lock:
            doomed = [t for t, s in self.sessions.items() if s.handle == handle and s.key_fpr == key_fpr]
            for t in doomed:
                del self.sessions[t]
            return len(doomed)

    def pending_outbox(self, limit=100) -> List[OutboxEntry]:
        with self._lock:
            return [copy.deepcopy(e) for e in self.outbox[:limit]]

    def complete_outbox(self, entry_id) -> None:
        with self._lock:
            self.outbox = [e for e in self.outbox if e.id != entry_id]

    def fail_outbox(self, entry_id) -> None:
        with self._lock:
            for e in self.outbox:
                if e.id == entry_id:
                    e.attempts += 1

    def close(self):
        pass
