from __future__ import annotations
from contextlib import contextmanager
from datetime import timedelta
from typing import List, Optional, Sequence
import json, sqlite3, os, threading

from airc_core.constants import STATUS_ACTIVE, STATUS_REVOKED
from airc_core.errors import StorageUnavailableError
from airc_core.storage.provider import StorageProvider
from airc_core.storage.models import (
    AuditEntry, CasResult, ClaimResult, IdentityRecord, KeyEvent, NonceRecord,
    OutboxEntry, QuarantineRecord, RateCounter, SessionRecord,
)
from airc_core.utils import iso, parse_iso

_IDENTITY_COLS = "handle,public_key,recovery_key,status,key_rotated_at,revoked_at,created_at,updated_at"


class SQLiteStorage(StorageProvider):
    """
    SQLite-backed provider.

    One connection shared across threads; every public method holds the
    connection lock for the whole transaction, so each call is atomic with
    respect to the others in this process, and SQLite's write lock covers
    other processes.
    """

    def __init__(self, path="db/airc_state.db"):
        # If no directory, default to current working directory
        dir_path = os.path.dirname(path) or "."
        os.makedirs(dir_path, exist_ok=True)
        self.db = sqlite3.connect(path, check_same_thread=False, timeout=10)
        self._lock = threading.RLock()
        self._init()

    @contextmanager
    def _tx(self):
        with self._lock:
            try:
                with self.db:
                    yield self.db
            except sqlite3.IntegrityError:
                raise
            except sqlite3.Error as e:
                raise StorageUnavailableError(f"sqlite error: {e}") from e

    def _init(self) -> None:
        with self._tx() as c:
            c.execute("""CREATE TABLE IF NOT EXISTS identities(
                handle TEXT PRIMARY KEY,
                public_key TEXT,
                recovery_key TEXT,
                status TEXT NOT NULL DEFAULT 'active'
                    CHECK (status IN ('active','suspended','revoked')),
                key_rotated_at TEXT,
                revoked_at TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )""")
            c.execute("""CREATE TABLE IF NOT EXISTS nonces(
                nonce TEXT PRIMARY KEY,
                handle TEXT NOT NULL,
                operation TEXT NOT NULL,
                expires_at TEXT NOT NULL,
                origin_hash TEXT
            )""")
            c.execute("CREATE INDEX IF NOT EXISTS idx_nonces_expires ON nonces(expires_at)")
            c.execute("""CREATE TABLE IF NOT EXISTS rate_limits(
                key TEXT PRIMARY KEY,
                count INTEGER NOT NULL,
                reset_at TEXT NOT NULL
            )""")
            c.execute("""CREATE TABLE IF NOT EXISTS audit_log(
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                event_type TEXT NOT NULL,
                handle TEXT NOT NULL,
                success INTEGER NOT NULL,
                details TEXT NOT NULL,
                origin_hash TEXT,
                created_at TEXT NOT NULL
            )""")
            c.execute("CREATE INDEX IF NOT EXISTS idx_audit_handle ON audit_log(handle)")
            c.execute("""CREATE TRIGGER IF NOT EXISTS audit_log_no_update BEFORE UPDATE ON audit_log
                BEGIN SELECT RAISE(ABORT, 'audit_log is append-only'); END""")
            c.execute("""CREATE TRIGGER IF NOT EXISTS audit_log_no_delete BEFORE DELETE ON audit_log
                BEGIN SELECT RAISE(ABORT, 'audit_log is append-only'); END""")
            c.execute("""CREATE TABLE IF NOT EXISTS quarantine(
                handle TEXT PRIMARY KEY,
                revoked_at TEXT NOT NULL,
                expires_at TEXT NOT NULL,
                reason TEXT,
                previous_key_fpr TEXT
            )""")
            c.execute("""CREATE TABLE IF NOT EXISTS key_events(
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                handle TEXT NOT NULL,
                action TEXT NOT NULL,
                key_fpr TEXT NOT NULL,
                created_at TEXT NOT NULL
            )""")
            c.execute("""CREATE TABLE IF NOT EXISTS sessions(
                token_id TEXT PRIMARY KEY,
                handle TEXT NOT NULL,
                key_fpr TEXT NOT NULL,
                expires_at TEXT NOT NULL,
                created_at TEXT NOT NULL
            )""")
            c.execute("CREATE INDEX IF NOT EXISTS idx_sessions_handle ON sessions(handle, key_fpr)")
            c.execute("""CREATE TABLE IF NOT EXISTS outbox(
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                kind TEXT NOT NULL,
                handle TEXT NOT NULL,
                payload TEXT NOT NULL,
                created_at TEXT NOT NULL,
                attempts INTEGER NOT NULL DEFAULT 0
            )""")

    @staticmethod
    def _enqueue(c, outbox: Sequence[OutboxEntry]) -> None:
        for e in outbox:
            c.execute(
                "INSERT INTO outbox(kind,handle,payload,created_at,attempts) VALUES(?,?,?,?,0)",
                (e.kind, e.handle, json.dumps(e.payload, separators=(",", ":"), sort_keys=True), e.created_at),
            )

    # --- identities ---

    def create_identity(self, rec: IdentityRecord) -> bool:
        try:
            with self._tx() as c:
                c.execute(
                    f"INSERT INTO identities({_IDENTITY_COLS}) VALUES(?,?,?,?,?,?,?,?)",
                    (rec.handle, rec.public_key, rec.recovery_key, rec.status, rec.key_rotated_at,
                     rec.revoked_at, rec.created_at, rec.updated_at),
                )
            return True
        except sqlite3.IntegrityError:
            return False

    def get_identity(self, handle: str) -> Optional[IdentityRecord]:
        with self._tx() as c:
            row = c.execute(f"SELECT {_IDENTITY_COLS} FROM identities WHERE handle=?", (handle,)).fetchone()
        return IdentityRecord(*row) if row else None

    def set_public_key(self, handle: str, expected_key: Optional[str], public_key: str, now: str,
                       outbox: Sequence[OutboxEntry] = ()) -> CasResult:
        # IS matches NULL for a first registration
        with self._tx() as c:
            cur = c.execute(
                "UPDATE identities SET public_key=?, updated_at=? WHERE handle=? AND public_key IS ? AND status=?",
                (public_key, now, handle, expected_key, STATUS_ACTIVE),
            )
            if cur.rowcount != 1:
                return CasResult.STALE
            self._enqueue(c, outbox)
        return CasResult.UPDATED

    def compare_and_swap_key(self, handle: str, old_key: str, new_key: str, now: str,
                             outbox: Sequence[OutboxEntry] = ()) -> CasResult:
        with self._tx() as c:
            cur = c.execute(
                "UPDATE identities SET public_key=?, key_rotated_at=?, updated_at=? "
                "WHERE handle=? AND public_key=? AND status=?",
                (new_key, now, now, handle, old_key, STATUS_ACTIVE),
            )
            if cur.rowcount != 1:
                return CasResult.STALE
            self._enqueue(c, outbox)
        return CasResult.UPDATED

    def revoke_identity(self, handle: str, now: str, quarantine: QuarantineRecord,
                        outbox: Sequence[OutboxEntry] = ()) -> CasResult:
        with self._tx() as c:
            cur = c.execute(
                "UPDATE identities SET status=?, revoked_at=?, updated_at=? WHERE handle=? AND status!=?",
                (STATUS_REVOKED, now, now, handle, STATUS_REVOKED),
            )
            if cur.rowcount != 1:
                return CasResult.STALE
            c.execute(
                "INSERT OR REPLACE INTO quarantine(handle,revoked_at,expires_at,reason,previous_key_fpr) "
                "VALUES(?,?,?,?,?)",
                (quarantine.handle, quarantine.revoked_at, quarantine.expires_at,
                 quarantine.reason, quarantine.previous_key_fpr),
            )
            self._enqueue(c, outbox)
        return CasResult.UPDATED

    def reclaim_identity(self, rec: IdentityRecord) -> CasResult:
        # Only a revoked record whose quarantine is over may be replaced
        with self._tx() as c:
            cur = c.execute(
                "UPDATE identities SET public_key=?, recovery_key=?, status=?, key_rotated_at=NULL, "
                "revoked_at=NULL, created_at=?, updated_at=? WHERE handle=? AND status=? "
                "AND NOT EXISTS (SELECT 1 FROM quarantine q WHERE q.handle=identities.handle AND q.expires_at>?)",
                (rec.public_key, rec.recovery_key, rec.status, rec.created_at, rec.updated_at,
                 rec.handle, STATUS_REVOKED, rec.created_at),
            )
        return CasResult.UPDATED if cur.rowcount == 1 else CasResult.STALE

    def set_status(self, handle: str, status: str, now: str) -> CasResult:
        with self._tx() as c:
            cur = c.execute(
                "UPDATE identities SET status=?, updated_at=? WHERE handle=? AND status!=?",
                (status, now, handle, STATUS_REVOKED),
            )
        return CasResult.UPDATED if cur.rowcount == 1 else CasResult.STALE

    # --- replay guard ---

    def claim_nonce(self, rec: NonceRecord, now: str) -> ClaimResult:
        try:
            with self._tx() as c:
                c.execute("DELETE FROM nonces WHERE nonce=? AND expires_at<=?", (rec.nonce, now))
                c.execute(
                    "INSERT INTO nonces(nonce,handle,operation,expires_at,origin_hash) VALUES(?,?,?,?,?)",
                    (rec.nonce, rec.handle, rec.operation, rec.expires_at, rec.origin_hash),
                )
            return ClaimResult.CLAIMED
        except sqlite3.IntegrityError:
            return ClaimResult.REPLAYED

    def purge_expired_nonces(self, now: str) -> int:
        with self._tx() as c:
            return c.execute("DELETE FROM nonces WHERE expires_at<=?", (now,)).rowcount

    # --- rate limiting ---

    def hit_rate_counter(self, key: str, window_seconds: int, now: str) -> RateCounter:
        reset_at = iso(parse_iso(now) + timedelta(seconds=window_seconds))
        with self._tx() as c:
            c.execute(
                "INSERT INTO rate_limits(key,count,reset_at) VALUES(?,1,?) "
                "ON CONFLICT(key) DO UPDATE SET "
                "count = CASE WHEN rate_limits.reset_at<=? THEN 1 ELSE rate_limits.count+1 END, "
                "reset_at = CASE WHEN rate_limits.reset_at<=? THEN excluded.reset_at ELSE rate_limits.reset_at END",
                (key, reset_at, now, now),
            )
            count, stored_reset = c.execute(
                "SELECT count, reset_at FROM rate_limits WHERE key=?", (key,)
            ).fetchone()
        return RateCounter(key=key, count=count, reset_at=stored_reset)

    # --- audit ---

    def append_audit(self, entry: AuditEntry) -> None:
        with self._tx() as c:
            c.execute(
                "INSERT INTO audit_log(event_type,handle,success,details,origin_hash,created_at) VALUES(?,?,?,?,?,?)",
                (entry.event_type, entry.handle, int(entry.success),
                 json.dumps(entry.details, separators=(",", ":"), sort_keys=True),
                 entry.origin_hash, entry.created_at),
            )

    def list_audit(self, handle: Optional[str] = None, limit: int = 100) -> List[AuditEntry]:
        sql = "SELECT id,event_type,handle,success,details,origin_hash,created_at FROM audit_log"
        params: tuple = ()
        if handle is not None:
            sql += " WHERE handle=?"
            params = (handle,)
        sql += " ORDER BY id DESC LIMIT ?"
        with self._tx() as c:
            rows = c.execute(sql, params + (limit,)).fetchall()
        return [
            AuditEntry(id=i, event_type=et, handle=h, success=bool(s), details=json.loads(d),
                       origin_hash=o, created_at=ts)
            for i, et, h, s, d, o, ts in rows
        ]

    # --- quarantine ---

    def get_quarantine(self, handle: str) -> Optional[QuarantineRecord]:
        with self._tx() as c:
            row = c.execute(
                "SELECT handle,revoked_at,expires_at,reason,previous_key_fpr FROM quarantine WHERE handle=?",
                (handle,),
            ).fetchone()
        return QuarantineRecord(*row) if row else None

    def delete_quarantine(self, handle: str, now: str) -> bool:
        with self._tx() as c:
            cur = c.execute("DELETE FROM quarantine WHERE handle=? AND expires_at<=?", (handle, now))
        return cur.rowcount == 1

    def purge_expired_quarantines(self, now: str) -> int:
        with self._tx() as c:
            return c.execute("DELETE FROM quarantine WHERE expires_at<=?", (now,)).rowcount

    # --- key events ---

    def append_key_event(self, event: KeyEvent, cap: int) -> None:
        with self._tx() as c:
            c.execute(
                "INSERT INTO key_events(handle,action,key_fpr,created_at) VALUES(?,?,?,?)",
                (event.handle, event.action, event.key_fpr, event.created_at),
            )
            c.execute(
                "DELETE FROM key_events WHERE handle=? AND id NOT IN "
                "(SELECT id FROM key_events WHERE handle=? ORDER BY id DESC LIMIT ?)",
                (event.handle, event.handle, cap),
            )

    def list_key_events(self, handle: str) -> List[KeyEvent]:
        with self._tx() as c:
            rows = c.execute(
                "SELECT handle,action,key_fpr,created_at FROM key_events WHERE handle=? ORDER BY id DESC",
                (handle,),
            ).fetchall()
        return [KeyEvent(*r) for r in rows]

    # --- sessions + outbox ---

    def put_session(self, rec: SessionRecord) -> None:
        with self._tx() as c:
            c.execute(
                "INSERT INTO sessions(token_id,handle,key_fpr,expires_at,created_at) VALUES(?,?,?,?,?)",
                (rec.token_id, rec.handle, rec.key_fpr, rec.expires_at, rec.created_at),
            )

    def get_session(self, token_id: str) -> Optional[SessionRecord]:
        with self._tx() as c:
            row = c.execute(
                "SELECT token_id,handle,key_fpr,expires_at,created_at FROM sessions WHERE token_id=?",
                (token_id,),
            ).fetchone()
        return SessionRecord(*row) if row else None

    def delete_sessions(self, handle: str, key_fpr: str) -> int:
        with self._tx() as c:
            return c.execute("DELETE FROM sessions WHERE handle=? AND key_fpr=?", (handle, key_fpr)).rowcount

    def pending_outbox(self, limit: int = 100) -> List[OutboxEntry]:
        with self._tx() as c:
            rows = c.execute(
                "SELECT id,kind,handle,payload,created_at,attempts FROM outbox ORDER BY id LIMIT ?", (limit,)
            ).fetchall()
        return [
            OutboxEntry(id=i, kind=k, handle=h, payload=json.loads(p), created_at=ts, attempts=a)
            for i, k, h, p, ts, a in rows
        ]

    def complete_outbox(self, entry_id: int) -> None:
        with self._tx() as c:
            c.execute("DELETE FROM outbox WHERE id=?", (entry_id,))

    def fail_outbox(self, entry_id: int) -> None:
        with self._tx() as c:
            c.execute("UPDATE outbox SET attempts=attempts+1 WHERE id=?", (entry_id,))

    def flush(self):
        with self._lock:
            self.db.commit()

    def close(self):
        with self._lock:
            self.db.close()
