import sqlite3
import threading

import pytest

from airc_core.errors import StorageUnavailableError
from airc_core.storage import (
    AuditEntry, CasResult, ClaimResult, IdentityRecord, InMemoryStorage, KeyEvent, NonceRecord,
    OutboxEntry, QuarantineRecord, SQLiteStorage, SessionRecord, load_storage_provider,
)

T0 = "2026-03-01T12:00:00.000000Z"
T1 = "2026-03-01T12:30:00.000000Z"
T2 = "2026-03-01T13:00:00.000000Z"


def _identity(handle="alice", key="ed25519:K1", recovery="ed25519:R1"):
    return IdentityRecord(handle=handle, public_key=key, recovery_key=recovery, created_at=T0, updated_at=T0)


def test_create_and_get(any_store):
    assert any_store.create_identity(_identity())
    assert not any_store.create_identity(_identity())
    got = any_store.get_identity("alice")
    assert got.public_key == "ed25519:K1"
    assert got.status == "active"
    assert any_store.get_identity("nobody") is None


def test_compare_and_swap(any_store):
    any_store.create_identity(_identity())
    assert any_store.compare_and_swap_key("alice", "ed25519:K1", "ed25519:K2", T1) is CasResult.UPDATED
    assert any_store.compare_and_swap_key("alice", "ed25519:K1", "ed25519:K3", T1) is CasResult.STALE
    got = any_store.get_identity("alice")
    assert got.public_key == "ed25519:K2"
    assert got.key_rotated_at == T1
    # rotation leaves everything else alone
    assert got.recovery_key == "ed25519:R1"
    assert got.created_at == T0


def test_set_public_key_is_conditional(any_store):
    any_store.create_identity(_identity(handle="bob", key=None))
    assert any_store.set_public_key("bob", None, "ed25519:K1", T1) is CasResult.UPDATED
    # a second first-registration sees the key the first one wrote
    assert any_store.set_public_key("bob", None, "ed25519:K2", T1) is CasResult.STALE
    assert any_store.get_identity("bob").public_key == "ed25519:K1"

    any_store.create_identity(_identity())
    entry = OutboxEntry("invalidate_sessions", "alice", {"key_fpr": "f1"}, T1)
    assert any_store.set_public_key("alice", "ed25519:OLD", "ed25519:K3", T1, [entry]) is CasResult.STALE
    assert any_store.pending_outbox() == []

    any_store.revoke_identity("alice", T1, QuarantineRecord("alice", T1, T2))
    assert any_store.set_public_key("alice", "ed25519:K1", "ed25519:K3", T1) is CasResult.STALE
    assert any_store.get_identity("alice").public_key == "ed25519:K1"
    assert any_store.set_public_key("nobody", None, "ed25519:K3", T1) is CasResult.STALE


def test_cas_with_outbox_is_atomic(any_store):
    any_store.create_identity(_identity())
    entry = OutboxEntry(kind="invalidate_sessions", handle="alice", payload={"key_fpr": "f1"}, created_at=T1)
    assert any_store.compare_and_swap_key("alice", "ed25519:WRONG", "ed25519:K2", T1, [entry]) is CasResult.STALE
    assert any_store.pending_outbox() == []

    any_store.compare_and_swap_key("alice", "ed25519:K1", "ed25519:K2", T1, [entry])
    pending = any_store.pending_outbox()
    assert [(e.kind, e.payload) for e in pending] == [("invalidate_sessions", {"key_fpr": "f1"})]


def test_concurrent_cas_single_winner(any_store):
    any_store.create_identity(_identity())
    results = []

    def attempt(i):
        results.append(any_store.compare_and_swap_key("alice", "ed25519:K1", f"ed25519:N{i}", T1))

    threads = [threading.Thread(target=attempt, args=(i,)) for i in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    assert results.count(CasResult.UPDATED) == 1
    assert results.count(CasResult.STALE) == 7


def test_revoke_writes_quarantine(any_store):
    any_store.create_identity(_identity())
    q = QuarantineRecord(handle="alice", revoked_at=T1, expires_at=T2, reason="voluntary")
    assert any_store.revoke_identity("alice", T1, q) is CasResult.UPDATED
    assert any_store.revoke_identity("alice", T1, q) is CasResult.STALE

    got = any_store.get_identity("alice")
    assert got.status == "revoked"
    assert got.revoked_at == T1
    assert any_store.get_quarantine("alice").expires_at == T2
    # revoked identities cannot rotate or change status
    assert any_store.compare_and_swap_key("alice", "ed25519:K1", "ed25519:K2", T1) is CasResult.STALE
    assert any_store.set_status("alice", "active", T1) is CasResult.STALE


def test_reclaim_only_after_quarantine(any_store):
    any_store.create_identity(_identity())
    any_store.revoke_identity("alice", T0, QuarantineRecord("alice", T0, T1, "voluntary"))

    early = IdentityRecord(handle="alice", public_key="ed25519:K9", created_at=T0, updated_at=T0)
    assert any_store.reclaim_identity(early) is CasResult.STALE

    later = IdentityRecord(handle="alice", public_key="ed25519:K9", created_at=T2, updated_at=T2)
    assert any_store.reclaim_identity(later) is CasResult.UPDATED
    got = any_store.get_identity("alice")
    assert got.status == "active"
    assert got.public_key == "ed25519:K9"
    assert got.revoked_at is None


def test_set_status(any_store):
    any_store.create_identity(_identity())
    assert any_store.set_status("alice", "suspended", T1) is CasResult.UPDATED
    assert any_store.get_identity("alice").status == "suspended"
    assert any_store.set_status("nobody", "suspended", T1) is CasResult.STALE


def test_nonce_claim_once(any_store):
    rec = NonceRecord(nonce="ab" * 16, handle="alice", operation="rotation", expires_at=T1)
    assert any_store.claim_nonce(rec, T0) is ClaimResult.CLAIMED
    assert any_store.claim_nonce(rec, T0) is ClaimResult.REPLAYED
    # expired nonces may be claimed again
    fresh = NonceRecord(nonce="ab" * 16, handle="alice", operation="rotation", expires_at=T2)
    assert any_store.claim_nonce(fresh, T1) is ClaimResult.CLAIMED


def test_concurrent_nonce_claims_single_winner(any_store):
    results = []
    rec = NonceRecord(nonce="cd" * 16, handle="alice", operation="message", expires_at=T1)

    def claim():
        results.append(any_store.claim_nonce(rec, T0))

    threads = [threading.Thread(target=claim) for _ in range(10)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    assert results.count(ClaimResult.CLAIMED) == 1


def test_purge_expired_nonces(any_store):
    any_store.claim_nonce(NonceRecord("01" * 16, "alice", "message", T0), T0)
    any_store.claim_nonce(NonceRecord("02" * 16, "alice", "message", T2), T0)
    assert any_store.purge_expired_nonces(T1) == 1


def test_rate_counter_window(any_store):
    first = any_store.hit_rate_counter("airc:rotation:alice", 3600, T0)
    second = any_store.hit_rate_counter("airc:rotation:alice", 3600, T1)
    assert (first.count, second.count) == (1, 2)
    assert second.reset_at == first.reset_at == T2
    # window elapsed
    third = any_store.hit_rate_counter("airc:rotation:alice", 3600, T2)
    assert third.count == 1


def test_rate_counter_is_atomic(any_store):
    def hit():
        for _ in range(25):
            any_store.hit_rate_counter("airc:message:alice", 60, T0)

    threads = [threading.Thread(target=hit) for _ in range(4)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    assert any_store.hit_rate_counter("airc:message:alice", 60, T0).count == 101


def test_audit_append_and_list(any_store):
    any_store.append_audit(AuditEntry("key_rotation", "alice", True, {"nonce": "n1"}, "oh", T0))
    any_store.append_audit(AuditEntry("key_rotation", "bob", False, {"error": "invalid_proof"}, "oh", T1))
    latest = any_store.list_audit()
    assert [e.handle for e in latest] == ["bob", "alice"]
    alice = any_store.list_audit("alice")
    assert alice[0].details == {"nonce": "n1"}
    assert alice[0].success is True


def test_sqlite_audit_log_is_append_only(tmp_path):
    s = SQLiteStorage(str(tmp_path / "audit.db"))
    s.append_audit(AuditEntry("key_rotation", "alice", True, {}, None, T0))
    with pytest.raises(sqlite3.DatabaseError):
        with s.db:
            s.db.execute("UPDATE audit_log SET success=0")
    with pytest.raises(sqlite3.DatabaseError):
        with s.db:
            s.db.execute("DELETE FROM audit_log")
    assert len(s.list_audit()) == 1
    s.close()


def test_quarantine_delete_only_when_expired(any_store):
    any_store.create_identity(_identity())
    any_store.revoke_identity("alice", T0, QuarantineRecord("alice", T0, T1, "voluntary"))
    assert not any_store.delete_quarantine("alice", T0)
    assert any_store.delete_quarantine("alice", T2)
    assert any_store.get_quarantine("alice") is None


def test_key_events_capped(any_store):
    for i in range(5):
        any_store.append_key_event(KeyEvent("alice", "key_registered", f"fpr{i}", T0), cap=3)
    events = any_store.list_key_events("alice")
    assert [e.key_fpr for e in events] == ["fpr4", "fpr3", "fpr2"]


def test_sessions_and_outbox(any_store):
    any_store.put_session(SessionRecord("t1", "alice", "f1", T2, T0))
    any_store.put_session(SessionRecord("t2", "alice", "f2", T2, T0))
    assert any_store.get_session("t1").key_fpr == "f1"
    assert any_store.delete_sessions("alice", "f1") == 1
    assert any_store.get_session("t1") is None
    assert any_store.get_session("t2") is not None

    any_store.create_identity(_identity())
    any_store.set_public_key("alice", "ed25519:K1", "ed25519:K2", T1,
                             [OutboxEntry("invalidate_sessions", "alice", {"key_fpr": "f2"}, T1)])
    entry = any_store.pending_outbox()[0]
    any_store.fail_outbox(entry.id)
    assert any_store.pending_outbox()[0].attempts == 1
    any_store.complete_outbox(entry.id)
    assert any_store.pending_outbox() == []


def test_sqlite_persists_across_connections(tmp_path):
    path = str(tmp_path / "state.db")
    s = SQLiteStorage(path)
    s.create_identity(_identity())
    s.close()
    assert SQLiteStorage(path).get_identity("alice").public_key == "ed25519:K1"


def test_sqlite_failure_maps_to_unavailable(tmp_path):
    s = SQLiteStorage(str(tmp_path / "state.db"))
    s.close()
    with pytest.raises(StorageUnavailableError):
        s.get_identity("alice")


def test_load_storage_provider(tmp_path, monkeypatch):
    monkeypatch.setenv("AIRC_STORAGE_PROVIDER", "memory")
    assert isinstance(load_storage_provider(), InMemoryStorage)

    monkeypatch.setenv("AIRC_STORAGE_PROVIDER", "sqlite")
    monkeypatch.setenv("AIRC_DB_PATH", str(tmp_path / "nested" / "airc.db"))
    assert isinstance(load_storage_provider(), SQLiteStorage)
    assert (tmp_path / "nested" / "airc.db").exists()

    with pytest.raises(ValueError):
        load_storage_provider({"provider": "redis"})
