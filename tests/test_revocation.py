from datetime import timedelta

import pytest

from airc_core.constants import RATE_LIMITS
from airc_core.crypto import compute_pubkey_fingerprint, ed25519_generate, format_key
from airc_core.errors import (
    AuthenticationError, ForbiddenError, RateLimitedError, ReplayError, StorageUnavailableError, ValidationError,
)
from airc_core.proofs import OwnershipProof, RevocationProof
from airc_core.service import IdentityService
from airc_core.storage import InMemoryStorage
from airc_core.utils import iso

from conftest import NOW


def _revoke(ident, clock, reason="voluntary", signer=None):
    return RevocationProof.create(ident.handle, reason, clock()).sign(signer or ident.recovery_priv).to_dict()


def test_revocation_quarantines_handle(service, make_identity, clock):
    alice = make_identity("alice")
    result = service.revoke_identity("alice", _revoke(alice, clock, "key_compromise"))

    assert result.revoked_at == iso(NOW)
    assert result.quarantine_expires_at == iso(NOW + timedelta(days=90))
    assert result.reason == "key_compromise"

    ident = service.store.get_identity("alice")
    assert ident.status == "revoked"
    assert ident.revoked_at == iso(NOW)
    q = service.store.get_quarantine("alice")
    assert q.previous_key_fpr == compute_pubkey_fingerprint(alice.public_key)
    assert not service.registry.is_active("alice")

    entry = service.audit.history("alice")[0]
    assert entry.event_type == "identity_revoked" and entry.success


def test_revocation_invalidates_sessions(service, make_identity, clock):
    alice = make_identity("alice")
    token, _ = service.sessions.issue("alice", clock())
    result = service.revoke_identity("alice", _revoke(alice, clock))
    assert result.sessions_invalidated == 1
    assert service.sessions.verify(token, "alice", clock()).error == "identity_inactive"


def test_already_revoked_checked_before_rate_limit(service, make_identity, clock):
    alice = make_identity("alice")
    service.revoke_identity("alice", _revoke(alice, clock))
    with pytest.raises(ForbiddenError) as exc:
        service.revoke_identity("alice", _revoke(alice, clock))
    assert exc.value.code == "identity_revoked"
    assert service.store.counters["airc:revocation:alice"].count == 1


def test_revocation_requires_recovery_key(service, make_identity, clock):
    alice = make_identity("alice")
    with pytest.raises(AuthenticationError) as exc:
        service.revoke_identity("alice", _revoke(alice, clock, signer=alice.signing_priv))
    assert exc.value.code == "invalid_proof"
    assert service.store.get_identity("alice").status == "active"


def test_revocation_without_recovery_key(service, make_identity, clock):
    bob = make_identity("bob", with_recovery=False)
    with pytest.raises(ValidationError) as exc:
        service.revoke_identity("bob", _revoke(bob, clock, signer=ed25519_generate()[0]))
    assert exc.value.code == "no_recovery_key"


def test_suspended_identity_may_be_revoked(service, make_identity, clock):
    alice = make_identity("alice")
    service.registry.suspend("alice")
    service.revoke_identity("alice", _revoke(alice, clock))
    assert service.store.get_identity("alice").status == "revoked"


def test_revocation_replay(make_config, store, clock, make_identity):
    svc = IdentityService(store, make_config(rate_limits=dict(RATE_LIMITS, revocation=(5, 86400))), clock)
    alice = make_identity("alice")
    proof = _revoke(alice, clock)

    svc.revoke_identity("alice", proof)
    # un-revoke behind the service's back to reach the nonce check
    store.identities["alice"].status = "active"
    with pytest.raises(ReplayError):
        svc.revoke_identity("alice", proof)


def test_revocation_rate_limited(service, make_identity, clock):
    alice = make_identity("alice")
    service.revoke_identity("alice", _revoke(alice, clock))
    service.store.identities["alice"].status = "active"
    with pytest.raises(RateLimitedError) as exc:
        service.revoke_identity("alice", _revoke(alice, clock))
    assert exc.value.retry_after == 86400


def test_revocation_nonce_outage_fails_closed(store, config, clock, make_identity):
    class DownStore(InMemoryStorage):
        def claim_nonce(self, rec, now):
            raise StorageUnavailableError("replay store down")

    alice = make_identity("alice")
    svc = IdentityService(store, config, clock, nonce_store=DownStore())
    with pytest.raises(StorageUnavailableError) as exc:
        svc.revoke_identity("alice", _revoke(alice, clock))
    assert exc.value.code == "replay_protection_unavailable"
    assert store.get_identity("alice").status == "active"


def test_revoked_identity_cannot_register_key(service, make_identity, clock):
    alice = make_identity("alice")
    service.revoke_identity("alice", _revoke(alice, clock))
    proof = OwnershipProof.create("alice", alice.signing_priv, clock())
    with pytest.raises(ForbiddenError) as exc:
        service.register_key("alice", alice.public_key, proof.encode())
    assert exc.value.code == "identity_revoked"
    assert "airc:key_registration:alice" not in service.store.counters


def test_quarantine_blocks_recreation_until_expiry(service, make_identity, clock):
    alice = make_identity("alice")
    service.revoke_identity("alice", _revoke(alice, clock))

    with pytest.raises(ForbiddenError) as exc:
        service.create_identity("alice", origin="8.8.8.8")
    assert exc.value.code == "handle_quarantined"
    assert exc.value.details["quarantine_expires_at"] == iso(NOW + timedelta(days=90))

    clock.advance(days=91)
    new_pub = format_key(ed25519_generate()[1])
    created = service.create_identity("alice", new_pub, origin="8.8.8.8")
    assert created.reclaimed
    ident = service.store.get_identity("alice")
    assert ident.status == "active"
    assert ident.public_key == new_pub
    assert service.store.get_quarantine("alice") is None
