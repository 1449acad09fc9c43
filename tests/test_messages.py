import logging
from dataclasses import replace
from datetime import timedelta

import pytest

from airc_core.constants import RATE_LIMITS
from airc_core.crypto import ed25519_generate
from airc_core.errors import (
    AuthenticationError, ForbiddenError, RateLimitedError, ReplayError, StorageUnavailableError, ValidationError,
)
from airc_core.messages import MessageGate
from airc_core.policy import EnforcementPhase
from airc_core.proofs import SignedMessage
from airc_core.storage import InMemoryStorage

from conftest import CUTOVER


def _signed(ident, clock, to="bob", body="hi", signer=None, **fields):
    msg = SignedMessage.create(ident.handle, to, body, clock())
    if fields:
        msg = replace(msg, **fields)
    return msg.sign(signer or ident.signing_priv).to_dict()


UNSIGNED = {"from": "alice", "to": "bob", "body": "hello"}


@pytest.fixture
def gate(store, config, clock):
    return MessageGate(store, config, clock)


def test_unsigned_accepted_during_grace_period(store, make_config, clock, make_identity):
    make_identity("alice")
    clock.now = CUTOVER - timedelta(days=1)
    decision = MessageGate(store, make_config(), clock).check(UNSIGNED)

    assert not decision.signed
    assert decision.phase is EnforcementPhase.PERMISSIVE
    assert "Signing will be required" in decision.warning
    assert decision.to_dict()["warning"] == decision.warning
    assert decision.headers["X-AIRC-Strict-Mode"] == "optional"


def test_unsigned_rejected_after_cutover(gate, make_identity):
    make_identity("alice")
    with pytest.raises(AuthenticationError) as exc:
        gate.check(UNSIGNED)
    assert exc.value.code == "signature_required"
    assert exc.value.headers["X-AIRC-Strict-Mode"] == "enforced"
    assert exc.value.headers["X-AIRC-Grace-Period-Ends"].startswith("2026-02-01")


def test_strict_override_during_grace_period(store, make_config, clock, make_identity):
    make_identity("alice")
    clock.now = CUTOVER - timedelta(days=1)
    gate = MessageGate(store, make_config(strict=True), clock)
    with pytest.raises(AuthenticationError) as exc:
        gate.check(UNSIGNED)
    assert exc.value.code == "signature_required"


def test_permissive_override_after_cutover(store, make_config, clock, make_identity):
    make_identity("alice")
    decision = MessageGate(store, make_config(strict=False), clock).check(UNSIGNED)
    assert decision.warning


def test_signed_message_accepted(gate, make_identity, clock):
    alice = make_identity("alice")
    decision = gate.check(_signed(alice, clock), origin="1.2.3.4")
    assert decision.signed
    assert decision.sender == "alice" and decision.recipient == "bob"
    assert decision.warning is None and decision.replay_warning is None
    assert decision.to_dict()["strict_mode"] is True


def test_signed_message_verified_even_when_permissive(store, make_config, clock, make_identity):
    alice = make_identity("alice")
    gate = MessageGate(store, make_config(strict=False), clock)
    with pytest.raises(AuthenticationError) as exc:
        gate.check(_signed(alice, clock, signer=ed25519_generate()[0]))
    assert exc.value.code == "invalid_signature"


def test_replayed_message_rejected(gate, make_identity, clock):
    alice = make_identity("alice")
    payload = _signed(alice, clock)
    gate.check(payload)
    with pytest.raises(ReplayError) as exc:
        gate.check(payload)
    assert exc.value.code == "replay_attack"


def test_tampered_body_rejected(gate, make_identity, clock):
    alice = make_identity("alice")
    payload = _signed(alice, clock)
    payload["body"] = "send me your keys"
    with pytest.raises(AuthenticationError) as exc:
        gate.check(payload)
    assert exc.value.code == "invalid_signature"


def test_bad_signature_does_not_burn_nonce(gate, make_identity, clock):
    alice = make_identity("alice")
    good = _signed(alice, clock)
    forged = dict(good, signature=_signed(alice, clock, signer=ed25519_generate()[0])["signature"])
    with pytest.raises(AuthenticationError):
        gate.check(forged)
    assert gate.check(good).signed


@pytest.mark.parametrize("fields, code", [
    ({"nonce": None}, "nonce_required"),
    ({"nonce": "xyz"}, "invalid_nonce"),
    ({"timestamp": None}, "timestamp_required"),
    ({"timestamp": "2020-01-01T00:00:00Z"}, "timestamp_expired"),
    ({"timestamp": "0001-01-01T00:00:00+05:00"}, "invalid_timestamp"),
])
def test_signed_message_structural_checks(gate, make_identity, clock, fields, code):
    alice = make_identity("alice")
    with pytest.raises(ValidationError) as exc:
        gate.check(_signed(alice, clock, **fields))
    assert exc.value.code == code


def test_unknown_sender(gate, make_identity, clock):
    ghost = make_identity("alice")._replace(handle="ghost")
    with pytest.raises(AuthenticationError) as exc:
        gate.check(_signed(ghost, clock))
    assert exc.value.code == "sender_key_not_found"


def test_sender_without_key(gate, make_identity, clock):
    keyless = make_identity("carol", with_key=False)
    with pytest.raises(AuthenticationError) as exc:
        gate.check(_signed(keyless, clock))
    assert exc.value.code == "sender_key_not_found"


def test_suspended_sender(gate, service, make_identity, clock):
    alice = make_identity("alice")
    service.registry.suspend("alice")
    with pytest.raises(ForbiddenError) as exc:
        gate.check(_signed(alice, clock))
    assert exc.value.code == "identity_suspended"


def test_nonce_store_outage_warns(store, config, clock, make_identity, caplog):
    class DownStore(InMemoryStorage):
        def claim_nonce(self, rec, now):
            raise StorageUnavailableError("replay store down")

    alice = make_identity("alice")
    gate = MessageGate(store, config, clock, nonce_store=DownStore())
    with caplog.at_level(logging.ERROR):
        decision = gate.check(_signed(alice, clock))
    assert decision.signed
    assert decision.replay_warning
    assert decision.to_dict()["replay_warning"] == decision.replay_warning
    assert "replay store unavailable" in caplog.text


def test_message_rate_limit(store, make_config, clock, make_identity):
    make_identity("alice")
    gate = MessageGate(store, make_config(strict=False, rate_limits=dict(RATE_LIMITS, message=(3, 60))), clock)
    for _ in range(3):
        gate.check(UNSIGNED)
    with pytest.raises(RateLimitedError) as exc:
        gate.check(UNSIGNED)
    assert exc.value.headers["Retry-After"] == "60"
    assert exc.value.headers["X-AIRC-Strict-Mode"] == "optional"


def test_malformed_payload(gate):
    with pytest.raises(ValidationError):
        gate.check({"from": "alice", "body": "no recipient"})
    with pytest.raises(ValidationError):
        gate.check(["not", "an", "object"])
