# airc_core/storage/provider.py
from __future__ import annotations
from typing import List, Optional, Sequence

from airc_core.storage.models import (
    AuditEntry, CasResult, ClaimResult, IdentityRecord, KeyEvent, NonceRecord,
    OutboxEntry, QuarantineRecord, RateCounter, SessionRecord,
)


class StorageProvider:
    """
    Backing-store contract for the identity layer.

    Every method that guards a security invariant is a single atomic
    operation on the provider side: nonce claims, rate-limit increments,
    key compare-and-swap and revocation. Callers never read-then-write.

    Providers raise airc_core.errors.StorageUnavailableError when the
    backend cannot be reached.
    """

    # identities
    def create_identity(self, rec: IdentityRecord) -> bool: ...
    def get_identity(self, handle: str) -> Optional[IdentityRecord]: ...
    def set_public_key(self, handle: str, expected_key: Optional[str], public_key: str, now: str,
                       outbox: Sequence[OutboxEntry] = ()) -> CasResult: ...
    def compare_and_swap_key(self, handle: str, old_key: str, new_key: str, now: str,
                             outbox: Sequence[OutboxEntry] = ()) -> CasResult: ...
    def revoke_identity(self, handle: str, now: str, quarantine: QuarantineRecord,
                        outbox: Sequence[OutboxEntry] = ()) -> CasResult: ...
    def reclaim_identity(self, rec: IdentityRecord) -> CasResult: ...
    def set_status(self, handle: str, status: str, now: str) -> CasResult: ...

    # replay guard
    def claim_nonce(self, rec: NonceRecord, now: str) -> ClaimResult: ...
    def purge_expired_nonces(self, now: str) -> int: ...

    # rate limiting
    def hit_rate_counter(self, key: str, window_seconds: int, now: str) -> RateCounter: ...

    # audit
    def append_audit(self, entry: AuditEntry) -> None: ...
    def list_audit(self, handle: Optional[str] = None, limit: int = 100) -> List[AuditEntry]: ...

    # quarantine
    def get_quarantine(self, handle: str) -> Optional[QuarantineRecord]: ...
    def delete_quarantine(self, handle: str, now: str) -> bool: ...
    def purge_expired_quarantines(self, now: str) -> int: ...

    # key events
    def append_key_event(self, event: KeyEvent, cap: int) -> None: ...
    def list_key_events(self, handle: str) -> List[KeyEvent]: ...

    # sessions + outbox
    def put_session(self, rec: SessionRecord) -> None: ...
    def get_session(self, token_id: str) -> Optional[SessionRecord]: ...
    def delete_sessions(self, handle: str, key_fpr: str) -> int: ...
    def pending_outbox(self, limit: int = 100) -> List[OutboxEntry]: ...
    def complete_outbox(self, entry_id: int) -> None: ...
    def fail_outbox(self, entry_id: int) -> None: ...

    def close(self) -> None: ...
