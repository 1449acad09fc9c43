"""
airc_core.nonces
----------------
Claim-once replay guard.

A single store abstraction serves every scope; only the TTL differs:
proof nonces (rotation, revocation) live as long as the rate-limit window,
message nonces as long as the signed-message timestamp window.
"""

from __future__ import annotations
from datetime import datetime, timedelta
from typing import Optional

from .config import AIRCConfig
from .logger import get_logger
from .storage import ClaimResult, NonceRecord, StorageProvider
from .utils import iso, utc_now

log = get_logger("AIRC.Nonce")


class NonceTracker:
    def __init__(self, store: StorageProvider, config: AIRCConfig):
        self.store = store
        self.config = config

    def claim(
        self,
        nonce: str,
        handle: str,
        scope: str,
        now: Optional[datetime] = None,
        origin_hash: Optional[str] = None,
    ) -> ClaimResult:
        """
        Atomically insert the nonce. Exactly one concurrent claimant sees CLAIMED.

        Store failures propagate as StorageUnavailableError; the caller decides
        whether to fail closed (proofs) or proceed with a warning (messages).
        """
        now = now or utc_now()
        expires = now + timedelta(seconds=self.config.nonce_ttl(scope))
        rec = NonceRecord(nonce=nonce.lower(), handle=handle, operation=scope,
                          expires_at=iso(expires), origin_hash=origin_hash)
        result = self.store.claim_nonce(rec, iso(now))
        if result is ClaimResult.REPLAYED:
            log.warning(f"[NONCE] replay scope={scope} handle={handle}")
        return result

    def purge(self, now: Optional[datetime] = None) -> int:
        removed = self.store.purge_expired_nonces(iso(now or utc_now()))
        if removed:
            log.info(f"[NONCE] purged {removed} expired nonces")
        return removed
