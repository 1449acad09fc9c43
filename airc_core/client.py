# airc_core/client.py
import requests
from typing import Any, Dict, Optional

from airc_core.crypto import ed25519_generate, format_key, public_from_private
from airc_core.logger import get_logger
from airc_core.proofs import OwnershipProof, RevocationProof, RotationProof, SignedMessage
from airc_core.utils import utc_now

log = get_logger("AIRC.Client")


class AIRCClient:
    """
    Agent-side SDK for the AIRC identity endpoints.

    Holds the handle's signing key and (optionally) its recovery key, builds
    and signs every proof locally and posts it. Private keys never leave the
    process.

    Calls return the decoded JSON body on success; on an HTTP error the
    server's error body plus `status`; on a transport failure `{"error": ...}`.
    """

    def __init__(self, base_url: str, handle: str, signing_key: bytes,
                 recovery_key: Optional[bytes] = None, timeout: float = 5):
        self.base_url = base_url.rstrip("/")
        self.handle = handle
        self.signing_key = signing_key
        self.recovery_key = recovery_key
        self.timeout = timeout

    @classmethod
    def generate(cls, base_url: str, handle: str, with_recovery: bool = True, **kw) -> "AIRCClient":
        signing, _ = ed25519_generate()
        recovery = ed25519_generate()[0] if with_recovery else None
        return cls(base_url, handle, signing, recovery, **kw)

    @property
    def public_key(self) -> str:
        return format_key(public_from_private(self.signing_key))

    @property
    def recovery_public_key(self) -> Optional[str]:
        if self.recovery_key is None:
            return None
        return format_key(public_from_private(self.recovery_key))

    # ------------------------------------------------------------------
    # HTTP
    # ------------------------------------------------------------------
    def _request(self, method: str, path: str, payload: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        url = f"{self.base_url}{path}"
        log.debug(f"[HTTP {method}] → {url}")
        try:
            res = requests.request(method, url, json=payload,
                                   headers={"Content-Type": "application/json"}, timeout=self.timeout)
        except requests.RequestException as e:
            log.exception(f"[HTTP {method}] {url} failed: {e}")
            return {"error": str(e)}

        try:
            body = res.json()
        except ValueError:
            body = {"error": res.text}
        if res.ok:
            log.info(f"[HTTP {method}] {path} {res.status_code}")
            return body
        log.error(f"[HTTP {method}] {path} {res.status_code}: {body.get('error')}")
        body["status"] = res.status_code
        if "Retry-After" in res.headers:
            body.setdefault("retry_after", int(res.headers["Retry-After"]))
        return body

    # ------------------------------------------------------------------
    # Identity operations
    # ------------------------------------------------------------------
    def create_identity(self, include_key: bool = True) -> Dict[str, Any]:
        payload = {"handle": self.handle, "recovery_key": self.recovery_public_key}
        if include_key:
            payload["public_key"] = self.public_key
        return self._request("POST", "/api/users", payload)

    def register_key(self) -> Dict[str, Any]:
        """Bind the current signing key to the handle with an ownership proof."""
        proof = OwnershipProof.create(self.handle, self.signing_key)
        return self._request("POST", "/api/users/key", {
            "handle": self.handle,
            "publicKey": self.public_key,
            "proof": proof.encode(),
        })

    def rotate(self, new_signing_key: Optional[bytes] = None) -> Dict[str, Any]:
        """
        Replace the signing key. The proof is signed by the recovery key; on
        success the client switches to the new key.
        """
        if self.recovery_key is None:
            raise ValueError("rotation requires the recovery key")
        new_signing_key = new_signing_key or ed25519_generate()[0]
        new_public = format_key(public_from_private(new_signing_key))
        proof = RotationProof.create(self.handle, self.public_key, new_public).sign(self.recovery_key)
        result = self._request("POST", f"/api/identity/{self.handle}/rotate", proof.to_dict())
        if result.get("success"):
            self.signing_key = new_signing_key
        return result

    def revoke(self, reason: str = "voluntary") -> Dict[str, Any]:
        if self.recovery_key is None:
            raise ValueError("revocation requires the recovery key")
        proof = RevocationProof.create(self.handle, reason).sign(self.recovery_key)
        return self._request("POST", f"/api/identity/{self.handle}/revoke", proof.to_dict())

    def identity(self, handle: Optional[str] = None) -> Dict[str, Any]:
        return self._request("GET", f"/api/identity/{handle or self.handle}")

    def send_message(self, to: str, body: str, sign: bool = True) -> Dict[str, Any]:
        if sign:
            msg = SignedMessage.create(self.handle, to, body, utc_now()).sign(self.signing_key)
        else:
            msg = SignedMessage(sender=self.handle, recipient=to, body=body)
        return self._request("POST", "/api/messages",
                             {k: v for k, v in msg.to_dict().items() if v is not None})
