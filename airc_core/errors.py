from __future__ import annotations
from typing import Any, Dict, Optional


class AIRCError(Exception):
    """
    Base error for every identity-layer failure.

    Carries the HTTP status the API layer maps it to, a stable machine
    readable `code`, optional structured `details` merged into the error body,
    and optional response headers (Retry-After, X-RateLimit-*).
    """
    status: int = 500
    code: str = "internal_error"

    def __init__(
        self,
        message: str = "",
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
    ):
        super().__init__(message or self.code)
        self.message = message or (code or self.code)
        if code:
            self.code = code
        self.details = details or {}
        self.headers = headers or {}

    def to_dict(self) -> Dict[str, Any]:
        body = {"error": self.code, "message": self.message}
        body.update(self.details)
        return body


class ValidationError(AIRCError):
    status = 400
    code = "invalid_request"


class ProofFormatError(ValidationError):
    code = "invalid_proof_format"


class AuthenticationError(AIRCError):
    status = 401
    code = "invalid_signature"


class ReplayError(AuthenticationError):
    code = "replay_attack"


class ForbiddenError(AIRCError):
    status = 403
    code = "forbidden"


class NotFoundError(AIRCError):
    status = 404
    code = "identity_not_found"


class ConflictError(AIRCError):
    status = 409
    code = "concurrent_modification"


class RateLimitedError(AIRCError):
    status = 429
    code = "rate_limited"

    def __init__(self, operation: str, retry_after: int, headers: Optional[Dict[str, str]] = None):
        merged = dict(headers or {})
        merged["Retry-After"] = str(retry_after)
        super().__init__(
            f"Rate limit exceeded for {operation}. Try again in {retry_after} seconds.",
            details={"operation": operation, "retry_after": retry_after},
            headers=merged,
        )
        self.operation = operation
        self.retry_after = retry_after


class InternalError(AIRCError):
    status = 500
    code = "internal_error"


class StorageUnavailableError(AIRCError):
    status = 503
    code = "storage_unavailable"
