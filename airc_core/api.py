# airc_core/api.py
#
# HTTP surface for the identity layer. Thin glue only: every handler parses
# the request, calls one IdentityService / MessageGate operation and maps the
# result (or AIRCError) onto a JSON response. No crypto and no state here.

from datetime import datetime
from typing import Any, Callable, Optional

from fastapi import Body, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from .config import AIRCConfig
from .constants import PROTOCOL_VERSION
from .errors import AIRCError, NotFoundError
from .logger import get_logger
from .messages import GateDecision, MessageGate
from .service import IdentityService
from .storage import StorageProvider, load_storage_provider
from .utils import utc_now

log = get_logger("AIRC.API")


def client_origin(request: Request) -> Optional[str]:
    """X-Real-IP, then the first X-Forwarded-For hop, then the peer address."""
    real_ip = request.headers.get("x-real-ip")
    if real_ip:
        return real_ip.strip()
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else None


def _json(body: dict, status_code: int = 200, headers: Optional[dict] = None) -> JSONResponse:
    return JSONResponse(body, status_code=status_code, headers=headers or None)


def create_app(
    config: Optional[AIRCConfig] = None,
    store: Optional[StorageProvider] = None,
    clock: Callable[[], datetime] = utc_now,
    on_message: Optional[Callable[[GateDecision], None]] = None,
) -> FastAPI:
    """
    Build the AIRC identity app.

    `on_message` receives every accepted GateDecision; delivery (inbox,
    presence) lives outside the identity layer.
    """
    config = config or AIRCConfig.from_env()
    store = store or load_storage_provider()
    service = IdentityService(store, config, clock)
    gate = MessageGate(store, config, clock)

    app = FastAPI(title="AIRC Identity", version=PROTOCOL_VERSION)
    app.state.config = config
    app.state.store = store
    app.state.service = service
    app.state.gate = gate

    @app.exception_handler(AIRCError)
    async def airc_error_handler(request: Request, exc: AIRCError):
        if exc.status >= 500:
            log.error(f"[HTTP] {request.method} {request.url.path} -> {exc.status} {exc.code}")
        return _json(exc.to_dict(), exc.status, exc.headers)

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        return _json({"error": "invalid_request_body", "message": "Request body must be a JSON object"}, 400)

    @app.get("/healthz")
    def healthz():
        return {"status": "ok", "version": PROTOCOL_VERSION}

    @app.post("/api/users", status_code=201)
    def create_user(request: Request, body: Any = Body(None)):
        body = body if isinstance(body, dict) else {}
        result = service.create_identity(
            body.get("handle") or body.get("username"),
            public_key=body.get("public_key") or body.get("publicKey"),
            recovery_key=body.get("recovery_key") or body.get("recoveryKey"),
            origin=client_origin(request),
        )
        return _json(result.to_dict(), 201)

    @app.post("/api/users/key")
    def register_key(request: Request, body: Any = Body(None)):
        body = body if isinstance(body, dict) else {}
        result = service.register_key(
            body.get("handle") or body.get("username"),
            body.get("publicKey") or body.get("public_key"),
            body.get("proof"),
            origin=client_origin(request),
        )
        return _json(result.to_dict(), headers=result.headers)

    @app.get("/api/identity/{handle}")
    def get_identity(handle: str):
        ident = service.registry.get(handle)
        if ident is None:
            raise NotFoundError(f"No identity found for handle: {handle}")
        return {
            "handle": ident.handle,
            "status": ident.status,
            "public_key": ident.public_key,
            "has_recovery_key": bool(ident.recovery_key),
            "key_rotated_at": ident.key_rotated_at,
            "revoked_at": ident.revoked_at,
            "created_at": ident.created_at,
            "active": service.registry.is_active(ident.handle),
        }

    @app.post("/api/identity/{handle}/rotate")
    def rotate(handle: str, request: Request, body: Any = Body(None)):
        # Accept the bare proof or {"proof": {...}}
        proof = body.get("proof", body) if isinstance(body, dict) else body
        result = service.rotate_key(handle, proof, origin=client_origin(request))
        return _json(result.to_dict(), headers=result.headers)

    @app.post("/api/identity/{handle}/revoke")
    def revoke(handle: str, request: Request, body: Any = Body(None)):
        proof = body.get("proof", body) if isinstance(body, dict) else body
        result = service.revoke_identity(handle, proof, origin=client_origin(request))
        return _json(result.to_dict(), headers=result.headers)

    @app.post("/api/messages")
    def send_message(request: Request, body: Any = Body(None)):
        decision = gate.check(body, origin=client_origin(request))
        if on_message is not None:
            on_message(decision)
        return _json(decision.to_dict(), 200, decision.headers)

    return app
