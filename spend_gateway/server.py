"""HTTP surface for the spend permission engine (FastAPI).

Caller identity for account- and spender-authorized operations comes from
``X-API-Key`` (see :mod:`spend_gateway.auth`), never from the request body.
Signature-authorized operations (``approve-signed``, ``spend-signed``) need
no API key: the signature is the authorization.

Errors are returned as a stable JSON envelope::

    {"code": ..., "message": ..., "kind": ..., "retryable": ..., "http_status": ..., "details": {...}}
"""

from __future__ import annotations

import logging
import os
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, Header, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from . import metrics
from .auth import ApiKeyAuth
from .config import GatewayConfig
from .dispatch import Call
from .errors import (
    SPG_E_AUTH_REQUIRED,
    SPG_E_REQUEST_MALFORMED,
    SPG_E_STORAGE_LOCKDOWN,
    SpendError,
    spend_error,
)
from .lockdown import StorageLockdownError
from .manager import PermissionManager
from .permissions import DEFAULT_POLICY, Permission
from .validator import Proofs


logger = logging.getLogger("spend_gateway")


class PermissionModel(BaseModel):
    """Permission descriptor; bytes are hex, amounts are decimal strings."""
    account: str
    spender: str
    resource: str
    start: int
    end: int
    period: int
    cap: str
    policy: str = DEFAULT_POLICY
    policy_data: str = ""
    salt: str = "0"

    def to_permission(self) -> Permission:
        return Permission.from_dict({
            "account": self.account,
            "spender": self.spender,
            "resource": self.resource,
            "start": self.start,
            "end": self.end,
            "period": self.period,
            "cap": self.cap,
            "policy": self.policy,
            "policy_data": self.policy_data,
            "salt": self.salt,
        })


class PermissionBody(BaseModel):
    permission: PermissionModel


class SignedApprovalBody(BaseModel):
    permission: PermissionModel
    signature: str


class CallModel(BaseModel):
    target: str
    value: str = "0"
    data: str = ""


class SpendBody(BaseModel):
    permission: PermissionModel
    calls: List[CallModel] = Field(default_factory=list)
    nonce: Optional[str] = None
    register_spend: bool = False
    signature: Optional[str] = None
    cosignature: Optional[str] = None
    approval_signature: Optional[str] = None


def _hex(value: Optional[str], field_name: str) -> Optional[bytes]:
    if value is None:
        return None
    try:
        return bytes.fromhex(value)
    except ValueError:
        raise spend_error(SPG_E_REQUEST_MALFORMED, f"{field_name} must be hex", field=field_name)


def create_app(
    manager: Optional[PermissionManager] = None,
    api_auth: Optional[ApiKeyAuth] = None,
) -> FastAPI:
    """Create FastAPI application with permission endpoints."""
    from . import __version__

    if manager is None:
        manager = PermissionManager.from_config(GatewayConfig.from_env())
    if api_auth is None:
        api_auth = ApiKeyAuth.load_from_env()

    app = FastAPI(
        title="Spend Permission Gateway",
        description="Delegated, capped, recurring spend permissions",
        version=__version__,
    )
    app.state.manager = manager

    @app.exception_handler(SpendError)
    async def _spend_error_handler(request: Request, exc: SpendError):
        return JSONResponse(status_code=int(exc.http_status or 400), content=exc.as_dict())

    @app.exception_handler(StorageLockdownError)
    async def _lockdown_handler(request: Request, exc: StorageLockdownError):
        metrics.set_lockdown_active(True)
        err = spend_error(SPG_E_STORAGE_LOCKDOWN, "storage lockdown active", retryable=True, http_status=503)
        return JSONResponse(status_code=503, content=err.as_dict())

    metrics_token = (os.getenv("SPG_METRICS_TOKEN", "") or "").strip()

    def _authorize_metrics(req: Request) -> bool:
        if not metrics_token:
            return True
        authz = (req.headers.get("Authorization") or "").strip()
        if authz.lower().startswith("bearer ") and authz.split(" ", 1)[1].strip() == metrics_token:
            return True
        return (req.headers.get("X-Metrics-Token") or "").strip() == metrics_token

    metrics.instrument_fastapi(app, authorize=_authorize_metrics)

    def _caller(x_api_key: Optional[str]) -> bytes:
        identity, err = api_auth.resolve_identity(x_api_key)
        if err:
            raise spend_error(SPG_E_AUTH_REQUIRED, err, http_status=401)
        return identity

    def _calls(body: SpendBody) -> List[Call]:
        try:
            return [Call(c.target, int(c.value), bytes.fromhex(c.data)) for c in body.calls]
        except ValueError as e:
            raise spend_error(SPG_E_REQUEST_MALFORMED, "invalid call", error=str(e))

    def _spend(body: SpendBody, proofs: Proofs) -> Dict[str, Any]:
        permission = body.permission.to_permission()
        request = manager.build_request(
            permission, _calls(body), nonce=body.nonce, register_spend=body.register_spend
        )
        return manager.execute(request, proofs).to_dict()

    @app.post("/v1/permissions/hash")
    def permission_hash(body: PermissionBody):
        permission = body.permission.to_permission()
        return {"permission_hash": manager.get_hash(permission).hex()}

    @app.post("/v1/permissions/status")
    def permission_status(body: PermissionBody):
        permission = body.permission.to_permission()
        return {
            "permission_hash": manager.get_hash(permission).hex(),
            "authorized": manager.is_authorized(permission),
        }

    @app.post("/v1/permissions/cycle")
    def current_cycle(body: PermissionBody):
        return manager.get_current_cycle(body.permission.to_permission()).to_dict()

    @app.post("/v1/permissions/approve")
    def approve(body: PermissionBody, x_api_key: Optional[str] = Header(None, alias="X-API-Key")):
        caller = _caller(x_api_key)
        permission = body.permission.to_permission()
        approved = manager.approve(permission, caller)
        return {"permission_hash": manager.get_hash(permission).hex(), "approved": approved}

    @app.post("/v1/permissions/approve-signed")
    def approve_signed(body: SignedApprovalBody):
        permission = body.permission.to_permission()
        approved = manager.approve_with_signature(permission, _hex(body.signature, "signature"))
        return {"permission_hash": manager.get_hash(permission).hex(), "approved": approved}

    @app.post("/v1/permissions/revoke")
    def revoke(body: PermissionBody, x_api_key: Optional[str] = Header(None, alias="X-API-Key")):
        caller = _caller(x_api_key)
        permission = body.permission.to_permission()
        manager.revoke(permission, caller)
        return {"permission_hash": manager.get_hash(permission).hex(), "revoked": True}

    @app.post("/v1/spend")
    def spend(body: SpendBody, x_api_key: Optional[str] = Header(None, alias="X-API-Key")):
        proofs = Proofs(
            caller=_caller(x_api_key),
            cosignature=_hex(body.cosignature, "cosignature"),
            approval_signature=_hex(body.approval_signature, "approval_signature"),
        )
        return _spend(body, proofs)

    @app.post("/v1/spend-signed")
    def spend_signed(body: SpendBody):
        if body.signature is None:
            raise spend_error(SPG_E_REQUEST_MALFORMED, "signature is required", field="signature")
        proofs = Proofs(
            signature=_hex(body.signature, "signature"),
            cosignature=_hex(body.cosignature, "cosignature"),
            approval_signature=_hex(body.approval_signature, "approval_signature"),
        )
        return _spend(body, proofs)

    @app.get("/v1/events")
    def events(
        after: int = Query(0, ge=0),
        limit: int = Query(100, ge=1, le=1000),
        x_api_key: Optional[str] = Header(None, alias="X-API-Key"),
    ):
        _caller(x_api_key)
        return {"events": [e.to_dict() for e in manager.events(after=after, limit=limit)]}

    @app.get("/v1/health")
    def health_check():
        store = manager.store.health()
        metrics.set_lockdown_active(bool(store.get("lockdown_active")))
        return {
            "status": "healthy" if store.get("ok") else "degraded",
            "version": __version__,
            "network_id": manager.domain.network_id,
            "engine_id": manager.domain.engine_id,
            "store": store,
        }

    return app


def main(argv: Optional[List[str]] = None) -> int:
    """Run the gateway with uvicorn."""
    import argparse

    import uvicorn

    parser = argparse.ArgumentParser(
        description="Spend Permission Gateway HTTP server",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Environment Variables:
    SPG_DB_PATH           Path to SQLite database (default: spend_gateway.db)
    SPG_NETWORK_ID        Network salt for permission hashes
    SPG_ENGINE_ID         Engine-instance salt for permission hashes
    SPG_API_KEYS_JSON     JSON object mapping API keys to identity hex
    SPG_AUDIT_LOG_PATH    Signed JSONL audit mirror
        """,
    )
    parser.add_argument("--host", default="127.0.0.1", help="Host to bind (default: 127.0.0.1)")
    parser.add_argument("--port", type=int, default=8000, help="Port to bind (default: 8000)")
    parser.add_argument("--log-level", default="info", help="uvicorn log level")
    args = parser.parse_args(argv)

    logger.info("starting spend gateway on %s:%s", args.host, args.port)
    uvicorn.run(create_app(), host=args.host, port=args.port, log_level=args.log_level)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
