"""
Chainlog Gateway Server

FastAPI surface over the audit engine.

Security Properties:
- Every trail read and write requires a verified client certificate AND an
  authorized caller id; there are no anonymous trail operations
- Identity and authorization failures keep their specific error kind in the response
- Records are append-only; the HTTP surface has no update or delete route
- Storage degradation fails closed (503, retryable)

Only `/api/system/health` is reachable without a client certificate.
"""

from __future__ import annotations

import logging
import math
import os
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, Path, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from .access import CallerRegistry, ServiceKeyAuth
from .binding import UUID_PATTERN
from .config import GatewaySettings
from .engine import AuditEngine
from .errors import ChainlogError, ErrorKind, chainlog_error, internal_error, not_found, unauthorized, validation_error
from .hotpath import DigestHotPath
from .identity import PeerRequest, build_extractor
from .lockdown import DbCircuitBreaker
from .metrics import instrument_fastapi, set_lockdown_active
from .store import AuditRecord, AuditTrailStore

logger = logging.getLogger("chainlog.server")

DEFAULT_PAGE_LIMIT = 50
MAX_PAGE_LIMIT = 100


# ---------------------------
# Request Models
# ---------------------------

class CreateLogRequest(BaseModel):
    uuid: str = Field(..., pattern=UUID_PATTERN, description="Subject id (UUID form)")
    action: str = Field(..., min_length=1, max_length=16)
    data: Any = None


class VerifyLogRequest(BaseModel):
    uuid: str = Field(..., pattern=UUID_PATTERN)
    action: str = Field(..., min_length=1, max_length=16)


class RegisterServiceRequest(BaseModel):
    serviceId: str = Field(..., min_length=1, max_length=256)


# ---------------------------
# Wiring
# ---------------------------

def build_engine(settings: Optional[GatewaySettings] = None) -> AuditEngine:
    """Construct store, gate and extractor in dependency order.

    store -> registry (bootstrapped) -> extractor -> engine. Nothing here is a
    module-level singleton; tests build as many engines as they like.
    """
    settings = settings or GatewaySettings.from_env()
    store = AuditTrailStore(
        settings.db_path,
        circuit=DbCircuitBreaker(),
        hotpath=DigestHotPath(),
        max_payload_bytes=settings.max_payload_bytes,
    )
    registry = CallerRegistry(store, controller_id=settings.controller_id)
    if settings.bootstrap_callers:
        registry.bootstrap(settings.bootstrap_callers)
    extractor = build_extractor(
        settings.cert_mode,
        production=settings.production,
        header_prefix=settings.proxy_header_prefix,
        require_validity=settings.proxy_require_validity,
    )
    if settings.controller_id is None:
        logger.warning("CHAINLOG_CONTROLLER_ID is not set; no identity can register callers")
    return AuditEngine(
        extractor,
        registry,
        store,
        service_keys=ServiceKeyAuth.load_from_env(),
        read_retry_attempts=settings.read_retry_attempts,
        read_retry_backoff_s=settings.read_retry_backoff_s,
    )


def peer_request(request: Request) -> PeerRequest:
    """Project a Starlette request onto what the identity layer may see.

    The peer certificate comes from the ASGI TLS extension
    (``scope["extensions"]["tls"]["client_cert_chain"]``), when the server
    provides it.
    """
    scope = request.scope
    tls = (scope.get("extensions") or {}).get("tls") or {}
    chain = tls.get("client_cert_chain") or []
    peer_cert: Optional[bytes] = None
    if chain:
        leaf = chain[0]
        peer_cert = leaf.encode("ascii") if isinstance(leaf, str) else bytes(leaf)
    return PeerRequest(
        headers=dict(request.headers),
        encrypted=scope.get("scheme") in ("https", "wss"),
        peer_certificate=peer_cert,
        path=request.url.path,
    )


def _records(records: List[AuditRecord], limit: int, offset: int) -> Dict[str, Any]:
    return {
        "success": True,
        "data": [r.as_dict() for r in records],
        "count": len(records),
        "limit": limit,
        "offset": offset,
    }


def _bearer_or_header(req: Request, header: str, token: str) -> bool:
    authz = (req.headers.get("Authorization") or "").strip()
    if authz.lower().startswith("bearer ") and authz.split(" ", 1)[1].strip() == token:
        return True
    return (req.headers.get(header) or "").strip() == token


def _log_failure(request: Request, exc: ChainlogError) -> None:
    kind = exc.kind
    if kind.is_identity_failure or kind is ErrorKind.UNAUTHORIZED:
        mode = request.app.state.engine.extractor.mode.value
        logger.warning(
            "%s %s rejected: %s (%s, mode=%s)", request.method, request.url.path, kind.value, exc.message, mode
        )
    elif kind is ErrorKind.INTERNAL_ERROR:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc, exc_info=exc)
    elif kind in (ErrorKind.CONFLICT, ErrorKind.VALIDATION_ERROR, ErrorKind.NOT_FOUND):
        logger.info("%s %s: %s", request.method, request.url.path, exc)


# ---------------------------
# FastAPI App Factory
# ---------------------------

def create_app(engine: Optional[AuditEngine] = None, settings: Optional[GatewaySettings] = None) -> FastAPI:
    """Create FastAPI application with audit trail endpoints."""
    from . import __version__ as chainlog_version

    settings = settings or GatewaySettings.from_env()
    engine = engine or build_engine(settings)

    app = FastAPI(
        title="Chainlog Gateway",
        description="Certificate-bound, hash-verifiable audit trail",
        version=chainlog_version,
    )
    app.state.engine = engine
    app.state.settings = settings

    @app.exception_handler(ChainlogError)
    async def _chainlog_error_handler(request: Request, exc: ChainlogError):
        _log_failure(request, exc)
        headers = None
        if "retryAfterSeconds" in exc.details:
            headers = {"Retry-After": str(max(1, math.ceil(exc.details["retryAfterSeconds"])))}
        return JSONResponse(
            status_code=int(exc.http_status), content={"success": False, **exc.as_dict()}, headers=headers
        )

    @app.exception_handler(RequestValidationError)
    async def _request_validation_handler(request: Request, exc: RequestValidationError):
        fields = [".".join(str(p) for p in err.get("loc", ())) for err in exc.errors()]
        err = validation_error("Invalid request", fields=fields)
        _log_failure(request, err)
        return JSONResponse(status_code=err.http_status, content={"success": False, **err.as_dict()})

    @app.exception_handler(Exception)
    async def _unhandled_error_handler(request: Request, exc: Exception):
        logger.exception("Unhandled error on %s %s", request.method, request.url.path)
        err = internal_error("Internal server error")
        return JSONResponse(status_code=err.http_status, content={"success": False, **err.as_dict()})

    # ---------------------------
    # Observability (/metrics)
    # ---------------------------
    def _authorize_metrics(req: Request) -> bool:
        if settings.metrics_token:
            return _bearer_or_header(req, "X-Metrics-Token", settings.metrics_token)
        return True

    instrument_fastapi(app, authorize=_authorize_metrics)

    # Request body size limit (checks Content-Length).
    @app.middleware("http")
    async def _limit_request_size(req: Request, call_next):
        cl = req.headers.get("content-length")
        if cl is not None:
            try:
                too_large = int(cl) > settings.max_request_bytes
            except ValueError:
                # If malformed, fail closed.
                err = validation_error("Bad Content-Length")
                return JSONResponse(status_code=err.http_status, content={"success": False, **err.as_dict()})
            if too_large:
                err = chainlog_error(
                    ErrorKind.VALIDATION_ERROR,
                    "Request too large",
                    http_status=413,
                    max_bytes=settings.max_request_bytes,
                )
                return JSONResponse(status_code=413, content={"success": False, **err.as_dict()})
        return await call_next(req)

    # ---------------------------
    # Audit trail
    # ---------------------------

    @app.post("/api/logs", status_code=201)
    def create_log(body: CreateLogRequest, request: Request):
        record = engine.register(peer_request(request), body.uuid, body.action, body.data)
        return {"success": True, "data": record.as_dict()}

    @app.post("/api/logs/verify")
    def verify_log(body: VerifyLogRequest, request: Request):
        result = engine.verify(peer_request(request), body.uuid, body.action)
        return {
            "success": True,
            "data": {
                "verified": result.valid,
                "hash": result.digest,
                "uuid": result.record.subject_id,
                "action": result.record.action,
                "userFingerprint": result.record.caller_fingerprint,
            },
        }

    @app.get("/api/logs/uuid/{uuid}")
    def logs_by_uuid(
        request: Request,
        uuid: str = Path(..., pattern=UUID_PATTERN),
        limit: int = Query(DEFAULT_PAGE_LIMIT, ge=1, le=MAX_PAGE_LIMIT),
        offset: int = Query(0, ge=0),
    ):
        return _records(engine.by_uuid(peer_request(request), uuid, limit=limit, offset=offset), limit, offset)

    @app.get("/api/logs/action/{action}")
    def logs_by_action(
        action: str,
        request: Request,
        limit: int = Query(DEFAULT_PAGE_LIMIT, ge=1, le=MAX_PAGE_LIMIT),
        offset: int = Query(0, ge=0),
    ):
        return _records(engine.by_action(peer_request(request), action, limit=limit, offset=offset), limit, offset)

    @app.get("/api/logs/fingerprint/{fingerprint}")
    def logs_by_fingerprint(
        fingerprint: str,
        request: Request,
        limit: int = Query(DEFAULT_PAGE_LIMIT, ge=1, le=MAX_PAGE_LIMIT),
        offset: int = Query(0, ge=0),
    ):
        records = engine.by_fingerprint(peer_request(request), fingerprint, limit=limit, offset=offset)
        return _records(records, limit, offset)

    @app.get("/api/logs")
    def all_logs(
        request: Request,
        limit: int = Query(DEFAULT_PAGE_LIMIT, ge=1, le=MAX_PAGE_LIMIT),
        offset: int = Query(0, ge=0),
    ):
        return _records(engine.all_records(peer_request(request), limit=limit, offset=offset), limit, offset)

    # ---------------------------
    # Caller registry
    # ---------------------------

    @app.post("/api/services", status_code=201)
    def register_service(body: RegisterServiceRequest, request: Request):
        caller = engine.register_caller(peer_request(request), body.serviceId)
        return {"success": True, "data": caller.as_dict()}

    # ---------------------------
    # Certificates
    # ---------------------------

    @app.get("/api/certificates/info")
    def certificate_info(request: Request):
        identity = engine.identify(peer_request(request))
        return {"success": True, "data": identity.as_dict()}

    @app.get("/api/certificates/debug")
    def certificate_debug(request: Request):
        if not settings.cert_debug:
            raise not_found("Not found")
        peer = peer_request(request)
        prefix = settings.proxy_header_prefix
        forwarded = {k: v for k, v in peer.headers.items() if k.lower().startswith(prefix)}
        # Certificate bodies are long and add nothing to a header dump.
        forwarded.pop(prefix + "cert", None)
        return {
            "success": True,
            "data": {
                "certMode": engine.extractor.mode.value,
                "encrypted": peer.encrypted,
                "peerCertificatePresent": peer.peer_certificate is not None,
                "forwardedHeaders": forwarded,
            },
        }

    # ---------------------------
    # Operational stats (/api/system/stats)
    # ---------------------------

    def _authorize_stats(req: Request) -> bool:
        if not settings.stats_require_auth:
            return True
        # If auth is required but no token is configured, deny (fail closed).
        if not settings.stats_token:
            return False
        return _bearer_or_header(req, "X-Stats-Token", settings.stats_token)

    @app.get("/api/system/stats")
    def stats(request: Request):
        if not _authorize_stats(request):
            raise unauthorized("STATS_UNAUTHORIZED")
        storage = engine.store.circuit.snapshot()
        set_lockdown_active(storage["lockdown_active"])
        return engine.stats.snapshot(
            extra={
                "lockdown_active": storage["lockdown_active"],
                "storage": storage,
                "digest_cache_items": len(engine.store.hotpath),
            }
        )

    @app.get("/api/system/health")
    def health_check():
        """Health check endpoint. No client certificate required."""
        lockdown = engine.store.circuit.is_lockdown_active()
        set_lockdown_active(lockdown)
        return {
            "status": "degraded" if lockdown else "healthy",
            "version": chainlog_version,
            "certMode": engine.extractor.mode.value,
            "environment": settings.env,
        }

    return app


def main():
    """
    Main entry point for the chainlog-gateway CLI.

    Usage:
        chainlog-gateway                    # Start on default port 8000
        chainlog-gateway --port 9000        # Start on custom port
        chainlog-gateway --host 127.0.0.1   # Bind to localhost only
    """
    import argparse

    parser = argparse.ArgumentParser(
        description="Chainlog Gateway - certificate-bound audit trail",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
    chainlog-gateway                         Start gateway on 0.0.0.0:8000 (behind a TLS proxy)
    chainlog-gateway --port 9000             Start on custom port
    chainlog-gateway --host 127.0.0.1        Bind to localhost only

Environment Variables:
    CHAINLOG_CERT_MODE       direct | proxied (default: proxied)
    CHAINLOG_CONTROLLER_ID   Identity allowed to register callers
    CHAINLOG_DB_PATH         Path to SQLite database (default: chainlog.db)
    CHAINLOG_ENV             dev | prod
        """,
    )
    parser.add_argument("--host", default="0.0.0.0", help="Host to bind (default: 0.0.0.0)")
    parser.add_argument("--port", type=int, default=8000, help="Port to bind (default: 8000)")
    parser.add_argument("--ssl-certfile", default=None, help="Server certificate (direct mode)")
    parser.add_argument("--ssl-keyfile", default=None, help="Server private key (direct mode)")
    parser.add_argument("--ssl-ca-certs", default=None, help="CA bundle used to verify client certificates")
    parser.add_argument("--forwarded-allow-ips", default=None, help="IPs allowed to set X-Forwarded-* headers")

    args = parser.parse_args()
    return serve(
        host=args.host,
        port=args.port,
        ssl_certfile=args.ssl_certfile,
        ssl_keyfile=args.ssl_keyfile,
        ssl_ca_certs=args.ssl_ca_certs,
        forwarded_allow_ips=args.forwarded_allow_ips,
    )


def serve(
    host: str = "0.0.0.0",
    port: int = 8000,
    ssl_certfile: Optional[str] = None,
    ssl_keyfile: Optional[str] = None,
    ssl_ca_certs: Optional[str] = None,
    forwarded_allow_ips: Optional[str] = None,
) -> int:
    import ssl

    import uvicorn

    settings = GatewaySettings.from_env()
    app = create_app(settings=settings)

    tls_kwargs: Dict[str, Any] = {}
    if ssl_certfile:
        tls_kwargs.update(ssl_certfile=ssl_certfile, ssl_keyfile=ssl_keyfile)
        if ssl_ca_certs:
            tls_kwargs.update(ssl_ca_certs=ssl_ca_certs, ssl_cert_reqs=ssl.CERT_REQUIRED)
    elif settings.cert_mode == "direct":
        logger.warning("Direct certificate mode without --ssl-certfile: every request will be rejected")

    logger.info("Starting Chainlog Gateway on %s:%d (cert mode: %s)", host, port, settings.cert_mode)
    uvicorn.run(
        app,
        host=host,
        port=port,
        forwarded_allow_ips=forwarded_allow_ips or os.environ.get("CHAINLOG_FORWARDED_ALLOW_IPS"),
        **tls_kwargs,
    )
    return 0


# CLI entry point
if __name__ == "__main__":
    import sys

    sys.exit(main() or 0)
