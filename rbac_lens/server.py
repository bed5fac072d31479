"""
RBAC Lens HTTP service.

Read side: effective-permission resolution and raw RBAC listings, answered
from one snapshot per request.

Write side: the audit chain. The mutation dispatcher (the component that
creates, updates or deletes RBAC objects in the cluster) calls
``POST /api/audit-logs`` after each successful mutation.

Every error leaves the service as the stable ``RBACError`` envelope::

    {"code": "...", "message": "...", "retryable": false, "http_status": 404, "details": {...}}

Chain corruption additionally sets ``X-Audit-Chain-Corrupt: 1`` and is logged
at CRITICAL.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Dict, List, Optional

from fastapi import FastAPI, Header, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from .audit_chain import AuditChain, AuditFilter, AuditRecord, ChainVerification
from .auth import ApiKeyAuth
from .config import ServiceConfig
from .errors import (
    RBACError,
    bad_request,
    rbac_error,
    RBAC_E_AUTH_REQUIRED,
    RBAC_E_CHAIN_CORRUPTION,
    RBAC_E_FORBIDDEN,
    RBAC_E_REQUEST_TOO_LARGE,
)
from .lockdown import StorageBreaker
from .metrics import instrument_fastapi, record_diagnostic, record_resolution
from .models import ClusterRole, ClusterRoleBinding, Role, RoleBinding, Snapshot, Subject
from .resolver import (
    EffectivePermissionSet,
    GroupDetails,
    filter_by_namespace,
    get_cluster_role,
    get_role,
    list_namespaces,
    list_referenced_groups,
    resolve_effective_permissions,
    resolve_group_details,
)
from .signing import Ed25519KeyPair, TrustedKeyStore
from .snapshot import (
    FileSnapshotProvider,
    SnapshotProvider,
    StaticSnapshotProvider,
    load_snapshot,
    snapshot_summary,
)

logger = logging.getLogger("rbac_lens")

CHAIN_CORRUPT_HEADER = "X-Audit-Chain-Corrupt"


# ---------------------------
# Request models
# ---------------------------

class SubjectModel(BaseModel):
    """A subject, as sent by clients."""
    kind: str
    name: str
    namespace: Optional[str] = None


class AppendRequest(BaseModel):
    """One mutation to record in the audit chain."""
    action: str
    resource_kind: str
    resource_name: str
    namespace: Optional[str] = None
    actor: SubjectModel


# ---------------------------
# Service
# ---------------------------

class RBACLensService:
    """
    Composes the snapshot provider and the audit chain.

    The resolver half is stateless: each call loads a fresh snapshot from the
    provider and works on that alone. The audit half is the shared chain.
    """

    def __init__(
        self,
        provider: SnapshotProvider,
        chain: AuditChain,
        *,
        config: Optional[ServiceConfig] = None,
        api_auth: Optional[ApiKeyAuth] = None,
        trusted_keys: Optional[TrustedKeyStore] = None,
    ):
        self.provider = provider
        self.chain = chain
        self.config = config or ServiceConfig()
        self.api_auth = api_auth or ApiKeyAuth()
        self.trusted_keys = trusted_keys

    @classmethod
    def from_config(cls, config: ServiceConfig) -> "RBACLensService":
        if config.snapshot_file:
            provider: SnapshotProvider = FileSnapshotProvider(config.snapshot_file)
        else:
            logger.warning("RBAC_SNAPSHOT_FILE not set; serving an empty snapshot")
            provider = StaticSnapshotProvider()

        signer = None
        trusted_keys = None
        if config.signing_key_hex:
            signer = Ed25519KeyPair.from_seed_hex(config.signing_key_hex, config.signing_key_id)
            trusted_keys = TrustedKeyStore.from_mapping({signer.key_id: signer.public_key_hex})
            logger.info("Audit records will be signed with key %s", signer.key_id)

        chain = AuditChain(
            config.db_path,
            signer=signer,
            append_retries=config.append_retries,
            breaker=StorageBreaker(),
        )
        return cls(
            provider,
            chain,
            config=config,
            api_auth=ApiKeyAuth.load_from_env(),
            trusted_keys=trusted_keys,
        )

    # Read side

    def snapshot(self) -> Snapshot:
        return load_snapshot(self.provider)

    def _observe(self, operation: str, fn: Callable[[], Any]) -> Any:
        try:
            result = fn()
        except RBACError as e:
            record_resolution(operation, e.code)
            raise
        record_resolution(operation, "ok")
        for diag in getattr(result, "diagnostics", ()):
            record_diagnostic(diag.code)
        return result

    def resolve(self, subject: Subject, *, should_cancel: Optional[Callable[[], bool]] = None) -> EffectivePermissionSet:
        return self._observe(
            "resolve",
            lambda: resolve_effective_permissions(subject, self.snapshot(), should_cancel=should_cancel),
        )

    def groups(self) -> List[str]:
        return self._observe("groups", lambda: sorted(list_referenced_groups(self.snapshot())))

    def group_details(self, group_name: str) -> GroupDetails:
        return self._observe("group_details", lambda: resolve_group_details(group_name, self.snapshot()))

    def namespaces(self) -> List[str]:
        return list_namespaces(self.snapshot())

    def roles(self, namespace: Optional[str] = None) -> List[Role]:
        return filter_by_namespace(self.snapshot().roles, namespace)

    def role(self, namespace: str, name: str) -> Role:
        return get_role(self.snapshot(), namespace, name)

    def cluster_roles(self) -> List[ClusterRole]:
        return list(self.snapshot().cluster_roles)

    def cluster_role(self, name: str) -> ClusterRole:
        return get_cluster_role(self.snapshot(), name)

    def role_bindings(self, namespace: Optional[str] = None) -> List[RoleBinding]:
        return filter_by_namespace(self.snapshot().role_bindings, namespace)

    def cluster_role_bindings(self) -> List[ClusterRoleBinding]:
        return list(self.snapshot().cluster_role_bindings)

    # Audit side

    def append(self, req: AppendRequest, *, dispatcher_id: Optional[str] = None) -> AuditRecord:
        record = self.chain.append(
            req.action,
            req.resource_kind,
            req.resource_name,
            req.namespace,
            Subject.from_dict(req.actor.model_dump(exclude_none=True)),
        )
        if dispatcher_id:
            logger.info("Audit record %d recorded by dispatcher %s", record.sequence, dispatcher_id)
        return record

    def audit_logs(
        self,
        flt: AuditFilter,
        *,
        order: str = "desc",
        order_by: str = "timestamp",
        offset: int = 0,
        limit: Optional[int] = None,
    ) -> List[AuditRecord]:
        return list(self.chain.list_records(flt, order=order, order_by=order_by, offset=offset, limit=limit))

    def verify(self, from_seq: int = 1, to_seq: Optional[int] = None) -> ChainVerification:
        return self.chain.verify_chain(from_seq, to_seq, trusted_keys=self.trusted_keys)

    def health(self) -> Dict[str, Any]:
        from . import __version__

        info: Dict[str, Any] = {
            "status": "healthy",
            "version": __version__,
            "lockdown_active": self.chain.breaker.is_lockdown_active(),
            "storage": self.chain.breaker.state(),
            "signing_enabled": self.chain.signer is not None,
        }
        try:
            last_sequence, last_hash = self.chain.head()
            info["chain"] = {"last_sequence": last_sequence, "last_hash": last_hash}
        except RBACError as e:
            info["status"] = "degraded"
            info["chain"] = None
            info["error"] = e.as_dict()
        try:
            info["snapshot"] = snapshot_summary(self.snapshot())
        except RBACError as e:
            info["status"] = "degraded"
            info["snapshot"] = None
            info["snapshot_error"] = e.as_dict()
        return info


# ---------------------------
# App factory
# ---------------------------

def create_app(service: Optional[RBACLensService] = None) -> FastAPI:
    """Create the FastAPI application.

    Without ``service``, one is built from environment configuration.
    """
    from . import __version__

    if service is None:
        service = RBACLensService.from_config(ServiceConfig.from_env())
    config = service.config
    api_auth = service.api_auth

    app = FastAPI(
        title="RBAC Lens",
        description="Effective-permission resolver and tamper-evident RBAC audit log",
        version=__version__,
    )
    app.state.service = service

    @app.exception_handler(RBACError)
    async def _rbac_error_handler(request: Request, exc: RBACError):
        headers = None
        if exc.code == RBAC_E_CHAIN_CORRUPTION:
            headers = {CHAIN_CORRUPT_HEADER: "1"}
            logger.critical("Serving chain corruption on %s: %s", request.url.path, exc.details)
        elif exc.http_status >= 500:
            logger.error("%s %s failed: %s", request.method, request.url.path, exc)
        return JSONResponse(status_code=int(exc.http_status or 400), content=exc.as_dict(), headers=headers)

    # ---------------------------
    # Observability (/metrics)
    # ---------------------------
    if config.metrics_enabled:
        metrics_token = config.metrics_token

        def _authorize_metrics(req: Request) -> bool:
            # If a dedicated metrics token is set, require it via:
            #   Authorization: Bearer <token>  OR  X-Metrics-Token: <token>
            if not metrics_token:
                return True
            authz = (req.headers.get("Authorization") or "").strip()
            if authz.lower().startswith("bearer ") and authz.split(" ", 1)[1].strip() == metrics_token:
                return True
            return (req.headers.get("X-Metrics-Token") or "").strip() == metrics_token

        instrument_fastapi(app, authorize=_authorize_metrics)

    # Request body size limit (checks Content-Length).
    max_request_bytes = config.max_request_bytes

    @app.middleware("http")
    async def _limit_request_size(req: Request, call_next):
        cl = req.headers.get("content-length")
        if cl is not None:
            try:
                too_large = int(cl) > max_request_bytes
            except ValueError:
                # If malformed, fail-closed.
                return JSONResponse(status_code=400, content=bad_request("malformed Content-Length").as_dict())
            if too_large:
                err = rbac_error(
                    RBAC_E_REQUEST_TOO_LARGE, "request body too large", http_status=413, max_bytes=max_request_bytes
                )
                return JSONResponse(status_code=413, content=err.as_dict())
        return await call_next(req)

    # ---------------------------
    # Health
    # ---------------------------

    @app.get("/health")
    @app.get("/v1/health")
    def health_check():
        """Liveness plus chain head, snapshot counts and storage breaker state."""
        info = service.health()
        return JSONResponse(status_code=200 if info["status"] == "healthy" else 503, content=info)

    # ---------------------------
    # Resolver
    # ---------------------------

    @app.get("/api/groups")
    def groups():
        return service.groups()

    @app.get("/api/groups/details")
    def group_details(group_name: Optional[str] = Query(None, alias="groupName")):
        if not group_name:
            raise bad_request("groupName query parameter is required", field="groupName")
        return service.group_details(group_name).to_dict()

    @app.post("/api/permissions/resolve")
    def resolve_permissions(body: SubjectModel):
        subject = Subject.from_dict(body.model_dump(exclude_none=True))
        return service.resolve(subject).to_dict()

    @app.get("/api/namespaces")
    def namespaces():
        return service.namespaces()

    @app.get("/api/roles")
    def roles(namespace: Optional[str] = None):
        return [r.to_dict() for r in service.roles(namespace)]

    @app.get("/api/roles/details")
    def role_details(name: Optional[str] = None, namespace: Optional[str] = None):
        if not name or not namespace:
            raise bad_request("name and namespace query parameters are required")
        return service.role(namespace, name).to_dict()

    @app.get("/api/clusterroles")
    def cluster_roles():
        return [r.to_dict() for r in service.cluster_roles()]

    @app.get("/api/clusterroles/details")
    def cluster_role_details(name: Optional[str] = None):
        if not name:
            raise bad_request("name query parameter is required", field="name")
        return service.cluster_role(name).to_dict()

    @app.get("/api/rolebindings")
    def role_bindings(namespace: Optional[str] = None):
        return [b.to_dict() for b in service.role_bindings(namespace)]

    @app.get("/api/clusterrolebindings")
    def cluster_role_bindings():
        return [b.to_dict() for b in service.cluster_role_bindings()]

    # ---------------------------
    # Audit chain
    # ---------------------------

    @app.get("/api/audit-logs")
    def audit_logs(
        resource_kind: Optional[str] = Query(None, alias="resourceKind"),
        namespace: Optional[str] = None,
        action: Optional[str] = None,
        since: Optional[str] = None,
        until: Optional[str] = None,
        order: str = "desc",
        order_by: str = Query("timestamp", alias="orderBy"),
        offset: int = Query(0, ge=0),
        limit: int = Query(100, ge=1, le=1000),
    ):
        """Audit records, newest first by default."""
        flt = AuditFilter(resource_kind=resource_kind, namespace=namespace, action=action, since=since, until=until)
        records = service.audit_logs(flt, order=order, order_by=order_by, offset=offset, limit=limit)
        return [r.to_api_dict() for r in records]

    @app.get("/api/audit-logs/verify")
    def verify_audit_logs(
        from_seq: int = Query(1, alias="fromSeq", ge=1),
        to_seq: Optional[int] = Query(None, alias="toSeq", ge=0),
        strict: bool = False,
    ):
        """Verify the chain. ``strict=true`` turns divergence into a 500."""
        if strict:
            service.chain.ensure_chain_intact(from_seq, to_seq, trusted_keys=service.trusted_keys)
            return {"ok": True, "firstDivergence": None}
        result = service.verify(from_seq, to_seq)
        headers = None if result.ok else {CHAIN_CORRUPT_HEADER: "1"}
        return JSONResponse(status_code=200, content=result.to_dict(), headers=headers)

    @app.post("/api/audit-logs", status_code=201)
    def append_audit_log(
        body: AppendRequest,
        x_api_key: Optional[str] = Header(None, alias="X-Api-Key"),
    ):
        """Record one mutation. Called by the mutation dispatcher."""
        ctx = api_auth.resolve_context(x_api_key)
        if ctx.error:
            raise rbac_error(RBAC_E_AUTH_REQUIRED, ctx.error, http_status=401)
        if not api_auth.enabled() and config.is_prod:
            raise rbac_error(
                RBAC_E_FORBIDDEN,
                "audit append is disabled until RBAC_API_KEYS_JSON or RBAC_API_KEYS_FILE is configured",
                http_status=403,
            )
        record = service.append(body, dispatcher_id=ctx.dispatcher_id)
        return record.to_dict()

    return app


def main():
    """
    Main entry point for the rbac-lens-server CLI.

    Usage:
        rbac-lens-server                    # Start on default port 8000
        rbac-lens-server --port 9000        # Start on custom port
        rbac-lens-server --host 127.0.0.1   # Bind to localhost only
    """
    import argparse

    parser = argparse.ArgumentParser(
        description="RBAC Lens - effective permissions and RBAC audit log",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Environment Variables:
    RBAC_SNAPSHOT_FILE       JSON snapshot of Roles, ClusterRoles and bindings
    RBAC_AUDIT_DB_PATH       Path to the audit SQLite database (default: rbac_audit.db)
    RBAC_AUDIT_SIGNING_KEY   Hex Ed25519 seed used to sign audit records
    RBAC_API_KEYS_JSON       JSON map of API key -> dispatcher id for POST /api/audit-logs
    RBAC_ENV                 dev | prod
        """,
    )
    parser.add_argument("--host", default="0.0.0.0", help="Host to bind (default: 0.0.0.0)")
    parser.add_argument("--port", type=int, default=8000, help="Port to bind (default: 8000)")
    parser.add_argument("--reload", action="store_true", help="Enable auto-reload for development")
    parser.add_argument("--log-level", default="info", help="Log level (default: info)")
    args = parser.parse_args()

    import uvicorn

    logging.basicConfig(
        level=getattr(logging, str(args.log_level).upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    print(f"Starting RBAC Lens on {args.host}:{args.port}")
    print("  Endpoints:")
    print("    POST /api/permissions/resolve  - Effective permissions for a subject")
    print("    GET  /api/groups               - Groups referenced by bindings")
    print("    GET  /api/audit-logs           - Audit records (newest first)")
    print("    GET  /api/audit-logs/verify    - Verify the audit chain")
    print("    POST /api/audit-logs           - Append an audit record")
    print("    GET  /v1/health                - Health check")
    print()

    if args.reload:
        uvicorn.run("rbac_lens.server:create_app", factory=True, host=args.host, port=args.port, reload=True)
    else:
        uvicorn.run(create_app(), host=args.host, port=args.port)
    return 0


# CLI entry point
if __name__ == "__main__":
    import sys
    sys.exit(main() or 0)
