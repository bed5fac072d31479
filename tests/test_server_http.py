import sqlite3

from fastapi.testclient import TestClient

from rbac_lens.audit_chain import AuditChain
from rbac_lens.auth import ApiKeyAuth
from rbac_lens.config import ServiceConfig
from rbac_lens.lockdown import BreakerConfig, StorageBreaker
from rbac_lens.models import (
    ClusterRole,
    ClusterRoleBinding,
    PolicyRule,
    Role,
    RoleBinding,
    RoleRef,
    RoleRefScope,
    Subject,
)
from rbac_lens.server import CHAIN_CORRUPT_HEADER, RBACLensService, create_app
from rbac_lens.signing import Ed25519KeyPair, TrustedKeyStore
from rbac_lens.snapshot import FileSnapshotProvider, StaticSnapshotProvider


DEV = Subject(kind="Group", name="dev")
ADMINS = Subject(kind="Group", name="admins")
PODS_READ = PolicyRule(api_groups={""}, resources={"pods"}, verbs={"get", "list"})

APPEND_BODY = {
    "action": "create",
    "resource_kind": "RoleBinding",
    "resource_name": "dev-view",
    "namespace": "default",
    "actor": {"kind": "User", "name": "alice"},
}


def _provider():
    return StaticSnapshotProvider(
        roles=[Role(name="pod-reader", namespace="default", rules=[PODS_READ])],
        cluster_roles=[ClusterRole(name="viewer", rules=[PODS_READ])],
        role_bindings=[
            RoleBinding(
                name="dev-view",
                namespace="default",
                subjects=[DEV],
                role_ref=RoleRef(scope=RoleRefScope.CLUSTER, name="viewer"),
            ),
            RoleBinding(
                name="dev-pods",
                namespace="team-a",
                subjects=[DEV],
                role_ref=RoleRef(scope=RoleRefScope.NAMESPACED, name="missing"),
            ),
        ],
        cluster_role_bindings=[
            ClusterRoleBinding(
                name="admins", subjects=[ADMINS], role_ref=RoleRef(scope=RoleRefScope.CLUSTER, name="viewer")
            )
        ],
    )


def _service(tmp_path, *, provider=None, config=None, api_auth=None, signer=None, trusted_keys=None):
    chain = AuditChain(str(tmp_path / "audit.db"), signer=signer)
    return RBACLensService(
        provider or _provider(),
        chain,
        config=config or ServiceConfig(db_path=str(tmp_path / "audit.db")),
        api_auth=api_auth,
        trusted_keys=trusted_keys,
    )


def _client(tmp_path, **kw) -> TestClient:
    return TestClient(create_app(_service(tmp_path, **kw)))


# -----------------------
# Resolver endpoints
# -----------------------

def test_resolve_permissions(tmp_path):
    client = _client(tmp_path)
    r = client.post("/api/permissions/resolve", json={"kind": "Group", "name": "dev"})
    assert r.status_code == 200
    body = r.json()
    assert body["subject"] == {"kind": "Group", "name": "dev"}
    assert [p["scope"] for p in body["permissions"]] == ["default"]
    assert body["permissions"][0]["rule"]["verbs"] == ["get", "list"]
    assert body["diagnostics"][0]["code"] == "RBAC_E_NOT_FOUND"


def test_resolve_rejects_invalid_subject(tmp_path):
    client = _client(tmp_path)
    r = client.post("/api/permissions/resolve", json={"kind": "ServiceAccount", "name": "builder"})
    assert r.status_code == 400
    assert r.json()["code"] == "RBAC_E_BAD_REQUEST"


def test_groups_and_group_details(tmp_path):
    client = _client(tmp_path)
    assert client.get("/api/groups").json() == ["admins", "dev"]

    r = client.get("/api/groups/details", params={"groupName": "admins"})
    assert r.status_code == 200
    body = r.json()
    assert body["groupName"] == "admins"
    assert [b["metadata"]["name"] for b in body["clusterRoleBindings"]] == ["admins"]
    assert [cr["metadata"]["name"] for cr in body["clusterRoles"]] == ["viewer"]

    assert client.get("/api/groups/details").status_code == 400


def test_raw_listings(tmp_path):
    client = _client(tmp_path)
    assert client.get("/api/namespaces").json() == ["default", "team-a"]
    assert [r["metadata"]["name"] for r in client.get("/api/roles", params={"namespace": "default"}).json()] == [
        "pod-reader"
    ]
    assert client.get("/api/roles", params={"namespace": "team-a"}).json() == []
    assert [b["metadata"]["name"] for b in client.get("/api/rolebindings").json()] == ["dev-view", "dev-pods"]
    assert len(client.get("/api/clusterrolebindings").json()) == 1
    assert client.get("/api/clusterroles").json()[0]["metadata"]["name"] == "viewer"


def test_direct_lookups_return_404(tmp_path):
    client = _client(tmp_path)
    r = client.get("/api/roles/details", params={"namespace": "default", "name": "pod-reader"})
    assert r.status_code == 200

    r = client.get("/api/roles/details", params={"namespace": "default", "name": "nope"})
    assert r.status_code == 404
    assert r.json()["code"] == "RBAC_E_NOT_FOUND"

    assert client.get("/api/clusterroles/details", params={"name": "viewer"}).status_code == 200
    assert client.get("/api/clusterroles/details", params={"name": "nope"}).status_code == 404


def test_unreadable_snapshot_is_503(tmp_path):
    client = _client(tmp_path, provider=FileSnapshotProvider(str(tmp_path / "missing.json")))
    r = client.get("/api/groups")
    assert r.status_code == 503
    body = r.json()
    assert body["code"] == "RBAC_E_UPSTREAM_UNAVAILABLE"
    assert body["retryable"] is True


# -----------------------
# Audit endpoints
# -----------------------

def test_append_list_and_verify(tmp_path):
    client = _client(tmp_path)
    for name in ("a", "b", "c"):
        r = client.post("/api/audit-logs", json={**APPEND_BODY, "resource_name": name})
        assert r.status_code == 201
    assert r.json()["sequence"] == 3

    logs = client.get("/api/audit-logs").json()
    assert [entry["id"] for entry in logs] == [3, 2, 1]
    assert logs[0]["actor"] == {"kind": "User", "name": "alice"}

    page = client.get("/api/audit-logs", params={"order": "asc", "offset": 1, "limit": 1}).json()
    assert [entry["resource_name"] for entry in page] == ["b"]

    r = client.get("/api/audit-logs/verify")
    assert r.status_code == 200
    assert r.json() == {"ok": True, "firstDivergence": None, "checked": 3, "reason": "OK"}
    assert CHAIN_CORRUPT_HEADER not in r.headers


def test_audit_log_filters(tmp_path):
    client = _client(tmp_path)
    client.post("/api/audit-logs", json=APPEND_BODY)
    client.post(
        "/api/audit-logs",
        json={**APPEND_BODY, "resource_kind": "ClusterRole", "resource_name": "viewer", "namespace": None},
    )
    logs = client.get("/api/audit-logs", params={"resourceKind": "ClusterRole"}).json()
    assert [entry["resource_name"] for entry in logs] == ["viewer"]
    assert logs[0]["namespace"] is None

    r = client.get("/api/audit-logs", params={"since": "last tuesday"})
    assert r.status_code == 400


def test_tampered_chain_is_flagged(tmp_path):
    service = _service(tmp_path)
    client = TestClient(create_app(service))
    for name in ("a", "b", "c"):
        client.post("/api/audit-logs", json={**APPEND_BODY, "resource_name": name})

    conn = sqlite3.connect(service.chain.db_path)
    conn.execute("UPDATE audit_records SET resource_name = 'evil' WHERE sequence = 2")
    conn.commit()
    conn.close()

    r = client.get("/api/audit-logs/verify", params={"fromSeq": 1, "toSeq": 3})
    assert r.status_code == 200
    assert r.json()["ok"] is False
    assert r.json()["firstDivergence"] == 2
    assert r.headers[CHAIN_CORRUPT_HEADER] == "1"

    r = client.get("/api/audit-logs/verify", params={"strict": "true"})
    assert r.status_code == 500
    assert r.json()["code"] == "RBAC_E_CHAIN_CORRUPTION"
    assert r.headers[CHAIN_CORRUPT_HEADER] == "1"


def test_signed_chain_verifies_over_http(tmp_path):
    kp = Ed25519KeyPair.generate("audit")
    trusted = TrustedKeyStore.from_mapping({"audit": kp.public_key_hex})
    client = _client(tmp_path, signer=kp, trusted_keys=trusted)
    record = client.post("/api/audit-logs", json=APPEND_BODY).json()
    assert record["key_id"] == "audit"
    assert record["signature_b64"]
    assert client.get("/api/audit-logs/verify").json()["ok"] is True


def test_append_requires_api_key_when_configured(tmp_path):
    client = _client(tmp_path, api_auth=ApiKeyAuth.from_mapping({"k-1": "dispatcher"}))
    r = client.post("/api/audit-logs", json=APPEND_BODY)
    assert r.status_code == 401
    assert r.json()["code"] == "RBAC_E_AUTH_REQUIRED"

    r = client.post("/api/audit-logs", json=APPEND_BODY, headers={"X-Api-Key": "wrong"})
    assert r.status_code == 401

    r = client.post("/api/audit-logs", json=APPEND_BODY, headers={"X-Api-Key": "k-1"})
    assert r.status_code == 201


def test_append_is_refused_in_prod_without_keys(tmp_path):
    client = _client(tmp_path, config=ServiceConfig(env="prod"))
    r = client.post("/api/audit-logs", json=APPEND_BODY)
    assert r.status_code == 403
    assert r.json()["code"] == "RBAC_E_FORBIDDEN"


def test_append_rejects_bad_actor(tmp_path):
    client = _client(tmp_path)
    r = client.post("/api/audit-logs", json={**APPEND_BODY, "actor": {"kind": "Robot", "name": "r2"}})
    assert r.status_code == 400
    assert client.get("/api/audit-logs").json() == []


# -----------------------
# Service plumbing
# -----------------------

def test_request_size_limit(tmp_path):
    client = _client(tmp_path, config=ServiceConfig(max_request_bytes=16))
    r = client.post("/api/audit-logs", json=APPEND_BODY)
    assert r.status_code == 413
    assert r.json()["code"] == "RBAC_E_REQUEST_TOO_LARGE"


def test_health_reports_chain_head(tmp_path):
    client = _client(tmp_path)
    client.post("/api/audit-logs", json=APPEND_BODY)
    for path in ("/health", "/v1/health"):
        r = client.get(path)
        assert r.status_code == 200
        body = r.json()
        assert body["status"] == "healthy"
        assert body["chain"]["last_sequence"] == 1
        assert body["lockdown_active"] is False
        assert body["snapshot"] == {"roles": 1, "clusterRoles": 1, "roleBindings": 2, "clusterRoleBindings": 1}
        assert body["storage"]["tripped_by"] is None


def test_health_is_degraded_when_snapshot_is_unreadable(tmp_path):
    client = _client(tmp_path, provider=FileSnapshotProvider(str(tmp_path / "missing.json")))
    r = client.get("/health")
    assert r.status_code == 503
    body = r.json()
    assert body["status"] == "degraded"
    assert body["snapshot"] is None
    assert body["snapshot_error"]["details"]["reason"] == "SNAPSHOT_MISSING"
    assert body["chain"]["last_sequence"] == 0


def test_health_reports_tripped_storage(tmp_path):
    breaker = StorageBreaker(BreakerConfig(failure_threshold=1, lockdown_seconds=60))
    chain = AuditChain(str(tmp_path / "audit.db"), breaker=breaker)
    breaker.on_error("append", sqlite3.OperationalError("database is locked"))
    client = TestClient(create_app(RBACLensService(_provider(), chain, config=ServiceConfig())))

    r = client.get("/health")
    assert r.status_code == 503
    body = r.json()
    assert body["lockdown_active"] is True
    assert body["storage"]["tripped_by"] == {"operation": "append", "cause": "contention"}
    assert body["error"]["details"]["reason"] == "LOCKDOWN_ACTIVE"
    assert body["snapshot"]["roles"] == 1


def test_metrics_endpoint_token(tmp_path):
    client = _client(tmp_path, config=ServiceConfig(metrics_token="s3cret"))
    client.post("/api/permissions/resolve", json={"kind": "Group", "name": "dev"})

    assert client.get("/metrics").status_code == 403
    r = client.get("/metrics", headers={"Authorization": "Bearer s3cret"})
    assert r.status_code == 200
    assert "rbac_resolutions_total" in r.text
    assert client.get("/metrics", headers={"X-Metrics-Token": "s3cret"}).status_code == 200


def test_metrics_can_be_disabled(tmp_path):
    client = _client(tmp_path, config=ServiceConfig(metrics_enabled=False))
    assert client.get("/metrics").status_code == 404
