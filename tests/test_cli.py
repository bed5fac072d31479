import json
import sqlite3

import pytest

import rbac_cli


SNAPSHOT = {
    "roles": [],
    "clusterRoles": [
        {"metadata": {"name": "view"}, "rules": [{"apiGroups": [""], "resources": ["pods"], "verbs": ["get"]}]}
    ],
    "roleBindings": [
        {
            "metadata": {"name": "dev-view", "namespace": "default"},
            "subjects": [{"kind": "Group", "name": "dev"}],
            "roleRef": {"kind": "ClusterRole", "name": "view"},
        }
    ],
    "clusterRoleBindings": [
        {
            "metadata": {"name": "ops"},
            "subjects": [{"kind": "Group", "name": "ops"}],
            "roleRef": {"kind": "ClusterRole", "name": "view"},
        }
    ],
}


@pytest.fixture
def snapshot_file(tmp_path):
    p = tmp_path / "snapshot.json"
    p.write_text(json.dumps(SNAPSHOT), encoding="utf-8")
    return str(p)


@pytest.fixture(autouse=True)
def _no_signing_key(monkeypatch):
    monkeypatch.delenv("RBAC_AUDIT_SIGNING_KEY", raising=False)


def _run(capsys, *argv):
    code = rbac_cli.main(list(argv))
    out, err = capsys.readouterr()
    return code, out, err


def _last_json(text):
    # Log lines may precede the error envelope on stderr.
    return json.loads(text.strip().splitlines()[-1])


def _append(capsys, db, name):
    return _run(
        capsys, "--db", db, "append", "--action", "create", "--kind", "RoleBinding", "--name", name,
        "--namespace", "default", "--actor-kind", "User", "--actor-name", "alice",
    )


def test_resolve_command(capsys, snapshot_file):
    code, out, _ = _run(capsys, "--snapshot", snapshot_file, "resolve", "--kind", "Group", "--name", "dev")
    assert code == 0
    body = json.loads(out)
    assert [p["scope"] for p in body["permissions"]] == ["default"]


def test_groups_and_group_details(capsys, snapshot_file):
    code, out, _ = _run(capsys, "--snapshot", snapshot_file, "groups")
    assert code == 0
    assert json.loads(out) == ["dev", "ops"]

    code, out, _ = _run(capsys, "--snapshot", snapshot_file, "group-details", "ops")
    assert json.loads(out)["clusterRoles"][0]["metadata"]["name"] == "view"


def test_missing_snapshot_is_a_structured_error(capsys, monkeypatch):
    monkeypatch.delenv("RBAC_SNAPSHOT_FILE", raising=False)
    code, _, err = _run(capsys, "groups")
    assert code == 2
    assert _last_json(err)["code"] == "RBAC_E_BAD_REQUEST"


def test_service_account_needs_namespace(capsys, snapshot_file):
    code, _, err = _run(capsys, "--snapshot", snapshot_file, "resolve", "--kind", "ServiceAccount", "--name", "b")
    assert code == 2
    assert _last_json(err)["code"] == "RBAC_E_BAD_REQUEST"


def test_append_history_verify(capsys, tmp_path):
    db = str(tmp_path / "audit.db")
    for name in ("a", "b", "c"):
        code, out, _ = _append(capsys, db, name)
        assert code == 0
    assert json.loads(out)["sequence"] == 3

    code, out, _ = _run(capsys, "--db", db, "history", "--limit", "2")
    assert [r["id"] for r in json.loads(out)] == [3, 2]

    code, out, _ = _run(capsys, "--db", db, "verify")
    assert code == 0
    assert json.loads(out)["checked"] == 3

    conn = sqlite3.connect(db)
    conn.execute("UPDATE audit_records SET action = 'delete' WHERE sequence = 2")
    conn.commit()
    conn.close()

    code, out, _ = _run(capsys, "--db", db, "verify")
    assert code == 1
    assert json.loads(out)["firstDivergence"] == 2


def test_export_and_verify_export(capsys, tmp_path):
    db = str(tmp_path / "audit.db")
    _append(capsys, db, "a")
    _append(capsys, db, "b")
    out_path = str(tmp_path / "export.jsonl")

    code, out, _ = _run(capsys, "--db", db, "export", "--out", out_path)
    assert code == 0
    assert json.loads(out)["records"] == 2

    code, out, _ = _run(capsys, "verify-export", out_path)
    assert code == 0
    assert json.loads(out)["ok"] is True


def test_signed_append_and_trusted_verify(capsys, tmp_path, monkeypatch):
    from rbac_lens.signing import Ed25519KeyPair

    seed = "22" * 32
    monkeypatch.setenv("RBAC_AUDIT_SIGNING_KEY", seed)
    monkeypatch.setenv("RBAC_AUDIT_SIGNING_KEY_ID", "ci")
    db = str(tmp_path / "audit.db")
    code, out, _ = _append(capsys, db, "a")
    assert json.loads(out)["key_id"] == "ci"

    public_hex = Ed25519KeyPair.from_seed_hex(seed, "ci").public_key_hex
    code, out, _ = _run(capsys, "--db", db, "verify", "--trusted-key", f"ci={public_hex}")
    assert code == 0

    code, _, err = _run(capsys, "--db", db, "verify", "--trusted-key", "garbage")
    assert code == 2
    assert _last_json(err)["code"] == "RBAC_E_BAD_REQUEST"


def test_no_command_prints_help(capsys):
    code, out, _ = _run(capsys)
    assert code == 1
    assert "rbac-lens" in out
