import json
import random

import pytest

from rbac_lens.errors import RBACError, RBAC_E_CANCELLED, RBAC_E_INVALID_REFERENCE, RBAC_E_NOT_FOUND
from rbac_lens.models import (
    ClusterRole,
    ClusterRoleBinding,
    EffectivePermission,
    PolicyRule,
    Role,
    RoleBinding,
    RoleRef,
    RoleRefScope,
    Snapshot,
    Subject,
)
from rbac_lens.resolver import (
    bindings_for_subject,
    get_cluster_role,
    get_role,
    list_namespaces,
    list_referenced_groups,
    resolve_effective_permissions,
    resolve_group_details,
)


PODS_READ = PolicyRule(api_groups={""}, resources={"pods"}, verbs={"get", "list"})
EVERYTHING = PolicyRule(api_groups={"*"}, resources={"*"}, verbs={"*"})
SECRETS_READ = PolicyRule(api_groups={""}, resources={"secrets"}, verbs={"get"})

ALICE = Subject(kind="User", name="alice")
DEV = Subject(kind="Group", name="dev")
ADMINS = Subject(kind="Group", name="admins")
BUILDER = Subject(kind="ServiceAccount", name="builder", namespace="ci")


def _cluster_ref(name):
    return RoleRef(scope=RoleRefScope.CLUSTER, name=name)


def _role_ref(name):
    return RoleRef(scope=RoleRefScope.NAMESPACED, name=name)


def _mixed_snapshot():
    return Snapshot(
        roles=[
            Role(name="secret-reader", namespace="team-a", rules=[SECRETS_READ]),
        ],
        cluster_roles=[
            ClusterRole(name="viewer", rules=[PODS_READ]),
            ClusterRole(name="cluster-admin", rules=[EVERYTHING]),
        ],
        role_bindings=[
            RoleBinding(name="dev-view", namespace="default", subjects=[DEV], role_ref=_cluster_ref("viewer")),
            RoleBinding(name="dev-secrets", namespace="team-a", subjects=[DEV, ALICE], role_ref=_role_ref("secret-reader")),
            RoleBinding(name="ci-view", namespace="ci", subjects=[BUILDER], role_ref=_cluster_ref("viewer")),
        ],
        cluster_role_bindings=[
            ClusterRoleBinding(name="admins", subjects=[ADMINS], role_ref=_cluster_ref("cluster-admin")),
        ],
    )


# -----------------------
# Scenarios
# -----------------------

def test_empty_snapshot_yields_empty_set():
    result = resolve_effective_permissions(ALICE, Snapshot())
    assert len(result) == 0
    assert result.diagnostics == ()


def test_role_binding_to_cluster_role_is_namespace_scoped():
    snap = Snapshot(
        cluster_roles=[ClusterRole(name="viewer", rules=[PODS_READ])],
        role_bindings=[RoleBinding(name="rb", namespace="default", subjects=[DEV], role_ref=_cluster_ref("viewer"))],
    )
    result = resolve_effective_permissions(DEV, snap)
    assert result.permissions == (EffectivePermission(scope="default", rule=PODS_READ),)


def test_cluster_role_binding_is_cluster_wide():
    snap = Snapshot(
        cluster_roles=[ClusterRole(name="cluster-admin", rules=[EVERYTHING])],
        cluster_role_bindings=[
            ClusterRoleBinding(name="crb", subjects=[ADMINS], role_ref=_cluster_ref("cluster-admin"))
        ],
    )
    result = resolve_effective_permissions(ADMINS, snap)
    assert result.scopes() == frozenset({"*"})
    assert EffectivePermission(scope="*", rule=EVERYTHING) in result


def test_role_binding_to_role_uses_binding_namespace():
    result = resolve_effective_permissions(ALICE, _mixed_snapshot())
    assert result.permissions == (EffectivePermission(scope="team-a", rule=SECRETS_READ),)


def test_subject_without_bindings_is_not_an_error():
    result = resolve_effective_permissions(Subject(kind="User", name="nobody"), _mixed_snapshot())
    assert len(result) == 0


def test_subjects_match_structurally_only():
    # A group and a user with the same name are different subjects.
    result = resolve_effective_permissions(Subject(kind="User", name="dev"), _mixed_snapshot())
    assert len(result) == 0

    # Service accounts match on namespace too.
    other_ns = Subject(kind="ServiceAccount", name="builder", namespace="prod")
    assert len(resolve_effective_permissions(other_ns, _mixed_snapshot())) == 0
    assert resolve_effective_permissions(BUILDER, _mixed_snapshot()).scopes() == frozenset({"ci"})


# -----------------------
# Set semantics and determinism
# -----------------------

def test_duplicate_grants_are_deduplicated():
    snap = Snapshot(
        cluster_roles=[ClusterRole(name="viewer", rules=[PODS_READ, PODS_READ])],
        role_bindings=[
            RoleBinding(name="a", namespace="default", subjects=[DEV], role_ref=_cluster_ref("viewer")),
            RoleBinding(name="b", namespace="default", subjects=[DEV], role_ref=_cluster_ref("viewer")),
        ],
    )
    result = resolve_effective_permissions(DEV, snap)
    assert len(result) == 1

    # Both bindings stay visible in group details.
    details = resolve_group_details("dev", snap)
    assert [b.name for b in details.role_bindings] == ["a", "b"]


def test_result_is_independent_of_object_order():
    snap = _mixed_snapshot()
    expected = resolve_effective_permissions(DEV, snap).to_dict()

    rng = random.Random(7)
    for _ in range(10):
        shuffled = Snapshot(
            roles=rng.sample(list(snap.roles), len(snap.roles)),
            cluster_roles=rng.sample(list(snap.cluster_roles), len(snap.cluster_roles)),
            role_bindings=rng.sample(list(snap.role_bindings), len(snap.role_bindings)),
            cluster_role_bindings=rng.sample(list(snap.cluster_role_bindings), len(snap.cluster_role_bindings)),
        )
        assert resolve_effective_permissions(DEV, shuffled).to_dict() == expected


def test_output_is_byte_identical_across_runs():
    snap = _mixed_snapshot()
    first = json.dumps(resolve_effective_permissions(DEV, snap).to_dict(), sort_keys=True)
    second = json.dumps(resolve_effective_permissions(DEV, snap).to_dict(), sort_keys=True)
    assert first == second


def test_permissions_are_sorted_by_scope_then_rule():
    result = resolve_effective_permissions(DEV, _mixed_snapshot())
    scopes = [p.scope for p in result]
    assert scopes == sorted(scopes)
    assert scopes == ["default", "team-a"]


def test_same_named_role_listed_twice_unions_rules():
    snap = Snapshot(
        roles=[
            Role(name="r", namespace="default", rules=[PODS_READ]),
            Role(name="r", namespace="default", rules=[SECRETS_READ]),
        ],
        role_bindings=[RoleBinding(name="rb", namespace="default", subjects=[ALICE], role_ref=_role_ref("r"))],
    )
    reversed_snap = Snapshot(roles=tuple(reversed(snap.roles)), role_bindings=snap.role_bindings)
    a = resolve_effective_permissions(ALICE, snap)
    b = resolve_effective_permissions(ALICE, reversed_snap)
    assert a == b
    assert len(a) == 2


# -----------------------
# Diagnostics
# -----------------------

def test_cluster_role_binding_to_role_is_skipped_with_diagnostic():
    snap = Snapshot(
        roles=[Role(name="secret-reader", namespace="team-a", rules=[SECRETS_READ])],
        cluster_roles=[ClusterRole(name="viewer", rules=[PODS_READ])],
        role_bindings=[RoleBinding(name="ok", namespace="default", subjects=[DEV], role_ref=_cluster_ref("viewer"))],
        cluster_role_bindings=[
            ClusterRoleBinding(name="bad", subjects=[DEV], role_ref=_role_ref("secret-reader"))
        ],
    )
    result = resolve_effective_permissions(DEV, snap)
    assert result.permissions == (EffectivePermission(scope="default", rule=PODS_READ),)
    assert len(result.diagnostics) == 1
    diag = result.diagnostics[0]
    assert diag.code == RBAC_E_INVALID_REFERENCE
    assert diag.binding_kind == "ClusterRoleBinding"
    assert diag.binding_name == "bad"


def test_missing_role_is_skipped_with_diagnostic(caplog):
    snap = Snapshot(
        cluster_roles=[ClusterRole(name="viewer", rules=[PODS_READ])],
        role_bindings=[
            RoleBinding(name="dangling", namespace="default", subjects=[DEV], role_ref=_role_ref("gone")),
            RoleBinding(name="ok", namespace="default", subjects=[DEV], role_ref=_cluster_ref("viewer")),
        ],
        cluster_role_bindings=[ClusterRoleBinding(name="dangling-crb", subjects=[DEV], role_ref=_cluster_ref("gone"))],
    )
    with caplog.at_level("WARNING", logger="rbac_lens.resolver"):
        result = resolve_effective_permissions(DEV, snap)
    assert len(result) == 1
    assert {d.code for d in result.diagnostics} == {RBAC_E_NOT_FOUND}
    assert [d.binding_name for d in result.diagnostics] == ["dangling-crb", "dangling"]
    assert "dangling" in caplog.text


def test_role_in_other_namespace_does_not_satisfy_role_binding():
    snap = Snapshot(
        roles=[Role(name="secret-reader", namespace="team-b", rules=[SECRETS_READ])],
        role_bindings=[
            RoleBinding(name="rb", namespace="team-a", subjects=[ALICE], role_ref=_role_ref("secret-reader"))
        ],
    )
    result = resolve_effective_permissions(ALICE, snap)
    assert len(result) == 0
    assert result.diagnostics[0].code == RBAC_E_NOT_FOUND


def test_cancellation_raises_and_has_no_side_effects():
    calls = []

    def should_cancel():
        calls.append(1)
        return len(calls) > 1

    with pytest.raises(RBACError) as ei:
        resolve_effective_permissions(DEV, _mixed_snapshot(), should_cancel=should_cancel)
    assert ei.value.code == RBAC_E_CANCELLED
    assert ei.value.http_status == 499

    # The snapshot is untouched and resolves normally afterwards.
    assert len(resolve_effective_permissions(DEV, _mixed_snapshot())) == 2


# -----------------------
# Groups
# -----------------------

def test_list_referenced_groups_spans_both_binding_kinds():
    assert list_referenced_groups(_mixed_snapshot()) == frozenset({"dev", "admins"})
    assert list_referenced_groups(Snapshot()) == frozenset()


def test_group_details_joins_cluster_roles_by_name():
    snap = _mixed_snapshot()
    details = resolve_group_details("admins", snap)
    assert details.role_bindings == ()
    assert [b.name for b in details.cluster_role_bindings] == ["admins"]
    assert [cr.name for cr in details.cluster_roles] == ["cluster-admin"]

    dev = resolve_group_details("dev", snap)
    assert [b.name for b in dev.role_bindings] == ["dev-view", "dev-secrets"]
    assert dev.cluster_roles == ()


def test_group_details_reports_missing_cluster_role():
    snap = Snapshot(
        cluster_role_bindings=[ClusterRoleBinding(name="crb", subjects=[ADMINS], role_ref=_cluster_ref("gone"))],
    )
    details = resolve_group_details("admins", snap)
    assert details.cluster_roles == ()
    assert details.diagnostics[0].code == RBAC_E_NOT_FOUND
    assert details.to_dict()["groupName"] == "admins"


def test_group_details_for_unknown_group_is_empty():
    details = resolve_group_details("ghosts", _mixed_snapshot())
    assert details.role_bindings == ()
    assert details.cluster_role_bindings == ()
    assert details.cluster_roles == ()


# -----------------------
# Direct lookups
# -----------------------

def test_direct_lookups_raise_not_found():
    snap = _mixed_snapshot()
    assert get_role(snap, "team-a", "secret-reader").rules == (SECRETS_READ,)
    assert get_cluster_role(snap, "viewer").name == "viewer"

    with pytest.raises(RBACError) as ei:
        get_role(snap, "default", "secret-reader")
    assert ei.value.code == RBAC_E_NOT_FOUND
    assert ei.value.http_status == 404

    with pytest.raises(RBACError):
        get_cluster_role(snap, "nope")


def test_list_namespaces_and_bindings_for_subject():
    snap = _mixed_snapshot()
    assert list_namespaces(snap) == ["ci", "default", "team-a"]

    rbs, crbs = bindings_for_subject(DEV, snap)
    assert [b.name for b in rbs] == ["dev-view", "dev-secrets"]
    assert crbs == ()
