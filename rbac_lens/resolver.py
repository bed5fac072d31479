"""Access-graph resolver.

Pure functions over a single :class:`~rbac_lens.models.Snapshot`. Nothing here
performs I/O or mutates its inputs, so every function is safe to call
concurrently on a shared snapshot.

Scoping rules for effective permissions:

- RoleBinding -> Role: rules apply in the binding's namespace.
- RoleBinding -> ClusterRole: rules apply in the binding's namespace (not
  cluster-wide).
- ClusterRoleBinding -> ClusterRole: rules apply cluster-wide (``"*"``).
- ClusterRoleBinding -> Role: invalid. The binding is skipped and reported as
  a diagnostic.

Missing roles never fail the call. The binding is skipped and reported, so a
snapshot whose bindings and roles were fetched a moment apart still yields a
usable partial answer.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass
from typing import Any, Callable, Dict, FrozenSet, Iterator, List, Optional, Sequence, Set, Tuple, Union

from .errors import (
    rbac_error,
    not_found,
    RBAC_E_CANCELLED,
    RBAC_E_INVALID_REFERENCE,
    RBAC_E_NOT_FOUND,
)
from .models import (
    CLUSTER_SCOPE,
    ClusterRole,
    ClusterRoleBinding,
    EffectivePermission,
    PolicyRule,
    Role,
    RoleBinding,
    RoleRefScope,
    Snapshot,
    Subject,
    SubjectKind,
    subjects_contain,
)

logger = logging.getLogger("rbac_lens.resolver")

Binding = Union[RoleBinding, ClusterRoleBinding]


@dataclass(frozen=True)
class Diagnostic:
    """A binding that was skipped during resolution, and why."""

    code: str
    binding_kind: str
    binding_name: str
    namespace: str
    message: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "code": self.code,
            "bindingKind": self.binding_kind,
            "bindingName": self.binding_name,
            "namespace": self.namespace,
            "message": self.message,
        }


@dataclass(frozen=True)
class EffectivePermissionSet:
    """Deduplicated, deterministically ordered effective permissions."""

    subject: Subject
    permissions: Tuple[EffectivePermission, ...] = ()
    diagnostics: Tuple[Diagnostic, ...] = ()

    def __len__(self) -> int:
        return len(self.permissions)

    def __iter__(self) -> Iterator[EffectivePermission]:
        return iter(self.permissions)

    def __contains__(self, item: object) -> bool:
        return item in self.permissions

    def scopes(self) -> FrozenSet[str]:
        return frozenset(p.scope for p in self.permissions)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "subject": self.subject.to_dict(),
            "permissions": [p.to_dict() for p in self.permissions],
            "diagnostics": [d.to_dict() for d in self.diagnostics],
        }


@dataclass(frozen=True)
class GroupDetails:
    group_name: str
    role_bindings: Tuple[RoleBinding, ...] = ()
    cluster_role_bindings: Tuple[ClusterRoleBinding, ...] = ()
    cluster_roles: Tuple[ClusterRole, ...] = ()
    diagnostics: Tuple[Diagnostic, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "groupName": self.group_name,
            "roleBindings": [b.to_dict() for b in self.role_bindings],
            "clusterRoleBindings": [b.to_dict() for b in self.cluster_role_bindings],
            "clusterRoles": [r.to_dict() for r in self.cluster_roles],
            "diagnostics": [d.to_dict() for d in self.diagnostics],
        }


class _Index:
    """Lookup tables over a snapshot.

    Objects sharing a key are kept together and their rules are unioned, so
    a snapshot that (improperly) lists the same role twice resolves the same
    way whatever order the copies appear in.
    """

    def __init__(self, snapshot: Snapshot):
        self.roles: Dict[Tuple[str, str], List[Role]] = defaultdict(list)
        self.cluster_roles: Dict[str, List[ClusterRole]] = defaultdict(list)
        for role in snapshot.roles:
            self.roles[(role.namespace, role.name)].append(role)
        for cr in snapshot.cluster_roles:
            self.cluster_roles[cr.name].append(cr)

    def role_rules(self, namespace: str, name: str) -> Optional[List[PolicyRule]]:
        found = self.roles.get((namespace, name))
        if not found:
            return None
        return [rule for role in found for rule in role.rules]

    def cluster_role_rules(self, name: str) -> Optional[List[PolicyRule]]:
        found = self.cluster_roles.get(name)
        if not found:
            return None
        return [rule for cr in found for rule in cr.rules]


def _binding_kind(binding: Binding) -> str:
    return "RoleBinding" if isinstance(binding, RoleBinding) else "ClusterRoleBinding"


def _diagnostic(code: str, binding: Binding, message: str) -> Diagnostic:
    diag = Diagnostic(
        code=code,
        binding_kind=_binding_kind(binding),
        binding_name=binding.name,
        namespace=getattr(binding, "namespace", ""),
        message=message,
    )
    logger.warning(
        "Skipping %s %s: %s (%s)",
        diag.binding_kind,
        f"{diag.namespace}/{diag.binding_name}" if diag.namespace else diag.binding_name,
        message,
        code,
    )
    return diag


def _check_cancel(should_cancel: Optional[Callable[[], bool]]) -> None:
    if should_cancel is not None and should_cancel():
        raise rbac_error(RBAC_E_CANCELLED, "resolution cancelled by caller", retryable=True, http_status=499)


def _resolve_binding(
    binding: Binding,
    index: _Index,
) -> Tuple[Optional[str], Optional[List[PolicyRule]], Optional[Diagnostic]]:
    """Return (scope, rules, diagnostic) for one binding."""
    ref = binding.role_ref
    if isinstance(binding, RoleBinding):
        if ref.scope is RoleRefScope.NAMESPACED:
            rules = index.role_rules(binding.namespace, ref.name)
            missing = f"Role {binding.namespace}/{ref.name} not found"
        else:
            rules = index.cluster_role_rules(ref.name)
            missing = f"ClusterRole {ref.name} not found"
        scope = binding.namespace
    else:
        if ref.scope is not RoleRefScope.CLUSTER:
            return None, None, _diagnostic(
                RBAC_E_INVALID_REFERENCE,
                binding,
                f"ClusterRoleBinding may not reference namespaced Role {ref.name}",
            )
        rules = index.cluster_role_rules(ref.name)
        missing = f"ClusterRole {ref.name} not found"
        scope = CLUSTER_SCOPE

    if rules is None:
        return None, None, _diagnostic(RBAC_E_NOT_FOUND, binding, missing)
    return scope, rules, None


def _all_bindings(snapshot: Snapshot) -> Iterator[Binding]:
    yield from snapshot.role_bindings
    yield from snapshot.cluster_role_bindings


def resolve_effective_permissions(
    subject: Subject,
    snapshot: Snapshot,
    *,
    should_cancel: Optional[Callable[[], bool]] = None,
) -> EffectivePermissionSet:
    """Compute every ``(scope, rule)`` pair granted to ``subject``.

    The result is deduplicated by structural equality and sorted by scope
    then rule fields, so two runs over the same snapshot (in any object
    order) produce identical output.

    ``should_cancel`` is polled before each binding; when it returns true the
    call raises ``RBAC_E_CANCELLED``.
    """
    index = _Index(snapshot)
    granted: Set[EffectivePermission] = set()
    diagnostics: List[Diagnostic] = []

    for binding in _all_bindings(snapshot):
        _check_cancel(should_cancel)
        if not subjects_contain(binding.subjects, subject):
            continue
        scope, rules, diag = _resolve_binding(binding, index)
        if diag is not None:
            diagnostics.append(diag)
            continue
        for rule in rules or ():
            granted.add(EffectivePermission(scope=scope, rule=rule))

    permissions = tuple(sorted(granted, key=lambda p: p.sort_key()))
    diagnostics.sort(key=lambda d: (d.binding_kind, d.namespace, d.binding_name, d.code))
    logger.debug(
        "Resolved %d permission(s) for %s (%d diagnostic(s))",
        len(permissions),
        subject,
        len(diagnostics),
    )
    return EffectivePermissionSet(subject=subject, permissions=permissions, diagnostics=tuple(diagnostics))


def list_referenced_groups(snapshot: Snapshot) -> FrozenSet[str]:
    """Names of every Group subject mentioned by any binding.

    Groups have no object of their own in Kubernetes; this is a derived view.
    """
    return frozenset(
        s.name
        for binding in _all_bindings(snapshot)
        for s in binding.subjects
        if s.kind is SubjectKind.GROUP
    )


def resolve_group_details(group_name: str, snapshot: Snapshot) -> GroupDetails:
    """Raw bindings naming ``group_name``, plus the ClusterRoles its
    ClusterRoleBindings reach."""
    group = Subject(kind=SubjectKind.GROUP, name=group_name)

    role_bindings = tuple(b for b in snapshot.role_bindings if subjects_contain(b.subjects, group))
    cluster_role_bindings = tuple(
        b for b in snapshot.cluster_role_bindings if subjects_contain(b.subjects, group)
    )

    diagnostics: List[Diagnostic] = []
    wanted: Set[str] = set()
    for crb in cluster_role_bindings:
        if crb.role_ref.scope is not RoleRefScope.CLUSTER:
            diagnostics.append(
                _diagnostic(
                    RBAC_E_INVALID_REFERENCE,
                    crb,
                    f"ClusterRoleBinding may not reference namespaced Role {crb.role_ref.name}",
                )
            )
            continue
        wanted.add(crb.role_ref.name)

    cluster_roles: List[ClusterRole] = []
    seen: Set[str] = set()
    for cr in snapshot.cluster_roles:
        if cr.name in wanted and cr.name not in seen:
            seen.add(cr.name)
            cluster_roles.append(cr)
    for name in sorted(wanted - seen):
        for crb in cluster_role_bindings:
            if crb.role_ref.name == name:
                diagnostics.append(_diagnostic(RBAC_E_NOT_FOUND, crb, f"ClusterRole {name} not found"))

    return GroupDetails(
        group_name=group_name,
        role_bindings=role_bindings,
        cluster_role_bindings=cluster_role_bindings,
        cluster_roles=tuple(cluster_roles),
        diagnostics=tuple(diagnostics),
    )


def bindings_for_subject(
    subject: Subject,
    snapshot: Snapshot,
) -> Tuple[Tuple[RoleBinding, ...], Tuple[ClusterRoleBinding, ...]]:
    return (
        tuple(b for b in snapshot.role_bindings if subjects_contain(b.subjects, subject)),
        tuple(b for b in snapshot.cluster_role_bindings if subjects_contain(b.subjects, subject)),
    )


# ---------------------------
# Direct lookups
# ---------------------------

def get_role(snapshot: Snapshot, namespace: str, name: str) -> Role:
    for role in snapshot.roles:
        if role.namespace == namespace and role.name == name:
            return role
    raise not_found(f"Role {namespace}/{name} not found", kind="Role", namespace=namespace, name=name)


def get_cluster_role(snapshot: Snapshot, name: str) -> ClusterRole:
    for cr in snapshot.cluster_roles:
        if cr.name == name:
            return cr
    raise not_found(f"ClusterRole {name} not found", kind="ClusterRole", name=name)


def list_namespaces(snapshot: Snapshot) -> List[str]:
    """Namespaces referenced by Roles and RoleBindings, sorted."""
    names: Set[str] = {r.namespace for r in snapshot.roles}
    names.update(b.namespace for b in snapshot.role_bindings)
    return sorted(names)


def filter_by_namespace(objects: Sequence[Any], namespace: Optional[str]) -> List[Any]:
    if not namespace:
        return list(objects)
    return [o for o in objects if getattr(o, "namespace", None) == namespace]
