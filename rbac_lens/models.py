"""RBAC object model.

Frozen, structurally comparable representations of the Kubernetes RBAC
objects the resolver consumes, plus converters to and from the JSON shape the
cluster API returns (``metadata.name``, ``roleRef.kind`` and so on).

Subjects and rules are compared by exact structural equality only. There is
no string-based or fuzzy matching anywhere in the resolver.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, FrozenSet, Iterable, List, Mapping, Tuple

from .errors import bad_request


class SubjectKind(str, Enum):
    USER = "User"
    GROUP = "Group"
    SERVICE_ACCOUNT = "ServiceAccount"


class RoleRefScope(str, Enum):
    NAMESPACED = "Namespaced"
    CLUSTER = "Cluster"


# Scope marker for permissions granted cluster-wide.
CLUSTER_SCOPE = "*"

_ROLE_REF_KIND_TO_SCOPE = {
    "Role": RoleRefScope.NAMESPACED,
    "ClusterRole": RoleRefScope.CLUSTER,
}
_SCOPE_TO_ROLE_REF_KIND = {v: k for k, v in _ROLE_REF_KIND_TO_SCOPE.items()}

RBAC_API_GROUP = "rbac.authorization.k8s.io"


def _require_str(obj: Mapping[str, Any], key: str, where: str) -> str:
    value = obj.get(key)
    if not isinstance(value, str) or not value:
        raise bad_request(f"{where}: '{key}' must be a non-empty string", field=key)
    return value


def _str_set(values: Any, where: str) -> FrozenSet[str]:
    if values is None:
        return frozenset()
    if isinstance(values, str) or not isinstance(values, (list, tuple, set, frozenset)):
        raise bad_request(f"{where}: expected a list of strings")
    out = []
    for v in values:
        if not isinstance(v, str):
            raise bad_request(f"{where}: expected a list of strings")
        out.append(v)
    return frozenset(out)


def _metadata(obj: Mapping[str, Any], where: str) -> Mapping[str, Any]:
    meta = obj.get("metadata")
    if meta is None:
        # Accept the flattened form as well ({"name": ..., "namespace": ...}).
        return obj
    if not isinstance(meta, Mapping):
        raise bad_request(f"{where}: 'metadata' must be an object")
    return meta


@dataclass(frozen=True)
class Subject:
    """An identity that can be granted permissions.

    ``namespace`` is meaningful only for service accounts. Kubernetes ignores
    it on users and groups, so it is normalized to ``""`` there.
    """

    kind: SubjectKind
    name: str
    namespace: str = ""

    def __post_init__(self) -> None:
        try:
            kind = SubjectKind(self.kind)
        except ValueError:
            raise ValueError(f"unsupported subject kind: {self.kind!r}") from None
        object.__setattr__(self, "kind", kind)
        if not self.name:
            raise ValueError("subject name must be non-empty")
        if kind is SubjectKind.SERVICE_ACCOUNT:
            if not self.namespace:
                raise ValueError("ServiceAccount subjects require a namespace")
        else:
            object.__setattr__(self, "namespace", "")

    @classmethod
    def from_dict(cls, d: Mapping[str, Any], default_namespace: str = "") -> "Subject":
        """Build a subject from its JSON form.

        A ServiceAccount without a namespace takes ``default_namespace``; a
        RoleBinding passes its own namespace here, the way the API server
        authorizes such subjects.
        """
        if not isinstance(d, Mapping):
            raise bad_request("subject must be an object")
        try:
            return cls(
                kind=_require_str(d, "kind", "subject"),
                name=_require_str(d, "name", "subject"),
                namespace=str(d.get("namespace") or default_namespace),
            )
        except ValueError as e:
            raise bad_request(f"invalid subject: {e}") from e

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {"kind": self.kind.value, "name": self.name}
        if self.kind is SubjectKind.SERVICE_ACCOUNT:
            d["namespace"] = self.namespace
        return d

    def __str__(self) -> str:
        if self.namespace:
            return f"{self.kind.value}/{self.namespace}/{self.name}"
        return f"{self.kind.value}/{self.name}"


@dataclass(frozen=True)
class PolicyRule:
    api_groups: FrozenSet[str] = frozenset()
    resources: FrozenSet[str] = frozenset()
    verbs: FrozenSet[str] = frozenset()
    # Empty means unrestricted.
    resource_names: FrozenSet[str] = frozenset()
    non_resource_urls: FrozenSet[str] = frozenset()

    def __post_init__(self) -> None:
        for name in ("api_groups", "resources", "verbs", "resource_names", "non_resource_urls"):
            value = getattr(self, name)
            if not isinstance(value, frozenset):
                object.__setattr__(self, name, frozenset(value))

    def sort_key(self) -> Tuple[Tuple[str, ...], ...]:
        return (
            tuple(sorted(self.api_groups)),
            tuple(sorted(self.resources)),
            tuple(sorted(self.verbs)),
            tuple(sorted(self.resource_names)),
            tuple(sorted(self.non_resource_urls)),
        )

    @classmethod
    def from_dict(cls, d: Mapping[str, Any]) -> "PolicyRule":
        if not isinstance(d, Mapping):
            raise bad_request("rule must be an object")
        return cls(
            api_groups=_str_set(d.get("apiGroups"), "rule.apiGroups"),
            resources=_str_set(d.get("resources"), "rule.resources"),
            verbs=_str_set(d.get("verbs"), "rule.verbs"),
            resource_names=_str_set(d.get("resourceNames"), "rule.resourceNames"),
            non_resource_urls=_str_set(d.get("nonResourceURLs"), "rule.nonResourceURLs"),
        )

    def to_dict(self) -> Dict[str, Any]:
        api_groups, resources, verbs, resource_names, non_resource_urls = self.sort_key()
        d: Dict[str, Any] = {
            "apiGroups": list(api_groups),
            "resources": list(resources),
            "verbs": list(verbs),
        }
        if resource_names:
            d["resourceNames"] = list(resource_names)
        if non_resource_urls:
            d["nonResourceURLs"] = list(non_resource_urls)
        return d


@dataclass(frozen=True)
class RoleRef:
    scope: RoleRefScope
    name: str

    def __post_init__(self) -> None:
        object.__setattr__(self, "scope", RoleRefScope(self.scope))

    @classmethod
    def from_dict(cls, d: Mapping[str, Any]) -> "RoleRef":
        if not isinstance(d, Mapping):
            raise bad_request("roleRef must be an object")
        kind = _require_str(d, "kind", "roleRef")
        scope = _ROLE_REF_KIND_TO_SCOPE.get(kind)
        if scope is None:
            raise bad_request(f"roleRef: unsupported kind {kind!r}", field="kind")
        return cls(scope=scope, name=_require_str(d, "name", "roleRef"))

    def to_dict(self) -> Dict[str, Any]:
        return {"apiGroup": RBAC_API_GROUP, "kind": _SCOPE_TO_ROLE_REF_KIND[self.scope], "name": self.name}


def _rules(raw: Any, where: str) -> Tuple[PolicyRule, ...]:
    if raw is None:
        return ()
    if not isinstance(raw, list):
        raise bad_request(f"{where}: 'rules' must be a list")
    return tuple(PolicyRule.from_dict(r) for r in raw)


def _subjects(raw: Any, where: str, default_namespace: str = "") -> Tuple[Subject, ...]:
    if raw is None:
        return ()
    if not isinstance(raw, list):
        raise bad_request(f"{where}: 'subjects' must be a list")
    return tuple(Subject.from_dict(s, default_namespace) for s in raw)


@dataclass(frozen=True)
class Role:
    name: str
    namespace: str
    rules: Tuple[PolicyRule, ...] = ()

    def __post_init__(self) -> None:
        object.__setattr__(self, "rules", tuple(self.rules))

    @classmethod
    def from_dict(cls, d: Mapping[str, Any]) -> "Role":
        meta = _metadata(d, "Role")
        return cls(
            name=_require_str(meta, "name", "Role.metadata"),
            namespace=_require_str(meta, "namespace", "Role.metadata"),
            rules=_rules(d.get("rules"), "Role"),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": "Role",
            "metadata": {"name": self.name, "namespace": self.namespace},
            "rules": [r.to_dict() for r in self.rules],
        }


@dataclass(frozen=True)
class ClusterRole:
    name: str
    rules: Tuple[PolicyRule, ...] = ()

    def __post_init__(self) -> None:
        object.__setattr__(self, "rules", tuple(self.rules))

    @classmethod
    def from_dict(cls, d: Mapping[str, Any]) -> "ClusterRole":
        meta = _metadata(d, "ClusterRole")
        return cls(
            name=_require_str(meta, "name", "ClusterRole.metadata"),
            rules=_rules(d.get("rules"), "ClusterRole"),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": "ClusterRole",
            "metadata": {"name": self.name},
            "rules": [r.to_dict() for r in self.rules],
        }


@dataclass(frozen=True)
class RoleBinding:
    name: str
    namespace: str
    subjects: Tuple[Subject, ...]
    role_ref: RoleRef

    def __post_init__(self) -> None:
        object.__setattr__(self, "subjects", tuple(self.subjects))

    @classmethod
    def from_dict(cls, d: Mapping[str, Any]) -> "RoleBinding":
        meta = _metadata(d, "RoleBinding")
        namespace = _require_str(meta, "namespace", "RoleBinding.metadata")
        return cls(
            name=_require_str(meta, "name", "RoleBinding.metadata"),
            namespace=namespace,
            subjects=_subjects(d.get("subjects"), "RoleBinding", default_namespace=namespace),
            role_ref=RoleRef.from_dict(d.get("roleRef")),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": "RoleBinding",
            "metadata": {"name": self.name, "namespace": self.namespace},
            "subjects": [s.to_dict() for s in self.subjects],
            "roleRef": self.role_ref.to_dict(),
        }


@dataclass(frozen=True)
class ClusterRoleBinding:
    name: str
    subjects: Tuple[Subject, ...]
    role_ref: RoleRef

    def __post_init__(self) -> None:
        object.__setattr__(self, "subjects", tuple(self.subjects))

    @classmethod
    def from_dict(cls, d: Mapping[str, Any]) -> "ClusterRoleBinding":
        meta = _metadata(d, "ClusterRoleBinding")
        return cls(
            name=_require_str(meta, "name", "ClusterRoleBinding.metadata"),
            subjects=_subjects(d.get("subjects"), "ClusterRoleBinding"),
            role_ref=RoleRef.from_dict(d.get("roleRef")),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": "ClusterRoleBinding",
            "metadata": {"name": self.name},
            "subjects": [s.to_dict() for s in self.subjects],
            "roleRef": self.role_ref.to_dict(),
        }


@dataclass(frozen=True)
class Snapshot:
    """All four RBAC collections as of one logical point in time."""

    roles: Tuple[Role, ...] = ()
    cluster_roles: Tuple[ClusterRole, ...] = ()
    role_bindings: Tuple[RoleBinding, ...] = ()
    cluster_role_bindings: Tuple[ClusterRoleBinding, ...] = ()

    def __post_init__(self) -> None:
        for name in ("roles", "cluster_roles", "role_bindings", "cluster_role_bindings"):
            object.__setattr__(self, name, tuple(getattr(self, name)))

    @classmethod
    def from_dict(cls, d: Mapping[str, Any]) -> "Snapshot":
        """Build a snapshot from ``{"roles": [...], "clusterRoles": [...], ...}``.

        Each collection may be a plain list or a Kubernetes ``List`` object
        with an ``items`` key, as produced by ``kubectl get ... -o json``.
        """
        if not isinstance(d, Mapping):
            raise bad_request("snapshot must be an object")
        return cls(
            roles=tuple(Role.from_dict(x) for x in _items(d.get("roles"))),
            cluster_roles=tuple(ClusterRole.from_dict(x) for x in _items(d.get("clusterRoles"))),
            role_bindings=tuple(RoleBinding.from_dict(x) for x in _items(d.get("roleBindings"))),
            cluster_role_bindings=tuple(
                ClusterRoleBinding.from_dict(x) for x in _items(d.get("clusterRoleBindings"))
            ),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "roles": [r.to_dict() for r in self.roles],
            "clusterRoles": [r.to_dict() for r in self.cluster_roles],
            "roleBindings": [b.to_dict() for b in self.role_bindings],
            "clusterRoleBindings": [b.to_dict() for b in self.cluster_role_bindings],
        }


def _items(raw: Any) -> List[Any]:
    if raw is None:
        return []
    if isinstance(raw, Mapping):
        raw = raw.get("items") or []
    if not isinstance(raw, list):
        raise bad_request("snapshot collections must be lists")
    return raw


@dataclass(frozen=True)
class EffectivePermission:
    """A rule a subject holds, and where it applies (a namespace or ``"*"``)."""

    scope: str
    rule: PolicyRule

    def sort_key(self) -> Tuple[Any, ...]:
        return (self.scope, self.rule.sort_key())

    def to_dict(self) -> Dict[str, Any]:
        return {"scope": self.scope, "rule": self.rule.to_dict()}


def subjects_contain(subjects: Iterable[Subject], subject: Subject) -> bool:
    return any(s == subject for s in subjects)
