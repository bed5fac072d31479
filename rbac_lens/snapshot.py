"""Snapshot providers.

The resolver never talks to the cluster. A provider supplies the four RBAC
collections, and :func:`load_snapshot` freezes them into one
:class:`~rbac_lens.models.Snapshot`.

Contract for providers:
- each ``list_*`` method returns a sequence of model objects, or
- raises ``RBACError(RBAC_E_UPSTREAM_UNAVAILABLE)``.

A provider that can read all four collections in one step also exposes
``snapshot()``; :func:`load_snapshot` prefers it over the four ``list_*``
calls so the collections come from the same read.

Anything else a provider raises is wrapped as ``UpstreamUnavailable``; a
failing provider never yields a partial snapshot.

Schema validation uses jsonschema Draft 2020-12 and fails closed: a schema
that cannot be loaded is treated as an unreadable snapshot.
"""

from __future__ import annotations

import json
import logging
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, Iterable, Optional, Protocol, Sequence, runtime_checkable

import jsonschema

from .errors import RBACError, upstream_unavailable
from .models import ClusterRole, ClusterRoleBinding, Role, RoleBinding, Snapshot

logger = logging.getLogger("rbac_lens.snapshot")

SCHEMA_PATH = Path(__file__).resolve().parent / "schemas" / "snapshot.schema.json"


@runtime_checkable
class SnapshotProvider(Protocol):
    """Read side of the cluster API, as consumed by the resolver."""

    def list_roles(self) -> Sequence[Role]: ...

    def list_cluster_roles(self) -> Sequence[ClusterRole]: ...

    def list_role_bindings(self) -> Sequence[RoleBinding]: ...

    def list_cluster_role_bindings(self) -> Sequence[ClusterRoleBinding]: ...


class StaticSnapshotProvider:
    """In-memory provider; returns the same collections on every call."""

    def __init__(
        self,
        roles: Iterable[Role] = (),
        cluster_roles: Iterable[ClusterRole] = (),
        role_bindings: Iterable[RoleBinding] = (),
        cluster_role_bindings: Iterable[ClusterRoleBinding] = (),
    ):
        self._snapshot = Snapshot(
            roles=tuple(roles),
            cluster_roles=tuple(cluster_roles),
            role_bindings=tuple(role_bindings),
            cluster_role_bindings=tuple(cluster_role_bindings),
        )

    @classmethod
    def from_snapshot(cls, snapshot: Snapshot) -> "StaticSnapshotProvider":
        return cls(
            roles=snapshot.roles,
            cluster_roles=snapshot.cluster_roles,
            role_bindings=snapshot.role_bindings,
            cluster_role_bindings=snapshot.cluster_role_bindings,
        )

    def snapshot(self) -> Snapshot:
        return self._snapshot

    def list_roles(self) -> Sequence[Role]:
        return self._snapshot.roles

    def list_cluster_roles(self) -> Sequence[ClusterRole]:
        return self._snapshot.cluster_roles

    def list_role_bindings(self) -> Sequence[RoleBinding]:
        return self._snapshot.role_bindings

    def list_cluster_role_bindings(self) -> Sequence[ClusterRoleBinding]:
        return self._snapshot.cluster_role_bindings


@lru_cache(maxsize=1)
def _snapshot_validator() -> jsonschema.Draft202012Validator:
    with SCHEMA_PATH.open("r", encoding="utf-8") as f:
        schema = json.load(f)
    jsonschema.Draft202012Validator.check_schema(schema)
    return jsonschema.Draft202012Validator(schema)


def validate_snapshot_document(doc: Any) -> None:
    """Validate a raw snapshot document; raises UpstreamUnavailable on failure."""
    try:
        validator = _snapshot_validator()
    except (OSError, ValueError, jsonschema.SchemaError) as e:
        raise upstream_unavailable("snapshot schema unavailable", reason="SCHEMA_LOAD_FAILED", error=str(e)) from e

    errors = sorted(validator.iter_errors(doc), key=lambda e: list(e.path))
    if errors:
        first = errors[0]
        path = "$" + "".join(f"[{p!r}]" for p in first.path)
        raise upstream_unavailable(
            "snapshot document failed schema validation",
            reason="SCHEMA_INVALID",
            path=path,
            error=first.message,
            error_count=len(errors),
        )


class FileSnapshotProvider:
    """Reads a JSON snapshot document from disk.

    The file is re-read on every ``snapshot()`` call, so an external
    sync job can refresh it in place. Direct ``list_*`` calls share the most
    recent parse.
    Writers should replace the file atomically (write + rename) so a reader
    never observes half a document.
    """

    def __init__(self, path: str):
        self.path = str(path)
        self._cached: Optional[Snapshot] = None

    def read(self) -> Snapshot:
        p = Path(self.path)
        try:
            with p.open("r", encoding="utf-8") as f:
                doc = json.load(f)
        except FileNotFoundError as e:
            raise upstream_unavailable(f"snapshot file not found: {self.path}", reason="SNAPSHOT_MISSING") from e
        except json.JSONDecodeError as e:
            raise upstream_unavailable(
                f"invalid JSON in snapshot file: {self.path}", reason="SNAPSHOT_BAD_JSON", error=str(e)
            ) from e
        except OSError as e:
            raise upstream_unavailable(
                f"snapshot file unreadable: {self.path}", reason="SNAPSHOT_IO", error=str(e)
            ) from e

        validate_snapshot_document(doc)
        try:
            snapshot = Snapshot.from_dict(doc)
        except RBACError as e:
            raise upstream_unavailable(
                "snapshot document is malformed", reason="SNAPSHOT_MALFORMED", error=e.message
            ) from e
        logger.debug(
            "Loaded snapshot from %s: %d roles, %d cluster roles, %d role bindings, %d cluster role bindings",
            self.path,
            len(snapshot.roles),
            len(snapshot.cluster_roles),
            len(snapshot.role_bindings),
            len(snapshot.cluster_role_bindings),
        )
        return snapshot

    def refresh(self) -> Snapshot:
        self._cached = self.read()
        return self._cached

    def snapshot(self) -> Snapshot:
        return self.refresh()

    def _current(self) -> Snapshot:
        if self._cached is None:
            return self.refresh()
        return self._cached

    def list_roles(self) -> Sequence[Role]:
        return self._current().roles

    def list_cluster_roles(self) -> Sequence[ClusterRole]:
        return self._current().cluster_roles

    def list_role_bindings(self) -> Sequence[RoleBinding]:
        return self._current().role_bindings

    def list_cluster_role_bindings(self) -> Sequence[ClusterRoleBinding]:
        return self._current().cluster_role_bindings


def load_snapshot(provider: SnapshotProvider) -> Snapshot:
    """Fetch all four collections from ``provider`` as one snapshot."""
    read_all = getattr(provider, "snapshot", None)
    try:
        if callable(read_all):
            snapshot = read_all()
            if not isinstance(snapshot, Snapshot):
                raise TypeError(f"snapshot() returned {type(snapshot).__name__}, not Snapshot")
        else:
            snapshot = Snapshot(
                roles=tuple(provider.list_roles()),
                cluster_roles=tuple(provider.list_cluster_roles()),
                role_bindings=tuple(provider.list_role_bindings()),
                cluster_role_bindings=tuple(provider.list_cluster_role_bindings()),
            )
    except RBACError:
        raise
    except Exception as e:
        raise upstream_unavailable(
            f"snapshot provider failed: {e}", reason="PROVIDER_ERROR", provider=type(provider).__name__
        ) from e
    return snapshot


def snapshot_summary(snapshot: Snapshot) -> Dict[str, int]:
    return {
        "roles": len(snapshot.roles),
        "clusterRoles": len(snapshot.cluster_roles),
        "roleBindings": len(snapshot.role_bindings),
        "clusterRoleBindings": len(snapshot.cluster_role_bindings),
    }
