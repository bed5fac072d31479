"""RBAC Lens package.

Two pieces that answer "who can do what, and who changed it":

- An access-graph resolver that computes a subject's effective permissions
  from Roles, ClusterRoles, RoleBindings and ClusterRoleBindings
- A tamper-evident, hash-chained audit log of RBAC mutations

Convenience imports
------------------
The package avoids heavy import-time side effects (FastAPI, SQLite). These are
available as top-level imports and are loaded lazily:

    from rbac_lens import resolve_effective_permissions, AuditChain, create_app
"""

from __future__ import annotations

import re
from importlib import import_module
from pathlib import Path
from typing import Any


def _read_version_from_pyproject() -> str | None:
    """Best-effort version discovery for dev/test environments.

    The project version is a simple `version = "..."` field in
    `pyproject.toml`, so a regex parse is enough.
    """

    try:
        pyproject = Path(__file__).resolve().parents[1] / "pyproject.toml"
        txt = pyproject.read_text(encoding="utf-8")
        m = re.search(r"^version\s*=\s*\"([^\"]+)\"\s*$", txt, flags=re.MULTILINE)
        return m.group(1) if m else None
    except OSError:
        return None


# Prefer repo-local pyproject version (tests), otherwise a hardcoded default.
__version__ = _read_version_from_pyproject() or "0.3.0"

# Public symbols we want to make available at the package root.
__all__ = [
    "__version__",
    "RBACError",
    "Subject",
    "SubjectKind",
    "PolicyRule",
    "Snapshot",
    "resolve_effective_permissions",
    "resolve_group_details",
    "list_referenced_groups",
    "AuditChain",
    "AuditFilter",
    "AuditRecord",
    "ChainVerification",
    "RBACLensService",
    "create_app",
]

# Lazy export map: name -> (module, attribute)
_LAZY_EXPORTS: dict[str, tuple[str, str]] = {
    "RBACError": ("rbac_lens.errors", "RBACError"),
    "Subject": ("rbac_lens.models", "Subject"),
    "SubjectKind": ("rbac_lens.models", "SubjectKind"),
    "PolicyRule": ("rbac_lens.models", "PolicyRule"),
    "Snapshot": ("rbac_lens.models", "Snapshot"),
    "resolve_effective_permissions": ("rbac_lens.resolver", "resolve_effective_permissions"),
    "resolve_group_details": ("rbac_lens.resolver", "resolve_group_details"),
    "list_referenced_groups": ("rbac_lens.resolver", "list_referenced_groups"),
    "AuditChain": ("rbac_lens.audit_chain", "AuditChain"),
    "AuditFilter": ("rbac_lens.audit_chain", "AuditFilter"),
    "AuditRecord": ("rbac_lens.audit_chain", "AuditRecord"),
    "ChainVerification": ("rbac_lens.audit_chain", "ChainVerification"),
    "RBACLensService": ("rbac_lens.server", "RBACLensService"),
    "create_app": ("rbac_lens.server", "create_app"),
}


def __getattr__(name: str) -> Any:
    if name in _LAZY_EXPORTS:
        module_name, attr = _LAZY_EXPORTS[name]
        module = import_module(module_name)
        value = getattr(module, attr)
        # Cache the resolved attribute on the module for faster future access.
        globals()[name] = value
        return value
    raise AttributeError(f"module 'rbac_lens' has no attribute {name!r}")


def __dir__() -> list[str]:
    return sorted(set(list(globals().keys()) + list(_LAZY_EXPORTS.keys())))
