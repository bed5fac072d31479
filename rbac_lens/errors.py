"""Stable error taxonomy for RBAC Lens.

This module defines machine-readable error codes and a single exception type
used across the resolver, the audit chain, the HTTP layer and the CLI.

Design goals:
- Stable `code` string suitable for programmatic handling.
- Optional `retryable` flag and `http_status` for transport layers.
- Structured `details` for debugging without parsing messages.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict


# Canonicalization / hashing
RBAC_E_CANON_NON_JSON = "RBAC_E_CANON_NON_JSON"
RBAC_E_CANON_DEPTH = "RBAC_E_CANON_DEPTH"
RBAC_E_CANON_NONFINITE = "RBAC_E_CANON_NONFINITE"
RBAC_E_CANON_KEY_TYPE = "RBAC_E_CANON_KEY_TYPE"
RBAC_E_CANON_KEY_COLLISION = "RBAC_E_CANON_KEY_COLLISION"

# Resolver / snapshot
RBAC_E_NOT_FOUND = "RBAC_E_NOT_FOUND"
RBAC_E_UPSTREAM_UNAVAILABLE = "RBAC_E_UPSTREAM_UNAVAILABLE"
RBAC_E_INVALID_REFERENCE = "RBAC_E_INVALID_REFERENCE"
RBAC_E_CANCELLED = "RBAC_E_CANCELLED"

# Audit chain
RBAC_E_CHAIN_CORRUPTION = "RBAC_E_CHAIN_CORRUPTION"
RBAC_E_CONCURRENT_APPEND = "RBAC_E_CONCURRENT_APPEND"

# Generic
RBAC_E_BAD_REQUEST = "RBAC_E_BAD_REQUEST"
RBAC_E_AUTH_REQUIRED = "RBAC_E_AUTH_REQUIRED"
RBAC_E_FORBIDDEN = "RBAC_E_FORBIDDEN"
RBAC_E_REQUEST_TOO_LARGE = "RBAC_E_REQUEST_TOO_LARGE"


@dataclass
class RBACError(Exception):
    """Base RBAC Lens exception with stable error code."""

    code: str
    message: str
    retryable: bool = False
    http_status: int = 400
    details: Dict[str, Any] = field(default_factory=dict)

    def as_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {
            "code": self.code,
            "message": self.message,
            "retryable": bool(self.retryable),
            "http_status": int(self.http_status),
        }
        if self.details:
            d["details"] = self.details
        return d

    def __str__(self) -> str:
        # Keep message readable; details are available via .as_dict()
        return f"{self.code}: {self.message}"


def rbac_error(
    code: str,
    message: str,
    *,
    retryable: bool = False,
    http_status: int = 400,
    **details: Any,
) -> RBACError:
    return RBACError(code=code, message=message, retryable=retryable, http_status=http_status, details=details)


def not_found(message: str, **details: Any) -> RBACError:
    return rbac_error(RBAC_E_NOT_FOUND, message, http_status=404, **details)


def upstream_unavailable(message: str, **details: Any) -> RBACError:
    return rbac_error(RBAC_E_UPSTREAM_UNAVAILABLE, message, retryable=True, http_status=503, **details)


def bad_request(message: str, **details: Any) -> RBACError:
    return rbac_error(RBAC_E_BAD_REQUEST, message, http_status=400, **details)
