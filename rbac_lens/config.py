"""Service configuration.

Everything is read from environment variables once, at startup:

- RBAC_AUDIT_DB_PATH: SQLite file for the audit chain (default: rbac_audit.db)
- RBAC_SNAPSHOT_FILE: JSON snapshot document read by the resolver endpoints
- RBAC_AUDIT_SIGNING_KEY: hex Ed25519 seed; when set, records are signed
- RBAC_AUDIT_SIGNING_KEY_ID: key id stored with signatures (default: audit)
- RBAC_AUDIT_APPEND_RETRIES: conflict retries per append (default: 3)
- RBAC_METRICS_ENABLED: mount /metrics (default: on)
- RBAC_METRICS_TOKEN: if set, /metrics requires it
- RBAC_MAX_REQUEST_BYTES: request body limit (default: 1 MiB)
- RBAC_ENV: dev | prod

API keys (RBAC_API_KEYS_JSON / RBAC_API_KEYS_FILE) are loaded by
:mod:`rbac_lens.auth`. Storage breaker settings (RBAC_DB_*) are
loaded by :mod:`rbac_lens.lockdown`.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Optional

DEFAULT_DB_PATH = "rbac_audit.db"
DEFAULT_MAX_REQUEST_BYTES = 1048576


def _env_bool(name: str, default: bool) -> bool:
    v = (os.getenv(name, "") or "").strip().lower()
    if not v:
        return default
    return v in ("1", "true", "yes", "on")


def _env_int(name: str, default: int) -> int:
    try:
        return int((os.getenv(name, "") or str(default)).strip())
    except ValueError:
        return default


@dataclass(frozen=True)
class ServiceConfig:
    db_path: str = DEFAULT_DB_PATH
    snapshot_file: Optional[str] = None
    signing_key_hex: Optional[str] = None
    signing_key_id: str = "audit"
    append_retries: int = 3
    metrics_enabled: bool = True
    metrics_token: Optional[str] = None
    max_request_bytes: int = DEFAULT_MAX_REQUEST_BYTES
    env: str = "dev"

    @property
    def is_prod(self) -> bool:
        return self.env in ("prod", "production")

    @classmethod
    def from_env(cls) -> "ServiceConfig":
        retries = _env_int("RBAC_AUDIT_APPEND_RETRIES", cls.append_retries)
        max_bytes = _env_int("RBAC_MAX_REQUEST_BYTES", DEFAULT_MAX_REQUEST_BYTES)

        # Clamp
        if retries < 0:
            retries = 0
        if max_bytes < 1:
            max_bytes = DEFAULT_MAX_REQUEST_BYTES

        return cls(
            db_path=(os.getenv("RBAC_AUDIT_DB_PATH", "") or "").strip() or DEFAULT_DB_PATH,
            snapshot_file=(os.getenv("RBAC_SNAPSHOT_FILE", "") or "").strip() or None,
            signing_key_hex=(os.getenv("RBAC_AUDIT_SIGNING_KEY", "") or "").strip() or None,
            signing_key_id=(os.getenv("RBAC_AUDIT_SIGNING_KEY_ID", "") or "").strip() or "audit",
            append_retries=retries,
            metrics_enabled=_env_bool("RBAC_METRICS_ENABLED", True),
            metrics_token=(os.getenv("RBAC_METRICS_TOKEN", "") or "").strip() or None,
            max_request_bytes=max_bytes,
            env=str(os.getenv("RBAC_ENV", os.getenv("ENV", "dev"))).strip().lower() or "dev",
        )
