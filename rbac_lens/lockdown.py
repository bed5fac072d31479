"""Storage breaker for the audit chain.

Every SQLite call the chain makes goes through :class:`StorageBreaker`,
keyed by the chain's operation name (``init``, ``append``, ``head``,
``count``, ``get_record``, ``list_records``, ``verify``).

Errors are classified by ``sqlite3`` exception type and, where the driver
provides it, the SQLite result code:

- CONTENTION: the database is busy or locked, out of disk, or cannot be
  opened. These count towards ``failure_threshold``.
- CORRUPTION: the file is damaged or is not a database. One is enough to
  trip, since retrying cannot help.
- CALLER: constraint, programming and interface errors. They are the
  caller's problem, not the store's, and never trip the breaker.

A tripped breaker refuses every operation with ``UpstreamUnavailable``
(``LOCKDOWN_ACTIVE``) until the window expires. It never touches chain state;
appends are single transactions, so refusing one leaves nothing half-written.
"""

from __future__ import annotations

import enum
import os
import sqlite3
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

from .errors import upstream_unavailable


class StorageFault(str, enum.Enum):
    CONTENTION = "contention"
    CORRUPTION = "corruption"
    CALLER = "caller"


# Primary SQLite result codes (the low byte of an extended code).
_SQLITE_BUSY = 5
_SQLITE_LOCKED = 6
_SQLITE_READONLY = 8
_SQLITE_IOERR = 10
_SQLITE_CORRUPT = 11
_SQLITE_FULL = 13
_SQLITE_CANTOPEN = 14
_SQLITE_NOTADB = 26

_FAULT_BY_RESULT_CODE = {
    _SQLITE_BUSY: StorageFault.CONTENTION,
    _SQLITE_LOCKED: StorageFault.CONTENTION,
    _SQLITE_READONLY: StorageFault.CONTENTION,
    _SQLITE_IOERR: StorageFault.CONTENTION,
    _SQLITE_FULL: StorageFault.CONTENTION,
    _SQLITE_CANTOPEN: StorageFault.CONTENTION,
    _SQLITE_CORRUPT: StorageFault.CORRUPTION,
    _SQLITE_NOTADB: StorageFault.CORRUPTION,
}


def classify_storage_error(exc: BaseException) -> StorageFault:
    code = getattr(exc, "sqlite_errorcode", None)
    if isinstance(code, int):
        fault = _FAULT_BY_RESULT_CODE.get(code & 0xFF)
        if fault is not None:
            return fault
    if isinstance(exc, (sqlite3.IntegrityError, sqlite3.ProgrammingError, sqlite3.InterfaceError)):
        return StorageFault.CALLER
    if isinstance(exc, sqlite3.OperationalError):
        return StorageFault.CONTENTION
    return StorageFault.CORRUPTION


def _env_number(name: str, default: Any, cast: Callable[[str], Any]) -> Any:
    raw = (os.getenv(name, "") or "").strip()
    if not raw:
        return default
    try:
        return cast(raw)
    except ValueError:
        return default


@dataclass(frozen=True)
class BreakerConfig:
    """Breaker tuning.

    Environment variables: RBAC_DB_LATENCY_THRESHOLD_MS,
    RBAC_DB_FAILURE_THRESHOLD, RBAC_DB_LOCKDOWN_SECONDS and
    RBAC_DB_CONNECT_TIMEOUT_SECONDS. Unparseable values fall back to the
    defaults; out-of-range values are raised to the smallest usable one.
    """

    # A single operation at least this slow trips the breaker.
    latency_threshold_ms: int = 2000
    # Consecutive CONTENTION faults before tripping.
    failure_threshold: int = 3
    lockdown_seconds: int = 30
    connect_timeout_seconds: float = 5.0

    @classmethod
    def from_env(cls) -> "BreakerConfig":
        latency = _env_number("RBAC_DB_LATENCY_THRESHOLD_MS", cls.latency_threshold_ms, int)
        return cls(
            latency_threshold_ms=latency if latency >= 0 else cls.latency_threshold_ms,
            failure_threshold=max(1, _env_number("RBAC_DB_FAILURE_THRESHOLD", cls.failure_threshold, int)),
            lockdown_seconds=max(1, _env_number("RBAC_DB_LOCKDOWN_SECONDS", cls.lockdown_seconds, int)),
            connect_timeout_seconds=max(
                0.01, _env_number("RBAC_DB_CONNECT_TIMEOUT_SECONDS", cls.connect_timeout_seconds, float)
            ),
        )


class StorageBreaker:
    def __init__(self, config: Optional[BreakerConfig] = None, *, clock: Callable[[], float] = time.monotonic):
        self.config = config or BreakerConfig.from_env()
        self._clock = clock
        self._lock = threading.Lock()
        self._consecutive = 0
        self._until = 0.0
        self._tripped_by: Optional[Dict[str, Any]] = None
        self._last_fault: Optional[Dict[str, Any]] = None

    def is_lockdown_active(self) -> bool:
        return self._clock() < self._until

    def check(self, operation: str) -> None:
        """Refuse ``operation`` while the breaker is tripped."""
        with self._lock:
            remaining = self._until - self._clock()
            tripped_by = dict(self._tripped_by or {})
        if remaining > 0:
            raise upstream_unavailable(
                "audit storage is in lockdown",
                reason="LOCKDOWN_ACTIVE",
                operation=operation,
                tripped_by=tripped_by.get("operation"),
                retry_after_seconds=int(remaining) + 1,
            )

    def on_error(self, operation: str, exc: BaseException) -> StorageFault:
        fault = classify_storage_error(exc)
        with self._lock:
            self._last_fault = {"operation": operation, "fault": fault.value, "error": str(exc)}
            if fault is StorageFault.CORRUPTION:
                self._trip(operation, fault.value)
            elif fault is StorageFault.CONTENTION:
                self._consecutive += 1
                if self._consecutive >= self.config.failure_threshold:
                    self._trip(operation, fault.value)
        return fault

    def on_success(self, operation: str, elapsed_ms: float) -> bool:
        """Record a completed operation; returns True if it was slow enough to trip."""
        with self._lock:
            if elapsed_ms >= self.config.latency_threshold_ms:
                self._trip(operation, "slow")
                return True
            self._consecutive = 0
            return False

    def _trip(self, operation: str, cause: str) -> None:
        self._until = self._clock() + self.config.lockdown_seconds
        self._consecutive = 0
        self._tripped_by = {"operation": operation, "cause": cause}

    def state(self) -> Dict[str, Any]:
        with self._lock:
            remaining = self._until - self._clock()
            return {
                "lockdown_active": remaining > 0,
                "retry_after_seconds": int(remaining) + 1 if remaining > 0 else 0,
                "consecutive_failures": self._consecutive,
                "tripped_by": dict(self._tripped_by) if remaining > 0 and self._tripped_by else None,
                "last_fault": dict(self._last_fault) if self._last_fault else None,
            }
