"""Tamper-evident, hash-chained audit log for RBAC mutations.

Each record carries:
- sequence: 1, 2, 3, ... with no gaps
- previous_hash: hash of the record before it (genesis is 64 zeros)
- hash: SHA256 over the length-prefixed record fields and previous_hash
- key_id / signature_b64: optional Ed25519 signature over the hash

Record hash::

    SHA256(safe_hash_encode([
        "RBAC_AUDIT_V1", str(sequence), action, resource_kind, resource_name,
        canonical_json(namespace), canonical_json(actor), timestamp, previous_hash,
    ]))

The namespace is hashed as JSON, so a cluster-scoped record (``null``) and
one with an empty namespace (``""``) hash differently.

Storage is SQLite. A single-row ``chain_head`` table holds the tail; an
append inserts the record and moves the head with a compare-and-set inside
one ``BEGIN IMMEDIATE`` transaction, so either both land or neither does.

Verification only reports. It never repairs, reorders or deletes anything.

Note: This does not protect against an attacker who controls the database
and also rewrites every hash from the tampered record onward. Sign records
and ship exports to a separate append-only store to cover that case.
"""

from __future__ import annotations

import json
import logging
import os
import sqlite3
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, Iterator, List, Mapping, Optional, Tuple, Union

from .canonical import (
    GENESIS_HASH,
    _now_utc,
    canonical_json_dumps,
    format_timestamp,
    parse_timestamp,
    safe_hash_encode,
    sha256_hex,
)
from .errors import (
    RBACError,
    bad_request,
    not_found,
    rbac_error,
    upstream_unavailable,
    RBAC_E_CHAIN_CORRUPTION,
    RBAC_E_CONCURRENT_APPEND,
)
from .lockdown import StorageBreaker
from .metrics import record_audit_append, record_audit_verification, record_storage_fault, set_lockdown_active
from .models import Subject
from .signing import Signer, TrustedKeyStore, sign_record_hash

logger = logging.getLogger("rbac_lens.audit_chain")

RECORD_VERSION = "RBAC_AUDIT_V1"

_COLUMNS = (
    "sequence, action, resource_kind, resource_name, namespace, actor_json, "
    "timestamp, previous_hash, hash, key_id, signature_b64"
)

# Verification reasons
REASON_OK = "OK"
REASON_EMPTY = "EMPTY_RANGE"
REASON_MISSING_RECORD = "MISSING_RECORD"
REASON_PREVIOUS_HASH_MISMATCH = "PREVIOUS_HASH_MISMATCH"
REASON_HASH_MISMATCH = "HASH_MISMATCH"
REASON_BAD_SIGNATURE = "BAD_SIGNATURE"
REASON_HEAD_MISMATCH = "HEAD_MISMATCH"
REASON_RECORD_BEYOND_HEAD = "RECORD_BEYOND_HEAD"
REASON_PARSE_ERROR = "PARSE_ERROR"

TimeBound = Union[datetime, str, None]


def compute_record_hash(
    sequence: int,
    action: str,
    resource_kind: str,
    resource_name: str,
    namespace: Optional[str],
    actor_json: str,
    timestamp: str,
    previous_hash: str,
) -> str:
    def _s(v: Any) -> str:
        return "" if v is None else str(v)

    return sha256_hex(
        safe_hash_encode(
            [
                RECORD_VERSION,
                str(int(sequence)),
                _s(action),
                _s(resource_kind),
                _s(resource_name),
                canonical_json_dumps(namespace),
                _s(actor_json),
                _s(timestamp),
                _s(previous_hash),
            ]
        )
    )


@dataclass(frozen=True)
class AuditRecord:
    sequence: int
    action: str
    resource_kind: str
    resource_name: str
    namespace: Optional[str]
    actor_json: str
    timestamp: str
    previous_hash: str
    hash: str
    key_id: Optional[str] = None
    signature_b64: Optional[str] = None

    @property
    def actor(self) -> Optional[Dict[str, Any]]:
        """The actor subject, or None if the stored JSON is unreadable."""
        try:
            value = json.loads(self.actor_json)
        except (TypeError, ValueError):
            return None
        return value if isinstance(value, dict) else None

    def compute_hash(self) -> str:
        return compute_record_hash(
            self.sequence,
            self.action,
            self.resource_kind,
            self.resource_name,
            self.namespace,
            self.actor_json,
            self.timestamp,
            self.previous_hash,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "version": RECORD_VERSION,
            "sequence": self.sequence,
            "action": self.action,
            "resource_kind": self.resource_kind,
            "resource_name": self.resource_name,
            "namespace": self.namespace,
            "actor": self.actor,
            "timestamp": self.timestamp,
            "previous_hash": self.previous_hash,
            "hash": self.hash,
            "key_id": self.key_id,
            "signature_b64": self.signature_b64,
        }

    def to_api_dict(self) -> Dict[str, Any]:
        """Shape served by the audit-log listing endpoint."""
        return {
            "id": self.sequence,
            "action": self.action,
            "resource_kind": self.resource_kind,
            "resource_name": self.resource_name,
            "namespace": self.namespace,
            "actor": self.actor,
            "timestamp": self.timestamp,
            "hash": self.hash,
        }

    @classmethod
    def from_row(cls, row: Tuple[Any, ...]) -> "AuditRecord":
        return cls(
            sequence=int(row[0]),
            action=row[1],
            resource_kind=row[2],
            resource_name=row[3],
            namespace=row[4],
            actor_json=row[5],
            timestamp=row[6],
            previous_hash=row[7],
            hash=row[8],
            key_id=row[9],
            signature_b64=row[10],
        )

    @classmethod
    def from_dict(cls, d: Mapping[str, Any]) -> "AuditRecord":
        """Parse an exported record. Raises ValueError on malformed input."""
        if not isinstance(d, Mapping):
            raise ValueError("record must be an object")
        version = d.get("version", RECORD_VERSION)
        if version != RECORD_VERSION:
            raise ValueError(f"unsupported record version: {version!r}")
        seq = d.get("sequence")
        if isinstance(seq, bool) or not isinstance(seq, int):
            raise ValueError("sequence must be an integer")
        for key in ("action", "resource_kind", "resource_name", "timestamp", "previous_hash", "hash"):
            if not isinstance(d.get(key), str):
                raise ValueError(f"{key} must be a string")
        actor = d.get("actor")
        if not isinstance(actor, dict):
            raise ValueError("actor must be an object")
        try:
            actor_json = canonical_json_dumps(actor)
        except RBACError as e:
            raise ValueError(e.message) from e
        return cls(
            sequence=seq,
            action=d["action"],
            resource_kind=d["resource_kind"],
            resource_name=d["resource_name"],
            namespace=d.get("namespace"),
            actor_json=actor_json,
            timestamp=d["timestamp"],
            previous_hash=d["previous_hash"],
            hash=d["hash"],
            key_id=d.get("key_id"),
            signature_b64=d.get("signature_b64"),
        )


@dataclass(frozen=True)
class ChainVerification:
    ok: bool
    first_divergence: Optional[int] = None
    checked: int = 0
    reason: str = REASON_OK

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ok": self.ok,
            "firstDivergence": self.first_divergence,
            "checked": self.checked,
            "reason": self.reason,
        }


@dataclass(frozen=True)
class AuditFilter:
    """Listing filter. ``since``/``until`` are inclusive."""

    resource_kind: Optional[str] = None
    namespace: Optional[str] = None
    action: Optional[str] = None
    since: TimeBound = None
    until: TimeBound = None


def _time_bound(value: TimeBound, name: str) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, datetime):
        return format_timestamp(value)
    dt = parse_timestamp(value)
    if dt is None:
        raise bad_request(f"invalid {name} timestamp: {value!r}", field=name)
    return format_timestamp(dt)


def _where(flt: AuditFilter) -> Tuple[List[str], List[Any]]:
    clauses: List[str] = []
    params: List[Any] = []
    if flt.resource_kind:
        clauses.append("resource_kind = ?")
        params.append(flt.resource_kind)
    if flt.namespace:
        clauses.append("namespace = ?")
        params.append(flt.namespace)
    if flt.action:
        clauses.append("action = ?")
        params.append(flt.action)
    since = _time_bound(flt.since, "since")
    if since is not None:
        clauses.append("timestamp >= ?")
        params.append(since)
    until = _time_bound(flt.until, "until")
    if until is not None:
        clauses.append("timestamp <= ?")
        params.append(until)
    return clauses, params


def _conflict(message: str, **details: Any) -> RBACError:
    return rbac_error(RBAC_E_CONCURRENT_APPEND, message, retryable=True, http_status=409, **details)


def _walk(
    records: Iterable[AuditRecord],
    *,
    first_seq: int,
    seed_hash: str,
    last_seq: Optional[int],
    trusted_keys: Optional[TrustedKeyStore],
) -> Tuple[ChainVerification, str]:
    """Check ``records`` (ascending) against the running hash.

    Returns the verification result and the last verified hash.
    """
    running = seed_hash
    expected = first_seq
    checked = 0
    for rec in records:
        if last_seq is not None and expected > last_seq:
            break
        if rec.sequence != expected:
            return ChainVerification(False, expected, checked, REASON_MISSING_RECORD), running
        if rec.previous_hash != running:
            return ChainVerification(False, expected, checked, REASON_PREVIOUS_HASH_MISMATCH), running
        if rec.compute_hash() != rec.hash:
            return ChainVerification(False, expected, checked, REASON_HASH_MISMATCH), running
        if trusted_keys is not None and not trusted_keys.verify_record_signature(
            rec.key_id, rec.hash, rec.signature_b64
        ):
            return ChainVerification(False, expected, checked, REASON_BAD_SIGNATURE), running
        running = rec.hash
        checked += 1
        expected += 1
    if last_seq is not None and expected <= last_seq:
        return ChainVerification(False, expected, checked, REASON_MISSING_RECORD), running
    return ChainVerification(True, None, checked, REASON_OK if checked else REASON_EMPTY), running


class AuditChain:
    """Append-only audit chain backed by SQLite.

    Safe to share between threads. Appends are serialized in-process by a
    lock and across processes by ``BEGIN IMMEDIATE``; readers use their own
    connections and only ever see committed rows.
    """

    def __init__(
        self,
        db_path: str = "rbac_audit.db",
        *,
        signer: Optional[Signer] = None,
        append_retries: int = 3,
        breaker: Optional[StorageBreaker] = None,
        clock: Callable[[], datetime] = _now_utc,
    ):
        self.db_path = str(db_path)
        self.signer = signer
        self.append_retries = max(0, int(append_retries))
        self.breaker = breaker or StorageBreaker()
        self._clock = clock
        self._write_lock = threading.Lock()
        parent = Path(self.db_path).parent
        parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    # ---------------------------
    # Storage plumbing
    # ---------------------------

    @contextmanager
    def _db(self, op_name: str):
        """Open a connection for ``op_name`` behind the storage breaker.

        The connection runs in autocommit mode; callers that need a write
        transaction issue ``BEGIN IMMEDIATE`` themselves. Leaving the block
        with an exception rolls back whatever was open.
        """
        try:
            self.breaker.check(op_name)
        except RBACError:
            set_lockdown_active(True)
            raise
        timeout = float(self.breaker.config.connect_timeout_seconds)
        start = time.monotonic()
        try:
            conn = sqlite3.connect(self.db_path, timeout=timeout, isolation_level=None)
            try:
                conn.execute(f"PRAGMA busy_timeout = {int(timeout * 1000)}")
                with conn:
                    yield conn
            finally:
                conn.close()
        except sqlite3.Error as e:
            fault = self.breaker.on_error(op_name, e)
            record_storage_fault(op_name, fault.value)
            set_lockdown_active(self.breaker.is_lockdown_active())
            logger.error("Audit storage operation %s failed (%s): %s", op_name, fault.value, e)
            raise upstream_unavailable(
                f"audit storage unavailable during {op_name}",
                reason="STORAGE_ERROR",
                operation=op_name,
                fault=fault.value,
                error=str(e),
            ) from e
        elapsed_ms = (time.monotonic() - start) * 1000.0
        if self.breaker.on_success(op_name, elapsed_ms):
            logger.warning("Slow audit storage operation %s: %.0fms", op_name, elapsed_ms)
        set_lockdown_active(self.breaker.is_lockdown_active())

    def _init_db(self) -> None:
        with self._db("init") as conn:
            conn.execute("PRAGMA journal_mode = WAL")
            conn.execute("PRAGMA synchronous = FULL")
            conn.execute("""
            CREATE TABLE IF NOT EXISTS audit_records (
                sequence INTEGER PRIMARY KEY,
                action TEXT NOT NULL,
                resource_kind TEXT NOT NULL,
                resource_name TEXT NOT NULL,
                namespace TEXT,
                actor_json TEXT NOT NULL,
                timestamp TEXT NOT NULL,
                previous_hash TEXT NOT NULL,
                hash TEXT NOT NULL,
                key_id TEXT,
                signature_b64 TEXT
            )
            """)
            conn.execute("""
            CREATE TABLE IF NOT EXISTS chain_head (
                id INTEGER PRIMARY KEY CHECK (id = 1),
                last_sequence INTEGER NOT NULL,
                last_hash TEXT NOT NULL,
                last_timestamp TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
            """)
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_audit_records_ts ON audit_records (timestamp, sequence)"
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_audit_records_kind_ns ON audit_records (resource_kind, namespace)"
            )

            conn.execute("BEGIN IMMEDIATE")
            head = conn.execute("SELECT 1 FROM chain_head WHERE id = 1").fetchone()
            if head is None:
                any_record = conn.execute("SELECT 1 FROM audit_records LIMIT 1").fetchone()
                if any_record is None:
                    conn.execute(
                        "INSERT INTO chain_head (id, last_sequence, last_hash, last_timestamp, updated_at) "
                        "VALUES (1, 0, ?, '', ?)",
                        (GENESIS_HASH, format_timestamp(self._clock())),
                    )
                else:
                    # Leave it missing; verify_chain reports the records beyond head.
                    logger.critical("Audit chain head is missing but records exist in %s", self.db_path)

    @staticmethod
    def _read_tail(conn: sqlite3.Connection) -> Tuple[int, str, str]:
        row = conn.execute(
            "SELECT last_sequence, last_hash, last_timestamp FROM chain_head WHERE id = 1"
        ).fetchone()
        if row is None:
            raise rbac_error(
                RBAC_E_CHAIN_CORRUPTION,
                "audit chain head is missing",
                http_status=500,
                reason="HEAD_MISSING",
            )
        return int(row[0]), str(row[1]), str(row[2] or "")

    # ---------------------------
    # Append
    # ---------------------------

    def append(
        self,
        action: str,
        resource_kind: str,
        resource_name: str,
        namespace: Optional[str] = None,
        actor: Union[Subject, Mapping[str, Any], None] = None,
    ) -> AuditRecord:
        """Append one record and return it once durably committed.

        A lost compare-and-set is retried with a fresh tail up to
        ``append_retries`` times before ``RBAC_E_CONCURRENT_APPEND`` is raised.
        """
        for name, value in (("action", action), ("resource_kind", resource_kind), ("resource_name", resource_name)):
            if not isinstance(value, str) or not value.strip():
                raise bad_request(f"{name} must be a non-empty string", field=name)
        if namespace is not None and not isinstance(namespace, str):
            raise bad_request("namespace must be a string", field="namespace")
        if isinstance(actor, Subject):
            subject = actor
        elif isinstance(actor, Mapping):
            subject = Subject.from_dict(actor)
        else:
            raise bad_request("actor must be a subject", field="actor")
        actor_json = canonical_json_dumps(subject.to_dict())

        attempts = self.append_retries + 1
        for attempt in range(1, attempts + 1):
            try:
                with self._write_lock:
                    record = self._append_once(action, resource_kind, resource_name, namespace or None, actor_json)
            except RBACError as e:
                if e.code == RBAC_E_CONCURRENT_APPEND:
                    record_audit_append("conflict")
                    if attempt < attempts:
                        logger.warning("Audit append conflict (attempt %d/%d), retrying", attempt, attempts)
                        continue
                else:
                    record_audit_append("error")
                raise
            except Exception:
                record_audit_append("error")
                raise
            record_audit_append("ok")
            logger.info(
                "Appended audit record %d: %s %s %s%s",
                record.sequence,
                record.action,
                record.resource_kind,
                f"{record.namespace}/" if record.namespace else "",
                record.resource_name,
            )
            return record
        # Unreachable: the last attempt either returns or raises.
        raise _conflict("audit append retries exhausted")

    def _append_once(
        self,
        action: str,
        resource_kind: str,
        resource_name: str,
        namespace: Optional[str],
        actor_json: str,
    ) -> AuditRecord:
        with self._db("append") as conn:
            conn.execute("BEGIN IMMEDIATE")
            last_seq, last_hash, last_ts = self._read_tail(conn)
            sequence = last_seq + 1
            now = format_timestamp(self._clock())
            # Fixed-width timestamps compare correctly as strings.
            timestamp = max(now, last_ts) if last_ts else now
            record_hash = compute_record_hash(
                sequence, action, resource_kind, resource_name, namespace, actor_json, timestamp, last_hash
            )
            key_id = signature_b64 = None
            if self.signer is not None:
                key_id = self.signer.key_id
                signature_b64 = sign_record_hash(self.signer, record_hash)

            try:
                conn.execute(
                    f"INSERT INTO audit_records ({_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                    (
                        sequence,
                        action,
                        resource_kind,
                        resource_name,
                        namespace,
                        actor_json,
                        timestamp,
                        last_hash,
                        record_hash,
                        key_id,
                        signature_b64,
                    ),
                )
            except sqlite3.IntegrityError as e:
                raise _conflict("sequence already taken", sequence=sequence) from e

            cur = conn.execute(
                "UPDATE chain_head SET last_sequence = ?, last_hash = ?, last_timestamp = ?, updated_at = ? "
                "WHERE id = 1 AND last_sequence = ? AND last_hash = ?",
                (sequence, record_hash, timestamp, now, last_seq, last_hash),
            )
            if cur.rowcount != 1:
                raise _conflict("chain head moved during append", sequence=sequence)

        return AuditRecord(
            sequence=sequence,
            action=action,
            resource_kind=resource_kind,
            resource_name=resource_name,
            namespace=namespace,
            actor_json=actor_json,
            timestamp=timestamp,
            previous_hash=last_hash,
            hash=record_hash,
            key_id=key_id,
            signature_b64=signature_b64,
        )

    # ---------------------------
    # Reads
    # ---------------------------

    def head(self) -> Tuple[int, str]:
        """(last_sequence, last_hash); ``(0, GENESIS_HASH)`` for an empty chain."""
        with self._db("head") as conn:
            row = conn.execute("SELECT last_sequence, last_hash FROM chain_head WHERE id = 1").fetchone()
        if row is None:
            return 0, GENESIS_HASH
        return int(row[0]), str(row[1])

    def count(self, flt: Optional[AuditFilter] = None) -> int:
        clauses, params = _where(flt or AuditFilter())
        sql = "SELECT COUNT(*) FROM audit_records"
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        with self._db("count") as conn:
            return int(conn.execute(sql, params).fetchone()[0])

    def get_record(self, sequence: int) -> AuditRecord:
        with self._db("get_record") as conn:
            row = conn.execute(
                f"SELECT {_COLUMNS} FROM audit_records WHERE sequence = ?", (int(sequence),)
            ).fetchone()
        if row is None:
            raise not_found(f"audit record {sequence} not found", sequence=int(sequence))
        return AuditRecord.from_row(row)

    def list_records(
        self,
        flt: Optional[AuditFilter] = None,
        *,
        order: str = "desc",
        order_by: str = "timestamp",
        offset: int = 0,
        limit: Optional[int] = None,
        page_size: int = 500,
    ) -> Iterator[AuditRecord]:
        """Lazily iterate matching records.

        Pages are fetched with keyset pagination on ``(order key, sequence)``;
        no connection is held between pages. Arguments are validated before
        the first record is requested.
        """
        if order not in ("asc", "desc"):
            raise bad_request("order must be 'asc' or 'desc'", field="order")
        if order_by not in ("sequence", "timestamp"):
            raise bad_request("order_by must be 'sequence' or 'timestamp'", field="order_by")
        if offset < 0:
            raise bad_request("offset must be >= 0", field="offset")
        if limit is not None and limit < 0:
            raise bad_request("limit must be >= 0", field="limit")
        if page_size < 1:
            raise bad_request("page_size must be >= 1", field="page_size")
        clauses, params = _where(flt or AuditFilter())
        return self._iter_pages(clauses, params, order, order_by, offset, limit, page_size)

    def _iter_pages(
        self,
        clauses: List[str],
        params: List[Any],
        order: str,
        order_by: str,
        offset: int,
        limit: Optional[int],
        page_size: int,
    ) -> Iterator[AuditRecord]:
        cmp = "<" if order == "desc" else ">"
        direction = "DESC" if order == "desc" else "ASC"
        if order_by == "timestamp":
            order_sql = f"timestamp {direction}, sequence {direction}"
        else:
            order_sql = f"sequence {direction}"

        cursor: Optional[Tuple[str, int]] = None
        remaining = limit
        skip = offset
        while remaining is None or remaining > 0:
            page_clauses = list(clauses)
            page_params = list(params)
            if cursor is not None:
                ts, seq = cursor
                if order_by == "timestamp":
                    page_clauses.append(f"(timestamp {cmp} ? OR (timestamp = ? AND sequence {cmp} ?))")
                    page_params.extend([ts, ts, seq])
                else:
                    page_clauses.append(f"sequence {cmp} ?")
                    page_params.append(seq)
            sql = f"SELECT {_COLUMNS} FROM audit_records"
            if page_clauses:
                sql += " WHERE " + " AND ".join(page_clauses)
            n = page_size if remaining is None else min(page_size, remaining)
            sql += f" ORDER BY {order_sql} LIMIT ? OFFSET ?"
            page_params.extend([n, skip])

            with self._db("list_records") as conn:
                rows = conn.execute(sql, page_params).fetchall()
            skip = 0
            if not rows:
                return
            for row in rows:
                yield AuditRecord.from_row(row)
            last = rows[-1]
            cursor = (last[6], int(last[0]))
            if remaining is not None:
                remaining -= len(rows)
            if len(rows) < n:
                return

    def _iter_range(self, from_seq: int, to_seq: int, page_size: int = 500) -> Iterator[AuditRecord]:
        start = from_seq
        while start <= to_seq:
            end = min(to_seq, start + page_size - 1)
            with self._db("verify") as conn:
                rows = conn.execute(
                    f"SELECT {_COLUMNS} FROM audit_records WHERE sequence BETWEEN ? AND ? ORDER BY sequence ASC",
                    (start, end),
                ).fetchall()
            for row in rows:
                yield AuditRecord.from_row(row)
            start = end + 1

    # ---------------------------
    # Verification
    # ---------------------------

    def verify_chain(
        self,
        from_seq: int = 1,
        to_seq: Optional[int] = None,
        *,
        trusted_keys: Optional[TrustedKeyStore] = None,
    ) -> ChainVerification:
        """Recompute hashes over ``[from_seq, to_seq]`` and report the first divergence.

        ``to_seq`` defaults to, and is clamped to, the chain head. When the
        range reaches the head, the stored head hash must match the last
        record, which catches truncated tails.
        """
        if from_seq < 1:
            raise bad_request("from_seq must be >= 1", field="from_seq")
        if to_seq is not None and to_seq < 0:
            raise bad_request("to_seq must be >= 0", field="to_seq")

        result = self._verify(from_seq, to_seq, trusted_keys)
        record_audit_verification(result.ok)
        if not result.ok:
            logger.warning(
                "Audit chain diverges at sequence %s (%s) after %d verified record(s)",
                result.first_divergence,
                result.reason,
                result.checked,
            )
        return result

    def _verify(
        self, from_seq: int, to_seq: Optional[int], trusted_keys: Optional[TrustedKeyStore]
    ) -> ChainVerification:
        head_seq, head_hash = self.head()
        end = head_seq if to_seq is None else min(to_seq, head_seq)

        if from_seq > end:
            if end == head_seq:
                beyond = self._first_sequence_after(head_seq)
                if beyond is not None:
                    return ChainVerification(False, beyond, 0, REASON_RECORD_BEYOND_HEAD)
            return ChainVerification(True, None, 0, REASON_EMPTY)

        if from_seq == 1:
            seed = GENESIS_HASH
        else:
            try:
                seed = self.get_record(from_seq - 1).hash
            except RBACError as e:
                if e.http_status != 404:
                    raise
                return ChainVerification(False, from_seq - 1, 0, REASON_MISSING_RECORD)

        result, running = _walk(
            self._iter_range(from_seq, end),
            first_seq=from_seq,
            seed_hash=seed,
            last_seq=end,
            trusted_keys=trusted_keys,
        )
        if not result.ok:
            return result

        if end == head_seq:
            if running != head_hash:
                return ChainVerification(False, head_seq, result.checked, REASON_HEAD_MISMATCH)
            beyond = self._first_sequence_after(head_seq)
            if beyond is not None:
                return ChainVerification(False, beyond, result.checked, REASON_RECORD_BEYOND_HEAD)
        return result

    def _first_sequence_after(self, sequence: int) -> Optional[int]:
        with self._db("verify") as conn:
            row = conn.execute(
                "SELECT MIN(sequence) FROM audit_records WHERE sequence > ?", (sequence,)
            ).fetchone()
        return None if row is None or row[0] is None else int(row[0])

    def ensure_chain_intact(
        self,
        from_seq: int = 1,
        to_seq: Optional[int] = None,
        *,
        trusted_keys: Optional[TrustedKeyStore] = None,
    ) -> ChainVerification:
        """Like :meth:`verify_chain`, but raises ``RBAC_E_CHAIN_CORRUPTION`` on divergence."""
        result = self.verify_chain(from_seq, to_seq, trusted_keys=trusted_keys)
        if not result.ok:
            logger.critical(
                "AUDIT CHAIN CORRUPTION in %s: first divergence at sequence %s (%s)",
                self.db_path,
                result.first_divergence,
                result.reason,
            )
            raise rbac_error(
                RBAC_E_CHAIN_CORRUPTION,
                f"audit chain diverges at sequence {result.first_divergence}",
                http_status=500,
                first_divergence=result.first_divergence,
                reason=result.reason,
                checked=result.checked,
            )
        return result

    # ---------------------------
    # Export
    # ---------------------------

    def export_jsonl(self, path: str) -> int:
        """Write every record, ascending, one canonical JSON object per line.

        The file is written beside the target and renamed into place.
        Returns the number of records written.
        """
        target = Path(path)
        target.parent.mkdir(parents=True, exist_ok=True)
        tmp = target.with_name(target.name + ".tmp")
        n = 0
        with tmp.open("w", encoding="utf-8") as f:
            for rec in self.list_records(order="asc", order_by="sequence"):
                f.write(canonical_json_dumps(rec.to_dict()) + "\n")
                n += 1
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp, target)
        logger.info("Exported %d audit record(s) to %s", n, target)
        return n


def _iter_export(path: Path) -> Iterator[AuditRecord]:
    with path.open("r", encoding="utf-8") as f:
        for line in f:
            line = line.strip()
            if not line:
                continue
            yield AuditRecord.from_dict(json.loads(line))


def verify_export(path: str, trusted_keys: Optional[TrustedKeyStore] = None) -> ChainVerification:
    """Verify an exported chain offline.

    The export must start at sequence 1. A line that cannot be parsed
    diverges at the sequence it should have held.
    """
    p = Path(path)
    if not p.exists():
        raise not_found(f"export file not found: {path}", path=str(path))

    records = _iter_export(p)
    verified: List[int] = []

    def _tracking() -> Iterator[AuditRecord]:
        for rec in records:
            yield rec
            verified.append(rec.sequence)

    try:
        result, _ = _walk(_tracking(), first_seq=1, seed_hash=GENESIS_HASH, last_seq=None, trusted_keys=trusted_keys)
    except (ValueError, KeyError, TypeError) as e:
        logger.warning("Unparseable audit export line in %s: %s", path, e)
        result = ChainVerification(False, len(verified) + 1, len(verified), REASON_PARSE_ERROR)
    record_audit_verification(result.ok)
    return result
