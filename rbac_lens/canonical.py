"""Canonical encodings used for audit-chain hashing.

Two encodings are defined here and both are part of the on-disk contract:

- ``safe_hash_encode``: length-prefixed concatenation of UTF-8 strings. Each
  component is preceded by its byte length as an 8-byte big-endian integer,
  which prevents delimiter collisions (``"ab" + "c"`` vs ``"a" + "bc"``).
- ``canonical_json_dumps``: strict JSON with sorted keys, no insignificant
  whitespace, NFC-normalized strings and bounded nesting. Used for structured
  record fields (the actor subject) before they enter the hash.

Any verifier, in any language, that reproduces these two functions can
recompute audit hashes byte-for-byte.
"""

from __future__ import annotations

import hashlib
import json
import math
import unicodedata
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from .errors import (
    RBACError,
    rbac_error,
    RBAC_E_CANON_NON_JSON,
    RBAC_E_CANON_DEPTH,
    RBAC_E_CANON_NONFINITE,
    RBAC_E_CANON_KEY_TYPE,
    RBAC_E_CANON_KEY_COLLISION,
)


GENESIS_HASH = "0" * 64

_CANON_MAX_DEPTH = 32
_CANON_UNICODE_NORM = "NFC"

# Fixed-width so lexicographic order equals chronological order.
TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def format_timestamp(dt: datetime) -> str:
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).strftime(TIMESTAMP_FORMAT)


def parse_timestamp(ts: Optional[str]) -> Optional[datetime]:
    """Parse an ISO timestamp into a timezone-aware UTC datetime.

    Returns None if parsing fails or input is empty.
    """
    if not ts:
        return None
    try:
        s = str(ts).strip()
        if not s:
            return None
        # Accept RFC 3339 'Z' suffix.
        if s.endswith("Z"):
            s = s[:-1] + "+00:00"
        dt = datetime.fromisoformat(s)
        if dt.tzinfo is None:
            dt = dt.replace(tzinfo=timezone.utc)
        return dt.astimezone(timezone.utc)
    except ValueError:
        return None


def sha256_hex(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def safe_hash_encode(components: List[str]) -> bytes:
    """
    Length-prefixed encoding for hash inputs.
    Prevents delimiter collision attacks.
    """
    result = b""
    for component in components:
        encoded = component.encode("utf-8")
        length_bytes = len(encoded).to_bytes(8, byteorder="big")
        result += length_bytes + encoded
    return result


def _canonicalize(obj: Any, *, _path: str = "$", _depth: int = 0) -> Any:
    if _depth > _CANON_MAX_DEPTH:
        raise rbac_error(RBAC_E_CANON_DEPTH, "max nesting depth exceeded", path=_path, max_depth=_CANON_MAX_DEPTH)

    if obj is None or isinstance(obj, bool):
        return obj
    if isinstance(obj, str):
        return unicodedata.normalize(_CANON_UNICODE_NORM, obj)
    if isinstance(obj, int):
        return obj
    if isinstance(obj, float):
        if not math.isfinite(obj):
            raise rbac_error(RBAC_E_CANON_NONFINITE, "non-finite float", path=_path)
        return obj

    if isinstance(obj, dict):
        out: Dict[str, Any] = {}
        for k, v in obj.items():
            if not isinstance(k, str):
                raise rbac_error(RBAC_E_CANON_KEY_TYPE, "dict key must be str", path=_path, got=type(k).__name__)
            nk = unicodedata.normalize(_CANON_UNICODE_NORM, k)
            if nk in out:
                # Normalization can collapse distinct keys into the same NFC form.
                raise rbac_error(RBAC_E_CANON_KEY_COLLISION, "duplicate dict key after unicode normalization", path=_path)
            out[nk] = _canonicalize(v, _path=f"{_path}['{nk}']", _depth=_depth + 1)
        return out

    if isinstance(obj, (list, tuple)):
        return [_canonicalize(v, _path=f"{_path}[{i}]", _depth=_depth + 1) for i, v in enumerate(obj)]

    raise rbac_error(RBAC_E_CANON_NON_JSON, "non-JSON-serializable type", path=_path, got=type(obj).__name__)


def canonical_json_dumps(obj: Any) -> str:
    """Strict canonical JSON.

    Unknown types are rejected rather than stringified, and NaN/Infinity are
    refused so that other verifiers can always re-encode the value.
    """
    try:
        normalized = _canonicalize(obj)
        return json.dumps(
            normalized,
            sort_keys=True,
            separators=(",", ":"),
            ensure_ascii=False,
            allow_nan=False,
        )
    except RBACError:
        raise
    except (TypeError, ValueError) as e:
        raise rbac_error(RBAC_E_CANON_NON_JSON, f"canonical JSON encoding failed: {e}") from e
