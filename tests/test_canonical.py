from datetime import datetime, timedelta, timezone

import pytest

from rbac_lens.canonical import (
    canonical_json_dumps,
    format_timestamp,
    parse_timestamp,
    safe_hash_encode,
)
from rbac_lens.errors import (
    RBACError,
    RBAC_E_CANON_DEPTH,
    RBAC_E_CANON_KEY_COLLISION,
    RBAC_E_CANON_KEY_TYPE,
    RBAC_E_CANON_NONFINITE,
    RBAC_E_CANON_NON_JSON,
)


def test_canonical_json_sorts_keys_and_strips_whitespace():
    assert canonical_json_dumps({"name": "alice", "kind": "User"}) == '{"kind":"User","name":"alice"}'


def test_canonical_json_normalizes_unicode_to_nfc():
    decomposed = "cafe\u0301"
    assert canonical_json_dumps({"name": decomposed}) == canonical_json_dumps({"name": "caf\u00e9"})


def test_canonical_json_key_collision_after_normalization():
    with pytest.raises(RBACError) as ei:
        canonical_json_dumps({"cafe\u0301": 1, "caf\u00e9": 2})
    assert ei.value.code == RBAC_E_CANON_KEY_COLLISION


@pytest.mark.parametrize(
    "value,code",
    [
        ({"x": float("nan")}, RBAC_E_CANON_NONFINITE),
        ({"x": float("inf")}, RBAC_E_CANON_NONFINITE),
        ({1: "int key"}, RBAC_E_CANON_KEY_TYPE),
        ({"x": object()}, RBAC_E_CANON_NON_JSON),
        ({"x": {"a", "b"}}, RBAC_E_CANON_NON_JSON),
    ],
)
def test_canonical_json_rejects_non_portable_values(value, code):
    with pytest.raises(RBACError) as ei:
        canonical_json_dumps(value)
    assert ei.value.code == code


def test_canonical_json_depth_limit():
    deep = current = {}
    for _ in range(40):
        current["x"] = {}
        current = current["x"]
    with pytest.raises(RBACError) as ei:
        canonical_json_dumps(deep)
    assert ei.value.code == RBAC_E_CANON_DEPTH


def test_safe_hash_encode_prevents_delimiter_collisions():
    assert safe_hash_encode(["ab", "c"]) != safe_hash_encode(["a", "bc"])
    assert safe_hash_encode([""]) == b"\x00" * 8
    assert safe_hash_encode(["é"])[:8] == (2).to_bytes(8, "big")


def test_timestamps_are_fixed_width_utc():
    dt = datetime(2024, 3, 1, 12, 0, 0, tzinfo=timezone(timedelta(hours=2)))
    assert format_timestamp(dt) == "2024-03-01T10:00:00.000000Z"
    assert format_timestamp(datetime(2024, 3, 1)) == "2024-03-01T00:00:00.000000Z"


def test_parse_timestamp():
    assert parse_timestamp("2024-03-01T10:00:00Z") == datetime(2024, 3, 1, 10, tzinfo=timezone.utc)
    assert parse_timestamp("2024-03-01T12:00:00+02:00") == datetime(2024, 3, 1, 10, tzinfo=timezone.utc)
    assert parse_timestamp("yesterday") is None
    assert parse_timestamp("") is None
    assert parse_timestamp(None) is None
