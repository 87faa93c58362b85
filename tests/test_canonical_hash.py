from __future__ import annotations

import pytest

from rhythm_pipeline.canonical_hash import canonical_hash, canonical_json, hash_payload


def test_canonical_hash_ignores_key_order():
    a = {"b": 1, "a": {"y": [1, 2], "x": "v"}}
    b = {"a": {"x": "v", "y": [1, 2]}, "b": 1}
    assert canonical_json(a) == canonical_json(b)
    assert canonical_hash("v1", a) == canonical_hash("v1", b)


def test_canonical_hash_changes_with_version_only():
    data = {"risk_score": {"overall": 42.0}}
    assert canonical_hash("v1", data) != canonical_hash("v2", data)


def test_canonical_hash_keeps_list_order_significant():
    assert hash_payload([1, 2]) != hash_payload([2, 1])


def test_canonical_hash_rejects_empty_version():
    with pytest.raises(ValueError, match="version"):
        canonical_hash("  ", {})
