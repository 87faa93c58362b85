from __future__ import annotations

import json
from hashlib import sha256
from typing import Any


def canonical_json(value: Any) -> str:
    return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=True, default=str)


def hash_payload(payload: Any) -> str:
    return sha256(canonical_json(payload).encode("utf-8")).hexdigest()


def canonical_hash(version: str, upstream_data: Any) -> str:
    """Hash a stage's semantic inputs.

    Key order never changes the result; the version is part of the hashed
    material, so bumping it alone yields a different hash.
    """
    if not str(version).strip():
        raise ValueError("version must not be empty")
    return hash_payload({"version": str(version), "data": upstream_data})
