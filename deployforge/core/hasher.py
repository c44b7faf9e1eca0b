"""Canonical hashing helpers for the audit ledger and notification files.

Canonical JSON is sorted, compact and ASCII-only so that a record hashes to
the same digest on every host and every Python version.
"""

from __future__ import annotations

import hashlib
import json
from typing import Any


def canonical_json_bytes(obj: Any) -> bytes:
    """Produce canonical JSON bytes — deterministic, sorted, compact.

    - sorted keys
    - no whitespace separators (",", ":")
    - ensure_ascii=True
    - UTF-8 encoding
    """
    return json.dumps(
        obj, sort_keys=True, separators=(",", ":"), ensure_ascii=True
    ).encode("utf-8")


def sha256_hex(data: bytes) -> str:
    """Return the SHA-256 hex digest of raw bytes."""
    return hashlib.sha256(data).hexdigest()


def compute_record_hash(record_dict: dict[str, Any]) -> str:
    """SHA-256 of an audit record, excluding the ``record_hash`` field itself.

    This is the seal that makes each record tamper-evident.
    """
    d = {k: v for k, v in record_dict.items() if k != "record_hash"}
    return sha256_hex(canonical_json_bytes(d))
