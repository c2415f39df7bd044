"""Helpers for deterministic content fingerprints.

Fingerprints key the plan cache (schema + runner config) and the classification
cache (boolean category schema). Keep the canonical form centralized so that
every producer and consumer of a cache agrees on it.
"""

from __future__ import annotations

import hashlib
import json
from typing import Any


def canonical_json(value: Any) -> str:
    """Serialize ``value`` with sorted keys and no insignificant whitespace."""
    return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False, default=str)


def sha256_hex(*parts: str) -> str:
    digest = hashlib.sha256()
    for part in parts:
        digest.update(part.encode("utf-8"))
    return digest.hexdigest()


def fingerprint(*values: Any) -> str:
    """SHA-256 over the concatenated canonical JSON of ``values``."""
    return sha256_hex(*(canonical_json(v) for v in values))
