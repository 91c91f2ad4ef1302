"""
decision_sdk.tier3_decisioning.hashing
────────────────────────────────────────
Deterministic hash of (subject, salt) onto the unit interval [0, 1).

Both traffic inclusion and variant bucketing depend on it, and the buckets
it produces are persisted permanently, so the mapping must never change:

    digest = SHA-256(utf8(subject + salt))
    value  = int(digest[0:4], big-endian) / 2**32

Four bytes give ~4.3e9 distinct buckets; dividing by 2**32 rather than
2**32 - 1 keeps the result strictly below 1.
"""
from __future__ import annotations

import hashlib

HASH_PREFIX_BYTES = 4
_SCALE = float(1 << (8 * HASH_PREFIX_BYTES))


def deterministic_hash(subject: str, salt: str) -> float:
    """
    Map (subject, salt) to a stable, uniformly distributed float in [0, 1).

    Usage:
        traffic = deterministic_hash(user_id, ab_test_id)
        bucket = deterministic_hash(f"{user_id}_variant", ab_test_id)
    """
    digest = hashlib.sha256(f"{subject}{salt}".encode("utf-8")).digest()
    return int.from_bytes(digest[:HASH_PREFIX_BYTES], "big") / _SCALE


__all__ = ["deterministic_hash", "HASH_PREFIX_BYTES"]
