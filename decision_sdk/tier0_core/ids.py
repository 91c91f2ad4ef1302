"""
decision_sdk.tier0_core.ids
────────────────────────────
Record id generation. Ids are random UUID4 hex strings with a short entity
prefix ("dlv_3f2a…", "prt_9c01…") so they are recognisable in logs.
"""
from __future__ import annotations

import re
import uuid

_PREFIX_RE = re.compile(r"^[a-z][a-z0-9]{0,7}$")


def new_id(prefix: str | None = None) -> str:
    """
    Generate a new record id, optionally prefixed.

    Usage:
        new_id("dlv")   # → "dlv_0f8e5c1b4c7d4c6e9a3b2d1e0f9a8b7c"
        new_id()        # → "0f8e5c1b4c7d4c6e9a3b2d1e0f9a8b7c"
    """
    raw = uuid.uuid4().hex
    if prefix is None:
        return raw
    if not _PREFIX_RE.match(prefix):
        raise ValueError(f"Invalid id prefix: {prefix!r}. Use 1-8 lowercase alphanumerics.")
    return f"{prefix}_{raw}"


__all__ = ["new_id"]
