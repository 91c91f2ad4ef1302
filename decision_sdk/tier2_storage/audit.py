"""
decision_sdk.tier2_storage.audit
───────────────────────────────────
Append-only audit trail for consequential decisions: test lifecycle
transitions, winner declarations, compliance alerts. Records are written to
the structured log stream; a log pipeline (Loki, etc.) is the durable sink.

Configure via: DECISION_AUDIT_BACKEND=log|none
"""
from __future__ import annotations

import os
import time
import uuid
from dataclasses import dataclass, field
from typing import Any

from decision_sdk.tier0_core.logging import get_logger
from decision_sdk.tier1_runtime.context import get_context


@dataclass
class AuditRecord:
    """Immutable audit record. Never update or delete these."""
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    timestamp: float = field(default_factory=time.time)
    actor_id: str = ""
    client_app_id: str | None = None
    action: str = ""            # e.g. "test.stop", "alert.create"
    resource_type: str = ""     # e.g. "ab_test", "integrity_alert"
    resource_id: str = ""
    outcome: str = "success"    # "success" | "failure" | "denied"
    metadata: dict[str, Any] = field(default_factory=dict)


def audit(
    action: str,
    resource_type: str,
    resource_id: str,
    outcome: str = "success",
    metadata: dict | None = None,
    actor_id: str | None = None,
) -> AuditRecord:
    """
    Write an audit record. The actor defaults to the request's principal,
    or "system" for scheduled work with no caller.

    Usage:
        audit("test.stop", "ab_test", test.id, metadata={"winner_variant_id": vid})
    """
    ctx = get_context()
    record = AuditRecord(
        actor_id=actor_id or ctx.principal_id or "system",
        client_app_id=ctx.client_app_id,
        action=action,
        resource_type=resource_type,
        resource_id=resource_id,
        outcome=outcome,
        metadata=metadata or {},
    )

    backend = os.getenv("DECISION_AUDIT_BACKEND", "log").lower()
    if backend == "log":
        _write_log(record)

    return record


def _write_log(record: AuditRecord) -> None:
    log = get_logger("decision_sdk.audit")
    log.info(
        "audit",
        audit_id=record.id,
        actor_id=record.actor_id,
        action=record.action,
        resource_type=record.resource_type,
        resource_id=record.resource_id,
        outcome=record.outcome,
        metadata=record.metadata,
        timestamp=record.timestamp,
    )


__all__ = ["audit", "AuditRecord"]
