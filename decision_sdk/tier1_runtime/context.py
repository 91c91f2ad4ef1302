"""
decision_sdk.tier1_runtime.context
────────────────────────────────────
Request context: correlation id, authenticated caller and the client
application the request was made for. Authentication and API-key checks
happen before the core is invoked; the host binds their results here.

Uses Python contextvars for async-safe, framework-agnostic storage and
mirrors the fields into structlog contextvars so every log line carries them.
"""
from __future__ import annotations

import uuid
from contextvars import ContextVar
from dataclasses import dataclass, field
from typing import Any

from decision_sdk.tier0_core.logging import bind_context


# ── Domain model ─────────────────────────────────────────────────────────────

@dataclass
class RequestContext:
    """All per-request metadata available throughout the request lifecycle."""
    request_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    principal_id: str | None = None
    client_app_id: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


# ── ContextVar storage ────────────────────────────────────────────────────────

_ctx: ContextVar[RequestContext] = ContextVar(
    "decision_request_context",
    default=RequestContext(),
)


# ── Public API ────────────────────────────────────────────────────────────────

def get_context() -> RequestContext:
    """Return the current request context."""
    return _ctx.get()


def set_context(ctx: RequestContext) -> None:
    """Set the request context for the current async scope."""
    _ctx.set(ctx)
    bind_context(
        request_id=ctx.request_id,
        principal_id=ctx.principal_id,
        client_app_id=ctx.client_app_id,
    )


def new_context(
    principal_id: str | None = None,
    client_app_id: str | None = None,
    **metadata: Any,
) -> RequestContext:
    """Create and activate a new request context. Returns the new context."""
    ctx = RequestContext(
        principal_id=principal_id,
        client_app_id=client_app_id,
        metadata=metadata,
    )
    set_context(ctx)
    return ctx


def get_client_app_id() -> str | None:
    return get_context().client_app_id


__all__ = [
    "RequestContext", "get_context", "set_context", "new_context",
    "get_client_app_id",
]
