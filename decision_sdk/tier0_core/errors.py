"""
decision_sdk.tier0_core.errors
───────────────────────────────
Error taxonomy for the decision core. Only genuine failures are exceptions:
policy rejections (test not running, excluded by traffic, not a participant)
and undetermined statistics are ordinary return values.

  ValidationError  malformed request, raised before any state mutation
  NotFoundError    store-level lookup of an absent record
  ConflictError    duplicate create
  StoreError       persistence failure; the one hard failure callers see
  ConfigurationError  invalid settings detected at startup

Optional Sentry capture: DECISION_ERROR_BACKEND=sentry|none
"""
from __future__ import annotations

import os
from typing import Any


# ── Base error ────────────────────────────────────────────────────────────────

class DecisionError(Exception):
    """
    Base class for all decision core errors. Every error has:
    - code: stable machine-readable string (snake_case)
    - user_message: safe to surface to API callers
    - detail: internal context, never shown to callers
    - status_code: HTTP status code the caller should map it to
    """

    status_code: int = 500
    code: str = "internal_error"

    def __init__(
        self,
        code: str | None = None,
        user_message: str = "An unexpected error occurred.",
        detail: str | None = None,
        **metadata: Any,
    ) -> None:
        self.code = code or self.__class__.code
        self.user_message = user_message
        self.detail = detail or user_message
        self.metadata = metadata
        super().__init__(self.detail)
        _capture(self)

    def to_dict(self) -> dict:
        return {
            "error": {
                "code": self.code,
                "message": self.user_message,
            }
        }


# ── Typed error classes ───────────────────────────────────────────────────────

class ValidationError(DecisionError):
    """Request validation failure."""
    status_code = 422
    code = "validation_error"

    def __init__(
        self,
        code: str | None = None,
        user_message: str = "Validation failed.",
        fields: dict | None = None,
        **metadata: Any,
    ) -> None:
        self.fields = fields or {}
        super().__init__(code, user_message, **metadata)

    def to_dict(self) -> dict:
        d = super().to_dict()
        if self.fields:
            d["error"]["fields"] = self.fields
        return d


class NotFoundError(DecisionError):
    """Requested record does not exist in the store."""
    status_code = 404
    code = "not_found"

    def __init__(
        self,
        entity: str = "record",
        record_id: str = "",
        **metadata: Any,
    ) -> None:
        self.entity = entity
        self.record_id = record_id
        super().__init__(
            None,
            user_message=f"{entity} not found.",
            detail=f"{entity} {record_id!r} not found",
            **metadata,
        )


class ConflictError(DecisionError):
    """Record with the same id already exists."""
    status_code = 409
    code = "conflict"


class StoreError(DecisionError):
    """Underlying persistence failure. Retries belong to the store adapter."""
    status_code = 503
    code = "store_unavailable"


class ConfigurationError(DecisionError):
    """Misconfiguration detected at startup."""
    status_code = 500
    code = "configuration_error"


# ── Error capture backend ─────────────────────────────────────────────────────

def _capture(error: DecisionError) -> None:
    """Send error to configured backend. Called automatically by DecisionError.__init__."""
    backend = os.getenv("DECISION_ERROR_BACKEND", "none").lower()
    if backend == "sentry":
        _capture_sentry(error)


def _capture_sentry(error: DecisionError) -> None:
    import sentry_sdk

    if error.status_code >= 500:
        sentry_sdk.capture_exception(error)
    else:
        sentry_sdk.capture_message(
            str(error),
            level="warning",
            extras={"code": error.code, **error.metadata},
        )


def configure_sentry(dsn: str, **kwargs: Any) -> None:
    """Initialize Sentry. Call once at application startup."""
    import sentry_sdk
    sentry_sdk.init(dsn=dsn, **kwargs)
    os.environ["DECISION_ERROR_BACKEND"] = "sentry"


__all__ = [
    "DecisionError", "ValidationError", "NotFoundError", "ConflictError",
    "StoreError", "ConfigurationError", "configure_sentry",
]
