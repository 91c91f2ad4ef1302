"""
decision_sdk.tier0_core.logging
────────────────────────────────
Structured logs for every decision the core makes: assignments, conversions,
rule firings, compliance detections. Request context (request_id,
principal_id, client_app_id) is merged in automatically and sensitive keys
are masked before output, including keys nested inside logged payloads.

Level and format come from DecisionConfig, so a .env file drives them the
same way it drives the rest of the core.

Minimal stack: structlog (stdout JSON or console)
Configure via: DECISION_LOG_LEVEL, DECISION_LOG_FORMAT=json|console
"""
from __future__ import annotations

import logging
import sys
from typing import Any

import structlog

_HANDLER_NAME = "decision_sdk"


# ── Configuration ─────────────────────────────────────────────────────────────

def _build_renderer(log_format: str) -> Any:
    if log_format == "console":
        return structlog.dev.ConsoleRenderer()
    return structlog.processors.JSONRenderer()


def configure_logging(log_level: str | None = None, log_format: str | None = None) -> None:
    """
    (Re)configure structlog and the stdlib root handler.

    Arguments left as None are read from get_config(). Calling this again
    replaces the handler installed by the previous call.
    """
    global _configured
    if log_level is None or log_format is None:
        from decision_sdk.tier0_core.config import get_config

        cfg = get_config()
        log_level = log_level or cfg.log_level
        log_format = log_format or cfg.log_format
    level = getattr(logging, log_level.upper(), logging.INFO)

    shared_processors: list[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        _redact_processor,
    ]

    structlog.configure(
        processors=shared_processors + [
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    formatter = structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=shared_processors,
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            _build_renderer(log_format.lower()),
        ],
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(formatter)
    handler.set_name(_HANDLER_NAME)

    root_logger = logging.getLogger()
    for existing in [h for h in root_logger.handlers if h.get_name() == _HANDLER_NAME]:
        root_logger.removeHandler(existing)
    root_logger.addHandler(handler)
    root_logger.setLevel(level)
    _configured = True


# ── Redaction processor ───────────────────────────────────────────────────────

# Tenant API keys travel with evaluate_rules requests; never let them reach a sink.
_REDACT_KEYS = frozenset({
    "password", "secret", "token", "api_key", "apikey",
    "authorization", "auth", "credential", "access_token",
    "client_secret",
})

_REDACTED = "[REDACTED]"


def _redact(value: Any) -> Any:
    if isinstance(value, dict):
        return {
            k: _REDACTED if isinstance(k, str) and k.lower() in _REDACT_KEYS else _redact(v)
            for k, v in value.items()
        }
    if isinstance(value, (list, tuple)):
        return type(value)(_redact(v) for v in value)
    return value


def _redact_processor(
    logger: Any, method: str, event_dict: dict
) -> dict:
    """Mask sensitive fields, at any depth, before output."""
    for key in list(event_dict.keys()):
        if key.lower() in _REDACT_KEYS:
            event_dict[key] = _REDACTED
        else:
            event_dict[key] = _redact(event_dict[key])
    return event_dict


# ── Public API ────────────────────────────────────────────────────────────────

_configured = False


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    """
    Return a structured logger bound to the given name.

    Usage:
        log = get_logger(__name__)
        log.info("assignment.created", ab_test_id="t_1", variant_id="v_2")
        log.warning("rendering.fallback", template_id="tpl_9", error="timeout")
    """
    if not _configured:
        configure_logging()
    return structlog.get_logger(name or __name__)


def bind_context(**kwargs: Any) -> None:
    """
    Bind key-value pairs to the current async/thread context.
    All subsequent log calls in this context will include these fields.
    """
    structlog.contextvars.bind_contextvars(**kwargs)


__all__ = ["get_logger", "bind_context", "configure_logging"]
