"""
decision_sdk.tier0_core.config
────────────────────────────────
Typed configuration with env layering. Reads from .env → environment
variables. All fields are typed via Pydantic; policy constants of the
decision core (engagement cap, event window, sample thresholds) live here
so deployments can tune them without code changes.

Minimal stack: pydantic-settings + python-dotenv
"""
from __future__ import annotations

from functools import lru_cache

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class DecisionConfig(BaseSettings):
    """
    Typed decision core configuration.
    Env vars are prefixed with DECISION_ unless overridden by an alias.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ── Application ───────────────────────────────────────────────────────────
    app_name: str = Field(default="decision-sdk", alias="APP_NAME")
    environment: str = Field(default="development", alias="APP_ENV")

    # ── Logging / errors ──────────────────────────────────────────────────────
    log_level: str = Field(default="INFO", alias="DECISION_LOG_LEVEL")
    log_format: str = Field(default="json", alias="DECISION_LOG_FORMAT")
    error_backend: str = Field(default="none", alias="DECISION_ERROR_BACKEND")

    # ── Backends ──────────────────────────────────────────────────────────────
    store_backend: str = Field(default="memory", alias="DECISION_STORE_BACKEND")
    renderer_backend: str = Field(default="template", alias="DECISION_RENDERER_BACKEND")

    # ── Rule evaluation ───────────────────────────────────────────────────────
    max_triggered_engagements: int = Field(default=3, alias="DECISION_MAX_TRIGGERED_ENGAGEMENTS")
    recent_event_window: int = Field(default=50, alias="DECISION_RECENT_EVENT_WINDOW")
    trigger_evidence_count: int = Field(default=5, alias="DECISION_TRIGGER_EVIDENCE_COUNT")
    max_field_path_depth: int = Field(default=8, alias="DECISION_MAX_FIELD_PATH_DEPTH")

    # ── Statistics ────────────────────────────────────────────────────────────
    min_interval_sample: int = Field(default=30, alias="DECISION_MIN_INTERVAL_SAMPLE")
    pvalue_method: str = Field(default="exact", alias="DECISION_PVALUE_METHOD")
    winner_lift_threshold: float = Field(default=0.10, alias="DECISION_WINNER_LIFT_THRESHOLD")

    # ── Compliance monitoring ─────────────────────────────────────────────────
    compliance_rule_limit: int = Field(default=100, alias="DECISION_COMPLIANCE_RULE_LIMIT")
    compliance_event_limit: int = Field(default=1000, alias="DECISION_COMPLIANCE_EVENT_LIMIT")

    @field_validator("environment")
    @classmethod
    def validate_env(cls, v: str) -> str:
        allowed = {"development", "staging", "production", "test"}
        if v.lower() not in allowed:
            raise ValueError(f"environment must be one of {allowed}, got {v!r}")
        return v.lower()

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        if v.upper() not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"log_level must be a standard level name, got {v!r}")
        return v.upper()

    @field_validator("log_format")
    @classmethod
    def validate_log_format(cls, v: str) -> str:
        if v.lower() not in ("json", "console"):
            raise ValueError(f"log_format must be 'json' or 'console', got {v!r}")
        return v.lower()

    @field_validator("pvalue_method")
    @classmethod
    def validate_pvalue_method(cls, v: str) -> str:
        if v.lower() not in ("exact", "approximate"):
            raise ValueError(f"pvalue_method must be 'exact' or 'approximate', got {v!r}")
        return v.lower()

    @field_validator(
        "max_triggered_engagements",
        "recent_event_window",
        "max_field_path_depth",
        "min_interval_sample",
        "compliance_rule_limit",
        "compliance_event_limit",
    )
    @classmethod
    def validate_positive(cls, v: int) -> int:
        if v <= 0:
            raise ValueError(f"must be a positive integer, got {v}")
        return v


@lru_cache(maxsize=1)
def get_config() -> DecisionConfig:
    """
    Return the singleton config. Cached after first call.
    Call _reset_config() in tests to pick up new env vars.
    """
    return DecisionConfig()


def _reset_config() -> None:
    """Clear the config cache (tests)."""
    get_config.cache_clear()


__all__ = ["DecisionConfig", "get_config"]
