"""
decision_sdk.tier0_core.metrics
─────────────────────────────────
Counters and histograms with standard naming and labels. Exported through
the default prometheus_client registry; the host service decides how to
expose it (/metrics endpoint or push gateway).

Minimal stack: prometheus-client
"""
from __future__ import annotations

import os
from typing import Callable

from prometheus_client import Counter, Histogram

# Standard labels applied to every metric
_DEFAULT_LABELS = ["service", "env"]
_SERVICE = os.getenv("APP_NAME", "decision-sdk")
_ENV = os.getenv("APP_ENV", "development")
_DEFAULT_LABEL_VALUES = {"service": _SERVICE, "env": _ENV}


def counter(name: str, description: str, labels: list[str] | None = None) -> Callable:
    """
    Create a counter with standard labels. Call once per metric, at import time.

    Usage:
        assignments_total = counter("decision_assignments_total", "Variant assignments", ["outcome"])
        assignments_total(outcome="assigned").inc()
    """
    all_labels = _DEFAULT_LABELS + (labels or [])
    c = Counter(name, description, all_labels)

    def _counter(**extra_labels: str) -> Counter:
        return c.labels(**_DEFAULT_LABEL_VALUES, **extra_labels)

    return _counter


def histogram(
    name: str,
    description: str,
    labels: list[str] | None = None,
    buckets: tuple = (0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5),
) -> Callable:
    """
    Create a histogram with standard labels.

    Usage:
        evaluation_seconds = histogram("decision_rule_evaluation_seconds", "Rule evaluation time")
        evaluation_seconds().observe(elapsed)
    """
    all_labels = _DEFAULT_LABELS + (labels or [])
    h = Histogram(name, description, all_labels, buckets=buckets)

    def _histogram(**extra_labels: str) -> Histogram:
        return h.labels(**_DEFAULT_LABEL_VALUES, **extra_labels)

    return _histogram


__all__ = ["counter", "histogram"]
