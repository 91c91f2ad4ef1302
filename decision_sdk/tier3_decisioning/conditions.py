"""
decision_sdk.tier3_decisioning.conditions
───────────────────────────────────────────
Predicate evaluation over a user's profile, recent events and request
context. Three condition families, each a logical AND over its list (an
empty list passes):

  psychographic  {field: "emotional_state.mood", operator, value}
                 field is a dot-path into the profile; a missing or null
                 step fails the condition whatever the operator
  behavioral     {event_type, frequency: once|multiple|never,
                  event_payload_conditions: [{field, operator, value}]}
  timing         {idle_time_seconds, time_on_page_seconds,
                  session_duration_seconds}; each measured from an anchor
                 timestamp in the request context. A missing anchor skips
                 that check; an unparseable one fails it.

Unknown operators and frequencies evaluate to False.

The compliance monitor reuses resolve_path() and compare() so both paths
agree on what a condition means.
"""
from __future__ import annotations

import json
import math
import re
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable, Mapping, Sequence

from pydantic import BaseModel

from decision_sdk.tier0_core.logging import get_logger
from decision_sdk.tier1_runtime.clock import Clock, get_clock, parse_timestamp
from decision_sdk.tier2_storage.entities import (
    BehavioralCondition,
    Event,
    FieldCondition,
    TimingConditions,
    TriggerConditions,
)

log = get_logger(__name__)

DEFAULT_MAX_PATH_DEPTH = 8

# timing threshold → context key holding the anchor timestamp
TIMING_ANCHORS = {
    "idle_time_seconds": "last_activity",
    "time_on_page_seconds": "page_start_time",
    "session_duration_seconds": "session_start_time",
}

_LEADING_NUMBER = re.compile(r"^\s*[+-]?(?:\d+\.?\d*|\.\d+)(?:[eE][+-]?\d+)?")


# ── Value coercion ────────────────────────────────────────────────────────────

def as_text(value: Any) -> str:
    """String form used by equality and substring operators."""
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, (list, tuple)):
        return ",".join(as_text(v) for v in value)
    if isinstance(value, dict):
        return json.dumps(value, sort_keys=True, default=str)
    return str(value)


def as_number(value: Any) -> float | None:
    """Numeric form used by ordering operators. None when not a number."""
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, (int, float)):
        number = float(value)
    else:
        match = _LEADING_NUMBER.match(str(value))
        if match is None:
            return None
        number = float(match.group(0))
    return None if math.isnan(number) else number


def _ordered(op: Callable[[float, float], bool]) -> Callable[[Any, Any], bool]:
    def check(actual: Any, expected: Any) -> bool:
        a, b = as_number(actual), as_number(expected)
        if a is None or b is None:
            return False
        return op(a, b)
    return check


def _contains(actual: Any, expected: Any) -> bool:
    return as_text(expected).lower() in as_text(actual).lower()


OPERATORS: dict[str, Callable[[Any, Any], bool]] = {
    "equals": lambda a, b: as_text(a) == as_text(b),
    "not_equals": lambda a, b: as_text(a) != as_text(b),
    "greater_than": _ordered(lambda a, b: a > b),
    "less_than": _ordered(lambda a, b: a < b),
    "contains": _contains,
    "not_contains": lambda a, b: not _contains(a, b),
}

PAYLOAD_OPERATORS = ("equals", "contains")

FREQUENCIES: dict[str, Callable[[int], bool]] = {
    "once": lambda n: n >= 1,
    "multiple": lambda n: n >= 2,
    "never": lambda n: n == 0,
}


def compare(actual: Any, operator: str, expected: Any) -> bool:
    """Apply a named operator. Unknown operators are False."""
    check = OPERATORS.get(operator)
    if check is None:
        return False
    return check(actual, expected)


# ── Path resolution ───────────────────────────────────────────────────────────

def resolve_path(
    data: Mapping[str, Any] | BaseModel | None,
    path: str,
    max_depth: int = DEFAULT_MAX_PATH_DEPTH,
) -> Any | None:
    """
    Walk a dot-separated path through nested mappings (and list indices).
    Returns None when any step is missing or null, or the path is malformed
    or deeper than *max_depth*.
    """
    if data is None or not isinstance(path, str) or not path:
        return None
    parts = path.split(".")
    if len(parts) > max_depth or any(not p for p in parts):
        return None

    current: Any = data.model_dump() if isinstance(data, BaseModel) else data
    for part in parts:
        if isinstance(current, Mapping):
            current = current.get(part)
        elif isinstance(current, (list, tuple)) and part.isdigit():
            index = int(part)
            current = current[index] if index < len(current) else None
        else:
            return None
        if current is None:
            return None
    return current


# ── Evaluation ────────────────────────────────────────────────────────────────

@dataclass
class ConditionOutcome:
    psychographic: bool
    behavioral: bool
    timing: bool
    matched_events: list[Event] = field(default_factory=list)

    @property
    def passed(self) -> bool:
        return self.psychographic and self.behavioral and self.timing

    @property
    def conditions_met(self) -> list[str]:
        return [
            name for name, ok in (
                ("psychographic", self.psychographic),
                ("behavioral", self.behavioral),
                ("timing", self.timing),
            ) if ok
        ]


class ConditionEvaluationEngine:
    """Stateless evaluator. One instance can serve every request."""

    def __init__(
        self,
        max_path_depth: int = DEFAULT_MAX_PATH_DEPTH,
        clock: Clock | None = None,
    ) -> None:
        self.max_path_depth = max_path_depth
        self._clock = clock

    @property
    def clock(self) -> Clock:
        return self._clock or get_clock()

    # psychographic ─────────────────────────────────────────────────────────

    def field_matches(self, subject: Mapping[str, Any] | BaseModel | None, condition: FieldCondition) -> bool:
        actual = resolve_path(subject, condition.field, self.max_path_depth)
        if actual is None:
            return False
        return compare(actual, condition.operator, condition.value)

    def psychographic(
        self,
        profile: Mapping[str, Any] | BaseModel | None,
        conditions: Sequence[FieldCondition],
    ) -> bool:
        if not conditions:
            return True
        subject = profile.model_dump() if isinstance(profile, BaseModel) else profile
        return all(self.field_matches(subject, c) for c in conditions)

    # behavioral ────────────────────────────────────────────────────────────

    def payload_matches(self, event: Event, condition: FieldCondition) -> bool:
        if condition.operator not in PAYLOAD_OPERATORS:
            return False
        payload = event.event_payload or {}
        if condition.field not in payload:
            return False
        return compare(payload[condition.field], condition.operator, condition.value)

    def matching_events(self, events: Iterable[Event], condition: BehavioralCondition) -> list[Event]:
        return [
            e for e in events
            if e.event_type == condition.event_type
            and all(self.payload_matches(e, pc) for pc in condition.event_payload_conditions)
        ]

    def behavioral(
        self,
        events: Sequence[Event],
        conditions: Sequence[BehavioralCondition],
    ) -> tuple[bool, list[Event]]:
        """All conditions' cardinality tests pass. Also returns the matched events."""
        matched: list[Event] = []
        for condition in conditions:
            hits = self.matching_events(events, condition)
            check = FREQUENCIES.get(condition.frequency)
            if check is None or not check(len(hits)):
                return False, matched
            matched.extend(e for e in hits if e not in matched)
        return True, matched

    # timing ────────────────────────────────────────────────────────────────

    def timing(self, context: Mapping[str, Any], conditions: TimingConditions | None) -> bool:
        if conditions is None:
            return True
        for threshold_name, anchor_key in TIMING_ANCHORS.items():
            threshold = getattr(conditions, threshold_name)
            if not threshold:
                continue
            raw = context.get(anchor_key)
            if raw is None:
                continue
            try:
                anchor = parse_timestamp(raw)
            except (TypeError, ValueError):
                log.warning("conditions.bad_timestamp", anchor=anchor_key, value=str(raw))
                return False
            if self.clock.elapsed_seconds(anchor) < threshold:
                return False
        return True

    # combined ──────────────────────────────────────────────────────────────

    def evaluate(
        self,
        conditions: TriggerConditions,
        profile: Mapping[str, Any] | BaseModel | None,
        events: Sequence[Event],
        context: Mapping[str, Any],
    ) -> ConditionOutcome:
        behavioral_ok, matched = self.behavioral(events, conditions.behavioral_conditions)
        return ConditionOutcome(
            psychographic=self.psychographic(profile, conditions.psychographic_conditions),
            behavioral=behavioral_ok,
            timing=self.timing(context, conditions.timing_conditions),
            matched_events=matched,
        )


__all__ = [
    "ConditionEvaluationEngine", "ConditionOutcome",
    "OPERATORS", "PAYLOAD_OPERATORS", "FREQUENCIES", "TIMING_ANCHORS",
    "compare", "resolve_path", "as_text", "as_number",
]
