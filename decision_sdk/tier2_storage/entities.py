"""
decision_sdk.tier2_storage.entities
─────────────────────────────────────
Pydantic models for every record the decision core reads or writes.

Experiments:  ABTest → Variant → Participant (+ ConversionEvent)
Engagement:   Rule, Template, Delivery, RuleTrigger
User state:   Profile, Event (read-only to the core)
Compliance:   ComplianceRule, IntegrityAlert, DarkPatternDetection

Opaque payloads (variant configuration, template content, event payloads)
are plain dicts; the core never interprets them beyond field lookups.
"""
from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

from decision_sdk.tier0_core.ids import new_id
from decision_sdk.tier1_runtime.clock import ensure_utc, now


class UTCModel(BaseModel):
    """Keeps every datetime field aware and in UTC. Naive input is read as UTC."""

    @field_validator("*", mode="after")
    @classmethod
    def _datetimes_to_utc(cls, value: Any) -> Any:
        return ensure_utc(value) if isinstance(value, datetime) else value


class Entity(UTCModel):
    """Base for stored records. Unknown fields are kept, not rejected."""

    model_config = ConfigDict(extra="allow")

    id: str = Field(default_factory=new_id)
    created_at: datetime = Field(default_factory=now)


# ── Experiments ───────────────────────────────────────────────────────────────

TestStatus = Literal["draft", "running", "completed"]


class StatisticalSettings(BaseModel):
    confidence_level: float = Field(default=0.95, gt=0.0, lt=1.0)
    minimum_sample_size: int = Field(default=100, ge=1)


class ABTest(Entity):
    id: str = Field(default_factory=lambda: new_id("tst"))
    name: str = ""
    client_app_id: str | None = None
    status: TestStatus = "draft"
    traffic_allocation: float = Field(default=1.0, ge=0.0, le=1.0)
    statistical_settings: StatisticalSettings = Field(default_factory=StatisticalSettings)
    winner_variant_id: str | None = None
    started_at: datetime | None = None
    ended_at: datetime | None = None
    results_summary: dict[str, Any] | None = None


class PerformanceMetrics(BaseModel):
    participants: int = 0
    conversions: int = 0
    conversion_rate: float = 0.0
    total_events: float = 0.0


class Variant(Entity):
    id: str = Field(default_factory=lambda: new_id("var"))
    ab_test_id: str
    name: str = ""
    is_control: bool = False
    traffic_weight: float = Field(default=1.0, gt=0.0)
    configuration: dict[str, Any] = Field(default_factory=dict)
    performance_metrics: PerformanceMetrics = Field(default_factory=PerformanceMetrics)


class ConversionEvent(UTCModel):
    metric_name: str
    event_type: str
    value: float = 1.0
    timestamp: datetime = Field(default_factory=now)


class Participant(Entity):
    """One per (ab_test_id, user_id). variant_id never changes once written."""

    id: str = Field(default_factory=lambda: new_id("prt"))
    ab_test_id: str
    user_id: str
    variant_id: str
    client_app_id: str | None = None
    converted: bool = False
    conversion_events: list[ConversionEvent] = Field(default_factory=list)
    assigned_at: datetime = Field(default_factory=now)
    last_interaction_at: datetime | None = None


# ── Engagement rules ──────────────────────────────────────────────────────────

class FieldCondition(BaseModel):
    """Psychographic condition: dot-path into the profile, operator, expected value."""

    field: str
    operator: str
    value: Any = None


class BehavioralCondition(BaseModel):
    event_type: str
    frequency: str = "once"
    event_payload_conditions: list[FieldCondition] = Field(default_factory=list)


class TimingConditions(BaseModel):
    idle_time_seconds: float | None = None
    time_on_page_seconds: float | None = None
    session_duration_seconds: float | None = None


class TriggerConditions(BaseModel):
    psychographic_conditions: list[FieldCondition] = Field(default_factory=list)
    behavioral_conditions: list[BehavioralCondition] = Field(default_factory=list)
    timing_conditions: TimingConditions | None = None


class MaxFrequency(BaseModel):
    limit: int = Field(ge=0)
    period: str


class EngagementAction(BaseModel):
    template_id: str
    type: str = "modal"
    priority: str = "medium"
    max_frequency: MaxFrequency | None = None


class Rule(Entity):
    id: str = Field(default_factory=lambda: new_id("rul"))
    client_app_id: str
    name: str = ""
    status: Literal["active", "inactive"] = "active"
    trigger_conditions: TriggerConditions = Field(default_factory=TriggerConditions)
    engagement_action: EngagementAction


class Template(Entity):
    id: str = Field(default_factory=lambda: new_id("tpl"))
    name: str = ""
    content: dict[str, Any] = Field(default_factory=dict)
    personalization: dict[str, Any] = Field(default_factory=dict)

    @property
    def wants_personalization(self) -> bool:
        return bool(self.personalization.get("use_psychographic_data"))


class Delivery(Entity):
    id: str = Field(default_factory=lambda: new_id("dlv"))
    user_id: str
    rule_id: str
    template_id: str
    client_app_id: str | None = None
    session_id: str | None = None
    delivery_context: dict[str, Any] = Field(default_factory=dict)
    rendered_content: dict[str, Any] | None = None
    delivery_status: Literal["pending", "delivered"] = "pending"


class RuleTrigger(Entity):
    """Append-only record of one rule firing. Never updated."""

    id: str = Field(default_factory=lambda: new_id("trg"))
    rule_id: str
    user_id: str
    delivery_id: str
    triggered_at: datetime = Field(default_factory=now)


# ── User state ────────────────────────────────────────────────────────────────

class PersonalityTraits(BaseModel):
    openness: float | None = Field(default=None, ge=0.0, le=1.0)
    conscientiousness: float | None = Field(default=None, ge=0.0, le=1.0)
    extraversion: float | None = Field(default=None, ge=0.0, le=1.0)
    agreeableness: float | None = Field(default=None, ge=0.0, le=1.0)
    neuroticism: float | None = Field(default=None, ge=0.0, le=1.0)


class Motivation(BaseModel):
    label: str
    weight: float | None = None


class Profile(Entity):
    id: str = Field(default_factory=lambda: new_id("prf"))
    user_id: str
    personality_traits: PersonalityTraits = Field(default_factory=PersonalityTraits)
    emotional_state: dict[str, Any] = Field(default_factory=dict)
    risk_profile: Literal["conservative", "moderate", "aggressive"] | None = None
    cognitive_style: str | None = None
    motivation_stack: list[Motivation] = Field(default_factory=list)
    last_analyzed: datetime | None = None


class Event(Entity):
    id: str = Field(default_factory=lambda: new_id("evt"))
    user_id: str
    event_type: str
    event_payload: dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=now)


# ── Compliance ────────────────────────────────────────────────────────────────

class FrequencyLimit(BaseModel):
    event_type: str
    max_occurrences: int = Field(ge=0)
    time_window_seconds: float = Field(gt=0)


class TraitCondition(BaseModel):
    trait: str
    operator: str
    value: Any = None


class DetectionCriteria(BaseModel):
    frequency_limit: FrequencyLimit | None = None
    event_sequence: list[str] = Field(default_factory=list)
    psychographic_conditions: list[TraitCondition] | None = None


class ComplianceRule(Entity):
    id: str = Field(default_factory=lambda: new_id("cmp"))
    name: str = ""
    rule_type: str
    severity: str = "medium"
    enabled: bool = True
    detection_criteria: DetectionCriteria = Field(default_factory=DetectionCriteria)


class IntegrityAlert(Entity):
    id: str = Field(default_factory=lambda: new_id("alr"))
    user_id: str
    rule_id: str
    alert_type: str
    severity: str
    confidence_score: float
    detection_reasoning: dict[str, Any] = Field(default_factory=dict)
    policy_violated: str = ""
    recommended_interventions: list[dict[str, Any]] = Field(default_factory=list)
    status: str = "pending_review"


class DarkPatternDetection(Entity):
    id: str = Field(default_factory=lambda: new_id("dpd"))
    pattern_type: str
    detected_in_element: str
    detection_method: str = "user_behavior_analysis"
    affected_user_id: str | None = None
    affected_users_count: int = 1
    manipulation_score: float
    evidence: dict[str, Any] = Field(default_factory=dict)
    recommended_fix: str = ""
    status: str = "detected"


__all__ = [
    "UTCModel", "Entity", "TestStatus", "StatisticalSettings", "ABTest", "PerformanceMetrics",
    "Variant", "ConversionEvent", "Participant",
    "FieldCondition", "BehavioralCondition", "TimingConditions", "TriggerConditions",
    "MaxFrequency", "EngagementAction", "Rule", "Template", "Delivery", "RuleTrigger",
    "PersonalityTraits", "Motivation", "Profile", "Event",
    "FrequencyLimit", "TraitCondition", "DetectionCriteria", "ComplianceRule",
    "IntegrityAlert", "DarkPatternDetection",
]
