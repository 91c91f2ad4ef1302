"""
decision_sdk.tier3_decisioning.compliance
───────────────────────────────────────────
Behavioral integrity monitoring. Scans a recent window of events against
the enabled ComplianceRules, user by user, and optionally persists what it
finds as IntegrityAlerts and DarkPatternDetections for human review.

Rule types:
  frequency_threshold   more than max_occurrences of an event type inside
                        time_window_seconds                → rate_limit_abuse
  behavioral_sequence   an ordered run of event types, oldest first
                                                           → suspicious_behavior
  psychographic_risk    every {trait, operator, value} holds on the profile
                                                           → psychographic_risk
  combined              frequency and psychographic parts both fire
                                                           → combined_violation

Unknown rule types never fire. Each detection carries an intent assessment
drawn from the profile and the interventions that intent calls for.

Usage:
    monitor = ComplianceMonitor(get_stores())
    summary = await monitor.run(time_window_hours=1, auto_create_alerts=True)
"""
from __future__ import annotations

from collections import defaultdict
from dataclasses import asdict, dataclass, field
from typing import Any, Callable, Sequence

from decision_sdk.tier0_core.errors import DecisionError
from decision_sdk.tier0_core.logging import get_logger
from decision_sdk.tier0_core.metrics import counter
from decision_sdk.tier1_runtime.clock import Clock, ensure_utc, get_clock
from decision_sdk.tier2_storage.audit import audit
from decision_sdk.tier2_storage.entities import (
    ComplianceRule,
    DarkPatternDetection,
    DetectionCriteria,
    Event,
    IntegrityAlert,
    Profile,
)
from decision_sdk.tier2_storage.store import Stores
from decision_sdk.tier3_decisioning.conditions import DEFAULT_MAX_PATH_DEPTH, compare, resolve_path
from decision_sdk.tier3_decisioning.frequency import within_window

log = get_logger(__name__)

compliance_detections_total = counter(
    "decision_compliance_detections_total", "Compliance rule detections", ["alert_type"]
)

FREQUENCY_CONFIDENCE = 0.85
SEQUENCE_CONFIDENCE = 0.75
PSYCHOGRAPHIC_CONFIDENCE = 0.7
COMBINED_CONFIDENCE_BOOST = 1.2
COMBINED_CONFIDENCE_CAP = 0.95

ROACH_MOTEL_MIN_ATTEMPTS = 3
ROACH_MOTEL_SECONDS_PER_ATTEMPT = 30
CANCELLATION_MARKERS = ("cancel", "unsubscribe")


@dataclass
class Detection:
    user_id: str
    rule_id: str
    alert_type: str
    severity: str
    confidence_score: float
    policy_violated: str
    reasoning: dict[str, Any] = field(default_factory=dict)
    interventions: list[dict[str, str]] = field(default_factory=list)

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class DarkPatternSignal:
    pattern_type: str
    element: str
    manipulation_score: float
    evidence: dict[str, Any]
    recommended_fix: str
    affected_user_id: str | None = None


# ── Intent and interventions ─────────────────────────────────────────────────

def _trait(profile: Profile, name: str) -> float:
    value = getattr(profile.personality_traits, name)
    return value if value is not None else 0.0


def assess_intent(profile: Profile | None) -> str:
    """Classify a violation's likely intent: malicious, confused, exploitative or unclear."""
    if profile is None:
        return "unclear"
    if _trait(profile, "neuroticism") > 0.7 and profile.risk_profile == "aggressive":
        return "malicious"
    if profile.cognitive_style == "analytical" and _trait(profile, "conscientiousness") > 0.7:
        return "confused"
    labels = [m.label.lower() for m in profile.motivation_stack]
    if any("power" in label or "dominance" in label for label in labels):
        return "exploitative"
    return "unclear"


def generate_interventions(intent: str, profile: Profile | None) -> list[dict[str, str]]:
    interventions: list[dict[str, str]] = []
    if intent == "confused":
        analytical = profile is not None and profile.cognitive_style == "analytical"
        interventions.append({
            "action_type": "educational_nudge",
            "rationale": "User appears confused rather than malicious. Educational guidance is appropriate.",
            "psychographic_alignment": (
                "Provide detailed step-by-step instructions"
                if analytical else "Provide simple, intuitive guidance"
            ),
        })
    if intent in ("malicious", "exploitative"):
        interventions.append({
            "action_type": "temporary_rate_limit",
            "rationale": "User exhibits intentional abuse patterns. Rate limiting is warranted.",
            "psychographic_alignment": "Firm boundaries appropriate for this profile",
        })
        interventions.append({
            "action_type": "account_review",
            "rationale": "Escalate for human review given severity and intent",
            "psychographic_alignment": "Manual review recommended",
        })
    if intent == "unclear":
        interventions.append({
            "action_type": "warning_message",
            "rationale": "Intent unclear - start with warning to gather more information",
            "psychographic_alignment": "Neutral tone appropriate",
        })
    return interventions


# ── Rule evaluation ──────────────────────────────────────────────────────────

class ComplianceRuleEvaluator:
    """Applies one ComplianceRule to one user's events and profile."""

    def __init__(self, clock: Clock | None = None, max_path_depth: int = DEFAULT_MAX_PATH_DEPTH) -> None:
        self._clock = clock
        self.max_path_depth = max_path_depth
        self._handlers: dict[str, Callable[..., Detection | None]] = {
            "frequency_threshold": self.frequency_threshold,
            "behavioral_sequence": self.behavioral_sequence,
            "psychographic_risk": self.psychographic_risk,
            "combined": self.combined,
        }

    @property
    def clock(self) -> Clock:
        return self._clock or get_clock()

    def evaluate(
        self,
        rule: ComplianceRule,
        user_id: str,
        events: Sequence[Event],
        profile: Profile | None,
    ) -> Detection | None:
        handler = self._handlers.get(rule.rule_type)
        if handler is None:
            return None
        return handler(rule, rule.detection_criteria, user_id, events, profile)

    def frequency_threshold(
        self,
        rule: ComplianceRule,
        criteria: DetectionCriteria,
        user_id: str,
        events: Sequence[Event],
        profile: Profile | None,
    ) -> Detection | None:
        limit = criteria.frequency_limit
        if limit is None:
            return None
        matching = within_window(
            (e for e in events if e.event_type == limit.event_type),
            self.clock.since(limit.time_window_seconds),
            lambda e: e.timestamp,
        )
        if len(matching) <= limit.max_occurrences:
            return None

        intent = assess_intent(profile)
        context: dict[str, Any] = {}
        if profile is not None:
            context = {
                "risk_profile": profile.risk_profile,
                "cognitive_style": profile.cognitive_style,
                "impulsivity_signals": ["high"] if _trait(profile, "neuroticism") > 0.7 else [],
            }
        return Detection(
            user_id=user_id,
            rule_id=rule.id,
            alert_type="rate_limit_abuse",
            severity=rule.severity,
            confidence_score=FREQUENCY_CONFIDENCE,
            policy_violated=rule.name,
            reasoning={
                "behavioral_evidence": [
                    f"User exceeded {limit.event_type} frequency limit: {len(matching)} events "
                    f"in {limit.time_window_seconds:g}s (max: {limit.max_occurrences})",
                    "Events occurred at: " + ", ".join(e.timestamp.isoformat() for e in matching),
                ],
                "psychographic_context": context,
                "intent_assessment": intent,
                "supporting_event_ids": [e.id for e in matching],
            },
            interventions=generate_interventions(intent, profile),
        )

    def behavioral_sequence(
        self,
        rule: ComplianceRule,
        criteria: DetectionCriteria,
        user_id: str,
        events: Sequence[Event],
        profile: Profile | None,
    ) -> Detection | None:
        sequence = criteria.event_sequence
        if not sequence:
            return None
        ordered = sorted(events, key=lambda e: e.timestamp)
        width = len(sequence)
        for start in range(len(ordered) - width + 1):
            window = ordered[start:start + width]
            if [e.event_type for e in window] != list(sequence):
                continue
            intent = assess_intent(profile)
            context: dict[str, Any] = {}
            if profile is not None:
                context = {
                    "risk_profile": profile.risk_profile,
                    "cognitive_style": profile.cognitive_style,
                }
            return Detection(
                user_id=user_id,
                rule_id=rule.id,
                alert_type="suspicious_behavior",
                severity=rule.severity,
                confidence_score=SEQUENCE_CONFIDENCE,
                policy_violated=rule.name,
                reasoning={
                    "behavioral_evidence": [
                        "Detected suspicious event sequence: " + " → ".join(sequence),
                        f"Sequence completed at {window[-1].timestamp.isoformat()}",
                    ],
                    "psychographic_context": context,
                    "intent_assessment": intent,
                    "supporting_event_ids": [e.id for e in window],
                },
                interventions=generate_interventions(intent, profile),
            )
        return None

    def psychographic_risk(
        self,
        rule: ComplianceRule,
        criteria: DetectionCriteria,
        user_id: str,
        events: Sequence[Event],
        profile: Profile | None,
    ) -> Detection | None:
        conditions = criteria.psychographic_conditions
        if profile is None or not conditions:
            return None
        subject = profile.model_dump()
        matched: list[str] = []
        for condition in conditions:
            actual = resolve_path(subject, condition.trait, self.max_path_depth)
            if actual is None or not compare(actual, condition.operator, condition.value):
                return None
            matched.append(f"{condition.trait} {condition.operator} {condition.value}")

        return Detection(
            user_id=user_id,
            rule_id=rule.id,
            alert_type="psychographic_risk",
            severity=rule.severity,
            confidence_score=PSYCHOGRAPHIC_CONFIDENCE,
            policy_violated=rule.name,
            reasoning={
                "behavioral_evidence": [
                    "User exhibits high-risk psychographic profile",
                    "Matched conditions: " + ", ".join(matched),
                ],
                "psychographic_context": {
                    "risk_profile": profile.risk_profile,
                    "motivation_stack": [m.label for m in profile.motivation_stack[:3]],
                    "cognitive_style": profile.cognitive_style,
                    "personality_traits": profile.personality_traits.model_dump(),
                },
                "intent_assessment": "unclear",
                "supporting_event_ids": [e.id for e in events[:5]],
            },
            interventions=generate_interventions("unclear", profile),
        )

    def combined(
        self,
        rule: ComplianceRule,
        criteria: DetectionCriteria,
        user_id: str,
        events: Sequence[Event],
        profile: Profile | None,
    ) -> Detection | None:
        frequency = self.frequency_threshold(rule, criteria, user_id, events, profile)
        if frequency is None:
            return None
        psychographic = self.psychographic_risk(rule, criteria, user_id, events, profile)
        if psychographic is None:
            return None

        reasoning = dict(frequency.reasoning)
        reasoning["behavioral_evidence"] = (
            frequency.reasoning["behavioral_evidence"]
            + psychographic.reasoning["behavioral_evidence"]
        )
        frequency.alert_type = "combined_violation"
        frequency.confidence_score = min(
            frequency.confidence_score * COMBINED_CONFIDENCE_BOOST, COMBINED_CONFIDENCE_CAP
        )
        frequency.reasoning = reasoning
        return frequency


# ── Dark patterns ────────────────────────────────────────────────────────────

def _cancellation_attempt(event: Event) -> bool:
    url = event.event_payload.get("url")
    return isinstance(url, str) and any(marker in url for marker in CANCELLATION_MARKERS)


def detect_dark_patterns(events: Sequence[Event], user_id: str | None = None) -> list[DarkPatternSignal]:
    """Signals of manipulative UI inferred from one user's behavior."""
    signals: list[DarkPatternSignal] = []

    # roach motel: repeated attempts to cancel or unsubscribe
    attempts = [e for e in events if _cancellation_attempt(e)]
    if len(attempts) >= ROACH_MOTEL_MIN_ATTEMPTS:
        time_spent = len(attempts) * ROACH_MOTEL_SECONDS_PER_ATTEMPT
        signals.append(DarkPatternSignal(
            pattern_type="roach_motel",
            element=attempts[0].event_payload.get("url") or "cancellation_flow",
            manipulation_score=min(len(attempts) / 5, 1.0),
            evidence={
                "user_confusion_signals": [
                    f"User attempted cancellation {len(attempts)} times",
                    f"Estimated time spent: {time_spent}s",
                ],
                "average_time_spent": time_spent,
            },
            recommended_fix="Simplify cancellation process - ensure single-click cancellation is available",
            affected_user_id=user_id,
        ))
    return signals


# ── Monitor ──────────────────────────────────────────────────────────────────

class ComplianceMonitor:
    def __init__(
        self,
        stores: Stores,
        *,
        clock: Clock | None = None,
        rule_limit: int = 100,
        event_limit: int = 1000,
        max_path_depth: int = DEFAULT_MAX_PATH_DEPTH,
    ) -> None:
        self.stores = stores
        self._clock = clock
        self.rule_limit = rule_limit
        self.event_limit = event_limit
        self.evaluator = ComplianceRuleEvaluator(clock, max_path_depth)

    @property
    def clock(self) -> Clock:
        return self._clock or get_clock()

    async def run(self, time_window_hours: float = 1, auto_create_alerts: bool = True) -> dict[str, Any]:
        rules = await self.stores.compliance_rules.filter(
            lambda r: r.enabled, sort="-created_at", limit=self.rule_limit
        )
        cutoff = self.clock.since(time_window_hours * 3600)
        events = await self.stores.events.filter(
            lambda e: ensure_utc(e.timestamp) >= cutoff, sort="-timestamp", limit=self.event_limit
        )

        by_user: dict[str, list[Event]] = defaultdict(list)
        for event in events:
            by_user[event.user_id].append(event)

        detections: list[Detection] = []
        signals: list[DarkPatternSignal] = []
        for user_id, user_events in by_user.items():
            profile = await self._profile(user_id)
            for rule in rules:
                detection = self.evaluator.evaluate(rule, user_id, user_events, profile)
                if detection is None:
                    continue
                compliance_detections_total(alert_type=detection.alert_type).inc()
                log.info(
                    "compliance.detection",
                    user_id=user_id,
                    rule_id=rule.id,
                    alert_type=detection.alert_type,
                    severity=detection.severity,
                )
                detections.append(detection)
            signals.extend(detect_dark_patterns(user_events, user_id))

        alerts_created = 0
        if auto_create_alerts:
            for detection in detections:
                if await self._create_alert(detection):
                    alerts_created += 1
            for signal in signals:
                await self._create_dark_pattern(signal)

        log.info(
            "compliance.scan_completed",
            users_analyzed=len(by_user),
            rules_evaluated=len(rules),
            detections_found=len(detections),
            alerts_created=alerts_created,
        )
        return {
            "time_window_hours": time_window_hours,
            "users_analyzed": len(by_user),
            "rules_evaluated": len(rules),
            "detections_found": len(detections),
            "alerts_created": alerts_created,
            "dark_patterns_detected": len(signals),
            "detections": [] if auto_create_alerts else [d.as_dict() for d in detections],
        }

    async def _profile(self, user_id: str) -> Profile | None:
        found = await self.stores.profiles.filter(
            lambda p: p.user_id == user_id, sort="-last_analyzed", limit=1
        )
        return found[0] if found else None

    async def _create_alert(self, detection: Detection) -> bool:
        try:
            alert = await self.stores.alerts.create(
                IntegrityAlert(
                    user_id=detection.user_id,
                    rule_id=detection.rule_id,
                    alert_type=detection.alert_type,
                    severity=detection.severity,
                    confidence_score=detection.confidence_score,
                    detection_reasoning=detection.reasoning,
                    policy_violated=detection.policy_violated,
                    recommended_interventions=detection.interventions,
                    created_at=self.clock.now(),
                )
            )
        except DecisionError as exc:
            log.error(
                "compliance.alert_failed",
                user_id=detection.user_id,
                rule_id=detection.rule_id,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            return False
        audit(
            "alert.create",
            "integrity_alert",
            alert.id,
            metadata={"alert_type": alert.alert_type, "severity": alert.severity, "user_id": alert.user_id},
        )
        return True

    async def _create_dark_pattern(self, signal: DarkPatternSignal) -> bool:
        try:
            await self.stores.dark_patterns.create(
                DarkPatternDetection(
                    pattern_type=signal.pattern_type,
                    detected_in_element=signal.element,
                    affected_user_id=signal.affected_user_id,
                    manipulation_score=signal.manipulation_score,
                    evidence=signal.evidence,
                    recommended_fix=signal.recommended_fix,
                    created_at=self.clock.now(),
                )
            )
        except DecisionError as exc:
            log.error(
                "compliance.dark_pattern_failed",
                pattern_type=signal.pattern_type,
                user_id=signal.affected_user_id,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            return False
        return True


__all__ = [
    "ComplianceMonitor", "ComplianceRuleEvaluator", "Detection", "DarkPatternSignal",
    "assess_intent", "generate_interventions", "detect_dark_patterns",
]
