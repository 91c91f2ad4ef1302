"""
decision_sdk.service
──────────────────────
Request/response surface of the decision core. Every operation validates its
arguments first (ValidationError, nothing touched), then works against the
installed Stores and returns a JSON-ready dict.

Authentication and API-key checks happen in the host before these are
called; the host binds the caller and client application with
new_context(principal_id=..., client_app_id=...).

Usage::

    from decision_sdk import assign_variant, evaluate_rules

    result = await assign_variant("tst_1", "user_42")
    if result["assigned"]:
        render(result["configuration"])

    fired = await evaluate_rules("user_42", {"page_url": "/pricing"})
"""
from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field

from decision_sdk.tier0_core.config import get_config
from decision_sdk.tier0_core.errors import DecisionError, ValidationError
from decision_sdk.tier0_core.logging import get_logger
from decision_sdk.tier0_core.metrics import counter
from decision_sdk.tier1_runtime.clock import get_clock
from decision_sdk.tier1_runtime.context import get_client_app_id
from decision_sdk.tier1_runtime.validate import validate_input
from decision_sdk.tier2_storage.audit import audit
from decision_sdk.tier2_storage.entities import ConversionEvent
from decision_sdk.tier2_storage.store import get_stores
from decision_sdk.tier3_decisioning.analysis import AnalysisReportBuilder
from decision_sdk.tier3_decisioning.assignment import TEST_NOT_FOUND, VariantAssignmentEngine
from decision_sdk.tier3_decisioning.compliance import ComplianceMonitor
from decision_sdk.tier3_decisioning.rules import RuleEvaluationOrchestrator, rule_analytics

log = get_logger(__name__)

conversions_total = counter("decision_conversions_total", "Conversions recorded")

NOT_PARTICIPANT = "not_participant"
INVALID_TRANSITION = "invalid_transition"
UNKNOWN_VARIANT = "unknown_variant"


# ── Request models ────────────────────────────────────────────────────────────

class AssignVariantRequest(BaseModel):
    ab_test_id: str = Field(min_length=1)
    user_id: str = Field(min_length=1)
    client_app_id: str | None = None


class RecordConversionRequest(BaseModel):
    ab_test_id: str = Field(min_length=1)
    user_id: str = Field(min_length=1)
    metric_name: str = Field(min_length=1)
    event_type: str = Field(min_length=1)
    value: float = 1


class ABTestRequest(BaseModel):
    ab_test_id: str = Field(min_length=1)


class StopTestRequest(ABTestRequest):
    winner_variant_id: str | None = None


class EvaluateRulesRequest(BaseModel):
    user_id: str = Field(min_length=1)
    context: dict[str, Any] = Field(default_factory=dict)
    client_app_id: str | None = None


class MonitorComplianceRequest(BaseModel):
    time_window_hours: float = Field(default=1, gt=0)
    auto_create_alerts: bool = True


class RuleAnalyticsRequest(BaseModel):
    rule_id: str = Field(min_length=1)


# ── Experiments ───────────────────────────────────────────────────────────────

async def assign_variant(
    ab_test_id: str,
    user_id: str,
    client_app_id: str | None = None,
) -> dict[str, Any]:
    """
    Sticky variant assignment.
    → {assigned: true, variant_id, variant_name, configuration}
    → {assigned: false, reason}
    """
    req = validate_input(
        AssignVariantRequest,
        {"ab_test_id": ab_test_id, "user_id": user_id, "client_app_id": client_app_id},
    )
    engine = VariantAssignmentEngine(get_stores())
    result = await engine.assign(req.ab_test_id, req.user_id, req.client_app_id or get_client_app_id())
    return result.as_dict()


async def record_conversion(
    ab_test_id: str,
    user_id: str,
    metric_name: str,
    event_type: str,
    value: float = 1,
) -> dict[str, Any]:
    """Attach a conversion to the user's participation. → {recorded, reason?}"""
    req = validate_input(
        RecordConversionRequest,
        {
            "ab_test_id": ab_test_id,
            "user_id": user_id,
            "metric_name": metric_name,
            "event_type": event_type,
            "value": value,
        },
    )
    stores = get_stores()
    found = await stores.participants.filter(
        lambda p: p.ab_test_id == req.ab_test_id and p.user_id == req.user_id, limit=1
    )
    if not found:
        return {"recorded": False, "reason": NOT_PARTICIPANT}

    participant = found[0]
    first_conversion = not participant.converted
    ts = get_clock().now()
    event = ConversionEvent(
        metric_name=req.metric_name, event_type=req.event_type, value=req.value, timestamp=ts
    )
    await stores.participants.update(
        participant.id,
        {
            "converted": True,
            "last_interaction_at": ts,
            "conversion_events": [e.model_dump() for e in participant.conversion_events]
            + [event.model_dump()],
        },
    )

    # Variant metrics are telemetry; analyze_test recounts from participants.
    try:
        variant = await stores.variants.get(participant.variant_id)
        if variant is not None:
            metrics = variant.performance_metrics.model_dump()
            if first_conversion:
                metrics["conversions"] += 1
            metrics["total_events"] += req.value
            if metrics["participants"] > 0:
                metrics["conversion_rate"] = metrics["conversions"] / metrics["participants"]
            await stores.variants.update(variant.id, {"performance_metrics": metrics})
    except DecisionError as exc:
        log.warning(
            "conversion.metrics_failed",
            ab_test_id=req.ab_test_id,
            variant_id=participant.variant_id,
            error=str(exc),
            error_type=type(exc).__name__,
        )

    conversions_total().inc()
    log.info(
        "conversion.recorded",
        ab_test_id=req.ab_test_id,
        user_id=req.user_id,
        variant_id=participant.variant_id,
        metric_name=req.metric_name,
        first_conversion=first_conversion,
    )
    return {"recorded": True}


async def analyze_test(ab_test_id: str) -> dict[str, Any]:
    """Significance report for a test, also stored on the test as results_summary."""
    req = validate_input(ABTestRequest, {"ab_test_id": ab_test_id})
    stores = get_stores()
    test = await stores.tests.get(req.ab_test_id)
    if test is None:
        return {"test_id": req.ab_test_id, "status": None, "reason": TEST_NOT_FOUND}

    variants = await stores.variants.filter(lambda v: v.ab_test_id == test.id, sort="created_at")
    participants = await stores.participants.filter(lambda p: p.ab_test_id == test.id)

    cfg = get_config()
    builder = AnalysisReportBuilder(
        min_interval_sample=cfg.min_interval_sample,
        pvalue_method=cfg.pvalue_method,
        winner_lift_threshold=cfg.winner_lift_threshold,
    )
    tallies = builder.tally(variants, participants)
    report = builder.build(test, tallies, len(participants))

    for entry in tallies:
        await stores.variants.update(
            entry.variant.id,
            {
                "performance_metrics": {
                    **entry.variant.performance_metrics.model_dump(),
                    "participants": entry.participants,
                    "conversions": entry.conversions,
                    "conversion_rate": entry.conversion_rate,
                }
            },
        )
    await stores.tests.update(test.id, {"results_summary": report})

    log.info(
        "analysis.completed",
        ab_test_id=test.id,
        total_participants=len(participants),
        variants=len(variants),
    )
    return report


async def start_test(ab_test_id: str) -> dict[str, Any]:
    """draft → running. → {started, reason?}"""
    req = validate_input(ABTestRequest, {"ab_test_id": ab_test_id})
    stores = get_stores()
    test = await stores.tests.get(req.ab_test_id)
    if test is None:
        return {"started": False, "reason": TEST_NOT_FOUND}
    if test.status != "draft":
        return {"started": False, "reason": INVALID_TRANSITION}

    await stores.tests.update(test.id, {"status": "running", "started_at": get_clock().now()})
    audit("test.start", "ab_test", test.id)
    return {"started": True}


async def stop_test(ab_test_id: str, winner_variant_id: str | None = None) -> dict[str, Any]:
    """running → completed, optionally declaring a winner. → {stopped, reason?}"""
    req = validate_input(
        StopTestRequest, {"ab_test_id": ab_test_id, "winner_variant_id": winner_variant_id}
    )
    stores = get_stores()
    test = await stores.tests.get(req.ab_test_id)
    if test is None:
        return {"stopped": False, "reason": TEST_NOT_FOUND}
    if test.status != "running":
        return {"stopped": False, "reason": INVALID_TRANSITION}
    if req.winner_variant_id is not None:
        winner = await stores.variants.get(req.winner_variant_id)
        if winner is None or winner.ab_test_id != test.id:
            return {"stopped": False, "reason": UNKNOWN_VARIANT}

    await stores.tests.update(
        test.id,
        {
            "status": "completed",
            "ended_at": get_clock().now(),
            "winner_variant_id": req.winner_variant_id,
        },
    )
    audit("test.stop", "ab_test", test.id, metadata={"winner_variant_id": req.winner_variant_id})
    return {"stopped": True}


# ── Engagement rules ──────────────────────────────────────────────────────────

async def evaluate_rules(
    user_id: str,
    context: dict[str, Any] | None = None,
    client_app_id: str | None = None,
) -> dict[str, Any]:
    """
    Fire the client application's engagement rules for a user.
    → {triggered_engagements: [{delivery_id, rule_name, engagement_type,
       priority, content, style}]}, highest priority first.
    """
    req = validate_input(
        EvaluateRulesRequest,
        {"user_id": user_id, "context": context or {}, "client_app_id": client_app_id},
    )
    app_id = req.client_app_id or get_client_app_id()
    if not app_id:
        raise ValidationError(
            user_message="Request validation failed.",
            fields={"client_app_id": "A client application is required"},
        )

    cfg = get_config()
    orchestrator = RuleEvaluationOrchestrator(
        get_stores(),
        max_triggered_engagements=cfg.max_triggered_engagements,
        recent_event_window=cfg.recent_event_window,
        trigger_evidence_count=cfg.trigger_evidence_count,
        max_field_path_depth=cfg.max_field_path_depth,
    )
    fired = await orchestrator.evaluate(req.user_id, app_id, req.context)
    return {"triggered_engagements": [e.as_dict() for e in fired]}


async def get_rule_analytics(rule_id: str) -> dict[str, Any]:
    """→ {rule_id, triggered_count, last_triggered}"""
    req = validate_input(RuleAnalyticsRequest, {"rule_id": rule_id})
    return await rule_analytics(get_stores(), req.rule_id)


# ── Compliance ────────────────────────────────────────────────────────────────

async def monitor_compliance(
    time_window_hours: float = 1,
    auto_create_alerts: bool = True,
) -> dict[str, Any]:
    """Scan recent behavior against the enabled compliance rules."""
    req = validate_input(
        MonitorComplianceRequest,
        {"time_window_hours": time_window_hours, "auto_create_alerts": auto_create_alerts},
    )
    cfg = get_config()
    monitor = ComplianceMonitor(
        get_stores(),
        rule_limit=cfg.compliance_rule_limit,
        event_limit=cfg.compliance_event_limit,
        max_path_depth=cfg.max_field_path_depth,
    )
    return await monitor.run(req.time_window_hours, req.auto_create_alerts)


__all__ = [
    "assign_variant", "record_conversion", "analyze_test", "start_test", "stop_test",
    "evaluate_rules", "get_rule_analytics", "monitor_compliance",
    "NOT_PARTICIPANT", "INVALID_TRANSITION", "UNKNOWN_VARIANT",
]
