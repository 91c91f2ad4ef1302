"""
decision_sdk.tier3_decisioning.rules
──────────────────────────────────────
Engagement rule evaluation for one user at one moment.

For every active rule of the client application:
  1. FrequencyLimiter     → skip the rule if the user hit its delivery cap
  2. conditions           → psychographic ∧ behavioral ∧ timing must all hold
  3. template lookup      → a rule whose template is gone does not fire
  4. Delivery             → created pending, rendered, then marked delivered
  5. RuleTrigger          → appended to the analytics log (a failed append is logged, not raised)

Fired engagements are ordered by priority rank (critical > high > medium >
low > anything else), ties keep rule order, and only the first
max_triggered_engagements are returned. Deliveries for rules cut by the cap
are still recorded.
"""
from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Any, Mapping, Sequence

from decision_sdk.tier0_core.errors import DecisionError
from decision_sdk.tier0_core.logging import get_logger
from decision_sdk.tier0_core.metrics import counter, histogram
from decision_sdk.tier1_runtime.clock import Clock, get_clock
from decision_sdk.tier2_storage.entities import (
    Delivery,
    Event,
    Profile,
    Rule,
    RuleTrigger,
    Template,
)
from decision_sdk.tier2_storage.store import Stores
from decision_sdk.tier3_decisioning.conditions import ConditionEvaluationEngine, ConditionOutcome
from decision_sdk.tier3_decisioning.frequency import FrequencyLimiter
from decision_sdk.tier3_decisioning.rendering import (
    ContentRenderer,
    get_renderer,
    render_with_fallback,
)

log = get_logger(__name__)

rule_triggers_total = counter(
    "decision_rule_triggers_total", "Engagement rules fired", ["priority"]
)
rule_evaluation_seconds = histogram(
    "decision_rule_evaluation_seconds", "Time to evaluate all rules for one user"
)

PRIORITY_RANK = {"critical": 4, "high": 3, "medium": 2, "low": 1}


def priority_rank(priority: str | None) -> int:
    return PRIORITY_RANK.get(priority or "", 0)


@dataclass
class TriggeredEngagement:
    delivery_id: str
    rule_name: str
    engagement_type: str
    priority: str
    content: dict[str, Any]

    @property
    def style(self) -> dict[str, Any]:
        return self.content.get("style") or {}

    def as_dict(self) -> dict[str, Any]:
        return {
            "delivery_id": self.delivery_id,
            "rule_name": self.rule_name,
            "engagement_type": self.engagement_type,
            "priority": self.priority,
            "content": self.content,
            "style": self.style,
        }


def rank_engagements(
    engagements: Sequence[TriggeredEngagement], cap: int
) -> list[TriggeredEngagement]:
    """Stable sort by priority rank, highest first, truncated to *cap*."""
    ordered = sorted(engagements, key=lambda e: priority_rank(e.priority), reverse=True)
    return ordered[:cap]


class RuleEvaluationOrchestrator:
    """
    Usage:
        orchestrator = RuleEvaluationOrchestrator(get_stores())
        fired = await orchestrator.evaluate(user_id, client_app_id, context)
    """

    def __init__(
        self,
        stores: Stores,
        *,
        clock: Clock | None = None,
        renderer: ContentRenderer | None = None,
        max_triggered_engagements: int = 3,
        recent_event_window: int = 50,
        trigger_evidence_count: int = 5,
        max_field_path_depth: int = 8,
    ) -> None:
        self.stores = stores
        self._clock = clock
        self._renderer = renderer
        self.max_triggered_engagements = max_triggered_engagements
        self.recent_event_window = recent_event_window
        self.trigger_evidence_count = trigger_evidence_count
        self.conditions = ConditionEvaluationEngine(max_field_path_depth, clock)
        self.limiter = FrequencyLimiter(stores, clock)

    @property
    def clock(self) -> Clock:
        return self._clock or get_clock()

    @property
    def renderer(self) -> ContentRenderer:
        return self._renderer or get_renderer()

    async def evaluate(
        self,
        user_id: str,
        client_app_id: str | None,
        context: Mapping[str, Any] | None = None,
    ) -> list[TriggeredEngagement]:
        started = time.perf_counter()
        context = context or {}

        rules = await self.stores.rules.filter(
            lambda r: r.status == "active" and r.client_app_id == client_app_id,
            sort="created_at",
        )
        if not rules:
            return []

        profile = await self._profile(user_id)
        if profile is None:
            log.info("rules.no_profile", user_id=user_id)
            return []
        events = await self.stores.events.filter(
            lambda e: e.user_id == user_id,
            sort="-timestamp",
            limit=self.recent_event_window,
        )

        fired: list[TriggeredEngagement] = []
        for rule in rules:
            engagement = await self._evaluate_rule(rule, user_id, client_app_id, profile, events, context)
            if engagement is not None:
                fired.append(engagement)

        rule_evaluation_seconds().observe(time.perf_counter() - started)
        return rank_engagements(fired, self.max_triggered_engagements)

    async def _profile(self, user_id: str) -> Profile | None:
        found = await self.stores.profiles.filter(lambda p: p.user_id == user_id, limit=1)
        return found[0] if found else None

    async def _evaluate_rule(
        self,
        rule: Rule,
        user_id: str,
        client_app_id: str | None,
        profile: Profile,
        events: Sequence[Event],
        context: Mapping[str, Any],
    ) -> TriggeredEngagement | None:
        action = rule.engagement_action
        if not await self.limiter.allowed(user_id, rule.id, action.max_frequency):
            log.info("rule.frequency_blocked", rule_id=rule.id, user_id=user_id)
            return None

        outcome = self.conditions.evaluate(rule.trigger_conditions, profile, events, context)
        if not outcome.passed:
            return None

        template = await self.stores.templates.get(action.template_id)
        if template is None:
            log.warning("rule.template_missing", rule_id=rule.id, template_id=action.template_id)
            return None

        delivery = await self._deliver(rule, template, user_id, client_app_id, profile, events, outcome, context)
        try:
            await self.stores.triggers.create(
                RuleTrigger(
                    rule_id=rule.id,
                    user_id=user_id,
                    delivery_id=delivery.id,
                    triggered_at=self.clock.now(),
                )
            )
        except DecisionError as exc:
            log.warning(
                "rule.trigger_log_failed",
                rule_id=rule.id,
                user_id=user_id,
                delivery_id=delivery.id,
                error=str(exc),
                error_type=type(exc).__name__,
            )
        rule_triggers_total(priority=action.priority).inc()
        log.info(
            "rule.fired",
            rule_id=rule.id,
            user_id=user_id,
            delivery_id=delivery.id,
            priority=action.priority,
        )
        return TriggeredEngagement(
            delivery_id=delivery.id,
            rule_name=rule.name,
            engagement_type=action.type,
            priority=action.priority,
            content=delivery.rendered_content or {},
        )

    async def _deliver(
        self,
        rule: Rule,
        template: Template,
        user_id: str,
        client_app_id: str | None,
        profile: Profile,
        events: Sequence[Event],
        outcome: ConditionOutcome,
        context: Mapping[str, Any],
    ) -> Delivery:
        # Recent events stand in as evidence only for rules with no behavioral conditions.
        if rule.trigger_conditions.behavioral_conditions:
            evidence = list(outcome.matched_events)
        else:
            evidence = list(events)
        delivery = await self.stores.deliveries.create(
            Delivery(
                user_id=user_id,
                rule_id=rule.id,
                template_id=template.id,
                client_app_id=client_app_id,
                session_id=context.get("session_id"),
                created_at=self.clock.now(),
                delivery_context={
                    "page_url": context.get("page_url"),
                    "user_psychographic_state": profile.model_dump(mode="json"),
                    "trigger_events": [e.id for e in evidence[: self.trigger_evidence_count]],
                    "conditions_met": outcome.conditions_met,
                },
            )
        )

        if template.wants_personalization:
            content = await render_with_fallback(self.renderer, template, profile)
        else:
            content = template.content
        return await self.stores.deliveries.update(
            delivery.id,
            {"rendered_content": content, "delivery_status": "delivered"},
        )


# ── Analytics ────────────────────────────────────────────────────────────────

def summarize_triggers(rule_id: str, triggers: Sequence[RuleTrigger]) -> dict[str, Any]:
    """Fold the trigger log for one rule into {triggered_count, last_triggered}."""
    last = max((t.triggered_at for t in triggers), default=None)
    return {
        "rule_id": rule_id,
        "triggered_count": len(triggers),
        "last_triggered": last.isoformat() if last else None,
    }


async def rule_analytics(stores: Stores, rule_id: str) -> dict[str, Any]:
    triggers = await stores.triggers.filter(lambda t: t.rule_id == rule_id)
    return summarize_triggers(rule_id, triggers)


__all__ = [
    "RuleEvaluationOrchestrator", "TriggeredEngagement", "PRIORITY_RANK",
    "priority_rank", "rank_engagements", "summarize_triggers", "rule_analytics",
]
