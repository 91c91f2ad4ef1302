"""Tests for tier3_decisioning modules."""
from __future__ import annotations

import asyncio
import hashlib
from datetime import timedelta

import pytest

from decision_sdk.tier0_core.errors import ConfigurationError, StoreError
from decision_sdk.tier2_storage.entities import (
    ABTest,
    BehavioralCondition,
    ComplianceRule,
    Delivery,
    Event,
    FieldCondition,
    MaxFrequency,
    Participant,
    Profile,
    Rule,
    StatisticalSettings,
    Template,
    TimingConditions,
    TriggerConditions,
    Variant,
)
from decision_sdk.tier2_storage.store import InMemoryEntityStore
from decision_sdk.tier3_decisioning import stats
from decision_sdk.tier3_decisioning.analysis import AnalysisReportBuilder
from decision_sdk.tier3_decisioning.assignment import (
    EXCLUDED_FROM_TRAFFIC,
    NO_VARIANTS,
    TEST_NOT_FOUND,
    TEST_NOT_RUNNING,
    VariantAssignmentEngine,
    bucket_for,
    select_variant,
)
from decision_sdk.tier3_decisioning.compliance import (
    ComplianceMonitor,
    ComplianceRuleEvaluator,
    assess_intent,
    detect_dark_patterns,
    generate_interventions,
)
from decision_sdk.tier3_decisioning.conditions import (
    ConditionEvaluationEngine,
    as_number,
    as_text,
    compare,
    resolve_path,
)
from decision_sdk.tier3_decisioning.frequency import FrequencyLimiter, count_since
from decision_sdk.tier3_decisioning.hashing import deterministic_hash
from decision_sdk.tier3_decisioning.rendering import (
    TemplateContentRenderer,
    get_renderer,
    render_with_fallback,
    set_renderer,
)
from decision_sdk.tier3_decisioning.rules import (
    RuleEvaluationOrchestrator,
    TriggeredEngagement,
    rank_engagements,
    rule_analytics,
)


# ── hashing ────────────────────────────────────────────────────────────────

class TestHashing:
    def test_deterministic(self):
        assert deterministic_hash("user-1", "tst_1") == deterministic_hash("user-1", "tst_1")

    def test_unit_interval(self):
        for i in range(500):
            h = deterministic_hash(f"user-{i}", "tst_1")
            assert 0.0 <= h < 1.0

    def test_salt_changes_value(self):
        assert deterministic_hash("user-1", "tst_1") != deterministic_hash("user-1", "tst_2")

    def test_fixed_format(self):
        digest = hashlib.sha256(b"user-1tst_1").digest()
        expected = int.from_bytes(digest[:4], "big") / 2 ** 32
        assert deterministic_hash("user-1", "tst_1") == expected

    def test_roughly_uniform(self):
        values = [deterministic_hash(f"user-{i}", "salt") for i in range(4000)]
        below_half = sum(1 for v in values if v < 0.5) / len(values)
        assert abs(below_half - 0.5) < 0.05


# ── assignment ─────────────────────────────────────────────────────────────

def _variants(*weights: float) -> list[Variant]:
    return [Variant(ab_test_id="tst_x", name=f"v{i}", traffic_weight=w) for i, w in enumerate(weights)]


class TestSelectVariant:
    def test_cumulative_boundaries(self):
        a, b = _variants(1, 1)
        assert select_variant([a, b], 0.0) is a
        assert select_variant([a, b], 0.5) is a
        assert select_variant([a, b], 0.5001) is b

    def test_rounding_shortfall_falls_back_to_last(self):
        variants = _variants(1, 1, 1)
        assert select_variant(variants, 0.99999999999999999) is variants[-1]
        assert select_variant(variants, 1.0) is variants[-1]

    def test_empty_rejected(self):
        with pytest.raises(ValueError):
            select_variant([], 0.3)

    def test_weights_converge(self):
        variants = _variants(1, 3)
        n = 4000
        first = sum(
            1 for i in range(n) if select_variant(variants, bucket_for(f"user-{i}", "tst_conv")) is variants[0]
        )
        assert abs(first / n - 0.25) < 0.05


class TestVariantAssignmentEngine:
    @pytest.mark.asyncio
    async def test_assigns_and_records_participant(self, stores, running_test):
        test, control, treatment = running_test
        result = await VariantAssignmentEngine(stores).assign(test.id, "user-1", "app_1")
        assert result.assigned
        assert result.created
        assert result.variant.id in (control.id, treatment.id)
        participants = await stores.participants.filter()
        assert len(participants) == 1
        assert participants[0].client_app_id == "app_1"

    @pytest.mark.asyncio
    async def test_idempotent(self, stores, running_test):
        test, _, _ = running_test
        engine = VariantAssignmentEngine(stores)
        first = await engine.assign(test.id, "user-1")
        second = await engine.assign(test.id, "user-1")
        assert second.variant.id == first.variant.id
        assert not second.created
        assert len(stores.participants) == 1

    @pytest.mark.asyncio
    async def test_sticky_after_test_changes(self, stores, running_test):
        test, control, treatment = running_test
        engine = VariantAssignmentEngine(stores)
        first = await engine.assign(test.id, "user-1")
        await stores.tests.update(test.id, {"status": "completed", "traffic_allocation": 0.0})
        await stores.variants.update(control.id, {"traffic_weight": 100.0})
        again = await engine.assign(test.id, "user-1")
        assert again.assigned
        assert again.variant.id == first.variant.id

    @pytest.mark.asyncio
    async def test_unknown_test(self, stores):
        result = await VariantAssignmentEngine(stores).assign("tst_missing", "user-1")
        assert result.as_dict() == {"assigned": False, "reason": TEST_NOT_FOUND}

    @pytest.mark.asyncio
    async def test_draft_test_not_running(self, stores):
        test = await stores.tests.create(ABTest(status="draft"))
        await stores.variants.create(Variant(ab_test_id=test.id, is_control=True))
        result = await VariantAssignmentEngine(stores).assign(test.id, "user-1")
        assert result.reason == TEST_NOT_RUNNING
        assert len(stores.participants) == 0

    @pytest.mark.asyncio
    async def test_no_variants(self, stores):
        test = await stores.tests.create(ABTest(status="running"))
        result = await VariantAssignmentEngine(stores).assign(test.id, "user-1")
        assert result.reason == NO_VARIANTS

    @pytest.mark.asyncio
    async def test_zero_allocation_excludes_everyone(self, stores, running_test):
        test, _, _ = running_test
        await stores.tests.update(test.id, {"traffic_allocation": 0.0})
        engine = VariantAssignmentEngine(stores)
        for i in range(200):
            result = await engine.assign(test.id, f"user-{i}")
            assert result.reason == EXCLUDED_FROM_TRAFFIC
        assert len(stores.participants) == 0

    @pytest.mark.asyncio
    async def test_full_allocation_excludes_no_one(self, stores, running_test):
        test, _, _ = running_test
        engine = VariantAssignmentEngine(stores)
        for i in range(200):
            assert (await engine.assign(test.id, f"user-{i}")).assigned

    @pytest.mark.asyncio
    async def test_partial_allocation(self, stores, running_test):
        test, _, _ = running_test
        await stores.tests.update(test.id, {"traffic_allocation": 0.3})
        engine = VariantAssignmentEngine(stores)
        n = 1000
        assigned = 0
        for i in range(n):
            if (await engine.assign(test.id, f"user-{i}")).assigned:
                assigned += 1
        assert abs(assigned / n - 0.3) < 0.06

    @pytest.mark.asyncio
    async def test_variant_participant_count_updated(self, stores, running_test):
        test, _, _ = running_test
        result = await VariantAssignmentEngine(stores).assign(test.id, "user-1")
        variant = await stores.variants.get(result.variant.id)
        assert variant.performance_metrics.participants == 1

    @pytest.mark.asyncio
    async def test_lost_race_returns_winner(self, stores, running_test):
        test, control, treatment = running_test

        class StaleReads(InMemoryEntityStore):
            async def filter(self, predicate=None, sort=None, limit=None):
                return []

        stores.participants = StaleReads("participant")
        await stores.participants.create(
            Participant(ab_test_id=test.id, user_id="user-1", variant_id=treatment.id)
        )
        result = await VariantAssignmentEngine(stores).assign(test.id, "user-1")
        assert result.assigned
        assert not result.created
        assert result.variant.id == treatment.id
        assert len(stores.participants) == 1

    @pytest.mark.asyncio
    async def test_concurrent_assignments_agree(self, stores, running_test):
        test, _, _ = running_test
        engine = VariantAssignmentEngine(stores)
        results = await asyncio.gather(*[engine.assign(test.id, "user-1") for _ in range(10)])
        assert len({r.variant.id for r in results}) == 1
        assert len(stores.participants) == 1

    @pytest.mark.asyncio
    async def test_variant_metrics_failure_keeps_assignment(self, stores, running_test):
        test, control, treatment = running_test

        class ReadOnlyVariants(InMemoryEntityStore):
            async def update(self, record_id, patch):
                raise StoreError(user_message="variants table offline")

        stores.variants = ReadOnlyVariants("variant")
        await stores.variants.create(control)
        await stores.variants.create(treatment)

        result = await VariantAssignmentEngine(stores).assign(test.id, "user-1")
        assert result.assigned
        assert result.created
        [participant] = await stores.participants.filter()
        assert participant.variant_id == result.variant.id
        again = await VariantAssignmentEngine(stores).assign(test.id, "user-1")
        assert again.variant.id == result.variant.id

    @pytest.mark.asyncio
    async def test_participant_write_failure_propagates(self, stores, running_test):
        test, _, _ = running_test

        class OfflineParticipants(InMemoryEntityStore):
            async def create_if_absent(self, record, key):
                raise StoreError(user_message="participants table offline")

        stores.participants = OfflineParticipants("participant")
        with pytest.raises(StoreError):
            await VariantAssignmentEngine(stores).assign(test.id, "user-1")


# ── stats ──────────────────────────────────────────────────────────────────

class TestStats:
    def test_reference_example(self):
        z = stats.z_score(100, 1000, 130, 1000)
        assert z == pytest.approx(2.105, abs=0.01)
        assert stats.p_value(z) == pytest.approx(0.035, abs=0.002)
        result = stats.significance(100, 1000, 130, 1000, 0.95)
        assert result.is_significant

    def test_z_symmetry(self):
        cases = [(100, 1000, 130, 1000), (5, 40, 9, 55), (300, 900, 280, 1000)]
        for a, n, b, m in cases:
            assert stats.z_score(a, n, b, m) == pytest.approx(-stats.z_score(b, m, a, n))

    def test_p_value_sign_invariant(self):
        for z in (0.0, 0.5, 1.96, 3.2):
            assert stats.p_value(z) == stats.p_value(-z)
            assert stats.p_value(z, "approximate") == stats.p_value(-z, "approximate")

    def test_exact_p_value(self):
        assert stats.p_value(1.959964) == pytest.approx(0.05, abs=1e-5)
        assert stats.p_value(0.0) == pytest.approx(1.0)

    def test_approximation_close_to_exact(self):
        for i in range(0, 61):
            z = i / 10
            assert abs(stats.p_value(z, "approximate") - stats.p_value(z)) < 0.02

    def test_approximation_cutoff(self):
        assert stats.p_value(6.5, "approximate") == 0.0

    def test_unknown_method(self):
        with pytest.raises(ValueError):
            stats.p_value(1.0, "bootstrap")

    @pytest.mark.parametrize("args", [(0, 0, 5, 10), (5, 10, 0, 0), (0, 10, 0, 10), (10, 10, 10, 10)])
    def test_undetermined_z_is_none(self, args):
        assert stats.z_score(*args) is None
        assert stats.significance(*args, 0.95) is None

    def test_confidence_interval_bounds(self):
        for success, total in [(0, 50), (50, 50), (1, 2), (37, 100), (999, 1000)]:
            for level in (0.9, 0.95, 0.99):
                ci = stats.confidence_interval(success, total, level)
                assert 0.0 <= ci.lower <= ci.rate <= ci.upper <= 1.0

    def test_confidence_interval_empty(self):
        assert stats.confidence_interval(0, 0) is None

    def test_critical_z(self):
        assert stats.critical_z(0.95) == 1.96
        assert stats.critical_z(0.99) == 2.58
        assert stats.critical_z(0.90) == pytest.approx(1.6449, abs=1e-3)
        with pytest.raises(ValueError):
            stats.critical_z(1.0)

    def test_lift(self):
        assert stats.lift(0.10, 0.13) == pytest.approx(30.0)
        assert stats.lift(0.0, 0.2) == 0.0


# ── analysis ───────────────────────────────────────────────────────────────

def _arm(test_id: str, variant: Variant, n: int, converted: int) -> list[Participant]:
    return [
        Participant(ab_test_id=test_id, user_id=f"{variant.name}-{i}", variant_id=variant.id, converted=i < converted)
        for i in range(n)
    ]


class TestAnalysisReportBuilder:
    def _setup(self, control_n, control_conv, variant_n, variant_conv, minimum_sample_size=100):
        test = ABTest(status="running", statistical_settings=StatisticalSettings(minimum_sample_size=minimum_sample_size))
        control = Variant(ab_test_id=test.id, name="control", is_control=True)
        variant = Variant(ab_test_id=test.id, name="treatment")
        participants = _arm(test.id, control, control_n, control_conv) + _arm(test.id, variant, variant_n, variant_conv)
        return test, [control, variant], participants

    def test_tally(self):
        test, variants, participants = self._setup(10, 3, 20, 5)
        tallies = AnalysisReportBuilder().tally(variants, participants)
        assert [(t.participants, t.conversions) for t in tallies] == [(10, 3), (20, 5)]
        assert tallies[0].conversion_rate == pytest.approx(0.3)

    def test_tally_ignores_unknown_variants(self):
        test, variants, participants = self._setup(5, 1, 5, 1)
        participants.append(Participant(ab_test_id=test.id, user_id="x", variant_id="var_gone"))
        tallies = AnalysisReportBuilder().tally(variants, participants)
        assert sum(t.participants for t in tallies) == 10

    def test_full_report(self):
        test, variants, participants = self._setup(1000, 100, 1000, 130)
        builder = AnalysisReportBuilder()
        report = builder.build(test, builder.tally(variants, participants), len(participants))

        assert report["test_id"] == test.id
        assert report["status"] == "running"
        assert report["total_participants"] == 2000
        assert report["control"]["conversion_rate"] == pytest.approx(0.10)
        assert report["control"]["confidence_interval"] is not None

        entry = report["variants"][0]
        assert entry["name"] == "treatment"
        assert entry["lift_percentage"] == pytest.approx(30.0)
        sig = entry["statistical_significance"]
        assert sig["is_significant"] is True
        assert sig["p_value"] == pytest.approx(0.035, abs=0.002)
        assert sig["confidence_level"] == 0.95

        types = [r["type"] for r in report["recommendations"]]
        assert types == ["potential_winner"]
        assert "30.0%" in report["recommendations"][0]["message"]

    def test_below_minimum_sample(self):
        test, variants, participants = self._setup(20, 2, 20, 8)
        builder = AnalysisReportBuilder()
        report = builder.build(test, builder.tally(variants, participants), len(participants))
        entry = report["variants"][0]
        assert entry["statistical_significance"] is None
        assert entry["lift_percentage"] is None
        assert entry["confidence_interval"] is None
        assert report["recommendations"][0]["type"] == "sample_size"
        assert report["recommendations"][0]["action"] == "continue_test"
        assert report["recommendations"][0]["message"].startswith("2 variant(s)")

    def test_zero_control_conversions(self):
        test, variants, participants = self._setup(200, 0, 200, 20)
        builder = AnalysisReportBuilder()
        report = builder.build(test, builder.tally(variants, participants), len(participants))
        assert report["variants"][0]["lift_percentage"] == 0.0
        winner = [r for r in report["recommendations"] if r["type"] == "potential_winner"]
        assert "control has no conversions" in winner[0]["message"]

    def test_no_control(self):
        test = ABTest()
        a = Variant(ab_test_id=test.id, name="a")
        b = Variant(ab_test_id=test.id, name="b")
        participants = _arm(test.id, a, 150, 10) + _arm(test.id, b, 150, 20)
        builder = AnalysisReportBuilder()
        report = builder.build(test, builder.tally([a, b], participants), len(participants))
        assert report["control"] is None
        assert all(v["statistical_significance"] is None for v in report["variants"])
        assert report["recommendations"] == []

    def test_multiple_controls_uses_first(self):
        test = ABTest()
        c1 = Variant(ab_test_id=test.id, name="c1", is_control=True)
        c2 = Variant(ab_test_id=test.id, name="c2", is_control=True)
        builder = AnalysisReportBuilder()
        report = builder.build(test, builder.tally([c1, c2], []), 0)
        assert report["control"]["name"] == "c1"


# ── conditions ─────────────────────────────────────────────────────────────

class TestConditionPrimitives:
    def test_resolve_path(self):
        data = {"emotional_state": {"mood": "anxious"}, "list": [{"x": 1}]}
        assert resolve_path(data, "emotional_state.mood") == "anxious"
        assert resolve_path(data, "list.0.x") == 1
        assert resolve_path(data, "emotional_state.energy") is None
        assert resolve_path(data, "emotional_state.mood.deeper") is None
        assert resolve_path(data, "") is None
        assert resolve_path(data, "emotional_state..mood") is None

    def test_resolve_path_depth_capped(self):
        data: dict = {}
        node = data
        for _ in range(10):
            node["a"] = {}
            node = node["a"]
        node["leaf"] = 1
        assert resolve_path(data, ".".join(["a"] * 10 + ["leaf"]), max_depth=8) is None
        assert resolve_path(data, ".".join(["a"] * 10 + ["leaf"]), max_depth=11) == 1

    def test_text_coercion(self):
        assert as_text(True) == "true"
        assert as_text(1.0) == "1"
        assert as_text(0.5) == "0.5"
        assert as_text(None) == "null"

    def test_number_coercion(self):
        assert as_number("0.8") == 0.8
        assert as_number("12px") == 12.0
        assert as_number("high") is None
        assert as_number(True) is None

    def test_operators(self):
        assert compare("Anxious", "contains", "anx")
        assert compare("calm", "not_contains", "anx")
        assert compare(0.8, "greater_than", "0.7")
        assert compare("0.2", "less_than", 0.7)
        assert not compare("high", "greater_than", 0.5)
        assert compare(True, "equals", "true")
        assert compare(3, "equals", "3")
        assert not compare("a", "matches", "a")


class TestConditionEvaluationEngine:
    profile = {"emotional_state": {"mood": "anxious"}, "personality_traits": {"neuroticism": 0.8}}

    def test_equals_example(self):
        engine = ConditionEvaluationEngine()
        cond = FieldCondition(field="emotional_state.mood", operator="equals", value="anxious")
        assert engine.psychographic(self.profile, [cond]) is True

    def test_not_equals_example(self):
        engine = ConditionEvaluationEngine()
        cond = FieldCondition(field="emotional_state.mood", operator="not_equals", value="anxious")
        assert engine.psychographic(self.profile, [cond]) is False

    @pytest.mark.parametrize("operator", ["equals", "not_equals", "contains", "not_contains", "greater_than", "less_than"])
    def test_missing_field_is_false_for_every_operator(self, operator):
        engine = ConditionEvaluationEngine()
        cond = FieldCondition(field="emotional_state.energy", operator=operator, value="x")
        assert engine.psychographic(self.profile, [cond]) is False

    def test_all_conditions_required(self):
        engine = ConditionEvaluationEngine()
        conds = [
            FieldCondition(field="emotional_state.mood", operator="equals", value="anxious"),
            FieldCondition(field="personality_traits.neuroticism", operator="greater_than", value=0.9),
        ]
        assert engine.psychographic(self.profile, conds) is False
        assert engine.psychographic(self.profile, []) is True

    def test_profile_model(self):
        engine = ConditionEvaluationEngine()
        profile = Profile(user_id="u1", emotional_state={"mood": "curious"}, risk_profile="moderate")
        conds = [
            FieldCondition(field="emotional_state.mood", operator="equals", value="curious"),
            FieldCondition(field="risk_profile", operator="equals", value="moderate"),
        ]
        assert engine.psychographic(profile, conds) is True

    def _events(self):
        return [
            Event(user_id="u1", event_type="page_view", event_payload={"url": "/pricing"}),
            Event(user_id="u1", event_type="page_view", event_payload={"url": "/Pricing/annual"}),
            Event(user_id="u1", event_type="click", event_payload={"target": "buy"}),
        ]

    def test_behavioral_frequencies(self):
        engine = ConditionEvaluationEngine()
        events = self._events()
        ok, matched = engine.behavioral(events, [BehavioralCondition(event_type="click", frequency="once")])
        assert ok and len(matched) == 1
        ok, _ = engine.behavioral(events, [BehavioralCondition(event_type="click", frequency="multiple")])
        assert not ok
        ok, _ = engine.behavioral(events, [BehavioralCondition(event_type="page_view", frequency="multiple")])
        assert ok
        ok, matched = engine.behavioral(events, [BehavioralCondition(event_type="scroll", frequency="never")])
        assert ok and matched == []
        ok, _ = engine.behavioral(events, [BehavioralCondition(event_type="click", frequency="sometimes")])
        assert not ok

    def test_behavioral_payload_conditions(self):
        engine = ConditionEvaluationEngine()
        events = self._events()
        contains = BehavioralCondition(
            event_type="page_view",
            frequency="multiple",
            event_payload_conditions=[FieldCondition(field="url", operator="contains", value="pricing")],
        )
        assert engine.behavioral(events, [contains])[0]
        exact = BehavioralCondition(
            event_type="page_view",
            frequency="multiple",
            event_payload_conditions=[FieldCondition(field="url", operator="equals", value="/pricing")],
        )
        assert not engine.behavioral(events, [exact])[0]
        missing_key = BehavioralCondition(
            event_type="click",
            event_payload_conditions=[FieldCondition(field="variant", operator="equals", value="x")],
        )
        assert not engine.behavioral(events, [missing_key])[0]

    def test_behavioral_empty_passes(self):
        assert ConditionEvaluationEngine().behavioral([], []) == (True, [])

    def test_timing(self, clock):
        engine = ConditionEvaluationEngine()
        a_minute_ago = (clock.now() - timedelta(seconds=60)).isoformat()
        context = {"last_activity": a_minute_ago, "page_start_time": a_minute_ago}

        assert engine.timing(context, TimingConditions(idle_time_seconds=30))
        assert not engine.timing(context, TimingConditions(idle_time_seconds=120))
        assert engine.timing(context, TimingConditions(time_on_page_seconds=60))
        # no session_start_time in context: check skipped
        assert engine.timing(context, TimingConditions(session_duration_seconds=9999))
        # zero threshold: check skipped
        assert engine.timing({"last_activity": "garbage"}, TimingConditions(idle_time_seconds=0))
        assert engine.timing(context, None)

    def test_timing_epoch_anchor(self, clock):
        engine = ConditionEvaluationEngine()
        context = {"session_start_time": (clock.now() - timedelta(minutes=10)).timestamp()}
        assert engine.timing(context, TimingConditions(session_duration_seconds=300))

    def test_timing_unparseable_anchor_fails(self, clock):
        engine = ConditionEvaluationEngine()
        assert not engine.timing({"last_activity": "not a time"}, TimingConditions(idle_time_seconds=30))

    def test_evaluate_combined(self, clock):
        engine = ConditionEvaluationEngine()
        conditions = TriggerConditions(
            psychographic_conditions=[FieldCondition(field="emotional_state.mood", operator="equals", value="anxious")],
            behavioral_conditions=[BehavioralCondition(event_type="click")],
        )
        outcome = engine.evaluate(conditions, self.profile, self._events(), {})
        assert outcome.passed
        assert outcome.conditions_met == ["psychographic", "behavioral", "timing"]
        assert [e.event_type for e in outcome.matched_events] == ["click"]


# ── frequency ──────────────────────────────────────────────────────────────

class TestFrequencyLimiter:
    async def _deliveries(self, stores, clock, *ages_hours, rule_id="rul_1", user_id="u1"):
        for age in ages_hours:
            await stores.deliveries.create(
                Delivery(user_id=user_id, rule_id=rule_id, template_id="tpl_1",
                         created_at=clock.now() - timedelta(hours=age))
            )

    @pytest.mark.asyncio
    async def test_blocked_at_limit(self, stores, clock):
        await self._deliveries(stores, clock, 1, 5)
        limiter = FrequencyLimiter(stores)
        assert not await limiter.allowed("u1", "rul_1", MaxFrequency(limit=2, period="day"))

    @pytest.mark.asyncio
    async def test_old_deliveries_ignored(self, stores, clock):
        await self._deliveries(stores, clock, 25, 30)
        limiter = FrequencyLimiter(stores)
        assert await limiter.allowed("u1", "rul_1", MaxFrequency(limit=2, period="day"))

    @pytest.mark.asyncio
    async def test_below_limit(self, stores, clock):
        await self._deliveries(stores, clock, 1)
        assert await FrequencyLimiter(stores).allowed("u1", "rul_1", MaxFrequency(limit=2, period="day"))

    @pytest.mark.asyncio
    async def test_scoped_to_user_and_rule(self, stores, clock):
        await self._deliveries(stores, clock, 1, 1, rule_id="rul_other")
        await self._deliveries(stores, clock, 1, 1, user_id="u2")
        assert await FrequencyLimiter(stores).allowed("u1", "rul_1", MaxFrequency(limit=1, period="hour"))

    @pytest.mark.asyncio
    async def test_zero_limit_blocks(self, stores, clock):
        assert not await FrequencyLimiter(stores).allowed("u1", "rul_1", MaxFrequency(limit=0, period="week"))

    @pytest.mark.asyncio
    async def test_no_cap(self, stores, clock):
        await self._deliveries(stores, clock, 0, 0, 0)
        limiter = FrequencyLimiter(stores)
        assert await limiter.allowed("u1", "rul_1", None)
        assert await limiter.allowed("u1", "rul_1", MaxFrequency(limit=1, period="fortnight"))

    def test_count_since_is_strict(self, clock):
        cutoff = clock.now()
        stamps = [cutoff, cutoff + timedelta(seconds=1), cutoff - timedelta(seconds=1)]
        assert count_since(stamps, cutoff) == 1


# ── rendering ──────────────────────────────────────────────────────────────

class ExplodingRenderer:
    async def render(self, template, profile):
        raise RuntimeError("llm timeout")


class EchoRenderer:
    async def render(self, template, profile):
        return {**template.content, "title": f"Hi {profile.user_id}"}


class TestRendering:
    @pytest.mark.asyncio
    async def test_template_renderer_returns_copy(self):
        template = Template(content={"title": "Hello", "style": {"color": "red"}})
        rendered = await TemplateContentRenderer().render(template, None)
        assert rendered == template.content
        rendered["title"] = "changed"
        assert template.content["title"] == "Hello"

    @pytest.mark.asyncio
    async def test_fallback_on_exception(self):
        template = Template(content={"title": "Hello"})
        assert await render_with_fallback(ExplodingRenderer(), template, None) == {"title": "Hello"}

    @pytest.mark.asyncio
    async def test_fallback_on_empty_result(self):
        class EmptyRenderer:
            async def render(self, template, profile):
                return {}

        template = Template(content={"title": "Hello"})
        assert await render_with_fallback(EmptyRenderer(), template, None) == {"title": "Hello"}

    def test_default_renderer(self):
        set_renderer(None)
        assert isinstance(get_renderer(), TemplateContentRenderer)

    def test_unknown_backend(self, monkeypatch):
        from decision_sdk.tier0_core.config import _reset_config

        monkeypatch.setenv("DECISION_RENDERER_BACKEND", "gpt")
        _reset_config()
        set_renderer(None)
        with pytest.raises(ConfigurationError):
            get_renderer()


# ── rules ──────────────────────────────────────────────────────────────────

APP = "app_1"


async def _seed_user(stores, clock, user_id="u1"):
    await stores.profiles.create(
        Profile(user_id=user_id, emotional_state={"mood": "anxious"}, personality_traits={"neuroticism": 0.8})
    )
    for i in range(7):
        await stores.events.create(
            Event(user_id=user_id, event_type="page_view", event_payload={"url": f"/p/{i}"},
                  timestamp=clock.now() - timedelta(minutes=10 - i))
        )
    await stores.events.create(
        Event(user_id=user_id, event_type="add_to_cart", timestamp=clock.now() - timedelta(minutes=1))
    )


async def _rule(stores, clock, name, priority="medium", order=0, conditions=None, max_frequency=None,
                template_content=None, personalization=None, status="active", client_app_id=APP):
    template = await stores.templates.create(
        Template(content=template_content or {"title": name, "style": {"position": "bottom"}},
                 personalization=personalization or {})
    )
    return await stores.rules.create(
        Rule(
            client_app_id=client_app_id,
            name=name,
            status=status,
            created_at=clock.now() + timedelta(seconds=order),
            trigger_conditions=conditions or TriggerConditions(),
            engagement_action={
                "template_id": template.id,
                "type": "toast",
                "priority": priority,
                "max_frequency": max_frequency,
            },
        )
    )


class TestRuleEvaluationOrchestrator:
    def test_rank_is_stable_and_capped(self):
        fired = [
            TriggeredEngagement(f"d{i}", f"r{i}", "modal", p, {})
            for i, p in enumerate(["low", "critical", "medium", "high", "critical", "unknown"])
        ]
        ranked = rank_engagements(fired, 3)
        assert [e.rule_name for e in ranked] == ["r1", "r4", "r3"]

    @pytest.mark.asyncio
    async def test_top_three_by_priority(self, stores, clock):
        await _seed_user(stores, clock)
        for order, priority in enumerate(["low", "critical", "medium", "high", "critical"]):
            await _rule(stores, clock, f"rule-{order}", priority=priority, order=order)

        fired = await RuleEvaluationOrchestrator(stores).evaluate("u1", APP, {"page_url": "/cart"})
        assert [e.rule_name for e in fired] == ["rule-1", "rule-4", "rule-3"]
        ranks = [{"critical": 4, "high": 3, "medium": 2, "low": 1}[e.priority] for e in fired]
        assert ranks == sorted(ranks, reverse=True)
        # deliveries and triggers are recorded for every fired rule, not just the returned ones
        assert len(stores.deliveries) == 5
        assert len(stores.triggers) == 5

    @pytest.mark.asyncio
    async def test_result_shape_and_delivery(self, stores, clock):
        await _seed_user(stores, clock)
        rule = await _rule(
            stores, clock, "cart-nudge", priority="high",
            conditions=TriggerConditions(
                psychographic_conditions=[FieldCondition(field="emotional_state.mood", operator="equals", value="anxious")],
                behavioral_conditions=[BehavioralCondition(event_type="add_to_cart")],
            ),
        )
        fired = await RuleEvaluationOrchestrator(stores).evaluate(
            "u1", APP, {"page_url": "/cart", "session_id": "sess-1"}
        )
        assert len(fired) == 1
        result = fired[0].as_dict()
        assert result["rule_name"] == "cart-nudge"
        assert result["engagement_type"] == "toast"
        assert result["priority"] == "high"
        assert result["style"] == {"position": "bottom"}

        delivery = await stores.deliveries.get(result["delivery_id"])
        assert delivery.delivery_status == "delivered"
        assert delivery.rule_id == rule.id
        assert delivery.session_id == "sess-1"
        assert delivery.client_app_id == APP
        assert delivery.delivery_context["page_url"] == "/cart"
        assert delivery.delivery_context["conditions_met"] == ["psychographic", "behavioral", "timing"]
        assert len(delivery.delivery_context["trigger_events"]) == 1

    @pytest.mark.asyncio
    async def test_evidence_capped(self, stores, clock):
        await _seed_user(stores, clock)
        await _rule(stores, clock, "any")
        fired = await RuleEvaluationOrchestrator(stores, trigger_evidence_count=5).evaluate("u1", APP)
        delivery = await stores.deliveries.get(fired[0].delivery_id)
        assert len(delivery.delivery_context["trigger_events"]) == 5

    @pytest.mark.asyncio
    async def test_naive_event_timestamps(self, stores, clock):
        await _seed_user(stores, clock)
        checkout = await stores.events.create(
            Event(user_id="u1", event_type="checkout", timestamp="2025-06-15T11:59:30")
        )
        await _rule(
            stores, clock, "after-checkout",
            conditions=TriggerConditions(behavioral_conditions=[BehavioralCondition(event_type="checkout")]),
        )
        fired = await RuleEvaluationOrchestrator(stores).evaluate("u1", APP)
        assert [e.rule_name for e in fired] == ["after-checkout"]
        delivery = await stores.deliveries.get(fired[0].delivery_id)
        assert delivery.delivery_context["trigger_events"] == [checkout.id]

    @pytest.mark.asyncio
    async def test_never_condition_records_no_evidence(self, stores, clock):
        await _seed_user(stores, clock)
        await _rule(
            stores, clock, "first-purchase-nudge",
            conditions=TriggerConditions(
                behavioral_conditions=[BehavioralCondition(event_type="purchase", frequency="never")],
            ),
        )
        fired = await RuleEvaluationOrchestrator(stores).evaluate("u1", APP)
        assert len(fired) == 1
        delivery = await stores.deliveries.get(fired[0].delivery_id)
        assert delivery.delivery_context["trigger_events"] == []

    @pytest.mark.asyncio
    async def test_trigger_log_failure_keeps_engagement(self, stores, clock):
        class OfflineTriggers(InMemoryEntityStore):
            async def create(self, record):
                raise StoreError(user_message="trigger log offline")

        await _seed_user(stores, clock)
        await _rule(stores, clock, "still-shown", priority="high")
        stores.triggers = OfflineTriggers("rule_trigger")

        fired = await RuleEvaluationOrchestrator(stores).evaluate("u1", APP)
        assert [e.rule_name for e in fired] == ["still-shown"]
        assert len(stores.deliveries) == 1
        assert len(stores.triggers) == 0

    @pytest.mark.asyncio
    async def test_rule_read_failure_propagates(self, stores, clock):
        class OfflineRules(InMemoryEntityStore):
            async def filter(self, predicate=None, sort=None, limit=None):
                raise StoreError(user_message="rules table offline")

        await _seed_user(stores, clock)
        stores.rules = OfflineRules("rule")
        with pytest.raises(StoreError):
            await RuleEvaluationOrchestrator(stores).evaluate("u1", APP)

    @pytest.mark.asyncio
    async def test_conditions_must_all_pass(self, stores, clock):
        await _seed_user(stores, clock)
        await _rule(
            stores, clock, "never-fires",
            conditions=TriggerConditions(
                psychographic_conditions=[FieldCondition(field="emotional_state.mood", operator="equals", value="anxious")],
                behavioral_conditions=[BehavioralCondition(event_type="purchase")],
            ),
        )
        assert await RuleEvaluationOrchestrator(stores).evaluate("u1", APP) == []
        assert len(stores.deliveries) == 0

    @pytest.mark.asyncio
    async def test_frequency_cap(self, stores, clock):
        await _seed_user(stores, clock)
        await _rule(stores, clock, "once-a-day", max_frequency={"limit": 1, "period": "day"})
        orchestrator = RuleEvaluationOrchestrator(stores)
        assert len(await orchestrator.evaluate("u1", APP)) == 1
        assert await orchestrator.evaluate("u1", APP) == []

    @pytest.mark.asyncio
    async def test_no_profile_no_engagements(self, stores, clock):
        await _rule(stores, clock, "any")
        assert await RuleEvaluationOrchestrator(stores).evaluate("ghost", APP) == []

    @pytest.mark.asyncio
    async def test_scoped_to_active_rules_of_app(self, stores, clock):
        await _seed_user(stores, clock)
        await _rule(stores, clock, "inactive", status="inactive")
        await _rule(stores, clock, "other-app", client_app_id="app_2")
        assert await RuleEvaluationOrchestrator(stores).evaluate("u1", APP) == []

    @pytest.mark.asyncio
    async def test_missing_template_skips_rule(self, stores, clock):
        await _seed_user(stores, clock)
        await stores.rules.create(
            Rule(client_app_id=APP, name="orphan", engagement_action={"template_id": "tpl_gone"})
        )
        assert await RuleEvaluationOrchestrator(stores).evaluate("u1", APP) == []

    @pytest.mark.asyncio
    async def test_personalization(self, stores, clock):
        await _seed_user(stores, clock)
        await _rule(stores, clock, "personal", personalization={"use_psychographic_data": True})
        fired = await RuleEvaluationOrchestrator(stores, renderer=EchoRenderer()).evaluate("u1", APP)
        assert fired[0].content["title"] == "Hi u1"

    @pytest.mark.asyncio
    async def test_renderer_failure_falls_back(self, stores, clock):
        await _seed_user(stores, clock)
        await _rule(stores, clock, "personal", personalization={"use_psychographic_data": True})
        fired = await RuleEvaluationOrchestrator(stores, renderer=ExplodingRenderer()).evaluate("u1", APP)
        assert fired[0].content["title"] == "personal"

    @pytest.mark.asyncio
    async def test_renderer_not_called_without_opt_in(self, stores, clock):
        await _seed_user(stores, clock)
        await _rule(stores, clock, "plain")
        fired = await RuleEvaluationOrchestrator(stores, renderer=ExplodingRenderer()).evaluate("u1", APP)
        assert fired[0].content["title"] == "plain"

    @pytest.mark.asyncio
    async def test_rule_analytics(self, stores, clock):
        await _seed_user(stores, clock)
        rule = await _rule(stores, clock, "counted")
        orchestrator = RuleEvaluationOrchestrator(stores)
        await orchestrator.evaluate("u1", APP)
        await orchestrator.evaluate("u1", APP)
        analytics = await rule_analytics(stores, rule.id)
        assert analytics["triggered_count"] == 2
        assert analytics["last_triggered"] == clock.now().isoformat()

    @pytest.mark.asyncio
    async def test_rule_analytics_never_fired(self, stores):
        analytics = await rule_analytics(stores, "rul_x")
        assert analytics == {"rule_id": "rul_x", "triggered_count": 0, "last_triggered": None}


# ── compliance ─────────────────────────────────────────────────────────────

def _profile(**overrides) -> Profile:
    return Profile(user_id="u1", **overrides)


class TestIntent:
    def test_malicious(self):
        profile = _profile(personality_traits={"neuroticism": 0.9}, risk_profile="aggressive")
        assert assess_intent(profile) == "malicious"

    def test_confused(self):
        profile = _profile(cognitive_style="analytical", personality_traits={"conscientiousness": 0.8})
        assert assess_intent(profile) == "confused"

    def test_exploitative(self):
        profile = _profile(motivation_stack=[{"label": "Power seeking"}])
        assert assess_intent(profile) == "exploitative"

    def test_unclear(self):
        assert assess_intent(None) == "unclear"
        assert assess_intent(_profile()) == "unclear"

    def test_interventions(self):
        assert [i["action_type"] for i in generate_interventions("malicious", None)] == [
            "temporary_rate_limit", "account_review",
        ]
        nudge = generate_interventions("confused", _profile(cognitive_style="analytical"))
        assert nudge[0]["action_type"] == "educational_nudge"
        assert "step-by-step" in nudge[0]["psychographic_alignment"]
        assert generate_interventions("unclear", None)[0]["action_type"] == "warning_message"

    def test_unknown_intent_gets_no_interventions(self):
        assert generate_interventions("accidental", None) == []
        assert generate_interventions("", _profile(cognitive_style="analytical")) == []


class TestComplianceRuleEvaluator:
    def _events(self, clock, *types, spacing=5):
        return [
            Event(user_id="u1", event_type=t, timestamp=clock.now() - timedelta(seconds=spacing * (len(types) - i)))
            for i, t in enumerate(types)
        ]

    def test_frequency_threshold(self, clock):
        rule = ComplianceRule(
            name="login hammering",
            rule_type="frequency_threshold",
            severity="high",
            detection_criteria={"frequency_limit": {"event_type": "login_failed", "max_occurrences": 3, "time_window_seconds": 60}},
        )
        events = self._events(clock, *["login_failed"] * 4)
        detection = ComplianceRuleEvaluator().evaluate(rule, "u1", events, None)
        assert detection.alert_type == "rate_limit_abuse"
        assert detection.confidence_score == 0.85
        assert detection.severity == "high"
        assert detection.policy_violated == "login hammering"
        assert len(detection.reasoning["supporting_event_ids"]) == 4
        assert detection.reasoning["intent_assessment"] == "unclear"

        assert ComplianceRuleEvaluator().evaluate(rule, "u1", events[:3], None) is None

    def test_frequency_window(self, clock):
        rule = ComplianceRule(
            rule_type="frequency_threshold",
            detection_criteria={"frequency_limit": {"event_type": "login_failed", "max_occurrences": 1, "time_window_seconds": 30}},
        )
        events = self._events(clock, "login_failed", "login_failed", spacing=40)
        assert ComplianceRuleEvaluator().evaluate(rule, "u1", events, None) is None

    def test_behavioral_sequence(self, clock):
        rule = ComplianceRule(
            rule_type="behavioral_sequence",
            detection_criteria={"event_sequence": ["view_card", "copy_card", "logout"]},
        )
        events = self._events(clock, "login", "view_card", "copy_card", "logout")
        detection = ComplianceRuleEvaluator().evaluate(rule, "u1", list(reversed(events)), None)
        assert detection.alert_type == "suspicious_behavior"
        assert detection.confidence_score == 0.75
        assert detection.reasoning["supporting_event_ids"] == [e.id for e in events[1:]]

        broken = self._events(clock, "view_card", "login", "copy_card", "logout")
        assert ComplianceRuleEvaluator().evaluate(rule, "u1", broken, None) is None

    def test_psychographic_risk(self):
        rule = ComplianceRule(
            rule_type="psychographic_risk",
            detection_criteria={"psychographic_conditions": [
                {"trait": "personality_traits.neuroticism", "operator": "greater_than", "value": 0.7},
                {"trait": "risk_profile", "operator": "equals", "value": "aggressive"},
            ]},
        )
        risky = _profile(personality_traits={"neuroticism": 0.9}, risk_profile="aggressive")
        detection = ComplianceRuleEvaluator().evaluate(rule, "u1", [], risky)
        assert detection.alert_type == "psychographic_risk"
        assert detection.confidence_score == 0.7

        calm = _profile(personality_traits={"neuroticism": 0.2}, risk_profile="aggressive")
        assert ComplianceRuleEvaluator().evaluate(rule, "u1", [], calm) is None
        assert ComplianceRuleEvaluator().evaluate(rule, "u1", [], None) is None

    def test_combined(self, clock):
        rule = ComplianceRule(
            rule_type="combined",
            detection_criteria={
                "frequency_limit": {"event_type": "refund_request", "max_occurrences": 1, "time_window_seconds": 600},
                "psychographic_conditions": [{"trait": "risk_profile", "operator": "equals", "value": "aggressive"}],
            },
        )
        events = self._events(clock, "refund_request", "refund_request")
        detection = ComplianceRuleEvaluator().evaluate(rule, "u1", events, _profile(risk_profile="aggressive"))
        assert detection.alert_type == "combined_violation"
        assert detection.confidence_score == pytest.approx(0.95)
        assert len(detection.reasoning["behavioral_evidence"]) == 4

        assert ComplianceRuleEvaluator().evaluate(rule, "u1", events, _profile(risk_profile="moderate")) is None

    def test_unknown_rule_type(self):
        rule = ComplianceRule(rule_type="astrology")
        assert ComplianceRuleEvaluator().evaluate(rule, "u1", [], _profile()) is None


class TestDarkPatterns:
    def test_roach_motel(self):
        events = [
            Event(user_id="u1", event_type="page_view", event_payload={"url": "/account/cancel"}),
            Event(user_id="u1", event_type="page_view", event_payload={"url": "/account/cancel/confirm"}),
            Event(user_id="u1", event_type="page_view", event_payload={"url": "/email/unsubscribe"}),
            Event(user_id="u1", event_type="page_view", event_payload={"url": "/home"}),
        ]
        signals = detect_dark_patterns(events, "u1")
        assert len(signals) == 1
        signal = signals[0]
        assert signal.pattern_type == "roach_motel"
        assert signal.element == "/account/cancel"
        assert signal.manipulation_score == pytest.approx(0.6)
        assert signal.evidence["average_time_spent"] == 90

    def test_below_threshold(self):
        events = [Event(user_id="u1", event_type="page_view", event_payload={"url": "/cancel"})] * 2
        assert detect_dark_patterns(events) == []

    def test_score_capped(self):
        events = [Event(user_id="u1", event_type="page_view", event_payload={"url": "/cancel"})] * 8
        assert detect_dark_patterns(events)[0].manipulation_score == 1.0


class TestComplianceMonitor:
    async def _seed(self, stores, clock):
        await stores.compliance_rules.create(ComplianceRule(
            name="rapid refunds",
            rule_type="frequency_threshold",
            severity="critical",
            detection_criteria={"frequency_limit": {"event_type": "refund_request", "max_occurrences": 2, "time_window_seconds": 3600}},
        ))
        await stores.compliance_rules.create(ComplianceRule(rule_type="frequency_threshold", enabled=False))
        await stores.profiles.create(_profile(personality_traits={"neuroticism": 0.9}, risk_profile="aggressive"))
        for i in range(3):
            await stores.events.create(Event(
                user_id="u1", event_type="refund_request",
                timestamp=clock.now() - timedelta(minutes=5 * (i + 1)),
            ))
            await stores.events.create(Event(
                user_id="u2", event_type="page_view", event_payload={"url": "/billing/cancel"},
                timestamp=clock.now() - timedelta(minutes=i + 1),
            ))
        # outside the scan window
        await stores.events.create(Event(
            user_id="u3", event_type="refund_request", timestamp=clock.now() - timedelta(hours=3),
        ))

    @pytest.mark.asyncio
    async def test_run_creates_alerts(self, stores, clock):
        await self._seed(stores, clock)
        summary = await ComplianceMonitor(stores).run(time_window_hours=1)
        assert summary["users_analyzed"] == 2
        assert summary["rules_evaluated"] == 1
        assert summary["detections_found"] == 1
        assert summary["alerts_created"] == 1
        assert summary["dark_patterns_detected"] == 1
        assert summary["detections"] == []

        alerts = await stores.alerts.filter()
        assert len(alerts) == 1
        assert alerts[0].user_id == "u1"
        assert alerts[0].severity == "critical"
        assert alerts[0].status == "pending_review"
        assert [i["action_type"] for i in alerts[0].recommended_interventions] == [
            "temporary_rate_limit", "account_review",
        ]

        patterns = await stores.dark_patterns.filter()
        assert len(patterns) == 1
        assert patterns[0].affected_user_id == "u2"
        assert patterns[0].status == "detected"

    @pytest.mark.asyncio
    async def test_run_without_alerts_returns_detections(self, stores, clock):
        await self._seed(stores, clock)
        summary = await ComplianceMonitor(stores).run(time_window_hours=1, auto_create_alerts=False)
        assert summary["alerts_created"] == 0
        assert len(summary["detections"]) == 1
        assert summary["detections"][0]["alert_type"] == "rate_limit_abuse"
        assert len(stores.alerts) == 0
        assert len(stores.dark_patterns) == 0

    @pytest.mark.asyncio
    async def test_persistence_failure_does_not_abort(self, stores, clock):
        class BrokenStore(InMemoryEntityStore):
            async def create(self, record):
                raise StoreError(user_message="alerts table offline")

        await self._seed(stores, clock)
        stores.alerts = BrokenStore("integrity_alert")
        summary = await ComplianceMonitor(stores).run(time_window_hours=1)
        assert summary["detections_found"] == 1
        assert summary["alerts_created"] == 0
        assert len(stores.dark_patterns) == 1

    @pytest.mark.asyncio
    async def test_naive_event_timestamps_scanned(self, stores, clock):
        await self._seed(stores, clock)
        naive = await stores.events.create(Event(
            user_id="u1", event_type="refund_request",
            timestamp=(clock.now() - timedelta(minutes=1)).replace(tzinfo=None),
        ))
        summary = await ComplianceMonitor(stores).run(time_window_hours=1)
        assert summary["detections_found"] == 1
        [alert] = await stores.alerts.filter()
        assert naive.id in alert.detection_reasoning["supporting_event_ids"]
        assert len(alert.detection_reasoning["supporting_event_ids"]) == 4
