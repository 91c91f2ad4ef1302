"""
decision_sdk.tier3_decisioning.analysis
─────────────────────────────────────────
Builds the A/B test report from a point-in-time snapshot of variants and
participants. Pure read-then-compute: participants arriving while a report
is built are simply not in it.

Significance is reported only when control and variant both reach the
test's minimum_sample_size; confidence intervals only for arms with at least
min_interval_sample participants. Below those thresholds the fields are None.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Sequence

from decision_sdk.tier0_core.logging import get_logger
from decision_sdk.tier2_storage.entities import ABTest, Participant, Variant
from decision_sdk.tier3_decisioning import stats

log = get_logger(__name__)


@dataclass
class VariantStats:
    variant: Variant
    participants: int = 0
    conversions: int = 0

    @property
    def conversion_rate(self) -> float:
        return self.conversions / self.participants if self.participants else 0.0


@dataclass
class AnalysisReportBuilder:
    min_interval_sample: int = 30
    pvalue_method: str = "exact"
    winner_lift_threshold: float = 0.10

    def tally(
        self, variants: Sequence[Variant], participants: Sequence[Participant]
    ) -> list[VariantStats]:
        """Count participants and converted participants per variant, in variant order."""
        by_id = {v.id: VariantStats(variant=v) for v in variants}
        for p in participants:
            entry = by_id.get(p.variant_id)
            if entry is None:
                continue
            entry.participants += 1
            if p.converted:
                entry.conversions += 1
        return list(by_id.values())

    def build(
        self,
        test: ABTest,
        tallies: Sequence[VariantStats],
        total_participants: int,
    ) -> dict[str, Any]:
        """Report for *test* from tallies produced by tally()."""
        settings = test.statistical_settings
        controls = [s for s in tallies if s.variant.is_control]
        if len(controls) > 1:
            log.warning(
                "analysis.multiple_controls",
                ab_test_id=test.id,
                control_ids=[c.variant.id for c in controls],
            )
        control = controls[0] if controls else None
        challengers = [s for s in tallies if not s.variant.is_control]

        report = {
            "test_id": test.id,
            "status": test.status,
            "total_participants": total_participants,
            "control": self._control_entry(control, settings.confidence_level),
            "variants": [
                self._variant_entry(v, control, settings.confidence_level, settings.minimum_sample_size)
                for v in challengers
            ],
            "recommendations": self.recommendations(tallies, settings.minimum_sample_size),
        }
        return report

    def _interval(self, s: VariantStats, confidence_level: float) -> dict | None:
        if s.participants < self.min_interval_sample:
            return None
        ci = stats.confidence_interval(s.conversions, s.participants, confidence_level)
        return ci.as_dict() if ci else None

    def _control_entry(self, control: VariantStats | None, confidence_level: float) -> dict | None:
        if control is None:
            return None
        return {
            "name": control.variant.name,
            "participants": control.participants,
            "conversions": control.conversions,
            "conversion_rate": control.conversion_rate,
            "confidence_interval": self._interval(control, confidence_level),
        }

    def _variant_entry(
        self,
        v: VariantStats,
        control: VariantStats | None,
        confidence_level: float,
        minimum_sample_size: int,
    ) -> dict[str, Any]:
        significance = None
        lift_pct = None
        if (
            control is not None
            and control.participants >= minimum_sample_size
            and v.participants >= minimum_sample_size
        ):
            result = stats.significance(
                control.conversions, control.participants,
                v.conversions, v.participants,
                confidence_level,
                method=self.pvalue_method,
            )
            significance = result.as_dict() if result else None
            lift_pct = stats.lift(control.conversion_rate, v.conversion_rate)

        return {
            "name": v.variant.name,
            "participants": v.participants,
            "conversions": v.conversions,
            "conversion_rate": v.conversion_rate,
            "lift_percentage": lift_pct,
            "statistical_significance": significance,
            "confidence_interval": self._interval(v, confidence_level),
        }

    def recommendations(
        self, tallies: Sequence[VariantStats], minimum_sample_size: int
    ) -> list[dict[str, str]]:
        recs: list[dict[str, str]] = []

        undersized = [s for s in tallies if s.participants < minimum_sample_size]
        if undersized:
            recs.append({
                "type": "sample_size",
                "message": (
                    f"{len(undersized)} variant(s) need more participants before "
                    "statistical analysis is reliable."
                ),
                "action": "continue_test",
            })

        control = next((s for s in tallies if s.variant.is_control), None)
        challengers = [s for s in tallies if not s.variant.is_control]
        if control is None or not challengers:
            return recs

        best = challengers[0]
        for s in challengers[1:]:
            if s.conversion_rate > best.conversion_rate:
                best = s

        if best.conversion_rate > control.conversion_rate * (1.0 + self.winner_lift_threshold):
            if control.conversion_rate > 0:
                margin = f"by {stats.lift(control.conversion_rate, best.conversion_rate):.1f}%"
            else:
                margin = "(control has no conversions)"
            recs.append({
                "type": "potential_winner",
                "message": f"{best.variant.name} is outperforming control {margin}.",
                "action": "consider_promotion",
            })
        return recs


__all__ = ["AnalysisReportBuilder", "VariantStats"]
