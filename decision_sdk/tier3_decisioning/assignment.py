"""
decision_sdk.tier3_decisioning.assignment
───────────────────────────────────────────
Variant assignment for A/B tests. A user is bucketed once per test and the
decision is permanent: later calls return the stored variant even if the
test's weights, allocation or status have changed since.

Order of checks for a user without a Participant record:
  1. test must be running                        → else test_not_running
  2. test must have variants                     → else no_variants
  3. hash(user_id, test_id) < traffic_allocation → else excluded_from_traffic
  4. hash(user_id + "_variant", test_id) picks a bucket by normalized weight
  5. Participant is written with create-if-absent on (ab_test_id, user_id);
     losing a race returns the winner's variant
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Sequence

from decision_sdk.tier0_core.errors import DecisionError
from decision_sdk.tier0_core.logging import get_logger
from decision_sdk.tier0_core.metrics import counter
from decision_sdk.tier2_storage.entities import ABTest, Participant, Variant
from decision_sdk.tier2_storage.store import Stores
from decision_sdk.tier3_decisioning.hashing import deterministic_hash

log = get_logger(__name__)

assignments_total = counter(
    "decision_assignments_total", "Variant assignment outcomes", ["outcome"]
)

TEST_NOT_FOUND = "test_not_found"
TEST_NOT_RUNNING = "test_not_running"
NO_VARIANTS = "no_variants"
EXCLUDED_FROM_TRAFFIC = "excluded_from_traffic"
VARIANT_NOT_FOUND = "variant_not_found"


@dataclass
class AssignmentResult:
    assigned: bool
    variant: Variant | None = None
    reason: str | None = None
    created: bool = False

    def as_dict(self) -> dict[str, Any]:
        if not self.assigned or self.variant is None:
            return {"assigned": False, "reason": self.reason}
        return {
            "assigned": True,
            "variant_id": self.variant.id,
            "variant_name": self.variant.name,
            "configuration": self.variant.configuration,
        }


def is_in_traffic(user_id: str, test: ABTest) -> bool:
    """True when the user falls inside the test's traffic allocation."""
    return deterministic_hash(user_id, test.id) < test.traffic_allocation


def select_variant(variants: Sequence[Variant], bucket: float) -> Variant:
    """
    Walk variants in order accumulating normalized weight; return the first
    whose cumulative weight reaches *bucket*. If rounding leaves the total
    short of *bucket*, the last variant is returned.
    """
    if not variants:
        raise ValueError("At least one variant is required")

    total = sum(v.traffic_weight for v in variants)
    cumulative = 0.0
    for variant in variants:
        cumulative += variant.traffic_weight / total
        if bucket <= cumulative:
            return variant
    return variants[-1]


def bucket_for(user_id: str, test_id: str) -> float:
    return deterministic_hash(f"{user_id}_variant", test_id)


@dataclass
class VariantAssignmentEngine:
    stores: Stores

    async def assign(
        self,
        ab_test_id: str,
        user_id: str,
        client_app_id: str | None = None,
    ) -> AssignmentResult:
        existing = await self._existing_participant(ab_test_id, user_id)
        if existing is not None:
            variant = await self.stores.variants.get(existing.variant_id)
            if variant is not None:
                assignments_total(outcome="existing").inc()
                return AssignmentResult(assigned=True, variant=variant)

        test = await self.stores.tests.get(ab_test_id)
        if test is None:
            return self._reject(ab_test_id, user_id, TEST_NOT_FOUND)
        if test.status != "running":
            return self._reject(ab_test_id, user_id, TEST_NOT_RUNNING)

        variants = await self.stores.variants.filter(
            lambda v: v.ab_test_id == ab_test_id, sort="created_at"
        )
        if not variants:
            return self._reject(ab_test_id, user_id, NO_VARIANTS)

        if not is_in_traffic(user_id, test):
            return self._reject(ab_test_id, user_id, EXCLUDED_FROM_TRAFFIC)

        chosen = select_variant(variants, bucket_for(user_id, ab_test_id))
        participant, created = await self.stores.participants.create_if_absent(
            Participant(
                ab_test_id=ab_test_id,
                user_id=user_id,
                variant_id=chosen.id,
                client_app_id=client_app_id,
            ),
            key=("ab_test_id", "user_id"),
        )

        if not created:
            # Another request assigned this user first; its write is authoritative.
            log.info(
                "assignment.race_lost",
                ab_test_id=ab_test_id,
                user_id=user_id,
                variant_id=participant.variant_id,
            )
            winner = next((v for v in variants if v.id == participant.variant_id), None)
            if winner is None:
                winner = await self.stores.variants.get(participant.variant_id)
            if winner is None:
                return self._reject(ab_test_id, user_id, VARIANT_NOT_FOUND)
            assignments_total(outcome="existing").inc()
            return AssignmentResult(assigned=True, variant=winner)

        try:
            await self._count_participant(chosen)
        except DecisionError as exc:
            log.warning(
                "assignment.metrics_failed",
                ab_test_id=ab_test_id,
                variant_id=chosen.id,
                error=str(exc),
                error_type=type(exc).__name__,
            )
        assignments_total(outcome="assigned").inc()
        log.info(
            "assignment.created",
            ab_test_id=ab_test_id,
            user_id=user_id,
            variant_id=chosen.id,
        )
        return AssignmentResult(assigned=True, variant=chosen, created=True)

    async def _existing_participant(self, ab_test_id: str, user_id: str) -> Participant | None:
        found = await self.stores.participants.filter(
            lambda p: p.ab_test_id == ab_test_id and p.user_id == user_id,
            limit=1,
        )
        return found[0] if found else None

    async def _count_participant(self, variant: Variant) -> None:
        # Telemetry only; analyze_test recounts from participants.
        metrics = variant.performance_metrics
        participants = metrics.participants + 1
        await self.stores.variants.update(
            variant.id,
            {
                "performance_metrics": {
                    **metrics.model_dump(),
                    "participants": participants,
                    "conversion_rate": metrics.conversions / participants,
                }
            },
        )

    def _reject(self, ab_test_id: str, user_id: str, reason: str) -> AssignmentResult:
        assignments_total(outcome=reason).inc()
        log.info("assignment.rejected", ab_test_id=ab_test_id, user_id=user_id, reason=reason)
        return AssignmentResult(assigned=False, reason=reason)


__all__ = [
    "AssignmentResult", "VariantAssignmentEngine",
    "is_in_traffic", "select_variant", "bucket_for",
    "TEST_NOT_FOUND", "TEST_NOT_RUNNING", "NO_VARIANTS", "EXCLUDED_FROM_TRAFFIC",
    "VARIANT_NOT_FOUND",
]
