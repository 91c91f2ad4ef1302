"""
decision_sdk.tier3_decisioning.stats
──────────────────────────────────────
Two-proportion significance testing for conversion data.

Every function returns None instead of NaN/inf when the statistic is
undetermined (empty arm, pooled rate of exactly 0 or 1), so callers can emit
null rather than a misleading number.

p-values are exact by default (two-tailed normal tail via erfc). The
closed-form approximation 2 * 0.5 * exp(-0.717|z| - 0.416 z^2) is kept
selectable for parity with historical reports; its maximum absolute error
against the exact tail is about 0.014.
"""
from __future__ import annotations

import math
from dataclasses import asdict, dataclass
from statistics import NormalDist
from typing import Any

# Rounded critical values; earlier reports were computed with these.
_Z_TABLE = {0.95: 1.96, 0.99: 2.58}

APPROXIMATION_CUTOFF = 6.0


@dataclass
class ConfidenceInterval:
    lower: float
    upper: float
    rate: float

    def as_dict(self) -> dict[str, float]:
        return asdict(self)


@dataclass
class SignificanceResult:
    z_score: float
    p_value: float
    is_significant: bool
    confidence_level: float

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)


def z_score(success_a: int, total_a: int, success_b: int, total_b: int) -> float | None:
    """
    Pooled two-proportion z statistic for B relative to A.
    None when either arm is empty or the pooled rate is 0 or 1.
    """
    if total_a <= 0 or total_b <= 0:
        return None
    pooled = (success_a + success_b) / (total_a + total_b)
    if pooled <= 0.0 or pooled >= 1.0:
        return None
    se = math.sqrt(pooled * (1.0 - pooled) * (1.0 / total_a + 1.0 / total_b))
    if se == 0.0:
        return None
    return (success_b / total_b - success_a / total_a) / se


def p_value(z: float, method: str = "exact") -> float:
    """Two-tailed p-value for *z*. Symmetric in the sign of z."""
    abs_z = abs(z)
    if method == "approximate":
        if abs_z > APPROXIMATION_CUTOFF:
            return 0.0
        return 2.0 * 0.5 * math.exp(-0.717 * abs_z - 0.416 * abs_z * abs_z)
    if method == "exact":
        return math.erfc(abs_z / math.sqrt(2.0))
    raise ValueError(f"Unknown p-value method: {method!r}. Use 'exact' or 'approximate'.")


def critical_z(confidence_level: float) -> float:
    """Two-sided critical value for a confidence level in (0, 1)."""
    if not 0.0 < confidence_level < 1.0:
        raise ValueError(f"confidence_level must be in (0, 1), got {confidence_level}")
    for level, z in _Z_TABLE.items():
        if math.isclose(confidence_level, level):
            return z
    return NormalDist().inv_cdf((1.0 + confidence_level) / 2.0)


def confidence_interval(
    success: int, total: int, confidence_level: float = 0.95
) -> ConfidenceInterval | None:
    """Wald interval for a proportion, clamped to [0, 1]. None for an empty arm."""
    if total <= 0:
        return None
    rate = success / total
    margin = critical_z(confidence_level) * math.sqrt(rate * (1.0 - rate) / total)
    return ConfidenceInterval(
        lower=max(0.0, rate - margin),
        upper=min(1.0, rate + margin),
        rate=rate,
    )


def lift(control_rate: float, variant_rate: float) -> float:
    """
    Relative change of variant over control, in percent.
    0 when the control rate is 0 (historical convention: undefined reads as no lift).
    """
    if control_rate == 0:
        return 0.0
    return (variant_rate - control_rate) / control_rate * 100.0


def significance(
    control_success: int,
    control_total: int,
    variant_success: int,
    variant_total: int,
    confidence_level: float,
    method: str = "exact",
) -> SignificanceResult | None:
    """Full test of variant against control, or None when undetermined."""
    z = z_score(control_success, control_total, variant_success, variant_total)
    if z is None:
        return None
    p = p_value(z, method)
    return SignificanceResult(
        z_score=z,
        p_value=p,
        is_significant=p < (1.0 - confidence_level),
        confidence_level=confidence_level,
    )


__all__ = [
    "ConfidenceInterval", "SignificanceResult",
    "z_score", "p_value", "critical_z", "confidence_interval", "lift", "significance",
]
