"""Rating, variance and validation math for KPI extraction runs.

All functions here are pure. Scores follow a 1–5 scale per component:

  speed            latency bands at 500 / 1000 / 2000 / 3000 ms
  cost             multiples of the baseline cost B (1x / 2x / 3x / 4x)
  reproducibility  5 only for temperature == 0
  accuracy         5 when the EBITDA formula check passed
"""

from __future__ import annotations

import math
from collections.abc import Iterable, Mapping
from typing import Any

from kpitrace.config import settings
from kpitrace.schemas.analysis import ModelRecommendation, SessionStats
from kpitrace.schemas.trace import Rating, RatingBreakdown, SessionRecord, SessionStatus

KPI_FIELDS = ("revenue", "cogs", "opex", "ebitda")

RECOMMEND_TEMPERATURE = "use temperature=0"
RECOMMEND_COST = "reduce cost"
RECOMMEND_LATENCY = "optimize latency"
RECOMMEND_OPTIMAL = "optimal configuration"


def _round_half_up(value: float, digits: int = 0) -> float:
    factor = 10 ** digits
    return math.floor(value * factor + 0.5) / factor


def as_number(value: Any) -> float | None:
    """Coerce a KPI value to float; accepts numbers and strings like "119,575,000"."""
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value) if math.isfinite(value) else None
    if isinstance(value, str):
        try:
            return float(value.replace(",", "").strip())
        except ValueError:
            return None
    return None


def _band(value: float, limits: tuple[float, ...]) -> int:
    for score, limit in zip((5, 4, 3, 2), limits):
        if value < limit:
            return score
    return 1


def rate(
    latency_ms: float,
    cost: float,
    temperature: float,
    validation_passed: bool,
    baseline_cost: float | None = None,
) -> Rating:
    """Score a run and pick the single most important recommendation.

    Recommendation priority: temperature, then cost, then latency.
    """
    b = baseline_cost if baseline_cost is not None else settings.rating_baseline_cost

    speed = _band(latency_ms, (500, 1000, 2000, 3000))
    cost_score = _band(cost, (b, 2 * b, 3 * b, 4 * b))
    reproducibility = 5 if temperature == 0 else 1
    accuracy = 5 if validation_passed else 1

    stars = int(_round_half_up((speed + cost_score + reproducibility + accuracy) / 4))

    if temperature != 0:
        recommendation = RECOMMEND_TEMPERATURE
    elif cost > 2 * b:
        recommendation = RECOMMEND_COST
    elif latency_ms > 2000:
        recommendation = RECOMMEND_LATENCY
    else:
        recommendation = RECOMMEND_OPTIMAL

    return Rating(
        stars=stars,
        breakdown=RatingBreakdown(
            speed=speed, cost=cost_score, reproducibility=reproducibility, accuracy=accuracy,
        ),
        cost_multiplier=_round_half_up(cost / b, 1),
        recommendation=recommendation,
    )


def variance(original: Mapping[str, Any] | None, replayed: Mapping[str, Any] | None) -> float:
    """Percentage change of EBITDA between two KPI payloads.

    0 when either side is missing, EBITDA is absent or the original EBITDA is 0.
    """
    if not original or not replayed:
        return 0.0
    before = as_number(original.get("ebitda"))
    after = as_number(replayed.get("ebitda"))
    if before is None or after is None or before == 0:
        return 0.0
    return abs(after - before) / abs(before) * 100


def check_ebitda(kpis: Mapping[str, Any] | None, tolerance: float | None = None) -> dict[str, Any]:
    """Run the EBITDA formula check and return the validation event payload."""
    tol = tolerance if tolerance is not None else settings.validation_tolerance
    values = {k: as_number((kpis or {}).get(k)) for k in KPI_FIELDS}
    missing = [k for k, v in values.items() if v is None]
    if missing:
        return {
            "valid": False,
            "checks": ["ebitda_formula"],
            "missing_fields": missing,
        }

    expected = values["revenue"] - values["cogs"] - values["opex"]
    difference = abs(values["ebitda"] - expected)
    return {
        "valid": difference < tol,
        "checks": ["ebitda_formula"],
        "expected_ebitda": expected,
        "actual_ebitda": values["ebitda"],
        "difference": difference,
    }


def validate_kpis(kpis: Mapping[str, Any] | None, tolerance: float | None = None) -> bool:
    """ebitda == revenue - cogs - opex within an absolute tolerance."""
    return check_ebitda(kpis, tolerance)["valid"]


# ── Aggregates over many sessions ───────────────────────────────


def summarize_sessions(sessions: Iterable[SessionRecord]) -> SessionStats:
    completed = [s for s in sessions if s.status == SessionStatus.COMPLETED]
    total = len(completed)
    if total == 0:
        return SessionStats()

    deterministic = sum(1 for s in completed if s.temperature == 0)
    return SessionStats(
        total_sessions=total,
        avg_cost=sum(s.cost or 0 for s in completed) / total,
        avg_latency=sum(s.latency or 0 for s in completed) / total,
        reproducibility_rate=deterministic / total * 100,
        avg_rating=sum(s.rating.stars if s.rating else 0 for s in completed) / total,
    )


def recommend_model(
    sessions: Iterable[SessionRecord], default: str | None = None,
) -> ModelRecommendation:
    """Pick the model with the best weighted score over completed sessions.

    Weights: accuracy (average stars) 50%, cost 25%, speed 25%.
    """
    stats: dict[str, dict[str, float]] = {}
    for s in sessions:
        if s.status != SessionStatus.COMPLETED:
            continue
        entry = stats.setdefault(s.model, {"count": 0, "cost": 0.0, "latency": 0.0, "stars": 0.0})
        entry["count"] += 1
        entry["cost"] += s.cost or 0
        entry["latency"] += s.latency or 0
        entry["stars"] += s.rating.stars if s.rating else 0

    best_model = default or settings.llm_default_model
    best_score = 0.0
    best_reason = "No completed sessions yet"

    for model, entry in stats.items():
        avg_cost = entry["cost"] / entry["count"]
        avg_latency = entry["latency"] / entry["count"]
        avg_stars = entry["stars"] / entry["count"]

        accuracy_score = avg_stars / 5 * 100
        cost_score = max(0.0, 100 - avg_cost * 10000)
        speed_score = max(0.0, 100 - avg_latency / 50)
        total = accuracy_score * 0.5 + cost_score * 0.25 + speed_score * 0.25

        if total > best_score:
            best_score = total
            best_model = model
            if avg_cost < 0.0002 and avg_stars >= 4:
                best_reason = "Best balance of accuracy and cost-efficiency"
            elif avg_stars >= 4.5:
                best_reason = "Highest accuracy for critical applications"
            elif avg_cost < 0.0001:
                best_reason = "Most cost-effective for high-volume usage"
            elif avg_latency < 1000:
                best_reason = "Fastest response times for real-time applications"
            else:
                best_reason = "Optimal balance across all metrics"

    return ModelRecommendation(model=best_model, reason=best_reason, score=int(_round_half_up(best_score)))
