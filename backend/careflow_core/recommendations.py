from __future__ import annotations

import hashlib
from dataclasses import dataclass
from typing import Any, Iterable, Mapping

from .catalog import Product
from .models import RecommendationCandidate


@dataclass(frozen=True)
class ScoringWeights:
    category_affinity: float = 0.4
    historical_acceptance: float = 0.3
    merchandising_priority: float = 0.2
    goal_match: float = 0.1

    def as_dict(self) -> dict[str, float]:
        return {
            "category_affinity": self.category_affinity,
            "historical_acceptance": self.historical_acceptance,
            "merchandising_priority": self.merchandising_priority,
            "goal_match": self.goal_match,
        }


def candidate_id_for(scope_id: str, product_id: str) -> str:
    digest = hashlib.sha1(f"{scope_id}:{product_id}".encode("utf-8")).hexdigest()[:20]
    return f"rec_{digest}"


def _clamp(value: float) -> float:
    return max(0.0, min(1.0, value))


def _profile_goals(profile: Mapping[str, Any]) -> set[str]:
    goals = profile.get("goals")
    if isinstance(goals, str):
        goals = [goals]
    if not isinstance(goals, (list, tuple, set)):
        return set()
    return {str(goal).strip().lower() for goal in goals if str(goal).strip()}


class RecommendationEngine:
    """Deterministic weighted scoring over a pre-loaded catalog snapshot."""

    MAX_MERCHANDISING_PRIORITY = 10

    def __init__(self, weights: ScoringWeights | None = None) -> None:
        self.weights = weights or ScoringWeights()

    def factors(self, product: Product, category_id: str, profile: Mapping[str, Any]) -> dict[str, float]:
        if product.category_id == category_id:
            affinity = 1.0
        else:
            affinity = _clamp(product.cross_sell_affinity(category_id))

        segment = profile.get("segment")
        acceptance = _clamp(float(product.acceptance_rates.get(str(segment), 0.0))) if segment else 0.0

        merchandising = _clamp(product.merchandising_priority / self.MAX_MERCHANDISING_PRIORITY)

        goals = _profile_goals(profile)
        goal_match = len(goals & set(product.tags)) / len(goals) if goals else 0.0

        return {
            "category_affinity": affinity,
            "historical_acceptance": acceptance,
            "merchandising_priority": merchandising,
            "goal_match": goal_match,
        }

    def score(self, factors: Mapping[str, float]) -> tuple[float, tuple[str, ...]]:
        weights = self.weights.as_dict()
        total_weight = sum(weights.values())
        if total_weight <= 0:
            return 0.0, ()
        contributions = {name: weights[name] * factors.get(name, 0.0) for name in weights}
        score = round(_clamp(sum(contributions.values()) / total_weight), 4)
        reason_codes = tuple(
            name
            for name, contribution in sorted(contributions.items(), key=lambda item: (-item[1], item[0]))
            if contribution > 0
        )
        return score, reason_codes

    def recommend(
        self,
        category_id: str,
        patient_profile: Mapping[str, Any] | None,
        catalog_snapshot: Iterable[Product],
        max_results: int,
        *,
        flow_id: str | None = None,
        presented_at: str | None = None,
        exclude_product_ids: Iterable[str] = (),
    ) -> list[RecommendationCandidate]:
        if max_results <= 0:
            return []
        profile = patient_profile or {}
        excluded = set(exclude_product_ids)
        scored: list[tuple[float, str, tuple[str, ...]]] = []
        for product in catalog_snapshot:
            if not product.active or product.product_id in excluded:
                continue
            if product.category_id != category_id and product.cross_sell_affinity(category_id) <= 0:
                continue
            score, reason_codes = self.score(self.factors(product, category_id, profile))
            scored.append((score, product.product_id, reason_codes))

        scored.sort(key=lambda item: (-item[0], item[1]))
        scope_id = flow_id or category_id
        return [
            RecommendationCandidate(
                candidate_id=candidate_id_for(scope_id, product_id),
                flow_id=flow_id,
                product_id=product_id,
                score=score,
                reason_codes=reason_codes,
                presented_at=presented_at,
                rank=rank,
            )
            for rank, (score, product_id, reason_codes) in enumerate(scored[:max_results], start=1)
        ]
