"""
Weighted random selection of a card from a pack's candidate pool.

Two weighting models are supported behind one interface:

- inverse power over market value: ``w_i = 1 / max(v_i, 1) ** k``. Cheap
  cards dominate, expensive cards keep a small non-zero chance.
- tier table: each tier carries an explicit probability; a candidate gets
  its tier's probability split by its ``odds`` share inside the tier, and
  the drawn value is uniform in the tier's ``[min_value, max_value)``.

Sampling walks the cumulative distribution with ``r`` in ``[0, 1)`` and
returns the first candidate whose cumulative mass reaches ``r``. Float drift
that leaves the walk short of ``r`` returns the last candidate.
"""

import logging
import math
import random
from collections import defaultdict
from dataclasses import dataclass
from typing import Generic, Optional, Protocol, Sequence, TypeVar

from .models import CandidateProbability, DrawCandidate, SelectionResult, Tier, WeightingStrategy

logger = logging.getLogger(__name__)

T = TypeVar("T")

TIER_SUM_TOLERANCE = 0.01


class DrawError(Exception):
    code = "draw_error"


class InvalidPoolError(DrawError):
    code = "invalid_pool"


class EmptyPoolError(InvalidPoolError):
    code = "empty_pool"


@dataclass(frozen=True)
class Weighted(Generic[T]):
    item: T
    weight: float


def normalize(weights: Sequence[float]) -> list[float]:
    """Scale weights to probabilities summing to 1. Non-positive weights get 0."""
    if not weights:
        raise EmptyPoolError("Cannot normalize an empty pool")
    cleaned = []
    for w in weights:
        if w is None or math.isnan(w) or math.isinf(w):
            raise InvalidPoolError(f"Non-finite weight {w!r} in pool")
        cleaned.append(w if w > 0 else 0.0)
    total = math.fsum(cleaned)
    if total <= 0:
        raise InvalidPoolError("Pool has no positive weight")
    return [w / total for w in cleaned]


def select(candidates: Sequence[Weighted[T]], rng: random.Random) -> Weighted[T]:
    if not candidates:
        raise EmptyPoolError("Cannot select from an empty pool")
    probabilities = normalize([c.weight for c in candidates])

    r = rng.random()
    cumulative = 0.0
    last = None
    for candidate, p in zip(candidates, probabilities):
        if p <= 0:
            continue
        cumulative += p
        last = candidate
        if cumulative >= r:
            return candidate
    return last


class Weighting(Protocol):
    strategy: WeightingStrategy

    def weigh(self, pool: Sequence[DrawCandidate]) -> list[Weighted[DrawCandidate]]: ...

    def resolve(self, candidate: DrawCandidate, rng: random.Random) -> SelectionResult: ...


class InversePowerWeighting:
    strategy = WeightingStrategy.INVERSE_POWER

    def __init__(self, k: float = 1.1):
        self.k = k

    def weigh(self, pool: Sequence[DrawCandidate]) -> list[Weighted[DrawCandidate]]:
        return [Weighted(c, 1.0 / math.pow(max(c.market_value, 1), self.k)) for c in pool]

    def resolve(self, candidate: DrawCandidate, rng: random.Random) -> SelectionResult:
        return SelectionResult(candidate=candidate, market_value=candidate.market_value)


class TierTableWeighting:
    strategy = WeightingStrategy.TIER_TABLE

    def __init__(self, tiers: Sequence[Tier], max_value: int, tolerance: float = TIER_SUM_TOLERANCE):
        self.tiers = {t.id: t for t in tiers if t.probability > 0}
        self.max_value = max_value
        self.tolerance = tolerance

    def weigh(self, pool: Sequence[DrawCandidate]) -> list[Weighted[DrawCandidate]]:
        members: dict[str, list[DrawCandidate]] = defaultdict(list)
        for c in pool:
            if c.tier_id in self.tiers:
                members[c.tier_id].append(c)
        if not members:
            raise InvalidPoolError("No tier with a positive probability has candidates")

        total = math.fsum(self.tiers[tid].probability for tid in members)
        if abs(total - 1.0) > self.tolerance:
            logger.warning("tier_probabilities_renormalized sum=%.6f tiers=%s", total, sorted(members))

        weighted = []
        for c in pool:
            if c.tier_id not in members:
                continue
            tier_share = self.tiers[c.tier_id].probability / total
            odds_total = math.fsum(max(m.odds, 0.0) for m in members[c.tier_id])
            card_share = max(c.odds, 0.0) / odds_total if odds_total > 0 else 0.0
            weighted.append(Weighted(c, tier_share * card_share))
        return weighted

    def resolve(self, candidate: DrawCandidate, rng: random.Random) -> SelectionResult:
        tier = self.tiers[candidate.tier_id]
        if tier.max_value > tier.min_value:
            value = rng.randrange(tier.min_value, tier.max_value)
        else:
            value = tier.min_value
        value = max(1, min(value, self.max_value))
        return SelectionResult(candidate=candidate, market_value=value, tier=tier)


class WeightedSelector:
    def __init__(self, weighting: Weighting):
        self.weighting = weighting

    @property
    def strategy(self) -> WeightingStrategy:
        return self.weighting.strategy

    def probabilities(self, pool: Sequence[DrawCandidate]) -> list[CandidateProbability]:
        if not pool:
            raise EmptyPoolError("Cannot compute probabilities for an empty pool")
        weighted = self.weighting.weigh(pool)
        probs = normalize([w.weight for w in weighted])
        return [
            CandidateProbability(candidate=w.item, weight=w.weight, probability=p)
            for w, p in zip(weighted, probs)
        ]

    def select(self, pool: Sequence[DrawCandidate], rng: random.Random) -> SelectionResult:
        if not pool:
            raise EmptyPoolError("Cannot select from an empty pool")
        chosen = select(self.weighting.weigh(pool), rng)
        return self.weighting.resolve(chosen.item, rng)


def build_selector(
    strategy: WeightingStrategy,
    k: float = 1.1,
    tiers: Optional[Sequence[Tier]] = None,
    max_value: int = 50000,
) -> WeightedSelector:
    if strategy == WeightingStrategy.TIER_TABLE:
        return WeightedSelector(TierTableWeighting(tiers or [], max_value))
    return WeightedSelector(InversePowerWeighting(k))
