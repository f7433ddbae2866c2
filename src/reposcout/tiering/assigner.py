"""
Tier Assigner - Tier, scan priority and next-due time for catalog items.

Everything here is pure and deterministic given its inputs. Two tiering
policies are supported:

- threshold: fixed star/growth cut-offs, computable per item
- percentile: rank the whole population by a composite score and cut it
  at 15% / 50%; needs a full-population pass (see ScanScheduler.rebalance)

New items are always placed with the threshold rule; under the percentile
policy the next rebalance pass moves them to their ranked tier.
"""

import math
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Dict, Iterable, Optional, Protocol

from ..storage.records import TierRecord


TIERS = (1, 2, 3)


class TierPolicy(Enum):
    """How tiers are assigned"""
    THRESHOLD = "threshold"
    PERCENTILE = "percentile"


class RankedItem(Protocol):
    """Anything carrying the metrics needed to rank it"""
    item_id: str
    stars: int
    growth_velocity: float


class ScoredItem(RankedItem, Protocol):
    engagement_score: float


@dataclass
class TierConfig:
    """Configuration for tier assignment"""
    policy: TierPolicy = TierPolicy.PERCENTILE

    # Threshold policy
    tier1_min_stars: int = 100
    tier1_min_growth: float = 10.0  # Strictly greater than
    tier2_min_stars: int = 50
    tier2_min_growth: float = 5.0   # Strictly greater than

    # Percentile policy
    tier1_fraction: float = 0.15
    tier2_cumulative_fraction: float = 0.50
    min_population_for_percentile: int = 20  # Below this, thresholds are used

    # Re-scan cadence per tier (hours)
    cadence_hours: Dict[int, float] = field(
        default_factory=lambda: {1: 6.0, 2: 24.0, 3: 168.0}
    )

    def __post_init__(self):
        if not 0 < self.tier1_fraction <= self.tier2_cumulative_fraction <= 1:
            raise ValueError("require 0 < tier1_fraction <= tier2_cumulative_fraction <= 1")
        for tier in TIERS:
            if self.cadence_hours.get(tier, 0) <= 0:
                raise ValueError(f"cadence for tier {tier} must be positive")


def classify(stars: int, growth_velocity: float, config: Optional[TierConfig] = None) -> int:
    """
    Threshold policy for a single item.

    Tier 1 needs both many stars and fast growth; tier 2 needs either.
    """
    config = config or TierConfig()
    if stars >= config.tier1_min_stars and growth_velocity > config.tier1_min_growth:
        return 1
    if stars >= config.tier2_min_stars or growth_velocity > config.tier2_min_growth:
        return 2
    return 3


def composite_score(stars: int, growth_velocity: float) -> float:
    """Ranking score for the percentile policy"""
    return stars * 0.7 + growth_velocity * 100


def _cut(fraction: float, population: int) -> int:
    # round() first so that 0.15 * 20 == 3.0000000000000004 cuts at 3
    return math.ceil(round(fraction * population, 9))


def rank_percentile(items: Iterable[RankedItem], config: Optional[TierConfig] = None) -> Dict[str, int]:
    """
    Percentile policy over a whole population.

    Items are ranked by composite_score descending (ties by item_id). The
    first ceil(15% N) land in tier 1, up to ceil(50% N) cumulatively in
    tier 2, and the rest in tier 3.

    Returns:
        Mapping of item_id to tier covering every input item exactly once
    """
    config = config or TierConfig()
    ranked = sorted(
        items,
        key=lambda item: (-composite_score(item.stars, item.growth_velocity), item.item_id),
    )
    population = len(ranked)
    tier1_cut = _cut(config.tier1_fraction, population)
    tier2_cut = _cut(config.tier2_cumulative_fraction, population)

    assignments: Dict[str, int] = {}
    for index, item in enumerate(ranked):
        if index < tier1_cut:
            assignments[item.item_id] = 1
        elif index < tier2_cut:
            assignments[item.item_id] = 2
        else:
            assignments[item.item_id] = 3
    return assignments


def priority(growth_velocity: float, engagement_score: float, stars: int) -> int:
    """Urgency within a tier; higher is scanned first"""
    raw = growth_velocity * 0.5 + engagement_score * 0.3 + math.log10(max(stars, 0) + 1) * 0.2
    return math.floor(raw + 0.5)


def cadence(tier: int, config: Optional[TierConfig] = None) -> timedelta:
    config = config or TierConfig()
    if tier not in TIERS:
        raise ValueError(f"Unknown tier: {tier}")
    return timedelta(hours=config.cadence_hours[tier])


def next_due(tier: int, now: datetime, config: Optional[TierConfig] = None) -> datetime:
    """When an item scanned at now is due again"""
    return now + cadence(tier, config)


class TierAssigner:
    """
    Config-bound facade over the tiering functions.

    Example:
        >>> assigner = TierAssigner(TierConfig(policy=TierPolicy.THRESHOLD))
        >>> assigner.classify(stars=250, growth_velocity=12.0)
        1
        >>> record = assigner.assign(item, now=utcnow())
    """

    def __init__(self, config: Optional[TierConfig] = None):
        self.config = config or TierConfig()

    def classify(self, stars: int, growth_velocity: float) -> int:
        return classify(stars, growth_velocity, self.config)

    def rank(self, items: Iterable[RankedItem]) -> Dict[str, int]:
        return rank_percentile(items, self.config)

    def priority(self, growth_velocity: float, engagement_score: float, stars: int) -> int:
        return priority(growth_velocity, engagement_score, stars)

    def next_due(self, tier: int, now: datetime) -> datetime:
        return next_due(tier, now, self.config)

    def uses_percentile(self, population: int) -> bool:
        """Percentile ranking only once the population is large enough to rank"""
        return (
            self.config.policy is TierPolicy.PERCENTILE
            and population >= self.config.min_population_for_percentile
        )

    def assign(self, item: ScoredItem, now: datetime) -> TierRecord:
        """
        Build the first TierRecord for a newly discovered item.

        The record is due immediately so the next scheduler pass scans it.
        """
        return TierRecord(
            item_id=item.item_id,
            tier=self.classify(item.stars, item.growth_velocity),
            stars=item.stars,
            growth_velocity=item.growth_velocity,
            engagement_score=item.engagement_score,
            scan_priority=self.priority(item.growth_velocity, item.engagement_score, item.stars),
            next_scan_due=now,
        )
