"""
Unit tests for TierAssigner module.

Run with: pytest tests/unit/test_tier_assigner.py -v
"""

import pytest
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from reposcout.tiering.assigner import (
    TierAssigner,
    TierConfig,
    TierPolicy,
    cadence,
    classify,
    next_due,
    priority,
    rank_percentile,
)


NOW = datetime(2025, 1, 15, 12, 0, tzinfo=timezone.utc)


@dataclass
class Item:
    item_id: str
    stars: int
    growth_velocity: float
    engagement_score: float = 0.0


class TestClassify:
    """Test suite for the threshold policy"""

    def test_tier1_needs_stars_and_growth(self):
        """Test tier 1 requires both thresholds"""
        assert classify(100, 10.5) == 1
        assert classify(100, 10.0) == 2  # growth must be strictly greater
        assert classify(99, 50.0) == 2

    def test_tier2_needs_either(self):
        """Test tier 2 takes stars or growth"""
        assert classify(50, 0.0) == 2
        assert classify(5, 5.5) == 2

    def test_tier3_otherwise(self):
        """Test small, slow items land in tier 3"""
        assert classify(49, 5.0) == 3
        assert classify(0, 0.0) == 3

    def test_custom_thresholds(self):
        """Test thresholds come from config"""
        config = TierConfig(tier1_min_stars=10, tier1_min_growth=1.0)

        assert classify(10, 1.5, config) == 1

    def test_is_pure(self):
        """Test repeated calls give identical results"""
        results = {classify(120, 11.0) for _ in range(100)}

        assert results == {1}


class TestRankPercentile:
    """Test suite for the percentile policy"""

    def test_tier_sizes_for_twenty_items(self):
        """Test 15% / 50% cuts on a population of 20"""
        items = [Item(f"repo-{i:02d}", stars=i * 10, growth_velocity=0.0) for i in range(20)]

        assignments = rank_percentile(items)
        counts = {tier: list(assignments.values()).count(tier) for tier in (1, 2, 3)}

        assert counts == {1: 3, 2: 7, 3: 10}

    def test_tier_sizes_round_up(self):
        """Test cuts use ceil for populations that do not divide evenly"""
        items = [Item(f"repo-{i}", stars=i, growth_velocity=0.0) for i in range(7)]

        assignments = rank_percentile(items)
        counts = {tier: list(assignments.values()).count(tier) for tier in (1, 2, 3)}

        # ceil(1.05) = 2 in tier 1, ceil(3.5) = 4 cumulative
        assert counts == {1: 2, 2: 2, 3: 3}

    def test_every_item_assigned_once(self):
        """Test the mapping covers each item exactly once"""
        items = [Item(f"repo-{i}", stars=100 - i, growth_velocity=i / 10) for i in range(33)]

        assignments = rank_percentile(items)

        assert set(assignments) == {item.item_id for item in items}

    def test_highest_scores_in_tier1(self):
        """Test ranking uses stars*0.7 + growth*100"""
        items = [
            Item("stars-only", stars=1000, growth_velocity=0.0),    # 700
            Item("fast-growth", stars=10, growth_velocity=8.0),      # 807
            Item("small", stars=5, growth_velocity=0.1),             # 13.5
        ]

        assignments = rank_percentile(items)

        assert assignments["fast-growth"] == 1
        assert assignments["stars-only"] == 2
        assert assignments["small"] == 3

    def test_ties_broken_by_item_id(self):
        """Test equal scores are ordered by item id"""
        items = [Item(name, stars=10, growth_velocity=0.0) for name in ("c", "a", "b")]

        assignments = rank_percentile(items)

        assert assignments["a"] == 1

    def test_empty_population(self):
        """Test empty input gives an empty mapping"""
        assert rank_percentile([]) == {}


class TestPriority:
    """Test suite for scan priority"""

    def test_formula(self):
        """Test gv*0.5 + es*0.3 + log10(stars+1)*0.2, rounded"""
        # 10*0.5 + 20*0.3 + log10(1000)*0.2 = 5 + 6 + 0.6 = 11.6
        assert priority(10.0, 20.0, 999) == 12

    def test_half_rounds_up(self):
        """Test an exact half rounds up"""
        # 1*0.5 + 0 + log10(1)*0.2 = 0.5
        assert priority(1.0, 0.0, 0) == 1

    def test_zero_inputs(self):
        """Test a brand new empty repository has priority 0"""
        assert priority(0.0, 0.0, 0) == 0


class TestNextDue:
    """Test suite for cadence scheduling"""

    def test_default_cadences(self):
        """Test 6h / 24h / 168h defaults"""
        assert cadence(1) == timedelta(hours=6)
        assert cadence(2) == timedelta(hours=24)
        assert cadence(3) == timedelta(hours=168)

    def test_next_due_strictly_after_now(self):
        """Test next_due is always later than now"""
        for tier in (1, 2, 3):
            assert next_due(tier, NOW) > NOW

    def test_unknown_tier(self):
        """Test an unknown tier is rejected"""
        with pytest.raises(ValueError):
            cadence(4)

    def test_invalid_cadence_config(self):
        """Test non-positive cadences are rejected at config time"""
        with pytest.raises(ValueError):
            TierConfig(cadence_hours={1: 6.0, 2: 0.0, 3: 168.0})


class TestTierAssigner:
    """Test suite for TierAssigner facade"""

    def test_assign_new_item_due_now(self):
        """Test a new record is due immediately"""
        assigner = TierAssigner()
        item = Item("owner/repo", stars=150, growth_velocity=12.0, engagement_score=40.0)

        record = assigner.assign(item, NOW)

        assert record.tier == 1
        assert record.next_scan_due == NOW
        assert record.scan_priority == priority(12.0, 40.0, 150)
        assert record.last_deep_scan is None

    def test_uses_percentile_only_for_large_populations(self):
        """Test the cold-start fallback to thresholds"""
        assigner = TierAssigner(TierConfig(min_population_for_percentile=20))

        assert assigner.uses_percentile(19) is False
        assert assigner.uses_percentile(20) is True

    def test_threshold_policy_never_uses_percentile(self):
        """Test an explicit threshold policy ignores population size"""
        assigner = TierAssigner(TierConfig(policy=TierPolicy.THRESHOLD))

        assert assigner.uses_percentile(10_000) is False


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
