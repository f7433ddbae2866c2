"""
Tiering module - Tier assignment and budgeted scan scheduling.
"""

from .assigner import (
    TIERS,
    TierAssigner,
    TierConfig,
    TierPolicy,
    cadence,
    classify,
    next_due,
    priority,
    rank_percentile,
)
from .scheduler import ScanScheduler, SchedulerConfig, SchedulerResult


__all__ = [
    # Assignment
    "TIERS",
    "TierAssigner",
    "TierConfig",
    "TierPolicy",
    "cadence",
    "classify",
    "next_due",
    "priority",
    "rank_percentile",
    # Scheduling
    "ScanScheduler",
    "SchedulerConfig",
    "SchedulerResult",
]
