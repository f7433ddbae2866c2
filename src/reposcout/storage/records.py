"""
Records - Persisted state owned by the scheduler and the orchestrator.

TierRecord belongs to the scan scheduler; Batch and BatchItem belong to the
batch orchestrator. Nothing else mutates them.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional


def utcnow() -> datetime:
    """Timezone-aware UTC now"""
    return datetime.now(timezone.utc)


def to_iso(value: Optional[datetime]) -> Optional[str]:
    """Fixed-width ISO text so that stored timestamps sort lexically"""
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def from_iso(value: Optional[str]) -> Optional[datetime]:
    if value is None:
        return None
    return datetime.fromisoformat(value)


class BatchStatus(Enum):
    """Batch lifecycle; everything except RUNNING is terminal"""
    RUNNING = "running"
    STOPPED = "stopped"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self is not BatchStatus.RUNNING


class ItemState(Enum):
    """Per-item processing state inside a batch"""
    PENDING = "pending"
    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"


class ScanType(Enum):
    """Depth of a scheduler scan"""
    DEEP = "deep"
    BASIC = "basic"


@dataclass
class TierRecord:
    """Tier, urgency and schedule for one catalog item"""
    item_id: str
    tier: int
    stars: int
    growth_velocity: float
    engagement_score: float
    scan_priority: int
    next_scan_due: datetime
    last_deep_scan: Optional[datetime] = None
    last_basic_scan: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "item_id": self.item_id,
            "tier": self.tier,
            "stars": self.stars,
            "growth_velocity": self.growth_velocity,
            "engagement_score": self.engagement_score,
            "scan_priority": self.scan_priority,
            "last_deep_scan": to_iso(self.last_deep_scan),
            "last_basic_scan": to_iso(self.last_basic_scan),
            "next_scan_due": to_iso(self.next_scan_due),
        }


@dataclass
class Batch:
    """Aggregate state of one batch analysis run"""
    batch_id: str
    status: BatchStatus
    total: int
    completed_count: int = 0
    failed_count: int = 0
    created_at: datetime = field(default_factory=utcnow)
    finished_at: Optional[datetime] = None
    stop_reason: Optional[str] = None  # Set when a health limit ended the batch
    options: Dict[str, Any] = field(default_factory=dict)

    @property
    def pending_count(self) -> int:
        return self.total - self.completed_count - self.failed_count


@dataclass
class BatchItem:
    """One item's progress inside a batch"""
    batch_id: str
    item_id: str
    position: int
    state: ItemState = ItemState.PENDING
    attempts: int = 0
    error_kind: Optional[str] = None
    retryable: Optional[bool] = None
    error_message: Optional[str] = None
    duration_ms: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "item_id": self.item_id,
            "position": self.position,
            "state": self.state.value,
            "attempts": self.attempts,
            "error_kind": self.error_kind,
            "retryable": self.retryable,
            "error_message": self.error_message,
            "duration_ms": self.duration_ms,
        }
