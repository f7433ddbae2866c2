"""
Storage module - Persisted scheduler and orchestrator state.

- Store: async SQLite store (tiers, batches, batch items, analyses)
- Records: TierRecord, Batch, BatchItem and their enums
"""

from .records import (
    Batch,
    BatchItem,
    BatchStatus,
    ItemState,
    ScanType,
    TierRecord,
    utcnow,
)
from .store import Store


__all__ = [
    "Store",
    # Records
    "Batch",
    "BatchItem",
    "BatchStatus",
    "ItemState",
    "ScanType",
    "TierRecord",
    "utcnow",
]
