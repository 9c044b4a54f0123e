"""
Core types for event indexing.
"""

from datetime import datetime
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional


class IndexerStatus(Enum):
    """Lifecycle state of one chain's sync loop."""
    UNINITIALIZED = "uninitialized"
    BACKFILLING = "backfilling"
    LIVE = "live"
    RECONNECTING = "reconnecting"
    STOPPED = "stopped"
    ERROR = "error"


@dataclass
class ProcessingStats:
    """Statistics for event processing."""
    events_processed: int = 0
    polls_created: int = 0
    polls_funded: int = 0
    votes_recorded: int = 0
    modes_set: int = 0
    rewards_distributed: int = 0
    rewards_claimed: int = 0
    funds_withdrawn: int = 0
    duplicates_skipped: int = 0
    events_skipped: int = 0
    decode_errors: int = 0
    errors: int = 0
    blocks_applied: int = 0
    blocks_failed: int = 0
    reconnects: int = 0
    last_processed_block: Optional[int] = None
    start_time: Optional[datetime] = None


@dataclass
class BlockResult:
    """Outcome of applying one block's events."""
    block_number: int
    applied: int = 0
    failed: List[int] = field(default_factory=list)
    advanced_to: Optional[int] = None

    @property
    def ok(self) -> bool:
        return not self.failed
