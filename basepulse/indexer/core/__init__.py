"""
Core indexer components.
"""

from .types import BlockResult, IndexerStatus, ProcessingStats
from .event_processor import EventProcessor
from .sync_orchestrator import SyncOrchestrator

__all__ = [
    "BlockResult",
    "IndexerStatus",
    "ProcessingStats",
    "EventProcessor",
    "SyncOrchestrator",
]
