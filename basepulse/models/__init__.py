"""
Database models for the BasePulse indexer.

Contains SQLAlchemy models for the relational projection of
PollsContract events and the per-chain sync checkpoint.
"""

from .base import Base, BaseModel, TimestampMixin
from .checkpoint import Checkpoint
from .poll import Poll, DistributionMode
from .distribution import DistributionLog, DistributionEventType
from .vote import VoteRecord
from .leaderboard import LeaderboardEntry

__all__ = [
    "Base",
    "BaseModel",
    "TimestampMixin",
    "Checkpoint",
    "Poll",
    "DistributionMode",
    "DistributionLog",
    "DistributionEventType",
    "VoteRecord",
    "LeaderboardEntry",
]
