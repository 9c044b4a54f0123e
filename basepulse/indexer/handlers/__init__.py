"""
Event handlers for PollsContract events.
"""

from .poll_handlers import PollHandlers
from .vote_handlers import VoteHandlers
from .distribution_handlers import DistributionHandlers

__all__ = [
    "PollHandlers",
    "VoteHandlers",
    "DistributionHandlers",
]
