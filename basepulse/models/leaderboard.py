"""
Leaderboard model - per-address aggregates folded from the event stream.
"""

from datetime import datetime
from decimal import Decimal

from sqlalchemy import DateTime, Integer, Numeric, String, Index
from sqlalchemy.orm import Mapped, mapped_column

from .base import BaseModel, utcnow


class LeaderboardEntry(BaseModel):
    """Aggregates for one address. Recomputable by replaying every event."""

    __tablename__ = "leaderboard"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    address: Mapped[str] = mapped_column(
        String(42),
        unique=True,
        comment="Participant address (lower-case)"
    )

    # NUMERIC(78, 0) holds any uint256 and keeps ranking numeric
    total_rewards: Mapped[Decimal] = mapped_column(
        Numeric(78, 0),
        default=Decimal(0),
        comment="Sum of distributed and claimed reward amounts"
    )

    polls_participated: Mapped[int] = mapped_column(
        Integer,
        default=0,
        comment="Distinct polls voted in"
    )

    total_votes: Mapped[int] = mapped_column(
        Integer,
        default=0,
        comment="Votes cast"
    )

    polls_created: Mapped[int] = mapped_column(
        Integer,
        default=0,
        comment="Polls created"
    )

    last_updated: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        comment="Last aggregate change"
    )

    __table_args__ = (
        Index("idx_leaderboard_total_rewards", "total_rewards"),
        Index("idx_leaderboard_total_votes", "total_votes"),
        Index("idx_leaderboard_polls_participated", "polls_participated"),
    )

    def __repr__(self) -> str:
        return f"<LeaderboardEntry(address={self.address}, rewards={self.total_rewards}, votes={self.total_votes})>"
