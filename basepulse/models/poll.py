"""
Poll model - projection of polls created on the PollsContract.
"""

from decimal import Decimal
from enum import Enum
from typing import List, Optional

from sqlalchemy import (
    BigInteger, Integer, Numeric, String, Index, UniqueConstraint, Enum as SQLEnum
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .base import BaseModel, TimestampMixin


class DistributionMode(Enum):
    """Reward distribution modes, in on-chain enum order."""
    MANUAL_PULL = "MANUAL_PULL"
    MANUAL_PUSH = "MANUAL_PUSH"
    AUTOMATED = "AUTOMATED"


class Poll(BaseModel, TimestampMixin):
    """Poll observed through a PollCreated event. Never deleted."""

    __tablename__ = "polls"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    chain_id: Mapped[int] = mapped_column(
        BigInteger,
        comment="EVM chain id"
    )

    # uint256 on chain; NUMERIC(78, 0) holds the full range
    poll_id: Mapped[Decimal] = mapped_column(
        Numeric(78, 0),
        comment="On-chain poll id"
    )

    distribution_mode: Mapped[DistributionMode] = mapped_column(
        SQLEnum(DistributionMode),
        default=DistributionMode.MANUAL_PULL,
        comment="Current reward distribution mode"
    )

    creator: Mapped[Optional[str]] = mapped_column(
        String(42),
        comment="Creator address (lower-case)"
    )

    created_block: Mapped[Optional[int]] = mapped_column(
        BigInteger,
        comment="Block of the PollCreated event"
    )

    created_tx_hash: Mapped[Optional[str]] = mapped_column(
        String(66),
        comment="Transaction of the PollCreated event"
    )

    distribution_logs: Mapped[List["DistributionLog"]] = relationship(
        "DistributionLog",
        back_populates="poll",
        cascade="all, delete-orphan"
    )

    __table_args__ = (
        UniqueConstraint("chain_id", "poll_id", name="uq_polls_chain_poll"),
        Index("idx_polls_chain_id", "chain_id"),
    )

    def __repr__(self) -> str:
        return f"<Poll(chain_id={self.chain_id}, poll_id={self.poll_id}, mode={self.distribution_mode.value})>"
