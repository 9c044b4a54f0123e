"""
Distribution ledger - append-only audit trail of reward movements.
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum

from sqlalchemy import (
    BigInteger, DateTime, ForeignKey, Integer, String, Index,
    UniqueConstraint, Enum as SQLEnum
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .base import BaseModel, utcnow


class DistributionEventType(Enum):
    """Kind of ledger entry."""
    DISTRIBUTED = "distributed"
    CLAIMED = "claimed"
    WITHDRAWN = "withdrawn"


class DistributionLog(BaseModel):
    """One row per on-chain distribution occurrence. Immutable."""

    __tablename__ = "distribution_logs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    poll_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("polls.id", ondelete="CASCADE"),
        comment="Projected poll row"
    )

    recipient: Mapped[str] = mapped_column(
        String(42),
        comment="Recipient / claimer address (lower-case)"
    )

    # Stored as text: uint256 amounts overflow every native integer column
    amount: Mapped[str] = mapped_column(
        String(78),
        comment="Raw token amount as a decimal string"
    )

    token: Mapped[str] = mapped_column(
        String(42),
        comment="Token address, zero address for native ETH"
    )

    tx_hash: Mapped[str] = mapped_column(
        String(66),
        comment="Transaction hash"
    )

    log_index: Mapped[int] = mapped_column(
        Integer,
        comment="Log index within the block"
    )

    block_number: Mapped[int] = mapped_column(
        BigInteger,
        comment="Block number"
    )

    event_type: Mapped[DistributionEventType] = mapped_column(
        SQLEnum(DistributionEventType, values_callable=lambda e: [m.value for m in e]),
        comment="distributed, claimed or withdrawn"
    )

    timestamp: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        comment="On-chain timestamp when the event carries one"
    )

    poll: Mapped["Poll"] = relationship("Poll", back_populates="distribution_logs")

    __table_args__ = (
        UniqueConstraint("tx_hash", "log_index", name="uq_distribution_logs_tx_log"),
        Index("idx_distribution_logs_poll_id", "poll_id"),
        Index("idx_distribution_logs_recipient", "recipient"),
        Index("idx_distribution_logs_event_type", "event_type"),
        Index("idx_distribution_logs_timestamp", "timestamp"),
    )

    def __repr__(self) -> str:
        return f"<DistributionLog(poll={self.poll_id}, type={self.event_type.value}, amount={self.amount})>"

    @property
    def amount_decimal(self) -> Decimal:
        return Decimal(self.amount)
