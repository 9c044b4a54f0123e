"""
Checkpoint model - last fully applied block per chain.
"""

from datetime import datetime

from sqlalchemy import BigInteger, DateTime, Integer
from sqlalchemy.orm import Mapped, mapped_column

from .base import BaseModel, TimestampMixin, utcnow


class Checkpoint(BaseModel, TimestampMixin):
    """Durable marker of the last block whose events are fully applied."""

    __tablename__ = "checkpoints"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    chain_id: Mapped[int] = mapped_column(
        BigInteger,
        unique=True,
        comment="EVM chain id"
    )

    last_block_number: Mapped[int] = mapped_column(
        BigInteger,
        comment="Last block whose mutations have committed"
    )

    last_processed_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        comment="When the checkpoint last moved"
    )

    def __repr__(self) -> str:
        return f"<Checkpoint(chain_id={self.chain_id}, block={self.last_block_number})>"
