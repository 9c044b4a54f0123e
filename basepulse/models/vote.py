"""
Vote records - one row per Voted log, used to count each vote once.
"""

from decimal import Decimal

from sqlalchemy import BigInteger, Integer, Numeric, String, Index, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from .base import BaseModel, TimestampMixin


class VoteRecord(BaseModel, TimestampMixin):
    """Voted event already counted into the leaderboard."""

    __tablename__ = "vote_records"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    chain_id: Mapped[int] = mapped_column(BigInteger, comment="EVM chain id")

    poll_id: Mapped[Decimal] = mapped_column(Numeric(78, 0), comment="On-chain poll id")

    voter: Mapped[str] = mapped_column(String(42), comment="Voter address (lower-case)")

    option_index: Mapped[Decimal] = mapped_column(Numeric(78, 0), comment="Chosen option")

    tx_hash: Mapped[str] = mapped_column(String(66), comment="Transaction hash")

    log_index: Mapped[int] = mapped_column(Integer, comment="Log index within the block")

    block_number: Mapped[int] = mapped_column(BigInteger, comment="Block number")

    __table_args__ = (
        UniqueConstraint("tx_hash", "log_index", name="uq_vote_records_tx_log"),
        Index("idx_vote_records_poll_voter", "chain_id", "poll_id", "voter"),
    )

    def __repr__(self) -> str:
        return f"<VoteRecord(chain_id={self.chain_id}, poll_id={self.poll_id}, voter={self.voter})>"
