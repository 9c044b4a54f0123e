"""
Write-side primitives for the relational projection.

Every insert reports whether it created a row, so callers can gate
accumulator updates on "this event is new".
"""

from datetime import datetime
from decimal import Decimal
from typing import Optional, Union

import structlog
from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from basepulse.core.database import dialect_insert
from basepulse.models.base import utcnow
from basepulse.models.distribution import DistributionEventType, DistributionLog
from basepulse.models.leaderboard import LeaderboardEntry
from basepulse.models.poll import DistributionMode, Poll
from basepulse.models.vote import VoteRecord


logger = structlog.get_logger(__name__)

LEADERBOARD_COUNTERS = ("total_rewards", "polls_participated", "total_votes", "polls_created")


class ProjectionStore:
    """Idempotent writes used by the event handlers."""

    async def try_insert_poll(
        self,
        db: AsyncSession,
        chain_id: int,
        poll_id: int,
        creator: str,
        block_number: int,
        tx_hash: str
    ) -> bool:
        now = utcnow()
        stmt = dialect_insert(db, Poll).values(
            chain_id=chain_id,
            poll_id=Decimal(poll_id),
            distribution_mode=DistributionMode.MANUAL_PULL,
            creator=creator,
            created_block=block_number,
            created_tx_hash=tx_hash,
            created_at=now,
            updated_at=now,
        ).on_conflict_do_nothing(index_elements=["chain_id", "poll_id"]).returning(Poll.id)
        return (await db.execute(stmt)).scalar_one_or_none() is not None

    async def get_poll_pk(self, db: AsyncSession, chain_id: int, poll_id: int) -> Optional[int]:
        result = await db.execute(
            select(Poll.id).where(Poll.chain_id == chain_id, Poll.poll_id == Decimal(poll_id))
        )
        return result.scalar_one_or_none()

    async def set_distribution_mode(
        self,
        db: AsyncSession,
        chain_id: int,
        poll_id: int,
        mode: DistributionMode
    ) -> bool:
        """Overwrite a poll's mode. Returns False when the poll is unknown."""
        result = await db.execute(
            update(Poll)
            .where(Poll.chain_id == chain_id, Poll.poll_id == Decimal(poll_id))
            .values(distribution_mode=mode, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        return result.rowcount > 0

    async def try_insert_distribution_log(
        self,
        db: AsyncSession,
        poll_pk: int,
        recipient: str,
        amount: int,
        token: str,
        tx_hash: str,
        log_index: int,
        block_number: int,
        event_type: DistributionEventType,
        timestamp: Optional[datetime] = None
    ) -> bool:
        stmt = dialect_insert(db, DistributionLog).values(
            poll_id=poll_pk,
            recipient=recipient,
            amount=str(amount),
            token=token,
            tx_hash=tx_hash,
            log_index=log_index,
            block_number=block_number,
            event_type=event_type,
            timestamp=timestamp or utcnow(),
        ).on_conflict_do_nothing(index_elements=["tx_hash", "log_index"]).returning(DistributionLog.id)
        return (await db.execute(stmt)).scalar_one_or_none() is not None

    async def try_insert_vote(
        self,
        db: AsyncSession,
        chain_id: int,
        poll_id: int,
        voter: str,
        option_index: int,
        tx_hash: str,
        log_index: int,
        block_number: int
    ) -> bool:
        now = utcnow()
        stmt = dialect_insert(db, VoteRecord).values(
            chain_id=chain_id,
            poll_id=Decimal(poll_id),
            voter=voter,
            option_index=Decimal(option_index),
            tx_hash=tx_hash,
            log_index=log_index,
            block_number=block_number,
            created_at=now,
            updated_at=now,
        ).on_conflict_do_nothing(index_elements=["tx_hash", "log_index"]).returning(VoteRecord.id)
        return (await db.execute(stmt)).scalar_one_or_none() is not None

    async def count_voter_votes(self, db: AsyncSession, chain_id: int, poll_id: int, voter: str) -> int:
        result = await db.execute(
            select(func.count(VoteRecord.id)).where(
                VoteRecord.chain_id == chain_id,
                VoteRecord.poll_id == Decimal(poll_id),
                VoteRecord.voter == voter
            )
        )
        return result.scalar_one()

    async def bump_leaderboard(
        self,
        db: AsyncSession,
        address: str,
        **deltas: Union[int, Decimal]
    ) -> None:
        """
        Add deltas to an address's counters, creating the row on first touch.

        Args:
            address: Participant address (lower-case)
            **deltas: Counter name to increment, e.g. ``total_votes=1``
        """
        unknown = set(deltas) - set(LEADERBOARD_COUNTERS)
        if unknown:
            raise ValueError(f"Unknown leaderboard counters: {sorted(unknown)}")
        if not deltas:
            return

        now = utcnow()
        await db.execute(
            dialect_insert(db, LeaderboardEntry).values(
                address=address,
                total_rewards=Decimal(0),
                polls_participated=0,
                total_votes=0,
                polls_created=0,
                last_updated=now,
            ).on_conflict_do_nothing(index_elements=["address"])
        )

        values = {
            name: getattr(LeaderboardEntry, name) + delta
            for name, delta in deltas.items()
        }
        values["last_updated"] = now
        await db.execute(
            update(LeaderboardEntry)
            .where(LeaderboardEntry.address == address)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
