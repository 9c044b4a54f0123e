"""
Read-side queries over the projection for downstream consumers.
"""

from decimal import Decimal
from typing import Any, Dict, List, Optional

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from basepulse.models.checkpoint import Checkpoint
from basepulse.models.distribution import DistributionEventType, DistributionLog
from basepulse.models.leaderboard import LeaderboardEntry
from basepulse.models.poll import Poll


RANKING_COLUMNS = {
    "rewards": LeaderboardEntry.total_rewards,
    "votes": LeaderboardEntry.total_votes,
    "polls_created": LeaderboardEntry.polls_created,
    "polls_participated": LeaderboardEntry.polls_participated,
}


def _entry_to_dict(entry: LeaderboardEntry, rank: Optional[int] = None) -> Dict[str, Any]:
    data = {
        "address": entry.address,
        "total_rewards": int(entry.total_rewards or 0),
        "total_votes": entry.total_votes,
        "polls_created": entry.polls_created,
        "polls_participated": entry.polls_participated,
        "last_updated": entry.last_updated,
    }
    if rank is not None:
        data["rank"] = rank
    return data


class ProjectionQueries:
    """Read-only access. Never writes."""

    async def get_poll(self, db: AsyncSession, chain_id: int, poll_id: int) -> Optional[Poll]:
        result = await db.execute(
            select(Poll).where(Poll.chain_id == chain_id, Poll.poll_id == Decimal(poll_id))
        )
        return result.scalar_one_or_none()

    async def get_distribution_logs(
        self,
        db: AsyncSession,
        chain_id: int,
        poll_id: int,
        event_type: Optional[DistributionEventType] = None
    ) -> List[DistributionLog]:
        """Ledger rows for a poll, in chain order."""
        query = (
            select(DistributionLog)
            .join(Poll, DistributionLog.poll_id == Poll.id)
            .where(Poll.chain_id == chain_id, Poll.poll_id == Decimal(poll_id))
        )
        if event_type is not None:
            query = query.where(DistributionLog.event_type == event_type)
        query = query.order_by(DistributionLog.block_number, DistributionLog.log_index)

        result = await db.execute(query)
        return list(result.scalars().all())

    async def get_leaderboard(
        self,
        db: AsyncSession,
        sort_by: str = "rewards",
        limit: int = 10,
        offset: int = 0
    ) -> List[Dict[str, Any]]:
        """
        Ranked leaderboard page.

        Args:
            sort_by: One of rewards, votes, polls_created, polls_participated
            limit: Page size
            offset: Entries to skip

        Returns:
            Entries as dicts with a 1-based ``rank``
        """
        column = RANKING_COLUMNS.get(sort_by)
        if column is None:
            raise ValueError(f"Unknown ranking {sort_by!r}, expected one of {sorted(RANKING_COLUMNS)}")

        result = await db.execute(
            select(LeaderboardEntry)
            .order_by(column.desc(), LeaderboardEntry.address)
            .limit(limit)
            .offset(offset)
        )
        return [
            _entry_to_dict(entry, rank=offset + position)
            for position, entry in enumerate(result.scalars().all(), start=1)
        ]

    async def get_address_stats(
        self,
        db: AsyncSession,
        address: str,
        sort_by: str = "rewards"
    ) -> Optional[Dict[str, Any]]:
        address = address.lower()
        column = RANKING_COLUMNS.get(sort_by)
        if column is None:
            raise ValueError(f"Unknown ranking {sort_by!r}")

        result = await db.execute(
            select(LeaderboardEntry).where(LeaderboardEntry.address == address)
        )
        entry = result.scalar_one_or_none()
        if entry is None:
            return None

        own_value = getattr(entry, column.key)
        ahead = await db.execute(
            select(func.count(LeaderboardEntry.id)).where(column > own_value)
        )
        return _entry_to_dict(entry, rank=ahead.scalar_one() + 1)

    async def get_global_stats(self, db: AsyncSession) -> Dict[str, Any]:
        totals = (await db.execute(
            select(
                func.count(LeaderboardEntry.id),
                func.coalesce(func.sum(LeaderboardEntry.total_rewards), 0),
                func.coalesce(func.sum(LeaderboardEntry.total_votes), 0),
            )
        )).one()

        polls = (await db.execute(select(func.count(Poll.id)))).scalar_one()
        ledger_rows = (await db.execute(select(func.count(DistributionLog.id)))).scalar_one()

        return {
            "total_polls": polls,
            "total_participants": totals[0],
            "total_rewards": int(Decimal(totals[1])),
            "total_votes": int(totals[2]),
            "total_distributions": ledger_rows,
        }

    async def get_checkpoints(self, db: AsyncSession) -> List[Dict[str, Any]]:
        """Sync freshness per chain."""
        result = await db.execute(select(Checkpoint).order_by(Checkpoint.chain_id))
        return [
            {
                "chain_id": cp.chain_id,
                "last_block_number": cp.last_block_number,
                "last_processed_at": cp.last_processed_at,
            }
            for cp in result.scalars().all()
        ]
