"""
Event handlers for reward distribution, claims and withdrawals.
"""

from datetime import datetime
from decimal import Decimal
from typing import Optional

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from basepulse.models.distribution import DistributionEventType
from basepulse.services.event_decoder import (
    EventMeta,
    FundsWithdrawn,
    RewardClaimed,
    RewardDistributed,
)
from basepulse.services.projection_store import ProjectionStore


logger = structlog.get_logger(__name__)


class DistributionHandlers:
    """
    Handles ledger events.

    Every event appends one ``distribution_logs`` row keyed by
    (tx_hash, log_index). Rewards credit the leaderboard only when that
    row is new; withdrawals never do.
    """

    def __init__(self, stats, store: ProjectionStore):
        self.stats = stats
        self.store = store
        self.logger = logger.bind(service="distribution_handlers")

    async def _record(
        self,
        db: AsyncSession,
        meta: EventMeta,
        poll_id: int,
        address: str,
        amount: int,
        token: str,
        event_type: DistributionEventType,
        timestamp: Optional[datetime]
    ) -> Optional[bool]:
        """Append a ledger row. None when the poll is unknown, else whether the row is new."""
        poll_pk = await self.store.get_poll_pk(db, meta.chain_id, poll_id)
        if poll_pk is None:
            self.stats.events_skipped += 1
            self.logger.warning(
                "Ledger event for unknown poll, skipping",
                chain_id=meta.chain_id,
                poll_id=poll_id,
                event_type=event_type.value,
                tx_hash=meta.tx_hash
            )
            return None

        inserted = await self.store.try_insert_distribution_log(
            db,
            poll_pk=poll_pk,
            recipient=address,
            amount=amount,
            token=token,
            tx_hash=meta.tx_hash,
            log_index=meta.log_index,
            block_number=meta.block_number,
            event_type=event_type,
            timestamp=timestamp
        )
        if not inserted:
            self.stats.duplicates_skipped += 1
            self.logger.debug(
                "Ledger row already present",
                tx_hash=meta.tx_hash,
                log_index=meta.log_index
            )
        return inserted

    async def handle_reward_distributed(self, db: AsyncSession, event: RewardDistributed):
        try:
            inserted = await self._record(
                db, event.meta, event.poll_id, event.recipient, event.amount,
                event.token, DistributionEventType.DISTRIBUTED, event.timestamp
            )
            if not inserted:
                return

            await self.store.bump_leaderboard(db, event.recipient, total_rewards=Decimal(event.amount))
            self.stats.rewards_distributed += 1

            self.logger.info(
                "Reward distributed",
                chain_id=event.meta.chain_id,
                poll_id=event.poll_id,
                recipient=event.recipient,
                amount=str(event.amount),
                token=event.token
            )

        except Exception as e:
            self.logger.error("Failed to handle RewardDistributed event", poll_id=event.poll_id, error=str(e))
            raise

    async def handle_reward_claimed(self, db: AsyncSession, event: RewardClaimed):
        try:
            inserted = await self._record(
                db, event.meta, event.poll_id, event.claimer, event.amount,
                event.token, DistributionEventType.CLAIMED, event.timestamp
            )
            if not inserted:
                return

            await self.store.bump_leaderboard(db, event.claimer, total_rewards=Decimal(event.amount))
            self.stats.rewards_claimed += 1

            self.logger.info(
                "Reward claimed",
                chain_id=event.meta.chain_id,
                poll_id=event.poll_id,
                claimer=event.claimer,
                amount=str(event.amount),
                token=event.token
            )

        except Exception as e:
            self.logger.error("Failed to handle RewardClaimed event", poll_id=event.poll_id, error=str(e))
            raise

    async def handle_funds_withdrawn(self, db: AsyncSession, event: FundsWithdrawn):
        try:
            # No on-chain timestamp in this event; the ledger row gets wall-clock time
            inserted = await self._record(
                db, event.meta, event.poll_id, event.recipient, event.amount,
                event.token, DistributionEventType.WITHDRAWN, None
            )
            if not inserted:
                return

            self.stats.funds_withdrawn += 1
            self.logger.info(
                "Funds withdrawn",
                chain_id=event.meta.chain_id,
                poll_id=event.poll_id,
                recipient=event.recipient,
                amount=str(event.amount),
                token=event.token
            )

        except Exception as e:
            self.logger.error("Failed to handle FundsWithdrawn event", poll_id=event.poll_id, error=str(e))
            raise
