"""
Event handlers for poll lifecycle events.
"""

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from basepulse.models.poll import DistributionMode
from basepulse.services.event_decoder import DistributionModeSet, PollCreated, PollFunded
from basepulse.services.projection_store import ProjectionStore


logger = structlog.get_logger(__name__)


class PollHandlers:
    """
    Handles PollCreated, PollFunded and DistributionModeSet.
    """

    def __init__(self, stats, store: ProjectionStore):
        self.stats = stats
        self.store = store
        self.logger = logger.bind(service="poll_handlers")

    async def handle_poll_created(self, db: AsyncSession, event: PollCreated):
        """Record the poll; credit the creator only when the row is new."""
        try:
            created = await self.store.try_insert_poll(
                db,
                chain_id=event.meta.chain_id,
                poll_id=event.poll_id,
                creator=event.creator,
                block_number=event.meta.block_number,
                tx_hash=event.meta.tx_hash
            )

            if not created:
                self.stats.duplicates_skipped += 1
                self.logger.debug(
                    "Poll already projected",
                    chain_id=event.meta.chain_id,
                    poll_id=event.poll_id
                )
                return

            await self.store.bump_leaderboard(db, event.creator, polls_created=1)
            self.stats.polls_created += 1

            self.logger.info(
                "Poll created",
                chain_id=event.meta.chain_id,
                poll_id=event.poll_id,
                creator=event.creator,
                block_number=event.meta.block_number
            )

        except Exception as e:
            self.logger.error("Failed to handle PollCreated event", poll_id=event.poll_id, error=str(e))
            raise

    async def handle_poll_funded(self, db: AsyncSession, event: PollFunded):
        # Funding has no projection of its own
        self.stats.polls_funded += 1
        self.logger.info(
            "Poll funded",
            chain_id=event.meta.chain_id,
            poll_id=event.poll_id,
            funder=event.funder,
            token=event.token,
            amount=str(event.amount)
        )

    async def handle_distribution_mode_set(self, db: AsyncSession, event: DistributionModeSet):
        """Overwrite the poll's distribution mode."""
        try:
            updated = await self.store.set_distribution_mode(
                db,
                chain_id=event.meta.chain_id,
                poll_id=event.poll_id,
                mode=DistributionMode(event.mode)
            )

            if not updated:
                self.stats.events_skipped += 1
                self.logger.warning(
                    "Distribution mode set for unknown poll, skipping",
                    chain_id=event.meta.chain_id,
                    poll_id=event.poll_id,
                    mode=event.mode
                )
                return

            self.stats.modes_set += 1
            self.logger.info(
                "Distribution mode set",
                chain_id=event.meta.chain_id,
                poll_id=event.poll_id,
                mode=event.mode
            )

        except Exception as e:
            self.logger.error("Failed to handle DistributionModeSet event", poll_id=event.poll_id, error=str(e))
            raise
