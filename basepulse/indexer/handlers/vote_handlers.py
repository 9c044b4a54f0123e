"""
Event handlers for votes.
"""

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from basepulse.services.event_decoder import Voted
from basepulse.services.projection_store import ProjectionStore


logger = structlog.get_logger(__name__)


class VoteHandlers:
    """
    Handles Voted events.
    """

    def __init__(self, stats, store: ProjectionStore):
        self.stats = stats
        self.store = store
        self.logger = logger.bind(service="vote_handlers")

    async def handle_voted(self, db: AsyncSession, event: Voted):
        """Count a vote once, and a poll once per voter."""
        try:
            chain_id = event.meta.chain_id

            recorded = await self.store.try_insert_vote(
                db,
                chain_id=chain_id,
                poll_id=event.poll_id,
                voter=event.voter,
                option_index=event.option_index,
                tx_hash=event.meta.tx_hash,
                log_index=event.meta.log_index,
                block_number=event.meta.block_number
            )

            if not recorded:
                self.stats.duplicates_skipped += 1
                self.logger.debug(
                    "Vote already counted",
                    tx_hash=event.meta.tx_hash,
                    log_index=event.meta.log_index
                )
                return

            deltas = {"total_votes": 1}
            votes_in_poll = await self.store.count_voter_votes(db, chain_id, event.poll_id, event.voter)
            if votes_in_poll == 1:
                deltas["polls_participated"] = 1

            await self.store.bump_leaderboard(db, event.voter, **deltas)
            self.stats.votes_recorded += 1

            self.logger.info(
                "Vote recorded",
                chain_id=chain_id,
                poll_id=event.poll_id,
                voter=event.voter,
                option_index=event.option_index,
                first_in_poll=votes_in_poll == 1
            )

        except Exception as e:
            self.logger.error("Failed to handle Voted event", poll_id=event.poll_id, error=str(e))
            raise
