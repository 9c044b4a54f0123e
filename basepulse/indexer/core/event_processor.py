"""
Applies decoded events to the projection, one block per transaction.
"""

from typing import Awaitable, Callable, Dict, Optional, Sequence

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from basepulse.core.database import get_async_session
from basepulse.core.exceptions import IndexerError
from basepulse.indexer.checkpoint_store import CheckpointStore
from basepulse.services.event_decoder import (
    EVENT_CLASSES,
    ContractEvent,
    DistributionModeSet,
    FundsWithdrawn,
    PollCreated,
    PollFunded,
    RewardClaimed,
    RewardDistributed,
    Voted,
)
from basepulse.services.projection_store import ProjectionStore

from .types import BlockResult, ProcessingStats
from ..handlers.distribution_handlers import DistributionHandlers
from ..handlers.poll_handlers import PollHandlers
from ..handlers.vote_handlers import VoteHandlers


logger = structlog.get_logger(__name__)

Handler = Callable[[AsyncSession, ContractEvent], Awaitable[None]]


class EventProcessor:
    """
    Sole writer of the projection.

    Events of one block run in a single transaction, each inside its own
    SAVEPOINT. A failing handler rolls back only its own changes and marks
    the block failed; the checkpoint then stops below that block.
    """

    def __init__(
        self,
        stats: Optional[ProcessingStats] = None,
        store: Optional[ProjectionStore] = None,
        checkpoints: Optional[CheckpointStore] = None
    ):
        self.logger = logger.bind(service="event_processor")
        self.stats = stats or ProcessingStats()
        self.store = store or ProjectionStore()
        self.checkpoints = checkpoints or CheckpointStore()

        self._poll_handlers = PollHandlers(self.stats, self.store)
        self._vote_handlers = VoteHandlers(self.stats, self.store)
        self._distribution_handlers = DistributionHandlers(self.stats, self.store)

        self._event_handlers: Dict[type, Handler] = {}
        self._setup_event_handlers()

    def _setup_event_handlers(self):
        """Map every event class to its handler; refuse to start with gaps."""
        self._event_handlers = {
            PollCreated: self._poll_handlers.handle_poll_created,
            PollFunded: self._poll_handlers.handle_poll_funded,
            DistributionModeSet: self._poll_handlers.handle_distribution_mode_set,
            Voted: self._vote_handlers.handle_voted,
            RewardDistributed: self._distribution_handlers.handle_reward_distributed,
            RewardClaimed: self._distribution_handlers.handle_reward_claimed,
            FundsWithdrawn: self._distribution_handlers.handle_funds_withdrawn,
        }

        missing = [cls.__name__ for cls in EVENT_CLASSES if cls not in self._event_handlers]
        if missing:
            raise IndexerError(
                f"No handler registered for: {', '.join(missing)}",
                {"missing": missing}
            )

    async def apply_block(
        self,
        chain_id: int,
        block_number: int,
        events: Sequence[ContractEvent],
        advance_to: Optional[int] = None
    ) -> BlockResult:
        """
        Apply one block's events in log-index order.

        Args:
            chain_id: Chain the events came from
            block_number: Block the events belong to
            events: Decoded events of that block
            advance_to: Checkpoint height to record in the same transaction,
                or None to leave the checkpoint alone (resync). When the
                block fails the height is capped below the block.

        Returns:
            BlockResult with applied / failed counts and the new checkpoint
        """
        result = BlockResult(block_number=block_number)
        ordered = sorted(events, key=lambda e: e.meta.position)

        async with get_async_session() as db:
            for event in ordered:
                handler = self._event_handlers[type(event)]
                try:
                    async with db.begin_nested():
                        await handler(db, event)
                    result.applied += 1
                    self.stats.events_processed += 1
                except Exception as e:
                    result.failed.append(event.meta.log_index)
                    self.stats.errors += 1
                    self.logger.error(
                        "Event handler failed, block will be retried",
                        chain_id=chain_id,
                        block_number=block_number,
                        log_index=event.meta.log_index,
                        event_type=type(event).__name__,
                        error=str(e),
                        error_type=type(e).__name__
                    )

            if advance_to is not None:
                target = advance_to if result.ok else min(advance_to, block_number - 1)
                if await self.checkpoints.advance(db, chain_id, target):
                    result.advanced_to = target

        if result.ok:
            self.stats.blocks_applied += 1
            self.stats.last_processed_block = block_number
        else:
            self.stats.blocks_failed += 1

        self.logger.debug(
            "Block applied",
            chain_id=chain_id,
            block_number=block_number,
            applied=result.applied,
            failed=len(result.failed),
            checkpoint=result.advanced_to
        )
        return result

    async def advance_checkpoint(self, chain_id: int, height: int) -> bool:
        """Advance the checkpoint on its own, e.g. across blocks with no events."""
        async with get_async_session() as db:
            return await self.checkpoints.advance(db, chain_id, height)
