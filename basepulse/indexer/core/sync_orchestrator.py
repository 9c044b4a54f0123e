"""
Per-chain sync loop: checkpoint bootstrap, chunked backfill, live
subscription and reconnect catch-up.
"""

import asyncio
from dataclasses import asdict
from itertools import groupby
from typing import Any, Dict, List, Optional, Sequence, Tuple

import structlog
from sqlalchemy.exc import InterfaceError, OperationalError

from basepulse.core.config import ChainSettings, settings
from basepulse.core.database import get_async_session
from basepulse.core.exceptions import (
    ChainClientError,
    CheckpointRegressionError,
    DatabaseError,
    IndexerError,
    TransientRPCError,
)
from basepulse.indexer.checkpoint_store import CheckpointStore
from basepulse.models.base import utcnow
from basepulse.services.chain_client import BaseChainClient, LogFilter, LogSubscription, RawLog
from basepulse.services.event_decoder import EventDecoder, event_topics

from .event_processor import EventProcessor
from .types import IndexerStatus, ProcessingStats


logger = structlog.get_logger(__name__)

# Infrastructure failures that end the current pass; the next pass resumes at checkpoint+1
RETRYABLE_ERRORS = (ChainClientError, DatabaseError, OperationalError, InterfaceError)


def chunk_ranges(start: int, end: int, size: int) -> List[Tuple[int, int]]:
    """Split [start, end] into consecutive inclusive ranges of at most ``size`` blocks."""
    if size < 1:
        raise ValueError("chunk size must be positive")
    ranges = []
    cursor = start
    while cursor <= end:
        upper = min(cursor + size - 1, end)
        ranges.append((cursor, upper))
        cursor = upper + 1
    return ranges


class SyncOrchestrator:
    """
    Drives one chain from its checkpoint to the head and keeps it there.

    States:
    - UNINITIALIZED: nothing loaded yet
    - BACKFILLING: scanning [checkpoint+1, head] in chunks
    - LIVE: consuming the log subscription
    - RECONNECTING: subscription lost, catching up before resubscribing
    - STOPPED: stop() was called and in-flight work drained
    - ERROR: checkpoint regression or another fatal condition

    The orchestrator owns its checkpoint row and its subscription handle.
    """

    def __init__(
        self,
        chain: ChainSettings,
        client: BaseChainClient,
        processor: Optional[EventProcessor] = None,
        checkpoints: Optional[CheckpointStore] = None,
        chunk_size: Optional[int] = None,
        prefetch: Optional[bool] = None,
        reconnect_delay: Optional[float] = None,
        max_backoff: Optional[float] = None
    ):
        self.chain = chain
        self.chain_id = chain.chain_id
        self.client = client
        self.logger = logger.bind(service="sync_orchestrator", chain_id=chain.chain_id)

        self.stats = processor.stats if processor else ProcessingStats()
        self.checkpoints = checkpoints or CheckpointStore()
        self.processor = processor or EventProcessor(self.stats, checkpoints=self.checkpoints)
        self.decoder = EventDecoder(chain.chain_id)
        self.log_filter = LogFilter(address=chain.contract_address, topics=tuple(event_topics()))

        self.chunk_size = chunk_size or settings.backfill_chunk_size
        self.prefetch = settings.backfill_prefetch if prefetch is None else prefetch
        self.reconnect_delay = settings.reconnect_delay if reconnect_delay is None else reconnect_delay
        self.max_backoff = settings.rpc_max_backoff if max_backoff is None else max_backoff

        self.status = IndexerStatus.UNINITIALIZED
        self.checkpoint: Optional[int] = None
        self.last_seen_head: Optional[int] = None
        self.last_error: Optional[str] = None

        # Lowest block that failed during the current pass
        self._held_at: Optional[int] = None
        # Block of the last live log applied since the last catch-up
        self._live_block: Optional[int] = None

        self._subscription: Optional[LogSubscription] = None
        self._should_stop = False
        self._stop_event = asyncio.Event()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def run(self):
        """Bootstrap, backfill, then stay live until stopped."""
        self.stats.start_time = utcnow()
        self.logger.info("Starting sync", contract=self.chain.contract_address)

        try:
            await self.initialize()
            if not self._should_stop:
                await self.backfill()
            if not self._should_stop:
                await self._run_live()

        except CheckpointRegressionError as e:
            self.status = IndexerStatus.ERROR
            self.last_error = e.message
            raise

        except Exception as e:
            self.status = IndexerStatus.ERROR
            self.last_error = str(e)
            self.logger.error("Sync loop failed", error=str(e), error_type=type(e).__name__)
            raise IndexerError(f"Sync loop for chain {self.chain_id} failed: {e}", {"chain_id": self.chain_id})

        finally:
            await self._close_subscription()

        self.status = IndexerStatus.STOPPED
        self.logger.info("Sync stopped", checkpoint=self.checkpoint)

    async def stop(self):
        """Ask the loop to stop. Blocks being applied finish first."""
        if self._should_stop:
            return
        self.logger.info("Stopping sync")
        self._should_stop = True
        self._stop_event.set()
        await self._close_subscription()
        if self.status in (IndexerStatus.UNINITIALIZED, IndexerStatus.BACKFILLING,
                           IndexerStatus.LIVE, IndexerStatus.RECONNECTING):
            self.status = IndexerStatus.STOPPED

    async def initialize(self) -> int:
        """Load the checkpoint, seeding it on first run."""
        async with get_async_session() as db:
            stored = await self.checkpoints.load(db, self.chain_id)

        if stored is None:
            if self.chain.start_block is not None:
                seed = max(self.chain.start_block - 1, 0)
            else:
                seed = await self.client.current_height()
            async with get_async_session() as db:
                stored = await self.checkpoints.initialize(db, self.chain_id, seed)

        self.checkpoint = stored
        self.logger.info("Checkpoint loaded", checkpoint=stored)
        return stored

    async def get_status(self) -> Dict[str, Any]:
        """Get current sync status and statistics."""
        return {
            "chain_id": self.chain_id,
            "status": self.status.value,
            "checkpoint": self.checkpoint,
            "last_seen_head": self.last_seen_head,
            "lag": (
                self.last_seen_head - self.checkpoint
                if self.last_seen_head is not None and self.checkpoint is not None else None
            ),
            "held_at": self._held_at,
            "last_error": self.last_error,
            "stats": asdict(self.stats),
        }

    # ------------------------------------------------------------------
    # Checkpoint bookkeeping
    # ------------------------------------------------------------------

    def _begin_pass(self):
        """A pass restarting at checkpoint+1 retries everything above it."""
        self._held_at = None
        self._live_block = None

    def _cap(self, height: int) -> int:
        if self._held_at is None:
            return height
        return min(height, self._held_at - 1)

    def _note_result(self, block_number: int, advanced_to: Optional[int], ok: bool):
        if advanced_to is not None:
            self.checkpoint = max(self.checkpoint or 0, advanced_to)
        if not ok and (self._held_at is None or block_number < self._held_at):
            self._held_at = block_number
            self.logger.warning(
                "Block failed, holding checkpoint below it",
                block_number=block_number,
                checkpoint=self.checkpoint
            )

    async def _advance(self, height: int):
        target = self._cap(height)
        if self.checkpoint is not None and target <= self.checkpoint:
            return
        if await self.processor.advance_checkpoint(self.chain_id, target):
            self.checkpoint = target

    async def _verify_checkpoint(self):
        async with get_async_session() as db:
            await self.checkpoints.verify(db, self.chain_id, self.checkpoint or 0)

    # ------------------------------------------------------------------
    # Range sync (backfill, catch-up, resync)
    # ------------------------------------------------------------------

    def _decode(self, logs: Sequence[RawLog]):
        events = self.decoder.decode_many(logs)
        self.stats.decode_errors += len(logs) - len(events)
        return events

    async def _apply_logs(self, logs: Sequence[RawLog], advance: bool):
        for block_number, block_logs in groupby(logs, key=lambda log: log.block_number):
            block_logs = list(block_logs)
            if advance and self.checkpoint is not None and block_number <= self.checkpoint:
                continue

            events = self._decode(block_logs)
            advance_to = self._cap(block_number) if advance else None
            if not events:
                if advance_to is not None:
                    await self._advance(advance_to)
                continue

            result = await self.processor.apply_block(self.chain_id, block_number, events, advance_to)
            if advance:
                self._note_result(block_number, result.advanced_to, result.ok)

    async def _sync_range(self, start: int, end: int, advance: bool) -> int:
        """
        Fetch and apply [start, end] chunk by chunk.

        With ``advance`` the checkpoint moves per block and at each chunk
        end. The next chunk is fetched while the current one is applied.
        Returns the number of chunks applied.
        """
        ranges = chunk_ranges(start, end, self.chunk_size)
        if not ranges:
            return 0

        applied = 0
        pending = asyncio.create_task(self.client.get_logs(*ranges[0], self.log_filter))
        try:
            for index, (chunk_start, chunk_end) in enumerate(ranges):
                logs = await pending
                pending = None

                if self.prefetch and index + 1 < len(ranges):
                    pending = asyncio.create_task(
                        self.client.get_logs(*ranges[index + 1], self.log_filter)
                    )

                await self._apply_logs(logs, advance)
                if advance:
                    await self._advance(chunk_end)
                applied += 1

                self.logger.info(
                    "Chunk applied",
                    from_block=chunk_start,
                    to_block=chunk_end,
                    logs=len(logs),
                    checkpoint=self.checkpoint
                )

                if self._should_stop:
                    break

                if pending is None and index + 1 < len(ranges):
                    pending = asyncio.create_task(
                        self.client.get_logs(*ranges[index + 1], self.log_filter)
                    )
        finally:
            if pending is not None and not pending.done():
                pending.cancel()
                try:
                    await pending
                except (asyncio.CancelledError, ChainClientError):
                    pass

        return applied

    async def _catch_up(self) -> int:
        """Bring the checkpoint to the current head. Returns the head."""
        await self._verify_checkpoint()
        head = await self.client.current_height()
        self.last_seen_head = head
        self._begin_pass()

        if self.checkpoint is not None and self.checkpoint < head:
            self.logger.info("Catching up", from_block=self.checkpoint + 1, to_block=head)
            await self._sync_range(self.checkpoint + 1, head, advance=True)
        return head

    async def backfill(self):
        """Backfill to the head seen at start, retrying after RPC failures."""
        self.status = IndexerStatus.BACKFILLING
        attempt = 0
        while not self._should_stop:
            try:
                head = await self._catch_up()
                self.logger.info("Backfill complete", head=head, checkpoint=self.checkpoint)
                return
            except RETRYABLE_ERRORS as e:
                attempt += 1
                self.stats.errors += 1
                await self._backoff(attempt, "Backfill interrupted, retrying from checkpoint", e)

    async def resync(self, from_block: int, to_block: Optional[int] = None) -> Dict[str, Any]:
        """
        Replay a block range through the handlers without touching the checkpoint.

        Safe to repeat: every handler is idempotent.
        """
        if to_block is None:
            to_block = await self.client.current_height()
        if from_block > to_block:
            raise ValueError(f"from_block {from_block} is above to_block {to_block}")

        self.logger.info("Resync requested", from_block=from_block, to_block=to_block)
        before = self.stats.events_processed
        failed_before = self.stats.blocks_failed
        chunks = await self._sync_range(from_block, to_block, advance=False)

        summary = {
            "chain_id": self.chain_id,
            "from_block": from_block,
            "to_block": to_block,
            "chunks": chunks,
            "events_applied": self.stats.events_processed - before,
            "blocks_failed": self.stats.blocks_failed - failed_before,
        }
        self.logger.info("Resync complete", **summary)
        return summary

    # ------------------------------------------------------------------
    # Live
    # ------------------------------------------------------------------

    async def _run_live(self):
        attempt = 0
        while not self._should_stop:
            try:
                self._subscription = await self.client.subscribe(self.log_filter)
                if self._should_stop:
                    break

                # Subscribed first so nothing lands between catch-up and the stream
                await self._catch_up()
                self.status = IndexerStatus.LIVE
                attempt = 0
                self.logger.info("Live", checkpoint=self.checkpoint)

                async for raw in self._subscription:
                    await self._handle_live_log(raw)
                    if self._should_stop:
                        break

                if self._should_stop:
                    break
                raise TransientRPCError("Log subscription ended unexpectedly")

            except RETRYABLE_ERRORS as e:
                await self._close_subscription()
                if self._should_stop:
                    break
                self.status = IndexerStatus.RECONNECTING
                self.stats.reconnects += 1
                attempt += 1
                await self._backoff(attempt, "Subscription lost, reconnecting", e)
                if self._should_stop:
                    break
                try:
                    await self._catch_up()
                except RETRYABLE_ERRORS as catch_up_error:
                    self.logger.warning("Catch-up before resubscribe failed", error=str(catch_up_error))

            finally:
                await self._close_subscription()

    async def _handle_live_log(self, raw: RawLog):
        if self.checkpoint is not None and raw.block_number <= self.checkpoint:
            self.stats.duplicates_skipped += 1
            self.logger.debug(
                "Discarding log at or below checkpoint",
                block_number=raw.block_number,
                checkpoint=self.checkpoint
            )
            return

        # Logs arrive ordered within a connection, so a later block means
        # every earlier block has been delivered in full
        advance_to = None
        if self._live_block is not None and raw.block_number > self._live_block:
            advance_to = self._cap(raw.block_number - 1)
        self._live_block = max(self._live_block or 0, raw.block_number)

        if self.last_seen_head is None or raw.block_number > self.last_seen_head:
            self.last_seen_head = raw.block_number

        events = self._decode([raw])
        if not events:
            if advance_to is not None:
                await self._advance(advance_to)
            return

        if advance_to is not None and self.checkpoint is not None and advance_to <= self.checkpoint:
            advance_to = None

        result = await self.processor.apply_block(self.chain_id, raw.block_number, events, advance_to)
        self._note_result(raw.block_number, result.advanced_to, result.ok)

    async def _close_subscription(self):
        subscription, self._subscription = self._subscription, None
        if subscription is not None and not subscription.closed:
            await subscription.close()

    async def _backoff(self, attempt: int, message: str, error: Exception):
        wait_time = min(self.reconnect_delay * (2 ** (attempt - 1)), self.max_backoff)
        self.logger.warning(
            message,
            attempt=attempt,
            wait_time=wait_time,
            error=str(error),
            error_type=type(error).__name__
        )
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=wait_time)
        except asyncio.TimeoutError:
            pass
