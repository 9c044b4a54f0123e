"""
Durable per-chain checkpoint: the last block whose mutations have committed.
"""

from typing import Optional

import structlog
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from basepulse.core.database import dialect_insert
from basepulse.core.exceptions import CheckpointRegressionError
from basepulse.models.base import utcnow
from basepulse.models.checkpoint import Checkpoint


logger = structlog.get_logger(__name__)


class CheckpointStore:
    """
    Reads and moves checkpoint rows.

    Every method takes the caller's session so that ``advance`` lands in the
    same transaction as the block it records.
    """

    async def load(self, db: AsyncSession, chain_id: int) -> Optional[int]:
        result = await db.execute(
            select(Checkpoint.last_block_number).where(Checkpoint.chain_id == chain_id)
        )
        return result.scalar_one_or_none()

    async def initialize(self, db: AsyncSession, chain_id: int, height: int) -> int:
        """Seed the checkpoint on first run. Returns the stored height."""
        stmt = dialect_insert(db, Checkpoint).values(
            chain_id=chain_id,
            last_block_number=height,
            last_processed_at=utcnow(),
            created_at=utcnow(),
            updated_at=utcnow(),
        ).on_conflict_do_nothing(index_elements=["chain_id"]).returning(Checkpoint.id)

        created = (await db.execute(stmt)).scalar_one_or_none() is not None
        stored = await self.load(db, chain_id)

        if created:
            logger.info("Checkpoint initialized", chain_id=chain_id, block_number=stored)
        else:
            logger.info("Checkpoint already present", chain_id=chain_id, block_number=stored)
        return stored

    async def advance(self, db: AsyncSession, chain_id: int, height: int) -> bool:
        """Move the checkpoint forward to ``height``. Never moves it back."""
        now = utcnow()
        result = await db.execute(
            update(Checkpoint)
            .where(
                Checkpoint.chain_id == chain_id,
                Checkpoint.last_block_number < height
            )
            .values(last_block_number=height, last_processed_at=now, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount > 0

    async def verify(self, db: AsyncSession, chain_id: int, expected: int) -> int:
        """Fail if the stored height is below what this writer already committed."""
        stored = await self.load(db, chain_id)
        if stored is None or stored < expected:
            logger.error(
                "Checkpoint regression detected",
                chain_id=chain_id,
                stored=stored,
                expected=expected
            )
            raise CheckpointRegressionError(chain_id, -1 if stored is None else stored, expected)
        return stored
