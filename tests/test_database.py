"""
Test database models and session handling.
"""

from decimal import Decimal

import pytest
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from basepulse.core import database
from basepulse.core.config import DatabaseConfig, settings
from basepulse.core.database import DatabaseManager, get_async_session
from basepulse.core.exceptions import ConfigurationError, DatabaseError
from basepulse.models import (
    Checkpoint,
    DistributionEventType,
    DistributionLog,
    DistributionMode,
    LeaderboardEntry,
    Poll,
    VoteRecord,
)
from basepulse.services.projection_queries import ProjectionQueries
from basepulse.services.projection_store import ProjectionStore

from conftest import ALICE, BOB, CHAIN_ID


async def test_poll_model(database):
    """Test Poll model creation and defaults."""
    async with get_async_session() as session:
        poll = Poll(chain_id=CHAIN_ID, poll_id=1, creator=ALICE, created_block=100, created_tx_hash="0x01")
        session.add(poll)

    async with get_async_session() as session:
        result = (await session.execute(select(Poll))).scalar_one()
        assert result.distribution_mode == DistributionMode.MANUAL_PULL
        assert result.created_at is not None
        assert "poll_id=1" in repr(result)


async def test_poll_unique_per_chain(database):
    async with get_async_session() as session:
        session.add(Poll(chain_id=CHAIN_ID, poll_id=1))
        session.add(Poll(chain_id=1, poll_id=1))

    with pytest.raises(IntegrityError):
        async with get_async_session() as session:
            session.add(Poll(chain_id=CHAIN_ID, poll_id=1))


async def test_distribution_log_model(database):
    """Test ledger rows keep uint256 amounts exactly."""
    huge = 2**256 - 1
    async with get_async_session() as session:
        poll = Poll(chain_id=CHAIN_ID, poll_id=7)
        session.add(poll)
        await session.flush()
        session.add(DistributionLog(
            poll_id=poll.id,
            recipient=BOB,
            amount=str(huge),
            token="0x" + "00" * 20,
            tx_hash="0x" + "ab" * 32,
            log_index=0,
            block_number=5,
            event_type=DistributionEventType.CLAIMED,
        ))

    async with get_async_session() as session:
        row = (await session.execute(select(DistributionLog))).scalar_one()
        assert row.amount_decimal == Decimal(huge)
        assert row.event_type == DistributionEventType.CLAIMED


async def test_vote_record_unique_on_log_position(database):
    store = ProjectionStore()
    async with get_async_session() as session:
        first = await store.try_insert_vote(session, CHAIN_ID, 1, ALICE, 0, "0x01", 3, 10)
        again = await store.try_insert_vote(session, CHAIN_ID, 1, ALICE, 0, "0x01", 3, 10)

    assert first is True
    assert again is False
    async with get_async_session() as session:
        assert len((await session.execute(select(VoteRecord))).scalars().all()) == 1


async def test_leaderboard_bump_creates_then_increments(database):
    store = ProjectionStore()
    async with get_async_session() as session:
        await store.bump_leaderboard(session, ALICE, total_votes=1, polls_participated=1)
        await store.bump_leaderboard(session, ALICE, total_rewards=Decimal(250))
        await store.bump_leaderboard(session, ALICE, total_votes=1)

    async with get_async_session() as session:
        entry = (await session.execute(select(LeaderboardEntry))).scalar_one()
        assert entry.total_votes == 2
        assert entry.polls_participated == 1
        assert entry.total_rewards == 250
        assert entry.polls_created == 0


async def test_leaderboard_bump_rejects_unknown_counter(database):
    async with get_async_session() as session:
        with pytest.raises(ValueError):
            await ProjectionStore().bump_leaderboard(session, ALICE, karma=1)


async def test_session_rolls_back_on_error(database):
    with pytest.raises(RuntimeError):
        async with get_async_session() as session:
            session.add(Checkpoint(chain_id=CHAIN_ID, last_block_number=1))
            await session.flush()
            raise RuntimeError("boom")

    async with get_async_session() as session:
        assert (await session.execute(select(Checkpoint))).scalars().all() == []


async def test_health_check(database):
    assert await DatabaseManager.health_check() is True


async def test_session_requires_initialization():
    assert database.async_session_maker is None
    with pytest.raises(DatabaseError):
        async with get_async_session():
            pass


def test_database_url_driver_switch():
    url = "postgresql://user:pw@db:5432/basepulse"

    assert DatabaseConfig.get_database_url(url) == "postgresql+asyncpg://user:pw@db:5432/basepulse"
    assert DatabaseConfig.get_database_url(
        "postgresql+asyncpg://user:pw@db:5432/basepulse", async_driver=False
    ) == url
    assert DatabaseConfig.get_engine_config("sqlite+aiosqlite:///x.db") == {}


def test_unknown_chain_is_a_configuration_error():
    with pytest.raises(ConfigurationError) as exc_info:
        settings.get_chain(-1)
    assert exc_info.value.details == {"chain_id": -1}


async def test_on_chain_ids_beyond_bigint_range(database):
    """Poll ids and option indexes are uint256 on chain."""
    big = 2**70
    store = ProjectionStore()
    async with get_async_session() as session:
        assert await store.try_insert_poll(session, CHAIN_ID, big, ALICE, 1, "0x01") is True
        assert await store.get_poll_pk(session, CHAIN_ID, big) is not None
        assert await store.try_insert_vote(session, CHAIN_ID, big, BOB, 2**64, "0x02", 0, 2) is True
        assert await store.count_voter_votes(session, CHAIN_ID, big, BOB) == 1

    async with get_async_session() as session:
        poll = await ProjectionQueries().get_poll(session, CHAIN_ID, big)
        vote = (await session.execute(select(VoteRecord))).scalar_one()

    assert poll.poll_id == big
    assert vote.option_index == 2**64
