"""
Test the read-side queries.
"""

import pytest

from basepulse.core.database import get_async_session
from basepulse.indexer.core.event_processor import EventProcessor
from basepulse.models import DistributionEventType, DistributionMode
from basepulse.services.event_decoder import EventDecoder
from basepulse.services.projection_queries import ProjectionQueries

from conftest import ALICE, BOB, CAROL, CHAIN_ID


pytestmark = pytest.mark.usefixtures("database")


@pytest.fixture
async def projected(database, logs):
    decoder = EventDecoder(CHAIN_ID)
    processor = EventProcessor()
    history = [
        logs.poll_created(1, 1, ALICE),
        logs.poll_created(2, 2, ALICE),
        logs.voted(3, 1, BOB),
        logs.voted(3, 2, BOB, log_index=1),
        logs.voted(4, 1, CAROL),
        logs.mode_set(5, 1, 1),
        logs.reward_distributed(6, 1, CAROL, 500),
        logs.reward_distributed(6, 1, BOB, 200, log_index=1),
        logs.reward_claimed(7, 2, BOB, 100),
        logs.funds_withdrawn(8, 1, ALICE, 50),
    ]
    for raw in history:
        await processor.apply_block(CHAIN_ID, raw.block_number, [decoder.decode(raw)])


async def test_get_poll(projected):
    async with get_async_session() as db:
        poll = await ProjectionQueries().get_poll(db, CHAIN_ID, 1)
        missing = await ProjectionQueries().get_poll(db, CHAIN_ID, 99)

    assert poll.creator == ALICE
    assert poll.created_block == 1
    assert poll.distribution_mode == DistributionMode.MANUAL_PUSH
    assert missing is None


async def test_ledger_by_poll_in_chain_order(projected):
    queries = ProjectionQueries()
    async with get_async_session() as db:
        ledger = await queries.get_distribution_logs(db, CHAIN_ID, 1)
        withdrawals = await queries.get_distribution_logs(db, CHAIN_ID, 1, DistributionEventType.WITHDRAWN)

    assert [(row.recipient, row.amount) for row in ledger] == [(CAROL, "500"), (BOB, "200"), (ALICE, "50")]
    assert [row.recipient for row in withdrawals] == [ALICE]


@pytest.mark.parametrize("sort_by,expected", [
    ("rewards", [CAROL, BOB, ALICE]),
    ("votes", [BOB, CAROL, ALICE]),
    ("polls_created", [ALICE, BOB, CAROL]),
    ("polls_participated", [BOB, CAROL, ALICE]),
])
async def test_leaderboard_rankings(projected, sort_by, expected):
    async with get_async_session() as db:
        board = await ProjectionQueries().get_leaderboard(db, sort_by=sort_by)

    assert [entry["address"] for entry in board] == expected
    assert [entry["rank"] for entry in board] == [1, 2, 3]


async def test_leaderboard_paging(projected):
    async with get_async_session() as db:
        page = await ProjectionQueries().get_leaderboard(db, sort_by="rewards", limit=1, offset=1)

    assert len(page) == 1
    assert page[0]["address"] == BOB
    assert page[0]["rank"] == 2


async def test_unknown_ranking_rejected(projected):
    async with get_async_session() as db:
        with pytest.raises(ValueError):
            await ProjectionQueries().get_leaderboard(db, sort_by="karma")


async def test_address_stats_with_rank(projected):
    queries = ProjectionQueries()
    async with get_async_session() as db:
        carol = await queries.get_address_stats(db, CAROL.upper().replace("0X", "0x"))
        by_votes = await queries.get_address_stats(db, CAROL, sort_by="votes")
        nobody = await queries.get_address_stats(db, "0x" + "de" * 20)

    assert carol["total_rewards"] == 500
    assert carol["total_votes"] == 1
    assert carol["polls_participated"] == 1
    assert carol["rank"] == 1
    assert by_votes["rank"] == 2
    assert nobody is None


async def test_global_stats(projected):
    async with get_async_session() as db:
        totals = await ProjectionQueries().get_global_stats(db)

    assert totals == {
        "total_polls": 2,
        "total_participants": 3,
        "total_rewards": 800,
        "total_votes": 3,
        "total_distributions": 4,
    }


async def test_checkpoints_listing(projected):
    async with get_async_session() as db:
        assert await ProjectionQueries().get_checkpoints(db) == []
