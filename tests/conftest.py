"""
Shared fixtures: a throwaway SQLite database per test, an in-memory chain
client and a builder for raw PollsContract logs.
"""

import asyncio
from itertools import count
from typing import Iterable, List, Optional

import pytest
from eth_abi import encode

from basepulse.core.config import ChainSettings
from basepulse.core.database import DatabaseManager, close_database, init_database
from basepulse.services.chain_client import BaseChainClient, LogFilter, LogSubscription, RawLog
from basepulse.services.event_decoder import EventType, topic_for


CHAIN_ID = 8453
CONTRACT = "0xa3713739c39419aa1c6daf349db4342be59b9142"
ZERO = "0x" + "00" * 20


def address(byte: str) -> str:
    """0xAA-style shorthand to a full lower-case address."""
    return "0x" + byte.lower() * 20


ALICE = address("aa")
BOB = address("bb")
CAROL = address("cc")


def _uint_topic(value: int) -> str:
    return "0x" + value.to_bytes(32, "big").hex()


def _address_topic(value: str) -> str:
    return "0x" + "00" * 12 + value[2:].lower()


class LogFactory:
    """Builds ABI-encoded RawLogs exactly as a node would return them."""

    def __init__(self, contract: str = CONTRACT):
        self.contract = contract
        self._tx = count(1)

    def next_tx(self) -> str:
        return "0x" + format(next(self._tx), "064x")

    def make(
        self,
        event_type: EventType,
        block: int,
        indexed: List[str],
        data_types: List[str],
        data_values: list,
        log_index: int = 0,
        tx_hash: Optional[str] = None
    ) -> RawLog:
        return RawLog(
            address=self.contract,
            topics=(topic_for(event_type), *indexed),
            data="0x" + encode(data_types, data_values).hex(),
            block_number=block,
            log_index=log_index,
            tx_hash=tx_hash or self.next_tx(),
        )

    def poll_created(self, block, poll_id, creator, question="Best L2?", end_time=1_900_000_000, **kw):
        return self.make(
            EventType.POLL_CREATED, block,
            [_uint_topic(poll_id), _address_topic(creator)],
            ["string", "uint256"], [question, end_time], **kw
        )

    def poll_funded(self, block, poll_id, funder, amount, token=ZERO, **kw):
        return self.make(
            EventType.POLL_FUNDED, block,
            [_uint_topic(poll_id), _address_topic(funder)],
            ["address", "uint256"], [token, amount], **kw
        )

    def voted(self, block, poll_id, voter, option_index=0, **kw):
        return self.make(
            EventType.VOTED, block,
            [_uint_topic(poll_id), _address_topic(voter)],
            ["uint256"], [option_index], **kw
        )

    def mode_set(self, block, poll_id, mode, timestamp=1_700_000_000, **kw):
        return self.make(
            EventType.DISTRIBUTION_MODE_SET, block,
            [_uint_topic(poll_id)],
            ["uint8", "uint256"], [mode, timestamp], **kw
        )

    def reward_distributed(self, block, poll_id, recipient, amount, token=ZERO, timestamp=1_700_000_000, **kw):
        return self.make(
            EventType.REWARD_DISTRIBUTED, block,
            [_uint_topic(poll_id), _address_topic(recipient)],
            ["uint256", "address", "uint256"], [amount, token, timestamp], **kw
        )

    def reward_claimed(self, block, poll_id, claimer, amount, token=ZERO, timestamp=1_700_000_000, **kw):
        return self.make(
            EventType.REWARD_CLAIMED, block,
            [_uint_topic(poll_id), _address_topic(claimer)],
            ["uint256", "address", "uint256"], [amount, token, timestamp], **kw
        )

    def funds_withdrawn(self, block, poll_id, recipient, amount, token=ZERO, **kw):
        return self.make(
            EventType.FUNDS_WITHDRAWN, block,
            [_uint_topic(poll_id), _address_topic(recipient)],
            ["address", "uint256"], [token, amount], **kw
        )


_CLOSED = object()


class FakeSubscription(LogSubscription):
    """Queue-backed push stream the test drives by hand."""

    def __init__(self):
        self.queue: asyncio.Queue = asyncio.Queue()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def push(self, *logs: RawLog):
        for log in logs:
            self.queue.put_nowait(log)

    def fail(self, error: Exception):
        self.queue.put_nowait(error)

    async def __anext__(self) -> RawLog:
        if self._closed:
            raise StopAsyncIteration
        item = await self.queue.get()
        if item is _CLOSED:
            raise StopAsyncIteration
        if isinstance(item, Exception):
            raise item
        return item

    async def close(self) -> None:
        if not self._closed:
            self._closed = True
            self.queue.put_nowait(_CLOSED)


class FakeChainClient(BaseChainClient):
    """In-memory chain: a head height plus every log ever emitted."""

    def __init__(self, chain_id: int = CHAIN_ID, head: int = 0, logs: Iterable[RawLog] = ()):
        self.chain_id = chain_id
        self.head = head
        self.logs: List[RawLog] = list(logs)
        self.get_logs_calls: List[tuple] = []
        self.subscriptions: List[FakeSubscription] = []
        self.fail_subscribe = 0

    def emit(self, *logs: RawLog):
        """Put logs on chain and move the head past them."""
        self.logs.extend(logs)
        self.head = max([self.head] + [log.block_number for log in logs])

    async def current_height(self) -> int:
        return self.head

    async def get_logs(self, from_block: int, to_block: int, log_filter: LogFilter) -> List[RawLog]:
        self.get_logs_calls.append((from_block, to_block))
        selected = [
            log for log in self.logs
            if from_block <= log.block_number <= to_block and log.address == log_filter.address.lower()
        ]
        return sorted(selected, key=lambda log: log.sort_key)

    async def subscribe(self, log_filter: LogFilter) -> FakeSubscription:
        subscription = FakeSubscription()
        self.subscriptions.append(subscription)
        return subscription

    @property
    def subscription(self) -> Optional[FakeSubscription]:
        return self.subscriptions[-1] if self.subscriptions else None


async def wait_until(predicate, timeout: float = 3.0):
    """Poll ``predicate`` until it's truthy, yielding to the loop between checks."""
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)


@pytest.fixture
async def database(tmp_path):
    """Fresh SQLite database with the full schema."""
    await init_database(f"sqlite+aiosqlite:///{tmp_path / 'basepulse.db'}")
    await DatabaseManager.create_tables()
    yield
    await close_database()


@pytest.fixture
def logs() -> LogFactory:
    return LogFactory()


@pytest.fixture
def chain() -> ChainSettings:
    return ChainSettings(
        chain_id=CHAIN_ID,
        rpc_url="http://localhost:8545",
        ws_url="ws://localhost:8546",
        contract_address=CONTRACT,
    )


@pytest.fixture
def client() -> FakeChainClient:
    return FakeChainClient()
