"""
Test the EVM chain client without a real node.
"""

import asyncio
import json
from types import SimpleNamespace

import pytest
import websockets

from basepulse.core.config import ChainSettings
from basepulse.core.exceptions import (
    ChainClientError,
    SubscriptionStalledError,
)
from basepulse.services.chain_client import LogFilter, Web3ChainClient, WebSocketLogSubscription

from conftest import CHAIN_ID, CONTRACT


TOPIC = "0x" + "11" * 32


def rpc_log(block, index, removed=False):
    """A log the way web3 hands it back: bytes and ints."""
    return {
        "address": bytes.fromhex(CONTRACT[2:]),
        "topics": [bytes.fromhex(TOPIC[2:])],
        "data": b"",
        "blockNumber": block,
        "logIndex": index,
        "transactionHash": bytes([block % 256]) * 32,
        "blockHash": b"\x01" * 32,
        "removed": removed,
    }


class FakeEth:
    def __init__(self, responses):
        self.responses = list(responses)
        self.calls = []

    async def get_logs(self, params):
        self.calls.append((params["fromBlock"], params["toBlock"]))
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response


@pytest.fixture
def web3_client():
    client = Web3ChainClient(ChainSettings(
        chain_id=CHAIN_ID,
        rpc_url="http://localhost:8545",
        contract_address=CONTRACT,
    ))
    client.retry_delay = 0
    client.max_retries = 2
    return client


def test_log_filter_checksums_address():
    params = LogFilter(address=CONTRACT, topics=(TOPIC,)).to_rpc()

    assert params["address"] == "0xa3713739c39419aA1c6daf349dB4342Be59b9142"
    assert params["topics"] == [[TOPIC]]


async def test_get_logs_orders_and_drops_removed(web3_client):
    web3_client.w3 = SimpleNamespace(eth=FakeEth([[
        rpc_log(12, 0),
        rpc_log(10, 3),
        rpc_log(10, 1),
        rpc_log(11, 0, removed=True),
    ]]))

    logs = await web3_client.get_logs(10, 12, LogFilter(address=CONTRACT))

    assert [log.sort_key for log in logs] == [(10, 1), (10, 3), (12, 0)]
    assert logs[0].address == CONTRACT
    assert logs[0].topics == (TOPIC,)
    assert logs[0].data == "0x"


async def test_get_logs_retries_transient_errors(web3_client):
    eth = FakeEth([asyncio.TimeoutError(), ConnectionResetError("reset"), [rpc_log(5, 0)]])
    web3_client.w3 = SimpleNamespace(eth=eth)

    logs = await web3_client.get_logs(5, 5, LogFilter(address=CONTRACT))

    assert len(logs) == 1
    assert len(eth.calls) == 3


async def test_get_logs_gives_up_after_max_retries(web3_client):
    web3_client.w3 = SimpleNamespace(eth=FakeEth([asyncio.TimeoutError()] * 3))

    with pytest.raises(ChainClientError) as exc_info:
        await web3_client.get_logs(1, 2, LogFilter(address=CONTRACT))
    assert exc_info.value.details == {"operation": "eth_getLogs"}


async def test_get_logs_splits_ranges_the_provider_rejects(web3_client):
    eth = FakeEth([
        ValueError({"code": -32005, "message": "query returned more than 10000 results"}),
        [rpc_log(101, 0)],
        [rpc_log(175, 2)],
    ])
    web3_client.w3 = SimpleNamespace(eth=eth)

    logs = await web3_client.get_logs(100, 200, LogFilter(address=CONTRACT))

    assert eth.calls == [(100, 200), (100, 150), (151, 200)]
    assert [log.block_number for log in logs] == [101, 175]


async def test_get_logs_surfaces_other_rpc_errors(web3_client):
    web3_client.w3 = SimpleNamespace(eth=FakeEth([ValueError({"code": -32602, "message": "invalid params"})]))

    with pytest.raises(ChainClientError):
        await web3_client.get_logs(1, 2, LogFilter(address=CONTRACT))


async def test_empty_range_skips_the_call(web3_client):
    web3_client.w3 = SimpleNamespace(eth=FakeEth([]))

    assert await web3_client.get_logs(10, 9, LogFilter(address=CONTRACT)) == []


async def test_subscribe_requires_ws_endpoint(web3_client):
    with pytest.raises(ChainClientError):
        await web3_client.subscribe(LogFilter(address=CONTRACT))


def ws_log(block, index, removed=False):
    return {
        "address": CONTRACT,
        "topics": [TOPIC],
        "data": "0x",
        "blockNumber": hex(block),
        "logIndex": hex(index),
        "transactionHash": "0x" + "ab" * 32,
        "removed": removed,
    }


@pytest.fixture
async def node():
    """Local websocket node that accepts eth_subscribe and pushes a few logs."""
    received = []

    async def handler(ws, *args):
        request = json.loads(await ws.recv())
        received.append(request)
        await ws.send(json.dumps({"jsonrpc": "2.0", "id": request["id"], "result": "0xfeed"}))
        # A notification missing its block number is dropped, not raised
        pushed = ({"address": CONTRACT}, ws_log(7, 0), ws_log(7, 1, removed=True), ws_log(8, 0))
        for log in pushed:
            await ws.send(json.dumps({
                "jsonrpc": "2.0",
                "method": "eth_subscription",
                "params": {"subscription": "0xfeed", "result": log},
            }))
        async for _ in ws:
            pass

    server = await websockets.serve(handler, "127.0.0.1", 0)
    port = server.sockets[0].getsockname()[1]
    yield SimpleNamespace(url=f"ws://127.0.0.1:{port}", received=received)
    server.close()
    await server.wait_closed()


async def test_websocket_subscription_streams_logs_then_stalls(node):
    subscription = await WebSocketLogSubscription(
        node.url,
        LogFilter(address=CONTRACT, topics=(TOPIC,)),
        silence_timeout=0.3,
        chain_id=CHAIN_ID
    ).open()

    assert subscription.subscription_id == "0xfeed"
    assert node.received[0]["method"] == "eth_subscribe"
    assert node.received[0]["params"][0] == "logs"

    first = await subscription.__anext__()
    second = await subscription.__anext__()
    assert (first.block_number, first.log_index) == (7, 0)
    assert (second.block_number, second.log_index) == (8, 0)

    with pytest.raises(SubscriptionStalledError):
        await subscription.__anext__()

    await subscription.close()
    assert subscription.closed
    with pytest.raises(StopAsyncIteration):
        await subscription.__anext__()


async def test_subscribe_retries_failed_connect_with_a_live_handle(node, monkeypatch):
    real_connect = websockets.connect
    attempts = []

    async def flaky_connect(url, **kwargs):
        attempts.append(url)
        if len(attempts) == 1:
            raise OSError("connection refused")
        return await real_connect(url, **kwargs)

    monkeypatch.setattr(websockets, "connect", flaky_connect)
    client = Web3ChainClient(ChainSettings(
        chain_id=CHAIN_ID,
        rpc_url="http://localhost:8545",
        ws_url=node.url,
        contract_address=CONTRACT,
    ))
    client.retry_delay = 0

    subscription = await client.subscribe(LogFilter(address=CONTRACT, topics=(TOPIC,)))
    try:
        assert len(attempts) == 2
        assert not subscription.closed
        log = await asyncio.wait_for(subscription.__anext__(), timeout=3)
        assert (log.block_number, log.log_index) == (7, 0)
    finally:
        await subscription.close()


async def test_reopening_a_closed_subscription_resets_it(node):
    subscription = WebSocketLogSubscription(
        node.url,
        LogFilter(address=CONTRACT, topics=(TOPIC,)),
        silence_timeout=3,
        chain_id=CHAIN_ID
    )
    await subscription.close()

    await subscription.open()
    try:
        assert not subscription.closed
        assert (await subscription.__anext__()).block_number == 7
    finally:
        await subscription.close()
