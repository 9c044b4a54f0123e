"""
EVM RPC client for the PollsContract.
Provides chain height, ranged log fetch and push subscriptions to new logs.
"""

import asyncio
import json
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, TypeVar

import aiohttp
import structlog
import websockets
from web3 import AsyncWeb3, AsyncHTTPProvider, Web3
from web3.exceptions import Web3Exception

from basepulse.core.config import ChainConfig, ChainSettings
from basepulse.core.exceptions import (
    ChainClientError,
    SubscriptionStalledError,
    TransientRPCError,
)


logger = structlog.get_logger(__name__)

T = TypeVar("T")

# Errors that mean "the node or the network hiccuped", not "the request is wrong"
TRANSIENT_ERRORS = (
    aiohttp.ClientError,
    asyncio.TimeoutError,
    ConnectionError,
    OSError,
    TransientRPCError,
)

# Provider messages for eth_getLogs ranges that are too wide
_RANGE_LIMIT_HINTS = (
    "query returned more than",
    "too many",
    "block range",
    "range is too large",
    "limit exceeded",
)


def _as_int(value: Any) -> int:
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        return int(value, 16) if value.startswith("0x") else int(value)
    raise ValueError(f"Cannot read integer from {value!r}")


def _as_hex(value: Any) -> str:
    if isinstance(value, str):
        return value.lower() if value.startswith("0x") else "0x" + value.lower()
    return Web3.to_hex(value)


@dataclass(frozen=True)
class RawLog:
    """Log as returned by the node, normalized to plain Python types."""
    address: str
    topics: Sequence[str]
    data: str
    block_number: int
    log_index: int
    tx_hash: str
    block_hash: Optional[str] = None
    removed: bool = False

    @property
    def sort_key(self):
        return (self.block_number, self.log_index)

    @classmethod
    def from_rpc(cls, log: Dict[str, Any]) -> "RawLog":
        """Build from a web3 AttributeDict or a raw JSON-RPC log object."""
        block_hash = log.get("blockHash")
        return cls(
            address=_as_hex(log["address"]),
            topics=tuple(_as_hex(t) for t in log.get("topics", [])),
            data=_as_hex(log.get("data") or "0x"),
            block_number=_as_int(log["blockNumber"]),
            log_index=_as_int(log["logIndex"]),
            tx_hash=_as_hex(log["transactionHash"]),
            block_hash=_as_hex(block_hash) if block_hash is not None else None,
            removed=bool(log.get("removed", False)),
        )


@dataclass(frozen=True)
class LogFilter:
    """Contract address plus the topic0 values we care about."""
    address: str
    topics: Sequence[str] = field(default_factory=tuple)

    def to_rpc(self) -> Dict[str, Any]:
        params: Dict[str, Any] = {"address": Web3.to_checksum_address(self.address)}
        if self.topics:
            params["topics"] = [list(self.topics)]
        return params


class LogSubscription(ABC):
    """
    Push stream of new logs.

    Iterate with ``async for``; iteration ends once ``close()`` is called.
    Delivery is at-least-once and ordered only within one connection.
    """

    def __aiter__(self):
        return self

    @abstractmethod
    async def __anext__(self) -> RawLog:
        ...

    @abstractmethod
    async def close(self) -> None:
        ...

    @property
    @abstractmethod
    def closed(self) -> bool:
        ...


class BaseChainClient(ABC):
    """What the sync orchestrator needs from a node endpoint."""

    chain_id: int

    @abstractmethod
    async def current_height(self) -> int:
        ...

    @abstractmethod
    async def get_logs(self, from_block: int, to_block: int, log_filter: LogFilter) -> List[RawLog]:
        ...

    @abstractmethod
    async def subscribe(self, log_filter: LogFilter) -> LogSubscription:
        ...

    async def close(self) -> None:
        return None

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()


class WebSocketLogSubscription(LogSubscription):
    """eth_subscribe("logs") over a websocket connection."""

    def __init__(self, ws_url: str, log_filter: LogFilter, silence_timeout: float, chain_id: int):
        self.ws_url = ws_url
        self.log_filter = log_filter
        self.silence_timeout = silence_timeout
        self.subscription_id: Optional[str] = None
        self.logger = logger.bind(service="log_subscription", chain_id=chain_id)
        self._ws = None
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    async def open(self) -> "WebSocketLogSubscription":
        """Connect and wait for the subscription id."""
        self._closed = False
        self._ws = None
        self.subscription_id = None
        try:
            self._ws = await websockets.connect(
                self.ws_url,
                ping_interval=20,
                ping_timeout=20,
                close_timeout=5,
                max_size=None
            )
            request_id = str(uuid.uuid4())
            await self._ws.send(json.dumps({
                "jsonrpc": "2.0",
                "id": request_id,
                "method": "eth_subscribe",
                "params": ["logs", self.log_filter.to_rpc()],
            }))

            while self.subscription_id is None:
                raw = await asyncio.wait_for(self._ws.recv(), timeout=self.silence_timeout)
                message = json.loads(raw)
                if message.get("id") != request_id:
                    continue
                if "error" in message:
                    raise ChainClientError(
                        f"Subscription rejected: {message['error']}",
                        {"error": message["error"]}
                    )
                self.subscription_id = message.get("result")

            self.logger.info("Subscribed to contract logs", subscription_id=self.subscription_id)
            return self

        except ChainClientError:
            await self.close()
            raise
        except (websockets.exceptions.WebSocketException, *TRANSIENT_ERRORS) as e:
            await self.close()
            raise TransientRPCError(f"Failed to open log subscription: {e}", {"url": self.ws_url})

    async def __anext__(self) -> RawLog:
        while True:
            if self._closed or self._ws is None:
                raise StopAsyncIteration
            try:
                raw = await asyncio.wait_for(self._ws.recv(), timeout=self.silence_timeout)
            except asyncio.TimeoutError:
                raise SubscriptionStalledError(self.silence_timeout)
            except websockets.exceptions.ConnectionClosed as e:
                if self._closed:
                    raise StopAsyncIteration
                raise TransientRPCError(f"Subscription connection closed: {e}")

            try:
                message = json.loads(raw)
            except json.JSONDecodeError as e:
                self.logger.warning("Dropping unparseable subscription frame", error=str(e))
                continue

            if message.get("method") == "eth_subscription":
                result = message.get("params", {}).get("result")
                if not result:
                    continue
                try:
                    log = RawLog.from_rpc(result)
                except (KeyError, TypeError, ValueError) as e:
                    self.logger.warning("Dropping malformed log notification", error=str(e))
                    continue
                if log.removed:
                    # Reorgs are out of scope; a removed log is never re-applied or undone
                    self.logger.debug("Ignoring removed log", tx_hash=log.tx_hash)
                    continue
                return log

            if "error" in message:
                raise ChainClientError(
                    f"Subscription error: {message['error']}",
                    {"error": message["error"]}
                )

    async def close(self) -> None:
        self._closed = True
        if self._ws is not None:
            try:
                await self._ws.close()
            except websockets.exceptions.WebSocketException as e:
                self.logger.debug("Error closing subscription socket", error=str(e))


class Web3ChainClient(BaseChainClient):
    """
    Async EVM client backed by web3's AsyncWeb3.

    Provides:
    - Current block height
    - Ranged eth_getLogs with automatic range splitting on provider limits
    - Websocket log subscriptions
    - Exponential backoff on transient RPC failures
    """

    def __init__(self, chain: ChainSettings):
        self.chain_id = chain.chain_id
        self.rpc_config = ChainConfig.get_rpc_config(chain)
        self.max_retries: int = self.rpc_config["max_retries"]
        self.retry_delay: float = self.rpc_config["retry_delay"]
        self.max_backoff: float = self.rpc_config["max_backoff"]
        self.w3 = AsyncWeb3(AsyncHTTPProvider(
            self.rpc_config["endpoint"],
            request_kwargs={"timeout": aiohttp.ClientTimeout(total=self.rpc_config["timeout"])}
        ))
        self.logger = logger.bind(service="chain_client", chain_id=chain.chain_id)

    async def close(self) -> None:
        provider = self.w3.provider
        disconnect = getattr(provider, "disconnect", None)
        if disconnect is not None:
            await disconnect()

    async def _with_retries(self, operation: str, func: Callable[[], Awaitable[T]]) -> T:
        attempt = 0
        while True:
            try:
                return await func()
            except TRANSIENT_ERRORS as e:
                attempt += 1
                if attempt > self.max_retries:
                    self.logger.error(
                        "RPC call failed after retries",
                        operation=operation,
                        attempts=attempt,
                        error=str(e)
                    )
                    raise ChainClientError(
                        f"{operation} failed after {attempt} attempts: {e}",
                        {"operation": operation}
                    )
                wait_time = min(self.retry_delay * (2 ** (attempt - 1)), self.max_backoff)
                self.logger.warning(
                    "Transient RPC error, retrying",
                    operation=operation,
                    attempt=attempt,
                    wait_time=wait_time,
                    error=str(e),
                    error_type=type(e).__name__
                )
                await asyncio.sleep(wait_time)

    async def current_height(self) -> int:
        async def _call():
            return await self.w3.eth.block_number
        return await self._with_retries("eth_blockNumber", _call)

    async def get_logs(self, from_block: int, to_block: int, log_filter: LogFilter) -> List[RawLog]:
        """Fetch logs in [from_block, to_block], ascending by (block, log index)."""
        if from_block > to_block:
            return []

        params = log_filter.to_rpc()
        params.update({"fromBlock": from_block, "toBlock": to_block})

        async def _call():
            return await self.w3.eth.get_logs(params)

        try:
            entries = await self._with_retries("eth_getLogs", _call)
        except (Web3Exception, ValueError) as e:
            message = str(e).lower()
            if from_block < to_block and any(hint in message for hint in _RANGE_LIMIT_HINTS):
                middle = (from_block + to_block) // 2
                self.logger.warning(
                    "Log range rejected by provider, splitting",
                    from_block=from_block,
                    to_block=to_block
                )
                left = await self.get_logs(from_block, middle, log_filter)
                right = await self.get_logs(middle + 1, to_block, log_filter)
                return left + right
            raise ChainClientError(
                f"eth_getLogs failed: {e}",
                {"from_block": from_block, "to_block": to_block}
            )

        logs = [RawLog.from_rpc(entry) for entry in entries]
        logs = [log for log in logs if not log.removed]
        logs.sort(key=lambda log: log.sort_key)
        return logs

    async def subscribe(self, log_filter: LogFilter) -> LogSubscription:
        ws_url = self.rpc_config["ws_endpoint"]
        if not ws_url:
            raise ChainClientError(
                "No websocket endpoint configured",
                {"chain_id": self.chain_id}
            )

        async def _open():
            # A fresh handle per attempt; a failed open leaves its handle closed
            subscription = WebSocketLogSubscription(
                ws_url,
                log_filter,
                self.rpc_config["silence_timeout"],
                self.chain_id
            )
            return await subscription.open()

        return await self._with_retries("eth_subscribe", _open)
