"""
Event decoder for PollsContract logs.
Maps raw EVM logs onto a closed set of typed event records.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

import structlog
from eth_abi import decode as abi_decode
from eth_abi.exceptions import DecodingError
from web3 import Web3

from basepulse.core.config import ChainConfig
from basepulse.core.exceptions import DecodeError
from basepulse.services.chain_client import RawLog


logger = structlog.get_logger(__name__)


class EventType(Enum):
    """All events emitted by the PollsContract that the indexer consumes."""
    POLL_CREATED = "PollCreated"
    POLL_FUNDED = "PollFunded"
    VOTED = "Voted"
    DISTRIBUTION_MODE_SET = "DistributionModeSet"
    REWARD_DISTRIBUTED = "RewardDistributed"
    REWARD_CLAIMED = "RewardClaimed"
    FUNDS_WITHDRAWN = "FundsWithdrawn"


@dataclass(frozen=True)
class EventMeta:
    """Where an event came from."""
    chain_id: int
    block_number: int
    log_index: int
    tx_hash: str
    contract_address: str

    @property
    def position(self) -> Tuple[int, int]:
        return (self.block_number, self.log_index)


@dataclass(frozen=True)
class PollCreated:
    meta: EventMeta
    poll_id: int
    creator: str
    question: str
    end_time: int


@dataclass(frozen=True)
class PollFunded:
    meta: EventMeta
    poll_id: int
    funder: str
    token: str
    amount: int


@dataclass(frozen=True)
class Voted:
    meta: EventMeta
    poll_id: int
    voter: str
    option_index: int


@dataclass(frozen=True)
class DistributionModeSet:
    meta: EventMeta
    poll_id: int
    mode: str
    timestamp: datetime


@dataclass(frozen=True)
class RewardDistributed:
    meta: EventMeta
    poll_id: int
    recipient: str
    amount: int
    token: str
    timestamp: datetime


@dataclass(frozen=True)
class RewardClaimed:
    meta: EventMeta
    poll_id: int
    claimer: str
    amount: int
    token: str
    timestamp: datetime


@dataclass(frozen=True)
class FundsWithdrawn:
    meta: EventMeta
    poll_id: int
    recipient: str
    token: str
    amount: int


ContractEvent = Union[
    PollCreated,
    PollFunded,
    Voted,
    DistributionModeSet,
    RewardDistributed,
    RewardClaimed,
    FundsWithdrawn,
]

EVENT_CLASSES: Tuple[type, ...] = (
    PollCreated,
    PollFunded,
    Voted,
    DistributionModeSet,
    RewardDistributed,
    RewardClaimed,
    FundsWithdrawn,
)


@dataclass(frozen=True)
class EventSchema:
    """ABI layout of one event."""
    event_type: EventType
    event_class: type
    indexed: Sequence[Tuple[str, str]]
    data: Sequence[Tuple[str, str]]

    @property
    def signature(self) -> str:
        types = [t for _, t in self.indexed] + [t for _, t in self.data]
        return f"{self.event_type.value}({','.join(types)})"

    @property
    def topic0(self) -> str:
        return Web3.to_hex(Web3.keccak(text=self.signature))


EVENT_SCHEMAS: List[EventSchema] = [
    EventSchema(
        EventType.POLL_CREATED, PollCreated,
        indexed=[("poll_id", "uint256"), ("creator", "address")],
        data=[("question", "string"), ("end_time", "uint256")],
    ),
    EventSchema(
        EventType.POLL_FUNDED, PollFunded,
        indexed=[("poll_id", "uint256"), ("funder", "address")],
        data=[("token", "address"), ("amount", "uint256")],
    ),
    EventSchema(
        EventType.VOTED, Voted,
        indexed=[("poll_id", "uint256"), ("voter", "address")],
        data=[("option_index", "uint256")],
    ),
    EventSchema(
        EventType.DISTRIBUTION_MODE_SET, DistributionModeSet,
        indexed=[("poll_id", "uint256")],
        data=[("mode", "uint8"), ("timestamp", "uint256")],
    ),
    EventSchema(
        EventType.REWARD_DISTRIBUTED, RewardDistributed,
        indexed=[("poll_id", "uint256"), ("recipient", "address")],
        data=[("amount", "uint256"), ("token", "address"), ("timestamp", "uint256")],
    ),
    EventSchema(
        EventType.REWARD_CLAIMED, RewardClaimed,
        indexed=[("poll_id", "uint256"), ("claimer", "address")],
        data=[("amount", "uint256"), ("token", "address"), ("timestamp", "uint256")],
    ),
    EventSchema(
        EventType.FUNDS_WITHDRAWN, FundsWithdrawn,
        indexed=[("poll_id", "uint256"), ("recipient", "address")],
        data=[("token", "address"), ("amount", "uint256")],
    ),
]

SCHEMAS_BY_TOPIC: Dict[str, EventSchema] = {s.topic0: s for s in EVENT_SCHEMAS}


def event_topics() -> List[str]:
    """topic0 values of every known event, for log filters."""
    return [schema.topic0 for schema in EVENT_SCHEMAS]


def topic_for(event_type: EventType) -> str:
    for schema in EVENT_SCHEMAS:
        if schema.event_type == event_type:
            return schema.topic0
    raise KeyError(event_type)


def _decode_topic(abi_type: str, topic: str) -> Any:
    try:
        raw = bytes.fromhex(topic[2:] if topic.startswith("0x") else topic)
    except ValueError as e:
        raise DecodeError(f"Topic is not hex: {topic!r}", {"topic": topic}) from e
    if len(raw) != 32:
        raise DecodeError(f"Topic has {len(raw)} bytes, expected 32", {"topic": topic})
    if abi_type == "address":
        return "0x" + raw[-20:].hex()
    if abi_type.startswith("uint"):
        return int.from_bytes(raw, "big")
    raise DecodeError(f"Unsupported indexed type {abi_type}")


def _to_datetime(value: int) -> datetime:
    try:
        return datetime.fromtimestamp(value, tz=timezone.utc)
    except (OverflowError, OSError, ValueError) as e:
        raise DecodeError(f"Timestamp out of range: {value}", {"timestamp": value}) from e


def _normalize(name: str, abi_type: str, value: Any) -> Any:
    if abi_type == "address":
        return value.lower()
    if name == "mode":
        modes = ChainConfig.DISTRIBUTION_MODES
        if not 0 <= value < len(modes):
            raise DecodeError(f"Unknown distribution mode {value}", {"mode": value})
        return modes[value]
    if name == "timestamp":
        return _to_datetime(value)
    return value


class EventDecoder:
    """
    Decodes raw logs for a single chain.

    Pure: no I/O, no state beyond the schema table.
    """

    def __init__(self, chain_id: int, schemas: Optional[Sequence[EventSchema]] = None):
        self.chain_id = chain_id
        self.schemas = {s.topic0: s for s in (schemas or EVENT_SCHEMAS)}

    def decode(self, raw: RawLog) -> ContractEvent:
        if not raw.topics:
            raise DecodeError("Log has no topics", {"tx_hash": raw.tx_hash})

        topic0 = raw.topics[0].lower()
        schema = self.schemas.get(topic0)
        if schema is None:
            raise DecodeError("Unknown event topic", {"topic0": topic0, "tx_hash": raw.tx_hash})

        if len(raw.topics) != len(schema.indexed) + 1:
            raise DecodeError(
                f"{schema.event_type.value} expects {len(schema.indexed)} indexed topics, got {len(raw.topics) - 1}",
                {"tx_hash": raw.tx_hash, "log_index": raw.log_index}
            )

        fields: Dict[str, Any] = {}
        for (name, abi_type), topic in zip(schema.indexed, raw.topics[1:]):
            fields[name] = _normalize(name, abi_type, _decode_topic(abi_type, topic))

        data_types = [t for _, t in schema.data]
        try:
            data = bytes.fromhex(raw.data[2:] if raw.data.startswith("0x") else raw.data)
            values = abi_decode(data_types, data)
        except (DecodingError, ValueError) as e:
            raise DecodeError(
                f"Cannot decode {schema.event_type.value} data: {e}",
                {"tx_hash": raw.tx_hash, "log_index": raw.log_index}
            ) from e

        for (name, abi_type), value in zip(schema.data, values):
            fields[name] = _normalize(name, abi_type, value)

        meta = EventMeta(
            chain_id=self.chain_id,
            block_number=raw.block_number,
            log_index=raw.log_index,
            tx_hash=raw.tx_hash.lower(),
            contract_address=raw.address.lower(),
        )
        return schema.event_class(meta=meta, **fields)

    def decode_many(self, logs: Sequence[RawLog]) -> List[ContractEvent]:
        """Decode a batch, logging and skipping logs that don't decode."""
        events: List[ContractEvent] = []
        for raw in logs:
            try:
                events.append(self.decode(raw))
            except DecodeError as e:
                logger.warning(
                    "Skipping undecodable log",
                    chain_id=self.chain_id,
                    block_number=raw.block_number,
                    log_index=raw.log_index,
                    tx_hash=raw.tx_hash,
                    error=e.message
                )
        return events


def decode_log(raw: RawLog, chain_id: int) -> ContractEvent:
    """Decode one raw log, raising DecodeError when it isn't a known event."""
    return EventDecoder(chain_id).decode(raw)
