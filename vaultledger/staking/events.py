"""
events.py - Staking events, their log encoding, and an in-memory history

Events are emitted after a transaction commits. On the wire each event is an
8-byte discriminator, sha256("event:<WireName>")[:8], followed by its fields
(identities as 32 raw bytes, integers as u64 little-endian), base64-encoded
into a "Program data: ..." log line.

Wire names match the deployed program so off-chain indexers decode them:
    Staked      -> TokensStaked     [staker:32][amount:8][total_staked:8]
    Withdrawn   -> TokensWithdrawn  [staker:32][amount:8][fee:8][total_staked:8]
    FeeUpdated  -> FeeUpdated       [old_fee:8][new_fee:8]
"""

from __future__ import annotations
from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, List, Optional, Protocol, Union, runtime_checkable
import base64
import binascii
import hashlib
import struct
import threading

from solders.pubkey import Pubkey


PROGRAM_DATA_PREFIX = "Program data: "

# Event kinds as reported by the history index
KIND_DEPOSIT = "deposit"
KIND_WITHDRAW = "withdraw"
KIND_FEE_UPDATE = "fee_update"


def event_discriminator(wire_name: str) -> bytes:
    return hashlib.sha256(f"event:{wire_name}".encode()).digest()[:8]


# ============================================================================
# EVENT TYPES
# ============================================================================

@dataclass(frozen=True, slots=True)
class Staked:
    staker: str
    amount: int
    new_total: int

    WIRE_NAME = "TokensStaked"
    KIND = KIND_DEPOSIT
    _LAYOUT = struct.Struct("<32sQQ")

    def encode(self) -> bytes:
        return self._LAYOUT.pack(bytes(Pubkey.from_string(self.staker)), self.amount, self.new_total)

    @classmethod
    def decode(cls, body: bytes) -> Staked:
        staker, amount, new_total = cls._LAYOUT.unpack(body[:cls._LAYOUT.size])
        return cls(str(Pubkey.from_bytes(staker)), amount, new_total)


@dataclass(frozen=True, slots=True)
class Withdrawn:
    """Net amount paid to the staker; `fee` went to the fee sink."""
    staker: str
    net_amount: int
    fee: int
    new_total: int

    WIRE_NAME = "TokensWithdrawn"
    KIND = KIND_WITHDRAW
    _LAYOUT = struct.Struct("<32sQQQ")

    def encode(self) -> bytes:
        return self._LAYOUT.pack(
            bytes(Pubkey.from_string(self.staker)), self.net_amount, self.fee, self.new_total,
        )

    @classmethod
    def decode(cls, body: bytes) -> Withdrawn:
        staker, net_amount, fee, new_total = cls._LAYOUT.unpack(body[:cls._LAYOUT.size])
        return cls(str(Pubkey.from_bytes(staker)), net_amount, fee, new_total)


@dataclass(frozen=True, slots=True)
class FeeUpdated:
    old_rate: int
    new_rate: int

    WIRE_NAME = "FeeUpdated"
    KIND = KIND_FEE_UPDATE
    _LAYOUT = struct.Struct("<QQ")

    @property
    def staker(self) -> Optional[str]:
        return None

    def encode(self) -> bytes:
        return self._LAYOUT.pack(self.old_rate, self.new_rate)

    @classmethod
    def decode(cls, body: bytes) -> FeeUpdated:
        old_rate, new_rate = cls._LAYOUT.unpack(body[:cls._LAYOUT.size])
        return cls(old_rate, new_rate)


StakingEvent = Union[Staked, Withdrawn, FeeUpdated]

EVENT_TYPES = {
    event_discriminator(cls.WIRE_NAME): cls
    for cls in (Staked, Withdrawn, FeeUpdated)
}


# ============================================================================
# LOG CODEC
# ============================================================================

def encode_event(event: StakingEvent) -> bytes:
    return event_discriminator(event.WIRE_NAME) + event.encode()


def decode_event(data: bytes) -> Optional[StakingEvent]:
    """
    Decode raw event bytes.

    Returns None for data that is not one of the staking events, including
    payloads too short for their declared type.
    """
    if len(data) < 8:
        return None
    cls = EVENT_TYPES.get(data[:8])
    if cls is None:
        return None
    body = data[8:]
    if len(body) < cls._LAYOUT.size:
        return None
    return cls.decode(body)


def event_log_line(event: StakingEvent) -> str:
    return PROGRAM_DATA_PREFIX + base64.b64encode(encode_event(event)).decode("ascii")


def parse_program_logs(logs: Iterable[str]) -> List[StakingEvent]:
    """
    Recover staking events from program log lines.

    Lines that are not "Program data:" entries, are not valid base64, or carry
    another program's data are skipped.

    Example:
        events = parse_program_logs(receipt.logs)
    """
    events = []
    for line in logs:
        if not line.startswith(PROGRAM_DATA_PREFIX):
            continue
        try:
            data = base64.b64decode(line[len(PROGRAM_DATA_PREFIX):], validate=True)
        except binascii.Error:
            continue
        event = decode_event(data)
        if event is not None:
            events.append(event)
    return events


# ============================================================================
# SINKS
# ============================================================================

@runtime_checkable
class EventSink(Protocol):
    """Receives events after their transaction has been applied."""

    def emit(self, event: StakingEvent, exec_id: str, timestamp: datetime) -> None:
        ...


@dataclass(frozen=True, slots=True)
class EventRecord:
    """One indexed event with the transaction that produced it."""
    exec_id: str
    timestamp: datetime
    log_index: int
    event: StakingEvent

    @property
    def kind(self) -> str:
        return self.event.KIND


class EventLog:
    """
    In-memory event history, queryable like an off-chain indexer.

    Example:
        events = EventLog()
        program = StakingProgram(ledger, program_id, admin, events=events)
        ...
        events.history(staker=alice, kind="deposit")
    """

    def __init__(self):
        self._records: List[EventRecord] = []
        self._lock = threading.Lock()

    def emit(self, event: StakingEvent, exec_id: str, timestamp: datetime) -> None:
        with self._lock:
            log_index = sum(1 for r in self._records if r.exec_id == exec_id)
            self._records.append(EventRecord(exec_id, timestamp, log_index, event))

    def history(self, staker: Optional[str] = None, kind: Optional[str] = None) -> List[EventRecord]:
        """Events in emission order, optionally filtered by staker and kind."""
        with self._lock:
            records = list(self._records)
        if staker is not None:
            records = [r for r in records if r.event.staker == staker]
        if kind is not None:
            records = [r for r in records if r.kind == kind]
        return records

    def by_exec_id(self, exec_id: str) -> List[EventRecord]:
        with self._lock:
            return [r for r in self._records if r.exec_id == exec_id]

    def __len__(self) -> int:
        return len(self._records)
