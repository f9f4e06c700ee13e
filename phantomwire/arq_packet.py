"""Wire encoding and decoding of ARQ packets."""

from __future__ import annotations

import struct
import time
from dataclasses import dataclass, field
from typing import Iterable

from phantomwire.arq_types import (
    FLAG_ACK,
    FLAG_DATA,
    FLAG_FIN,
    FLAG_PING,
    FLAG_PONG,
    FLAG_RST,
    FLAG_SACK,
    FLAG_SYN,
    HEADER_SIZE,
    MAX_SACK_RANGES,
    SACK_RANGE_SIZE,
    SEQ_MASK,
    VALID_FLAGS,
    SACKRange,
)

_HEADER = struct.Struct(">IIHHIH")
_RANGE = struct.Struct(">II")


class ARQDecodeError(ValueError):
    """Raised when bytes cannot be decoded as an ARQ packet."""


def _now_millis() -> int:
    return (time.time_ns() // 1_000_000) & SEQ_MASK


@dataclass
class ARQPacket:
    """One ARQ packet."""

    seq: int = 0
    ack: int = 0
    flags: int = 0
    window: int = 0
    timestamp: int = 0
    data: bytes = b""
    sack_ranges: tuple[SACKRange, ...] = field(default_factory=tuple)

    def __post_init__(self) -> None:
        self.data = bytes(self.data)
        self.sack_ranges = tuple(self.sack_ranges)

    def encode(self) -> bytes:
        """Serialise the packet to its wire form."""
        sack = b""
        if self.flags & FLAG_SACK and self.sack_ranges:
            sack = bytes([len(self.sack_ranges) & 0xFF]) + b"".join(
                _RANGE.pack(r.start & SEQ_MASK, r.end & SEQ_MASK)
                for r in self.sack_ranges
            )
        body = sack + self.data
        header = _HEADER.pack(
            self.seq & SEQ_MASK,
            self.ack & SEQ_MASK,
            self.flags & 0xFFFF,
            self.window & 0xFFFF,
            self.timestamp & SEQ_MASK,
            len(body) & 0xFFFF,
        )
        return header + body


def decode_packet(data: bytes) -> ARQPacket:
    """Parse an ARQ packet, raising ARQDecodeError on short or truncated input."""
    data = bytes(data)
    if len(data) < HEADER_SIZE:
        raise ARQDecodeError(f"data too short: {len(data)} < {HEADER_SIZE}")

    seq, ack, flags, window, timestamp, payload_len = _HEADER.unpack_from(data)
    end = HEADER_SIZE + payload_len
    if len(data) < end:
        raise ARQDecodeError(f"incomplete data: {len(data)} < {end}")

    offset = HEADER_SIZE
    ranges: list[SACKRange] = []
    if flags & FLAG_SACK and payload_len > 0 and offset < len(data):
        count = min(data[offset], MAX_SACK_RANGES)
        offset += 1
        for _ in range(count):
            if offset + SACK_RANGE_SIZE > len(data):
                break
            ranges.append(SACKRange(*_RANGE.unpack_from(data, offset)))
            offset += SACK_RANGE_SIZE

    payload = data[offset:end] if offset < end else b""
    return ARQPacket(seq, ack, flags, window, timestamp, payload, tuple(ranges))


def data_packet(seq: int, ack: int, window: int, data: bytes) -> ARQPacket:
    """Build a DATA packet that also acknowledges ``ack``."""
    return ARQPacket(seq, ack, FLAG_DATA | FLAG_ACK, window, _now_millis(), data)


def ack_packet(
    ack: int, window: int, sack_ranges: Iterable[SACKRange] | None = None
) -> ARQPacket:
    """Build a pure ACK, with SACK ranges when any are given."""
    ranges = tuple(sack_ranges or ())
    flags = FLAG_ACK | (FLAG_SACK if ranges else 0)
    return ARQPacket(0, ack, flags, window, _now_millis(), b"", ranges)


def syn_packet(seq: int, window: int) -> ARQPacket:
    """Build a SYN packet."""
    return ARQPacket(seq, 0, FLAG_SYN, window, _now_millis())


def syn_ack_packet(seq: int, ack: int, window: int) -> ARQPacket:
    """Build a SYN-ACK packet."""
    return ARQPacket(seq, ack, FLAG_SYN | FLAG_ACK, window, _now_millis())


def fin_packet(seq: int, ack: int) -> ARQPacket:
    """Build a FIN packet."""
    return ARQPacket(seq, ack, FLAG_FIN | FLAG_ACK, 0, _now_millis())


def rst_packet(seq: int) -> ARQPacket:
    """Build a RST packet."""
    return ARQPacket(seq, 0, FLAG_RST, 0, _now_millis())


def ping_packet(seq: int, ack: int) -> ARQPacket:
    """Build a PING packet."""
    return ARQPacket(seq, ack, FLAG_PING | FLAG_ACK, 0, _now_millis())


def pong_packet(ack: int, echo_timestamp: int) -> ARQPacket:
    """Build a PONG packet echoing the peer's timestamp."""
    return ARQPacket(0, ack, FLAG_PONG | FLAG_ACK, 0, echo_timestamp)


def is_arq_packet(data: bytes) -> bool:
    """Tell whether ``data`` looks like an ARQ packet by its flag bits."""
    if len(data) < HEADER_SIZE:
        return False
    flags = int.from_bytes(data[8:10], "big")
    return flags != 0 and flags & ~VALID_FLAGS == 0


def calculate_rtt(sent_timestamp: int) -> float:
    """Round-trip time in seconds from a millisecond wire timestamp."""
    now = _now_millis()
    diff = (now - sent_timestamp) & SEQ_MASK
    if diff > 0x80000000:
        diff = (sent_timestamp - now) & SEQ_MASK
    return diff / 1000.0