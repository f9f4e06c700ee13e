"""Protocol constants and shared types for the ARQ reliable transport."""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Protocol, runtime_checkable

# Header: seq(4) + ack(4) + flags(2) + window(2) + timestamp(4) + length(2)
HEADER_SIZE = 18
MAX_PAYLOAD_SIZE = 1400 - HEADER_SIZE

SEQ_MASK = 0xFFFFFFFF

FLAG_ACK = 0x0001
FLAG_SYN = 0x0002
FLAG_FIN = 0x0004
FLAG_DATA = 0x0008
FLAG_RST = 0x0010
FLAG_PING = 0x0020
FLAG_PONG = 0x0040
FLAG_SACK = 0x0080
FLAG_ECN = 0x0100
FLAG_URG = 0x0200

VALID_FLAGS = (
    FLAG_ACK
    | FLAG_SYN
    | FLAG_FIN
    | FLAG_DATA
    | FLAG_RST
    | FLAG_PING
    | FLAG_PONG
    | FLAG_SACK
    | FLAG_ECN
    | FLAG_URG
)

# Durations are in seconds.
DEFAULT_WINDOW_SIZE = 256
DEFAULT_MTU = 1400
DEFAULT_RTO_MIN = 0.1
DEFAULT_RTO_MAX = 10.0
DEFAULT_RTO_INIT = 0.2
DEFAULT_MAX_RETRIES = 10
DEFAULT_KEEPALIVE = 15.0
DEFAULT_IDLE_TIMEOUT = 120.0
DEFAULT_ACK_DELAY = 0.025
DEFAULT_MAX_ACK_DELAY = 0.1

MAX_SACK_RANGES = 4
SACK_RANGE_SIZE = 8

FAST_RETRANSMIT_THRESHOLD = 3

RECV_BUFFER_SIZE = 512
SEND_BUFFER_SIZE = 512
RECV_QUEUE_SIZE = 1024


class ARQState(enum.IntEnum):
    """Connection state of an ARQ connection."""

    CLOSED = 0
    LISTEN = 1
    SYN_SENT = 2
    SYN_RECEIVED = 3
    ESTABLISHED = 4
    FIN_WAIT_1 = 5
    FIN_WAIT_2 = 6
    CLOSE_WAIT = 7
    CLOSING = 8
    LAST_ACK = 9
    TIME_WAIT = 10

    def __str__(self) -> str:
        return self.name


@dataclass(frozen=True)
class SACKRange:
    """Selectively acknowledged sequence range, start inclusive, end exclusive."""

    start: int
    end: int

    def __contains__(self, seq: object) -> bool:
        return isinstance(seq, int) and self.start <= seq < self.end

    def __len__(self) -> int:
        return max(0, self.end - self.start)


@dataclass
class ARQPacketInfo:
    """Send-side bookkeeping for one packet, used for retransmission."""

    seq: int
    data: bytes
    size: int = field(init=False)
    sent_time: float = 0.0
    retransmit_at: float = 0.0
    retries: int = 0
    acked: bool = False
    lost: bool = False
    in_flight: bool = False
    delivered_bytes: int = 0
    delivered_time: float = 0.0
    first_sent: bool = False
    is_retransmit: bool = False

    def __post_init__(self) -> None:
        self.data = bytes(self.data)
        self.size = len(self.data)


@dataclass
class ARQRecvPacketInfo:
    """Receive-side bookkeeping for one packet."""

    seq: int
    data: bytes
    received_at: float = 0.0
    delivered: bool = False


@dataclass
class ARQConnConfig:
    """Tunable parameters of an ARQ connection."""

    max_window_size: int = DEFAULT_WINDOW_SIZE
    mtu: int = DEFAULT_MTU
    rto_min: float = DEFAULT_RTO_MIN
    rto_max: float = DEFAULT_RTO_MAX
    rto_init: float = DEFAULT_RTO_INIT
    max_retries: int = DEFAULT_MAX_RETRIES
    keepalive: float = DEFAULT_KEEPALIVE
    idle_timeout: float = DEFAULT_IDLE_TIMEOUT
    ack_delay: float = DEFAULT_ACK_DELAY
    max_ack_delay: float = DEFAULT_MAX_ACK_DELAY
    enable_sack: bool = True
    enable_timestamp: bool = True


@dataclass
class ARQStats:
    """Counters and measurements of one ARQ connection."""

    bytes_sent: int = 0
    bytes_received: int = 0
    packets_sent: int = 0
    packets_received: int = 0

    retransmits: int = 0
    fast_retransmits: int = 0
    timeout_retransmits: int = 0
    packets_lost: int = 0

    acks_sent: int = 0
    acks_received: int = 0
    dup_acks: int = 0

    send_window: int = 0
    recv_window: int = 0
    bytes_in_flight: int = 0

    srtt: float = 0.0
    rtt_var: float = 0.0
    rto: float = 0.0
    min_rtt: float = 0.0
    max_rtt: float = 0.0

    state: str = "CLOSED"
    last_activity: float = 0.0
    uptime: float = 0.0


@runtime_checkable
class ARQHandler(Protocol):
    """Receiver of connection events."""

    def on_data(self, data: bytes, addr: tuple) -> None:
        """Called with ordered data received from ``addr``."""

    def on_connected(self, addr: tuple) -> None:
        """Called when a connection to ``addr`` is established."""

    def on_disconnected(self, addr: tuple, reason: Exception | None) -> None:
        """Called when the connection to ``addr`` goes away."""