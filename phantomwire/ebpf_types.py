"""Shared structures and helpers for the kernel fast path maps."""

from __future__ import annotations

import ipaddress
import struct
from dataclasses import astuple, dataclass, field
from typing import ClassVar

MAX_SESSIONS = 65536
MAX_PORTS = 16
SESSION_TIMEOUT = 300.0

STATE_NEW = 0
STATE_HANDSHAKE = 1
STATE_ESTABLISHED = 2
STATE_CLOSING = 3
STATE_CLOSED = 4

XDP_ABORTED = 0
XDP_DROP = 1
XDP_PASS = 2
XDP_TX = 3
XDP_REDIRECT = 4

XDP_MODE_NATIVE = "native"
XDP_MODE_GENERIC = "generic"
XDP_MODE_OFFLOAD = "offload"
XDP_MODE_AUTO = "auto"


class _CStruct:
    """Packing to and from the native layout of the matching kernel struct."""

    _layout: ClassVar[struct.Struct]

    def pack(self) -> bytes:
        return self._layout.pack(*astuple(self))

    @classmethod
    def unpack(cls, data: bytes):
        try:
            return cls(*cls._layout.unpack(bytes(data)))
        except struct.error as exc:
            raise ValueError(
                f"{cls.__name__} needs {cls._layout.size} bytes, got {len(data)}"
            ) from exc


@dataclass
class EBPFSessionKey(_CStruct):
    """Session map key."""

    _layout: ClassVar[struct.Struct] = struct.Struct("=IIHH")

    src_ip: int = 0
    dst_ip: int = 0
    src_port: int = 0
    dst_port: int = 0


@dataclass
class EBPFSessionValue(_CStruct):
    """Session map value."""

    _layout: ClassVar[struct.Struct] = struct.Struct("=IHBBQQQQQQII")

    peer_ip: int = 0
    peer_port: int = 0
    state: int = 0
    flags: int = 0
    created_ns: int = 0
    last_seen_ns: int = 0
    bytes_in: int = 0
    bytes_out: int = 0
    packets_in: int = 0
    packets_out: int = 0
    seq_local: int = 0
    seq_remote: int = 0


@dataclass
class EBPFGlobalConfig(_CStruct):
    """Global configuration map entry."""

    _layout: ClassVar[struct.Struct] = struct.Struct("=IHBBIIBB2x")

    magic: int = 0
    listen_port: int = 0
    mode: int = 0
    log_level: int = 0
    session_timeout: int = 0
    max_sessions: int = 0
    enable_stats: int = 0
    enable_conntrack: int = 0


@dataclass
class EBPFStats(_CStruct):
    """Counters kept by the kernel program."""

    _layout: ClassVar[struct.Struct] = struct.Struct("=12Q")

    packets_rx: int = 0
    packets_tx: int = 0
    bytes_rx: int = 0
    bytes_tx: int = 0
    packets_dropped: int = 0
    packets_passed: int = 0
    packets_redirected: int = 0
    sessions_created: int = 0
    sessions_expired: int = 0
    errors: int = 0
    checksum_errors: int = 0
    invalid_packets: int = 0


@dataclass
class EBPFPacketEvent(_CStruct):
    """Per-packet event emitted by the kernel program."""

    _layout: ClassVar[struct.Struct] = struct.Struct("=QIIHHHBBBB6x")

    timestamp: int = 0
    src_ip: int = 0
    dst_ip: int = 0
    src_port: int = 0
    dst_port: int = 0
    length: int = 0
    protocol: int = 0
    action: int = 0
    state: int = 0
    flags: int = 0


@dataclass
class EBPFConfig:
    """Settings for the kernel fast path."""

    enabled: bool = False
    interface: str = "eth0"
    xdp_mode: str = XDP_MODE_AUTO
    program_path: str = "/opt/phantom/ebpf"
    map_size: int = 65536
    enable_stats: bool = True
    listen_ports: list[int] = field(default_factory=lambda: [54321])
    batch_size: int = 64
    poll_timeout: float = 0.1
    cleanup_interval: float = 30.0
    log_level: str = "info"


def ip_to_uint32(ip) -> int:
    """IPv4 address as a host-order integer; 0 for addresses that are not IPv4."""
    if isinstance(ip, (ipaddress.IPv4Address, ipaddress.IPv6Address)):
        addr = ip
    elif isinstance(ip, (bytes, bytearray)):
        addr = ipaddress.ip_address(bytes(ip))
    else:
        addr = ipaddress.ip_address(ip)
    if isinstance(addr, ipaddress.IPv6Address):
        addr = addr.ipv4_mapped
        if addr is None:
            return 0
    return int(addr)


def uint32_to_ip(n: int) -> ipaddress.IPv4Address:
    """Host-order integer as an IPv4 address."""
    return ipaddress.IPv4Address(n & 0xFFFFFFFF)


def htons(n: int) -> int:
    """Swap the bytes of a 16-bit value."""
    return ((n << 8) & 0xFF00) | ((n >> 8) & 0x00FF)


def ntohs(n: int) -> int:
    """Swap the bytes of a 16-bit value."""
    return htons(n)


def htonl(n: int) -> int:
    """Swap the bytes of a 32-bit value."""
    return (
        ((n << 24) & 0xFF000000)
        | ((n << 8) & 0x00FF0000)
        | ((n >> 8) & 0x0000FF00)
        | ((n >> 24) & 0x000000FF)
    )


def ntohl(n: int) -> int:
    """Swap the bytes of a 32-bit value."""
    return htonl(n)