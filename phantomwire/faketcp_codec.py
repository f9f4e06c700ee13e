"""Encoding and decoding of the IPv4/IPv6 and TCP headers used to disguise traffic."""

from __future__ import annotations

import ipaddress
import struct
from dataclasses import dataclass, field
from typing import Iterable, Union

TCP_HEADER_MIN_SIZE = 20
IP_HEADER_MIN_SIZE = 20
IPV6_HEADER_SIZE = 40
PSEUDO_HEADER_SIZE = 12
PSEUDO_HEADER_V6_SIZE = 40
PROTOCOL_TCP = 6

TCP_FLAG_FIN = 0x01
TCP_FLAG_SYN = 0x02
TCP_FLAG_RST = 0x04
TCP_FLAG_PSH = 0x08
TCP_FLAG_ACK = 0x10
TCP_FLAG_URG = 0x20

TCP_OPT_END = 0
TCP_OPT_NOP = 1
TCP_OPT_MSS = 2
TCP_OPT_WSCALE = 3
TCP_OPT_SACK_PERM = 4
TCP_OPT_SACK = 5
TCP_OPT_TIMESTAMP = 8

_TCP_BASE = struct.Struct(">HHIIBBHHH")
_IPV4 = struct.Struct(">BBHHHBBH4s4s")
_IPV6 = struct.Struct(">IHBB16s16s")

IPAddress = Union[ipaddress.IPv4Address, ipaddress.IPv6Address]


class CodecError(ValueError):
    """Raised when bytes cannot be decoded as the expected header."""


@dataclass
class TCPOption:
    """One TCP option; ``length`` of 0 means it is derived from ``data``."""

    kind: int
    length: int = 0
    data: bytes = b""

    def __post_init__(self) -> None:
        self.data = bytes(self.data)

    @property
    def single_byte(self) -> bool:
        return self.kind in (TCP_OPT_END, TCP_OPT_NOP)


@dataclass
class TCPHeader:
    """TCP header fields."""

    src_port: int = 0
    dst_port: int = 0
    seq_num: int = 0
    ack_num: int = 0
    data_offset: int = 0
    flags: int = 0
    window: int = 0
    checksum: int = 0
    urgent_ptr: int = 0
    options: list[TCPOption] = field(default_factory=list)


@dataclass
class IPHeader:
    """IPv4 header fields."""

    version: int = 4
    ihl: int = 5
    tos: int = 0
    total_len: int = 0
    ident: int = 0
    flags: int = 0
    frag_offset: int = 0
    ttl: int = 64
    protocol: int = PROTOCOL_TCP
    checksum: int = 0
    src_ip: IPAddress = ipaddress.IPv4Address(0)
    dst_ip: IPAddress = ipaddress.IPv4Address(0)

    def __post_init__(self) -> None:
        self.src_ip = _to_ip(self.src_ip)
        self.dst_ip = _to_ip(self.dst_ip)


@dataclass
class IPv6Header:
    """IPv6 fixed header fields."""

    version: int = 6
    traffic_class: int = 0
    flow_label: int = 0
    payload_len: int = 0
    next_header: int = PROTOCOL_TCP
    hop_limit: int = 64
    src_ip: IPAddress = ipaddress.IPv6Address(0)
    dst_ip: IPAddress = ipaddress.IPv6Address(0)

    def __post_init__(self) -> None:
        self.src_ip = _to_ip(self.src_ip)
        self.dst_ip = _to_ip(self.dst_ip)


@dataclass
class FakeTCPPacket:
    """A TCP segment with its IPv4 or IPv6 header and payload."""

    tcp_header: TCPHeader
    payload: bytes = b""
    ip_header: IPHeader | None = None
    ipv6_header: IPv6Header | None = None

    def __post_init__(self) -> None:
        self.payload = bytes(self.payload)


# --- address helpers --------------------------------------------------------


def _to_ip(value) -> IPAddress:
    if isinstance(value, (ipaddress.IPv4Address, ipaddress.IPv6Address)):
        return value
    if isinstance(value, (bytes, bytearray)):
        return ipaddress.ip_address(bytes(value))
    return ipaddress.ip_address(value)


def _normalize(value) -> IPAddress:
    addr = _to_ip(value)
    if isinstance(addr, ipaddress.IPv6Address) and addr.ipv4_mapped is not None:
        return addr.ipv4_mapped
    return addr


def _ipv4_bytes(value) -> bytes:
    addr = _normalize(value)
    if isinstance(addr, ipaddress.IPv4Address):
        return addr.packed
    return bytes(4)


def _ipv6_bytes(value) -> bytes:
    addr = _to_ip(value)
    if isinstance(addr, ipaddress.IPv4Address):
        return ipaddress.IPv6Address(f"::ffff:{addr}").packed
    return addr.packed


# --- checksums --------------------------------------------------------------


def _ones_sum(data: bytes) -> int:
    if len(data) % 2:
        data = data + b"\x00"
    return sum(int.from_bytes(data[i : i + 2], "big") for i in range(0, len(data), 2))


def _checksum(*parts: bytes) -> int:
    total = sum(_ones_sum(bytes(p)) for p in parts)
    while total > 0xFFFF:
        total = (total >> 16) + (total & 0xFFFF)
    return ~total & 0xFFFF


def _checksum_v4(src: bytes, dst: bytes, tcp_header: bytes, payload: bytes) -> int:
    pseudo = src + dst + struct.pack(">BBH", 0, PROTOCOL_TCP, (len(tcp_header) + len(payload)) & 0xFFFF)
    return _checksum(pseudo, tcp_header, payload)


def _checksum_v6(src: bytes, dst: bytes, tcp_header: bytes, payload: bytes) -> int:
    pseudo = src + dst + struct.pack(">I3xB", (len(tcp_header) + len(payload)) & 0xFFFFFFFF, PROTOCOL_TCP)
    return _checksum(pseudo, tcp_header, payload)


def tcp_checksum(src_ip, dst_ip, tcp_header: bytes, payload: bytes = b"") -> int:
    """TCP checksum over the pseudo header, choosing IPv4 or IPv6 from the addresses."""
    src = _normalize(src_ip)
    dst = _normalize(dst_ip)
    payload = bytes(payload or b"")
    if isinstance(src, ipaddress.IPv6Address) or isinstance(dst, ipaddress.IPv6Address):
        return _checksum_v6(_ipv6_bytes(src), _ipv6_bytes(dst), bytes(tcp_header), payload)
    return _checksum_v4(src.packed, dst.packed, bytes(tcp_header), payload)


def verify_tcp_checksum(src_ip, dst_ip, tcp_data: bytes) -> bool:
    """Check the checksum stored in a TCP segment (header and payload)."""
    tcp_data = bytes(tcp_data)
    if len(tcp_data) < TCP_HEADER_MIN_SIZE:
        return False
    original = int.from_bytes(tcp_data[16:18], "big")
    zeroed = tcp_data[:16] + b"\x00\x00" + tcp_data[18:]
    return tcp_checksum(src_ip, dst_ip, zeroed, b"") == original


# --- TCP --------------------------------------------------------------------


def _encode_option(opt: TCPOption) -> bytes:
    if opt.single_byte:
        return bytes([opt.kind])
    length = opt.length or 2 + len(opt.data)
    return bytes([opt.kind & 0xFF, length & 0xFF]) + opt.data


def encode_tcp_header(header: TCPHeader) -> bytes:
    """Serialise a TCP header with its options, padded with NOPs; checksum left as zero."""
    options = b"".join(_encode_option(opt) for opt in header.options)
    options += bytes([TCP_OPT_NOP]) * (-len(options) % 4)
    header_len = TCP_HEADER_MIN_SIZE + len(options)
    base = _TCP_BASE.pack(
        header.src_port & 0xFFFF,
        header.dst_port & 0xFFFF,
        header.seq_num & 0xFFFFFFFF,
        header.ack_num & 0xFFFFFFFF,
        ((header_len // 4) << 4) & 0xF0,
        header.flags & 0xFF,
        header.window & 0xFFFF,
        0,
        header.urgent_ptr & 0xFFFF,
    )
    return base + options


def _parse_tcp_options(data: bytes) -> list[TCPOption]:
    options: list[TCPOption] = []
    offset = 0
    while offset < len(data):
        kind = data[offset]
        if kind == TCP_OPT_END:
            options.append(TCPOption(TCP_OPT_END))
            break
        if kind == TCP_OPT_NOP:
            options.append(TCPOption(TCP_OPT_NOP))
            offset += 1
            continue
        if offset + 1 >= len(data):
            break
        length = data[offset + 1]
        if length < 2 or offset + length > len(data):
            break
        options.append(TCPOption(kind, length, data[offset + 2 : offset + length]))
        offset += length
    return options


def decode_tcp_header(data: bytes) -> tuple[TCPHeader, int]:
    """Parse a TCP header; return it with its length in bytes."""
    data = bytes(data)
    if len(data) < TCP_HEADER_MIN_SIZE:
        raise CodecError(f"TCP header too short: {len(data)}")
    src, dst, seq, ack, off, flags, window, checksum, urgent = _TCP_BASE.unpack_from(data)
    header = TCPHeader(
        src_port=src,
        dst_port=dst,
        seq_num=seq,
        ack_num=ack,
        data_offset=off >> 4,
        flags=flags,
        window=window,
        checksum=checksum,
        urgent_ptr=urgent,
    )
    header_len = header.data_offset * 4
    if header_len < TCP_HEADER_MIN_SIZE:
        raise CodecError(f"invalid data offset: {header.data_offset}")
    if len(data) < header_len:
        raise CodecError(f"data too short for header: {len(data)} < {header_len}")
    if header_len > TCP_HEADER_MIN_SIZE:
        header.options = _parse_tcp_options(data[TCP_HEADER_MIN_SIZE:header_len])
    return header, header_len


def build_tcp_options(
    mss: int, wscale: int, sack_perm: bool, timestamps: bool, ts_val: int, ts_ecr: int
) -> list[TCPOption]:
    """The usual SYN options: MSS, SACK-permitted, timestamps, NOP and window scale."""
    options: list[TCPOption] = []
    if mss > 0:
        options.append(TCPOption(TCP_OPT_MSS, 4, struct.pack(">H", mss & 0xFFFF)))
    if sack_perm:
        options.append(TCPOption(TCP_OPT_SACK_PERM, 2))
    if timestamps:
        options.append(
            TCPOption(TCP_OPT_TIMESTAMP, 10, struct.pack(">II", ts_val & 0xFFFFFFFF, ts_ecr & 0xFFFFFFFF))
        )
    options.append(TCPOption(TCP_OPT_NOP))
    if wscale > 0:
        options.append(TCPOption(TCP_OPT_WSCALE, 3, bytes([wscale & 0xFF])))
    return options


def get_tcp_timestamp(options: Iterable[TCPOption]) -> tuple[int, int] | None:
    """``(ts_val, ts_ecr)`` from the timestamp option, or None."""
    for opt in options:
        if opt.kind == TCP_OPT_TIMESTAMP and len(opt.data) >= 8:
            return struct.unpack_from(">II", opt.data)
    return None


def get_tcp_mss(options: Iterable[TCPOption]) -> int | None:
    """The MSS option value, or None."""
    for opt in options:
        if opt.kind == TCP_OPT_MSS and len(opt.data) >= 2:
            return int.from_bytes(opt.data[:2], "big")
    return None


def get_tcp_window_scale(options: Iterable[TCPOption]) -> int | None:
    """The window scale shift, or None."""
    for opt in options:
        if opt.kind == TCP_OPT_WSCALE and opt.data:
            return opt.data[0]
    return None


def has_tcp_option(options: Iterable[TCPOption], kind: int) -> bool:
    """Whether an option of ``kind`` is present."""
    return any(opt.kind == kind for opt in options)


# --- IPv4 / IPv6 ------------------------------------------------------------


def encode_ip_header(header: IPHeader, tcp_len: int) -> bytes:
    """Serialise a 20-byte IPv4 header with its checksum filled in."""
    fields = [
        (4 << 4) | 5,
        header.tos & 0xFF,
        (IP_HEADER_MIN_SIZE + tcp_len) & 0xFFFF,
        header.ident & 0xFFFF,
        ((header.flags << 13) | header.frag_offset) & 0xFFFF,
        header.ttl & 0xFF,
        header.protocol & 0xFF,
        0,
        _ipv4_bytes(header.src_ip),
        _ipv4_bytes(header.dst_ip),
    ]
    raw = _IPV4.pack(*fields)
    fields[7] = _checksum(raw)
    return _IPV4.pack(*fields)


def decode_ip_header(data: bytes) -> tuple[IPHeader, int]:
    """Parse an IPv4 header; return it with its length in bytes."""
    data = bytes(data)
    if len(data) < IP_HEADER_MIN_SIZE:
        raise CodecError(f"IP header too short: {len(data)}")
    version = data[0] >> 4
    if version != 4:
        raise CodecError(f"not IPv4: version={version}")
    ihl = (data[0] & 0x0F) * 4
    if ihl < IP_HEADER_MIN_SIZE or len(data) < ihl:
        raise CodecError(f"invalid IHL: {ihl}")
    _, tos, total, ident, frag, ttl, proto, checksum, src, dst = _IPV4.unpack_from(data)
    header = IPHeader(
        version=version,
        ihl=ihl // 4,
        tos=tos,
        total_len=total,
        ident=ident,
        flags=data[6] >> 5,
        frag_offset=frag & 0x1FFF,
        ttl=ttl,
        protocol=proto,
        checksum=checksum,
        src_ip=ipaddress.IPv4Address(src),
        dst_ip=ipaddress.IPv4Address(dst),
    )
    return header, ihl


def encode_ipv6_header(header: IPv6Header, payload_len: int) -> bytes:
    """Serialise a 40-byte IPv6 fixed header."""
    first = (6 << 28) | ((header.traffic_class & 0xFF) << 20) | (header.flow_label & 0xFFFFF)
    return _IPV6.pack(
        first,
        payload_len & 0xFFFF,
        header.next_header & 0xFF,
        header.hop_limit & 0xFF,
        _ipv6_bytes(header.src_ip),
        _ipv6_bytes(header.dst_ip),
    )


def decode_ipv6_header(data: bytes) -> tuple[IPv6Header, int]:
    """Parse an IPv6 fixed header; return it with its length in bytes."""
    data = bytes(data)
    if len(data) < IPV6_HEADER_SIZE:
        raise CodecError(f"IPv6 header too short: {len(data)}")
    first, payload_len, next_header, hop_limit, src, dst = _IPV6.unpack_from(data)
    version = first >> 28
    if version != 6:
        raise CodecError(f"not IPv6: version={version}")
    header = IPv6Header(
        version=version,
        traffic_class=(first >> 20) & 0xFF,
        flow_label=first & 0xFFFFF,
        payload_len=payload_len,
        next_header=next_header,
        hop_limit=hop_limit,
        src_ip=ipaddress.IPv6Address(src),
        dst_ip=ipaddress.IPv6Address(dst),
    )
    return header, IPV6_HEADER_SIZE


def decode_ip_packet(data: bytes) -> tuple[IPHeader | IPv6Header, int]:
    """Parse an IPv4 or IPv6 header, chosen by the version nibble."""
    if not data:
        raise CodecError("data too short")
    version = data[0] >> 4
    if version == 4:
        return decode_ip_header(data)
    if version == 6:
        return decode_ipv6_header(data)
    raise CodecError(f"unknown IP version: {version}")


# --- whole packets ----------------------------------------------------------


def encode_fake_tcp_packet(packet: FakeTCPPacket) -> bytes:
    """Serialise IP header, TCP header (with checksum) and payload."""
    tcp = encode_tcp_header(packet.tcp_header)
    tcp_len = len(tcp) + len(packet.payload)
    if packet.ipv6_header is not None:
        h6 = packet.ipv6_header
        ip = encode_ipv6_header(h6, tcp_len)
        checksum = _checksum_v6(_ipv6_bytes(h6.src_ip), _ipv6_bytes(h6.dst_ip), tcp, packet.payload)
    elif packet.ip_header is not None:
        h4 = packet.ip_header
        ip = encode_ip_header(h4, tcp_len)
        checksum = _checksum_v4(_ipv4_bytes(h4.src_ip), _ipv4_bytes(h4.dst_ip), tcp, packet.payload)
    else:
        raise CodecError("no IP header specified")
    tcp = tcp[:16] + struct.pack(">H", checksum) + tcp[18:]
    return ip + tcp + packet.payload


def decode_fake_tcp_packet(data: bytes) -> FakeTCPPacket:
    """Parse an IP packet carrying TCP into its headers and payload."""
    data = bytes(data)
    if not data:
        raise CodecError("data too short")
    version = data[0] >> 4
    ip_header: IPHeader | None = None
    ipv6_header: IPv6Header | None = None
    if version == 4:
        try:
            ip_header, offset = decode_ip_header(data)
        except CodecError as exc:
            raise CodecError(f"decode IPv4 header: {exc}") from exc
        if ip_header.protocol != PROTOCOL_TCP:
            raise CodecError(f"not TCP: protocol={ip_header.protocol}")
    elif version == 6:
        try:
            ipv6_header, offset = decode_ipv6_header(data)
        except CodecError as exc:
            raise CodecError(f"decode IPv6 header: {exc}") from exc
        if ipv6_header.next_header != PROTOCOL_TCP:
            raise CodecError(f"not TCP: next header={ipv6_header.next_header}")
    else:
        raise CodecError(f"unknown IP version: {version}")

    if len(data) < offset + TCP_HEADER_MIN_SIZE:
        raise CodecError("data too short for TCP header")
    try:
        tcp_header, tcp_len = decode_tcp_header(data[offset:])
    except CodecError as exc:
        raise CodecError(f"decode TCP header: {exc}") from exc
    offset += tcp_len
    return FakeTCPPacket(tcp_header, data[offset:], ip_header, ipv6_header)