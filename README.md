# phantomwire

This package provides reliable, ordered delivery over UDP, along with a set of low-level packet tools. It has no dependencies outside the standard library.

The package is made of these modules:

- `phantomwire.arq_types` holds the protocol constants, `ARQState`, `SACKRange`, `ARQConnConfig`, `ARQStats` and the `ARQHandler` protocol.
- `phantomwire.arq_packet` holds the ARQ packet type and the functions that encode, decode and build packets.
- `phantomwire.arq_recv_buffer` and `phantomwire.arq_send_buffer` hold the sliding-window buffers. They handle reordering, cumulative and selective (SACK) acknowledgement, and retransmission bookkeeping.
- `phantomwire.arq_conn` holds `ARQConn`, a single TCP-like connection carried in UDP datagrams. It also holds `CongestionController`.
- `phantomwire.arq_manager` holds `ARQManager`, a registry of connections keyed by remote address.
- `phantomwire.faketcp_codec` encodes and decodes TCP headers and options, IPv4 and IPv6 headers and whole IP/TCP packets. It also computes TCP checksums.
- `phantomwire.ebpf_types` holds records laid out like the kernel-side session, config, stats and event structures. It also has byte-order and IP conversion helpers.
- `phantomwire.ebpf_tc` holds `TCManager`, which loads the FakeTCP traffic-control programs with the `tc` and `bpftool` tools.

All durations are given in seconds.

## Installation

```
pip install .
```

Tests:

```
pip install .[test]
pytest
```

## ARQ packets

```python
from phantomwire.arq_packet import data_packet, decode_packet, is_arq_packet

pkt = data_packet(seq=100, ack=7, window=256, data=b"hello")
wire = pkt.encode()
assert is_arq_packet(wire)
assert decode_packet(wire).data == b"hello"
```

`decode_packet` raises `ARQDecodeError` (a `ValueError`) when the input is shorter than the 18-byte header, or shorter than the length the header declares.

These functions build the other packet kinds:

- `ack_packet(ack, window, sack_ranges)`. The SACK flag is set when ranges are given.
- `syn_packet`, `syn_ack_packet`, `fin_packet` and `rst_packet`.
- `ping_packet` and `pong_packet`.

`calculate_rtt(sent_timestamp)` turns an echoed millisecond timestamp into a round-trip time in seconds.

## Connections

The package does not read from sockets itself. You own the UDP socket, read the datagrams, and hand them over.

### Accepting connections

`ARQManager` opens a connection when a SYN arrives from an unknown address:

```python
import socket
from phantomwire.arq_manager import ARQManager, UnknownConnectionError
from phantomwire.arq_packet import ARQDecodeError

sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
sock.bind(("127.0.0.1", 54321))

with ARQManager() as manager:
    while True:
        data, addr = sock.recvfrom(65535)
        try:
            manager.handle_packet(data, addr, sock)
        except (ARQDecodeError, UnknownConnectionError):
            continue
```

If a packet that is not a SYN arrives from an unknown address, the manager replies with an RST and raises `UnknownConnectionError`.

### Dialling out

When dialling out, create an `ARQConn(sock, remote_addr)` and call `start()` on it. Then call `connect(timeout)`. Feed every reply to the connection with `conn.handle_packet(decode_packet(data))`, from another thread. `connect` waits at most 10 seconds for the SYN-ACK.

### The ARQManager interface

- `get_conn(addr)` returns the connection for an address.
- `get_or_create_conn(sock, addr)` and `create_conn(sock, addr)` create a connection if none exists. The new connection is not started.
- `remove_conn(addr)` removes a connection.
- `all_conns()` returns every connection.
- `active_conns()` and `total_conns()` return the connection counts.
- `broadcast(data)` sends on every established connection and returns the number of sends that succeeded.
- `cleanup()` drops connections that are closed, or in the CLOSED or TIME_WAIT state. A background thread also runs it every 30 seconds.
- `stats()` returns the counts and a summary of each connection.
- `close()` closes everything.

### The ARQConn interface

- `send(data, timeout)` queues the data and waits until it is on the wire. Data longer than one payload is split into several packets.
- `send_async(data)` queues the data and returns at once.
- `recv(timeout)` returns the next in-order payload. `recv_nowait()` returns it, or `None` if there is none.
- `wait_established(timeout)`, `state()`, `is_established()`, `is_closed()` and `close_error()` report on the connection's state.
- `stats()` returns an `ARQStats` snapshot.
- `close()` sends a FIN if the connection was established.

Failures raise these errors:

| Error | Raised when |
|---|---|
| `ConnClosedError` | the connection is closed |
| `ConnNotReadyError` | the connection is not yet established |
| `SendQueueFullError` | the send queue is full |
| `ConnTimeoutError` | a wait or the idle timeout ran out |
| `InvalidStateError` | `connect` or `accept` was called in the wrong state |

Pass an `ARQConnConfig` to tune the window, RTO bounds, retries, keepalive, idle timeout, ACK delay and SACK.

If you pass an `ARQHandler`, its `on_connected` and `on_disconnected` methods are called in their own threads. Received data is delivered only through `recv`.

`CongestionController(window)` limits the bytes in flight to `window`. With no window it never holds sending back. You can subclass it to supply your own congestion control.

## FakeTCP codec

```python
from phantomwire.faketcp_codec import (
    TCPHeader, build_tcp_options, encode_tcp_header, decode_tcp_header, get_tcp_mss,
)

header = TCPHeader(src_port=12345, dst_port=80, seq_num=1000,
                   options=build_tcp_options(1460, 7, True, True, 12345, 67890))
raw = encode_tcp_header(header)
decoded, header_len = decode_tcp_header(raw)
assert get_tcp_mss(decoded.options) == 1460
```

The codec provides these functions:

- `tcp_checksum` and `verify_tcp_checksum` pick IPv4 or IPv6 pseudo headers from the addresses.
- `encode_ip_header`, `decode_ip_header`, `encode_ipv6_header` and `decode_ipv6_header` handle the IP headers. `decode_ip_packet` handles either IP version.
- `encode_fake_tcp_packet` and `decode_fake_tcp_packet` handle whole packets. The encoder fills in the TCP checksum.
- `get_tcp_timestamp`, `get_tcp_window_scale` and `has_tcp_option` read the options. They return `None` (or `False` for `has_tcp_option`) when the option is absent.

Malformed input raises `CodecError`.

## eBPF helpers

```python
from phantomwire.ebpf_types import ip_to_uint32, uint32_to_ip, htons, ntohs

n = ip_to_uint32("192.168.1.100")
assert str(uint32_to_ip(n)) == "192.168.1.100"
assert ntohs(htons(54321)) == 54321
```

These record types have `pack()` and `unpack()` methods that use the native struct layout:

- `EBPFSessionKey`
- `EBPFSessionValue`
- `EBPFGlobalConfig`
- `EBPFStats`
- `EBPFPacketEvent`

`EBPFConfig` holds the fast-path settings.

`TCManager(interface, program_path)` has these methods:

- `load_fake_tcp(udp_port, tcp_port)` adds a clsact qdisc and the egress and ingress filters from `tc_faketcp.o`. It then writes both ports to the `faketcp_config` map.
- `unload()` removes the filters.
- `is_loaded()` reports whether the filters are loaded.

Using `TCManager` needs root and the `tc` and `bpftool` tools. A command that fails raises `TCCommandError`, which carries the command output.

## What is not included

This is a library only. It has no command-line program and no server loop. It does not:

- open raw sockets;
- send or receive disguised TCP traffic on the network;
- load or attach XDP programs;
- read kernel maps.

The codec and record types only build and parse bytes. The only external programs the package runs are `tc` and `bpftool`, through `TCManager`.