"""A single reliable ARQ connection over a datagram socket."""

from __future__ import annotations

import contextlib
import queue
import threading
import time
from concurrent.futures import Future
from concurrent.futures import TimeoutError as FutureTimeout
from dataclasses import dataclass, replace
from typing import Callable

from phantomwire.arq_packet import (
    ARQPacket,
    ack_packet,
    calculate_rtt,
    data_packet,
    fin_packet,
    ping_packet,
    pong_packet,
    syn_ack_packet,
    syn_packet,
)
from phantomwire.arq_recv_buffer import ARQRecvBuffer
from phantomwire.arq_send_buffer import ARQSendBuffer
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
    MAX_PAYLOAD_SIZE,
    RECV_BUFFER_SIZE,
    RECV_QUEUE_SIZE,
    SEND_BUFFER_SIZE,
    SEQ_MASK,
    ARQConnConfig,
    ARQHandler,
    ARQPacketInfo,
    ARQState,
    ARQStats,
)

_CONNECT_TIMEOUT = 10.0
_RECV_RETRY = 0.1
_WINDOW_POLL = 0.01
_WINDOW_WAIT = 30.0
_POLL = 0.05
_MAX_PONG_RTT = 30.0


class ConnClosedError(ConnectionError):
    """The connection has been closed."""


class ConnNotReadyError(ConnectionError):
    """The connection is not established yet."""


class SendQueueFullError(BufferError):
    """The send queue has no room for another item."""


class ConnTimeoutError(TimeoutError):
    """An operation on the connection timed out."""


class InvalidStateError(RuntimeError):
    """The operation is not allowed in the connection's current state."""


class CongestionController:
    """Byte-counting congestion control.

    With ``window`` left as None it never holds sending back; otherwise it
    refuses to send while the bytes in flight would exceed ``window``.
    """

    def __init__(self, window: int | None = None) -> None:
        self.window = window
        self.bytes_in_flight = 0
        self.bytes_sent = 0
        self.bytes_acked = 0
        self.packets_sent = 0
        self.packets_lost = 0
        self.latest_rtt = 0.0
        self._sizes: dict[int, int] = {}
        self._lock = threading.Lock()

    def can_send(self, size: int) -> bool:
        """Whether ``size`` more bytes may be put on the wire."""
        with self._lock:
            if self.window is None:
                return True
            return self.bytes_in_flight + size <= self.window

    def on_packet_sent(self, seq: int, size: int) -> None:
        """Called after a packet of ``size`` wire bytes went out."""
        with self._lock:
            self._sizes[seq] = size
            self.bytes_in_flight += size
            self.bytes_sent += size
            self.packets_sent += 1

    def on_packet_acked(self, acked_bytes: int, rtt: float) -> None:
        """Called when a cumulative ACK confirmed ``acked_bytes``."""
        with self._lock:
            self.bytes_acked += acked_bytes
            self.bytes_in_flight = max(0, self.bytes_in_flight - acked_bytes)
            if rtt > 0:
                self.latest_rtt = rtt

    def on_packet_lost(self, seq: int) -> None:
        """Called when ``seq`` ran out of retries."""
        with self._lock:
            self.packets_lost += 1
            size = self._sizes.pop(seq, 0)
            self.bytes_in_flight = max(0, self.bytes_in_flight - size)


@dataclass
class _SendItem:
    data: bytes
    deadline: float | None
    future: Future | None


class ARQConn:
    """Reliable, ordered connection to one remote address.

    ``sock`` needs a ``sendto(data, addr)`` method; incoming packets are fed
    in through :meth:`handle_packet`. Durations are in seconds.
    """

    def __init__(
        self,
        sock,
        remote_addr,
        config: ARQConnConfig | None = None,
        congestion: CongestionController | None = None,
        handler: ARQHandler | None = None,
        initial_seq: int | None = None,
    ) -> None:
        self._config = config if config is not None else ARQConnConfig()
        seq = (time.time_ns() if initial_seq is None else initial_seq) & SEQ_MASK

        self._sock = sock
        self.remote_addr = remote_addr
        # The SYN consumes one sequence number; data starts after it.
        self._send_buf = ARQSendBuffer(self._config.max_window_size, (seq + 1) & SEQ_MASK)
        self._recv_buf = ARQRecvBuffer(RECV_BUFFER_SIZE, 1)
        self._local_seq = seq
        self._remote_seq = 0
        self._cc = congestion if congestion is not None else CongestionController()
        self._handler = handler

        self._srtt = 0.0
        self._rtt_var = 0.0
        self._rto = self._config.rto_init
        self._min_rtt = 0.0

        self._local_window = self._config.max_window_size & 0xFFFF
        self._remote_window = 0

        self._state = ARQState.CLOSED
        self._established = threading.Event()
        self._closed = threading.Event()
        self._close_guard = threading.Lock()
        self._close_started = False
        self._close_error: BaseException | None = None

        self._ack_pending = False
        self._ack_deadline: float | None = None

        now = time.monotonic()
        self._start_time = now
        self._last_send = now
        self._last_recv = now
        self._last_ping = 0.0
        self._ping_seq = 0

        self._recv_queue: queue.Queue[bytes] = queue.Queue(RECV_QUEUE_SIZE)
        self._send_queue: queue.Queue[_SendItem] = queue.Queue(SEND_BUFFER_SIZE)

        self._stats = ARQStats()
        self._lock = threading.RLock()
        self._threads: list[threading.Thread] = []

    # --- handshake ---------------------------------------------------------

    def connect(self, timeout: float | None = None) -> None:
        """Send a SYN and wait for the SYN-ACK."""
        with self._lock:
            if self._state != ARQState.CLOSED:
                raise InvalidStateError(f"invalid state: {self._state}")
            self._state = ARQState.SYN_SENT

        try:
            self._send_packet(syn_packet(self._local_seq, self._local_window))
        except OSError as exc:
            with self._lock:
                self._state = ARQState.CLOSED
            raise ConnectionError(f"sending SYN failed: {exc}") from exc
        with self._lock:
            self._local_seq = (self._local_seq + 1) & SEQ_MASK

        wait = _CONNECT_TIMEOUT if timeout is None else min(timeout, _CONNECT_TIMEOUT)
        self._established.wait(wait)
        if self._closed.is_set():
            raise ConnClosedError("connection closed")
        if not self._established.is_set():
            with self._lock:
                self._state = ARQState.CLOSED
            raise ConnTimeoutError("connection timed out")

    def accept(self, syn: ARQPacket) -> None:
        """Answer a received SYN with a SYN-ACK."""
        with self._lock:
            if self._state not in (ARQState.CLOSED, ARQState.LISTEN):
                raise InvalidStateError(f"invalid state: {self._state}")
            self._remote_seq = (syn.seq + 1) & SEQ_MASK
            self._recv_buf.reset(self._remote_seq)
            self._state = ARQState.SYN_RECEIVED

        try:
            self._send_packet(
                syn_ack_packet(self._local_seq, self._remote_seq, self._local_window)
            )
        except OSError as exc:
            with self._lock:
                self._state = ARQState.CLOSED
            raise ConnectionError(f"sending SYN-ACK failed: {exc}") from exc
        with self._lock:
            self._local_seq = (self._local_seq + 1) & SEQ_MASK

    def start(self) -> None:
        """Start the send, retransmit, ACK and keepalive threads."""
        loops: list[Callable[[], None]] = [
            self._send_loop,
            lambda: self._ticker(self._rto / 4, self._process_retransmits),
            lambda: self._ticker(self._config.ack_delay, self._maybe_send_ack),
            lambda: self._ticker(self._config.keepalive, self._check_keepalive),
        ]
        for target in loops:
            thread = threading.Thread(target=target, daemon=True)
            self._threads.append(thread)
            thread.start()

    # --- incoming packets --------------------------------------------------

    def handle_packet(self, packet: ARQPacket) -> None:
        """Process one packet received from the remote side."""
        if self.is_closed():
            return
        with self._lock:
            self._last_recv = time.monotonic()
            self._remote_window = packet.window
            self._stats.packets_received += 1

        flags = packet.flags
        if flags & FLAG_RST:
            self._close(ConnectionResetError("received RST"))
            return
        if flags & FLAG_SYN:
            self._handle_syn(packet)
            return
        if flags & FLAG_FIN:
            self._handle_fin(packet)
            return
        if flags & FLAG_PING:
            self._handle_ping(packet)
            return
        if flags & FLAG_PONG:
            self._handle_pong(packet)
            return
        if flags & FLAG_ACK:
            self._handle_ack(packet)
        if flags & FLAG_DATA:
            self._handle_data(packet)

    def _handle_syn(self, packet: ARQPacket) -> None:
        if not packet.flags & FLAG_ACK:
            return
        with self._lock:
            if self._state != ARQState.SYN_SENT:
                return
            self._remote_seq = (packet.seq + 1) & SEQ_MASK
            self._recv_buf.reset(self._remote_seq)
            self._state = ARQState.ESTABLISHED
            with contextlib.suppress(OSError):
                self._transmit(ack_packet(self._remote_seq, self._local_window))
            self._established.set()
        if self._handler is not None:
            self._notify(self._handler.on_connected, self.remote_addr)

    def _handle_ack(self, packet: ARQPacket) -> None:
        acked_bytes, rtt, _ = self._send_buf.on_ack(packet.ack)
        if acked_bytes > 0:
            with self._lock:
                self._stats.acks_received += 1
                self._stats.bytes_in_flight -= acked_bytes
            self._cc.on_packet_acked(acked_bytes, rtt)
            if rtt > 0:
                self._update_rtt(rtt)

        if packet.flags & FLAG_SACK and packet.sack_ranges:
            sacked_bytes, _ = self._send_buf.on_sack(packet.sack_ranges)
            if sacked_bytes > 0:
                with self._lock:
                    self._stats.bytes_in_flight -= sacked_bytes

        became_established = False
        with self._lock:
            if self._state == ARQState.SYN_RECEIVED:
                self._state = ARQState.ESTABLISHED
                self._established.set()
                became_established = True
        if became_established and self._handler is not None:
            self._notify(self._handler.on_connected, self.remote_addr)

    def _handle_data(self, packet: ARQPacket) -> None:
        if not packet.data:
            return
        duplicate, _ = self._recv_buf.insert(packet.seq, packet.data)
        with self._lock:
            if duplicate:
                self._stats.dup_acks += 1
            else:
                self._stats.bytes_received += len(packet.data)

        for chunk in self._recv_buf.read_ordered():
            if not self._try_enqueue_recv(chunk):
                with self._lock:
                    self._recv_queue_drops += 1

        with self._lock:
            self._ack_pending = True
            if self._ack_deadline is None:
                self._ack_deadline = time.monotonic() + self._config.ack_delay

    _recv_queue_drops = 0

    def _try_enqueue_recv(self, data: bytes) -> bool:
        try:
            self._recv_queue.put_nowait(data)
            return True
        except queue.Full:
            pass
        give_up = time.monotonic() + _RECV_RETRY
        while not self._closed.is_set():
            remaining = give_up - time.monotonic()
            if remaining <= 0:
                return False
            try:
                self._recv_queue.put(data, timeout=min(remaining, _POLL))
                return True
            except queue.Full:
                continue
        return False

    def _handle_fin(self, packet: ARQPacket) -> None:
        with self._lock:
            state = self._state
            if state == ARQState.ESTABLISHED:
                self._state = ARQState.CLOSE_WAIT
                self._remote_seq = (packet.seq + 1) & SEQ_MASK
                with contextlib.suppress(OSError):
                    self._transmit(fin_packet(self._local_seq, self._remote_seq))
                self._local_seq = (self._local_seq + 1) & SEQ_MASK
                self._state = ARQState.LAST_ACK
            elif state == ARQState.FIN_WAIT_1:
                self._remote_seq = (packet.seq + 1) & SEQ_MASK
                with contextlib.suppress(OSError):
                    self._transmit(ack_packet(self._remote_seq, 0))
                self._state = ARQState.CLOSING
            elif state == ARQState.FIN_WAIT_2:
                self._remote_seq = (packet.seq + 1) & SEQ_MASK
                with contextlib.suppress(OSError):
                    self._transmit(ack_packet(self._remote_seq, 0))
                self._state = ARQState.TIME_WAIT
                threading.Thread(target=self._time_wait, daemon=True).start()

    def _handle_ping(self, packet: ARQPacket) -> None:
        if self.is_closed():
            return
        with contextlib.suppress(OSError):
            self._send_packet(pong_packet(self._recv_buf.expected_seq(), packet.timestamp))

    def _handle_pong(self, packet: ARQPacket) -> None:
        rtt = calculate_rtt(packet.timestamp)
        if 0 < rtt < _MAX_PONG_RTT:
            self._update_rtt(rtt)

    def _time_wait(self) -> None:
        self._closed.wait(2 * self._rto)
        with self._lock:
            self._state = ARQState.CLOSED

    # --- sending -----------------------------------------------------------

    def _ticker(self, interval: float, action: Callable[[], None]) -> None:
        while not self._closed.wait(interval):
            action()

    def _send_loop(self) -> None:
        try:
            while not self._closed.is_set():
                try:
                    item = self._send_queue.get(timeout=_POLL)
                except queue.Empty:
                    continue
                error: BaseException | None = None
                try:
                    self._send_data(item.data, item.deadline)
                except (ConnectionError, TimeoutError) as exc:
                    error = exc
                if item.future is not None and not item.future.done():
                    if error is None:
                        item.future.set_result(None)
                    else:
                        item.future.set_exception(error)
        finally:
            self._drain_send_queue()

    def _drain_send_queue(self) -> None:
        while True:
            try:
                item = self._send_queue.get_nowait()
            except queue.Empty:
                return
            if item.future is not None and not item.future.done():
                item.future.set_exception(ConnClosedError("connection closed"))

    def _send_data(self, data: bytes, deadline: float | None) -> None:
        view = memoryview(data)
        while view:
            if deadline is not None and time.monotonic() >= deadline:
                raise ConnTimeoutError("send timed out")
            if self._closed.is_set():
                raise ConnClosedError("connection closed")

            chunk = bytes(view[:MAX_PAYLOAD_SIZE])
            view = view[MAX_PAYLOAD_SIZE:]

            self._wait_for_window(len(chunk), deadline)

            seq = self._send_buf.add(chunk)
            if seq is None:
                continue
            packet = data_packet(
                seq, self._recv_buf.expected_seq(), self._local_window, chunk
            )
            try:
                self._send_packet(packet)
            except OSError:
                continue

            self._send_buf.mark_sent(seq, self._rto)
            self._cc.on_packet_sent(seq, len(chunk) + HEADER_SIZE)
            with self._lock:
                self._stats.packets_sent += 1
                self._stats.bytes_sent += len(chunk)
                self._stats.bytes_in_flight += len(chunk)

    def _wait_for_window(self, size: int, deadline: float | None) -> None:
        if self._window_open(size):
            return
        give_up = time.monotonic() + _WINDOW_WAIT
        while True:
            if self._closed.wait(_WINDOW_POLL):
                raise ConnClosedError("connection closed")
            now = time.monotonic()
            if deadline is not None and now >= deadline:
                raise ConnTimeoutError("send timed out")
            if now >= give_up:
                raise ConnTimeoutError("timed out waiting for send window")
            if self._window_open(size):
                return

    def _window_open(self, size: int) -> bool:
        if self._send_buf.is_full():
            return False
        with self._lock:
            remote_window = self._remote_window
        if self._send_buf.in_flight_bytes() >= remote_window * self._config.mtu:
            return False
        return self._cc.can_send(size + HEADER_SIZE)

    def _process_retransmits(self) -> None:
        if self.is_closed():
            return
        for info in self._send_buf.fast_retransmit_packets():
            if self.is_closed():
                return
            if self._retransmit(info, self._rto):
                with self._lock:
                    self._stats.fast_retransmits += 1
                    self._stats.retransmits += 1

        for info in self._send_buf.retransmit_packets(time.monotonic()):
            if self.is_closed():
                return
            backoff = min(self._rto * 2, self._config.rto_max)
            if self._retransmit(info, backoff):
                with self._lock:
                    self._stats.timeout_retransmits += 1
                    self._stats.retransmits += 1

    def _retransmit(self, info: ARQPacketInfo, rto: float) -> bool:
        if info.retries >= self._config.max_retries:
            self._send_buf.mark_lost(info.seq)
            self._cc.on_packet_lost(info.seq)
            with self._lock:
                self._stats.packets_lost += 1
            return False
        packet = data_packet(
            info.seq, self._recv_buf.expected_seq(), self._local_window, info.data
        )
        try:
            self._send_packet(packet)
        except OSError:
            return False
        self._send_buf.mark_retransmit(info.seq, rto)
        return True

    def _maybe_send_ack(self) -> None:
        if self.is_closed():
            return
        with self._lock:
            if not self._ack_pending:
                return
            deadline = self._ack_deadline
            if (
                deadline is not None
                and time.monotonic() < deadline
                and not self._recv_buf.has_gaps()
            ):
                return
            self._ack_pending = False
            self._ack_deadline = None

        ranges = []
        if self._config.enable_sack and self._recv_buf.has_gaps():
            ranges = self._recv_buf.sack_ranges()
        packet = ack_packet(
            self._recv_buf.expected_seq(), self._recv_buf.window_size() & 0xFFFF, ranges
        )
        with contextlib.suppress(OSError):
            self._send_packet(packet)
        with self._lock:
            self._stats.acks_sent += 1

    def _check_keepalive(self) -> None:
        if self.is_closed():
            return
        with self._lock:
            last_recv = self._last_recv
            last_send = self._last_send
            state = self._state
        if state != ARQState.ESTABLISHED:
            return

        now = time.monotonic()
        if now - last_recv > self._config.idle_timeout:
            self._close(ConnTimeoutError("idle timeout"))
            return
        if now - last_send > self._config.keepalive / 2:
            with contextlib.suppress(OSError):
                self._send_packet(
                    ping_packet(self._local_seq, self._recv_buf.expected_seq())
                )
            with self._lock:
                self._last_ping = time.monotonic()
                self._ping_seq = self._local_seq

    # --- public data API ---------------------------------------------------

    def _enqueue(self, data: bytes, deadline: float | None, future: Future | None) -> None:
        if self.is_closed():
            raise ConnClosedError("connection closed")
        with self._lock:
            state = self._state
        if state != ARQState.ESTABLISHED:
            raise ConnNotReadyError(f"connection not established: {state}")
        try:
            self._send_queue.put_nowait(_SendItem(bytes(data), deadline, future))
        except queue.Full:
            raise SendQueueFullError("send queue is full") from None

    def send(self, data: bytes, timeout: float | None = None) -> None:
        """Queue ``data`` and wait until it has been put on the wire."""
        deadline = None if timeout is None else time.monotonic() + timeout
        future: Future = Future()
        self._enqueue(data, deadline, future)
        try:
            future.result(timeout=timeout)
        except FutureTimeout:
            raise ConnTimeoutError("send timed out") from None

    def send_async(self, data: bytes) -> None:
        """Queue ``data`` without waiting for the outcome."""
        self._enqueue(data, None, None)

    def recv(self, timeout: float | None = None) -> bytes:
        """Return the next in-order payload, waiting for it if needed."""
        deadline = None if timeout is None else time.monotonic() + timeout
        while True:
            try:
                return self._recv_queue.get_nowait()
            except queue.Empty:
                pass
            if self._closed.is_set():
                raise ConnClosedError("connection closed")
            wait = _POLL
            if deadline is not None:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    raise ConnTimeoutError("receive timed out")
                wait = min(wait, remaining)
            try:
                return self._recv_queue.get(timeout=wait)
            except queue.Empty:
                continue

    def recv_nowait(self) -> bytes | None:
        """The next in-order payload, or None if none is waiting."""
        try:
            return self._recv_queue.get_nowait()
        except queue.Empty:
            return None

    # --- shutdown ----------------------------------------------------------

    def close(self) -> None:
        """Close the connection, sending a FIN if it was established."""
        self._close(None)

    def _close(self, reason: BaseException | None) -> None:
        with self._close_guard:
            if self._close_started:
                return
            self._close_started = True

        self._close_error = reason
        self._closed.set()

        with self._lock:
            old_state = self._state
            if old_state == ARQState.ESTABLISHED:
                self._state = ARQState.FIN_WAIT_1
                with contextlib.suppress(OSError):
                    self._transmit(
                        fin_packet(self._local_seq, self._recv_buf.expected_seq())
                    )
                self._local_seq = (self._local_seq + 1) & SEQ_MASK
            else:
                self._state = ARQState.CLOSED

        self._established.set()

        if self._handler is not None and old_state == ARQState.ESTABLISHED:
            self._notify(self._handler.on_disconnected, self.remote_addr, reason)

        current = threading.current_thread()
        for thread in self._threads:
            if thread is not current:
                thread.join()

        while True:
            try:
                self._recv_queue.get_nowait()
            except queue.Empty:
                break
        self._drain_send_queue()

    # --- low level ---------------------------------------------------------

    def _send_packet(self, packet: ARQPacket) -> None:
        if self.is_closed():
            raise ConnClosedError("connection closed")
        self._transmit(packet)

    def _transmit(self, packet: ARQPacket) -> None:
        if self._sock is None:
            raise OSError("no socket to send on")
        with self._lock:
            self._sock.sendto(packet.encode(), self.remote_addr)
            self._last_send = time.monotonic()

    @staticmethod
    def _notify(callback: Callable, *args) -> None:
        threading.Thread(target=callback, args=args, daemon=True).start()

    def _update_rtt(self, sample: float) -> None:
        with self._lock:
            if self._srtt == 0:
                self._srtt = sample
                self._rtt_var = sample / 2
            else:
                diff = abs(self._srtt - sample)
                self._rtt_var = self._rtt_var * 0.75 + diff * 0.25
                self._srtt = self._srtt * 0.875 + sample * 0.125

            if self._min_rtt == 0 or sample < self._min_rtt:
                self._min_rtt = sample

            rto = self._srtt + 4 * self._rtt_var
            self._rto = min(max(rto, self._config.rto_min), self._config.rto_max)

            self._stats.srtt = self._srtt
            self._stats.rtt_var = self._rtt_var
            self._stats.rto = self._rto
            self._stats.min_rtt = self._min_rtt

    # --- inspection --------------------------------------------------------

    def state(self) -> ARQState:
        """Current connection state."""
        with self._lock:
            return self._state

    def stats(self) -> ARQStats:
        """Snapshot of the connection's counters."""
        with self._lock:
            return replace(
                self._stats,
                state=str(self._state),
                last_activity=self._last_recv,
                uptime=time.monotonic() - self._start_time,
                send_window=self._send_buf.available(),
                recv_window=self._recv_buf.window_size(),
            )

    def is_established(self) -> bool:
        """Whether the connection is established."""
        return self.state() == ARQState.ESTABLISHED

    def is_closed(self) -> bool:
        """Whether close has begun."""
        return self._closed.is_set()

    def close_error(self) -> BaseException | None:
        """Why the connection was closed, or None for a normal close."""
        return self._close_error

    def wait_established(self, timeout: float | None = None) -> None:
        """Block until the handshake completes."""
        self._established.wait(timeout)
        if self._closed.is_set():
            raise ConnClosedError("connection closed")
        if not self._established.is_set():
            raise ConnTimeoutError("timed out waiting for connection")