import threading
import time

import pytest

from phantomwire.arq_conn import (
    ARQConn,
    CongestionController,
    ConnClosedError,
    ConnNotReadyError,
    ConnTimeoutError,
    InvalidStateError,
    SendQueueFullError,
)
from phantomwire.arq_packet import (
    ack_packet,
    data_packet,
    decode_packet,
    fin_packet,
    ping_packet,
    rst_packet,
    syn_ack_packet,
    syn_packet,
)
from phantomwire.arq_types import (
    FLAG_ACK,
    FLAG_DATA,
    FLAG_FIN,
    FLAG_PONG,
    FLAG_SACK,
    FLAG_SYN,
    MAX_PAYLOAD_SIZE,
    SEND_BUFFER_SIZE,
    ARQConnConfig,
    ARQState,
    SACKRange,
)

ADDR = ("127.0.0.1", 40000)
SYN_SEQ = 1000
LOCAL_SEQ = 5000


class FakeSocket:
    def __init__(self):
        self._lock = threading.Lock()
        self.sent = []

    def sendto(self, data, addr):
        with self._lock:
            self.sent.append((decode_packet(data), addr))
        return len(data)

    def packets(self):
        with self._lock:
            return [p for p, _ in self.sent]


class RecordingHandler:
    def __init__(self):
        self.connected = threading.Event()
        self.disconnected = threading.Event()
        self.reason = None
        self.data = []

    def on_data(self, data, addr):
        self.data.append(data)

    def on_connected(self, addr):
        self.connected.set()

    def on_disconnected(self, addr, reason):
        self.reason = reason
        self.disconnected.set()


def wait_for(predicate, timeout=2.0):
    end = time.monotonic() + timeout
    while time.monotonic() < end:
        if predicate():
            return True
        time.sleep(0.005)
    return predicate()


def established(sock, handler=None, config=None):
    conn = ARQConn(sock, ADDR, config=config, handler=handler, initial_seq=LOCAL_SEQ)
    conn.accept(syn_packet(SYN_SEQ, 64))
    conn.handle_packet(ack_packet(LOCAL_SEQ + 1, 64))
    return conn


def test_connect_completes_handshake():
    sock = FakeSocket()
    conn = ARQConn(sock, ADDR, initial_seq=LOCAL_SEQ)
    errors = []

    def run():
        try:
            conn.connect(timeout=2)
        except Exception as exc:
            errors.append(exc)

    thread = threading.Thread(target=run)
    thread.start()
    assert wait_for(lambda: sock.packets())
    syn = sock.packets()[0]
    assert syn.flags == FLAG_SYN
    assert syn.seq == LOCAL_SEQ
    conn.handle_packet(syn_ack_packet(SYN_SEQ, LOCAL_SEQ + 1, 64))
    thread.join(3)
    try:
        assert errors == []
        assert conn.state() == ARQState.ESTABLISHED
        ack = sock.packets()[-1]
        assert ack.flags & FLAG_ACK
        assert ack.ack == SYN_SEQ + 1
    finally:
        conn.close()


def test_connect_times_out():
    conn = ARQConn(FakeSocket(), ADDR)
    with pytest.raises(ConnTimeoutError):
        conn.connect(timeout=0.05)
    assert conn.state() == ARQState.CLOSED


def test_connect_in_wrong_state_raises():
    sock = FakeSocket()
    conn = established(sock)
    with pytest.raises(InvalidStateError):
        conn.connect(timeout=0.05)
    conn.close()


def test_accept_then_ack_establishes():
    sock = FakeSocket()
    handler = RecordingHandler()
    conn = ARQConn(sock, ADDR, handler=handler, initial_seq=LOCAL_SEQ)
    conn.accept(syn_packet(SYN_SEQ, 64))
    assert conn.state() == ARQState.SYN_RECEIVED
    syn_ack = sock.packets()[0]
    assert syn_ack.flags == FLAG_SYN | FLAG_ACK
    assert syn_ack.seq == LOCAL_SEQ
    assert syn_ack.ack == SYN_SEQ + 1

    conn.handle_packet(ack_packet(LOCAL_SEQ + 1, 64))
    assert conn.is_established()
    assert handler.connected.wait(2)
    conn.wait_established(timeout=0.1)
    conn.close()


def test_accept_in_wrong_state_raises():
    conn = established(FakeSocket())
    with pytest.raises(InvalidStateError):
        conn.accept(syn_packet(SYN_SEQ, 64))
    conn.close()


def test_data_is_delivered_in_order():
    conn = established(FakeSocket())
    conn.handle_packet(data_packet(SYN_SEQ + 2, 0, 64, b"world"))
    assert conn.recv_nowait() is None
    conn.handle_packet(data_packet(SYN_SEQ + 1, 0, 64, b"hello"))
    assert conn.recv(timeout=1) == b"hello"
    assert conn.recv(timeout=1) == b"world"
    assert conn.stats().bytes_received == len(b"hello") + len(b"world")
    conn.close()


def test_duplicate_data_is_counted():
    conn = established(FakeSocket())
    conn.handle_packet(data_packet(SYN_SEQ + 1, 0, 64, b"abc"))
    conn.handle_packet(data_packet(SYN_SEQ + 1, 0, 64, b"abc"))
    assert conn.recv_nowait() == b"abc"
    assert conn.recv_nowait() is None
    assert conn.stats().dup_acks == 1
    conn.close()


def test_send_before_established_raises():
    conn = ARQConn(FakeSocket(), ADDR)
    with pytest.raises(ConnNotReadyError):
        conn.send(b"x", timeout=0.1)
    with pytest.raises(ConnNotReadyError):
        conn.send_async(b"x")


def test_send_after_close_raises():
    conn = established(FakeSocket())
    conn.close()
    with pytest.raises(ConnClosedError):
        conn.send(b"x", timeout=0.1)


def test_send_splits_into_chunks():
    sock = FakeSocket()
    conn = established(sock)
    conn.start()
    payload = bytes(range(256)) * 12
    try:
        conn.send(payload, timeout=2)
        data = [p for p in sock.packets() if p.flags & FLAG_DATA]
        assert b"".join(p.data for p in data) == payload
        assert all(len(p.data) <= MAX_PAYLOAD_SIZE for p in data)
        assert data[0].seq == LOCAL_SEQ + 1
        assert [p.seq for p in data] == list(range(data[0].seq, data[0].seq + len(data)))
        stats = conn.stats()
        assert stats.bytes_sent == len(payload)
        assert stats.packets_sent == len(data)
    finally:
        conn.close()


def test_ack_clears_in_flight_and_updates_rtt():
    sock = FakeSocket()
    config = ARQConnConfig()
    conn = established(sock, config=config)
    conn.start()
    try:
        conn.send(b"payload", timeout=2)
        data = [p for p in sock.packets() if p.flags & FLAG_DATA]
        conn.handle_packet(ack_packet(data[-1].seq + 1, 64))
        stats = conn.stats()
        assert stats.acks_received == 1
        assert stats.bytes_in_flight == 0
        assert stats.rto >= config.rto_min
    finally:
        conn.close()


def test_timeout_retransmission():
    sock = FakeSocket()
    config = ARQConnConfig(rto_init=0.05, rto_min=0.05)
    conn = established(sock, config=config)
    conn.start()
    try:
        conn.send(b"lost", timeout=2)

        def resent():
            return len([p for p in sock.packets() if p.flags & FLAG_DATA]) >= 2

        assert wait_for(resent)
        data = [p for p in sock.packets() if p.flags & FLAG_DATA]
        assert data[0].seq == data[1].seq
        assert data[1].data == b"lost"
        assert conn.stats().timeout_retransmits >= 1
    finally:
        conn.close()


def test_gap_triggers_sack():
    sock = FakeSocket()
    conn = established(sock)
    conn.start()
    try:
        conn.handle_packet(data_packet(SYN_SEQ + 2, 0, 64, b"later"))

        def sack_sent():
            return any(p.flags & FLAG_SACK for p in sock.packets())

        assert wait_for(sack_sent)
        sack = next(p for p in sock.packets() if p.flags & FLAG_SACK)
        assert sack.ack == SYN_SEQ + 1
        assert sack.sack_ranges == (SACKRange(SYN_SEQ + 2, SYN_SEQ + 3),)
    finally:
        conn.close()


def test_ping_is_answered_with_pong():
    sock = FakeSocket()
    conn = established(sock)
    ping = ping_packet(SYN_SEQ + 1, LOCAL_SEQ + 1)
    conn.handle_packet(ping)
    pong = sock.packets()[-1]
    assert pong.flags & FLAG_PONG
    assert pong.timestamp == ping.timestamp
    assert pong.ack == SYN_SEQ + 1
    conn.close()


def test_fin_moves_to_last_ack():
    sock = FakeSocket()
    conn = established(sock)
    conn.handle_packet(fin_packet(SYN_SEQ + 1, LOCAL_SEQ + 1))
    assert conn.state() == ARQState.LAST_ACK
    fin = sock.packets()[-1]
    assert fin.flags & FLAG_FIN
    assert fin.ack == SYN_SEQ + 2
    conn.close()


def test_rst_closes_with_reason():
    handler = RecordingHandler()
    conn = established(FakeSocket(), handler=handler)
    conn.handle_packet(rst_packet(0))
    assert conn.is_closed()
    assert isinstance(conn.close_error(), ConnectionResetError)
    assert handler.disconnected.wait(2)
    assert isinstance(handler.reason, ConnectionResetError)


def test_close_sends_fin_once():
    sock = FakeSocket()
    conn = established(sock)
    before = len(sock.packets())
    conn.close()
    conn.close()
    after = sock.packets()[before:]
    assert len(after) == 1
    assert after[0].flags & FLAG_FIN
    assert conn.state() == ARQState.FIN_WAIT_1
    assert conn.is_closed()
    assert conn.close_error() is None


def test_recv_timeout_and_closed():
    conn = established(FakeSocket())
    with pytest.raises(ConnTimeoutError):
        conn.recv(timeout=0.05)
    conn.close()
    with pytest.raises(ConnClosedError):
        conn.recv(timeout=0.05)


def test_wait_established_after_close_raises():
    conn = ARQConn(FakeSocket(), ADDR)
    conn.close()
    with pytest.raises(ConnClosedError):
        conn.wait_established(timeout=0.1)


def test_wait_established_times_out():
    conn = ARQConn(FakeSocket(), ADDR)
    with pytest.raises(ConnTimeoutError):
        conn.wait_established(timeout=0.05)


def test_send_queue_full():
    conn = established(FakeSocket())
    for _ in range(SEND_BUFFER_SIZE):
        conn.send_async(b"x")
    with pytest.raises(SendQueueFullError):
        conn.send_async(b"x")
    conn.close()


def test_congestion_controller_can_block_sending():
    class Blocked(CongestionController):
        def can_send(self, size):
            return False

    sock = FakeSocket()
    conn = ARQConn(sock, ADDR, congestion=Blocked(), initial_seq=LOCAL_SEQ)
    conn.accept(syn_packet(SYN_SEQ, 64))
    conn.handle_packet(ack_packet(LOCAL_SEQ + 1, 64))
    conn.start()
    try:
        with pytest.raises(ConnTimeoutError):
            conn.send(b"held back", timeout=0.1)
        assert not [p for p in sock.packets() if p.flags & FLAG_DATA]
    finally:
        conn.close()


def test_stats_reflect_state():
    conn = established(FakeSocket())
    stats = conn.stats()
    assert stats.state == "ESTABLISHED"
    assert stats.packets_received == 1
    assert stats.uptime >= 0
    conn.close()
    assert conn.stats().state == "FIN_WAIT_1"