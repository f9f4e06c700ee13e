import time

import pytest

from phantomwire.arq_send_buffer import ARQSendBuffer
from phantomwire.arq_types import FAST_RETRANSMIT_THRESHOLD, SACKRange


def _filled(size, initial, payloads):
    buf = ARQSendBuffer(size, initial)
    seqs = [buf.add(p) for p in payloads]
    return buf, seqs


def test_add_assigns_sequential_numbers():
    payloads = [b"aa", b"bbb", b"c"]
    buf, seqs = _filled(8, 100, payloads)
    assert seqs == [100, 101, 102]
    assert buf.in_flight_bytes() == sum(len(p) for p in payloads)
    assert buf.available() == 8 - len(payloads)
    assert buf.next_seq() == 100 + len(payloads)
    assert buf.base() == 100


def test_add_when_full_returns_none():
    buf, _ = _filled(4, 0, [b"x"] * 4)
    assert buf.is_full()
    assert buf.add(b"y") is None
    assert buf.available() == 0


def test_cumulative_ack():
    payloads = [b"aa", b"bbb", b"c"]
    buf, seqs = _filled(8, 10, payloads)
    acked, rtt, new = buf.on_ack(12)
    assert acked == len(payloads[0]) + len(payloads[1])
    assert new == seqs[:2]
    assert rtt >= 0.0
    assert buf.base() == 12
    assert buf.in_flight_bytes() == len(payloads[2])
    assert buf.get_packet(10) is None
    assert buf.stats()["total_acked"] == 2


def test_invalid_ack_changes_nothing():
    buf, _ = _filled(8, 10, [b"a", b"b"])
    assert buf.on_ack(99) == (0, 0.0, [])
    assert buf.on_ack(5) == (0, 0.0, [])
    assert buf.base() == 10


def test_duplicate_acks_trigger_fast_retransmit_once():
    buf, seqs = _filled(8, 10, [b"a", b"b"])
    for _ in range(FAST_RETRANSMIT_THRESHOLD - 1):
        buf.on_ack(10)
    assert buf.fast_retransmit_packets() == []
    buf.on_ack(10)
    packets = buf.fast_retransmit_packets()
    assert [p.seq for p in packets] == [seqs[0]]
    assert buf.fast_retransmit_packets() == []


def test_sack_marks_packets_acked():
    payloads = [b"a", b"bb", b"ccc", b"dddd"]
    buf, seqs = _filled(8, 0, payloads)
    acked, sacked = buf.on_sack([SACKRange(2, 4)])
    assert sacked == seqs[2:]
    assert acked == len(payloads[2]) + len(payloads[3])
    assert buf.unacked_count() == 2
    assert buf.get_packet(2).acked
    assert buf.on_sack([SACKRange(2, 4)]) == (0, [])


def test_timeout_retransmit_selection():
    buf, seqs = _filled(8, 0, [b"a"])
    buf.mark_sent(seqs[0], 0.5)
    now = time.monotonic()
    assert buf.retransmit_packets(now) == []
    due = buf.retransmit_packets(now + 1.0)
    assert [p.seq for p in due] == seqs


def test_mark_retransmit():
    buf, seqs = _filled(8, 0, [b"a"])
    assert buf.mark_retransmit(seqs[0], 0.2)
    info = buf.get_packet(seqs[0])
    assert info.retries == 1
    assert info.is_retransmit
    assert not info.first_sent
    assert not buf.mark_retransmit(50, 0.2)
    assert buf.stats()["total_retransmit"] == 1


def test_mark_lost():
    buf, seqs = _filled(8, 0, [b"abc", b"de"])
    assert buf.mark_lost(seqs[0]) == len(b"abc")
    assert buf.mark_lost(seqs[0]) == 0
    assert buf.in_flight_bytes() == len(b"de")
    assert buf.mark_lost(77) == 0


def test_acked_packets_not_retransmitted():
    buf, seqs = _filled(8, 0, [b"a", b"b"])
    buf.on_sack([SACKRange(0, 1)])
    assert not buf.mark_retransmit(seqs[0], 0.1)
    due = buf.retransmit_packets(time.monotonic() + 100)
    assert [p.seq for p in due] == seqs[1:]


def test_add_copies_data():
    buf = ARQSendBuffer(4, 0)
    data = bytearray(b"orig")
    seq = buf.add(data)
    data[:] = b"zzzz"
    assert buf.get_packet(seq).data == b"orig"


def test_reset():
    buf, _ = _filled(4, 0, [b"a", b"b"])
    buf.on_ack(0)
    buf.reset(500)
    assert buf.base() == 500
    assert buf.next_seq() == 500
    assert buf.in_flight_bytes() == 0
    assert buf.available() == 4
    assert buf.stats()["total_sent"] == 0
    assert buf.fast_retransmit_packets() == []


def test_invalid_size():
    with pytest.raises(ValueError):
        ARQSendBuffer(-1, 0)