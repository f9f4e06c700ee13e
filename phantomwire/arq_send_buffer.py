"""Send-side sliding window with retransmission bookkeeping."""

from __future__ import annotations

import threading
import time
from typing import Iterable

from phantomwire.arq_types import (
    FAST_RETRANSMIT_THRESHOLD,
    SEQ_MASK,
    ARQPacketInfo,
    SACKRange,
)


class ARQSendBuffer:
    """Ring of unacknowledged packets between ``base`` and ``next_seq``.

    Times are ``time.monotonic()`` seconds.
    """

    def __init__(self, size: int, initial_seq: int) -> None:
        if size <= 0:
            raise ValueError(f"buffer size must be positive, got {size}")
        self._size = size
        self._lock = threading.RLock()
        self._init_state(initial_seq)

    def _init_state(self, initial_seq: int) -> None:
        self._entries: list[ARQPacketInfo | None] = [None] * self._size
        self._base = initial_seq & SEQ_MASK
        self._next_seq = self._base
        self._in_flight = 0
        self._dup_ack_count: dict[int, int] = {}
        self._sack_bitmap = [False] * self._size
        self._total_sent = 0
        self._total_retransmit = 0
        self._total_acked = 0

    def _outstanding(self) -> int:
        return (self._next_seq - self._base) & SEQ_MASK

    def _in_window(self, seq: int) -> bool:
        return self._base <= seq < self._next_seq

    def _entry(self, seq: int) -> ARQPacketInfo | None:
        return self._entries[seq % self._size]

    def add(self, data: bytes) -> int | None:
        """Queue a payload and return its sequence number, or None if the window is full."""
        with self._lock:
            if self._outstanding() >= self._size:
                return None
            seq = self._next_seq
            self._entries[seq % self._size] = ARQPacketInfo(
                seq=seq,
                data=bytes(data),
                sent_time=time.monotonic(),
                in_flight=True,
                first_sent=True,
            )
            self._next_seq = (self._next_seq + 1) & SEQ_MASK
            self._in_flight += len(data)
            self._total_sent += 1
            return seq

    def mark_sent(self, seq: int, rto: float) -> None:
        """Record that ``seq`` went out now and should be retried after ``rto``."""
        with self._lock:
            if not self._in_window(seq):
                return
            info = self._entry(seq)
            if info is None:
                return
            now = time.monotonic()
            info.sent_time = now
            info.retransmit_at = now + rto
            info.in_flight = True

    def on_ack(self, ack: int) -> tuple[int, float, list[int]]:
        """Apply a cumulative ACK; return ``(acked_bytes, rtt, newly_acked_seqs)``."""
        with self._lock:
            if ack <= self._base or ack > self._next_seq:
                if ack == self._base:
                    self._dup_ack_count[ack] = self._dup_ack_count.get(ack, 0) + 1
                return 0, 0.0, []

            acked_bytes = 0
            rtt = 0.0
            new_acks: list[int] = []
            for seq in range(self._base, ack):
                idx = seq % self._size
                info = self._entries[idx]
                if info is not None and not info.acked:
                    info.acked = True
                    info.in_flight = False
                    acked_bytes += info.size
                    self._in_flight -= info.size
                    self._total_acked += 1
                    new_acks.append(seq)
                    if rtt == 0.0 and not info.is_retransmit:
                        rtt = time.monotonic() - info.sent_time
                self._entries[idx] = None

            self._base = ack
            self._dup_ack_count = {
                seq: count for seq, count in self._dup_ack_count.items() if seq >= ack
            }
            return acked_bytes, rtt, new_acks

    def on_sack(self, ranges: Iterable[SACKRange]) -> tuple[int, list[int]]:
        """Apply selective acknowledgements; return ``(acked_bytes, sacked_seqs)``."""
        with self._lock:
            acked_bytes = 0
            sacked: list[int] = []
            for r in ranges:
                for seq in range(r.start, r.end):
                    if not self._in_window(seq):
                        continue
                    idx = seq % self._size
                    info = self._entries[idx]
                    if info is not None and not info.acked:
                        info.acked = True
                        info.in_flight = False
                        acked_bytes += info.size
                        self._in_flight -= info.size
                        sacked.append(seq)
                        self._sack_bitmap[idx] = True
            return acked_bytes, sacked

    def _unacked(self):
        for seq in range(self._base, self._next_seq):
            info = self._entry(seq)
            if info is not None and not info.acked:
                yield info

    def retransmit_packets(self, now: float | None = None) -> list[ARQPacketInfo]:
        """Packets in flight whose retransmission time has passed."""
        if now is None:
            now = time.monotonic()
        with self._lock:
            return [
                info
                for info in self._unacked()
                if info.in_flight and now > info.retransmit_at
            ]

    def fast_retransmit_packets(self) -> list[ARQPacketInfo]:
        """Packets with enough duplicate ACKs; each is returned only once."""
        with self._lock:
            result: list[ARQPacketInfo] = []
            for seq, count in list(self._dup_ack_count.items()):
                if count < FAST_RETRANSMIT_THRESHOLD or not self._in_window(seq):
                    continue
                info = self._entry(seq)
                if info is not None and not info.acked and info.in_flight:
                    result.append(info)
                    del self._dup_ack_count[seq]
            return result

    def mark_retransmit(self, seq: int, rto: float) -> bool:
        """Record a retransmission of ``seq``; False if it is not outstanding."""
        with self._lock:
            if not self._in_window(seq):
                return False
            info = self._entry(seq)
            if info is None or info.acked:
                return False
            now = time.monotonic()
            info.sent_time = now
            info.retransmit_at = now + rto
            info.retries += 1
            info.is_retransmit = True
            info.first_sent = False
            self._total_retransmit += 1
            return True

    def mark_lost(self, seq: int) -> int:
        """Mark ``seq`` lost and return its size, or 0 if nothing changed."""
        with self._lock:
            if not self._in_window(seq):
                return 0
            info = self._entry(seq)
            if info is None or info.acked or info.lost:
                return 0
            info.lost = True
            if info.in_flight:
                info.in_flight = False
                self._in_flight -= info.size
            return info.size

    def get_packet(self, seq: int) -> ARQPacketInfo | None:
        """Bookkeeping for ``seq`` if it lies in the window."""
        with self._lock:
            if not self._in_window(seq):
                return None
            return self._entry(seq)

    def in_flight_bytes(self) -> int:
        """Bytes sent but neither acknowledged nor lost."""
        with self._lock:
            return self._in_flight

    def available(self) -> int:
        """Free slots in the window."""
        with self._lock:
            return self._size - self._outstanding()

    def is_full(self) -> bool:
        """Whether no more packets can be added."""
        with self._lock:
            return self._outstanding() >= self._size

    def base(self) -> int:
        """Lowest unacknowledged sequence number."""
        with self._lock:
            return self._base

    def next_seq(self) -> int:
        """Sequence number the next added packet will get."""
        with self._lock:
            return self._next_seq

    def unacked_count(self) -> int:
        """Number of packets in the window not yet acknowledged."""
        with self._lock:
            return sum(1 for _ in self._unacked())

    def stats(self) -> dict[str, int]:
        """Snapshot of the buffer's counters."""
        with self._lock:
            return {
                "base": self._base,
                "next_seq": self._next_seq,
                "in_flight": self._in_flight,
                "available": self._size - self._outstanding(),
                "total_sent": self._total_sent,
                "total_retransmit": self._total_retransmit,
                "total_acked": self._total_acked,
            }

    def reset(self, initial_seq: int) -> None:
        """Drop everything and start again at ``initial_seq``."""
        with self._lock:
            self._init_state(initial_seq)