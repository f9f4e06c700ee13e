"""Receive-side sliding window that reorders ARQ packets."""

from __future__ import annotations

import threading
import time

from phantomwire.arq_types import MAX_SACK_RANGES, SEQ_MASK, ARQRecvPacketInfo, SACKRange


class ARQRecvBuffer:
    """Fixed-size ring of received packets, delivered in sequence order."""

    def __init__(self, size: int, initial_seq: int) -> None:
        if size <= 0:
            raise ValueError(f"buffer size must be positive, got {size}")
        self._size = size
        self._entries: list[ARQRecvPacketInfo | None] = [None] * size
        self._expected = initial_seq & SEQ_MASK
        self._max_received = self._expected
        self._total_received = 0
        self._total_delivered = 0
        self._total_duplicate = 0
        self._total_out_of_order = 0
        self._lock = threading.RLock()

    def _holds(self, seq: int) -> bool:
        entry = self._entries[seq % self._size]
        return entry is not None and entry.seq == seq

    def insert(self, seq: int, data: bytes) -> tuple[bool, bool]:
        """Store a packet; return ``(is_duplicate, is_out_of_order)``."""
        with self._lock:
            if seq < self._expected:
                self._total_duplicate += 1
                return True, False
            if seq >= self._expected + self._size:
                return False, True

            idx = seq % self._size
            if self._holds(seq):
                self._total_duplicate += 1
                return True, False

            self._entries[idx] = ARQRecvPacketInfo(
                seq=seq, data=bytes(data), received_at=time.monotonic()
            )
            self._total_received += 1
            if seq > self._max_received:
                self._max_received = seq

            out_of_order = seq != self._expected
            if out_of_order:
                self._total_out_of_order += 1
            return False, out_of_order

    def _read(self, limit: int | None) -> list[bytes]:
        result: list[bytes] = []
        with self._lock:
            while limit is None or len(result) < limit:
                idx = self._expected % self._size
                info = self._entries[idx]
                if info is None or info.seq != self._expected:
                    break
                result.append(info.data)
                info.delivered = True
                self._entries[idx] = None
                self._expected = (self._expected + 1) & SEQ_MASK
                self._total_delivered += 1
        return result

    def read_ordered(self) -> list[bytes]:
        """Remove and return every payload that is now in sequence."""
        return self._read(None)

    def read_ordered_with_limit(self, max_count: int) -> list[bytes]:
        """Like read_ordered, but return at most ``max_count`` payloads."""
        return self._read(max_count)

    def expected_seq(self) -> int:
        """Next sequence number expected, the cumulative acknowledgement point."""
        with self._lock:
            return self._expected

    def sack_ranges(self) -> list[SACKRange]:
        """Ranges received beyond the first gap, at most MAX_SACK_RANGES."""
        with self._lock:
            ranges: list[SACKRange] = []
            in_range = False
            range_start = 0
            for offset in range(self._size):
                if len(ranges) >= MAX_SACK_RANGES:
                    break
                seq = self._expected + offset
                received = self._holds(seq)
                if received and not in_range:
                    in_range = True
                    range_start = seq
                elif not received and in_range:
                    in_range = False
                    if range_start > self._expected:
                        ranges.append(SACKRange(range_start, seq))

            if in_range and range_start > self._expected:
                end_seq = self._expected + self._size
                for offset in reversed(range(self._size)):
                    seq = self._expected + offset
                    if self._holds(seq):
                        end_seq = seq + 1
                        break
                if len(ranges) < MAX_SACK_RANGES:
                    ranges.append(SACKRange(range_start, end_seq))
            return ranges

    def has_gaps(self) -> bool:
        """Whether something past the expected sequence has arrived."""
        with self._lock:
            return self._max_received > self._expected

    def window_size(self) -> int:
        """Number of free slots."""
        with self._lock:
            return self._size - sum(entry is not None for entry in self._entries)

    def is_full(self) -> bool:
        """Whether every slot is occupied."""
        with self._lock:
            return all(entry is not None for entry in self._entries)

    def pending_count(self) -> int:
        """Number of stored packets not yet delivered."""
        with self._lock:
            return sum(
                entry is not None and not entry.delivered for entry in self._entries
            )

    def stats(self) -> dict[str, int]:
        """Snapshot of the buffer's counters."""
        with self._lock:
            return {
                "expected": self._expected,
                "max_received": self._max_received,
                "window_size": self._size - self.pending_count(),
                "total_received": self._total_received,
                "total_delivered": self._total_delivered,
                "total_duplicate": self._total_duplicate,
                "total_out_of_order": self._total_out_of_order,
            }

    def reset(self, initial_seq: int) -> None:
        """Drop everything and start again at ``initial_seq``."""
        with self._lock:
            self._entries = [None] * self._size
            self._expected = initial_seq & SEQ_MASK
            self._max_received = self._expected
            self._total_received = 0
            self._total_delivered = 0
            self._total_duplicate = 0
            self._total_out_of_order = 0