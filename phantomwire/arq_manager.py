"""Registry of ARQ connections keyed by remote address."""

from __future__ import annotations

import threading
from typing import Any

from phantomwire.arq_conn import ARQConn, CongestionController
from phantomwire.arq_packet import decode_packet, rst_packet
from phantomwire.arq_types import FLAG_ACK, FLAG_SYN, ARQConnConfig, ARQHandler, ARQState

_CLEANUP_INTERVAL = 30.0


class UnknownConnectionError(ConnectionError):
    """A non-SYN packet arrived from an address with no connection."""


def _addr_key(addr) -> str:
    if isinstance(addr, tuple) and len(addr) >= 2:
        host, port = addr[0], addr[1]
        if ":" in str(host):
            return f"[{host}]:{port}"
        return f"{host}:{port}"
    return str(addr)


class ARQManager:
    """Creates, tracks and expires ARQ connections for one listening socket."""

    def __init__(
        self,
        config: ARQConnConfig | None = None,
        congestion: CongestionController | None = None,
        handler: ARQHandler | None = None,
        cleanup_interval: float = _CLEANUP_INTERVAL,
    ) -> None:
        self._config = config if config is not None else ARQConnConfig()
        self._congestion = congestion
        self._handler = handler
        self._conns: dict[str, ARQConn] = {}
        self._total = 0
        self._active = 0
        self._lock = threading.RLock()
        self._stop = threading.Event()
        self._cleanup_interval = cleanup_interval
        self._cleanup_thread = threading.Thread(target=self._cleanup_loop, daemon=True)
        self._cleanup_thread.start()

    def __enter__(self) -> "ARQManager":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def _new_conn(self, sock, addr) -> ARQConn:
        return ARQConn(sock, addr, self._config, self._congestion, self._handler)

    def handle_packet(self, data: bytes, addr, sock) -> None:
        """Decode a datagram and route it, opening a connection on a SYN."""
        packet = decode_packet(data)
        key = _addr_key(addr)

        with self._lock:
            conn = self._conns.get(key)
            if conn is None:
                if not packet.flags & FLAG_SYN or packet.flags & FLAG_ACK:
                    sock.sendto(rst_packet(0).encode(), addr)
                    raise UnknownConnectionError(
                        f"non-SYN packet from unknown connection {key}"
                    )
                conn = self._new_conn(sock, addr)
                conn.accept(packet)
                self._conns[key] = conn
                conn.start()
                self._total += 1
                self._active += 1
                return

        conn.handle_packet(packet)

    def get_conn(self, addr) -> ARQConn | None:
        """The connection to ``addr``, or None."""
        with self._lock:
            return self._conns.get(_addr_key(addr))

    def get_or_create_conn(self, sock, addr) -> ARQConn:
        """The connection to ``addr``, created (not started) if missing."""
        key = _addr_key(addr)
        with self._lock:
            conn = self._conns.get(key)
            if conn is None:
                conn = self._new_conn(sock, addr)
                self._conns[key] = conn
                self._total += 1
                self._active += 1
            return conn

    def create_conn(self, sock, addr) -> ARQConn:
        """A connection for actively dialling ``addr``; reuses an existing one."""
        return self.get_or_create_conn(sock, addr)

    def remove_conn(self, addr) -> None:
        """Forget and close the connection to ``addr``."""
        with self._lock:
            conn = self._conns.pop(_addr_key(addr), None)
            if conn is not None:
                self._active -= 1
        if conn is not None:
            conn.close()

    def _cleanup_loop(self) -> None:
        while not self._stop.wait(self._cleanup_interval):
            self.cleanup()

    def cleanup(self) -> None:
        """Drop connections that are closed or finished."""
        to_close: list[ARQConn] = []
        with self._lock:
            for key, conn in list(self._conns.items()):
                if conn.is_closed():
                    del self._conns[key]
                    self._active -= 1
                elif conn.state() in (ARQState.CLOSED, ARQState.TIME_WAIT):
                    del self._conns[key]
                    self._active -= 1
                    to_close.append(conn)
        for conn in to_close:
            conn.close()

    def active_conns(self) -> int:
        """Number of tracked connections."""
        with self._lock:
            return self._active

    def total_conns(self) -> int:
        """Number of connections ever created."""
        with self._lock:
            return self._total

    def all_conns(self) -> list[ARQConn]:
        """Every tracked connection."""
        with self._lock:
            return list(self._conns.values())

    def broadcast(self, data: bytes) -> int:
        """Send ``data`` on every established connection; return how many succeeded."""
        count = 0
        for conn in self.all_conns():
            if not conn.is_established():
                continue
            try:
                conn.send(data)
            except (ConnectionError, TimeoutError, BufferError):
                continue
            count += 1
        return count

    def close(self) -> None:
        """Stop the cleanup thread and close every connection."""
        self._stop.set()
        with self._lock:
            conns = list(self._conns.values())
            self._conns.clear()
        for conn in conns:
            conn.close()
        if self._cleanup_thread is not threading.current_thread():
            self._cleanup_thread.join()

    def stats(self) -> dict[str, Any]:
        """Counters for the manager and each connection."""
        with self._lock:
            items = list(self._conns.items())
            result: dict[str, Any] = {
                "total_conns": self._total,
                "active_conns": self._active,
            }
        connections = []
        for key, conn in items:
            s = conn.stats()
            connections.append(
                {
                    "remote_addr": key,
                    "state": s.state,
                    "bytes_sent": s.bytes_sent,
                    "bytes_received": s.bytes_received,
                    "retransmits": s.retransmits,
                    "rtt_ms": int(s.srtt * 1000),
                }
            )
        result["connections"] = connections
        return result