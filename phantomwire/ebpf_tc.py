"""Loads the FakeTCP traffic-control programs with the ``tc`` and ``bpftool`` tools."""

from __future__ import annotations

import subprocess
import threading


class TCCommandError(RuntimeError):
    """An external tc or bpftool command failed."""

    def __init__(self, message: str, output: str = "") -> None:
        super().__init__(message)
        self.output = output


def _run(args: list[str]) -> None:
    try:
        result = subprocess.run(
            args,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            text=True,
            check=False,
        )
    except OSError as exc:
        raise TCCommandError(f"{args[0]}: {exc}") from exc
    if result.returncode != 0:
        output = result.stdout or ""
        raise TCCommandError(
            f"{output.strip()}: exit status {result.returncode}", output
        )


class TCManager:
    """Attaches the FakeTCP egress and ingress filters to one interface."""

    def __init__(self, iface: str, program_path: str) -> None:
        self._iface = iface
        self._program_path = program_path
        self._loaded = False
        self._lock = threading.Lock()

    def _tc(self, *args: str) -> None:
        _run(["tc", *args])

    def _configure_port(self, key: int, port: int) -> None:
        _run(
            [
                "bpftool", "map", "update",
                "name", "faketcp_config",
                "key", str(key), "0", "0", "0",
                "value", str(port & 0xFF), str((port >> 8) & 0xFF), "0", "0",
            ]
        )

    def load_fake_tcp(self, udp_port: int, tcp_port: int) -> None:
        """Install the clsact qdisc, both filters and the port configuration."""
        with self._lock:
            if self._loaded:
                return
            try:
                self._tc("qdisc", "add", "dev", self._iface, "clsact")
            except TCCommandError as exc:
                if "File exists" not in str(exc):
                    raise TCCommandError(f"creating qdisc failed: {exc}", exc.output) from exc

            obj_path = f"{self._program_path}/tc_faketcp.o"
            for direction in ("egress", "ingress"):
                try:
                    self._tc(
                        "filter", "add", "dev", self._iface, direction,
                        "bpf", "da", "obj", obj_path, "sec", f"tc_faketcp_{direction}",
                    )
                except TCCommandError as exc:
                    raise TCCommandError(
                        f"loading {direction} program failed: {exc}", exc.output
                    ) from exc

            for key, port, name in ((0, udp_port, "UDP"), (1, tcp_port, "TCP")):
                try:
                    self._configure_port(key, port)
                except TCCommandError as exc:
                    raise TCCommandError(
                        f"configuring {name} port failed: {exc}", exc.output
                    ) from exc

            self._loaded = True

    def unload(self) -> None:
        """Remove both filters; failures are ignored."""
        with self._lock:
            if not self._loaded:
                return
            for direction in ("egress", "ingress"):
                try:
                    self._tc("filter", "del", "dev", self._iface, direction)
                except TCCommandError:
                    pass
            self._loaded = False

    def is_loaded(self) -> bool:
        """Whether the programs are installed."""
        with self._lock:
            return self._loaded