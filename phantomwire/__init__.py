"""Reliable ARQ transport over UDP, a FakeTCP packet codec, eBPF record types and a TC loader."""

__version__ = "4.0.0"