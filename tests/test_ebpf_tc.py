import subprocess
from unittest import mock

import pytest

from phantomwire.ebpf_tc import TCCommandError, TCManager


class Recorder:
    def __init__(self, failures=None):
        self.calls = []
        self.failures = failures or {}

    def __call__(self, args, **kwargs):
        self.calls.append(list(args))
        for marker, output in self.failures.items():
            if marker in args:
                return subprocess.CompletedProcess(args, 2, stdout=output)
        return subprocess.CompletedProcess(args, 0, stdout="")


def test_load_runs_commands_in_order():
    rec = Recorder()
    with mock.patch("subprocess.run", rec):
        mgr = TCManager("eth0", "/opt/phantom/ebpf")
        mgr.load_fake_tcp(54321, 54322)
    assert mgr.is_loaded()
    assert rec.calls[0] == ["tc", "qdisc", "add", "dev", "eth0", "clsact"]
    assert rec.calls[1][:5] == ["tc", "filter", "add", "dev", "eth0"]
    assert "egress" in rec.calls[1]
    assert "/opt/phantom/ebpf/tc_faketcp.o" in rec.calls[1]
    assert rec.calls[1][-1] == "tc_faketcp_egress"
    assert rec.calls[2][-1] == "tc_faketcp_ingress"
    assert len(rec.calls) == 5


def test_port_values_encode_little_endian():
    rec = Recorder()
    with mock.patch("subprocess.run", rec):
        mgr = TCManager("eth0", "/p")
        mgr.load_fake_tcp(54321, 54322)
    assert mgr.is_loaded() is True
    for call, key, port in ((rec.calls[3], "0", 54321), (rec.calls[4], "1", 54322)):
        assert call[:5] == ["bpftool", "map", "update", "name", "faketcp_config"]
        assert call[call.index("key") + 1] == key
        i = call.index("value")
        assert int(call[i + 1]) | (int(call[i + 2]) << 8) == port


def test_existing_qdisc_is_tolerated():
    rec = Recorder({"qdisc": "RTNETLINK answers: File exists"})
    with mock.patch("subprocess.run", rec):
        mgr = TCManager("eth0", "/p")
        mgr.load_fake_tcp(1000, 1001)
    assert mgr.is_loaded()


def test_other_qdisc_failure_raises():
    rec = Recorder({"qdisc": "Operation not permitted"})
    with mock.patch("subprocess.run", rec):
        mgr = TCManager("eth0", "/p")
        with pytest.raises(TCCommandError) as info:
            mgr.load_fake_tcp(1000, 1001)
    assert "Operation not permitted" in info.value.output
    assert not mgr.is_loaded()
    assert len(rec.calls) == 1


def test_filter_failure_raises():
    rec = Recorder({"filter": "bad object"})
    with mock.patch("subprocess.run", rec):
        mgr = TCManager("eth0", "/p")
        with pytest.raises(TCCommandError):
            mgr.load_fake_tcp(1000, 1001)
    assert not mgr.is_loaded()


def test_missing_tool_raises():
    with mock.patch("subprocess.run", side_effect=FileNotFoundError("tc")):
        mgr = TCManager("eth0", "/p")
        with pytest.raises(TCCommandError):
            mgr.load_fake_tcp(1000, 1001)
    assert not mgr.is_loaded()


def test_second_load_is_noop():
    rec = Recorder()
    with mock.patch("subprocess.run", rec):
        mgr = TCManager("eth0", "/p")
        mgr.load_fake_tcp(1000, 1001)
        count = len(rec.calls)
        mgr.load_fake_tcp(1000, 1001)
    assert mgr.is_loaded() is True
    assert count == 5
    assert len(rec.calls) == count


def test_unload_removes_filters():
    rec = Recorder()
    with mock.patch("subprocess.run", rec):
        mgr = TCManager("eth0", "/p")
        mgr.load_fake_tcp(1000, 1001)
        rec.calls.clear()
        mgr.unload()
    assert not mgr.is_loaded()
    assert rec.calls == [
        ["tc", "filter", "del", "dev", "eth0", "egress"],
        ["tc", "filter", "del", "dev", "eth0", "ingress"],
    ]


def test_unload_when_not_loaded_runs_nothing():
    rec = Recorder()
    with mock.patch("subprocess.run", rec):
        mgr = TCManager("eth0", "/p")
        mgr.unload()
    assert rec.calls == []
    assert not mgr.is_loaded()