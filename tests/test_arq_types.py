from phantomwire.arq_types import (
    DEFAULT_ACK_DELAY,
    DEFAULT_IDLE_TIMEOUT,
    DEFAULT_KEEPALIVE,
    DEFAULT_MAX_RETRIES,
    DEFAULT_MTU,
    DEFAULT_RTO_INIT,
    DEFAULT_RTO_MAX,
    DEFAULT_RTO_MIN,
    DEFAULT_WINDOW_SIZE,
    ARQConnConfig,
    ARQPacketInfo,
    ARQRecvPacketInfo,
    ARQState,
    ARQStats,
    SACKRange,
)


def test_state_names_in_order():
    names = [str(ARQState(value)) for value in range(11)]
    assert names == [
        "CLOSED",
        "LISTEN",
        "SYN_SENT",
        "SYN_RECEIVED",
        "ESTABLISHED",
        "FIN_WAIT_1",
        "FIN_WAIT_2",
        "CLOSE_WAIT",
        "CLOSING",
        "LAST_ACK",
        "TIME_WAIT",
    ]


def test_state_from_value():
    assert ARQState(4) is ARQState.ESTABLISHED
    assert ARQState(0) is ARQState.CLOSED


def test_sack_range_membership():
    r = SACKRange(10, 15)
    assert 10 in r
    assert 14 in r
    assert 15 not in r
    assert 9 not in r
    assert len(r) == 5


def test_sack_range_empty_when_reversed():
    assert len(SACKRange(20, 10)) == 0


def test_packet_info_size_follows_data():
    info = ARQPacketInfo(seq=7, data=bytearray(b"abc"))
    assert info.size == 3
    assert info.data == b"abc"
    assert info.retries == 0
    assert not info.acked


def test_recv_packet_info_defaults():
    info = ARQRecvPacketInfo(seq=3, data=b"x")
    assert info.delivered is False
    assert info.seq == 3


def test_config_defaults():
    cfg = ARQConnConfig()
    assert cfg.max_window_size == DEFAULT_WINDOW_SIZE
    assert cfg.mtu == DEFAULT_MTU
    assert cfg.rto_min == DEFAULT_RTO_MIN
    assert cfg.rto_max == DEFAULT_RTO_MAX
    assert cfg.rto_init == DEFAULT_RTO_INIT
    assert cfg.max_retries == DEFAULT_MAX_RETRIES
    assert cfg.keepalive == DEFAULT_KEEPALIVE
    assert cfg.idle_timeout == DEFAULT_IDLE_TIMEOUT
    assert cfg.ack_delay == DEFAULT_ACK_DELAY
    assert cfg.enable_sack is True
    assert cfg.rto_min < cfg.rto_init < cfg.rto_max


def test_stats_start_at_zero_and_closed():
    stats = ARQStats()
    assert stats.bytes_sent == 0
    assert stats.retransmits == 0
    assert stats.state == str(ARQState.CLOSED)