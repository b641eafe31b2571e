import pytest

from xdptools.stats import (
    MapType,
    Record,
    StatsRecord,
    calc_period,
    format_stats,
    format_stats_one,
    stats_collect,
    stats_print,
    stats_print_one,
    sum_percpu,
)
from xdptools.util import XDP_ACTION_MAX, XdpAction


def test_default_enables_four_actions():
    rec = StatsRecord.default()
    enabled = {i for i, r in enumerate(rec.stats) if r.enabled}
    assert enabled == {XdpAction.DROP, XdpAction.PASS, XdpAction.REDIRECT, XdpAction.TX}
    assert len(rec.stats) == XDP_ACTION_MAX


def test_wrong_record_count_rejected():
    with pytest.raises(ValueError):
        StatsRecord([Record()])


def test_copy_is_independent():
    rec = StatsRecord.default()
    dup = rec.copy()
    dup.stats[XdpAction.DROP].rx_packets = 42
    assert rec.stats[XdpAction.DROP].rx_packets == 0
    assert dup.stats[XdpAction.DROP].enabled


def test_calc_period_seconds():
    assert calc_period(Record(timestamp=3 * 10**9), Record(timestamp=10**9)) == 2.0


def test_calc_period_zero_or_backwards():
    assert calc_period(Record(timestamp=5), Record(timestamp=5)) == 0.0
    assert calc_period(Record(timestamp=1), Record(timestamp=5)) == 0.0


def test_sum_percpu():
    assert sum_percpu([(1, 10), (2, 20), (4, 40)]) == (7, 70)
    assert sum_percpu([]) == (0, 0)


def test_format_stats_one_lists_enabled_only():
    rec = StatsRecord()
    rec.stats[XdpAction.DROP] = Record(enabled=True, rx_packets=10, rx_bytes=5 * 1024)
    rec.stats[XdpAction.PASS] = Record(enabled=False, rx_packets=99, rx_bytes=99)
    text = format_stats_one(rec)
    lines = text.splitlines()
    assert len(lines) == 1
    fields = lines[0].split()
    assert fields == ["XDP_DROP", "10", "pkts", "5", "KiB"]
    assert lines[0].startswith("  XDP_DROP")


def test_stats_print_one_writes_stdout(capsys):
    rec = StatsRecord.default()
    stats_print_one(rec)
    assert capsys.readouterr().out == format_stats_one(rec)


def _pair(packets, nbytes, prev_ts=0, ts=10**9):
    prev = StatsRecord()
    cur = StatsRecord()
    prev.stats[XdpAction.PASS] = Record(timestamp=prev_ts, enabled=True)
    cur.stats[XdpAction.PASS] = Record(
        timestamp=ts, enabled=True, rx_packets=packets, rx_bytes=nbytes
    )
    return cur, prev


def test_format_stats_zero_period_stops():
    cur, prev = _pair(100, 100, prev_ts=10**9, ts=10**9)
    assert format_stats(cur, prev, now=0) == ""


def test_stats_print_writes_stdout(capsys):
    cur, prev = _pair(1, 1)
    stats_print(cur, prev)
    out = capsys.readouterr().out
    assert out.startswith("Period of 1.000000s ending at ")
    assert "XDP_PASS" in out


def test_collect_array():
    rec = StatsRecord.default()
    seen = []

    def reader(key):
        seen.append(key)
        return key, key * 100

    result = stats_collect(reader, MapType.ARRAY, rec)
    assert result is rec
    assert sorted(seen) == sorted(
        [XdpAction.DROP, XdpAction.PASS, XdpAction.TX, XdpAction.REDIRECT]
    )
    assert (rec.stats[XdpAction.DROP].rx_packets, rec.stats[XdpAction.DROP].rx_bytes) == (1, 100)
    assert (rec.stats[XdpAction.PASS].rx_packets, rec.stats[XdpAction.PASS].rx_bytes) == (2, 200)
    assert (rec.stats[XdpAction.TX].rx_packets, rec.stats[XdpAction.TX].rx_bytes) == (3, 300)
    assert (
        rec.stats[XdpAction.REDIRECT].rx_packets,
        rec.stats[XdpAction.REDIRECT].rx_bytes,
    ) == (4, 400)
    assert rec.stats[XdpAction.DROP].timestamp > 0
    assert rec.stats[XdpAction.PASS].timestamp > 0
    assert rec.stats[XdpAction.TX].timestamp > 0
    assert rec.stats[XdpAction.REDIRECT].timestamp > 0
    assert rec.stats[XdpAction.ABORTED].timestamp == 0


def test_collect_percpu_sums():
    rec = StatsRecord()
    rec.stats[XdpAction.TX].enabled = True
    stats_collect(lambda key: [(1, 10), (2, 20)], int(MapType.PERCPU_ARRAY), rec)
    assert (rec.stats[XdpAction.TX].rx_packets, rec.stats[XdpAction.TX].rx_bytes) == (3, 30)


def test_collect_timestamps_advance():
    rec = StatsRecord.default()
    stats_collect(lambda key: (0, 0), MapType.ARRAY, rec)
    first = rec.stats[XdpAction.DROP].timestamp
    prev = rec.copy()
    stats_collect(lambda key: (5, 5), MapType.ARRAY, rec)
    assert rec.stats[XdpAction.DROP].timestamp >= first
    assert prev.stats[XdpAction.DROP].rx_packets == 0
    assert rec.stats[XdpAction.DROP].rx_packets == 5


def test_collect_unknown_map_type():
    with pytest.raises(ValueError):
        stats_collect(lambda key: (0, 0), 1, StatsRecord.default())


def test_collect_reader_error_propagates():
    def reader(key):
        raise OSError(2, "missing")

    with pytest.raises(OSError):
        stats_collect(reader, MapType.ARRAY, StatsRecord.default())