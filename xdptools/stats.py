"""Per-action XDP packet and byte counters: collection and reporting.

Counters are read through a caller-supplied *reader*, a callable taking
the action index as key. For a plain array map it returns one
``(rx_packets, rx_bytes)`` pair. For a per-CPU array map it returns one
such pair per CPU.
"""

from __future__ import annotations

import enum
import sys
import time
from dataclasses import dataclass, field, replace
from typing import Callable, Iterable, Optional, Sequence, Tuple

from .log import pr_debug, pr_warn
from .util import XDP_ACTION_MAX, XdpAction, action2str

__all__ = [
    "Record",
    "StatsRecord",
    "MapType",
    "calc_period",
    "sum_percpu",
    "format_stats_one",
    "format_stats",
    "stats_print_one",
    "stats_print",
    "stats_collect",
]

NANOSEC_PER_SEC = 1_000_000_000
_U64_MASK = 0xFFFFFFFFFFFFFFFF

Counters = Tuple[int, int]
Reader = Callable[[int], object]


class MapType(enum.IntEnum):
    """The BPF map types that statistics can be read from."""

    ARRAY = 2
    PERCPU_ARRAY = 6


@dataclass
class Record:
    """Counters for one XDP action, with the monotonic time they were read."""

    timestamp: int = 0
    enabled: bool = False
    rx_packets: int = 0
    rx_bytes: int = 0


@dataclass
class StatsRecord:
    """One Record per XDP action, indexed by action number."""

    stats: list = field(
        default_factory=lambda: [Record() for _ in range(XDP_ACTION_MAX)]
    )

    def __post_init__(self) -> None:
        if len(self.stats) != XDP_ACTION_MAX:
            raise ValueError(
                f"expected {XDP_ACTION_MAX} records, got {len(self.stats)}"
            )

    @classmethod
    def default(cls) -> "StatsRecord":
        """A record set with DROP, PASS, REDIRECT and TX enabled."""
        rec = cls()
        for action in (XdpAction.DROP, XdpAction.PASS, XdpAction.REDIRECT, XdpAction.TX):
            rec.stats[action].enabled = True
        return rec

    def copy(self) -> "StatsRecord":
        """Return an independent copy of all records."""
        return StatsRecord([replace(r) for r in self.stats])


def calc_period(rec: Record, prev: Record) -> float:
    """Seconds elapsed between two readings, or 0.0 if none elapsed."""
    period = rec.timestamp - prev.timestamp
    if period > 0:
        return period / NANOSEC_PER_SEC
    return 0.0


def sum_percpu(values: Iterable[Sequence[int]]) -> Counters:
    """Add up per-CPU ``(rx_packets, rx_bytes)`` pairs."""
    packets = 0
    nbytes = 0
    for pkts, byts in values:
        packets = (packets + pkts) & _U64_MASK
        nbytes = (nbytes + byts) & _U64_MASK
    return packets, nbytes


def format_stats_one(stats_rec: StatsRecord) -> str:
    """Totals for every enabled action, one line each."""
    lines = []
    for action, rec in enumerate(stats_rec.stats):
        if not rec.enabled:
            continue
        lines.append(
            f"  {action2str(action):<35} {rec.rx_packets:11d} pkts "
            f"{rec.rx_bytes // 1024:11d} KiB\n"
        )
    return "".join(lines)


def format_stats(
    stats_rec: StatsRecord, stats_prev: StatsRecord, now: Optional[int] = None
) -> str:
    """Totals and rates since *stats_prev* for every enabled action.

    *now* is the wall-clock time in nanoseconds shown in the heading.
    Output stops at the first enabled action whose period is zero.
    """
    if now is None:
        now = time.time_ns()
    sec, nsec = divmod(now, NANOSEC_PER_SEC)

    out = []
    first = True
    for action, (rec, prev) in enumerate(zip(stats_rec.stats, stats_prev.stats)):
        if not rec.enabled:
            continue

        packets = rec.rx_packets - prev.rx_packets
        nbytes = rec.rx_bytes - prev.rx_bytes

        period = calc_period(rec, prev)
        if period == 0:
            return "".join(out)

        if first:
            out.append(f"Period of {period:f}s ending at {sec}.{nsec // 1000:06d}\n")
            first = False

        pps = packets / period
        bps = (nbytes * 8) / period / 1_000_000
        out.append(
            f"{action2str(action):<12} {rec.rx_packets:11d} pkts ({pps:10.0f} pps)"
            f" {rec.rx_bytes // 1024:11d} KiB ({bps:6.0f} Mbits/s)\n"
        )
    out.append("\n")
    return "".join(out)


def stats_print_one(stats_rec: StatsRecord) -> None:
    """Print the totals of every enabled action to standard output."""
    sys.stdout.write(format_stats_one(stats_rec))


def stats_print(stats_rec: StatsRecord, stats_prev: StatsRecord) -> None:
    """Print totals and rates since *stats_prev* to standard output."""
    sys.stdout.write(format_stats(stats_rec, stats_prev))


def _read_counters(reader: Reader, map_type: MapType, key: int) -> Counters:
    try:
        value = reader(key)
    except Exception:
        pr_debug(f"bpf_map_lookup_elem failed key:0x{key:X}\n")
        raise
    if map_type is MapType.PERCPU_ARRAY:
        return sum_percpu(value)
    packets, nbytes = value
    return packets, nbytes


def stats_collect(reader: Reader, map_type: int, stats_rec: StatsRecord) -> StatsRecord:
    """Read the counters of every enabled action into *stats_rec*.

    Raises ValueError for a map type that is not supported; errors from
    *reader* are passed on. Returns *stats_rec*.
    """
    try:
        kind = MapType(map_type)
    except ValueError:
        pr_warn(f"Unknown map_type: {map_type} cannot handle\n")
        raise ValueError(f"Unknown map_type: {map_type}") from None

    for key, rec in enumerate(stats_rec.stats):
        if not rec.enabled:
            continue
        rec.timestamp = time.monotonic_ns()
        rec.rx_packets, rec.rx_bytes = _read_counters(reader, kind, key)
    return stats_rec