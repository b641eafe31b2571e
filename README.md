# xdptools

Shared building blocks for XDP command-line tools. The package uses plain
Python and has no third-party dependencies.

## Modules

- `xdptools.log` provides levelled logging to standard error through
  `LogLevel` (WARN, INFO, DEBUG, VERBOSE), `log_print`, `pr_warn`,
  `pr_info` and `pr_debug`. `set_log_level` and `get_log_level` read and
  change the level, and `increase_log_level` raises it one step at a time.
  The default level is INFO. `library_print` takes messages from
  lower-level libraries, demotes them by one level and indents them.
- `xdptools.xpcapng` writes PcapNG files in host byte order.
  `build_shb`, `build_idb` and `build_epb` return the raw bytes of a
  section header block, an Ethernet interface description block and an
  enhanced packet block. `PcapngDumper` writes a section header block when
  it is created, and works as a context manager. Its `add_interface`
  method returns the new interface id, and `dump_enhanced_pkt` writes one
  packet. Packet metadata (`flags`, `dropcount`, `packetid`, `queue`,
  `xdp_verdict`, `comment`) goes in `EpbOptions`, and `EpbFlags` gives the
  INBOUND and OUTBOUND directions. Pass `"-"` as the file name to write to
  standard output.
- `xdptools.util` holds general helpers:
  - `XdpAction` with `action2str`, which returns names such as `XDP_PASS`.
  - `XdpAttachMode` with `mode_name`, which returns `native`, `skb`, `hw`
    or `unspecified`.
  - `find_bpf_file`, which looks for an object file in a list of
    directories (by default `/usr/lib/bpf`).
  - `find_bpf_mount` and `get_bpf_root_dir`, which find where bpffs is
    mounted using `/proc/mounts`.
  - `make_dir_subdir` and `unlink_pinned_map` for pin directories.
  - `set_rlimit`, `double_rlimit` and `check_bpf_environ` for the
    locked-memory limit and the root check.
  - `get_libbpf_version`, which reads `/proc/self/maps` and returns
    `"unknown"` when no libbpf mapping is found.
  - `ProgLock`, an exclusive `flock()` on a directory that can be used as a
    context manager.
- `xdptools.params` handles command-line options declaratively:
  - `ProgOption` describes an option and `OptionType` lists its kinds.
  - `parse_cmdline_args` stores the parsed values as attributes of a
    configuration object, and raises `OptionError` on bad input.
  - `ProgCommand` and `dispatch_commands` select a sub-command by name
    prefix and run it.
  - `usage` prints help text.
  - Parsers: `parse_mac` returns a `MacAddr`, `parse_ipaddr` returns an
    `IpAddr`, and there are `parse_flags`, `parse_u16` and `parse_u32`.
  - Formatting helpers: `format_flags`, `format_enum_vals`,
    `get_enum_name` and `is_prefix`.
- `xdptools.stats` keeps per-action packet and byte counters in
  `StatsRecord` and `Record`. `StatsRecord.default()` enables DROP, PASS,
  REDIRECT and TX. `stats_collect` fills the counters through a reader
  callable that you supply. For `MapType.ARRAY` the reader returns one
  `(packets, bytes)` pair; for `MapType.PERCPU_ARRAY` it returns one pair
  per CPU. `format_stats` and `stats_print` report totals and rates
  between two samples. `format_stats_one` and `stats_print_one` report
  totals only.

## Examples

Writing a capture file:

```python
from xdptools.xpcapng import PcapngDumper, EpbOptions, EpbFlags

with PcapngDumper("capture.pcapng", comment=None, hardware=None,
                  os_name=None, user_application="my-tool") as dumper:
    ifid = dumper.add_interface(snap_len=65535, name="eth0", description=None,
                                mac=None, speed=0, ts_resolution=9,
                                hardware=None)
    frame = bytes(60)
    dumper.dump_enhanced_pkt(ifid, frame, len(frame), len(frame),
                             1_700_000_000_000_000_000,
                             EpbOptions(flags=EpbFlags.INBOUND))
```

Parsing addresses:

```python
from xdptools.params import parse_mac, parse_ipaddr

mac = parse_mac("02:00:00:00:00:01")
print(mac)            # 02:00:00:00:00:01
print(mac.is_null())  # False

addr = parse_ipaddr("192.0.2.1")
print(addr)           # 192.0.2.1
```

Naming XDP actions:

```python
from xdptools.util import action2str

print(action2str(2))  # XDP_PASS
```

## What it does not do

This package is a support library only.

- It has no command to run.
- It does not load, attach, detach or pin BPF programs.
- It does not open or read BPF maps itself. Statistics come only from the
  reader callable you pass to `stats_collect`.
- `dispatch_commands` runs `check_bpf_environ`, so the commands it starts
  fail unless the process runs as root.

## Requirements

- Python 3.10 or later.
- `xdptools.util` imports `fcntl` and `resource`, and `xdptools.params` and
  `xdptools.stats` depend on it, so those three modules need a POSIX
  system.
- The bpffs and `/proc` helpers work only on Linux.