"""Command-line option handling shared by the XDP tools.

Options are described by ProgOption entries. Parsing stores each value
as an attribute of a configuration object. Commands are described by
ProgCommand entries and started with dispatch_commands().
"""

from __future__ import annotations

import copy
import dataclasses
import enum
import errno
import getopt
import os
import re
import socket
import sys
from dataclasses import dataclass, field
from types import SimpleNamespace
from typing import Any, Callable, Mapping, Optional, Sequence

from .log import increase_log_level, pr_warn
from .util import check_bpf_environ, get_bpf_root_dir, get_libbpf_version

__all__ = [
    "OptionType",
    "OptionError",
    "MacAddr",
    "IpAddr",
    "Iface",
    "ProgOption",
    "ProgCommand",
    "parse_mac",
    "parse_ipaddr",
    "parse_flags",
    "parse_u32",
    "parse_u16",
    "get_enum_name",
    "format_flags",
    "format_enum_vals",
    "is_prefix",
    "usage",
    "parse_cmdline_args",
    "dispatch_commands",
]

TOOLS_VERSION = "1.4.3"
EXIT_FAILURE = 1
ETH_ALEN = 6

_FIRST_PRINTABLE = 65  # ord('A')
_BUFSIZE = 30
_USAGE_MAX = 100
_MAX_UNNAMED_SHORT = _FIRST_PRINTABLE - 1


class OptionType(enum.IntEnum):
    """The kinds of value an option can carry."""

    BOOL = 1
    FLAGS = 2
    STRING = 3
    U16 = 4
    U32 = 5
    U32_MULTI = 6
    MACADDR = 7
    IFNAME = 8
    IFNAME_MULTI = 9
    IPADDR = 10
    ENUM = 11
    MULTISTRING = 12


_MULTI_TYPES = frozenset(
    {OptionType.MULTISTRING, OptionType.IFNAME_MULTI, OptionType.U32_MULTI}
)


class OptionError(ValueError):
    """An option or argument could not be accepted.

    ``code`` is the errno value that describes the failure.
    """

    def __init__(self, message: str, code: int = errno.EINVAL) -> None:
        super().__init__(message)
        self.code = code


@dataclass(frozen=True)
class MacAddr:
    """An Ethernet hardware address."""

    addr: bytes = bytes(ETH_ALEN)

    def __post_init__(self) -> None:
        if len(self.addr) != ETH_ALEN:
            raise ValueError(f"MAC address must be {ETH_ALEN} bytes")

    def __str__(self) -> str:
        return ":".join(f"{b:02x}" for b in self.addr)

    def is_null(self) -> bool:
        """Whether every byte of the address is zero."""
        return not any(self.addr)


@dataclass(frozen=True)
class IpAddr:
    """An IPv4 or IPv6 address with its address family (0 when unset)."""

    af: int = 0
    addr: bytes = b""

    def __str__(self) -> str:
        if not self.af:
            return ""
        return socket.inet_ntop(self.af, self.addr)

    def is_null(self) -> bool:
        """Whether no address has been set."""
        return self.af == 0 and not any(self.addr)


@dataclass
class Iface:
    """A network interface name and its index."""

    ifname: Optional[str] = None
    ifindex: int = 0


@dataclass
class ProgOption:
    """Description of one command-line option or positional argument.

    ``cfg_member`` names the configuration attribute the value is stored
    in; it defaults to the option name with dashes turned into underscores.
    ``typearg`` maps names to values for FLAGS and ENUM options.
    """

    name: str
    type: OptionType
    cfg_member: Optional[str] = None
    short_opt: Optional[str] = None
    help: Optional[str] = None
    metavar: Optional[str] = None
    typearg: Optional[Mapping[str, int]] = None
    required: bool = False
    positional: bool = False
    hidden: bool = False
    min_num: int = 0
    max_num: int = 0

    def __post_init__(self) -> None:
        if self.cfg_member is None:
            self.cfg_member = self.name.replace("-", "_")
        if self.short_opt is not None and len(self.short_opt) != 1:
            raise ValueError(f"short option must be one character: {self.short_opt!r}")


@dataclass
class ProgCommand:
    """A sub-command: its name, handler, options and default configuration.

    The handler is called as ``func(cfg, pin_root_path)`` and returns the
    exit code.
    """

    name: str
    func: Callable[[Any, Optional[str]], int]
    options: Sequence[ProgOption] = field(default_factory=list)
    default_cfg: Any = None
    doc: str = ""
    no_cfg: bool = False


_HEX_FIELD = r"\s*(?:0[xX])?([0-9a-fA-F]+)"
_MAC_RE = re.compile(":".join([_HEX_FIELD] * ETH_ALEN))
_DECIMAL_RE = re.compile(r"\s*\+?([0-9]+)", re.ASCII)


def parse_mac(text: str) -> MacAddr:
    """Parse six colon-separated hex bytes into a MacAddr."""
    match = _MAC_RE.match(text)
    if not match:
        raise OptionError(f"Invalid MAC address: {text}")
    values = [int(group, 16) for group in match.groups()]
    if any(v > 0xFF for v in values):
        raise OptionError(f"Invalid MAC address: {text}")
    return MacAddr(bytes(values))


def parse_ipaddr(text: str) -> IpAddr:
    """Parse an IPv4 or IPv6 address; a colon selects IPv6."""
    af = socket.AF_INET6 if ":" in text else socket.AF_INET
    try:
        packed = socket.inet_pton(af, text)
    except (OSError, ValueError):
        raise OptionError(f"Invalid IP address: {text}") from None
    return IpAddr(af, packed)


def parse_flags(text: str, flag_vals: Mapping[str, int]) -> int:
    """Combine a comma-separated list of flag names into one value."""
    tokens = text.split(",")
    if tokens[-1] == "":
        tokens.pop()
    value = 0
    for token in tokens:
        if token not in flag_vals:
            raise OptionError(f"Unknown flag: {token!r}")
        value |= flag_vals[token]
    return value


def _parse_unsigned(text: str, limit: int) -> int:
    match = _DECIMAL_RE.fullmatch(text)
    if not match:
        raise OptionError(f"Invalid number: {text!r}")
    value = int(match.group(1))
    if value > limit:
        raise OptionError(f"Value out of range: {text!r}")
    return value


def parse_u32(text: str) -> int:
    """Parse a decimal unsigned 32-bit integer."""
    return _parse_unsigned(text, 0xFFFFFFFF)


def parse_u16(text: str) -> int:
    """Parse a decimal unsigned 16-bit integer."""
    return _parse_unsigned(text, 0xFFFF)


def get_enum_name(vals: Mapping[str, int], value: int) -> Optional[str]:
    """Return the first name mapped to *value*, or None."""
    return next((name for name, v in vals.items() if v == value), None)


def format_flags(flags: Mapping[str, int], flags_set: int) -> str:
    """Return the comma-separated names of the flags set in *flags_set*."""
    return ",".join(name for name, v in flags.items() if v & flags_set)


def format_enum_vals(vals: Mapping[str, int]) -> str:
    """Return all enum names, comma-separated."""
    return ",".join(vals)


def is_prefix(pfx: Optional[str], string: str) -> bool:
    """Whether *pfx* is a prefix of *string* (False when *pfx* is None)."""
    if pfx is None:
        return False
    return string.startswith(pfx)


def _option_lines(options: Sequence[ProgOption], required: bool) -> str:
    out = []
    for opt in options:
        if opt.required != required or opt.hidden:
            continue

        if opt.positional:
            line = f"  {opt.metavar or opt.name:<30}"
        else:
            buf = f" --{opt.name}"
            if len(buf) >= _BUFSIZE:
                pr_warn(f"opt name too long: {opt.name}\n")
                continue
            if opt.metavar:
                buf = (buf + f" {opt.metavar}")[: _BUFSIZE - 1]
            if opt.short_opt and ord(opt.short_opt) >= _FIRST_PRINTABLE:
                prefix = f" -{opt.short_opt},"
            else:
                prefix = "    "
            line = f"{prefix}{buf:<28}"

        if opt.type in (OptionType.FLAGS, OptionType.ENUM):
            valid = ""
            if opt.typearg is None:
                pr_warn(f"Missing typearg for opt {opt.name}\n")
            elif opt.type is OptionType.FLAGS:
                valid = format_flags(opt.typearg, -1)
            else:
                valid = format_enum_vals(opt.typearg)
            line += f"  {opt.help or ''} (valid values: {valid})"
        elif opt.help:
            line += f"  {opt.help}"
        out.append(line + "\n")
    return "".join(out)


def usage(
    prog_name: str, doc: str, options: Sequence[ProgOption], full: bool = False
) -> None:
    """Print the usage line and, when *full*, the whole option list."""
    out = [f"\nUsage: {prog_name} [options]"]
    out.extend(f" {opt.metavar or opt.name}" for opt in options if opt.positional)
    out.append("\n")

    if not full:
        out.append("Use --help (or -h) to see full option list.\n")
        sys.stdout.write("".join(out))
        return

    out.append(f"\n {doc}\n\n")
    if any(opt.required for opt in options):
        out.append("Required parameters:\n")
        out.append(_option_lines(options, True))
        out.append("\n")
    out.append("Options:\n")
    out.append(_option_lines(options, False))
    out.append(
        " -v, --verbose                    Enable verbose logging (-vv: more verbose)\n"
        "     --version                    Display version information\n"
        " -h, --help                       Show this help\n"
        "\n"
    )
    sys.stdout.write("".join(out))


def _zero_value(opt_type: OptionType) -> Any:
    if opt_type is OptionType.BOOL:
        return False
    if opt_type in _MULTI_TYPES:
        return []
    if opt_type is OptionType.MACADDR:
        return MacAddr()
    if opt_type is OptionType.IPADDR:
        return IpAddr()
    if opt_type in (OptionType.STRING, OptionType.IFNAME):
        return None
    return 0


def _attributes(obj: Any) -> dict:
    if dataclasses.is_dataclass(obj) and not isinstance(obj, type):
        return {f.name: getattr(obj, f.name) for f in dataclasses.fields(obj)}
    return dict(vars(obj))


def _get_ifindex(ifname: str) -> int:
    try:
        ifindex = socket.if_nametoindex(ifname)
    except (OSError, ValueError):
        ifindex = 0
    if not ifindex:
        pr_warn(f"Couldn't find network interface '{ifname}'.\n")
        raise OptionError(f"No such interface: {ifname}", errno.ENOENT)
    return ifindex


def _appended(cfg: Any, member: str, value: Any) -> list:
    return [*(getattr(cfg, member, None) or ()), value]


def _convert(opt: ProgOption, text: Optional[str], cfg: Any) -> Any:
    t = opt.type
    member = opt.cfg_member
    if t is OptionType.BOOL:
        return True
    if t is OptionType.FLAGS:
        return parse_flags(text, opt.typearg or {})
    if t is OptionType.STRING:
        return text
    if t is OptionType.U16:
        return parse_u16(text)
    if t is OptionType.U32:
        return parse_u32(text)
    if t is OptionType.U32_MULTI:
        return _appended(cfg, member, parse_u32(text))
    if t is OptionType.MACADDR:
        try:
            return parse_mac(text)
        except OptionError:
            pr_warn(f"Invalid MAC address: {text}\n")
            raise
    if t is OptionType.IFNAME:
        return Iface(text, _get_ifindex(text))
    if t is OptionType.IFNAME_MULTI:
        return _appended(cfg, member, Iface(text, _get_ifindex(text)))
    if t is OptionType.IPADDR:
        try:
            return parse_ipaddr(text)
        except OptionError as exc:
            pr_warn(f"Invalid IP address: {text}\n")
            raise OptionError(str(exc), errno.ENOENT) from None
    if t is OptionType.ENUM:
        vals = opt.typearg or {}
        if text not in vals:
            raise OptionError(f"Unknown value: {text!r}")
        return vals[text]
    if t is OptionType.MULTISTRING:
        return _appended(cfg, member, text)
    raise OptionError(f"Unsupported option type: {t!r}")


def _set_opt(
    cfg: Any, opt: ProgOption, text: Optional[str], counts: list, idx: int
) -> None:
    if opt.max_num and counts[idx] + 1 > opt.max_num:
        pr_warn(
            f"Too many parameters for {opt.metavar or opt.name} "
            f"(max {opt.max_num})\n"
        )
        raise OptionError(f"Too many parameters for {opt.name}", errno.E2BIG)
    try:
        value = _convert(opt, text, cfg)
    except OptionError as exc:
        if exc.code != errno.ENOENT:
            pr_warn(f"Couldn't parse option {opt.name}: {os.strerror(exc.code)}.\n")
        raise
    setattr(cfg, opt.cfg_member, value)
    counts[idx] += 1


def _getopt_spec(options: Sequence[ProgOption]):
    shortopts = "hv"
    longopts = ["help", "verbose", "version"]
    short_map: dict[str, int] = {}
    long_map: dict[str, int] = {}
    unnamed = 0
    for idx, opt in enumerate(options):
        if opt.positional:
            continue
        needs_arg = opt.type is not OptionType.BOOL
        if opt.short_opt:
            shortopts += opt.short_opt + (":" if needs_arg else "")
            short_map[f"-{opt.short_opt}"] = idx
        else:
            unnamed += 1
            if unnamed > _MAX_UNNAMED_SHORT:
                pr_warn("Too many options with no short opt\n")
                raise OptionError("Too many options with no short opt")
        longopts.append(opt.name + ("=" if needs_arg else ""))
        long_map[f"--{opt.name}"] = idx
    return shortopts, longopts, short_map, long_map


def parse_cmdline_args(
    argv: Sequence[str],
    options: Sequence[ProgOption],
    cfg: Any = None,
    prog: str = "",
    usage_cmd: Optional[str] = None,
    doc: str = "",
    defaults: Any = None,
) -> Any:
    """Parse *argv* (without the program name) into a configuration object.

    Values are stored as attributes of *cfg*; when *cfg* is None a copy of
    *defaults* is used, or a fresh namespace with zero values. Returns the
    configuration. Raises OptionError for bad input, and SystemExit(1)
    after printing help or version information.
    """
    options = list(options)
    if usage_cmd is None:
        usage_cmd = prog
    shortopts, longopts, short_map, long_map = _getopt_spec(options)

    if defaults is not None:
        if cfg is None:
            cfg = copy.deepcopy(defaults)
        else:
            for name, value in _attributes(defaults).items():
                setattr(cfg, name, copy.deepcopy(value))
    elif cfg is None:
        cfg = SimpleNamespace(
            **{opt.cfg_member: _zero_value(opt.type) for opt in options}
        )

    try:
        parsed, positional = getopt.gnu_getopt(list(argv), shortopts, longopts)
    except getopt.GetoptError as exc:
        pr_warn(f"{prog}: {exc.msg}\n")
        usage(prog, doc, options, False)
        raise OptionError(exc.msg) from None

    counts = [0] * len(options)
    for flag, value in parsed:
        if flag in ("-h", "--help"):
            usage(usage_cmd, doc, options, True)
            raise SystemExit(EXIT_FAILURE)
        if flag in ("-v", "--verbose"):
            increase_log_level()
            continue
        if flag == "--version":
            print(
                f"{prog} version {TOOLS_VERSION} using libbpf version "
                f"{get_libbpf_version()}"
            )
            raise SystemExit(EXIT_FAILURE)
        idx = short_map[flag] if flag in short_map else long_map[flag]
        try:
            _set_opt(cfg, options[idx], value, counts, idx)
        except OptionError:
            usage(prog, doc, options, False)
            raise

    for text in positional:
        idx = next(
            (
                i
                for i, opt in enumerate(options)
                if opt.positional and (not counts[i] or opt.type in _MULTI_TYPES)
            ),
            None,
        )
        try:
            if idx is None:
                raise OptionError(f"Unexpected argument: {text}", errno.ENOENT)
            _set_opt(cfg, options[idx], text, counts, idx)
        except OptionError:
            usage(usage_cmd, doc, options, False)
            raise

    for idx, opt in enumerate(options):
        if counts[idx] and (not opt.min_num or counts[idx] >= opt.min_num):
            continue
        if opt.required:
            if opt.positional:
                pr_warn(f"Missing required parameter {opt.metavar or opt.name}\n")
            else:
                pr_warn(f"Missing required option '--{opt.name}'\n")
            usage(prog, doc, options, False)
            raise OptionError(f"Missing required parameter {opt.name}", errno.EINVAL)

    return cfg


def dispatch_commands(
    argv0: Optional[str],
    argv: Sequence[str],
    cmds: Sequence[ProgCommand],
    prog_name: str,
    needs_bpffs: bool = False,
) -> int:
    """Run the first command whose name starts with *argv0*.

    *argv* holds the arguments that follow the command name. Returns the
    command's exit code, or 1 when the command cannot be run.
    """
    cmd = next((c for c in cmds if is_prefix(argv0, c.name)), None)
    if cmd is None:
        pr_warn(f"Command '{argv0}' is unknown, try '{prog_name} help'.\n")
        return EXIT_FAILURE

    if cmd.no_cfg:
        return cmd.func(None, None)

    usage_cmd = f"{prog_name} {cmd.name}"
    if len(usage_cmd) >= _USAGE_MAX:
        return EXIT_FAILURE

    try:
        cfg = parse_cmdline_args(
            argv, cmd.options, None, prog_name, usage_cmd, cmd.doc, cmd.default_cfg
        )
    except OptionError:
        return EXIT_FAILURE
    except SystemExit as exc:
        return exc.code if isinstance(exc.code, int) else EXIT_FAILURE

    try:
        pin_root_path: Optional[str] = get_bpf_root_dir(prog_name, needs_bpffs)
    except OSError:
        if needs_bpffs:
            return EXIT_FAILURE
        pin_root_path = None

    try:
        check_bpf_environ()
    except PermissionError:
        return EXIT_FAILURE

    return cmd.func(cfg, pin_root_path)