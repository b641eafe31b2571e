"""Helpers shared by the XDP tools: action names, bpffs lookup, pin paths,
memlock limits, runtime library version detection and a directory lock."""

from __future__ import annotations

import enum
import errno
import fcntl
import functools
import os
import re
import resource
from typing import Iterable, Optional, Sequence, Union

from .log import LogLevel, log_print, pr_debug, pr_warn

__all__ = [
    "XdpAttachMode",
    "XdpAction",
    "ProgLock",
    "action2str",
    "mode_name",
    "make_dir_subdir",
    "find_bpf_file",
    "find_bpf_mount",
    "get_bpf_root_dir",
    "unlink_pinned_map",
    "set_rlimit",
    "double_rlimit",
    "check_bpf_environ",
    "get_libbpf_version",
]

PATH_MAX = 4096
BPF_DIR_MNT = "/sys/fs/bpf"
BPF_OBJECT_PATH = "/usr/lib/bpf"
BPF_KNOWN_MOUNTS = (BPF_DIR_MNT, "/bpf")
MOUNTS_FILE = "/proc/mounts"
SELF_MAPS_FILE = "/proc/self/maps"
LIBBPF_FALLBACK_VERSION = "unknown"
_VERSION_MAX_LEN = 9

PathLike = Union[str, os.PathLike]


class XdpAttachMode(enum.IntEnum):
    """Ways an XDP program can be attached to an interface."""

    UNSPEC = 0
    NATIVE = 1
    SKB = 2
    HW = 3


class XdpAction(enum.IntEnum):
    """XDP program return codes, plus a catch-all for unknown ones."""

    ABORTED = 0
    DROP = 1
    PASS = 2
    TX = 3
    REDIRECT = 4
    UNKNOWN = 5


XDP_ACTION_MAX = XdpAction.UNKNOWN + 1

_MODE_NAMES = {
    XdpAttachMode.NATIVE: "native",
    XdpAttachMode.SKB: "skb",
    XdpAttachMode.HW: "hw",
    XdpAttachMode.UNSPEC: "unspecified",
}


def action2str(action: int) -> Optional[str]:
    """Return the name of an XDP action, or None if it is out of range."""
    if 0 <= action < XDP_ACTION_MAX:
        return f"XDP_{XdpAction(action).name}"
    return None


def mode_name(mode: int) -> Optional[str]:
    """Return the short name of an attach mode, or None if unknown."""
    try:
        return _MODE_NAMES[XdpAttachMode(mode)]
    except ValueError:
        return None


def _join(*parts: PathLike) -> str:
    path = "/".join(os.fspath(p) for p in parts)
    if len(path) >= PATH_MAX:
        raise OSError(errno.ENAMETOOLONG, os.strerror(errno.ENAMETOOLONG), path)
    return path


def make_dir_subdir(parent: PathLike, directory: str) -> str:
    """Create *parent* and *parent*/*directory* (mode 0700) if missing.

    Returns the path of the subdirectory.
    """
    path = _join(parent, directory)
    for target in (os.fspath(parent), path):
        try:
            os.mkdir(target, 0o700)
        except FileExistsError:
            pass
    return path


def find_bpf_file(
    progname: str, search_paths: Optional[Sequence[PathLike]] = None
) -> str:
    """Return the path of the first *progname* found in *search_paths*.

    Raises FileNotFoundError when no directory holds the file.
    """
    if search_paths is None:
        search_paths = (BPF_OBJECT_PATH,)
    for directory in search_paths:
        candidate = _join(directory, progname)
        pr_debug(f"Looking for '{candidate}'\n")
        try:
            os.stat(candidate)
        except OSError:
            continue
        return candidate

    pr_warn(f"Couldn't find a BPF file with name {progname}\n")
    raise FileNotFoundError(
        errno.ENOENT, f"Couldn't find a BPF file with name {progname}", progname
    )


_OCTAL_ESCAPE = re.compile(r"\\([0-7]{3})")


def _unescape_mount(field: str) -> str:
    return _OCTAL_ESCAPE.sub(lambda m: chr(int(m.group(1), 8)), field)


def _bpf_mounts(mounts_file: PathLike) -> list[str]:
    mounts = []
    try:
        with open(mounts_file, encoding="utf-8", errors="replace") as fp:
            for line in fp:
                fields = line.split()
                if len(fields) >= 3 and fields[2] == "bpf":
                    mounts.append(_unescape_mount(fields[1]))
    except OSError:
        return []
    return mounts


def find_bpf_mount(mounts_file: Optional[PathLike] = None) -> Optional[str]:
    """Find where bpffs is mounted according to *mounts_file*.

    The well-known locations are preferred; otherwise the first bpf mount
    listed is returned. Returns None when there is none.
    """
    mounts = _bpf_mounts(MOUNTS_FILE if mounts_file is None else mounts_file)
    for known in BPF_KNOWN_MOUNTS:
        if known in mounts:
            return known
    return mounts[0] if mounts else None


@functools.lru_cache(maxsize=None)
def _bpf_work_dir() -> Optional[str]:
    mnt = find_bpf_mount(MOUNTS_FILE)
    if mnt is not None:
        return mnt

    try:
        os.mkdir(BPF_DIR_MNT, 0o700)
    except FileExistsError:
        pass
    except OSError as exc:
        pr_warn(f"mkdir {BPF_DIR_MNT} failed: {exc.strerror}\n")
        return None

    if BPF_DIR_MNT not in _bpf_mounts(MOUNTS_FILE):
        return None
    return BPF_DIR_MNT


def get_bpf_root_dir(subdir: Optional[str] = None, fatal: bool = False) -> str:
    """Return the bpffs working directory, optionally joined with *subdir*.

    Raises FileNotFoundError if bpffs is not mounted; the message is logged
    as a warning when *fatal* is set and as debug output otherwise.
    """
    bpf_dir = _bpf_work_dir()
    if bpf_dir is None:
        log_print(
            LogLevel.WARN if fatal else LogLevel.DEBUG,
            "Could not find BPF working dir - bpffs not mounted?\n",
        )
        raise FileNotFoundError(
            errno.ENOENT, "Could not find BPF working dir - bpffs not mounted?"
        )
    return _join(bpf_dir, subdir) if subdir else _join(bpf_dir)


def unlink_pinned_map(dir_fd: int, map_name: str) -> bool:
    """Remove the pinned map *map_name* relative to the directory *dir_fd*.

    Returns True if it was removed and False if it was not pinned.
    """
    try:
        os.stat(map_name, dir_fd=dir_fd)
    except FileNotFoundError:
        pr_debug(f"Map name {map_name} not pinned\n")
        return False
    except OSError as exc:
        pr_warn(f"Couldn't stat pinned map {map_name}: {exc.strerror}\n")
        raise

    pr_debug(f"Unlinking pinned map {map_name}\n")
    try:
        os.unlink(map_name, dir_fd=dir_fd)
    except OSError as exc:
        pr_warn(f"Couldn't unlink pinned map {map_name}: {exc.strerror}\n")
        raise
    return True


def set_rlimit(min_limit: int = 0) -> int:
    """Raise the locked-memory limit.

    With *min_limit* the soft limit is raised to at least that value;
    without it the soft limit is doubled. Returns the resulting soft limit.
    Raises OSError(ENOMEM) when the current limit is infinite or zero.
    """
    try:
        cur, hard = resource.getrlimit(resource.RLIMIT_MEMLOCK)
    except OSError:
        pr_warn("Couldn't get current rlimit\n")
        raise

    if cur == resource.RLIM_INFINITY or cur == 0:
        pr_debug("Current rlimit is infinity or 0. Not raising\n")
        raise OSError(errno.ENOMEM, "Current rlimit is infinity or 0")

    if min_limit:
        if cur >= min_limit:
            pr_debug(f"Current rlimit {cur} already >= minimum {min_limit}\n")
            return cur
        pr_debug(f"Setting rlimit to minimum {min_limit}\n")
        cur = min_limit
    else:
        pr_debug(f"Doubling current rlimit of {cur}\n")
        cur <<= 1

    if hard != resource.RLIM_INFINITY:
        hard = max(cur, hard)

    try:
        resource.setrlimit(resource.RLIMIT_MEMLOCK, (cur, hard))
    except (OSError, ValueError) as exc:
        pr_warn(f"Couldn't raise rlimit: {exc}\n")
        raise
    return cur


def double_rlimit() -> int:
    """Double the locked-memory limit after a permission failure."""
    pr_debug(
        "Permission denied when loading eBPF object; raising rlimit and retrying\n"
    )
    return set_rlimit(0)


def check_bpf_environ() -> None:
    """Check that the process may load BPF programs.

    Raises PermissionError when not running as root. Also tries to raise the
    locked-memory limit to 1 MiB, ignoring any failure to do so.
    """
    if os.geteuid() != 0:
        pr_warn("This program must be run as root.\n")
        raise PermissionError(errno.EPERM, "This program must be run as root.")

    try:
        set_rlimit(1024 * 1024)
    except (OSError, ValueError):
        pass


def _versions_from_maps(lines: Iterable[str]) -> Optional[str]:
    for line in lines:
        fields = line.split()
        if len(fields) < 6 or "-" not in fields[0]:
            continue
        path = fields[5]
        idx = path.find("libbpf.so.")
        if idx >= 0:
            return path[idx + len("libbpf.so."):][:_VERSION_MAX_LEN]
    return None


def get_libbpf_version(maps_path: Optional[PathLike] = None) -> str:
    """Find the version of the libbpf shared library mapped into the process.

    Looks for a ``libbpf.so.<version>`` mapping in *maps_path* (default
    ``/proc/self/maps``) and falls back to LIBBPF_FALLBACK_VERSION.
    """
    path = SELF_MAPS_FILE if maps_path is None else maps_path
    version = None
    try:
        with open(path, encoding="utf-8", errors="replace") as fp:
            version = _versions_from_maps(fp)
    except OSError:
        version = None

    if version is None:
        pr_warn(
            "Couldn't find runtime libbpf version - "
            "falling back to compile-time value!\n"
        )
        return LIBBPF_FALLBACK_VERSION
    return version


class ProgLock:
    """An exclusive flock() on a directory, created if it does not exist."""

    def __init__(self, directory: PathLike) -> None:
        self.directory = os.fspath(directory)
        self._fd: Optional[int] = None

    @property
    def fd(self) -> Optional[int]:
        """The file descriptor holding the lock, or None when released."""
        return self._fd

    @property
    def locked(self) -> bool:
        """Whether this lock is currently held."""
        return self._fd is not None

    def acquire(self) -> int:
        """Take the lock, blocking until it is free; return its descriptor."""
        if self._fd is not None:
            raise RuntimeError(f"lock on {self.directory} already held")

        while True:
            try:
                fd = os.open(self.directory, os.O_RDONLY | os.O_DIRECTORY)
                break
            except FileNotFoundError:
                try:
                    os.mkdir(self.directory, 0o700)
                except OSError as exc:
                    pr_warn(
                        f"Couldn't open lock directory at {self.directory}: "
                        f"{exc.strerror}\n"
                    )
                    raise
            except OSError as exc:
                pr_warn(
                    f"Couldn't open lock directory at {self.directory}: "
                    f"{exc.strerror}\n"
                )
                raise

        try:
            fcntl.flock(fd, fcntl.LOCK_EX)
        except OSError as exc:
            pr_warn(f"Couldn't flock fd {fd}: {exc.strerror}\n")
            os.close(fd)
            raise

        pr_debug(f"Acquired lock from {self.directory} with fd {fd}\n")
        self._fd = fd
        return fd

    def release(self) -> None:
        """Drop the lock and close its descriptor."""
        if self._fd is None:
            raise RuntimeError(f"lock on {self.directory} is not held")
        fd, self._fd = self._fd, None
        try:
            fcntl.flock(fd, fcntl.LOCK_UN)
        except OSError as exc:
            pr_warn(f"Couldn't unlock fd {fd}: {exc.strerror}\n")
            raise
        else:
            pr_debug(f"Released lock fd {fd}\n")
        finally:
            os.close(fd)

    def __enter__(self) -> "ProgLock":
        self.acquire()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        if self._fd is not None:
            self.release()