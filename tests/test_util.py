import errno
import fcntl
import os
import resource
from unittest import mock

import pytest

from xdptools import util
from xdptools.util import (
    ProgLock,
    XdpAction,
    XdpAttachMode,
    action2str,
    check_bpf_environ,
    double_rlimit,
    find_bpf_file,
    find_bpf_mount,
    get_libbpf_version,
    make_dir_subdir,
    mode_name,
    set_rlimit,
    unlink_pinned_map,
)


@pytest.mark.parametrize(
    "action, name",
    [
        (XdpAction.ABORTED, "XDP_ABORTED"),
        (XdpAction.DROP, "XDP_DROP"),
        (XdpAction.PASS, "XDP_PASS"),
        (XdpAction.TX, "XDP_TX"),
        (XdpAction.REDIRECT, "XDP_REDIRECT"),
        (XdpAction.UNKNOWN, "XDP_UNKNOWN"),
    ],
)
def test_action2str_names(action, name):
    assert action2str(action) == name
    assert action2str(int(action)) == name


def test_action2str_out_of_range():
    assert action2str(len(XdpAction)) is None
    assert action2str(100) is None


@pytest.mark.parametrize(
    "mode, name",
    [
        (XdpAttachMode.NATIVE, "native"),
        (XdpAttachMode.SKB, "skb"),
        (XdpAttachMode.HW, "hw"),
        (XdpAttachMode.UNSPEC, "unspecified"),
    ],
)
def test_mode_name(mode, name):
    assert mode_name(mode) == name


def test_mode_name_unknown():
    assert mode_name(42) is None


def test_make_dir_subdir_creates_both(tmp_path):
    parent = tmp_path / "root"
    path = make_dir_subdir(parent, "programs")
    assert path == f"{parent}/programs"
    assert os.path.isdir(path)
    # Idempotent: running again keeps the same result.
    assert make_dir_subdir(parent, "programs") == path


def test_make_dir_subdir_name_too_long(tmp_path):
    with pytest.raises(OSError) as excinfo:
        make_dir_subdir(tmp_path, "x" * util.PATH_MAX)
    assert excinfo.value.errno == errno.ENAMETOOLONG


def test_find_bpf_file_first_match_wins(tmp_path):
    first = tmp_path / "a"
    second = tmp_path / "b"
    first.mkdir()
    second.mkdir()
    (second / "prog.o").write_bytes(b"obj")
    assert find_bpf_file("prog.o", [first, second]) == f"{second}/prog.o"
    (first / "prog.o").write_bytes(b"obj")
    assert find_bpf_file("prog.o", [first, second]) == f"{first}/prog.o"


def test_find_bpf_file_missing(tmp_path):
    with pytest.raises(FileNotFoundError) as excinfo:
        find_bpf_file("missing.o", [tmp_path])
    assert excinfo.value.errno == errno.ENOENT


def test_find_bpf_mount_prefers_known(tmp_path):
    mounts = tmp_path / "mounts"
    mounts.write_text(
        "proc /proc proc rw 0 0\n"
        "bpf /other/bpf bpf rw 0 0\n"
        "bpf /sys/fs/bpf bpf rw 0 0\n"
    )
    assert find_bpf_mount(mounts) == util.BPF_DIR_MNT


def test_find_bpf_mount_falls_back_to_first_bpf(tmp_path):
    mounts = tmp_path / "mounts"
    mounts.write_text(
        "tmpfs /sys/fs/bpf tmpfs rw 0 0\n"
        "bpf /mnt/my\\040bpf bpf rw 0 0\n"
    )
    assert find_bpf_mount(mounts) == "/mnt/my bpf"


def test_find_bpf_mount_none(tmp_path):
    mounts = tmp_path / "mounts"
    mounts.write_text("proc /proc proc rw 0 0\n")
    assert find_bpf_mount(mounts) is None
    assert find_bpf_mount(tmp_path / "does-not-exist") is None


def test_unlink_pinned_map(tmp_path):
    (tmp_path / "stats_map").write_bytes(b"")
    dir_fd = os.open(tmp_path, os.O_RDONLY | os.O_DIRECTORY)
    try:
        assert unlink_pinned_map(dir_fd, "stats_map") is True
        assert not (tmp_path / "stats_map").exists()
        assert unlink_pinned_map(dir_fd, "stats_map") is False
    finally:
        os.close(dir_fd)


def test_set_rlimit_doubles():
    with mock.patch("resource.getrlimit", return_value=(1024, 1024)), mock.patch(
        "resource.setrlimit"
    ) as setr:
        assert set_rlimit(0) == 2048
    setr.assert_called_once_with(resource.RLIMIT_MEMLOCK, (2048, 2048))


def test_set_rlimit_minimum():
    with mock.patch("resource.getrlimit", return_value=(1024, 1024)), mock.patch(
        "resource.setrlimit"
    ) as setr:
        assert set_rlimit(4096) == 4096
    setr.assert_called_once_with(resource.RLIMIT_MEMLOCK, (4096, 4096))


def test_set_rlimit_already_high_enough():
    with mock.patch("resource.getrlimit", return_value=(8192, 8192)), mock.patch(
        "resource.setrlimit"
    ) as setr:
        assert set_rlimit(4096) == 8192
    assert setr.call_count == 0


@pytest.mark.parametrize("current", [resource.RLIM_INFINITY, 0])
def test_set_rlimit_infinite_or_zero(current):
    with mock.patch(
        "resource.getrlimit", return_value=(current, resource.RLIM_INFINITY)
    ), mock.patch("resource.setrlimit") as setr:
        with pytest.raises(OSError) as excinfo:
            set_rlimit(0)
    assert excinfo.value.errno == errno.ENOMEM
    assert setr.call_count == 0


def test_double_rlimit():
    with mock.patch("resource.getrlimit", return_value=(512, 4096)), mock.patch(
        "resource.setrlimit"
    ) as setr:
        assert double_rlimit() == 1024
    setr.assert_called_once_with(resource.RLIMIT_MEMLOCK, (1024, 4096))


def test_check_bpf_environ_requires_root():
    with mock.patch("os.geteuid", return_value=1000):
        with pytest.raises(PermissionError):
            check_bpf_environ()


def test_check_bpf_environ_raises_rlimit_to_one_mib():
    with mock.patch("os.geteuid", return_value=0), mock.patch(
        "resource.getrlimit", return_value=(65536, 65536)
    ), mock.patch("resource.setrlimit") as setr:
        assert check_bpf_environ() is None
    setr.assert_called_once_with(
        resource.RLIMIT_MEMLOCK, (1024 * 1024, 1024 * 1024)
    )


def test_check_bpf_environ_ignores_rlimit_errors():
    with mock.patch("os.geteuid", return_value=0), mock.patch(
        "resource.getrlimit", return_value=(resource.RLIM_INFINITY, 0)
    ), mock.patch("resource.setrlimit") as setr:
        assert check_bpf_environ() is None
    assert setr.call_count == 0


def test_get_libbpf_version_from_maps(tmp_path):
    maps = tmp_path / "maps"
    maps.write_text(
        "7f63c2000000-7f63c2100000 r-xp 00000000 fe:02 4200900"
        "                    /usr/lib/libc.so.6\n"
        "7f63c2105000-7f63c2106000 rw-p 00032000 fe:02 4200947"
        "                    /usr/lib/libbpf.so.0.1.0\n"
    )
    assert get_libbpf_version(maps) == "0.1.0"


def test_get_libbpf_version_truncated(tmp_path):
    maps = tmp_path / "maps"
    long_version = "1.22.333.4444"
    maps.write_text(
        "1000-2000 r-xp 00000000 fe:02 1 /usr/lib/libbpf.so." + long_version + "\n"
    )
    version = get_libbpf_version(maps)
    assert len(version) == 9
    assert long_version.startswith(version)


def test_get_libbpf_version_fallback(tmp_path):
    maps = tmp_path / "maps"
    maps.write_text("1000-2000 r-xp 00000000 fe:02 1 /usr/lib/libc.so.6\n")
    assert get_libbpf_version(maps) == util.LIBBPF_FALLBACK_VERSION
    assert get_libbpf_version(tmp_path / "missing") == util.LIBBPF_FALLBACK_VERSION


def test_prog_lock_creates_directory_and_excludes(tmp_path):
    lock_dir = tmp_path / "lock"
    lock = ProgLock(lock_dir)
    fd = lock.acquire()
    try:
        assert fd >= 0
        assert lock.fd == fd
        assert lock_dir.is_dir()
        other = os.open(lock_dir, os.O_RDONLY | os.O_DIRECTORY)
        try:
            with pytest.raises(BlockingIOError):
                fcntl.flock(other, fcntl.LOCK_EX | fcntl.LOCK_NB)
        finally:
            os.close(other)
    finally:
        lock.release()
    assert lock.fd is None


def test_prog_lock_context_manager_releases(tmp_path):
    with ProgLock(tmp_path) as lock:
        assert lock.locked is True
    assert lock.locked is False
    other = os.open(tmp_path, os.O_RDONLY | os.O_DIRECTORY)
    try:
        fcntl.flock(other, fcntl.LOCK_EX | fcntl.LOCK_NB)
        fcntl.flock(other, fcntl.LOCK_UN)
    finally:
        os.close(other)
    assert lock.fd is None


def test_prog_lock_double_acquire_and_release_errors(tmp_path):
    lock = ProgLock(tmp_path)
    with pytest.raises(RuntimeError):
        lock.release()
    lock.acquire()
    try:
        with pytest.raises(RuntimeError):
            lock.acquire()
    finally:
        lock.release()
    assert lock.locked is False


def test_prog_lock_missing_parent(tmp_path):
    lock = ProgLock(tmp_path / "no" / "such" / "dir")
    with pytest.raises(FileNotFoundError):
        lock.acquire()
    assert lock.locked is False