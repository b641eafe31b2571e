"""A small writer for PcapNG capture files.

Blocks are written in host byte order. Readers detect the order from the
byte-order magic in the section header block.
"""

from __future__ import annotations

import enum
import os
import struct
import sys
from dataclasses import dataclass
from typing import Optional, Union

__all__ = [
    "EpbFlags",
    "EpbOptions",
    "PcapngDumper",
    "option_length",
    "build_shb",
    "build_idb",
    "build_epb",
]

# Block types
SECTION_BLOCK = 0x0A0D0D0A
INTERFACE_BLOCK = 1
PACKET_BLOCK = 2
SIMPLE_PACKET_BLOCK = 3
NAME_RESOLUTION_BLOCK = 4
INTERFACE_STATS_BLOCK = 5
ENHANCED_PACKET_BLOCK = 6

BYTE_ORDER_MAGIC = 0x1A2B3C4D
MAJOR_VERSION = 1
MINOR_VERSION = 0
LINKTYPE_ETHERNET = 1

# Generic options
OPT_END = 0
OPT_COMMENT = 1

# Section header block options
OPT_SHB_HARDWARE = 2
OPT_SHB_OS = 3
OPT_SHB_USERAPPL = 4

# Interface description block options
OPT_IDB_IF_NAME = 2
OPT_IDB_IF_DESCRIPTION = 3
OPT_IDB_IF_MAC_ADDR = 6
OPT_IDB_IF_SPEED = 8
OPT_IDB_IF_TSRESOL = 9
OPT_IDB_IF_HARDWARE = 15

# Enhanced packet block options
OPT_EPB_FLAGS = 2
OPT_EPB_HASH = 3
OPT_EPB_DROPCOUNT = 4
OPT_EPB_PACKETID = 5
OPT_EPB_QUEUE = 6
OPT_EPB_VERDICT = 7

VERDICT_TYPE_HARDWARE = 0
VERDICT_TYPE_EBPF_TC = 1
VERDICT_TYPE_EBPF_XDP = 2

_OPTION_HEADER = struct.Struct("=HH")
_BLOCK_HEADER = struct.Struct("=II")
_BLOCK_TRAILER = struct.Struct("=I")
_SHB_BODY = struct.Struct("=IHHQ")
_IDB_BODY = struct.Struct("=HHI")
_EPB_BODY = struct.Struct("=IIIII")
_VERDICT = struct.Struct("=Bq")

_UINT64_MAX = 0xFFFFFFFFFFFFFFFF

Text = Union[str, bytes]


class EpbFlags(enum.IntFlag):
    """Direction flags for an enhanced packet block."""

    INBOUND = 0x1
    OUTBOUND = 0x2


@dataclass
class EpbOptions:
    """Optional fields of an enhanced packet block.

    ``flags`` and ``dropcount`` are written only when non-zero; the other
    fields are written whenever they are not None.
    """

    flags: int = 0
    dropcount: int = 0
    packetid: Optional[int] = None
    queue: Optional[int] = None
    xdp_verdict: Optional[int] = None
    comment: Optional[Text] = None


def option_length(length: int) -> int:
    """Return the padded on-disk size of an option carrying *length* bytes."""
    total = _OPTION_HEADER.size + length
    return (total + 3) // 4 * 4


def _as_bytes(value: Text) -> bytes:
    return value.encode("utf-8") if isinstance(value, str) else bytes(value)


def _option(code: int, data: bytes = b"") -> bytes:
    if len(data) > 0xFFFF:
        raise ValueError(f"option data too long: {len(data)} bytes")
    padding = option_length(len(data)) - _OPTION_HEADER.size - len(data)
    return _OPTION_HEADER.pack(code, len(data)) + data + b"\0" * padding


def _block(block_type: int, body: bytes, options: list[bytes]) -> bytes:
    opts = b"".join(options) + _option(OPT_END)
    total = _BLOCK_HEADER.size + len(body) + len(opts) + _BLOCK_TRAILER.size
    return (
        _BLOCK_HEADER.pack(block_type, total)
        + body
        + opts
        + _BLOCK_TRAILER.pack(total)
    )


def build_shb(
    comment: Optional[Text] = None,
    hardware: Optional[Text] = None,
    os_name: Optional[Text] = None,
    user_application: Optional[Text] = None,
) -> bytes:
    """Build a section header block with the given optional strings."""
    options = []
    if comment is not None:
        options.append(_option(OPT_COMMENT, _as_bytes(comment)))
    if hardware is not None:
        options.append(_option(OPT_SHB_HARDWARE, _as_bytes(hardware)))
    if os_name is not None:
        options.append(_option(OPT_SHB_OS, _as_bytes(os_name)))
    if user_application is not None:
        options.append(_option(OPT_SHB_USERAPPL, _as_bytes(user_application)))

    body = _SHB_BODY.pack(BYTE_ORDER_MAGIC, MAJOR_VERSION, MINOR_VERSION, _UINT64_MAX)
    return _block(SECTION_BLOCK, body, options)


def build_idb(
    name: Optional[Text] = None,
    snap_len: int = 0,
    description: Optional[Text] = None,
    mac: Optional[bytes] = None,
    speed: int = 0,
    ts_resolution: int = 0,
    hardware: Optional[Text] = None,
) -> bytes:
    """Build an Ethernet interface description block.

    The timestamp resolution option is written only when it differs from the
    default of 6 (microseconds) and is not 0.
    """
    options = []
    if name is not None:
        options.append(_option(OPT_IDB_IF_NAME, _as_bytes(name)))
    if description is not None:
        options.append(_option(OPT_IDB_IF_DESCRIPTION, _as_bytes(description)))
    if mac is not None:
        mac = bytes(mac)
        if len(mac) != 6:
            raise ValueError(f"MAC address must be 6 bytes, got {len(mac)}")
        options.append(_option(OPT_IDB_IF_MAC_ADDR, mac))
    if speed:
        options.append(_option(OPT_IDB_IF_SPEED, struct.pack("=Q", speed)))
    if ts_resolution not in (0, 6):
        options.append(_option(OPT_IDB_IF_TSRESOL, struct.pack("=B", ts_resolution)))
    if hardware is not None:
        options.append(_option(OPT_IDB_IF_HARDWARE, _as_bytes(hardware)))

    body = _IDB_BODY.pack(LINKTYPE_ETHERNET, 0, snap_len)
    return _block(INTERFACE_BLOCK, body, options)


def build_epb(
    ifid: int,
    pkt: bytes,
    length: int,
    caplen: int,
    timestamp: int,
    options: Optional[EpbOptions] = None,
) -> bytes:
    """Build an enhanced packet block holding the first *caplen* bytes of *pkt*.

    *length* is the original length of the packet on the wire.
    """
    if options is None:
        options = EpbOptions()
    pkt = bytes(pkt)
    if caplen > len(pkt):
        raise ValueError(f"caplen {caplen} exceeds packet size {len(pkt)}")
    if not 0 <= timestamp <= _UINT64_MAX:
        raise ValueError(f"timestamp out of range: {timestamp}")

    data = pkt[:caplen]
    data += b"\0" * ((-caplen) % 4)

    opts = []
    if options.comment is not None:
        opts.append(_option(OPT_COMMENT, _as_bytes(options.comment)))
    if options.flags:
        opts.append(_option(OPT_EPB_FLAGS, struct.pack("=I", int(options.flags))))
    if options.dropcount:
        opts.append(_option(OPT_EPB_DROPCOUNT, struct.pack("=Q", options.dropcount)))
    if options.packetid is not None:
        opts.append(_option(OPT_EPB_PACKETID, struct.pack("=Q", options.packetid)))
    if options.queue is not None:
        opts.append(_option(OPT_EPB_QUEUE, struct.pack("=I", options.queue)))
    if options.xdp_verdict is not None:
        verdict = _VERDICT.pack(VERDICT_TYPE_EBPF_XDP, options.xdp_verdict)
        opts.append(_option(OPT_EPB_VERDICT, verdict))

    body = _EPB_BODY.pack(
        ifid, timestamp >> 32, timestamp & 0xFFFFFFFF, caplen, length
    ) + data
    return _block(ENHANCED_PACKET_BLOCK, body, opts)


class PcapngDumper:
    """Writes a PcapNG file: a section header, interfaces and packets.

    Passing ``"-"`` as the file writes to standard output.
    """

    def __init__(
        self,
        file: Union[str, os.PathLike],
        comment: Optional[Text] = None,
        hardware: Optional[Text] = None,
        os_name: Optional[Text] = None,
        user_application: Optional[Text] = None,
    ) -> None:
        if file is None:
            raise ValueError("file must be given")
        self._interfaces = 0
        self._closed = False
        if isinstance(file, str) and file == "-":
            self._fd = sys.stdout.fileno()
            self._owns_fd = False
        else:
            self._fd = os.open(file, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
            self._owns_fd = True
        try:
            self._write(build_shb(comment, hardware, os_name, user_application))
        except BaseException:
            self.close()
            raise

    def _write(self, data: bytes) -> int:
        if self._closed:
            raise ValueError("write to a closed dumper")
        written = os.write(self._fd, data)
        if written != len(data):
            raise OSError(f"short write: {written} of {len(data)} bytes")
        return written

    def add_interface(
        self,
        snap_len: int,
        name: Optional[Text] = None,
        description: Optional[Text] = None,
        mac: Optional[bytes] = None,
        speed: int = 0,
        ts_resolution: int = 0,
        hardware: Optional[Text] = None,
    ) -> int:
        """Write an interface description block and return its interface id."""
        self._write(
            build_idb(name, snap_len, description, mac, speed, ts_resolution, hardware)
        )
        ifid = self._interfaces
        self._interfaces += 1
        return ifid

    def dump_enhanced_pkt(
        self,
        ifid: int,
        pkt: bytes,
        length: int,
        caplen: int,
        timestamp: int,
        options: Optional[EpbOptions] = None,
    ) -> int:
        """Write one packet and return the number of bytes written."""
        return self._write(build_epb(ifid, pkt, length, caplen, timestamp, options))

    def flush(self) -> None:
        """Force written data to disk."""
        if self._closed:
            raise ValueError("flush of a closed dumper")
        os.fsync(self._fd)

    def close(self) -> None:
        """Close the output file; standard output is left open."""
        if self._closed:
            return
        self._closed = True
        if self._owns_fd:
            os.close(self._fd)

    @property
    def closed(self) -> bool:
        """Whether the dumper has been closed."""
        return self._closed

    def __enter__(self) -> "PcapngDumper":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()