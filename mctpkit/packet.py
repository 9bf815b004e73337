"""MCTP packet header and packet buffer handling."""

from __future__ import annotations

import struct
from dataclasses import dataclass
from enum import IntEnum

HEADER_SIZE = 4
"""Size of the MCTP transport header in bytes."""

BTU = 64
"""Baseline transmission unit: the payload size every binding must carry."""

VERSION = 1
"""MCTP header version supported by this implementation."""

FLAG_SOM = 0x80
FLAG_EOM = 0x40
FLAG_TO = 0x08
SEQ_SHIFT = 4
SEQ_MASK = 0x3
TAG_SHIFT = 0
TAG_MASK = 0x7
VERSION_MASK = 0xF

EID_NULL = 0x00
EID_BROADCAST = 0xFF

_HEADER = struct.Struct("BBBB")


class MessageType(IntEnum):
    """MCTP message type codes (DSP0239)."""

    MCTP_CTRL = 0x00
    PLDM = 0x01
    NCSI = 0x02
    ETHERNET = 0x03
    NVME = 0x04
    SPDM = 0x05
    SECUREDMSG = 0x06
    VDPCI = 0x7E
    VDIANA = 0x7F


def packet_size(btu: int) -> int:
    """Return the size of a packet carrying ``btu`` bytes of payload."""
    return btu + HEADER_SIZE


@dataclass
class PacketHeader:
    """The four-byte MCTP transport header."""

    ver: int = 0
    dest: int = 0
    src: int = 0
    flags_seq_tag: int = 0

    @classmethod
    def from_fields(
        cls,
        version: int,
        dest: int,
        src: int,
        *,
        som: bool = False,
        eom: bool = False,
        tag_owner: bool = False,
        seq: int = 0,
        tag: int = 0,
    ) -> "PacketHeader":
        """Build a header from its individual fields."""
        flags = (tag & TAG_MASK) << TAG_SHIFT
        flags |= (seq & SEQ_MASK) << SEQ_SHIFT
        if tag_owner:
            flags |= FLAG_TO
        if som:
            flags |= FLAG_SOM
        if eom:
            flags |= FLAG_EOM
        return cls(version & VERSION_MASK, dest, src, flags)

    @property
    def version(self) -> int:
        return self.ver & VERSION_MASK

    @property
    def som(self) -> bool:
        return bool(self.flags_seq_tag & FLAG_SOM)

    @property
    def eom(self) -> bool:
        return bool(self.flags_seq_tag & FLAG_EOM)

    @property
    def tag_owner(self) -> bool:
        return bool(self.flags_seq_tag & FLAG_TO)

    @property
    def seq(self) -> int:
        return (self.flags_seq_tag >> SEQ_SHIFT) & SEQ_MASK

    @property
    def tag(self) -> int:
        return (self.flags_seq_tag >> TAG_SHIFT) & TAG_MASK

    def pack(self) -> bytes:
        """Return the header in wire format."""
        try:
            return _HEADER.pack(self.ver, self.dest, self.src, self.flags_seq_tag)
        except struct.error as exc:
            raise ValueError(f"header field out of range: {exc}") from None

    @classmethod
    def unpack(cls, data) -> "PacketHeader":
        """Parse a header from the first four bytes of ``data``."""
        if len(data) < HEADER_SIZE:
            raise ValueError(
                f"need {HEADER_SIZE} bytes for an MCTP header, got {len(data)}"
            )
        return cls(*_HEADER.unpack_from(bytes(data[:HEADER_SIZE])))


class PacketBuffer:
    """A fixed-size packet buffer with headroom for binding-specific data.

    The MCTP header starts at ``pad``; bytes in ``[start, end)`` form the
    packet as seen by the binding.
    """

    def __init__(self, size: int, pad: int = 0, length: int = 0, private=None):
        if size < 0 or pad < 0 or length < 0:
            raise ValueError("sizes must not be negative")
        total = size + pad
        if pad + length > total:
            raise ValueError("initial length exceeds buffer size")
        self.data = bytearray(total)
        self.start = pad
        self.end = pad + length
        self.header_offset = pad
        self.private = private

    @property
    def capacity(self) -> int:
        return len(self.data)

    def __len__(self) -> int:
        return self.end - self.start

    @property
    def end_index(self) -> int:
        return self.end

    @property
    def header(self) -> PacketHeader:
        return PacketHeader.unpack(self.data[self.header_offset:])

    def set_header(self, header: PacketHeader) -> None:
        """Write ``header`` at the MCTP header position."""
        raw = header.pack()
        if self.header_offset + HEADER_SIZE > len(self.data):
            raise ValueError("buffer too small for an MCTP header")
        self.data[self.header_offset:self.header_offset + HEADER_SIZE] = raw

    @property
    def message(self) -> bytes:
        """The packet from the MCTP header to the end of its data."""
        return bytes(self.data[self.header_offset:self.end])

    @property
    def payload(self) -> bytes:
        """The bytes following the MCTP header."""
        return bytes(self.data[self.header_offset + HEADER_SIZE:self.end])

    @payload.setter
    def payload(self, value) -> None:
        offset = self.header_offset + HEADER_SIZE
        if offset + len(value) > len(self.data):
            raise ValueError("payload does not fit in packet buffer")
        self.data[offset:offset + len(value)] = value
        self.end = max(self.end, offset + len(value))

    @property
    def contents(self) -> bytes:
        """The bytes in ``[start, end)``."""
        return bytes(self.data[self.start:self.end])

    def push(self, data) -> None:
        """Append ``data`` at the end of the packet."""
        n = len(data)
        if self.end + n > len(self.data):
            raise ValueError(
                f"cannot push {n} bytes: only {len(self.data) - self.end} free"
            )
        self.data[self.end:self.end + n] = data
        self.end += n

    def alloc_start(self, size: int) -> memoryview:
        """Claim ``size`` bytes of headroom in front of the packet."""
        if size < 0 or size > self.start:
            raise ValueError(f"cannot claim {size} bytes of headroom")
        self.start -= size
        return memoryview(self.data)[self.start:self.start + size]

    def alloc_end(self, size: int) -> memoryview:
        """Claim ``size`` bytes after the packet; strictly less than what is free."""
        if size < 0 or size >= len(self.data) - self.end:
            raise ValueError(f"cannot claim {size} bytes of tailroom")
        view = memoryview(self.data)[self.end:self.end + size]
        self.end += size
        return view