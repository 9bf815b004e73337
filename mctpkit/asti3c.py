"""MCTP binding for I3C devices whose driver handles the PEC byte."""

from __future__ import annotations

import errno
import logging
import os
import select

from .core import Binding, TransmitError
from .packet import BTU, HEADER_SIZE, PacketBuffer, packet_size

log = logging.getLogger(__name__)

RX_BUFFER_SIZE = 256
"""Bytes requested from the device for one received packet."""


def _fd_of(stream) -> int:
    return stream if isinstance(stream, int) else stream.fileno()


def poll(fd, timeout: int) -> int:
    """Wait up to ``timeout`` milliseconds; return the poll events seen, or 0."""
    poller = select.poll()
    poller.register(fd, select.POLLIN | select.POLLOUT)
    try:
        events = poller.poll(timeout)
    except OSError as exc:
        log.warning("poll returned error status: %s", exc)
        raise
    return events[0][1] if events else 0


class Asti3cBinding(Binding):
    """I3C binding; each packet's private data is the file descriptor it uses."""

    def __init__(self):
        super().__init__(name="asti3c", version=1, pkt_size=packet_size(BTU))

    def tx(self, pkt: PacketBuffer) -> None:
        """Write ``pkt`` to the descriptor held in its private data."""
        fd = pkt.private
        if not isinstance(fd, int) or fd < 0:
            log.error("invalid file descriptor passed")
            raise TransmitError(errno.EBADF, "invalid file descriptor")
        data = pkt.contents
        log.debug("transmitting packet, len: %d", len(data))
        log.debug(">TX> %s", data.hex(" "))
        try:
            written = os.write(fd, data)
        except OSError as exc:
            log.error("TX error: %s", exc)
            raise TransmitError(exc.errno or errno.EIO, "TX error") from exc
        if written != len(data):
            log.error("TX error")
            raise TransmitError(errno.EIO, "short write")

    def rx(self, stream) -> None:
        """Read one packet from ``stream`` (a descriptor or file) and deliver it."""
        fd = _fd_of(stream)
        if fd < 0:
            log.error("invalid file descriptor")
            raise ValueError("invalid file descriptor")
        try:
            data = os.read(fd, RX_BUFFER_SIZE)
        except OSError as exc:
            log.error("reading RX data failed: %s", exc)
            raise
        log.debug("<RX< %s", data.hex(" "))

        if len(data) > BTU + HEADER_SIZE or len(data) < HEADER_SIZE:
            log.error("incorrect packet size: %d", len(data))
            raise ValueError(f"incorrect packet size: {len(data)}")

        pkt = self.alloc_packet(0)
        pkt.push(data)
        pkt.private = fd
        self.bus_rx(pkt)