"""MCTP binding over the ASPEED LPC firmware window and KCS interface (BMC side)."""

from __future__ import annotations

import errno
import logging
import struct
from enum import IntEnum
from typing import Callable, Optional

from .core import Binding, TransmitError
from .packet import BTU, HEADER_SIZE, PacketBuffer, packet_size

log = logging.getLogger(__name__)

MAGIC = 0x4D435450
BMC_VER_MIN = 1
BMC_VER_CUR = 1
NEGOTIATED_VERSION = 1

# Layout of the receive and transmit areas, as seen from the host.
RX_OFFSET = 0x100
RX_SIZE = 0x100
TX_OFFSET = 0x200
TX_SIZE = 0x100

LPC_WIN_SIZE = 1024 * 1024

KCS_STATUS_BMC_READY = 0x80
KCS_STATUS_CHANNEL_ACTIVE = 0x40
KCS_STATUS_IBF = 0x02
KCS_STATUS_OBF = 0x01

CMD_INIT_CHANNEL = 0x00
CMD_TX_BEGIN = 0x01
CMD_RX_COMPLETE = 0x02
CMD_DUMMY = 0xFF

# magic, bmc_ver_min, bmc_ver_cur, host_ver_min, host_ver_cur,
# negotiated_ver, pad0, rx_offset, rx_size, tx_offset, tx_size
LPC_HEADER = struct.Struct(">IHHHHHHIIII")
_NEGOTIATED_VER_OFFSET = 12
_BMC_FIELDS = struct.Struct(">IHH")
_BMC_FIELDS_OFFSET = 0
_LAYOUT_FIELDS = struct.Struct(">IIII")
_LAYOUT_FIELDS_OFFSET = 16
_LENGTH = struct.Struct(">I")
_VERSION = struct.Struct(">H")


class KcsRegister(IntEnum):
    """KCS registers reachable through the binding operations."""

    DATA = 0
    STATUS = 1


class AstlpcOps:
    """Access to the KCS registers and the LPC window.

    Either pass callables to the constructor or subclass and override the
    methods. Every operation raises OSError when it fails.
    """

    def __init__(
        self,
        kcs_read: Optional[Callable[[KcsRegister], int]] = None,
        kcs_write: Optional[Callable[[KcsRegister, int], None]] = None,
        lpc_read: Optional[Callable[[int, int], bytes]] = None,
        lpc_write: Optional[Callable[[bytes, int], None]] = None,
    ):
        self._kcs_read = kcs_read
        self._kcs_write = kcs_write
        self._lpc_read = lpc_read
        self._lpc_write = lpc_write

    @staticmethod
    def _missing(what: str) -> OSError:
        return OSError(errno.ENOSYS, f"no {what} operation provided")

    def kcs_read(self, reg: KcsRegister) -> int:
        """Return the value of KCS register ``reg``."""
        if self._kcs_read is None:
            raise self._missing("KCS read")
        return self._kcs_read(KcsRegister(reg))

    def kcs_write(self, reg: KcsRegister, val: int) -> None:
        """Write ``val`` to KCS register ``reg``."""
        if self._kcs_write is None:
            raise self._missing("KCS write")
        self._kcs_write(KcsRegister(reg), val)

    def lpc_read(self, offset: int, length: int) -> bytes:
        """Return ``length`` bytes of the LPC window starting at ``offset``."""
        if self._lpc_read is None:
            raise self._missing("LPC read")
        return bytes(self._lpc_read(offset, length))

    def lpc_write(self, data: bytes, offset: int) -> None:
        """Write ``data`` into the LPC window at ``offset``."""
        if self._lpc_write is None:
            raise self._missing("LPC write")
        self._lpc_write(bytes(data), offset)


class AstlpcBinding(Binding):
    """The BMC end of the LPC binding.

    With ``lpc_map`` given, the window is accessed directly; otherwise all
    window accesses go through the LPC operations of ``ops``.
    """

    def __init__(self, ops: AstlpcOps, lpc_map=None):
        super().__init__(name="astlpc", version=1, pkt_size=packet_size(BTU), pkt_pad=0)
        self.ops = ops
        if lpc_map is not None:
            view = memoryview(lpc_map)
            if view.readonly:
                raise ValueError("LPC map must be writable")
            if len(view) < TX_OFFSET + TX_SIZE:
                raise ValueError("LPC map is too small for the MCTP areas")
            self.lpc_map: Optional[memoryview] = view
        else:
            self.lpc_map = None

    @property
    def direct(self) -> bool:
        return self.lpc_map is not None

    def _read_lpc(self, offset: int, length: int) -> bytes:
        if self.lpc_map is not None:
            return bytes(self.lpc_map[offset:offset + length])
        return self.ops.lpc_read(offset, length)

    def _write_lpc(self, data: bytes, offset: int) -> None:
        if self.lpc_map is not None:
            self.lpc_map[offset:offset + len(data)] = data
        else:
            self.ops.lpc_write(data, offset)

    def _kcs_set_status(self, status: int) -> bool:
        # Write a dummy 0xff to the data register as well: some hardware only
        # interrupts the host on a data register event.
        status |= KCS_STATUS_OBF
        try:
            self.ops.kcs_write(KcsRegister.STATUS, status)
        except OSError as exc:
            log.warning("KCS status write failed: %s", exc)
            return False
        try:
            self.ops.kcs_write(KcsRegister.DATA, CMD_DUMMY)
        except OSError as exc:
            log.warning("KCS dummy data write failed: %s", exc)
            return False
        return True

    def _kcs_send(self, data: int) -> bool:
        try:
            while self.ops.kcs_read(KcsRegister.STATUS) & KCS_STATUS_OBF:
                pass
        except OSError as exc:
            log.warning("KCS status read failed: %s", exc)
            return False
        try:
            self.ops.kcs_write(KcsRegister.DATA, data)
        except OSError as exc:
            log.warning("KCS data write failed: %s", exc)
            return False
        return True

    def tx(self, pkt: PacketBuffer) -> None:
        """Place ``pkt`` in the host's receive area and notify the host."""
        length = len(pkt)
        log.debug("transmitting %d-byte packet", length)
        if length > RX_SIZE - 4:
            log.warning("invalid TX len 0x%x", length)
            raise TransmitError(errno.EMSGSIZE, f"invalid TX len 0x{length:x}")
        raw = bytes(pkt.data[pkt.header_offset:pkt.header_offset + length])
        try:
            self._write_lpc(_LENGTH.pack(length), RX_OFFSET)
            self._write_lpc(raw, RX_OFFSET + 4)
        except OSError as exc:
            raise TransmitError(exc.errno or errno.EIO, "LPC write failed") from exc
        self.set_tx_enabled(False)
        self._kcs_send(CMD_TX_BEGIN)

    def start(self) -> None:
        """Publish the window layout and report the BMC ready."""
        if self.lpc_map is not None:
            _BMC_FIELDS.pack_into(
                self.lpc_map, _BMC_FIELDS_OFFSET, MAGIC, BMC_VER_MIN, BMC_VER_CUR
            )
            _LAYOUT_FIELDS.pack_into(
                self.lpc_map, _LAYOUT_FIELDS_OFFSET,
                RX_OFFSET, RX_SIZE, TX_OFFSET, TX_SIZE,
            )
        else:
            header = LPC_HEADER.pack(
                MAGIC, BMC_VER_MIN, BMC_VER_CUR, 0, 0, 0, 0,
                RX_OFFSET, RX_SIZE, TX_OFFSET, TX_SIZE,
            )
            self.ops.lpc_write(header, 0)
        try:
            self.ops.kcs_write(KcsRegister.STATUS, KCS_STATUS_BMC_READY | KCS_STATUS_OBF)
        except OSError as exc:
            log.warning("KCS write failed: %s", exc)
            raise

    def _init_channel(self) -> None:
        self._write_lpc(_VERSION.pack(NEGOTIATED_VERSION), _NEGOTIATED_VER_OFFSET)
        self._kcs_set_status(
            KCS_STATUS_BMC_READY | KCS_STATUS_CHANNEL_ACTIVE | KCS_STATUS_OBF
        )
        self.set_tx_enabled(True)

    def _rx_start(self) -> None:
        (length,) = _LENGTH.unpack(self._read_lpc(TX_OFFSET, _LENGTH.size))
        if length < HEADER_SIZE or length > TX_SIZE - 4 or length > self.pkt_size:
            log.warning("invalid RX len 0x%x", length)
            return
        pkt = self.alloc_packet(length)
        offset = pkt.header_offset
        pkt.data[offset:offset + length] = self._read_lpc(TX_OFFSET + 4, length)
        self.bus_rx(pkt)
        self._kcs_send(CMD_RX_COMPLETE)

    def _tx_complete(self) -> None:
        self.set_tx_enabled(True)

    def poll(self) -> Optional[int]:
        """Handle one pending command from the host.

        Return the command byte that was handled, or None when the host
        has nothing pending. Raise OSError when a KCS register read fails.
        """
        try:
            status = self.ops.kcs_read(KcsRegister.STATUS)
        except OSError as exc:
            log.warning("KCS read error: %s", exc)
            raise
        log.debug("status: 0x%x", status)
        if not status & KCS_STATUS_IBF:
            return None
        try:
            data = self.ops.kcs_read(KcsRegister.DATA)
        except OSError as exc:
            log.warning("KCS data read error: %s", exc)
            raise
        log.debug("data: 0x%x", data)

        if data == CMD_INIT_CHANNEL:
            self._init_channel()
        elif data == CMD_TX_BEGIN:
            self._rx_start()
        elif data == CMD_RX_COMPLETE:
            self._tx_complete()
        elif data == CMD_DUMMY:
            pass
        else:
            log.warning("unknown message 0x%x", data)
        return data