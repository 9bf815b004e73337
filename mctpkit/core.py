"""MCTP core: bus registration, message reassembly, routing and transmission."""

from __future__ import annotations

import copy
import errno
import logging
import uuid as uuidlib
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Optional

from .packet import (
    BTU,
    EID_BROADCAST,
    EID_NULL,
    HEADER_SIZE,
    SEQ_MASK,
    VERSION,
    VERSION_MASK,
    PacketBuffer,
    PacketHeader,
    packet_size,
)

log = logging.getLogger(__name__)

MAX_MESSAGE_SIZE = 65536
"""Default upper bound for a reassembled message buffer."""

MESSAGE_CONTEXTS = 16
"""Number of messages that may be reassembled at the same time."""

CTRL_HDR_MSG_TYPE = 0x00
CTRL_HDR_FLAG_REQUEST = 0x80
CTRL_HDR_SIZE = 3
CTRL_CMD_FIRST_TRANSPORT = 0xF0
CTRL_CMD_LAST_TRANSPORT = 0xFF

RxCallback = Callable[[int, bytes, bool, int, object], None]
RawRxCallback = Callable[[bytes, object], None]


class TransmitError(OSError):
    """A binding failed to transmit a packet."""

    def __init__(self, code: int = errno.EIO, message: str = "transmit failed"):
        super().__init__(code, message)


class RoutePolicy(Enum):
    """How received messages are handled."""

    ENDPOINT = "endpoint"
    BRIDGE = "bridge"


@dataclass
class MessageContext:
    """State of one message being reassembled from several packets."""

    src: int = 0
    dest: int = 0
    tag_owner: bool = False
    tag: int = 0
    last_seq: int = 0
    buffer: bytearray = field(default_factory=bytearray)
    allocated: int = 0

    @property
    def in_use(self) -> bool:
        return self.src != 0

    def _matches(self, src: int, dest: int, tag: int) -> bool:
        return self.src == src and self.dest == dest and self.tag == tag

    def _drop(self) -> None:
        self.src = 0

    def _reset(self) -> None:
        self.buffer.clear()

    def _append(self, pkt: PacketBuffer, max_size: int) -> bool:
        size = len(pkt)
        if size < HEADER_SIZE:
            return False
        length = size - HEADER_SIZE
        while len(self.buffer) + length > self.allocated:
            new_size = 4096 if not self.allocated else self.allocated * 2
            if new_size > max_size:
                log.debug("cannot allocate memory for context buffer")
                return False
            self.allocated = new_size
        offset = pkt.header_offset + HEADER_SIZE
        self.buffer += pkt.data[offset:offset + length]
        return True


@dataclass(eq=False)
class Bus:
    """A registered binding together with its address and transmit queue."""

    binding: "Binding"
    eid: int = 0
    has_static_eid: bool = False
    tx_enabled: bool = False
    tx_queue: deque = field(default_factory=deque)

    def _flush_all(self) -> None:
        self.tx_queue.clear()

    def _flush_message(self) -> None:
        while self.tx_queue:
            pkt = self.tx_queue.popleft()
            if pkt.header.eom:
                break

    def _send_queue(self) -> tuple[bool, Optional[TransmitError]]:
        """Send queued packets; return (queue drained, last error)."""
        error: Optional[TransmitError] = None
        while self.tx_queue:
            if not self.tx_enabled:
                return False, None
            pkt = self.tx_queue[0]
            try:
                self.binding.tx(pkt)
            except TransmitError as exc:
                if exc.errno == errno.EPERM:
                    log.debug("operation not permitted, flushing the message")
                else:
                    log.error("failed to tx mctp packet, flushing message: %s", exc)
                error = exc
                self._flush_message()
                continue
            error = None
            self.tx_queue.popleft()
        return True, error


class Binding:
    """A transport binding; subclasses override :meth:`tx` and :meth:`start`."""

    def __init__(
        self,
        name: str = "",
        version: int = VERSION,
        pkt_size: int = packet_size(BTU),
        pkt_pad: int = 0,
        *,
        transmit: Optional[Callable[[PacketBuffer], None]] = None,
        control_rx: Optional[RxCallback] = None,
        info: int = 0,
    ):
        self.name = name
        self.version = version
        self.pkt_size = pkt_size
        self.pkt_pad = pkt_pad
        self.control_rx = control_rx
        self.info = info
        self.bus: Optional[Bus] = None
        self.mctp: Optional[Mctp] = None
        self._transmit = transmit

    def tx(self, pkt: PacketBuffer) -> None:
        """Transmit one packet; raise TransmitError on failure."""
        if self._transmit is None:
            raise TransmitError(errno.ENOSYS, f"binding {self.name!r} cannot transmit")
        self._transmit(pkt)

    def start(self) -> None:
        """Bring the binding up once it is registered; nothing to do by default."""

    def alloc_packet(self, length: int) -> PacketBuffer:
        """Return a packet buffer sized for this binding holding ``length`` bytes."""
        return PacketBuffer(self.pkt_size, self.pkt_pad, length)

    def _require_bus(self) -> Bus:
        if self.bus is None or self.mctp is None:
            raise RuntimeError(f"binding {self.name!r} is not registered on a bus")
        return self.bus

    def set_tx_enabled(self, enable: bool) -> None:
        """Allow or stop transmission; enabling flushes the queue."""
        bus = self._require_bus()
        bus.tx_enabled = enable
        if enable:
            bus._send_queue()

    def bus_rx(self, pkt: PacketBuffer) -> None:
        """Hand a received packet to the core."""
        bus = self._require_bus()
        self.mctp._bus_rx(bus, pkt)

    def set_dynamic_eid(self, eid: int) -> None:
        """Assign the bus EID, unless it was registered with a static one."""
        bus = self._require_bus()
        if bus.has_static_eid:
            raise ValueError("bus has a static EID")
        bus.eid = eid


def eid_is_valid(eid: int) -> bool:
    """Return whether ``eid`` may be assigned to an endpoint (DSP0236 8.2)."""
    return eid not in (EID_NULL, EID_BROADCAST) and eid >= 8


def is_control_message(buf) -> bool:
    """Return whether ``buf`` holds an MCTP control message."""
    return len(buf) >= CTRL_HDR_SIZE and buf[0] == CTRL_HDR_MSG_TYPE


def is_control_request(buf) -> bool:
    """Return whether the control message in ``buf`` is a request."""
    if len(buf) < CTRL_HDR_SIZE:
        raise ValueError("buffer too short for a control message header")
    return buf[0] == CTRL_HDR_MSG_TYPE and bool(buf[1] & CTRL_HDR_FLAG_REQUEST)


class Mctp:
    """An MCTP stack: one endpoint bus, or two bridged busses."""

    def __init__(self, max_message_size: int = MAX_MESSAGE_SIZE):
        self.busses: list[Bus] = []
        self.message_rx: Optional[RxCallback] = None
        self.message_rx_raw: Optional[RawRxCallback] = None
        self.control_rx: Optional[RxCallback] = None
        self.contexts = [MessageContext() for _ in range(MESSAGE_CONTEXTS)]
        self.route_policy = RoutePolicy.ENDPOINT
        self.uuid = bytes(16)
        self.max_message_size = max_message_size

    def set_max_message_size(self, size: int) -> None:
        self.max_message_size = size

    def set_rx_all(self, fn: Optional[RxCallback]) -> None:
        """Set the callback for received messages: fn(src, msg, tag_owner, tag, private)."""
        self.message_rx = fn

    def set_rx_raw(self, fn: Optional[RawRxCallback]) -> None:
        """Set the callback for packets not addressed here: fn(raw, private)."""
        self.message_rx_raw = fn

    def set_rx_ctrl(self, fn: Optional[RxCallback]) -> None:
        """Set the callback for control requests that are not transport specific."""
        self.control_rx = fn

    def _attach(self, bindings, policy: RoutePolicy) -> None:
        if self.busses:
            raise RuntimeError("busses are already registered")
        self.busses = [Bus(binding) for binding in bindings]
        for bus in self.busses:
            bus.binding.bus = bus
            bus.binding.mctp = self
        self.route_policy = policy

    def register_bus_dynamic_eid(self, binding: Binding) -> None:
        """Register ``binding`` as the endpoint bus without an EID."""
        self._attach([binding], RoutePolicy.ENDPOINT)
        binding.start()

    def register_bus(self, binding: Binding, eid: int) -> None:
        """Register ``binding`` as the endpoint bus with a static EID."""
        if not eid_is_valid(eid):
            raise ValueError(f"EID {eid} cannot be assigned to an endpoint")
        self.register_bus_dynamic_eid(binding)
        bus = self.busses[0]
        bus.has_static_eid = True
        bus.eid = eid

    def bridge_busses(self, b1: Binding, b2: Binding) -> None:
        """Forward every message received on one binding to the other."""
        self._attach([b1, b2], RoutePolicy.BRIDGE)
        b1.start()
        b2.start()

    def bus_for_eid(self, eid: int) -> Bus:
        """Return the bus that reaches ``eid``; for now always the first one."""
        if not self.busses:
            raise LookupError("no bus registered")
        return self.busses[0]

    def _accepts(self, bus: Bus, dest: int) -> bool:
        return dest in (bus.eid, EID_NULL, EID_BROADCAST)

    def _tx_on_bus(self, bus, src, dest, msg: bytes, tag_owner, tag, private) -> bool:
        binding = bus.binding
        max_payload = binding.pkt_size - HEADER_SIZE
        if msg and max_payload <= 0:
            raise ValueError("binding packet size leaves no room for payload")
        log.debug(
            "generating packets for transmission of %d byte message from %d to %d",
            len(msg), src, dest,
        )
        count = 0
        for count, offset in enumerate(range(0, len(msg), max_payload), start=1):
            chunk = msg[offset:offset + max_payload]
            pkt = binding.alloc_packet(len(chunk) + HEADER_SIZE)
            if private is not None:
                pkt.private = copy.copy(private)
            pkt.set_header(
                PacketHeader.from_fields(
                    binding.version,
                    dest,
                    src,
                    som=offset == 0,
                    eom=offset + len(chunk) >= len(msg),
                    tag_owner=tag_owner,
                    seq=(count - 1) & SEQ_MASK,
                    tag=tag,
                )
            )
            pkt.payload = chunk
            bus.tx_queue.append(pkt)
        log.debug("enqueued %d packets", count)
        sent, error = bus._send_queue()
        if error is not None:
            raise error
        return sent

    def message_tx(self, eid, msg, tag_owner=False, tag=0, private=None) -> bool:
        """Send ``msg`` to ``eid``.

        Return True when every packet went out, False when some are held
        until transmission is enabled again. Raise TransmitError when the
        last transmission attempt failed.
        """
        bus = self.bus_for_eid(eid)
        return self._tx_on_bus(bus, bus.eid, eid, bytes(msg), tag_owner, tag, private)

    def message_raw_tx(self, msg, private=None) -> bool:
        """Send a complete packet, header included, without fragmenting it."""
        raw = bytes(msg)
        if len(raw) < HEADER_SIZE:
            raise ValueError("raw message shorter than an MCTP header")
        bus = self.bus_for_eid(raw[1])
        if len(raw) > bus.binding.pkt_size:
            raise ValueError(
                f"{len(raw)} bytes cannot be transferred in a single bridge packet"
            )
        pkt = bus.binding.alloc_packet(len(raw))
        if private is not None:
            pkt.private = copy.copy(private)
        pkt.data[pkt.header_offset:pkt.header_offset + len(raw)] = raw
        bus.tx_queue.append(pkt)
        sent, error = bus._send_queue()
        if error is not None:
            raise error
        return sent

    def handle_control_message(self, bus, src, dest, buf, tag_owner, tag, private) -> bool:
        """Dispatch a control request; return True if a handler took it."""
        command = buf[2]
        if CTRL_CMD_FIRST_TRANSPORT <= command <= CTRL_CMD_LAST_TRANSPORT:
            if bus.binding.control_rx is not None:
                bus.binding.control_rx(src, buf, tag_owner, tag, private)
                return True
        elif self.control_rx is not None:
            self.control_rx(src, buf, tag_owner, tag, private)
            return True
        return False

    def set_uuid(self, uuid) -> None:
        """Set the endpoint UUID from a UUID or 16 bytes."""
        raw = uuid.bytes if isinstance(uuid, uuidlib.UUID) else bytes(uuid)
        if len(raw) != 16:
            raise ValueError("a UUID is 16 bytes long")
        self.uuid = raw

    def _rx(self, bus, src, dest, buf: bytes, tag_owner, tag, private) -> None:
        if self.route_policy is RoutePolicy.ENDPOINT and self._accepts(bus, dest):
            if is_control_message(buf) and is_control_request(buf):
                if self.handle_control_message(
                    bus, src, dest, buf, tag_owner, tag, private
                ):
                    return
            if self.message_rx is not None:
                self.message_rx(src, buf, tag_owner, tag, private)
            return

        if self.route_policy is RoutePolicy.BRIDGE:
            for other in self.busses:
                if other is bus:
                    continue
                try:
                    self._tx_on_bus(other, src, dest, buf, tag_owner, tag, None)
                except TransmitError as exc:
                    log.error("bridging to %s failed: %s", other.binding.name, exc)

    def _lookup_context(self, src, dest, tag) -> Optional[MessageContext]:
        return next((c for c in self.contexts if c._matches(src, dest, tag)), None)

    def _create_context(self, src, dest, tag_owner, tag) -> Optional[MessageContext]:
        ctx = next((c for c in self.contexts if not c.in_use), None)
        if ctx is not None:
            ctx.src = src
            ctx.dest = dest
            ctx.tag_owner = tag_owner
            ctx.tag = tag
            ctx._reset()
        return ctx

    def _bus_rx(self, bus: Bus, pkt: PacketBuffer) -> None:
        hdr = pkt.header
        binding = bus.binding

        if self.route_policy is RoutePolicy.ENDPOINT and (
            not self._accepts(bus, hdr.dest)
            or hdr.version != binding.version & VERSION_MASK
        ):
            if self.message_rx_raw is not None:
                self.message_rx_raw(pkt.message, pkt.private)
            return

        tag_owner = hdr.tag_owner
        tag = hdr.tag
        seq = hdr.seq

        if hdr.som and hdr.eom:
            self._rx(bus, hdr.src, hdr.dest, pkt.payload, tag_owner, tag, pkt.private)
            return

        if hdr.som:
            ctx = self._lookup_context(hdr.src, hdr.dest, tag)
            if ctx is not None:
                ctx._reset()
            else:
                ctx = self._create_context(hdr.src, hdr.dest, tag_owner, tag)
                if ctx is None:
                    log.error("context buffers exhausted")
                    return
            if ctx._append(pkt, self.max_message_size):
                ctx.last_seq = seq
            else:
                ctx._drop()
            return

        ctx = self._lookup_context(hdr.src, hdr.dest, tag)
        if ctx is None:
            return
        expected = (ctx.last_seq + 1) % 4
        if expected != seq:
            log.debug("sequence number %d does not match expected %d", seq, expected)
            ctx._drop()
            return

        if hdr.eom:
            if ctx._append(pkt, self.max_message_size):
                self._rx(
                    bus, ctx.src, ctx.dest, bytes(ctx.buffer), tag_owner, tag,
                    pkt.private,
                )
            ctx._drop()
        elif ctx._append(pkt, self.max_message_size):
            ctx.last_seq = seq
        else:
            ctx._drop()