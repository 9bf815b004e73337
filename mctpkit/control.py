"""MCTP control messages: request encoders and endpoint responses (DSP0236)."""

from __future__ import annotations

import struct
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Iterable, Optional

from .core import CTRL_HDR_FLAG_REQUEST, CTRL_HDR_MSG_TYPE, CTRL_HDR_SIZE, Mctp, RoutePolicy
from .packet import EID_BROADCAST, EID_NULL

INSTANCE_ID_MASK = 0x1F
DATAGRAM_FLAG = 0x40

EID_ASSIGNMENT_ACCEPTED = 0x0
EID_ASSIGNMENT_REJECTED = 0x1
_EID_ASSIGNMENT_SHIFT = 4
_EID_ASSIGNMENT_MASK = 0x3

ENDPOINT_TYPE_SIMPLE = 0x0
ENDPOINT_TYPE_BUS_OWNER_BRIDGE = 0x1
_ENDPOINT_TYPE_SHIFT = 4
_ENDPOINT_TYPE_MASK = 0x3

EID_TYPE_DYNAMIC = 0x0
EID_TYPE_STATIC = 0x1
_EID_TYPE_MASK = 0x3

NO_MORE_ENTRIES = 0xFF


class ControlCommand(IntEnum):
    """MCTP control command codes."""

    RESERVED = 0x00
    SET_ENDPOINT_ID = 0x01
    GET_ENDPOINT_ID = 0x02
    GET_ENDPOINT_UUID = 0x03
    GET_VERSION_SUPPORT = 0x04
    GET_MESSAGE_TYPE_SUPPORT = 0x05
    GET_VENDOR_MESSAGE_SUPPORT = 0x06
    RESOLVE_ENDPOINT_ID = 0x07
    ALLOCATE_ENDPOINT_IDS = 0x08
    ROUTING_INFO_UPDATE = 0x09
    GET_ROUTING_TABLE_ENTRIES = 0x0A
    PREPARE_ENDPOINT_DISCOVERY = 0x0B
    ENDPOINT_DISCOVERY = 0x0C
    DISCOVERY_NOTIFY = 0x0D
    GET_NETWORK_ID = 0x0E
    QUERY_HOP = 0x0F


class CompletionCode(IntEnum):
    """Completion codes carried in control responses."""

    SUCCESS = 0x00
    ERROR = 0x01
    ERROR_INVALID_DATA = 0x02
    ERROR_INVALID_LENGTH = 0x03
    ERROR_NOT_READY = 0x04
    ERROR_UNSUPPORTED_CMD = 0x05


class SetEidOperation(IntEnum):
    """Operations of the Set Endpoint ID command."""

    SET_EID = 0
    FORCE_EID = 1
    RESET_EID = 2
    SET_DISCOVERED_FLAG = 3


class AllocateEidsOperation(IntEnum):
    """Operations of the Allocate Endpoint IDs command."""

    ALLOCATE = 0
    FORCE_ALLOCATE = 1
    GET_ALLOCATION_INFO = 2


def _u8s(*values: int) -> bytes:
    try:
        return struct.pack(f"{len(values)}B", *values)
    except struct.error as exc:
        raise ValueError(f"field out of range: {exc}") from None


@dataclass
class ControlHeader:
    """The three-byte header that starts every control message."""

    command_code: int
    rq_dgram_inst: int = 0
    ic_msg_type: int = CTRL_HDR_MSG_TYPE

    @property
    def is_request(self) -> bool:
        return bool(self.rq_dgram_inst & CTRL_HDR_FLAG_REQUEST)

    @property
    def instance_id(self) -> int:
        return self.rq_dgram_inst & INSTANCE_ID_MASK

    def pack(self) -> bytes:
        """Return the header in wire format."""
        return _u8s(self.ic_msg_type, self.rq_dgram_inst, self.command_code)

    @classmethod
    def unpack(cls, data) -> "ControlHeader":
        """Parse a header from the first three bytes of ``data``."""
        if len(data) < CTRL_HDR_SIZE:
            raise ValueError(
                f"need {CTRL_HDR_SIZE} bytes for a control header, got {len(data)}"
            )
        ic_msg_type, rq_dgram_inst, command_code = data[0], data[1], data[2]
        return cls(command_code, rq_dgram_inst, ic_msg_type)


@dataclass
class RoutingTableEntry:
    """One routing table entry together with its physical address."""

    eid_range_size: int
    starting_eid: int
    entry_type: int = 0
    phys_transport_binding_id: int = 0
    phys_media_type_id: int = 0
    phys_address: bytes = b""

    @property
    def phys_address_size(self) -> int:
        return len(self.phys_address)

    def _pack(self) -> bytes:
        return (
            _u8s(
                self.eid_range_size,
                self.starting_eid,
                self.entry_type,
                self.phys_transport_binding_id,
                self.phys_media_type_id,
                self.phys_address_size,
            )
            + bytes(self.phys_address)
        )

    def _pack_update(self) -> bytes:
        return _u8s(self.entry_type, self.eid_range_size, self.starting_eid) + bytes(
            self.phys_address
        )


def _request(command: ControlCommand, rq_dgram_inst: int, *fields: int) -> bytes:
    return ControlHeader(command, rq_dgram_inst).pack() + _u8s(*fields)


@dataclass
class SetEidRequest:
    """A parsed Set Endpoint ID request."""

    header: ControlHeader
    operation: int
    eid: int

    @classmethod
    def unpack(cls, data) -> "SetEidRequest":
        """Parse a Set Endpoint ID request, control header included."""
        if len(data) < CTRL_HDR_SIZE + 2:
            raise ValueError("Set Endpoint ID request is too short")
        header = ControlHeader.unpack(data)
        return cls(header, data[CTRL_HDR_SIZE], data[CTRL_HDR_SIZE + 1])


def _with_header(header: Optional[ControlHeader], body: bytes) -> bytes:
    return (header.pack() if header is not None else b"") + body


@dataclass
class SetEidResponse:
    """Response to Set Endpoint ID."""

    completion_code: int = CompletionCode.SUCCESS
    status: int = 0
    eid_set: int = 0
    eid_pool_size: int = 0
    header: Optional[ControlHeader] = None

    @property
    def assignment_status(self) -> int:
        return (self.status >> _EID_ASSIGNMENT_SHIFT) & _EID_ASSIGNMENT_MASK

    def _set_assignment_status(self, value: int) -> None:
        self.status |= (value & _EID_ASSIGNMENT_MASK) << _EID_ASSIGNMENT_SHIFT

    def pack(self) -> bytes:
        return _with_header(
            self.header,
            _u8s(self.completion_code, self.status, self.eid_set, self.eid_pool_size),
        )


@dataclass
class GetEidResponse:
    """Response to Get Endpoint ID."""

    completion_code: int = CompletionCode.SUCCESS
    eid: int = 0
    eid_type: int = 0
    medium_data: int = 0
    header: Optional[ControlHeader] = None

    @property
    def endpoint_type(self) -> int:
        return (self.eid_type >> _ENDPOINT_TYPE_SHIFT) & _ENDPOINT_TYPE_MASK

    @property
    def endpoint_id_type(self) -> int:
        return self.eid_type & _EID_TYPE_MASK

    def pack(self) -> bytes:
        return _with_header(
            self.header,
            _u8s(self.completion_code, self.eid, self.eid_type, self.medium_data),
        )


@dataclass
class GetUuidResponse:
    """Response to Get Endpoint UUID."""

    completion_code: int = CompletionCode.SUCCESS
    uuid: bytes = bytes(16)
    header: Optional[ControlHeader] = None

    def pack(self) -> bytes:
        if len(self.uuid) != 16:
            raise ValueError("a UUID is 16 bytes long")
        return _with_header(self.header, _u8s(self.completion_code) + bytes(self.uuid))


@dataclass
class GetVdmSupportResponse:
    """Response to Get Vendor Defined Message Support."""

    completion_code: int = CompletionCode.SUCCESS
    vendor_id_set_selector: int = NO_MORE_ENTRIES
    vendor_data: bytes = field(default=b"")
    header: Optional[ControlHeader] = None

    def pack(self) -> bytes:
        return _with_header(
            self.header,
            _u8s(self.completion_code, self.vendor_id_set_selector)
            + bytes(self.vendor_data),
        )


def encode_set_eid(rq_dgram_inst, op, eid) -> bytes:
    """Encode a Set Endpoint ID request."""
    return _request(ControlCommand.SET_ENDPOINT_ID, rq_dgram_inst, op, eid)


def encode_get_eid(rq_dgram_inst) -> bytes:
    """Encode a Get Endpoint ID request."""
    return _request(ControlCommand.GET_ENDPOINT_ID, rq_dgram_inst)


def encode_get_uuid(rq_dgram_inst) -> bytes:
    """Encode a Get Endpoint UUID request."""
    return _request(ControlCommand.GET_ENDPOINT_UUID, rq_dgram_inst)


def encode_get_ver_support(rq_dgram_inst, msg_type_number) -> bytes:
    """Encode a Get MCTP Version Support request."""
    return _request(ControlCommand.GET_VERSION_SUPPORT, rq_dgram_inst, msg_type_number)


def encode_get_msg_type_support(rq_dgram_inst) -> bytes:
    """Encode a Get Message Type Support request."""
    return _request(ControlCommand.GET_MESSAGE_TYPE_SUPPORT, rq_dgram_inst)


def encode_get_vdm_support(rq_dgram_inst, selector) -> bytes:
    """Encode a Get Vendor Defined Message Support request."""
    return _request(ControlCommand.GET_VENDOR_MESSAGE_SUPPORT, rq_dgram_inst, selector)


def encode_discovery_notify(rq_dgram_inst) -> bytes:
    """Encode a Discovery Notify request."""
    return _request(ControlCommand.DISCOVERY_NOTIFY, rq_dgram_inst)


def encode_get_routing_table(rq_dgram_inst, entry_handle) -> bytes:
    """Encode a Get Routing Table Entries request."""
    return _request(
        ControlCommand.GET_ROUTING_TABLE_ENTRIES, rq_dgram_inst, entry_handle
    )


def encode_allocate_eids(rq_dgram_inst, op, pool_size, eid) -> bytes:
    """Encode an Allocate Endpoint IDs request."""
    return _request(
        ControlCommand.ALLOCATE_ENDPOINT_IDS, rq_dgram_inst, op, pool_size, eid
    )


def encode_routing_information_update(
    rq_dgram_inst, entries: Iterable[RoutingTableEntry]
) -> bytes:
    """Encode a Routing Information Update request carrying ``entries``."""
    entries = list(entries)
    if not entries:
        raise ValueError("a routing information update needs at least one entry")
    if len(entries) > 0xFF:
        raise ValueError("too many routing entries for one update")
    body = b"".join(entry._pack_update() for entry in entries)
    return _request(ControlCommand.ROUTING_INFO_UPDATE, rq_dgram_inst, len(entries)) + body


def encode_query_hop(rq_dgram_inst, eid, msg_type) -> bytes:
    """Encode a Query Hop request for ``eid``."""
    return _request(ControlCommand.QUERY_HOP, rq_dgram_inst, eid, msg_type)


def encode_get_routing_table_response(entries: Iterable[RoutingTableEntry]) -> bytes:
    """Encode a Get Routing Table Entries response holding every entry."""
    entries = list(entries)
    if len(entries) > 0xFF:
        raise ValueError("too many routing entries for one response")
    body = b"".join(entry._pack() for entry in entries)
    return _u8s(CompletionCode.SUCCESS, NO_MORE_ENTRIES, len(entries)) + body


def set_endpoint_id(mctp: Mctp, dest_eid, request: SetEidRequest) -> SetEidResponse:
    """Apply a Set Endpoint ID request to the bus reaching ``dest_eid``."""
    bus = mctp.bus_for_eid(dest_eid)
    response = SetEidResponse()

    if request.eid in (EID_BROADCAST, EID_NULL):
        response.completion_code = CompletionCode.ERROR_INVALID_DATA
        response.eid_set = bus.eid
        return response

    if request.operation == SetEidOperation.SET_EID:
        if len(mctp.busses) == 1 or bus.eid == 0:
            bus.eid = request.eid
            response.eid_set = request.eid
            response._set_assignment_status(EID_ASSIGNMENT_ACCEPTED)
        else:
            response.eid_set = bus.eid
            response._set_assignment_status(EID_ASSIGNMENT_REJECTED)
        response.completion_code = CompletionCode.SUCCESS
    elif request.operation == SetEidOperation.FORCE_EID:
        bus.eid = request.eid
        response.completion_code = CompletionCode.SUCCESS
        response.eid_set = request.eid
    else:
        response.completion_code = CompletionCode.ERROR_INVALID_DATA
    return response


def get_endpoint_id(mctp: Mctp, dest_eid, bus_owner) -> GetEidResponse:
    """Build the Get Endpoint ID response for the bus reaching ``dest_eid``."""
    bus = mctp.bus_for_eid(dest_eid)
    eid_type = 0
    if mctp.route_policy is RoutePolicy.BRIDGE or bus_owner:
        eid_type |= (ENDPOINT_TYPE_BUS_OWNER_BRIDGE & _ENDPOINT_TYPE_MASK) << _ENDPOINT_TYPE_SHIFT
    if bus.has_static_eid:
        eid_type |= EID_TYPE_STATIC & _EID_TYPE_MASK
    return GetEidResponse(
        completion_code=CompletionCode.SUCCESS,
        eid=bus.eid,
        eid_type=eid_type,
        medium_data=bus.binding.info,
    )


def get_endpoint_uuid(mctp: Mctp) -> GetUuidResponse:
    """Build the Get Endpoint UUID response."""
    return GetUuidResponse(CompletionCode.SUCCESS, bytes(mctp.uuid))


def get_vdm_support(mctp: Mctp, src_eid) -> GetVdmSupportResponse:
    """Build the Get Vendor Defined Message Support response: no capability sets."""
    return GetVdmSupportResponse(CompletionCode.SUCCESS)