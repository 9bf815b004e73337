import uuid

import pytest

from mctpkit import control
from mctpkit.control import (
    CompletionCode,
    ControlCommand,
    ControlHeader,
    RoutingTableEntry,
    SetEidOperation,
    SetEidRequest,
)
from mctpkit.core import Binding, Mctp
from mctpkit.packet import FLAG_EOM, FLAG_SOM, VERSION, PacketHeader

EID_1 = 9
EID_2 = 10
INSTANCE = 0x05
RQ = INSTANCE | 0x80


def _header(raw):
    return ControlHeader.unpack(raw)


def _check_header(raw, command):
    hdr = _header(raw)
    assert hdr.command_code == command
    assert hdr.rq_dgram_inst == RQ
    assert hdr.ic_msg_type == 0x00


def _endpoint(eid=EID_1):
    mctp = Mctp()
    binding = Binding(name="test", transmit=lambda pkt: None)
    mctp.register_bus(binding, eid)
    binding.set_tx_enabled(True)
    return mctp, binding


def _receive(binding, command):
    hdr = PacketHeader(VERSION, EID_1, EID_2, FLAG_SOM | FLAG_EOM)
    raw = hdr.pack() + ControlHeader(command, 0x80).pack()
    pkt = binding.alloc_packet(0)
    pkt.push(raw)
    binding.bus_rx(pkt)


def test_control_message_dispatch_counts():
    mctp, binding = _endpoint()
    seen = []

    def ctrl(src, buf, tag_owner, tag, private):
        seen.append(("ctrl", src, buf[2]))

    def transport(src, buf, tag_owner, tag, private):
        seen.append(("transport", src, buf[2]))

    mctp.set_rx_ctrl(ctrl)
    binding.control_rx = transport

    _receive(binding, ControlCommand.GET_ENDPOINT_ID)
    _receive(binding, ControlCommand.RESERVED)
    _receive(binding, 0xF2)

    assert seen == [
        ("ctrl", EID_2, ControlCommand.GET_ENDPOINT_ID),
        ("ctrl", EID_2, ControlCommand.RESERVED),
        ("transport", EID_2, 0xF2),
    ]
    assert mctp.bus_for_eid(EID_2).eid == EID_1


@pytest.mark.parametrize("eid", [EID_1, 1])
def test_encode_set_eid(eid):
    raw = control.encode_set_eid(RQ, SetEidOperation.SET_EID, eid)
    _check_header(raw, ControlCommand.SET_ENDPOINT_ID)
    request = SetEidRequest.unpack(raw)
    assert request.eid == eid
    assert request.operation == SetEidOperation.SET_EID
    assert request.header.is_request
    assert request.header.instance_id == INSTANCE


def test_encode_get_eid():
    raw = control.encode_get_eid(RQ)
    _check_header(raw, ControlCommand.GET_ENDPOINT_ID)
    assert len(raw) == 3


def test_encode_get_uuid():
    _check_header(control.encode_get_uuid(RQ), ControlCommand.GET_ENDPOINT_UUID)


def test_encode_get_ver_support():
    raw = control.encode_get_ver_support(RQ, 0x00)
    _check_header(raw, ControlCommand.GET_VERSION_SUPPORT)
    assert raw[3] == 0x00


def test_encode_get_msg_type_support():
    _check_header(
        control.encode_get_msg_type_support(RQ), ControlCommand.GET_MESSAGE_TYPE_SUPPORT
    )


def test_encode_get_vdm_support():
    raw = control.encode_get_vdm_support(RQ, 5)
    _check_header(raw, ControlCommand.GET_VENDOR_MESSAGE_SUPPORT)
    assert raw[3] == 5


def test_encode_discovery_notify():
    _check_header(control.encode_discovery_notify(RQ), ControlCommand.DISCOVERY_NOTIFY)


def test_encode_get_routing_table():
    raw = control.encode_get_routing_table(RQ, 10)
    _check_header(raw, ControlCommand.GET_ROUTING_TABLE_ENTRIES)
    assert raw[3] == 10


def test_encode_allocate_eids():
    raw = control.encode_allocate_eids(RQ, control.AllocateEidsOperation.ALLOCATE, 4, 20)
    _check_header(raw, ControlCommand.ALLOCATE_ENDPOINT_IDS)
    assert raw[3:] == bytes([0, 4, 20])


def test_encode_query_hop():
    raw = control.encode_query_hop(RQ, 12, 0x00)
    _check_header(raw, ControlCommand.QUERY_HOP)
    assert raw[3:] == bytes([12, 0x00])


def test_encode_rejects_out_of_range_field():
    with pytest.raises(ValueError):
        control.encode_get_ver_support(RQ, 256)


def test_encode_routing_information_update():
    entries = [
        RoutingTableEntry(2, 20, entry_type=1, phys_address=b"\x30"),
        RoutingTableEntry(1, 30, entry_type=0, phys_address=b"\x40\x41"),
    ]
    raw = control.encode_routing_information_update(RQ, entries)
    _check_header(raw, ControlCommand.ROUTING_INFO_UPDATE)
    assert raw[3] == 2
    assert raw[4:] == bytes([1, 2, 20, 0x30, 0, 1, 30, 0x40, 0x41])


def test_encode_routing_information_update_needs_entries():
    with pytest.raises(ValueError):
        control.encode_routing_information_update(RQ, [])


def test_encode_get_routing_table_response():
    entries = [RoutingTableEntry(1, 10, 0, 1, 2, b"\x20")]
    raw = control.encode_get_routing_table_response(entries)
    assert raw == bytes([0x00, 0xFF, 0x01, 1, 10, 0, 1, 2, 1, 0x20])


def test_set_endpoint_id_single_bus_accepted():
    mctp = Mctp()
    binding = Binding(name="test")
    mctp.register_bus_dynamic_eid(binding)
    request = SetEidRequest.unpack(control.encode_set_eid(RQ, SetEidOperation.SET_EID, 20))
    response = control.set_endpoint_id(mctp, 20, request)
    assert response.completion_code == CompletionCode.SUCCESS
    assert response.eid_set == 20
    assert response.assignment_status == control.EID_ASSIGNMENT_ACCEPTED
    assert mctp.busses[0].eid == 20
    assert response.pack() == bytes([0, 0, 20, 0])


def test_set_endpoint_id_bridge_rejects_when_assigned():
    mctp = Mctp()
    mctp.bridge_busses(Binding(name="a"), Binding(name="b"))
    first = control.set_endpoint_id(
        mctp, 0, SetEidRequest(ControlHeader(1, RQ), SetEidOperation.SET_EID, 20)
    )
    assert first.eid_set == 20
    second = control.set_endpoint_id(
        mctp, 0, SetEidRequest(ControlHeader(1, RQ), SetEidOperation.SET_EID, 30)
    )
    assert second.completion_code == CompletionCode.SUCCESS
    assert second.eid_set == 20
    assert second.assignment_status == control.EID_ASSIGNMENT_REJECTED
    forced = control.set_endpoint_id(
        mctp, 0, SetEidRequest(ControlHeader(1, RQ), SetEidOperation.FORCE_EID, 30)
    )
    assert forced.eid_set == 30
    assert mctp.busses[0].eid == 30


def test_set_endpoint_id_invalid():
    mctp, _ = _endpoint()
    special = control.set_endpoint_id(
        mctp, 0, SetEidRequest(ControlHeader(1), SetEidOperation.SET_EID, 0xFF)
    )
    assert special.completion_code == CompletionCode.ERROR_INVALID_DATA
    assert special.eid_set == EID_1
    reset = control.set_endpoint_id(
        mctp, 0, SetEidRequest(ControlHeader(1), SetEidOperation.RESET_EID, 20)
    )
    assert reset.completion_code == CompletionCode.ERROR_INVALID_DATA
    assert mctp.busses[0].eid == EID_1


def test_get_endpoint_id_static():
    mctp = Mctp()
    binding = Binding(name="test", info=0x7)
    mctp.register_bus(binding, EID_1)
    response = control.get_endpoint_id(mctp, 0, False)
    assert response.eid == EID_1
    assert response.endpoint_id_type == control.EID_TYPE_STATIC
    assert response.endpoint_type == control.ENDPOINT_TYPE_SIMPLE
    assert response.pack() == bytes([0, EID_1, 0x01, 0x7])


def test_get_endpoint_id_bus_owner():
    mctp = Mctp()
    mctp.register_bus_dynamic_eid(Binding(name="test"))
    response = control.get_endpoint_id(mctp, 0, True)
    assert response.eid_type == 0x10


def test_get_endpoint_uuid():
    mctp = Mctp()
    value = uuid.UUID(int=0x1234)
    mctp.set_uuid(value)
    response = control.get_endpoint_uuid(mctp)
    assert response.uuid == value.bytes
    header = ControlHeader(ControlCommand.GET_ENDPOINT_UUID, INSTANCE)
    response.header = header
    assert response.pack() == header.pack() + b"\x00" + value.bytes


def test_get_vdm_support():
    response = control.get_vdm_support(Mctp(), EID_2)
    assert response.completion_code == CompletionCode.SUCCESS
    assert response.pack() == bytes([0x00, 0xFF])


def test_control_header_unpack_too_short():
    with pytest.raises(ValueError):
        ControlHeader.unpack(b"\x00\x80")