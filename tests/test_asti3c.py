import os
import select

import pytest

from mctpkit.asti3c import Asti3cBinding, poll
from mctpkit.core import Mctp, TransmitError
from mctpkit.packet import BTU, HEADER_SIZE, PacketHeader, packet_size


@pytest.fixture
def pipe():
    r, w = os.pipe()
    yield r, w
    os.close(r)
    os.close(w)


@pytest.fixture
def stack():
    received = []
    mctp = Mctp()
    mctp.set_rx_all(lambda *args: received.append(args))
    binding = Asti3cBinding()
    mctp.register_bus(binding, 8)
    binding.set_tx_enabled(True)
    return mctp, binding, received


def _packet(payload, dest=8, src=9):
    hdr = PacketHeader.from_fields(1, dest, src, som=True, eom=True)
    return hdr.pack() + payload


def test_binding_identity():
    binding = Asti3cBinding()
    assert binding.name == "asti3c"
    assert binding.version == 1
    assert binding.pkt_size == packet_size(BTU)


def test_rx_delivers_message(stack, pipe):
    _, binding, received = stack
    r, w = pipe
    os.write(w, _packet(b"\x01\x02\x03"))
    binding.rx(r)
    assert received == [(9, b"\x01\x02\x03", False, 0, r)]


def test_rx_accepts_full_packet(stack, pipe):
    _, binding, received = stack
    r, w = pipe
    payload = bytes(range(BTU))
    os.write(w, _packet(payload))
    binding.rx(r)
    assert received[0][1] == payload


def test_rx_rejects_short_packet(stack, pipe):
    _, binding, received = stack
    r, w = pipe
    os.write(w, b"\x01\x08\x09")
    with pytest.raises(ValueError):
        binding.rx(r)
    assert received == []


def test_rx_rejects_oversized_packet(stack, pipe):
    _, binding, received = stack
    r, w = pipe
    os.write(w, _packet(bytes(BTU + 1)))
    with pytest.raises(ValueError):
        binding.rx(r)
    assert received == []


def test_rx_rejects_negative_fd(stack):
    _, binding, _ = stack
    with pytest.raises(ValueError):
        binding.rx(-1)


def test_tx_writes_packet_contents(pipe):
    r, w = pipe
    binding = Asti3cBinding()
    pkt = binding.alloc_packet(HEADER_SIZE)
    pkt.set_header(PacketHeader.from_fields(1, 9, 8, som=True, eom=True))
    pkt.payload = b"abc"
    pkt.private = w
    binding.tx(pkt)
    assert os.read(r, 256) == pkt.contents


def test_tx_without_descriptor_fails():
    binding = Asti3cBinding()
    pkt = binding.alloc_packet(HEADER_SIZE)
    with pytest.raises(TransmitError):
        binding.tx(pkt)


def test_message_tx_round_trip(stack, pipe):
    mctp, _, _ = stack
    r, w = pipe
    assert mctp.message_tx(9, b"hello", private=w) is True
    raw = os.read(r, 256)
    hdr = PacketHeader.unpack(raw)
    assert (hdr.dest, hdr.src, hdr.som, hdr.eom) == (9, 8, True, True)
    assert raw[HEADER_SIZE:] == b"hello"


def test_poll_reports_readable(pipe):
    r, w = pipe
    os.write(w, b"x")
    assert (poll(r, 0) & select.POLLIN) == select.POLLIN


def test_poll_idle_returns_zero(pipe):
    r, _ = pipe
    assert poll(r, 0) == 0