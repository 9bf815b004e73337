# mctpkit

A pure-Python MCTP (Management Component Transport Protocol, DMTF DSP0236)
stack. It splits messages into packets and joins received packets back into
messages, delivers messages to the local endpoint or bridges them between two
busses, dispatches and encodes control messages, and includes transport
bindings for the ASPEED LPC/KCS interface and for I3C character devices.

It has no dependencies outside the standard library.

## Installation

```
pip install mctpkit
```

To run the test suite:

```
pip install "mctpkit[test]"
pytest
```

## Modules

- `mctpkit.packet`: `PacketHeader` (the four-byte transport header, with
  `pack()`, `unpack()` and `from_fields()`), `PacketBuffer` (a packet with
  headroom for binding data; `push()`, `alloc_start()`, `alloc_end()`,
  `set_header()`), the `MessageType` codes and `packet_size()`.
- `mctpkit.core`: the `Mctp` stack, the `Binding` base class, `Bus`,
  `MessageContext`, `RoutePolicy` and `TransmitError`, plus the helpers
  `eid_is_valid()`, `is_control_message()` and `is_control_request()`.
- `mctpkit.control`: request encoders (`encode_set_eid()`,
  `encode_get_eid()`, `encode_get_uuid()`, `encode_get_ver_support()`,
  `encode_get_msg_type_support()`, `encode_get_vdm_support()`,
  `encode_discovery_notify()`, `encode_get_routing_table()`,
  `encode_allocate_eids()`, `encode_routing_information_update()`,
  `encode_query_hop()`), `encode_get_routing_table_response()`, and the
  endpoint responses `set_endpoint_id()`, `get_endpoint_id()`,
  `get_endpoint_uuid()` and `get_vdm_support()`.
- `mctpkit.astlpc`: `AstlpcBinding`, the BMC end of the LPC/KCS binding. It
  works over any `AstlpcOps` object (callables or a subclass) that reads and
  writes the KCS registers and the LPC window, or over a writable buffer
  given as `lpc_map`. Call `poll()` to handle one pending host command.
- `mctpkit.asti3c`: `Asti3cBinding` and `poll()`. Each packet's `private`
  value is the file descriptor it is written to; `rx()` reads one packet
  from a descriptor or file object and hands it to the stack.

## Example

```python
from mctpkit.core import Binding, Mctp
from mctpkit.packet import packet_size


class LoopBinding(Binding):
    """Collects transmitted packets in a list."""

    def __init__(self):
        super().__init__(name="loop", version=1, pkt_size=packet_size(64))
        self.sent = []

    def tx(self, pkt):
        self.sent.append(pkt)


mctp = Mctp()
binding = LoopBinding()
mctp.register_bus(binding, 8)
binding.set_tx_enabled(True)

received = []
mctp.set_rx_all(lambda src, msg, tag_owner, tag, private: received.append(msg))

mctp.message_tx(9, b"\x01hello", True, 0, None)
print(len(binding.sent), "packet(s) sent")
```

`message_tx()` returns `True` when every packet went out and `False` when
packets are queued until the binding enables transmission again; it raises
`TransmitError` when the binding's last transmit attempt failed.
`register_bus()` raises `ValueError` for an EID that may not be assigned to
an endpoint (0, 0xFF, or below 8).

Messages larger than the binding's transmission unit are split into several
packets, with start-of-message, end-of-message and sequence numbers set. On
receipt the packets are joined back into one message, up to the limit set
with `Mctp.set_max_message_size()`; that limit is 64 KiB unless changed. Up
to 16 messages can be reassembled at the same time.

Control requests can be built as bytes:

```python
from mctpkit.control import encode_get_eid

encode_get_eid(0x80)  # b"\x00\x80\x02"
```

## Limitations

- A stack holds one endpoint bus, or exactly two bridged busses; there is no
  routing table, and every message goes out on the first bus.
- There is no PCIe VDM binding and no serial or SMBus binding.
- There is no command-line program; the package is a library.
- `mctpkit.asti3c.poll()` uses `select.poll`, so it needs a POSIX system.