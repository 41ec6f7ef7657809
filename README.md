# tinyfd

The link-layer state machine of a full-duplex protocol modelled on HDLC. It
keeps sequence numbers, acknowledges and retransmits frames, sends
keep-alives, and connects and disconnects stations. It works on whole frames:
each frame is a one-byte address field, a one-byte control field and a
payload.

## Features

- Asynchronous balanced mode (`Mode.ABM`): two equal stations. Both use the
  primary address 0.
- Normal response mode (`Mode.NRM`): one primary and one or more secondary
  stations. The primary passes a marker (the P/F bit) to each registered
  secondary in turn. `Mode.ARM` exists as a value but has no link logic.
- 3-bit sequence numbers, so at most 7 frames per peer can wait for an
  acknowledgement. Out-of-order frames are answered with a reject (REJ) frame.
- Retransmission after `retry_timeout`. After `retries` failed attempts the
  peer is disconnected.
- Keep-alive RR frames after the keep-alive timeout (5000 ms unless you set
  another value).
- Callbacks for received frames, confirmed frames and connection changes.

## Installation

```
pip install .
```

To run the tests:

```
pip install .[test]
pytest
```

## Modules

- `tinyfd.hal`: `millis()` and `micros()` clocks (32-bit wrapping),
  `sleep()`, `sleep_us()`, `Mutex`, `EventGroup`, and diagnostic logging to
  stderr (`LogLevel`, `set_log_level`, `get_log_level`, `log`). A message is
  printed when its level is below the threshold. The threshold starts at 0,
  so nothing is printed until you raise it.
- `tinyfd.frames`: `FrameQueue`, a fixed-size ring of `FrameSlot` records
  that are tagged by `QueueType`. `FrameSlot.raw()` returns the header
  followed by the payload.
- `tinyfd.fd_types`: `Mode`, `PeerState`, `FdConfig`, `Peer`, the exceptions,
  and the helpers `is_primary_address` and `make_address_field`.
- `tinyfd.fd_link`: `FrameLink`, which handles received frames
  (`on_frame_read`) and sent frames (`on_frame_sent`).
- `tinyfd.fd_tx`: `TxScheduler`, which runs the timeouts and chooses the next
  frame to send (`next_tx_frame`, `next_frame_for`, `check_idle_timeout`).
- `tinyfd.fd`: `FullDuplex`, the class an application uses.

## Configuration

`FdConfig` fields:

| Field | Default | Meaning |
|---|---|---|
| `on_frame(payload)` | `None` | Called for each received payload. |
| `on_read(address, payload)` | `None` | Like `on_frame`, but also gives the peer address. One of `on_frame` and `on_read` is required. |
| `on_sent(payload)` | `None` | Called when the remote side confirms a sent packet. |
| `on_send(address, payload)` | `None` | Like `on_sent`, but also gives the peer address. |
| `on_connect_event(address, connected)` | `None` | Called when a peer connects or disconnects. |
| `send_timeout` | `0` | Milliseconds that `send_packet_to` waits for room in the queue. |
| `retry_timeout` | `0` | Milliseconds before unconfirmed frames are sent again. If 0, it is `send_timeout // (retries + 1)`. At least one of `send_timeout` and `retry_timeout` must be non-zero. |
| `retries` | `0` | Number of resend attempts before the peer is disconnected. |
| `window_frames` | `3` | Size of the I-frame queue. Must be at least 2. |
| `mtu` | `64` | Largest payload of one packet, in bytes. |
| `addr` | `0` | Station address (0 to 63). 0 makes the station the primary. |
| `peers_count` | `0` | Number of peer slots (0 to 63). 0 means one slot. |
| `mode` | `Mode.ABM` | Link mode. |

Settings that cannot be used raise `InvalidConfigError` when the station is
created.

## Using `FullDuplex`

Your code moves whole frames between stations:

- `next_tx_frame()` returns the next `FrameSlot` to transmit, or `None` when
  there is nothing to send. Put `slot.raw()` on the link. Then report the
  frame with `on_frame_sent(slot)`. No other frame is returned until you have
  reported this one.
- `on_frame_read(frame)` takes one complete frame (address, control,
  payload) that arrived from the link.

```python
from tinyfd.fd import FullDuplex
from tinyfd.fd_types import FdConfig

received = []
a = FullDuplex(FdConfig(on_frame=received.append, retry_timeout=100))
b = FullDuplex(FdConfig(on_frame=received.append, retry_timeout=100))

def pump(src, dst):
    while (slot := src.next_tx_frame()) is not None:
        dst.on_frame_read(slot.raw())
        src.on_frame_sent(slot)

for _ in range(5):
    pump(a, b)
    pump(b, a)

if a.is_connected():
    a.send(b"hello")
    pump(a, b)
    pump(b, a)
```

The other methods:

- `send_packet(data)` and `send_packet_to(address, data)` queue one packet of
  at most `mtu()` bytes.
- `send(data)` and `send_to(address, data)` split data into packets of at
  most `mtu()` bytes. They return the number of bytes queued before a send
  timeout.
- `register_peer(address)` adds a secondary station with an address from 1
  to 63. Use it on an NRM primary.
- `is_connected()` tells whether the first peer is connected.
- `disconnect()` queues a DISC command for the first peer. It does not wait
  for the answer.
- `set_ka_timeout(ms)` sets the keep-alive timeout.
- `close()` stops the station and wakes any sender that is waiting. After
  this the station ignores incoming frames and sends none. `FullDuplex` is
  also a context manager that closes on exit.

Errors are raised as exceptions. All of them derive from `FdError`:

- `UnknownPeerError`: the address is not a known peer, or `next_tx_frame`
  is called on an NRM primary before a peer is registered.
- `DataTooLargeError`: the packet is larger than the MTU.
- `SendTimeoutError`: no room appeared in the queue within the send timeout.
- `InvalidConfigError`: the configuration cannot be used.
- `FdError`: the station is closed, the command queue is full, or
  `register_peer` was given a bad address.

## What this package does not do

It does not turn frames into bytes on the wire. It has no start or end
flags, no byte escaping and no CRC or checksum. It does not open serial
ports or sockets, and it has no command-line program. The transport, the
byte-level framing and any error detection are up to the application.