"""Shared types of the full-duplex protocol: modes, errors, settings and peers."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum, IntEnum
from typing import Callable, Optional

from .hal import EventGroup

PRIMARY_ADDR = 0
"""Address of the primary station."""

UNASSIGNED_ADDRESS = 0xFF
"""Address field value of a peer slot that has no station registered."""

SEQ_BITS_MASK = 0x07

# Control field layout
I_FRAME_BITS = 0x00
I_FRAME_MASK = 0x01

S_FRAME_BITS = 0x01
S_FRAME_MASK = 0x03
S_FRAME_TYPE_REJ = 0x04
S_FRAME_TYPE_RR = 0x00
S_FRAME_TYPE_MASK = 0x0C

U_FRAME_BITS = 0x03
U_FRAME_MASK = 0x03
U_FRAME_TYPE_UA = 0x60
U_FRAME_TYPE_FRMR = 0x84
U_FRAME_TYPE_RSET = 0x8C
U_FRAME_TYPE_SABM = 0x2C
U_FRAME_TYPE_SNRM = 0x80
U_FRAME_TYPE_DISC = 0x40
U_FRAME_TYPE_MASK = 0xEC

P_BIT = 0x10
F_BIT = 0x10

# Address field layout
CR_BIT = 0x02
E_BIT = 0x01
PRIMARY_ADDRESS_FIELD = PRIMARY_ADDR << 2

# Event bits
EVENT_TX_SENDING = 0x01
EVENT_TX_DATA_AVAILABLE = 0x02
EVENT_QUEUE_HAS_FREE_SLOTS = 0x04
EVENT_CAN_ACCEPT_I_FRAMES = 0x08
EVENT_HAS_MARKER = 0x10

DEFAULT_KA_TIMEOUT = 5000
U_QUEUE_MAX_SIZE = 4


class Mode(IntEnum):
    """Link mode of the station."""

    ABM = 0x00
    """Asynchronous balanced mode: every station may send at any time."""
    NRM = 0x01
    """Normal response mode: the primary hands the marker to secondaries."""
    ARM = 0x02
    """Asynchronous response mode (not supported by the link logic)."""


class PeerState(Enum):
    """Connection state of one remote station."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DISCONNECTING = "disconnecting"


class FdError(Exception):
    """Base class of all protocol errors."""


class UnknownPeerError(FdError):
    """The destination address does not belong to a known peer."""


class DataTooLargeError(FdError):
    """The payload does not fit into the negotiated MTU."""


class SendTimeoutError(FdError, TimeoutError):
    """No room appeared in the transmit queue before the timeout."""


class InvalidConfigError(FdError, ValueError):
    """The protocol settings cannot be used."""


FrameCallback = Callable[[bytes], None]
AddressedFrameCallback = Callable[[int, bytes], None]
ConnectCallback = Callable[[int, bool], None]


@dataclass
class FdConfig:
    """Settings of a full-duplex protocol instance.

    Timeouts are in milliseconds. ``addr`` is the local station address;
    leave it 0 for a primary station. ``peers_count`` of 0 means one peer.
    """

    on_frame: Optional[FrameCallback] = None
    on_sent: Optional[FrameCallback] = None
    on_read: Optional[AddressedFrameCallback] = None
    on_send: Optional[AddressedFrameCallback] = None
    on_connect_event: Optional[ConnectCallback] = None
    send_timeout: int = 0
    retry_timeout: int = 0
    retries: int = 0
    window_frames: int = 3
    mtu: int = 64
    addr: int = PRIMARY_ADDR
    peers_count: int = 0
    mode: Mode = Mode.ABM

    def validate(self) -> FdConfig:
        """Check the settings; raise InvalidConfigError if unusable."""
        if self.on_frame is None and self.on_read is None:
            raise InvalidConfigError("a receive callback (on_frame or on_read) is required")
        if self.mtu < 1:
            raise InvalidConfigError("mtu must be at least 1 byte")
        if self.window_frames < 2:
            raise InvalidConfigError("window must hold at least 2 frames")
        if not self.retry_timeout and not self.send_timeout:
            raise InvalidConfigError("retry_timeout or send_timeout must be specified")
        if self.retries < 0:
            raise InvalidConfigError("retries must not be negative")
        if not 0 <= self.addr <= 63:
            raise InvalidConfigError("station address must be in range 0-63")
        if not 0 <= self.peers_count <= 63:
            raise InvalidConfigError("peers_count must be in range 0-63")
        try:
            self.mode = Mode(self.mode)
        except ValueError as exc:
            raise InvalidConfigError(f"unknown mode {self.mode!r}") from exc
        return self

    @property
    def effective_peers_count(self) -> int:
        """Number of peer slots: at least one."""
        return self.peers_count or 1

    @property
    def effective_retry_timeout(self) -> int:
        """Retry timeout, derived from send_timeout when not given."""
        if self.retry_timeout:
            return self.retry_timeout
        return self.send_timeout // (self.retries + 1)

    @property
    def station_address(self) -> int:
        """Address field of the local station."""
        return make_address_field(self.addr if self.addr else PRIMARY_ADDR)


@dataclass(eq=False)
class Peer:
    """Link state kept for one remote station."""

    addr: int = UNASSIGNED_ADDRESS
    state: PeerState = PeerState.DISCONNECTED
    confirm_ns: int = 0
    last_ns: int = 0
    next_ns: int = 0
    next_nr: int = 0
    sent_nr: int = 0
    sent_reject: bool = False
    retries: int = 0
    last_i_ts: int = 0
    last_ka_ts: int = 0
    ka_confirmed: bool = False
    events: EventGroup = field(default_factory=EventGroup)

    def reset_sequence(self) -> None:
        """Zero all sequence counters, as on connect or disconnect."""
        self.confirm_ns = 0
        self.last_ns = 0
        self.next_ns = 0
        self.next_nr = 0
        self.sent_nr = 0
        self.sent_reject = False

    @property
    def is_registered(self) -> bool:
        return self.addr != UNASSIGNED_ADDRESS

    @property
    def has_unconfirmed_frames(self) -> bool:
        """Some queued I-frames have not been acknowledged yet."""
        return self.confirm_ns != self.last_ns

    @property
    def all_frames_sent(self) -> bool:
        """Every queued I-frame has been put on the wire."""
        return self.last_ns == self.next_ns

    @property
    def can_accept_i_frames(self) -> bool:
        """Another I-frame can be queued without wrapping the sequence window."""
        return ((self.last_ns + 1) & SEQ_BITS_MASK) != self.confirm_ns


def is_primary_address(address: int) -> bool:
    """Whether an address field (C/R bit ignored) names the primary station."""
    return (address & ~CR_BIT & 0xFF) == (PRIMARY_ADDRESS_FIELD | E_BIT)


def make_address_field(address: int) -> int:
    """Build the one-byte address field for a station address in 0-63."""
    if not 0 <= address <= 63:
        raise ValueError(f"station address {address} out of range 0-63")
    return ((address << 2) | E_BIT) & 0xFF