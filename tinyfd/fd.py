"""Public interface of the full-duplex protocol: sending, peers and connection control."""

from __future__ import annotations

from typing import Optional, Union

from .fd_tx import TxScheduler
from .fd_types import (
    CR_BIT,
    EVENT_CAN_ACCEPT_I_FRAMES,
    EVENT_QUEUE_HAS_FREE_SLOTS,
    PRIMARY_ADDR,
    PRIMARY_ADDRESS_FIELD,
    E_BIT,
    U_FRAME_BITS,
    U_FRAME_TYPE_DISC,
    UNASSIGNED_ADDRESS,
    DataTooLargeError,
    FdConfig,
    FdError,
    PeerState,
    SendTimeoutError,
    UnknownPeerError,
    make_address_field,
)
from .frames import FrameSlot, QueueType
from .hal import LogLevel, log, millis

_UINT32_MASK = 0xFFFFFFFF


class FullDuplex(TxScheduler):
    """A full-duplex HDLC station.

    Frames to transmit are taken with ``next_tx_frame()`` and reported with
    ``on_frame_sent()``; decoded incoming frames are fed to ``on_frame_read()``.
    """

    def __init__(self, config: FdConfig) -> None:
        super().__init__(config)
        self._closed = False

    def __enter__(self) -> FullDuplex:
        return self

    def __exit__(self, *args) -> None:
        self.close()

    def _check_open(self) -> None:
        if self._closed:
            raise FdError("protocol instance is closed")

    # ------------------------------------------------------------------
    # Sending
    # ------------------------------------------------------------------

    def send_packet_to(self, address: int, data: bytes) -> None:
        """Queue one packet of at most ``mtu()`` bytes for the station ``address``.

        Raises UnknownPeerError, DataTooLargeError, SendTimeoutError if no room
        appeared in the queue within the send timeout, or FdError once closed.
        """
        self._check_open()
        payload = bytes(data)
        if not self.is_primary() and address == PRIMARY_ADDR:
            # A secondary station sends to the primary using its own address.
            address = self.addr >> 2
        index: Optional[int] = None
        if 0 <= address <= 63:
            index = self._address_field_to_peer(make_address_field(address))
        if index is None:
            log(LogLevel.ERR, f"[{id(self):x}] PUT frame error: Unknown peer")
            raise UnknownPeerError(f"no known peer with address {address}")
        if len(payload) > self.mtu():
            log(LogLevel.ERR, f"[{id(self):x}] PUT frame error")
            raise DataTooLargeError(
                f"payload of {len(payload)} bytes exceeds mtu of {self.mtu()} bytes"
            )
        peer = self.peers[index]
        start = millis()
        if not peer.events.wait(EVENT_CAN_ACCEPT_I_FRAMES, True, self.send_timeout):
            log(LogLevel.WRN, f"[{id(self):x}] PUT frame timeout")
            raise SendTimeoutError("peer cannot accept more frames")
        self._check_open()
        delta = (millis() - start) & _UINT32_MASK
        remaining = self.send_timeout - delta if self.send_timeout > delta else 0
        if not self.events.wait(EVENT_QUEUE_HAS_FREE_SLOTS, True, remaining):
            # The window still allows another frame, only the queue is busy.
            peer.events.set(EVENT_CAN_ACCEPT_I_FRAMES)
            log(LogLevel.WRN, f"[{id(self):x}] PUT frame timeout")
            raise SendTimeoutError("transmit queue is full")
        self._check_open()
        with self.mutex:
            queued = self._put_i_frame(index, payload)
            if queued and self.i_queue.has_free_slots():
                self.events.set(EVENT_QUEUE_HAS_FREE_SLOTS)
            if peer.can_accept_i_frames:
                peer.events.set(EVENT_CAN_ACCEPT_I_FRAMES)
        if not queued:
            log(LogLevel.ERR, f"[{id(self):x}] Wrong flag FD_EVENT_QUEUE_HAS_FREE_SLOTS")
            raise SendTimeoutError("transmit queue is full")

    def send_packet(self, data: bytes) -> None:
        """Queue one packet for the primary station (or the only peer)."""
        self.send_packet_to(PRIMARY_ADDR, data)

    def send_to(self, address: int, data: bytes) -> int:
        """Queue ``data`` for ``address`` split into mtu-sized packets.

        Returns the number of bytes queued, which is less than ``len(data)``
        if the send timeout expired part way through.
        """
        payload = bytes(data)
        mtu = self.mtu()
        sent = 0
        while sent < len(payload):
            chunk = payload[sent : sent + mtu]
            try:
                self.send_packet_to(address, chunk)
            except SendTimeoutError:
                break
            sent += len(chunk)
        return sent

    def send(self, data: bytes) -> int:
        """Queue ``data`` for the primary station; returns bytes queued."""
        return self.send_to(PRIMARY_ADDR, data)

    # ------------------------------------------------------------------
    # Settings and status
    # ------------------------------------------------------------------

    def mtu(self) -> int:
        """Largest payload of a single packet, in bytes."""
        return self.i_queue.mtu

    def set_ka_timeout(self, timeout: int) -> None:
        """Set the keep-alive timeout in milliseconds."""
        self.ka_timeout = timeout

    def is_connected(self) -> bool:
        """Whether the link to the first peer is established."""
        with self.mutex:
            return self.peers[0].state in (PeerState.CONNECTED, PeerState.DISCONNECTING)

    def disconnect(self) -> None:
        """Queue a DISC command for the first peer without waiting for the answer.

        Raises FdError if the command queue is full.
        """
        with self.mutex:
            slot = self._put_u_s_frame(
                QueueType.U_FRAME,
                self._peer_address(0) | CR_BIT,
                U_FRAME_TYPE_DISC | U_FRAME_BITS,
            )
            if slot is None:
                raise FdError("command queue is full")
            self.peers[0].state = PeerState.DISCONNECTING

    def register_peer(self, address: int) -> None:
        """Register a secondary station with address 1-63 on an NRM primary.

        Raises FdError for a bad or already registered address, or when
        there is no free peer slot.
        """
        if not 0 <= address <= 63:
            raise FdError(f"peer address {address} out of range")
        field = make_address_field(address)
        if field == (PRIMARY_ADDRESS_FIELD | E_BIT):
            raise FdError("the primary address cannot be registered as a peer")
        with self.mutex:
            if self._address_field_to_peer(field) is not None:
                raise FdError(f"peer {address} is already registered")
            for peer in self.peers:
                if peer.addr == UNASSIGNED_ADDRESS:
                    peer.addr = field
                    peer.last_ka_ts = (millis() - self.retry_timeout) & _UINT32_MASK
                    return
        raise FdError("no free peer slots")

    def close(self) -> None:
        """Stop the station; pending sends are cancelled."""
        with self.mutex:
            self._closed = True
            self.i_queue.reset()
            self.s_queue.reset()
        # Wake anyone blocked in send_packet_to() so they can see the close.
        for peer in self.peers:
            peer.events.set(EVENT_CAN_ACCEPT_I_FRAMES)
        self.events.set(EVENT_QUEUE_HAS_FREE_SLOTS)

    # ------------------------------------------------------------------
    # Framing-layer entry points
    # ------------------------------------------------------------------

    def next_tx_frame(self) -> Optional[FrameSlot]:
        if self._closed:
            return None
        return super().next_tx_frame()

    def on_frame_read(self, frame: bytes) -> int:
        if self._closed:
            return len(frame)
        return super().on_frame_read(frame)

    def on_frame_sent(self, frame: Union[FrameSlot, bytes]) -> int:
        if self._closed:
            return len(frame.raw()) if isinstance(frame, FrameSlot) else len(frame)
        return super().on_frame_sent(frame)