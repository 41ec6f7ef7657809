"""Receive-side state machine of the full-duplex protocol: frame handling per peer."""

from __future__ import annotations

from contextlib import contextmanager
from typing import Iterator, Optional, Union

from .fd_types import (
    CR_BIT,
    DEFAULT_KA_TIMEOUT,
    E_BIT,
    EVENT_CAN_ACCEPT_I_FRAMES,
    EVENT_HAS_MARKER,
    EVENT_QUEUE_HAS_FREE_SLOTS,
    EVENT_TX_DATA_AVAILABLE,
    EVENT_TX_SENDING,
    F_BIT,
    I_FRAME_BITS,
    I_FRAME_MASK,
    P_BIT,
    PRIMARY_ADDR,
    S_FRAME_BITS,
    S_FRAME_MASK,
    S_FRAME_TYPE_MASK,
    S_FRAME_TYPE_REJ,
    S_FRAME_TYPE_RR,
    SEQ_BITS_MASK,
    U_FRAME_BITS,
    U_FRAME_MASK,
    U_FRAME_TYPE_DISC,
    U_FRAME_TYPE_FRMR,
    U_FRAME_TYPE_MASK,
    U_FRAME_TYPE_RSET,
    U_FRAME_TYPE_SABM,
    U_FRAME_TYPE_SNRM,
    U_FRAME_TYPE_UA,
    U_QUEUE_MAX_SIZE,
    UNASSIGNED_ADDRESS,
    FdConfig,
    FdError,
    Mode,
    Peer,
    PeerState,
    is_primary_address,
)
from .frames import FrameQueue, FrameSlot, QueueType
from .hal import EventGroup, LogLevel, Mutex, log, millis


class FrameLink:
    """Per-peer HDLC link state and the handling of received and sent frames."""

    def __init__(self, config: FdConfig) -> None:
        self.config = config.validate()
        self.mode = self.config.mode
        self.addr = self.config.station_address
        self.retries = self.config.retries
        self.retry_timeout = self.config.effective_retry_timeout
        self.send_timeout = self.config.send_timeout
        self.ka_timeout = DEFAULT_KA_TIMEOUT
        self.i_queue = FrameQueue(self.config.window_frames, self.config.mtu)
        self.s_queue = FrameQueue(U_QUEUE_MAX_SIZE, 2)
        self.next_peer = 0
        self.last_marker_ts = 0
        self.mutex = Mutex()
        self.events = EventGroup()
        # Secondary stations answer with their own address; in ABM every
        # station uses the same address. An NRM primary registers peers later.
        if not self.is_primary() or self.mode == Mode.ABM:
            peer_addr = self.addr
        else:
            peer_addr = UNASSIGNED_ADDRESS
        self.peers = [
            Peer(addr=peer_addr, retries=self.retries)
            for _ in range(self.config.effective_peers_count)
        ]
        self.events.set(
            EVENT_QUEUE_HAS_FREE_SLOTS | (EVENT_HAS_MARKER if self.is_primary() else 0)
        )

    # ------------------------------------------------------------------
    # Addressing helpers
    # ------------------------------------------------------------------

    def is_primary(self) -> bool:
        """Whether the local station is the primary station."""
        return is_primary_address(self.addr)

    def _address_field_to_peer(self, address: int) -> Optional[int]:
        address &= ~CR_BIT & 0xFF
        if not address & E_BIT:
            return None
        if not self.is_primary() or self.mode == Mode.ABM:
            return 0 if address == self.addr else None
        for index, peer in enumerate(self.peers):
            if peer.addr == address:
                return index
        return None

    def _peer_address(self, index: int) -> int:
        return self.peers[index].addr & ~CR_BIT & 0xFF

    def _remote_address(self, index: int) -> int:
        if self.is_primary():
            return self._peer_address(index) >> 2
        return PRIMARY_ADDR

    def _switch_to_next_peer(self) -> bool:
        start = self.next_peer
        while True:
            self.next_peer += 1
            if self.next_peer >= len(self.peers):
                self.next_peer = 0
            if self.peers[self.next_peer].addr != UNASSIGNED_ADDRESS:
                break
            if self.next_peer == start:
                break
        log(LogLevel.INFO, f"[{id(self):x}] Switching to peer [{self.next_peer:02X}]")
        return start != self.next_peer

    @contextmanager
    def _released(self) -> Iterator[None]:
        """Release the frame lock around a user callback."""
        self.mutex.unlock()
        try:
            yield
        finally:
            self.mutex.lock()

    # ------------------------------------------------------------------
    # Queueing
    # ------------------------------------------------------------------

    def _put_u_s_frame(
        self, kind: QueueType, address: int, control: int, extra: bytes = b""
    ) -> Optional[FrameSlot]:
        slot = self.s_queue.allocate(kind, extra)
        if slot is None:
            log(LogLevel.WRN, f"[{id(self):x}] Not enough space for S- U- Frames")
            return None
        slot.address = address & 0xFF
        slot.control = control & 0xFF
        self.events.set(EVENT_TX_DATA_AVAILABLE)
        return slot

    def _put_i_frame(self, index: int, data: bytes) -> bool:
        slot = self.i_queue.allocate(QueueType.I_FRAME, data)
        if slot is None:
            return False
        peer = self.peers[index]
        slot.address = self._peer_address(index)
        slot.control = (peer.last_ns << 1) & 0xFF
        peer.last_ns = (peer.last_ns + 1) & SEQ_BITS_MASK
        self.events.set(EVENT_TX_DATA_AVAILABLE)
        return True

    def _rr_control(self, index: int) -> int:
        return S_FRAME_BITS | S_FRAME_TYPE_RR | ((self.peers[index].next_nr << 5) & 0xFF)

    def _connect_control(self) -> int:
        kind = U_FRAME_TYPE_SNRM if self.mode == Mode.NRM else U_FRAME_TYPE_SABM
        return kind | U_FRAME_BITS

    # ------------------------------------------------------------------
    # Sequence handling
    # ------------------------------------------------------------------

    def _check_received_frame(self, index: int, ns: int) -> bool:
        peer = self.peers[index]
        if ns == peer.next_nr:
            peer.next_nr = (peer.next_nr + 1) & SEQ_BITS_MASK
            peer.sent_reject = False
            return True
        log(LogLevel.ERR, f"[{id(self):x}] Out of order I-Frame N(s)={ns}")
        if not peer.sent_reject:
            peer.sent_reject = True
            self._put_u_s_frame(
                QueueType.S_FRAME,
                self._peer_address(index) | CR_BIT,
                S_FRAME_BITS | S_FRAME_TYPE_REJ | ((peer.next_nr << 5) & 0xFF),
            )
        return False

    def _confirm_sent_frames(self, index: int, nr: int) -> None:
        peer = self.peers[index]
        while nr != peer.confirm_ns:
            if peer.confirm_ns == peer.last_ns:
                log(LogLevel.CRIT, f"[{id(self):x}] Confirmation contains wrong N(r)")
                break
            slot = self.i_queue.get_next(
                QueueType.I_FRAME, self._peer_address(index), peer.confirm_ns
            )
            if slot is not None:
                payload = bytes(slot.payload)
                if self.config.on_sent is not None:
                    with self._released():
                        self.config.on_sent(payload)
                if self.config.on_send is not None:
                    with self._released():
                        self.config.on_send(self._remote_address(index), payload)
                self.i_queue.free(slot)
                if self.i_queue.has_free_slots():
                    self.events.set(EVENT_QUEUE_HAS_FREE_SLOTS)
            else:
                log(LogLevel.ERR, f"[{id(self):x}] The frame cannot be confirmed: {peer.confirm_ns:02X}")
            peer.confirm_ns = (peer.confirm_ns + 1) & SEQ_BITS_MASK
            peer.retries = self.retries
        if peer.can_accept_i_frames:
            peer.events.set(EVENT_CAN_ACCEPT_I_FRAMES)

    def _resend_all_unconfirmed_frames(self, index: int, control: int, nr: int) -> None:
        peer = self.peers[index]
        while peer.next_ns != nr:
            if peer.confirm_ns == peer.next_ns:
                log(LogLevel.CRIT, f"[{id(self):x}] Remote side not in sync")
                self._put_u_s_frame(
                    QueueType.U_FRAME,
                    self._peer_address(index) | CR_BIT,
                    U_FRAME_TYPE_FRMR | U_FRAME_BITS,
                    bytes((control & 0xFF, ((peer.next_nr << 5) | (peer.next_ns << 1)) & 0xFF)),
                )
                break
            peer.next_ns = (peer.next_ns - 1) & SEQ_BITS_MASK
        self.events.set(EVENT_TX_DATA_AVAILABLE)

    # ------------------------------------------------------------------
    # Connection state
    # ------------------------------------------------------------------

    def _switch_to_connected_state(self, index: int) -> None:
        peer = self.peers[index]
        if peer.state == PeerState.CONNECTED:
            return
        peer.state = PeerState.CONNECTED
        peer.reset_sequence()
        self.i_queue.reset_for(self._peer_address(index))
        peer.last_ka_ts = millis()
        peer.events.set(EVENT_CAN_ACCEPT_I_FRAMES)
        self.events.set(
            EVENT_TX_DATA_AVAILABLE
            | (EVENT_QUEUE_HAS_FREE_SLOTS if self.i_queue.has_free_slots() else 0)
        )
        log(LogLevel.CRIT, f"[{id(self):x}] Connection is established")
        if self.config.on_connect_event is not None:
            with self._released():
                self.config.on_connect_event(self._remote_address(index), True)

    def _switch_to_disconnected_state(self, index: int) -> None:
        peer = self.peers[index]
        if peer.state == PeerState.DISCONNECTED:
            return
        peer.state = PeerState.DISCONNECTED
        peer.reset_sequence()
        self.i_queue.reset_for(self._peer_address(index))
        peer.events.clear(EVENT_CAN_ACCEPT_I_FRAMES)
        log(LogLevel.CRIT, f"[{id(self):x}] Disconnected")
        if self.config.on_connect_event is not None:
            with self._released():
                self.config.on_connect_event(self._remote_address(index), False)

    # ------------------------------------------------------------------
    # Frame handlers
    # ------------------------------------------------------------------

    def _on_i_frame_read(self, index: int, frame: bytes) -> bool:
        control = frame[1]
        nr = control >> 5
        ns = (control >> 1) & 0x07
        accepted = self._check_received_frame(index, ns)
        self._confirm_sent_frames(index, nr)
        if accepted:
            payload = bytes(frame[2:])
            if self.config.on_frame is not None:
                with self._released():
                    self.config.on_frame(payload)
            if self.config.on_read is not None:
                with self._released():
                    self.config.on_read(self._remote_address(index), payload)
            peer = self.peers[index]
            if peer.all_frames_sent and peer.sent_nr != peer.next_nr:
                self._put_u_s_frame(
                    QueueType.S_FRAME, self._peer_address(index), self._rr_control(index)
                )
        return accepted

    def _on_s_frame_read(self, index: int, frame: bytes) -> None:
        address, control = frame[0], frame[1]
        nr = control >> 5
        frame_type = control & S_FRAME_TYPE_MASK
        if frame_type == S_FRAME_TYPE_REJ:
            self._confirm_sent_frames(index, nr)
            self._resend_all_unconfirmed_frames(index, control, nr)
        elif frame_type == S_FRAME_TYPE_RR:
            self._confirm_sent_frames(index, nr)
            peer = self.peers[index]
            if address & CR_BIT and peer.next_ns == peer.last_ns:
                self._put_u_s_frame(
                    QueueType.S_FRAME, self._peer_address(index), self._rr_control(index)
                )

    def _on_u_frame_read(self, index: int, frame: bytes) -> None:
        frame_type = frame[1] & U_FRAME_TYPE_MASK
        peer = self.peers[index]
        if frame_type in (U_FRAME_TYPE_SABM, U_FRAME_TYPE_SNRM):
            self._put_u_s_frame(
                QueueType.U_FRAME, self._peer_address(index), U_FRAME_TYPE_UA | U_FRAME_BITS
            )
            if peer.state == PeerState.CONNECTED:
                self._switch_to_disconnected_state(index)
            self._switch_to_connected_state(index)
        elif frame_type == U_FRAME_TYPE_DISC:
            self._put_u_s_frame(
                QueueType.U_FRAME, self._peer_address(index), U_FRAME_TYPE_UA | U_FRAME_BITS
            )
            self._switch_to_disconnected_state(index)
        elif frame_type in (U_FRAME_TYPE_RSET, U_FRAME_TYPE_FRMR):
            pass
        elif frame_type == U_FRAME_TYPE_UA:
            if peer.state == PeerState.CONNECTING:
                self._switch_to_connected_state(index)
            elif peer.state == PeerState.DISCONNECTING:
                self._switch_to_disconnected_state(index)
        else:
            log(LogLevel.WRN, f"[{id(self):x}] Unknown hdlc U-frame received")

    # ------------------------------------------------------------------
    # Entry points from the framing layer
    # ------------------------------------------------------------------

    def on_frame_read(self, frame: bytes) -> int:
        """Process one decoded frame (address, control, payload).

        Returns the frame length; frames for other stations are ignored.
        Raises FdError if the frame is shorter than its header.
        """
        frame = bytes(frame)
        if len(frame) < 2:
            raise FdError("received frame is shorter than the HDLC header")
        index = self._address_field_to_peer(frame[0])
        if index is None:
            return len(frame)
        with self.mutex:
            peer = self.peers[index]
            peer.last_ka_ts = millis()
            peer.ka_confirmed = True
            control = frame[1]
            if control & U_FRAME_MASK == U_FRAME_MASK:
                self._on_u_frame_read(index, frame)
            elif peer.state not in (PeerState.CONNECTED, PeerState.DISCONNECTING):
                log(LogLevel.CRIT, f"[{id(self):x}] Connection is not established, connecting")
                self._put_u_s_frame(
                    QueueType.U_FRAME,
                    self._peer_address(index) | CR_BIT,
                    self._connect_control(),
                )
                peer.state = PeerState.CONNECTING
            elif control & I_FRAME_MASK == I_FRAME_BITS:
                self._on_i_frame_read(index, frame)
            elif control & S_FRAME_MASK == S_FRAME_BITS:
                self._on_s_frame_read(index, frame)
            else:
                log(LogLevel.WRN, f"[{id(self):x}] Unknown hdlc frame received")
            if control & P_BIT:
                self.events.set(EVENT_HAS_MARKER)
        return len(frame)

    def _find_s_slot(self, data: bytes) -> Optional[FrameSlot]:
        for slot in self.s_queue:
            if slot.kind != QueueType.FREE and slot.raw() == data:
                return slot
        return None

    def on_frame_sent(self, frame: Union[FrameSlot, bytes]) -> int:
        """Account for a frame that has been put on the wire; returns its length."""
        data = frame.raw() if isinstance(frame, FrameSlot) else bytes(frame)
        if len(data) < 2:
            raise FdError("sent frame is shorter than the HDLC header")
        index = self._address_field_to_peer(data[0])
        if index is None:
            return len(data)
        control = data[1]
        with self.mutex:
            if control & I_FRAME_MASK == I_FRAME_BITS:
                pass  # I-frames stay queued until the remote side confirms them
            elif (control & S_FRAME_MASK == S_FRAME_BITS) or (
                control & U_FRAME_MASK == U_FRAME_BITS
            ):
                slot = frame if isinstance(frame, FrameSlot) else self._find_s_slot(data)
                if slot is not None:
                    self.s_queue.free(slot)
            flags = EVENT_TX_SENDING
            if control & F_BIT and self.mode == Mode.NRM:
                if self.is_primary():
                    self._switch_to_next_peer()
                flags |= EVENT_HAS_MARKER
                log(LogLevel.INFO, f"[{id(self):x}] [RELEASED MARKER]")
            self.events.clear(flags)
        return len(data)