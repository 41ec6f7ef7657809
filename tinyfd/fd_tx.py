"""Transmit-side scheduling: timeouts, marker handling and choice of the next frame."""

from __future__ import annotations

from typing import Optional

from .fd_link import FrameLink
from .fd_types import (
    CR_BIT,
    EVENT_HAS_MARKER,
    EVENT_TX_DATA_AVAILABLE,
    EVENT_TX_SENDING,
    P_BIT,
    S_FRAME_BITS,
    S_FRAME_MASK,
    SEQ_BITS_MASK,
    U_FRAME_BITS,
    U_FRAME_TYPE_SNRM,
    UNASSIGNED_ADDRESS,
    Mode,
    PeerState,
    UnknownPeerError,
)
from .frames import FrameSlot, QueueType
from .hal import LogLevel, log, millis

_UINT32_MASK = 0xFFFFFFFF


def _elapsed(since: int) -> int:
    """Milliseconds passed since the timestamp ``since``, with 32-bit wrap."""
    return (millis() - since) & _UINT32_MASK


class TxScheduler(FrameLink):
    """Link state plus the logic that decides what goes on the wire next."""

    # ------------------------------------------------------------------
    # Timeouts
    # ------------------------------------------------------------------

    def check_idle_timeout(self, peer: int) -> None:
        """Run retry, keep-alive and connect timeouts for peer index ``peer``."""
        if self.peers[peer].state in (PeerState.CONNECTED, PeerState.DISCONNECTING):
            self._connected_check_idle_timeout(peer)
        else:
            self._disconnected_check_idle_timeout(peer)

    def _connected_check_idle_timeout(self, index: int) -> None:
        with self.mutex:
            peer = self.peers[index]
            if (
                peer.has_unconfirmed_frames
                and peer.all_frames_sent
                and _elapsed(peer.last_i_ts) >= self.retry_timeout
            ):
                if peer.retries > 0:
                    log(
                        LogLevel.WRN,
                        f"[{id(self):x}] Timeout, resending unconfirmed frames: "
                        f"last({peer.last_i_ts} ms), now({millis()} ms), "
                        f"timeout({self.retry_timeout} ms)",
                    )
                    peer.retries -= 1
                    self._resend_all_unconfirmed_frames(index, 0, peer.confirm_ns)
                else:
                    log(LogLevel.CRIT, f"[{id(self):x}] Remote side not responding, flushing I-frames")
                    self._switch_to_disconnected_state(index)
            elif _elapsed(peer.last_ka_ts) > self.ka_timeout:
                if not peer.ka_confirmed:
                    log(LogLevel.CRIT, f"[{id(self):x}] No keep alive after timeout")
                    self._switch_to_disconnected_state(index)
                else:
                    peer.ka_confirmed = False
                    self._put_u_s_frame(
                        QueueType.S_FRAME, self._peer_address(index), self._rr_control(index)
                    )
                peer.last_ka_ts = millis()

    def _disconnected_check_idle_timeout(self, index: int) -> None:
        with self.mutex:
            peer = self.peers[index]
            if _elapsed(peer.last_ka_ts) >= self.retry_timeout and self.is_primary():
                log(
                    LogLevel.ERR,
                    f"[{id(self):x}] Connection is not established, connecting to peer "
                    f"{self.next_peer:02X} [addr:{self._peer_address(index):02X}]",
                )
                slot = self._put_u_s_frame(
                    QueueType.U_FRAME,
                    self._peer_address(index) | CR_BIT,
                    self._connect_control(),
                )
                if slot is None:
                    log(LogLevel.CRIT, f"[{id(self):x}] Failed to queue SNRM/SABM message")
                peer.state = PeerState.CONNECTING
                peer.last_ka_ts = millis()

    # ------------------------------------------------------------------
    # Frame selection
    # ------------------------------------------------------------------

    def _next_s_u_frame(self, index: int, address: int) -> Optional[FrameSlot]:
        slot = self.s_queue.get_next(QueueType.S_FRAME | QueueType.U_FRAME, address, 0)
        if slot is not None and slot.control & S_FRAME_MASK == S_FRAME_BITS:
            self.peers[index].sent_nr = slot.control >> 5
        return slot

    def _next_i_frame(self, index: int, address: int) -> Optional[FrameSlot]:
        peer = self.peers[index]
        if peer.state in (PeerState.DISCONNECTED, PeerState.CONNECTING):
            return None
        slot = self.i_queue.get_next(QueueType.I_FRAME, address, peer.next_ns)
        if slot is None:
            return None
        slot.control &= 0x0F
        slot.control |= (peer.next_nr << 5) & 0xFF
        peer.next_ns = (peer.next_ns + 1) & SEQ_BITS_MASK
        peer.sent_nr = peer.next_nr
        peer.last_i_ts = millis()
        return slot

    def next_frame_for(self, peer: int) -> Optional[FrameSlot]:
        """Pick the next frame for peer index ``peer`` and mark it with the P bit.

        S- and U-frames go first, then I-frames. In NRM mode a frame is made
        up when nothing is queued, so that the marker can be passed on.
        """
        with self.mutex:
            state = self.peers[peer].state
            address = self._peer_address(peer)
            slot = self._next_s_u_frame(peer, address)
            if slot is None:
                slot = self._next_i_frame(peer, address)
            if slot is None and self.mode == Mode.NRM:
                if self.is_primary() and state in (PeerState.DISCONNECTED, PeerState.CONNECTING):
                    control = U_FRAME_TYPE_SNRM | U_FRAME_BITS
                else:
                    control = self._rr_control(peer)
                self._put_u_s_frame(QueueType.S_FRAME, address, control)
                slot = self._next_s_u_frame(peer, address)
            if slot is not None:
                slot.control |= P_BIT
                now = millis()
                self.last_marker_ts = now
                self.peers[peer].last_ka_ts = now
            return slot

    def next_tx_frame(self) -> Optional[FrameSlot]:
        """Return the next frame to put on the wire, or None if there is none.

        While a returned frame has not been reported through on_frame_sent(),
        no further frame is handed out. Raises UnknownPeerError when the
        current peer slot has no registered station.
        """
        index = self.next_peer
        for _ in range(2):
            if self.events.check(EVENT_TX_SENDING):
                return None
            if self.peers[index].addr == UNASSIGNED_ADDRESS:
                raise UnknownPeerError("no station is registered for the current peer slot")
            self.check_idle_timeout(index)
            passive = self.mode == Mode.ABM or not self.is_primary()
            if self.events.check(EVENT_HAS_MARKER):
                if self.mode == Mode.NRM or self.events.check(EVENT_TX_DATA_AVAILABLE, True):
                    slot = self.next_frame_for(index)
                    if slot is not None:
                        self.events.set(EVENT_TX_DATA_AVAILABLE)
                        self.events.set(EVENT_TX_SENDING)
                        return slot
                    if passive:
                        return None
                elif passive:
                    return None
            elif self.is_primary():
                if _elapsed(self.last_marker_ts) >= self.retry_timeout:
                    log(LogLevel.CRIT, f"[{id(self):x}] RETURN MARKER BACK")
                    self.events.set(EVENT_HAS_MARKER)
                else:
                    return None
        return None