"""Fixed-size queue of frame slots used for outgoing HDLC frames."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import IntFlag

_ADDRESS_MASK = 0xFC


class QueueType(IntFlag):
    """State of a queue slot; values may be combined when searching."""

    FREE = 0x01
    U_FRAME = 0x02
    S_FRAME = 0x04
    I_FRAME = 0x08


@dataclass(eq=False)
class FrameSlot:
    """One queue slot: a two-byte HDLC header followed by payload."""

    index: int
    kind: QueueType = QueueType.FREE
    address: int = 0
    control: int = 0
    payload: bytes = field(default=b"")

    def raw(self) -> bytes:
        """Header and payload as they go on the wire."""
        return bytes((self.address & 0xFF, self.control & 0xFF)) + bytes(self.payload)

    @property
    def sequence(self) -> int:
        """N(S) field of the control byte."""
        return (self.control >> 1) & 0x07


class FrameQueue:
    """A ring of frame slots searched from the most recently freed position."""

    def __init__(self, max_frames: int, mtu: int) -> None:
        if max_frames < 1:
            raise ValueError("queue must hold at least one frame")
        if mtu < 0:
            raise ValueError("mtu must not be negative")
        self._slots = [FrameSlot(index=i) for i in range(max_frames)]
        self._mtu = mtu
        self._lookup_index = 0

    @property
    def mtu(self) -> int:
        """Maximum payload size of a queued frame."""
        return self._mtu

    def __len__(self) -> int:
        return len(self._slots)

    def __iter__(self):
        return iter(self._slots)

    def reset(self) -> None:
        """Mark every slot free."""
        for slot in self._slots:
            slot.kind = QueueType.FREE
        self._lookup_index = 0

    def reset_for(self, address: int) -> None:
        """Free every slot whose header address matches ``address``."""
        for slot in self._slots:
            if (slot.address & _ADDRESS_MASK) == (address & _ADDRESS_MASK):
                slot.kind = QueueType.FREE

    def allocate(self, kind: QueueType, payload: bytes) -> FrameSlot | None:
        """Store ``payload`` in a free slot; None if too large or queue full."""
        if len(payload) > self._mtu:
            return None
        slot = self.get_next(QueueType.FREE)
        if slot is not None:
            slot.payload = bytes(payload)
            slot.kind = QueueType(kind)
        return slot

    def _ring(self):
        start = self._lookup_index
        return self._slots[start:] + self._slots[:start]

    def get_next(self, kind: int, address: int = 0, arg: int = 0) -> FrameSlot | None:
        """Find the next slot of ``kind``.

        Free slots match regardless of address. Other slots must match the
        address; I-frames must also carry sequence number ``arg``.
        """
        for slot in self._ring():
            if not slot.kind & kind:
                continue
            if slot.kind == QueueType.FREE:
                return slot
            if (address & _ADDRESS_MASK) != (slot.address & _ADDRESS_MASK):
                continue
            if slot.kind != QueueType.I_FRAME or slot.sequence == arg:
                return slot
        return None

    def free(self, slot: FrameSlot) -> None:
        """Mark ``slot`` free and start the next search just after it."""
        for position, candidate in enumerate(self._slots):
            if candidate is slot:
                candidate.kind = QueueType.FREE
                self._lookup_index = (position + 1) % len(self._slots)
                return

    def has_free_slots(self) -> bool:
        """Whether at least one slot is free."""
        return self.get_next(QueueType.FREE) is not None