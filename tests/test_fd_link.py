import pytest

from tinyfd.fd_link import FrameLink
from tinyfd.fd_types import (
    CR_BIT,
    EVENT_CAN_ACCEPT_I_FRAMES,
    EVENT_HAS_MARKER,
    EVENT_QUEUE_HAS_FREE_SLOTS,
    EVENT_TX_SENDING,
    I_FRAME_BITS,
    P_BIT,
    S_FRAME_BITS,
    S_FRAME_MASK,
    S_FRAME_TYPE_REJ,
    S_FRAME_TYPE_RR,
    U_FRAME_BITS,
    U_FRAME_MASK,
    U_FRAME_TYPE_DISC,
    U_FRAME_TYPE_FRMR,
    U_FRAME_TYPE_SABM,
    U_FRAME_TYPE_UA,
    UNASSIGNED_ADDRESS,
    FdConfig,
    FdError,
    InvalidConfigError,
    Mode,
    PeerState,
    make_address_field,
)
from tinyfd.frames import QueueType


class Recorder:
    def __init__(self):
        self.frames = []
        self.sent = []
        self.connects = []

    def on_frame(self, payload):
        self.frames.append(payload)

    def on_sent(self, payload):
        self.sent.append(payload)

    def on_connect(self, address, connected):
        self.connects.append((address, connected))


def make_link(mode=Mode.ABM, addr=0, peers_count=0):
    rec = Recorder()
    config = FdConfig(
        on_frame=rec.on_frame,
        on_sent=rec.on_sent,
        on_connect_event=rec.on_connect,
        send_timeout=1000,
        window_frames=3,
        mtu=16,
        addr=addr,
        peers_count=peers_count,
        mode=mode,
    )
    return FrameLink(config), rec


def queued(link):
    return [slot for slot in link.s_queue if slot.kind != QueueType.FREE]


def connect(link):
    addr = link.peers[0].addr
    link.on_frame_read(bytes((addr | CR_BIT, U_FRAME_TYPE_SABM | U_FRAME_BITS)))
    for slot in queued(link):
        link.s_queue.free(slot)


def test_invalid_config_rejected():
    with pytest.raises(InvalidConfigError):
        FrameLink(FdConfig(send_timeout=1000))


def test_primary_abm_initial_state():
    link, _ = make_link()
    assert link.is_primary()
    assert link.peers[0].addr == make_address_field(0)
    assert link.events.check(EVENT_HAS_MARKER) == EVENT_HAS_MARKER
    assert link.events.check(EVENT_QUEUE_HAS_FREE_SLOTS) == EVENT_QUEUE_HAS_FREE_SLOTS
    assert link.peers[0].state == PeerState.DISCONNECTED


def test_secondary_nrm_initial_state():
    link, _ = make_link(mode=Mode.NRM, addr=1)
    assert not link.is_primary()
    assert link.peers[0].addr == make_address_field(1)
    assert link.events.check(EVENT_HAS_MARKER) == 0


def test_primary_nrm_peers_unassigned():
    link, _ = make_link(mode=Mode.NRM, peers_count=2)
    assert len(link.peers) == 2
    assert all(peer.addr == UNASSIGNED_ADDRESS for peer in link.peers)


def test_sabm_connects_and_answers_ua():
    link, rec = make_link()
    addr = link.peers[0].addr
    result = link.on_frame_read(bytes((addr | CR_BIT, U_FRAME_TYPE_SABM | U_FRAME_BITS)))
    assert result == 2
    assert link.peers[0].state == PeerState.CONNECTED
    slots = queued(link)
    assert len(slots) == 1
    assert slots[0].control == U_FRAME_TYPE_UA | U_FRAME_BITS
    assert slots[0].address == addr
    assert rec.connects == [(0, True)]
    assert link.peers[0].events.check(EVENT_CAN_ACCEPT_I_FRAMES) == EVENT_CAN_ACCEPT_I_FRAMES


def test_i_frame_delivered_and_rr_queued():
    link, rec = make_link()
    connect(link)
    addr = link.peers[0].addr
    link.on_frame_read(bytes((addr, I_FRAME_BITS)) + b"hello")
    assert rec.frames == [b"hello"]
    assert link.peers[0].next_nr == 1
    slots = queued(link)
    assert len(slots) == 1
    assert slots[0].control == S_FRAME_BITS | S_FRAME_TYPE_RR | (1 << 5)


def test_i_frame_while_disconnected_starts_connecting():
    link, rec = make_link()
    addr = link.peers[0].addr
    link.on_frame_read(bytes((addr, I_FRAME_BITS)) + b"x")
    assert rec.frames == []
    assert link.peers[0].state == PeerState.CONNECTING
    slots = queued(link)
    assert [s.control for s in slots] == [U_FRAME_TYPE_SABM | U_FRAME_BITS]
    assert slots[0].address == addr | CR_BIT


def test_rr_confirms_sent_frame():
    link, rec = make_link()
    connect(link)
    peer = link.peers[0]
    slot = link.i_queue.allocate(QueueType.I_FRAME, b"data")
    slot.address = peer.addr
    slot.control = 0
    peer.last_ns = 1
    peer.next_ns = 1
    peer.events.clear(EVENT_CAN_ACCEPT_I_FRAMES)
    link.on_frame_read(bytes((peer.addr, S_FRAME_BITS | S_FRAME_TYPE_RR | (1 << 5))))
    assert rec.sent == [b"data"]
    assert peer.confirm_ns == 1
    assert slot.kind == QueueType.FREE
    assert peer.events.check(EVENT_CAN_ACCEPT_I_FRAMES) == EVENT_CAN_ACCEPT_I_FRAMES


def test_rr_poll_gets_answer_when_idle():
    link, _ = make_link()
    connect(link)
    addr = link.peers[0].addr
    link.on_frame_read(bytes((addr | CR_BIT, S_FRAME_BITS | S_FRAME_TYPE_RR)))
    slots = queued(link)
    assert len(slots) == 1
    assert slots[0].control & S_FRAME_MASK == S_FRAME_BITS


def test_rej_rewinds_next_ns():
    link, _ = make_link()
    connect(link)
    peer = link.peers[0]
    peer.last_ns = 2
    peer.next_ns = 2
    link.on_frame_read(bytes((peer.addr, S_FRAME_BITS | S_FRAME_TYPE_REJ)))
    assert peer.next_ns == 0
    assert queued(link) == []


def test_rej_out_of_sync_queues_frmr():
    link, _ = make_link()
    connect(link)
    peer = link.peers[0]
    control = S_FRAME_BITS | S_FRAME_TYPE_REJ | (3 << 5)
    link.on_frame_read(bytes((peer.addr, control)))
    slots = queued(link)
    assert len(slots) == 1
    assert slots[0].control == U_FRAME_TYPE_FRMR | U_FRAME_BITS
    assert slots[0].payload == bytes((control, 0))


def test_disc_disconnects():
    link, rec = make_link()
    connect(link)
    addr = link.peers[0].addr
    link.on_frame_read(bytes((addr | CR_BIT, U_FRAME_TYPE_DISC | U_FRAME_BITS)))
    assert link.peers[0].state == PeerState.DISCONNECTED
    assert rec.connects == [(0, True), (0, False)]
    assert [s.control for s in queued(link)] == [U_FRAME_TYPE_UA | U_FRAME_BITS]
    assert link.peers[0].events.check(EVENT_CAN_ACCEPT_I_FRAMES) == 0


def test_ua_completes_connecting():
    link, rec = make_link()
    link.peers[0].state = PeerState.CONNECTING
    link.on_frame_read(bytes((link.peers[0].addr, U_FRAME_TYPE_UA | U_FRAME_BITS)))
    assert link.peers[0].state == PeerState.CONNECTED
    assert rec.connects == [(0, True)]


def test_frame_for_other_station_ignored():
    link, rec = make_link(mode=Mode.NRM, addr=1)
    frame = bytes((make_address_field(2), U_FRAME_TYPE_SABM | U_FRAME_BITS))
    assert link.on_frame_read(frame) == len(frame)
    assert link.peers[0].state == PeerState.DISCONNECTED
    assert queued(link) == []


def test_primary_nrm_handles_registered_peer_only():
    link, _ = make_link(mode=Mode.NRM, peers_count=2)
    frame = bytes((make_address_field(1), U_FRAME_TYPE_SABM | U_FRAME_BITS))
    link.on_frame_read(frame)
    assert queued(link) == []
    link.peers[1].addr = make_address_field(1)
    link.on_frame_read(frame)
    assert link.peers[1].state == PeerState.CONNECTED
    assert link.peers[0].state == PeerState.DISCONNECTED


def test_short_frame_raises():
    link, _ = make_link()
    with pytest.raises(FdError):
        link.on_frame_read(b"\x01")


def test_poll_bit_gives_marker():
    link, _ = make_link(mode=Mode.NRM, addr=1)
    addr = link.peers[0].addr
    link.on_frame_read(bytes((addr | CR_BIT, U_FRAME_TYPE_SABM | U_FRAME_BITS | P_BIT)))
    assert link.events.check(EVENT_HAS_MARKER) == EVENT_HAS_MARKER


def test_sent_u_frame_frees_slot():
    link, _ = make_link()
    addr = link.peers[0].addr
    link.on_frame_read(bytes((addr | CR_BIT, U_FRAME_TYPE_SABM | U_FRAME_BITS)))
    slot = queued(link)[0]
    link.events.set(EVENT_TX_SENDING)
    assert link.on_frame_sent(slot) == 2
    assert slot.kind == QueueType.FREE
    assert link.events.check(EVENT_TX_SENDING) == 0
    assert link.events.check(EVENT_HAS_MARKER) == EVENT_HAS_MARKER


def test_sent_final_frame_passes_marker_to_next_peer():
    link, _ = make_link(mode=Mode.NRM, peers_count=2)
    link.peers[0].addr = make_address_field(1)
    link.peers[1].addr = make_address_field(2)
    frame = bytes((make_address_field(1), S_FRAME_BITS | S_FRAME_TYPE_RR | P_BIT))
    link.on_frame_sent(frame)
    assert link.next_peer == 1
    assert link.events.check(EVENT_HAS_MARKER) == 0


def test_sent_i_frame_stays_queued():
    link, _ = make_link()
    connect(link)
    peer = link.peers[0]
    slot = link.i_queue.allocate(QueueType.I_FRAME, b"keep")
    slot.address = peer.addr
    slot.control = 0
    link.on_frame_sent(slot)
    assert slot.kind == QueueType.I_FRAME
    assert slot.raw()[0] & U_FRAME_MASK == peer.addr & U_FRAME_MASK