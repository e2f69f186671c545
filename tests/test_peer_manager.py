"""Tests for the per-peer negotiation state machine."""
from __future__ import annotations

import asyncio

import pytest

from meshcall.core.exceptions import NegotiationFailed
from meshcall.webrtc.media import LocalMediaController
from meshcall.webrtc.messages import Answer, IceCandidate, Offer
from meshcall.webrtc.peer_manager import (
    NegotiationState,
    PeerLink,
    candidates_from_sdp,
    parse_remote_candidate,
)
from tests.conftest import ConnectionFactory, FakeMediaSource, make_sdp


class RecordingSignaling:
    def __init__(self):
        self.sent = []

    async def send(self, message):
        self.sent.append(message)

    def of_type(self, cls):
        return [message for message in self.sent if isinstance(message, cls)]


@pytest.fixture
async def media():
    controller = LocalMediaController(source=FakeMediaSource())
    await controller.acquire()
    yield controller
    controller.release()


@pytest.fixture
def signaling():
    return RecordingSignaling()


@pytest.fixture
def factory():
    return ConnectionFactory()


@pytest.fixture
def link(media, signaling, factory):
    return PeerLink("remote", "local", signaling, media, connection_factory=factory.create)


def test_candidates_from_sdp_reads_mid_and_index():
    candidates = candidates_from_sdp(make_sdp("192.168.1.5", 5000, mid_after_candidates=True))

    assert candidates == [
        {"candidate": "candidate:1 1 udp 2130706431 192.168.1.5 5000 typ host", "sdpMid": "0", "sdpMLineIndex": 0},
        {"candidate": "candidate:2 1 udp 2130706431 192.168.1.5 5001 typ host", "sdpMid": "1", "sdpMLineIndex": 1},
    ]


def test_parse_remote_candidate_accepts_browser_form():
    candidate = parse_remote_candidate({
        "candidate": "candidate:1 1 udp 2130706431 192.168.1.5 5000 typ host",
        "sdpMid": "0",
        "sdpMLineIndex": 0,
    })

    assert candidate.ip == "192.168.1.5"
    assert candidate.port == 5000
    assert candidate.type == "host"
    assert candidate.sdpMid == "0"


def test_open_attaches_local_tracks(link, media, factory):
    link.open()

    pc = factory.created[0]
    assert [sender.track.kind for sender in pc.senders] == ["audio", "video"]
    assert link.outbound_video_track is media.outbound_video_track
    assert link.state is NegotiationState.IDLE


@pytest.mark.asyncio
async def test_offerer_sends_offer_then_trickles_candidates(link, signaling, factory):
    await link.start_offer()

    assert link.state is NegotiationState.NEGOTIATING
    assert link.role == "offerer"
    assert isinstance(signaling.sent[0], Offer)
    assert signaling.sent[0].target == "remote"
    assert signaling.sent[0].sender == "local"
    assert len(signaling.of_type(IceCandidate)) == 2
    assert factory.created[0].signalingState == "have-local-offer"


@pytest.mark.asyncio
async def test_offerer_connects_after_answer(link, factory):
    await link.start_offer()
    await link.apply_answer(make_sdp("10.0.0.9", 6000))

    assert link.state is NegotiationState.CONNECTED
    assert factory.created[0].remoteDescription.type == "answer"


@pytest.mark.asyncio
async def test_answerer_applies_offer_and_answers(link, signaling):
    await link.accept_offer(make_sdp("10.0.0.9", 6000))

    assert link.role == "answerer"
    assert link.state is NegotiationState.CONNECTED
    answers = signaling.of_type(Answer)
    assert len(answers) == 1
    assert answers[0].target == "remote"


@pytest.mark.asyncio
async def test_early_candidates_are_queued_until_remote_description(link, factory):
    early = {"candidate": "candidate:1 1 udp 2130706431 10.0.0.9 6000 typ host", "sdpMid": "0", "sdpMLineIndex": 0}

    await link.add_remote_candidate(early)
    assert link.pending_candidates == [early]

    await link.accept_offer(make_sdp("10.0.0.9", 6000))
    pc = factory.created[0]
    assert link.pending_candidates == []
    assert len(pc.applied_candidates) == 1

    await link.add_remote_candidate({
        "candidate": "candidate:2 1 udp 2130706431 10.0.0.9 6001 typ host",
        "sdpMid": "1",
        "sdpMLineIndex": 1,
    })
    assert len(pc.applied_candidates) == 2


@pytest.mark.asyncio
async def test_offerer_queues_candidates_until_answer(link, factory):
    await link.start_offer()
    await link.add_remote_candidate({"candidate": "candidate:1 1 udp 1 10.0.0.9 6000 typ host", "sdpMid": "0"})

    pc = factory.created[0]
    assert pc.applied_candidates == []
    assert len(link.pending_candidates) == 1

    await link.apply_answer(make_sdp("10.0.0.9", 6000))
    assert len(pc.applied_candidates) == 1


@pytest.mark.asyncio
async def test_unparsable_candidate_is_dropped(link, factory):
    await link.accept_offer(make_sdp("10.0.0.9", 6000))
    await link.add_remote_candidate({"candidate": "candidate:garbage"})

    assert factory.created[0].applied_candidates == []
    assert link.state is NegotiationState.CONNECTED


@pytest.mark.asyncio
async def test_answer_without_offer_is_ignored(link, factory):
    link.open()
    await link.apply_answer(make_sdp("10.0.0.9", 6000))

    assert factory.created[0].remoteDescription is None
    assert link.state is NegotiationState.IDLE


@pytest.mark.asyncio
async def test_negotiation_error_marks_link_failed(media, signaling, factory):
    factory.fail_next.append({"createOffer"})
    link = PeerLink("remote", "local", signaling, media, connection_factory=factory.create)
    states = []
    link.add_callback('state_changed', lambda peer_id, state: states.append(state))

    with pytest.raises(NegotiationFailed) as excinfo:
        await link.start_offer()

    assert excinfo.value.peer_id == "remote"
    assert link.state is NegotiationState.FAILED
    assert states == [NegotiationState.NEGOTIATING, NegotiationState.FAILED]
    assert signaling.sent == []


@pytest.mark.asyncio
async def test_transport_failure_reported(link, factory):
    await link.accept_offer(make_sdp("10.0.0.9", 6000))
    reasons = []
    link.add_callback('state_changed', lambda peer_id, state: reasons.append(link.failure_reason))

    factory.created[0].set_connection_state("failed")

    assert link.state is NegotiationState.FAILED
    assert reasons == ["connection failed"]


@pytest.mark.asyncio
async def test_close_is_idempotent_and_ignores_late_messages(link, factory):
    await link.start_offer()
    pc = factory.created[0]

    await link.close()
    await link.close()

    assert link.state is NegotiationState.CLOSED
    assert link.connection is None
    assert pc.closed

    await link.apply_answer(make_sdp("10.0.0.9", 6000))
    await link.add_remote_candidate({"candidate": "candidate:1 1 udp 1 10.0.0.9 6000 typ host"})
    assert pc.applied_candidates == []
    assert link.pending_candidates == []


@pytest.mark.asyncio
async def test_close_during_negotiation_drops_stale_result(link, signaling):
    task = asyncio.create_task(link.accept_offer(make_sdp("10.0.0.9", 6000)))
    await asyncio.sleep(0)

    await link.close()
    await task

    assert signaling.of_type(Answer) == []
    assert link.state is NegotiationState.CLOSED


@pytest.mark.asyncio
async def test_replace_video_track_swaps_sender_in_place(link, media, factory, signaling):
    await link.start_offer()
    sent_before = len(signaling.sent)
    camera = media.outbound_video_track
    screen = await media.source.open_display_media()

    assert link.replace_video_track(screen)

    video_sender = factory.created[0].senders[1]
    assert link.outbound_video_track is screen
    assert len(video_sender.replaced) == 1
    assert len(signaling.sent) == sent_before

    link.replace_video_track(camera)
    assert link.outbound_video_track is camera


@pytest.mark.asyncio
async def test_replace_video_track_skips_closed_link(link, media):
    await link.start_offer()
    await link.close()

    assert not link.replace_video_track(media.outbound_video_track)


@pytest.mark.asyncio
async def test_remote_track_exposed_and_removed(link, factory):
    from aiortc import VideoStreamTrack

    await link.accept_offer(make_sdp("10.0.0.9", 6000))
    events = []
    link.add_callback('remote_track', lambda peer_id, track: events.append(("added", track.kind)))
    link.add_callback('remote_track_ended', lambda peer_id, track: events.append(("ended", track.kind)))

    remote = VideoStreamTrack()
    factory.created[0].emit("track", remote)
    assert link.remote_stream.video is remote

    remote.stop()
    assert link.remote_stream.video is None
    assert events == [("added", "video"), ("ended", "video")]
