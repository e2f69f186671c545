"""Shared fakes for session tests.

The fakes keep aiortc's method and event names so the production code runs
unchanged: a pyee-based peer connection, a media source built from aiortc's
stock tracks, and an in-memory WebSocket wired to the real RoomRegistry.
"""
from __future__ import annotations

import asyncio
import itertools
import json

import pytest
from aiortc import AudioStreamTrack, RTCSessionDescription, VideoStreamTrack
from aiortc.exceptions import InvalidStateError
from pyee.asyncio import AsyncIOEventEmitter
from websockets.exceptions import ConnectionClosedOK

from meshcall.core.config import SessionConfig
from meshcall.core.exceptions import MediaAccessDenied, ScreenShareDenied
from meshcall.relay import RoomRegistry
from meshcall.webrtc.media import LocalMediaController
from meshcall.webrtc.session import SessionController
from meshcall.webrtc.signaling import SignalingClient


def make_sdp(host: str, base_port: int, mid_after_candidates: bool = False) -> str:
    lines = ["v=0", "o=- 0 0 IN IP4 127.0.0.1", "s=-", "t=0 0"]
    for index, kind in enumerate(("audio", "video")):
        lines.append(f"m={kind} 9 UDP/TLS/RTP/SAVPF 96")
        candidate = f"a=candidate:{index + 1} 1 udp 2130706431 {host} {base_port + index} typ host"
        if mid_after_candidates:
            lines += [candidate, f"a=mid:{index}"]
        else:
            lines += [f"a=mid:{index}", candidate]
    return "\r\n".join(lines) + "\r\n"


async def settle(rounds: int = 300):
    for _ in range(rounds):
        await asyncio.sleep(0)


class FakeSender:
    def __init__(self, track):
        self.track = track
        self.replaced = []

    def replaceTrack(self, track):
        self.track = track
        self.replaced.append(track)


class FakePeerConnection(AsyncIOEventEmitter):
    """Stand-in for aiortc.RTCPeerConnection without any networking."""

    def __init__(self, port: int, fail_on=()):
        super().__init__()
        self.port = port
        self.fail_on = set(fail_on)
        self.localDescription = None
        self.remoteDescription = None
        self.signalingState = "stable"
        self.connectionState = "new"
        self.iceConnectionState = "new"
        self.senders = []
        self.applied_candidates = []
        self.closed = False

    def addTrack(self, track):
        sender = FakeSender(track)
        self.senders.append(sender)
        return sender

    def getSenders(self):
        return list(self.senders)

    async def _step(self, name):
        await asyncio.sleep(0)
        if self.closed:
            raise InvalidStateError("RTCPeerConnection is closed")
        if name in self.fail_on:
            raise RuntimeError(f"{name} exploded")

    async def createOffer(self):
        await self._step("createOffer")
        return RTCSessionDescription(sdp=make_sdp("10.0.0.1", self.port), type="offer")

    async def createAnswer(self):
        await self._step("createAnswer")
        return RTCSessionDescription(sdp=make_sdp("10.0.0.2", self.port), type="answer")

    async def setLocalDescription(self, description):
        await self._step("setLocalDescription")
        self.localDescription = description
        self.signalingState = "have-local-offer" if description.type == "offer" else "stable"
        self._maybe_connect()

    async def setRemoteDescription(self, description):
        await self._step("setRemoteDescription")
        self.remoteDescription = description
        self.signalingState = "have-remote-offer" if description.type == "offer" else "stable"
        self._maybe_connect()

    async def addIceCandidate(self, candidate):
        await self._step("addIceCandidate")
        if self.remoteDescription is None:
            raise InvalidStateError("Remote description is not set")
        self.applied_candidates.append(candidate)

    async def close(self):
        if self.closed:
            return
        self.closed = True
        self.signalingState = "closed"
        self.set_connection_state("closed")

    def set_connection_state(self, state):
        self.connectionState = state
        self.emit("connectionstatechange")

    def _maybe_connect(self):
        if self.localDescription and self.remoteDescription and self.signalingState == "stable":
            self.set_connection_state("connected")


class ConnectionFactory:
    """Creates FakePeerConnections and remembers them."""

    def __init__(self):
        self.created = []
        self.fail_next = []
        self._ports = itertools.count(40000, 10)

    def create(self):
        fail_on = self.fail_next.pop(0) if self.fail_next else ()
        pc = FakePeerConnection(next(self._ports), fail_on=fail_on)
        self.created.append(pc)
        return pc


class FakeMediaSource:
    def __init__(self, deny: bool = False, deny_screen: bool = False):
        self.deny = deny
        self.deny_screen = deny_screen
        self.user_media = []
        self.screens = []

    async def open_user_media(self):
        if self.deny:
            raise MediaAccessDenied("Permission denied by user")
        tracks = (AudioStreamTrack(), VideoStreamTrack())
        self.user_media.append(tracks)
        return tracks

    async def open_display_media(self):
        if self.deny_screen:
            raise ScreenShareDenied("Picker cancelled")
        screen = VideoStreamTrack()
        self.screens.append(screen)
        return screen


class FakeWebSocket:
    """In-memory client side of a relay connection."""

    def __init__(self, registry: RoomRegistry, peer_id: str, silent: bool = False):
        self.registry = registry
        self.peer_id = peer_id
        self.silent = silent
        self.sent = []
        self.closed = False
        self._inbox = asyncio.Queue()

    async def send(self, payload: str):
        if self.closed:
            raise ConnectionClosedOK(None, None)
        data = json.loads(payload)
        self.sent.append(data)
        if not self.silent:
            await self.registry.handle(self.peer_id, self.deliver, data)

    async def deliver(self, data):
        if not self.closed:
            self._inbox.put_nowait(json.dumps(data))

    def push_raw(self, raw: str):
        self._inbox.put_nowait(raw)

    def __aiter__(self):
        return self._messages()

    async def _messages(self):
        while True:
            raw = await self._inbox.get()
            if raw is None:
                return
            yield raw

    async def close(self):
        if self.closed:
            return
        self.closed = True
        self._inbox.put_nowait(None)
        await self.registry.leave(self.peer_id)

    async def drop(self):
        """Simulate the relay going away."""
        await self.close()


class FakeRelay:
    def __init__(self, silent: bool = False, unreachable: bool = False):
        self.registry = RoomRegistry()
        self.silent = silent
        self.unreachable = unreachable
        self.sockets = []
        self._ids = itertools.count(1)

    async def connect(self, url, **kwargs):
        if self.unreachable:
            raise ConnectionRefusedError(f"Connection refused: {url}")
        ws = FakeWebSocket(self.registry, f"peer-{next(self._ids)}", silent=self.silent)
        self.sockets.append(ws)
        return ws

    def socket_for(self, peer_id):
        return next(ws for ws in self.sockets if ws.peer_id == peer_id)

    def sent_messages(self, message_type=None):
        return [
            message
            for ws in self.sockets
            for message in ws.sent
            if message_type is None or message["type"] == message_type
        ]


@pytest.fixture
def relay():
    return FakeRelay()


@pytest.fixture
def connections():
    return ConnectionFactory()


@pytest.fixture
def make_session(relay, connections):
    def factory(source=None, fake_relay=None, join_timeout=2.0):
        fake_relay = fake_relay or relay
        config = SessionConfig(join_timeout=join_timeout)
        signaling = SignalingClient("ws://relay.test/ws", connector=fake_relay.connect)
        media = LocalMediaController(source=source or FakeMediaSource(), config=config)
        return SessionController(config=config, signaling=signaling, media=media,
                                 connection_factory=connections.create)
    return factory
