"""
Per-peer WebRTC connection management.

A PeerLink owns the negotiated RTCPeerConnection toward one remote
participant and drives its offer/answer/ICE exchange.
"""
import asyncio
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

from aiortc import MediaStreamTrack, RTCPeerConnection, RTCSessionDescription
from aiortc.sdp import candidate_from_sdp, candidate_to_sdp

from meshcall.core.config import SessionConfig
from meshcall.core.exceptions import NegotiationFailed, SignalingDisconnected
from meshcall.core.logging import LoggerMixin
from meshcall.webrtc.messages import Answer, IceCandidate, Offer
from meshcall.webrtc.tracks import RemoteStream


class NegotiationState(str, Enum):
    IDLE = "idle"
    NEGOTIATING = "negotiating"
    CONNECTED = "connected"
    FAILED = "failed"
    CLOSED = "closed"


def candidates_from_sdp(sdp: str) -> List[Dict[str, Any]]:
    """Extract ICE candidates gathered into a session description.

    Returns browser-style candidate dicts (``candidate``, ``sdpMid``,
    ``sdpMLineIndex``), one per ``a=candidate`` line.
    """
    sections: List[List[str]] = []
    for line in sdp.splitlines():
        line = line.strip()
        if line.startswith("m="):
            sections.append([])
        elif sections:
            sections[-1].append(line)

    candidates = []
    for index, lines in enumerate(sections):
        mid = next((line[len("a=mid:"):] for line in lines if line.startswith("a=mid:")), None)
        for line in lines:
            if line.startswith("a=candidate:"):
                candidates.append({
                    "candidate": line[len("a="):],
                    "sdpMid": mid,
                    "sdpMLineIndex": index,
                })
    return candidates


def parse_remote_candidate(payload: Dict[str, Any]):
    """Build an aiortc RTCIceCandidate from a browser-style candidate dict."""
    line = payload["candidate"]
    if line.startswith("candidate:"):
        line = line[len("candidate:"):]
    candidate = candidate_from_sdp(line)
    candidate.sdpMid = payload.get("sdpMid")
    candidate.sdpMLineIndex = payload.get("sdpMLineIndex")
    return candidate


class PeerLink(LoggerMixin):
    """Negotiated transport plus state toward a single remote peer.

    States move ``idle -> negotiating -> connected -> closed``; ``failed`` is
    reachable from ``negotiating`` and ``connected``. Nothing here retries:
    a failed link stays failed until its owner closes it.

    Remote ICE candidates that arrive before the remote description is set
    are queued and flushed as soon as it is applied. Description operations
    are serialized by a per-link FIFO lock so offer/answer steps are applied
    in arrival order. Once closed, late results and messages are ignored.
    """

    def __init__(self, peer_id: str, local_peer_id: Optional[str], signaling, media,
                 config: Optional[SessionConfig] = None,
                 connection_factory: Optional[Callable[[], Any]] = None):
        super().__init__()
        self.peer_id = peer_id
        self.local_peer_id = local_peer_id or ""
        self.signaling = signaling
        self.media = media
        self.config = config
        self._connection_factory = connection_factory

        self.state = NegotiationState.IDLE
        self.role: Optional[str] = None
        self.failure_reason: Optional[str] = None
        self.connection = None
        self.remote_stream = RemoteStream(peer_id)
        self.pending_candidates: List[Dict[str, Any]] = []

        self._lock = asyncio.Lock()
        self._sent_candidates: Set[str] = set()
        self._senders: Dict[str, Any] = {}
        self._outbound: Dict[str, Tuple[MediaStreamTrack, MediaStreamTrack]] = {}

        self.callbacks: Dict[str, Set[Callable]] = {
            'state_changed': set(),
            'remote_track': set(),
            'remote_track_ended': set(),
        }

    @property
    def closed(self) -> bool:
        return self.state is NegotiationState.CLOSED

    @property
    def outbound_video_track(self) -> Optional[MediaStreamTrack]:
        """The local track currently feeding this link's video sender."""
        entry = self._outbound.get("video")
        return entry[0] if entry else None

    def add_callback(self, event: str, callback: Callable):
        if event in self.callbacks:
            self.callbacks[event].add(callback)

    def remove_callback(self, event: str, callback: Callable):
        if event in self.callbacks:
            self.callbacks[event].discard(callback)

    # Transport setup

    def open(self):
        """Create the transport and attach the current local tracks."""
        if self.connection is not None or self.closed:
            return

        if self._connection_factory is not None:
            pc = self._connection_factory()
        else:
            config = self.config or SessionConfig()
            pc = RTCPeerConnection(configuration=config.rtc_config)

        self.connection = pc
        self._setup_connection_handlers(pc)
        for track in self.media.tracks():
            self._attach_track(pc, track)

        self.log_debug("🔗 [PeerLink] Transport created", {
            "peer_id": self.peer_id,
            "tracks": [kind for kind in self._senders]
        })

    def _attach_track(self, pc, track: MediaStreamTrack):
        proxy = self.media.subscribe(track)
        self._senders[track.kind] = pc.addTrack(proxy)
        self._outbound[track.kind] = (track, proxy)

    def _setup_connection_handlers(self, pc):
        """Set up event handlers for the peer connection."""

        @pc.on("icecandidate")
        async def on_ice_candidate(candidate):
            if candidate is None or self.closed:
                return
            try:
                await self._send_local_candidate({
                    "candidate": "candidate:" + candidate_to_sdp(candidate),
                    "sdpMid": candidate.sdpMid,
                    "sdpMLineIndex": candidate.sdpMLineIndex,
                })
            except SignalingDisconnected as e:
                self.log_warning("🧊 [PeerLink] Could not send ICE candidate", {
                    "peer_id": self.peer_id,
                    "error": str(e)
                })

        @pc.on("track")
        def on_track(track):
            if self.closed:
                return
            self.remote_stream.add_track(track)
            self.log_info("📺 [PeerLink] Remote track received", {
                "peer_id": self.peer_id,
                "kind": track.kind
            })
            self._notify_callbacks('remote_track', track)

            @track.on("ended")
            def on_ended():
                if self.remote_stream.remove_track(track) and not self.closed:
                    self._notify_callbacks('remote_track_ended', track)

        @pc.on("connectionstatechange")
        def on_connection_state_change():
            self.log_debug("🔗 [PeerLink] Connection state changed", {
                "peer_id": self.peer_id,
                "connection_state": pc.connectionState
            })
            if self.closed or pc is not self.connection:
                return
            if pc.connectionState == "connected":
                if self.state is NegotiationState.NEGOTIATING:
                    self._set_state(NegotiationState.CONNECTED)
            elif pc.connectionState == "failed":
                self._fail("connection failed")

        @pc.on("iceconnectionstatechange")
        def on_ice_connection_state_change():
            self.log_debug("🧊 [PeerLink] ICE connection state changed", {
                "peer_id": self.peer_id,
                "ice_state": pc.iceConnectionState
            })

        @pc.on("signalingstatechange")
        def on_signaling_state_change():
            self.log_debug("📡 [PeerLink] Signaling state changed", {
                "peer_id": self.peer_id,
                "signaling_state": pc.signalingState
            })

    # Negotiation

    async def start_offer(self):
        """idle -> negotiating as offerer: send an offer to the peer."""
        if self.state is not NegotiationState.IDLE:
            self.log_warning("🤝 [PeerLink] Offer requested outside idle state", {
                "peer_id": self.peer_id,
                "state": self.state.value
            })
            return

        self.open()
        pc = self.connection
        self.role = "offerer"
        self._set_state(NegotiationState.NEGOTIATING)

        try:
            async with self._lock:
                offer = await pc.createOffer()
                if self.closed:
                    return
                await pc.setLocalDescription(offer)
                if self.closed:
                    return
                await self.signaling.send(Offer(
                    sender=self.local_peer_id,
                    target=self.peer_id,
                    sdp=pc.localDescription.sdp
                ))
            self.log_info("🤝 [PeerLink] Offer sent", {"peer_id": self.peer_id})
            await self._trickle_local_description(pc)
        except Exception as e:
            self._negotiation_error("offer", e)

    async def accept_offer(self, sdp: str):
        """idle -> negotiating as answerer: apply the offer and answer it."""
        if self.state is not NegotiationState.IDLE:
            self.log_warning("🤝 [PeerLink] Ignoring offer outside idle state", {
                "peer_id": self.peer_id,
                "state": self.state.value
            })
            return

        self.open()
        pc = self.connection
        self.role = "answerer"
        self._set_state(NegotiationState.NEGOTIATING)

        try:
            async with self._lock:
                await pc.setRemoteDescription(RTCSessionDescription(sdp=sdp, type="offer"))
                if self.closed:
                    return
                await self._flush_pending_candidates(pc)
                answer = await pc.createAnswer()
                if self.closed:
                    return
                await pc.setLocalDescription(answer)
                if self.closed:
                    return
                await self.signaling.send(Answer(
                    sender=self.local_peer_id,
                    target=self.peer_id,
                    sdp=pc.localDescription.sdp
                ))
            self.log_info("🤝 [PeerLink] Answer sent", {"peer_id": self.peer_id})
            await self._trickle_local_description(pc)
        except Exception as e:
            self._negotiation_error("answer", e)

    async def apply_answer(self, sdp: str):
        """Apply the peer's answer to our outstanding offer."""
        if self.closed:
            self.log_debug("🤝 [PeerLink] Ignoring answer for closed link", {"peer_id": self.peer_id})
            return

        pc = self.connection
        try:
            async with self._lock:
                if self.closed:
                    return
                if pc is None or pc.signalingState != "have-local-offer":
                    self.log_warning("🤝 [PeerLink] Ignoring answer without outstanding offer", {
                        "peer_id": self.peer_id,
                        "signaling_state": pc.signalingState if pc else None
                    })
                    return
                await pc.setRemoteDescription(RTCSessionDescription(sdp=sdp, type="answer"))
                if self.closed:
                    return
                await self._flush_pending_candidates(pc)
            self.log_info("🤝 [PeerLink] Answer applied", {"peer_id": self.peer_id})
        except Exception as e:
            self._negotiation_error("apply answer", e)

    async def add_remote_candidate(self, payload: Dict[str, Any]):
        """Apply a trickled candidate, or queue it until the remote description is set."""
        if self.closed:
            return

        pc = self.connection
        if pc is None or pc.remoteDescription is None:
            self.pending_candidates.append(payload)
            self.log_debug("🧊 [PeerLink] Queued early ICE candidate", {
                "peer_id": self.peer_id,
                "queued": len(self.pending_candidates)
            })
            return

        await self._apply_candidate(pc, payload)

    async def _flush_pending_candidates(self, pc):
        pending, self.pending_candidates = self.pending_candidates, []
        if pending:
            self.log_debug("🧊 [PeerLink] Flushing queued ICE candidates", {
                "peer_id": self.peer_id,
                "count": len(pending)
            })
        for payload in pending:
            if self.closed:
                return
            await self._apply_candidate(pc, payload)

    async def _apply_candidate(self, pc, payload: Dict[str, Any]):
        try:
            candidate = parse_remote_candidate(payload)
        except (AssertionError, KeyError, ValueError, IndexError) as e:
            self.log_warning("🧊 [PeerLink] Dropping unparsable ICE candidate", {
                "peer_id": self.peer_id,
                "candidate": payload.get("candidate"),
                "error": str(e)
            })
            return

        try:
            await pc.addIceCandidate(candidate)
        except Exception as e:
            if self.closed:
                return
            self.log_warning("🧊 [PeerLink] Failed to add ICE candidate", {
                "peer_id": self.peer_id,
                "error": str(e),
                "error_type": type(e).__name__
            })

    async def _trickle_local_description(self, pc):
        # aiortc gathers candidates while setting the local description
        description = pc.localDescription
        if description is None:
            return
        for payload in candidates_from_sdp(description.sdp):
            if self.closed:
                return
            await self._send_local_candidate(payload)

    async def _send_local_candidate(self, payload: Dict[str, Any]):
        key = payload["candidate"]
        if key in self._sent_candidates:
            return
        self._sent_candidates.add(key)
        await self.signaling.send(IceCandidate(
            sender=self.local_peer_id,
            target=self.peer_id,
            candidate=payload
        ))

    # Track substitution

    def replace_video_track(self, track: Optional[MediaStreamTrack]) -> bool:
        """Feed ``track`` into the existing video sender without renegotiating."""
        sender = self._senders.get("video")
        if sender is None or self.state in (NegotiationState.CLOSED, NegotiationState.FAILED):
            return False

        current = self._outbound.get("video")
        if current and current[0] is track:
            return True

        proxy = self.media.subscribe(track) if track is not None else None
        sender.replaceTrack(proxy)
        self._outbound["video"] = (track, proxy)
        if current and current[1] is not None:
            current[1].stop()

        self.log_debug("🔁 [PeerLink] Outbound video track replaced", {
            "peer_id": self.peer_id,
            "track": getattr(track, "label", None)
        })
        return True

    # State handling

    def _set_state(self, state: NegotiationState):
        previous = self.state
        if previous is state:
            return
        self.state = state
        self.log_info("🔗 [PeerLink] State changed", {
            "peer_id": self.peer_id,
            "from": previous.value,
            "to": state.value
        })
        self._notify_callbacks('state_changed', state)

    def _fail(self, reason: str):
        if self.state in (NegotiationState.CLOSED, NegotiationState.FAILED):
            return
        self.failure_reason = reason
        self.log_error("🔗 [PeerLink] Peer link failed", {
            "peer_id": self.peer_id,
            "reason": reason
        })
        self._set_state(NegotiationState.FAILED)

    def _negotiation_error(self, step: str, error: Exception):
        if self.closed:
            self.log_debug("🤝 [PeerLink] Ignoring negotiation result after close", {
                "peer_id": self.peer_id,
                "step": step,
                "error": str(error)
            })
            return
        self._fail(f"{step} failed: {error}")
        raise NegotiationFailed(f"Negotiation step '{step}' failed", peer_id=self.peer_id, details={
            "error": str(error),
            "error_type": type(error).__name__
        }) from error

    async def close(self):
        """Release the transport. Closing twice is a no-op."""
        if self.closed:
            return

        self._set_state(NegotiationState.CLOSED)
        self.pending_candidates.clear()
        self.remote_stream.clear()

        for _, proxy in self._outbound.values():
            if proxy is not None:
                proxy.stop()
        self._outbound.clear()
        self._senders.clear()

        pc, self.connection = self.connection, None
        if pc is not None:
            await pc.close()
        self.log_info("🔌 [PeerLink] Closed", {"peer_id": self.peer_id})

    def _notify_callbacks(self, event: str, data: Any = None):
        """Notify all callbacks for an event."""
        for callback in list(self.callbacks.get(event, ())):
            try:
                callback(self.peer_id, data)
            except Exception as e:
                self.log_error("Error in peer link callback", {
                    "event": event,
                    "peer_id": self.peer_id,
                    "error": str(e)
                })

    def __repr__(self):
        return f"PeerLink(peer_id={self.peer_id!r}, state={self.state.value}, role={self.role})"
