"""
Session lifecycle orchestration for a full-mesh call.

The SessionController joins a room, turns every inbound signaling message
into exactly one transition (see ``dispatch``), owns the PeerLink registry
and pushes local media changes to every link.

Offer rule: a newly joined participant sends an offer to every member listed
in its roster; existing members only ever answer. ``peer-joined`` never
starts a negotiation, so two peers can never offer to each other at once.
"""
import asyncio
from typing import Any, Callable, Dict, Optional, Set

from meshcall.core.config import SessionConfig
from meshcall.core.exceptions import NegotiationFailed, SignalingDisconnected
from meshcall.core.logging import LoggerMixin
from meshcall.webrtc.media import LocalMediaController
from meshcall.webrtc.messages import (
    Answer,
    IceCandidate,
    Offer,
    Participant,
    PeerJoined,
    PeerLeft,
    Roster,
    SignalingMessage,
)
from meshcall.webrtc.peer_manager import NegotiationState, PeerLink
from meshcall.webrtc.signaling import SignalingClient
from meshcall.webrtc.tracks import RemoteStream


class SessionController(LoggerMixin):
    """Top-level orchestrator for one participant's view of a room."""

    def __init__(self, config: Optional[SessionConfig] = None,
                 signaling: Optional[SignalingClient] = None,
                 media: Optional[LocalMediaController] = None,
                 connection_factory: Optional[Callable[[], Any]] = None):
        super().__init__()
        self.config = config or SessionConfig()
        self.signaling = signaling or SignalingClient(self.config.signaling_url)
        self.media = media or LocalMediaController(config=self.config)
        self._connection_factory = connection_factory

        self.room_id: Optional[str] = None
        self.user_id: Optional[str] = None
        self.display_name: Optional[str] = None
        self.participants: Dict[str, Participant] = {}
        self.peer_links: Dict[str, PeerLink] = {}

        self._joined = False
        self._roster_received: Optional[asyncio.Event] = None
        self._join_error: Optional[SignalingDisconnected] = None
        self._tasks: Set[asyncio.Task] = set()
        self._closing: Set[asyncio.Task] = set()
        self._departed: Set[str] = set()

        self._transitions: Dict[type, Callable[[Any], None]] = {
            Roster: self._handle_roster,
            PeerJoined: self._handle_peer_joined,
            Offer: self._handle_offer,
            Answer: self._handle_answer,
            IceCandidate: self._handle_ice_candidate,
            PeerLeft: self._handle_peer_left,
        }

        self.callbacks: Dict[str, Set[Callable]] = {
            'participant_joined': set(),
            'participant_left': set(),
            'remote_stream_added': set(),
            'remote_stream_removed': set(),
            'peer_state_changed': set(),
            'peer_failed': set(),
            'disconnected': set(),
        }

        self.signaling.on_roster(self.dispatch)
        self.signaling.on_peer_joined(self.dispatch)
        self.signaling.on_offer(self.dispatch)
        self.signaling.on_answer(self.dispatch)
        self.signaling.on_ice_candidate(self.dispatch)
        self.signaling.on_peer_left(self.dispatch)
        self.signaling.on_disconnected(self._handle_disconnected)
        self.media.add_callback('outbound_video_changed', self._fan_out_video)

    @property
    def joined(self) -> bool:
        return self._joined

    @property
    def local_peer_id(self) -> Optional[str]:
        return self.signaling.peer_id

    @property
    def remote_streams(self) -> Dict[str, RemoteStream]:
        """Remote streams that currently carry at least one track, by peer id."""
        return {
            peer_id: link.remote_stream
            for peer_id, link in self.peer_links.items()
            if len(link.remote_stream)
        }

    def add_callback(self, event: str, callback: Callable):
        """Add a callback for session events."""
        if event in self.callbacks:
            self.callbacks[event].add(callback)

    def remove_callback(self, event: str, callback: Callable):
        """Remove a callback for session events."""
        if event in self.callbacks:
            self.callbacks[event].discard(callback)

    # Lifecycle

    async def join(self, room_id: str, user_id: str, display_name: str):
        """Acquire media, connect signaling and offer to every roster member.

        Raises:
            MediaAccessDenied: local media could not be opened.
            SignalingDisconnected: the relay was unreachable or sent no roster.
        """
        if self._joined:
            raise RuntimeError(f"Session already joined room {self.room_id}")

        self.room_id = room_id
        self.user_id = user_id
        self.display_name = display_name
        self._roster_received = asyncio.Event()
        self._join_error = None

        await self.media.acquire()

        try:
            await self.signaling.connect(room_id, user_id, display_name)
            await asyncio.wait_for(self._roster_received.wait(), timeout=self.config.join_timeout)
            if self._join_error is not None:
                raise self._join_error
        except (SignalingDisconnected, asyncio.TimeoutError) as e:
            self.log_error("🚪 [Session] Join aborted", {
                "room_id": room_id,
                "error": str(e),
                "error_type": type(e).__name__
            })
            await self._teardown()
            if isinstance(e, SignalingDisconnected):
                raise
            raise SignalingDisconnected("No roster received from relay", {
                "room_id": room_id,
                "timeout": self.config.join_timeout
            }) from e

        self._joined = True
        self.log_info("🚪 [Session] Joined room", {
            "room_id": room_id,
            "peer_id": self.local_peer_id,
            "participants": len(self.participants)
        })

    async def leave(self):
        """Release media, close every PeerLink and disconnect signaling."""
        if not self._joined and not self.peer_links and not self.media.acquired:
            return
        self.log_info("🚪 [Session] Leaving room", {
            "room_id": self.room_id,
            "peer_links": len(self.peer_links)
        })
        await self._teardown()

    async def _teardown(self):
        self._joined = False

        tasks = [task for task in self._tasks if task is not asyncio.current_task()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()

        self.media.release()

        links = list(self.peer_links.values())
        self.peer_links.clear()
        closing = [task for task in self._closing if task is not asyncio.current_task()]
        await asyncio.gather(*closing, *(link.close() for link in links))

        self.participants.clear()
        self._departed.clear()
        await self.signaling.disconnect(self.room_id)

    # Fan-out

    def toggle_audio(self) -> bool:
        return self.media.toggle_audio()

    def toggle_video(self) -> bool:
        return self.media.toggle_video()

    async def start_screen_share(self) -> bool:
        return await self.media.start_screen_share()

    def stop_screen_share(self):
        self.media.stop_screen_share()

    def _fan_out_video(self, track):
        replaced = sum(1 for link in list(self.peer_links.values()) if link.replace_video_track(track))
        self.log_debug("🔁 [Session] Outbound video pushed to peer links", {
            "track": getattr(track, "label", None),
            "peer_links": replaced
        })

    # Dispatch

    def dispatch(self, message: SignalingMessage):
        """Apply one inbound signaling message to the session state."""
        handler = self._transitions.get(type(message))
        if handler is None:
            self.log_warning("📥 [Session] No transition for message", {"type": message.type})
            return
        handler(message)

    def _handle_roster(self, message: Roster):
        local_peer_id = message.peer_id or self.local_peer_id
        for participant in message.participants:
            if participant.peer_id == local_peer_id:
                continue
            self._add_participant(participant)
            if participant.peer_id not in self.peer_links:
                link = self._create_link(participant.peer_id)
                self._spawn(link.start_offer(), link)

        self.log_info("📋 [Session] Roster received", {
            "peer_id": local_peer_id,
            "offers": len(self.peer_links)
        })
        if self._roster_received is not None:
            self._roster_received.set()

    def _handle_peer_joined(self, message: PeerJoined):
        if message.peer_id == self.local_peer_id or message.peer_id in self._departed:
            return
        self._add_participant(message.participant)

    def _handle_offer(self, message: Offer):
        peer_id = message.sender
        if peer_id == self.local_peer_id:
            return
        if peer_id in self._departed:
            self.log_debug("🤝 [Session] Ignoring offer from departed peer", {"peer_id": peer_id})
            return

        existing = self.peer_links.get(peer_id)
        if existing is not None:
            self.log_warning("🤝 [Session] Ignoring offer, negotiation already exists", {
                "peer_id": peer_id,
                "state": existing.state.value
            })
            return

        if peer_id not in self.participants:
            self._add_participant(Participant(peer_id=peer_id))
        link = self._create_link(peer_id)
        self._spawn(link.accept_offer(message.sdp), link)

    def _handle_answer(self, message: Answer):
        link = self.peer_links.get(message.sender)
        if link is None:
            self.log_debug("🤝 [Session] Ignoring answer from unknown peer", {"peer_id": message.sender})
            return
        self._spawn(link.apply_answer(message.sdp), link)

    def _handle_ice_candidate(self, message: IceCandidate):
        link = self.peer_links.get(message.sender)
        if link is None:
            self.log_debug("🧊 [Session] Ignoring candidate from unknown peer", {"peer_id": message.sender})
            return
        self._spawn(link.add_remote_candidate(message.candidate), link)

    def _handle_peer_left(self, message: PeerLeft):
        self._departed.add(message.peer_id)
        participant = self.participants.pop(message.peer_id, None)
        self._remove_link(message.peer_id)
        if participant is not None:
            self.log_info("👋 [Session] Participant left", {"peer_id": message.peer_id})
            self._notify_callbacks('participant_left', message.peer_id, participant)

    def _handle_disconnected(self, error: SignalingDisconnected):
        self.log_warning("📡 [Session] Signaling disconnected", {"room_id": self.room_id})
        if self._roster_received is not None and not self._roster_received.is_set():
            self._join_error = error
            self._roster_received.set()
        self._notify_callbacks('disconnected', self.local_peer_id, error)

    # Registry

    def _add_participant(self, participant: Participant):
        known = self.participants.get(participant.peer_id)
        self.participants[participant.peer_id] = participant
        if known is None:
            self.log_info("👤 [Session] Participant joined", {
                "peer_id": participant.peer_id,
                "display_name": participant.display_name
            })
            self._notify_callbacks('participant_joined', participant.peer_id, participant)

    def _create_link(self, peer_id: str) -> PeerLink:
        link = PeerLink(
            peer_id=peer_id,
            local_peer_id=self.local_peer_id,
            signaling=self.signaling,
            media=self.media,
            config=self.config,
            connection_factory=self._connection_factory,
        )
        link.add_callback('state_changed', self._on_link_state_changed)
        link.add_callback('remote_track', self._on_remote_track)
        link.add_callback('remote_track_ended', self._on_remote_track_ended)
        self.peer_links[peer_id] = link
        link.open()
        return link

    def _remove_link(self, peer_id: str):
        link = self.peer_links.pop(peer_id, None)
        if link is None:
            return
        had_stream = len(link.remote_stream) > 0
        task = asyncio.create_task(link.close())
        self._closing.add(task)
        task.add_done_callback(self._closing.discard)
        if had_stream:
            self._notify_callbacks('remote_stream_removed', peer_id, link.remote_stream)

    def _spawn(self, coro, link: Optional[PeerLink] = None) -> asyncio.Task:
        task = asyncio.create_task(self._run(coro, link))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _run(self, coro, link: Optional[PeerLink]):
        try:
            await coro
        except NegotiationFailed as e:
            self.log_error("🤝 [Session] Negotiation failed", {
                "peer_id": e.peer_id,
                "error": str(e)
            })
            if link is not None and self.peer_links.get(link.peer_id) is link:
                self._remove_link(link.peer_id)

    # PeerLink events

    def _on_link_state_changed(self, peer_id: str, state: NegotiationState):
        self._notify_callbacks('peer_state_changed', peer_id, state)
        if state is NegotiationState.FAILED:
            link = self.peer_links.get(peer_id)
            self._notify_callbacks('peer_failed', peer_id, link.failure_reason if link else None)
            if link is not None:
                self._remove_link(peer_id)

    def _on_remote_track(self, peer_id: str, track):
        link = self.peer_links.get(peer_id)
        if link is not None:
            self._notify_callbacks('remote_stream_added', peer_id, link.remote_stream)

    def _on_remote_track_ended(self, peer_id: str, track):
        link = self.peer_links.get(peer_id)
        if link is not None and not len(link.remote_stream):
            self._notify_callbacks('remote_stream_removed', peer_id, link.remote_stream)

    def _notify_callbacks(self, event: str, peer_id: Optional[str], data: Any = None):
        """Notify all callbacks for an event."""
        for callback in list(self.callbacks.get(event, ())):
            try:
                callback(peer_id, data)
            except Exception as e:
                self.log_error("Error in session callback", {
                    "event": event,
                    "peer_id": peer_id,
                    "error": str(e)
                })
