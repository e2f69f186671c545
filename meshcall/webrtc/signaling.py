"""
WebSocket signaling client.

Thin wrapper around a single WebSocket to the relay: sends typed messages,
decodes inbound ones and hands each to the handlers registered for its type.
Disconnection is reported to ``on_disconnected`` handlers and never retried.
"""
import asyncio
import json
from typing import Any, Callable, Dict, List, Optional

from websockets.asyncio.client import connect
from websockets.exceptions import ConnectionClosed, InvalidHandshake, InvalidURI

from meshcall.core.exceptions import MessageError, SignalingDisconnected
from meshcall.core.logging import LoggerMixin
from meshcall.webrtc.messages import (
    Answer,
    IceCandidate,
    Join,
    Leave,
    Offer,
    PeerJoined,
    PeerLeft,
    Roster,
    SignalingMessage,
    parse_message,
)


class SignalingClient(LoggerMixin):
    """Sends and receives signaling messages for one room membership."""

    def __init__(self, url: str, connector: Callable = connect, open_timeout: float = 10.0):
        super().__init__()
        self.url = url
        self._connector = connector
        self._open_timeout = open_timeout
        self._websocket = None
        self._listener: Optional[asyncio.Task] = None
        self._closing = False
        self.peer_id: Optional[str] = None

        self.handlers: Dict[str, List[Callable]] = {
            Roster.type: [],
            PeerJoined.type: [],
            Offer.type: [],
            Answer.type: [],
            IceCandidate.type: [],
            PeerLeft.type: [],
            'disconnected': [],
        }

    @property
    def connected(self) -> bool:
        return self._websocket is not None and not self._closing

    # Handler registration

    def add_handler(self, event: str, callback: Callable):
        if event not in self.handlers:
            raise ValueError(f"Unknown signaling event: {event}")
        self.handlers[event].append(callback)

    def on_roster(self, callback: Callable):
        self.add_handler(Roster.type, callback)

    def on_peer_joined(self, callback: Callable):
        self.add_handler(PeerJoined.type, callback)

    def on_offer(self, callback: Callable):
        self.add_handler(Offer.type, callback)

    def on_answer(self, callback: Callable):
        self.add_handler(Answer.type, callback)

    def on_ice_candidate(self, callback: Callable):
        self.add_handler(IceCandidate.type, callback)

    def on_peer_left(self, callback: Callable):
        self.add_handler(PeerLeft.type, callback)

    def on_disconnected(self, callback: Callable):
        self.add_handler('disconnected', callback)

    # Channel lifecycle

    async def connect(self, room_id: str, user_id: str, display_name: str):
        """Open the channel and announce this client in ``room_id``."""
        if self.connected:
            raise SignalingDisconnected("Signaling channel already open", {"url": self.url})

        self.log_info("📡 [Signaling] Connecting to relay", {"url": self.url, "room_id": room_id})
        try:
            self._websocket = await self._connector(
                self.url,
                open_timeout=self._open_timeout,
                ping_interval=30,
                ping_timeout=10,
                close_timeout=10
            )
        except (OSError, InvalidURI, InvalidHandshake, asyncio.TimeoutError) as e:
            self._websocket = None
            raise SignalingDisconnected("Cannot reach signaling relay", {
                "url": self.url,
                "error": str(e),
                "error_type": type(e).__name__
            }) from e

        self._closing = False
        self._listener = asyncio.create_task(self._listen(self._websocket))
        await self.send(Join(room_id=room_id, user_id=user_id, display_name=display_name))

    async def send(self, message: SignalingMessage):
        """Serialize and transmit a message to the relay."""
        if not self.connected:
            raise SignalingDisconnected("Signaling channel is not open", {"type": message.type})

        payload = json.dumps(message.to_dict())
        self.log_debug("📤 [Signaling] Sending message", {
            "type": message.type,
            "to": getattr(message, "target", None),
            "length": len(payload)
        })
        try:
            await self._websocket.send(payload)
        except ConnectionClosed as e:
            raise SignalingDisconnected("Signaling channel closed while sending", {
                "type": message.type,
                "error": str(e)
            }) from e

    async def disconnect(self, room_id: Optional[str] = None):
        """Leave the room (when given) and close the channel. Idempotent."""
        websocket = self._websocket
        if websocket is None:
            return

        if room_id is not None and not self._closing:
            try:
                await self.send(Leave(room_id=room_id))
            except SignalingDisconnected:
                self.log_debug("📡 [Signaling] Channel already closed, leave not sent")

        self._closing = True
        self._websocket = None
        await websocket.close()

        listener, self._listener = self._listener, None
        if listener and not listener.done() and listener is not asyncio.current_task():
            listener.cancel()
            try:
                await listener
            except asyncio.CancelledError:
                pass

        self.log_info("📡 [Signaling] Disconnected from relay", {"url": self.url})

    # Inbound

    async def _listen(self, websocket):
        error = None
        try:
            async for raw in websocket:
                await self._handle_raw(raw)
        except ConnectionClosed as e:
            error = e

        if self._closing:
            return

        self._closing = True
        self._websocket = None
        self.log_warning("📡 [Signaling] Relay connection lost", {
            "url": self.url,
            "error": str(error) if error else "closed by relay"
        })
        await self._emit('disconnected', SignalingDisconnected("Signaling channel closed", {"url": self.url}))

    async def _handle_raw(self, raw: Any):
        try:
            message = parse_message(json.loads(raw))
        except (json.JSONDecodeError, TypeError) as e:
            self.log_error("📥 [Signaling] Failed to parse message as JSON", {
                "error": str(e),
                "message": str(raw)[:200]
            })
            return
        except MessageError as e:
            self.log_warning("📥 [Signaling] Dropping malformed message", {
                "error": str(e),
                "message": str(raw)[:200]
            })
            return

        if isinstance(message, Roster) and message.peer_id:
            self.peer_id = message.peer_id

        self.log_debug("📥 [Signaling] Message received", {
            "type": message.type,
            "from": getattr(message, "sender", None)
        })
        await self._emit(message.type, message)

    async def _emit(self, event: str, payload: Any):
        handlers = self.handlers.get(event)
        if not handlers:
            self.log_debug("📥 [Signaling] No handlers for event", {"event": event})
            return

        for handler in list(handlers):
            try:
                result = handler(payload)
                if asyncio.iscoroutine(result):
                    await result
            except Exception as e:
                self.log_error("📥 [Signaling] Error in message handler", {
                    "event": event,
                    "error": str(e),
                    "error_type": type(e).__name__
                })
