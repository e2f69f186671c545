"""
Reference signaling relay.

Forwards JSON signaling messages between members of a room without
interpreting negotiation content. Each WebSocket connection gets a
relay-assigned peer id; the relay sends the roster to a new member,
announces joins and departures, and routes offer/answer/ice-candidate
messages to their ``to`` peer within the sender's room.
"""
import asyncio
import json
import uuid
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional

from aiohttp import WSMsgType, web

from meshcall.core.config import SessionConfig
from meshcall.core.exceptions import MessageError
from meshcall.core.logging import LoggerMixin, debug_log, setup_logging
from meshcall.webrtc.messages import (
    Answer,
    IceCandidate,
    Join,
    Leave,
    Offer,
    Participant,
    PeerJoined,
    PeerLeft,
    Roster,
    parse_message,
)

SendCallable = Callable[[Dict[str, Any]], Awaitable[None]]

FORWARDED_TYPES = (Offer.type, Answer.type, IceCandidate.type)


@dataclass
class RelayMember:
    peer_id: str
    room_id: str
    user_id: str
    display_name: str
    send: SendCallable

    def to_participant(self) -> Participant:
        return Participant(peer_id=self.peer_id, user_id=self.user_id, display_name=self.display_name)


class RoomRegistry(LoggerMixin):
    """In-memory rooms and their members."""

    def __init__(self):
        super().__init__()
        # room_id -> {peer_id: RelayMember}
        self.rooms: Dict[str, Dict[str, RelayMember]] = {}
        # peer_id -> RelayMember
        self.members: Dict[str, RelayMember] = {}

    def get_room_peers(self, room_id: str) -> List[str]:
        return list(self.rooms.get(room_id, {}))

    async def handle(self, peer_id: str, send: SendCallable, data: Any):
        """Apply one raw message received from ``peer_id``."""
        try:
            message = parse_message(data)
        except MessageError as e:
            self.log_warning("📥 [Relay] Dropping malformed message", {
                "peer_id": peer_id,
                "error": str(e)
            })
            return

        if isinstance(message, Join):
            await self.join(RelayMember(
                peer_id=peer_id,
                room_id=message.room_id,
                user_id=message.user_id,
                display_name=message.display_name,
                send=send,
            ))
        elif isinstance(message, Leave):
            await self.leave(peer_id)
        elif message.type in FORWARDED_TYPES:
            await self.forward(peer_id, data)
        else:
            self.log_warning("📥 [Relay] Message type not accepted from clients", {
                "peer_id": peer_id,
                "type": message.type
            })

    async def join(self, member: RelayMember):
        """Add a member, send it the roster and announce it to the room."""
        if member.peer_id in self.members:
            await self.leave(member.peer_id)

        room = self.rooms.setdefault(member.room_id, {})
        existing = list(room.values())
        room[member.peer_id] = member
        self.members[member.peer_id] = member

        self.log_info("🚪 [Relay] Peer joined room", {
            "room_id": member.room_id,
            "peer_id": member.peer_id,
            "display_name": member.display_name,
            "room_size": len(room)
        })

        await self._deliver(member, Roster(
            participants=[other.to_participant() for other in existing],
            peer_id=member.peer_id,
        ).to_dict())
        await self._broadcast(existing, PeerJoined(participant=member.to_participant()).to_dict())

    async def forward(self, sender_id: str, data: Dict[str, Any]):
        """Route a negotiation message to its target in the sender's room."""
        sender = self.members.get(sender_id)
        target = self.members.get(data.get("to"))
        if sender is None or target is None or target.room_id != sender.room_id:
            self.log_debug("📤 [Relay] Dropping message for unknown target", {
                "from": sender_id,
                "to": data.get("to"),
                "type": data.get("type")
            })
            return

        await self._deliver(target, {**data, "from": sender_id})

    async def leave(self, peer_id: str):
        """Remove a member and tell the rest of its room. Idempotent."""
        member = self.members.pop(peer_id, None)
        if member is None:
            return

        room = self.rooms.get(member.room_id, {})
        room.pop(peer_id, None)
        if not room:
            self.rooms.pop(member.room_id, None)

        self.log_info("👋 [Relay] Peer left room", {
            "room_id": member.room_id,
            "peer_id": peer_id,
            "room_size": len(room)
        })
        await self._broadcast(list(room.values()), PeerLeft(peer_id=peer_id).to_dict())

    async def _broadcast(self, members: List[RelayMember], data: Dict[str, Any]):
        if members:
            await asyncio.gather(*(self._deliver(member, data) for member in members))

    async def _deliver(self, member: RelayMember, data: Dict[str, Any]):
        try:
            await member.send(data)
        except (ConnectionError, RuntimeError) as e:
            self.log_warning("📤 [Relay] Delivery failed", {
                "peer_id": member.peer_id,
                "type": data.get("type"),
                "error": str(e)
            })


async def handle_signaling(request: web.Request) -> web.WebSocketResponse:
    """WebSocket endpoint: one connection per peer."""
    registry: RoomRegistry = request.app['registry']
    ws = web.WebSocketResponse(heartbeat=30)
    await ws.prepare(request)

    peer_id = uuid.uuid4().hex
    debug_log("🔌 [Relay] Signaling connection opened", {"peer_id": peer_id})

    async def send(data: Dict[str, Any]):
        await ws.send_json(data)

    try:
        async for msg in ws:
            if msg.type == WSMsgType.TEXT:
                try:
                    data = json.loads(msg.data)
                except json.JSONDecodeError as e:
                    debug_log("❌ [Relay] Invalid JSON from peer", {
                        "peer_id": peer_id,
                        "error": str(e)
                    }, "WARNING")
                    continue
                await registry.handle(peer_id, send, data)
            elif msg.type == WSMsgType.ERROR:
                debug_log("❌ [Relay] Signaling connection error", {
                    "peer_id": peer_id,
                    "error": str(ws.exception())
                }, "WARNING")
                break
    finally:
        # the handler may be cancelled on abrupt disconnect; peer-left must still go out
        await asyncio.shield(registry.leave(peer_id))
        debug_log("🔌 [Relay] Signaling connection closed", {"peer_id": peer_id})

    return ws


async def handle_status(request: web.Request) -> web.Response:
    registry: RoomRegistry = request.app['registry']
    return web.json_response({
        "rooms": {room_id: len(members) for room_id, members in registry.rooms.items()},
        "peers": len(registry.members),
    })


def create_app(registry: Optional[RoomRegistry] = None) -> web.Application:
    app = web.Application()
    app['registry'] = registry or RoomRegistry()
    app.router.add_get("/ws", handle_signaling)
    app.router.add_get("/status", handle_status)
    return app


async def run_relay(config: Optional[SessionConfig] = None):
    """Serve the relay until cancelled."""
    config = config or SessionConfig()
    setup_logging(config.log_level, log_file="meshcall_relay.log")

    runner = web.AppRunner(create_app())
    await runner.setup()
    site = web.TCPSite(runner, config.relay_host, config.relay_port)

    debug_log("🌐 [Relay] Starting signaling relay", {
        "host": config.relay_host,
        "port": config.relay_port
    })
    await site.start()
    print(f"Signaling relay listening on ws://{config.relay_host}:{config.relay_port}/ws")

    try:
        await asyncio.Future()
    finally:
        await runner.cleanup()
