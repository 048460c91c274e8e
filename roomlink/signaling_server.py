"""Room relay server for roomlink signaling.

Peers register with ``{"type": "register", "peer_id": ..., "room_id": ...}``.
Afterwards every envelope is relayed inside the sender's room only:
envelopes with a ``to`` field go to that peer, all others go to every other
member of the room. The server does not interpret negotiation payloads.

Usage:
    roomlink serve [--host HOST] [--port PORT]
"""

import asyncio
import json
import logging
from typing import Dict, Optional

import websockets
from websockets.exceptions import ConnectionClosed

from roomlink.protocol import MSG_REGISTER

logger = logging.getLogger(__name__)

GLOBAL_ROOM = ""


class RoomRelay:
    """Tracks room membership and relays envelopes between members.

    Attributes:
        rooms: room_id -> {peer_id: websocket}
    """

    def __init__(self):
        self.rooms: Dict[str, Dict[str, object]] = {}

    def register(self, room_id: Optional[str], peer_id: str, websocket) -> str:
        room = room_id or GLOBAL_ROOM
        members = self.rooms.setdefault(room, {})
        members[peer_id] = websocket
        logger.info(
            f"Registered peer: {peer_id} in room {room or 'global'} (total: {len(members)})"
        )
        return room

    def unregister(self, room: str, peer_id: str, websocket) -> None:
        members = self.rooms.get(room)
        if not members or members.get(peer_id) is not websocket:
            return
        del members[peer_id]
        if not members:
            del self.rooms[room]
        logger.info(f"Removed peer: {peer_id} (remaining in room: {len(members)})")

    async def relay(self, room: str, sender: str, raw: str, data: dict) -> int:
        """Relay one envelope. Returns the number of recipients."""
        members = self.rooms.get(room, {})
        target = data.get("to")
        if target:
            recipients = [members[target]] if target in members else []
            if not recipients:
                logger.warning(f"Target peer not found in room: {target}")
        else:
            recipients = [ws for pid, ws in members.items() if pid != sender]

        delivered = 0
        for websocket in recipients:
            try:
                await websocket.send(raw)
                delivered += 1
            except ConnectionClosed:
                logger.debug("Skipping recipient with closed connection")
        logger.debug(
            f"Relayed {data.get('type')} from {sender} to {target or 'room'} ({delivered})"
        )
        return delivered

    async def handler(self, websocket):
        """Handle a WebSocket connection."""
        peer_id = None
        room = None

        try:
            async for message in websocket:
                try:
                    data = json.loads(message)
                except json.JSONDecodeError:
                    logger.error("Invalid JSON received")
                    continue
                if not isinstance(data, dict):
                    continue

                if data.get("type") == MSG_REGISTER:
                    if peer_id is not None:
                        self.unregister(room, peer_id, websocket)
                    peer_id = data.get("peer_id")
                    if not peer_id:
                        logger.warning("Registration without peer_id ignored")
                        continue
                    room = self.register(data.get("room_id"), peer_id, websocket)

                elif peer_id is None:
                    logger.warning("Dropping message from unregistered connection")

                else:
                    await self.relay(room, peer_id, message, data)

        except ConnectionClosed:
            logger.info(f"Connection closed: {peer_id}")
        finally:
            if peer_id is not None:
                self.unregister(room, peer_id, websocket)


async def main(host: str, port: int):
    """Start the signaling server."""
    relay = RoomRelay()
    async with websockets.serve(relay.handler, host, port):
        logger.info(f"Signaling server running on ws://{host}:{port}")
        await asyncio.Future()  # Run forever
