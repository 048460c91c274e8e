"""Signaling channel: room-scoped delivery of signaling envelopes.

``SignalingChannel`` is the contract the session consumes.
``WebSocketSignalingChannel`` implements it against the relay server in
``roomlink.signaling_server``.

Delivery is best-effort. The channel never raises out of its receive loop;
send failures surface as ``ChannelFailure`` to the caller.
"""

import abc
import asyncio
import json
import logging
from typing import Any, Callable, List, Optional

import websockets
from websockets.exceptions import ConnectionClosed

from roomlink.exceptions import ChannelFailure
from roomlink.protocol import MSG_REGISTER, SignalingMessage

logger = logging.getLogger(__name__)


class SignalingChannel(abc.ABC):
    """Room-scoped message bus for one local peer.

    Args:
        peer_id: Local peer id, stamped as ``from`` on every message.
        display_name: Local display name, stamped as ``fromName``.
        room_id: Room to join, None for the global room.
    """

    def __init__(self, peer_id: str, display_name: str, room_id: Optional[str] = None):
        self.peer_id = peer_id
        self.display_name = display_name
        self.room_id = room_id
        self._callbacks: List[Callable[[SignalingMessage], Any]] = []

    def on_message(self, callback: Callable[[SignalingMessage], Any]) -> None:
        """Subscribe to every inbound message."""
        self._callbacks.append(callback)

    def _dispatch(self, message: SignalingMessage) -> None:
        for callback in list(self._callbacks):
            try:
                callback(message)
            except Exception as e:
                logger.error(f"Signaling subscriber failed on {message.type}: {e}")

    def _envelope(self, msg_type: str, data: Any = None, to: Optional[str] = None):
        return SignalingMessage(
            type=msg_type,
            sender=self.peer_id,
            sender_name=self.display_name,
            target=to,
            data=data,
        )

    async def broadcast(self, msg_type: str, data: Any = None) -> None:
        """Send a message to every other member of the room."""
        await self._deliver(self._envelope(msg_type, data))

    async def send(self, to: str, msg_type: str, data: Any = None) -> None:
        """Send a message to one member of the room."""
        await self._deliver(self._envelope(msg_type, data, to=to))

    async def connect(self) -> None:
        """Open the channel. No-op by default."""

    @abc.abstractmethod
    async def _deliver(self, message: SignalingMessage) -> None:
        """Hand one envelope to the underlying bus.

        Raises:
            ChannelFailure: If the message could not be sent.
        """

    @abc.abstractmethod
    async def close(self) -> None:
        """Unsubscribe and release the underlying bus."""


class WebSocketSignalingChannel(SignalingChannel):
    """Signaling channel over a websocket to the room relay server.

    Attributes:
        url: Relay server websocket URL.
        websocket: Open connection, None before ``connect`` and after ``close``.
    """

    def __init__(
        self,
        url: str,
        peer_id: str,
        display_name: str,
        room_id: Optional[str] = None,
    ):
        super().__init__(peer_id, display_name, room_id)
        self.url = url
        self.websocket = None
        self._receive_task: Optional[asyncio.Task] = None
        self._closed = False

    async def connect(self) -> None:
        """Connect to the relay server and register in the room.

        Raises:
            ChannelFailure: If the relay server cannot be reached.
        """
        try:
            self.websocket = await websockets.connect(self.url)
            await self.websocket.send(
                json.dumps(
                    {
                        "type": MSG_REGISTER,
                        "peer_id": self.peer_id,
                        "room_id": self.room_id,
                    }
                )
            )
        except (OSError, websockets.exceptions.WebSocketException) as e:
            raise ChannelFailure(f"Cannot connect to {self.url}: {e}") from e

        logger.info(
            f"Connected to signaling server {self.url} in room {self.room_id or 'global'}"
        )
        self._receive_task = asyncio.create_task(self._receive_loop())

    async def _receive_loop(self):
        """Decode inbound frames and hand them to subscribers."""
        try:
            async for raw in self.websocket:
                if self._closed:
                    return
                try:
                    message = SignalingMessage.from_json(raw)
                except (json.JSONDecodeError, ValueError, AttributeError) as e:
                    logger.warning(f"Dropping malformed signaling message: {e}")
                    continue
                self._dispatch(message)
        except asyncio.CancelledError:
            logger.debug("Signaling receive loop cancelled")
            raise
        except ConnectionClosed:
            logger.info("Signaling connection closed")
        except Exception as e:
            logger.error(f"Signaling receive loop error: {e}")

    async def _deliver(self, message: SignalingMessage) -> None:
        if self._closed or self.websocket is None:
            raise ChannelFailure(f"Cannot send {message.type}: channel is not open")
        try:
            await self.websocket.send(message.to_json())
        except (ConnectionClosed, OSError) as e:
            raise ChannelFailure(f"Failed to send {message.type}: {e}") from e
        logger.debug(f"Sent {message.type} to {message.target or 'room'}")

    async def close(self) -> None:
        self._closed = True
        self._callbacks.clear()

        if self._receive_task and not self._receive_task.done():
            self._receive_task.cancel()
            try:
                await self._receive_task
            except asyncio.CancelledError:
                pass
        self._receive_task = None

        if self.websocket is not None:
            await self.websocket.close()
            self.websocket = None
            logger.info("Signaling connection closed")
