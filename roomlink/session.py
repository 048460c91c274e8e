"""Room session lifecycle.

A ``Session`` bundles everything that belongs to one ``RoomContext``: the
signaling channel subscription, the transport context, the orchestrator (with
its registry and pending set), the discovery scheduler and the messenger.

``SessionManager`` owns at most one live session. Changing the room or the
local identity tears the current session down completely before the
replacement is built:

    stop scheduler -> close signaling -> discard orchestrator state
    -> release transport

Each session carries a liveness flag that teardown clears synchronously
before anything is awaited, so callbacks already in flight become no-ops.
"""

import asyncio
import logging
import uuid
from typing import Any, Callable, List, Optional

from roomlink.calls import end_call_async
from roomlink.config import Config, get_config
from roomlink.discovery import DiscoveryScheduler
from roomlink.media import LocalMedia
from roomlink.messaging import FileTransfer, Message, Messenger
from roomlink.orchestrator import NegotiationOrchestrator
from roomlink.protocol import SignalingMessage
from roomlink.registry import NegotiationState, PeerRecord, RoomContext
from roomlink.signaling import SignalingChannel, WebSocketSignalingChannel
from roomlink.transport import RTCTransport, Transport

logger = logging.getLogger(__name__)


def new_peer_identity() -> str:
    """Generate a fresh, globally unique peer id."""
    return uuid.uuid4().hex


class Session:
    """All resources of one room session.

    Attributes:
        context: Room and identity of this session.
        channel: Signaling channel subscription.
        transport: Transport context.
        orchestrator: Negotiation orchestrator, owner of registry and pending set.
        scheduler: Discovery scheduler.
        messenger: Chat and file transfer over established connections.
    """

    def __init__(
        self,
        context: RoomContext,
        channel: SignalingChannel,
        transport: Transport,
        config: Config,
        on_peers_changed: Optional[Callable[[List[PeerRecord]], Any]] = None,
        on_message: Optional[Callable[[Message], Any]] = None,
        on_file_transfer: Optional[Callable[[FileTransfer], Any]] = None,
    ):
        self.context = context
        self.channel = channel
        self.transport = transport
        self.on_peers_changed = on_peers_changed
        self._live = False

        self.orchestrator = NegotiationOrchestrator(
            context,
            channel,
            transport,
            negotiation_timeout=config.negotiation.timeout,
            on_peers_changed=self._on_peers_changed,
            on_data=self._on_data,
        )
        self.scheduler = DiscoveryScheduler(
            channel,
            initial_delay=config.discovery.initial_delay,
            interval=config.discovery.interval,
            is_live=lambda: self._live,
        )
        self.messenger = Messenger(
            context.local_identity,
            context.local_display_name,
            recipients=self._recipients,
            on_message=on_message,
            on_file_transfer=on_file_transfer,
        )

    @property
    def live(self) -> bool:
        return self._live

    async def start(self):
        """Subscribe to signaling and start discovery.

        Raises:
            ChannelFailure: If the signaling channel cannot be opened. The
                session is closed before the error propagates.
        """
        self._live = True
        self.orchestrator.start()
        self.channel.on_message(self._on_signal)
        try:
            await self.channel.connect()
            await self.scheduler.start()
        except Exception:
            await self.close()
            raise
        logger.info(
            f"Joined room {self.context.room_id or 'global'} as "
            f"{self.context.local_display_name} ({self.context.local_identity})"
        )

    def _on_signal(self, message: SignalingMessage):
        if not self._live:
            return
        self.orchestrator.enqueue(message)

    def _on_data(self, peer_id: str, data: Any):
        if not self._live:
            return
        record = self.orchestrator.registry.get(peer_id)
        self.messenger.handle_data(
            peer_id, data, record.display_name if record else ""
        )

    def _on_peers_changed(self, records: List[PeerRecord]):
        # Transfers only complete over an established connection
        self.messenger.forget_peers(
            record.identity
            for record in records
            if record.negotiation_state is NegotiationState.ESTABLISHED
        )
        if self.on_peers_changed:
            self.on_peers_changed(records)

    def _recipients(self):
        return [
            (record.identity, record.display_name, handle)
            for record, handle in self.orchestrator.established_handles()
        ]

    async def close(self):
        """Tear everything down in reverse dependency order."""
        self._live = False
        self.orchestrator.deactivate()

        await self.scheduler.stop()
        try:
            await self.channel.close()
        except Exception as e:
            logger.error(f"Failed to close signaling channel: {e}")
        await self.orchestrator.close()
        try:
            await self.transport.close()
        except Exception as e:
            logger.error(f"Failed to release transport: {e}")
        logger.info(f"Left room {self.context.room_id or 'global'}")


class SessionManager:
    """Owns the active session and swaps it on room or identity changes.

    This is the surface exposed to the application layer.

    Args:
        config: Configuration, defaults to the global config.
        channel_factory: ``RoomContext -> SignalingChannel``. Defaults to a
            websocket channel to ``config.signaling_websocket``.
        transport_factory: ``RoomContext -> Transport``. Defaults to an aiortc
            transport carrying the local media tracks.
        media: Local media, created from ``config.media`` if omitted.
        on_peers_changed: Called with the peer list on every change.
        on_message: Called with every received chat message.
        on_file_transfer: Called with every received file.
    """

    def __init__(
        self,
        config: Optional[Config] = None,
        channel_factory: Optional[Callable[[RoomContext], SignalingChannel]] = None,
        transport_factory: Optional[Callable[[RoomContext], Transport]] = None,
        media: Optional[LocalMedia] = None,
        on_peers_changed: Optional[Callable[[List[PeerRecord]], Any]] = None,
        on_message: Optional[Callable[[Message], Any]] = None,
        on_file_transfer: Optional[Callable[[FileTransfer], Any]] = None,
    ):
        self.config = config or get_config()
        self.channel_factory = channel_factory or self._websocket_channel
        self.transport_factory = transport_factory or self._rtc_transport
        self.media = media or LocalMedia(self.config.media)
        self.on_peers_changed = on_peers_changed
        self.on_message = on_message
        self.on_file_transfer = on_file_transfer

        self.session: Optional[Session] = None
        self.active_call_id: Optional[str] = None
        self._lock = asyncio.Lock()

    def _websocket_channel(self, context: RoomContext) -> SignalingChannel:
        return WebSocketSignalingChannel(
            self.config.signaling_websocket,
            context.local_identity,
            context.local_display_name,
            context.room_id,
        )

    def _rtc_transport(self, context: RoomContext) -> Transport:
        return RTCTransport(
            ice_servers=self.config.ice_servers, tracks_factory=self.media.subscribe
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(
        self,
        display_name: str,
        room_id: Optional[str] = None,
        identity: Optional[str] = None,
    ) -> Session:
        """Join ``room_id`` as ``display_name``, replacing any current session."""
        context = RoomContext(
            local_identity=identity or new_peer_identity(),
            local_display_name=display_name or "Guest",
            room_id=room_id,
        )
        return await self._replace(context)

    async def switch_room(
        self, room_id: Optional[str], keep_identity: bool = False
    ) -> Session:
        """Leave the current room and join ``room_id``.

        A fresh peer id is generated unless ``keep_identity`` is set, so
        peers in the old room never confuse the two sessions.
        """
        current = self._require_session().context
        if room_id == current.room_id:
            return self.session
        logger.info("Room changed, cleaning up old connection")
        identity = current.local_identity if keep_identity else None
        return await self.start(current.local_display_name, room_id, identity)

    async def change_identity(
        self, display_name: Optional[str] = None, identity: Optional[str] = None
    ) -> Session:
        """Rejoin the current room under a new name and/or peer id."""
        current = self._require_session().context
        return await self.start(
            display_name or current.local_display_name,
            current.room_id,
            identity or new_peer_identity(),
        )

    async def _replace(self, context: RoomContext) -> Session:
        async with self._lock:
            await self._teardown()
            session = Session(
                context,
                self.channel_factory(context),
                self.transport_factory(context),
                self.config,
                on_peers_changed=self.on_peers_changed,
                on_message=self.on_message,
                on_file_transfer=self.on_file_transfer,
            )
            await session.start()
            self.session = session
            return session

    async def _teardown(self):
        session = self.session
        self.session = None
        if session is not None:
            await session.close()

    async def leave(self):
        """Leave the current room without shutting down."""
        async with self._lock:
            await self._teardown()

    async def shutdown(self):
        """Leave the room, stop local media and end the tracked call."""
        logger.info("Cleanup called")
        await self.leave()
        self.media.stop()

        call_id = self.active_call_id
        self.active_call_id = None
        if call_id:
            await end_call_async(self.config.get_call_endpoint(call_id))

    def _require_session(self) -> Session:
        if self.session is None:
            raise RuntimeError("No active session")
        return self.session

    # ------------------------------------------------------------------
    # Application surface
    # ------------------------------------------------------------------

    @property
    def peers(self) -> List[PeerRecord]:
        if self.session is None:
            return []
        return self.session.orchestrator.registry.list()

    @property
    def local_identity(self) -> str:
        return self.session.context.local_identity if self.session else ""

    @property
    def local_display_name(self) -> str:
        return self.session.context.local_display_name if self.session else ""

    @property
    def room_id(self) -> Optional[str]:
        return self.session.context.room_id if self.session else None

    @property
    def messages(self) -> List[Message]:
        return self.session.messenger.messages if self.session else []

    @property
    def file_transfers(self) -> List[FileTransfer]:
        return self.session.messenger.file_transfers if self.session else []

    def send_application_message(self, content: str) -> Optional[Message]:
        if self.session is None:
            return None
        return self.session.messenger.send_message(content)

    async def send_file(self, file_path: str) -> Optional[FileTransfer]:
        if self.session is None:
            return None
        return await self.session.messenger.send_file(file_path)

    def start_media(self) -> bool:
        """Acquire local media for connections created from now on."""
        return self.media.start()

    def toggle_local_audio(self, enabled: bool):
        self.media.set_audio_enabled(enabled)

    def toggle_local_video(self, enabled: bool):
        self.media.set_video_enabled(enabled)
