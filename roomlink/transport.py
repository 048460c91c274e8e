"""Transport adapter: per-peer connection negotiation primitives.

The orchestrator only talks to the abstract ``Transport`` / ``PeerHandle``
pair defined here. ``RTCTransport`` is the default implementation, backed by
aiortc.

Payload formats:
- descriptions: ``{"type": "offer" | "answer", "sdp": "..."}``
- candidates: ``{"candidate": "...", "sdpMid": "0", "sdpMLineIndex": 0}``

aiortc gathers every local candidate while the local description is applied
and embeds them in it, so ``set_local_description`` returns the complete
description that should be sent to the remote peer.
"""

import abc
import inspect
import logging
from typing import Any, Callable, Dict, List, Optional

from aiortc import (
    RTCConfiguration,
    RTCDataChannel,
    RTCIceServer,
    RTCPeerConnection,
    RTCSessionDescription,
)
from aiortc.exceptions import InvalidStateError
from aiortc.sdp import candidate_from_sdp

from roomlink.exceptions import InvalidCandidate, InvalidState, TransportFailure

logger = logging.getLogger(__name__)

DATA_CHANNEL_LABEL = "roomlink"

# Signaling states reported by PeerHandle.signaling_state
STATE_STABLE = "stable"
STATE_HAVE_LOCAL_OFFER = "have-local-offer"
STATE_HAVE_REMOTE_OFFER = "have-remote-offer"
STATE_CLOSED = "closed"


async def _invoke(callback: Callable, *args):
    """Call a sync or async callback."""
    result = callback(*args)
    if inspect.isawaitable(result):
        await result


class PeerHandle(abc.ABC):
    """Negotiation primitive for one remote peer."""

    def __init__(self, peer_id: str, display_name: str):
        self.peer_id = peer_id
        self.display_name = display_name
        self._candidate_callbacks: List[Callable] = []
        self._state_callbacks: List[Callable] = []
        self._data_callbacks: List[Callable] = []

    @property
    @abc.abstractmethod
    def signaling_state(self) -> str:
        """One of stable, have-local-offer, have-remote-offer, closed, ..."""

    @abc.abstractmethod
    async def create_offer(self) -> dict:
        """Construct a local offer payload."""

    @abc.abstractmethod
    async def create_answer(self) -> dict:
        """Construct a local answer payload for the applied remote offer."""

    @abc.abstractmethod
    async def set_local_description(self, description: dict) -> dict:
        """Apply a local description and return the description to send."""

    @abc.abstractmethod
    async def set_remote_description(self, description: dict) -> None:
        """Apply a remote description.

        Raises:
            InvalidState: If the handle is not expecting this description.
        """

    @abc.abstractmethod
    async def add_candidate(self, candidate: dict) -> None:
        """Apply a remote transport candidate.

        Raises:
            InvalidCandidate: If the candidate is malformed.
        """

    @abc.abstractmethod
    def send_data(self, payload: Any) -> bool:
        """Send over the data channel. Returns False if it is not open."""

    @abc.abstractmethod
    async def close(self) -> None:
        """Release the underlying connection."""

    def on_local_candidate(self, callback: Callable[[dict], Any]) -> None:
        """Register a callback for each locally gathered candidate."""
        self._candidate_callbacks.append(callback)

    def on_state_change(self, callback: Callable[[str], Any]) -> None:
        """Register a callback for connection state changes."""
        self._state_callbacks.append(callback)

    def on_data(self, callback: Callable[[Any], Any]) -> None:
        """Register a callback for data channel messages."""
        self._data_callbacks.append(callback)

    async def _emit_candidate(self, candidate: dict):
        for callback in list(self._candidate_callbacks):
            await _invoke(callback, candidate)

    async def _emit_state(self, state: str):
        for callback in list(self._state_callbacks):
            await _invoke(callback, state)

    async def _emit_data(self, message: Any):
        for callback in list(self._data_callbacks):
            await _invoke(callback, message)


class Transport(abc.ABC):
    """Factory and owner of the transport context for one session."""

    @abc.abstractmethod
    def create_connection(self, peer_id: str, display_name: str) -> PeerHandle:
        """Create a new handle for ``peer_id``."""

    @abc.abstractmethod
    async def close(self) -> None:
        """Release every handle still open and the transport context."""


class RTCPeerHandle(PeerHandle):
    """PeerHandle backed by an aiortc ``RTCPeerConnection``.

    Attributes:
        pc: The peer connection.
        data_channel: Data channel for application messages, None until the
            initiator creates it or the remote one arrives.
    """

    def __init__(
        self,
        peer_id: str,
        display_name: str,
        pc: RTCPeerConnection,
        tracks: Optional[list] = None,
        on_close: Optional[Callable[["RTCPeerHandle"], None]] = None,
    ):
        super().__init__(peer_id, display_name)
        self.pc = pc
        self._on_close = on_close
        self.data_channel: Optional[RTCDataChannel] = None

        for track in tracks or []:
            pc.addTrack(track)

        @pc.on("connectionstatechange")
        async def on_connection_state_change():
            logger.info(f"Connection state with {peer_id} is {pc.connectionState}")
            await self._emit_state(pc.connectionState)

        @pc.on("datachannel")
        def on_datachannel(channel):
            logger.info(f"Received data channel from {peer_id}: {channel.label}")
            self._attach_channel(channel)

    def _attach_channel(self, channel: RTCDataChannel):
        # Store data channel IMMEDIATELY; send_data checks readyState
        self.data_channel = channel

        @channel.on("open")
        def on_open():
            logger.info(f"Data channel open with {self.peer_id}")

        @channel.on("close")
        def on_close():
            logger.info(f"Data channel closed with {self.peer_id}")

        @channel.on("message")
        async def on_message(message):
            await self._emit_data(message)

    @property
    def signaling_state(self) -> str:
        return self.pc.signalingState

    async def create_offer(self) -> dict:
        if self.data_channel is None:
            self._attach_channel(self.pc.createDataChannel(DATA_CHANNEL_LABEL))
        try:
            offer = await self.pc.createOffer()
        except InvalidStateError as e:
            raise InvalidState(str(e), self.peer_id) from e
        return {"type": offer.type, "sdp": offer.sdp}

    async def create_answer(self) -> dict:
        try:
            answer = await self.pc.createAnswer()
        except InvalidStateError as e:
            raise InvalidState(str(e), self.peer_id) from e
        return {"type": answer.type, "sdp": answer.sdp}

    async def set_local_description(self, description: dict) -> dict:
        try:
            await self.pc.setLocalDescription(_to_session_description(description))
        except InvalidStateError as e:
            raise InvalidState(str(e), self.peer_id) from e
        except ValueError as e:
            raise TransportFailure(str(e), self.peer_id) from e
        local = self.pc.localDescription
        return {"type": local.type, "sdp": local.sdp}

    async def set_remote_description(self, description: dict) -> None:
        try:
            await self.pc.setRemoteDescription(_to_session_description(description))
        except InvalidStateError as e:
            raise InvalidState(str(e), self.peer_id) from e
        except ValueError as e:
            raise TransportFailure(str(e), self.peer_id) from e

    async def add_candidate(self, candidate: dict) -> None:
        if not isinstance(candidate, dict):
            raise InvalidCandidate(f"Malformed candidate: {candidate!r}", self.peer_id)

        sdp = candidate.get("candidate")
        if not sdp:
            logger.debug(f"Received end-of-candidates from {self.peer_id}")
            return
        if sdp.startswith("candidate:"):
            sdp = sdp[len("candidate:"):]

        try:
            ice_candidate = candidate_from_sdp(sdp)
        except (AssertionError, ValueError, IndexError) as e:
            raise InvalidCandidate(f"Malformed candidate {sdp!r}: {e}", self.peer_id) from e
        ice_candidate.sdpMid = candidate.get("sdpMid")
        ice_candidate.sdpMLineIndex = candidate.get("sdpMLineIndex")

        try:
            await self.pc.addIceCandidate(ice_candidate)
        except ValueError as e:
            raise InvalidCandidate(str(e), self.peer_id) from e

    def send_data(self, payload: Any) -> bool:
        channel = self.data_channel
        if channel is None or channel.readyState != "open":
            return False
        channel.send(payload)
        return True

    async def close(self) -> None:
        try:
            await self.pc.close()
        finally:
            if self._on_close is not None:
                self._on_close(self)


def _to_session_description(description: dict) -> RTCSessionDescription:
    if not isinstance(description, dict) or "sdp" not in description:
        raise ValueError(f"Malformed session description: {description!r}")
    return RTCSessionDescription(sdp=description["sdp"], type=description["type"])


class RTCTransport(Transport):
    """aiortc transport context for one session.

    Args:
        ice_servers: ``IceServerConfig`` entries for every connection.
        tracks_factory: Callable returning the local media tracks to attach
            to each new connection (one subscription per connection).
    """

    def __init__(
        self,
        ice_servers: Optional[list] = None,
        tracks_factory: Optional[Callable[[], list]] = None,
    ):
        self.ice_servers = list(ice_servers or [])
        self.tracks_factory = tracks_factory
        self._handles: Dict[str, RTCPeerHandle] = {}

    def _create_peer_connection(self) -> RTCPeerConnection:
        if self.ice_servers:
            ice_server_objects = [
                RTCIceServer(**server.to_kwargs()) for server in self.ice_servers
            ]
            config = RTCConfiguration(iceServers=ice_server_objects)
            logger.debug(
                f"Creating RTCPeerConnection with {len(ice_server_objects)} ICE server(s)"
            )
            return RTCPeerConnection(configuration=config)
        return RTCPeerConnection()

    def create_connection(self, peer_id: str, display_name: str) -> RTCPeerHandle:
        tracks = self.tracks_factory() if self.tracks_factory else []
        handle = RTCPeerHandle(
            peer_id,
            display_name,
            self._create_peer_connection(),
            tracks=tracks,
            on_close=self._release,
        )
        self._handles[peer_id] = handle
        logger.debug(f"Created peer connection for {peer_id} ({len(tracks)} tracks)")
        return handle

    def _release(self, handle: RTCPeerHandle):
        if self._handles.get(handle.peer_id) is handle:
            del self._handles[handle.peer_id]

    async def close(self) -> None:
        handles = list(self._handles.values())
        self._handles.clear()
        for handle in handles:
            try:
                await handle.close()
            except Exception as e:
                logger.error(f"Failed to close connection to {handle.peer_id}: {e}")
