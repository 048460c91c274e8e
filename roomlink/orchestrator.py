"""Negotiation orchestrator: the per-room connection state machine.

The orchestrator consumes inbound signaling envelopes and transport events
from a single queue, one at a time, and drives the ``PeerRegistry`` and the
transport handles.

Glare avoidance:
    Both sides of a pair see each other's ``peer-discovery``. Only the side
    whose peer id is greater initiates (``local > remote``); the other side
    waits for the offer. With unique ids exactly one side initiates.

Per-peer transitions (local id L, remote id P):

- peer-discovery: UNKNOWN/FAILED -> PENDING_LOCAL_OFFER -> PENDING_REMOTE_ANSWER
  when L > P. No-op while pending or established.
- offer: any -> ESTABLISHED once the answer is sent.
- answer: PENDING_REMOTE_ANSWER -> ESTABLISHED, only if the handle is in
  ``have-local-offer``; otherwise dropped.
- ice-candidate: applied to an existing handle, otherwise dropped.
- transport failure: -> UNKNOWN (negotiation) or FAILED (connection lost).

Every handler re-checks ownership after each await: it only mutates a record
whose current handle is the one it started with, and only while the
orchestrator is live.
"""

import asyncio
import logging
import time
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

from roomlink.exceptions import InvalidCandidate, InvalidState, StaleSignal
from roomlink.protocol import (
    MSG_ANSWER,
    MSG_ICE_CANDIDATE,
    MSG_OFFER,
    MSG_PEER_DISCOVERY,
    SignalingMessage,
)
from roomlink.registry import NegotiationState, PeerRecord, PeerRegistry, RoomContext
from roomlink.signaling import SignalingChannel
from roomlink.transport import (
    STATE_CLOSED,
    STATE_HAVE_LOCAL_OFFER,
    PeerHandle,
    Transport,
)

logger = logging.getLogger(__name__)

# Queue event kinds
EVENT_SIGNAL = "signal"
EVENT_CONNECTION_STATE = "connection-state"
EVENT_DROP = "drop"

# Connection states that end an attempt
LOST_CONNECTION_STATES = ("failed", "closed")


def should_initiate(local_id: str, remote_id: str) -> bool:
    """Tie-break: the greater peer id initiates."""
    return local_id > remote_id


class NegotiationOrchestrator:
    """Drives connection negotiation with every peer of one room session.

    Attributes:
        context: Room and local identity this orchestrator serves.
        channel: Signaling channel for outbound envelopes.
        transport: Factory for per-peer handles.
        registry: Per-peer records.
        pending: Peer ids the local side is currently initiating to.
        negotiation_timeout: Seconds after which a pending initiation is
            abandoned on the peer's next announcement. None disables it.
        on_peers_changed: Called with the peer list whenever a record is
            added, removed or changes state.
        on_data: Called with ``(peer_id, message)`` for data channel messages.
    """

    def __init__(
        self,
        context: RoomContext,
        channel: SignalingChannel,
        transport: Transport,
        negotiation_timeout: Optional[float] = None,
        on_peers_changed: Optional[Callable[[List[PeerRecord]], Any]] = None,
        on_data: Optional[Callable[[str, Any], Any]] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.context = context
        self.channel = channel
        self.transport = transport
        self.registry = PeerRegistry()
        self.pending: Set[str] = set()
        self.negotiation_timeout = negotiation_timeout
        self.on_peers_changed = on_peers_changed
        self.on_data = on_data
        self.clock = clock

        self._queue: asyncio.Queue = asyncio.Queue()
        self._consumer_task: Optional[asyncio.Task] = None
        self._live = False
        # peer_id -> sdp of the last offer we answered
        self._answered_offers: Dict[str, str] = {}

    @property
    def local_identity(self) -> str:
        return self.context.local_identity

    @property
    def live(self) -> bool:
        return self._live

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self):
        """Start consuming queued events."""
        if self._consumer_task is not None:
            return
        self._live = True
        self._consumer_task = asyncio.create_task(self._consume())

    def deactivate(self):
        """Stop accepting events. Synchronous so no callback can slip in."""
        self._live = False

    async def close(self):
        """Stop the consumer and release every handle, record and pending entry."""
        self.deactivate()

        if self._consumer_task is not None and not self._consumer_task.done():
            self._consumer_task.cancel()
            try:
                await self._consumer_task
            except asyncio.CancelledError:
                pass
        self._consumer_task = None

        while not self._queue.empty():
            self._queue.get_nowait()
            self._queue.task_done()

        self.pending.clear()
        self._answered_offers.clear()
        for record in self.registry.clear():
            handle = record.transport_handle
            record.transport_handle = None
            if handle is not None:
                await self._close_handle(handle)
        logger.info("Negotiation orchestrator closed")

    # ------------------------------------------------------------------
    # Event intake
    # ------------------------------------------------------------------

    def enqueue(self, message: SignalingMessage):
        """Queue an inbound signaling message. Signaling channel callback."""
        self._put((EVENT_SIGNAL, message))

    def drop_peer(self, peer_id: str):
        """Queue removal of a peer and release of its connection."""
        self._put((EVENT_DROP, peer_id))

    def _put(self, event: Tuple):
        if not self._live:
            return
        self._queue.put_nowait(event)

    async def drain(self):
        """Wait until every queued event has been processed."""
        await self._queue.join()

    async def _consume(self):
        while True:
            event = await self._queue.get()
            try:
                if self._live:
                    await self._process(event)
            except Exception as e:
                logger.error(f"Error processing {event[0]} event: {e}")
            finally:
                self._queue.task_done()

    async def _process(self, event: Tuple):
        before = self._snapshot()
        kind = event[0]
        if kind == EVENT_SIGNAL:
            await self.handle_message(event[1])
        elif kind == EVENT_CONNECTION_STATE:
            await self._on_connection_state(*event[1:])
        elif kind == EVENT_DROP:
            await self._drop_peer(event[1])
        if self._live and self.on_peers_changed and self._snapshot() != before:
            self.on_peers_changed(self.registry.list())

    def _snapshot(self):
        return [
            (r.identity, r.display_name, r.negotiation_state)
            for r in self.registry.list()
        ]

    # ------------------------------------------------------------------
    # Signaling messages
    # ------------------------------------------------------------------

    async def handle_message(self, message: SignalingMessage):
        """Apply one inbound signaling message.

        Never raises for negotiation problems; they are logged and the
        affected peer's attempt is abandoned or left unchanged.
        """
        if message.sender == self.local_identity:
            return
        if message.target is not None and message.target != self.local_identity:
            return

        logger.debug(
            f"Received signal: {message.type} from: {message.sender_name} "
            f"peerId: {message.sender}"
        )

        try:
            if message.type == MSG_PEER_DISCOVERY:
                await self._on_discovery(message)
            elif message.type == MSG_OFFER:
                await self._on_offer(message)
            elif message.type == MSG_ANSWER:
                await self._on_answer(message)
            elif message.type == MSG_ICE_CANDIDATE:
                await self._on_ice_candidate(message)
            else:
                logger.debug(f"Ignoring signal type: {message.type}")
        except StaleSignal as e:
            logger.warning(f"Dropping stale {message.type} from {message.sender}: {e}")

    async def _on_discovery(self, message: SignalingMessage):
        peer_id = message.sender
        record = self.registry.upsert(peer_id, message.sender_name)
        await self._expire_stale_attempt(record)

        if peer_id in self.pending or record.is_active:
            return

        if not should_initiate(self.local_identity, peer_id):
            logger.debug(f"Waiting for offer from: {record.display_name}")
            return

        logger.info(f"New peer discovered, initiating connection: {record.display_name}")
        await self._initiate(record)

    async def _initiate(self, record: PeerRecord):
        peer_id = record.identity
        self.pending.add(peer_id)
        record.negotiation_state = NegotiationState.PENDING_LOCAL_OFFER
        record.pending_since = self.clock()

        stale = record.transport_handle
        record.transport_handle = None
        if stale is not None:
            await self._close_handle(stale)

        try:
            handle = self._create_handle(record)
        except Exception as e:
            logger.error(f"Error creating connection for {peer_id}: {e}")
            self._reset(record, NegotiationState.UNKNOWN)
            return

        try:
            offer = await handle.create_offer()
            local = await handle.set_local_description(offer)
            if not self._owns(record, handle):
                return
            await self.channel.send(peer_id, MSG_OFFER, local or offer)
        except Exception as e:
            logger.error(f"Error creating offer for {peer_id}: {e}")
            if self._owns(record, handle):
                await self._abandon(record, NegotiationState.UNKNOWN)
            return

        if (
            self._owns(record, handle)
            and record.negotiation_state is NegotiationState.PENDING_LOCAL_OFFER
        ):
            record.negotiation_state = NegotiationState.PENDING_REMOTE_ANSWER
            logger.info(f"Sent offer to: {record.display_name}")

    async def _on_offer(self, message: SignalingMessage):
        peer_id = message.sender
        sdp = message.data.get("sdp") if isinstance(message.data, dict) else None
        if not sdp:
            raise StaleSignal("offer without session description")

        if self._answered_offers.get(peer_id) == sdp:
            raise StaleSignal("offer already answered")

        logger.info(f"Received offer from: {message.sender_name or peer_id}")
        record = self.registry.upsert(peer_id, message.sender_name)

        handle = record.transport_handle
        restarted = record.negotiation_state in (
            NegotiationState.ESTABLISHED,
            NegotiationState.FAILED,
        )
        if handle is not None and (restarted or handle.signaling_state == STATE_CLOSED):
            # Remote side started a fresh negotiation
            record.transport_handle = None
            await self._close_handle(handle)
            handle = None

        if handle is None:
            logger.debug(f"Creating new peer connection for: {record.display_name}")
            try:
                handle = self._create_handle(record)
            except Exception as e:
                logger.error(f"Error creating connection for {peer_id}: {e}")
                self._reset(record, NegotiationState.UNKNOWN)
                return

        try:
            await handle.set_remote_description(message.data)
            answer = await handle.create_answer()
            local = await handle.set_local_description(answer)
            if not self._owns(record, handle):
                return
            await self.channel.send(peer_id, MSG_ANSWER, local or answer)
        except Exception as e:
            logger.error(f"Error handling offer from {peer_id}: {e}")
            if self._owns(record, handle):
                await self._abandon(record, NegotiationState.UNKNOWN)
            return

        if self._owns(record, handle):
            self._answered_offers[peer_id] = sdp
            self.pending.discard(peer_id)
            record.pending_since = None
            record.negotiation_state = NegotiationState.ESTABLISHED
            logger.info(f"Sent answer to: {record.display_name}")

    async def _on_answer(self, message: SignalingMessage):
        peer_id = message.sender
        record = self.registry.get(peer_id)
        handle = record.transport_handle if record else None
        if handle is None:
            raise StaleSignal("no pending connection")

        if handle.signaling_state != STATE_HAVE_LOCAL_OFFER:
            raise StaleSignal(f"invalid state for answer: {handle.signaling_state}")

        try:
            await handle.set_remote_description(message.data)
        except InvalidState as e:
            raise StaleSignal(str(e)) from e
        except Exception as e:
            logger.error(f"Error setting remote description for {peer_id}: {e}")
            if self._owns(record, handle):
                await self._abandon(record, NegotiationState.UNKNOWN)
            return

        if self._owns(record, handle):
            self.pending.discard(peer_id)
            record.pending_since = None
            record.negotiation_state = NegotiationState.ESTABLISHED
            logger.info(f"Connection established with: {record.display_name}")

    async def _on_ice_candidate(self, message: SignalingMessage):
        record = self.registry.get(message.sender)
        handle = record.transport_handle if record else None
        if handle is None:
            raise StaleSignal("candidate before any offer or answer")

        try:
            await handle.add_candidate(message.data)
        except InvalidCandidate as e:
            logger.warning(f"Dropping invalid ICE candidate from {message.sender}: {e}")
            return
        except Exception as e:
            logger.error(f"Error adding ICE candidate from {message.sender}: {e}")
            return
        logger.debug(f"Added ICE candidate from: {message.sender_name}")

    # ------------------------------------------------------------------
    # Transport events
    # ------------------------------------------------------------------

    def _create_handle(self, record: PeerRecord) -> PeerHandle:
        peer_id = record.identity
        handle = self.transport.create_connection(peer_id, record.display_name)
        record.transport_handle = handle

        async def forward_candidate(candidate):
            await self._forward_candidate(peer_id, handle, candidate)

        def state_changed(state):
            self._put((EVENT_CONNECTION_STATE, peer_id, handle, state))

        def data_received(data):
            if self._live and self.on_data is not None:
                return self.on_data(peer_id, data)

        handle.on_local_candidate(forward_candidate)
        handle.on_state_change(state_changed)
        handle.on_data(data_received)
        return handle

    async def _forward_candidate(self, peer_id: str, handle: PeerHandle, candidate):
        record = self.registry.get(peer_id)
        if not self._live or record is None or record.transport_handle is not handle:
            return
        try:
            await self.channel.send(peer_id, MSG_ICE_CANDIDATE, candidate)
        except Exception as e:
            logger.error(f"Failed to send ICE candidate to {peer_id}: {e}")

    async def _on_connection_state(self, peer_id: str, handle: PeerHandle, state: str):
        record = self.registry.get(peer_id)
        if record is None or record.transport_handle is not handle:
            return
        if state == "connected":
            logger.info(f"Peer connection with {record.display_name} is connected")
        elif state in LOST_CONNECTION_STATES:
            logger.warning(f"Peer connection with {record.display_name} {state}")
            await self._abandon(record, NegotiationState.FAILED)

    async def _drop_peer(self, peer_id: str):
        record = self.registry.remove(peer_id)
        self.pending.discard(peer_id)
        self._answered_offers.pop(peer_id, None)
        if record is not None and record.transport_handle is not None:
            handle = record.transport_handle
            record.transport_handle = None
            await self._close_handle(handle)
        logger.info(f"Dropped peer: {peer_id}")

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _expire_stale_attempt(self, record: PeerRecord):
        if (
            self.negotiation_timeout is None
            or not record.negotiation_state.is_pending
            or record.pending_since is None
        ):
            return
        if self.clock() - record.pending_since < self.negotiation_timeout:
            return
        logger.warning(
            f"Negotiation with {record.display_name} pending for more than "
            f"{self.negotiation_timeout}s, abandoning attempt"
        )
        await self._abandon(record, NegotiationState.UNKNOWN)

    def _owns(self, record: PeerRecord, handle: PeerHandle) -> bool:
        return (
            self._live
            and self.registry.get(record.identity) is record
            and record.transport_handle is handle
        )

    def _reset(self, record: PeerRecord, state: NegotiationState):
        self.pending.discard(record.identity)
        record.pending_since = None
        record.negotiation_state = state

    async def _abandon(self, record: PeerRecord, state: NegotiationState):
        """Give up the current attempt with a peer and release its handle."""
        self._reset(record, state)
        self._answered_offers.pop(record.identity, None)
        handle = record.transport_handle
        record.transport_handle = None
        if handle is not None:
            await self._close_handle(handle)

    async def _close_handle(self, handle: PeerHandle):
        try:
            await handle.close()
        except Exception as e:
            logger.error(f"Failed to close connection to {handle.peer_id}: {e}")

    def established_handles(self) -> List[Tuple[PeerRecord, PeerHandle]]:
        """Records with an established connection and their handles."""
        return [
            (record, record.transport_handle)
            for record in self.registry.list()
            if record.negotiation_state is NegotiationState.ESTABLISHED
            and record.transport_handle is not None
        ]
