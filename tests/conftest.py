"""Shared fakes: an in-memory signaling hub and a scripted transport."""

import pytest

from roomlink.exceptions import ChannelFailure, InvalidCandidate, InvalidState, TransportFailure
from roomlink.signaling import SignalingChannel
from roomlink.transport import (
    STATE_CLOSED,
    STATE_HAVE_LOCAL_OFFER,
    STATE_HAVE_REMOTE_OFFER,
    STATE_STABLE,
    PeerHandle,
    Transport,
)


# ── Signaling ─────────────────────────────────────────────────────────────────


class InMemoryHub:
    """Room-scoped bus delivering envelopes synchronously to subscribers."""

    def __init__(self):
        self.rooms = {}
        self.sent = []

    def join(self, channel):
        self.rooms.setdefault(channel.room_id, []).append(channel)

    def leave(self, channel):
        members = self.rooms.get(channel.room_id, [])
        if channel in members:
            members.remove(channel)

    def deliver(self, sender, message):
        self.sent.append(message)
        for member in list(self.rooms.get(sender.room_id, [])):
            if member is sender:
                continue
            if message.target is not None and message.target != member.peer_id:
                continue
            member._dispatch(message)

    def sent_of_type(self, msg_type, sender=None):
        return [
            m
            for m in self.sent
            if m.type == msg_type and (sender is None or m.sender == sender)
        ]


class HubChannel(SignalingChannel):
    def __init__(self, hub, peer_id, display_name, room_id=None):
        super().__init__(peer_id, display_name, room_id)
        self.hub = hub
        self.connected = False
        self.closed = False

    async def connect(self):
        self.connected = True
        self.hub.join(self)

    async def _deliver(self, message):
        if self.closed:
            raise ChannelFailure("channel closed")
        self.hub.deliver(self, message)

    async def close(self):
        self.closed = True
        self._callbacks.clear()
        self.hub.leave(self)


# ── Transport ─────────────────────────────────────────────────────────────────


class FakePeerHandle(PeerHandle):
    """Tracks signaling state the way a real peer connection does."""

    def __init__(self, transport, peer_id, display_name):
        super().__init__(peer_id, display_name)
        self.transport = transport
        self.state = STATE_STABLE
        self.candidates = []
        self.remote_descriptions = []
        self.sent = []
        self.closed = False

    @property
    def signaling_state(self):
        return self.state

    def _description(self, kind):
        self.transport.counter += 1
        return {
            "type": kind,
            "sdp": f"{kind}:{self.transport.local_id}->{self.peer_id}:{self.transport.counter}",
        }

    async def create_offer(self):
        if "create_offer" in self.transport.fail:
            raise TransportFailure("offer failed", self.peer_id)
        return self._description("offer")

    async def create_answer(self):
        if self.state != STATE_HAVE_REMOTE_OFFER:
            raise InvalidState(f"cannot answer in {self.state}", self.peer_id)
        return self._description("answer")

    async def set_local_description(self, description):
        if description["type"] == "offer":
            self.state = STATE_HAVE_LOCAL_OFFER
        else:
            self.state = STATE_STABLE
        return description

    async def set_remote_description(self, description):
        if "set_remote_description" in self.transport.fail:
            raise TransportFailure("remote description failed", self.peer_id)
        if description["type"] == "offer":
            if self.state != STATE_STABLE:
                raise InvalidState(f"cannot apply offer in {self.state}", self.peer_id)
            self.state = STATE_HAVE_REMOTE_OFFER
        else:
            if self.state != STATE_HAVE_LOCAL_OFFER:
                raise InvalidState(f"cannot apply answer in {self.state}", self.peer_id)
            self.state = STATE_STABLE
        self.remote_descriptions.append(description)

    async def add_candidate(self, candidate):
        if not isinstance(candidate, dict) or "candidate" not in candidate:
            raise InvalidCandidate(f"malformed candidate {candidate!r}", self.peer_id)
        self.candidates.append(candidate)

    def send_data(self, payload):
        self.sent.append(payload)
        return True

    async def close(self):
        self.closed = True
        self.state = STATE_CLOSED

    async def emit_candidate(self, candidate):
        await self._emit_candidate(candidate)

    async def emit_state(self, state):
        await self._emit_state(state)

    async def emit_data(self, data):
        await self._emit_data(data)


class FakeTransport(Transport):
    def __init__(self, local_id="local"):
        self.local_id = local_id
        self.handles = []
        self.fail = set()
        self.counter = 0
        self.closed = False

    def create_connection(self, peer_id, display_name):
        if "create_connection" in self.fail:
            raise TransportFailure("no transport context", peer_id)
        handle = FakePeerHandle(self, peer_id, display_name)
        self.handles.append(handle)
        return handle

    def handles_for(self, peer_id):
        return [h for h in self.handles if h.peer_id == peer_id]

    async def close(self):
        self.closed = True
        for handle in self.handles:
            await handle.close()


@pytest.fixture
def hub():
    return InMemoryHub()
