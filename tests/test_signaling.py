"""Tests for the websocket signaling channel and the room relay server."""

import asyncio
import json
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from roomlink.exceptions import ChannelFailure
from roomlink.protocol import MSG_OFFER, MSG_PEER_DISCOVERY
from roomlink.signaling import WebSocketSignalingChannel
from roomlink.signaling_server import RoomRelay


class FakeWebSocket:
    """Async-iterable websocket yielding scripted frames."""

    def __init__(self, frames=()):
        self.frames = list(frames)
        self.send = AsyncMock()
        self.close = AsyncMock()

    def __aiter__(self):
        return self._iterate()

    async def _iterate(self):
        for frame in self.frames:
            yield frame


def sent_json(websocket):
    return [json.loads(call.args[0]) for call in websocket.send.await_args_list]


# ── Client channel ────────────────────────────────────────────────────────────


class TestWebSocketSignalingChannel:
    @pytest.mark.asyncio
    async def test_connect_registers_in_room(self):
        websocket = FakeWebSocket()
        channel = WebSocketSignalingChannel("ws://relay", "a", "alice", "r1")

        with patch(
            "roomlink.signaling.websockets.connect", AsyncMock(return_value=websocket)
        ):
            await channel.connect()

        assert sent_json(websocket) == [
            {"type": "register", "peer_id": "a", "room_id": "r1"}
        ]
        await channel.close()
        websocket.close.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_connect_failure(self):
        channel = WebSocketSignalingChannel("ws://relay", "a", "alice")

        with patch(
            "roomlink.signaling.websockets.connect",
            AsyncMock(side_effect=OSError("refused")),
        ):
            with pytest.raises(ChannelFailure):
                await channel.connect()

    @pytest.mark.asyncio
    async def test_inbound_messages_dispatched_and_malformed_dropped(self):
        websocket = FakeWebSocket(
            [
                "not json",
                json.dumps({"type": "bogus", "from": "z"}),
                json.dumps({"type": MSG_PEER_DISCOVERY, "from": "z", "fromName": "Zed"}),
            ]
        )
        channel = WebSocketSignalingChannel("ws://relay", "a", "alice")
        received = []
        channel.on_message(received.append)

        with patch(
            "roomlink.signaling.websockets.connect", AsyncMock(return_value=websocket)
        ):
            await channel.connect()
        await channel._receive_task

        assert [(m.type, m.sender, m.sender_name) for m in received] == [
            (MSG_PEER_DISCOVERY, "z", "Zed")
        ]
        await channel.close()

    @pytest.mark.asyncio
    async def test_failing_subscriber_does_not_stop_others(self):
        websocket = FakeWebSocket(
            [json.dumps({"type": MSG_PEER_DISCOVERY, "from": "z"})]
        )
        channel = WebSocketSignalingChannel("ws://relay", "a", "alice")
        received = []
        channel.on_message(MagicMock(side_effect=RuntimeError("boom")))
        channel.on_message(received.append)

        with patch(
            "roomlink.signaling.websockets.connect", AsyncMock(return_value=websocket)
        ):
            await channel.connect()
        await channel._receive_task

        assert len(received) == 1
        await channel.close()

    @pytest.mark.asyncio
    async def test_send_stamps_sender(self):
        websocket = FakeWebSocket()
        channel = WebSocketSignalingChannel("ws://relay", "a", "alice")
        with patch(
            "roomlink.signaling.websockets.connect", AsyncMock(return_value=websocket)
        ):
            await channel.connect()

        await channel.send("z", MSG_OFFER, {"type": "offer", "sdp": "v=0"})
        await channel.broadcast(MSG_PEER_DISCOVERY)

        _, offer, discovery = sent_json(websocket)
        assert offer == {
            "type": "offer",
            "from": "a",
            "fromName": "alice",
            "to": "z",
            "data": {"type": "offer", "sdp": "v=0"},
        }
        assert discovery == {"type": "peer-discovery", "from": "a", "fromName": "alice"}
        await channel.close()

    @pytest.mark.asyncio
    async def test_send_after_close_fails(self):
        channel = WebSocketSignalingChannel("ws://relay", "a", "alice")
        await channel.close()

        with pytest.raises(ChannelFailure):
            await channel.broadcast(MSG_PEER_DISCOVERY)


# ── Relay server ──────────────────────────────────────────────────────────────


class TestRoomRelay:
    @pytest.fixture
    def sockets(self):
        return {peer: FakeWebSocket() for peer in ("a", "b", "c")}

    @pytest.fixture
    def relay(self, sockets):
        relay = RoomRelay()
        relay.register("r1", "a", sockets["a"])
        relay.register("r1", "b", sockets["b"])
        relay.register("r2", "c", sockets["c"])
        return relay

    @pytest.mark.asyncio
    async def test_broadcast_stays_in_room(self, relay, sockets):
        data = {"type": MSG_PEER_DISCOVERY, "from": "a"}

        delivered = await relay.relay("r1", "a", json.dumps(data), data)

        assert delivered == 1
        sockets["b"].send.assert_awaited_once()
        sockets["a"].send.assert_not_awaited()
        sockets["c"].send.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_targeted_message_not_delivered_across_rooms(self, relay, sockets):
        data = {"type": MSG_OFFER, "from": "a", "to": "c"}

        delivered = await relay.relay("r1", "a", json.dumps(data), data)

        assert delivered == 0
        sockets["c"].send.assert_not_awaited()

    def test_unregister_ignores_replaced_connection(self, relay, sockets):
        replacement = FakeWebSocket()
        relay.register("r1", "a", replacement)

        relay.unregister("r1", "a", sockets["a"])

        assert relay.rooms["r1"]["a"] is replacement

        relay.unregister("r2", "c", sockets["c"])
        assert "r2" not in relay.rooms

    def test_missing_room_is_global(self):
        relay = RoomRelay()
        assert relay.register(None, "a", FakeWebSocket()) == ""

    @pytest.mark.asyncio
    async def test_handler_registers_relays_and_cleans_up(self):
        relay = RoomRelay()
        listener = FakeWebSocket()
        relay.register("r1", "b", listener)
        discovery = json.dumps({"type": MSG_PEER_DISCOVERY, "from": "a"})
        websocket = FakeWebSocket(
            [
                discovery,
                json.dumps({"type": "register", "peer_id": "a", "room_id": "r1"}),
                "{broken",
                discovery,
            ]
        )

        await relay.handler(websocket)

        listener.send.assert_awaited_once_with(discovery)
        assert "a" not in relay.rooms["r1"]

    @pytest.mark.asyncio
    async def test_handler_unregisters_on_disconnect(self):
        relay = RoomRelay()
        websocket = FakeWebSocket(
            [json.dumps({"type": "register", "peer_id": "a"})]
        )

        await asyncio.wait_for(relay.handler(websocket), timeout=1)

        assert relay.rooms == {}
