"""Tests for the discovery scheduler cadence."""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from roomlink.discovery import DiscoveryScheduler
from roomlink.exceptions import ChannelFailure
from roomlink.protocol import MSG_PEER_DISCOVERY


@pytest.fixture
def channel():
    channel = MagicMock()
    channel.room_id = "r1"
    channel.broadcast = AsyncMock()
    return channel


class TestDiscoveryScheduler:
    @pytest.mark.asyncio
    async def test_first_broadcast_is_immediate(self, channel):
        scheduler = DiscoveryScheduler(channel, initial_delay=10, interval=10)

        await scheduler.start()

        channel.broadcast.assert_awaited_once_with(MSG_PEER_DISCOVERY)
        assert scheduler.running
        await scheduler.stop()

    @pytest.mark.asyncio
    async def test_second_and_periodic_broadcasts(self, channel):
        scheduler = DiscoveryScheduler(channel, initial_delay=0.01, interval=0.05)

        await scheduler.start()
        await asyncio.sleep(0.03)
        assert scheduler.broadcast_count == 2

        await asyncio.sleep(0.1)
        assert scheduler.broadcast_count >= 3
        await scheduler.stop()

    @pytest.mark.asyncio
    async def test_stop_cancels_future_broadcasts(self, channel):
        scheduler = DiscoveryScheduler(channel, initial_delay=0.01, interval=0.01)
        await scheduler.start()

        await scheduler.stop()
        count = channel.broadcast.await_count
        await asyncio.sleep(0.05)

        assert channel.broadcast.await_count == count
        assert not scheduler.running

    @pytest.mark.asyncio
    async def test_nothing_sent_once_session_is_not_live(self, channel):
        live = [True]
        scheduler = DiscoveryScheduler(
            channel, initial_delay=0.01, interval=0.01, is_live=lambda: live[0]
        )
        await scheduler.start()

        live[0] = False
        count = channel.broadcast.await_count
        await asyncio.sleep(0.05)

        assert channel.broadcast.await_count == count
        await scheduler.stop()

    @pytest.mark.asyncio
    async def test_broadcast_failure_is_retried_next_tick(self, channel):
        calls = []

        async def flaky(msg_type):
            calls.append(msg_type)
            if len(calls) == 1:
                raise ChannelFailure("down")

        channel.broadcast.side_effect = flaky
        scheduler = DiscoveryScheduler(channel, initial_delay=0.01, interval=0.01)

        await scheduler.start()
        assert scheduler.broadcast_count == 0

        await asyncio.sleep(0.05)
        assert scheduler.broadcast_count >= 1
        assert scheduler.running
        await scheduler.stop()

    @pytest.mark.asyncio
    async def test_start_twice_is_noop(self, channel):
        scheduler = DiscoveryScheduler(channel, initial_delay=10, interval=10)

        await scheduler.start()
        await scheduler.start()

        assert channel.broadcast.await_count == 1
        await scheduler.stop()
