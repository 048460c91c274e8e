"""Periodic presence announcements for one room session."""

import asyncio
import logging
from typing import Callable, Optional

from roomlink.protocol import MSG_PEER_DISCOVERY
from roomlink.signaling import SignalingChannel

logger = logging.getLogger(__name__)


class DiscoveryScheduler:
    """Broadcasts ``peer-discovery`` on a fixed cadence.

    One broadcast immediately on ``start``, a second one after
    ``initial_delay`` for peers that joined slightly later, and one every
    ``interval`` seconds after that until ``stop``.

    Attributes:
        channel: Signaling channel to broadcast into.
        initial_delay: Seconds until the second broadcast.
        interval: Seconds between periodic broadcasts.
        is_live: Liveness check of the owning session; nothing is sent once
            it returns False.
        broadcast_count: Number of broadcasts handed to the channel.
    """

    def __init__(
        self,
        channel: SignalingChannel,
        initial_delay: float = 0.5,
        interval: float = 1.5,
        is_live: Optional[Callable[[], bool]] = None,
    ):
        self.channel = channel
        self.initial_delay = initial_delay
        self.interval = interval
        self.is_live = is_live or (lambda: True)
        self.broadcast_count = 0
        self._running = False
        self._second_task: Optional[asyncio.Task] = None
        self._interval_task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._running

    async def start(self):
        """Send the initial broadcast and schedule the following ones."""
        if self._running:
            return
        self._running = True
        self._interval_task = asyncio.create_task(self._interval_loop())
        await self._broadcast("Initial discovery broadcast")
        if self._running:
            self._second_task = asyncio.create_task(self._second_broadcast())

    async def _second_broadcast(self):
        await asyncio.sleep(self.initial_delay)
        await self._broadcast("Second discovery broadcast")

    async def _interval_loop(self):
        while self._running:
            await asyncio.sleep(self.interval)
            await self._broadcast("Broadcasting discovery")

    async def _broadcast(self, label: str):
        if not self._running or not self.is_live():
            return
        try:
            await self.channel.broadcast(MSG_PEER_DISCOVERY)
        except Exception as e:
            # Next tick retries
            logger.error(f"Discovery broadcast failed: {e}")
            return
        self.broadcast_count += 1
        logger.debug(f"{label} for room: {self.channel.room_id or 'global'}")

    async def stop(self):
        """Cancel every scheduled broadcast."""
        self._running = False
        tasks = [t for t in (self._second_task, self._interval_task) if t is not None]
        self._second_task = None
        self._interval_task = None
        for task in tasks:
            if not task.done():
                task.cancel()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
