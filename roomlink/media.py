"""Local media capture and mute/unmute for outgoing tracks.

Capture is attempted with video and audio first, then audio only, then no
media at all. A missing device never aborts the session.

Each peer connection receives its own relayed copy of the local tracks, wrapped
in a ``SwitchableTrack`` so that toggling audio or video takes effect on every
connection at once without renegotiation.
"""

import logging
from typing import Callable, List, Optional

import numpy as np
from aiortc import MediaStreamTrack
from aiortc.contrib.media import MediaPlayer, MediaRelay
from av import VideoFrame

from roomlink.config import MediaConfig
from roomlink.exceptions import DeviceUnavailable

logger = logging.getLogger(__name__)


class SwitchableTrack(MediaStreamTrack):
    """Relays frames from a source track, blanking them while disabled.

    Disabled audio is replaced with silence and disabled video with black
    frames of the same size, so timestamps keep flowing to the remote side.

    Attributes:
        kind: "audio" or "video", copied from the source track.
        track: The source track.
        is_enabled: Callable returning whether frames pass through unchanged.
    """

    def __init__(self, track: MediaStreamTrack, is_enabled: Callable[[], bool]):
        super().__init__()
        self.kind = track.kind
        self.track = track
        self.is_enabled = is_enabled

    async def recv(self):
        frame = await self.track.recv()
        if self.is_enabled():
            return frame

        if self.kind == "audio":
            for plane in frame.planes:
                plane.update(bytes(plane.buffer_size))
            return frame

        blank = VideoFrame.from_ndarray(
            np.zeros((frame.height, frame.width, 3), dtype=np.uint8), format="bgr24"
        )
        blank.pts = frame.pts
        blank.time_base = frame.time_base
        return blank


class LocalMedia:
    """Owns local capture devices and the per-connection track subscriptions.

    Args:
        config: Device configuration.
        player_factory: Callable ``(file, format, options) -> MediaPlayer``.
            Defaults to ``aiortc.contrib.media.MediaPlayer``.
    """

    def __init__(
        self,
        config: Optional[MediaConfig] = None,
        player_factory: Optional[Callable] = None,
    ):
        self.config = config or MediaConfig()
        self.player_factory = player_factory or MediaPlayer
        self.audio_enabled = True
        self.video_enabled = True
        self._relay = MediaRelay()
        self._players: list = []
        self.audio_track: Optional[MediaStreamTrack] = None
        self.video_track: Optional[MediaStreamTrack] = None

    @property
    def has_audio(self) -> bool:
        return self.audio_track is not None

    @property
    def has_video(self) -> bool:
        return self.video_track is not None

    def _open(self, device: Optional[str]):
        if not device:
            raise DeviceUnavailable("No device configured")
        try:
            player = self.player_factory(
                device, format=self.config.format, options=self.config.options
            )
        except Exception as e:
            raise DeviceUnavailable(f"Cannot open {device}: {e}") from e
        self._players.append(player)
        return player

    def _acquire(self, video: bool, audio: bool):
        video_track = None
        audio_track = None
        if video:
            player = self._open(self.config.video_device)
            video_track = player.video
            if video_track is None:
                raise DeviceUnavailable(f"{self.config.video_device} has no video")
        if audio:
            player = self._open(self.config.audio_device)
            audio_track = player.audio
            if audio_track is None:
                raise DeviceUnavailable(f"{self.config.audio_device} has no audio")
        return video_track, audio_track

    def start(self) -> bool:
        """Acquire local media, degrading instead of failing.

        Returns:
            True if any track was acquired.
        """
        try:
            self.video_track, self.audio_track = self._acquire(video=True, audio=True)
            logger.info("Video started")
            return True
        except DeviceUnavailable as e:
            logger.error(f"Failed to start video: {e}")
            self.stop()

        try:
            logger.info("Trying audio-only...")
            _, self.audio_track = self._acquire(video=False, audio=True)
            self.video_enabled = False
            logger.info("Audio-only mode active")
            return True
        except DeviceUnavailable as e:
            logger.error(f"Failed to start audio: {e}")
            self.stop()

        logger.warning("Continuing without media devices")
        return False

    def subscribe(self) -> List[MediaStreamTrack]:
        """Tracks for one new peer connection."""
        tracks = []
        if self.audio_track is not None:
            tracks.append(
                SwitchableTrack(
                    self._relay.subscribe(self.audio_track), lambda: self.audio_enabled
                )
            )
        if self.video_track is not None:
            tracks.append(
                SwitchableTrack(
                    self._relay.subscribe(self.video_track), lambda: self.video_enabled
                )
            )
        return tracks

    def set_audio_enabled(self, enabled: bool):
        self.audio_enabled = enabled
        logger.info(f"Audio: {'ON' if enabled else 'OFF'}")

    def set_video_enabled(self, enabled: bool):
        self.video_enabled = enabled
        logger.info(f"Video: {'ON' if enabled else 'OFF'}")

    def stop(self):
        """Stop every capture device."""
        for track in (self.audio_track, self.video_track):
            if track is not None:
                track.stop()
        self.audio_track = None
        self.video_track = None
        self._players.clear()
