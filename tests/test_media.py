"""Tests for local media fallback and track switching."""

from fractions import Fraction
from unittest.mock import AsyncMock, MagicMock

import numpy as np
import pytest

from roomlink.config import MediaConfig
from roomlink.media import LocalMedia, SwitchableTrack


def player(video=True, audio=True):
    mock = MagicMock()
    mock.video = MagicMock(kind="video") if video else None
    mock.audio = MagicMock(kind="audio") if audio else None
    return mock


def factory(devices):
    """Player factory that opens only the devices listed in ``devices``."""
    calls = []

    def open_device(device, format=None, options=None):
        calls.append(device)
        if device not in devices:
            raise OSError(f"no such device: {device}")
        return devices[device]

    open_device.calls = calls
    return open_device


CONFIG = MediaConfig(video_device="cam", audio_device="mic")


class TestLocalMediaFallback:
    def test_video_and_audio(self):
        media = LocalMedia(CONFIG, factory({"cam": player(), "mic": player()}))

        assert media.start()
        assert media.has_video
        assert media.has_audio
        assert media.video_enabled

    def test_falls_back_to_audio_only(self):
        media = LocalMedia(CONFIG, factory({"mic": player()}))

        assert media.start()
        assert not media.has_video
        assert media.has_audio
        assert not media.video_enabled

    def test_continues_without_devices(self):
        media = LocalMedia(CONFIG, factory({}))

        assert not media.start()
        assert not media.has_video
        assert not media.has_audio

    def test_nothing_configured(self):
        open_device = factory({})
        media = LocalMedia(MediaConfig(), open_device)

        assert not media.start()
        assert open_device.calls == []

    def test_stop_releases_tracks(self):
        mic = player()
        media = LocalMedia(CONFIG, factory({"cam": player(), "mic": mic}))
        media.start()

        media.stop()

        mic.audio.stop.assert_called_once()
        assert not media.has_audio

    def test_subscribe_wraps_each_track(self):
        media = LocalMedia(CONFIG, factory({"cam": player(), "mic": player()}))
        media.start()
        media._relay = MagicMock()
        media._relay.subscribe.side_effect = lambda track: MagicMock(kind=track.kind)

        tracks = media.subscribe()

        assert [t.kind for t in tracks] == ["audio", "video"]
        assert all(isinstance(t, SwitchableTrack) for t in tracks)

    def test_subscribe_without_media(self):
        assert LocalMedia(CONFIG, factory({})).subscribe() == []


class TestSwitchableTrack:
    @pytest.mark.asyncio
    async def test_enabled_passes_frames_through(self):
        frame = MagicMock()
        source = MagicMock(kind="video")
        source.recv = AsyncMock(return_value=frame)

        track = SwitchableTrack(source, lambda: True)

        assert await track.recv() is frame

    @pytest.mark.asyncio
    async def test_disabled_video_is_black(self):
        frame = MagicMock(width=4, height=2, pts=1234, time_base=Fraction(1, 90000))
        source = MagicMock(kind="video")
        source.recv = AsyncMock(return_value=frame)

        track = SwitchableTrack(source, lambda: False)
        blank = await track.recv()

        assert (blank.width, blank.height) == (4, 2)
        assert blank.pts == 1234
        assert not np.any(blank.to_ndarray(format="bgr24"))

    @pytest.mark.asyncio
    async def test_disabled_audio_is_silent(self):
        plane = MagicMock(buffer_size=8)
        frame = MagicMock(planes=[plane])
        source = MagicMock(kind="audio")
        source.recv = AsyncMock(return_value=frame)

        track = SwitchableTrack(source, lambda: False)

        assert await track.recv() is frame
        plane.update.assert_called_once_with(bytes(8))

    def test_toggles_update_flags(self):
        media = LocalMedia(CONFIG, factory({}))

        media.set_audio_enabled(False)
        media.set_video_enabled(False)

        assert not media.audio_enabled
        assert not media.video_enabled
