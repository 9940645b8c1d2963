from __future__ import annotations

import asyncio
import fractions
import logging

import pytest
from aiortc import AudioStreamTrack
from aiortc import MediaStreamTrack
from aiortc import VideoStreamTrack
from av import AudioFrame

from huddle.exceptions import MediaAcquisitionError
from huddle.media import LocalMedia
from huddle.media import open_local_media
from huddle.media import ToggleableTrack


class ToneTrack(MediaStreamTrack):
    kind = 'audio'

    def __init__(self) -> None:
        super().__init__()
        self._pts = 0

    async def recv(self) -> AudioFrame:
        frame = AudioFrame(format='s16', layout='mono', samples=160)
        for plane in frame.planes:
            plane.update(b'\x01' * plane.buffer_size)
        frame.pts = self._pts
        frame.sample_rate = 8000
        frame.time_base = fractions.Fraction(1, 8000)
        self._pts += 160
        await asyncio.sleep(0)
        return frame


@pytest.mark.asyncio()
async def test_toggleable_audio_track() -> None:
    track = ToggleableTrack(ToneTrack())
    assert track.kind == 'audio'

    frame = await track.recv()
    assert set(bytes(frame.planes[0])) == {1}

    track.enabled = False
    silent = await track.recv()
    assert set(bytes(silent.planes[0])) == {0}
    assert silent.samples == frame.samples
    assert silent.sample_rate == 8000
    assert silent.pts == 160

    track.stop()
    assert track.readyState == 'ended'
    assert track.source.readyState == 'ended'


@pytest.mark.asyncio()
async def test_toggleable_video_track() -> None:
    source = VideoStreamTrack()
    track = ToggleableTrack(source)
    assert track.kind == 'video'

    frame = await asyncio.wait_for(track.recv(), 1)
    assert set(bytes(frame.planes[0])) == {0}

    track.enabled = False
    black = await asyncio.wait_for(track.recv(), 1)
    assert (black.width, black.height) == (frame.width, frame.height)
    assert set(bytes(black.planes[0])) == {0x10}
    assert set(bytes(black.planes[1])) == {0x80}
    assert black.pts > frame.pts
    assert black.time_base == frame.time_base

    track.stop()


def test_local_media_without_tracks() -> None:
    media = LocalMedia()
    assert media.tracks == []
    assert not media.has_audio
    assert not media.has_video
    assert not media.audio_enabled
    assert not media.video_enabled
    assert media.acquisition_error is None
    assert repr(media) == 'LocalMedia(tracks=[])'
    media.stop()


@pytest.mark.asyncio()
async def test_local_media_enable_flags(caplog) -> None:
    caplog.set_level(logging.INFO)
    media = LocalMedia([AudioStreamTrack(), VideoStreamTrack()])
    assert repr(media) == 'LocalMedia(tracks=[audio, video])'
    assert media.has_audio
    assert media.has_video
    assert media.audio_enabled
    assert media.video_enabled

    media.video_enabled = False
    assert media.audio_enabled
    assert not media.video_enabled
    video = [track for track in media.tracks if track.kind == 'video']
    assert not video[0].enabled
    assert any('Local video disabled' in r.message for r in caplog.records)

    media.audio_enabled = False
    media.video_enabled = True
    assert not media.audio_enabled
    assert media.video_enabled
    media.stop()


@pytest.mark.asyncio()
async def test_local_media_subscriptions_share_frames() -> None:
    media = LocalMedia([ToneTrack()])
    first, second = media.subscribe(), media.subscribe()
    assert len(first) == len(second) == 1
    assert first[0] is not second[0]
    assert first[0].kind == 'audio'

    frames = await asyncio.wait_for(
        asyncio.gather(first[0].recv(), second[0].recv()),
        1,
    )
    assert all(isinstance(frame, AudioFrame) for frame in frames)

    first[0].stop()
    second[0].stop()
    media.stop()


def test_open_missing_media_falls_back(tmp_path, caplog) -> None:
    caplog.set_level(logging.WARNING)
    missing = str(tmp_path / 'missing.wav')

    media = open_local_media(missing)

    assert media.tracks == []
    assert isinstance(media.acquisition_error, MediaAcquisitionError)
    assert missing in str(media.acquisition_error)
    assert any(
        'Continuing without local media' in r.message for r in caplog.records
    )


def test_open_missing_media_strict(tmp_path) -> None:
    with pytest.raises(MediaAcquisitionError, match='Failed to open media'):
        open_local_media(str(tmp_path / 'missing.wav'), strict=True)
