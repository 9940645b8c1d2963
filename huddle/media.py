"""Local audio and video tracks shared by all peer connections.

A client opens its media once and every peer connection sends a
subscription of the same tracks. Disabling audio or video replaces the
outgoing frames with silence or black frames on all connections at once
without renegotiating.
"""
from __future__ import annotations

import fractions
import logging
from typing import Any
from typing import Iterable

from aiortc import MediaStreamTrack
from aiortc.contrib.media import MediaPlayer
from aiortc.contrib.media import MediaRelay
from av import AudioFrame
from av import VideoFrame
from av.error import FFmpegError

from huddle.exceptions import MediaAcquisitionError

logger = logging.getLogger(__name__)


def _silence(frame: AudioFrame) -> AudioFrame:
    silent = AudioFrame(
        format=frame.format.name,
        layout=frame.layout.name,
        samples=frame.samples,
    )
    for plane in silent.planes:
        plane.update(bytes(plane.buffer_size))
    silent.pts = frame.pts
    silent.sample_rate = frame.sample_rate
    silent.time_base = frame.time_base or fractions.Fraction(
        1,
        frame.sample_rate,
    )
    return silent


def _black(frame: VideoFrame) -> VideoFrame:
    black = VideoFrame(
        width=frame.width,
        height=frame.height,
        format='yuv420p',
    )
    luma, *chroma = black.planes
    luma.update(b'\x10' * luma.buffer_size)
    for plane in chroma:
        plane.update(b'\x80' * plane.buffer_size)
    black.pts = frame.pts
    black.time_base = frame.time_base
    return black


class ToggleableTrack(MediaStreamTrack):
    """Track which forwards frames of a source track unless disabled.

    While disabled, audio frames are replaced with silence and video frames
    with black frames of the same size and timing so the receiving side
    keeps a continuous stream.

    Args:
        source: Track to forward frames from.
    """

    def __init__(self, source: MediaStreamTrack) -> None:
        super().__init__()
        self.kind = source.kind
        self.enabled = True
        self._source = source

    @property
    def source(self) -> MediaStreamTrack:
        """Track frames are read from."""
        return self._source

    async def recv(self) -> Any:
        """Receive the next frame."""
        frame = await self._source.recv()
        if self.enabled:
            return frame
        if isinstance(frame, AudioFrame):
            return _silence(frame)
        if isinstance(frame, VideoFrame):
            return _black(frame)
        return frame

    def stop(self) -> None:
        """Stop this track and the source."""
        super().stop()
        self._source.stop()


class LocalMedia:
    """Set of local tracks sent to every peer.

    Example:
        ```python
        from huddle.media import open_local_media

        media = open_local_media('/dev/video0', format='v4l2')
        media.video_enabled = False
        tracks = media.subscribe()
        ```

    Args:
        tracks: Source tracks to share. Each is wrapped in a
            [`ToggleableTrack`][huddle.media.ToggleableTrack].
        acquisition_error: Error that occurred when opening media devices
            if this set of tracks is a fallback.
    """

    def __init__(
        self,
        tracks: Iterable[MediaStreamTrack] = (),
        *,
        acquisition_error: MediaAcquisitionError | None = None,
    ) -> None:
        self._tracks = [ToggleableTrack(track) for track in tracks]
        self._relay = MediaRelay()
        self.acquisition_error = acquisition_error

    def __repr__(self) -> str:
        kinds = ', '.join(track.kind for track in self._tracks)
        return f'{self.__class__.__name__}(tracks=[{kinds}])'

    def _set_enabled(self, kind: str, enabled: bool) -> None:
        for track in self._tracks:
            if track.kind == kind:
                track.enabled = enabled
        logger.info(
            f'Local {kind} {"enabled" if enabled else "disabled"}',
        )

    def _enabled(self, kind: str) -> bool:
        return any(
            track.enabled for track in self._tracks if track.kind == kind
        )

    @property
    def tracks(self) -> list[ToggleableTrack]:
        """Local tracks."""
        return list(self._tracks)

    @property
    def has_audio(self) -> bool:
        """Check if there is at least one local audio track."""
        return any(track.kind == 'audio' for track in self._tracks)

    @property
    def has_video(self) -> bool:
        """Check if there is at least one local video track."""
        return any(track.kind == 'video' for track in self._tracks)

    @property
    def audio_enabled(self) -> bool:
        """Audio is being sent to peers.

        Always `False` when there is no audio track.
        """
        return self._enabled('audio')

    @audio_enabled.setter
    def audio_enabled(self, enabled: bool) -> None:
        self._set_enabled('audio', enabled)

    @property
    def video_enabled(self) -> bool:
        """Video is being sent to peers.

        Always `False` when there is no video track.
        """
        return self._enabled('video')

    @video_enabled.setter
    def video_enabled(self, enabled: bool) -> None:
        self._set_enabled('video', enabled)

    def subscribe(self) -> list[MediaStreamTrack]:
        """Create one subscription per local track for a new peer.

        A track can only be consumed by a single peer connection so each
        peer gets its own subscriptions which all receive the same frames.
        """
        return [self._relay.subscribe(track) for track in self._tracks]

    def stop(self) -> None:
        """Stop all local tracks."""
        for track in self._tracks:
            track.stop()


def open_local_media(
    file: str,
    *,
    format: str | None = None,  # noqa: A002
    options: dict[str, str] | None = None,
    loop: bool = False,
    strict: bool = False,
) -> LocalMedia:
    """Open local media from a device or file.

    Args:
        file: Device or file path passed to
            [`MediaPlayer`][aiortc.contrib.media.MediaPlayer], such as
            `/dev/video0` or a recording.
        format: FFmpeg input format (e.g., `v4l2`, `avfoundation`, `pulse`).
        options: FFmpeg input options (e.g., `{'video_size': '640x480'}`).
        loop: Loop the file when it ends.
        strict: Raise instead of falling back to no media.

    Returns:
        Local media with the audio and video tracks of the input. If the
        input cannot be opened and `strict` is `False`, the error is logged
        and media without tracks is returned with `acquisition_error` set.

    Raises:
        MediaAcquisitionError: If the input cannot be opened and `strict`
            is `True`.
    """
    try:
        player = MediaPlayer(file, format=format, options=options, loop=loop)
    except (FFmpegError, OSError, ValueError) as e:
        error = MediaAcquisitionError(f'Failed to open media {file!r}: {e}')
        if strict:
            raise error from e
        logger.warning(f'{error} Continuing without local media')
        return LocalMedia(acquisition_error=error)

    tracks = [
        track for track in (player.audio, player.video) if track is not None
    ]
    media = LocalMedia(tracks)
    logger.info(f'Opened local media from {file}: {media}')
    return media
