"""Media capture helpers for aiortc.

The session never starts or stops capture itself. This module is the small
collaborator that supplies tracks for up-streams:

- `MediaStream`: an ordered set of tracks, the unit a Stream carries.
- `MutableTrack`: pass-through track that can be muted without touching the
  peer connection (no renegotiation).
- `LocalMedia`: owns an ffmpeg-backed `MediaPlayer` (camera, screen grab,
  or a file) so its tracks stay alive.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from typing import Dict, List, Optional

import av
from aiortc import MediaStreamTrack
from aiortc.contrib.media import MediaPlayer


logger = logging.getLogger(__name__)


class MediaStream:
	"""A group of tracks sharing one label (camera, screenshare, ...)."""

	def __init__(self, tracks: Optional[List[MediaStreamTrack]] = None, id: Optional[str] = None):
		self.id = id or str(uuid.uuid4())
		self._tracks: List[MediaStreamTrack] = list(tracks or [])

	def get_tracks(self) -> List[MediaStreamTrack]:
		return list(self._tracks)

	def add_track(self, track: MediaStreamTrack) -> None:
		if track not in self._tracks:
			self._tracks.append(track)

	def remove_track(self, track: MediaStreamTrack) -> None:
		if track in self._tracks:
			self._tracks.remove(track)

	def kinds(self) -> List[str]:
		return [t.kind for t in self._tracks]


class MutableTrack(MediaStreamTrack):
	"""Pass-through track with a mute switch.

	While muted, audio frames are zeroed and video frames are replaced by
	black frames with the same timing, so the remote side keeps receiving
	media and nothing needs to be renegotiated.
	"""

	def __init__(self, source: MediaStreamTrack):
		super().__init__()
		self.kind = source.kind
		self._source = source
		self.muted = False

	async def recv(self):  # type: ignore[override]
		frame = await self._source.recv()
		if not self.muted:
			return frame

		if isinstance(frame, av.AudioFrame):
			for plane in frame.planes:
				plane.update(bytes(plane.buffer_size))
			return frame

		if isinstance(frame, av.VideoFrame):
			black = av.VideoFrame(frame.width, frame.height, "yuv420p")
			for i, plane in enumerate(black.planes):
				plane.update(bytes([16 if i == 0 else 128]) * plane.buffer_size)
			black.pts = frame.pts
			black.time_base = frame.time_base
			return black

		return frame

	def stop(self) -> None:  # type: ignore[override]
		try:
			stop = getattr(self._source, "stop", None)
			if callable(stop):
				stop()
		except Exception:
			pass
		finally:
			super().stop()


@dataclass
class LocalMedia:
	"""Owns the underlying media player so its tracks stay alive."""

	player: Optional[MediaPlayer]
	stream: MediaStream
	tracks: Dict[str, MutableTrack] = field(default_factory=dict)

	@classmethod
	def from_tracks(cls, tracks: List[MediaStreamTrack]) -> "LocalMedia":
		wrapped = {t.kind: MutableTrack(t) for t in tracks}
		return cls(player=None, stream=MediaStream(list(wrapped.values())), tracks=wrapped)

	@classmethod
	def open(cls, source: str, *, format: Optional[str] = None, options: Optional[Dict[str, str]] = None) -> "LocalMedia":
		"""Capture from an ffmpeg source: a device (with `format`) or a file/URL."""
		player = MediaPlayer(source, format=format, options=options)
		tracks = [t for t in (player.audio, player.video) if t is not None]
		media = cls.from_tracks(tracks)
		media.player = player
		logger.info("local media source=%s format=%s kinds=%s", source, format, media.stream.kinds())
		return media

	def mute(self, kind: str, muted: bool = True) -> None:
		track = self.tracks.get(kind)
		if track is None:
			return
		track.muted = muted
		logger.debug("local media %s muted=%s", kind, muted)

	def close(self) -> None:
		"""Best-effort stop for the underlying ffmpeg process."""
		tracks = list(self.tracks.values())
		self.tracks = {}
		self.player = None
		for t in tracks:
			try:
				t.stop()
			except Exception:
				pass
