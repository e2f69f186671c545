"""
Local and remote media track helpers.
"""
import logging
from typing import Dict, Optional

from aiortc import MediaStreamTrack
from av import AudioFrame, VideoFrame

logger = logging.getLogger(__name__)


class LocalTrack(MediaStreamTrack):
    """Outbound track that can be muted in place.

    Wraps a capture track. While ``enabled`` is False every frame pulled from
    the source is replaced by a silent (audio) or blank (video) frame with the
    same timing, so the negotiated stream keeps flowing and nothing has to be
    renegotiated.
    """

    def __init__(self, source: MediaStreamTrack, label: str = ""):
        super().__init__()
        self.kind = source.kind
        self.source = source
        self.label = label or source.kind
        self.enabled = True

    async def recv(self):
        frame = await self.source.recv()
        if self.enabled:
            return frame
        return self._blank(frame)

    def _blank(self, frame):
        if self.kind == "audio":
            blank = AudioFrame(format=frame.format.name, layout=frame.layout.name, samples=frame.samples)
            blank.sample_rate = frame.sample_rate
        else:
            blank = VideoFrame(width=frame.width, height=frame.height, format="yuv420p")
        for index, plane in enumerate(blank.planes):
            # black in yuv420p is Y=0 with neutral chroma
            fill = 128 if self.kind == "video" and index > 0 else 0
            plane.update(bytes([fill]) * plane.buffer_size)
        blank.pts = frame.pts
        blank.time_base = frame.time_base
        return blank

    def stop(self):
        super().stop()
        self.source.stop()


class RemoteStream:
    """Inbound media from one remote peer, at most one track per kind."""

    def __init__(self, peer_id: str):
        self.peer_id = peer_id
        self.tracks: Dict[str, MediaStreamTrack] = {}

    @property
    def audio(self) -> Optional[MediaStreamTrack]:
        return self.tracks.get("audio")

    @property
    def video(self) -> Optional[MediaStreamTrack]:
        return self.tracks.get("video")

    def add_track(self, track: MediaStreamTrack):
        previous = self.tracks.get(track.kind)
        if previous is not None and previous is not track:
            logger.debug(f"[RemoteStream] Replacing {track.kind} track for peer {self.peer_id}")
        self.tracks[track.kind] = track

    def remove_track(self, track: MediaStreamTrack) -> bool:
        if self.tracks.get(track.kind) is track:
            del self.tracks[track.kind]
            return True
        return False

    def clear(self):
        self.tracks.clear()

    def __len__(self):
        return len(self.tracks)

    def __repr__(self):
        return f"RemoteStream(peer_id={self.peer_id!r}, kinds={sorted(self.tracks)})"
