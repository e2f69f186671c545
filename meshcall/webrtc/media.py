"""
Local media acquisition and outbound track ownership.
"""
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Set, Tuple

from aiortc import MediaStreamTrack
from aiortc.contrib.media import MediaPlayer, MediaRelay
from av.error import FFmpegError

from meshcall.core.config import SessionConfig
from meshcall.core.exceptions import MediaAccessDenied, ScreenShareDenied
from meshcall.core.logging import LoggerMixin
from meshcall.webrtc.tracks import LocalTrack


class DeviceMediaSource(LoggerMixin):
    """Opens capture devices through ffmpeg (aiortc ``MediaPlayer``)."""

    def __init__(self, config: SessionConfig):
        super().__init__()
        self.config = config

    async def open_user_media(self) -> Tuple[MediaStreamTrack, MediaStreamTrack]:
        """Open microphone and camera; returns ``(audio, video)``."""
        config = self.config
        camera = None
        try:
            camera = MediaPlayer(config.camera_device, format=config.camera_format,
                                 options=config.get_capture_options())
            microphone = MediaPlayer(config.microphone_device, format=config.microphone_format)
        except (FFmpegError, OSError) as e:
            if camera is not None and camera.video is not None:
                camera.video.stop()
            raise MediaAccessDenied("Cannot open camera or microphone", {
                "camera": config.camera_device,
                "microphone": config.microphone_device,
                "error": str(e)
            }) from e

        if camera.video is None or microphone.audio is None:
            for track in (camera.video, microphone.audio):
                if track is not None:
                    track.stop()
            raise MediaAccessDenied("No camera or microphone track available", {
                "camera": config.camera_device,
                "microphone": config.microphone_device
            })
        return microphone.audio, camera.video

    async def open_display_media(self) -> MediaStreamTrack:
        """Open a screen capture video track."""
        config = self.config
        try:
            screen = MediaPlayer(config.screen_device, format=config.screen_format,
                                 options=config.get_capture_options(include_size=False))
        except (FFmpegError, OSError) as e:
            raise ScreenShareDenied("Screen capture refused", {
                "screen": config.screen_device,
                "error": str(e)
            }) from e

        if screen.video is None:
            raise ScreenShareDenied("Screen capture produced no video", {"screen": config.screen_device})
        return screen.video


@dataclass
class LocalMediaState:
    audio_track: Optional[LocalTrack] = None
    video_track: Optional[LocalTrack] = None
    audio_enabled: bool = True
    video_enabled: bool = True
    screen_sharing: bool = False


class LocalMediaController(LoggerMixin):
    """Owns the local audio track and the single outbound video track.

    The outbound video track is the camera track, or the screen track while
    sharing. The camera track stays running while parked so it can be
    restored without reopening the device. Every change of the outbound
    video track is reported synchronously to ``outbound_video_changed``
    callbacks.
    """

    def __init__(self, source=None, config: Optional[SessionConfig] = None):
        super().__init__()
        self.source = source or DeviceMediaSource(config or SessionConfig())
        self.state = LocalMediaState()
        self.camera_track: Optional[LocalTrack] = None
        self.screen_track: Optional[LocalTrack] = None
        self.relay = MediaRelay()

        self.callbacks: Dict[str, Set[Callable]] = {
            'outbound_video_changed': set(),
        }

    @property
    def acquired(self) -> bool:
        return self.state.audio_track is not None

    @property
    def audio_track(self) -> Optional[LocalTrack]:
        return self.state.audio_track

    @property
    def outbound_video_track(self) -> Optional[LocalTrack]:
        return self.state.video_track

    @property
    def screen_sharing(self) -> bool:
        return self.state.screen_sharing

    def tracks(self) -> List[LocalTrack]:
        """Tracks to attach to a new peer connection."""
        return [track for track in (self.state.audio_track, self.state.video_track) if track is not None]

    def subscribe(self, track: LocalTrack) -> MediaStreamTrack:
        """Per-connection proxy of a local track.

        A track read by several peer connections directly would have its
        frames split between them; each connection gets its own relay proxy.
        """
        return self.relay.subscribe(track)

    def add_callback(self, event: str, callback: Callable):
        if event in self.callbacks:
            self.callbacks[event].add(callback)

    def remove_callback(self, event: str, callback: Callable):
        if event in self.callbacks:
            self.callbacks[event].discard(callback)

    async def acquire(self):
        """Request camera and microphone.

        Raises:
            MediaAccessDenied: permissions refused or no device present.
        """
        if self.acquired:
            return

        audio, video = await self.source.open_user_media()
        self.camera_track = LocalTrack(video, label="camera")
        self.state = LocalMediaState(
            audio_track=LocalTrack(audio, label="microphone"),
            video_track=self.camera_track,
        )
        self.log_info("🎥 [Media] Local media acquired", {
            "audio_track": self.state.audio_track.id,
            "video_track": self.camera_track.id
        })

    def toggle_audio(self) -> bool:
        """Flip the microphone's enabled flag in place."""
        if self.state.audio_track is None:
            return self.state.audio_enabled
        self.state.audio_enabled = not self.state.audio_enabled
        self.state.audio_track.enabled = self.state.audio_enabled
        self.log_debug("🎤 [Media] Audio toggled", {"enabled": self.state.audio_enabled})
        return self.state.audio_enabled

    def toggle_video(self) -> bool:
        """Flip the camera's enabled flag in place."""
        if self.camera_track is None:
            return self.state.video_enabled
        self.state.video_enabled = not self.state.video_enabled
        self.camera_track.enabled = self.state.video_enabled
        self.log_debug("🎥 [Media] Video toggled", {"enabled": self.state.video_enabled})
        return self.state.video_enabled

    async def start_screen_share(self) -> bool:
        """Make a screen capture track the outbound video source.

        Returns False, leaving the camera outbound, when capture is refused.
        """
        if self.state.screen_sharing:
            return True
        if not self.acquired:
            self.log_warning("🖥️ [Media] Screen share requested before media acquired")
            return False

        try:
            raw = await self.source.open_display_media()
        except ScreenShareDenied as e:
            self.log_warning("🖥️ [Media] Screen share denied, staying on camera", {"error": str(e)})
            return False

        if not self.acquired:
            # released while the capture was opening
            raw.stop()
            return False

        screen = LocalTrack(raw, label="screen")
        raw.on("ended", lambda: self._on_screen_ended(screen))
        self.screen_track = screen
        self.state.screen_sharing = True
        self.state.video_track = screen
        self.log_info("🖥️ [Media] Screen share started", {"screen_track": screen.id})
        self._notify_callbacks('outbound_video_changed', screen)
        return True

    def stop_screen_share(self):
        """Restore the parked camera track and release the screen track."""
        if not self.state.screen_sharing:
            return

        screen, self.screen_track = self.screen_track, None
        self.state.screen_sharing = False
        self.state.video_track = self.camera_track
        self.log_info("🖥️ [Media] Screen share stopped, camera restored", {
            "video_track": self.camera_track.id if self.camera_track else None
        })
        self._notify_callbacks('outbound_video_changed', self.camera_track)

        if screen is not None:
            screen.stop()

    def _on_screen_ended(self, screen: LocalTrack):
        # capture closed outside the app, e.g. the shared window went away
        if self.screen_track is screen:
            self.log_info("🖥️ [Media] Screen capture ended by source")
            self.stop_screen_share()

    def release(self):
        """Stop every local track."""
        screen, self.screen_track = self.screen_track, None
        for track in (self.state.audio_track, self.camera_track, screen):
            if track is not None:
                track.stop()

        was_acquired = self.acquired
        self.camera_track = None
        self.state = LocalMediaState()
        if was_acquired:
            self.log_info("🎥 [Media] Local media released")

    def _notify_callbacks(self, event: str, data=None):
        for callback in list(self.callbacks.get(event, ())):
            try:
                callback(data)
            except Exception as e:
                self.log_error("Error in media callback", {
                    "event": event,
                    "error": str(e),
                    "error_type": type(e).__name__
                })
