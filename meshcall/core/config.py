"""
Configuration management for meshcall sessions and the relay.
"""
import os
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from aiortc import RTCConfiguration, RTCIceServer


DEFAULT_STUN_SERVERS = [
    "stun:stun.l.google.com:19302",
    "stun:stun1.l.google.com:19302",
    "stun:stun2.l.google.com:19302",
]


@dataclass
class SessionConfig:
    """Session and relay configuration settings."""
    
    # Signaling relay
    signaling_url: str = "ws://localhost:8765/ws"
    join_timeout: float = 10.0
    
    # ICE servers
    stun_servers: List[str] = field(default_factory=lambda: list(DEFAULT_STUN_SERVERS))
    turn_url: Optional[str] = None
    turn_username: Optional[str] = None
    turn_password: Optional[str] = None
    
    # Capture devices (ffmpeg device names and input formats)
    camera_device: str = "/dev/video0"
    camera_format: str = "v4l2"
    microphone_device: str = "default"
    microphone_format: str = "pulse"
    screen_device: str = ":0.0"
    screen_format: str = "x11grab"
    video_size: str = "1280x720"
    framerate: int = 30
    
    # Relay server
    relay_host: str = "0.0.0.0"
    relay_port: int = 8765
    
    log_level: str = "INFO"
    
    # WebRTC configuration
    rtc_config: Optional[RTCConfiguration] = None
    
    def __post_init__(self):
        """Apply environment overrides and build the WebRTC configuration."""
        env = os.environ
        
        self.signaling_url = env.get('MESHCALL_SIGNALING_URL', self.signaling_url)
        self.join_timeout = float(env.get('MESHCALL_JOIN_TIMEOUT', self.join_timeout))
        
        stun = env.get('MESHCALL_STUN_SERVERS')
        if stun is not None:
            self.stun_servers = [url.strip() for url in stun.split(',') if url.strip()]
        self.turn_url = env.get('MESHCALL_TURN_URL', self.turn_url)
        self.turn_username = env.get('MESHCALL_TURN_USERNAME', self.turn_username)
        self.turn_password = env.get('MESHCALL_TURN_PASSWORD', self.turn_password)
        
        self.camera_device = env.get('MESHCALL_CAMERA_DEVICE', self.camera_device)
        self.camera_format = env.get('MESHCALL_CAMERA_FORMAT', self.camera_format)
        self.microphone_device = env.get('MESHCALL_MICROPHONE_DEVICE', self.microphone_device)
        self.microphone_format = env.get('MESHCALL_MICROPHONE_FORMAT', self.microphone_format)
        self.screen_device = env.get('MESHCALL_SCREEN_DEVICE', self.screen_device)
        self.screen_format = env.get('MESHCALL_SCREEN_FORMAT', self.screen_format)
        self.video_size = env.get('MESHCALL_VIDEO_SIZE', self.video_size)
        self.framerate = int(env.get('MESHCALL_FRAMERATE', self.framerate))
        
        self.relay_host = env.get('MESHCALL_RELAY_HOST', self.relay_host)
        self.relay_port = int(env.get('MESHCALL_RELAY_PORT', self.relay_port))
        self.log_level = env.get('MESHCALL_LOG_LEVEL', self.log_level)
        
        if self.rtc_config is None:
            self._build_rtc_config()
    
    def _build_rtc_config(self):
        """Build the RTCConfiguration handed to every peer connection."""
        ice_servers = [RTCIceServer(urls=url) for url in self.stun_servers]
        
        if self.has_turn_server:
            ice_servers.append(
                RTCIceServer(
                    urls=self.turn_url,
                    username=self.turn_username,
                    credential=self.turn_password
                )
            )
        
        self.rtc_config = RTCConfiguration(iceServers=ice_servers)
    
    @property
    def has_turn_server(self) -> bool:
        return all([self.turn_url, self.turn_username, self.turn_password])
    
    def get_capture_options(self, include_size: bool = True) -> Dict[str, str]:
        """ffmpeg input options for camera and screen capture."""
        options = {"framerate": str(self.framerate)}
        if include_size:
            options["video_size"] = self.video_size
        return options
    
    def __str__(self) -> str:
        return (f"SessionConfig(signaling_url={self.signaling_url}, "
                f"ice_servers={len(self.stun_servers) + int(self.has_turn_server)}, "
                f"relay={self.relay_host}:{self.relay_port})")
