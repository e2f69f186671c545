"""
WebRTC module for meshcall.
Handles signaling, local media, per-peer connections and the session lifecycle.
"""

from .signaling import SignalingClient
from .media import LocalMediaController, LocalMediaState, DeviceMediaSource
from .peer_manager import PeerLink, NegotiationState
from .session import SessionController
from .tracks import LocalTrack, RemoteStream

__all__ = [
    'SignalingClient',
    'LocalMediaController',
    'LocalMediaState',
    'DeviceMediaSource',
    'PeerLink',
    'NegotiationState',
    'SessionController',
    'LocalTrack',
    'RemoteStream',
]
