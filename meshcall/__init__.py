"""
meshcall: full-mesh WebRTC conferencing sessions over a signaling relay.
"""

from meshcall.core import SessionConfig
from meshcall.webrtc import (
    LocalMediaController,
    NegotiationState,
    PeerLink,
    SessionController,
    SignalingClient,
)

__version__ = "0.1.0"

__all__ = [
    'SessionConfig',
    'LocalMediaController',
    'NegotiationState',
    'PeerLink',
    'SessionController',
    'SignalingClient',
]
