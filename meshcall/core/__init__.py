"""
Core module for meshcall.
Contains configuration, logging, exceptions and validation helpers.
"""

from .config import SessionConfig
from .logging import setup_logging, debug_log, LoggerMixin
from .exceptions import (
    MeshCallError,
    MediaAccessDenied,
    ScreenShareDenied,
    SignalingDisconnected,
    NegotiationFailed,
    MessageError,
)

__all__ = [
    'SessionConfig',
    'setup_logging',
    'debug_log',
    'LoggerMixin',
    'MeshCallError',
    'MediaAccessDenied',
    'ScreenShareDenied',
    'SignalingDisconnected',
    'NegotiationFailed',
    'MessageError',
]
