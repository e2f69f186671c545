"""
Exception classes for meshcall sessions.
"""


class MeshCallError(Exception):
    """Base exception for meshcall."""
    
    def __init__(self, message: str, details: dict = None):
        super().__init__(message)
        self.details = details or {}
    
    def __str__(self):
        if self.details:
            return f"{super().__str__()} - {self.details}"
        return super().__str__()


class MediaAccessDenied(MeshCallError):
    """Raised when camera or microphone cannot be opened. Fatal for a join."""
    pass


class ScreenShareDenied(MeshCallError):
    """Raised when screen capture is refused or cancelled."""
    pass


class SignalingDisconnected(MeshCallError):
    """Raised when the signaling relay cannot be reached or the channel drops."""
    pass


class NegotiationFailed(MeshCallError):
    """Raised when negotiation with a single remote peer fails."""
    
    def __init__(self, message: str, peer_id: str = None, details: dict = None):
        super().__init__(message, details)
        self.peer_id = peer_id


class MessageError(MeshCallError):
    """Raised when a signaling message is malformed."""
    pass
