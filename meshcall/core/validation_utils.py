"""
Validation helpers for signaling payloads.
"""

from typing import Dict, Any, List, Optional


class ValidationUtils:
    """Common validation utilities."""
    
    @staticmethod
    def validate_required_fields(data: Dict[str, Any], required_fields: List[str]) -> Optional[str]:
        """Validate that all required fields are present in the data."""
        missing_fields = [field for field in required_fields if field not in data or data[field] is None]
        if missing_fields:
            return f"Missing required fields: {', '.join(missing_fields)}"
        return None
    
    @staticmethod
    def validate_string_fields(data: Dict[str, Any], fields: List[str]) -> Optional[str]:
        """Validate that the given fields, when present, hold strings."""
        wrong = [field for field in fields if field in data and not isinstance(data[field], str)]
        if wrong:
            return f"Fields must be strings: {', '.join(wrong)}"
        return None
    
    @staticmethod
    def validate_peer_id(peer_id: Any) -> Optional[str]:
        """Validate a relay-assigned peer id."""
        if not peer_id:
            return "Missing peerId"
        if not isinstance(peer_id, str):
            return "peerId must be a string"
        return None
