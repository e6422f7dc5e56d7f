# Integration Module
"""
Security audit trail for the login flow.

All events are logged with privacy-preserving user hashes.
"""

from .event_logger import (
    EventType,
    SecurityEvent,
    EventLogger,
    get_user_hash,
    get_user_hash_short,
)

__all__ = [
    'EventType',
    'SecurityEvent',
    'EventLogger',
    'get_user_hash',
    'get_user_hash_short',
]
