"""Device sessions for different device types."""
from ..config.schema import DeviceConfig
from .base import (
    AuthenticationFailed,
    CommandError,
    ConnectionRefused,
    DeviceSession,
    HostUnreachable,
    SessionError,
    SessionTimeout,
)
from .routeros import RouterOSSession

__all__ = [
    "DeviceSession",
    "RouterOSSession",
    "SessionError",
    "AuthenticationFailed",
    "ConnectionRefused",
    "SessionTimeout",
    "HostUnreachable",
    "CommandError",
    "create_session",
]

# Device type registry
SESSION_TYPES = {
    "routeros": RouterOSSession,
}


def create_session(config: DeviceConfig) -> DeviceSession:
    """Factory function to create a session for a device."""
    device_type = (config.type or "").lower()
    if device_type not in SESSION_TYPES:
        raise ValueError(f"Unknown device type: {device_type}")
    return SESSION_TYPES[device_type](config)
