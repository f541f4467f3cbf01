"""Base device session abstraction for RouterOS access points."""
import logging
from abc import ABC, abstractmethod
from typing import Optional

logger = logging.getLogger(__name__)


class SessionError(Exception):
    """Base class for device transport failures."""

    def __init__(self, host: str, message: str):
        super().__init__(f"{host}: {message}")
        self.host = host


class AuthenticationFailed(SessionError):
    """Credentials were rejected. Never retried."""


class ConnectionRefused(SessionError):
    """The device actively refused the connection."""


class SessionTimeout(SessionError):
    """Connecting or waiting for a command timed out."""


class HostUnreachable(SessionError):
    """No route to the device."""


class CommandError(SessionError):
    """A command ran but the device reported a failure."""

    def __init__(self, host: str, command: str, output: str):
        super().__init__(host, f"'{command}' failed: {output.strip()}")
        self.command = command
        self.output = output


class DeviceSession(ABC):
    """One sequential command conversation with a single device.

    Commands to the same session must be awaited one at a time.
    """

    def __init__(self, host: str, device_id: Optional[str] = None):
        self.host = host
        self.device_id = device_id or host
        self._connected = False

    @property
    def is_connected(self) -> bool:
        return self._connected

    @abstractmethod
    async def open(self) -> None:
        """Open the session.

        Raises:
            AuthenticationFailed, ConnectionRefused, SessionTimeout,
            HostUnreachable
        """

    @abstractmethod
    async def execute(self, command: str) -> str:
        """Run one command and return its text output.

        Raises:
            CommandError: the device reported a failure
            SessionError: the transport failed
        """

    @abstractmethod
    async def close(self) -> None:
        """Close the session. Safe to call twice."""

    async def __aenter__(self) -> "DeviceSession":
        await self.open()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()
