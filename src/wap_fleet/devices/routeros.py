"""RouterOS device session over SSH.

RouterOS runs each command sent on an exec channel through its own CLI
and reports failures as text on stdout (``failure: ...``, ``syntax
error ...``) with a zero exit status, so failure detection is done on
the output lines.
"""
import asyncio
import errno
import logging
import socket
from typing import Optional

import paramiko

from ..config.schema import DeviceConfig
from ..utils.connection import with_retry
from ..utils.logging_config import timed
from .base import (
    AuthenticationFailed,
    CommandError,
    ConnectionRefused,
    DeviceSession,
    HostUnreachable,
    SessionError,
    SessionTimeout,
)

logger = logging.getLogger(__name__)

# Output line prefixes RouterOS uses for a failed command
FAILURE_MARKERS = (
    "failure:",
    "bad command name",
    "syntax error",
    "expected end of command",
    "no such item",
    "input does not match",
    "invalid value",
)

# Worth another attempt when opening. AuthenticationFailed is not one.
RETRYABLE_SESSION_ERRORS = (ConnectionRefused, SessionTimeout, HostUnreachable)


def find_failure(output: str) -> Optional[str]:
    """First line of ``output`` that reports a RouterOS failure."""
    for line in output.splitlines():
        stripped = line.strip()
        if stripped.lower().startswith(FAILURE_MARKERS):
            return stripped
    return None


class RouterOSSession(DeviceSession):
    """Password-authenticated SSH session to a RouterOS device."""

    def __init__(self, config: DeviceConfig):
        super().__init__(config.host, device_id=config.system_identity or config.host)
        self.config = config
        self._ssh: Optional[paramiko.SSHClient] = None

    def _translate(self, error: Exception) -> SessionError:
        """Map paramiko/socket failures onto the session error types."""
        if isinstance(error, paramiko.AuthenticationException):
            return AuthenticationFailed(self.host, f"authentication failed for {self.config.username}")
        if isinstance(error, ConnectionRefusedError):
            return ConnectionRefused(self.host, "connection refused")
        if isinstance(error, (socket.timeout, TimeoutError)):
            return SessionTimeout(self.host, "timed out")
        if isinstance(error, paramiko.ssh_exception.NoValidConnectionsError):
            return HostUnreachable(self.host, str(error))
        if isinstance(error, OSError) and error.errno in (errno.EHOSTUNREACH, errno.ENETUNREACH):
            return HostUnreachable(self.host, str(error))
        if isinstance(error, socket.gaierror):
            return HostUnreachable(self.host, f"cannot resolve: {error}")
        return SessionError(self.host, str(error))

    @with_retry(RETRYABLE_SESSION_ERRORS, max_attempts=3, min_wait=1, max_wait=10)
    @timed("open")
    async def open(self) -> None:
        """Connect to the device via SSH."""
        logger.info(f"Connecting to RouterOS {self.device_id} at {self.host}:{self.config.port}")

        loop = asyncio.get_event_loop()

        def _connect():
            ssh = paramiko.SSHClient()
            ssh.set_missing_host_key_policy(paramiko.AutoAddPolicy())
            ssh.connect(
                hostname=self.host,
                port=self.config.port,
                username=self.config.username,
                password=self.config.get_password(),
                timeout=self.config.timeout,
                allow_agent=False,
                look_for_keys=False,
            )
            return ssh

        try:
            self._ssh = await loop.run_in_executor(None, _connect)
        except (paramiko.SSHException, OSError) as e:
            raise self._translate(e) from e
        self._connected = True
        logger.info(f"Connected to {self.device_id}")

    async def execute(self, command: str) -> str:
        """Run one command and return its output.

        Raises:
            CommandError: stderr output or a RouterOS failure line
            SessionError: the transport failed
        """
        if not self._ssh:
            raise SessionError(self.host, "not connected")

        ssh = self._ssh
        loop = asyncio.get_event_loop()

        def _exec():
            stdin, stdout, stderr = ssh.exec_command(command, timeout=self.config.timeout)
            out = stdout.read().decode("utf-8", errors="ignore")
            err = stderr.read().decode("utf-8", errors="ignore")
            return out, err

        logger.debug(f"[{self.device_id}] > {command}")
        try:
            out, err = await loop.run_in_executor(None, _exec)
        except (paramiko.SSHException, OSError) as e:
            raise self._translate(e) from e

        if err.strip():
            raise CommandError(self.host, command, err)
        failure = find_failure(out)
        if failure:
            raise CommandError(self.host, command, failure)
        return out.strip()

    async def close(self) -> None:
        if self._ssh:
            self._ssh.close()
            self._ssh = None
        self._connected = False
        logger.info(f"Disconnected from {self.device_id}")
