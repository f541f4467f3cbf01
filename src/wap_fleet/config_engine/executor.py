"""Idempotent command execution.

RouterOS has no create-or-no-op primitive, so every mutation is sent as
is and the device's complaint, if any, is classified: "already have"
means the desired state is in place, "not ready" is worth another try
at the call site, anything else is fatal to the calling operation.
"""
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Iterable, Optional

from ..devices.base import CommandError, DeviceSession
from .schema import ApplyOutcome, ApplyResult

logger = logging.getLogger(__name__)


class ErrorClass(str, Enum):
    """How to treat a device-reported failure."""
    ALREADY_SATISFIED = "already_satisfied"
    TRANSIENT = "transient"
    FATAL = "fatal"


@dataclass(frozen=True)
class ErrorClassifier:
    """Maps device error text to an ErrorClass.

    This is the only place device error text is pattern-matched. Each
    WiFi vocabulary owns one instance.
    """
    name: str
    already_satisfied: tuple[str, ...] = ("already have", "exists")
    transient: tuple[str, ...] = ("not ready", "busy", "try again", "action timed out")

    def classify(self, text: str, already_done: Iterable[str] = ()) -> ErrorClass:
        lowered = (text or "").lower()
        for pattern in (*self.already_satisfied, *already_done):
            if pattern.lower() in lowered:
                return ErrorClass.ALREADY_SATISFIED
        for pattern in self.transient:
            if pattern in lowered:
                return ErrorClass.TRANSIENT
        return ErrorClass.FATAL


DEFAULT_CLASSIFIER = ErrorClassifier(name="routeros")

# Extra signature for removals: the item is already gone
ALREADY_REMOVED = ("no such item",)


class TransientCommandError(Exception):
    """The device subsystem is not ready yet. Retry at the call site."""

    def __init__(self, command: str, output: str):
        super().__init__(f"'{command}' not ready: {output.strip()}")
        self.command = command
        self.output = output


class CommandFailed(Exception):
    """A mutation or read failed and the calling operation cannot go on."""

    def __init__(self, command: str, output: str, description: str = ""):
        what = description or command
        super().__init__(f"{what}: {output.strip()}")
        self.command = command
        self.output = output
        self.description = description


class IdempotentExecutor:
    """Runs commands on one device session with the idempotency policy."""

    def __init__(self, session: DeviceSession, classifier: ErrorClassifier = DEFAULT_CLASSIFIER):
        self.session = session
        self.classifier = classifier
        self.warnings: list[str] = []

    @property
    def device_id(self) -> str:
        return self.session.device_id

    async def query(self, command: str) -> str:
        """Run a read-only command. Failures raise CommandFailed."""
        try:
            return await self.session.execute(command)
        except CommandError as e:
            if self.classifier.classify(e.output) == ErrorClass.TRANSIENT:
                raise TransientCommandError(command, e.output) from e
            raise CommandFailed(command, e.output) from e

    async def query_best_effort(self, command: str, description: str) -> Optional[str]:
        """Read that may fail without failing the caller."""
        try:
            return await self.query(command)
        except (CommandFailed, TransientCommandError) as e:
            logger.debug(f"[{self.device_id}] {description} unavailable: {e}")
            return None

    async def apply(
        self,
        command: str,
        description: str,
        already_done: Iterable[str] = (),
    ) -> ApplyResult:
        """Apply one mutation.

        Args:
            command: RouterOS command line
            description: Human-readable success description
            already_done: Extra error signatures meaning "nothing to do"

        Returns:
            ApplyResult with APPLIED or ALREADY_SATISFIED

        Raises:
            TransientCommandError: the subsystem reported it is not ready
            CommandFailed: any other device-reported failure
        """
        try:
            output = await self.session.execute(command)
        except CommandError as e:
            verdict = self.classifier.classify(e.output, already_done)
            if verdict == ErrorClass.ALREADY_SATISFIED:
                logger.info(f"[{self.device_id}] {description} (already in place)")
                return ApplyResult(command, description, ApplyOutcome.ALREADY_SATISFIED, e.output)
            if verdict == ErrorClass.TRANSIENT:
                raise TransientCommandError(command, e.output) from e
            raise CommandFailed(command, e.output, description) from e

        logger.info(f"[{self.device_id}] {description}")
        return ApplyResult(command, description, ApplyOutcome.APPLIED, output)

    async def apply_best_effort(
        self,
        command: str,
        description: str,
        already_done: Iterable[str] = (),
    ) -> Optional[ApplyResult]:
        """Apply a supplementary step whose failure is only a warning."""
        try:
            return await self.apply(command, description, already_done)
        except (CommandFailed, TransientCommandError) as e:
            self.warn(f"{description} failed: {e}")
            return None

    async def remove(self, command: str, description: str) -> ApplyResult:
        """Removal where a missing item counts as done."""
        return await self.apply(command, description, already_done=ALREADY_REMOVED)

    def warn(self, message: str) -> None:
        """Record a best-effort warning for this device."""
        logger.warning(f"[{self.device_id}] {message}")
        self.warnings.append(message)
