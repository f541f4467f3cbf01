"""Schema definitions for the rollout engine.

Live-device records (radios, rules) and rollout bookkeeping. Records
extracted from a device are rebuilt on every run and never cached.
"""
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional

from ..config.schema import Band, DeviceRole


# --- Live device state ---

class BandSource(str, Enum):
    """Where a radio's band assignment came from."""
    RADIO_HARDWARE = "radio_hardware"
    RECORDED = "recorded"
    BOARD_TABLE = "board_table"
    NAMING_CONVENTION = "naming_convention"

    @property
    def low_confidence(self) -> bool:
        return self is BandSource.NAMING_CONVENTION


@dataclass
class RadioInterface:
    """A WiFi interface as reported by the device.

    Virtual interfaces refer to their master by name only; their band is
    always the master's band.
    """
    name: str
    band: Optional[Band] = None
    master: Optional[str] = None
    disabled: bool = False
    ssid: Optional[str] = None
    comment: str = ""
    default_name: Optional[str] = None
    band_source: Optional[BandSource] = None

    @property
    def is_virtual(self) -> bool:
        return self.master is not None


@dataclass
class Datapath:
    """A named WiFi datapath entry."""
    name: str
    vlan_id: Optional[int] = None
    bridge: Optional[str] = None


class RuleAction(str, Enum):
    """Access-list decision for a client."""
    ACCEPT = "accept"
    REJECT = "reject"


@dataclass(frozen=True)
class AccessRule:
    """One access-list entry.

    Equality and hashing use (mac, interface, action) only; comment and
    position on the device do not matter.
    """
    mac: str
    interface: str
    action: RuleAction
    comment: str = field(default="", compare=False)

    def __post_init__(self):
        object.__setattr__(self, "mac", self.mac.upper())

    @property
    def key(self) -> tuple[str, str, str]:
        return (self.mac, self.interface, self.action.value)

    @property
    def is_orphaned(self) -> bool:
        """References an interface by internal id (the interface is gone)."""
        return self.interface.startswith("*")


@dataclass(frozen=True)
class RenameStep:
    """Rename one live interface. ``band`` is recorded on the final step."""
    old: str
    new: str
    band: Optional[Band] = None


@dataclass
class RulePlan:
    """Access-rule changes in the order they must be applied."""
    accept_additions: list[AccessRule] = field(default_factory=list)
    reject_additions: list[AccessRule] = field(default_factory=list)
    orphan_removals: list[AccessRule] = field(default_factory=list)
    stale_removals: list[AccessRule] = field(default_factory=list)

    @property
    def additions(self) -> list[AccessRule]:
        return self.accept_additions + self.reject_additions

    @property
    def removals(self) -> list[AccessRule]:
        return self.orphan_removals + self.stale_removals

    @property
    def no_change(self) -> bool:
        """Steady state: nothing to write."""
        return not self.additions and not self.removals

    @property
    def total_changes(self) -> int:
        return len(self.additions) + len(self.removals)


# --- Command execution ---

class ApplyOutcome(str, Enum):
    """What happened to one mutation."""
    APPLIED = "applied"
    ALREADY_SATISFIED = "already_satisfied"


@dataclass
class ApplyResult:
    """Result of one idempotent mutation."""
    command: str
    description: str
    outcome: ApplyOutcome
    output: str = ""

    @property
    def changed(self) -> bool:
        return self.outcome == ApplyOutcome.APPLIED


# --- Rollout bookkeeping ---

class RolloutPhase(str, Enum):
    """Rollout state machine phases, in execution order."""
    VALIDATING = "validating"
    CONTROLLER = "controller_configuration"
    CONTROLLER_SETTLE = "controller_settle"
    CAPS = "cap_configuration"
    CAP_INTERFACE_BINDING = "cap_interface_binding"
    ACCESS_RULES = "access_rule_reconciliation"
    LOCAL_FALLBACK = "local_fallback"
    STANDALONE = "standalone_devices"
    SIMPLE = "simple_devices"


class RolloutStatus(str, Enum):
    """Terminal state of a rollout."""
    COMPLETED = "completed"
    COMPLETED_WITH_FAILURES = "completed_with_failures"
    ABORTED = "aborted"


@dataclass
class RolloutOptions:
    """Timing and concurrency knobs for one rollout."""
    parallel: bool = False
    max_parallel: int = 4
    stagger_delay: float = 5
    controller_settle: float = 5
    cap_binding_settle: float = 3
    cap_restart_pause: float = 2
    rebind_timeout: float = 15
    rebind_poll_interval: float = 2
    probe_attempts: int = 3
    probe_delay: float = 2
    dhcp_settle: float = 3

    @classmethod
    def immediate(cls, **overrides: Any) -> "RolloutOptions":
        """Options with every wait set to zero."""
        values: dict[str, Any] = dict(
            stagger_delay=0, controller_settle=0, cap_binding_settle=0,
            cap_restart_pause=0, rebind_timeout=0, rebind_poll_interval=0,
            probe_delay=0, dhcp_settle=0,
        )
        values.update(overrides)
        return cls(**values)


@dataclass
class PhaseRecord:
    """Outcome of one rollout phase."""
    phase: RolloutPhase
    success: bool
    message: str = ""
    duration_ms: float = 0


@dataclass
class DeviceResult:
    """Outcome for a single device."""
    index: int
    host: str
    role: DeviceRole
    success: bool = False
    error: Optional[str] = None
    warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        data: dict[str, Any] = {
            "index": self.index,
            "host": self.host,
            "role": self.role.value,
            "success": self.success,
        }
        if self.error:
            data["error"] = self.error
        if self.warnings:
            data["warnings"] = list(self.warnings)
        return data


@dataclass
class RolloutResult:
    """Per-run summary."""
    status: RolloutStatus = RolloutStatus.COMPLETED
    devices: list[DeviceResult] = field(default_factory=list)
    phases: list[PhaseRecord] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return self.status == RolloutStatus.COMPLETED

    @property
    def passed(self) -> int:
        return sum(1 for d in self.devices if d.success)

    @property
    def failed(self) -> int:
        return sum(1 for d in self.devices if not d.success)

    def device(self, index: int) -> Optional[DeviceResult]:
        for result in self.devices:
            if result.index == index:
                return result
        return None

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        return {
            "status": self.status.value,
            "summary": {
                "total_devices": len(self.devices),
                "passed": self.passed,
                "failed": self.failed,
            },
            "devices": [d.to_dict() for d in sorted(self.devices, key=lambda d: d.index)],
            "phases": [
                {
                    "phase": p.phase.value,
                    "success": p.success,
                    "message": p.message,
                    "duration_ms": round(p.duration_ms, 1),
                }
                for p in self.phases
            ],
            "warnings": list(self.warnings),
        }
