"""Config Engine - declarative rollout of WiFi access-point fleets.

Turns a normalized fleet declaration into ordered, idempotent RouterOS
commands:
- SSIDs defined once, bands chosen per device
- Radio names corrected to their real bands before use
- Client lock rules reconciled by diff, in a safe order
- Controller first, then CAPs, with settle windows and isolation

Usage:
    from wap_fleet.config import FleetInventory
    from wap_fleet.config_engine import FleetOrchestrator

    fleet = FleetInventory("fleet.yaml").fleet
    result = await FleetOrchestrator(fleet).run()
"""

from .orchestrator import FleetOrchestrator, RolloutAborted
from .configurer import DeviceConfigurer, ValidationGateError
from .schema import (
    AccessRule,
    ApplyOutcome,
    ApplyResult,
    DeviceResult,
    RadioInterface,
    RolloutOptions,
    RolloutPhase,
    RolloutResult,
    RolloutStatus,
    RuleAction,
    RulePlan,
)
from .executor import (
    CommandFailed,
    ErrorClass,
    ErrorClassifier,
    IdempotentExecutor,
    TransientCommandError,
)
from .ssid_resolver import SsidResolutionError, SsidResolver
from .validator import FleetValidationError, FleetValidator, ValidationResult
from .identity import IdentityResolutionError, IdentityResolver, SwappedRadioTable
from .access_list import AccessRuleReconciler, diff_rules
from .vocabulary import CapabilityError, WifiVocabulary

__all__ = [
    # Orchestration
    "FleetOrchestrator",
    "RolloutAborted",
    "DeviceConfigurer",
    "ValidationGateError",
    # Schema classes
    "AccessRule",
    "ApplyOutcome",
    "ApplyResult",
    "DeviceResult",
    "RadioInterface",
    "RolloutOptions",
    "RolloutPhase",
    "RolloutResult",
    "RolloutStatus",
    "RuleAction",
    "RulePlan",
    # Execution
    "CommandFailed",
    "ErrorClass",
    "ErrorClassifier",
    "IdempotentExecutor",
    "TransientCommandError",
    # Components (for advanced use)
    "SsidResolutionError",
    "SsidResolver",
    "FleetValidationError",
    "FleetValidator",
    "ValidationResult",
    "IdentityResolutionError",
    "IdentityResolver",
    "SwappedRadioTable",
    "AccessRuleReconciler",
    "diff_rules",
    "CapabilityError",
    "WifiVocabulary",
]
