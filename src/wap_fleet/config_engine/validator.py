"""Pre-flight validation for a fleet declaration.

Catches referential and credential problems before any device is
contacted, so a fleet is never partially applied because of a typo.
"""
import re
from dataclasses import dataclass, field

from ..config.schema import DeviceConfig, DeviceRole, FleetConfig, ResolvedSsid
from .ssid_resolver import SsidResolutionError, SsidResolver

# Passphrase written into backups when the real one could not be read back
PLACEHOLDER_PASSPHRASE = "UNKNOWN"

MAC_PATTERN = re.compile(r"^[0-9A-F]{2}(:[0-9A-F]{2}){5}$")


@dataclass
class ValidationResult:
    """Result of fleet validation."""
    valid: bool
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)


class FleetValidationError(ValueError):
    """The fleet declaration failed validation; nothing was touched."""

    def __init__(self, result: ValidationResult):
        super().__init__(
            f"Fleet validation failed with {len(result.errors)} error(s): "
            + "; ".join(result.errors)
        )
        self.result = result


class FleetValidator:
    """Validate a fleet declaration for logical errors before execution."""

    def __init__(self, resolver: SsidResolver):
        self.resolver = resolver

    def validate(self, fleet: FleetConfig) -> ValidationResult:
        """
        Validate a whole fleet.

        Performs pre-flight checks:
        - Credentials and hosts present on every device
        - Controller topology (one controller, CAPs have controller addresses)
        - SSID references resolve, passphrases are real, VLANs in range
        - Lock specs reference known MACs, SSIDs and APs

        Args:
            fleet: The normalized fleet declaration

        Returns:
            ValidationResult with valid flag, errors, and warnings
        """
        errors: list[str] = []
        warnings: list[str] = []

        if not fleet.devices:
            errors.append("No devices defined")

        self._validate_topology(fleet, errors, warnings)
        self._validate_templates(fleet, errors, warnings)

        served: set[str] = set()
        for device in fleet.devices:
            self._validate_device(device, errors)
            for resolved in self._validate_ssids(device, errors):
                served.add(resolved.ssid)

        self._validate_locks(fleet, served, errors, warnings)

        return ValidationResult(valid=not errors, errors=errors, warnings=warnings)

    def ensure_valid(self, fleet: FleetConfig) -> ValidationResult:
        """Validate and raise FleetValidationError on any error."""
        result = self.validate(fleet)
        if not result.valid:
            raise FleetValidationError(result)
        return result

    def _validate_topology(self, fleet: FleetConfig, errors: list[str], warnings: list[str]) -> None:
        controllers = fleet.controllers
        if len(controllers) > 1:
            hosts = ", ".join(c.host for c in controllers)
            errors.append(f"Only one controller is allowed per fleet (found: {hosts})")
        if fleet.caps and not controllers:
            errors.append("CAPsMAN deployment requires a device with role: controller")

        seen: dict[str, int] = {}
        for device in fleet.devices:
            identity = device.effective_identity
            if identity in seen:
                errors.append(
                    f"Device {device.index}: identity '{identity}' already used by device {seen[identity]}"
                )
            else:
                seen[identity] = device.index

        controller = fleet.controller
        if controller and controller.capsman.vlan_id is not None and not controller.capsman.address:
            warnings.append(
                f"Device {controller.index}: CAPsMAN VLAN {controller.capsman.vlan_id} has no address; "
                "control traffic will use the bridge"
            )

    def _validate_templates(self, fleet: FleetConfig, errors: list[str], warnings: list[str]) -> None:
        names: set[str] = set()
        for template in fleet.ssids:
            if template.ssid in names:
                errors.append(f"Deployment SSID '{template.ssid}' is defined more than once")
            names.add(template.ssid)
            if template.passphrase == PLACEHOLDER_PASSPHRASE:
                warnings.append(
                    f"Deployment SSID '{template.ssid}' still has the {PLACEHOLDER_PASSPHRASE} passphrase"
                )

    @staticmethod
    def _validate_device(device: DeviceConfig, errors: list[str]) -> None:
        prefix = f"Device {device.index}"
        if not device.host:
            errors.append(f"{prefix}: Missing device.host")
        if not device.username:
            errors.append(f"{prefix}: Missing device.username")
        if not device.get_password():
            errors.append(f"{prefix}: Missing device.password (or ${device.password_env})")
        if device.role == DeviceRole.CAP and not device.controller_addresses:
            errors.append(f"{prefix} (CAP): Missing capsman.controllerAddresses")

    def _validate_ssids(self, device: DeviceConfig, errors: list[str]) -> list[ResolvedSsid]:
        prefix = f"Device {device.index}"
        try:
            resolved = self.resolver.resolve(device)
        except SsidResolutionError as e:
            errors.append(str(e))
            return []

        if not resolved and device.role != DeviceRole.CAP:
            errors.append(f"{prefix}: No SSIDs defined")

        names: set[str] = set()
        for ssid in resolved:
            label = f"{prefix}, SSID '{ssid.ssid}'"
            if ssid.ssid in names:
                errors.append(f"{label}: listed more than once")
            names.add(ssid.ssid)
            if not ssid.passphrase:
                errors.append(f"{label}: missing passphrase")
            elif ssid.passphrase == PLACEHOLDER_PASSPHRASE:
                errors.append(
                    f"{label}: passphrase is {PLACEHOLDER_PASSPHRASE} - set a real passphrase "
                    "(backups write this placeholder when the passphrase cannot be read)"
                )
            elif len(ssid.passphrase) < 8:
                errors.append(f"{label}: WPA2 passphrase must be at least 8 characters")
            if not 1 <= ssid.vlan <= 4094:
                errors.append(f"{label}: VLAN {ssid.vlan} out of range (1-4094)")
            if not ssid.bands:
                errors.append(f"{label}: missing bands")
        return resolved

    @staticmethod
    def _validate_locks(fleet: FleetConfig, served: set[str], errors: list[str], warnings: list[str]) -> None:
        identities = {d.effective_identity for d in fleet.devices}
        macs: dict[str, str] = {}
        for device in fleet.devices:
            for lock in device.locked_devices:
                label = f"Device {device.index}, locked device '{lock.name}'"
                if not MAC_PATTERN.match(lock.mac):
                    errors.append(f"{label}: invalid MAC address '{lock.mac}'")
                if lock.mac in macs:
                    errors.append(f"{label}: MAC {lock.mac} is already locked to {macs[lock.mac]}")
                macs[lock.mac] = lock.target_identity
                if lock.target_identity not in identities:
                    errors.append(f"{label}: target AP '{lock.target_identity}' is not in the fleet")
                if lock.ssid and lock.ssid not in served:
                    errors.append(f"{label}: SSID '{lock.ssid}' is not served by any device")
                if not fleet.is_capsman:
                    warnings.append(f"{label}: client locks are only enforced in controller deployments")
