"""Tests for pre-flight fleet validation."""
import pytest

from wap_fleet.config.schema import Band, DeviceRole, FleetConfig, SsidBinding, SsidTemplate
from wap_fleet.config_engine.ssid_resolver import SsidResolver
from wap_fleet.config_engine.validator import FleetValidationError, FleetValidator

from conftest import capsman_fleet, home_template, lock, make_device


def validate(fleet: FleetConfig):
    return FleetValidator(SsidResolver(fleet.ssids)).validate(fleet)


class TestFleetValidator:
    """Tests for FleetValidator."""

    def test_valid_capsman_fleet(self):
        """A complete controller fleet passes."""
        result = validate(capsman_fleet())
        assert result.valid, result.errors

    def test_no_devices(self):
        """An empty fleet is rejected."""
        result = validate(FleetConfig(ssids=[home_template()]))
        assert not result.valid
        assert "No devices defined" in result.errors

    def test_two_controllers(self):
        """At most one controller per fleet."""
        fleet = capsman_fleet()
        fleet.devices.append(make_device(4, "ctrl2.lan", DeviceRole.CONTROLLER))
        result = validate(fleet)
        assert any("Only one controller" in e for e in result.errors)

    def test_caps_without_controller(self):
        """CAPs need a controller in the fleet."""
        fleet = FleetConfig(
            devices=[make_device(1, "north.lan", DeviceRole.CAP)],
            ssids=[home_template()],
        )
        result = validate(fleet)
        assert any("requires a device with role: controller" in e for e in result.errors)

    def test_cap_without_controller_address(self):
        """A CAP must know where its controller is."""
        fleet = capsman_fleet()
        fleet.devices[1].controller_addresses = []
        result = validate(fleet)
        assert any("controllerAddresses" in e for e in result.errors)

    def test_missing_credentials(self, monkeypatch):
        """Missing username or password is an error."""
        monkeypatch.delenv("WAP_FLEET_PASSWORD", raising=False)
        fleet = capsman_fleet()
        fleet.devices[0].username = ""
        fleet.devices[0].password = None
        result = validate(fleet)
        assert "Device 1: Missing device.username" in result.errors
        assert any("Device 1: Missing device.password" in e for e in result.errors)

    def test_password_from_environment(self, monkeypatch):
        """A password in the environment satisfies the check."""
        monkeypatch.setenv("WAP_FLEET_PASSWORD", "fromenv")
        fleet = capsman_fleet()
        fleet.devices[0].password = None
        assert validate(fleet).valid

    def test_unresolved_reference(self):
        """An unknown SSID reference is reported before anything runs."""
        fleet = capsman_fleet()
        fleet.devices[1].ssids = [SsidBinding("Office", [Band.BAND_2G])]
        result = validate(fleet)
        assert any("'Office' is not defined" in e for e in result.errors)

    def test_placeholder_passphrase(self):
        """The UNKNOWN placeholder is rejected."""
        fleet = capsman_fleet(templates=[SsidTemplate("Home", "UNKNOWN", 10)])
        result = validate(fleet)
        assert any("passphrase is UNKNOWN" in e for e in result.errors)
        assert any("UNKNOWN passphrase" in w for w in result.warnings)

    def test_short_passphrase(self):
        """WPA2 passphrases shorter than 8 characters are rejected."""
        fleet = capsman_fleet(templates=[SsidTemplate("Home", "short", 10)])
        result = validate(fleet)
        assert any("at least 8 characters" in e for e in result.errors)

    def test_vlan_range(self):
        """VLANs outside 1-4094 are rejected."""
        fleet = capsman_fleet(templates=[SsidTemplate("Home", "homesecret1", 5000)])
        result = validate(fleet)
        assert any("VLAN 5000 out of range" in e for e in result.errors)

    def test_duplicate_templates(self):
        """A deployment SSID may be defined only once."""
        fleet = capsman_fleet(templates=[home_template(), home_template()])
        result = validate(fleet)
        assert any("defined more than once" in e for e in result.errors)

    def test_standalone_needs_ssids(self):
        """A standalone device with nothing to broadcast is rejected."""
        fleet = FleetConfig(devices=[make_device(1, "ap.lan")])
        result = validate(fleet)
        assert "Device 1: No SSIDs defined" in result.errors

    def test_duplicate_identity(self):
        """Two devices cannot share an identity."""
        fleet = capsman_fleet()
        fleet.devices[2].identity = "north"
        result = validate(fleet)
        assert any("identity 'north' already used" in e for e in result.errors)

    def test_lock_valid(self):
        """A lock to a fleet AP passes."""
        assert validate(capsman_fleet(locks=[lock()])).valid

    def test_lock_bad_mac(self):
        """Malformed MACs are rejected."""
        result = validate(capsman_fleet(locks=[lock(mac="AA:BB:CC")]))
        assert any("invalid MAC" in e for e in result.errors)

    def test_lock_unknown_target(self):
        """The target AP must be in the fleet."""
        result = validate(capsman_fleet(locks=[lock(target="attic")]))
        assert any("'attic' is not in the fleet" in e for e in result.errors)

    def test_lock_unserved_ssid(self):
        """A lock to an SSID nobody serves is rejected."""
        result = validate(capsman_fleet(locks=[lock(ssid="Office")]))
        assert any("'Office' is not served" in e for e in result.errors)

    def test_lock_duplicate_mac(self):
        """A MAC can only be locked once."""
        result = validate(capsman_fleet(locks=[lock(), lock(target="south")]))
        assert any("already locked" in e for e in result.errors)

    def test_lock_outside_capsman_warns(self):
        """Locks in a standalone fleet only warn."""
        device = make_device(1, "north.lan", locked_devices=[lock()])
        result = validate(FleetConfig(devices=[device], ssids=[home_template()]))
        assert result.valid
        assert any("only enforced in controller deployments" in w for w in result.warnings)

    def test_ensure_valid_raises_with_all_errors(self):
        """ensure_valid raises once, carrying every error."""
        fleet = capsman_fleet(templates=[SsidTemplate("Home", "short", 5000)])
        with pytest.raises(FleetValidationError) as exc_info:
            FleetValidator(SsidResolver(fleet.ssids)).ensure_valid(fleet)
        errors = exc_info.value.result.errors
        assert any("at least 8" in e for e in errors)
        assert any("out of range" in e for e in errors)
