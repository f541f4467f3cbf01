"""Tests for per-device, role-aware configuration."""
import asyncio
import socket

import pytest

from wap_fleet.config.schema import Band, CapsmanSettings, DeviceRole, ResolvedSsid, RoamingPolicy, SyslogTarget
from wap_fleet.config_engine.configurer import DeviceConfigurer, ValidationGateError, cap_identity_map
from wap_fleet.config_engine.schema import RolloutOptions
from wap_fleet.config_engine.vocabulary import CapabilityError

from conftest import SWAPPED_RADIO_TABLE, WAVE2_PACKAGES, FakeFleet, attach_caps, make_device

HOME = ResolvedSsid("Home", "homesecret1", 10, RoamingPolicy(), (Band.BAND_2G, Band.BAND_5G))
GUEST = ResolvedSsid("Guest", "guestsecret", 20, RoamingPolicy(), (Band.BAND_2G,))


def configurer(sessions: FakeFleet) -> DeviceConfigurer:
    return DeviceConfigurer(RolloutOptions.immediate(), session_factory=sessions)


class TestStandalone:
    """Tests for standalone access points."""

    @pytest.fixture
    def sessions(self):
        sessions = FakeFleet()
        sessions.add("ap.lan")
        return sessions

    @pytest.mark.asyncio
    async def test_ssids_on_radios(self, sessions):
        """First SSID per band on the radio, further ones on virtuals."""
        device = make_device(1, "ap.lan")
        await configurer(sessions).configure_standalone(device, [HOME, GUEST])

        fake = sessions["ap.lan"]
        assert fake.interface("wifi1")["ssid"] == "Home"
        assert fake.interface("wifi2")["ssid"] == "Home"
        virtual = fake.interface("wifi1-ssid2")
        assert virtual["master"] == "wifi1"
        assert virtual["ssid"] == "Guest"
        assert fake.interface("wifi2-ssid2") is None
        assert fake.opened == fake.closed == 1

    @pytest.mark.asyncio
    async def test_managed_wap_conversion(self, sessions):
        """Router defaults are stripped and the band is pinned."""
        await configurer(sessions).configure_standalone(make_device(1, "ap.lan"), [HOME])

        fake = sessions["ap.lan"]
        assert fake.sent('/system identity set name="ap"')
        assert fake.sent("/ip dhcp-server remove [find]")
        assert fake.sent('/ip address remove [find address="192.168.88.1/24"]')
        assert fake.sent("/ip firewall nat remove [find]")
        assert fake.sent("/interface/wifi/registration-table remove [find]")
        assert fake.sent("channel.band=2ghz-ax")
        assert fake.sent("channel.band=5ghz-ax")

    @pytest.mark.asyncio
    async def test_management_before_wifi(self, sessions):
        """Management stays reachable: bridge and DHCP client come before any radio change."""
        await configurer(sessions).configure_standalone(make_device(1, "ap.lan"), [HOME])

        commands = sessions["ap.lan"].commands
        first_wifi = next(i for i, c in enumerate(commands) if "configuration.ssid" in c)
        assert commands.index("/interface bridge port add bridge=bridge interface=ether1") < first_wifi
        assert commands.index("/ip dhcp-client add interface=bridge disabled=no") < first_wifi

    @pytest.mark.asyncio
    async def test_virtuals_reconciled(self, sessions):
        """Re-running keeps existing virtuals; dropping an SSID removes its virtual."""
        device = make_device(1, "ap.lan")
        cfg = configurer(sessions)
        fake = sessions["ap.lan"]
        await cfg.configure_standalone(device, [HOME, GUEST])
        created = len(fake.sent(" add master-interface="))

        await cfg.configure_standalone(device, [HOME, GUEST])
        assert len(fake.sent(" add master-interface=")) == created

        await cfg.configure_standalone(device, [HOME])
        assert fake.interface("wifi1-ssid2") is None

    @pytest.mark.asyncio
    async def test_swapped_radios(self):
        """On a board with wifi1 at 5GHz the 2.4GHz-only SSID lands on wifi2."""
        sessions = FakeFleet()
        sessions.add("ap.lan", radios=SWAPPED_RADIO_TABLE)
        await configurer(sessions).configure_standalone(make_device(1, "ap.lan"), [HOME, GUEST])

        fake = sessions["ap.lan"]
        assert fake.interface("wifi2-ssid2")["ssid"] == "Guest"
        assert fake.interface("wifi1-ssid2") is None

    @pytest.mark.asyncio
    async def test_unused_band_disabled(self, sessions):
        """A radio with no SSID for its band is disabled."""
        await configurer(sessions).configure_standalone(make_device(1, "ap.lan"), [GUEST])
        assert sessions["ap.lan"].interface("wifi2")["disabled"]

    @pytest.mark.asyncio
    async def test_wifiwave2(self):
        """Devices on wifiwave2 are configured under its own menu."""
        sessions = FakeFleet()
        fake = sessions.add("ap.lan", packages=WAVE2_PACKAGES)
        await configurer(sessions).configure_standalone(make_device(1, "ap.lan"), [HOME])
        assert fake.sent("/interface/wifiwave2 set")
        assert fake.sent("security.authentication-types=wpa2-psk")

    @pytest.mark.asyncio
    async def test_no_wifi_package(self):
        """A device without a WiFi package fails with a capability error."""
        sessions = FakeFleet()
        fake = sessions.add("ap.lan", packages=" 0   name=routeros version=7.15")
        with pytest.raises(CapabilityError):
            await configurer(sessions).configure_standalone(make_device(1, "ap.lan"), [HOME])
        assert len(fake.sent('name~"wifi"')) == 3
        assert fake.closed == 1

    @pytest.mark.asyncio
    async def test_legacy_datapaths_removed(self, sessions):
        """Per-VLAN datapaths from older layouts are cleaned up."""
        sessions["ap.lan"].respond(
            r"datapath print", ' 0   name="wifi1-vlan10" vlan-id=10\n 1   name="custom" vlan-id=30'
        )
        await configurer(sessions).configure_standalone(make_device(1, "ap.lan"), [HOME])

        fake = sessions["ap.lan"]
        assert fake.sent('datapath remove [find name="wifi1-vlan10"]')
        assert not fake.sent('datapath remove [find name="custom"]')

    @pytest.mark.asyncio
    async def test_syslog(self, sessions):
        """Remote syslog replaces any previous action."""
        device = make_device(1, "ap.lan", syslog=SyslogTarget("10.0.0.5"))
        await configurer(sessions).configure_standalone(device, [HOME])
        fake = sessions["ap.lan"]
        assert fake.sent("remote=10.0.0.5 remote-port=514")
        assert fake.sent('/system logging add topics=wireless action="remotesyslog"')


class TestController:
    """Tests for the CAPsMAN controller."""

    @pytest.mark.asyncio
    async def test_enables_capsman(self):
        """CAPsMAN is enabled and radios allowed to be managed."""
        sessions = FakeFleet()
        fake = sessions.add("ctrl.lan")
        await configurer(sessions).configure_controller(make_device(1, "ctrl.lan", DeviceRole.CONTROLLER))
        assert fake.sent("/interface/wifi/capsman set enabled=yes ca-certificate=auto")
        assert fake.sent("configuration.manager=capsman-or-local")

    @pytest.mark.asyncio
    async def test_gate_fails(self):
        """A controller whose service stays disabled fails the gate."""
        sessions = FakeFleet()
        sessions.add("ctrl.lan").respond(r"capsman print$", "  enabled: no\n")
        with pytest.raises(ValidationGateError):
            await configurer(sessions).configure_controller(make_device(1, "ctrl.lan", DeviceRole.CONTROLLER))

    @pytest.mark.asyncio
    async def test_capsman_vlan(self):
        """A control VLAN gets an interface, an address and firewall rules."""
        sessions = FakeFleet()
        fake = sessions.add("ctrl.lan")
        device = make_device(
            1, "ctrl.lan", DeviceRole.CONTROLLER,
            capsman=CapsmanSettings(vlan_id=100, network="10.252.50.0/24", address="10.252.50.1"),
        )
        await configurer(sessions).configure_controller(device)
        assert fake.sent("/interface vlan add name=capsman-vlan vlan-id=100 interface=bridge")
        assert fake.sent("/ip address add address=10.252.50.1/24 interface=capsman-vlan")
        assert fake.sent("dst-port=5246-5247")


class TestCap:
    """Tests for joining CAPs to the controller."""

    @pytest.mark.asyncio
    async def test_joins_controller(self):
        """CAP mode points at the controller over the bridge."""
        sessions = FakeFleet()
        fake = sessions.add("north.lan")
        await configurer(sessions).configure_cap(make_device(2, "north.lan", DeviceRole.CAP))
        reset = fake.commands.index("/interface/wifi/cap set enabled=no")
        joined = fake.commands.index(
            "/interface/wifi/cap set enabled=yes caps-man-addresses=10.0.0.1 "
            "discovery-interfaces=bridge slaves-static=yes"
        )
        assert reset < joined

    @pytest.mark.asyncio
    async def test_joins_over_vlan(self):
        """With a control VLAN, discovery runs on it."""
        sessions = FakeFleet()
        fake = sessions.add("north.lan")
        device = make_device(
            2, "north.lan", DeviceRole.CAP,
            capsman=CapsmanSettings(vlan_id=100, address="10.252.50.2"),
        )
        await configurer(sessions).configure_cap(device)
        assert fake.sent("discovery-interfaces=capsman-vlan")

    @pytest.mark.asyncio
    async def test_gate_fails(self):
        """A CAP that does not come up enabled fails."""
        sessions = FakeFleet()
        sessions.add("north.lan").respond(r"/cap print$", "  enabled: no\n")
        with pytest.raises(ValidationGateError):
            await configurer(sessions).configure_cap(make_device(2, "north.lan", DeviceRole.CAP))

    @pytest.mark.asyncio
    async def test_controller_name_resolved(self, monkeypatch):
        """Controller host names are resolved to addresses."""
        loop = asyncio.get_running_loop()

        async def fake_getaddrinfo(host, port, **kwargs):
            return [(socket.AF_INET, socket.SOCK_STREAM, 6, "", ("10.0.0.1", 0))]

        monkeypatch.setattr(loop, "getaddrinfo", fake_getaddrinfo)
        resolved = await configurer(FakeFleet()).resolve_controller_addresses(["ctrl.lan", "10.0.0.2"])
        assert resolved == ["10.0.0.1", "10.0.0.2"]

    @pytest.mark.asyncio
    async def test_unresolvable_controller(self, monkeypatch):
        """With no usable controller address the CAP is never touched."""
        loop = asyncio.get_running_loop()

        async def failing_getaddrinfo(host, port, **kwargs):
            raise socket.gaierror(-2, "Name or service not known")

        monkeypatch.setattr(loop, "getaddrinfo", failing_getaddrinfo)
        sessions = FakeFleet()
        fake = sessions.add("north.lan")
        device = make_device(2, "north.lan", DeviceRole.CAP, controller_addresses=["ctrl.lan"])
        with pytest.raises(ValidationGateError):
            await configurer(sessions).configure_cap(device)
        assert fake.opened == 0


class TestCapInterfaceBinding:
    """Tests for configuring CAP interfaces on the controller."""

    @pytest.mark.asyncio
    async def test_binds_each_cap(self):
        """Each CAP's interfaces carry that CAP's SSIDs."""
        sessions = FakeFleet()
        fake = sessions.add("ctrl.lan")
        attach_caps(fake, "north", "south")
        north = make_device(2, "north.lan", DeviceRole.CAP)
        south = make_device(3, "south.lan", DeviceRole.CAP)
        caps = cap_identity_map([north, south], {2: [HOME, GUEST], 3: [HOME]})

        await configurer(sessions).bind_cap_interfaces(make_device(1, "ctrl.lan", DeviceRole.CONTROLLER), caps)

        for name in ("north-2g", "north-5g", "south-2g", "south-5g"):
            assert fake.interface(name)["ssid"] == "Home"
        assert fake.interface("north-2g-ssid2")["ssid"] == "Guest"
        assert fake.interface("south-2g-ssid2") is None

    @pytest.mark.asyncio
    async def test_no_cap_interfaces_warns(self):
        """Nothing attached yet is a warning, not a failure."""
        sessions = FakeFleet()
        sessions.add("ctrl.lan")
        warnings = await configurer(sessions).bind_cap_interfaces(
            make_device(1, "ctrl.lan", DeviceRole.CONTROLLER), {}
        )
        assert any("No CAP interfaces" in w for w in warnings)

    @pytest.mark.asyncio
    async def test_unknown_cap_skipped(self):
        """Interfaces of an AP outside the fleet are left alone."""
        sessions = FakeFleet()
        fake = sessions.add("ctrl.lan")
        attach_caps(fake, "attic")
        warnings = await configurer(sessions).bind_cap_interfaces(
            make_device(1, "ctrl.lan", DeviceRole.CONTROLLER), {}
        )
        assert any("not in the fleet" in w for w in warnings)
        assert fake.interface("attic-2g")["ssid"] is None


class TestLocalFallback:
    """Tests for giving CAPs their own SSIDs."""

    @pytest.mark.asyncio
    async def test_virtual_bridge_ports(self):
        """Local virtuals join the bridge untagged on their SSID's VLAN."""
        sessions = FakeFleet()
        fake = sessions.add("north.lan")
        await configurer(sessions).configure_local_fallback(make_device(2, "north.lan", DeviceRole.CAP), [HOME, GUEST])

        assert fake.interface("wifi1-ssid2")["ssid"] == "Guest"
        assert fake.sent('/interface bridge port add bridge=bridge interface="wifi1-ssid2" pvid=20')
        assert fake.sent("/interface/wifi/cap set enabled=yes slaves-static=yes")

    @pytest.mark.asyncio
    async def test_rebind_timeout_warns(self):
        """Virtuals that never rebind produce one warning and no hang."""
        sessions = FakeFleet()
        sessions.add("north.lan")
        warnings = await configurer(sessions).configure_local_fallback(
            make_device(2, "north.lan", DeviceRole.CAP), [HOME, GUEST]
        )
        assert len([w for w in warnings if "not bound to the controller" in w]) == 1

    @pytest.mark.asyncio
    async def test_rebind_detected(self):
        """A virtual picked up by the controller ends the wait."""
        sessions = FakeFleet()
        fake = sessions.add("north.lan")

        def controller_picks_up(command):
            fake.interface("wifi1-ssid2")["comment"] = "managed by CAPsMAN"
            return ""

        fake.respond(r"cap set enabled=yes slaves-static=yes$", controller_picks_up)
        warnings = await configurer(sessions).configure_local_fallback(
            make_device(2, "north.lan", DeviceRole.CAP), [HOME, GUEST]
        )
        assert not any("not bound" in w for w in warnings)

    @pytest.mark.asyncio
    async def test_single_ssid_no_wait(self):
        """Without virtuals there is nothing to wait for."""
        sessions = FakeFleet()
        fake = sessions.add("north.lan")
        await configurer(sessions).configure_local_fallback(make_device(2, "north.lan", DeviceRole.CAP), [HOME])
        assert not fake.sent("where master-interface")
