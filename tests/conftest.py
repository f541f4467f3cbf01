"""Shared fixtures: an in-memory RouterOS device.

``FakeRouterOS`` records every command it is sent. WiFi interfaces and
access-list entries are kept as live state so renames, virtual
interfaces and rule reconciliation behave like on a device; every other
read is answered from canned text registered with ``respond()``.
"""
import re
from typing import Callable, Optional, Union

import pytest

from wap_fleet.config.schema import (
    Band,
    DeviceConfig,
    DeviceRole,
    FleetConfig,
    LockedDeviceSpec,
    SsidTemplate,
)
from wap_fleet.config_engine.parser import PROPERTY, unquote
from wap_fleet.config_engine.vocabulary import quote
from wap_fleet.devices.base import CommandError, DeviceSession

WIFI = "/interface/wifi"

QCOM_PACKAGES = " 0   name=routeros version=7.15.3\n 1   name=wifi-qcom version=7.15.3"
WAVE2_PACKAGES = " 0   name=routeros version=7.12\n 1   name=wifiwave2 version=7.12"
RADIO_TABLE = (
    " 0   interface=wifi1 bands=2ghz-g,2ghz-n,2ghz-ax\n"
    " 1   interface=wifi2 bands=5ghz-a,5ghz-n,5ghz-ac,5ghz-ax"
)
SWAPPED_RADIO_TABLE = (
    " 0   interface=wifi1 bands=5ghz-a,5ghz-n,5ghz-ac,5ghz-ax\n"
    " 1   interface=wifi2 bands=2ghz-g,2ghz-n,2ghz-ax"
)

Response = Union[str, Callable[[str], str]]


def _props(text: str) -> dict[str, str]:
    return {m.group(1): unquote(m.group(2)) for m in PROPERTY.finditer(text)}


class FakeRouterOS(DeviceSession):
    """In-memory RouterOS session double."""

    def __init__(self, host: str, journal: Optional[list] = None, path: str = WIFI):
        super().__init__(host)
        self.path = path
        self.commands: list[str] = []
        self.journal = journal if journal is not None else []
        self.interfaces: list[dict] = []
        self.rules: list[dict] = []
        self.responses: list[tuple[re.Pattern, Response]] = []
        self.failures: list[tuple[re.Pattern, str]] = []
        self.opened = 0
        self.closed = 0

    # --- Test setup ---

    def respond(self, pattern: str, output: Response) -> "FakeRouterOS":
        """Answer commands matching ``pattern``; later registrations win."""
        self.responses.insert(0, (re.compile(pattern), output))
        return self

    def fail(self, pattern: str, output: str) -> "FakeRouterOS":
        """Make commands matching ``pattern`` fail with ``output``."""
        self.failures.append((re.compile(pattern), output))
        return self

    def add_interface(self, name: str, master: Optional[str] = None, ssid: Optional[str] = None,
                      comment: str = "", default_name: Optional[str] = None,
                      disabled: bool = False) -> "FakeRouterOS":
        self.interfaces.append({
            "name": name, "master": master, "ssid": ssid, "comment": comment,
            "default_name": default_name, "disabled": disabled,
        })
        return self

    def add_rule(self, mac: str, interface: str, action: str, comment: str = "") -> "FakeRouterOS":
        self.rules.append({"mac": mac, "interface": interface, "action": action, "comment": comment})
        return self

    # --- Observations ---

    @property
    def writes(self) -> list[str]:
        """Commands that change state (everything except prints)."""
        return [c for c in self.commands if " print" not in c]

    def sent(self, fragment: str) -> list[str]:
        return [c for c in self.commands if fragment in c]

    def interface(self, name: str) -> Optional[dict]:
        return next((i for i in self.interfaces if i["name"] == name), None)

    @property
    def interface_names(self) -> list[str]:
        return [i["name"] for i in self.interfaces]

    # --- Session contract ---

    async def open(self) -> None:
        self.opened += 1
        self._connected = True

    async def close(self) -> None:
        self.closed += 1
        self._connected = False

    async def execute(self, command: str) -> str:
        self.commands.append(command)
        self.journal.append((self.host, command))
        for pattern, output in self.failures:
            if pattern.search(command):
                raise CommandError(self.host, command, output)
        handled = self._emulate(command)
        if handled is not None:
            return handled
        for pattern, output in self.responses:
            if pattern.search(command):
                return output(command) if callable(output) else output
        return ""

    # --- Emulated menus ---

    def _render_interface(self, index: int, iface: dict) -> str:
        flag = "X" if iface["disabled"] else " "
        head = f" {index} {flag} "
        props = f'name={quote(iface["name"])}'
        if iface["default_name"]:
            props += f' default-name={quote(iface["default_name"])}'
        props += f' master-interface={iface["master"] or "none"}'
        if iface["ssid"]:
            props += f' configuration.ssid={quote(iface["ssid"])}'
        if iface["comment"]:
            return f"{head};;; {iface['comment']}\n        {props}"
        return f"{head}{props}"

    def _render_interfaces(self, interfaces: list[dict]) -> str:
        return "\n".join(self._render_interface(i, iface) for i, iface in enumerate(interfaces))

    def _render_rules(self) -> str:
        lines = []
        for i, rule in enumerate(self.rules):
            interface = rule["interface"] if rule["interface"].startswith("*") else quote(rule["interface"])
            body = f'mac-address={rule["mac"]} interface={interface} action={rule["action"]}'
            if rule["comment"]:
                lines.append(f" {i}   ;;; {rule['comment']}\n        {body}")
            else:
                lines.append(f" {i}   {body}")
        return "\n".join(lines)

    def _emulate(self, command: str) -> Optional[str]:
        p = re.escape(self.path)

        if re.fullmatch(rf"{p} print detail without-paging where master-interface", command):
            return self._render_interfaces([i for i in self.interfaces if i["master"]])
        if re.fullmatch(rf"{p} print (detail|terse) without-paging", command):
            return self._render_interfaces(self.interfaces)
        match = re.fullmatch(rf'{p} print terse where name="([^"]+)"', command)
        if match:
            return self._render_interfaces([i for i in self.interfaces if i["name"] == match.group(1)])

        match = re.fullmatch(rf'{p} set \[find (name|default-name)=("[^"]+"|\S+)\] (.*)', command)
        if match:
            key = "name" if match.group(1) == "name" else "default_name"
            target = unquote(match.group(2))
            iface = next((i for i in self.interfaces if i[key] == target), None)
            if iface is None:
                raise CommandError(self.host, command, "no such item")
            props = _props(match.group(3))
            if "name" in props:
                old, new = iface["name"], props["name"]
                if new != old and self.interface(new):
                    raise CommandError(self.host, command, "failure: already have interface with such name")
                iface["name"] = new
                for other in self.interfaces:
                    if other["master"] == old:
                        other["master"] = new
            if "comment" in props:
                iface["comment"] = props["comment"]
            if "configuration.ssid" in props:
                iface["ssid"] = props["configuration.ssid"]
            if "disabled" in props:
                iface["disabled"] = props["disabled"] == "yes"
            return ""

        match = re.fullmatch(rf"{p} add (.*)", command)
        if match:
            props = _props(match.group(1))
            if self.interface(props["name"]):
                raise CommandError(self.host, command, "failure: already have interface with such name")
            self.add_interface(props["name"], master=props.get("master-interface"))
            return ""

        match = re.fullmatch(rf'{p} remove \[find name="([^"]+)"\]', command)
        if match:
            self.interfaces = [i for i in self.interfaces if i["name"] != match.group(1)]
            return ""

        if re.fullmatch(rf"{p}/access-list print detail without-paging", command):
            return self._render_rules()
        match = re.fullmatch(rf"{p}/access-list add (.*)", command)
        if match:
            props = _props(match.group(1))
            self.add_rule(props["mac-address"], props["interface"], props["action"], props.get("comment", ""))
            return ""
        match = re.fullmatch(
            rf'{p}/access-list remove \[find mac-address=(\S+) interface=("[^"]*"|\S+) action=(\w+)\]',
            command,
        )
        if match:
            mac, interface, action = match.group(1), unquote(match.group(2)), match.group(3)
            self.rules = [
                r for r in self.rules
                if not (r["mac"] == mac and r["interface"] == interface and r["action"] == action)
            ]
            return ""
        return None


def healthy_ap(host: str, journal: Optional[list] = None, radios: str = RADIO_TABLE,
               board: str = "hAP ax^2", packages: str = QCOM_PACKAGES) -> FakeRouterOS:
    """A RouterOS AP with two local radios that answers every read sensibly."""
    fake = FakeRouterOS(host, journal)
    fake.add_interface("wifi1", default_name="wifi1")
    fake.add_interface("wifi2", default_name="wifi2")
    fake.respond(r'^/system package print terse where name~"wifi"$', packages)
    fake.respond(r"^/interface ethernet print detail",
                 lambda cmd: ' 0   name="ether1" default-name="ether1" orig-mac-address=48:A9:8A:00:00:01')
    fake.respond(r"^/ip dhcp-client print detail", " 0   interface=bridge status=bound address=10.0.0.20/24")
    fake.respond(rf"^{WIFI}/radio print", radios)
    fake.respond(r"^/system resource print$", f"       uptime: 1d\n   board-name: {board}\n")
    fake.respond(rf"^{WIFI}/capsman print$", "              enabled: yes\n  ca-certificate: auto\n")
    fake.respond(rf"^{WIFI}/cap print$", "                enabled: yes\n  caps-man-addresses: 10.0.0.1\n")
    return fake


class FakeFleet:
    """Session factory handing out one FakeRouterOS per host."""

    def __init__(self):
        self.journal: list[tuple[str, str]] = []
        self.devices: dict[str, FakeRouterOS] = {}

    def add(self, host: str, **kwargs) -> FakeRouterOS:
        fake = healthy_ap(host, self.journal, **kwargs)
        self.devices[host] = fake
        return fake

    def __getitem__(self, host: str) -> FakeRouterOS:
        return self.devices[host]

    def __call__(self, config: DeviceConfig) -> FakeRouterOS:
        return self.devices[config.host]

    def first_index(self, host: str, fragment: str = "") -> int:
        """Position in the journal of the first matching command to ``host``."""
        for i, (h, command) in enumerate(self.journal):
            if h == host and fragment in command:
                return i
        raise AssertionError(f"no command to {host} containing {fragment!r}")

    def last_index(self, host: str, fragment: str = "") -> int:
        found = [i for i, (h, command) in enumerate(self.journal) if h == host and fragment in command]
        if not found:
            raise AssertionError(f"no command to {host} containing {fragment!r}")
        return found[-1]


# --- Fleet builders ---

def make_device(index: int, host: str, role: DeviceRole = DeviceRole.STANDALONE, **kwargs) -> DeviceConfig:
    kwargs.setdefault("username", "admin")
    kwargs.setdefault("password", "routerpass")
    kwargs.setdefault("management_interfaces", ["ether1"])
    if role == DeviceRole.CAP:
        kwargs.setdefault("controller_addresses", ["10.0.0.1"])
    return DeviceConfig(index=index, host=host, role=role, **kwargs)


def home_template(**kwargs) -> SsidTemplate:
    return SsidTemplate(ssid="Home", passphrase="homesecret1", vlan=10, **kwargs)


def guest_template() -> SsidTemplate:
    return SsidTemplate(ssid="Guest", passphrase="guestsecret", vlan=20, bands=[Band.BAND_2G])


def capsman_fleet(templates=None, locks=None) -> FleetConfig:
    """Controller ``ctrl`` plus CAPs ``north`` and ``south``."""
    north = make_device(2, "north.lan", DeviceRole.CAP, locked_devices=list(locks or []))
    return FleetConfig(
        devices=[
            make_device(1, "ctrl.lan", DeviceRole.CONTROLLER),
            north,
            make_device(3, "south.lan", DeviceRole.CAP),
        ],
        ssids=list(templates) if templates is not None else [home_template()],
    )


def attach_caps(controller: FakeRouterOS, *identities: str) -> None:
    """Interfaces the controller shows once CAPs have connected."""
    for identity in identities:
        controller.add_interface(f"{identity}-2g", comment="managed by CAPsMAN")
        controller.add_interface(f"{identity}-5g", comment="managed by CAPsMAN")


def lock(mac: str = "AA:BB:CC:DD:EE:FF", target: str = "north", ssid: Optional[str] = None) -> LockedDeviceSpec:
    return LockedDeviceSpec(mac=mac, name="tv", target_identity=target, ssid=ssid)


@pytest.fixture
def fleet_sessions() -> FakeFleet:
    sessions = FakeFleet()
    controller = sessions.add("ctrl.lan")
    attach_caps(controller, "north", "south")
    sessions.add("north.lan")
    sessions.add("south.lan")
    return sessions
