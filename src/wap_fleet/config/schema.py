"""Canonical fleet data model.

The fleet document is normalized once into these dataclasses. Everything
downstream consumes only this form, never the raw YAML.
"""
import ipaddress
import os
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Union


class Band(str, Enum):
    """Wireless frequency range."""
    BAND_2G = "2.4GHz"
    BAND_5G = "5GHz"

    @property
    def suffix(self) -> str:
        """Interface name suffix used for CAP interfaces."""
        return "2g" if self is Band.BAND_2G else "5g"

    @property
    def default_radio(self) -> str:
        """Radio name by convention (wifi1 is 2.4GHz unless swapped)."""
        return "wifi1" if self is Band.BAND_2G else "wifi2"

    @property
    def routeros_band(self) -> str:
        return "2ghz-ax" if self is Band.BAND_2G else "5ghz-ax"

    @classmethod
    def parse(cls, value: Union[str, "Band"]) -> "Band":
        """Accept the spellings seen in fleet documents (2.4GHz, 2g, 5ghz...)."""
        if isinstance(value, Band):
            return value
        key = str(value).strip().lower().replace(" ", "")
        if key in ("2.4ghz", "2.4", "2g", "2ghz", "2.4g"):
            return cls.BAND_2G
        if key in ("5ghz", "5", "5g"):
            return cls.BAND_5G
        raise ValueError(f"Unknown band '{value}' (expected 2.4GHz or 5GHz)")

    @classmethod
    def from_suffix(cls, suffix: str) -> "Band":
        return cls.BAND_2G if suffix == "2g" else cls.BAND_5G


ALL_BANDS = (Band.BAND_2G, Band.BAND_5G)


class DeviceRole(str, Enum):
    """Role of a device in the fleet."""
    STANDALONE = "standalone"
    CONTROLLER = "controller"
    CAP = "cap"


@dataclass(frozen=True)
class RoamingPolicy:
    """Client roaming assistance for one SSID."""
    fast_transition: bool = False
    rrm: bool = False
    wnm: bool = False
    transition_threshold: int = -80

    @property
    def steering_enabled(self) -> bool:
        return self.rrm or self.wnm


@dataclass
class SsidTemplate:
    """Deployment-level network definition."""
    ssid: str
    passphrase: str
    vlan: int
    roaming: RoamingPolicy = field(default_factory=RoamingPolicy)
    bands: list[Band] = field(default_factory=lambda: list(ALL_BANDS))


@dataclass
class SsidBinding:
    """Device-level SSID entry.

    Reference style entries carry only ``ssid`` and ``bands``; legacy
    entries inline passphrase, vlan and roaming as well.
    """
    ssid: str
    bands: list[Band] = field(default_factory=list)
    passphrase: Optional[str] = None
    vlan: Optional[int] = None
    roaming: Optional[RoamingPolicy] = None

    @property
    def is_inline(self) -> bool:
        return self.passphrase is not None


@dataclass(frozen=True)
class ResolvedSsid:
    """An SSID ready to be pushed to a radio. Computed per rollout."""
    ssid: str
    passphrase: str
    vlan: int
    roaming: RoamingPolicy
    bands: tuple[Band, ...]

    def serves(self, band: Band) -> bool:
        return band in self.bands


@dataclass
class BandSettings:
    """Per-band radio overrides."""
    channel: Optional[int] = None
    width: Optional[str] = None
    tx_power: Optional[int] = None

    @property
    def is_empty(self) -> bool:
        return self.channel is None and self.width is None and self.tx_power is None


@dataclass
class BondSpec:
    """LACP bond used as a management uplink."""
    members: list[str]
    name: str = "bond1"


ManagementInterface = Union[str, BondSpec]


@dataclass
class LockedDeviceSpec:
    """Pin a client to one access point."""
    mac: str
    name: str
    target_identity: str
    ssid: Optional[str] = None


@dataclass
class SyslogTarget:
    """Remote log forwarding destination."""
    server: str
    port: int = 514
    topics: list[str] = field(default_factory=lambda: ["wireless"])


@dataclass
class CapsmanSettings:
    """Controller service and control-channel VLAN settings."""
    vlan_id: Optional[int] = None
    network: Optional[str] = None
    address: Optional[str] = None
    certificate: str = "auto"
    require_peer_certificate: bool = False

    @property
    def prefix_length(self) -> str:
        if self.network and "/" in self.network:
            return self.network.split("/", 1)[1]
        return "24"

    @property
    def has_vlan(self) -> bool:
        return self.vlan_id is not None and bool(self.address)


def hostname_from_host(host: str) -> Optional[str]:
    """Derive a device identity from its host.

    FQDNs give their first label, bare names are used as-is, and IP
    addresses give None.
    """
    try:
        ipaddress.ip_address(host)
        return None
    except ValueError:
        pass
    return host.split(".", 1)[0] if host else None


@dataclass
class DeviceConfig:
    """Canonical configuration for one access point."""
    index: int
    host: str
    username: str = ""
    password: Optional[str] = None
    password_env: str = "WAP_FLEET_PASSWORD"
    type: str = "routeros"
    port: int = 22
    timeout: int = 30
    role: DeviceRole = DeviceRole.STANDALONE
    identity: Optional[str] = None
    management_interfaces: list[ManagementInterface] = field(default_factory=list)
    disabled_interfaces: list[str] = field(default_factory=list)
    radios: dict[Band, BandSettings] = field(default_factory=dict)
    ssids: list[SsidBinding] = field(default_factory=list)
    locked_devices: list[LockedDeviceSpec] = field(default_factory=list)
    controller_addresses: list[str] = field(default_factory=list)
    capsman: CapsmanSettings = field(default_factory=CapsmanSettings)
    igmp_snooping: bool = False
    country: Optional[str] = None
    syslog: Optional[SyslogTarget] = None

    def get_password(self) -> str:
        """Get password from config or environment variable."""
        if self.password:
            return self.password
        return os.environ.get(self.password_env, "")

    @property
    def system_identity(self) -> Optional[str]:
        """Identity to set on the device, None when it should be left alone."""
        return self.identity or hostname_from_host(self.host)

    @property
    def effective_identity(self) -> str:
        """Name the rest of the fleet knows this AP by."""
        return self.system_identity or self.host

    def band_settings(self, band: Band) -> BandSettings:
        return self.radios.get(band, BandSettings())


@dataclass
class FleetConfig:
    """Whole fleet declaration after normalization."""
    devices: list[DeviceConfig] = field(default_factory=list)
    ssids: list[SsidTemplate] = field(default_factory=list)
    country: Optional[str] = None
    syslog: Optional[SyslogTarget] = None
    swapped_boards: list[str] = field(default_factory=list)

    @property
    def controllers(self) -> list[DeviceConfig]:
        return [d for d in self.devices if d.role == DeviceRole.CONTROLLER]

    @property
    def controller(self) -> Optional[DeviceConfig]:
        controllers = self.controllers
        return controllers[0] if controllers else None

    @property
    def caps(self) -> list[DeviceConfig]:
        return [d for d in self.devices if d.role == DeviceRole.CAP]

    @property
    def standalones(self) -> list[DeviceConfig]:
        return [d for d in self.devices if d.role == DeviceRole.STANDALONE]

    @property
    def is_capsman(self) -> bool:
        """True when any device takes part in the controller topology."""
        return any(d.role != DeviceRole.STANDALONE for d in self.devices)

    def template(self, name: str) -> Optional[SsidTemplate]:
        for tmpl in self.ssids:
            if tmpl.ssid == name:
                return tmpl
        return None
