"""Fleet inventory loaded from a YAML declaration.

The document looks like::

    country: US
    syslog: {server: 10.0.0.5, topics: [wireless, info]}
    capsmanVlan: {vlan: 100, network: 10.252.50.0/24}
    ssids:
      - {ssid: Home, passphrase: secret, vlan: 10, roaming: {fastTransition: true}}
    devices:
      - device: {host: ctrl.lan, username: admin, password: x}
        role: controller
        capsman: {vlan: {address: 10.252.50.1}}
      - device: {host: north.lan, username: admin}
        role: cap
        capsman: {controllerAddresses: [ctrl.lan]}
        ssids: [{ssid: Home, bands: [2.4GHz, 5GHz]}]
        lockedDevices: [{mac: "aa:bb:cc:dd:ee:ff", hostname: tv}]

Each device entry is normalized once into a canonical ``DeviceConfig``.
Older documents put the same settings in other places (``cap.*``,
top-level ``capsmanAddress``, ``wifi`` band blocks); those are folded in
here so nothing downstream has to know about them.
"""
import logging
from pathlib import Path
from typing import Any, Optional

import yaml

from .schema import (
    Band,
    BandSettings,
    BondSpec,
    CapsmanSettings,
    DeviceConfig,
    DeviceRole,
    FleetConfig,
    LockedDeviceSpec,
    ManagementInterface,
    RoamingPolicy,
    SsidBinding,
    SsidTemplate,
    SyslogTarget,
)

logger = logging.getLogger(__name__)


class FleetDocumentError(ValueError):
    """The fleet document cannot be turned into a fleet model."""


def _pick(data: dict, *keys: str, default: Any = None) -> Any:
    """First present key out of camelCase/snake_case spellings."""
    for key in keys:
        if key in data and data[key] is not None:
            return data[key]
    return default


def _as_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ("yes", "true", "1", "on")
    return bool(value)


def _as_int(value: Any, what: str) -> Optional[int]:
    if value is None or value == "":
        return None
    try:
        return int(value)
    except (TypeError, ValueError) as e:
        raise FleetDocumentError(f"{what}: expected an integer, got {value!r}") from e


def parse_roaming(data: Optional[dict]) -> RoamingPolicy:
    data = data or {}
    return RoamingPolicy(
        fast_transition=_as_bool(_pick(data, "fastTransition", "fast_transition", default=False)),
        rrm=_as_bool(data.get("rrm", False)),
        wnm=_as_bool(data.get("wnm", False)),
        transition_threshold=_as_int(
            _pick(data, "transitionThreshold", "transition_threshold", default=-80),
            "roaming.transitionThreshold",
        ),
    )


def parse_bands(raw: Any, where: str) -> list[Band]:
    if raw is None:
        return []
    if isinstance(raw, str):
        raw = [raw]
    bands: list[Band] = []
    for value in raw:
        try:
            band = Band.parse(value)
        except ValueError as e:
            raise FleetDocumentError(f"{where}: {e}") from e
        if band not in bands:
            bands.append(band)
    return bands


def parse_template(data: dict, index: int) -> SsidTemplate:
    where = f"ssids[{index}]"
    if not isinstance(data, dict) or not data.get("ssid"):
        raise FleetDocumentError(f"{where}: missing ssid")
    template = SsidTemplate(
        ssid=str(data["ssid"]),
        passphrase=str(data.get("passphrase") or ""),
        vlan=_as_int(data.get("vlan"), f"{where}.vlan") or 0,
        roaming=parse_roaming(data.get("roaming")),
    )
    bands = parse_bands(data.get("bands"), where)
    if bands:
        template.bands = bands
    return template


def parse_binding(data: Any, where: str) -> SsidBinding:
    if isinstance(data, str):
        return SsidBinding(ssid=data)
    if not isinstance(data, dict) or not data.get("ssid"):
        raise FleetDocumentError(f"{where}: missing ssid")
    passphrase = data.get("passphrase")
    return SsidBinding(
        ssid=str(data["ssid"]),
        bands=parse_bands(data.get("bands"), where),
        passphrase=None if passphrase is None else str(passphrase),
        vlan=_as_int(data.get("vlan"), f"{where}.vlan"),
        roaming=parse_roaming(data["roaming"]) if "roaming" in data else None,
    )


def parse_radios(wifi: dict, radios: dict) -> dict[Band, BandSettings]:
    result: dict[Band, BandSettings] = {}
    for source in (wifi, radios):
        for key, value in (source or {}).items():
            if not isinstance(value, dict):
                continue
            try:
                band = Band.parse(key)
            except ValueError:
                continue
            result[band] = BandSettings(
                channel=_as_int(value.get("channel"), f"{key}.channel"),
                width=value.get("width"),
                tx_power=_as_int(_pick(value, "txPower", "tx_power"), f"{key}.txPower"),
            )
    return result


def parse_management(raw: Any) -> list[ManagementInterface]:
    if raw is None:
        return ["ether1"]
    result: list[ManagementInterface] = []
    for item in raw:
        if isinstance(item, dict) and item.get("bond"):
            result.append(BondSpec(members=[str(m) for m in item["bond"]],
                                   name=str(item.get("name", "bond1"))))
        else:
            result.append(str(item))
    return result


def parse_syslog(data: Optional[dict]) -> Optional[SyslogTarget]:
    if not data or not data.get("server"):
        return None
    topics = data.get("topics") or ["wireless"]
    return SyslogTarget(
        server=str(data["server"]),
        port=_as_int(data.get("port"), "syslog.port") or 514,
        topics=[str(t) for t in topics],
    )


def parse_capsman(entry: dict, deployment_vlan: Optional[dict]) -> CapsmanSettings:
    """Fold the unified ``capsman`` block and its legacy spellings together."""
    capsman = entry.get("capsman") or {}
    legacy = entry.get("cap") or {}
    vlan = capsman.get("vlan") or {}
    legacy_vlan = legacy.get("capsmanVlan") or {}
    shared = deployment_vlan or {}

    return CapsmanSettings(
        vlan_id=_as_int(
            vlan.get("id") or legacy_vlan.get("vlan") or shared.get("vlan") or shared.get("id"),
            "capsman.vlan.id",
        ),
        network=vlan.get("network") or legacy_vlan.get("network") or shared.get("network"),
        address=vlan.get("address") or legacy_vlan.get("address") or entry.get("capsmanAddress"),
        certificate=str(_pick(capsman, "certificate", default=legacy.get("certificate", "auto"))),
        require_peer_certificate=_as_bool(
            _pick(capsman, "requirePeerCertificate", "require_peer_certificate",
                  default=legacy.get("requirePeerCertificate", False))
        ),
    )


def parse_device(
    entry: dict,
    index: int,
    defaults: dict,
    country: Optional[str],
    syslog: Optional[SyslogTarget],
    deployment_vlan: Optional[dict],
) -> DeviceConfig:
    """Normalize one device entry into a DeviceConfig."""
    merged = dict(defaults)
    merged.update(entry)
    conn = dict(defaults.get("device") or {})
    conn.update(entry.get("device") or {})

    role_raw = str(merged.get("role", "standalone")).lower()
    try:
        role = DeviceRole(role_raw)
    except ValueError as e:
        raise FleetDocumentError(f"devices[{index}]: unknown role '{role_raw}'") from e

    capsman = merged.get("capsman") or {}
    legacy_cap = merged.get("cap") or {}
    controllers = _pick(capsman, "controllerAddresses", "controller_addresses") or \
        _pick(legacy_cap, "controllerAddresses", "controller_addresses") or []

    wifi = merged.get("wifi") or {}
    bindings = [
        parse_binding(item, f"devices[{index}].ssids[{i}]")
        for i, item in enumerate(merged.get("ssids") or [])
    ]

    device = DeviceConfig(
        index=index,
        host=str(conn.get("host") or merged.get("host") or ""),
        username=str(conn.get("username") or merged.get("username") or ""),
        password=conn.get("password") or merged.get("password"),
        password_env=str(_pick(conn, "password_env", "passwordEnv",
                               default=merged.get("password_env", "WAP_FLEET_PASSWORD"))),
        type=str(merged.get("type", "routeros")),
        port=_as_int(conn.get("port") or merged.get("port"), "device.port") or 22,
        timeout=_as_int(conn.get("timeout") or merged.get("timeout"), "device.timeout") or 30,
        role=role,
        identity=merged.get("identity"),
        management_interfaces=parse_management(
            _pick(merged, "managementInterfaces", "management_interfaces")
        ),
        disabled_interfaces=[str(i) for i in
                             _pick(merged, "disabledInterfaces", "disabled_interfaces", default=[])],
        radios=parse_radios(wifi, merged.get("radios") or {}),
        ssids=bindings,
        controller_addresses=[str(a) for a in controllers],
        capsman=parse_capsman(merged, deployment_vlan),
        igmp_snooping=_as_bool(_pick(merged, "igmpSnooping", "igmp_snooping", default=False)),
        country=wifi.get("country") or merged.get("country") or country,
        syslog=syslog,
    )

    for i, lock in enumerate(_pick(merged, "lockedDevices", "locked_devices", default=[])):
        if not isinstance(lock, dict) or not lock.get("mac"):
            raise FleetDocumentError(f"devices[{index}].lockedDevices[{i}]: missing mac")
        device.locked_devices.append(LockedDeviceSpec(
            mac=str(lock["mac"]).upper(),
            name=str(lock.get("hostname") or lock.get("name") or lock["mac"]),
            target_identity=str(lock.get("lockTo") or device.effective_identity),
            ssid=lock.get("ssid"),
        ))
    return device


def parse_fleet(document: dict) -> FleetConfig:
    """Build a FleetConfig from an already-loaded YAML mapping."""
    if not isinstance(document, dict):
        raise FleetDocumentError("Fleet document must be a mapping")
    raw_devices = document.get("devices")
    if not isinstance(raw_devices, list):
        raise FleetDocumentError('Fleet document must contain a "devices" list')

    country = document.get("country")
    syslog = parse_syslog(document.get("syslog"))
    deployment_vlan = document.get("capsmanVlan") or document.get("capsman_vlan")
    defaults = document.get("defaults") or {}

    fleet = FleetConfig(
        ssids=[parse_template(s, i) for i, s in enumerate(document.get("ssids") or [])],
        country=country,
        syslog=syslog,
        swapped_boards=[str(b).lower() for b in
                        _pick(document, "swappedBoards", "swapped_boards", default=[])],
    )
    for index, entry in enumerate(raw_devices, start=1):
        if not isinstance(entry, dict):
            raise FleetDocumentError(f"devices[{index}]: expected a mapping")
        fleet.devices.append(
            parse_device(entry, index, defaults, country, syslog, deployment_vlan)
        )
    return fleet


class FleetInventory:
    """Loads and normalizes the fleet declaration."""

    def __init__(self, config_path: Optional[str] = None):
        self.config_path = config_path or self._find_config()
        self._document: dict = {}
        self.fleet = FleetConfig()
        self._load_config()

    def _find_config(self) -> str:
        """Find the fleet.yaml config file."""
        search_paths = [
            Path.cwd() / "configs" / "fleet.yaml",
            Path.cwd() / "fleet.yaml",
            Path.home() / ".config" / "wap-fleet" / "fleet.yaml",
            Path("/etc/wap-fleet/fleet.yaml"),
        ]

        for path in search_paths:
            if path.exists():
                return str(path)

        raise FileNotFoundError(
            "Could not find fleet.yaml. Create one in ./configs/fleet.yaml"
        )

    def _load_config(self) -> None:
        """Load the YAML configuration."""
        with open(self.config_path) as f:
            self._document = yaml.safe_load(f) or {}
        self.fleet = parse_fleet(self._document)
        logger.info(
            f"Loaded {len(self.fleet.devices)} device(s) from {self.config_path} "
            f"({len(self.fleet.ssids)} shared SSID(s))"
        )

    def get_device(self, index: int) -> DeviceConfig:
        """Get a device by its 1-based position in the document."""
        for device in self.fleet.devices:
            if device.index == index:
                return device
        raise KeyError(f"Unknown device index: {index}")
