"""State extraction from RouterOS print output.

Pure functions: text in, typed records out. Handles the numbered entry
layout shared by ``print detail`` and ``print terse``::

    Flags: X - disabled
     0   ;;; managed by CAPsMAN
         name="north-2g" master-interface=none configuration.ssid="Home"
     1 X name="wifi2" default-name="wifi2" disabled=yes

and the ``key: value`` property sheets printed by singleton menus.
"""
import re
from dataclasses import dataclass, field
from typing import Iterator, Optional

from ..config.schema import Band
from .schema import AccessRule, Datapath, RadioInterface, RuleAction

ENTRY_START = re.compile(r"^\s*(\d+)\s+(.*)$")
PROPERTY = re.compile(r'([A-Za-z][\w.\-]*)=("(?:[^"\\]|\\.)*"|\S*)')
SHEET_LINE = re.compile(r"^\s*([\w.\-]+):\s*(.*?)\s*$")


@dataclass
class Entry:
    """One numbered entry from a print listing."""
    index: int
    flags: str = ""
    props: dict[str, str] = field(default_factory=dict)

    def get(self, key: str, default: Optional[str] = None) -> Optional[str]:
        return self.props.get(key, default)

    @property
    def disabled(self) -> bool:
        return "X" in self.flags or self.props.get("disabled") == "yes"


def unquote(value: str) -> str:
    """Strip RouterOS quoting and escapes."""
    if len(value) >= 2 and value[0] == '"' and value[-1] == '"':
        value = value[1:-1]
        return re.sub(r"\\(.)", r"\1", value)
    return value


def _blocks(text: str) -> Iterator[tuple[int, list[str]]]:
    current: Optional[tuple[int, list[str]]] = None
    for raw in text.splitlines():
        match = ENTRY_START.match(raw)
        if match:
            if current:
                yield current
            current = (int(match.group(1)), [match.group(2)])
        elif current is not None and raw.strip():
            current[1].append(raw.strip())
    if current:
        yield current


def parse_entries(text: str) -> list[Entry]:
    """Parse a numbered listing into entries."""
    entries = []
    for index, lines in _blocks(text or ""):
        comment = None
        body_parts = []
        for line in lines:
            before, sep, after = line.partition(";;;")
            if sep:
                comment = after.strip()
            body_parts.append(before)
        body = " ".join(body_parts)

        first = PROPERTY.search(body)
        prefix = body[:first.start()] if first else body
        flags = "".join(t for t in prefix.split() if t.isalpha() and t.isupper())

        props = {m.group(1): unquote(m.group(2)) for m in PROPERTY.finditer(body)}
        if comment is not None and "comment" not in props:
            props["comment"] = comment
        entries.append(Entry(index=index, flags=flags, props=props))
    return entries


def parse_properties(text: str) -> dict[str, str]:
    """Parse a ``key: value`` property sheet."""
    props = {}
    for line in (text or "").splitlines():
        match = SHEET_LINE.match(line)
        if match:
            props[match.group(1)] = unquote(match.group(2))
    return props


def _band_from_bands(value: str) -> Optional[Band]:
    lowered = value.lower()
    if "2ghz" in lowered:
        return Band.BAND_2G
    if "5ghz" in lowered:
        return Band.BAND_5G
    return None


# --- Typed extractors ---

def extract_radio_interfaces(text: str) -> list[RadioInterface]:
    """WiFi interfaces from ``<wifi> print detail without-paging``."""
    interfaces = []
    for entry in parse_entries(text):
        name = entry.get("name")
        if not name:
            continue
        master = entry.get("master-interface")
        interfaces.append(RadioInterface(
            name=name,
            master=master if master and master != "none" else None,
            disabled=entry.disabled,
            ssid=entry.get("configuration.ssid") or entry.get("ssid"),
            comment=entry.get("comment", "") or "",
            default_name=entry.get("default-name"),
        ))
    return interfaces


def extract_interface_names(text: str) -> list[str]:
    return [e.props["name"] for e in parse_entries(text) if "name" in e.props]


def extract_datapaths(text: str) -> list[Datapath]:
    datapaths = []
    for entry in parse_entries(text):
        name = entry.get("name")
        if not name:
            continue
        vlan = entry.get("vlan-id")
        datapaths.append(Datapath(
            name=name,
            vlan_id=int(vlan) if vlan and vlan.isdigit() else None,
            bridge=entry.get("bridge"),
        ))
    return datapaths


def extract_access_rules(text: str) -> list[AccessRule]:
    """Access-list entries. Entries without a MAC or interface are skipped."""
    rules = []
    for entry in parse_entries(text):
        mac = entry.get("mac-address")
        interface = entry.get("interface")
        action = entry.get("action")
        if not mac or not interface or action not in ("accept", "reject"):
            continue
        rules.append(AccessRule(
            mac=mac,
            interface=interface,
            action=RuleAction(action),
            comment=entry.get("comment", "") or "",
        ))
    return rules


def extract_radio_bands(text: str) -> dict[str, Band]:
    """Interface to band map from ``<wifi>/radio print detail``."""
    bands = {}
    for entry in parse_entries(text):
        interface = entry.get("interface")
        band = _band_from_bands(entry.get("bands", "") or "")
        if interface and band:
            bands[interface] = band
    return bands


def extract_remote_cap_boards(text: str) -> dict[str, str]:
    """CAP identity to lower-cased board name from ``<capsman>/remote-cap``."""
    boards = {}
    for entry in parse_entries(text):
        identity = entry.get("identity")
        board = entry.get("board") or entry.get("board-name")
        if identity and board:
            boards[identity] = board.lower()
    return boards


def extract_board_name(text: str) -> Optional[str]:
    """Board name from ``/system resource print``."""
    board = parse_properties(text).get("board-name")
    return board.lower() if board else None


def extract_bridge_ports(text: str) -> set[str]:
    return {e.props["interface"] for e in parse_entries(text) if "interface" in e.props}


def extract_orig_mac(text: str) -> Optional[str]:
    for entry in parse_entries(text):
        mac = entry.get("orig-mac-address") or entry.get("mac-address")
        if mac:
            return mac.upper()
    return None


def extract_package_names(text: str) -> list[str]:
    return [e.props["name"] for e in parse_entries(text) if "name" in e.props]


def dhcp_client_bound(text: str) -> bool:
    for entry in parse_entries(text):
        if entry.get("status") == "bound":
            return True
    return parse_properties(text).get("status") == "bound"


def service_enabled(text: str) -> bool:
    """True when a CAPsMAN/CAP menu reports ``enabled: yes``."""
    if parse_properties(text).get("enabled") == "yes":
        return True
    return bool(re.search(r"\benabled=yes\b", text or ""))


def count_managed_interfaces(text: str) -> int:
    """Interfaces currently bound to the controller."""
    return sum(
        1 for e in parse_entries(text)
        if "managed by capsman" in (e.get("comment", "") or "").lower()
    )
