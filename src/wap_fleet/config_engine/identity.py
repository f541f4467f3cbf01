"""Radio identity resolution.

Radio numbering is not consistent across hardware: on some boards
``wifi1`` is the 5GHz radio. When CAPs attach, the controller names
their interfaces ``<identity>-2g`` / ``<identity>-5g`` from that
numbering, so the names can lie about the band. This module works out
the real band of every radio and renames live interfaces (and the
virtual interfaces hanging off them) until names and bands agree.

Band sources, most trusted first:
1. the radio hardware table (``<wifi>/radio``)
2. a band marker a previous rename left in the interface comment
3. the swapped-board capability table, keyed by board name
4. the name itself (low confidence, logged)
"""
import logging
import re
from dataclasses import dataclass
from typing import Iterable, NamedTuple, Optional

from ..config.schema import ALL_BANDS, Band
from .executor import CommandFailed, IdempotentExecutor
from .parser import (
    extract_board_name,
    extract_interface_names,
    extract_radio_bands,
    extract_radio_interfaces,
    extract_remote_cap_boards,
)
from .schema import BandSource, RadioInterface, RenameStep
from .vocabulary import WifiVocabulary, quote

logger = logging.getLogger(__name__)

# Boards whose wifi1 radio is the 5GHz one
KNOWN_SWAPPED_BOARDS = (
    "cap ax",
    "capgi-5haxd2haxd",
    "cap ac",
    "capgi-5acd2nd",
)

BAND_MARKER = "wap-fleet:band="

CAP_INTERFACE = re.compile(r"^(?P<identity>.+)-(?P<suffix>2g|5g)(?:-ssid(?P<n>\d+))?$")
TEMP_INTERFACE = re.compile(r"^(?P<identity>.+?)-(?P<kind>swap|ssid-swap)-temp$")
LOCAL_RADIO = re.compile(r"^wifi\d+$")


class IdentityResolutionError(Exception):
    """A rename could not be verified on the device."""


@dataclass(frozen=True)
class SwappedRadioTable:
    """Data-only capability table of boards with swapped radio numbering."""
    patterns: tuple[str, ...] = KNOWN_SWAPPED_BOARDS

    def matches(self, board: Optional[str]) -> bool:
        if not board:
            return False
        lowered = board.lower()
        return any(p in lowered for p in self.patterns)

    def extend(self, patterns: Iterable[str]) -> "SwappedRadioTable":
        extra = tuple(p.lower() for p in patterns if p.lower() not in self.patterns)
        return SwappedRadioTable(self.patterns + extra)


class CapInterfaceName(NamedTuple):
    identity: str
    band: Band
    ssid_index: Optional[int]


def parse_cap_interface_name(name: str) -> Optional[CapInterfaceName]:
    """Split ``north-2g`` / ``north-5g-ssid2`` into its parts."""
    match = CAP_INTERFACE.match(name)
    if not match:
        return None
    n = match.group("n")
    return CapInterfaceName(
        identity=match.group("identity"),
        band=Band.from_suffix(match.group("suffix")),
        ssid_index=int(n) if n else None,
    )


def interface_identity(name: str) -> Optional[str]:
    """AP identity a controller-side CAP interface belongs to."""
    parsed = parse_cap_interface_name(name)
    if parsed:
        return parsed.identity
    temp = TEMP_INTERFACE.match(name)
    return temp.group("identity") if temp else None


def master_temp_name(identity: str) -> str:
    return f"{identity}-swap-temp"


def virtual_temp_name(identity: str) -> str:
    return f"{identity}-ssid-swap-temp"


def recorded_band(comment: str) -> Optional[Band]:
    if BAND_MARKER not in (comment or ""):
        return None
    value = comment.split(BAND_MARKER, 1)[1].split()[0]
    try:
        return Band.parse(value)
    except ValueError:
        return None


def plan_renames(desired: dict[str, str], occupied: Iterable[str], temp_name: str) -> list[RenameStep]:
    """Order renames so no step collides with a live name.

    Args:
        desired: current name -> wanted name, for interfaces that move
        occupied: every name currently in use on the device
        temp_name: scratch name used to break swap cycles

    Returns:
        Steps to apply in order; a two-way swap becomes A->temp, B->A, temp->B
    """
    pending = {cur: want for cur, want in desired.items() if cur != want}
    taken = set(occupied)
    steps: list[RenameStep] = []

    while pending:
        progressed = False
        for cur, want in list(pending.items()):
            if want in taken:
                continue
            steps.append(RenameStep(cur, want))
            taken.discard(cur)
            taken.add(want)
            del pending[cur]
            progressed = True
        if progressed:
            continue
        # Every move is blocked: a cycle. Park one interface on the temp name.
        if temp_name in taken:
            raise IdentityResolutionError(f"Temporary name {temp_name} is already in use")
        cur, want = next(iter(pending.items()))
        steps.append(RenameStep(cur, temp_name))
        taken.discard(cur)
        taken.add(temp_name)
        del pending[cur]
        pending[temp_name] = want
    return steps


class IdentityResolver:
    """Works out true radio bands and fixes interface names to match."""

    def __init__(self, executor: IdempotentExecutor, vocabulary: WifiVocabulary, table: SwappedRadioTable):
        self.executor = executor
        self.vocabulary = vocabulary
        self.table = table

    async def _radio_bands(self) -> dict[str, Band]:
        output = await self.executor.query_best_effort(
            f"{self.vocabulary.radio} print detail without-paging", "radio hardware table"
        )
        return extract_radio_bands(output or "")

    async def resolve_local_layout(self) -> dict[Band, str]:
        """Which local radio (wifi1/wifi2) carries which band on this device."""
        radio_bands = {
            name: band for name, band in (await self._radio_bands()).items()
            if LOCAL_RADIO.match(name)
        }
        layout: dict[Band, str] = {}
        for name, band in sorted(radio_bands.items()):
            layout.setdefault(band, name)
        if len(layout) == len(ALL_BANDS):
            logger.info(f"[{self.executor.device_id}] Radio layout from hardware table: "
                        f"2.4GHz={layout[Band.BAND_2G]}, 5GHz={layout[Band.BAND_5G]}")
            return layout

        output = await self.executor.query_best_effort("/system resource print", "board name")
        board = extract_board_name(output or "")
        if self.table.matches(board):
            logger.info(f"[{self.executor.device_id}] Board '{board}' has swapped radios (wifi1=5GHz)")
            return {Band.BAND_2G: "wifi2", Band.BAND_5G: "wifi1"}
        if not board:
            logger.warning(f"[{self.executor.device_id}] Radio layout unknown, assuming wifi1=2.4GHz")
        return {Band.BAND_2G: "wifi1", Band.BAND_5G: "wifi2"}

    async def discover_cap_interfaces(self) -> list[RadioInterface]:
        """Controller-side CAP interfaces with their detected bands."""
        output = await self.executor.query(f"{self.vocabulary.path} print detail without-paging")
        interfaces = [i for i in extract_radio_interfaces(output) if interface_identity(i.name)]
        if not interfaces:
            return []

        radio_bands = await self._radio_bands()
        boards_output = await self.executor.query_best_effort(
            f"{self.vocabulary.remote_cap} print detail without-paging", "remote CAP boards"
        )
        boards = extract_remote_cap_boards(boards_output or "")

        for iface in interfaces:
            if iface.is_virtual:
                continue
            self._detect_band(iface, radio_bands, boards)

        # A parked master from an interrupted swap takes the band its partner lacks
        for iface in interfaces:
            if iface.band is None and not iface.is_virtual:
                identity = interface_identity(iface.name)
                taken = {
                    o.band for o in interfaces
                    if o is not iface and not o.is_virtual and o.band
                    and interface_identity(o.name) == identity
                }
                free = [b for b in ALL_BANDS if b not in taken]
                if len(free) == 1:
                    iface.band = free[0]
                    iface.band_source = BandSource.NAMING_CONVENTION

        self._inherit_master_bands(interfaces)
        return interfaces

    def _detect_band(self, iface: RadioInterface, radio_bands: dict[str, Band], boards: dict[str, str]) -> None:
        if iface.name in radio_bands:
            iface.band, iface.band_source = radio_bands[iface.name], BandSource.RADIO_HARDWARE
            return
        marker = recorded_band(iface.comment)
        if marker:
            iface.band, iface.band_source = marker, BandSource.RECORDED
            return
        parsed = parse_cap_interface_name(iface.name)
        if parsed is None:
            return
        if self.table.matches(boards.get(parsed.identity)):
            opposite = Band.BAND_5G if parsed.band is Band.BAND_2G else Band.BAND_2G
            iface.band, iface.band_source = opposite, BandSource.BOARD_TABLE
            return
        iface.band, iface.band_source = parsed.band, BandSource.NAMING_CONVENTION
        logger.warning(
            f"[{self.executor.device_id}] {iface.name}: band taken from its name (low confidence)"
        )

    @staticmethod
    def _inherit_master_bands(interfaces: list[RadioInterface]) -> None:
        by_name = {i.name: i for i in interfaces}
        for iface in interfaces:
            if iface.is_virtual:
                master = by_name.get(iface.master)
                iface.band = master.band if master else None
                iface.band_source = master.band_source if master else None

    async def resolve_cap_interfaces(self) -> list[RadioInterface]:
        """Discover CAP interfaces and rename them until names match bands.

        Identities are handled one at a time; a failed identity is left as
        it is (and reported) while the rest continue. Running it again
        once names are correct performs no renames.
        """
        interfaces = await self.discover_cap_interfaces()
        identities = sorted({interface_identity(i.name) for i in interfaces} - {None})
        for identity in identities:
            try:
                await self._correct_identity(identity, interfaces)
            except (IdentityResolutionError, CommandFailed) as e:
                self.executor.warn(f"Could not correct radio names for {identity}: {e}")
        self._inherit_master_bands(interfaces)
        return interfaces

    async def _correct_identity(self, identity: str, interfaces: list[RadioInterface]) -> None:
        occupied = {i.name for i in interfaces}
        masters = [i for i in interfaces if not i.is_virtual and interface_identity(i.name) == identity]

        desired = {m.name: f"{identity}-{m.band.suffix}" for m in masters if m.band is not None}
        if len(set(desired.values())) != len(desired):
            raise IdentityResolutionError(f"{identity}: two radios resolve to the same band")
        steps = plan_renames(desired, occupied, master_temp_name(identity))
        if steps:
            logger.info(f"[{self.executor.device_id}] Correcting {identity} radio names: "
                        + ", ".join(f"{s.old}->{s.new}" for s in steps))
        final_bands = {f"{identity}-{m.band.suffix}": m.band for m in masters if m.band is not None}
        for step in steps:
            await self._rename(RenameStep(step.old, step.new, final_bands.get(step.new)), interfaces)

        # Dependents follow their (possibly renamed) master
        virtual_desired: dict[str, str] = {}
        master_names = {m.name for m in masters}
        for iface in interfaces:
            if not iface.is_virtual or iface.master not in master_names:
                continue
            parsed = parse_cap_interface_name(iface.name)
            if parsed is None or parsed.ssid_index is None:
                continue
            virtual_desired[iface.name] = f"{iface.master}-ssid{parsed.ssid_index}"
        occupied = {i.name for i in interfaces}
        for step in plan_renames(virtual_desired, occupied, virtual_temp_name(identity)):
            await self._rename(step, interfaces)

    async def _rename(self, step: RenameStep, interfaces: list[RadioInterface]) -> None:
        path = self.vocabulary.path
        command = f"{path} set [find name={quote(step.old)}] name={quote(step.new)}"
        if step.band is not None:
            command += f" comment={quote(BAND_MARKER + step.band.value)}"
        await self.executor.apply(command, f"Renamed {step.old} -> {step.new}")

        check = await self.executor.query(f"{path} print terse where name={quote(step.new)}")
        if step.new not in extract_interface_names(check):
            raise IdentityResolutionError(f"Rename {step.old} -> {step.new} did not take effect")

        # Mirror the device: virtuals track their master by reference
        for iface in interfaces:
            if iface.name == step.old:
                iface.name = step.new
                if step.band is not None:
                    iface.comment = BAND_MARKER + step.band.value
            elif iface.master == step.old:
                iface.master = step.new
