"""WiFi interface configuration.

One radio carries its first SSID on the master interface; every further
SSID on that band gets a virtual interface named ``<master>-ssid<N>``
(N from 2). Virtuals are reconciled rather than recreated, so clients
on unchanged networks stay associated.
"""
import logging
import re
from typing import Optional

from ..config.schema import ALL_BANDS, Band, BandSettings, ResolvedSsid
from .executor import IdempotentExecutor
from .parser import extract_datapaths, extract_radio_interfaces
from .schema import RadioInterface
from .vocabulary import WifiVocabulary, quote, yes_no

logger = logging.getLogger(__name__)

FREQUENCIES = {
    Band.BAND_2G: {ch: 2407 + 5 * ch for ch in range(1, 14)},
    Band.BAND_5G: {
        ch: 5000 + 5 * ch
        for ch in (36, 40, 44, 48, 52, 56, 60, 64,
                   100, 104, 108, 112, 116, 120, 124, 128, 132, 136, 140, 144,
                   149, 153, 157, 161, 165)
    },
}

# Named datapaths left behind by older per-VLAN layouts
LEGACY_DATAPATH = re.compile(r"^wifi\d+-vlan\d+$")


def channel_frequency(band: Band, channel: Optional[int]) -> Optional[int]:
    if channel is None:
        return None
    return FREQUENCIES[band].get(channel)


def virtual_name(master: str, position: int) -> str:
    """Name of the virtual carrying the SSID at ``position`` (0-based) on a master."""
    return f"{master}-ssid{position + 1}"


def ssids_for_band(ssids: list[ResolvedSsid], band: Band) -> list[ResolvedSsid]:
    return [s for s in ssids if s.serves(band)]


class WifiConfigurer:
    """Pushes SSIDs and radio settings onto WiFi interfaces of one device."""

    def __init__(self, executor: IdempotentExecutor, vocabulary: WifiVocabulary, country: Optional[str]):
        self.executor = executor
        self.vocabulary = vocabulary
        self.country = country

    def _target(self, interface: str) -> str:
        return f"[find name={quote(interface)}]"

    async def list_interfaces(self) -> list[RadioInterface]:
        output = await self.executor.query(f"{self.vocabulary.path} print detail without-paging")
        return extract_radio_interfaces(output)

    async def apply_band_settings(
        self, interface: str, band: Band, settings: BandSettings, pin_band: bool = False
    ) -> None:
        """Channel, width, power and country for one radio."""
        args = []
        if pin_band:
            args.append(f"channel.band={band.routeros_band}")
        frequency = channel_frequency(band, settings.channel)
        if settings.channel is not None and frequency is None:
            self.executor.warn(f"{interface}: channel {settings.channel} is not a {band.value} channel")
        if frequency:
            args.append(f"channel.frequency={frequency}")
        if settings.width:
            args.append(f"channel.width={settings.width}")
        if settings.tx_power is not None:
            args.append(f"configuration.tx-power={settings.tx_power}")
        if self.country:
            args.append(f"configuration.country={quote(self.country)}")
        if not args:
            return
        await self.executor.apply(
            f"{self.vocabulary.path} set {self._target(interface)} {' '.join(args)}",
            f"{interface} {band.value} radio settings",
        )

    async def _steering_profile(self, interface: str, ssid: ResolvedSsid) -> Optional[str]:
        """Replace the interface's steering profile. None when not wanted or not possible."""
        if not ssid.roaming.steering_enabled:
            return None
        name = f"steering-{interface}"
        await self.executor.remove(
            f"{self.vocabulary.steering} remove [find name={quote(name)}]", f"Cleared steering profile {name}"
        )
        result = await self.executor.apply_best_effort(
            f"{self.vocabulary.steering} add name={quote(name)} "
            f"rrm={yes_no(ssid.roaming.rrm)} wnm={yes_no(ssid.roaming.wnm)}",
            f"Steering profile {name}",
        )
        return name if result else None

    async def configure_interface(self, interface: str, ssid: ResolvedSsid) -> None:
        """SSID, security, VLAN and roaming on one (master or virtual) interface."""
        steering = await self._steering_profile(interface, ssid)
        args = [f"configuration.ssid={quote(ssid.ssid)}"]
        if self.country:
            args.append(f"configuration.country={quote(self.country)}")
        args.append(self.vocabulary.security_args(ssid.passphrase, ssid.roaming))
        args.append(f"datapath.bridge=bridge datapath.vlan-id={ssid.vlan}")
        if steering:
            args.append(f"steering={quote(steering)}")
        args.append("disabled=no")

        roaming = [
            label for label, on in (
                ("802.11r", ssid.roaming.fast_transition),
                ("802.11k", ssid.roaming.rrm),
                ("802.11v", ssid.roaming.wnm),
            ) if on
        ]
        await self.executor.apply(
            f"{self.vocabulary.path} set {self._target(interface)} {' '.join(args)}",
            f"{interface}: SSID \"{ssid.ssid}\" VLAN {ssid.vlan}"
            + (f" ({', '.join(roaming)})" if roaming else ""),
        )

    async def reconcile_virtuals(
        self, master: str, count: int, existing: list[RadioInterface]
    ) -> list[str]:
        """Make exactly ``count`` virtuals exist under ``master``.

        Returns:
            Virtual names in SSID order (the SSID at position i+1 goes on
            the i-th name)
        """
        wanted = [virtual_name(master, i) for i in range(1, count + 1)]
        present = {i.name for i in existing if i.master == master}
        for name in sorted(present - set(wanted)):
            await self.executor.remove(
                f"{self.vocabulary.path} remove {self._target(name)}", f"Removed unused virtual {name}"
            )
        for name in wanted:
            if name in present:
                continue
            await self.executor.apply(
                f"{self.vocabulary.path} add master-interface={quote(master)} name={quote(name)}",
                f"Created virtual {name} on {master}",
            )
        return wanted

    async def configure_radio(
        self,
        master: str,
        band: Band,
        ssids: list[ResolvedSsid],
        existing: list[RadioInterface],
        settings: Optional[BandSettings] = None,
        pin_band: bool = False,
    ) -> dict[str, ResolvedSsid]:
        """Put every SSID of one band on a radio (master plus virtuals).

        Returns:
            Interface name -> SSID it now carries
        """
        if settings is not None:
            await self.apply_band_settings(master, band, settings, pin_band)

        if not ssids:
            await self.executor.apply_best_effort(
                f"{self.vocabulary.path} set {self._target(master)} disabled=yes",
                f"Disabled unused {band.value} radio {master}",
            )
            return {}

        assignment = {master: ssids[0]}
        await self.configure_interface(master, ssids[0])
        virtuals = await self.reconcile_virtuals(master, len(ssids) - 1, existing)
        for name, ssid in zip(virtuals, ssids[1:]):
            await self.configure_interface(name, ssid)
            assignment[name] = ssid
        return assignment

    async def configure_local_radios(
        self,
        layout: dict[Band, str],
        ssids: list[ResolvedSsid],
        radios: dict[Band, BandSettings],
        pin_band: bool = False,
    ) -> dict[str, ResolvedSsid]:
        """Configure this device's own radios from a band -> radio layout."""
        for band in ALL_BANDS:
            await self.executor.apply_best_effort(
                f"{self.vocabulary.path} set [find default-name={band.default_radio}] name={band.default_radio}",
                f"Reset {band.default_radio} name",
            )
        existing = await self.list_interfaces()
        assignment: dict[str, ResolvedSsid] = {}
        for band in ALL_BANDS:
            radio = layout[band]
            assignment.update(await self.configure_radio(
                radio, band, ssids_for_band(ssids, band), existing,
                settings=radios.get(band, BandSettings()), pin_band=pin_band,
            ))
        return assignment

    async def remove_legacy_datapaths(self) -> None:
        """Drop per-VLAN named datapaths superseded by inline datapath settings."""
        output = await self.executor.query_best_effort(
            f"{self.vocabulary.datapath} print detail without-paging", "datapaths"
        )
        for datapath in extract_datapaths(output or ""):
            if LEGACY_DATAPATH.match(datapath.name):
                await self.executor.apply_best_effort(
                    f"{self.vocabulary.datapath} remove {self._target(datapath.name)}",
                    f"Removed legacy datapath {datapath.name}",
                    already_done=("no such item",),
                )
