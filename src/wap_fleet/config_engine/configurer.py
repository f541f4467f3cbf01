"""Per-device configuration, role-aware.

Each public method opens its own session to one device, applies one
role's state, and closes the session. Nothing is shared between calls,
so calls for different devices can run concurrently.
"""
import asyncio
import ipaddress
import logging
import socket
from contextlib import asynccontextmanager
from typing import AsyncIterator, Callable, Optional

from ..config.schema import ALL_BANDS, DeviceConfig, LockedDeviceSpec, ResolvedSsid
from ..devices import create_session
from ..devices.base import DeviceSession
from ..utils.connection import settle, with_retry
from . import infrastructure as infra
from .access_list import AccessRuleReconciler
from .executor import IdempotentExecutor, TransientCommandError
from .identity import IdentityResolver, SwappedRadioTable, interface_identity
from .parser import count_managed_interfaces, service_enabled
from .schema import RolloutOptions, RulePlan
from .vocabulary import WifiVocabulary, explain_missing_wifi, probe_once, quote
from .wifi import WifiConfigurer, ssids_for_band

logger = logging.getLogger(__name__)

SessionFactory = Callable[[DeviceConfig], DeviceSession]


class ValidationGateError(Exception):
    """A service did not come up after being configured."""


class DeviceConfigurer:
    """Applies declared state to single devices."""

    def __init__(
        self,
        options: Optional[RolloutOptions] = None,
        table: Optional[SwappedRadioTable] = None,
        session_factory: SessionFactory = create_session,
    ):
        self.options = options or RolloutOptions()
        self.table = table or SwappedRadioTable()
        self.session_factory = session_factory

    @asynccontextmanager
    async def connect(self, device: DeviceConfig) -> AsyncIterator[IdempotentExecutor]:
        """Open a session to the device and yield an executor bound to it."""
        session = self.session_factory(device)
        async with session:
            yield IdempotentExecutor(session)

    async def detect_vocabulary(self, executor: IdempotentExecutor) -> WifiVocabulary:
        """Probe the WiFi subsystem, retrying while it is still starting."""
        probe = with_retry(
            max_attempts=self.options.probe_attempts,
            min_wait=self.options.probe_delay,
            max_wait=self.options.probe_delay,
            exceptions=(TransientCommandError,),
        )(probe_once)
        try:
            vocabulary = await probe(executor)
        except TransientCommandError:
            raise await explain_missing_wifi(executor)
        executor.classifier = vocabulary.classifier
        return vocabulary

    async def _base_infrastructure(self, executor: IdempotentExecutor, device: DeviceConfig) -> None:
        await infra.set_identity(executor, device)
        await infra.ensure_bridge(executor)
        await infra.set_igmp_snooping(executor, device.igmp_snooping)
        await infra.configure_management(executor, device)
        await infra.disable_interfaces(executor, device)
        await infra.enable_dhcp_client(executor)

    # --- Standalone ---

    async def configure_standalone(self, device: DeviceConfig, ssids: list[ResolvedSsid]) -> list[str]:
        """Full managed-WAP setup for a device outside any controller topology.

        Returns:
            Best-effort warnings raised along the way
        """
        async with self.connect(device) as executor:
            await self._base_infrastructure(executor, device)
            await infra.convert_to_managed_wap(executor, device, self.options.dhcp_settle)

            vocabulary = await self.detect_vocabulary(executor)
            # Clients reassociate with the new settings instead of lingering on old keys
            await executor.apply_best_effort(
                f"{vocabulary.registration_table} remove [find]", "Disconnected associated clients"
            )
            wifi = WifiConfigurer(executor, vocabulary, device.country)
            await wifi.remove_legacy_datapaths()
            layout = await IdentityResolver(executor, vocabulary, self.table).resolve_local_layout()
            await wifi.configure_local_radios(layout, ssids, device.radios, pin_band=True)
            await infra.configure_syslog(executor, device.syslog)
            return executor.warnings

    # --- Controller ---

    async def configure_controller(self, device: DeviceConfig) -> list[str]:
        """CAPsMAN controller setup, gated on the service reporting enabled.

        Raises:
            ValidationGateError: CAPsMAN is not enabled afterwards
        """
        async with self.connect(device) as executor:
            await self._base_infrastructure(executor, device)
            vocabulary = await self.detect_vocabulary(executor)
            await infra.configure_capsman_vlan(executor, device.capsman)

            settings = device.capsman
            await executor.apply(
                f"{vocabulary.capsman} set enabled=yes ca-certificate={settings.certificate} "
                f"require-peer-certificate={'yes' if settings.require_peer_certificate else 'no'}",
                f"CAPsMAN enabled (certificate {settings.certificate})",
            )
            await self._manager_mode(executor, vocabulary)
            await infra.configure_syslog(executor, device.syslog)

            status = await executor.query(f"{vocabulary.capsman} print")
            if not service_enabled(status):
                raise ValidationGateError(f"{device.host}: CAPsMAN is not enabled after configuration")
            logger.info(f"[{executor.device_id}] CAPsMAN service is enabled")
            return executor.warnings

    async def _manager_mode(self, executor: IdempotentExecutor, vocabulary: WifiVocabulary) -> None:
        for band in ALL_BANDS:
            await executor.apply_best_effort(
                f"{vocabulary.path} set [find default-name={band.default_radio}] "
                "configuration.manager=capsman-or-local",
                f"{band.default_radio} managed by CAPsMAN or locally",
            )

    # --- CAP ---

    async def resolve_controller_addresses(self, addresses: list[str]) -> list[str]:
        """CAP mode only takes IP addresses; resolve any names first."""
        loop = asyncio.get_running_loop()
        resolved = []
        for address in addresses:
            try:
                ipaddress.ip_address(address)
                resolved.append(address)
                continue
            except ValueError:
                pass
            try:
                infos = await loop.getaddrinfo(address, None, family=socket.AF_INET, type=socket.SOCK_STREAM)
            except socket.gaierror as e:
                logger.warning(f"Could not resolve controller address {address}: {e}")
                continue
            ip = infos[0][4][0]
            logger.info(f"Resolved controller {address} -> {ip}")
            resolved.append(ip)
        return resolved

    async def configure_cap(self, device: DeviceConfig) -> list[str]:
        """Join a CAP to the controller.

        Raises:
            ValidationGateError: no controller address resolved, or CAP mode
                did not come up enabled
        """
        addresses = await self.resolve_controller_addresses(device.controller_addresses)
        if not addresses:
            raise ValidationGateError(f"{device.host}: no controller address could be resolved")

        async with self.connect(device) as executor:
            await self._base_infrastructure(executor, device)
            vocabulary = await self.detect_vocabulary(executor)
            vlan_address = await infra.configure_capsman_vlan(executor, device.capsman)

            layout = await IdentityResolver(executor, vocabulary, self.table).resolve_local_layout()
            wifi = WifiConfigurer(executor, vocabulary, device.country)
            for band in ALL_BANDS:
                await wifi.apply_band_settings(layout[band], band, device.band_settings(band))
            await self._manager_mode(executor, vocabulary)

            discovery = infra.CAPSMAN_VLAN_INTERFACE if vlan_address else infra.BRIDGE
            await executor.apply(f"{vocabulary.cap} set enabled=no", "CAP mode reset")
            await executor.apply(
                f"{vocabulary.cap} set enabled=yes caps-man-addresses={','.join(addresses)} "
                f"discovery-interfaces={discovery} slaves-static=yes",
                f"CAP enabled, controller {','.join(addresses)}",
            )
            await infra.configure_syslog(executor, device.syslog)

            status = await executor.query(f"{vocabulary.cap} print")
            if not service_enabled(status):
                raise ValidationGateError(f"{device.host}: CAP mode is not enabled after configuration")
            return executor.warnings

    # --- Controller-side CAP interfaces ---

    async def bind_cap_interfaces(
        self,
        controller: DeviceConfig,
        caps: dict[str, tuple[DeviceConfig, list[ResolvedSsid]]],
    ) -> list[str]:
        """Configure the interfaces CAPs materialized on the controller.

        Args:
            controller: The controller device
            caps: CAP identity -> (CAP device, SSIDs its radios carry)
        """
        async with self.connect(controller) as executor:
            vocabulary = await self.detect_vocabulary(executor)
            resolver = IdentityResolver(executor, vocabulary, self.table)
            interfaces = await resolver.resolve_cap_interfaces()
            masters = [i for i in interfaces if not i.is_virtual]
            if not masters:
                executor.warn("No CAP interfaces on the controller yet; CAPs may still be connecting")
                return executor.warnings

            wifi = WifiConfigurer(executor, vocabulary, controller.country)
            for master in sorted(masters, key=lambda m: m.name):
                identity = interface_identity(master.name)
                if identity not in caps:
                    executor.warn(f"{master.name} belongs to {identity}, which is not in the fleet")
                    continue
                if master.band is None:
                    executor.warn(f"{master.name}: band unknown, left unconfigured")
                    continue
                cap, ssids = caps[identity]
                band_ssids = ssids_for_band(ssids, master.band)
                if not band_ssids:
                    logger.info(f"[{executor.device_id}] {master.name}: no SSIDs for {master.band.value}")
                    continue
                await wifi.configure_radio(
                    master.name, master.band, band_ssids, interfaces,
                    settings=cap.band_settings(master.band),
                )
            return executor.warnings

    # --- Access rules ---

    async def reconcile_access_rules(self, controller: DeviceConfig, locks: list[LockedDeviceSpec]) -> RulePlan:
        """Read the controller's live inventory now and reconcile access rules."""
        async with self.connect(controller) as executor:
            vocabulary = await self.detect_vocabulary(executor)
            reconciler = AccessRuleReconciler(executor, vocabulary, controller.effective_identity)
            return await reconciler.reconcile(locks)

    # --- CAP local fallback ---

    async def configure_local_fallback(self, device: DeviceConfig, ssids: list[ResolvedSsid]) -> list[str]:
        """Give a CAP its own copy of the SSIDs so it serves clients without the controller."""
        async with self.connect(device) as executor:
            vocabulary = await self.detect_vocabulary(executor)
            layout = await IdentityResolver(executor, vocabulary, self.table).resolve_local_layout()
            wifi = WifiConfigurer(executor, vocabulary, device.country)
            assignment = await wifi.configure_local_radios(layout, ssids, device.radios)

            virtuals = {name: ssid for name, ssid in assignment.items() if name not in layout.values()}
            for name, ssid in virtuals.items():
                await self._bridge_port_with_pvid(executor, name, ssid.vlan)

            await self._rebind(executor, vocabulary, expect_virtuals=bool(virtuals))
            await infra.ensure_wifi_in_bridge(executor, vocabulary)
            return executor.warnings

    async def _bridge_port_with_pvid(self, executor: IdempotentExecutor, interface: str, vlan: int) -> None:
        result = await executor.apply_best_effort(
            f"/interface bridge port add bridge={infra.BRIDGE} interface={quote(interface)} pvid={vlan}",
            f"{interface} on bridge (pvid {vlan})",
            already_done=infra.ALREADY_IN_BRIDGE,
        )
        if result is not None and not result.changed:
            await executor.apply_best_effort(
                f"/interface bridge port set [find interface={quote(interface)}] pvid={vlan}",
                f"{interface} pvid {vlan}",
            )

    async def _rebind(self, executor: IdempotentExecutor, vocabulary: WifiVocabulary, expect_virtuals: bool) -> None:
        """Restart CAP mode and wait, bounded, for the controller to pick interfaces up again."""
        await executor.apply_best_effort(f"{vocabulary.cap} set enabled=no", "CAP mode off for rebind")
        await settle(self.options.cap_restart_pause, "CAP client to stop")
        await executor.apply_best_effort(f"{vocabulary.cap} set enabled=yes slaves-static=yes", "CAP mode back on")
        if not expect_virtuals:
            return

        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.options.rebind_timeout
        while True:
            output = await executor.query_best_effort(
                f"{vocabulary.path} print detail without-paging where master-interface", "virtual interfaces"
            )
            bound = count_managed_interfaces(output or "")
            if bound:
                logger.info(f"[{executor.device_id}] {bound} virtual interface(s) bound to the controller")
                return
            if loop.time() >= deadline:
                executor.warn(
                    f"Virtual interfaces not bound to the controller after {self.options.rebind_timeout:g}s"
                )
                return
            await asyncio.sleep(self.options.rebind_poll_interval)


def cap_identity_map(
    caps: list[DeviceConfig], ssids: dict[int, list[ResolvedSsid]]
) -> dict[str, tuple[DeviceConfig, list[ResolvedSsid]]]:
    """CAP identity -> (device, SSIDs) for controller-side binding."""
    return {cap.effective_identity: (cap, ssids.get(cap.index, [])) for cap in caps}
