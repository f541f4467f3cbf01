"""Bridge, management and service setup shared by every role.

Management access is the one thing a rollout must never lose, so the
bridge, its management ports and the DHCP client are put in place
before anything that could cut the current session.
"""
import logging
from typing import Optional

from ..config.schema import BondSpec, CapsmanSettings, DeviceConfig, SyslogTarget
from ..utils.connection import settle
from .executor import IdempotentExecutor
from .parser import dhcp_client_bound, extract_bridge_ports, extract_interface_names, extract_orig_mac
from .vocabulary import WifiVocabulary, quote, yes_no

logger = logging.getLogger(__name__)

BRIDGE = "bridge"
CAPSMAN_VLAN_INTERFACE = "capsman-vlan"
SYSLOG_ACTION = "remotesyslog"
DEFAULT_ADDRESS = "192.168.88.1"

ALREADY_IN_BRIDGE = ("already have interface",)


async def set_identity(executor: IdempotentExecutor, device: DeviceConfig) -> None:
    identity = device.system_identity
    if not identity:
        logger.info(f"[{executor.device_id}] Host is an IP address, leaving system identity alone")
        return
    await executor.apply(f"/system identity set name={quote(identity)}", f"Identity set to {identity}")


async def ensure_bridge(executor: IdempotentExecutor) -> None:
    """Bridge exists with VLAN filtering off (VLANs ride on the WiFi datapaths)."""
    existing = await executor.query(f"/interface bridge print terse where name={BRIDGE}")
    if BRIDGE not in extract_interface_names(existing):
        await executor.apply(f"/interface bridge add name={BRIDGE}", "Created bridge")
    await executor.apply(f"/interface bridge set {BRIDGE} vlan-filtering=no", "Bridge VLAN filtering off")


async def set_igmp_snooping(executor: IdempotentExecutor, enabled: bool) -> None:
    await executor.apply_best_effort(
        f"/interface bridge set {BRIDGE} igmp-snooping={yes_no(enabled)}",
        f"IGMP snooping {'enabled' if enabled else 'disabled'}",
    )


async def _original_mac(executor: IdempotentExecutor, interface: str) -> Optional[str]:
    output = await executor.query_best_effort(
        f"/interface ethernet print detail without-paging where default-name={interface}",
        f"{interface} MAC address",
    )
    return extract_orig_mac(output or "")


async def _configure_bond(executor: IdempotentExecutor, bond: BondSpec) -> Optional[str]:
    """Build an LACP bond from its members and put it on the bridge."""
    for member in bond.members:
        await executor.remove(
            f"/interface bridge port remove [find interface={member}]",
            f"{member} off the bridge (joining {bond.name})",
        )

    # Read before bonding; the bond rewrites member MACs
    mac = await _original_mac(executor, bond.members[0])
    settings = (
        f'slaves="{",".join(bond.members)}" mode=802.3ad lacp-rate=30secs '
        "transmit-hash-policy=layer-2-and-3"
    )
    if mac:
        settings += f" forced-mac-address={mac}"

    existing = await executor.query(f"/interface bonding print terse where name={bond.name}")
    if bond.name in extract_interface_names(existing):
        await executor.apply(f"/interface bonding set [find name={bond.name}] {settings}",
                             f"Updated LACP bond {bond.name}")
    else:
        await executor.apply(f"/interface bonding add name={bond.name} {settings}",
                             f"Created LACP bond {bond.name}")

    await executor.apply(
        f"/interface bridge port add bridge={BRIDGE} interface={bond.name}",
        f"{bond.name} on bridge",
        already_done=ALREADY_IN_BRIDGE,
    )
    for member in bond.members:
        await executor.apply_best_effort(
            f"/interface ethernet set [find default-name={member}] disabled=no", f"Enabled {member}"
        )
    return mac


async def configure_management(executor: IdempotentExecutor, device: DeviceConfig) -> None:
    """Management ports (or bonds) on the bridge, bridge MAC pinned to the first one."""
    admin_mac = None
    for mgmt in device.management_interfaces:
        if isinstance(mgmt, BondSpec):
            mac = await _configure_bond(executor, mgmt)
        else:
            await executor.apply(
                f"/interface bridge port add bridge={BRIDGE} interface={mgmt}",
                f"{mgmt} on bridge",
                already_done=ALREADY_IN_BRIDGE,
            )
            mac = await _original_mac(executor, mgmt)
        admin_mac = admin_mac or mac

    # A stable bridge MAC keeps the DHCP lease (and so the management IP) stable
    if admin_mac:
        await executor.apply_best_effort(
            f"/interface bridge set {BRIDGE} auto-mac=no admin-mac={admin_mac}",
            f"Bridge admin-mac {admin_mac}",
        )


async def disable_interfaces(executor: IdempotentExecutor, device: DeviceConfig) -> None:
    for interface in device.disabled_interfaces:
        await executor.apply_best_effort(
            f"/interface ethernet set [find default-name={interface}] disabled=yes", f"Disabled {interface}"
        )


async def enable_dhcp_client(executor: IdempotentExecutor) -> None:
    result = await executor.apply(
        f"/ip dhcp-client add interface={BRIDGE} disabled=no", "DHCP client on bridge"
    )
    if not result.changed:
        await executor.apply_best_effort(
            f"/ip dhcp-client enable [find interface={BRIDGE}]", "DHCP client enabled"
        )


async def configure_syslog(executor: IdempotentExecutor, target: Optional[SyslogTarget]) -> None:
    """Replace the remote log action and its topic rules."""
    if target is None:
        return
    await executor.remove(
        f'/system logging remove [find action="{SYSLOG_ACTION}"]', "Cleared previous remote logging rules"
    )
    await executor.remove(
        f'/system logging action remove [find name="{SYSLOG_ACTION}"]', "Cleared previous remote log action"
    )
    await executor.apply(
        f'/system logging action add name="{SYSLOG_ACTION}" target=remote '
        f"remote={target.server} remote-port={target.port}",
        f"Remote syslog {target.server}:{target.port}",
    )
    for topic in target.topics:
        await executor.apply(
            f'/system logging add topics={topic} action="{SYSLOG_ACTION}"', f"Forwarding topic {topic}"
        )


async def configure_capsman_vlan(executor: IdempotentExecutor, settings: CapsmanSettings) -> Optional[str]:
    """Control-channel VLAN sub-interface with an address and a CAPWAP-only firewall.

    Returns:
        The configured address, or None when no VLAN is configured
    """
    if not settings.has_vlan:
        return None

    await executor.remove(
        f"/interface vlan remove [find name={CAPSMAN_VLAN_INTERFACE}]", "Cleared previous CAPsMAN VLAN"
    )
    await executor.remove(
        '/ip firewall filter remove [find comment~"CAPsMAN"]', "Cleared previous CAPsMAN firewall rules"
    )
    await executor.apply(
        f"/interface vlan add name={CAPSMAN_VLAN_INTERFACE} vlan-id={settings.vlan_id} interface={BRIDGE}",
        f"CAPsMAN VLAN {settings.vlan_id}",
    )
    await executor.apply(
        f"/ip address add address={settings.address}/{settings.prefix_length} "
        f"interface={CAPSMAN_VLAN_INTERFACE}",
        f"CAPsMAN VLAN address {settings.address}/{settings.prefix_length}",
    )
    await executor.apply_best_effort(
        "/ip firewall filter add chain=input protocol=udp dst-port=5246-5247 "
        f'in-interface={CAPSMAN_VLAN_INTERFACE} action=accept place-before=0 comment="CAPsMAN CAPWAP - allow"',
        "Firewall: allow CAPWAP on CAPsMAN VLAN",
    )
    await executor.apply_best_effort(
        f"/ip firewall filter add chain=input in-interface={CAPSMAN_VLAN_INTERFACE} "
        'action=drop place-before=1 comment="CAPsMAN VLAN - block admin"',
        "Firewall: block admin access on CAPsMAN VLAN",
    )
    return settings.address


async def convert_to_managed_wap(executor: IdempotentExecutor, device: DeviceConfig, dhcp_settle: float) -> None:
    """Strip router defaults (DHCP server, NAT, default address).

    The default 192.168.88.1 address is only removed when the bridge has
    a DHCP lease or the session is not using that address.
    """
    await settle(dhcp_settle, "DHCP client to obtain a lease")
    status = await executor.query_best_effort(
        f"/ip dhcp-client print detail without-paging where interface={BRIDGE}", "DHCP client status"
    )
    bound = dhcp_client_bound(status or "")
    via_default = device.host == DEFAULT_ADDRESS
    if not bound:
        logger.warning(f"[{executor.device_id}] DHCP client has no lease yet")

    await executor.remove("/ip dhcp-server remove [find]", "Removed DHCP servers")
    if bound or not via_default:
        await executor.remove(
            f'/ip address remove [find address="{DEFAULT_ADDRESS}/24"]', f"Removed default address {DEFAULT_ADDRESS}/24"
        )
    else:
        executor.warn(
            f"Keeping {DEFAULT_ADDRESS}/24: session uses it and no DHCP lease yet; "
            "re-run against the DHCP address to finish"
        )
    await executor.apply_best_effort("/ip dns set allow-remote-requests=no", "Remote DNS requests disabled")
    await executor.remove("/ip firewall nat remove [find]", "Removed NAT rules")


async def ensure_wifi_in_bridge(executor: IdempotentExecutor, vocabulary: WifiVocabulary) -> None:
    """Every WiFi interface is a bridge port. Best effort."""
    names_out = await executor.query_best_effort(f"{vocabulary.path} print terse without-paging", "WiFi interfaces")
    ports_out = await executor.query_best_effort(
        f"/interface bridge port print terse without-paging where bridge={BRIDGE}", "bridge ports"
    )
    if names_out is None or ports_out is None:
        executor.warn("Could not check WiFi bridge membership")
        return
    ports = extract_bridge_ports(ports_out)
    for name in extract_interface_names(names_out):
        if name in ports:
            continue
        await executor.apply_best_effort(
            f"/interface bridge port add bridge={BRIDGE} interface={quote(name)}",
            f"{name} on bridge",
            already_done=ALREADY_IN_BRIDGE,
        )
