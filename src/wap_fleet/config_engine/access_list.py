"""Access-rule reconciliation for locked clients.

A locked client gets an accept rule on every interface of its target AP
that carries the locked SSID(s), and a reject rule on every interface of
every other AP carrying the same SSID(s). Desired rules are recomputed
from policy and the live interface list on every run, diffed against
the installed rules on (MAC, interface, action), and applied in an
order that never leaves a client without its accept rule:

1. accept additions
2. reject additions
3. removal of orphaned rules (an internal ``*id``, or a CAP interface that is gone)
4. removal of stale rules

Removals only start once every addition has succeeded.
"""
import logging
import re
from dataclasses import dataclass

from ..config.schema import LockedDeviceSpec
from .executor import IdempotentExecutor
from .identity import interface_identity
from .parser import extract_access_rules, extract_radio_interfaces
from .schema import AccessRule, RadioInterface, RuleAction, RulePlan
from .vocabulary import WifiVocabulary, quote

logger = logging.getLogger(__name__)

MANAGED_COMMENT = re.compile(r" - (lock to |reject \(locked to )")


def accept_comment(lock: LockedDeviceSpec) -> str:
    return f"{lock.name} - lock to {lock.target_identity}"


def reject_comment(lock: LockedDeviceSpec) -> str:
    return f"{lock.name} - reject (locked to {lock.target_identity})"


@dataclass(frozen=True)
class ApInterface:
    """An enabled interface serving an SSID, attributed to an AP."""
    name: str
    ap: str
    ssid: str


def build_inventory(interfaces: list[RadioInterface], controller_identity: str) -> list[ApInterface]:
    """Attribute every enabled, SSID-carrying interface to its AP.

    CAP interfaces are named after their AP; anything else (wifi1,
    wifi1-ssid2...) is the controller's own radio.
    """
    inventory = []
    for iface in interfaces:
        if iface.disabled or not iface.ssid:
            continue
        ap = interface_identity(iface.name) or controller_identity
        inventory.append(ApInterface(name=iface.name, ap=ap, ssid=iface.ssid))
    return inventory


def desired_rules(locks: list[LockedDeviceSpec], inventory: list[ApInterface]) -> set[AccessRule]:
    """Rules implied by lock policy and the current inventory."""
    rules: set[AccessRule] = set()
    for lock in locks:
        on_target = [i for i in inventory if i.ap == lock.target_identity]
        if lock.ssid:
            ssids = {lock.ssid}
        else:
            ssids = {i.ssid for i in on_target}
        if not ssids:
            logger.warning(
                f"{lock.name} ({lock.mac}): {lock.target_identity} serves no SSID, no rules generated"
            )
            continue
        # A target that is down or not bound yet must not turn the lock into a ban
        if not any(i.ssid in ssids for i in on_target):
            logger.warning(
                f"{lock.name} ({lock.mac}): {lock.target_identity} does not serve "
                f"{', '.join(sorted(ssids))}, no rules generated"
            )
            continue
        for iface in inventory:
            if iface.ssid not in ssids:
                continue
            if iface.ap == lock.target_identity:
                rules.add(AccessRule(lock.mac, iface.name, RuleAction.ACCEPT, accept_comment(lock)))
            else:
                rules.add(AccessRule(lock.mac, iface.name, RuleAction.REJECT, reject_comment(lock)))
    return rules


def is_managed(rule: AccessRule, locked_macs: set[str]) -> bool:
    """Rules this tool owns: for a locked MAC, or carrying its comment format."""
    return rule.mac in locked_macs or bool(MANAGED_COMMENT.search(rule.comment))


def _ordered(rules) -> list[AccessRule]:
    return sorted(rules, key=lambda r: r.key)


def diff_rules(
    desired: set[AccessRule],
    current: list[AccessRule],
    interface_names: set[str],
    locked_macs: set[str],
) -> RulePlan:
    """Compute the ordered change plan. Pure; touches nothing.

    A managed rule shown with an internal ``*id``, or naming a CAP
    interface that no longer exists, is orphaned even if its key still
    matches, so steady state means the installed rules equal the desired
    rules and all of them resolve. Rules on other interfaces (interface
    lists, for one) are never orphans.
    """
    managed = [r for r in current if is_managed(r, locked_macs)]
    orphans = [
        r for r in managed
        if r.is_orphaned or (interface_identity(r.interface) is not None and r.interface not in interface_names)
    ]
    healthy = {r for r in managed if r not in orphans}

    to_add = desired - healthy
    stale = [r for r in healthy if r not in desired]
    return RulePlan(
        accept_additions=_ordered(r for r in to_add if r.action == RuleAction.ACCEPT),
        reject_additions=_ordered(r for r in to_add if r.action == RuleAction.REJECT),
        orphan_removals=_ordered(set(orphans)),
        stale_removals=_ordered(stale),
    )


class AccessRuleReconciler:
    """Reconcile controller access-list rules with lock policy."""

    def __init__(self, executor: IdempotentExecutor, vocabulary: WifiVocabulary, controller_identity: str):
        self.executor = executor
        self.vocabulary = vocabulary
        self.controller_identity = controller_identity

    async def plan(self, locks: list[LockedDeviceSpec]) -> RulePlan:
        """Read live state and compute the plan without writing anything."""
        interfaces_out = await self.executor.query(f"{self.vocabulary.path} print detail without-paging")
        rules_out = await self.executor.query(f"{self.vocabulary.access_list} print detail without-paging")

        interfaces = extract_radio_interfaces(interfaces_out)
        current = extract_access_rules(rules_out)
        inventory = build_inventory(interfaces, self.controller_identity)
        desired = desired_rules(locks, inventory)

        plan = diff_rules(
            desired,
            current,
            interface_names={i.name for i in interfaces},
            locked_macs={lock.mac.upper() for lock in locks},
        )
        logger.info(
            f"[{self.executor.device_id}] Access rules: {len(desired)} desired, {len(current)} installed, "
            f"+{len(plan.accept_additions)} accept, +{len(plan.reject_additions)} reject, "
            f"-{len(plan.orphan_removals)} orphaned, -{len(plan.stale_removals)} stale"
        )
        return plan

    def add_command(self, rule: AccessRule) -> str:
        return (
            f"{self.vocabulary.access_list} add mac-address={rule.mac} interface={quote(rule.interface)} "
            f"action={rule.action.value} comment={quote(rule.comment)}"
        )

    def remove_command(self, rule: AccessRule) -> str:
        interface = rule.interface if rule.is_orphaned else quote(rule.interface)
        return (
            f"{self.vocabulary.access_list} remove [find mac-address={rule.mac} "
            f"interface={interface} action={rule.action.value}]"
        )

    async def apply(self, plan: RulePlan) -> None:
        """Apply a plan in safe order. An addition failure stops before any removal."""
        for rule in plan.accept_additions:
            await self.executor.apply(self.add_command(rule), f"Accept {rule.mac} on {rule.interface}")
        for rule in plan.reject_additions:
            await self.executor.apply(self.add_command(rule), f"Reject {rule.mac} on {rule.interface}")
        for rule in plan.orphan_removals:
            await self.executor.remove(
                self.remove_command(rule), f"Removed orphaned rule {rule.mac} on {rule.interface}"
            )
        for rule in plan.stale_removals:
            await self.executor.remove(
                self.remove_command(rule), f"Removed stale {rule.action.value} rule {rule.mac} on {rule.interface}"
            )

    async def reconcile(self, locks: list[LockedDeviceSpec]) -> RulePlan:
        """Plan and apply. Steady state performs no writes."""
        plan = await self.plan(locks)
        if plan.no_change:
            logger.info(f"[{self.executor.device_id}] Access rules already match lock policy")
            return plan
        await self.apply(plan)
        return plan


def collect_locks(devices) -> list[LockedDeviceSpec]:
    """All lock specs declared anywhere in the fleet."""
    locks: list[LockedDeviceSpec] = []
    for device in devices:
        locks.extend(device.locked_devices)
    return locks
