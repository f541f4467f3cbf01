"""SSID resolution: device bindings joined against deployment templates.

A network is defined once at deployment level (passphrase, VLAN, roaming)
and devices only pick which bands carry it. Older documents inline the
whole definition on each device; both shapes resolve to ``ResolvedSsid``.
"""
import logging

from ..config.schema import (
    DeviceConfig,
    DeviceRole,
    ResolvedSsid,
    RoamingPolicy,
    SsidBinding,
    SsidTemplate,
)

logger = logging.getLogger(__name__)


class SsidResolutionError(ValueError):
    """A device's SSID list cannot be resolved."""

    def __init__(self, device: DeviceConfig, message: str):
        super().__init__(f"Device {device.index} ({device.host}): {message}")
        self.device_index = device.index
        self.host = device.host


def is_reference_style(bindings: list[SsidBinding], templates: list[SsidTemplate]) -> bool:
    """Bindings need template resolution when any lacks its own passphrase."""
    return bool(templates) and any(not b.is_inline for b in bindings)


class SsidResolver:
    """Resolve per-device SSID bindings against deployment templates."""

    def __init__(self, templates: list[SsidTemplate]):
        self.templates = list(templates)
        self._by_name = {t.ssid: t for t in self.templates}

    def resolve(self, device: DeviceConfig) -> list[ResolvedSsid]:
        """Resolve one device's SSIDs.

        CAPs without bindings resolve to an empty list; the controller's
        list applies to them instead.

        Raises:
            SsidResolutionError: unknown ssid name, empty band set or an
                incomplete inline entry. The whole device fails.
        """
        bindings = device.ssids
        if not bindings:
            if device.role == DeviceRole.CAP:
                return []
            return [self._from_template(t) for t in self.templates]

        if is_reference_style(bindings, self.templates):
            resolved = [self._join(device, b) for b in bindings]
        else:
            resolved = [self._inline(device, b) for b in bindings]

        logger.debug(
            f"Device {device.index} SSIDs: "
            + ", ".join(f"{r.ssid}({'/'.join(b.value for b in r.bands)})" for r in resolved)
        )
        return resolved

    def resolve_for_cap(self, cap: DeviceConfig, controller_ssids: list[ResolvedSsid]) -> list[ResolvedSsid]:
        """SSIDs a CAP's radios carry: its own bindings, else the controller's."""
        own = self.resolve(cap)
        return own if own else list(controller_ssids)

    @staticmethod
    def _from_template(template: SsidTemplate) -> ResolvedSsid:
        return ResolvedSsid(
            ssid=template.ssid,
            passphrase=template.passphrase,
            vlan=template.vlan,
            roaming=template.roaming,
            bands=tuple(template.bands),
        )

    def _join(self, device: DeviceConfig, binding: SsidBinding) -> ResolvedSsid:
        if not binding.bands:
            raise SsidResolutionError(device, f"SSID '{binding.ssid}' has an empty band set")
        template = self._by_name.get(binding.ssid)
        if template is None:
            if binding.is_inline:
                return self._inline(device, binding)
            known = ", ".join(sorted(self._by_name)) or "none"
            raise SsidResolutionError(
                device, f"SSID '{binding.ssid}' is not defined in deployment ssids (known: {known})"
            )
        return ResolvedSsid(
            ssid=template.ssid,
            passphrase=template.passphrase,
            vlan=template.vlan,
            roaming=template.roaming,
            bands=tuple(binding.bands),
        )

    @staticmethod
    def _inline(device: DeviceConfig, binding: SsidBinding) -> ResolvedSsid:
        if not binding.bands:
            raise SsidResolutionError(device, f"SSID '{binding.ssid}' has an empty band set")
        if not binding.passphrase:
            raise SsidResolutionError(device, f"SSID '{binding.ssid}' is missing a passphrase")
        if binding.vlan is None:
            raise SsidResolutionError(device, f"SSID '{binding.ssid}' is missing a vlan")
        return ResolvedSsid(
            ssid=binding.ssid,
            passphrase=binding.passphrase,
            vlan=binding.vlan,
            roaming=binding.roaming or RoamingPolicy(),
            bands=tuple(binding.bands),
        )
