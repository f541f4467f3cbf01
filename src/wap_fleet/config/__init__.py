"""Fleet document loading and normalization."""
from .schema import (
    ALL_BANDS,
    Band,
    DeviceConfig,
    DeviceRole,
    FleetConfig,
    LockedDeviceSpec,
    ResolvedSsid,
    SsidBinding,
    SsidTemplate,
)
from .inventory import FleetDocumentError, FleetInventory, parse_fleet

__all__ = [
    "ALL_BANDS",
    "Band",
    "DeviceConfig",
    "DeviceRole",
    "FleetConfig",
    "LockedDeviceSpec",
    "ResolvedSsid",
    "SsidBinding",
    "SsidTemplate",
    "FleetDocumentError",
    "FleetInventory",
    "parse_fleet",
]
