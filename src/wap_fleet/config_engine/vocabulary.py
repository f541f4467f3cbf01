"""WiFi subsystem vocabularies and capability probing.

RouterOS has shipped two WiFi command trees for the same hardware:
``wifiwave2`` (``/interface/wifiwave2``) and ``wifi-qcom``
(``/interface/wifi``). Which one a device speaks is probed per device,
never assumed.
"""
import logging
from dataclasses import dataclass

from ..config.schema import RoamingPolicy
from .executor import ErrorClassifier, IdempotentExecutor, TransientCommandError
from .parser import extract_package_names

logger = logging.getLogger(__name__)

PACKAGE_PROBE = '/system package print terse where name~"wifi"'
LEGACY_PROBE = '/system package print terse where name="wireless"'


class CapabilityError(Exception):
    """The device has no supported WiFi subsystem."""


def quote(value: str) -> str:
    """Quote a value for a RouterOS command line."""
    escaped = value.replace("\\", "\\\\").replace('"', '\\"').replace("$", "\\$")
    return f'"{escaped}"'


def yes_no(flag: bool) -> str:
    return "yes" if flag else "no"


@dataclass(frozen=True)
class WifiVocabulary:
    """Command paths and error signatures for one WiFi subsystem."""
    package: str
    path: str
    classifier: ErrorClassifier
    inline_fast_transition: bool

    @property
    def datapath(self) -> str:
        return f"{self.path}/datapath"

    @property
    def access_list(self) -> str:
        return f"{self.path}/access-list"

    @property
    def radio(self) -> str:
        return f"{self.path}/radio"

    @property
    def steering(self) -> str:
        return f"{self.path}/steering"

    @property
    def registration_table(self) -> str:
        return f"{self.path}/registration-table"

    @property
    def capsman(self) -> str:
        return f"{self.path}/capsman"

    @property
    def remote_cap(self) -> str:
        return f"{self.path}/capsman/remote-cap"

    @property
    def cap(self) -> str:
        return f"{self.path}/cap"

    def security_args(self, passphrase: str, roaming: RoamingPolicy) -> str:
        """Authentication and fast-transition properties for one SSID."""
        if self.inline_fast_transition:
            ft = yes_no(roaming.fast_transition)
            return (
                f"security.authentication-types=wpa2-psk security.passphrase={quote(passphrase)} "
                f"security.ft={ft} security.ft-over-ds={ft}"
            )
        auth = "ft-psk,wpa2-psk" if roaming.fast_transition else "wpa2-psk"
        return f"security.authentication-types={auth} security.passphrase={quote(passphrase)}"


WIFI_QCOM = WifiVocabulary(
    package="wifi-qcom",
    path="/interface/wifi",
    classifier=ErrorClassifier(
        name="wifi-qcom",
        already_satisfied=("already have", "exists"),
        transient=("not ready", "busy", "try again", "action timed out", "radio is not running"),
    ),
    inline_fast_transition=True,
)

WIFIWAVE2 = WifiVocabulary(
    package="wifiwave2",
    path="/interface/wifiwave2",
    classifier=ErrorClassifier(
        name="wifiwave2",
        already_satisfied=("already have", "exists"),
        transient=("not ready", "busy", "try again", "action timed out"),
    ),
    inline_fast_transition=False,
)


def vocabulary_from_packages(names: list[str]) -> WifiVocabulary:
    """Pick a vocabulary from installed package names.

    Raises:
        LookupError: no WiFi package in the list
    """
    lowered = [n.lower() for n in names]
    if any("wifiwave2" in n for n in lowered):
        return WIFIWAVE2
    if any(n.startswith("wifi") for n in lowered):
        return WIFI_QCOM
    raise LookupError("no WiFi package installed")


async def probe_once(executor: IdempotentExecutor) -> WifiVocabulary:
    """One probe attempt. A missing package is TRANSIENT: it may still be loading."""
    output = await executor.query(PACKAGE_PROBE)
    try:
        vocabulary = vocabulary_from_packages(extract_package_names(output))
    except LookupError:
        raise TransientCommandError(PACKAGE_PROBE, "WiFi package not reported yet")
    logger.info(f"[{executor.device_id}] WiFi subsystem: {vocabulary.package} ({vocabulary.path})")
    return vocabulary


async def explain_missing_wifi(executor: IdempotentExecutor) -> CapabilityError:
    """Build the error for a device where probing never found a WiFi package."""
    legacy = await executor.query_best_effort(LEGACY_PROBE, "legacy wireless package check")
    if legacy and extract_package_names(legacy):
        return CapabilityError(
            f"{executor.device_id}: only the legacy 'wireless' package is installed; "
            "install wifi-qcom or wifiwave2"
        )
    return CapabilityError(f"{executor.device_id}: no WiFi package found (wifi-qcom or wifiwave2)")
