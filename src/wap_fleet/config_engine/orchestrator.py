"""Fleet rollout orchestrator.

CAPsMAN path, strictly ordered:
1. CONTROLLER            - mandatory; failure aborts the run
2. CONTROLLER_SETTLE     - fixed wait for the controller service
3. CAPS                  - per-CAP, isolated, staggered or bounded-parallel
4. CAP_INTERFACE_BINDING - after a settle; non-fatal
5. ACCESS_RULES          - fleet-wide, reads inventory after binding; non-fatal
6. LOCAL_FALLBACK        - per-CAP own radios; warnings only
7. STANDALONE            - any standalone devices mixed in

Simple path: every device configured independently (SIMPLE).
"""
import asyncio
import logging
import time
from contextlib import asynccontextmanager
from typing import Awaitable, Callable, Optional

from ..config.schema import DeviceConfig, DeviceRole, FleetConfig, ResolvedSsid
from ..devices import create_session
from ..utils.connection import settle
from ..utils.logging_config import timed_section
from .access_list import collect_locks
from .configurer import DeviceConfigurer, SessionFactory, cap_identity_map
from .identity import SwappedRadioTable
from .schema import (
    DeviceResult,
    PhaseRecord,
    RolloutOptions,
    RolloutPhase,
    RolloutResult,
    RolloutStatus,
)
from .ssid_resolver import SsidResolver
from .validator import FleetValidator

logger = logging.getLogger(__name__)

DeviceOperation = Callable[[DeviceConfig], Awaitable[list[str]]]


class RolloutAborted(Exception):
    """The controller could not be configured; no CAP was touched."""

    def __init__(self, result: RolloutResult, cause: Exception):
        super().__init__(f"Rollout aborted: controller configuration failed: {cause}")
        self.result = result
        self.cause = cause


class FleetOrchestrator:
    """Sequences per-device configuration across a fleet."""

    def __init__(
        self,
        fleet: FleetConfig,
        options: Optional[RolloutOptions] = None,
        session_factory: SessionFactory = create_session,
    ):
        self.fleet = fleet
        self.options = options or RolloutOptions()
        self.resolver = SsidResolver(fleet.ssids)
        self.validator = FleetValidator(self.resolver)
        table = SwappedRadioTable().extend(fleet.swapped_boards)
        self.configurer = DeviceConfigurer(self.options, table, session_factory)
        self.result = RolloutResult()
        self._ssids: dict[int, list[ResolvedSsid]] = {}

    @asynccontextmanager
    async def _phase(self, phase: RolloutPhase, device_id: Optional[str] = None):
        """Time a phase and record its outcome; exceptions propagate."""
        record = PhaseRecord(phase=phase, success=True)
        start = time.perf_counter()
        logger.info(f"=== {phase.value} ===")
        try:
            async with timed_section(phase.value, device_id):
                yield record
        except Exception as e:
            record.success = False
            record.message = record.message or str(e)
            raise
        finally:
            record.duration_ms = (time.perf_counter() - start) * 1000
            self.result.phases.append(record)

    # --- Validation ---

    def validate(self) -> None:
        """Reject the whole fleet before any device is contacted.

        Raises:
            FleetValidationError: with every problem found
        """
        validation = self.validator.ensure_valid(self.fleet)
        for warning in validation.warnings:
            logger.warning(warning)
        self.result.warnings.extend(validation.warnings)

        controller = self.fleet.controller
        controller_ssids = self.resolver.resolve(controller) if controller else []
        for device in self.fleet.devices:
            if device is controller:
                self._ssids[device.index] = controller_ssids
            elif device.role == DeviceRole.CAP:
                self._ssids[device.index] = self.resolver.resolve_for_cap(device, controller_ssids)
            else:
                self._ssids[device.index] = self.resolver.resolve(device)

    # --- Per-device execution ---

    async def _run_device(self, device: DeviceConfig, operation: DeviceOperation) -> DeviceResult:
        """Run one device's configuration; a failure stays with that device."""
        result = DeviceResult(index=device.index, host=device.host, role=device.role)
        logger.info(f"Configuring device {device.index} ({device.host}, {device.role.value})")
        try:
            async with timed_section(f"configure_{device.role.value}", device.host):
                result.warnings = await operation(device)
            result.success = True
            logger.info(f"Device {device.index} ({device.host}) configured")
        except Exception as e:
            result.error = str(e)
            logger.error(f"Device {device.index} ({device.host}) failed: {e}")
        return result

    async def _run_many(self, devices: list[DeviceConfig], operation: DeviceOperation) -> list[DeviceResult]:
        """Sequential with a stagger between devices, or bounded parallel."""
        if not devices:
            return []
        if self.options.parallel:
            semaphore = asyncio.Semaphore(max(1, self.options.max_parallel))

            async def bounded(device: DeviceConfig) -> DeviceResult:
                async with semaphore:
                    return await self._run_device(device, operation)

            return list(await asyncio.gather(*(bounded(d) for d in devices)))

        results = []
        for position, device in enumerate(devices):
            if position:
                await settle(self.options.stagger_delay, "roaming-safe delay between devices")
            results.append(await self._run_device(device, operation))
        return results

    # --- Paths ---

    async def run(self) -> RolloutResult:
        """Validate, then run the CAPsMAN or the simple path.

        Raises:
            FleetValidationError: nothing was touched
            RolloutAborted: the controller failed; carries the partial result
        """
        async with self._phase(RolloutPhase.VALIDATING):
            self.validate()

        if self.fleet.is_capsman:
            await self._run_capsman()
        else:
            await self._run_simple()

        self.result.status = (
            RolloutStatus.COMPLETED if self.result.failed == 0 else RolloutStatus.COMPLETED_WITH_FAILURES
        )
        logger.info(
            f"Rollout {self.result.status.value}: {self.result.passed} passed, {self.result.failed} failed"
        )
        return self.result

    async def _run_simple(self) -> None:
        devices = self.fleet.devices
        async with self._phase(RolloutPhase.SIMPLE) as record:
            results = await self._run_many(devices, self._standalone)
            self.result.devices.extend(results)
            record.success = all(r.success for r in results)
            record.message = f"{sum(r.success for r in results)}/{len(results)} devices configured"

    async def _run_capsman(self) -> None:
        controller = self.fleet.controller
        caps = self.fleet.caps

        controller_result = await self._controller_phase(controller)
        self.result.devices.append(controller_result)

        async with self._phase(RolloutPhase.CONTROLLER_SETTLE):
            await settle(self.options.controller_settle, "controller services to initialize")

        async with self._phase(RolloutPhase.CAPS) as record:
            cap_results = await self._run_many(caps, self.configurer.configure_cap)
            self.result.devices.extend(cap_results)
            record.success = all(r.success for r in cap_results)
            record.message = f"{sum(r.success for r in cap_results)}/{len(cap_results)} CAPs configured"

        if caps:
            await self._binding_phase(controller, controller_result)
        await self._access_rule_phase(controller, controller_result)

        joined = [cap for cap, r in zip(caps, cap_results) if r.success]
        await self._local_fallback_phase(joined, cap_results)

        standalones = self.fleet.standalones
        if standalones:
            async with self._phase(RolloutPhase.STANDALONE) as record:
                results = await self._run_many(standalones, self._standalone)
                self.result.devices.extend(results)
                record.success = all(r.success for r in results)
                record.message = f"{sum(r.success for r in results)}/{len(results)} standalone devices configured"

    async def _controller_phase(self, controller: DeviceConfig) -> DeviceResult:
        result = DeviceResult(index=controller.index, host=controller.host, role=controller.role)
        try:
            async with self._phase(RolloutPhase.CONTROLLER, controller.host):
                result.warnings = await self.configurer.configure_controller(controller)
        except Exception as e:
            result.error = str(e)
            self.result.devices.append(result)
            self.result.status = RolloutStatus.ABORTED
            logger.error(f"Controller {controller.host} failed, aborting rollout: {e}")
            raise RolloutAborted(self.result, e) from e
        result.success = True
        return result

    async def _binding_phase(self, controller: DeviceConfig, controller_result: DeviceResult) -> None:
        try:
            async with self._phase(RolloutPhase.CAP_INTERFACE_BINDING, controller.host):
                await settle(self.options.cap_binding_settle, "CAP interfaces to appear on the controller")
                caps = cap_identity_map(self.fleet.caps, self._ssids)
                warnings = await self.configurer.bind_cap_interfaces(controller, caps)
                controller_result.warnings.extend(warnings)
        except Exception as e:
            self._fleet_warning(controller_result, f"CAP interface binding failed: {e}")

    async def _access_rule_phase(self, controller: DeviceConfig, controller_result: DeviceResult) -> None:
        locks = collect_locks(self.fleet.devices)
        try:
            async with self._phase(RolloutPhase.ACCESS_RULES, controller.host) as record:
                plan = await self.configurer.reconcile_access_rules(controller, locks)
                record.message = (
                    "no changes" if plan.no_change
                    else f"{len(plan.additions)} added, {len(plan.removals)} removed"
                )
        except Exception as e:
            self._fleet_warning(controller_result, f"Access rule reconciliation failed: {e}")

    async def _local_fallback_phase(self, caps: list[DeviceConfig], cap_results: list[DeviceResult]) -> None:
        if not caps:
            return
        by_index = {r.index: r for r in cap_results}

        async def fallback(cap: DeviceConfig) -> list[str]:
            return await self.configurer.configure_local_fallback(cap, self._ssids.get(cap.index, []))

        async with self._phase(RolloutPhase.LOCAL_FALLBACK) as record:
            for outcome in await self._run_many(caps, fallback):
                cap_result = by_index[outcome.index]
                cap_result.warnings.extend(outcome.warnings)
                if not outcome.success:
                    self._fleet_warning(cap_result, f"Local fallback failed: {outcome.error}")
            record.message = f"{len(caps)} CAPs"

    def _fleet_warning(self, device_result: DeviceResult, message: str) -> None:
        logger.warning(f"[{device_result.host}] {message}")
        device_result.warnings.append(message)
        self.result.warnings.append(f"{device_result.host}: {message}")

    async def _standalone(self, device: DeviceConfig) -> list[str]:
        return await self.configurer.configure_standalone(device, self._ssids.get(device.index, []))
