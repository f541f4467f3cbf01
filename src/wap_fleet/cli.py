#!/usr/bin/env python3
"""Fleet rollout CLI.

Usage:
    wap-fleet [CONFIG] [--parallel] [--max-parallel N] [--delay N] [--no-delay]
              [--report PATH] [--verbose]

Environment variables:
    WAP_FLEET_PASSWORD      Device password when the fleet file has none
    WAP_FLEET_LOG_LEVEL     Console log level (default: INFO)
    WAP_FLEET_LOG_FILE      Log file (default: ~/.wap-fleet/wap-fleet.log)
"""
import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Optional

from .config.inventory import FleetDocumentError, FleetInventory
from .config_engine.orchestrator import FleetOrchestrator, RolloutAborted
from .config_engine.schema import RolloutOptions, RolloutResult
from .config_engine.validator import FleetValidationError
from .utils.logging_config import setup_logging

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="wap-fleet",
        description="Roll out a declarative WiFi configuration to a RouterOS access-point fleet",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
    # Roll out ./configs/fleet.yaml (or ./fleet.yaml)
    wap-fleet

    # Explicit file, four devices at a time, JSON summary
    wap-fleet site.yaml --parallel --max-parallel 4 --report rollout.json

    # Sequential without the roaming-safe delay between devices
    wap-fleet site.yaml --no-delay
""",
    )
    parser.add_argument(
        "config",
        nargs="?",
        type=Path,
        help="Fleet file (default: search ./configs/fleet.yaml, ./fleet.yaml, ...)",
    )
    parser.add_argument(
        "--parallel",
        action="store_true",
        help="Configure CAPs and standalone devices in parallel",
    )
    parser.add_argument(
        "--max-parallel",
        type=int,
        default=4,
        help="Upper bound on concurrent device sessions with --parallel (default: 4)",
    )
    parser.add_argument(
        "--delay",
        type=float,
        default=5,
        help="Seconds between devices in sequential mode (default: 5)",
    )
    parser.add_argument(
        "--no-delay",
        action="store_true",
        help="Skip the delay between devices",
    )
    parser.add_argument(
        "--report",
        type=Path,
        help="Write the rollout summary as JSON to this file",
    )
    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable debug logging",
    )
    return parser


def options_from_args(args: argparse.Namespace) -> RolloutOptions:
    return RolloutOptions(
        parallel=args.parallel,
        max_parallel=max(1, args.max_parallel),
        stagger_delay=0 if args.no_delay else max(0.0, args.delay),
    )


def write_report(result: RolloutResult, path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w") as f:
        json.dump(result.to_dict(), f, indent=2)
    logger.info(f"Report written to {path}")


def print_summary(result: RolloutResult) -> None:
    logger.info("")
    logger.info("=" * 60)
    logger.info("ROLLOUT RESULTS")
    logger.info("=" * 60)

    for device in sorted(result.devices, key=lambda d: d.index):
        status = "OK" if device.success else "FAIL"
        logger.info(f"  [{device.index}] {device.host} ({device.role.value}): {status}")
        if device.error:
            logger.info(f"      Error: {device.error}")
        for warning in device.warnings:
            logger.info(f"      Warning: {warning}")

    logger.info("")
    for phase in result.phases:
        phase_status = "OK" if phase.success else "FAIL"
        detail = f" - {phase.message}" if phase.message else ""
        logger.info(f"  {phase.phase.value}: {phase_status} ({phase.duration_ms:.0f}ms){detail}")

    summary = result.to_dict()["summary"]
    logger.info("")
    logger.info(f"Total: {summary['total_devices']} devices")
    logger.info(f"Passed: {summary['passed']}")
    logger.info(f"Failed: {summary['failed']}")
    logger.info("=" * 60)


def main(argv: Optional[list[str]] = None) -> int:
    """Main entry point for the rollout CLI."""
    args = build_parser().parse_args(argv)
    setup_logging(verbose=args.verbose)

    try:
        inventory = FleetInventory(str(args.config) if args.config else None)
    except (FileNotFoundError, FleetDocumentError) as e:
        logger.error(f"Cannot load fleet file: {e}")
        return 1

    options = options_from_args(args)
    logger.info("=" * 60)
    logger.info("WiFi fleet rollout")
    logger.info("=" * 60)
    logger.info(f"Fleet file: {inventory.config_path}")
    logger.info(f"Devices: {len(inventory.fleet.devices)}")
    logger.info(
        f"Mode: {'parallel (max ' + str(options.max_parallel) + ')' if options.parallel else 'sequential'}"
        + ("" if options.parallel else f", {options.stagger_delay:g}s between devices")
    )

    orchestrator = FleetOrchestrator(inventory.fleet, options)
    try:
        result = asyncio.run(orchestrator.run())
    except KeyboardInterrupt:
        logger.warning("Rollout interrupted by user")
        return 130
    except FleetValidationError as e:
        logger.error("Fleet validation failed, no device was touched:")
        for error in e.result.errors:
            logger.error(f"  - {error}")
        return 1
    except RolloutAborted as e:
        logger.error(str(e))
        print_summary(e.result)
        if args.report:
            write_report(e.result, args.report)
        return 1

    print_summary(result)
    if args.report:
        write_report(result, args.report)

    if result.success:
        logger.info("ROLLOUT COMPLETED")
        return 0
    logger.error("ROLLOUT COMPLETED WITH FAILURES")
    return 1


if __name__ == "__main__":
    sys.exit(main())
