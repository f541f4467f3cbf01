"""Logging for wap-fleet rollouts.

A rollout writes three streams:
- the console, narrating progress per device and phase
- a rotating log file with everything at DEBUG
- a rotating perf file with one timing line per session, device and phase

Environment Variables:
    WAP_FLEET_LOG_LEVEL: console level, DEBUG/INFO/WARNING/ERROR (default: INFO)
    WAP_FLEET_LOG_FILE: log file path (default: ~/.wap-fleet/wap-fleet.log)
    WAP_FLEET_LOG_MAX_SIZE: size in MB before the files rotate (default: 10)
    WAP_FLEET_LOG_BACKUPS: rotated files kept per stream (default: 5)

The perf file sits beside the log file as ``wap-fleet-perf.log``.
"""
import asyncio
import functools
import logging
import os
import time
from contextlib import asynccontextmanager
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional, Callable, Any

perf_logger = logging.getLogger("wap_fleet.perf")

LOG_FORMAT = "%(asctime)s.%(msecs)03d | %(name)-32s | %(levelname)-7s | %(message)s"
CONSOLE_FORMAT = "%(asctime)s %(levelname)-7s %(message)s"
PERF_FORMAT = "%(asctime)s.%(msecs)03d | PERF | %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def get_log_level(default: str = "INFO") -> int:
    """Console level from WAP_FLEET_LOG_LEVEL; unknown names mean INFO."""
    level_str = os.environ.get("WAP_FLEET_LOG_LEVEL", default).upper()
    return getattr(logging, level_str, logging.INFO)


def get_log_file() -> Path:
    path_str = os.environ.get("WAP_FLEET_LOG_FILE")
    if path_str:
        return Path(path_str)
    return Path.home() / ".wap-fleet" / "wap-fleet.log"


def _rotating(path: Path, formatter: logging.Formatter) -> RotatingFileHandler:
    max_size_mb = int(os.environ.get("WAP_FLEET_LOG_MAX_SIZE", "10"))
    handler = RotatingFileHandler(
        path,
        maxBytes=max_size_mb * 1024 * 1024,
        backupCount=int(os.environ.get("WAP_FLEET_LOG_BACKUPS", "5")),
        encoding="utf-8",
    )
    handler.setLevel(logging.DEBUG)
    handler.setFormatter(formatter)
    return handler


def _reset(logger: logging.Logger) -> None:
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()


def setup_logging(verbose: bool = False) -> None:
    """Attach the console, log file and perf file handlers.

    Safe to call more than once; earlier handlers are closed and replaced.
    ``verbose`` drops the console to DEBUG and mirrors timings there too.
    """
    console_level = logging.DEBUG if verbose else get_log_level()
    log_file = get_log_file()
    log_file.parent.mkdir(parents=True, exist_ok=True)

    console_handler = logging.StreamHandler()
    console_handler.setLevel(console_level)
    console_handler.setFormatter(logging.Formatter(CONSOLE_FORMAT, datefmt=DATE_FORMAT))

    app_logger = logging.getLogger("wap_fleet")
    _reset(app_logger)
    app_logger.setLevel(logging.DEBUG)
    app_logger.addHandler(console_handler)
    app_logger.addHandler(_rotating(log_file, logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT)))

    _reset(perf_logger)
    perf_logger.setLevel(logging.DEBUG)
    perf_logger.propagate = False
    perf_logger.addHandler(
        _rotating(log_file.parent / "wap-fleet-perf.log", logging.Formatter(PERF_FORMAT, datefmt=DATE_FORMAT))
    )
    if verbose:
        perf_logger.addHandler(console_handler)

    app_logger.debug(f"Logging to {log_file} (console level {logging.getLevelName(console_level)})")


class _Stopwatch:
    """One perf line per timed block: OK with the duration, or FAIL with the error."""

    def __init__(self, operation: str, device_id: Optional[str], extra: dict):
        self.operation = operation
        self.device_id = device_id
        self.extra = " | ".join(f"{k}={v}" for k, v in extra.items())
        self.start = time.perf_counter()

    def _line(self, outcome: str) -> str:
        elapsed = (time.perf_counter() - self.start) * 1000
        line = f"{self.operation:24s} | {self.device_id or 'N/A':20s} | {elapsed:9.2f}ms | {outcome}"
        return f"{line} | {self.extra}" if self.extra else line

    def ok(self) -> None:
        perf_logger.info(self._line("OK"))

    def failed(self, error: BaseException) -> None:
        perf_logger.warning(self._line(f"FAIL: {error}"))


def timed(operation: str, device_id: Optional[str] = None):
    """Log how long a method takes.

    The device defaults to ``self.device_id`` when the decorated callable
    is a method of something that has one.
    """
    def decorator(func: Callable) -> Callable:
        def device_of(args) -> Optional[str]:
            if device_id is None and args:
                return getattr(args[0], "device_id", None)
            return device_id

        if asyncio.iscoroutinefunction(func):
            @functools.wraps(func)
            async def async_wrapper(*args, **kwargs) -> Any:
                watch = _Stopwatch(operation, device_of(args), {})
                try:
                    result = await func(*args, **kwargs)
                except Exception as e:
                    watch.failed(e)
                    raise
                watch.ok()
                return result

            return async_wrapper

        @functools.wraps(func)
        def sync_wrapper(*args, **kwargs) -> Any:
            watch = _Stopwatch(operation, device_of(args), {})
            try:
                result = func(*args, **kwargs)
            except Exception as e:
                watch.failed(e)
                raise
            watch.ok()
            return result

        return sync_wrapper

    return decorator


@asynccontextmanager
async def timed_section(operation: str, device_id: Optional[str] = None, **extra):
    """Time a block of a rollout, e.g. one phase or one device.

        async with timed_section("access_rules", device_id="ctrl.lan", rules=12):
            ...
    """
    watch = _Stopwatch(operation, device_id, extra)
    try:
        yield
    except Exception as e:
        watch.failed(e)
        raise
    watch.ok()
