"""Composition root for the controllers.

Wires configuration, logging, metrics and the enabled controllers into a
Manager over a caller-supplied resource store, and runs it until SIGTERM or
SIGINT.
"""

from __future__ import annotations

import asyncio
import json
import logging
import signal
import sys
from datetime import UTC, datetime

from prometheus_client import CollectorRegistry

from .cloudresource import CloudResourceController
from .config import Config
from .drift import DriftController
from .events import EventRecorder
from .manager import Controller, Manager
from .metrics import Metrics
from .plan import PlanController
from .provider import ProviderController
from .revision import RevisionController
from .store import ResourceStore

# LogRecord attributes that are not user supplied context
_RESERVED_ATTRS = frozenset(
    {
        "name",
        "msg",
        "args",
        "created",
        "filename",
        "funcName",
        "levelname",
        "levelno",
        "lineno",
        "module",
        "msecs",
        "pathname",
        "process",
        "processName",
        "relativeCreated",
        "stack_info",
        "exc_info",
        "exc_text",
        "thread",
        "threadName",
        "taskName",
        "message",
    }
)


class JsonFormatter(logging.Formatter):
    """Format logs as JSON for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(UTC).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "message": record.getMessage(),
            "logger": record.name,
        }

        # Add extra fields from the record
        for key, value in record.__dict__.items():
            if key not in _RESERVED_ATTRS:
                log_data[key] = value

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


def setup_logging(level: str = "INFO") -> None:
    """Configure structured logging with JSON output on stdout."""
    root_logger = logging.getLogger()
    root_logger.setLevel(level)

    if any(isinstance(h.formatter, JsonFormatter) for h in root_logger.handlers):
        return

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JsonFormatter())
    root_logger.addHandler(handler)


def build_controllers(
    config: Config,
    store: ResourceStore,
    recorder: EventRecorder | None = None,
    metrics: Metrics | None = None,
) -> list[Controller]:
    """Instantiate the controllers enabled in the configuration."""
    metrics = metrics if metrics is not None else Metrics()
    options = {
        "timeout": float(config.reconcile_timeout_seconds),
        "max_concurrent_reconciles": config.max_concurrent_reconciles,
    }

    controllers: list[Controller] = []
    if config.is_enabled("cloudresource"):
        controllers.append(CloudResourceController(store, recorder, metrics, **options))
    if config.is_enabled("drift"):
        # One drift worker keeps the fleet threshold meaningful
        controllers.append(
            DriftController(
                store,
                recorder,
                metrics,
                settings=config.drift_settings,
                timeout=options["timeout"],
                max_concurrent_reconciles=1,
            )
        )
    if config.is_enabled("plan"):
        controllers.append(PlanController(store, recorder, metrics, **options))
    if config.is_enabled("provider"):
        controllers.append(ProviderController(store, recorder, metrics, **options))
    if config.is_enabled("revision"):
        controllers.append(RevisionController(store, recorder, metrics, **options))
    return controllers


async def run_manager(
    config: Config,
    store: ResourceStore,
    recorder: EventRecorder | None = None,
    registry: CollectorRegistry | None = None,
) -> int:
    """Run the enabled controllers against store until signalled.

    Returns:
        Exit code (0 for a clean shutdown, 1 on an unhandled error).
    """
    setup_logging(config.log_level)
    logger = logging.getLogger(__name__)

    metrics = Metrics(registry)
    controllers = build_controllers(config, store, recorder, metrics)
    manager = Manager(store, controllers, metrics=metrics, namespaces=config.watch_namespaces)

    logger.info(
        "Starting convergence controllers",
        extra={
            "controllers": [c.name for c in controllers],
            "drift_interval_seconds": config.drift_interval_seconds,
            "drift_threshold": config.drift_threshold,
        },
    )

    loop = asyncio.get_running_loop()

    def signal_handler(sig: signal.Signals) -> None:
        logger.info("Received signal", extra={"signal": sig.name})
        manager.shutdown()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, lambda s=sig: signal_handler(s))

    try:
        await manager.run()
    except Exception as e:
        logger.exception("Unhandled exception", extra={"error": str(e)})
        return 1
    finally:
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.remove_signal_handler(sig)

    logger.info("Controllers stopped")
    return 0
