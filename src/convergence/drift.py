"""Drift controller.

Periodically re-validates configurations: once a configuration has been
quiet for the drift interval and the fleet has room, it is stamped with the
drift annotation, which makes the configuration pipeline re-run its plan.
"""

from __future__ import annotations

import logging
import time

from .admission import DriftSettings, FleetSnapshot, evaluate
from .events import Severity
from .manager import Controller
from .models import DRIFT_ANNOTATION, Configuration
from .runner import Result, RunContext, Step, requeue_after
from .store import EventType, WatchEvent

logger = logging.getLogger(__name__)

CONTROLLER_NAME = "drift.terraform.convergence.dev"


class DriftController(Controller):
    """Triggers drift detection on Configuration resources."""

    name = CONTROLLER_NAME
    kind = Configuration

    def __init__(self, *args, settings: DriftSettings | None = None, **kwargs) -> None:
        kwargs.setdefault("max_concurrent_reconciles", 1)
        super().__init__(*args, **kwargs)
        self.settings = settings or DriftSettings()

        if self.settings.check_interval.total_seconds() <= 0:
            raise ValueError("interval must be greater than 0")
        if self.settings.drift_interval.total_seconds() <= 0:
            raise ValueError("drift interval must be greater than 0")
        if self.settings.threshold < 0:
            raise ValueError("drift threshold must be greater than or equal to 0")

    def accepts(self, event: WatchEvent) -> bool:
        """Only updates of live, drift-enabled configurations whose annotations held still."""
        if event.type != EventType.MODIFIED or event.old is None:
            return False

        configuration = event.obj
        if not configuration.spec.enable_drift_detection:
            return False
        if configuration.is_deleting():
            return False
        return configuration.metadata.annotations == event.old.metadata.annotations

    async def converge(self, configuration: Configuration) -> Result:
        return await self.run(
            configuration,
            [
                self.ensure_ready_for_drift(configuration),
                self.ensure_drift_detection(configuration),
                requeue_after(self.settings.check_interval),
            ],
        )

    def ensure_ready_for_drift(self, configuration: Configuration) -> Step:
        """Defer the configuration unless every admission gate passes."""

        async def step(ctx: RunContext) -> Result | None:
            try:
                fleet = FleetSnapshot.from_resources(await ctx.store.list(Configuration))
            except Exception as e:
                logger.error(
                    "failed to retrieve a list of configurations",
                    extra={"error": str(e)},
                )
                raise

            decision = evaluate(configuration, fleet, settings=self.settings)
            if not decision.admitted:
                logger.debug(
                    "drift detection deferred",
                    extra={
                        "configuration": configuration.name,
                        "namespace": configuration.namespace,
                        "gate": decision.gate,
                        "running": fleet.running,
                        "total": fleet.total,
                    },
                )
                return Result(requeue_after=decision.requeue_after)
            return None

        return step

    def ensure_drift_detection(self, configuration: Configuration) -> Step:
        """Stamp the drift annotation on the configuration."""

        async def step(ctx: RunContext) -> Result | None:
            original = configuration.model_copy(deep=True)
            configuration.metadata.annotations[DRIFT_ANNOTATION] = str(int(time.time()))

            try:
                await ctx.store.patch(configuration, original)
            except Exception:
                self.recorder.record(
                    configuration,
                    Severity.WARNING,
                    "DriftDetection",
                    "Failed to patch configuration with drift detection annotation",
                )
                raise

            self.metrics.drift_triggered.inc()
            self.recorder.record(
                configuration,
                Severity.NORMAL,
                "DriftDetection",
                "Triggered drift detection on configuration",
            )
            return None

        return step
