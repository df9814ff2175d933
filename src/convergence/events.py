"""Event notification sink.

Steps record human-facing events against a resource (drift triggered,
configuration updated, action required). The sink is an external collaborator;
LoggingEventRecorder writes events to the log for deployments without one.
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import Protocol

from .models import ApiObject

logger = logging.getLogger(__name__)


class Severity(str, Enum):
    """Event severity, matching the cluster event types."""

    NORMAL = "Normal"
    WARNING = "Warning"


class EventRecorder(Protocol):
    """Records an event against a resource."""

    def record(self, resource: ApiObject, severity: Severity, reason: str, message: str) -> None: ...


class LoggingEventRecorder:
    """EventRecorder that emits each event as a structured log line."""

    def __init__(self, component: str) -> None:
        self._component = component

    def record(self, resource: ApiObject, severity: Severity, reason: str, message: str) -> None:
        level = logging.WARNING if severity == Severity.WARNING else logging.INFO
        logger.log(
            level,
            message,
            extra={
                "component": self._component,
                "kind": resource.kind,
                "resource_name": resource.name,
                "namespace": resource.namespace,
                "event_reason": reason,
                "severity": severity.value,
            },
        )
