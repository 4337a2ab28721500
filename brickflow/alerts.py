"""
Deployment alerts - side-channel notification for failing steps.

A step with ``onError.alert`` sends an alert when it fails, so a deployment's
administrators can recover manually. Alerts never change error propagation.
"""

import logging
from abc import ABC, abstractmethod
from typing import Any

logger = logging.getLogger(__name__)


class AlertSink(ABC):
    """Capability interface for sending deployment alerts."""

    @abstractmethod
    def send(self, deployment_id: str, data: dict[str, Any]) -> None:
        """
        Send an alert for a deployment.

        Args:
            deployment_id: The deployment the failing mod was activated from
            data: {"id": brick id, "context": message context, "error": serialized error}
        """
        pass


class LoggingAlertSink(AlertSink):
    """Logs alerts at error level."""

    def send(self, deployment_id: str, data: dict[str, Any]) -> None:
        error = data.get("error") or {}
        logger.error(
            f"Deployment alert for {deployment_id}: step {data.get('id')} failed: {error.get('message')}"
        )


class InMemoryAlertSink(AlertSink):
    """Collects alerts (for testing)."""

    def __init__(self) -> None:
        self.alerts: list[tuple[str, dict[str, Any]]] = []

    def send(self, deployment_id: str, data: dict[str, Any]) -> None:
        self.alerts.append((deployment_id, data))
