"""
Error taxonomy for the monitoring / recovery core.

Only some of these ever leave the service:
  - ServiceNotActive / InvalidConfiguration are raised to callers
  - ActionExecutionError / RollbackError / ConcurrencyRejection /
    OrchestrationFault are raised and handled inside the orchestrator and
    surface as RecoveryResult recommendations + events instead
"""

from __future__ import annotations

from typing import Optional


class MonitoringError(Exception):
    """Base class for all monitoring errors."""


class NoApplicableStrategy(MonitoringError):
    def __init__(self, fault_type: str) -> None:
        super().__init__(f"no applicable strategy for fault type {fault_type}")
        self.fault_type = fault_type


class ActionExecutionError(MonitoringError):
    """Transient failure of a single action attempt; retried locally."""

    def __init__(self, action_type: str, message: str, attempt: Optional[int] = None) -> None:
        super().__init__(f"{action_type}: {message}")
        self.action_type = action_type
        self.attempt = attempt


class RollbackError(MonitoringError):
    """Rollback of a failed attempt failed. Logged, never escalated."""


class ConcurrencyRejection(MonitoringError):
    """Recovery capacity is exhausted; the caller may re-submit later."""

    def __init__(self, in_flight: int, limit: int) -> None:
        super().__init__(f"recovery capacity full ({in_flight}/{limit})")
        self.in_flight = in_flight
        self.limit = limit


class OrchestrationFault(MonitoringError):
    """Unexpected exception inside the recovery state machine."""


class ServiceNotActive(MonitoringError):
    """Operation requires a started service."""


class InvalidConfiguration(MonitoringError):
    """A configuration update failed validation."""
