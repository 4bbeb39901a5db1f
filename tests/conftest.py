"""Shared fixtures for monitor tests."""

import os

# Before any apps.monitor import: Settings reads the environment once.
os.environ.setdefault("MONITOR_OTEL_ENABLED", "false")
os.environ.setdefault("MONITOR_SIMULATED_ACTION_DELAY_SECONDS", "0")

import asyncio
import uuid
from datetime import datetime, timedelta, timezone
from typing import List, Optional

import pytest

from apps.monitor.config import MonitoringConfig
from apps.monitor.models.fault_models import ActionType, Fault, FaultType, Severity
from apps.monitor.services.event_bus import Event, EventBus
from apps.monitor.services.executors import ExecutorRegistry
from apps.monitor.services.fault_store import FaultStore
from apps.monitor.services.monitoring_service import MonitoringService
from apps.monitor.services.recovery_orchestrator import RecoveryOrchestrator
from apps.monitor.services.sla_evaluator import SLAEvaluator


# ---------------------------------------------------------------------------
# Test doubles
# ---------------------------------------------------------------------------

class ScriptedExecutor:
    """
    Returns queued outcomes in order (True / False / an exception instance to
    raise), then `default` once the script runs out.
    """

    def __init__(self, outcomes=None, default: bool = True) -> None:
        self.outcomes = list(outcomes or [])
        self.default = default
        self.calls: List[tuple] = []

    async def execute(self, action, fault) -> bool:
        self.calls.append((action.type, action.retry_count, fault.id))
        outcome = self.outcomes.pop(0) if self.outcomes else self.default
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome

    @property
    def action_types(self) -> List[ActionType]:
        return [call[0] for call in self.calls]


class BlockingExecutor:
    """Holds every call until `release()`; used to keep recoveries in flight."""

    def __init__(self) -> None:
        self.calls: List[tuple] = []
        self._released = asyncio.Event()

    async def execute(self, action, fault) -> bool:
        self.calls.append((action.type, action.retry_count, fault.id))
        await self._released.wait()
        return True

    def release(self) -> None:
        self._released.set()

    async def wait_for_calls(self, count: int) -> None:
        while len(self.calls) < count:
            await asyncio.sleep(0)


class RecordedSleep:
    """Drop-in for asyncio.sleep that records the requested delays (seconds)."""

    def __init__(self) -> None:
        self.delays: List[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)
        await asyncio.sleep(0)


class EventRecorder:
    def __init__(self, bus: EventBus) -> None:
        self.events: List[Event] = []
        bus.subscribe("*", self.events.append)

    def types(self, fault_id: Optional[str] = None) -> List[str]:
        return [e.type for e in self.events if fault_id is None or _fault_id_of(e) == fault_id]

    def of_type(self, event_type: str) -> List[Event]:
        return [e for e in self.events if e.type == event_type]


def _fault_id_of(event: Event) -> Optional[str]:
    if "fault" in event.payload:
        return event.payload["fault"].id
    return event.payload.get("fault_id")


class FixedClock:
    def __init__(self, start: Optional[datetime] = None) -> None:
        self.now = start or datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


def registry_with(executor, overrides=None) -> ExecutorRegistry:
    registry = ExecutorRegistry()
    for action_type in ActionType:
        registry.register(action_type, executor)
    for action_type, override in (overrides or {}).items():
        registry.register(action_type, override)
    return registry


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def bus():
    return EventBus()


@pytest.fixture
def recorder(bus):
    return EventRecorder(bus)


@pytest.fixture
def sleep():
    return RecordedSleep()


@pytest.fixture
def clock():
    return FixedClock()


@pytest.fixture
def store():
    return FaultStore()


@pytest.fixture
def executor():
    return ScriptedExecutor()


@pytest.fixture
def executors(executor):
    return registry_with(executor)


@pytest.fixture
def orchestrator(bus, store, executors, sleep):
    return RecoveryOrchestrator(
        bus,
        store,
        executors,
        max_concurrent_recoveries=5,
        recovery_timeout_ms=1000,
        sleep=sleep,
    )


@pytest.fixture
def sla(bus, clock):
    return SLAEvaluator(bus, clock=clock)


@pytest.fixture
def make_fault():
    def _make(
        fault_type: FaultType = FaultType.DATABASE_CONNECTION_FAILURE,
        severity: Severity = Severity.CRITICAL,
        service_id: str = "database",
        **kwargs,
    ) -> Fault:
        return Fault(
            id=kwargs.pop("id", f"fault_{uuid.uuid4().hex[:8]}"),
            type=fault_type,
            severity=severity,
            service_id=service_id,
            **kwargs,
        )

    return _make


@pytest.fixture
def monitoring(bus, executor, sleep):
    return MonitoringService(
        MonitoringConfig(),
        bus=bus,
        executors=registry_with(executor),
        sleep=sleep,
    )
