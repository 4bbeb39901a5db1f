"""
Recovery action executors.

The orchestrator only knows the `RecoveryActionExecutor` capability: an async
`execute(action, fault) -> bool`. Returning False or raising counts as a
failed attempt. Executors are looked up per action type in an
`ExecutorRegistry`; a missing executor is a failed attempt too.
"""

from __future__ import annotations

import asyncio
import gc
import logging
from typing import Awaitable, Callable, Dict, List, Optional, Protocol

from ..config import settings
from ..models.fault_models import ActionType, Fault, RecoveryAction
from .event_bus import EventBus

logger = logging.getLogger("selfheal.executors")

SleepFn = Callable[[float], Awaitable[None]]


class RecoveryActionExecutor(Protocol):
    async def execute(self, action: RecoveryAction, fault: Fault) -> bool:
        ...


class ExecutorRegistry:
    def __init__(self) -> None:
        self._executors: Dict[str, RecoveryActionExecutor] = {}

    def register(self, action_type: ActionType, executor: RecoveryActionExecutor) -> None:
        self._executors[ActionType(action_type).value] = executor

    def get(self, action_type: ActionType) -> Optional[RecoveryActionExecutor]:
        return self._executors.get(ActionType(action_type).value)

    def types(self) -> List[str]:
        return sorted(self._executors)

    def __contains__(self, action_type: object) -> bool:
        return ActionType(action_type).value in self._executors


class SimulatedExecutor:
    """Stands in for infrastructure we cannot touch: waits, then succeeds."""

    def __init__(self, delay_seconds: Optional[float] = None, sleep: SleepFn = asyncio.sleep) -> None:
        self.delay_seconds = (
            settings.SIMULATED_ACTION_DELAY_SECONDS if delay_seconds is None else delay_seconds
        )
        self._sleep = sleep

    async def execute(self, action: RecoveryAction, fault: Fault) -> bool:
        logger.info(
            "Simulating %s for fault %s (type=%s service=%s params=%s)",
            action.type.value,
            fault.id,
            fault.type.value,
            fault.service_id,
            action.parameters,
        )
        if self.delay_seconds > 0:
            await self._sleep(self.delay_seconds)
        return True


class MemoryGcExecutor:
    async def execute(self, action: RecoveryAction, fault: Fault) -> bool:
        collected = gc.collect()
        logger.info("memory_gc for fault %s collected %d objects", fault.id, collected)
        return True


class AdminAlertExecutor:
    """Hands the fault to a human: publishes `admin_alert` on the bus."""

    def __init__(self, bus: EventBus) -> None:
        self.bus = bus

    async def execute(self, action: RecoveryAction, fault: Fault) -> bool:
        logger.warning(
            "Alerting administrators about fault %s (notify=%s)",
            fault.id,
            action.parameters.get("notify", []),
        )
        await self.bus.publish(
            "admin_alert",
            {"fault": fault.model_copy(deep=True), "action": action.model_copy(deep=True)},
        )
        return True


def build_executor_registry(
    bus: EventBus,
    backend: Optional[str] = None,
    sleep: SleepFn = asyncio.sleep,
) -> ExecutorRegistry:
    """
    Simulated executors for every action type, real ones for memory_gc and
    alert_admin, and Kubernetes-backed restart / scale when
    backend == "kubernetes".
    """
    backend = backend or settings.EXECUTOR_BACKEND
    registry = ExecutorRegistry()

    simulated = SimulatedExecutor(sleep=sleep)
    for action_type in ActionType:
        registry.register(action_type, simulated)
    registry.register(ActionType.MEMORY_GC, MemoryGcExecutor())
    registry.register(ActionType.ALERT_ADMIN, AdminAlertExecutor(bus))

    if backend == "kubernetes":
        from .k8s_executors import register_kubernetes_executors

        register_kubernetes_executors(registry)
    elif backend != "simulated":
        logger.warning("Unknown executor backend %r, using simulated executors", backend)

    logger.info("Executor registry built: backend=%s types=%s", backend, registry.types())
    return registry
