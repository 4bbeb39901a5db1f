"""Tests for the built-in recovery action executors."""

import pytest

from apps.monitor.models.fault_models import ActionType, RecoveryAction
from apps.monitor.services.executors import (
    AdminAlertExecutor,
    ExecutorRegistry,
    MemoryGcExecutor,
    SimulatedExecutor,
)


def action(action_type, **parameters):
    return RecoveryAction(id="action_test", type=action_type, parameters=parameters)


class TestBuiltinExecutors:

    @pytest.mark.asyncio
    async def test_simulated_waits_then_succeeds(self, sleep, make_fault):
        executor = SimulatedExecutor(delay_seconds=0.25, sleep=sleep)

        assert await executor.execute(action(ActionType.FAILOVER), make_fault()) is True
        assert sleep.delays == [0.25]

    @pytest.mark.asyncio
    async def test_simulated_without_delay(self, sleep, make_fault):
        executor = SimulatedExecutor(delay_seconds=0, sleep=sleep)

        await executor.execute(action(ActionType.CLEAR_CACHE), make_fault())

        assert sleep.delays == []

    @pytest.mark.asyncio
    async def test_memory_gc(self, make_fault):
        assert await MemoryGcExecutor().execute(action(ActionType.MEMORY_GC), make_fault()) is True

    @pytest.mark.asyncio
    async def test_admin_alert_publishes(self, bus, recorder, make_fault):
        fault = make_fault()

        ok = await AdminAlertExecutor(bus).execute(action(ActionType.ALERT_ADMIN, notify=["email"]), fault)

        assert ok is True
        event = recorder.of_type("admin_alert")[0]
        assert event.payload["fault"].id == fault.id
        assert event.payload["action"].parameters == {"notify": ["email"]}


class TestExecutorRegistry:

    def test_lookup_by_enum_or_value(self, executor):
        registry = ExecutorRegistry()
        registry.register(ActionType.FAILOVER, executor)

        assert registry.get("failover") is executor
        assert ActionType.FAILOVER in registry
        assert registry.get(ActionType.CLEAR_CACHE) is None
        assert registry.types() == ["failover"]
