"""End-to-end tests for MonitoringService wiring."""

import asyncio

import pytest
import pytest_asyncio

from apps.monitor.config import MonitoringConfig
from apps.monitor.errors import InvalidConfiguration, ServiceNotActive
from apps.monitor.models.fault_models import ActionType, FaultStatus, FaultType, Severity
from apps.monitor.models.signal_models import Anomaly, MetricDataPoint
from apps.monitor.models.sla_models import SLATarget
from apps.monitor.services.monitoring_service import MonitoringService

from conftest import BlockingExecutor, registry_with

BREACHING_RESPONSE_MS = 8_000_000


@pytest_asyncio.fixture
async def running(monitoring, recorder):
    await monitoring.start()
    yield monitoring
    await monitoring.stop()


def breach_point():
    return MetricDataPoint(metricId="sla_response_time", value=BREACHING_RESPONSE_MS)


class TestLifecycle:

    @pytest.mark.asyncio
    async def test_start_and_stop(self, monitoring, recorder):
        await monitoring.start()

        assert monitoring.active is True
        assert monitoring.orchestrator.active is True
        assert monitoring.sla.monitoring is True

        await monitoring.stop()

        assert monitoring.active is False
        assert monitoring.orchestrator.active is False
        assert monitoring.sla.monitoring is False
        types = recorder.types()
        assert types[0] == "service_started"
        assert types[-1] == "service_stopped"

    @pytest.mark.asyncio
    async def test_start_is_idempotent(self, running, recorder):
        await running.start()

        assert recorder.types().count("service_started") == 1

    @pytest.mark.asyncio
    async def test_status(self, running):
        status = running.get_status()

        assert status.sla_service.active is True
        assert status.sla_service.metrics == 4
        assert status.fault_recovery_service.active is True
        assert status.fault_recovery_service.recovery_strategies == 5
        assert status.overall.system_health_score == 100.0
        assert status.overall.auto_recovery_rate == 100.0

    @pytest.mark.asyncio
    async def test_status_when_stopped(self, monitoring):
        status = monitoring.get_status()

        assert status.sla_service.active is False
        assert status.fault_recovery_service.active is False
        assert status.overall.uptime == 0.0


class TestFaultFlows:

    @pytest.mark.asyncio
    async def test_sla_breach_triggers_recovery(self, running, executor, recorder):
        await running.on_data_point_recorded(breach_point())
        await running.orchestrator.drain()

        faults = running.get_all_faults()
        assert len(faults) == 1
        fault = faults[0]
        assert fault.type == FaultType.HIGH_LATENCY
        assert fault.severity == Severity.CRITICAL
        assert fault.status == FaultStatus.RECOVERED
        # The SLA metric is still breached, so every action runs.
        assert executor.action_types == [
            ActionType.CLEAR_CACHE,
            ActionType.SCALE_RESOURCES,
            ActionType.RESTART_SERVICE,
        ]
        assert "recovery_successful" in recorder.types(fault.id)
        alerts = [e.payload["alert"] for e in recorder.of_type("alert")]
        assert {a.data["source"] for a in alerts} == {"sla", "fault"}

    @pytest.mark.asyncio
    async def test_recovered_metric_stops_after_first_action(self, running, executor):
        await running.on_data_point_recorded(breach_point())
        await running.on_data_point_recorded(MetricDataPoint(metricId="sla_response_time", value=1000))
        await running.orchestrator.drain()

        assert executor.action_types == [ActionType.CLEAR_CACHE]
        assert running.get_recovery_history()[0].success is True

    @pytest.mark.asyncio
    async def test_unmapped_fault_type_fails(self, running, recorder):
        await running.on_anomaly_detected(Anomaly(metricId="cpu_usage", value=95, severity="critical"))
        await running.orchestrator.drain()

        result = running.get_recovery_history()[0]
        assert result.status == FaultStatus.FAILED
        assert result.recommendations == ["no applicable strategy"]
        failure_alerts = [
            e.payload["alert"]
            for e in recorder.of_type("alert")
            if e.payload["alert"].data.get("source") == "recovery"
        ]
        assert len(failure_alerts) == 1

    @pytest.mark.asyncio
    async def test_database_anomaly_recovers(self, running, executor):
        await running.on_anomaly_detected(
            Anomaly(metricId="database_connection_pool", value=100, severity="critical")
        )
        await running.orchestrator.drain()

        fault = running.get_all_faults()[0]
        assert fault.type == FaultType.DATABASE_CONNECTION_FAILURE
        assert fault.service_id == "database"
        assert fault.status == FaultStatus.RECOVERED
        assert executor.action_types == [ActionType.CONNECTION_RESET]
        assert running.get_active_faults() == []

    @pytest.mark.asyncio
    async def test_unknown_anomaly_is_only_recorded(self, running):
        await running.on_anomaly_detected(Anomaly(metricId="queue_depth", value=10, severity="high"))

        assert running.get_all_faults() == []
        assert running.aggregator.anomaly_count == 1

    @pytest.mark.asyncio
    async def test_nothing_happens_before_start(self, monitoring):
        await monitoring.on_data_point_recorded(breach_point())

        assert monitoring.get_all_faults() == []
        assert monitoring.sla.latest("sla_response_time").value == BREACHING_RESPONSE_MS

    @pytest.mark.asyncio
    async def test_recovery_disabled(self, bus, executor, sleep):
        service = MonitoringService(
            MonitoringConfig(fault_recovery_enabled=False),
            bus=bus,
            executors=registry_with(executor),
            sleep=sleep,
        )
        await service.start()
        try:
            await service.on_anomaly_detected(
                Anomaly(metricId="database_connection_pool", value=100, severity="critical")
            )
            assert service.get_all_faults() == []
            assert service.orchestrator.active is False
        finally:
            await service.stop()

    @pytest.mark.asyncio
    async def test_availability_outage_targets_service(self, running):
        await running.update_availability("checkout", True, 80)
        data = await running.update_availability("checkout", False, 3000)
        await running.orchestrator.drain()

        assert data.availability == 50.0
        fault = running.get_all_faults()[0]
        assert fault.type == FaultType.SERVICE_UNAVAILABLE
        assert fault.service_id == "checkout"
        assert fault.status == FaultStatus.RECOVERED


class TestManualDetection:

    @pytest.mark.asyncio
    async def test_requires_running_service(self, monitoring):
        with pytest.raises(ServiceNotActive):
            await monitoring.trigger_fault_detection()

    @pytest.mark.asyncio
    async def test_rescans_degraded_metrics(self, monitoring, recorder):
        await monitoring.on_data_point_recorded(breach_point())
        await monitoring.start()
        try:
            faults = await monitoring.trigger_fault_detection()
            await monitoring.orchestrator.drain()

            assert len(faults) == 1
            assert faults[0].type == FaultType.HIGH_LATENCY
            assert faults[0].status == FaultStatus.RECOVERED
            manual = recorder.of_type("manual_fault_detection")
            assert manual[0].payload["fault_ids"] == [faults[0].id]
        finally:
            await monitoring.stop()

    @pytest.mark.asyncio
    async def test_nothing_degraded(self, running):
        assert await running.trigger_fault_detection() == []


class TestConfiguration:

    @pytest.mark.asyncio
    async def test_camel_case_update(self, running, recorder):
        updated = await running.update_config({"maxConcurrentRecoveries": 2, "exponential_backoff": False})

        assert updated.max_concurrent_recoveries == 2
        assert updated.exponential_backoff is False
        assert running.orchestrator.permits.limit == 2
        assert running.orchestrator.exponential_backoff is False
        event = recorder.of_type("config_updated")[0]
        assert event.payload["changes"] == {"maxConcurrentRecoveries": 2, "exponential_backoff": False}

    @pytest.mark.asyncio
    async def test_invalid_value_rejected(self, running):
        with pytest.raises(InvalidConfiguration):
            await running.update_config({"slaCheckInterval": 0})

        assert running.config.sla_check_interval == 60

    @pytest.mark.asyncio
    async def test_unknown_key_rejected(self, running):
        with pytest.raises(InvalidConfiguration):
            await running.update_config({"autoPilot": True})

    @pytest.mark.asyncio
    async def test_disable_recovery_at_runtime(self, running):
        await running.update_config({"faultRecoveryEnabled": False})

        assert running.orchestrator.active is False

        await running.update_config({"faultRecoveryEnabled": True})

        assert running.orchestrator.active is True

    @pytest.mark.asyncio
    async def test_disabling_recovery_does_not_wait_for_running_recoveries(self, bus, sleep):
        blocking = BlockingExecutor()
        service = MonitoringService(MonitoringConfig(), bus=bus, executors=registry_with(blocking), sleep=sleep)
        await service.start()
        try:
            await service.on_anomaly_detected(
                Anomaly(metricId="database_connection_pool", value=100, severity="critical")
            )
            await asyncio.wait_for(blocking.wait_for_calls(1), timeout=1)

            await asyncio.wait_for(service.update_config({"faultRecoveryEnabled": False}), timeout=1)

            assert service.orchestrator.active is False
            assert service.orchestrator.in_flight == 1
        finally:
            blocking.release()
            await service.stop()

        assert service.orchestrator.in_flight == 0
        assert service.get_all_faults()[0].status == FaultStatus.RECOVERED

    @pytest.mark.asyncio
    async def test_timeout_applies_to_orchestrator(self, running):
        await running.update_config({"recoveryTimeout": 2500})

        assert running.orchestrator.recovery_timeout_ms == 2500

    @pytest.mark.asyncio
    async def test_sla_target_becomes_tracked(self, running, recorder):
        running.add_sla_target(
            SLATarget(id="checkout_latency", name="Checkout latency", threshold=500, warning_threshold=300)
        )

        await running.on_data_point_recorded(MetricDataPoint(metricId="checkout_latency", value=650))

        events = [e.payload["event"] for e in recorder.of_type("sla_event")]
        assert [e.metric_id for e in events] == ["checkout_latency"]
        # No fault mapping exists for custom SLA metrics.
        assert running.get_all_faults() == []
