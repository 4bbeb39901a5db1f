"""Tests for StatusAggregator: health, dashboard cache, alerts and reports."""

from datetime import datetime, timedelta

import pytest

from apps.monitor.config import MonitoringConfig
from apps.monitor.models.fault_models import (
    Fault,
    FaultStatus,
    FaultType,
    RecoveryResult,
    Severity,
)
from apps.monitor.models.signal_models import Anomaly, MetricDataPoint
from apps.monitor.models.sla_models import SLAEvent, SLAEventType
from apps.monitor.services.event_bus import Event
from apps.monitor.services.status_aggregator import StatusAggregator

BREACHING_RESPONSE_MS = 8_000_000


@pytest.fixture
def config():
    return MonitoringConfig(alert_channels=["slack"], critical_alert_channels=["pagerduty", "slack"])


@pytest.fixture
def aggregator(bus, sla, orchestrator, config, clock):
    return StatusAggregator(bus, sla, orchestrator, config, clock=clock)


def anomaly_event(metric_id="cpu_usage", value=95.0, severity="critical"):
    return Event(
        type="anomaly_detected",
        payload={"anomaly": Anomaly(metricId=metric_id, value=value, severity=severity)},
    )


def bus_payload(event_type, fault):
    if event_type == "anomaly_detected":
        return {"anomaly": Anomaly(metricId="cpu_usage", value=95.0, severity="critical")}
    if event_type == "sla_event":
        return {
            "event": SLAEvent(
                id="sla_evt_1",
                type=SLAEventType.BREACH,
                metric_id="sla_response_time",
                metric_name="Response time",
                value=BREACHING_RESPONSE_MS,
                target=3600000,
            )
        }
    if event_type == "fault_detected":
        return {"fault": fault}
    return {"fault": fault, "result": None}


class TestHealth:

    def test_score_without_faults_or_samples(self, aggregator):
        assert aggregator.health_score() == 100.0

    def test_active_faults_reduce_score(self, aggregator, store, make_fault):
        store.add(make_fault(FaultType.DATABASE_CONNECTION_FAILURE, Severity.CRITICAL))
        store.add(make_fault(FaultType.DISK_SPACE_FULL, Severity.LOW, service_id="system"))

        assert aggregator.health_score() == 72.0

    @pytest.mark.asyncio
    async def test_score_follows_compliance(self, aggregator, sla, make_fault, store):
        await sla.record_sample("sla_response_time", 1000)
        await sla.record_sample("sla_response_time", BREACHING_RESPONSE_MS)
        store.add(make_fault(FaultType.HIGH_LATENCY, Severity.HIGH, service_id="api"))

        assert aggregator.health_score() == 35.0

    def test_score_is_floored_at_zero(self, aggregator, store, make_fault):
        for index in range(5):
            store.add(make_fault(FaultType.SERVICE_UNAVAILABLE, Severity.CRITICAL, service_id=f"svc-{index}"))

        assert aggregator.health_score() == 0.0

    @pytest.mark.asyncio
    async def test_health_alert_only_on_band_entry(self, aggregator, sla, recorder):
        await sla.record_sample("sla_response_time", BREACHING_RESPONSE_MS)

        await aggregator.record_health()
        await aggregator.record_health()

        health_alerts = [
            e.payload["alert"]
            for e in recorder.of_type("alert")
            if e.payload["alert"].data.get("source") == "health"
        ]
        assert len(health_alerts) == 1
        assert health_alerts[0].severity == Severity.CRITICAL
        assert len(aggregator.health_history) == 2


class TestDashboard:

    def test_cached_within_ttl(self, aggregator, store, clock, make_fault):
        first = aggregator.get_dashboard_data()
        store.add(make_fault())

        assert aggregator.get_dashboard_data() is first

        clock.advance(seconds=61)
        refreshed = aggregator.get_dashboard_data()

        assert refreshed is not first
        assert refreshed.system_health.critical_issues == 1

    def test_invalidate_forces_rebuild(self, aggregator):
        first = aggregator.get_dashboard_data()
        aggregator.invalidate()

        assert aggregator.get_dashboard_data() is not first

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "event_type, recent_type",
        [
            ("anomaly_detected", "anomaly"),
            ("sla_event", "sla_breach"),
            ("fault_detected", "fault"),
            ("recovery_successful", "recovery"),
            ("recovery_failed", "recovery"),
            ("recovery_skipped", "recovery"),
            ("recovery_cancelled", "recovery"),
        ],
    )
    async def test_bus_events_rebuild_snapshot(self, monitoring, make_fault, event_type, recent_type):
        aggregator = monitoring.aggregator
        cached = aggregator.get_dashboard_data()
        assert aggregator.get_dashboard_data() is cached

        await monitoring.bus.publish(event_type, bus_payload(event_type, make_fault()))

        rebuilt = aggregator.get_dashboard_data()
        assert rebuilt is not cached
        assert rebuilt.recent_events[0].type == recent_type

    def test_trend(self, aggregator, store, make_fault):
        assert aggregator.get_dashboard_data().system_health.trend == "stable"

        critical = make_fault()
        store.add(critical)
        aggregator.invalidate()
        assert aggregator.get_dashboard_data().system_health.trend == "declining"

        store.deactivate(critical)
        aggregator.invalidate()
        assert aggregator.get_dashboard_data().system_health.trend == "improving"

        store.add(make_fault(FaultType.DISK_SPACE_FULL, Severity.LOW, service_id="system"))
        aggregator.invalidate()
        assert aggregator.get_dashboard_data().system_health.trend == "stable"

    def test_resource_usage(self, aggregator):
        for value in (50.0, 70.0):
            aggregator.record_data_point(MetricDataPoint(metricId="cpu_usage", value=value))
        aggregator.record_data_point(MetricDataPoint(metricId="queue_depth", value=12))

        usage = aggregator.get_dashboard_data().resource_usage

        assert usage.cpu.current == 70.0
        assert usage.cpu.average == 60.0
        assert usage.cpu.max == 70.0
        assert usage.cpu.threshold == 80.0
        assert usage.disk.current == 0.0
        assert usage.disk.threshold == 85.0

    @pytest.mark.asyncio
    async def test_sla_summary(self, aggregator, sla):
        await sla.record_sample("sla_response_time", BREACHING_RESPONSE_MS)
        await sla.update_availability("checkout", True)

        summary = aggregator.get_dashboard_data().sla_metrics

        assert summary.response_time == BREACHING_RESPONSE_MS
        assert summary.availability == 100.0
        assert summary.breaches == 1
        assert summary.compliance_rate == 50.0


class TestFaultStatistics:

    def test_top_types_and_recovery_time(self, make_fault, clock):
        faults = []
        for index, status in enumerate((FaultStatus.RECOVERED, FaultStatus.RECOVERED, FaultStatus.FAILED)):
            fault = make_fault(FaultType.HIGH_LATENCY, Severity.HIGH, service_id=f"api-{index}")
            fault.status = status
            if status == FaultStatus.RECOVERED:
                fault.recovered_at = clock()
                fault.estimated_downtime = 100.0 * (index + 1)
            faults.append(fault)
        skipped = make_fault(FaultType.CACHE_FAILURE, Severity.LOW, service_id="cache")
        skipped.status = FaultStatus.RECOVERED
        skipped.estimated_downtime = 0.0
        faults.append(skipped)

        stats = StatusAggregator._fault_statistics(faults)

        assert stats.total_faults == 4
        assert stats.auto_recovered == 3
        assert stats.manual_intervention_required == 1
        assert stats.average_recovery_time == 150.0
        assert stats.top_fault_types[0].type == FaultType.HIGH_LATENCY
        assert stats.top_fault_types[0].count == 3
        assert stats.top_fault_types[0].recovery_rate == pytest.approx(66.666, rel=1e-3)
        assert stats.top_fault_types[1].recovery_rate == 100.0

    def test_empty(self):
        stats = StatusAggregator._fault_statistics([])

        assert stats.total_faults == 0
        assert stats.top_fault_types == []
        assert stats.average_recovery_time == 0.0


class TestAlerts:

    @pytest.mark.asyncio
    async def test_disabled_alerts_are_dropped(self, aggregator, recorder):
        aggregator.config = MonitoringConfig(alert_enabled=False)

        assert await aggregator.raise_alert(Severity.CRITICAL, "db down") is None
        assert recorder.of_type("alert") == []

    @pytest.mark.asyncio
    async def test_channels_by_severity(self, aggregator, recorder):
        critical = await aggregator.raise_alert(Severity.CRITICAL, "db down", {"source": "test"})
        high = await aggregator.raise_alert(Severity.HIGH, "latency up")

        assert critical.channels == ["pagerduty", "slack"]
        assert high.channels == ["slack"]
        assert [e.payload["alert"] for e in recorder.of_type("alert")] == [critical, high]

    @pytest.mark.asyncio
    async def test_anomaly_alert_threshold(self, aggregator, recorder):
        await aggregator.on_anomaly(anomaly_event(severity="medium"))
        assert recorder.of_type("alert") == []

        await aggregator.on_anomaly(anomaly_event(severity="high"))
        alerts = recorder.of_type("alert")
        assert len(alerts) == 1
        assert alerts[0].payload["alert"].data["metric_id"] == "cpu_usage"
        assert aggregator.anomaly_count == 2

    @pytest.mark.asyncio
    async def test_recovery_failure_alerts(self, aggregator, recorder, make_fault):
        fault = make_fault()
        result = RecoveryResult(
            success=False,
            fault_id=fault.id,
            status=FaultStatus.FAILED,
            recommendations=["manual intervention required"],
        )

        await aggregator.on_recovery_event(
            Event(type="recovery_failed", payload={"fault": fault, "result": result})
        )
        await aggregator.on_recovery_event(
            Event(type="recovery_successful", payload={"fault": fault, "result": result})
        )

        alerts = [e.payload["alert"] for e in recorder.of_type("alert")]
        assert len(alerts) == 1
        assert alerts[0].severity == Severity.CRITICAL
        assert alerts[0].data["recommendations"] == ["manual intervention required"]
        assert [e.message.split(":")[0] for e in aggregator.recent_events.latest()] == [
            "Recovery successful",
            "Recovery failed",
        ]


class TestRecentEvents:

    @pytest.mark.asyncio
    async def test_newest_first_and_bounded(self, bus, sla, orchestrator, config, clock):
        aggregator = StatusAggregator(bus, sla, orchestrator, config, clock=clock, recent_capacity=3)

        for value in (1.0, 2.0, 3.0, 4.0, 5.0):
            await aggregator.on_anomaly(anomaly_event(value=value, severity="low"))

        events = aggregator.get_dashboard_data().recent_events
        assert [e.details["value"] for e in events] == [5.0, 4.0, 3.0]


class TestReports:

    def test_rejects_inverted_range(self, aggregator, clock):
        with pytest.raises(ValueError):
            aggregator.generate_report(clock(), clock() - timedelta(hours=1))

    @pytest.mark.asyncio
    async def test_naive_range_is_read_as_utc(self, aggregator, sla):
        await sla.record_sample("sla_response_time", 1000)

        report = aggregator.generate_report(datetime(2024, 1, 1, 11, 0), datetime(2024, 1, 1, 13, 0))

        assert report.sla["samples"] == 1
        assert report.time_range.start.tzinfo is not None

    @pytest.mark.asyncio
    async def test_report_sections(self, aggregator, sla, store, clock):
        await sla.record_sample("sla_response_time", 1000)
        await sla.record_sample("sla_response_time", BREACHING_RESPONSE_MS)

        recovered = Fault(
            id="fault_a",
            type=FaultType.HIGH_LATENCY,
            severity=Severity.HIGH,
            service_id="api",
            detected_at=clock(),
            status=FaultStatus.RECOVERED,
            recovered_at=clock(),
            estimated_downtime=200.0,
        )
        failed = Fault(
            id="fault_b",
            type=FaultType.CACHE_FAILURE,
            severity=Severity.CRITICAL,
            service_id="cache",
            detected_at=clock(),
            status=FaultStatus.FAILED,
        )
        outside = Fault(
            id="fault_c",
            type=FaultType.DISK_SPACE_FULL,
            detected_at=clock() - timedelta(days=3),
            status=FaultStatus.FAILED,
        )
        for fault in (recovered, failed, outside):
            store.add(fault)
            store.deactivate(fault)

        report = aggregator.generate_report(clock() - timedelta(hours=1), clock() + timedelta(hours=1))

        assert report.summary["sla_compliance_rate"] == 50.0
        assert report.summary["total_faults"] == 2
        assert report.summary["auto_recovered"] == 1
        assert report.summary["manual_intervention_required"] == 1
        assert report.sla["samples"] == 2
        assert report.sla["breaches"] == 1
        assert report.sla["compliance_by_metric"] == {"sla_response_time": 50.0}
        assert report.faults["by_type"] == {"high_latency": 1, "cache_failure": 1}
        assert report.faults["by_severity"] == {"high": 1, "critical": 1}
        assert report.faults["auto_recovery_rate"] == 50.0
        assert report.faults["average_recovery_time"] == 200.0
        assert report.health["samples"] == 0
        assert report.health["min"] is None
        assert report.health["current"] == 50.0

    @pytest.mark.asyncio
    async def test_health_history_in_report(self, aggregator, clock):
        await aggregator.record_health()
        clock.advance(minutes=5)
        await aggregator.record_health()

        report = aggregator.generate_report(clock() - timedelta(hours=1), clock())

        assert report.health["samples"] == 2
        assert report.health["average"] == 100.0
        assert report.summary["average_health_score"] == 100.0

    @pytest.mark.asyncio
    async def test_cleanup(self, aggregator, clock):
        await aggregator.record_health()
        await aggregator.raise_alert(Severity.HIGH, "old")
        clock.advance(days=2)
        await aggregator.record_health()

        dropped = aggregator.cleanup(clock() - timedelta(days=1))

        assert dropped == 2
        assert len(aggregator.health_history) == 1
