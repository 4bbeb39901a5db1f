"""
Read side of the monitor: point-in-time status, the cached dashboard
snapshot, the recent-events feed, health scoring, alert decisions and
reports.
"""

from __future__ import annotations

import logging
from collections import Counter as TallyCounter
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Tuple

from prometheus_client import Counter, Gauge

from ..config import MonitoringConfig
from ..models.fault_models import Fault, FaultStatus, RecoveryResult, Severity, as_utc, utcnow
from ..models.signal_models import Anomaly, MetricDataPoint
from ..models.sla_models import SLAEvent, SLAEventType, SLAStatus
from ..models.status_models import (
    Alert,
    FaultRecoveryServiceStatus,
    FaultStatistics,
    FaultTypeStat,
    MetricSourceStatus,
    MonitoringDashboardData,
    MonitoringReport,
    MonitoringStatus,
    OverallStatus,
    RecentEvent,
    ResourceStats,
    ResourceUsage,
    SLAMetricsSummary,
    SLAServiceStatus,
    SystemHealth,
    TimeRange,
)
from ..utils.ring_buffer import RingBuffer
from .event_bus import Event, EventBus
from .recovery_orchestrator import RecoveryOrchestrator
from .sla_evaluator import RESOURCE_METRIC_DEFINITIONS, SLAEvaluator

logger = logging.getLogger("selfheal.status")

ALERTS_TOTAL = Counter(
    "selfheal_alerts_total",
    "Total alerts raised",
    ["severity", "source"],
)

SYSTEM_HEALTH_SCORE = Gauge(
    "selfheal_system_health_score",
    "Last computed system health score (0-100)",
)

HEALTH_PENALTIES: Dict[str, float] = {
    Severity.CRITICAL.value: 25,
    Severity.HIGH.value: 15,
    Severity.MEDIUM.value: 8,
    Severity.LOW.value: 3,
}

TREND_DEADBAND = 5.0
DASHBOARD_TTL = timedelta(seconds=60)

# Health below these scores raises an alert of the given severity.
HEALTH_ALERT_BANDS: List[Tuple[float, Severity]] = [
    (40.0, Severity.CRITICAL),
    (60.0, Severity.HIGH),
]

_RESOURCES = {d.id: d for d in RESOURCE_METRIC_DEFINITIONS}


def _rate(part: int, total: int) -> float:
    return part / total * 100 if total else 100.0


class StatusAggregator:
    def __init__(
        self,
        bus: EventBus,
        sla: SLAEvaluator,
        orchestrator: RecoveryOrchestrator,
        config: MonitoringConfig,
        *,
        clock: Callable[[], datetime] = utcnow,
        recent_capacity: int = 50,
        resource_capacity: int = 100,
        health_capacity: int = 2880,
    ) -> None:
        self.bus = bus
        self.sla = sla
        self.orchestrator = orchestrator
        self.config = config
        self.clock = clock

        self.recent_events: RingBuffer[RecentEvent] = RingBuffer(recent_capacity)
        self.alerts: RingBuffer[Alert] = RingBuffer(1000)
        self.health_history: RingBuffer[Tuple[datetime, float]] = RingBuffer(health_capacity)

        self._resources: Dict[str, RingBuffer[float]] = {
            metric_id: RingBuffer(resource_capacity) for metric_id in _RESOURCES
        }
        self._seen_metrics: set = set()
        self.anomaly_count = 0
        self.last_scan: Optional[datetime] = None

        self._dashboard: Optional[MonitoringDashboardData] = None
        self._dashboard_at: Optional[datetime] = None
        self._previous_score: Optional[float] = None
        self._health_band: Optional[Severity] = None

    # ------------------------------------------------------------------
    # Bus handlers (wired by the composition root)
    # ------------------------------------------------------------------

    async def on_anomaly(self, event: Event) -> None:
        anomaly: Anomaly = event.payload["anomaly"]
        self.anomaly_count += 1
        severity = _severity(anomaly.severity)
        self._add_recent(
            "anomaly",
            severity,
            f"{anomaly.metricId} anomaly: {anomaly.value}",
            {"metric_id": anomaly.metricId, "value": anomaly.value},
            anomaly.timestamp,
        )
        if severity in (Severity.CRITICAL, Severity.HIGH):
            await self.raise_alert(
                severity,
                f"Anomaly on {anomaly.metricId}: {anomaly.description or anomaly.value}",
                {"source": "anomaly", "metric_id": anomaly.metricId, "value": anomaly.value},
            )
        self.invalidate()

    async def on_sla_event(self, event: Event) -> None:
        sla_event: SLAEvent = event.payload["event"]
        severity = {
            SLAEventType.BREACH: Severity.CRITICAL,
            SLAEventType.WARNING: Severity.HIGH,
        }.get(sla_event.type, Severity.LOW)
        self._add_recent(
            sla_event.type.value,
            severity,
            sla_event.description or f"{sla_event.metric_name}: {sla_event.value}",
            {"metric_id": sla_event.metric_id, "value": sla_event.value, "target": sla_event.target},
            sla_event.timestamp,
        )
        if sla_event.type in (SLAEventType.BREACH, SLAEventType.WARNING):
            await self.raise_alert(
                severity,
                f"SLA {'breach' if severity == Severity.CRITICAL else 'warning'}: "
                f"{sla_event.metric_name} = {sla_event.value} (target {sla_event.target})",
                {"source": "sla", "metric_id": sla_event.metric_id, "event_id": sla_event.id},
            )
        self.invalidate()

    async def on_fault_detected(self, event: Event) -> None:
        fault: Fault = event.payload["fault"]
        self._add_recent(
            "fault",
            fault.severity,
            f"Fault detected: {fault.type.value} on {fault.service_id}",
            {"fault_id": fault.id, "type": fault.type.value},
            fault.detected_at,
        )
        await self.raise_alert(
            fault.severity,
            f"Fault detected: {fault.type.value} ({fault.description or fault.service_id})",
            {"source": "fault", "fault_id": fault.id, "type": fault.type.value},
        )
        self.invalidate()

    async def on_recovery_event(self, event: Event) -> None:
        fault: Fault = event.payload["fault"]
        result: Optional[RecoveryResult] = event.payload.get("result")
        outcome = event.type.replace("recovery_", "")
        self._add_recent(
            "recovery",
            fault.severity,
            f"Recovery {outcome}: {fault.type.value} on {fault.service_id}",
            {
                "fault_id": fault.id,
                "outcome": outcome,
                "recommendations": result.recommendations if result else [],
            },
        )
        if event.type == "recovery_failed":
            await self.raise_alert(
                Severity.CRITICAL,
                f"Automatic recovery failed for {fault.type.value} on {fault.service_id}",
                {
                    "source": "recovery",
                    "fault_id": fault.id,
                    "recommendations": result.recommendations if result else [],
                },
            )
        self.invalidate()

    def record_data_point(self, point: MetricDataPoint) -> None:
        self._seen_metrics.add(point.metricId)
        self.last_scan = point.timestamp
        history = self._resources.get(point.metricId)
        if history is not None:
            history.append(point.value)

    def _add_recent(
        self,
        kind: str,
        severity: Severity,
        message: str,
        details: Dict[str, Any],
        timestamp: Optional[datetime] = None,
    ) -> None:
        self.recent_events.append(
            RecentEvent(
                type=kind,
                severity=severity,
                message=message,
                details=details,
                timestamp=timestamp or self.clock(),
            )
        )

    # ------------------------------------------------------------------
    # Alerts
    # ------------------------------------------------------------------

    async def raise_alert(
        self,
        severity: Severity,
        message: str,
        data: Optional[Dict[str, Any]] = None,
    ) -> Optional[Alert]:
        """
        Decide channels and publish an `alert` event. Delivery belongs to
        whoever subscribes to "alert".
        """
        if not self.config.alert_enabled:
            return None

        channels = (
            self.config.critical_alert_channels
            if severity == Severity.CRITICAL
            else self.config.alert_channels
        )
        alert = Alert(
            severity=severity,
            message=message,
            channels=list(channels),
            timestamp=self.clock(),
            data=dict(data or {}),
        )
        self.alerts.append(alert)
        ALERTS_TOTAL.labels(severity=severity.value, source=alert.data.get("source", "system")).inc()
        logger.warning("ALERT [%s] %s -> %s", severity.value, message, ",".join(alert.channels))

        await self.bus.publish("alert", {"alert": alert})
        return alert

    # ------------------------------------------------------------------
    # Health
    # ------------------------------------------------------------------

    def health_score(self) -> float:
        compliance = self.sla.calculate_sla_compliance_rate()
        penalty = sum(
            HEALTH_PENALTIES.get(f.severity.value, 0) for f in self.orchestrator.get_active_faults()
        )
        return max(0.0, compliance - penalty)

    async def record_health(self) -> float:
        """Sample the health score into history; alert when it enters a lower band."""
        score = self.health_score()
        self.health_history.append((self.clock(), score))
        SYSTEM_HEALTH_SCORE.set(score)

        band = next((sev for limit, sev in HEALTH_ALERT_BANDS if score < limit), None)
        if band is not None and band != self._health_band:
            await self.raise_alert(
                band,
                f"System health score dropped to {score:.1f}",
                {"source": "health", "score": score},
            )
        self._health_band = band
        return score

    # ------------------------------------------------------------------
    # Status (uncached)
    # ------------------------------------------------------------------

    def get_status(self, active: bool, started_at: datetime) -> MonitoringStatus:
        orchestrator = self.orchestrator
        now = self.clock()
        finished = orchestrator.successful_recoveries + orchestrator.failed_recoveries

        return MonitoringStatus(
            sla_service=SLAServiceStatus(
                active=active and self.sla.monitoring,
                last_check=self.sla.last_check,
                check_interval=self.config.sla_check_interval,
                metrics=len(self.sla.definitions()),
                targets=len(self.sla.targets()),
            ),
            fault_recovery_service=FaultRecoveryServiceStatus(
                active=active and orchestrator.active,
                active_faults=len(orchestrator.get_active_faults()),
                in_flight_recoveries=orchestrator.in_flight,
                total_faults=len(orchestrator.get_all_faults()),
                successful_recoveries=orchestrator.successful_recoveries,
                failed_recoveries=orchestrator.failed_recoveries,
                recovery_strategies=len(orchestrator.get_recovery_strategies()),
            ),
            metric_source=MetricSourceStatus(
                metrics=len(self._seen_metrics),
                anomalies=self.anomaly_count,
                last_scan=self.last_scan,
            ),
            overall=OverallStatus(
                system_health_score=self.health_score(),
                sla_compliance_rate=self.sla.calculate_sla_compliance_rate(),
                auto_recovery_rate=_rate(orchestrator.successful_recoveries, finished),
                uptime=max(0.0, (now - started_at).total_seconds()) if active else 0.0,
                start_time=started_at,
            ),
        )

    # ------------------------------------------------------------------
    # Dashboard (cached)
    # ------------------------------------------------------------------

    def invalidate(self) -> None:
        self._dashboard = None
        self._dashboard_at = None

    def get_dashboard_data(self) -> MonitoringDashboardData:
        now = self.clock()
        if (
            self._dashboard is not None
            and self._dashboard_at is not None
            and now - self._dashboard_at < DASHBOARD_TTL
        ):
            return self._dashboard

        self._dashboard = MonitoringDashboardData(
            system_health=self._system_health(),
            sla_metrics=self._sla_summary(),
            fault_statistics=self._fault_statistics(self.orchestrator.get_all_faults()),
            resource_usage=ResourceUsage(
                cpu=self._resource_stats("cpu_usage"),
                memory=self._resource_stats("memory_usage"),
                disk=self._resource_stats("disk_usage"),
            ),
            recent_events=self.recent_events.latest(),
            generated_at=now,
        )
        self._dashboard_at = now
        return self._dashboard

    def _system_health(self) -> SystemHealth:
        score = self.health_score()
        previous = self._previous_score
        if previous is None or abs(score - previous) <= TREND_DEADBAND:
            trend = "stable"
        elif score > previous:
            trend = "improving"
        else:
            trend = "declining"
        self._previous_score = score

        by_severity = TallyCounter(f.severity.value for f in self.orchestrator.get_active_faults())
        return SystemHealth(
            score=score,
            trend=trend,
            critical_issues=by_severity.get(Severity.CRITICAL.value, 0),
            high_issues=by_severity.get(Severity.HIGH.value, 0),
            medium_issues=by_severity.get(Severity.MEDIUM.value, 0),
            low_issues=by_severity.get(Severity.LOW.value, 0),
        )

    def _latest_value(self, metric_id: str, default: float) -> float:
        sample = self.sla.latest(metric_id)
        return sample.value if sample else default

    def _sla_summary(self) -> SLAMetricsSummary:
        events = self.sla.get_events(hours=24)
        return SLAMetricsSummary(
            compliance_rate=self.sla.calculate_sla_compliance_rate(),
            availability=self._latest_value("sla_availability", 100.0),
            response_time=self._latest_value("sla_response_time", 0.0),
            resolution_time=self._latest_value("sla_resolution_time", 0.0),
            breaches=sum(1 for e in events if e.type == SLAEventType.BREACH),
            warnings=sum(1 for e in events if e.type == SLAEventType.WARNING),
        )

    @staticmethod
    def _fault_statistics(faults: List[Fault]) -> FaultStatistics:
        recovered = [f for f in faults if f.status == FaultStatus.RECOVERED]
        failed = [f for f in faults if f.status == FaultStatus.FAILED]

        per_type = TallyCounter(f.type for f in faults)
        recovered_per_type = TallyCounter(f.type for f in recovered)
        top = [
            FaultTypeStat(
                type=fault_type,
                count=count,
                recovery_rate=_rate(recovered_per_type.get(fault_type, 0), count),
            )
            for fault_type, count in per_type.most_common(5)
        ]

        # Skipped recoveries carry no recovered_at and do not count here.
        timed = [f.estimated_downtime for f in recovered if f.recovered_at and f.estimated_downtime]
        return FaultStatistics(
            total_faults=len(faults),
            auto_recovered=len(recovered),
            manual_intervention_required=len(failed),
            top_fault_types=top,
            average_recovery_time=sum(timed) / len(timed) if timed else 0.0,
        )

    def _resource_stats(self, metric_id: str) -> ResourceStats:
        values = self._resources[metric_id].oldest_first()
        threshold = _RESOURCES[metric_id].warning_threshold or 0.0
        if not values:
            return ResourceStats(threshold=threshold)
        return ResourceStats(
            current=values[-1],
            average=sum(values) / len(values),
            max=max(values),
            threshold=threshold,
        )

    # ------------------------------------------------------------------
    # Reports
    # ------------------------------------------------------------------

    def generate_report(self, start: datetime, end: datetime) -> MonitoringReport:
        start, end = as_utc(start), as_utc(end)
        if end < start:
            raise ValueError("report end must not be before start")

        samples = self.sla.samples_between(start, end)
        events = self.sla.events_between(start, end)
        faults = [f for f in self.orchestrator.get_all_faults() if start <= f.detected_at <= end]
        health = [score for ts, score in self.health_history.oldest_first() if start <= ts <= end]

        met = sum(1 for s in samples if s.status == SLAStatus.MET)
        per_metric: Dict[str, List[bool]] = {}
        for s in samples:
            per_metric.setdefault(s.id, []).append(s.status == SLAStatus.MET)

        stats = self._fault_statistics(faults)
        average_health = sum(health) / len(health) if health else self.health_score()

        logger.info(
            "Report generated: %s .. %s samples=%d events=%d faults=%d",
            start.isoformat(),
            end.isoformat(),
            len(samples),
            len(events),
            len(faults),
        )

        return MonitoringReport(
            generated_at=self.clock(),
            time_range=TimeRange(start=start, end=end),
            summary={
                "sla_compliance_rate": _rate(met, len(samples)),
                "total_faults": stats.total_faults,
                "auto_recovered": stats.auto_recovered,
                "manual_intervention_required": stats.manual_intervention_required,
                "average_health_score": average_health,
            },
            sla={
                "samples": len(samples),
                "compliance_by_metric": {
                    metric_id: _rate(sum(flags), len(flags)) for metric_id, flags in per_metric.items()
                },
                "breaches": sum(1 for e in events if e.type == SLAEventType.BREACH),
                "warnings": sum(1 for e in events if e.type == SLAEventType.WARNING),
                "recoveries": sum(1 for e in events if e.type == SLAEventType.RECOVERED),
                "events": [e.model_dump(mode="json") for e in events],
            },
            faults={
                "total": stats.total_faults,
                "by_type": dict(TallyCounter(f.type.value for f in faults)),
                "by_severity": dict(TallyCounter(f.severity.value for f in faults)),
                "by_status": dict(TallyCounter(f.status.value for f in faults)),
                "auto_recovery_rate": _rate(
                    stats.auto_recovered, stats.auto_recovered + stats.manual_intervention_required
                ),
                "average_recovery_time": stats.average_recovery_time,
                "top_fault_types": [t.model_dump(mode="json") for t in stats.top_fault_types],
            },
            health={
                "current": self.health_score(),
                "samples": len(health),
                "average": average_health,
                "min": min(health) if health else None,
                "max": max(health) if health else None,
            },
        )

    def cleanup(self, older_than: datetime) -> int:
        return self.health_history.retain(lambda entry: entry[0] >= older_than) + self.alerts.retain(
            lambda alert: alert.timestamp >= older_than
        )


def _severity(value: str) -> Severity:
    try:
        return Severity(value)
    except ValueError:
        return Severity.LOW
