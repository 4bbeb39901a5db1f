"""
SLA evaluation: classifies metric samples against their definitions,
emits SLA events (breach / warning / recovered) and computes compliance.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import uuid
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional

from opentelemetry import trace
from prometheus_client import Counter, Gauge

from ..models.fault_models import Severity, as_utc, utcnow
from ..models.signal_models import Anomaly
from ..models.sla_models import (
    AvailabilityData,
    MetricDefinition,
    SLAEvent,
    SLAEventType,
    SLAMetric,
    SLAStatus,
    SLATarget,
    SLATier,
)
from ..utils.ring_buffer import RingBuffer
from .event_bus import EventBus

logger = logging.getLogger("selfheal.sla")
tracer = trace.get_tracer(__name__)

# --------------------------------------------------------------------------
# Prometheus metrics
# --------------------------------------------------------------------------

SLA_SAMPLES_TOTAL = Counter(
    "selfheal_sla_samples_total",
    "Total SLA metric samples classified",
    ["metric_id", "status"],  # status: met | warning | breached
)

SLA_EVENTS_TOTAL = Counter(
    "selfheal_sla_events_total",
    "Total SLA events emitted",
    ["type"],
)

SLA_COMPLIANCE_RATE = Gauge(
    "selfheal_sla_compliance_rate",
    "Overall SLA compliance rate recorded by the periodic compliance check",
)

# --------------------------------------------------------------------------
# Defaults
# --------------------------------------------------------------------------

COMPLIANCE_METRIC_ID = "sla_compliance_rate"
AVAILABILITY_METRIC_ID = "sla_availability"
RECOVERY_LOOKBACK = timedelta(hours=1)
HIGHER_IS_BETTER_WARNING_FACTOR = 0.95

_HOUR_MS = 3600000

DEFAULT_SLA_TIERS: List[SLATier] = [
    SLATier(priority=Severity.CRITICAL, response_time_ms=_HOUR_MS,
            resolution_time_ms=4 * _HOUR_MS, availability_target=99.99),
    SLATier(priority=Severity.HIGH, response_time_ms=4 * _HOUR_MS,
            resolution_time_ms=24 * _HOUR_MS, availability_target=99.9),
    SLATier(priority=Severity.MEDIUM, response_time_ms=12 * _HOUR_MS,
            resolution_time_ms=72 * _HOUR_MS, availability_target=99.5),
    SLATier(priority=Severity.LOW, response_time_ms=24 * _HOUR_MS,
            resolution_time_ms=168 * _HOUR_MS, availability_target=99.0),
]

DEFAULT_METRIC_DEFINITIONS: List[MetricDefinition] = [
    MetricDefinition(
        id="sla_response_time", name="SLA response time",
        description="Average response time against the SLA", unit="ms",
        normal_min=0, normal_max=_HOUR_MS, target=_HOUR_MS,
        warning_threshold=2 * _HOUR_MS, critical_threshold=4 * _HOUR_MS,
        severity=Severity.HIGH,
    ),
    MetricDefinition(
        id="sla_resolution_time", name="SLA resolution time",
        description="Average resolution time against the SLA", unit="ms",
        normal_min=0, normal_max=24 * _HOUR_MS, target=24 * _HOUR_MS,
        warning_threshold=48 * _HOUR_MS, critical_threshold=72 * _HOUR_MS,
        severity=Severity.HIGH,
    ),
    MetricDefinition(
        id=AVAILABILITY_METRIC_ID, name="Service availability",
        description="Percentage of successful availability checks", unit="%",
        normal_min=99.0, normal_max=100, target=99.9,
        warning_threshold=99.0, critical_threshold=95.0,
        higher_is_better=True, severity=Severity.CRITICAL,
    ),
    MetricDefinition(
        id=COMPLIANCE_METRIC_ID, name="SLA compliance rate",
        description="Overall SLA compliance rate", unit="%",
        normal_min=95.0, normal_max=100, target=99.9,
        warning_threshold=90.0, critical_threshold=85.0,
        higher_is_better=True, severity=Severity.MEDIUM,
    ),
]

# Not SLA-tracked: the status aggregator keeps their history and reports the
# warning threshold next to current / average / max usage.
RESOURCE_METRIC_DEFINITIONS: List[MetricDefinition] = [
    MetricDefinition(
        id="cpu_usage", name="CPU usage", unit="%", category="resource",
        normal_min=0, normal_max=70, target=70, warning_threshold=80,
        critical_threshold=90, severity=Severity.HIGH,
    ),
    MetricDefinition(
        id="memory_usage", name="Memory usage", unit="%", category="resource",
        normal_min=0, normal_max=75, target=75, warning_threshold=85,
        critical_threshold=95, severity=Severity.HIGH,
    ),
    MetricDefinition(
        id="disk_usage", name="Disk usage", unit="%", category="resource",
        normal_min=0, normal_max=80, target=80, warning_threshold=85,
        critical_threshold=95, severity=Severity.MEDIUM,
    ),
]


def classify(definition: MetricDefinition, value: float) -> SLAStatus:
    if definition.higher_is_better:
        target = definition.target
        if value >= target:
            return SLAStatus.MET
        if value >= target * HIGHER_IS_BETTER_WARNING_FACTOR:
            return SLAStatus.WARNING
        return SLAStatus.BREACHED

    target = definition.target
    warning = definition.warning_threshold if definition.warning_threshold is not None else target
    if value <= target:
        return SLAStatus.MET
    if value <= warning:
        return SLAStatus.WARNING
    return SLAStatus.BREACHED


def definition_from_target(target: SLATarget) -> MetricDefinition:
    higher = target.infer_higher_is_better()
    if higher:
        return MetricDefinition(
            id=target.id, name=target.name, description=target.description,
            unit=target.unit, target=target.threshold,
            warning_threshold=target.warning_threshold,
            higher_is_better=True, severity=target.severity,
        )

    # Lower is better: the smaller threshold bounds "met", the larger "warning".
    warning = target.warning_threshold if target.warning_threshold is not None else target.threshold
    met_bound, warn_bound = min(target.threshold, warning), max(target.threshold, warning)
    return MetricDefinition(
        id=target.id, name=target.name, description=target.description,
        unit=target.unit, normal_min=0, normal_max=met_bound, target=met_bound,
        warning_threshold=warn_bound, critical_threshold=warn_bound,
        higher_is_better=False, severity=target.severity,
    )


class SLAEvaluator:
    """
    Consumes metric samples, keeps per-metric classified history and a bounded
    SLA event log, and publishes `sla_event` on the bus.
    """

    def __init__(
        self,
        bus: EventBus,
        *,
        definitions: Optional[List[MetricDefinition]] = None,
        clock: Callable[[], datetime] = utcnow,
        history_capacity: int = 100,
        event_capacity: int = 1000,
    ) -> None:
        self.bus = bus
        self.clock = clock
        self.history_capacity = history_capacity

        self._definitions: Dict[str, MetricDefinition] = {
            d.id: d for d in (definitions if definitions is not None else DEFAULT_METRIC_DEFINITIONS)
        }
        self._tiers: Dict[str, SLATier] = {t.priority.value: t for t in DEFAULT_SLA_TIERS}
        self._targets: Dict[str, SLATarget] = {}
        self._history: Dict[str, RingBuffer[SLAMetric]] = {}
        self._last_status: Dict[str, SLAStatus] = {}
        self._events: RingBuffer[SLAEvent] = RingBuffer(event_capacity)
        self._availability: Dict[str, AvailabilityData] = {}

        self.last_check: Optional[datetime] = None
        self._monitor_task: Optional[asyncio.Task] = None

    # ------------------------------------------------------------------
    # Definitions, tiers, targets
    # ------------------------------------------------------------------

    def is_tracked(self, metric_id: str) -> bool:
        return metric_id in self._definitions

    def get_definition(self, metric_id: str) -> Optional[MetricDefinition]:
        return self._definitions.get(metric_id)

    def definitions(self) -> List[MetricDefinition]:
        return list(self._definitions.values())

    def get_sla_tier(self, priority: str) -> Optional[SLATier]:
        return self._tiers.get(priority)

    def set_sla_tier(self, tier: SLATier) -> None:
        self._tiers[tier.priority.value] = tier
        logger.info("SLA tier updated: priority=%s", tier.priority.value)

    def tiers(self) -> List[SLATier]:
        return list(self._tiers.values())

    def targets(self) -> List[SLATarget]:
        return list(self._targets.values())

    def add_sla_target(self, target: SLATarget) -> MetricDefinition:
        definition = definition_from_target(target)
        self._targets[target.id] = target
        self._definitions[definition.id] = definition
        logger.info(
            "SLA target registered: id=%s threshold=%s warning=%s higher_is_better=%s",
            target.id,
            target.threshold,
            target.warning_threshold,
            definition.higher_is_better,
        )
        return definition

    # ------------------------------------------------------------------
    # Samples
    # ------------------------------------------------------------------

    async def record_sample(
        self,
        metric_id: str,
        value: float,
        timestamp: Optional[datetime] = None,
        tags: Optional[Dict[str, str]] = None,
    ) -> Optional[SLAMetric]:
        definition = self._definitions.get(metric_id)
        if definition is None:
            logger.debug("Ignoring sample for untracked metric %s", metric_id)
            return None

        ts = as_utc(timestamp) if timestamp else self.clock()
        status = classify(definition, value)

        with tracer.start_as_current_span("selfheal.sla.record_sample") as span:
            span.set_attribute("selfheal.sla.metric_id", metric_id)
            span.set_attribute("selfheal.sla.value", value)
            span.set_attribute("selfheal.sla.status", status.value)

            sample = SLAMetric(
                id=metric_id,
                name=definition.name,
                description=definition.description,
                value=value,
                target=definition.target,
                status=status,
                timestamp=ts,
                tags=dict(tags or {}),
            )
            history = self._history.setdefault(metric_id, RingBuffer(self.history_capacity))
            history.append(sample)
            SLA_SAMPLES_TOTAL.labels(metric_id=metric_id, status=status.value).inc()

            previous = self._last_status.get(metric_id)
            self._last_status[metric_id] = status

            if status in (SLAStatus.BREACHED, SLAStatus.WARNING) and previous != status:
                event_type = SLAEventType.BREACH if status == SLAStatus.BREACHED else SLAEventType.WARNING
                await self._emit(
                    event_type,
                    definition,
                    value=value,
                    target=definition.target,
                    timestamp=ts,
                    tags=sample.tags,
                    description=(
                        f"{definition.name} {status.value}: value={value} target={definition.target}"
                    ),
                )
            elif status == SLAStatus.MET:
                await self._check_for_recovery(definition, value, ts, sample.tags)

        return sample

    async def _check_for_recovery(
        self,
        definition: MetricDefinition,
        value: float,
        timestamp: datetime,
        tags: Dict[str, str],
    ) -> Optional[SLAEvent]:
        """
        Every met sample within an hour of a breach or warning on the same
        metric reports a recovery.
        """
        cutoff = timestamp - RECOVERY_LOOKBACK
        recent = [
            e
            for e in self._events.oldest_first()
            if e.metric_id == definition.id
            and e.type in (SLAEventType.BREACH, SLAEventType.WARNING)
            and e.timestamp >= cutoff
        ]
        if not recent:
            return None

        logger.info(
            "SLA metric recovered: metric=%s value=%s last_problem=%s",
            definition.id,
            value,
            recent[-1].type.value,
        )
        return await self._emit(
            SLAEventType.RECOVERED,
            definition,
            value=value,
            target=definition.target,
            timestamp=timestamp,
            tags=tags,
            description=f"{definition.name} back within target",
        )

    async def _emit(
        self,
        event_type: SLAEventType,
        definition: MetricDefinition,
        *,
        value: float,
        target: float,
        timestamp: datetime,
        tags: Dict[str, str],
        description: str,
    ) -> SLAEvent:
        event = SLAEvent(
            id=f"sla_event_{uuid.uuid4().hex[:12]}",
            type=event_type,
            metric_id=definition.id,
            metric_name=definition.name,
            value=value,
            target=target,
            timestamp=timestamp,
            description=description,
            tags=dict(tags),
        )
        self._events.append(event)
        SLA_EVENTS_TOTAL.labels(type=event_type.value).inc()

        log = logger.warning if event_type != SLAEventType.RECOVERED else logger.info
        log("SLA event %s: metric=%s value=%s target=%s", event_type.value, definition.id, value, target)

        await self.bus.publish("sla_event", {"event": event})
        return event

    async def handle_anomaly(self, anomaly: Anomaly) -> Optional[SLAEvent]:
        """SLA-metric anomalies from the metric source become SLA events."""
        if not anomaly.metricId.startswith("sla_"):
            return None

        definition = self._definitions.get(anomaly.metricId) or MetricDefinition(
            id=anomaly.metricId, name=anomaly.metricId, target=0.0,
        )
        event_type = SLAEventType.BREACH if anomaly.severity == "critical" else SLAEventType.WARNING
        target = (
            definition.warning_threshold
            if definition.warning_threshold is not None
            else definition.target
        )
        return await self._emit(
            event_type,
            definition,
            value=anomaly.value,
            target=target,
            timestamp=anomaly.timestamp,
            tags={},
            description=anomaly.description,
        )

    # ------------------------------------------------------------------
    # Availability
    # ------------------------------------------------------------------

    async def update_availability(
        self,
        service_id: str,
        is_available: bool,
        response_time_ms: Optional[float] = None,
    ) -> AvailabilityData:
        data = self._availability.setdefault(service_id, AvailabilityData())
        now = self.clock()

        data.total_checks += 1
        if is_available:
            data.successful_checks += 1
            data.last_uptime = now
        else:
            data.last_downtime = now
            if response_time_ms:
                data.downtime_ms += response_time_ms

        data.availability = data.successful_checks / data.total_checks * 100
        await self.record_sample(
            AVAILABILITY_METRIC_ID,
            data.availability,
            timestamp=now,
            tags={"serviceId": service_id},
        )
        return data

    def get_availability(self, service_id: str) -> Optional[AvailabilityData]:
        return self._availability.get(service_id)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_metric_history(self, metric_id: str, hours: float = 24) -> List[SLAMetric]:
        history = self._history.get(metric_id)
        if history is None:
            return []
        cutoff = self.clock() - timedelta(hours=hours)
        return [m for m in history.oldest_first() if m.timestamp >= cutoff]

    def latest(self, metric_id: str) -> Optional[SLAMetric]:
        history = self._history.get(metric_id)
        return history.last() if history else None

    def get_events(self, hours: float = 24) -> List[SLAEvent]:
        """Newest first."""
        cutoff = self.clock() - timedelta(hours=hours)
        events = [e for e in self._events.oldest_first() if e.timestamp >= cutoff]
        return sorted(events, key=lambda e: e.timestamp, reverse=True)

    def events_between(self, start: datetime, end: datetime) -> List[SLAEvent]:
        return [e for e in self._events.oldest_first() if start <= e.timestamp <= end]

    def samples_between(self, start: datetime, end: datetime) -> List[SLAMetric]:
        return [
            m
            for metric_id in self._scope_metric_ids("all")
            for m in self._history.get(metric_id, RingBuffer(1)).oldest_first()
            if start <= m.timestamp <= end
        ]

    def _scope_metric_ids(self, scope: str) -> List[str]:
        if scope == "all":
            return [mid for mid in self._history if mid != COMPLIANCE_METRIC_ID]
        if scope in self._definitions or scope in self._history:
            return [scope]
        # Priority tier: metrics whose definition carries that severity.
        return [
            mid for mid, d in self._definitions.items()
            if d.severity.value == scope and mid != COMPLIANCE_METRIC_ID
        ]

    def calculate_sla_compliance_rate(self, scope: str = "all", hours: float = 24) -> float:
        """
        100 * met / total over the window. No samples means compliant (100).
        """
        samples: List[SLAMetric] = []
        for metric_id in self._scope_metric_ids(scope):
            samples.extend(self.get_metric_history(metric_id, hours))

        if not samples:
            return 100.0

        met = sum(1 for s in samples if s.status == SLAStatus.MET)
        return met / len(samples) * 100

    # ------------------------------------------------------------------
    # Periodic compliance check
    # ------------------------------------------------------------------

    async def check_compliance(self) -> float:
        """
        Average per-metric compliance over the last hour and record it as a
        compliance-rate sample.
        """
        rates = []
        for metric_id in self._scope_metric_ids("all"):
            if self.get_metric_history(metric_id, hours=1):
                rates.append(self.calculate_sla_compliance_rate(metric_id, hours=1))

        overall = sum(rates) / len(rates) if rates else 100.0
        self.last_check = self.clock()
        SLA_COMPLIANCE_RATE.set(overall)

        if COMPLIANCE_METRIC_ID in self._definitions:
            await self.record_sample(
                COMPLIANCE_METRIC_ID,
                overall,
                tags={"source": "sla_monitoring"},
            )
        return overall

    @property
    def monitoring(self) -> bool:
        return self._monitor_task is not None

    async def start_monitoring(self, check_interval_seconds: float) -> None:
        if self._monitor_task is None:
            logger.info("Starting SLA compliance checks every %ss", check_interval_seconds)
            self._monitor_task = asyncio.create_task(self._monitor_loop(check_interval_seconds))

    async def stop_monitoring(self) -> None:
        if self._monitor_task:
            logger.info("Stopping SLA compliance checks")
            self._monitor_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._monitor_task
            self._monitor_task = None

    async def _monitor_loop(self, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            try:
                await self.check_compliance()
            except Exception:  # noqa: BLE001
                logger.exception("SLA compliance check failed")

    # ------------------------------------------------------------------
    # Retention
    # ------------------------------------------------------------------

    def cleanup(self, retention_hours: float) -> int:
        cutoff = self.clock() - timedelta(hours=retention_hours)
        dropped = sum(h.retain(lambda m: m.timestamp >= cutoff) for h in self._history.values())
        dropped += self._events.retain(lambda e: e.timestamp >= cutoff)
        logger.info("SLA history cleanup: retention=%sh dropped=%d", retention_hours, dropped)
        return dropped
