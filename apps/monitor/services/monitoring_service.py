"""
Composition root for the monitor.

Builds the bus, fault store, SLA evaluator, translator, orchestrator and
status aggregator, and wires every bus subscription in `_wire()` so the
flow between them is visible in one place:

  anomaly_detected -> aggregator, translator -> orchestrator
  sla_event        -> aggregator, translator -> orchestrator (breach / warning)
  fault_detected   -> aggregator
  recovery_*       -> aggregator
"""

import asyncio
import contextlib
import logging
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, List, Optional

from ..config import MonitoringConfig
from ..errors import ServiceNotActive
from ..models.fault_models import Fault, RecoveryResult, RecoveryStrategy, utcnow
from ..models.signal_models import Anomaly, MetricDataPoint
from ..models.sla_models import (
    AvailabilityData,
    MetricDefinition,
    SLAEvent,
    SLAEventType,
    SLAStatus,
    SLATarget,
)
from ..models.status_models import MonitoringDashboardData, MonitoringReport, MonitoringStatus
from .event_bus import Event, EventBus
from .executors import ExecutorRegistry, build_executor_registry
from .fault_store import FaultStore
from .fault_translator import FaultTranslator
from .recovery_orchestrator import RecoveryOrchestrator
from .sla_evaluator import SLAEvaluator
from .status_aggregator import StatusAggregator
from .strategies import StrategyRegistry

logger = logging.getLogger("selfheal.monitoring")

CLEANUP_INTERVAL_SECONDS = 3600
RECOVERY_OUTCOME_EVENTS = (
    "recovery_successful",
    "recovery_failed",
    "recovery_skipped",
    "recovery_cancelled",
)


class MonitoringService:
    def __init__(
        self,
        config: Optional[MonitoringConfig] = None,
        *,
        bus: Optional[EventBus] = None,
        executors: Optional[ExecutorRegistry] = None,
        strategies: Optional[StrategyRegistry] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.config = config or MonitoringConfig()
        self.clock = clock
        self.bus = bus or EventBus()
        self.store = FaultStore()
        self.sla = SLAEvaluator(self.bus, clock=clock)
        self.translator = FaultTranslator(self.store)
        self.orchestrator = RecoveryOrchestrator(
            self.bus,
            self.store,
            executors or build_executor_registry(self.bus, sleep=sleep),
            strategies,
            max_concurrent_recoveries=self.config.max_concurrent_recoveries,
            recovery_timeout_ms=self.config.recovery_timeout,
            exponential_backoff=self.config.exponential_backoff,
            stop_check=self._recovery_confirmed,
            sleep=sleep,
        )
        self.aggregator = StatusAggregator(
            self.bus, self.sla, self.orchestrator, self.config, clock=clock
        )

        self.active = False
        self.started_at: datetime = clock()
        self._tasks: List[asyncio.Task] = []
        self._wire()

    def _wire(self) -> None:
        bus = self.bus
        bus.subscribe("anomaly_detected", self.aggregator.on_anomaly)
        bus.subscribe("anomaly_detected", self._translate_anomaly)
        bus.subscribe("sla_event", self.aggregator.on_sla_event)
        bus.subscribe("sla_event", self._translate_sla_event)
        bus.subscribe("fault_detected", self.aggregator.on_fault_detected)
        for event_type in RECOVERY_OUTCOME_EVENTS:
            bus.subscribe(event_type, self.aggregator.on_recovery_event)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        if self.active:
            return

        logger.info(
            "Starting monitoring service (sla=%s recovery=%s alerts=%s)",
            self.config.sla_enabled,
            self.config.fault_recovery_enabled,
            self.config.alert_enabled,
        )
        self.active = True
        self.started_at = self.clock()

        if self.config.fault_recovery_enabled:
            await self.orchestrator.start()
        if self.config.sla_enabled:
            await self.sla.start_monitoring(self.config.sla_check_interval)

        self._tasks = [
            asyncio.create_task(
                self._periodic(lambda: self.config.status_update_interval, self._status_tick),
                name="monitor-status",
            ),
            asyncio.create_task(
                self._periodic(lambda: CLEANUP_INTERVAL_SECONDS, self._cleanup_tick),
                name="monitor-cleanup",
            ),
        ]
        await self.bus.publish("service_started", {"started_at": self.started_at})

    async def stop(self) -> None:
        if not self.active:
            return

        logger.info("Stopping monitoring service")
        for task in self._tasks:
            task.cancel()
        for task in self._tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._tasks = []

        await self.sla.stop_monitoring()
        await self.orchestrator.stop()
        self.active = False
        await self.bus.publish("service_stopped", {"stopped_at": self.clock()})

    async def _periodic(
        self,
        interval: Callable[[], float],
        job: Callable[[], Awaitable[Any]],
    ) -> None:
        while True:
            await asyncio.sleep(interval())
            try:
                await job()
            except Exception:  # noqa: BLE001
                logger.exception("Periodic job %s failed", getattr(job, "__name__", job))

    async def _status_tick(self) -> None:
        await self.aggregator.record_health()
        await self.bus.publish("status_update", {"status": self.get_status()})

    async def _cleanup_tick(self) -> None:
        retention = timedelta(days=self.config.data_retention_days)
        cutoff = self.clock() - retention
        dropped = self.sla.cleanup(retention.total_seconds() / 3600)
        dropped += self.store.prune(cutoff)
        dropped += self.aggregator.cleanup(cutoff)
        logger.info("Retention cleanup dropped %d records older than %s", dropped, cutoff.isoformat())

    # ------------------------------------------------------------------
    # MetricSource entry points
    # ------------------------------------------------------------------

    async def on_anomaly_detected(self, anomaly: Anomaly) -> None:
        logger.info(
            "Anomaly received: metric=%s value=%s severity=%s",
            anomaly.metricId,
            anomaly.value,
            anomaly.severity,
        )
        await self.bus.publish("anomaly_detected", {"anomaly": anomaly})
        if self.config.sla_enabled:
            await self.sla.handle_anomaly(anomaly)

    async def on_data_point_recorded(self, point: MetricDataPoint) -> None:
        self.aggregator.record_data_point(point)
        if self.config.sla_enabled and self.sla.is_tracked(point.metricId):
            await self.sla.record_sample(point.metricId, point.value, point.timestamp, point.tags)

    async def update_availability(
        self,
        service_id: str,
        is_available: bool,
        response_time_ms: Optional[float] = None,
    ) -> AvailabilityData:
        return await self.sla.update_availability(service_id, is_available, response_time_ms)

    async def _translate_anomaly(self, event: Event) -> None:
        if not self._recovery_enabled():
            return
        fault = self.translator.from_anomaly(event.payload["anomaly"])
        if fault is not None:
            await self.orchestrator.submit_fault(fault)

    async def _translate_sla_event(self, event: Event) -> None:
        sla_event: SLAEvent = event.payload["event"]
        if not self._recovery_enabled() or sla_event.type == SLAEventType.RECOVERED:
            return
        fault = self.translator.from_sla_event(sla_event)
        if fault is not None:
            await self.orchestrator.submit_fault(fault)

    def _recovery_enabled(self) -> bool:
        return self.active and self.config.fault_recovery_enabled

    def _recovery_confirmed(self, fault: Fault) -> bool:
        """Stop remaining actions unless one of the fault's SLA metrics is still degraded."""
        for metric_id in fault.metrics:
            latest = self.sla.latest(metric_id)
            if latest is not None and latest.status != SLAStatus.MET:
                return False
        return True

    # ------------------------------------------------------------------
    # Faults & recovery
    # ------------------------------------------------------------------

    def add_recovery_strategy(self, strategy: RecoveryStrategy) -> None:
        self.orchestrator.add_recovery_strategy(strategy)

    def get_recovery_strategies(self) -> List[RecoveryStrategy]:
        return self.orchestrator.get_recovery_strategies()

    def get_active_faults(self) -> List[Fault]:
        return self.orchestrator.get_active_faults()

    def get_all_faults(self) -> List[Fault]:
        return self.orchestrator.get_all_faults()

    def get_recovery_history(self, limit: int = 50) -> List[RecoveryResult]:
        return self.orchestrator.get_recovery_history(limit)

    def cancel_recovery(self, fault_id: str) -> bool:
        return self.orchestrator.cancel_recovery(fault_id)

    async def trigger_fault_detection(self) -> List[Fault]:
        """
        Re-scan the latest SLA samples and push every degraded metric through
        fault translation, as if its SLA event had just fired.
        """
        if not self.active:
            raise ServiceNotActive("monitoring service is not running")

        faults: List[Fault] = []
        for definition in self.sla.definitions():
            latest = self.sla.latest(definition.id)
            if latest is None or latest.status == SLAStatus.MET:
                continue
            event = SLAEvent(
                id=f"manual_{definition.id}_{int(self.clock().timestamp() * 1000)}",
                type=SLAEventType.BREACH if latest.status == SLAStatus.BREACHED else SLAEventType.WARNING,
                metric_id=definition.id,
                metric_name=definition.name,
                value=latest.value,
                target=latest.target,
                timestamp=self.clock(),
                description="manual fault detection",
                tags=latest.tags,
            )
            fault = self.translator.from_sla_event(event)
            if fault is None:
                continue
            faults.append(fault)
            if self.config.fault_recovery_enabled:
                await self.orchestrator.submit_fault(fault)

        logger.info("Manual fault detection found %d degraded metrics", len(faults))
        await self.bus.publish(
            "manual_fault_detection",
            {"fault_ids": [f.id for f in faults], "triggered_at": self.clock()},
        )
        return faults

    # ------------------------------------------------------------------
    # SLA
    # ------------------------------------------------------------------

    def add_sla_target(self, target: SLATarget) -> MetricDefinition:
        definition = self.sla.add_sla_target(target)
        self.aggregator.invalidate()
        return definition

    # ------------------------------------------------------------------
    # Status, dashboard, reports
    # ------------------------------------------------------------------

    def get_status(self) -> MonitoringStatus:
        return self.aggregator.get_status(self.active, self.started_at)

    def get_dashboard_data(self) -> MonitoringDashboardData:
        return self.aggregator.get_dashboard_data()

    def generate_report(self, start: datetime, end: datetime) -> MonitoringReport:
        return self.aggregator.generate_report(start, end)

    # ------------------------------------------------------------------
    # Configuration
    # ------------------------------------------------------------------

    async def update_config(self, partial: Dict[str, Any]) -> MonitoringConfig:
        """Validate and apply a partial update. Raises InvalidConfiguration."""
        previous = self.config
        updated = previous.merged(partial)

        self.config = updated
        self.aggregator.config = updated
        self.orchestrator.set_max_concurrent_recoveries(updated.max_concurrent_recoveries)
        self.orchestrator.set_recovery_timeout(updated.recovery_timeout)
        self.orchestrator.set_retry_config(updated.exponential_backoff)

        if self.active:
            if updated.fault_recovery_enabled and not self.orchestrator.active:
                await self.orchestrator.start()
            elif not updated.fault_recovery_enabled and self.orchestrator.active:
                # Recoveries already running are left to finish on their own.
                await self.orchestrator.stop(wait=False)

            sla_changed = (
                updated.sla_enabled != previous.sla_enabled
                or updated.sla_check_interval != previous.sla_check_interval
            )
            if sla_changed:
                await self.sla.stop_monitoring()
                if updated.sla_enabled:
                    await self.sla.start_monitoring(updated.sla_check_interval)

        logger.info("Configuration updated: %s", sorted(partial))
        self.aggregator.invalidate()
        await self.bus.publish(
            "config_updated",
            {"config": updated.model_dump(), "changes": dict(partial)},
        )
        return updated
