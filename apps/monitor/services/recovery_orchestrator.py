import asyncio
import inspect
import logging
import time
import uuid
from typing import Awaitable, Callable, Dict, List, Optional, Set, Union

from opentelemetry import trace
from prometheus_client import Counter, Gauge, Histogram

from ..config import settings
from ..errors import (
    ActionExecutionError,
    ConcurrencyRejection,
    NoApplicableStrategy,
    OrchestrationFault,
    RollbackError,
)
from ..models.fault_models import (
    ActionStatus,
    Fault,
    FaultStatus,
    RecoveryAction,
    RecoveryResult,
    RecoveryStrategy,
    StrategyAction,
    severity_level,
    utcnow,
)
from ..utils.ring_buffer import RingBuffer
from .event_bus import EventBus
from .executors import ExecutorRegistry
from .fault_store import FaultStore
from .strategies import StrategyRegistry, action_applies

logger = logging.getLogger("selfheal.recovery")
tracer = trace.get_tracer(__name__)

# --------------------------------------------------------------------------
# Prometheus metrics
# --------------------------------------------------------------------------

RECOVERIES_TOTAL = Counter(
    "selfheal_recoveries_total",
    "Total recovery workflows finished",
    ["fault_type", "outcome"],  # outcome: recovered | failed | skipped | cancelled
)

RECOVERY_ATTEMPTS_TOTAL = Counter(
    "selfheal_recovery_attempts_total",
    "Total recovery action attempts",
    ["action_type", "result"],  # result: success | failed | timeout
)

RECOVERY_RETRIES_TOTAL = Counter(
    "selfheal_recovery_retries_total",
    "Total retries scheduled after a failed action attempt",
    ["action_type"],
)

RECOVERY_REJECTED_TOTAL = Counter(
    "selfheal_recovery_rejected_total",
    "Faults not started because recovery capacity was exhausted",
    ["fault_type"],
)

RECOVERY_DURATION_SECONDS = Histogram(
    "selfheal_recovery_duration_seconds",
    "Duration of a recovery workflow from analysis to terminal status",
    buckets=(0.05, 0.1, 0.5, 1, 2, 5, 10, 30, 60, 120, 300),
)

RECOVERIES_IN_FLIGHT = Gauge(
    "selfheal_recoveries_in_flight",
    "Recovery workflows currently running",
)

StopCheck = Callable[[Fault], Union[bool, Awaitable[bool]]]
SleepFn = Callable[[float], Awaitable[None]]

RECOMMEND_NO_STRATEGY = "no applicable strategy"
RECOMMEND_BELOW_THRESHOLD = "below auto-recovery threshold"
RECOMMEND_MANUAL = "manual intervention required"
RECOMMEND_CANCELLED = "recovery cancelled"


def stop_after_first_success(fault: Fault) -> bool:
    return True


class RecoveryPermits:
    """
    Counting permit for concurrent recoveries. Unlike a semaphore it never
    blocks: callers over the limit are rejected immediately.
    """

    def __init__(self, limit: int) -> None:
        self.limit = limit
        self.in_use = 0

    def acquire_nowait(self) -> None:
        if self.in_use >= self.limit:
            raise ConcurrencyRejection(self.in_use, self.limit)
        self.in_use += 1
        RECOVERIES_IN_FLIGHT.set(self.in_use)

    def release(self) -> None:
        self.in_use = max(0, self.in_use - 1)
        RECOVERIES_IN_FLIGHT.set(self.in_use)


class RecoveryOrchestrator:
    """
    Drives each fault through detected -> analyzing -> recovering ->
    recovered | failed | cancelled.

    Every accepted fault gets its own asyncio task. Within a fault, actions
    run in ascending priority with bounded retries, exponential backoff and
    an optional rollback after each failed attempt. Every call to
    `execute_recovery` records exactly one RecoveryResult.
    """

    def __init__(
        self,
        bus: EventBus,
        store: FaultStore,
        executors: ExecutorRegistry,
        strategies: Optional[StrategyRegistry] = None,
        *,
        max_concurrent_recoveries: int = settings.MAX_CONCURRENT_RECOVERIES,
        recovery_timeout_ms: int = settings.RECOVERY_TIMEOUT_MS,
        exponential_backoff: bool = True,
        stop_check: StopCheck = stop_after_first_success,
        sleep: SleepFn = asyncio.sleep,
        history_capacity: int = 1000,
    ) -> None:
        self.bus = bus
        self.store = store
        self.executors = executors
        self.strategies = strategies if strategies is not None else StrategyRegistry()
        self.permits = RecoveryPermits(max_concurrent_recoveries)
        self.recovery_timeout_ms = recovery_timeout_ms
        self.exponential_backoff = exponential_backoff
        self.stop_check = stop_check
        self._sleep = sleep

        self.history: RingBuffer[RecoveryResult] = RingBuffer(history_capacity)
        self.successful_recoveries = 0
        self.failed_recoveries = 0

        self.active = False
        self._tasks: Dict[str, asyncio.Task] = {}
        self._cancel_requested: Set[str] = set()

    # ------------------------------------------------------------------
    # Lifecycle & configuration
    # ------------------------------------------------------------------

    async def start(self) -> None:
        if not self.active:
            logger.info(
                "Starting recovery orchestrator (max_concurrent=%d timeout_ms=%d strategies=%d)",
                self.permits.limit,
                self.recovery_timeout_ms,
                len(self.strategies),
            )
            self.active = True

    async def stop(self, wait: bool = True) -> None:
        """
        Stop admitting faults. With wait=False, in-flight recoveries finish
        in the background.
        """
        if self.active:
            logger.info("Stopping recovery orchestrator, %d recoveries in flight", self.in_flight)
            self.active = False
        if wait:
            await self.drain()

    async def drain(self) -> None:
        """Wait until every in-flight recovery has finished."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks.values()), return_exceptions=True)

    @property
    def in_flight(self) -> int:
        return len(self._tasks)

    def set_max_concurrent_recoveries(self, limit: int) -> None:
        # Running recoveries above a lowered limit finish normally.
        self.permits.limit = max(1, limit)

    def set_recovery_timeout(self, timeout_ms: int) -> None:
        self.recovery_timeout_ms = max(1, timeout_ms)

    def set_retry_config(self, exponential_backoff: bool) -> None:
        self.exponential_backoff = exponential_backoff

    # ------------------------------------------------------------------
    # Strategies & queries
    # ------------------------------------------------------------------

    def add_recovery_strategy(self, strategy: RecoveryStrategy) -> None:
        self.strategies.register(strategy)

    def get_recovery_strategies(self) -> List[RecoveryStrategy]:
        return self.strategies.all()

    def get_active_faults(self) -> List[Fault]:
        return self.store.active()

    def get_all_faults(self) -> List[Fault]:
        return self.store.all()

    def get_recovery_history(self, limit: Optional[int] = None) -> List[RecoveryResult]:
        """Newest first."""
        return self.history.latest(limit)

    # ------------------------------------------------------------------
    # Admission
    # ------------------------------------------------------------------

    async def submit_fault(self, fault: Fault) -> Optional[asyncio.Task]:
        """
        Admit a fault and start its recovery.

        Returns the recovery task, or None when the fault was merged into an
        existing active fault or rejected because capacity is exhausted.
        """
        if not self.active:
            logger.debug("Recovery orchestrator inactive, ignoring fault %s", fault.id)
            return None

        existing = self.store.find_active(fault.type, fault.service_id)
        if existing is not None:
            if existing is not fault:
                self.store.merge_into(existing, fault)
            await self._publish_fault("fault_updated", existing)
            return None

        try:
            self.permits.acquire_nowait()
        except ConcurrencyRejection as exc:
            logger.warning("Recovery rejected for fault %s (%s): %s", fault.id, fault.type.value, exc)
            RECOVERY_REJECTED_TOTAL.labels(fault_type=fault.type.value).inc()
            await self.bus.publish(
                "recovery_queue_full",
                {"fault": fault.model_copy(deep=True), "in_flight": exc.in_flight, "limit": exc.limit},
            )
            return None

        self.store.add(fault)
        await self._publish_fault("fault_detected", fault)

        logger.info(
            "Fault accepted: id=%s type=%s severity=%s service=%s",
            fault.id,
            fault.type.value,
            fault.severity.value,
            fault.service_id,
        )
        task = asyncio.create_task(self.execute_recovery(fault), name=f"recovery-{fault.id}")
        self._tasks[fault.id] = task
        task.add_done_callback(lambda t: self._recovery_done(fault, t))
        return task

    def _recovery_done(self, fault: Fault, task: asyncio.Task) -> None:
        # Runs even when the task was cancelled before its first step.
        self._tasks.pop(fault.id, None)
        self.permits.release()
        if task.cancelled() and not fault.is_terminal:
            logger.warning("Recovery task for fault %s cancelled, marking fault cancelled", fault.id)
            fault.status = FaultStatus.CANCELLED
            self.store.deactivate(fault)
        self._cancel_requested.discard(fault.id)

    def cancel_recovery(self, fault_id: str) -> bool:
        """
        Request cooperative cancellation. Takes effect before the next action
        or attempt. Returns False when the fault is unknown or already terminal.
        """
        fault = self.store.get(fault_id)
        if fault is None or fault.is_terminal:
            return False
        self._cancel_requested.add(fault_id)
        logger.info("Cancellation requested for fault %s", fault_id)
        return True

    # ------------------------------------------------------------------
    # Recovery workflow
    # ------------------------------------------------------------------

    async def execute_recovery(self, fault: Fault) -> RecoveryResult:
        started = time.monotonic()
        counts = {"taken": 0, "successful": 0, "failed": 0}
        result: Optional[RecoveryResult] = None

        with tracer.start_as_current_span("selfheal.recovery.execute") as span:
            span.set_attribute("selfheal.fault.id", fault.id)
            span.set_attribute("selfheal.fault.type", fault.type.value)
            span.set_attribute("selfheal.fault.severity", fault.severity.value)
            span.set_attribute("selfheal.fault.service_id", fault.service_id)

            try:
                await self._set_status(fault, FaultStatus.ANALYZING)

                strategy = self.strategies.get(fault.type)
                if strategy is None:
                    raise NoApplicableStrategy(fault.type.value)

                if severity_level(fault.severity) < severity_level(strategy.min_severity):
                    logger.info(
                        "Fault %s severity %s below auto-recovery threshold %s",
                        fault.id,
                        fault.severity.value,
                        strategy.min_severity.value,
                    )
                    fault.estimated_downtime = 0.0
                    result = await self._finish(
                        fault,
                        FaultStatus.RECOVERED,
                        counts,
                        duration_ms=0.0,
                        recommendations=[RECOMMEND_BELOW_THRESHOLD],
                        event="recovery_skipped",
                        outcome="skipped",
                    )
                    return result

                await self._set_status(fault, FaultStatus.RECOVERING)
                resolved_by = await self._run_actions(fault, strategy, counts)
                duration_ms = (time.monotonic() - started) * 1000

                if self._is_cancelled(fault):
                    result = await self._finish(
                        fault, FaultStatus.CANCELLED, counts, duration_ms,
                        [RECOMMEND_CANCELLED], "recovery_cancelled", "cancelled",
                    )
                elif counts["successful"] > 0:
                    fault.recovered_at = utcnow()
                    fault.estimated_downtime = duration_ms
                    result = await self._finish(
                        fault, FaultStatus.RECOVERED, counts, duration_ms,
                        [f"fault resolved by {resolved_by}"], "recovery_successful", "recovered",
                    )
                else:
                    result = await self._finish(
                        fault, FaultStatus.FAILED, counts, duration_ms,
                        [RECOMMEND_MANUAL], "recovery_failed", "failed",
                    )

            except NoApplicableStrategy as exc:
                logger.warning("Fault %s: %s", fault.id, exc)
                result = await self._finish(
                    fault, FaultStatus.FAILED, counts,
                    (time.monotonic() - started) * 1000,
                    [RECOMMEND_NO_STRATEGY], "recovery_failed", "failed",
                )

            except Exception as exc:  # noqa: BLE001
                error = OrchestrationFault(f"recovery of {fault.id} aborted: {exc}")
                logger.exception("%s", error)
                span.record_exception(exc)
                if result is None:
                    result = await self._finish(
                        fault, FaultStatus.FAILED, counts,
                        (time.monotonic() - started) * 1000,
                        [RECOMMEND_MANUAL, str(error)], "recovery_failed", "failed",
                    )

            finally:
                self._cancel_requested.discard(fault.id)
                if result is not None:
                    span.set_attribute("selfheal.recovery.status", result.status.value)
                    span.set_attribute("selfheal.recovery.actions_taken", result.actions_taken)
                    RECOVERY_DURATION_SECONDS.observe(time.monotonic() - started)

        return result

    async def _run_actions(
        self,
        fault: Fault,
        strategy: RecoveryStrategy,
        counts: Dict[str, int],
    ) -> Optional[str]:
        resolved_by: Optional[str] = None

        for spec in sorted(strategy.actions, key=lambda a: a.priority):
            if self._is_cancelled(fault):
                break
            if not action_applies(spec, fault):
                logger.debug("Skipping %s for fault %s: conditions not met", spec.type.value, fault.id)
                continue

            action = RecoveryAction(
                id=f"action_{int(time.time() * 1000)}_{uuid.uuid4().hex[:6]}",
                type=spec.type,
                max_retries=spec.max_retries,
                parameters=dict(spec.parameters),
            )
            fault.actions.append(action)
            counts["taken"] += 1

            if await self._run_action(fault, action, spec):
                counts["successful"] += 1
                resolved_by = resolved_by or spec.type.value
                if await self._should_stop(fault):
                    break
            elif action.status == ActionStatus.FAILED:
                counts["failed"] += 1

        return resolved_by

    async def _run_action(self, fault: Fault, action: RecoveryAction, spec: StrategyAction) -> bool:
        for attempt in range(1, action.max_retries + 1):
            if self._is_cancelled(fault):
                return False

            action.retry_count = attempt
            action.status = ActionStatus.EXECUTING
            action.start_time = utcnow()
            action.end_time = None
            action.error_message = None
            await self._publish_action(fault, action)

            attempt_started = time.monotonic()
            ok, error, label = await self._attempt(fault, action, attempt)

            action.end_time = utcnow()
            action.duration = (time.monotonic() - attempt_started) * 1000
            RECOVERY_ATTEMPTS_TOTAL.labels(action_type=action.type.value, result=label).inc()

            if ok:
                action.status = ActionStatus.COMPLETED
                action.success = True
                await self._publish_action(fault, action)
                logger.info(
                    "Action %s succeeded for fault %s (attempt %d/%d)",
                    action.type.value,
                    fault.id,
                    attempt,
                    action.max_retries,
                )
                return True

            action.status = ActionStatus.FAILED
            action.success = False
            action.error_message = error
            fault.retry_count += 1
            await self._publish_action(fault, action)
            logger.warning(
                "Action %s failed for fault %s (attempt %d/%d): %s",
                action.type.value,
                fault.id,
                attempt,
                action.max_retries,
                error,
            )

            await self._rollback(fault, action, spec)

            if attempt < action.max_retries:
                delay_ms = self.backoff_delay_ms(spec.delay_ms, attempt)
                RECOVERY_RETRIES_TOTAL.labels(action_type=action.type.value).inc()
                if delay_ms > 0:
                    await self._sleep(delay_ms / 1000)

        return False

    async def _attempt(self, fault: Fault, action: RecoveryAction, attempt: int):
        """Run one executor call. Returns (ok, error_message, metric_label)."""
        with tracer.start_as_current_span("selfheal.recovery.action") as span:
            span.set_attribute("selfheal.action.type", action.type.value)
            span.set_attribute("selfheal.action.attempt", attempt)
            span.set_attribute("selfheal.fault.id", fault.id)

            executor = self.executors.get(action.type)
            try:
                if executor is None:
                    raise ActionExecutionError(action.type.value, "no executor registered", attempt)
                ok = bool(
                    await asyncio.wait_for(
                        executor.execute(action, fault),
                        timeout=self.recovery_timeout_ms / 1000,
                    )
                )
            except asyncio.TimeoutError:
                span.set_attribute("selfheal.action.result", "timeout")
                return False, f"timed out after {self.recovery_timeout_ms} ms", "timeout"
            except Exception as exc:  # noqa: BLE001
                span.record_exception(exc)
                span.set_attribute("selfheal.action.result", "failed")
                return False, str(exc) or exc.__class__.__name__, "failed"

            span.set_attribute("selfheal.action.result", "success" if ok else "failed")
            if ok:
                return True, None, "success"
            return False, "executor reported failure", "failed"

    def backoff_delay_ms(self, delay_ms: int, attempt: int) -> int:
        if self.exponential_backoff:
            return delay_ms * 2 ** (attempt - 1)
        return delay_ms

    async def _rollback(self, fault: Fault, action: RecoveryAction, spec: StrategyAction) -> None:
        if spec.rollback is None:
            return

        rollback = RecoveryAction(
            id=f"{action.id}_rollback_{action.retry_count}",
            type=spec.rollback.type,
            parameters=dict(spec.rollback.parameters),
            start_time=utcnow(),
            retry_count=1,
        )
        action.rollback_action = rollback

        error: Optional[RollbackError] = None
        executor = self.executors.get(rollback.type)
        if executor is None:
            error = RollbackError(f"no executor registered for {rollback.type.value}")
        else:
            try:
                ok = await asyncio.wait_for(
                    executor.execute(rollback, fault),
                    timeout=self.recovery_timeout_ms / 1000,
                )
                if not ok:
                    error = RollbackError(f"{rollback.type.value} reported failure")
            except asyncio.TimeoutError:
                error = RollbackError(f"{rollback.type.value} timed out")
            except Exception as exc:  # noqa: BLE001
                error = RollbackError(f"{rollback.type.value}: {exc}")

        rollback.end_time = utcnow()
        rollback.success = error is None
        rollback.status = ActionStatus.COMPLETED if error is None else ActionStatus.FAILED
        if error is not None:
            rollback.error_message = str(error)
            logger.error("Rollback after %s failed for fault %s: %s", action.type.value, fault.id, error)
        else:
            logger.info("Rolled back %s for fault %s", action.type.value, fault.id)
        await self._publish_action(fault, action)

    async def _should_stop(self, fault: Fault) -> bool:
        try:
            decision = self.stop_check(fault)
            if inspect.isawaitable(decision):
                decision = await decision
        except Exception:  # noqa: BLE001
            logger.exception("Stop check failed for fault %s; stopping recovery", fault.id)
            return True
        return bool(decision)

    def _is_cancelled(self, fault: Fault) -> bool:
        return fault.id in self._cancel_requested

    # ------------------------------------------------------------------
    # State transitions & events
    # ------------------------------------------------------------------

    async def _set_status(self, fault: Fault, status: FaultStatus) -> None:
        fault.status = status
        await self._publish_fault("fault_updated", fault)

    async def _finish(
        self,
        fault: Fault,
        status: FaultStatus,
        counts: Dict[str, int],
        duration_ms: float,
        recommendations: List[str],
        event: str,
        outcome: str,
    ) -> RecoveryResult:
        fault.status = status
        self.store.deactivate(fault)

        result = RecoveryResult(
            success=status == FaultStatus.RECOVERED,
            fault_id=fault.id,
            status=status,
            actions_taken=counts["taken"],
            successful_actions=counts["successful"],
            failed_actions=counts["failed"],
            duration=duration_ms,
            recommendations=recommendations,
        )
        self.history.append(result)
        if result.success:
            self.successful_recoveries += 1
        else:
            self.failed_recoveries += 1
        RECOVERIES_TOTAL.labels(fault_type=fault.type.value, outcome=outcome).inc()

        logger.info(
            "Recovery finished: fault=%s status=%s actions=%d ok=%d failed=%d duration_ms=%.1f",
            fault.id,
            status.value,
            result.actions_taken,
            result.successful_actions,
            result.failed_actions,
            duration_ms,
        )

        try:
            await self._publish_fault("fault_updated", fault)
            await self.bus.publish(event, {"fault": fault.model_copy(deep=True), "result": result})
        except Exception:  # noqa: BLE001
            logger.exception("Could not publish %s for fault %s", event, fault.id)
        return result

    async def _publish_fault(self, event: str, fault: Fault) -> None:
        await self.bus.publish(event, {"fault": fault.model_copy(deep=True)})

    async def _publish_action(self, fault: Fault, action: RecoveryAction) -> None:
        await self.bus.publish(
            "action_updated",
            {"fault_id": fault.id, "action": action.model_copy(deep=True)},
        )
