"""
Recovery strategy registry, built-in strategies and action conditions.
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import Any, Dict, List, Optional

from ..models.fault_models import (
    ActionCondition,
    ActionType,
    Fault,
    FaultType,
    RecoveryStrategy,
    RollbackSpec,
    Severity,
    StrategyAction,
    severity_level,
)

logger = logging.getLogger("selfheal.strategies")


def default_strategies() -> List[RecoveryStrategy]:
    return [
        RecoveryStrategy(
            fault_type=FaultType.SERVICE_UNAVAILABLE,
            min_severity=Severity.HIGH,
            actions=[
                StrategyAction(type=ActionType.RESTART_SERVICE, priority=1, max_retries=2,
                               delay_ms=2000, parameters={"graceful": True, "timeout": 10000}),
                StrategyAction(type=ActionType.FAILOVER, priority=2, max_retries=1,
                               delay_ms=5000, parameters={"automatic": True}),
                StrategyAction(type=ActionType.ALERT_ADMIN, priority=3, max_retries=1,
                               delay_ms=0, parameters={"notify": ["email", "sms"]}),
            ],
        ),
        RecoveryStrategy(
            fault_type=FaultType.DATABASE_CONNECTION_FAILURE,
            min_severity=Severity.CRITICAL,
            actions=[
                StrategyAction(type=ActionType.CONNECTION_RESET, priority=1, max_retries=3,
                               delay_ms=1000, parameters={"pool_size": 10, "timeout": 5000}),
                StrategyAction(type=ActionType.RESTART_SERVICE, priority=2, max_retries=1,
                               delay_ms=5000,
                               parameters={"service": "database_proxy", "graceful": True}),
                StrategyAction(type=ActionType.ALERT_ADMIN, priority=3, max_retries=1,
                               delay_ms=0, parameters={"notify": ["email", "sms", "slack"]}),
            ],
        ),
        RecoveryStrategy(
            fault_type=FaultType.MEMORY_LEAK,
            min_severity=Severity.MEDIUM,
            actions=[
                StrategyAction(type=ActionType.MEMORY_GC, priority=1, max_retries=2,
                               delay_ms=1000, parameters={"aggressive": False}),
                StrategyAction(type=ActionType.RESTART_PROCESS, priority=2, max_retries=1,
                               delay_ms=3000, parameters={"graceful": True}),
                StrategyAction(type=ActionType.SCALE_RESOURCES, priority=3, max_retries=1,
                               delay_ms=10000, parameters={"memory_increase": 25}),
            ],
        ),
        RecoveryStrategy(
            fault_type=FaultType.HIGH_LATENCY,
            min_severity=Severity.MEDIUM,
            actions=[
                StrategyAction(type=ActionType.CLEAR_CACHE, priority=1, max_retries=1,
                               delay_ms=500, parameters={"partial": True}),
                StrategyAction(type=ActionType.SCALE_RESOURCES, priority=2, max_retries=1,
                               delay_ms=5000, parameters={"cpu_increase": 20},
                               rollback=RollbackSpec(type=ActionType.SCALE_RESOURCES,
                                                     parameters={"cpu_increase": -20})),
                StrategyAction(type=ActionType.RESTART_SERVICE, priority=3, max_retries=1,
                               delay_ms=10000, parameters={"graceful": True}),
            ],
        ),
        RecoveryStrategy(
            fault_type=FaultType.DISK_SPACE_FULL,
            min_severity=Severity.HIGH,
            actions=[
                StrategyAction(type=ActionType.CLEANUP_DISK, priority=1, max_retries=2,
                               delay_ms=2000,
                               parameters={"threshold": 85, "clean_logs": True,
                                           "clean_temp_files": True}),
                StrategyAction(type=ActionType.ALERT_ADMIN, priority=2, max_retries=1,
                               delay_ms=0, parameters={"notify": ["email", "sms"]}),
            ],
        ),
    ]


# --------------------------------------------------------------------------
# Conditions
# --------------------------------------------------------------------------

_MISSING = object()


def _resolve(fault: Fault, path: str) -> Any:
    """Resolve a dotted field path ("metrics.cpu_usage", "service_id") on a fault."""
    current: Any = fault
    for part in path.split("."):
        if isinstance(current, dict):
            current = current.get(part, _MISSING)
        else:
            current = getattr(current, part, _MISSING)
        if current is _MISSING:
            return None
    return current.value if isinstance(current, Enum) else current


def _compare(left: Any, op: str, right: Any) -> bool:
    if op == "==":
        return left == right
    if op == "!=":
        return left != right
    if left is None:
        return False
    try:
        if op == ">":
            return left > right
        if op == "<":
            return left < right
        if op == ">=":
            return left >= right
        if op == "<=":
            return left <= right
    except TypeError:
        return False
    return False


def condition_holds(condition: ActionCondition, fault: Fault) -> bool:
    left = _resolve(fault, condition.field)
    right = condition.value
    if condition.field == "severity" and condition.op not in ("==", "!="):
        # Order severities by rank, not alphabetically.
        left, right = severity_level(left), severity_level(right)
    return _compare(left, condition.op, right)


def action_applies(action: StrategyAction, fault: Fault) -> bool:
    if action.predicate is not None and not action.predicate(fault):
        return False
    return all(condition_holds(c, fault) for c in action.conditions)


# --------------------------------------------------------------------------
# Registry
# --------------------------------------------------------------------------

class StrategyRegistry:
    """
    Strategies keyed by fault type. Reads hand out deep copies so a running
    recovery never observes a concurrent re-registration.
    """

    def __init__(self, strategies: Optional[List[RecoveryStrategy]] = None) -> None:
        self._strategies: Dict[str, RecoveryStrategy] = {}
        for strategy in strategies if strategies is not None else default_strategies():
            self.register(strategy)

    def register(self, strategy: RecoveryStrategy) -> None:
        self._strategies[strategy.fault_type.value] = strategy.model_copy(deep=True)
        logger.info(
            "Recovery strategy registered: fault_type=%s min_severity=%s actions=%d",
            strategy.fault_type.value,
            strategy.min_severity.value,
            len(strategy.actions),
        )

    def get(self, fault_type: FaultType) -> Optional[RecoveryStrategy]:
        strategy = self._strategies.get(FaultType(fault_type).value)
        return strategy.model_copy(deep=True) if strategy else None

    def all(self) -> List[RecoveryStrategy]:
        return [s.model_copy(deep=True) for s in self._strategies.values()]

    def __len__(self) -> int:
        return len(self._strategies)
