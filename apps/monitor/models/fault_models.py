"""
Pydantic models for faults, recovery actions and recovery strategies.

These models are used across:
  - FaultTranslator (anomaly / SLA event → Fault)
  - RecoveryOrchestrator (fault lifecycle + action execution)
  - StatusAggregator (dashboards, reports)
  - /v1/faults/* and /v1/recovery/* endpoints
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Callable, Dict, List, Optional

from pydantic import AfterValidator, BaseModel, Field
from pydantic.json_schema import SkipJsonSchema


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Timestamps without an offset are taken to be UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


# Inbound timestamps are compared against utcnow(); naive ones are pinned to UTC.
UtcDatetime = Annotated[datetime, AfterValidator(as_utc)]


# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------

class Severity(str, Enum):
    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


SEVERITY_LEVELS: Dict[str, int] = {
    Severity.CRITICAL.value: 4,
    Severity.HIGH.value: 3,
    Severity.MEDIUM.value: 2,
    Severity.LOW.value: 1,
}


def severity_level(severity: Any) -> int:
    """Numeric rank of a severity (critical=4 … low=1, unknown=0)."""
    value = severity.value if isinstance(severity, Enum) else str(severity)
    return SEVERITY_LEVELS.get(value, 0)


class FaultType(str, Enum):
    SERVICE_UNAVAILABLE = "service_unavailable"
    HIGH_LATENCY = "high_latency"
    ERROR_RATE_EXCEEDED = "error_rate_exceeded"
    RESOURCE_EXHAUSTION = "resource_exhaustion"
    DATABASE_CONNECTION_FAILURE = "database_connection_failure"
    CACHE_FAILURE = "cache_failure"
    MEMORY_LEAK = "memory_leak"
    EVENT_LOOP_BLOCKED = "event_loop_blocked"
    DISK_SPACE_FULL = "disk_space_full"


class FaultStatus(str, Enum):
    DETECTED = "detected"
    ANALYZING = "analyzing"
    RECOVERING = "recovering"
    RECOVERED = "recovered"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_FAULT_STATUSES = frozenset(
    {FaultStatus.RECOVERED, FaultStatus.FAILED, FaultStatus.CANCELLED}
)


class ActionType(str, Enum):
    RESTART_SERVICE = "restart_service"
    SCALE_RESOURCES = "scale_resources"
    CLEAR_CACHE = "clear_cache"
    RESTART_PROCESS = "restart_process"
    FAILOVER = "failover"
    CONNECTION_RESET = "connection_reset"
    MEMORY_GC = "memory_gc"
    CLEANUP_DISK = "cleanup_disk"
    ALERT_ADMIN = "alert_admin"


class ActionStatus(str, Enum):
    PENDING = "pending"
    EXECUTING = "executing"
    COMPLETED = "completed"
    FAILED = "failed"


# ---------------------------------------------------------------------------
# RecoveryAction: one remediation step owned by a Fault
# ---------------------------------------------------------------------------

class RecoveryAction(BaseModel):
    id: str
    type: ActionType
    status: ActionStatus = ActionStatus.PENDING
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    duration: Optional[float] = Field(
        default=None,
        description="Duration of the last attempt in milliseconds.",
    )
    success: bool = False
    retry_count: int = Field(0, ge=0, description="Attempts made so far.")
    max_retries: int = Field(1, ge=1)
    parameters: Dict[str, Any] = Field(default_factory=dict)
    error_message: Optional[str] = None
    rollback_action: Optional["RecoveryAction"] = None


# ---------------------------------------------------------------------------
# Fault: canonical record of a detected problem
# ---------------------------------------------------------------------------

class Fault(BaseModel):
    id: str
    type: FaultType
    severity: Severity = Severity.LOW
    status: FaultStatus = FaultStatus.DETECTED
    service_id: str = "system"
    detected_at: UtcDatetime = Field(default_factory=utcnow)
    recovered_at: Optional[datetime] = None
    description: str = ""
    affected_components: List[str] = Field(default_factory=list)
    metrics: Dict[str, float] = Field(default_factory=dict)
    actions: List[RecoveryAction] = Field(default_factory=list)
    retry_count: int = 0
    estimated_downtime: Optional[float] = Field(
        default=None,
        description="Elapsed recovery time in milliseconds.",
    )

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_FAULT_STATUSES

    @property
    def dedup_key(self) -> tuple:
        return (self.type.value, self.service_id)


# ---------------------------------------------------------------------------
# Strategy definitions
# ---------------------------------------------------------------------------

class ActionCondition(BaseModel):
    """
    Declarative guard evaluated against a Fault.

    Example: {"field": "metrics.cpu_usage", "op": ">", "value": 90}
    """
    field: str
    op: str = Field("==", pattern=r"^(==|!=|>|<|>=|<=)$")
    value: Any = None


class RollbackSpec(BaseModel):
    type: ActionType
    parameters: Dict[str, Any] = Field(default_factory=dict)


class StrategyAction(BaseModel):
    type: ActionType
    priority: int = 1
    max_retries: int = Field(1, ge=1)
    delay_ms: int = Field(0, ge=0)
    parameters: Dict[str, Any] = Field(default_factory=dict)
    conditions: List[ActionCondition] = Field(default_factory=list)
    # In-process predicate; not serializable, so never part of API payloads.
    predicate: SkipJsonSchema[Optional[Callable[[Fault], bool]]] = Field(default=None, exclude=True)
    rollback: Optional[RollbackSpec] = None


class RecoveryStrategy(BaseModel):
    fault_type: FaultType
    min_severity: Severity = Severity.LOW
    actions: List[StrategyAction] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# RecoveryResult: one per execute_recovery invocation
# ---------------------------------------------------------------------------

class RecoveryResult(BaseModel):
    success: bool
    fault_id: str
    status: FaultStatus
    actions_taken: int = 0
    successful_actions: int = 0
    failed_actions: int = 0
    duration: float = Field(0.0, ge=0, description="Milliseconds.")
    recommendations: List[str] = Field(default_factory=list)
    completed_at: datetime = Field(default_factory=utcnow)


RecoveryAction.model_rebuild()
