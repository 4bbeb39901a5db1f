from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from .fault_models import FaultType, Severity, UtcDatetime, utcnow


# ---------- Point-in-time status (never cached) ----------

class SLAServiceStatus(BaseModel):
    active: bool
    last_check: Optional[datetime] = None
    check_interval: int
    metrics: int
    targets: int


class FaultRecoveryServiceStatus(BaseModel):
    active: bool
    active_faults: int
    in_flight_recoveries: int
    total_faults: int
    successful_recoveries: int
    failed_recoveries: int
    recovery_strategies: int


class MetricSourceStatus(BaseModel):
    metrics: int
    anomalies: int
    last_scan: Optional[datetime] = None


class OverallStatus(BaseModel):
    system_health_score: float
    sla_compliance_rate: float
    auto_recovery_rate: float
    uptime: float = Field(..., description="Seconds since start().")
    start_time: datetime


class MonitoringStatus(BaseModel):
    sla_service: SLAServiceStatus
    fault_recovery_service: FaultRecoveryServiceStatus
    metric_source: MetricSourceStatus
    overall: OverallStatus


# ---------- Dashboard snapshot (cached) ----------

class SystemHealth(BaseModel):
    score: float
    trend: str = Field("stable", description="improving | stable | declining")
    critical_issues: int = 0
    high_issues: int = 0
    medium_issues: int = 0
    low_issues: int = 0


class SLAMetricsSummary(BaseModel):
    compliance_rate: float
    availability: float
    response_time: float
    resolution_time: float
    breaches: int
    warnings: int


class FaultTypeStat(BaseModel):
    type: FaultType
    count: int
    recovery_rate: float


class FaultStatistics(BaseModel):
    total_faults: int
    auto_recovered: int
    manual_intervention_required: int
    top_fault_types: List[FaultTypeStat] = Field(default_factory=list)
    average_recovery_time: float = 0.0


class ResourceStats(BaseModel):
    current: float = 0.0
    average: float = 0.0
    max: float = 0.0
    threshold: float = 0.0


class ResourceUsage(BaseModel):
    cpu: ResourceStats
    memory: ResourceStats
    disk: ResourceStats


class RecentEvent(BaseModel):
    type: str = Field(..., description="anomaly | fault | recovery | sla_breach | sla_warning | sla_recovered")
    timestamp: datetime = Field(default_factory=utcnow)
    severity: Severity
    message: str
    details: Dict[str, Any] = Field(default_factory=dict)


class MonitoringDashboardData(BaseModel):
    system_health: SystemHealth
    sla_metrics: SLAMetricsSummary
    fault_statistics: FaultStatistics
    resource_usage: ResourceUsage
    recent_events: List[RecentEvent] = Field(default_factory=list)
    generated_at: datetime = Field(default_factory=utcnow)


# ---------- Alerts & reports ----------

class Alert(BaseModel):
    severity: Severity
    message: str
    channels: List[str] = Field(default_factory=list)
    timestamp: datetime = Field(default_factory=utcnow)
    data: Dict[str, Any] = Field(default_factory=dict)


class TimeRange(BaseModel):
    start: UtcDatetime
    end: UtcDatetime


class MonitoringReport(BaseModel):
    generated_at: datetime = Field(default_factory=utcnow)
    time_range: TimeRange
    summary: Dict[str, Any]
    sla: Dict[str, Any]
    faults: Dict[str, Any]
    health: Dict[str, Any]
