"""
Pydantic models for SLA evaluation: tiers, metric definitions, targets,
classified samples and SLA events.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Dict, Optional

from pydantic import BaseModel, Field

from .fault_models import Severity, UtcDatetime, utcnow


class SLAStatus(str, Enum):
    MET = "met"
    WARNING = "warning"
    BREACHED = "breached"


class SLAEventType(str, Enum):
    BREACH = "sla_breach"
    WARNING = "sla_warning"
    RECOVERED = "sla_recovered"


class SLATier(BaseModel):
    """Priority-tiered response / resolution / availability thresholds."""
    priority: Severity
    response_time_ms: float = Field(..., gt=0)
    resolution_time_ms: float = Field(..., gt=0)
    availability_target: float = Field(..., ge=0, le=100)


class MetricDefinition(BaseModel):
    """
    How samples of one metric are classified.

    Higher-is-better metrics compare against `target` (warning band is
    target * 0.95). Lower-is-better metrics are `met` up to `target` and
    `warning` up to `warning_threshold`.
    """
    id: str
    name: str
    description: str = ""
    unit: str = ""
    category: str = "sla"
    normal_min: Optional[float] = None
    normal_max: Optional[float] = None
    target: float
    warning_threshold: Optional[float] = None
    critical_threshold: Optional[float] = None
    higher_is_better: bool = False
    severity: Severity = Severity.MEDIUM


class SLATarget(BaseModel):
    """
    Operator-supplied SLA target, e.g.

      {"id": "sla_response_time", "name": "API response time",
       "metric_name": "api_response_time", "threshold": 500,
       "warning_threshold": 300, "severity": "high", "unit": "ms"}

    Polarity is inferred from the thresholds unless given explicitly:
    a warning threshold above the breach threshold means higher is better.
    """
    id: str
    name: str
    description: str = ""
    metric_name: Optional[str] = None
    threshold: float
    warning_threshold: Optional[float] = None
    severity: Severity = Severity.MEDIUM
    unit: str = ""
    higher_is_better: Optional[bool] = None

    def infer_higher_is_better(self) -> bool:
        if self.higher_is_better is not None:
            return self.higher_is_better
        if self.warning_threshold is None:
            return False
        return self.warning_threshold > self.threshold


class SLAMetric(BaseModel):
    id: str
    name: str
    description: str = ""
    value: float
    target: float
    status: SLAStatus
    timestamp: UtcDatetime = Field(default_factory=utcnow)
    tags: Dict[str, str] = Field(default_factory=dict)


class SLAEvent(BaseModel):
    id: str
    type: SLAEventType
    metric_id: str
    metric_name: str
    value: float
    target: float
    timestamp: UtcDatetime = Field(default_factory=utcnow)
    description: str = ""
    tags: Dict[str, str] = Field(default_factory=dict)

    model_config = {"frozen": True}


class AvailabilityData(BaseModel):
    total_checks: int = 0
    successful_checks: int = 0
    availability: float = 100.0
    downtime_ms: float = 0.0
    last_downtime: Optional[datetime] = None
    last_uptime: Optional[datetime] = None
