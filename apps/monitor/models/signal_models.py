from typing import Dict, Optional, Any

from pydantic import BaseModel, Field

from .fault_models import UtcDatetime, utcnow


class Anomaly(BaseModel):
    """
    Ingested from the metric source (anomaly detector).

    Expected to be compatible with something like:
      {"metricId": "cpu_usage", "value": 93.2, "severity": "critical",
       "description": "CPU usage above 90% for 5 minutes"}
    """
    metricId: str
    value: float
    severity: str = Field("low", description="critical | high | medium | low")
    description: str = ""
    timestamp: UtcDatetime = Field(default_factory=utcnow)
    metadata: Dict[str, Any] = Field(default_factory=dict)


class MetricDataPoint(BaseModel):
    """
    Raw metric sample recorded by the metric source.

      {"metricId": "sla_response_time", "value": 650, "timestamp": "...", "tags": {}}
    """
    metricId: str
    value: float
    timestamp: UtcDatetime = Field(default_factory=utcnow)
    tags: Dict[str, str] = Field(default_factory=dict)


class AvailabilityCheck(BaseModel):
    """Result of a single service availability probe."""
    serviceId: str
    isAvailable: bool
    responseTime: Optional[float] = Field(
        default=None,
        ge=0,
        description="Probe duration in milliseconds (added to downtime when unavailable).",
    )
