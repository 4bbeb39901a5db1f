"""
Maps anomalies and SLA events onto canonical faults.

Unknown metrics and non-actionable events map to None. Before a new Fault is
created the active-fault index is consulted, so a repeated detection for the
same (type, service) folds into the existing record instead.
"""

from __future__ import annotations

import logging
import random
import string
import time
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional

from ..models.fault_models import Fault, FaultType, Severity
from ..models.signal_models import Anomaly
from ..models.sla_models import SLAEvent, SLAEventType
from .fault_store import FaultStore

logger = logging.getLogger("selfheal.translator")


@dataclass(frozen=True)
class _Mapping:
    fault_type: Callable[[float], FaultType]
    components: List[str]
    service_id: str = "system"


_ANOMALY_MAPPINGS: Dict[str, _Mapping] = {
    "cpu_usage": _Mapping(
        lambda v: FaultType.RESOURCE_EXHAUSTION if v > 90 else FaultType.HIGH_LATENCY,
        ["cpu"],
    ),
    "memory_usage": _Mapping(
        lambda v: FaultType.MEMORY_LEAK if v > 85 else FaultType.RESOURCE_EXHAUSTION,
        ["memory"],
    ),
    "disk_usage": _Mapping(lambda v: FaultType.DISK_SPACE_FULL, ["storage"]),
    "api_response_time": _Mapping(lambda v: FaultType.HIGH_LATENCY, ["api_service"], "api"),
    "database_connection_pool": _Mapping(
        lambda v: FaultType.DATABASE_CONNECTION_FAILURE, ["database"], "database"
    ),
    "event_loop_lag": _Mapping(lambda v: FaultType.EVENT_LOOP_BLOCKED, ["event_loop"]),
}


def _fault_id(prefix: str = "fault") -> str:
    suffix = "".join(random.choices(string.ascii_lowercase + string.digits, k=9))
    return f"{prefix}_{int(time.time() * 1000)}_{suffix}"


def _severity(value: str) -> Severity:
    try:
        return Severity(value)
    except ValueError:
        return Severity.LOW


def anomaly_to_fault(anomaly: Anomaly) -> Optional[Fault]:
    mapping = _ANOMALY_MAPPINGS.get(anomaly.metricId)
    if mapping is None:
        return None

    return Fault(
        id=_fault_id(),
        type=mapping.fault_type(anomaly.value),
        severity=_severity(anomaly.severity),
        service_id=mapping.service_id,
        detected_at=anomaly.timestamp,
        description=anomaly.description,
        affected_components=list(mapping.components),
        metrics={anomaly.metricId: anomaly.value},
    )


def sla_event_to_fault(event: SLAEvent) -> Optional[Fault]:
    if event.type not in (SLAEventType.BREACH, SLAEventType.WARNING):
        return None

    components = ["sla"]
    service_id = "system"
    if event.metric_id == "sla_availability":
        fault_type = FaultType.SERVICE_UNAVAILABLE
        service_id = event.tags.get("serviceId") or "unknown_service"
    elif event.metric_id == "sla_response_time":
        fault_type = FaultType.HIGH_LATENCY
        components.append("response_time")
    elif event.metric_id == "sla_resolution_time":
        fault_type = FaultType.HIGH_LATENCY
        components.append("resolution_time")
    else:
        return None

    breach = event.type == SLAEventType.BREACH
    return Fault(
        id=_fault_id("fault_sla"),
        type=fault_type,
        severity=Severity.CRITICAL if breach else Severity.HIGH,
        service_id=service_id,
        detected_at=event.timestamp,
        description=f"{event.metric_name} {'breach' if breach else 'warning'}: {event.value}",
        affected_components=components,
        metrics={event.metric_id: event.value, "target": event.target},
    )


class FaultTranslator:
    def __init__(self, store: FaultStore) -> None:
        self.store = store

    def _dedup(self, fault: Optional[Fault]) -> Optional[Fault]:
        if fault is None:
            return None
        existing = self.store.find_active(fault.type, fault.service_id)
        if existing is not None:
            return self.store.merge_into(existing, fault)
        return fault

    def from_anomaly(self, anomaly: Anomaly) -> Optional[Fault]:
        fault = anomaly_to_fault(anomaly)
        if fault is None:
            logger.debug("No fault mapping for anomaly metric %s", anomaly.metricId)
        return self._dedup(fault)

    def from_sla_event(self, event: SLAEvent) -> Optional[Fault]:
        fault = sla_event_to_fault(event)
        if fault is None:
            logger.debug("SLA event %s on %s is not actionable", event.type.value, event.metric_id)
        return self._dedup(fault)
