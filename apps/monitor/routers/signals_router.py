from __future__ import annotations

import logging
from typing import Any, Dict

from fastapi import APIRouter, Depends, HTTPException, Request, status
from opentelemetry import trace

from ..models.signal_models import Anomaly, AvailabilityCheck, MetricDataPoint
from ..models.sla_models import AvailabilityData
from ..services.monitoring_service import MonitoringService
from .deps import get_monitoring_service

logger = logging.getLogger("selfheal.signals")
tracer = trace.get_tracer(__name__)

router = APIRouter(
    prefix="/signals",
    tags=["signals"],
)


# ------------------------------------------------------------------------------
# POST /signals/anomaly
# ------------------------------------------------------------------------------
@router.post(
    "/anomaly",
    status_code=status.HTTP_202_ACCEPTED,
    summary="Ingest an anomaly from the metric source.",
)
async def ingest_anomaly(
    anomaly: Anomaly,
    request: Request,
    service: MonitoringService = Depends(get_monitoring_service),
) -> Dict[str, Any]:
    """
    Publishes the anomaly on the bus. Fault translation and recovery run
    asynchronously; the response does not wait for them.
    """
    with tracer.start_as_current_span("signals.ingest_anomaly") as span:
        span.set_attribute("selfheal.signal.metric_id", anomaly.metricId)
        span.set_attribute("selfheal.signal.value", anomaly.value)
        span.set_attribute("selfheal.signal.severity", anomaly.severity)
        if request.client:
            span.set_attribute("http.client_ip", request.client.host)

        try:
            await service.on_anomaly_detected(anomaly)
        except Exception as exc:
            logger.exception("Failed to process anomaly")
            span.record_exception(exc)
            raise HTTPException(status_code=500, detail=f"Error processing anomaly: {exc}")

        return {"accepted": True, "kind": "anomaly", "metricId": anomaly.metricId}


# ------------------------------------------------------------------------------
# POST /signals/datapoint
# ------------------------------------------------------------------------------
@router.post(
    "/datapoint",
    status_code=status.HTTP_202_ACCEPTED,
    summary="Record a raw metric sample.",
)
async def ingest_datapoint(
    point: MetricDataPoint,
    service: MonitoringService = Depends(get_monitoring_service),
) -> Dict[str, Any]:
    with tracer.start_as_current_span("signals.ingest_datapoint") as span:
        span.set_attribute("selfheal.signal.metric_id", point.metricId)
        span.set_attribute("selfheal.signal.value", point.value)

        try:
            await service.on_data_point_recorded(point)
        except Exception as exc:
            logger.exception("Failed to record data point")
            span.record_exception(exc)
            raise HTTPException(status_code=500, detail=f"Error recording data point: {exc}")

        return {
            "accepted": True,
            "kind": "datapoint",
            "metricId": point.metricId,
            "slaTracked": service.sla.is_tracked(point.metricId),
        }


# ------------------------------------------------------------------------------
# POST /signals/availability
# ------------------------------------------------------------------------------
@router.post(
    "/availability",
    response_model=AvailabilityData,
    summary="Record a service availability probe.",
)
async def ingest_availability(
    check: AvailabilityCheck,
    service: MonitoringService = Depends(get_monitoring_service),
) -> AvailabilityData:
    with tracer.start_as_current_span("signals.ingest_availability") as span:
        span.set_attribute("selfheal.signal.service_id", check.serviceId)
        span.set_attribute("selfheal.signal.available", check.isAvailable)

        try:
            return await service.update_availability(
                check.serviceId, check.isAvailable, check.responseTime
            )
        except Exception as exc:
            logger.exception("Failed to record availability for %s", check.serviceId)
            span.record_exception(exc)
            raise HTTPException(status_code=500, detail=f"Error recording availability: {exc}")
