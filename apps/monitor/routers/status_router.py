from __future__ import annotations

import logging
from typing import Any, Dict, List

from fastapi import APIRouter, Body, Depends, HTTPException, Query, status
from opentelemetry import trace

from ..config import MonitoringConfig
from ..errors import InvalidConfiguration
from ..models.sla_models import MetricDefinition, SLAEvent, SLATarget
from ..models.status_models import (
    MonitoringDashboardData,
    MonitoringReport,
    MonitoringStatus,
    TimeRange,
)
from ..services.monitoring_service import MonitoringService
from .deps import get_monitoring_service

logger = logging.getLogger("selfheal.status_api")
tracer = trace.get_tracer(__name__)

router = APIRouter(tags=["status"])


@router.get("/status", response_model=MonitoringStatus)
def get_status(service: MonitoringService = Depends(get_monitoring_service)) -> MonitoringStatus:
    return service.get_status()


@router.get("/dashboard", response_model=MonitoringDashboardData)
def get_dashboard(
    service: MonitoringService = Depends(get_monitoring_service),
) -> MonitoringDashboardData:
    return service.get_dashboard_data()


@router.post("/reports", response_model=MonitoringReport)
def generate_report(
    time_range: TimeRange,
    service: MonitoringService = Depends(get_monitoring_service),
) -> MonitoringReport:
    with tracer.start_as_current_span("status.generate_report"):
        try:
            return service.generate_report(time_range.start, time_range.end)
        except ValueError as exc:
            raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc))


# ------------------------------------------------------------------------------
# Configuration
# ------------------------------------------------------------------------------
@router.get("/config", response_model=MonitoringConfig, response_model_by_alias=True)
def get_config(service: MonitoringService = Depends(get_monitoring_service)) -> MonitoringConfig:
    return service.config


@router.patch("/config", response_model=MonitoringConfig, response_model_by_alias=True)
async def update_config(
    partial: Dict[str, Any] = Body(...),
    service: MonitoringService = Depends(get_monitoring_service),
) -> MonitoringConfig:
    try:
        return await service.update_config(partial)
    except InvalidConfiguration as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc))


# ------------------------------------------------------------------------------
# SLA
# ------------------------------------------------------------------------------
@router.post(
    "/sla/targets",
    response_model=MetricDefinition,
    status_code=status.HTTP_201_CREATED,
)
def add_sla_target(
    target: SLATarget,
    service: MonitoringService = Depends(get_monitoring_service),
) -> MetricDefinition:
    return service.add_sla_target(target)


@router.get("/sla/events", response_model=List[SLAEvent])
def sla_events(
    hours: float = Query(default=24, gt=0),
    service: MonitoringService = Depends(get_monitoring_service),
) -> List[SLAEvent]:
    return service.sla.get_events(hours)


@router.get("/sla/compliance")
def sla_compliance(
    scope: str = Query(default="all"),
    hours: float = Query(default=24, gt=0),
    service: MonitoringService = Depends(get_monitoring_service),
) -> Dict[str, Any]:
    return {
        "scope": scope,
        "hours": hours,
        "complianceRate": service.sla.calculate_sla_compliance_rate(scope, hours),
    }
