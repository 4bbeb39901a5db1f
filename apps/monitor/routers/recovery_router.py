from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from opentelemetry import trace

from ..errors import ServiceNotActive
from ..models.fault_models import Fault, FaultStatus, RecoveryResult, RecoveryStrategy
from ..services.monitoring_service import MonitoringService
from .deps import get_monitoring_service

logger = logging.getLogger("selfheal.recovery_api")
tracer = trace.get_tracer(__name__)

router = APIRouter(tags=["faults", "recovery"])


# ------------------------------------------------------------------------------
# Faults
# ------------------------------------------------------------------------------
@router.get("/faults", response_model=List[Fault])
def list_faults(
    status_filter: Optional[FaultStatus] = Query(default=None, alias="status"),
    service: MonitoringService = Depends(get_monitoring_service),
) -> List[Fault]:
    faults = service.get_all_faults()
    if status_filter is not None:
        faults = [f for f in faults if f.status == status_filter]
    return faults


@router.get("/faults/active", response_model=List[Fault])
def list_active_faults(service: MonitoringService = Depends(get_monitoring_service)) -> List[Fault]:
    return service.get_active_faults()


@router.post("/faults/detect", summary="Re-scan SLA metrics and start recovery for degraded ones.")
async def trigger_fault_detection(
    service: MonitoringService = Depends(get_monitoring_service),
) -> Dict[str, Any]:
    with tracer.start_as_current_span("faults.trigger_detection") as span:
        try:
            faults = await service.trigger_fault_detection()
        except ServiceNotActive as exc:
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc))
        except Exception as exc:
            logger.exception("Manual fault detection failed")
            span.record_exception(exc)
            raise HTTPException(status_code=500, detail=f"Error during fault detection: {exc}")

        span.set_attribute("selfheal.faults.detected", len(faults))
        return {"detected": len(faults), "faults": [f.model_dump(mode="json") for f in faults]}


@router.get("/faults/{fault_id}", response_model=Fault)
def get_fault(fault_id: str, service: MonitoringService = Depends(get_monitoring_service)) -> Fault:
    fault = service.store.get(fault_id)
    if fault is None:
        raise HTTPException(status_code=404, detail=f"Fault {fault_id} not found")
    return fault


@router.post("/faults/{fault_id}/cancel", status_code=status.HTTP_202_ACCEPTED)
def cancel_recovery(
    fault_id: str,
    service: MonitoringService = Depends(get_monitoring_service),
) -> Dict[str, Any]:
    if service.store.get(fault_id) is None:
        raise HTTPException(status_code=404, detail=f"Fault {fault_id} not found")
    if not service.cancel_recovery(fault_id):
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"Fault {fault_id} is no longer recovering",
        )
    return {"faultId": fault_id, "cancellationRequested": True}


# ------------------------------------------------------------------------------
# Recovery
# ------------------------------------------------------------------------------
@router.get("/recovery/history", response_model=List[RecoveryResult])
def recovery_history(
    limit: int = Query(default=50, ge=1, le=1000),
    service: MonitoringService = Depends(get_monitoring_service),
) -> List[RecoveryResult]:
    return service.get_recovery_history(limit)


@router.get("/recovery/strategies", response_model=List[RecoveryStrategy])
def list_strategies(
    service: MonitoringService = Depends(get_monitoring_service),
) -> List[RecoveryStrategy]:
    return service.get_recovery_strategies()


@router.post(
    "/recovery/strategies",
    response_model=RecoveryStrategy,
    status_code=status.HTTP_201_CREATED,
    summary="Register or replace the strategy for a fault type.",
)
def add_strategy(
    strategy: RecoveryStrategy,
    service: MonitoringService = Depends(get_monitoring_service),
) -> RecoveryStrategy:
    service.add_recovery_strategy(strategy)
    return strategy
