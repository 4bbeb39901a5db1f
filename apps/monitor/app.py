# apps/monitor/app.py

import os
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from prometheus_fastapi_instrumentator import Instrumentator

from apps.monitor.config import settings
from apps.monitor.routers.metrics_router import router as metrics_router
from apps.monitor.routers.recovery_router import router as recovery_router
from apps.monitor.routers.signals_router import router as signals_router
from apps.monitor.routers.status_router import router as status_router
from apps.monitor.services.monitoring_service import MonitoringService
from apps.monitor.utils.otel import setup_logging, setup_otel


def create_app(
    service: Optional[MonitoringService] = None,
    enable_telemetry: bool = settings.OTEL_ENABLED,
) -> FastAPI:
    """
    Build the monitor API around a MonitoringService. The service is started
    and stopped with the app lifespan and is reachable as
    `app.state.monitoring`.
    """
    monitoring = service or MonitoringService()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await monitoring.start()
        try:
            yield
        finally:
            await monitoring.stop()

    app = FastAPI(
        title="SelfHeal Monitor",
        description="SLA monitoring and automated fault recovery",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.monitoring = monitoring

    # ------------------------------------------------------------------
    # OpenTelemetry + HTTP metrics
    # ------------------------------------------------------------------
    if enable_telemetry:
        setup_otel(app)
        Instrumentator().instrument(app)
    else:
        setup_logging()

    # Explicit /metrics endpoint (default Prometheus registry)
    app.include_router(metrics_router)

    # ------------------------------------------------------------------
    # Business routers
    # ------------------------------------------------------------------
    app.include_router(signals_router, prefix="/v1")
    app.include_router(recovery_router, prefix="/v1")
    app.include_router(status_router, prefix="/v1")

    @app.get("/healthz")
    def health_check():
        return {"status": "ok", "service": "monitor", "active": monitoring.active}

    return app


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "apps.monitor.app:create_app",
        host="0.0.0.0",
        port=int(os.getenv("PORT", 8080)),
        reload=False,  # reload would register Prometheus metrics twice
        factory=True,
    )
