from fastapi import Request

from ..services.monitoring_service import MonitoringService


def get_monitoring_service(request: Request) -> MonitoringService:
    """The MonitoringService instance owned by the running app (see app.create_app)."""
    return request.app.state.monitoring
