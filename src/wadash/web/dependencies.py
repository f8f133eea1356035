from __future__ import annotations

from fastapi import Request

from ..service import DashboardService


def get_service(request: Request) -> DashboardService:
    service = getattr(request.app.state, "service", None)
    if service is None:
        raise RuntimeError("Dashboard service has not been initialised")
    return service
