"""
Health check routes for application monitoring.

Readiness reports which reasoning backends have credentials and which stores
are in use. A backend without credentials is reported as degraded, since
requests to it still complete with a fallback answer.
"""

from datetime import datetime
from typing import List, Optional
import structlog
from fastapi import APIRouter
from pydantic import BaseModel

from fundsagent.config.settings import settings

logger = structlog.get_logger(__name__)

router = APIRouter()


class HealthStatus(BaseModel):
    """Health status response model."""

    status: str
    timestamp: datetime
    version: str
    environment: str
    uptime_seconds: float


class DependencyStatus(BaseModel):
    name: str
    status: str
    detail: Optional[str] = None


class DetailedHealthStatus(HealthStatus):
    dependencies: List[DependencyStatus]


# Track application start time for uptime calculation
app_start_time = datetime.utcnow()


def _base_status(status: str) -> dict:
    return {
        "status": status,
        "timestamp": datetime.utcnow(),
        "version": settings.version,
        "environment": settings.environment,
        "uptime_seconds": (datetime.utcnow() - app_start_time).total_seconds(),
    }


@router.get("/", response_model=HealthStatus)
async def health_check() -> HealthStatus:
    """Liveness: the process is up, dependencies are not checked."""
    return HealthStatus(**_base_status("healthy"))


@router.get("/ready", response_model=DetailedHealthStatus)
async def readiness_check() -> DetailedHealthStatus:
    from fundsagent.app import app_state

    dependencies = []
    clients = [app_state.llm_client, *app_state.engine_clients.values()]
    for client in clients:
        if client is None:
            dependencies.append(DependencyStatus(name="llm", status="unhealthy", detail="not initialized"))
            continue
        dependencies.append(DependencyStatus(
            name=client.engine_id,
            status="healthy" if client.is_configured else "degraded",
            detail=client.settings.model if client.is_configured else "missing API key",
        ))

    dependencies.append(DependencyStatus(
        name="store",
        status="healthy" if app_state.conversation_service else "unhealthy",
        detail="cosmos_db" if app_state.cosmos_client else "in_memory",
    ))

    statuses = {d.status for d in dependencies}
    overall = "unhealthy" if "unhealthy" in statuses else "degraded" if "degraded" in statuses else "healthy"
    logger.info("Readiness check completed", overall_status=overall, dependency_count=len(dependencies))
    return DetailedHealthStatus(**_base_status(overall), dependencies=dependencies)
