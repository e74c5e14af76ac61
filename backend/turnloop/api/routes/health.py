"""Health & Readiness Probes — liveness and readiness for container orchestration.

Invariants:
    - GET /health/ returns 200 whenever the process is up
    - GET /health/ready returns 503 unless the database answers; a missing
      model API key is reported but does not fail readiness
"""

import logging

from fastapi import APIRouter, status
from fastapi.responses import JSONResponse

from turnloop import __version__
from turnloop.config import get_settings
from turnloop.infrastructure import database
from turnloop.services.conversation_runner import active_run_count

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/v1/health", tags=["health"])


@router.get("/")
async def liveness():
    return {"status": "healthy", "service": "turnloop-api", "version": __version__}


@router.get("/ready")
async def readiness():
    manager = database.db_manager
    database_ok = manager is not None and await manager.health_check()
    checks = {
        "database": "healthy" if database_ok else "unavailable",
        "model_api_key": "configured" if get_settings().anthropic_api_key else "missing",
    }
    if not database_ok:
        logger.warning("Readiness check failed: database unavailable")
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content={"status": "not_ready", "checks": checks},
        )
    return {"status": "ready", "checks": checks, "active_runs": active_run_count()}
