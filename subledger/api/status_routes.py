"""
Status API routes - Health check for load balancers.

Public endpoint (no auth). Reports database connectivity and whether the
background workers are running.
"""

from fastapi import APIRouter, Depends, Request, Response, status
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from subledger.db.session import get_read_db
from subledger.models.api import HealthResponse
from subledger.workers.registry import Workers

logger = get_logger(__name__)
router = APIRouter(tags=["status"])


@router.get("/health", response_model=HealthResponse)
async def health_check(
    request: Request,
    response: Response,
    db: AsyncSession = Depends(get_read_db),
) -> HealthResponse:
    """
    Health check for load balancer.

    Answers 503 when the database is unreachable; stopped workers only
    degrade the status.
    """
    database_ok = True
    try:
        await db.execute(text("SELECT 1"))
    except (SQLAlchemyError, OSError) as exc:
        logger.error("health_check_database_failed", error=str(exc))
        database_ok = False

    workers: Workers | None = getattr(request.app.state, "workers", None)
    worker_status = {worker.name: worker.running for worker in workers} if workers else {}

    if not database_ok:
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    healthy = database_ok and all(worker_status.values())
    return HealthResponse(
        status="healthy" if healthy else "degraded",
        database="ok" if database_ok else "error",
        workers=worker_status,
    )
