# app/routes/health.py
"""
Health check endpoints: liveness, readiness and database pool detail.
"""

import time

from fastapi import APIRouter, Request

from app.config import settings
from app.db.pool import db_health_check

router = APIRouter()

SERVICE_NAME = "newsroom-publishing"


@router.get("/healthz")
async def healthz():
    """Basic health check - always returns 200 if app is running."""
    return {"status": "ok", "service": SERVICE_NAME}


def _configuration_check() -> dict:
    issues = []

    if not settings.DATABASE_URL:
        issues.append("DATABASE_URL not set")
    if not settings.OPENAI_API_KEY:
        issues.append("OPENAI_API_KEY not set")
    if not (settings.SUPABASE_URL and settings.SUPABASE_SERVICE_ROLE_KEY):
        issues.append("SUPABASE_URL/SUPABASE_SERVICE_ROLE_KEY not set")
    if not settings.twilio_configured():
        issues.append("Twilio WhatsApp credentials not set")

    return {
        "ok": not issues,
        "issues": issues or None,
        "environment": settings.environment,
    }


@router.get("/readyz")
async def readyz(request: Request):
    """
    Readiness check: database pool, aggregator loop and configuration.
    """
    checks = {}
    overall_ok = True

    # 1) Database pool
    t0 = time.time()
    try:
        db_health = await db_health_check()
        is_healthy = db_health.get("healthy", False)

        checks["database"] = {
            "ok": is_healthy,
            "latency_ms": round((time.time() - t0) * 1000, 1),
        }

        if "pool_stats" in db_health:
            pool_stats = db_health["pool_stats"]
            checks["database"].update(
                {
                    "pool_size": pool_stats.get("pool_size", 0),
                    "pool_available": pool_stats.get("pool_available", 0),
                    "pool_utilization_percent": pool_stats.get("pool_utilization_percent", 0),
                    "connection_time_ms": db_health.get("connection_time_ms", 0),
                }
            )

        if "warnings" in db_health:
            checks["database"]["warnings"] = db_health["warnings"]

        if not is_healthy:
            checks["database"]["error"] = db_health.get("error", "Database unhealthy")
            if "error_type" in db_health:
                checks["database"]["error_type"] = db_health["error_type"]

        overall_ok = overall_ok and is_healthy

    except Exception as e:
        checks["database"] = {
            "ok": False,
            "error": f"{type(e).__name__}: {e}",
            "latency_ms": round((time.time() - t0) * 1000, 1),
        }
        overall_ok = False

    # 2) Aggregator loop
    container = getattr(request.app.state, "publishing", None)
    if container is None:
        checks["aggregator"] = {"ok": False, "error": "Publishing services not initialized"}
        overall_ok = False
    elif settings.RUN_AGGREGATOR_IN_API:
        job_health = container.aggregator.health_check()
        checks["aggregator"] = {
            "ok": job_health["healthy"],
            "last_run_time": job_health["last_run_time"],
            "warning": job_health.get("warning"),
        }
        overall_ok = overall_ok and job_health["healthy"]
    else:
        checks["aggregator"] = {"ok": True, "mode": "external_worker"}

    # 3) Configuration (reported, does not fail readiness)
    checks["configuration"] = _configuration_check()

    return {"overall_ok": overall_ok, "checks": checks, "timestamp": time.time()}


@router.get("/health/database")
async def database_health():
    """Detailed database pool health information."""
    return await db_health_check()
