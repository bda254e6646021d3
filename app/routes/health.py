# app/routes/health.py
"""
Liveness and readiness endpoints.
"""

import time

from fastapi import APIRouter
from fastapi.responses import JSONResponse

from app.config import settings
from app.db.pool import db_health_check
from app.infrastructure.observability.logging import log_health_check
from app.services.infrastructure.encryption_service import validate_encryption_config
from app.services.infrastructure.redis_client import fast_redis

router = APIRouter()


@router.get("/healthz")
async def healthz():
    """Basic health check - always returns 200 if app is running."""
    return {"status": "ok", "service": "scheduler"}


@router.get("/readyz")
async def readyz():
    """Readiness: Redis, the database pool and token encryption must all work."""
    checks = {}

    # 1) Redis
    t0 = time.perf_counter()
    redis_ok = await fast_redis.ping()
    checks["redis"] = {"ok": redis_ok, "latency_ms": round((time.perf_counter() - t0) * 1000, 1)}
    log_health_check("redis", redis_ok, checks["redis"]["latency_ms"])

    # 2) Database pool
    t0 = time.perf_counter()
    db_health = await db_health_check()
    db_ok = bool(db_health.get("healthy"))
    checks["database"] = {
        "ok": db_ok,
        "latency_ms": round((time.perf_counter() - t0) * 1000, 1),
    }
    if db_ok:
        checks["database"]["pool_size"] = db_health.get("pool_size", 0)
        checks["database"]["pool_available"] = db_health.get("pool_available", 0)
    else:
        checks["database"]["error"] = db_health.get("error", "Database unhealthy")
    log_health_check(
        "database", db_ok, checks["database"]["latency_ms"], checks["database"].get("error")
    )

    # 3) Configuration
    config_issues = []
    if not validate_encryption_config():
        config_issues.append("ENCRYPTION_KEY missing or invalid")
    if not settings.GOOGLE_CLIENT_ID or not settings.GOOGLE_CLIENT_SECRET:
        config_issues.append("Google OAuth client not configured")
    checks["configuration"] = {
        "ok": not config_issues,
        "issues": config_issues or None,
        "environment": settings.environment,
    }

    overall_ok = all(check["ok"] for check in checks.values())
    return JSONResponse(
        status_code=200 if overall_ok else 503,
        content={"overall_ok": overall_ok, "checks": checks, "timestamp": time.time()},
    )
