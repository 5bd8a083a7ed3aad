"""Operations endpoints providing health checks and metrics."""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Response, status
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from redis.exceptions import RedisError

from trustlayer.infra.postgres import get_pool
from trustlayer.infra.redis import redis_client
from trustlayer.settings import settings

router = APIRouter(prefix="", tags=["ops"])


async def require_metrics_access() -> None:
	if not settings.obs_metrics_public:
		raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="metrics_private")


@router.get("/health/live")
async def health_live() -> dict[str, str]:
	return {"status": "ok", "service": settings.service_name}


@router.get("/health/ready")
async def health_ready() -> Response:
	checks: dict[str, str] = {}
	try:
		pool = await get_pool()
		async with pool.acquire() as conn:
			await conn.execute("SELECT 1")
		checks["postgres"] = "ok"
	except Exception:
		checks["postgres"] = "error"
	try:
		await redis_client.ping()
		checks["redis"] = "ok"
	except (RedisError, OSError):
		checks["redis"] = "error"
	ready = all(value == "ok" for value in checks.values())
	return JSONResponse(
		content={"status": "ok" if ready else "degraded", "checks": checks},
		status_code=status.HTTP_200_OK if ready else status.HTTP_503_SERVICE_UNAVAILABLE,
	)


@router.get("/metrics")
async def prometheus_metrics(_: None = Depends(require_metrics_access)) -> Response:
	payload = generate_latest()
	return Response(content=payload, media_type=CONTENT_TYPE_LATEST)
