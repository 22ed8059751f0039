"""Operations endpoints providing health checks and metrics."""

from __future__ import annotations

from fastapi import APIRouter, Response, status
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from dancefeedback.infra.postgres import get_pool

router = APIRouter(prefix="", tags=["ops"])


@router.get("/health/live")
async def liveness() -> dict[str, str]:
	return {"status": "ok"}


@router.get("/health/ready")
async def readiness() -> Response:
	try:
		pool = await get_pool()
		async with pool.acquire() as conn:
			await conn.execute("SELECT 1")
	except Exception:  # noqa: BLE001 - any failure means not ready
		return Response(status_code=status.HTTP_503_SERVICE_UNAVAILABLE)
	return JSONResponse({"status": "ok"})


@router.get("/metrics")
async def prometheus_metrics() -> Response:
	payload = generate_latest()
	return Response(content=payload, media_type=CONTENT_TYPE_LATEST)
