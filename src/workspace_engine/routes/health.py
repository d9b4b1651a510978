"""Health check and metrics endpoints."""

from fastapi import APIRouter, Response

from workspace_engine import metrics

router = APIRouter(tags=["health"])


@router.get("/health")
async def health_check() -> dict[str, str]:
    """Health check endpoint."""
    return {"status": "healthy", "service": "workspace-engine"}


@router.get("/ready")
async def readiness_check() -> dict[str, str]:
    """Readiness check endpoint."""
    return {"status": "ready", "service": "workspace-engine"}


@router.get("/metrics", include_in_schema=False)
async def prometheus_metrics() -> Response:
    """Prometheus scrape endpoint."""
    body, content_type = metrics.render()
    return Response(content=body, media_type=content_type)
