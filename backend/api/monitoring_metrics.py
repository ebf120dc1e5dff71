"""
Monitoring and metrics API endpoints
Provides the Prometheus scrape endpoint for lead ingestion metrics
"""
import logging
from fastapi import APIRouter, HTTPException, status, Response
from prometheus_client import CONTENT_TYPE_LATEST

from backend.services.system_metrics import get_system_metrics_service

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/monitoring", tags=["monitoring"])


@router.get("/metrics")
async def get_prometheus_metrics():
    """
    Get Prometheus metrics endpoint

    Returns metrics in Prometheus exposition format
    """
    try:
        return Response(
            content=get_system_metrics_service().get_prometheus_metrics(),
            media_type=CONTENT_TYPE_LATEST
        )

    except Exception as e:
        logger.error(f"Error getting Prometheus metrics: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to retrieve metrics"
        )
