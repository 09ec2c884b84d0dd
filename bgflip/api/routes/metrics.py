"""
Metrics Endpoint

GET /api/metrics - Prometheus metrics endpoint
"""

from fastapi import APIRouter, Response

from bgflip.core.metrics import get_metrics, get_metrics_content_type

router = APIRouter()


@router.get("/metrics")
async def metrics():
    """
    Prometheus metrics endpoint.

    Exposes:
    - pipeline_latency_seconds (per stage)
    - pipeline_total_duration_seconds
    - clipdrop_api_calls_total
    - token_exchanges_total
    - storage_operations_total
    - images_processed_total
    - http_requests_total
    """
    return Response(
        content=get_metrics(),
        media_type=get_metrics_content_type()
    )
