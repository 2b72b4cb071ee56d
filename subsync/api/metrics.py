from fastapi import APIRouter, Response

from subsync.core.metrics import METRICS


router = APIRouter(tags=["metrics"])


@router.get("/metrics")
def metrics_endpoint():
    return Response(content=METRICS.export_prometheus(), media_type="text/plain")
