from fastapi import APIRouter
from fastapi.responses import PlainTextResponse

from helpdesk.metrics import PrometheusExporter, metrics_registry

router = APIRouter(tags=["observability"])


@router.get("/metrics", response_class=PlainTextResponse, summary="Prometheus metrics")
async def export_metrics() -> str:
    return PrometheusExporter(metrics_registry).build_payload()
