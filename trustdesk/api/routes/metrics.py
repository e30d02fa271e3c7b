from fastapi import APIRouter, Response

from trustdesk.metrics import PrometheusExporter, metrics_registry

router = APIRouter(tags=["metrics"])

exporter = PrometheusExporter(metrics_registry)


@router.get("/metrics", include_in_schema=False)
async def metrics() -> Response:
    return Response(content=exporter.build_payload(), media_type=exporter.content_type)
