from fastapi import APIRouter, Depends, Request, Response

from blockdesk.dependencies.auth import CurrentActor, role_required
from blockdesk.metrics import metrics_registry
from blockdesk.metrics.exporters import PrometheusExporter
from blockdesk.tickets.policy import Role

router = APIRouter(tags=["health"])


@router.get("/ping", summary="Public health probe")
async def ping() -> dict[str, str]:
    return {"status": "ok"}


@router.get(
    "/ping/secure",
    summary="Role protected probe",
    dependencies=[Depends(role_required(Role.AGENT, Role.MANAGER))],
)
async def secure_ping(actor: CurrentActor) -> dict[str, str]:
    return {"status": "ok", "address": actor.address, "role": actor.role}


@router.get("/ping/ledger", summary="Ledger connectivity probe")
async def ledger_ping(request: Request) -> dict[str, str]:
    pool = getattr(request.app.state, "postgres_pool", None)
    if pool is None:
        return {"status": "ok", "backend": "memory"}
    ok = await pool.test_connection()
    return {"status": "ok" if ok else "unavailable", "backend": "postgres"}


@router.get("/metrics", summary="Prometheus metrics")
async def metrics(request: Request) -> Response:
    registry = getattr(request.app.state, "metrics_registry", None) or metrics_registry
    exporter = PrometheusExporter(registry)
    return Response(content=exporter.build_payload(), media_type=exporter.content_type)
