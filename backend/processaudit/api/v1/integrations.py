from dataclasses import asdict
from datetime import UTC, datetime

from fastapi import APIRouter, Depends, Query, Request

from processaudit.api.deps import IntegrationRuntime, get_runtime
from processaudit.api.response import envelope
from processaudit.integrations.usage import Provider


router = APIRouter(prefix="/integrations", tags=["integrations"])


@router.get("/health")
def integrations_health(request: Request, runtime: IntegrationRuntime = Depends(get_runtime)) -> dict:
    circuits = [asdict(snapshot) for snapshot in runtime.gateway.health()]
    degraded = any(circuit["state"] != "closed" for circuit in circuits)
    return envelope(
        request,
        {
            "status": "degraded" if degraded else "ok",
            "generated_at": datetime.now(UTC).isoformat(),
            "circuits": circuits,
        },
    )


@router.get("/usage/{organization_id}")
def integration_usage(
    request: Request,
    organization_id: str,
    provider: Provider | None = Query(default=None),
    limit: float | None = Query(default=None, gt=0),
    runtime: IntegrationRuntime = Depends(get_runtime),
) -> dict:
    tracker = runtime.gateway.tracker
    stats = tracker.get_usage_stats(organization_id, provider)
    payload = asdict(stats)
    if provider is not None and limit is not None:
        payload["threshold"] = asdict(tracker.check_threshold(organization_id, provider, limit))
    return envelope(request, payload)
