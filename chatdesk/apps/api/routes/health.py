from __future__ import annotations

from fastapi import APIRouter
from pydantic import BaseModel

from chatdesk.services.telemetry import counters_snapshot, external_error_rate, p95_latency

router = APIRouter(tags=["health"])

_METRICS_WINDOW_S = 300


class HealthResponse(BaseModel):
    status: str


class MetricsResponse(BaseModel):
    window_s: int
    chat_p95_latency_ms: float | None
    llm_error_rate: dict[str, float | None]
    counters: dict[str, int]


@router.get("/health", response_model=HealthResponse)
async def health() -> HealthResponse:
    return HealthResponse(status="ok")


@router.get("/v1/metrics", response_model=MetricsResponse)
async def metrics() -> MetricsResponse:
    # In-process view only; each worker reports its own counters.
    return MetricsResponse(
        window_s=_METRICS_WINDOW_S,
        chat_p95_latency_ms=p95_latency(_METRICS_WINDOW_S, path_prefix="/v1/chat"),
        llm_error_rate={
            integration: external_error_rate(_METRICS_WINDOW_S, integration)
            for integration in ("llm.openai", "llm.vertex")
        },
        counters=counters_snapshot(),
    )
