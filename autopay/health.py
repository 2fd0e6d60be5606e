"""
Health and metrics endpoints for the relayer worker.

Served by uvicorn in a daemon thread when monitoring.health_port is set
(see autopay.entrypoints.relayer).
"""
import os
from typing import Optional, TYPE_CHECKING

from fastapi import FastAPI
from fastapi.responses import JSONResponse

from autopay.monitoring.metrics import MetricsCollector

if TYPE_CHECKING:
    from autopay.execution.executor import OptimisticExecutor


def create_health_app(metrics: MetricsCollector, executor: Optional["OptimisticExecutor"] = None) -> FastAPI:
    """
    Build the health app.

    GET /health       status, running flag, uptime
    GET /api/metrics  metrics snapshot
    """
    app = FastAPI(title="Autopay Relayer Health")

    @app.get("/")
    async def root():
        return {"status": "ok", "service": "autopay-relayer"}

    @app.get("/health")
    async def health():
        running = bool(executor is not None and executor.running)
        snapshot = metrics.snapshot()
        return JSONResponse(
            content={
                "status": "healthy" if running else "idle",
                "running": running,
                "read_only": executor.read_only if executor is not None else None,
                "uptime_ms": snapshot["uptime_ms"],
                "environment": os.getenv("ENVIRONMENT", "unknown"),
            },
            status_code=200,
        )

    @app.get("/api/metrics")
    async def api_metrics():
        content = {"source": "executor", "metrics": metrics.snapshot()}
        if executor is not None:
            content["executor"] = {
                "cycles": executor.cycle_count,
                "pending_retries": len(executor.retry_queue),
            }
        return content

    return app
