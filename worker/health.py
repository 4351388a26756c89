"""Health and status HTTP surface of a worker."""

import time
from typing import Dict, List, Optional

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from common.logging_config import get_logger
from worker.runtime import WorkerRuntime

logger = get_logger(__name__)


class HealthResponse(BaseModel):
    """Response model for the health check."""
    status: str
    worker_id: str
    registered: bool
    last_heartbeat_ok_at: Optional[float] = None


class StatusResponse(BaseModel):
    """Response model for the worker status snapshot."""
    worker_id: str
    healthy: bool
    registered: bool
    role: str
    is_leader: bool
    plan_version: int
    owned_shards: List[str]
    failed_shards: Dict[str, str]
    records_processed: int
    last_heartbeat_ok_at: Optional[float] = None
    stopping: bool


def create_health_app(runtime: WorkerRuntime) -> FastAPI:
    """
    Build the FastAPI app exposing /health and /status for one runtime.
    """
    app = FastAPI(
        title="Shard Coordinator Worker",
        description="Health and status of a shard coordination worker",
        version="1.0.0"
    )

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        start_time = time.time()
        response = await call_next(request)
        duration = time.time() - start_time
        logger.debug(
            f"Request completed: {request.method} {request.url.path} "
            f"status={response.status_code} duration={duration:.3f}s"
        )
        return response

    @app.get("/health", response_model=HealthResponse)
    async def health_check():
        """
        Returns 200 while the worker is registered and heartbeating, 503 otherwise.
        """
        healthy = runtime.is_healthy()
        body = HealthResponse(
            status="healthy" if healthy else "unhealthy",
            worker_id=runtime.worker_id,
            registered=runtime.state.registered,
            last_heartbeat_ok_at=runtime.state.last_heartbeat_ok_at
        )
        if not healthy:
            logger.warning(f"Health check failing [worker_id={runtime.worker_id}]")
        return JSONResponse(
            status_code=status.HTTP_200_OK if healthy else status.HTTP_503_SERVICE_UNAVAILABLE,
            content=body.model_dump()
        )

    @app.get("/status", response_model=StatusResponse)
    async def status_snapshot():
        return StatusResponse(**runtime.status())

    return app
