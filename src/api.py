"""
HTTP API - health, cluster status, manual reconcile and event streaming.

A small FastAPI app served by uvicorn next to the controller.
"""

import asyncio
import logging
import re
from typing import List, Optional

import uvicorn
from fastapi import FastAPI, HTTPException
from fastapi.responses import StreamingResponse
from pydantic import BaseModel

from controller import Controller
from events import ClusterEvent, EventBus

logger = logging.getLogger(__name__)

# Kubernetes-style name pattern: lowercase alphanumeric, '-' and '.', max 253 chars
NAME_PATTERN = re.compile(r"^[a-z0-9]([a-z0-9.-]{0,251}[a-z0-9])?$")


def validate_name_format(value: str, field_name: str) -> str:
    """Validate that a name follows Kubernetes naming conventions."""
    if not NAME_PATTERN.match(value):
        raise HTTPException(
            status_code=422,
            detail=(
                f"{field_name} must consist of lowercase alphanumeric characters, "
                "'-' or '.', and must start and end with an alphanumeric character"
            ),
        )
    return value


class ClusterStatusResponse(BaseModel):
    """Last reconcile outcome of a cluster."""

    name: str
    namespace: str
    phase: str
    message: str = ""
    last_reconcile_time: Optional[str] = None
    duration_seconds: Optional[float] = None
    requeue_after: Optional[float] = None
    failures: int = 0


class ReconcileTriggerResponse(BaseModel):
    message: str
    namespace: str
    name: str


class APIServer:
    """
    HTTP API for the operator.

    Routes:
    - Liveness: GET /healthz
    - Readiness: GET /readyz
    - Cluster status: GET /api/v1/clusters
    - Reconcile trigger: POST /api/v1/clusters/{namespace}/{name}/reconcile
    - Event stream: GET /api/v1/events
    """

    def __init__(
        self,
        controller: Controller,
        event_bus: Optional[EventBus] = None,
        host: str = "0.0.0.0",
        port: int = 8000,
        log_level: str = "info",
    ):
        self.controller = controller
        self.event_bus = event_bus
        self.host = host
        self.port = port
        self.log_level = log_level.lower()
        self.server: Optional[uvicorn.Server] = None

        self.app = FastAPI(
            title="Gateway Platform Service API",
            description="Status and control of the Envoy Gateway operator",
            version="1.0.0",
        )
        self._setup_routes()

    def _setup_routes(self) -> None:
        app = self.app

        @app.get("/healthz")
        async def healthz():
            """Liveness endpoint."""
            return {"status": "ok", "service": "platform-service-gateway"}

        @app.get("/readyz")
        async def readyz():
            """Readiness endpoint."""
            if not self.controller.running:
                raise HTTPException(status_code=503, detail="Controller not running")
            return {"status": "ready"}

        @app.get("/api/v1/clusters", response_model=List[ClusterStatusResponse])
        async def list_clusters():
            """Last reconcile outcome per cluster."""
            return [status.to_dict() for status in self.controller.list_statuses()]

        @app.get(
            "/api/v1/clusters/{namespace}/{name}",
            response_model=ClusterStatusResponse,
        )
        async def get_cluster(namespace: str, name: str):
            """Last reconcile outcome of one cluster."""
            status = self.controller.get_status(namespace, name)
            if status is None:
                raise HTTPException(status_code=404, detail="Cluster not reconciled yet")
            return status.to_dict()

        @app.post(
            "/api/v1/clusters/{namespace}/{name}/reconcile",
            response_model=ReconcileTriggerResponse,
            status_code=202,
        )
        async def trigger_reconciliation(namespace: str, name: str):
            """Manually trigger reconciliation for a cluster."""
            validate_name_format(namespace, "namespace")
            validate_name_format(name, "name")
            if self.controller.queue.shutting_down:
                raise HTTPException(status_code=503, detail="Controller is stopping")

            self.controller.trigger_reconciliation(namespace, name)
            return {
                "message": "Reconciliation triggered",
                "namespace": namespace,
                "name": name,
            }

        @app.get("/api/v1/events")
        async def stream_events(cluster: Optional[str] = None):
            """SSE stream of cluster events.

            Optionally filter by cluster as ``namespace/name``.
            """
            if not self.event_bus:
                raise HTTPException(
                    status_code=503,
                    detail="Event streaming not available",
                )

            if cluster:
                wanted = cluster

                def filter_fn(event: ClusterEvent) -> bool:
                    return event.cluster == wanted

            else:
                filter_fn = None

            subscriber_id, subscription = await self.event_bus.subscribe(filter_fn)

            async def event_generator():
                try:
                    async for event in subscription:
                        yield event.to_sse()
                except asyncio.CancelledError:
                    pass
                finally:
                    await self.event_bus.unsubscribe(subscriber_id)

            return StreamingResponse(
                event_generator(),
                media_type="text/event-stream",
                headers={
                    "Cache-Control": "no-cache",
                    "X-Accel-Buffering": "no",
                },
            )

    async def start(self) -> None:
        """Start the HTTP server."""
        config = uvicorn.Config(
            self.app,
            host=self.host,
            port=self.port,
            log_level=self.log_level,
        )
        self.server = uvicorn.Server(config)

        logger.info(f"Starting HTTP API on {self.host}:{self.port}")
        await self.server.serve()

    async def stop(self) -> None:
        """Stop the HTTP server gracefully."""
        logger.info("Stopping HTTP API")
        if self.server:
            self.server.should_exit = True
