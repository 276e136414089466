"""
Operator Controller - Main reconciliation loop.

Similar to Kubernetes controllers, continuously reconciles desired state with
actual state. Reconcile requests come from a periodic resync of all clusters,
from changes to the provider's GatewayServiceConfig, from requeues requested
by the reconciler, and from manual triggers.
"""

import asyncio
import logging
import random
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from errors import OperatorError
from events import EventRecorder, Reason
from kube.objects import KubeObject
from kube.registry import CLUSTER, GATEWAY_SERVICE_CONFIG
from models import Request, TargetCluster, new_config_object
from reconciler import ClusterReconciler, ReconcileResult
from workqueue import WorkQueue

logger = logging.getLogger(__name__)

ACTION_RECONCILE = "Reconcile"


@dataclass
class ControllerConfig:
    """Configuration for the controller."""

    resync_interval: int = 300
    config_watch_timeout: int = 300
    max_concurrent_reconciles: int = 5

    # Exponential backoff configuration
    backoff_base_delay: int = 5  # base delay in seconds
    backoff_max_delay: int = 300  # max delay in seconds
    backoff_jitter_factor: float = 0.1  # ±10% jitter


def backoff_delay(
    failures: int,
    base_delay: float,
    max_delay: float,
    jitter_factor: float,
    rand=random.random,
) -> float:
    """
    Delay before retrying after ``failures`` previous consecutive failures.

    Exponential in the failure count (exponent capped at 10), capped at
    ``max_delay``, with ±``jitter_factor`` jitter.
    """
    delay = min(base_delay * 2 ** min(failures, 10), max_delay)
    return delay * (1 + (rand() * 2 - 1) * jitter_factor)


@dataclass
class ClusterStatus:
    """Last reconcile outcome for a cluster."""

    name: str
    namespace: str
    phase: str = "Pending"
    message: str = ""
    last_reconcile_time: Optional[str] = None
    duration_seconds: Optional[float] = None
    requeue_after: Optional[float] = None
    failures: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "namespace": self.namespace,
            "phase": self.phase,
            "message": self.message,
            "last_reconcile_time": self.last_reconcile_time,
            "duration_seconds": self.duration_seconds,
            "requeue_after": self.requeue_after,
            "failures": self.failures,
        }


class Controller:
    """
    Main controller that implements the reconciliation loop.

    Runs ``max_concurrent_reconciles`` workers pulling cluster requests from a
    coalescing work queue, so a cluster is never reconciled by two workers at
    once.
    """

    def __init__(
        self,
        reconciler: ClusterReconciler,
        config: Optional[ControllerConfig] = None,
        recorder: Optional[EventRecorder] = None,
    ):
        self.reconciler = reconciler
        self.store = reconciler.platform_store
        self.config = config or ControllerConfig()
        self.recorder = recorder
        self.queue = WorkQueue()
        self.running = False

        self._statuses: Dict[Request, ClusterStatus] = {}
        self._config_version: Optional[str] = None
        self._tasks: List[asyncio.Task] = []

    async def start(self):
        """Start the workers, the resync loop and the config watch loop."""
        logger.info("Starting Operator Controller")
        self.running = True

        self._tasks = [
            asyncio.create_task(self._worker(i))
            for i in range(self.config.max_concurrent_reconciles)
        ]
        self._tasks.append(asyncio.create_task(self._resync_loop()))
        self._tasks.append(asyncio.create_task(self._config_loop()))

        try:
            await asyncio.gather(*self._tasks)
        except asyncio.CancelledError:
            logger.info("Controller tasks cancelled")
        except Exception as e:
            logger.error(f"Controller error: {e}")
            raise

    async def stop(self):
        """Stop the controller gracefully."""
        logger.info("Stopping Operator Controller")
        self.running = False
        self.queue.shutdown()

        for task in self._tasks:
            if not task.done():
                task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()

    async def _worker(self, worker_id: int):
        """Process requests from the work queue until stopped."""
        logger.debug(f"Worker {worker_id} started")
        while self.running:
            request = await self.queue.get()
            try:
                await self.process(request)
            finally:
                self.queue.done(request)

    async def _resync_loop(self):
        """Periodically enqueue every cluster."""
        while self.running:
            try:
                await self.resync()
            except Exception as e:
                logger.error(f"Error in resync loop: {e}", exc_info=True)
            await asyncio.sleep(self.config.resync_interval)

    async def _config_loop(self):
        """Watch the GatewayServiceConfig and fan out changes."""
        while self.running:
            try:
                await self.watch_config()
            except Exception as e:
                logger.error(f"Error in config watch loop: {e}", exc_info=True)
                await asyncio.sleep(self.config.backoff_base_delay)

    async def resync(self) -> List[Request]:
        """Enqueue a request for every cluster on the platform."""
        objs = await self.store.list(CLUSTER.api_version, CLUSTER.kind)
        requests = [Request(obj.name, obj.namespace) for obj in objs]
        for request in requests:
            self.queue.add(request)
        if requests:
            logger.info(f"Resync enqueued {len(requests)} clusters")
        return requests

    async def watch_config(self) -> None:
        """Fan out GatewayServiceConfig events until the watch times out."""
        stream = self.store.watch(
            GATEWAY_SERVICE_CONFIG.api_version,
            GATEWAY_SERVICE_CONFIG.kind,
            name=self.reconciler.provider_name,
            timeout_seconds=self.config.config_watch_timeout,
        )
        async for event_type, obj in stream:
            await self.handle_config_event(event_type, obj)

    async def handle_config_event(self, event_type: str, obj: KubeObject) -> List[Request]:
        """
        Fan out a GatewayServiceConfig change to the affected clusters.

        A deleted configuration counts as a change to an empty one, so
        clusters still carrying the finalizer get torn down. Events for a
        resourceVersion already handled (a re-established watch replays the
        current object) are ignored.
        """
        if event_type == "DELETED":
            version = ""
            obj = new_config_object(self.reconciler.provider_name, {})
        else:
            version = obj.resource_version
        if version == self._config_version:
            return []
        self._config_version = version

        logger.info(f"GatewayServiceConfig {obj.name} {event_type.lower()}")
        requests = await self.reconciler.map_config_to_requests(obj)
        for request in requests:
            self.queue.add(request)
        return requests

    async def process(self, request: Request) -> Optional[ReconcileResult]:
        """
        Reconcile one request and schedule its next run.

        Successful and retryable outcomes are requeued after the delay the
        reconciler asked for; errors are requeued with exponential backoff.
        """
        status = self._statuses.setdefault(
            request, ClusterStatus(name=request.name, namespace=request.namespace)
        )
        start_time = time.monotonic()
        status.phase = "Reconciling"

        try:
            result = await self.reconciler.reconcile(request)
        except Exception as e:
            delay = backoff_delay(
                status.failures,
                self.config.backoff_base_delay,
                self.config.backoff_max_delay,
                self.config.backoff_jitter_factor,
            )
            status.failures += 1
            if isinstance(e, OperatorError):
                logger.error(f"Failed to reconcile cluster {request}: {e}")
            else:
                logger.error(f"Error reconciling cluster {request}: {e}", exc_info=True)
            self._finish(status, start_time, "Failed", str(e), delay)
            self.queue.add_after(request, delay)
            await self._record_failure(request, str(e))
            return None

        status.failures = 0
        if result.forget:
            self._statuses.pop(request, None)
        else:
            phase = "Ready" if result.success else "Requeued"
            self._finish(status, start_time, phase, result.message, result.requeue_after)
        if result.requeue_after:
            self.queue.add_after(request, result.requeue_after)
        return result

    def _finish(
        self,
        status: ClusterStatus,
        start_time: float,
        phase: str,
        message: str,
        requeue_after: Optional[float],
    ) -> None:
        status.phase = phase
        status.message = message
        status.requeue_after = requeue_after
        status.duration_seconds = time.monotonic() - start_time
        status.last_reconcile_time = datetime.now(timezone.utc).isoformat()

    async def _record_failure(self, request: Request, message: str) -> None:
        if self.recorder is None:
            return
        cluster = TargetCluster(name=request.name, namespace=request.namespace)
        await self.recorder.warning(
            cluster, Reason.RECONCILE_FAILED, ACTION_RECONCILE, message
        )

    def trigger_reconciliation(self, namespace: str, name: str) -> Request:
        """Manually trigger reconciliation for a specific cluster."""
        request = Request(name, namespace)
        logger.info(f"Manually triggering reconciliation for cluster {request}")
        self.queue.add(request)
        return request

    def get_status(self, namespace: str, name: str) -> Optional[ClusterStatus]:
        return self._statuses.get(Request(name, namespace))

    def list_statuses(self) -> List[ClusterStatus]:
        return [
            self._statuses[request]
            for request in sorted(
                self._statuses, key=lambda r: (r.namespace, r.name)
            )
        ]
