"""
Event Streaming - Reconcile events for clusters.

Events are published on an in-memory pub/sub bus (consumed by the HTTP API
as Server-Sent Events) and, optionally, written to the platform cluster as
``events.k8s.io/v1`` Event objects attached to the Cluster.
"""

import asyncio
import json
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import AsyncIterator, Callable, Dict, Optional, Tuple

from errors import OperatorError
from kube.objects import KubeObject
from kube.registry import CLUSTER, EVENT
from kube.store import Store
from models import TargetCluster

logger = logging.getLogger(__name__)

REPORTING_CONTROLLER = "platform-service-gateway"


class EventType(Enum):
    """Kubernetes event types."""

    NORMAL = "Normal"
    WARNING = "Warning"


class Reason(Enum):
    """Reasons reported for cluster events."""

    GATEWAY_INSTALLED = "GatewayInstalled"
    GATEWAY_UNINSTALLED = "GatewayUninstalled"
    REMAINING_RESOURCES = "RemainingResources"
    RECONCILE_FAILED = "ReconcileFailed"


ACTION_INSTALL_GATEWAY = "InstallGateway"
ACTION_UNINSTALL_GATEWAY = "UninstallGateway"


@dataclass
class ClusterEvent:
    """Event emitted while reconciling a cluster."""

    event_type: EventType
    reason: Reason
    action: str
    message: str
    cluster_name: str
    cluster_namespace: str
    timestamp: str

    @classmethod
    def for_cluster(
        cls,
        cluster: TargetCluster,
        event_type: EventType,
        reason: Reason,
        action: str,
        message: str,
    ) -> "ClusterEvent":
        return cls(
            event_type=event_type,
            reason=reason,
            action=action,
            message=message,
            cluster_name=cluster.name,
            cluster_namespace=cluster.namespace,
            timestamp=datetime.now(timezone.utc).isoformat(),
        )

    @property
    def cluster(self) -> str:
        return f"{self.cluster_namespace}/{self.cluster_name}"

    def to_dict(self) -> Dict[str, str]:
        return {
            "event_type": self.event_type.value,
            "reason": self.reason.value,
            "action": self.action,
            "message": self.message,
            "cluster_name": self.cluster_name,
            "cluster_namespace": self.cluster_namespace,
            "timestamp": self.timestamp,
        }

    def to_sse(self) -> str:
        """
        Format the event as an SSE message.

        Returns:
            SSE-formatted string with event type and JSON data lines.
        """
        json_data = json.dumps(self.to_dict())
        return f"event: {self.reason.value}\ndata: {json_data}\n\n"


class EventSubscription:
    """
    Async iterator for consuming events from a subscription.

    Reads events from a queue, applying an optional filter function.
    A ``None`` sentinel value stops iteration.
    """

    def __init__(
        self,
        queue: asyncio.Queue,
        filter_fn: Optional[Callable[["ClusterEvent"], bool]] = None,
    ):
        self._queue = queue
        self._filter_fn = filter_fn

    def __aiter__(self) -> AsyncIterator["ClusterEvent"]:
        return self

    async def __anext__(self) -> "ClusterEvent":
        while True:
            event = await self._queue.get()

            if event is None:
                raise StopAsyncIteration

            if self._filter_fn is None or self._filter_fn(event):
                return event


class EventBus:
    """
    In-memory pub/sub event bus for cluster events.

    Maintains an ``asyncio.Queue`` per subscriber and publishes events
    non-blocking.  Full queues cause events to be silently dropped to
    prevent back-pressure on publishers.
    """

    def __init__(self, queue_size: int = 256):
        self._queue_size = queue_size
        self._subscribers: Dict[str, asyncio.Queue] = {}
        self._lock = asyncio.Lock()

    async def publish(self, event: ClusterEvent) -> None:
        """
        Publish an event to all subscribers (non-blocking).

        Events are dropped for subscribers whose queues are full.
        """
        async with self._lock:
            subscribers = list(self._subscribers.items())

        for subscriber_id, queue in subscribers:
            try:
                queue.put_nowait(event)
            except asyncio.QueueFull:
                logger.warning(
                    f"Dropped event for subscriber {subscriber_id}: queue full"
                )

    async def subscribe(
        self,
        filter_fn: Optional[Callable[[ClusterEvent], bool]] = None,
    ) -> Tuple[str, EventSubscription]:
        """
        Subscribe to events.

        Args:
            filter_fn: Optional predicate applied to each event.
                Only events for which it returns ``True`` are yielded.

        Returns:
            A tuple of ``(subscriber_id, EventSubscription)``.
        """
        subscriber_id = str(uuid.uuid4())
        queue: asyncio.Queue = asyncio.Queue(maxsize=self._queue_size)

        async with self._lock:
            self._subscribers[subscriber_id] = queue

        logger.info(f"New event subscriber: {subscriber_id}")
        return subscriber_id, EventSubscription(queue, filter_fn)

    async def unsubscribe(self, subscriber_id: str) -> None:
        """
        Remove a subscriber and clean up its queue.

        Sends a ``None`` sentinel so that the subscription's async
        iterator terminates gracefully.
        """
        async with self._lock:
            queue = self._subscribers.pop(subscriber_id, None)

        if queue is not None:
            try:
                queue.put_nowait(None)
            except asyncio.QueueFull:
                pass
            logger.info(f"Unsubscribed: {subscriber_id}")

    def subscriber_count(self) -> int:
        """Return the current number of subscribers."""
        return len(self._subscribers)


def kubernetes_event(event: ClusterEvent, cluster: TargetCluster) -> KubeObject:
    """Build an ``events.k8s.io/v1`` Event regarding the cluster."""
    name = f"{cluster.name}.{uuid.uuid4().hex[:16]}"
    obj = KubeObject(EVENT.api_version, EVENT.kind, name, cluster.namespace)
    regarding = {
        "apiVersion": CLUSTER.api_version,
        "kind": CLUSTER.kind,
        "name": cluster.name,
        "namespace": cluster.namespace,
    }
    if cluster.obj is not None and cluster.obj.metadata.get("uid"):
        regarding["uid"] = cluster.obj.metadata["uid"]
    event_time = datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")
    obj.data.update(
        {
            "eventTime": event_time,
            "reportingController": REPORTING_CONTROLLER,
            "reportingInstance": REPORTING_CONTROLLER,
            "action": event.action,
            "reason": event.reason.value,
            "type": event.event_type.value,
            "note": event.message[:1024],
            "regarding": regarding,
        }
    )
    return obj


class EventRecorder:
    """
    Records cluster events.

    Every event goes to the bus; if a store is given, it is also written to
    the platform cluster. Failing to write an event never fails a reconcile.
    """

    def __init__(self, event_bus: Optional[EventBus] = None, store: Optional[Store] = None):
        self.event_bus = event_bus
        self.store = store

    async def record(
        self,
        cluster: TargetCluster,
        event_type: EventType,
        reason: Reason,
        action: str,
        message: str,
    ) -> ClusterEvent:
        event = ClusterEvent.for_cluster(cluster, event_type, reason, action, message)
        logger.debug(f"Event {reason.value} for cluster {event.cluster}: {message}")

        if self.event_bus is not None:
            await self.event_bus.publish(event)

        if self.store is not None:
            try:
                await self.store.create(kubernetes_event(event, cluster))
            except OperatorError as e:
                logger.warning(
                    f"Failed to record event {reason.value} for cluster "
                    f"{event.cluster}: {e}"
                )
        return event

    async def normal(
        self, cluster: TargetCluster, reason: Reason, action: str, message: str
    ) -> ClusterEvent:
        return await self.record(cluster, EventType.NORMAL, reason, action, message)

    async def warning(
        self, cluster: TargetCluster, reason: Reason, action: str, message: str
    ) -> ClusterEvent:
        return await self.record(cluster, EventType.WARNING, reason, action, message)
