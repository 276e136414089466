"""
Cluster Reconciler - drives one Cluster towards its desired gateway state.

A reconcile loads the Cluster and the provider's GatewayServiceConfig,
decides whether the cluster is in scope, and then either converges the
gateway (finalizer first, then control plane, then data plane) or tears it
down (data plane, control plane, access, finalizer last).
"""

import logging
from dataclasses import dataclass
from typing import List, Optional

from access import AccessBroker
from errors import ErrorKind, OperatorError
from events import (
    ACTION_INSTALL_GATEWAY,
    ACTION_UNINSTALL_GATEWAY,
    EventRecorder,
    Reason,
)
from gateway.manager import GatewayManager
from kube.objects import KubeObject
from kube.registry import CLUSTER, GATEWAY_SERVICE_CONFIG
from kube.store import Store
from models import (
    GATEWAY_FINALIZER,
    GATEWAY_OPERATION_ANNOTATION,
    OPERATION_ANNOTATION,
    OPERATION_IGNORE,
    OPERATION_RECONCILE,
    GatewayServiceConfig,
    Request,
    TargetCluster,
)
from selector import in_scope, should_reconcile
from validation import validate_config_spec

logger = logging.getLogger(__name__)

# Requeue horizon after a successful converge
DEFAULT_RESYNC_AFTER = 3600


@dataclass
class ReconcileResult:
    """Result from a reconcile() call."""

    success: bool = False
    message: str = ""
    requeue_after: Optional[float] = None
    # the cluster is gone or out of scope; drop any status kept for it
    forget: bool = False


class ClusterReconciler:
    """
    Reconciler for ``Cluster`` objects on the platform cluster.

    Args:
        platform_store: Store for the platform cluster
        broker: Access broker handing out target cluster stores
        provider_name: Name of the GatewayServiceConfig to read
        provider_namespace: Namespace holding the secrets the config refers to
        recorder: Optional event recorder
        resync_after: Requeue delay after a successful converge
    """

    def __init__(
        self,
        platform_store: Store,
        broker: AccessBroker,
        provider_name: str,
        provider_namespace: str,
        recorder: Optional[EventRecorder] = None,
        resync_after: float = DEFAULT_RESYNC_AFTER,
    ):
        self.platform_store = platform_store
        self.broker = broker
        self.provider_name = provider_name
        self.provider_namespace = provider_namespace
        self.recorder = recorder or EventRecorder()
        self.resync_after = resync_after

    async def reconcile(self, request: Request) -> ReconcileResult:
        """
        Reconcile one cluster.

        Retryable errors come back as a result with ``requeue_after`` set.

        Raises:
            OperatorError: For anything that is not retryable.
        """
        logger.info(f"Reconciling cluster {request}")
        try:
            return await self._reconcile(request)
        except OperatorError as e:
            if not e.retryable:
                raise
            logger.info(
                f"Handling retryable error for cluster {request}: {e} "
                f"(requeue after {e.requeue_after}s)"
            )
            return ReconcileResult(
                success=False, message=str(e), requeue_after=e.requeue_after
            )

    async def _reconcile(self, request: Request) -> ReconcileResult:
        try:
            obj = await self.platform_store.get(
                CLUSTER.api_version, CLUSTER.kind, request.name, request.namespace
            )
        except OperatorError as e:
            if e.kind != ErrorKind.NOT_FOUND:
                raise
            logger.info(f"Cluster {request} not found")
            return ReconcileResult(success=True, message="Cluster not found", forget=True)

        operation, annotation = _operation(obj)
        if operation == OPERATION_IGNORE:
            logger.info(f"Ignoring cluster {request} due to {annotation} annotation")
            return ReconcileResult(success=True, message="Ignored")
        if operation == OPERATION_RECONCILE:
            logger.debug(f"Removing {annotation} annotation from cluster {request}")
            obj.remove_annotation(annotation)
            obj = await self.platform_store.update(obj)

        cluster = TargetCluster.from_object(obj)
        config = await self.load_config()
        if not should_reconcile(config, cluster):
            logger.debug(
                f"Skipping cluster {request}: no gateway finalizer and no "
                "matching cluster term"
            )
            return ReconcileResult(success=True, message="Not in scope", forget=True)

        access = await self.broker.acquire(cluster)
        if not access.ready:
            logger.info(f"Access to cluster {request} not available yet")
            return ReconcileResult(
                success=False,
                message="Cluster access not yet available",
                requeue_after=access.requeue_after,
            )

        manager = GatewayManager(
            cluster=cluster,
            config=config,
            platform_store=self.platform_store,
            cluster_store=access.store,
            kubeconfig_secret=access.kubeconfig_secret,
            provider_namespace=self.provider_namespace,
        )

        if cluster.is_deleting or not in_scope(config, cluster):
            return await self._teardown(obj, cluster, manager)
        return await self._converge(obj, cluster, manager)

    async def _teardown(
        self, obj: KubeObject, cluster: TargetCluster, manager: GatewayManager
    ) -> ReconcileResult:
        for step in (manager.cleanup, manager.uninstall):
            try:
                await step()
            except OperatorError as e:
                if e.kind == ErrorKind.REMAINING_RESOURCES:
                    await self.recorder.normal(
                        cluster,
                        Reason.REMAINING_RESOURCES,
                        ACTION_UNINSTALL_GATEWAY,
                        str(e),
                    )
                raise

        requeue_after = await self.broker.release(cluster)
        if requeue_after:
            logger.info(f"Waiting for access to cluster {cluster.request} to be released")
            return ReconcileResult(
                success=False,
                message="Cluster access is being released",
                requeue_after=requeue_after,
            )

        if obj.remove_finalizer(GATEWAY_FINALIZER):
            await self.platform_store.update(obj)

        await self.recorder.normal(
            cluster,
            Reason.GATEWAY_UNINSTALLED,
            ACTION_UNINSTALL_GATEWAY,
            "Gateway uninstalled successfully",
        )
        logger.info(f"Gateway uninstalled from cluster {cluster.request}")
        return ReconcileResult(success=True, message="Gateway uninstalled")

    async def _converge(
        self, obj: KubeObject, cluster: TargetCluster, manager: GatewayManager
    ) -> ReconcileResult:
        if obj.add_finalizer(GATEWAY_FINALIZER):
            await self.platform_store.update(obj)

        await manager.install_or_update()
        await manager.configure()

        await self.recorder.normal(
            cluster,
            Reason.GATEWAY_INSTALLED,
            ACTION_INSTALL_GATEWAY,
            "Gateway installed successfully",
        )
        logger.info(f"Gateway installed on cluster {cluster.request}")
        return ReconcileResult(
            success=True,
            message="Gateway installed",
            requeue_after=self.resync_after,
        )

    async def load_config(self) -> GatewayServiceConfig:
        """
        Read the provider's configuration.

        A missing configuration reads as one with no cluster terms.

        Raises:
            OperatorError: FATAL if the configuration fails validation.
        """
        try:
            obj = await self.platform_store.get(
                GATEWAY_SERVICE_CONFIG.api_version,
                GATEWAY_SERVICE_CONFIG.kind,
                self.provider_name,
            )
        except OperatorError as e:
            if e.kind != ErrorKind.NOT_FOUND:
                raise
            logger.debug(f"GatewayServiceConfig '{self.provider_name}' not found")
            return GatewayServiceConfig.empty(self.provider_name)

        is_valid, error = validate_config_spec(obj.get("spec", default={}))
        if not is_valid:
            raise OperatorError.fatal(
                f"invalid GatewayServiceConfig '{self.provider_name}': {error}"
            )
        return GatewayServiceConfig.from_object(obj)

    async def map_config_to_requests(self, config_obj: KubeObject) -> List[Request]:
        """
        Map a changed GatewayServiceConfig to the clusters it affects.

        Returns one request per cluster that should be reconciled under the
        new configuration, including clusters that still carry the finalizer.
        An empty spec stands for a deleted configuration. An invalid one maps
        to no requests; reconciling it would only fail.
        """
        if config_obj.kind != GATEWAY_SERVICE_CONFIG.kind:
            return []
        if config_obj.name != self.provider_name:
            return []
        spec = config_obj.get("spec", default={})
        if spec:
            is_valid, error = validate_config_spec(spec)
            if not is_valid:
                logger.error(
                    f"Ignoring invalid GatewayServiceConfig '{config_obj.name}': {error}"
                )
                return []

        logger.info(
            f"GatewayServiceConfig '{config_obj.name}' changed, "
            "re-enqueueing matching clusters"
        )
        config = GatewayServiceConfig.from_object(config_obj)
        try:
            objs = await self.platform_store.list(CLUSTER.api_version, CLUSTER.kind)
        except OperatorError as e:
            logger.error(f"Failed to list clusters: {e}")
            return []

        requests = []
        for obj in objs:
            cluster = TargetCluster.from_object(obj)
            if should_reconcile(config, cluster):
                requests.append(cluster.request)
        return requests


def _operation(obj: KubeObject):
    """Return ``(value, annotation)`` of the operation annotation in effect."""
    annotations = obj.annotations
    for annotation in (GATEWAY_OPERATION_ANNOTATION, OPERATION_ANNOTATION):
        if annotation in annotations:
            return annotations[annotation], annotation
    return None, None
