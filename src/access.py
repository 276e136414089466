"""
Cluster Access - obtain credentials and a store client for a target cluster.

The operator never holds long-lived credentials for target clusters. It asks
an access broker, which either hands out a store client plus the name of the
kubeconfig secret (for Flux to use), or says access is not ready yet.
"""

import base64
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, Optional, Tuple

import yaml
from kubernetes_asyncio.config import ConfigException

from apply import create_or_update
from errors import ErrorKind, OperatorError
from kube.client import KubernetesStore
from kube.objects import KubeObject
from kube.registry import ACCESS_REQUEST, SECRET, KindRegistry
from kube.store import Store
from models import OPENMCP_GROUP, Request, TargetCluster

logger = logging.getLogger(__name__)

ACCESS_GRANTED_PHASE = "Granted"
KUBECONFIG_KEY = "kubeconfig"
MANAGED_BY_LABEL = f"{OPENMCP_GROUP}/managed-by"
MANAGED_PURPOSE_LABEL = f"{OPENMCP_GROUP}/managed-purpose"

StoreFactory = Callable[[bytes, KindRegistry], Awaitable[Store]]


@dataclass
class ClusterAccess:
    """Outcome of an access request."""

    ready: bool
    requeue_after: Optional[float] = None
    store: Optional[Store] = None
    kubeconfig_secret: str = ""

    @classmethod
    def not_ready(cls, requeue_after: float) -> "ClusterAccess":
        return cls(ready=False, requeue_after=requeue_after)

    @classmethod
    def granted(cls, store: Store, kubeconfig_secret: str) -> "ClusterAccess":
        return cls(ready=True, store=store, kubeconfig_secret=kubeconfig_secret)


class AccessBroker(ABC):
    """Abstract base class for cluster access brokers."""

    @abstractmethod
    async def acquire(self, cluster: TargetCluster) -> ClusterAccess:
        """
        Request access to a cluster.

        Returns:
            A granted ClusterAccess, or a not-ready one with a wait hint.
        """
        pass

    @abstractmethod
    async def release(self, cluster: TargetCluster) -> Optional[float]:
        """
        Give up access to a cluster.

        Returns:
            None once released, otherwise seconds to wait before calling
            again.
        """
        pass

    async def close(self) -> None:
        pass


async def _kubeconfig_store(kubeconfig: bytes, registry: KindRegistry) -> Store:
    return await KubernetesStore.from_kubeconfig(kubeconfig, registry)


class AccessRequestBroker(AccessBroker):
    """
    Broker backed by ``AccessRequest`` objects on the platform cluster.

    One AccessRequest per cluster asks for a token bound to the
    ``cluster-admin`` ClusterRole. Once the request reports the ``Granted``
    phase, the kubeconfig in its secret is used to build the store client.
    Store clients are reused while the secret is unchanged.
    """

    def __init__(
        self,
        platform_store: Store,
        provider_name: str,
        target_registry: KindRegistry,
        controller_name: str = "GatewayCluster",
        requeue_after: float = 5,
        store_factory: Optional[StoreFactory] = None,
    ):
        self.platform_store = platform_store
        self.provider_name = provider_name
        self.target_registry = target_registry
        self.controller_name = controller_name
        self.requeue_after = requeue_after
        self._store_factory = store_factory or _kubeconfig_store
        # request -> (secret name@resourceVersion, store)
        self._stores: Dict[Request, Tuple[str, Store]] = {}

    def request_object(self, cluster: TargetCluster) -> KubeObject:
        return KubeObject(
            ACCESS_REQUEST.api_version,
            ACCESS_REQUEST.kind,
            f"{self.provider_name}.{cluster.name}",
            cluster.namespace,
        )

    def _mutate_request(self, cluster: TargetCluster):
        def mutate(obj: KubeObject) -> None:
            obj.set_label(MANAGED_BY_LABEL, f"{self.provider_name}.{self.controller_name}")
            obj.set_label(MANAGED_PURPOSE_LABEL, cluster.name)
            obj.spec["clusterRef"] = {"name": cluster.name, "namespace": cluster.namespace}
            obj.spec["token"] = {
                "roleRefs": [{"kind": "ClusterRole", "name": "cluster-admin"}]
            }

        return mutate

    async def acquire(self, cluster: TargetCluster) -> ClusterAccess:
        access_request = self.request_object(cluster)
        await create_or_update(
            self.platform_store, access_request, self._mutate_request(cluster)
        )

        phase = access_request.get("status", "phase", default="")
        secret_name = access_request.get("status", "secretRef", "name", default="")
        if phase != ACCESS_GRANTED_PHASE or not secret_name:
            logger.info(
                f"Access to cluster {cluster.request} not granted yet "
                f"(phase: {phase or 'Pending'})"
            )
            return ClusterAccess.not_ready(self.requeue_after)

        try:
            secret = await self.platform_store.get(
                SECRET.api_version, SECRET.kind, secret_name, cluster.namespace
            )
        except OperatorError as e:
            if e.kind != ErrorKind.NOT_FOUND:
                raise
            logger.info(f"Access secret {cluster.namespace}/{secret_name} not found yet")
            return ClusterAccess.not_ready(self.requeue_after)

        encoded = (secret.data.get("data") or {}).get(KUBECONFIG_KEY)
        if not encoded:
            raise OperatorError.fatal(
                f"access secret {cluster.namespace}/{secret_name} has no "
                f"'{KUBECONFIG_KEY}' key"
            )

        store = await self._store_for(cluster.request, secret, encoded)
        return ClusterAccess.granted(store, secret_name)

    async def _store_for(
        self, request: Request, secret: KubeObject, encoded: str
    ) -> Store:
        version = f"{secret.name}@{secret.resource_version}"
        cached = self._stores.get(request)
        if cached is not None and cached[0] == version:
            return cached[1]
        if cached is not None:
            await cached[1].close()

        try:
            store = await self._store_factory(
                base64.b64decode(encoded), self.target_registry
            )
        except (ConfigException, ValueError, yaml.YAMLError) as e:
            raise OperatorError.fatal(
                f"invalid kubeconfig in secret {secret.namespace}/{secret.name}: {e}",
                cause=e,
            ) from e
        self._stores[request] = (version, store)
        return store

    async def release(self, cluster: TargetCluster) -> Optional[float]:
        # deletion is completed by the access provider, not awaited here
        try:
            await self.platform_store.delete(self.request_object(cluster))
        except OperatorError as e:
            if e.kind not in (ErrorKind.NOT_FOUND, ErrorKind.NOT_YET_AVAILABLE):
                raise

        cached = self._stores.pop(cluster.request, None)
        if cached is not None:
            await cached[1].close()
        return None

    async def close(self) -> None:
        for _, store in self._stores.values():
            await store.close()
        self._stores.clear()
