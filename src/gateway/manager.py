"""
Gateway Manager - install, configure and remove Envoy Gateway for a cluster.

The control plane is delivered by Flux: an OCIRepository and a HelmRelease in
the cluster's namespace on the platform cluster, with the HelmRelease
pointing at the target cluster's kubeconfig secret. The data plane objects
(GatewayClass, EnvoyProxy, Gateway) are written directly to the target
cluster.
"""

import logging
from typing import List, Optional

from apply import ApplyOperation, apply_batch, ensure_deleted
from errors import ErrorKind, OperatorError
from gateway import recipes
from kube.objects import KubeObject
from kube.registry import SECRET
from kube.store import Store
from models import GatewayServiceConfig, TargetCluster

logger = logging.getLogger(__name__)

# Wait for CRDs of freshly installed charts to be served
CRD_NOT_READY_REQUEUE_AFTER = 10


def _retry_when_kind_missing(err: OperatorError) -> OperatorError:
    if err.kind == ErrorKind.NOT_YET_AVAILABLE:
        return err.with_backoff(CRD_NOT_READY_REQUEUE_AFTER)
    return err


class GatewayManager:
    """
    Lifecycle operations for one cluster's gateway.

    Args:
        cluster: The target cluster
        config: The provider configuration
        platform_store: Store for the platform cluster
        cluster_store: Store for the target cluster
        kubeconfig_secret: Name of the secret (in the cluster's namespace on
            the platform cluster) holding the target kubeconfig
        provider_namespace: Namespace on the platform cluster holding the
            secrets referenced by the configuration
    """

    def __init__(
        self,
        cluster: TargetCluster,
        config: GatewayServiceConfig,
        platform_store: Store,
        cluster_store: Store,
        kubeconfig_secret: str,
        provider_namespace: str,
    ):
        self.cluster = cluster
        self.config = config
        self.platform_store = platform_store
        self.cluster_store = cluster_store
        self.kubeconfig_secret = kubeconfig_secret
        self.provider_namespace = provider_namespace

    async def install_or_update(self) -> None:
        """
        Install or update the Envoy Gateway control plane.

        Raises:
            OperatorError: NOT_YET_AVAILABLE with a backoff if a kind is not
                served yet; anything else unchanged.
        """
        try:
            ops = [recipes.namespace(recipes.DEPLOYMENT_NAMESPACE).operation()]
            ops.extend(
                await self._pull_secret_copies(recipes.DEPLOYMENT_NAMESPACE)
            )
            await apply_batch(self.cluster_store, *ops)

            chart_secret = await self._chart_secret_copy()
            repository = recipes.oci_repository(
                self.cluster,
                self.config.chart,
                chart_secret.obj.name if chart_secret else None,
            )
            release = recipes.helm_release(
                self.cluster,
                repository.obj.name,
                recipes.helm_values(self.config.images, self.config.pull_secrets),
                self.kubeconfig_secret,
            )

            ops = []
            if chart_secret is not None:
                ops.append(chart_secret.operation())
            ops.extend([repository.operation(), release.operation()])
            await apply_batch(self.platform_store, *ops)
        except OperatorError as e:
            raise _retry_when_kind_missing(e)

        logger.info(f"Gateway control plane applied for cluster {self.cluster.request}")

    async def configure(self) -> None:
        """
        Configure the gateway data plane on the target cluster.

        Raises:
            OperatorError: NOT_YET_AVAILABLE with a backoff if a kind is not
                served yet; anything else unchanged.
        """
        try:
            ops = [recipes.namespace(recipes.GATEWAY_NAMESPACE).operation()]
            ops.extend(await self._pull_secret_copies(recipes.GATEWAY_NAMESPACE))
            ops.extend(
                [
                    recipes.gateway_class().operation(),
                    recipes.envoy_proxy(
                        self.config.images, self.config.pull_secrets
                    ).operation(),
                    recipes.gateway(
                        self.cluster, self.config.base_domain, self.config.tls_port
                    ).operation(),
                ]
            )
            await apply_batch(self.cluster_store, *ops)
        except OperatorError as e:
            raise _retry_when_kind_missing(e)

        logger.info(f"Gateway data plane configured for cluster {self.cluster.request}")

    async def cleanup(self) -> None:
        """
        Remove the data plane objects from the target cluster.

        Raises:
            OperatorError: REMAINING_RESOURCES until everything is gone.
        """
        await ensure_deleted(self.cluster_store, *self.data_plane_objects())

    async def uninstall(self) -> None:
        """
        Remove the control plane delivery objects from the platform cluster.

        Raises:
            OperatorError: REMAINING_RESOURCES until everything is gone.
        """
        await ensure_deleted(self.platform_store, *self.delivery_objects())

    def data_plane_objects(self) -> List[KubeObject]:
        objs = [
            recipes.gateway_object(),
            recipes.envoy_proxy_object(),
            recipes.gateway_class_object(),
        ]
        for namespace in (recipes.GATEWAY_NAMESPACE, recipes.DEPLOYMENT_NAMESPACE):
            for name in self.config.pull_secrets:
                objs.append(recipes.secret_object(name, namespace))
        return objs

    def delivery_objects(self) -> List[KubeObject]:
        objs = [
            recipes.helm_release_object(self.cluster),
            recipes.oci_repository_object(self.cluster),
        ]
        if self.config.chart.secret_ref:
            objs.append(
                recipes.secret_object(
                    recipes.chart_secret_name(self.cluster, self.config.chart.secret_ref),
                    self.cluster.namespace,
                )
            )
        return objs

    async def _read_source_secret(self, name: str) -> KubeObject:
        try:
            return await self.platform_store.get(
                SECRET.api_version, SECRET.kind, name, self.provider_namespace
            )
        except OperatorError as e:
            if e.kind != ErrorKind.NOT_FOUND:
                raise
            raise OperatorError.fatal(
                f"secret {self.provider_namespace}/{name} referenced by "
                f"GatewayServiceConfig '{self.config.name}' does not exist",
                cause=e,
            ) from e

    async def _pull_secret_copies(self, namespace: str) -> List[ApplyOperation]:
        ops = []
        for name in self.config.pull_secrets:
            source = await self._read_source_secret(name)
            ops.append(recipes.secret_copy(source, name, namespace).operation())
        return ops

    async def _chart_secret_copy(self) -> Optional[recipes.Recipe]:
        source_name = self.config.chart.secret_ref
        if not source_name:
            return None
        source = await self._read_source_secret(source_name)
        return recipes.secret_copy(
            source,
            recipes.chart_secret_name(self.cluster, source_name),
            self.cluster.namespace,
        )
