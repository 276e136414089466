"""
Resource recipes - desired shape of every object the operator manages.

Each ``*_object`` function returns the identity of one managed object,
derived only from the cluster and fixed names. Each recipe function pairs
that identity with a mutator filling in the desired fields. Nothing here
performs I/O.
"""

from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from apply import ApplyOperation, MutateFn
from kube.objects import KubeObject
from kube.registry import (
    ENVOY_PROXY,
    GATEWAY,
    GATEWAY_CLASS,
    HELM_RELEASE,
    NAMESPACE,
    OCI_REPOSITORY,
    SECRET,
)
from kube.store import Store
from models import (
    MANAGED_BY_LABEL,
    MANAGED_BY_VALUE,
    ChartConfig,
    ImagesConfig,
    TargetCluster,
)

DEPLOYMENT_NAMESPACE = "envoy-gateway-system"
GATEWAY_NAMESPACE = "openmcp-system"
GATEWAY_CLASS_NAME = "envoy-gateway"
GATEWAY_NAME = "default"
GATEWAY_CONTROLLER_NAME = "gateway.envoyproxy.io/gatewayclass-controller"
RELEASE_NAME = "eg"
TLS_LISTENER_NAME = "tls"

BASE_DOMAIN_ANNOTATION = "dns.openmcp.cloud/base-domain"
COPIED_FROM_ANNOTATION = "gateway.openmcp.cloud/copied-from"

HELM_CHART_MEDIA_TYPE = "application/vnd.cncf.helm.chart.content.v1.tar+gzip"
KUBECONFIG_SECRET_KEY = "kubeconfig"

REPOSITORY_INTERVAL = "10h0m0s"
RELEASE_INTERVAL = "1h0m0s"
REMEDIATION_RETRIES = 3


@dataclass
class Recipe:
    """Identity of a managed object plus the mutator producing its state."""

    obj: KubeObject
    mutate: MutateFn

    def operation(self, store: Optional[Store] = None) -> ApplyOperation:
        return ApplyOperation(obj=self.obj, mutate=self.mutate, store=store)


def _mark_managed(obj: KubeObject) -> None:
    obj.set_label(MANAGED_BY_LABEL, MANAGED_BY_VALUE)


def release_name(cluster: TargetCluster) -> str:
    return f"{cluster.name}.gateway"


def base_domain(cluster: TargetCluster, domain: str) -> str:
    return f"{cluster.name}.{cluster.namespace}.{domain}"


# ----- identities -----


def namespace_object(name: str) -> KubeObject:
    return KubeObject(NAMESPACE.api_version, NAMESPACE.kind, name)


def secret_object(name: str, namespace: str) -> KubeObject:
    return KubeObject(SECRET.api_version, SECRET.kind, name, namespace)


def chart_secret_name(cluster: TargetCluster, source_name: str) -> str:
    return f"{release_name(cluster)}.{source_name}"


def oci_repository_object(cluster: TargetCluster) -> KubeObject:
    return KubeObject(
        OCI_REPOSITORY.api_version,
        OCI_REPOSITORY.kind,
        release_name(cluster),
        cluster.namespace,
    )


def helm_release_object(cluster: TargetCluster) -> KubeObject:
    return KubeObject(
        HELM_RELEASE.api_version,
        HELM_RELEASE.kind,
        release_name(cluster),
        cluster.namespace,
    )


def gateway_class_object() -> KubeObject:
    return KubeObject(GATEWAY_CLASS.api_version, GATEWAY_CLASS.kind, GATEWAY_CLASS_NAME)


def gateway_object() -> KubeObject:
    return KubeObject(GATEWAY.api_version, GATEWAY.kind, GATEWAY_NAME, GATEWAY_NAMESPACE)


def envoy_proxy_object() -> KubeObject:
    return KubeObject(
        ENVOY_PROXY.api_version, ENVOY_PROXY.kind, GATEWAY_NAME, GATEWAY_NAMESPACE
    )


# ----- recipes -----


def namespace(name: str) -> Recipe:
    return Recipe(namespace_object(name), _mark_managed)


def secret_copy(source: KubeObject, name: str, namespace: str) -> Recipe:
    """Copy the type and data of ``source`` into ``namespace``/``name``."""
    source_type = source.data.get("type", "Opaque")
    source_data = dict(source.data.get("data") or {})
    source_id = f"{source.namespace}/{source.name}"

    def mutate(obj: KubeObject) -> None:
        _mark_managed(obj)
        obj.set_annotation(COPIED_FROM_ANNOTATION, source_id)
        obj.data["type"] = source_type
        obj.data["data"] = dict(source_data)

    return Recipe(secret_object(name, namespace), mutate)


def oci_repository(
    cluster: TargetCluster, chart: ChartConfig, secret_name: Optional[str] = None
) -> Recipe:
    def mutate(obj: KubeObject) -> None:
        _mark_managed(obj)
        spec = obj.spec
        spec["interval"] = REPOSITORY_INTERVAL
        spec["layerSelector"] = {
            "mediaType": HELM_CHART_MEDIA_TYPE,
            "operation": "copy",
        }
        spec["url"] = chart.url
        spec["ref"] = {"tag": chart.tag}
        if secret_name:
            spec["secretRef"] = {"name": secret_name}
        else:
            spec.pop("secretRef", None)

    return Recipe(oci_repository_object(cluster), mutate)


def helm_values(
    images: Optional[ImagesConfig], pull_secrets: List[str]
) -> Dict[str, Any]:
    """Values passed inline to the Envoy Gateway chart."""
    image_values: Dict[str, Any] = {}
    if images is not None:
        if images.gateway:
            image_values["envoyGateway"] = {"image": images.gateway}
        if images.rate_limit:
            image_values["ratelimit"] = {"image": images.rate_limit}

    return {
        "global": {
            "images": image_values,
            "imagePullSecrets": [{"name": name} for name in pull_secrets],
        }
    }


def helm_release(
    cluster: TargetCluster,
    repository_name: str,
    values: Dict[str, Any],
    kubeconfig_secret: str,
) -> Recipe:
    def mutate(obj: KubeObject) -> None:
        _mark_managed(obj)
        spec = obj.spec
        spec["interval"] = RELEASE_INTERVAL
        spec["install"] = {"remediation": {"retries": REMEDIATION_RETRIES}}
        spec["upgrade"] = {"remediation": {"retries": REMEDIATION_RETRIES}}
        spec["releaseName"] = RELEASE_NAME
        spec["storageNamespace"] = DEPLOYMENT_NAMESPACE
        spec["targetNamespace"] = DEPLOYMENT_NAMESPACE
        spec["chartRef"] = {"kind": OCI_REPOSITORY.kind, "name": repository_name}
        spec["values"] = values
        spec["kubeConfig"] = {
            "secretRef": {"name": kubeconfig_secret, "key": KUBECONFIG_SECRET_KEY}
        }

    return Recipe(helm_release_object(cluster), mutate)


def gateway_class() -> Recipe:
    def mutate(obj: KubeObject) -> None:
        _mark_managed(obj)
        obj.spec["controllerName"] = GATEWAY_CONTROLLER_NAME

    return Recipe(gateway_class_object(), mutate)


def envoy_proxy(images: Optional[ImagesConfig], pull_secrets: List[str]) -> Recipe:
    def mutate(obj: KubeObject) -> None:
        _mark_managed(obj)
        deployment: Dict[str, Any] = {
            "pod": {"imagePullSecrets": [{"name": name} for name in pull_secrets]},
        }
        if images is not None and images.proxy:
            deployment["container"] = {"image": images.proxy}
        obj.data["spec"] = {
            "provider": {
                "type": "Kubernetes",
                "kubernetes": {"envoyDeployment": deployment},
            }
        }

    return Recipe(envoy_proxy_object(), mutate)


def gateway(cluster: TargetCluster, domain: str, tls_port: int) -> Recipe:
    def mutate(obj: KubeObject) -> None:
        _mark_managed(obj)
        spec = obj.spec
        spec["gatewayClassName"] = GATEWAY_CLASS_NAME
        spec["listeners"] = [
            {
                "name": TLS_LISTENER_NAME,
                "port": tls_port,
                "protocol": "TLS",
                "tls": {"mode": "Passthrough"},
                "allowedRoutes": {"namespaces": {"from": "All"}},
            }
        ]
        infrastructure = spec.setdefault("infrastructure", {})
        infrastructure["parametersRef"] = {
            "group": ENVOY_PROXY.group,
            "kind": ENVOY_PROXY.kind,
            "name": GATEWAY_NAME,
        }
        obj.set_annotation(BASE_DOMAIN_ANNOTATION, base_domain(cluster, domain))

    return Recipe(gateway_object(), mutate)
