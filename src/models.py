"""
Domain models for the gateway operator.

Typed views over the ``Cluster`` and ``GatewayServiceConfig`` objects read
from the platform cluster, plus the constants naming the operator's
finalizer and trigger annotations.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from kube.objects import KubeObject
from kube.registry import CLUSTER, GATEWAY_SERVICE_CONFIG

OPENMCP_GROUP = "openmcp.cloud"

GATEWAY_FINALIZER = f"platformservice.{OPENMCP_GROUP}/gateway"

OPERATION_ANNOTATION = f"{OPENMCP_GROUP}/operation"
GATEWAY_OPERATION_ANNOTATION = f"gateway.{OPERATION_ANNOTATION}"
OPERATION_IGNORE = "ignore"
OPERATION_RECONCILE = "reconcile"

MANAGED_BY_LABEL = "app.kubernetes.io/managed-by"
MANAGED_BY_VALUE = "platform-service-gateway"

DEFAULT_NAMESPACE = "default"
DEFAULT_CHART_URL = "oci://docker.io/envoyproxy/gateway-helm"
DEFAULT_TLS_PORT = 9443


@dataclass(frozen=True)
class Request:
    """Reconcile request for one cluster identity."""

    name: str
    namespace: str = ""

    def __str__(self) -> str:
        if self.namespace:
            return f"{self.namespace}/{self.name}"
        return self.name


@dataclass
class TargetCluster:
    """A cluster registered in the platform cluster's inventory."""

    name: str
    namespace: str = ""
    purposes: List[str] = field(default_factory=list)
    labels: Dict[str, str] = field(default_factory=dict)
    annotations: Dict[str, str] = field(default_factory=dict)
    finalizers: List[str] = field(default_factory=list)
    deletion_timestamp: Optional[str] = None
    obj: Optional[KubeObject] = None

    @classmethod
    def from_object(cls, obj: KubeObject) -> "TargetCluster":
        return cls(
            name=obj.name,
            namespace=obj.namespace,
            purposes=list(obj.get("spec", "purposes", default=None) or []),
            labels=dict(obj.labels),
            annotations=dict(obj.annotations),
            finalizers=obj.finalizers,
            deletion_timestamp=obj.deletion_timestamp,
            obj=obj,
        )

    def to_object(self) -> KubeObject:
        """Build a Cluster object (used when seeding stores)."""
        obj = KubeObject(CLUSTER.api_version, CLUSTER.kind, self.name, self.namespace)
        if self.labels:
            obj.metadata["labels"] = dict(self.labels)
        if self.annotations:
            obj.metadata["annotations"] = dict(self.annotations)
        if self.finalizers:
            obj.metadata["finalizers"] = list(self.finalizers)
        if self.deletion_timestamp:
            obj.metadata["deletionTimestamp"] = self.deletion_timestamp
        obj.spec["purposes"] = list(self.purposes)
        return obj

    @property
    def request(self) -> Request:
        return Request(self.name, self.namespace)

    @property
    def is_deleting(self) -> bool:
        return bool(self.deletion_timestamp)

    def has_finalizer(self, finalizer: str = GATEWAY_FINALIZER) -> bool:
        return finalizer in self.finalizers


@dataclass
class ClusterRef:
    name: str
    namespace: str = ""


@dataclass
class ClusterSelector:
    match_labels: Dict[str, str] = field(default_factory=dict)
    match_purpose: str = ""


@dataclass
class ClusterTerm:
    """Either a direct reference or a selector."""

    selector: Optional[ClusterSelector] = None
    cluster_ref: Optional[ClusterRef] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ClusterTerm":
        selector = None
        cluster_ref = None
        if data.get("selector") is not None:
            sel = data["selector"]
            selector = ClusterSelector(
                match_labels=dict(sel.get("matchLabels") or {}),
                match_purpose=sel.get("matchPurpose") or "",
            )
        if data.get("clusterRef") is not None:
            ref = data["clusterRef"]
            cluster_ref = ClusterRef(
                name=ref.get("name", ""), namespace=ref.get("namespace") or ""
            )
        return cls(selector=selector, cluster_ref=cluster_ref)


@dataclass
class ChartConfig:
    url: str = DEFAULT_CHART_URL
    tag: str = ""
    secret_ref: Optional[str] = None


@dataclass
class ImagesConfig:
    proxy: str = ""
    gateway: str = ""
    rate_limit: str = ""
    image_pull_secrets: List[str] = field(default_factory=list)


@dataclass
class GatewayServiceConfig:
    """Provider configuration read from the ``GatewayServiceConfig`` object."""

    name: str
    chart: ChartConfig = field(default_factory=ChartConfig)
    images: Optional[ImagesConfig] = None
    tls_port: int = DEFAULT_TLS_PORT
    base_domain: str = ""
    clusters: List[ClusterTerm] = field(default_factory=list)
    resource_version: str = ""

    @classmethod
    def from_object(cls, obj: KubeObject) -> "GatewayServiceConfig":
        spec = obj.get("spec", default=None) or {}
        envoy = spec.get("envoyGateway") or {}

        chart_data = envoy.get("chart") or {}
        chart = ChartConfig(
            url=chart_data.get("url") or DEFAULT_CHART_URL,
            tag=chart_data.get("tag", ""),
            secret_ref=(chart_data.get("secretRef") or {}).get("name"),
        )

        images = None
        if envoy.get("images") is not None:
            img = envoy["images"]
            images = ImagesConfig(
                proxy=img.get("proxy", ""),
                gateway=img.get("gateway", ""),
                rate_limit=img.get("rateLimit", ""),
                image_pull_secrets=[
                    ref["name"]
                    for ref in img.get("imagePullSecrets") or []
                    if ref.get("name")
                ],
            )

        gateway = spec.get("gateway") or {}
        return cls(
            name=obj.name,
            chart=chart,
            images=images,
            tls_port=int(gateway.get("tlsPort") or DEFAULT_TLS_PORT),
            base_domain=(spec.get("dns") or {}).get("baseDomain", ""),
            clusters=[ClusterTerm.from_dict(t) for t in spec.get("clusters") or []],
            resource_version=obj.resource_version,
        )

    @classmethod
    def empty(cls, name: str) -> "GatewayServiceConfig":
        """Configuration with no cluster terms, used when none exists."""
        return cls(name=name)

    @property
    def pull_secrets(self) -> List[str]:
        if self.images is None:
            return []
        return list(self.images.image_pull_secrets)


def new_config_object(name: str, spec: Dict[str, Any]) -> KubeObject:
    """Build a GatewayServiceConfig object."""
    obj = KubeObject(
        GATEWAY_SERVICE_CONFIG.api_version, GATEWAY_SERVICE_CONFIG.kind, name
    )
    obj.data["spec"] = spec
    return obj
