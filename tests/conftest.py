"""Pytest configuration and fixtures."""

import base64
from typing import Dict, List, Optional

import pytest

from access import AccessBroker, ClusterAccess
from memory_store import MemoryStore
from kube.objects import KubeObject
from kube.registry import SECRET, platform_registry, target_registry
from models import GATEWAY_FINALIZER, TargetCluster, new_config_object

PROVIDER_NAME = "gateway"
PROVIDER_NAMESPACE = "openmcp-system"
KUBECONFIG_SECRET = "gateway.c1.kubeconfig"


class StaticBroker(AccessBroker):
    """Access broker handing out a fixed store."""

    def __init__(self, store, ready: bool = True, release_after: Optional[float] = None):
        self.store = store
        self.ready = ready
        self.release_after = release_after
        self.acquired: List[str] = []
        self.released: List[str] = []

    async def acquire(self, cluster: TargetCluster) -> ClusterAccess:
        self.acquired.append(str(cluster.request))
        if not self.ready:
            return ClusterAccess.not_ready(5)
        return ClusterAccess.granted(self.store, KUBECONFIG_SECRET)

    async def release(self, cluster: TargetCluster) -> Optional[float]:
        self.released.append(str(cluster.request))
        return self.release_after


@pytest.fixture
def platform_store():
    """In-memory platform cluster."""
    return MemoryStore(platform_registry())


@pytest.fixture
def cluster_store():
    """In-memory target cluster."""
    return MemoryStore(target_registry())


@pytest.fixture
def broker(cluster_store):
    return StaticBroker(cluster_store)


@pytest.fixture
def make_cluster():
    """Factory for Cluster objects."""

    def factory(
        name: str = "c1",
        namespace: str = "ns1",
        purposes: Optional[List[str]] = None,
        labels: Optional[Dict[str, str]] = None,
        annotations: Optional[Dict[str, str]] = None,
        finalizer: bool = False,
        deleting: bool = False,
    ) -> KubeObject:
        cluster = TargetCluster(
            name=name,
            namespace=namespace,
            purposes=purposes or [],
            labels=labels or {},
            annotations=annotations or {},
            finalizers=[GATEWAY_FINALIZER] if finalizer else [],
            deletion_timestamp="2024-01-15T10:30:00Z" if deleting else None,
        )
        return cluster.to_object()

    return factory


@pytest.fixture
def make_config():
    """Factory for GatewayServiceConfig objects."""

    def factory(
        clusters: Optional[List[Dict]] = None,
        pull_secrets: Optional[List[str]] = None,
        chart_secret: Optional[str] = None,
        name: str = PROVIDER_NAME,
    ) -> KubeObject:
        chart = {"url": "oci://registry.example.com/charts/gateway-helm", "tag": "1.5.4"}
        if chart_secret:
            chart["secretRef"] = {"name": chart_secret}
        envoy = {"chart": chart}
        if pull_secrets is not None:
            envoy["images"] = {
                "proxy": "registry.example.com/envoy:distroless-v1.35.3",
                "gateway": "registry.example.com/gateway:v1.5.1",
                "rateLimit": "registry.example.com/ratelimit:e74a664a",
                "imagePullSecrets": [{"name": s} for s in pull_secrets],
            }
        spec = {
            "envoyGateway": envoy,
            "clusters": clusters or [],
            "gateway": {"tlsPort": 9443},
            "dns": {"baseDomain": "dev.openmcp.example.com"},
        }
        return new_config_object(name, spec)

    return factory


@pytest.fixture
def make_secret():
    """Factory for Secret objects."""

    def factory(name: str, namespace: str = PROVIDER_NAMESPACE, **data: str) -> KubeObject:
        obj = KubeObject(SECRET.api_version, SECRET.kind, name, namespace)
        obj.data["type"] = "kubernetes.io/dockerconfigjson"
        obj.data["data"] = {
            key: base64.b64encode(value.encode()).decode() for key, value in data.items()
        }
        return obj

    return factory
