"""
Kind Registry - Maps object kinds to their REST endpoints.

Each store client is constructed with a registry describing the kinds it is
allowed to talk about. Registries are built explicitly (see
``platform_registry`` and ``target_registry``) and handed to the store
constructors; nothing is registered globally.
"""

import logging
from dataclasses import dataclass
from typing import Dict, List, Tuple

from errors import OperatorError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ResourceKind:
    """REST metadata for one kind."""

    group: str
    version: str
    kind: str
    plural: str
    namespaced: bool = True

    @property
    def api_version(self) -> str:
        if not self.group:
            return self.version
        return f"{self.group}/{self.version}"

    def collection_path(self, namespace: str = "") -> str:
        """Return the collection URL path, scoped to a namespace if given."""
        if self.group:
            base = f"/apis/{self.group}/{self.version}"
        else:
            base = f"/api/{self.version}"
        if self.namespaced and namespace:
            return f"{base}/namespaces/{namespace}/{self.plural}"
        return f"{base}/{self.plural}"

    def object_path(self, name: str, namespace: str = "") -> str:
        return f"{self.collection_path(namespace)}/{name}"


class KindRegistry:
    """
    Registry of kinds known to one store.

    Lookups for kinds that have not been registered raise a NotYetAvailable
    ``OperatorError``, the same kind of error the API server produces when a
    CRD is not installed.
    """

    def __init__(self, kinds: List[ResourceKind] = None):
        self._kinds: Dict[Tuple[str, str], ResourceKind] = {}
        for kind in kinds or []:
            self.register(kind)

    def register(self, kind: ResourceKind) -> None:
        key = (kind.api_version, kind.kind)
        if key in self._kinds:
            logger.warning(f"Overwriting registered kind: {kind.api_version} {kind.kind}")
        self._kinds[key] = kind

    def lookup(self, api_version: str, kind: str) -> ResourceKind:
        try:
            return self._kinds[(api_version, kind)]
        except KeyError:
            raise OperatorError.not_yet_available(
                f"no matches for kind \"{kind}\" in version \"{api_version}\""
            ) from None

    def has(self, api_version: str, kind: str) -> bool:
        return (api_version, kind) in self._kinds

    def kinds(self) -> List[ResourceKind]:
        return list(self._kinds.values())

    def __len__(self) -> int:
        return len(self._kinds)


# ----- well-known kinds -----

NAMESPACE = ResourceKind("", "v1", "Namespace", "namespaces", namespaced=False)
SECRET = ResourceKind("", "v1", "Secret", "secrets")
EVENT = ResourceKind("events.k8s.io", "v1", "Event", "events")

CLUSTER = ResourceKind("clusters.openmcp.cloud", "v1alpha1", "Cluster", "clusters")
ACCESS_REQUEST = ResourceKind(
    "clusters.openmcp.cloud", "v1alpha1", "AccessRequest", "accessrequests"
)
GATEWAY_SERVICE_CONFIG = ResourceKind(
    "gateway.openmcp.cloud",
    "v1alpha1",
    "GatewayServiceConfig",
    "gatewayserviceconfigs",
    namespaced=False,
)

OCI_REPOSITORY = ResourceKind(
    "source.toolkit.fluxcd.io", "v1", "OCIRepository", "ocirepositories"
)
HELM_RELEASE = ResourceKind("helm.toolkit.fluxcd.io", "v2", "HelmRelease", "helmreleases")

GATEWAY_CLASS = ResourceKind(
    "gateway.networking.k8s.io", "v1", "GatewayClass", "gatewayclasses", namespaced=False
)
GATEWAY = ResourceKind("gateway.networking.k8s.io", "v1", "Gateway", "gateways")
ENVOY_PROXY = ResourceKind("gateway.envoyproxy.io", "v1alpha1", "EnvoyProxy", "envoyproxies")


def platform_registry() -> KindRegistry:
    """Kinds used against the platform (control) cluster."""
    return KindRegistry(
        [
            NAMESPACE,
            SECRET,
            EVENT,
            CLUSTER,
            ACCESS_REQUEST,
            GATEWAY_SERVICE_CONFIG,
            OCI_REPOSITORY,
            HELM_RELEASE,
        ]
    )


def target_registry() -> KindRegistry:
    """Kinds used against a target cluster."""
    return KindRegistry([NAMESPACE, SECRET, GATEWAY_CLASS, GATEWAY, ENVOY_PROXY])
