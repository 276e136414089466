"""
Cluster selection - decides which clusters get a gateway.

Pure predicates, no I/O.
"""

from typing import Dict, Optional, Tuple

from models import (
    DEFAULT_NAMESPACE,
    GATEWAY_FINALIZER,
    ClusterRef,
    ClusterSelector,
    GatewayServiceConfig,
    TargetCluster,
)


def normalized_name(name: str, namespace: str) -> Tuple[str, str]:
    if not namespace:
        namespace = DEFAULT_NAMESPACE
    return (name, namespace)


def ref_matches(ref: ClusterRef, cluster: TargetCluster) -> bool:
    return normalized_name(ref.name, ref.namespace) == normalized_name(
        cluster.name, cluster.namespace
    )


def purpose_matches(purpose: str, cluster: TargetCluster) -> bool:
    if not purpose:
        return True
    return purpose in cluster.purposes


def labels_match(labels: Dict[str, str], cluster: TargetCluster) -> bool:
    for label, value in labels.items():
        if cluster.labels.get(label) != value:
            return False
    return True


def selector_matches(selector: ClusterSelector, cluster: TargetCluster) -> bool:
    return purpose_matches(selector.match_purpose, cluster) and labels_match(
        selector.match_labels, cluster
    )


def in_scope(config: Optional[GatewayServiceConfig], cluster: TargetCluster) -> bool:
    """True if any cluster term of the configuration matches the cluster."""
    if config is None:
        return False
    for term in config.clusters:
        if term.cluster_ref is not None and ref_matches(term.cluster_ref, cluster):
            return True
        if term.selector is not None and selector_matches(term.selector, cluster):
            return True
    return False


def should_reconcile(
    config: Optional[GatewayServiceConfig], cluster: TargetCluster
) -> bool:
    """
    True if the cluster needs a reconcile.

    A cluster carrying the gateway finalizer is always reconciled, even when
    it no longer matches the configuration, so its resources get removed.
    """
    return cluster.has_finalizer(GATEWAY_FINALIZER) or in_scope(config, cluster)
