"""
Store layer for the gateway operator.

Object envelope, kind registry and store clients for talking to the
platform cluster and to target clusters.
"""

from kube.objects import KubeObject, ObjectKey
from kube.registry import (
    KindRegistry,
    ResourceKind,
    platform_registry,
    target_registry,
)
from kube.store import Store
from kube.client import KubernetesStore

__all__ = [
    "KubeObject",
    "ObjectKey",
    "KindRegistry",
    "ResourceKind",
    "platform_registry",
    "target_registry",
    "Store",
    "KubernetesStore",
]
