"""
Store Base - Abstract interface for a declarative object store.

A store is a Kubernetes API server (or something that behaves like one).
Deletion is asynchronous: a successful ``delete`` only means the request was
accepted, absence is confirmed by a later ``get`` raising NotFound.
"""

from abc import ABC, abstractmethod
from typing import AsyncIterator, List, Optional, Tuple

from kube.objects import KubeObject
from kube.registry import KindRegistry


class Store(ABC):
    """
    Abstract base class for store clients.

    All methods raise ``errors.OperatorError``:
    NOT_FOUND when the object does not exist, NOT_YET_AVAILABLE when the
    kind is not registered, FATAL for anything else.
    """

    def __init__(self, registry: KindRegistry):
        self.registry = registry

    @abstractmethod
    async def get(
        self, api_version: str, kind: str, name: str, namespace: str = ""
    ) -> KubeObject:
        """Fetch one object."""
        pass

    @abstractmethod
    async def list(
        self, api_version: str, kind: str, namespace: str = ""
    ) -> List[KubeObject]:
        """List objects of a kind, across all namespaces if none is given."""
        pass

    @abstractmethod
    async def create(self, obj: KubeObject) -> KubeObject:
        """Create an object, returning the stored version."""
        pass

    @abstractmethod
    async def update(self, obj: KubeObject) -> KubeObject:
        """
        Replace an object, returning the stored version.

        The object's resourceVersion is sent along so the store can reject
        stale writes.
        """
        pass

    @abstractmethod
    async def delete(self, obj: KubeObject) -> None:
        """Request deletion of an object."""
        pass

    @abstractmethod
    def watch(
        self,
        api_version: str,
        kind: str,
        name: str = "",
        namespace: str = "",
        timeout_seconds: Optional[int] = None,
    ) -> AsyncIterator[Tuple[str, KubeObject]]:
        """
        Stream changes to objects of a kind as ``(event_type, object)`` pairs.

        Event types are ADDED, MODIFIED and DELETED. Objects that already
        exist are reported as ADDED first. The stream ends after
        ``timeout_seconds``; callers re-establish it.
        """
        pass

    async def close(self) -> None:
        """Release any held connections."""
        pass

    async def get_object(self, obj: KubeObject) -> KubeObject:
        """Fetch the stored version of ``obj`` by its identity."""
        return await self.get(obj.api_version, obj.kind, obj.name, obj.namespace)
