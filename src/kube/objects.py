"""
Kubernetes object envelope.

Objects are kept as plain dicts (the wire format) wrapped in ``KubeObject``,
which offers accessors for the metadata fields the operator reads and writes.
"""

import copy
from typing import Any, Dict, List, NamedTuple, Optional


class ObjectKey(NamedTuple):
    """Identity of an object in a store."""

    kind: str
    namespace: str
    name: str

    def __str__(self) -> str:
        if self.namespace:
            return f"{self.kind}/{self.namespace}/{self.name}"
        return f"{self.kind}/{self.name}"


class KubeObject:
    """
    Envelope around a Kubernetes object dict.

    ``data`` is the full object as sent over the wire. Identity fields
    (apiVersion, kind, metadata.name, metadata.namespace) are set at
    construction; everything else is reached through the helpers below.
    """

    def __init__(
        self,
        api_version: str,
        kind: str,
        name: str,
        namespace: str = "",
        data: Optional[Dict[str, Any]] = None,
    ):
        self.data: Dict[str, Any] = copy.deepcopy(data) if data else {}
        self.data["apiVersion"] = api_version
        self.data["kind"] = kind
        metadata = self.data.setdefault("metadata", {})
        metadata["name"] = name
        if namespace:
            metadata["namespace"] = namespace
        else:
            metadata.pop("namespace", None)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "KubeObject":
        metadata = data.get("metadata") or {}
        return cls(
            api_version=data.get("apiVersion", ""),
            kind=data.get("kind", ""),
            name=metadata.get("name", ""),
            namespace=metadata.get("namespace", ""),
            data=data,
        )

    def to_dict(self) -> Dict[str, Any]:
        return copy.deepcopy(self.data)

    def copy(self) -> "KubeObject":
        return KubeObject.from_dict(self.data)

    def replace(self, data: Dict[str, Any]) -> None:
        """Replace the object's content in place (identity is kept from data)."""
        self.data = copy.deepcopy(data)

    # ----- identity -----

    @property
    def api_version(self) -> str:
        return self.data.get("apiVersion", "")

    @property
    def kind(self) -> str:
        return self.data.get("kind", "")

    @property
    def metadata(self) -> Dict[str, Any]:
        return self.data.setdefault("metadata", {})

    @property
    def name(self) -> str:
        return self.metadata.get("name", "")

    @property
    def namespace(self) -> str:
        return self.metadata.get("namespace", "")

    @property
    def key(self) -> ObjectKey:
        return ObjectKey(self.kind, self.namespace, self.name)

    # ----- metadata -----

    @property
    def resource_version(self) -> str:
        return self.metadata.get("resourceVersion", "")

    @property
    def labels(self) -> Dict[str, str]:
        return self.metadata.get("labels") or {}

    def set_label(self, key: str, value: str) -> None:
        self.metadata.setdefault("labels", {})[key] = value

    @property
    def annotations(self) -> Dict[str, str]:
        return self.metadata.get("annotations") or {}

    def set_annotation(self, key: str, value: str) -> None:
        self.metadata.setdefault("annotations", {})[key] = value

    def remove_annotation(self, key: str) -> bool:
        """Remove an annotation. Returns True if it was present."""
        annotations = self.metadata.get("annotations")
        if not annotations or key not in annotations:
            return False
        del annotations[key]
        return True

    @property
    def finalizers(self) -> List[str]:
        return list(self.metadata.get("finalizers") or [])

    def has_finalizer(self, finalizer: str) -> bool:
        return finalizer in self.finalizers

    def add_finalizer(self, finalizer: str) -> bool:
        """Add a finalizer. Returns True if the object changed."""
        if self.has_finalizer(finalizer):
            return False
        self.metadata.setdefault("finalizers", []).append(finalizer)
        return True

    def remove_finalizer(self, finalizer: str) -> bool:
        """Remove a finalizer. Returns True if the object changed."""
        if not self.has_finalizer(finalizer):
            return False
        self.metadata["finalizers"] = [
            f for f in self.metadata["finalizers"] if f != finalizer
        ]
        return True

    @property
    def deletion_timestamp(self) -> Optional[str]:
        return self.metadata.get("deletionTimestamp")

    @property
    def is_deleting(self) -> bool:
        return bool(self.deletion_timestamp)

    # ----- content -----

    @property
    def spec(self) -> Dict[str, Any]:
        return self.data.setdefault("spec", {})

    @property
    def status(self) -> Dict[str, Any]:
        return self.data.get("status") or {}

    def get(self, *path: str, default: Any = None) -> Any:
        """Walk nested mappings, returning ``default`` on the first miss."""
        current: Any = self.data
        for part in path:
            if not isinstance(current, dict) or part not in current:
                return default
            current = current[part]
        return current

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, KubeObject):
            return NotImplemented
        return self.data == other.data

    def __repr__(self) -> str:
        return f"KubeObject({self.api_version}, {self.key})"
