"""
Kubernetes Store - kubernetes_asyncio client for a Kubernetes API server.

Core kinds (empty API group) go through ``CoreV1Api``, every other kind
through ``CustomObjectsApi``. The store's ``KindRegistry`` decides which
kinds may be used and supplies their group, version and plural.

Credentials come from a kubeconfig (a file, or a document read from an
access secret) or from the in-cluster service account.
"""

import asyncio
import json
import logging
from typing import Any, AsyncIterator, Callable, Dict, List, Optional, Tuple, Union

import aiohttp
import yaml
from kubernetes_asyncio import client, config, watch
from kubernetes_asyncio.client.exceptions import ApiException
from kubernetes_asyncio.config import ConfigException

from errors import OperatorError
from kube.objects import KubeObject, ObjectKey
from kube.registry import KindRegistry, ResourceKind
from kube.store import Store

logger = logging.getLogger(__name__)

BACKGROUND_DELETION = client.V1DeleteOptions(propagation_policy="Background")

# custom object verbs named differently on the typed core API
_CORE_VERBS = {"get": "read"}


def _status_body(e: ApiException) -> Dict[str, Any]:
    try:
        body = json.loads(e.body) if e.body else {}
    except (TypeError, ValueError):
        body = {"message": str(e.body)}
    return body if isinstance(body, dict) else {"message": str(body)}


def api_error(e: ApiException, key: ObjectKey) -> OperatorError:
    """
    Translate an ``ApiException`` into an ``OperatorError``.

    A 404 whose Status names the object means the object does not exist.
    Any other 404 means the API server does not serve the kind (its CRD is
    not installed yet).
    """
    body = _status_body(e)
    message = body.get("message") or e.reason or f"unexpected status {e.status}"
    if e.status == 404:
        details = body.get("details") or {}
        if body.get("reason") == "NotFound" and details.get("name"):
            return OperatorError.not_found(f"{key} not found")
        return OperatorError.not_yet_available(
            f"resource kind for {key} is not served: {message}"
        )
    reason = body.get("reason") or e.reason or ""
    return OperatorError.fatal(f"{e.status} {reason} on {key}: {message}", cause=e)


class KubernetesStore(Store):
    """
    Store backed by a Kubernetes API server.

    Wraps one ``kubernetes_asyncio`` ``ApiClient``; call ``close()`` on
    shutdown to release its connection pool.
    """

    def __init__(
        self,
        api_client: client.ApiClient,
        registry: KindRegistry,
        request_timeout: Optional[int] = None,
    ):
        super().__init__(registry)
        self.api_client = api_client
        self.request_timeout = request_timeout
        self.core_api = client.CoreV1Api(api_client)
        self.custom_api = client.CustomObjectsApi(api_client)

    @classmethod
    async def from_kubeconfig(
        cls,
        kubeconfig: Union[str, bytes, Dict[str, Any]],
        registry: KindRegistry,
        request_timeout: Optional[int] = None,
    ) -> "KubernetesStore":
        """
        Create a store from a kubeconfig document.

        Args:
            kubeconfig: Kubeconfig as YAML text or an already parsed dict
            registry: Kinds the store may access
            request_timeout: Per-request timeout in seconds

        Raises:
            ConfigException: If the kubeconfig is incomplete
            yaml.YAMLError: If the kubeconfig is not valid YAML
        """
        if isinstance(kubeconfig, (str, bytes)):
            kubeconfig = yaml.safe_load(kubeconfig) or {}
        if not isinstance(kubeconfig, dict):
            raise ConfigException("kubeconfig is not a mapping")
        api_client = await config.new_client_from_config_dict(
            config_dict=kubeconfig, persist_config=False
        )
        return cls(api_client, registry, request_timeout)

    @classmethod
    async def from_kubeconfig_file(
        cls, path: str, registry: KindRegistry, request_timeout: Optional[int] = None
    ) -> "KubernetesStore":
        configuration = client.Configuration()
        await config.load_kube_config(
            config_file=path,
            client_configuration=configuration,
            persist_config=False,
        )
        return cls(client.ApiClient(configuration), registry, request_timeout)

    @classmethod
    def in_cluster(
        cls, registry: KindRegistry, request_timeout: Optional[int] = None
    ) -> "KubernetesStore":
        """Create a store using the pod's service account."""
        configuration = client.Configuration()
        config.load_incluster_config(client_configuration=configuration)
        return cls(client.ApiClient(configuration), registry, request_timeout)

    async def close(self) -> None:
        await self.api_client.close()

    def _method(
        self, verb: str, resource: ResourceKind, name: str = "", namespace: str = ""
    ) -> Tuple[Callable, List[str]]:
        """Pick the API method and positional arguments for ``verb``."""
        namespaced = resource.namespaced and bool(namespace)
        if resource.group:
            args = [resource.group, resource.version]
            if namespaced:
                args.append(namespace)
            args.append(resource.plural)
            if name:
                args.append(name)
            scope = "namespaced" if namespaced else "cluster"
            return getattr(self.custom_api, f"{verb}_{scope}_custom_object"), args

        verb = _CORE_VERBS.get(verb, verb)
        singular = resource.kind.lower()
        if not resource.namespaced:
            return getattr(self.core_api, f"{verb}_{singular}"), [name] if name else []
        if not namespace:
            # only list is valid across namespaces
            return getattr(self.core_api, f"list_{singular}_for_all_namespaces"), []
        args = [name, namespace] if name else [namespace]
        return getattr(self.core_api, f"{verb}_namespaced_{singular}"), args

    async def _call(
        self,
        verb: str,
        resource: ResourceKind,
        key: ObjectKey,
        name: str = "",
        namespace: str = "",
        **kwargs,
    ) -> Dict[str, Any]:
        method, args = self._method(verb, resource, name, namespace)
        if self.request_timeout:
            kwargs["_request_timeout"] = self.request_timeout
        try:
            result = await method(*args, **kwargs)
        except ApiException as e:
            raise api_error(e, key) from e
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise OperatorError.fatal(
                f"{verb} {key} failed: {str(e) or type(e).__name__}", cause=e
            ) from e
        # typed core API results are models; custom objects are already dicts
        return self.api_client.sanitize_for_serialization(result) or {}

    # ----- Store interface -----

    async def get(
        self, api_version: str, kind: str, name: str, namespace: str = ""
    ) -> KubeObject:
        resource = self.registry.lookup(api_version, kind)
        key = ObjectKey(kind, namespace, name)
        data = await self._call("get", resource, key, name, namespace)
        return self._object(resource, data)

    async def list(
        self, api_version: str, kind: str, namespace: str = ""
    ) -> List[KubeObject]:
        resource = self.registry.lookup(api_version, kind)
        key = ObjectKey(kind, namespace, "")
        data = await self._call("list", resource, key, namespace=namespace)
        return [self._object(resource, item) for item in data.get("items") or []]

    async def create(self, obj: KubeObject) -> KubeObject:
        resource = self.registry.lookup(obj.api_version, obj.kind)
        data = await self._call(
            "create", resource, obj.key, namespace=obj.namespace, body=obj.to_dict()
        )
        return self._object(resource, data)

    async def update(self, obj: KubeObject) -> KubeObject:
        resource = self.registry.lookup(obj.api_version, obj.kind)
        data = await self._call(
            "replace", resource, obj.key, obj.name, obj.namespace, body=obj.to_dict()
        )
        return self._object(resource, data)

    async def delete(self, obj: KubeObject) -> None:
        resource = self.registry.lookup(obj.api_version, obj.kind)
        await self._call(
            "delete", resource, obj.key, obj.name, obj.namespace, body=BACKGROUND_DELETION
        )

    async def watch(
        self,
        api_version: str,
        kind: str,
        name: str = "",
        namespace: str = "",
        timeout_seconds: Optional[int] = None,
    ) -> AsyncIterator[Tuple[str, KubeObject]]:
        resource = self.registry.lookup(api_version, kind)
        key = ObjectKey(kind, namespace, name)
        method, args = self._method("list", resource, namespace=namespace)
        kwargs = {}
        if name:
            kwargs["field_selector"] = f"metadata.name={name}"
        if timeout_seconds:
            kwargs["timeout_seconds"] = timeout_seconds

        logger.debug(f"Watching {key}")
        try:
            async with watch.Watch().stream(method, *args, **kwargs) as stream:
                async for event in stream:
                    yield event["type"], self._object(resource, event["raw_object"])
        except ApiException as e:
            raise api_error(e, key) from e
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise OperatorError.fatal(
                f"watch {key} failed: {str(e) or type(e).__name__}", cause=e
            ) from e

    @staticmethod
    def _object(resource: ResourceKind, data: Dict[str, Any]) -> KubeObject:
        # list and watch items omit apiVersion/kind
        data.setdefault("apiVersion", resource.api_version)
        data.setdefault("kind", resource.kind)
        return KubeObject.from_dict(data)
