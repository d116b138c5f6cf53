"""Kubernetes API server implementation of ResourceStore.

Custom resources go through ``CustomObjectsApi`` and come back as plain
dicts. Core resources (Services) go through ``CoreV1Api`` and are turned
into the same camelCase dict shape with ``sanitize_for_serialization``.

ApiException 404 maps to None/False, 409 to ConflictError, 410 on a watch
to WatchExpiredError, anything else to StoreError.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple

from kubernetes import client, config, watch
from kubernetes.client.rest import ApiException
from urllib3.exceptions import HTTPError

from service_router.store import (
    ConflictError,
    ResourceKind,
    ResourceStore,
    StoreError,
    WatchExpiredError,
    patch_body,
)

logger = logging.getLogger(__name__)

MERGE_PATCH = "application/merge-patch+json"

_CORE_METHODS = {
    "get": "read_namespaced_{kind}",
    "create": "create_namespaced_{kind}",
    "patch": "patch_namespaced_{kind}",
    "delete": "delete_namespaced_{kind}",
    "status": "replace_namespaced_{kind}_status",
}
_CUSTOM_METHODS = {
    "get": "get_{scope}_custom_object",
    "create": "create_{scope}_custom_object",
    "patch": "patch_{scope}_custom_object",
    "delete": "delete_{scope}_custom_object",
    "status": "replace_{scope}_custom_object_status",
}


class _NotFound(StoreError):
    pass


def load_api_client(kubeconfig_path: str = "", context: str = "") -> client.ApiClient:
    """Build an ApiClient from the in-cluster service account or a kubeconfig.

    An explicit *kubeconfig_path* wins over the in-cluster configuration.
    """
    if not kubeconfig_path:
        try:
            config.load_incluster_config()
            logger.info("Loaded in-cluster Kubernetes configuration")
            return client.ApiClient()
        except config.ConfigException:
            logger.debug("Not running in a cluster, falling back to kubeconfig")

    try:
        config.load_kube_config(config_file=kubeconfig_path or None, context=context or None)
    except (config.ConfigException, OSError) as e:
        raise StoreError(f"Failed to load Kubernetes configuration: {e}") from e
    logger.info(f"Loaded kubeconfig {kubeconfig_path or '(default)'} context={context or '(current)'}")
    return client.ApiClient()


class KubernetesResourceStore(ResourceStore):
    """ResourceStore backed by the Kubernetes API server."""

    def __init__(self, api_client: Optional[client.ApiClient] = None):
        self._api_client = api_client or client.ApiClient()
        self._custom = client.CustomObjectsApi(self._api_client)
        self._core = client.CoreV1Api(self._api_client)

    @property
    def name(self) -> str:
        return "Kubernetes"

    # -- client plumbing -------------------------------------------------

    def _target(
        self, kind: ResourceKind, verb: str, namespace: Optional[str], name: Optional[str] = None
    ) -> Tuple[Callable[..., Any], Dict[str, Any]]:
        """Resolve the client method and identifying arguments for *verb* on *kind*."""
        if not kind.group:
            method = getattr(self._core, _CORE_METHODS[verb].format(kind=kind.kind.lower()))
            kwargs: Dict[str, Any] = {"namespace": namespace}
        else:
            scope = "namespaced" if kind.namespaced else "cluster"
            method = getattr(self._custom, _CUSTOM_METHODS[verb].format(scope=scope))
            kwargs = {"group": kind.group, "version": kind.version, "plural": kind.plural}
            if kind.namespaced:
                kwargs["namespace"] = namespace
        if name is not None:
            kwargs["name"] = name
        return method, kwargs

    def _list_target(
        self, kind: ResourceKind, namespace: Optional[str]
    ) -> Tuple[Callable[..., Any], Dict[str, Any]]:
        singular = kind.kind.lower()
        if not kind.group:
            if namespace:
                return getattr(self._core, f"list_namespaced_{singular}"), {"namespace": namespace}
            return getattr(self._core, f"list_{singular}_for_all_namespaces"), {}
        kwargs: Dict[str, Any] = {"group": kind.group, "version": kind.version, "plural": kind.plural}
        if kind.namespaced and namespace:
            kwargs["namespace"] = namespace
            return self._custom.list_namespaced_custom_object, kwargs
        return self._custom.list_cluster_custom_object, kwargs

    @staticmethod
    def _call(action: str, method: Callable[..., Any], **kwargs: Any) -> Any:
        try:
            return method(**kwargs)
        except ApiException as e:
            if e.status == 404:
                raise _NotFound(action) from e
            if e.status == 409:
                raise ConflictError(f"{action}: conflict ({e.reason})") from e
            raise StoreError(f"{action}: {e.status} {e.reason}") from e
        except HTTPError as e:
            raise StoreError(f"{action}: {e}") from e

    def _to_dict(self, kind: ResourceKind, obj: Any) -> Dict[str, Any]:
        if not isinstance(obj, dict):
            obj = self._api_client.sanitize_for_serialization(obj)
        obj.setdefault("apiVersion", kind.api_version)
        obj.setdefault("kind", kind.kind)
        return obj

    @staticmethod
    def _identity(obj: Dict[str, Any]) -> Tuple[str, Optional[str]]:
        meta = obj.get("metadata") or {}
        return str(meta.get("name") or ""), meta.get("namespace")

    # -- ResourceStore ---------------------------------------------------

    def test_connection(self) -> bool:
        try:
            version = client.VersionApi(self._api_client).get_code()
        except (ApiException, HTTPError) as e:
            logger.error(f"Failed to connect to {self.name} API at {self._api_client.configuration.host}: {e}")
            return False
        logger.info(f"{self.name} API connection successful (server {version.git_version})")
        return True

    def get(
        self, kind: ResourceKind, name: str, namespace: Optional[str] = None
    ) -> Optional[Dict[str, Any]]:
        method, kwargs = self._target(kind, "get", namespace, name)
        try:
            obj = self._call(f"get {kind} {namespace or ''}/{name}", method, **kwargs)
        except _NotFound:
            return None
        return self._to_dict(kind, obj)

    def list(
        self,
        kind: ResourceKind,
        namespace: Optional[str] = None,
        label_selector: str = "",
    ) -> List[Dict[str, Any]]:
        action = f"list {kind}"
        method, kwargs = self._list_target(kind, namespace)
        if label_selector:
            kwargs["label_selector"] = label_selector
        try:
            result = self._call(action, method, **kwargs)
        except _NotFound:
            # CRD not installed.
            logger.debug(f"{action}: resource type not served")
            return []
        if not isinstance(result, dict):
            result = self._api_client.sanitize_for_serialization(result)
        return [self._to_dict(kind, item) for item in result.get("items") or []]

    def create(self, kind: ResourceKind, obj: Dict[str, Any]) -> Dict[str, Any]:
        name, namespace = self._identity(obj)
        method, kwargs = self._target(kind, "create", namespace)
        body = dict(obj, apiVersion=kind.api_version, kind=kind.kind)
        created = self._call(f"create {kind} {namespace or ''}/{name}", method, body=body, **kwargs)
        return self._to_dict(kind, created)

    def patch(self, kind: ResourceKind, obj: Dict[str, Any]) -> Dict[str, Any]:
        name, namespace = self._identity(obj)
        method, kwargs = self._target(kind, "patch", namespace, name)
        patched = self._call(
            f"patch {kind} {namespace or ''}/{name}",
            method,
            body=patch_body(obj),
            _content_type=MERGE_PATCH,
            **kwargs,
        )
        return self._to_dict(kind, patched)

    def delete(self, kind: ResourceKind, name: str, namespace: Optional[str] = None) -> bool:
        method, kwargs = self._target(kind, "delete", namespace, name)
        try:
            self._call(
                f"delete {kind} {namespace or ''}/{name}",
                method,
                body=client.V1DeleteOptions(propagation_policy="Background"),
                **kwargs,
            )
        except _NotFound:
            return False
        return True

    def update_status(self, kind: ResourceKind, obj: Dict[str, Any]) -> Dict[str, Any]:
        name, namespace = self._identity(obj)
        method, kwargs = self._target(kind, "status", namespace, name)
        body = dict(obj, apiVersion=kind.api_version, kind=kind.kind)
        updated = self._call(f"update {kind} {namespace or ''}/{name} status", method, body=body, **kwargs)
        return self._to_dict(kind, updated)

    def watch(
        self,
        kind: ResourceKind,
        resource_version: str = "",
        timeout_seconds: int = 300,
    ) -> Iterator[Tuple[str, Dict[str, Any]]]:
        method, kwargs = self._list_target(kind, None)
        if resource_version:
            kwargs["resource_version"] = resource_version
        watcher = watch.Watch()
        try:
            for event in watcher.stream(method, timeout_seconds=timeout_seconds, **kwargs):
                obj = event.get("raw_object")
                if isinstance(obj, dict):
                    yield str(event.get("type", "")), self._to_dict(kind, obj)
        except ApiException as e:
            if e.status == 410:
                raise WatchExpiredError(f"watch {kind}: resourceVersion {resource_version} expired") from e
            raise StoreError(f"watch {kind}: {e.status} {e.reason}") from e
        except HTTPError as e:
            raise StoreError(f"watch {kind}: {e}") from e
        finally:
            watcher.stop()
