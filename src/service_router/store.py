"""Resource store interface and the in-memory implementation.

Reconcilers only ever talk to a ``ResourceStore``. Resources are plain
Kubernetes-style dicts (``apiVersion``, ``kind``, ``metadata``, ``spec``,
``status``). Two implementations exist:

    - InMemoryResourceStore: process-local store used for manifest rendering
      (STORE_BACKEND=manifests) and by the test-suite.
    - KubernetesResourceStore (service_router.kube): the API server through
      the official kubernetes client.

Absence is reported by value, not by exception: ``get`` returns None and
``delete`` returns False when the resource does not exist.
"""

from __future__ import annotations

import copy
import itertools
import logging
import threading
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, List, Optional, Tuple

logger = logging.getLogger(__name__)


# =============================================================================
# Errors
# =============================================================================


class StoreError(Exception):
    """A store call failed for a reason other than absence."""


class ConflictError(StoreError):
    """Optimistic-concurrency failure: the written resourceVersion was stale."""


class WatchExpiredError(StoreError):
    """The watch resourceVersion is too old; restart from a fresh list."""


# =============================================================================
# Resource Kinds
# =============================================================================


@dataclass(frozen=True)
class ResourceKind:
    """Identifies one resource type in the store."""

    group: str
    version: str
    plural: str
    kind: str
    namespaced: bool = True

    @property
    def api_version(self) -> str:
        return f"{self.group}/{self.version}" if self.group else self.version

    def __str__(self) -> str:
        return self.kind


CLUSTER_GROUP = "cluster.router.io"
ROUTING_GROUP = "routing.router.io"

CLUSTER_IDENTITY = ResourceKind(
    CLUSTER_GROUP, "v1alpha1", "clusteridentities", "ClusterIdentity", namespaced=False
)
DNS_CONFIGURATION = ResourceKind(
    CLUSTER_GROUP, "v1alpha1", "dnsconfigurations", "DNSConfiguration", namespaced=False
)
DNS_POLICY = ResourceKind(ROUTING_GROUP, "v1alpha1", "dnspolicies", "DNSPolicy")
GATEWAY = ResourceKind(ROUTING_GROUP, "v1alpha1", "gateways", "Gateway")
SERVICE_ROUTE = ResourceKind(ROUTING_GROUP, "v1alpha1", "serviceroutes", "ServiceRoute")
ISTIO_GATEWAY = ResourceKind("networking.istio.io", "v1", "gateways", "Gateway")
DNS_ENDPOINT = ResourceKind("externaldns.k8s.io", "v1alpha1", "dnsendpoints", "DNSEndpoint")
SERVICE = ResourceKind("", "v1", "services", "Service")

ALL_KINDS: Tuple[ResourceKind, ...] = (
    CLUSTER_IDENTITY,
    DNS_CONFIGURATION,
    DNS_POLICY,
    GATEWAY,
    SERVICE_ROUTE,
    ISTIO_GATEWAY,
    DNS_ENDPOINT,
    SERVICE,
)


def kind_for(api_version: str, kind: str) -> Optional[ResourceKind]:
    """Look up a known ResourceKind by apiVersion and kind."""
    for candidate in ALL_KINDS:
        if candidate.api_version == api_version and candidate.kind == kind:
            return candidate
    return None


# =============================================================================
# Label Selectors
# =============================================================================


def format_label_selector(labels: Dict[str, Optional[str]]) -> str:
    """Render ``{"a": "b", "c": None}`` as ``a=b,c`` (None means "has label")."""
    parts = []
    for key, value in sorted(labels.items()):
        parts.append(key if value is None else f"{key}={value}")
    return ",".join(parts)


def matches_label_selector(labels: Dict[str, str], selector: str) -> bool:
    """Evaluate an equality/existence label selector against *labels*.

    Supports ``key=value``, ``key==value``, ``key!=value`` and bare ``key``
    terms joined by commas. An empty selector matches everything.
    """
    for raw_term in (selector or "").split(","):
        term = raw_term.strip()
        if not term:
            continue
        if "!=" in term:
            key, value = (p.strip() for p in term.split("!=", 1))
            if labels.get(key) == value:
                return False
        elif "=" in term:
            key, value = (p.strip() for p in term.replace("==", "=").split("=", 1))
            if labels.get(key) != value:
                return False
        elif term not in labels:
            return False
    return True


# =============================================================================
# Store Interface
# =============================================================================


class ResourceStore(ABC):
    """Declarative resource store the reconcilers are clients of."""

    @property
    @abstractmethod
    def name(self) -> str:
        pass

    @abstractmethod
    def test_connection(self) -> bool:
        pass

    @abstractmethod
    def get(
        self, kind: ResourceKind, name: str, namespace: Optional[str] = None
    ) -> Optional[Dict[str, Any]]:
        """Return the resource, or None if it does not exist."""
        pass

    @abstractmethod
    def list(
        self,
        kind: ResourceKind,
        namespace: Optional[str] = None,
        label_selector: str = "",
    ) -> List[Dict[str, Any]]:
        """List resources; namespace=None lists across all namespaces."""
        pass

    @abstractmethod
    def create(self, kind: ResourceKind, obj: Dict[str, Any]) -> Dict[str, Any]:
        pass

    @abstractmethod
    def patch(self, kind: ResourceKind, obj: Dict[str, Any]) -> Dict[str, Any]:
        """Merge-patch labels, annotations, owner references and spec of *obj*."""
        pass

    @abstractmethod
    def delete(self, kind: ResourceKind, name: str, namespace: Optional[str] = None) -> bool:
        """Delete the resource. Returns False when it was already gone."""
        pass

    @abstractmethod
    def update_status(self, kind: ResourceKind, obj: Dict[str, Any]) -> Dict[str, Any]:
        """Replace the status subresource. Raises ConflictError on a stale resourceVersion."""
        pass

    def watch(
        self,
        kind: ResourceKind,
        resource_version: str = "",
        timeout_seconds: int = 300,
    ) -> Iterator[Tuple[str, Dict[str, Any]]]:
        """Stream ``(event type, object)`` pairs for *kind* across all namespaces.

        Without *resource_version* the stream starts with an ADDED event for
        every existing object. Raises WatchExpiredError when the version is too
        old. Stores without a change feed do not implement this.
        """
        raise NotImplementedError(f"{self.name} store does not support watch")


def patch_body(obj: Dict[str, Any]) -> Dict[str, Any]:
    """Build the merge-patch body used for derived resources."""
    meta = obj.get("metadata") or {}
    body: Dict[str, Any] = {"metadata": {}}
    for field in ("labels", "annotations", "ownerReferences"):
        if field in meta:
            body["metadata"][field] = meta[field]
    if "spec" in obj:
        body["spec"] = obj["spec"]
    return body


def _merge_patch(target: Any, patch: Any) -> Any:
    """Apply an RFC 7386 JSON merge patch."""
    if not isinstance(patch, dict):
        return copy.deepcopy(patch)
    result = dict(target) if isinstance(target, dict) else {}
    for key, value in patch.items():
        if value is None:
            result.pop(key, None)
        else:
            result[key] = _merge_patch(result.get(key), value)
    return result


def _now() -> str:
    return datetime.now(timezone.utc).replace(microsecond=0).isoformat().replace("+00:00", "Z")


# =============================================================================
# In-Memory Store
# =============================================================================


class InMemoryResourceStore(ResourceStore):
    """Thread-safe, process-local resource store.

    Emulates the parts of the API server the reconcilers rely on:

        - uid / resourceVersion / generation / creationTimestamp bookkeeping
          (generation only moves when spec changes)
        - optimistic concurrency on status writes
        - owner-reference cascading deletion

    All returned objects are deep copies; callers never hold references
    into the store.
    """

    def __init__(self) -> None:
        self._objects: Dict[Tuple[ResourceKind, str, str], Dict[str, Any]] = {}
        self._lock = threading.RLock()
        self._versions = itertools.count(1)

    @property
    def name(self) -> str:
        return "InMemory"

    def test_connection(self) -> bool:
        return True

    # -- helpers ---------------------------------------------------------

    @staticmethod
    def _key(kind: ResourceKind, name: str, namespace: Optional[str]) -> Tuple[ResourceKind, str, str]:
        return (kind, (namespace or "") if kind.namespaced else "", name)

    def _next_version(self) -> str:
        return str(next(self._versions))

    def load(self, objects: List[Dict[str, Any]]) -> int:
        """Create every object whose apiVersion/kind is known. Returns the count loaded."""
        loaded = 0
        for obj in objects:
            if not isinstance(obj, dict):
                continue
            kind = kind_for(str(obj.get("apiVersion") or ""), str(obj.get("kind") or ""))
            if kind is None:
                logger.warning(
                    f"Skipping manifest with unknown kind {obj.get('apiVersion')}/{obj.get('kind')}"
                )
                continue
            self.create(kind, obj)
            loaded += 1
        return loaded

    def dump(self, kinds: Tuple[ResourceKind, ...] = ALL_KINDS) -> List[Dict[str, Any]]:
        """Return every stored object of the given kinds, sorted for stable output."""
        with self._lock:
            items = [
                (kinds.index(kind), ns, name, copy.deepcopy(obj))
                for (kind, ns, name), obj in self._objects.items()
                if kind in kinds
            ]
        return [obj for _, _, _, obj in sorted(items, key=lambda i: i[:3])]

    # -- ResourceStore ---------------------------------------------------

    def get(
        self, kind: ResourceKind, name: str, namespace: Optional[str] = None
    ) -> Optional[Dict[str, Any]]:
        with self._lock:
            obj = self._objects.get(self._key(kind, name, namespace))
            return copy.deepcopy(obj) if obj is not None else None

    def list(
        self,
        kind: ResourceKind,
        namespace: Optional[str] = None,
        label_selector: str = "",
    ) -> List[Dict[str, Any]]:
        with self._lock:
            result = []
            for (obj_kind, obj_ns, _), obj in self._objects.items():
                if obj_kind != kind:
                    continue
                if namespace is not None and kind.namespaced and obj_ns != namespace:
                    continue
                labels = (obj.get("metadata") or {}).get("labels") or {}
                if not matches_label_selector(labels, label_selector):
                    continue
                result.append(copy.deepcopy(obj))
            return result

    def create(self, kind: ResourceKind, obj: Dict[str, Any]) -> Dict[str, Any]:
        stored = copy.deepcopy(obj)
        meta = stored.setdefault("metadata", {})
        name = str(meta.get("name") or "")
        if not name:
            raise StoreError(f"{kind} without metadata.name")
        namespace = str(meta.get("namespace") or "") if kind.namespaced else ""
        if kind.namespaced and not namespace:
            raise StoreError(f"{kind} {name} without metadata.namespace")
        key = self._key(kind, name, namespace)
        with self._lock:
            if key in self._objects:
                raise ConflictError(f"{kind} {namespace}/{name} already exists")
            stored["apiVersion"] = kind.api_version
            stored["kind"] = kind.kind
            if not kind.namespaced:
                meta.pop("namespace", None)
            meta.setdefault("uid", str(uuid.uuid4()))
            meta.setdefault("creationTimestamp", _now())
            meta["generation"] = 1
            meta["resourceVersion"] = self._next_version()
            self._objects[key] = stored
            return copy.deepcopy(stored)

    def patch(self, kind: ResourceKind, obj: Dict[str, Any]) -> Dict[str, Any]:
        meta = obj.get("metadata") or {}
        key = self._key(kind, str(meta.get("name") or ""), meta.get("namespace"))
        with self._lock:
            current = self._objects.get(key)
            if current is None:
                raise StoreError(f"{kind} {key[1]}/{key[2]} not found")
            patched = _merge_patch(current, patch_body(obj))
            if patched.get("spec") != current.get("spec"):
                patched["metadata"]["generation"] = int(current["metadata"].get("generation", 1)) + 1
            if patched != current:
                patched["metadata"]["resourceVersion"] = self._next_version()
                self._objects[key] = patched
            return copy.deepcopy(self._objects[key])

    def delete(self, kind: ResourceKind, name: str, namespace: Optional[str] = None) -> bool:
        with self._lock:
            obj = self._objects.pop(self._key(kind, name, namespace), None)
            if obj is None:
                return False
            self._cascade(obj["metadata"].get("uid"))
            return True

    def _cascade(self, owner_uid: Optional[str]) -> None:
        if not owner_uid:
            return
        dependents = [
            key
            for key, obj in self._objects.items()
            if any(
                ref.get("uid") == owner_uid
                for ref in (obj.get("metadata") or {}).get("ownerReferences") or []
            )
        ]
        for key in dependents:
            obj = self._objects.pop(key, None)
            if obj is not None:
                self._cascade(obj["metadata"].get("uid"))

    def update_status(self, kind: ResourceKind, obj: Dict[str, Any]) -> Dict[str, Any]:
        meta = obj.get("metadata") or {}
        key = self._key(kind, str(meta.get("name") or ""), meta.get("namespace"))
        with self._lock:
            current = self._objects.get(key)
            if current is None:
                raise StoreError(f"{kind} {key[1]}/{key[2]} not found")
            expected = meta.get("resourceVersion")
            if expected and expected != current["metadata"].get("resourceVersion"):
                raise ConflictError(
                    f"{kind} {key[1]}/{key[2]}: resourceVersion {expected} is stale"
                )
            current["status"] = copy.deepcopy(obj.get("status") or {})
            current["metadata"]["resourceVersion"] = self._next_version()
            return copy.deepcopy(current)
