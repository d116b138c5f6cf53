"""Common plumbing shared by every reconcile loop."""

from __future__ import annotations

import copy
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, List, NamedTuple, Optional

from service_router.cache import IDENTITY_CACHE, TOPOLOGY_CACHE, SingletonCache
from service_router.conditions import set_status_condition
from service_router.consts import CONDITION_READY
from service_router.models import ClusterIdentity, DNSConfiguration, creation_order, name_of
from service_router.store import ConflictError, ResourceKind, ResourceStore

logger = logging.getLogger(__name__)


class ObjectKey(NamedTuple):
    """Work-queue key. Cluster-scoped resources use an empty namespace."""

    namespace: str
    name: str

    def __str__(self) -> str:
        return f"{self.namespace}/{self.name}" if self.namespace else self.name

    @classmethod
    def of(cls, obj: Dict[str, Any]) -> "ObjectKey":
        meta = obj.get("metadata") or {}
        return cls(str(meta.get("namespace") or ""), str(meta.get("name") or ""))


@dataclass(frozen=True)
class Result:
    """Outcome of a reconcile. Errors are raised, not returned."""

    requeue: bool = False
    requeue_after: float = 0.0


def owner_reference(obj: Dict[str, Any]) -> Dict[str, Any]:
    """Controller owner reference pointing at *obj*."""
    meta = obj.get("metadata") or {}
    return {
        "apiVersion": obj.get("apiVersion", ""),
        "kind": obj.get("kind", ""),
        "name": meta.get("name", ""),
        "uid": meta.get("uid", ""),
        "controller": True,
        "blockOwnerDeletion": True,
    }


def needs_patch(existing: Dict[str, Any], desired: Dict[str, Any]) -> bool:
    """True when *existing* lacks the spec, labels or annotations of *desired*.

    Extra labels and annotations set by others are left alone.
    """
    if existing.get("spec") != desired.get("spec"):
        return True
    existing_meta = existing.get("metadata") or {}
    desired_meta = desired.get("metadata") or {}
    for field in ("labels", "annotations"):
        have = existing_meta.get(field) or {}
        if any(have.get(k) != v for k, v in (desired_meta.get(field) or {}).items()):
            return True
    return False


def singleton_violation(store: ResourceStore, kind: ResourceKind, obj: Dict[str, Any]) -> Optional[str]:
    """Return an error message if *obj* is not the first instance of a singleton kind.

    Instances are ordered by creation time, then name; the first one wins.
    """
    items = store.list(kind)
    if len(items) <= 1:
        return None
    winner = min(items, key=creation_order)
    if name_of(winner) == name_of(obj):
        return None
    return (
        f"only one {kind} resource is allowed per cluster, found {len(items)} "
        f"({name_of(winner)} is authoritative)"
    )


class Reconciler(ABC):
    """Base class for the control loops.

    Subclasses set ``kind`` (the primary resource) and ``name`` (the
    work-queue / controller name) and implement ``reconcile``.
    """

    kind: ResourceKind
    name: str = ""

    def __init__(
        self,
        store: ResourceStore,
        identity_cache: SingletonCache[ClusterIdentity] = IDENTITY_CACHE,
        topology_cache: SingletonCache[DNSConfiguration] = TOPOLOGY_CACHE,
    ):
        self.store = store
        self.identity_cache = identity_cache
        self.topology_cache = topology_cache

    @abstractmethod
    def reconcile(self, key: ObjectKey) -> Result:
        pass

    # -- status helpers --------------------------------------------------

    @staticmethod
    def new_status(obj: Dict[str, Any]) -> Dict[str, Any]:
        status = copy.deepcopy(obj.get("status") or {})
        status.setdefault("conditions", [])
        return status

    @staticmethod
    def set_condition(
        status: Dict[str, Any],
        obj: Dict[str, Any],
        condition_type: str,
        ok: bool,
        reason: str,
        message: str,
    ) -> None:
        conditions: List[Dict[str, Any]] = status.setdefault("conditions", [])
        generation = int((obj.get("metadata") or {}).get("generation") or 0)
        set_status_condition(conditions, condition_type, ok, reason, message, generation)

    def write_status(self, obj: Dict[str, Any], status: Dict[str, Any], label: str) -> Result:
        """Persist *status* if it differs from what is stored.

        A conflicting concurrent write is not an error: the key is requeued.
        """
        key = ObjectKey.of(obj)
        if (obj.get("status") or {}) == status:
            logger.debug(f"{self.kind} {key} status unchanged ({label})")
            return Result()
        updated = dict(obj, status=status)
        try:
            self.store.update_status(self.kind, updated)
        except ConflictError:
            logger.info(f"{self.kind} {key} status update conflict ({label}), will retry")
            return Result(requeue=True)
        return Result()

    def update_phase(
        self,
        obj: Dict[str, Any],
        phase: str,
        ok: bool,
        reason: str,
        message: str,
        status: Optional[Dict[str, Any]] = None,
    ) -> Result:
        """Set ``phase`` and the Ready condition, then write the status."""
        if status is None:
            status = self.new_status(obj)
        status["phase"] = phase
        self.set_condition(status, obj, CONDITION_READY, ok, reason, message)
        return self.write_status(obj, status, phase)
