"""Process-wide caches for the two fleet singletons.

Lifecycle of each cache:

    init    empty (get() returns None, meaning "not configured")
    set     written only by the owning reconciler after a successful reconcile
    clear   written only by the owning reconciler when the singleton is deleted

Every other reconciler reads through ``fetch_cluster_identity`` /
``fetch_dns_configuration``: cache first, then the authoritative store,
without populating the cache.
"""

from __future__ import annotations

import dataclasses
import threading
from typing import Generic, Optional, TypeVar

from service_router.models import ClusterIdentity, DNSConfiguration, creation_order
from service_router.store import CLUSTER_IDENTITY, DNS_CONFIGURATION, ResourceStore


T = TypeVar("T")


# =============================================================================
# Locking
# =============================================================================


class ReadWriteLock:
    """Many readers or one writer. Waiting writers block new readers."""

    def __init__(self) -> None:
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writer = False
        self._writers_waiting = 0

    def acquire_read(self) -> None:
        with self._cond:
            while self._writer or self._writers_waiting:
                self._cond.wait()
            self._readers += 1

    def release_read(self) -> None:
        with self._cond:
            self._readers -= 1
            if self._readers == 0:
                self._cond.notify_all()

    def acquire_write(self) -> None:
        with self._cond:
            self._writers_waiting += 1
            while self._writer or self._readers:
                self._cond.wait()
            self._writers_waiting -= 1
            self._writer = True

    def release_write(self) -> None:
        with self._cond:
            self._writer = False
            self._cond.notify_all()


# =============================================================================
# Singleton Cache
# =============================================================================


class SingletonCache(Generic[T]):
    """Holds at most one frozen dataclass value; hands out copies."""

    def __init__(self, label: str) -> None:
        self.label = label
        self._value: Optional[T] = None
        self._lock = ReadWriteLock()

    def set(self, value: T) -> None:
        self._lock.acquire_write()
        try:
            self._value = value
        finally:
            self._lock.release_write()

    def get(self) -> Optional[T]:
        self._lock.acquire_read()
        try:
            if self._value is None:
                return None
            return dataclasses.replace(self._value)
        finally:
            self._lock.release_read()

    def clear(self) -> None:
        self._lock.acquire_write()
        try:
            self._value = None
        finally:
            self._lock.release_write()


IDENTITY_CACHE: SingletonCache[ClusterIdentity] = SingletonCache("ClusterIdentity")
TOPOLOGY_CACHE: SingletonCache[DNSConfiguration] = SingletonCache("DNSConfiguration")


# =============================================================================
# Cache-first Fetch
# =============================================================================


def fetch_cluster_identity(
    cache: SingletonCache[ClusterIdentity], store: ResourceStore
) -> Optional[ClusterIdentity]:
    """Return the cached identity, falling back to the store. None when unconfigured."""
    identity = cache.get()
    if identity is not None:
        return identity
    items = store.list(CLUSTER_IDENTITY)
    if not items:
        return None
    return ClusterIdentity.from_resource(min(items, key=creation_order))


def fetch_dns_configuration(
    cache: SingletonCache[DNSConfiguration], store: ResourceStore
) -> Optional[DNSConfiguration]:
    """Return the cached topology, falling back to the store. None when unconfigured."""
    config = cache.get()
    if config is not None:
        return config
    items = store.list(DNS_CONFIGURATION)
    if not items:
        return None
    return DNSConfiguration.from_resource(min(items, key=creation_order))
