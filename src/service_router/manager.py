"""Runtime: work queues, per-reconciler workers and the event sources.

ADDED / MODIFIED / DELETED events are routed through the dependency-edge
table to the work queue of every affected reconciler. Two sources feed
them:

    - ResourceWatcher: one long-running watch stream per kind (``run``).
    - ResourcePoller: lists every watched kind and diffs against the previous
      snapshot by ``resourceVersion`` (``run_once``).

A key is never reconciled by two workers at once: the queue keeps a
processing set and defers re-adds of an in-flight key until it is done.
"""

from __future__ import annotations

import heapq
import itertools
import logging
import threading
import time
from collections import deque
from dataclasses import dataclass
from typing import Any, Callable, Deque, Dict, Hashable, List, Optional, Set, Tuple

from service_router.models import name_of, namespace_of
from service_router.reconciler import ObjectKey, Reconciler
from service_router.store import ResourceKind, ResourceStore, StoreError, WatchExpiredError
from service_router.watches import DependencyEdge, watched_kinds

logger = logging.getLogger(__name__)

EVENT_ADDED = "ADDED"
EVENT_MODIFIED = "MODIFIED"
EVENT_DELETED = "DELETED"

REQUEUE_DELAY_SECONDS = 1.0
BACKOFF_BASE_SECONDS = 1.0
BACKOFF_MAX_SECONDS = 300.0
WATCH_BACKOFF_MAX_SECONDS = 30.0
WATCH_TIMEOUT_SECONDS = 300


# =============================================================================
# Work Queue
# =============================================================================


class WorkQueue:
    """Deduplicating FIFO with a processing set and delayed adds."""

    def __init__(self, name: str = "", clock: Callable[[], float] = time.monotonic):
        self.name = name
        self._clock = clock
        self._cond = threading.Condition()
        self._queue: Deque[Hashable] = deque()
        self._dirty: Set[Hashable] = set()
        self._processing: Set[Hashable] = set()
        self._delayed: List[Tuple[float, int, Hashable]] = []
        self._waiting: Dict[Hashable, float] = {}
        self._seq = itertools.count()
        self._shutting_down = False

    def __len__(self) -> int:
        with self._cond:
            return len(self._queue)

    @property
    def delayed_count(self) -> int:
        with self._cond:
            return len(self._waiting)

    def _add_locked(self, key: Hashable) -> None:
        if key in self._dirty:
            return
        self._dirty.add(key)
        if key in self._processing:
            # Picked up again by done().
            return
        self._queue.append(key)
        self._cond.notify()

    def _promote_locked(self) -> None:
        now = self._clock()
        while self._delayed and self._delayed[0][0] <= now:
            ready_at, _, key = heapq.heappop(self._delayed)
            if self._waiting.get(key) != ready_at:
                # Superseded or already fired.
                continue
            del self._waiting[key]
            self._add_locked(key)

    def add(self, key: Hashable) -> None:
        with self._cond:
            if not self._shutting_down:
                self._add_locked(key)

    def add_after(self, key: Hashable, delay: float) -> None:
        """Add *key* once *delay* seconds have passed.

        Only the earliest pending deadline per key is kept, so periodic
        requeues do not multiply.
        """
        if delay <= 0:
            self.add(key)
            return
        with self._cond:
            if self._shutting_down:
                return
            ready_at = self._clock() + delay
            pending = self._waiting.get(key)
            if pending is not None and pending <= ready_at:
                return
            self._waiting[key] = ready_at
            heapq.heappush(self._delayed, (ready_at, next(self._seq), key))
            self._cond.notify()

    def get(self, timeout: Optional[float] = None) -> Optional[Hashable]:
        """Pop the next ready key, waiting up to *timeout* seconds.

        Returns None on timeout or once the queue is shut down.
        """
        deadline = None if timeout is None else self._clock() + timeout
        with self._cond:
            while True:
                self._promote_locked()
                if self._queue:
                    key = self._queue.popleft()
                    self._dirty.discard(key)
                    self._processing.add(key)
                    return key
                if self._shutting_down:
                    return None

                wait: Optional[float] = None
                if self._delayed:
                    wait = max(0.0, self._delayed[0][0] - self._clock())
                if deadline is not None:
                    remaining = deadline - self._clock()
                    if remaining <= 0:
                        return None
                    wait = remaining if wait is None else min(wait, remaining)
                self._cond.wait(wait)

    def done(self, key: Hashable) -> None:
        with self._cond:
            self._processing.discard(key)
            if key in self._dirty:
                self._queue.append(key)
                self._cond.notify()

    def shutdown(self) -> None:
        with self._cond:
            self._shutting_down = True
            self._cond.notify_all()


# =============================================================================
# Controller
# =============================================================================


class Controller:
    """Feeds one reconciler from its work queue."""

    def __init__(
        self,
        reconciler: Reconciler,
        queue: Optional[WorkQueue] = None,
        requeue_delay: float = REQUEUE_DELAY_SECONDS,
        backoff_base: float = BACKOFF_BASE_SECONDS,
        backoff_max: float = BACKOFF_MAX_SECONDS,
    ):
        self.reconciler = reconciler
        self.queue = queue or WorkQueue(reconciler.name)
        self.requeue_delay = requeue_delay
        self.backoff_base = backoff_base
        self.backoff_max = backoff_max
        self._failures: Dict[Hashable, int] = {}
        self._thread: Optional[threading.Thread] = None
        self._stopped = threading.Event()

    @property
    def name(self) -> str:
        return self.reconciler.name

    def backoff(self, key: Hashable) -> float:
        """Record a failure for *key* and return the delay before its next attempt."""
        failures = self._failures.get(key, 0) + 1
        self._failures[key] = failures
        return min(self.backoff_base * (2 ** (failures - 1)), self.backoff_max)

    def process_next(self, timeout: Optional[float] = None) -> bool:
        """Reconcile one key. Returns False when no key was ready."""
        key = self.queue.get(timeout)
        if key is None:
            return False
        try:
            result = self.reconciler.reconcile(key)
        except Exception as e:
            delay = self.backoff(key)
            logger.error(f"{self.name} reconcile of {key} failed, retrying in {delay:.0f}s: {e}", exc_info=True)
            self.queue.add_after(key, delay)
        else:
            self._failures.pop(key, None)
            if result.requeue_after > 0:
                self.queue.add_after(key, result.requeue_after)
            elif result.requeue:
                self.queue.add_after(key, self.requeue_delay)
        finally:
            self.queue.done(key)
        return True

    def start(self) -> None:
        self._thread = threading.Thread(target=self._worker, name=f"{self.name}-worker", daemon=True)
        self._thread.start()

    def _worker(self) -> None:
        while not self._stopped.is_set():
            self.process_next(timeout=1.0)

    def stop(self, timeout: float = 10.0) -> None:
        self._stopped.set()
        self.queue.shutdown()
        if self._thread is not None:
            self._thread.join(timeout)


# =============================================================================
# Event Sources
# =============================================================================


@dataclass(frozen=True)
class WatchEvent:
    type: str
    kind: ResourceKind
    obj: Dict[str, Any]


class ResourcePoller:
    """Turns list calls into watch events by diffing snapshots."""

    def __init__(self, store: ResourceStore, kinds: List[ResourceKind]):
        self.store = store
        self.kinds = kinds
        self._snapshot: Dict[Tuple[ResourceKind, str, str], Dict[str, Any]] = {}

    @staticmethod
    def _changed(previous: Dict[str, Any], current: Dict[str, Any]) -> bool:
        version = (current.get("metadata") or {}).get("resourceVersion")
        if version:
            return (previous.get("metadata") or {}).get("resourceVersion") != version
        return previous != current

    def poll(self) -> List[WatchEvent]:
        events: List[WatchEvent] = []
        seen: Set[Tuple[ResourceKind, str, str]] = set()
        for kind in self.kinds:
            try:
                items = self.store.list(kind)
            except StoreError as e:
                logger.warning(f"Failed to list {kind}, keeping previous snapshot: {e}")
                seen.update(key for key in self._snapshot if key[0] == kind)
                continue

            for obj in items:
                key = (kind, namespace_of(obj), name_of(obj))
                seen.add(key)
                previous = self._snapshot.get(key)
                if previous is None:
                    events.append(WatchEvent(EVENT_ADDED, kind, obj))
                elif self._changed(previous, obj):
                    events.append(WatchEvent(EVENT_MODIFIED, kind, obj))
                self._snapshot[key] = obj

        for key in [k for k in self._snapshot if k not in seen]:
            events.append(WatchEvent(EVENT_DELETED, key[0], self._snapshot.pop(key)))
        return events


class ResourceWatcher:
    """Feeds watch events for one kind to *handler* until *stop* is set.

    Resumes from the last seen ``resourceVersion`` when a stream ends, and
    restarts from a fresh list (synthetic ADDED events) once that version
    has expired. Other failures back off exponentially.
    """

    def __init__(
        self,
        store: ResourceStore,
        kind: ResourceKind,
        handler: Callable[[WatchEvent], Any],
        stop: threading.Event,
        timeout_seconds: int = WATCH_TIMEOUT_SECONDS,
        backoff_base: float = BACKOFF_BASE_SECONDS,
        backoff_max: float = WATCH_BACKOFF_MAX_SECONDS,
    ):
        self.store = store
        self.kind = kind
        self.handler = handler
        self.stop_event = stop
        self.timeout_seconds = timeout_seconds
        self.backoff_base = backoff_base
        self.backoff_max = backoff_max
        self.resource_version = ""
        self._thread: Optional[threading.Thread] = None

    def watch_once(self) -> int:
        """Consume one watch stream. Returns the number of events handed on."""
        handled = 0
        for event_type, obj in self.store.watch(self.kind, self.resource_version, self.timeout_seconds):
            if self.stop_event.is_set():
                break
            version = (obj.get("metadata") or {}).get("resourceVersion")
            if version:
                self.resource_version = version
            if event_type in (EVENT_ADDED, EVENT_MODIFIED, EVENT_DELETED):
                self.handler(WatchEvent(event_type, self.kind, obj))
                handled += 1
        return handled

    def run(self) -> None:
        backoff = self.backoff_base
        while not self.stop_event.is_set():
            try:
                self.watch_once()
                backoff = self.backoff_base
            except WatchExpiredError as e:
                logger.info(f"{self.kind} watch expired, re-listing: {e}")
                self.resource_version = ""
            except StoreError as e:
                logger.error(f"{self.kind} watch failed, retrying in {backoff:.0f}s: {e}")
                self.stop_event.wait(backoff)
                backoff = min(backoff * 2, self.backoff_max)

    def start(self) -> None:
        self._thread = threading.Thread(target=self.run, name=f"{self.kind}-watch", daemon=True)
        self._thread.start()


# =============================================================================
# Manager
# =============================================================================


class Manager:
    """Wires reconcilers, the dependency-edge table and the event sources together."""

    def __init__(
        self,
        store: ResourceStore,
        reconcilers: List[Reconciler],
        edges: List[DependencyEdge],
        watch_timeout_seconds: int = WATCH_TIMEOUT_SECONDS,
    ):
        self.store = store
        self.edges = edges
        self.watch_timeout_seconds = watch_timeout_seconds
        self.controllers: Dict[str, Controller] = {r.name: Controller(r) for r in reconcilers}
        self.poller = ResourcePoller(store, watched_kinds(edges))
        self._stop = threading.Event()

    def dispatch(self, event: WatchEvent) -> List[Tuple[str, ObjectKey]]:
        """Enqueue every key the event maps to. Returns the (controller, key) pairs."""
        enqueued: List[Tuple[str, ObjectKey]] = []
        for edge in self.edges:
            if edge.source != event.kind:
                continue
            controller = self.controllers.get(edge.target)
            if controller is None:
                continue
            try:
                keys = edge.map_keys(self.store, event.obj)
            except StoreError as e:
                logger.warning(f"Failed to map {event.kind} event to {edge.target}: {e}")
                continue
            for key in keys:
                controller.queue.add(key)
                enqueued.append((edge.target, key))
        if enqueued:
            logger.debug(
                f"{event.type} {event.kind} {namespace_of(event.obj)}/{name_of(event.obj)} "
                f"-> {len(enqueued)} key(s)"
            )
        return enqueued

    def poll(self) -> int:
        events = self.poller.poll()
        for event in events:
            self.dispatch(event)
        return len(events)

    def drain(self, max_items: int = 1000) -> int:
        """Reconcile every ready key, controller by controller, without waiting."""
        processed = 0
        progress = True
        while progress and processed < max_items:
            progress = False
            for controller in self.controllers.values():
                while processed < max_items and controller.process_next(timeout=0):
                    processed += 1
                    progress = True
        return processed

    def run_once(self, max_rounds: int = 10) -> int:
        """Poll and drain until the store stops changing. Delayed requeues are ignored."""
        processed = 0
        for round_number in range(1, max_rounds + 1):
            events = self.poll()
            if not events:
                break
            count = self.drain()
            processed += count
            logger.debug(f"Round {round_number}: {events} event(s), {count} reconcile(s)")
        else:
            logger.warning(f"Resources still changing after {max_rounds} rounds")
        return processed

    def run(self) -> None:
        """Start workers and one watch stream per kind until stop() is called."""
        for controller in self.controllers.values():
            controller.start()
        watchers = [
            ResourceWatcher(self.store, kind, self.dispatch, self._stop, self.watch_timeout_seconds)
            for kind in watched_kinds(self.edges)
        ]
        for watcher in watchers:
            watcher.start()
        logger.info(
            f"Started {len(self.controllers)} controller(s): {', '.join(self.controllers)}; "
            f"watching {len(watchers)} kind(s)"
        )
        try:
            while not self._stop.is_set():
                self._stop.wait(1.0)
        finally:
            self._stop.set()
            for controller in self.controllers.values():
                controller.stop()

    def stop(self) -> None:
        self._stop.set()
