"""Tests for the work queue, controllers, event sources and the manager loop."""

import threading
from unittest.mock import MagicMock

import pytest

from service_router.cli import Settings, create_reconcilers
from service_router.manager import (
    EVENT_ADDED,
    EVENT_DELETED,
    EVENT_MODIFIED,
    Controller,
    Manager,
    ResourcePoller,
    ResourceWatcher,
    WatchEvent,
    WorkQueue,
)
from service_router.reconciler import ObjectKey, Result
from service_router.store import (
    CLUSTER_IDENTITY,
    DNS_CONFIGURATION,
    DNS_ENDPOINT,
    DNS_POLICY,
    GATEWAY,
    ISTIO_GATEWAY,
    SERVICE,
    SERVICE_ROUTE,
    StoreError,
    WatchExpiredError,
)
from service_router.watches import dependency_edges

from helpers import (
    condition,
    make_cluster_identity,
    make_dns_configuration,
    make_dns_policy,
    make_gateway,
    make_lb_service,
    make_service_route,
    phase,
    set_lb_ip,
)


class FakeClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


# =============================================================================
# Work Queue
# =============================================================================


class TestWorkQueue:
    """Tests for WorkQueue."""

    def test_fifo_with_dedup(self) -> None:
        queue = WorkQueue()
        queue.add("a")
        queue.add("b")
        queue.add("a")

        assert len(queue) == 2
        assert queue.get(timeout=0) == "a"
        assert queue.get(timeout=0) == "b"
        assert queue.get(timeout=0) is None

    def test_key_in_flight_is_deferred_until_done(self) -> None:
        """Test a key is never handed out twice concurrently."""
        queue = WorkQueue()
        queue.add("a")
        key = queue.get(timeout=0)

        queue.add("a")
        assert queue.get(timeout=0) is None

        queue.done(key)
        assert queue.get(timeout=0) == "a"

    def test_done_without_readd_drops_key(self) -> None:
        queue = WorkQueue()
        queue.add("a")
        queue.done(queue.get(timeout=0))

        assert len(queue) == 0

    def test_add_after_waits_for_clock(self) -> None:
        clock = FakeClock()
        queue = WorkQueue(clock=clock)
        queue.add_after("a", 30)

        assert queue.delayed_count == 1
        assert queue.get(timeout=0) is None

        clock.now += 30
        assert queue.get(timeout=0) == "a"
        assert queue.delayed_count == 0

    def test_repeated_add_after_keeps_one_deadline(self) -> None:
        """Test periodic requeues of the same key do not pile up."""
        clock = FakeClock()
        queue = WorkQueue(clock=clock)
        for _ in range(5):
            queue.add_after("a", 30)

        assert queue.delayed_count == 1

        clock.now += 30
        assert queue.get(timeout=0) == "a"
        queue.done("a")
        assert queue.get(timeout=0) is None

    def test_earlier_deadline_replaces_later(self) -> None:
        clock = FakeClock()
        queue = WorkQueue(clock=clock)
        queue.add_after("a", 30)
        queue.add_after("a", 5)

        clock.now += 5
        assert queue.get(timeout=0) == "a"
        queue.done("a")
        assert queue.delayed_count == 0

        clock.now += 25
        assert queue.get(timeout=0) is None

    def test_later_deadline_is_ignored(self) -> None:
        clock = FakeClock()
        queue = WorkQueue(clock=clock)
        queue.add_after("a", 5)
        queue.add_after("a", 30)

        clock.now += 5
        assert queue.get(timeout=0) == "a"
        assert queue.delayed_count == 0

    def test_non_positive_delay_adds_immediately(self) -> None:
        queue = WorkQueue()
        queue.add_after("a", 0)
        assert queue.get(timeout=0) == "a"

    def test_shutdown_unblocks_and_rejects(self) -> None:
        queue = WorkQueue()
        queue.shutdown()
        queue.add("a")

        assert queue.get(timeout=1) is None


# =============================================================================
# Controller
# =============================================================================


class TestController:
    """Tests for Controller.process_next."""

    def _controller(self, reconciler, clock=None):
        reconciler.name = "Test"
        return Controller(reconciler, WorkQueue("Test", clock=clock or FakeClock()))

    def test_success_without_requeue(self) -> None:
        reconciler = MagicMock()
        reconciler.reconcile.return_value = Result()
        controller = self._controller(reconciler)
        controller.queue.add(ObjectKey("ns", "a"))

        assert controller.process_next(timeout=0) is True
        assert controller.process_next(timeout=0) is False
        assert controller.queue.delayed_count == 0

    def test_requeue_after_is_honoured(self) -> None:
        reconciler = MagicMock()
        reconciler.reconcile.return_value = Result(requeue_after=30)
        controller = self._controller(reconciler)
        controller.queue.add("a")

        controller.process_next(timeout=0)

        assert controller.queue.delayed_count == 1

    def test_conflict_requeue_uses_short_delay(self) -> None:
        clock = FakeClock()
        reconciler = MagicMock()
        reconciler.reconcile.return_value = Result(requeue=True)
        controller = self._controller(reconciler, clock)
        controller.queue.add("a")

        controller.process_next(timeout=0)
        clock.now += 1

        assert controller.queue.get(timeout=0) == "a"

    def test_failure_backs_off_exponentially(self) -> None:
        clock = FakeClock()
        reconciler = MagicMock()
        reconciler.reconcile.side_effect = StoreError("boom")
        controller = self._controller(reconciler, clock)
        controller.queue.add("a")

        controller.process_next(timeout=0)
        clock.now += 1
        controller.process_next(timeout=0)
        clock.now += 1
        assert controller.process_next(timeout=0) is False

        clock.now += 1
        assert controller.process_next(timeout=0) is True

    def test_backoff_is_capped_and_reset_on_success(self) -> None:
        reconciler = MagicMock()
        controller = self._controller(reconciler)

        delays = [controller.backoff("a") for _ in range(12)]
        assert delays[:4] == [1, 2, 4, 8]
        assert delays[-1] == 300

        reconciler.reconcile.return_value = Result()
        controller.queue.add("a")
        controller.process_next(timeout=0)
        assert controller.backoff("a") == 1


# =============================================================================
# Event Sources and Dispatch
# =============================================================================


class TestResourcePoller:
    """Tests for ResourcePoller."""

    def test_added_modified_deleted(self, store) -> None:
        poller = ResourcePoller(store, [GATEWAY])
        store.create(GATEWAY, make_gateway())

        assert [e.type for e in poller.poll()] == [EVENT_ADDED]
        assert poller.poll() == []

        store.patch(GATEWAY, make_gateway(target_postfix="internal"))
        assert [e.type for e in poller.poll()] == [EVENT_MODIFIED]

        store.delete(GATEWAY, "default-gateway", "istio-system")
        events = poller.poll()
        assert [e.type for e in events] == [EVENT_DELETED]
        assert events[0].obj["metadata"]["name"] == "default-gateway"

    def test_list_failure_keeps_snapshot(self, store) -> None:
        """Test a failed list does not look like every object was deleted."""
        poller = ResourcePoller(store, [GATEWAY])
        store.create(GATEWAY, make_gateway())
        poller.poll()

        store.fail_list.add(GATEWAY)
        assert poller.poll() == []

        store.fail_list.clear()
        assert poller.poll() == []


class TestResourceWatcher:
    """Tests for ResourceWatcher."""

    def test_resumes_from_last_version_and_relists_after_expiry(self) -> None:
        stop = threading.Event()
        versions = []
        received = []

        def stream(kind, resource_version, timeout_seconds):
            versions.append(resource_version)
            if len(versions) == 1:
                yield "ADDED", {"metadata": {"name": "gw", "resourceVersion": "5"}}
                yield "BOOKMARK", {"metadata": {"resourceVersion": "7"}}
            elif len(versions) == 2:
                raise WatchExpiredError("too old resource version: 7")
            else:
                stop.set()

        store = MagicMock()
        store.watch.side_effect = stream

        ResourceWatcher(store, GATEWAY, received.append, stop, timeout_seconds=60).run()

        assert versions == ["", "7", ""]
        assert [(e.type, e.kind) for e in received] == [(EVENT_ADDED, GATEWAY)]
        store.watch.assert_called_with(GATEWAY, "", 60)

    def test_failures_back_off_exponentially(self) -> None:
        stop = MagicMock()
        stop.is_set.side_effect = [False, False, False, True]
        store = MagicMock()
        store.watch.side_effect = [StoreError("connection refused"), StoreError("connection refused"), iter([])]

        ResourceWatcher(store, SERVICE, MagicMock(), stop, backoff_base=1.0).run()

        assert [c.args[0] for c in stop.wait.call_args_list] == [1.0, 2.0]
        assert store.watch.call_count == 3

    def test_events_reach_manager_queues(self, store) -> None:
        manager = _manager(store)
        store.create(GATEWAY, make_gateway())
        source = MagicMock()
        source.watch.return_value = iter([("MODIFIED", make_gateway())])

        handled = ResourceWatcher(source, GATEWAY, manager.dispatch, threading.Event()).watch_once()

        assert handled == 1
        assert len(manager.controllers["Gateway"].queue) == 1
        assert len(manager.controllers["IngressDNS"].queue) == 1


def _manager(store) -> Manager:
    settings = Settings()
    return Manager(store, create_reconcilers(store, settings), dependency_edges(settings.default_gateway_namespace))


def test_dispatch_routes_event_to_targets(store) -> None:
    manager = _manager(store)
    store.create(DNS_POLICY, make_dns_policy())
    identity = store.create(CLUSTER_IDENTITY, make_cluster_identity())

    enqueued = manager.dispatch(WatchEvent(EVENT_ADDED, CLUSTER_IDENTITY, identity))

    assert ("ClusterIdentity", ObjectKey("", "cluster")) in enqueued
    assert ("DNSPolicy", ObjectKey("team-a", "policy")) in enqueued
    assert ("IngressDNS", ObjectKey("", "global")) in enqueued
    assert len(manager.controllers["DNSPolicy"].queue) == 1


# =============================================================================
# End to End
# =============================================================================


@pytest.fixture
def fleet(store):
    """A full single-namespace setup, converged."""
    store.load([
        make_cluster_identity(),
        make_dns_configuration(),
        make_dns_policy(),
        make_gateway(),
        make_service_route(),
        make_lb_service(),
    ])
    manager = _manager(store)
    manager.run_once()
    return manager


class TestRunOnce:
    """Tests for Manager.run_once convergence."""

    def test_converges_everything(self, fleet, store) -> None:
        assert phase(store.get(CLUSTER_IDENTITY, "cluster")) == "Active"
        assert phase(store.get(DNS_CONFIGURATION, "dns")) == "Active"
        assert store.get(DNS_POLICY, "policy", "team-a")["status"]["activeControllers"] == ["a", "b", "c"]
        assert phase(store.get(GATEWAY, "default-gateway", "istio-system")) == "Active"
        assert phase(store.get(SERVICE_ROUTE, "auth", "team-a")) == "Active"
        assert store.get(ISTIO_GATEWAY, "default-gateway", "istio-system") is not None

        route_records = store.list(DNS_ENDPOINT, "team-a")
        infra_records = store.list(DNS_ENDPOINT, "aks-istio-ingress")
        assert len(route_records) == 3
        assert len(infra_records) == 5

    def test_second_run_is_quiet(self, fleet, store) -> None:
        store.reset_calls()

        assert fleet.run_once() == 0
        assert store.mutation_count == 0

    def test_policy_turning_inactive_withdraws_records(self, fleet, store) -> None:
        policy = store.get(DNS_POLICY, "policy", "team-a")
        policy["spec"]["sourceCluster"] = "aks02"
        store.patch(DNS_POLICY, policy)

        fleet.run_once()

        assert store.list(DNS_ENDPOINT, "team-a") == []
        route = store.get(SERVICE_ROUTE, "auth", "team-a")
        assert condition(route, "Ready")["reason"] == "DNSPolicyInactive"
        assert phase(store.get(DNS_POLICY, "policy", "team-a")) == "Inactive"

    def test_adopting_a_region_adds_records(self, fleet, store) -> None:
        identity = store.get(CLUSTER_IDENTITY, "cluster")
        identity["spec"]["adoptsRegions"] = ["frc"]
        store.patch(CLUSTER_IDENTITY, identity)

        fleet.run_once()

        names = sorted(r["metadata"]["name"] for r in store.list(DNS_ENDPOINT, "team-a"))
        assert names == ["auth-a", "auth-b", "auth-c", "auth-e"]

    def test_identity_domain_change_updates_gateway_hosts(self, fleet, store) -> None:
        identity = store.get(CLUSTER_IDENTITY, "cluster")
        identity["spec"]["domain"] = "new.example.com"
        store.patch(CLUSTER_IDENTITY, identity)

        fleet.run_once()

        host = "auth-ns-d-dev-nid-02.new.example.com"
        names = {r["spec"]["endpoints"][0]["dnsName"] for r in store.list(DNS_ENDPOINT, "team-a")}
        assert names == {host}
        istio = store.get(ISTIO_GATEWAY, "default-gateway", "istio-system")
        assert istio["spec"]["servers"][0]["hosts"] == [host]

    def test_deleting_route_cleans_up(self, fleet, store) -> None:
        store.delete(SERVICE_ROUTE, "auth", "team-a")

        fleet.run_once()

        assert store.list(DNS_ENDPOINT, "team-a") == []
        assert store.get(ISTIO_GATEWAY, "default-gateway", "istio-system") is None

    def test_load_balancer_ip_arrives_later(self, store) -> None:
        store.load([
            make_cluster_identity(),
            make_dns_configuration(),
            make_gateway(),
            make_lb_service(ip=""),
        ])
        manager = _manager(store)
        manager.run_once()
        gateway = store.get(GATEWAY, "default-gateway", "istio-system")
        assert condition(gateway, "DNSReady")["status"] == "False"
        assert store.list(DNS_ENDPOINT) == []

        set_lb_ip(store, make_lb_service(), "10.0.0.20")
        manager.run_once()

        gateway = store.get(GATEWAY, "default-gateway", "istio-system")
        assert condition(gateway, "DNSReady")["status"] == "True"
        assert gateway["status"]["loadBalancerIP"] == "10.0.0.20"
        targets = {r["spec"]["endpoints"][0]["targets"][0] for r in store.list(DNS_ENDPOINT)}
        assert targets == {"10.0.0.20"}

    def test_service_events_without_istio_label_are_ignored(self, fleet, store) -> None:
        store.create(SERVICE, {"metadata": {"name": "web", "namespace": "team-a"}, "spec": {"type": "ClusterIP"}})
        store.reset_calls()

        assert fleet.run_once() == 0
