"""ServiceRoute reconcile loop: one CNAME DNSEndpoint per active DNS controller."""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from service_router import consts
from service_router.cache import fetch_cluster_identity, fetch_dns_configuration
from service_router.models import (
    ClusterIdentity,
    DNSConfiguration,
    ExternalDNSController,
    GatewaySpec,
    ServiceRouteSpec,
    creation_order,
    name_of,
    namespace_of,
    source_host,
    target_host,
)
from service_router.reconciler import ObjectKey, Reconciler, Result, needs_patch, owner_reference
from service_router.store import (
    DNS_ENDPOINT,
    DNS_POLICY,
    GATEWAY,
    SERVICE_ROUTE,
    ResourceStore,
    format_label_selector,
)

logger = logging.getLogger(__name__)

INACTIVE_POLICY_MESSAGE = (
    "DNSPolicy is not active for this cluster (sourceRegion/sourceCluster mismatch). "
    "DNSEndpoints have been removed to prevent conflicts."
)


def route_selector(namespace: str, name: str) -> str:
    """Label selector matching every DNSEndpoint generated for one route."""
    return format_label_selector(
        {
            consts.MANAGED_BY_LABEL: consts.MANAGED_BY_VALUE,
            consts.LABEL_SERVICE_ROUTE: name,
            consts.LABEL_SOURCE_NAMESPACE: namespace,
        }
    )


def delete_route_endpoints(store: ResourceStore, namespace: str, name: str) -> int:
    """Delete the route's DNSEndpoints. Returns how many were removed."""
    deleted = 0
    for endpoint in store.list(DNS_ENDPOINT, namespace, route_selector(namespace, name)):
        if store.delete(DNS_ENDPOINT, name_of(endpoint), namespace):
            logger.info(f"Deleted DNSEndpoint {namespace}/{name_of(endpoint)} of ServiceRoute {name}")
            deleted += 1
    return deleted


def build_route_endpoint(
    route: Dict[str, Any],
    controller: ExternalDNSController,
    source: str,
    target: str,
) -> Dict[str, Any]:
    name = name_of(route)
    namespace = namespace_of(route)
    return {
        "apiVersion": DNS_ENDPOINT.api_version,
        "kind": DNS_ENDPOINT.kind,
        "metadata": {
            # One record per controller so controllers sharing a region never collide.
            "name": f"{name}-{controller.name}",
            "namespace": namespace,
            "labels": {
                consts.MANAGED_BY_LABEL: consts.MANAGED_BY_VALUE,
                consts.LABEL_CONTROLLER: controller.name,
                consts.LABEL_REGION: controller.region,
                consts.LABEL_SERVICE_ROUTE: name,
                consts.LABEL_SOURCE_NAMESPACE: namespace,
            },
            "annotations": {
                # Keyed by region, not controller name, so a region's agent can take over.
                consts.EXTERNAL_DNS_CONTROLLER_ANNOTATION: f"external-dns-{controller.region}",
            },
            "ownerReferences": [owner_reference(route)],
        },
        "spec": {
            "endpoints": [
                {"dnsName": source, "recordType": "CNAME", "targets": [target]},
            ],
        },
    }


def desired_route_endpoints(
    route: Dict[str, Any],
    active_controllers: List[str],
    gateway: GatewaySpec,
    identity: ClusterIdentity,
    config: DNSConfiguration,
) -> List[Dict[str, Any]]:
    """Build the route's DNSEndpoints; controllers missing from the topology are skipped."""
    spec = ServiceRouteSpec.from_resource(route)
    source = source_host(spec, identity)
    target = target_host(identity, gateway.target_postfix)
    controllers = config.by_name()
    return [
        build_route_endpoint(route, controllers[name], source, target)
        for name in active_controllers
        if name in controllers
    ]


class ServiceRouteReconciler(Reconciler):
    kind = SERVICE_ROUTE
    name = "ServiceRoute"

    def __init__(
        self,
        store: ResourceStore,
        default_gateway_namespace: str = consts.DEFAULT_GATEWAY_NAMESPACE,
        **kwargs: Any,
    ):
        super().__init__(store, **kwargs)
        self.default_gateway_namespace = default_gateway_namespace

    def reconcile(self, key: ObjectKey) -> Result:
        obj = self.store.get(SERVICE_ROUTE, key.name, key.namespace)
        if obj is None:
            deleted = delete_route_endpoints(self.store, key.namespace, key.name)
            logger.info(f"ServiceRoute {key} deleted, removed {deleted} DNSEndpoint(s)")
            return Result()

        spec = ServiceRouteSpec.from_resource(obj)
        error = spec.validate()
        if error:
            logger.error(f"ServiceRoute {key} validation failed: {error}")
            return self.update_phase(
                obj, consts.PHASE_FAILED, False, consts.REASON_VALIDATION_FAILED, error
            )

        policy = self._policy_for_namespace(key.namespace)
        if policy is None:
            logger.info(f"ServiceRoute {key}: no DNSPolicy in namespace {key.namespace}")
            return self.update_phase(
                obj,
                consts.PHASE_PENDING,
                False,
                consts.REASON_DNS_POLICY_NOT_FOUND,
                "Waiting for DNSPolicy to be configured in namespace",
            )

        policy_status = policy.get("status") or {}
        if not policy_status.get("active"):
            deleted = delete_route_endpoints(self.store, key.namespace, key.name)
            if deleted:
                logger.info(f"ServiceRoute {key}: DNSPolicy inactive, removed {deleted} DNSEndpoint(s)")
            return self.update_phase(
                obj,
                consts.PHASE_PENDING,
                False,
                consts.REASON_DNS_POLICY_INACTIVE,
                INACTIVE_POLICY_MESSAGE,
            )

        config = fetch_dns_configuration(self.topology_cache, self.store)
        if config is None:
            logger.info(f"ServiceRoute {key}: DNSConfiguration not available")
            return self.update_phase(
                obj,
                consts.PHASE_PENDING,
                False,
                consts.REASON_DNS_CONFIGURATION_NOT_AVAILABLE,
                "Waiting for DNSConfiguration to be configured",
            )

        identity = fetch_cluster_identity(self.identity_cache, self.store)
        if identity is None:
            logger.info(f"ServiceRoute {key}: ClusterIdentity not available")
            return self.update_phase(
                obj,
                consts.PHASE_PENDING,
                False,
                consts.REASON_CLUSTER_IDENTITY_NOT_AVAILABLE,
                "Waiting for ClusterIdentity to be configured",
            )

        gateway_namespace = spec.resolved_gateway_namespace(self.default_gateway_namespace)
        gateway = self.store.get(GATEWAY, spec.gateway_name, gateway_namespace)
        if gateway is None:
            return self.update_phase(
                obj,
                consts.PHASE_PENDING,
                False,
                consts.REASON_GATEWAY_NOT_FOUND,
                f"Gateway {spec.gateway_name} not found in namespace {gateway_namespace}",
            )

        active_controllers = list(policy_status.get("activeControllers") or [])
        if not active_controllers:
            logger.error(f"ServiceRoute {key}: DNSPolicy {name_of(policy)} has no active controllers")
            return self.update_phase(
                obj,
                consts.PHASE_FAILED,
                False,
                consts.REASON_DNS_ENDPOINT_GENERATION_FAILED,
                "no active controllers in DNSPolicy",
            )

        desired = desired_route_endpoints(
            obj, active_controllers, GatewaySpec.from_resource(gateway), identity, config
        )
        self._sync_endpoints(key, desired)

        status = self.new_status(obj)
        if desired:
            status["dnsEndpoint"] = name_of(desired[0])
        else:
            status.pop("dnsEndpoint", None)
        result = self.update_phase(
            obj,
            consts.PHASE_ACTIVE,
            True,
            consts.REASON_RECONCILIATION_SUCCEEDED,
            "ServiceRoute is active",
            status=status,
        )
        logger.debug(f"ServiceRoute {key} reconciled with {len(desired)} DNSEndpoint(s)")
        return result

    def _policy_for_namespace(self, namespace: str) -> Optional[Dict[str, Any]]:
        policies = self.store.list(DNS_POLICY, namespace)
        if not policies:
            return None
        return min(policies, key=creation_order)

    def _sync_endpoints(self, key: ObjectKey, desired: List[Dict[str, Any]]) -> None:
        """Create missing, patch differing and delete stale DNSEndpoints of the route."""
        existing = {
            name_of(e): e
            for e in self.store.list(DNS_ENDPOINT, key.namespace, route_selector(key.namespace, key.name))
        }
        wanted = {name_of(e): e for e in desired}

        for name, endpoint in wanted.items():
            current = existing.get(name)
            if current is None:
                self.store.create(DNS_ENDPOINT, endpoint)
                logger.info(f"Created DNSEndpoint {key.namespace}/{name}")
            elif needs_patch(current, endpoint):
                self.store.patch(DNS_ENDPOINT, endpoint)
                logger.info(f"Updated DNSEndpoint {key.namespace}/{name}")

        for name in existing:
            if name not in wanted and self.store.delete(DNS_ENDPOINT, name, key.namespace):
                logger.info(f"Deleted stale DNSEndpoint {key.namespace}/{name}")
