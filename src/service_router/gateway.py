"""Gateway reconcile loop.

Aggregates the source hostnames of every ServiceRoute that references a
Gateway into one derived ingress-gateway resource, and reports whether the
ingress controller's load balancer has an address yet.

Status carries two independent conditions:

    Ready      the gateway has at least one host and its ingress gateway is in sync
    DNSReady   the ingress controller's LoadBalancer Service has an IP
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple

from service_router import consts
from service_router.cache import fetch_cluster_identity
from service_router.models import (
    ClusterIdentity,
    GatewaySpec,
    ServiceRouteSpec,
    is_load_balancer,
    load_balancer_ip,
    name_of,
    namespace_of,
    source_host,
)
from service_router.reconciler import ObjectKey, Reconciler, Result, owner_reference
from service_router.store import GATEWAY, ISTIO_GATEWAY, SERVICE, SERVICE_ROUTE, ResourceStore

logger = logging.getLogger(__name__)


# =============================================================================
# Load Balancer Lookup
# =============================================================================


def find_load_balancer_service(store: ResourceStore, controller: str) -> Optional[Dict[str, Any]]:
    """Return the first LoadBalancer Service labelled for *controller*, in any namespace."""
    selector = f"{consts.INGRESS_SELECTOR_KEY}={controller}"
    for service in store.list(SERVICE, label_selector=selector):
        if is_load_balancer(service):
            return service
    return None


def dns_readiness(store: ResourceStore, controller: str) -> Tuple[str, bool, str]:
    """Return (ip, ready, message) for the controller's load balancer."""
    service = find_load_balancer_service(store, controller)
    if service is None:
        return "", False, "LoadBalancer Service not found"
    ip = load_balancer_ip(service)
    if not ip:
        return "", False, "LoadBalancer IP pending"
    return ip, True, "DNSEndpoints provisioned"


# =============================================================================
# Host Aggregation
# =============================================================================


def routes_for_gateway(
    routes: Iterable[Dict[str, Any]], gateway_name: str, gateway_namespace: str, default_namespace: str
) -> List[ServiceRouteSpec]:
    """Specs of the routes that reference the gateway by name and resolved namespace."""
    matched = []
    for route in routes:
        spec = ServiceRouteSpec.from_resource(route)
        if spec.gateway_name != gateway_name:
            continue
        if spec.resolved_gateway_namespace(default_namespace) != gateway_namespace:
            continue
        matched.append(spec)
    return matched


def collect_hosts(routes: Iterable[ServiceRouteSpec], identity: ClusterIdentity) -> Set[str]:
    return {source_host(route, identity) for route in routes}


# =============================================================================
# Ingress Gateway
# =============================================================================


def desired_istio_gateway(gateway: Dict[str, Any], spec: GatewaySpec, hosts: Set[str]) -> Dict[str, Any]:
    name = name_of(gateway)
    return {
        "apiVersion": ISTIO_GATEWAY.api_version,
        "kind": ISTIO_GATEWAY.kind,
        "metadata": {
            "name": name,
            "namespace": namespace_of(gateway),
            "labels": {
                consts.MANAGED_BY_LABEL: consts.MANAGED_BY_VALUE,
                consts.LABEL_GATEWAY: name,
            },
            "ownerReferences": [owner_reference(gateway)],
        },
        "spec": {
            "selector": {consts.INGRESS_SELECTOR_KEY: spec.controller},
            "servers": [
                {
                    "port": {"number": consts.HTTPS_PORT, "name": "https", "protocol": "HTTPS"},
                    "hosts": sorted(hosts),
                    "tls": {"mode": consts.TLS_MODE_SIMPLE, "credentialName": spec.credential_name},
                }
            ],
        },
    }


def istio_gateway_needs_update(existing: Dict[str, Any], desired: Dict[str, Any]) -> bool:
    """Compare selector, host set, TLS settings and managed labels. Host order is ignored."""
    existing_spec = existing.get("spec") or {}
    desired_spec = desired.get("spec") or {}

    if (existing_spec.get("selector") or {}) != desired_spec.get("selector"):
        return True

    existing_servers = existing_spec.get("servers") or []
    desired_servers = desired_spec.get("servers") or []
    if len(existing_servers) != len(desired_servers):
        return True
    for have, want in zip(existing_servers, desired_servers):
        if set(have.get("hosts") or []) != set(want.get("hosts") or []):
            return True
        if (have.get("tls") or {}) != want.get("tls"):
            return True
        if (have.get("port") or {}) != want.get("port"):
            return True

    existing_labels = (existing.get("metadata") or {}).get("labels") or {}
    for key, value in desired["metadata"]["labels"].items():
        if existing_labels.get(key) != value:
            return True
    return False


def _removed_keys(existing: Dict[str, Any], desired: Dict[str, Any]) -> Dict[str, Any]:
    """Merge-patch fragment that drops keys present in *existing* but not in *desired*."""
    patch: Dict[str, Any] = {k: None for k in existing if k not in desired}
    patch.update(desired)
    return patch


# =============================================================================
# Reconciler
# =============================================================================


class GatewayReconciler(Reconciler):
    kind = GATEWAY
    name = "Gateway"

    def __init__(
        self,
        store: ResourceStore,
        default_gateway_namespace: str = consts.DEFAULT_GATEWAY_NAMESPACE,
        dns_requeue_seconds: float = consts.GATEWAY_DNS_REQUEUE_SECONDS,
        **kwargs: Any,
    ):
        super().__init__(store, **kwargs)
        self.default_gateway_namespace = default_gateway_namespace
        self.dns_requeue_seconds = dns_requeue_seconds

    def reconcile(self, key: ObjectKey) -> Result:
        obj = self.store.get(GATEWAY, key.name, key.namespace)
        if obj is None:
            # The ingress gateway is owned by the Gateway and goes with it.
            logger.info(f"Gateway {key} deleted")
            return Result()

        spec = GatewaySpec.from_resource(obj)
        error = spec.validate()
        if error:
            logger.error(f"Gateway {key} validation failed: {error}")
            return self.update_phase(
                obj, consts.PHASE_FAILED, False, consts.REASON_VALIDATION_FAILED, error
            )

        ip, dns_ready, dns_message = dns_readiness(self.store, spec.controller)
        status = self.new_status(obj)
        status["loadBalancerIP"] = ip
        self.set_condition(
            status,
            obj,
            consts.CONDITION_DNS_READY,
            dns_ready,
            consts.REASON_DNS_ENDPOINTS_CREATED if dns_ready else consts.REASON_LOAD_BALANCER_IP_PENDING,
            dns_message,
        )

        identity = fetch_cluster_identity(self.identity_cache, self.store)
        if identity is None:
            logger.info(f"Gateway {key}: ClusterIdentity not available")
            result = self.update_phase(
                obj,
                consts.PHASE_PENDING,
                False,
                consts.REASON_CLUSTER_IDENTITY_NOT_AVAILABLE,
                "Waiting for ClusterIdentity to be configured",
                status=status,
            )
            return self._requeue_until_dns_ready(key, result, dns_ready)

        routes = routes_for_gateway(
            self.store.list(SERVICE_ROUTE), key.name, key.namespace, self.default_gateway_namespace
        )
        hosts = collect_hosts(routes, identity)

        if not hosts:
            if self.store.delete(ISTIO_GATEWAY, key.name, key.namespace):
                logger.info(f"Deleted ingress gateway {key}: no ServiceRoutes reference it")
            result = self.update_phase(
                obj,
                consts.PHASE_PENDING,
                False,
                consts.REASON_NO_SERVICE_ROUTES,
                "Waiting for ServiceRoutes to reference this Gateway",
                status=status,
            )
            return self._requeue_until_dns_ready(key, result, dns_ready)

        self._sync_istio_gateway(key, desired_istio_gateway(obj, spec, hosts))

        result = self.update_phase(
            obj,
            consts.PHASE_ACTIVE,
            True,
            consts.REASON_RECONCILIATION_SUCCEEDED,
            "Gateway is active",
            status=status,
        )
        if not result.requeue and dns_ready:
            logger.debug(f"Gateway {key} reconciled with {len(hosts)} host(s), load balancer {ip}")
        return self._requeue_until_dns_ready(key, result, dns_ready)

    def _sync_istio_gateway(self, key: ObjectKey, desired: Dict[str, Any]) -> None:
        existing = self.store.get(ISTIO_GATEWAY, key.name, key.namespace)
        if existing is None:
            self.store.create(ISTIO_GATEWAY, desired)
            logger.info(f"Created ingress gateway {key}")
            return

        if not istio_gateway_needs_update(existing, desired):
            logger.debug(f"Ingress gateway {key} up to date")
            return

        patch = dict(desired)
        patch["spec"] = dict(desired["spec"])
        patch["spec"]["selector"] = _removed_keys(
            (existing.get("spec") or {}).get("selector") or {}, desired["spec"]["selector"]
        )
        self.store.patch(ISTIO_GATEWAY, patch)
        logger.info(f"Updated ingress gateway {key}")

    def _requeue_until_dns_ready(self, key: ObjectKey, result: Result, dns_ready: bool) -> Result:
        if result.requeue or dns_ready:
            return result
        logger.info(f"Gateway {key} waiting for LoadBalancer IP, requeue in {self.dns_requeue_seconds}s")
        return Result(requeue_after=self.dns_requeue_seconds)
