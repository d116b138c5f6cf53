"""Dependency-edge table: which reconcile keys a change to a resource enqueues.

Every cross-resource trigger lives in ``dependency_edges`` so the fan-out
graph can be read (and tested) in one place:

    source kind          target loop        keys
    -------------------  -----------------  ----------------------------------------
    ClusterIdentity      ClusterIdentity    itself
    DNSConfiguration     DNSConfiguration   itself
    DNSConfiguration     ClusterIdentity    every ClusterIdentity
    ClusterIdentity      DNSPolicy          every DNSPolicy
    DNSConfiguration     DNSPolicy          every DNSPolicy
    DNSPolicy            DNSPolicy          itself
    Gateway              Gateway            itself
    IstioGateway         Gateway            its controlling Gateway
    ServiceRoute         Gateway            the Gateway it references
    Service              Gateway            Gateways using the LoadBalancer's controller
    DNSConfiguration     Gateway            every Gateway
    ServiceRoute         ServiceRoute       itself
    DNSEndpoint          ServiceRoute       its controlling ServiceRoute
    DNSPolicy            ServiceRoute       every ServiceRoute in the policy's namespace
    Gateway              ServiceRoute       every ServiceRoute referencing the Gateway
    ClusterIdentity      ServiceRoute       every ServiceRoute
    Gateway              IngressDNS         global
    ClusterIdentity      IngressDNS         global
    DNSConfiguration     IngressDNS         global
    Service (istio=*)    IngressDNS         global
"""

from __future__ import annotations

import functools
from dataclasses import dataclass
from typing import Any, Callable, Dict, List

from service_router import consts
from service_router.ingress_dns import GLOBAL_KEY
from service_router.models import (
    GatewaySpec,
    ServiceRouteSpec,
    controller_owner,
    ingress_controller_of,
    is_load_balancer,
    name_of,
    namespace_of,
)
from service_router.reconciler import ObjectKey
from service_router.store import (
    CLUSTER_IDENTITY,
    DNS_CONFIGURATION,
    DNS_ENDPOINT,
    DNS_POLICY,
    GATEWAY,
    ISTIO_GATEWAY,
    SERVICE,
    SERVICE_ROUTE,
    ResourceKind,
    ResourceStore,
)

MapFunc = Callable[[ResourceStore, Dict[str, Any]], List[ObjectKey]]


@dataclass(frozen=True)
class DependencyEdge:
    source: ResourceKind
    target: str
    map_keys: MapFunc
    description: str = ""


# =============================================================================
# Mapping Functions
# =============================================================================


def self_key(store: ResourceStore, obj: Dict[str, Any]) -> List[ObjectKey]:
    return [ObjectKey.of(obj)]


def all_of(kind: ResourceKind, store: ResourceStore, obj: Dict[str, Any]) -> List[ObjectKey]:
    return [ObjectKey.of(item) for item in store.list(kind)]


def global_key(store: ResourceStore, obj: Dict[str, Any]) -> List[ObjectKey]:
    return [GLOBAL_KEY]


def owner_key(owner: ResourceKind, store: ResourceStore, obj: Dict[str, Any]) -> List[ObjectKey]:
    """The controlling owner of *obj*, when it is of kind *owner* (same namespace)."""
    ref = controller_owner(obj)
    if not ref or ref.get("kind") != owner.kind or ref.get("apiVersion") != owner.api_version:
        return []
    return [ObjectKey(namespace_of(obj), str(ref.get("name") or ""))]


def route_to_gateway(default_namespace: str, store: ResourceStore, obj: Dict[str, Any]) -> List[ObjectKey]:
    spec = ServiceRouteSpec.from_resource(obj)
    if not spec.gateway_name:
        return []
    return [ObjectKey(spec.resolved_gateway_namespace(default_namespace), spec.gateway_name)]


def service_to_gateways(store: ResourceStore, obj: Dict[str, Any]) -> List[ObjectKey]:
    controller = ingress_controller_of(obj)
    if not controller or not is_load_balancer(obj):
        return []
    return [
        ObjectKey.of(gateway)
        for gateway in store.list(GATEWAY)
        if GatewaySpec.from_resource(gateway).controller == controller
    ]


def policy_to_routes(store: ResourceStore, obj: Dict[str, Any]) -> List[ObjectKey]:
    return [ObjectKey.of(route) for route in store.list(SERVICE_ROUTE, namespace_of(obj))]


def gateway_to_routes(default_namespace: str, store: ResourceStore, obj: Dict[str, Any]) -> List[ObjectKey]:
    name, namespace = name_of(obj), namespace_of(obj)
    keys = []
    for route in store.list(SERVICE_ROUTE):
        spec = ServiceRouteSpec.from_resource(route)
        if spec.gateway_name == name and spec.resolved_gateway_namespace(default_namespace) == namespace:
            keys.append(ObjectKey.of(route))
    return keys


def service_to_global(store: ResourceStore, obj: Dict[str, Any]) -> List[ObjectKey]:
    if consts.INGRESS_SELECTOR_KEY not in ((obj.get("metadata") or {}).get("labels") or {}):
        return []
    return [GLOBAL_KEY]


# =============================================================================
# Edge Table
# =============================================================================


def dependency_edges(default_gateway_namespace: str = consts.DEFAULT_GATEWAY_NAMESPACE) -> List[DependencyEdge]:
    partial = functools.partial
    return [
        DependencyEdge(CLUSTER_IDENTITY, "ClusterIdentity", self_key, "self"),
        DependencyEdge(DNS_CONFIGURATION, "DNSConfiguration", self_key, "self"),
        DependencyEdge(
            DNS_CONFIGURATION, "ClusterIdentity", partial(all_of, CLUSTER_IDENTITY),
            "re-validate adopted regions",
        ),
        DependencyEdge(CLUSTER_IDENTITY, "DNSPolicy", partial(all_of, DNS_POLICY), "recompute activation"),
        DependencyEdge(DNS_CONFIGURATION, "DNSPolicy", partial(all_of, DNS_POLICY), "recompute activation"),
        DependencyEdge(DNS_POLICY, "DNSPolicy", self_key, "self"),
        DependencyEdge(GATEWAY, "Gateway", self_key, "self"),
        DependencyEdge(ISTIO_GATEWAY, "Gateway", partial(owner_key, GATEWAY), "owned ingress gateway"),
        DependencyEdge(
            SERVICE_ROUTE, "Gateway", partial(route_to_gateway, default_gateway_namespace),
            "host aggregation",
        ),
        DependencyEdge(SERVICE, "Gateway", service_to_gateways, "load balancer IP"),
        DependencyEdge(DNS_CONFIGURATION, "Gateway", partial(all_of, GATEWAY), "topology change"),
        DependencyEdge(CLUSTER_IDENTITY, "Gateway", partial(all_of, GATEWAY), "hostname recompute"),
        DependencyEdge(SERVICE_ROUTE, "ServiceRoute", self_key, "self"),
        DependencyEdge(DNS_ENDPOINT, "ServiceRoute", partial(owner_key, SERVICE_ROUTE), "owned records"),
        DependencyEdge(DNS_POLICY, "ServiceRoute", policy_to_routes, "policy recompute"),
        DependencyEdge(
            GATEWAY, "ServiceRoute", partial(gateway_to_routes, default_gateway_namespace),
            "gateway spec change",
        ),
        DependencyEdge(CLUSTER_IDENTITY, "ServiceRoute", partial(all_of, SERVICE_ROUTE), "hostname recompute"),
        DependencyEdge(GATEWAY, "IngressDNS", global_key, "active pairs"),
        DependencyEdge(CLUSTER_IDENTITY, "IngressDNS", global_key, "target hosts"),
        DependencyEdge(DNS_CONFIGURATION, "IngressDNS", global_key, "DNS controllers"),
        DependencyEdge(SERVICE, "IngressDNS", service_to_global, "load balancer IP"),
    ]


def watched_kinds(edges: List[DependencyEdge]) -> List[ResourceKind]:
    """Source kinds in first-seen order."""
    kinds: List[ResourceKind] = []
    for edge in edges:
        if edge.source not in kinds:
            kinds.append(edge.source)
    return kinds
