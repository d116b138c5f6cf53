"""Typed views over the router resources.

The store hands out plain Kubernetes-style dicts. Reconcilers convert the
parts they need into the frozen dataclasses below so that spec parsing and
the hostname grammars live in one place.

Hostname grammars:

    Service source host:  {serviceName}-ns-{environmentLetter}-{environment}-{application}.{domain}
    Gateway target host:  {cluster}-{region}-{targetPostfix}.{domain}
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Set, Tuple

from service_router.consts import INGRESS_SELECTOR_KEY

TARGET_POSTFIX_RE = re.compile(r"^[a-z0-9]+(-[a-z0-9]+)*$")


# =============================================================================
# Resource Accessors
# =============================================================================


def _str(value: Any) -> str:
    return str(value or "").strip()


def metadata(obj: Dict[str, Any]) -> Dict[str, Any]:
    return obj.get("metadata") or {}


def name_of(obj: Dict[str, Any]) -> str:
    return _str(metadata(obj).get("name"))


def namespace_of(obj: Dict[str, Any]) -> str:
    return _str(metadata(obj).get("namespace"))


def labels_of(obj: Dict[str, Any]) -> Dict[str, str]:
    return dict(metadata(obj).get("labels") or {})


def is_being_deleted(obj: Dict[str, Any]) -> bool:
    return bool(metadata(obj).get("deletionTimestamp"))


def creation_order(obj: Dict[str, Any]) -> Tuple[str, str]:
    """Sort key used to pick the winner among singleton instances."""
    return (_str(metadata(obj).get("creationTimestamp")), name_of(obj))


def controller_owner(obj: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    """Return the controlling owner reference of *obj*, if any."""
    for ref in metadata(obj).get("ownerReferences") or []:
        if isinstance(ref, dict) and ref.get("controller"):
            return ref
    return None


# =============================================================================
# Cluster-scoped Singletons
# =============================================================================


@dataclass(frozen=True)
class ClusterIdentity:
    """The cluster's regional identity, as published by the ClusterIdentity loop."""

    region: str
    cluster: str
    domain: str
    environment_letter: str
    adopts_regions: Tuple[str, ...] = ()

    @classmethod
    def from_resource(cls, obj: Dict[str, Any]) -> "ClusterIdentity":
        spec = obj.get("spec") or {}
        adopts = spec.get("adoptsRegions") or []
        return cls(
            region=_str(spec.get("region")),
            cluster=_str(spec.get("cluster")),
            domain=_str(spec.get("domain")),
            environment_letter=_str(spec.get("environmentLetter")),
            adopts_regions=tuple(_str(r) for r in adopts if _str(r)),
        )

    def validate(self) -> Optional[str]:
        """Return a validation error message, or None when the identity is usable."""
        if not self.region:
            return "region cannot be empty"
        if not self.cluster:
            return "cluster cannot be empty"
        if not self.domain:
            return "domain cannot be empty"
        if not self.environment_letter:
            return "environmentLetter cannot be empty"
        return None


@dataclass(frozen=True)
class ExternalDNSController:
    """One DNS-synchronization agent instance and the region it serves."""

    name: str
    region: str


@dataclass(frozen=True)
class DNSConfiguration:
    """Ordered DNS-provider topology."""

    controllers: Tuple[ExternalDNSController, ...] = ()

    @classmethod
    def from_resource(cls, obj: Dict[str, Any]) -> "DNSConfiguration":
        spec = obj.get("spec") or {}
        controllers = []
        for item in spec.get("externalDNSControllers") or []:
            if not isinstance(item, dict):
                continue
            controllers.append(
                ExternalDNSController(name=_str(item.get("name")), region=_str(item.get("region")))
            )
        return cls(controllers=tuple(controllers))

    def validate(self) -> Optional[str]:
        if not self.controllers:
            return "externalDNSControllers cannot be empty"
        for i, controller in enumerate(self.controllers):
            if not controller.name:
                return f"externalDNSControllers[{i}].name cannot be empty"
            if not controller.region:
                return f"externalDNSControllers[{i}].region cannot be empty"
        return None

    def regions(self) -> Set[str]:
        return {c.region for c in self.controllers}

    def names_for_region(self, region: str) -> List[str]:
        return [c.name for c in self.controllers if c.region == region]

    def by_name(self) -> Dict[str, ExternalDNSController]:
        return {c.name: c for c in self.controllers}


# =============================================================================
# Namespaced Routing Resources
# =============================================================================


@dataclass(frozen=True)
class DNSPolicySpec:
    mode: str
    source_region: str = ""
    source_cluster: str = ""

    @classmethod
    def from_resource(cls, obj: Dict[str, Any]) -> "DNSPolicySpec":
        spec = obj.get("spec") or {}
        return cls(
            mode=_str(spec.get("mode")) or "Active",
            source_region=_str(spec.get("sourceRegion")),
            source_cluster=_str(spec.get("sourceCluster")),
        )


@dataclass(frozen=True)
class GatewaySpec:
    controller: str
    credential_name: str
    target_postfix: str

    @classmethod
    def from_resource(cls, obj: Dict[str, Any]) -> "GatewaySpec":
        spec = obj.get("spec") or {}
        return cls(
            controller=_str(spec.get("controller")),
            credential_name=_str(spec.get("credentialName")),
            target_postfix=_str(spec.get("targetPostfix")),
        )

    def validate(self) -> Optional[str]:
        if not self.controller:
            return "controller must be specified"
        if not self.credential_name:
            return "credentialName must be specified"
        if not self.target_postfix:
            return "targetPostfix must be specified"
        if not TARGET_POSTFIX_RE.match(self.target_postfix):
            return (
                "targetPostfix must be lowercase alphanumeric with hyphens: "
                f"{self.target_postfix}"
            )
        return None


@dataclass(frozen=True)
class ServiceRouteSpec:
    service_name: str
    gateway_name: str
    environment: str
    application: str
    gateway_namespace: str = ""

    @classmethod
    def from_resource(cls, obj: Dict[str, Any]) -> "ServiceRouteSpec":
        spec = obj.get("spec") or {}
        return cls(
            service_name=_str(spec.get("serviceName")),
            gateway_name=_str(spec.get("gatewayName")),
            environment=_str(spec.get("environment")),
            application=_str(spec.get("application")),
            gateway_namespace=_str(spec.get("gatewayNamespace")),
        )

    def validate(self) -> Optional[str]:
        if not self.service_name:
            return "serviceName must be specified"
        if not self.gateway_name:
            return "gatewayName must be specified"
        if not self.environment:
            return "environment must be specified"
        if not self.application:
            return "application must be specified"
        return None

    def resolved_gateway_namespace(self, default_namespace: str) -> str:
        return self.gateway_namespace or default_namespace


# =============================================================================
# Hostnames
# =============================================================================


def source_host(route: ServiceRouteSpec, identity: ClusterIdentity) -> str:
    return (
        f"{route.service_name}-ns-{identity.environment_letter}-"
        f"{route.environment}-{route.application}.{identity.domain}"
    )


def target_host(identity: ClusterIdentity, target_postfix: str) -> str:
    return f"{identity.cluster}-{identity.region}-{target_postfix}.{identity.domain}"


# =============================================================================
# Load Balancer Services
# =============================================================================


def is_load_balancer(service: Dict[str, Any]) -> bool:
    return (service.get("spec") or {}).get("type") == "LoadBalancer"


def ingress_controller_of(service: Dict[str, Any]) -> str:
    """Return the ingress-controller selector value a Service is labelled with."""
    return labels_of(service).get(INGRESS_SELECTOR_KEY, "")


def load_balancer_ip(service: Optional[Dict[str, Any]]) -> str:
    if not service:
        return ""
    ingress = ((service.get("status") or {}).get("loadBalancer") or {}).get("ingress") or []
    if not ingress or not isinstance(ingress[0], dict):
        return ""
    return _str(ingress[0].get("ip"))
