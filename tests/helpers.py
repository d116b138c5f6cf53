"""Builders and a call-recording store shared by the test modules."""

from typing import Any, Dict, List, Optional, Sequence, Set, Tuple

from service_router.store import (
    CLUSTER_IDENTITY,
    DNS_CONFIGURATION,
    DNS_POLICY,
    GATEWAY,
    SERVICE,
    SERVICE_ROUTE,
    InMemoryResourceStore,
    ResourceKind,
    StoreError,
)

# neu: a, b, c   weu: d   frc: e
DEFAULT_CONTROLLERS: Sequence[Tuple[str, str]] = (
    ("a", "neu"),
    ("b", "neu"),
    ("c", "neu"),
    ("d", "weu"),
    ("e", "frc"),
)

INGRESS_CONTROLLER = "aks-istio-ingressgateway-internal"


# =============================================================================
# Recording Store
# =============================================================================


class RecordingStore(InMemoryResourceStore):
    """In-memory store that records every mutating call."""

    def __init__(self) -> None:
        super().__init__()
        self.create_calls: List[Tuple[str, str, str]] = []
        self.patch_calls: List[Tuple[str, str, str]] = []
        self.delete_calls: List[Tuple[str, str, str]] = []
        self.status_calls: List[Tuple[str, str, str]] = []
        self.fail_list: Set[ResourceKind] = set()

    @staticmethod
    def _ident(kind: ResourceKind, obj: Dict[str, Any]) -> Tuple[str, str, str]:
        meta = obj.get("metadata") or {}
        return (kind.kind, str(meta.get("namespace") or ""), str(meta.get("name") or ""))

    def list(self, kind, namespace=None, label_selector=""):
        if kind in self.fail_list:
            raise StoreError(f"list {kind}: simulated failure")
        return super().list(kind, namespace, label_selector)

    def create(self, kind, obj):
        self.create_calls.append(self._ident(kind, obj))
        return super().create(kind, obj)

    def patch(self, kind, obj):
        self.patch_calls.append(self._ident(kind, obj))
        return super().patch(kind, obj)

    def delete(self, kind, name, namespace=None):
        self.delete_calls.append((kind.kind, namespace or "", name))
        return super().delete(kind, name, namespace)

    def update_status(self, kind, obj):
        self.status_calls.append(self._ident(kind, obj))
        return super().update_status(kind, obj)

    @property
    def mutation_count(self) -> int:
        return (
            len(self.create_calls)
            + len(self.patch_calls)
            + len(self.delete_calls)
            + len(self.status_calls)
        )

    def reset_calls(self) -> None:
        self.create_calls.clear()
        self.patch_calls.clear()
        self.delete_calls.clear()
        self.status_calls.clear()


# =============================================================================
# Resource Builders
# =============================================================================


def _meta(name: str, namespace: str = "", created: str = "") -> Dict[str, Any]:
    meta: Dict[str, Any] = {"name": name}
    if namespace:
        meta["namespace"] = namespace
    if created:
        meta["creationTimestamp"] = created
    return meta


def make_cluster_identity(
    name: str = "cluster",
    region: str = "neu",
    cluster: str = "aks01",
    domain: str = "example.com",
    environment_letter: str = "d",
    adopts_regions: Optional[List[str]] = None,
    created: str = "",
) -> Dict[str, Any]:
    spec: Dict[str, Any] = {
        "region": region,
        "cluster": cluster,
        "domain": domain,
        "environmentLetter": environment_letter,
    }
    if adopts_regions is not None:
        spec["adoptsRegions"] = list(adopts_regions)
    return {
        "apiVersion": CLUSTER_IDENTITY.api_version,
        "kind": CLUSTER_IDENTITY.kind,
        "metadata": _meta(name, created=created),
        "spec": spec,
    }


def make_dns_configuration(
    name: str = "dns",
    controllers: Sequence[Tuple[str, str]] = DEFAULT_CONTROLLERS,
    created: str = "",
) -> Dict[str, Any]:
    return {
        "apiVersion": DNS_CONFIGURATION.api_version,
        "kind": DNS_CONFIGURATION.kind,
        "metadata": _meta(name, created=created),
        "spec": {
            "externalDNSControllers": [{"name": n, "region": r} for n, r in controllers],
        },
    }


def make_dns_policy(
    namespace: str = "team-a",
    name: str = "policy",
    mode: str = "Active",
    source_region: str = "",
    source_cluster: str = "",
) -> Dict[str, Any]:
    spec: Dict[str, Any] = {"mode": mode}
    if source_region:
        spec["sourceRegion"] = source_region
    if source_cluster:
        spec["sourceCluster"] = source_cluster
    return {
        "apiVersion": DNS_POLICY.api_version,
        "kind": DNS_POLICY.kind,
        "metadata": _meta(name, namespace),
        "spec": spec,
    }


def make_gateway(
    namespace: str = "istio-system",
    name: str = "default-gateway",
    controller: str = INGRESS_CONTROLLER,
    credential_name: str = "wildcard-cert",
    target_postfix: str = "external",
) -> Dict[str, Any]:
    return {
        "apiVersion": GATEWAY.api_version,
        "kind": GATEWAY.kind,
        "metadata": _meta(name, namespace),
        "spec": {
            "controller": controller,
            "credentialName": credential_name,
            "targetPostfix": target_postfix,
        },
    }


def make_service_route(
    namespace: str = "team-a",
    name: str = "auth",
    service_name: str = "auth",
    gateway_name: str = "default-gateway",
    gateway_namespace: str = "",
    environment: str = "dev",
    application: str = "nid-02",
) -> Dict[str, Any]:
    spec: Dict[str, Any] = {
        "serviceName": service_name,
        "gatewayName": gateway_name,
        "environment": environment,
        "application": application,
    }
    if gateway_namespace:
        spec["gatewayNamespace"] = gateway_namespace
    return {
        "apiVersion": SERVICE_ROUTE.api_version,
        "kind": SERVICE_ROUTE.kind,
        "metadata": _meta(name, namespace),
        "spec": spec,
    }


def make_lb_service(
    namespace: str = "aks-istio-ingress",
    name: str = "ingressgateway",
    controller: str = INGRESS_CONTROLLER,
    ip: str = "10.0.0.10",
    service_type: str = "LoadBalancer",
) -> Dict[str, Any]:
    status: Dict[str, Any] = {"loadBalancer": {}}
    if ip:
        status["loadBalancer"]["ingress"] = [{"ip": ip}]
    return {
        "apiVersion": SERVICE.api_version,
        "kind": SERVICE.kind,
        "metadata": {**_meta(name, namespace), "labels": {"istio": controller}},
        "spec": {"type": service_type, "ports": [{"name": "https", "port": 443}]},
        "status": status,
    }


def set_lb_ip(store: InMemoryResourceStore, service: Dict[str, Any], ip: str) -> None:
    """Assign a load balancer IP the way the cloud controller would (status write)."""
    current = store.get(SERVICE, service["metadata"]["name"], service["metadata"]["namespace"])
    current["status"] = {"loadBalancer": {"ingress": [{"ip": ip}]}}
    store.update_status(SERVICE, current)


# =============================================================================
# Status Accessors
# =============================================================================


def condition(obj: Dict[str, Any], condition_type: str) -> Optional[Dict[str, Any]]:
    for cond in (obj.get("status") or {}).get("conditions") or []:
        if cond.get("type") == condition_type:
            return cond
    return None


def phase(obj: Dict[str, Any]) -> str:
    return (obj.get("status") or {}).get("phase", "")
