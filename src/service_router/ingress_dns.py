"""IngressDNS reconcile loop.

A single global loop (every event maps to the key ``global``) that owns the
infrastructure A records pointing each ingress target host at its load
balancer IP:

    {cluster}-{region}-{targetPostfix}.{domain}  A  <LoadBalancer IP>

One record is kept per (ingress controller, target postfix, DNS controller).
Records are owned by the LoadBalancer Service, not by a Gateway, because
their content follows the Service's IP. Records whose (controller, postfix)
pair is no longer used by any Gateway are garbage collected.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Set, Tuple

from service_router import consts
from service_router.cache import fetch_cluster_identity, fetch_dns_configuration
from service_router.gateway import find_load_balancer_service
from service_router.models import (
    ClusterIdentity,
    DNSConfiguration,
    ExternalDNSController,
    GatewaySpec,
    is_being_deleted,
    labels_of,
    load_balancer_ip,
    name_of,
    namespace_of,
    target_host,
)
from service_router.reconciler import ObjectKey, Reconciler, Result, needs_patch, owner_reference
from service_router.store import (
    DNS_ENDPOINT,
    GATEWAY,
    SERVICE,
    ResourceStore,
    StoreError,
    format_label_selector,
)

logger = logging.getLogger(__name__)

GLOBAL_KEY = ObjectKey("", consts.GLOBAL_KEY_NAME)

# (ingress controller, target postfix)
IngressPair = Tuple[str, str]


def infra_record_name(controller: str, postfix: str, dns_controller: str) -> str:
    return f"gateway-controller-{controller}-{postfix}-{dns_controller}"


def pair_selector(controller: str, postfix: str) -> str:
    return format_label_selector(
        {
            consts.LABEL_RESOURCE_TYPE: consts.RESOURCE_TYPE_GATEWAY_SERVICE,
            consts.LABEL_ISTIO_CONTROLLER: controller,
            consts.LABEL_TARGET_POSTFIX: postfix,
        }
    )


def active_pairs(gateways: List[Dict[str, Any]]) -> Set[IngressPair]:
    """(controller, targetPostfix) pairs of every Gateway not being deleted."""
    pairs = set()
    for gateway in gateways:
        if is_being_deleted(gateway):
            continue
        spec = GatewaySpec.from_resource(gateway)
        pairs.add((spec.controller, spec.target_postfix))
    return pairs


def build_infra_record(
    service: Dict[str, Any],
    controller: str,
    postfix: str,
    dns_controller: ExternalDNSController,
    host: str,
    ip: str,
) -> Dict[str, Any]:
    return {
        "apiVersion": DNS_ENDPOINT.api_version,
        "kind": DNS_ENDPOINT.kind,
        "metadata": {
            "name": infra_record_name(controller, postfix, dns_controller.name),
            "namespace": namespace_of(service),
            "labels": {
                consts.MANAGED_BY_LABEL: consts.MANAGED_BY_VALUE,
                consts.LABEL_ISTIO_CONTROLLER: controller,
                consts.LABEL_TARGET_POSTFIX: postfix,
                consts.LABEL_REGION: dns_controller.region,
                consts.LABEL_DNS_CONTROLLER: dns_controller.name,
                consts.LABEL_RESOURCE_TYPE: consts.RESOURCE_TYPE_GATEWAY_SERVICE,
            },
            "annotations": {
                consts.EXTERNAL_DNS_CONTROLLER_ANNOTATION: f"external-dns-{dns_controller.region}",
            },
            "ownerReferences": [owner_reference(service)],
        },
        "spec": {
            "endpoints": [
                {
                    "dnsName": host,
                    "recordType": "A",
                    "targets": [ip],
                    "recordTTL": consts.INFRA_RECORD_TTL,
                }
            ],
        },
    }


class IngressDNSReconciler(Reconciler):
    kind = DNS_ENDPOINT
    name = "IngressDNS"

    def __init__(
        self,
        store: ResourceStore,
        dependency_requeue_seconds: float = consts.DEPENDENCY_REQUEUE_SECONDS,
        **kwargs: Any,
    ):
        super().__init__(store, **kwargs)
        self.dependency_requeue_seconds = dependency_requeue_seconds

    def reconcile(self, key: ObjectKey) -> Result:
        pairs = active_pairs(self.store.list(GATEWAY))

        try:
            self._collect_orphans(pairs)
        except StoreError as e:
            logger.error(f"Failed to clean up orphaned ingress DNSEndpoints: {e}")

        identity = fetch_cluster_identity(self.identity_cache, self.store)
        if identity is None:
            logger.info(
                f"ClusterIdentity not available, skipping ingress DNS "
                f"(requeue in {self.dependency_requeue_seconds}s)"
            )
            return Result(requeue_after=self.dependency_requeue_seconds)

        config = fetch_dns_configuration(self.topology_cache, self.store)
        if config is None:
            logger.info(
                f"DNSConfiguration not available, skipping ingress DNS "
                f"(requeue in {self.dependency_requeue_seconds}s)"
            )
            return Result(requeue_after=self.dependency_requeue_seconds)

        for controller, postfix in sorted(pairs):
            try:
                self._sync_pair(controller, postfix, identity, config)
            except StoreError as e:
                logger.error(
                    f"Failed to reconcile ingress DNS for controller={controller} "
                    f"postfix={postfix}: {e}"
                )
        return Result()

    def _collect_orphans(self, pairs: Set[IngressPair]) -> None:
        """Delete infra records whose (controller, postfix) pair no longer has a Gateway."""
        services = self.store.list(SERVICE, label_selector=consts.INGRESS_SELECTOR_KEY)
        selector = format_label_selector(
            {consts.LABEL_RESOURCE_TYPE: consts.RESOURCE_TYPE_GATEWAY_SERVICE}
        )
        for namespace in sorted({namespace_of(s) for s in services}):
            for record in self.store.list(DNS_ENDPOINT, namespace, selector):
                labels = labels_of(record)
                pair = (
                    labels.get(consts.LABEL_ISTIO_CONTROLLER, ""),
                    labels.get(consts.LABEL_TARGET_POSTFIX, ""),
                )
                if pair in pairs:
                    continue
                if self.store.delete(DNS_ENDPOINT, name_of(record), namespace):
                    logger.info(f"Deleted orphaned ingress DNSEndpoint {namespace}/{name_of(record)}")

    def _sync_pair(
        self, controller: str, postfix: str, identity: ClusterIdentity, config: DNSConfiguration
    ) -> None:
        service = find_load_balancer_service(self.store, controller)
        ip = load_balancer_ip(service)
        if service is None or not ip:
            # Retried when the Service gets its address.
            logger.debug(f"No LoadBalancer IP yet for ingress controller {controller}")
            return

        namespace = namespace_of(service)
        host = target_host(identity, postfix)
        desired = {
            name_of(record): record
            for record in (
                build_infra_record(service, controller, postfix, dns_controller, host, ip)
                for dns_controller in config.controllers
            )
        }
        existing = {
            name_of(record): record
            for record in self.store.list(DNS_ENDPOINT, namespace, pair_selector(controller, postfix))
        }

        for name, record in desired.items():
            current = existing.get(name)
            if current is None:
                self.store.create(DNS_ENDPOINT, record)
                logger.info(f"Created ingress DNSEndpoint {namespace}/{name}: {host} -> {ip}")
            elif needs_patch(current, record):
                self.store.patch(DNS_ENDPOINT, record)
                logger.info(f"Updated ingress DNSEndpoint {namespace}/{name}: {host} -> {ip}")

        # DNS controllers removed from the topology.
        for name in existing:
            if name not in desired and self.store.delete(DNS_ENDPOINT, name, namespace):
                logger.info(f"Deleted stale ingress DNSEndpoint {namespace}/{name}")
