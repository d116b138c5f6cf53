"""DNSPolicy reconcile loop.

Computes whether a namespace's policy applies to this cluster and, if so,
which DNS controllers act on its routes:

    Active       controllers in the cluster's own region, plus controllers of
                 every adopted region that exists in the topology
    RegionBound  every configured controller

An inactive policy (sourceRegion/sourceCluster mismatch) publishes
``active=false`` and an empty controller list; ServiceRoutes in the
namespace withdraw their DNS records when they see it.
"""

from __future__ import annotations

import logging
from typing import List, Optional, Tuple

from service_router import consts
from service_router.cache import fetch_cluster_identity, fetch_dns_configuration
from service_router.models import ClusterIdentity, DNSConfiguration, DNSPolicySpec
from service_router.reconciler import ObjectKey, Reconciler, Result
from service_router.store import DNS_POLICY

logger = logging.getLogger(__name__)


def validate_policy(policy: DNSPolicySpec, config: DNSConfiguration) -> Optional[str]:
    if policy.mode not in consts.VALID_MODES:
        return f"invalid mode: {policy.mode}, must be Active or RegionBound"
    if not config.controllers:
        return "at least one ExternalDNS controller must be defined in DNSConfiguration"
    return None


def policy_activation(policy: DNSPolicySpec, identity: ClusterIdentity) -> Tuple[bool, str]:
    """Return (active, reason); reason explains why the policy is inactive."""
    if policy.source_region and policy.source_region != identity.region:
        return False, (
            f"SourceRegion '{policy.source_region}' does not match "
            f"cluster region '{identity.region}'"
        )
    if policy.source_cluster and policy.source_cluster != identity.cluster:
        return False, (
            f"SourceCluster '{policy.source_cluster}' does not match "
            f"cluster name '{identity.cluster}'"
        )
    return True, ""


def active_controllers(
    policy: DNSPolicySpec, identity: ClusterIdentity, config: DNSConfiguration
) -> List[str]:
    """Controller names that should publish records for an active policy, in topology order."""
    if policy.mode == consts.MODE_REGION_BOUND:
        return [c.name for c in config.controllers]

    known_regions = config.regions()
    regions = [identity.region]
    for region in identity.adopts_regions:
        # Unknown adopted regions contribute nothing.
        if region in known_regions and region not in regions:
            regions.append(region)

    names: List[str] = []
    for region in regions:
        for name in config.names_for_region(region):
            if name not in names:
                names.append(name)
    return names


class DNSPolicyReconciler(Reconciler):
    kind = DNS_POLICY
    name = "DNSPolicy"

    def reconcile(self, key: ObjectKey) -> Result:
        obj = self.store.get(DNS_POLICY, key.name, key.namespace)
        if obj is None:
            logger.info(f"DNSPolicy {key} deleted")
            return Result()

        identity = fetch_cluster_identity(self.identity_cache, self.store)
        if identity is None:
            logger.info(f"DNSPolicy {key}: ClusterIdentity not available")
            return self.update_phase(
                obj,
                consts.PHASE_PENDING,
                False,
                consts.REASON_CLUSTER_IDENTITY_NOT_AVAILABLE,
                "Waiting for ClusterIdentity to be configured",
            )

        config = fetch_dns_configuration(self.topology_cache, self.store)
        if config is None:
            logger.info(f"DNSPolicy {key}: DNSConfiguration not available")
            return self.update_phase(
                obj,
                consts.PHASE_PENDING,
                False,
                consts.REASON_DNS_CONFIGURATION_NOT_AVAILABLE,
                "Waiting for DNSConfiguration to be configured",
            )

        policy = DNSPolicySpec.from_resource(obj)
        error = validate_policy(policy, config)
        if error:
            logger.error(f"DNSPolicy {key} validation failed: {error}")
            return self.update_phase(
                obj, consts.PHASE_FAILED, False, consts.REASON_VALIDATION_FAILED, error
            )

        status = self.new_status(obj)
        active, reason = policy_activation(policy, identity)
        if not active:
            status["active"] = False
            status["activeControllers"] = []
            result = self.update_phase(
                obj,
                consts.PHASE_INACTIVE,
                False,
                consts.REASON_POLICY_INACTIVE,
                f"Policy not active for this cluster: {reason}",
                status=status,
            )
            logger.info(f"DNSPolicy {key} is not active for this cluster: {reason}")
            return result

        controllers = active_controllers(policy, identity, config)
        status["active"] = True
        status["activeControllers"] = controllers
        result = self.update_phase(
            obj,
            consts.PHASE_ACTIVE,
            True,
            consts.REASON_RECONCILIATION_SUCCEEDED,
            "DNSPolicy is active",
            status=status,
        )
        logger.info(f"DNSPolicy {key} reconciled: mode={policy.mode} activeControllers={controllers}")
        return result
