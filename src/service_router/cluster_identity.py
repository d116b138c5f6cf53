"""ClusterIdentity reconcile loop.

Keeps the singleton cluster identity valid and published in the identity
cache. Adopted regions are checked against the DNS topology as a soft
dependency: the result lands in the AdoptedRegionsValid condition and never
blocks Ready.
"""

from __future__ import annotations

import logging
from typing import Any, Dict

from service_router import consts
from service_router.cache import fetch_dns_configuration
from service_router.models import ClusterIdentity
from service_router.reconciler import ObjectKey, Reconciler, Result, singleton_violation
from service_router.store import CLUSTER_IDENTITY, StoreError

logger = logging.getLogger(__name__)


class ClusterIdentityReconciler(Reconciler):
    kind = CLUSTER_IDENTITY
    name = "ClusterIdentity"

    def reconcile(self, key: ObjectKey) -> Result:
        obj = self.store.get(CLUSTER_IDENTITY, key.name)
        if obj is None:
            # Other loops must not keep resolving hostnames from a deleted identity.
            self.identity_cache.clear()
            logger.info(f"ClusterIdentity {key} deleted, cleared identity cache")
            return Result()

        violation = singleton_violation(self.store, CLUSTER_IDENTITY, obj)
        if violation:
            logger.error(f"ClusterIdentity {key}: {violation}")
            return self.update_phase(
                obj, consts.PHASE_FAILED, False, consts.REASON_SINGLETON_VIOLATION, violation
            )

        identity = ClusterIdentity.from_resource(obj)
        error = identity.validate()
        if error:
            logger.error(f"ClusterIdentity {key} spec validation failed: {error}")
            return self.update_phase(obj, consts.PHASE_FAILED, False, consts.REASON_INVALID_SPEC, error)

        status = self.new_status(obj)
        self._validate_adopted_regions(obj, identity, status)

        self.identity_cache.set(identity)

        result = self.update_phase(
            obj,
            consts.PHASE_ACTIVE,
            True,
            consts.REASON_RECONCILIATION_SUCCEEDED,
            "ClusterIdentity is active and cluster identity is cached",
            status=status,
        )
        if not result.requeue:
            logger.info(
                f"ClusterIdentity {key} reconciled: cluster={identity.cluster} "
                f"region={identity.region} domain={identity.domain}"
            )
        return result

    def _validate_adopted_regions(
        self, obj: Dict[str, Any], identity: ClusterIdentity, status: Dict[str, Any]
    ) -> None:
        if not identity.adopts_regions:
            self.set_condition(
                status,
                obj,
                consts.CONDITION_ADOPTED_REGIONS_VALID,
                True,
                consts.REASON_NO_ADOPTED_REGIONS,
                "No adopted regions configured",
            )
            return

        try:
            config = fetch_dns_configuration(self.topology_cache, self.store)
        except StoreError as e:
            logger.warning(f"Adopted regions validation skipped, DNSConfiguration unavailable: {e}")
            self.set_condition(
                status,
                obj,
                consts.CONDITION_ADOPTED_REGIONS_VALID,
                False,
                consts.REASON_DNS_CONFIGURATION_NOT_AVAILABLE,
                f"Could not read DNSConfiguration: {e}",
            )
            return

        known_regions = config.regions() if config is not None else set()
        invalid = [r for r in identity.adopts_regions if r not in known_regions]
        if invalid:
            logger.warning(
                f"ClusterIdentity adopts regions without a DNS controller: {', '.join(invalid)}"
            )
            self.set_condition(
                status,
                obj,
                consts.CONDITION_ADOPTED_REGIONS_VALID,
                False,
                consts.REASON_ADOPTED_REGION_NOT_FOUND,
                f"Adopted regions {invalid} have no matching controller in DNSConfiguration",
            )
        else:
            self.set_condition(
                status,
                obj,
                consts.CONDITION_ADOPTED_REGIONS_VALID,
                True,
                consts.REASON_ALL_ADOPTED_REGIONS_VALID,
                "All adopted regions have matching controllers",
            )

