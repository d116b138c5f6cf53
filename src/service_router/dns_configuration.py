"""DNSConfiguration reconcile loop: validates and publishes the DNS topology."""

from __future__ import annotations

import logging

from service_router import consts
from service_router.models import DNSConfiguration
from service_router.reconciler import ObjectKey, Reconciler, Result, singleton_violation
from service_router.store import DNS_CONFIGURATION

logger = logging.getLogger(__name__)


class DNSConfigurationReconciler(Reconciler):
    kind = DNS_CONFIGURATION
    name = "DNSConfiguration"

    def reconcile(self, key: ObjectKey) -> Result:
        obj = self.store.get(DNS_CONFIGURATION, key.name)
        if obj is None:
            self.topology_cache.clear()
            logger.info(f"DNSConfiguration {key} deleted, cleared topology cache")
            return Result()

        violation = singleton_violation(self.store, DNS_CONFIGURATION, obj)
        if violation:
            logger.error(f"DNSConfiguration {key}: {violation}")
            return self.update_phase(
                obj, consts.PHASE_FAILED, False, consts.REASON_SINGLETON_VIOLATION, violation
            )

        config = DNSConfiguration.from_resource(obj)
        error = config.validate()
        if error:
            logger.error(f"DNSConfiguration {key} spec validation failed: {error}")
            return self.update_phase(obj, consts.PHASE_FAILED, False, consts.REASON_INVALID_SPEC, error)

        self.topology_cache.set(config)

        result = self.update_phase(
            obj,
            consts.PHASE_ACTIVE,
            True,
            consts.REASON_RECONCILIATION_SUCCEEDED,
            "DNSConfiguration is valid and cached",
        )
        if not result.requeue:
            logger.info(
                f"DNSConfiguration {key} reconciled: {len(config.controllers)} controller(s) "
                f"across regions {sorted(config.regions())}"
            )
        return result

