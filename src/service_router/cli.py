#!/usr/bin/env python3
"""service-router - multi-region DNS and ingress control plane

Continuously converges ClusterIdentity, DNSConfiguration, DNSPolicy, Gateway
and ServiceRoute resources into ingress gateways and DNSEndpoint records.

Store backends:
    - kubernetes: the Kubernetes API server (in-cluster service account or
                  kubeconfig)
    - manifests:  YAML manifests on disk; derived resources and statuses are
                  rendered back as YAML (useful for dry runs and CI)

Environment variables:

    Store Selection:
        STORE_BACKEND              "kubernetes" or "manifests" (default: kubernetes)

    Kubernetes Backend:
        KUBECONFIG_PATH            kubeconfig file; when unset the in-cluster
                                   service account is tried first, then
                                   $KUBECONFIG or ~/.kube/config
        KUBE_CONTEXT               kubeconfig context (default: current context)
        WATCH_TIMEOUT_SECONDS      Server-side timeout of each watch stream
                                   (default: 300)

    Manifests Backend:
        MANIFESTS_PATH             YAML file, or directory of *.yaml files
                                   (default: /config/manifests)
                                   Files ending in .template are skipped.
        OUTPUT_PATH                Write rendered YAML here instead of stdout

    Routing:
        DEFAULT_GATEWAY_NAMESPACE  Namespace used when a ServiceRoute omits
                                   gatewayNamespace (default: istio-system)

    Runtime:
        SYNC_MODE                  "once" or "watch" (default: watch)
        POLL_INTERVAL_SECONDS      Manifest change check interval in watch mode
                                   (default: 10, minimum 1)
        GATEWAY_DNS_REQUEUE_SECONDS
                                   Gateway recheck while the LoadBalancer IP is
                                   pending (default: 30)
        DEPENDENCY_REQUEUE_SECONDS IngressDNS recheck while ClusterIdentity or
                                   DNSConfiguration is missing (default: 60)
        LOG_LEVEL                  DEBUG, INFO, WARNING, ERROR (default: INFO)

    Settings file:
        SERVICE_ROUTER_CONFIG_PATH Optional YAML file whose snake_case keys
                                   override the variables above. Example:
                                     store_backend: manifests
                                     manifests_path: ./manifests
                                     sync_mode: once
"""

from __future__ import annotations

import dataclasses
import logging
import os
import sys
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from service_router import consts
from service_router.cache import IDENTITY_CACHE, TOPOLOGY_CACHE
from service_router.cluster_identity import ClusterIdentityReconciler
from service_router.dns_configuration import DNSConfigurationReconciler
from service_router.dns_policy import DNSPolicyReconciler
from service_router.gateway import GatewayReconciler
from service_router.ingress_dns import IngressDNSReconciler
from service_router.kube import KubernetesResourceStore, load_api_client
from service_router.manager import Manager
from service_router.reconciler import Reconciler
from service_router.service_route import ServiceRouteReconciler
from service_router.store import ALL_KINDS, InMemoryResourceStore, ResourceStore, StoreError
from service_router.watches import dependency_edges

logger = logging.getLogger(__name__)

VALID_BACKENDS = ("kubernetes", "manifests")
VALID_SYNC_MODES = ("once", "watch")

# =============================================================================
# File Watching Utilities
# =============================================================================


def get_config_file_mtime(config_path: str) -> float:
    """Get modification time of a file, returns 0 if it doesn't exist."""
    try:
        return os.path.getmtime(config_path) if os.path.exists(config_path) else 0.0
    except OSError:
        return 0.0


def find_config_files(config_path: str) -> List[str]:
    """Find all .yaml files in a directory or return the single file.

    Args:
        config_path: Path to a manifest file or directory

    Returns:
        List of file paths (excluding .template files)
    """
    path = Path(config_path)

    if path.is_file():
        return [str(path)]

    if path.is_dir():
        yaml_files = sorted(path.glob("*.yaml"))
        return [str(f) for f in yaml_files if not f.name.endswith(".template")]

    # Path doesn't exist yet
    return []


def get_config_files_mtimes(config_files: List[str]) -> Dict[str, float]:
    """Get modification times for all files."""
    return {f: get_config_file_mtime(f) for f in config_files}


# =============================================================================
# Configuration
# =============================================================================


@dataclass(frozen=True)
class Settings:
    store_backend: str = "kubernetes"
    manifests_path: str = "/config/manifests"
    output_path: str = ""
    kubeconfig_path: str = ""
    kube_context: str = ""
    watch_timeout_seconds: int = 300
    default_gateway_namespace: str = consts.DEFAULT_GATEWAY_NAMESPACE
    sync_mode: str = "watch"
    poll_interval_seconds: int = 10
    gateway_dns_requeue_seconds: int = consts.GATEWAY_DNS_REQUEUE_SECONDS
    dependency_requeue_seconds: int = consts.DEPENDENCY_REQUEUE_SECONDS
    log_level: str = "INFO"


def _coerce(field: dataclasses.Field, value: Any) -> Any:
    if field.type in ("int", int):
        return int(value)
    return str(value).strip()


def load_settings(config_path: Optional[str] = None) -> Settings:
    """Build settings from the environment, then apply the optional YAML file.

    Raises ValueError for unreadable files or values of the wrong type.
    """
    values: Dict[str, Any] = {}
    for field in dataclasses.fields(Settings):
        raw = os.getenv(field.name.upper())
        if raw is not None and raw.strip() != "":
            values[field.name] = _coerce(field, raw)

    config_path = config_path if config_path is not None else os.getenv("SERVICE_ROUTER_CONFIG_PATH", "")
    if config_path:
        try:
            with open(config_path, "r", encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            raise ValueError(f"Failed to read settings file {config_path}: {e}") from e
        if not isinstance(data, dict):
            raise ValueError(f"Settings file {config_path} must contain a mapping")

        known = {field.name: field for field in dataclasses.fields(Settings)}
        for key, value in data.items():
            field = known.get(str(key))
            if field is None:
                logger.warning(f"Ignoring unknown setting '{key}' in {config_path}")
                continue
            if value is not None:
                values[field.name] = _coerce(field, value)

    settings = Settings(**values)
    return dataclasses.replace(
        settings,
        store_backend=settings.store_backend.lower(),
        sync_mode=settings.sync_mode.lower(),
        poll_interval_seconds=max(1, settings.poll_interval_seconds),
    )


def validate_config(settings: Settings) -> bool:
    """Validate configuration."""
    errors = []

    if settings.store_backend not in VALID_BACKENDS:
        errors.append(
            f"Unsupported STORE_BACKEND: {settings.store_backend}. "
            f"Supported: {', '.join(VALID_BACKENDS)}"
        )
    elif settings.store_backend == "manifests":
        if not find_config_files(settings.manifests_path):
            errors.append(f"No manifests found at MANIFESTS_PATH={settings.manifests_path}")
    elif settings.kubeconfig_path and not os.path.isfile(settings.kubeconfig_path):
        errors.append(f"KUBECONFIG_PATH does not exist: {settings.kubeconfig_path}")

    if settings.sync_mode not in VALID_SYNC_MODES:
        errors.append(f"Invalid SYNC_MODE: {settings.sync_mode}. Use 'once' or 'watch'")

    if not settings.default_gateway_namespace:
        errors.append("DEFAULT_GATEWAY_NAMESPACE cannot be empty")

    if settings.watch_timeout_seconds <= 0:
        errors.append("WATCH_TIMEOUT_SECONDS must be positive")

    if errors:
        for error in errors:
            logger.error(error)
        return False

    return True


def setup_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


# =============================================================================
# Wiring
# =============================================================================


def create_store(settings: Settings) -> ResourceStore:
    """Factory function to create the configured resource store."""
    if settings.store_backend == "kubernetes":
        return KubernetesResourceStore(load_api_client(settings.kubeconfig_path, settings.kube_context))
    if settings.store_backend == "manifests":
        store = InMemoryResourceStore()
        load_manifests(store, settings.manifests_path)
        return store
    raise ValueError(
        f"Unsupported store backend: '{settings.store_backend}'. "
        f"Supported backends: {', '.join(VALID_BACKENDS)}"
    )


def create_reconcilers(store: ResourceStore, settings: Settings) -> List[Reconciler]:
    """All control loops, in dependency order."""
    return [
        ClusterIdentityReconciler(store),
        DNSConfigurationReconciler(store),
        DNSPolicyReconciler(store),
        GatewayReconciler(
            store,
            default_gateway_namespace=settings.default_gateway_namespace,
            dns_requeue_seconds=settings.gateway_dns_requeue_seconds,
        ),
        ServiceRouteReconciler(store, default_gateway_namespace=settings.default_gateway_namespace),
        IngressDNSReconciler(store, dependency_requeue_seconds=settings.dependency_requeue_seconds),
    ]


def create_manager(store: ResourceStore, settings: Settings) -> Manager:
    return Manager(
        store,
        create_reconcilers(store, settings),
        dependency_edges(settings.default_gateway_namespace),
        watch_timeout_seconds=settings.watch_timeout_seconds,
    )


# =============================================================================
# Manifests Mode
# =============================================================================


def load_manifests(store: InMemoryResourceStore, manifests_path: str) -> int:
    """Load every YAML document under *manifests_path* into *store*."""
    loaded = 0
    for path in find_config_files(manifests_path):
        with open(path, "r", encoding="utf-8") as f:
            documents = [doc for doc in yaml.safe_load_all(f) if doc]
        count = store.load(documents)
        logger.info(f"Loaded {count} resource(s) from {Path(path).name}")
        loaded += count
    return loaded


def render_manifests(store: InMemoryResourceStore) -> str:
    return yaml.safe_dump_all(store.dump(ALL_KINDS), sort_keys=False, default_flow_style=False)


def write_output(rendered: str, output_path: str) -> None:
    if not output_path:
        sys.stdout.write(rendered)
        sys.stdout.flush()
        return
    path = Path(output_path)
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_suffix(path.suffix + ".tmp")
    tmp_path.write_text(rendered, "utf-8")
    tmp_path.replace(path)
    logger.info(f"Rendered resources written to {path}")


def render_once(settings: Settings) -> int:
    """Load manifests, converge them in memory and write the result."""
    # Each render starts from an empty fleet.
    IDENTITY_CACHE.clear()
    TOPOLOGY_CACHE.clear()
    store = create_store(settings)
    processed = create_manager(store, settings).run_once()
    logger.info(f"Converged manifests with {processed} reconcile(s)")
    write_output(render_manifests(store), settings.output_path)
    return processed


def watch_manifests(settings: Settings) -> None:
    """Re-render whenever the manifest files change."""
    config_files = find_config_files(settings.manifests_path)
    last_mtimes = get_config_files_mtimes(config_files)
    render_once(settings)

    while True:
        time.sleep(settings.poll_interval_seconds)
        current_files = find_config_files(settings.manifests_path)
        current_mtimes = get_config_files_mtimes(current_files)
        if set(current_files) == set(config_files) and current_mtimes == last_mtimes:
            continue

        changed = sorted(
            Path(f).name
            for f in set(current_files) | set(config_files)
            if current_mtimes.get(f, 0) != last_mtimes.get(f, 0)
        )
        logger.info(f"Manifest change detected in: {', '.join(changed)}")
        config_files = current_files
        last_mtimes = current_mtimes
        try:
            render_once(settings)
        except Exception as e:
            logger.error(f"Failed to render manifests: {e}", exc_info=True)
            logger.warning("Keeping previous output")


# =============================================================================
# Main
# =============================================================================


def main():
    """Main entry point."""
    try:
        settings = load_settings()
    except ValueError as e:
        setup_logging("INFO")
        logger.error(str(e))
        sys.exit(1)

    setup_logging(settings.log_level)
    logger.info(f"service-router: store={settings.store_backend} sync={settings.sync_mode}")

    if not validate_config(settings):
        logger.error("Configuration validation failed")
        sys.exit(1)

    logger.info(f"Default gateway namespace: {settings.default_gateway_namespace}")
    try:
        if settings.store_backend == "manifests":
            logger.info(f"Manifests: {settings.manifests_path}")
            if settings.sync_mode == "once":
                render_once(settings)
            else:
                logger.info(f"Checking for manifest changes every {settings.poll_interval_seconds}s")
                watch_manifests(settings)
            return

        try:
            store = create_store(settings)
        except StoreError as e:
            logger.error(f"{e}. Exiting.")
            sys.exit(1)
        if not store.test_connection():
            logger.error(f"Cannot connect to {store.name}. Exiting.")
            sys.exit(1)

        manager = create_manager(store, settings)
        if settings.sync_mode == "once":
            processed = manager.run_once()
            logger.info(f"Single pass complete: {processed} reconcile(s)")
            return
        manager.run()

    except KeyboardInterrupt:
        logger.info("Shutting down gracefully...")
    except Exception as e:
        logger.error(f"Fatal error: {e}", exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    main()
