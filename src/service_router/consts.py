"""Shared constants for the service-router control loops."""

# =============================================================================
# Phases
# =============================================================================

PHASE_ACTIVE = "Active"
PHASE_PENDING = "Pending"
PHASE_FAILED = "Failed"
PHASE_INACTIVE = "Inactive"

# =============================================================================
# Condition Types
# =============================================================================

CONDITION_READY = "Ready"
CONDITION_DNS_READY = "DNSReady"
CONDITION_ADOPTED_REGIONS_VALID = "AdoptedRegionsValid"

# =============================================================================
# Condition Reasons
# =============================================================================

REASON_RECONCILIATION_SUCCEEDED = "ReconciliationSucceeded"
REASON_VALIDATION_FAILED = "ValidationFailed"
REASON_SINGLETON_VIOLATION = "SingletonViolation"
REASON_INVALID_SPEC = "InvalidSpec"
REASON_NO_ADOPTED_REGIONS = "NoAdoptedRegions"
REASON_ADOPTED_REGION_NOT_FOUND = "AdoptedRegionNotFound"
REASON_ALL_ADOPTED_REGIONS_VALID = "AllAdoptedRegionsValid"
REASON_POLICY_INACTIVE = "PolicyInactive"
REASON_CLUSTER_IDENTITY_NOT_AVAILABLE = "ClusterIdentityNotAvailable"
REASON_DNS_CONFIGURATION_NOT_AVAILABLE = "DNSConfigurationNotAvailable"
REASON_DNS_POLICY_NOT_FOUND = "DNSPolicyNotFound"
REASON_DNS_POLICY_INACTIVE = "DNSPolicyInactive"
REASON_GATEWAY_NOT_FOUND = "GatewayNotFound"
REASON_NO_SERVICE_ROUTES = "NoServiceRoutes"
REASON_DNS_ENDPOINT_GENERATION_FAILED = "DNSEndpointGenerationFailed"
REASON_DNS_ENDPOINTS_CREATED = "DNSEndpointsCreated"
REASON_LOAD_BALANCER_IP_PENDING = "LoadBalancerIPPending"
REASON_DNS_NOT_READY = "DNSNotReady"

# =============================================================================
# Labels and Annotations
# =============================================================================

MANAGED_BY_LABEL = "app.kubernetes.io/managed-by"
MANAGED_BY_VALUE = "service-router-operator"

LABEL_GATEWAY = "router.io/gateway"
LABEL_CONTROLLER = "router.io/controller"
LABEL_REGION = "router.io/region"
LABEL_SERVICE_ROUTE = "router.io/serviceroute"
LABEL_SOURCE_NAMESPACE = "router.io/source-namespace"
LABEL_ISTIO_CONTROLLER = "router.io/istio-controller"
LABEL_TARGET_POSTFIX = "router.io/target-postfix"
LABEL_DNS_CONTROLLER = "router.io/dns-controller"
LABEL_RESOURCE_TYPE = "router.io/resource-type"
RESOURCE_TYPE_GATEWAY_SERVICE = "gateway-service"

# Selector key shared by the ingress gateway pods and their LoadBalancer Service.
INGRESS_SELECTOR_KEY = "istio"

EXTERNAL_DNS_CONTROLLER_ANNOTATION = "external-dns.alpha.kubernetes.io/controller"

# =============================================================================
# DNS Policy Modes
# =============================================================================

MODE_ACTIVE = "Active"
MODE_REGION_BOUND = "RegionBound"
VALID_MODES = (MODE_ACTIVE, MODE_REGION_BOUND)

# =============================================================================
# Misc
# =============================================================================

INFRA_RECORD_TTL = 300
HTTPS_PORT = 443
TLS_MODE_SIMPLE = "SIMPLE"
GLOBAL_KEY_NAME = "global"

DEFAULT_GATEWAY_NAMESPACE = "istio-system"
GATEWAY_DNS_REQUEUE_SECONDS = 30
DEPENDENCY_REQUEUE_SECONDS = 60
