from __future__ import annotations

from dataclasses import dataclass

GATEWAY_API_GROUP = "gateway.networking.k8s.io"
OPERATOR_GROUP = "gateway-operator.konghq.com"

DEFAULT_CONTROLLER_NAME = "konghq.com/gateway-operator"
DEFAULT_DATAPLANE_IMAGE = "kong:3.9"

# Labels binding dependents to the Gateway that owns them.
MANAGED_BY_LABEL = f"{OPERATOR_GROUP}/managed-by"
MANAGED_BY_NAME_LABEL = f"{OPERATOR_GROUP}/managed-by-name"
MANAGED_BY_NAMESPACE_LABEL = f"{OPERATOR_GROUP}/managed-by-namespace"
GATEWAY_MANAGED_LABEL_VALUE = "gateway"
DATAPLANE_MANAGED_LABEL_VALUE = "dataplane"
DATAPLANE_SERVICE_TYPE_LABEL = f"{OPERATOR_GROUP}/dataplane-service-type"
DATAPLANE_INGRESS_SERVICE_LABEL_VALUE = "ingress"
DATAPLANE_ADMIN_SERVICE_LABEL_VALUE = "admin"

FINALIZER_CLEANUP_CONTROLPLANES = f"{OPERATOR_GROUP}/cleanup-controlplanes"
FINALIZER_CLEANUP_DATAPLANES = f"{OPERATOR_GROUP}/cleanup-dataplanes"
FINALIZER_CLEANUP_NETWORK_POLICIES = f"{OPERATOR_GROUP}/cleanup-network-policies"
GATEWAY_FINALIZERS = (
    FINALIZER_CLEANUP_CONTROLPLANES,
    FINALIZER_CLEANUP_DATAPLANES,
    FINALIZER_CLEANUP_NETWORK_POLICIES,
)

# DataPlane container and port layout.
DATAPLANE_PROXY_CONTAINER_NAME = "proxy"
DATAPLANE_ADMIN_API_PORT = 8444
DATAPLANE_PROXY_PORT = 8000
DATAPLANE_PROXY_SSL_PORT = 8443
DATAPLANE_METRICS_PORT = 8100
DATAPLANE_READINESS_PATH = "/status/ready"

# Requeue delays, in seconds.
PROVISION_FAIL_RETRY_AFTER = 5.0
REQUEUE_WITHOUT_BACKOFF = 0.2

# Condition types.
ACCEPTED = "Accepted"
PROGRAMMED = "Programmed"
READY = "Ready"
CONFLICTED = "Conflicted"
RESOLVED_REFS = "ResolvedRefs"
DATAPLANE_READY = "DataPlaneReady"
CONTROLPLANE_READY = "ControlPlaneReady"
GATEWAY_SERVICE = "GatewayService"

# Condition reasons.
REASON_ACCEPTED = "Accepted"
REASON_PROGRAMMED = "Programmed"
REASON_PENDING = "Pending"
REASON_LISTENERS_NOT_VALID = "ListenersNotValid"
REASON_UNSUPPORTED_PROTOCOL = "UnsupportedProtocol"
REASON_NO_CONFLICTS = "NoConflicts"
REASON_PROTOCOL_CONFLICT = "ProtocolConflict"
REASON_HOSTNAME_CONFLICT = "HostnameConflict"
REASON_RESOLVED_REFS = "ResolvedRefs"
REASON_INVALID_CERTIFICATE_REF = "InvalidCertificateRef"
REASON_TOO_MANY_TLS_SECRETS = "TooManyTLSSecrets"
REASON_REF_NOT_PERMITTED = "RefNotPermitted"
REASON_INVALID_ROUTE_KINDS = "InvalidRouteKinds"
REASON_RESOURCE_CREATED = "ResourceCreated"
REASON_RESOURCE_UPDATED = "ResourceUpdated"
REASON_READY = "Ready"
REASON_WAITING_TO_BECOME_READY = "WaitingToBecomeReady"
REASON_UNABLE_TO_PROVISION = "UnableToProvision"
REASON_DEPENDENCIES_NOT_READY = "DependenciesNotReady"
REASON_SERVICE_ERROR = "ServiceError"

MESSAGE_RESOURCE_CREATED = "Resource has been created"
MESSAGE_RESOURCE_UPDATED = "Resource has been updated"
MESSAGE_WAITING_TO_BECOME_READY = "Waiting for the resource to become ready"
MESSAGE_DEPENDENCIES_NOT_READY = "There are other conditions that are not yet ready"
MESSAGE_LISTENER_REFS_NOT_RESOLVED = "Listener references are not resolved yet."
MESSAGE_LISTENER_REFS_ACCEPTED = "Listeners' references are accepted."
MESSAGE_ALL_LISTENERS_ACCEPTED = "All listeners are accepted."

# Route kinds each listener protocol can carry.
SUPPORTED_ROUTES_BY_PROTOCOL: dict[str, tuple[str, ...]] = {
    "HTTP": ("HTTPRoute",),
    "HTTPS": ("HTTPRoute",),
}


@dataclass(frozen=True)
class Kind:
    """API coordinates of a resource kind handled by the controller."""

    api_version: str
    kind: str
    namespaced: bool = True

    @property
    def group(self) -> str:
        group, _, _ = self.api_version.rpartition("/")
        return group


GATEWAY = Kind(f"{GATEWAY_API_GROUP}/v1", "Gateway")
GATEWAY_CLASS = Kind(f"{GATEWAY_API_GROUP}/v1", "GatewayClass", namespaced=False)
HTTP_ROUTE = Kind(f"{GATEWAY_API_GROUP}/v1", "HTTPRoute")
REFERENCE_GRANT = Kind(f"{GATEWAY_API_GROUP}/v1beta1", "ReferenceGrant")
DATAPLANE = Kind(f"{OPERATOR_GROUP}/v1beta1", "DataPlane")
CONTROLPLANE = Kind(f"{OPERATOR_GROUP}/v1beta1", "ControlPlane")
GATEWAY_CONFIGURATION = Kind(f"{OPERATOR_GROUP}/v1beta1", "GatewayConfiguration")
NETWORK_POLICY = Kind("networking.k8s.io/v1", "NetworkPolicy")
SERVICE = Kind("v1", "Service")
SECRET = Kind("v1", "Secret")
NAMESPACE = Kind("v1", "Namespace", namespaced=False)
ENDPOINT_SLICE = Kind("discovery.k8s.io/v1", "EndpointSlice")
DEPLOYMENT = Kind("apps/v1", "Deployment")
