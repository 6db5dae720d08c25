from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

from gateway_operator.src import consts
from gateway_operator.src.reduce import DuplicatesReducedError, reduce_objects
from gateway_operator.src.store import (
    ObjectStore,
    gateway_managed_labels,
    list_owned,
    meta,
    object_key,
    owner_reference,
)

LOGGER = logging.getLogger(__name__)

PROXY_LISTEN_ENV = "KONG_PROXY_LISTEN"
ADMIN_LISTEN_ENV = "KONG_ADMIN_LISTEN"


class ListenParseError(ValueError):
    """A listen-address entry could not be parsed."""


@dataclass(frozen=True)
class ListenEndpoint:
    address: str
    port: int


@dataclass(frozen=True)
class ListenConfig:
    """Plain and TLS endpoints found in a listen-address string."""

    endpoint: ListenEndpoint | None = None
    ssl_endpoint: ListenEndpoint | None = None


def _split_host_port(host_port: str) -> tuple[str, int]:
    host, separator, port = host_port.rpartition(":")
    if not separator:
        raise ListenParseError(f"failed parsing host {host_port}: missing port")
    if host.startswith("["):
        if not host.endswith("]"):
            raise ListenParseError(f"failed parsing host {host_port}: unbalanced brackets")
        host = host[1:-1]
    elif ":" in host:
        raise ListenParseError(f"failed parsing host {host_port}: too many colons")
    try:
        return host, int(port)
    except ValueError as exc:
        raise ListenParseError(f"failed parsing port {port}") from exc


def parse_listen(value: str) -> ListenConfig:
    """Parse a comma-separated ``<host>:<port> [flags]`` listen string.

    An entry flagged ``ssl`` fills the TLS endpoint, any other entry the plain
    one; later entries overwrite earlier ones of the same kind.
    """
    endpoint: ListenEndpoint | None = None
    ssl_endpoint: ListenEndpoint | None = None
    for entry in value.split(","):
        parts = entry.strip().split()
        if not parts:
            raise ListenParseError(f"failed parsing empty listen entry in {value!r}")
        host, port = _split_host_port(parts[0])
        if "ssl" in parts[1:]:
            ssl_endpoint = ListenEndpoint(host, port)
        else:
            endpoint = ListenEndpoint(host, port)
    return ListenConfig(endpoint=endpoint, ssl_endpoint=ssl_endpoint)


def proxy_container(dataplane: Mapping[str, Any]) -> dict[str, Any]:
    pod_spec = (
        ((dataplane.get("spec") or {}).get("deployment") or {}).get("podTemplateSpec") or {}
    ).get("spec") or {}
    for container in pod_spec.get("containers") or []:
        if container.get("name") == consts.DATAPLANE_PROXY_CONTAINER_NAME:
            return container
    return {}


def env_value(container: Mapping[str, Any], name: str) -> str:
    for env in container.get("env") or []:
        if env.get("name") == name:
            return env.get("value") or ""
    return ""


def _tcp(port: int) -> dict[str, Any]:
    return {"protocol": "TCP", "port": port}


def _peer(namespace: str, pod_labels: dict[str, str]) -> dict[str, Any]:
    return {
        "podSelector": {"matchLabels": pod_labels},
        "namespaceSelector": {"matchLabels": {"kubernetes.io/metadata.name": namespace}},
    }


def generate_network_policy(
    gateway: Mapping[str, Any],
    dataplane: Mapping[str, Any],
    controlplane: Mapping[str, Any],
    operator_namespace: str = "",
    operator_pod_labels: Mapping[str, str] | None = None,
) -> dict[str, Any]:
    """Build the NetworkPolicy guarding a DataPlane's pods.

    Only the ControlPlane (and the operator's own pods, when their namespace
    and labels are known) may reach the admin API; proxy and metrics ports
    are open. Ports follow the proxy container's listen environment when set.
    """
    admin_port = consts.DATAPLANE_ADMIN_API_PORT
    proxy_port = consts.DATAPLANE_PROXY_PORT
    proxy_ssl_port = consts.DATAPLANE_PROXY_SSL_PORT

    container = proxy_container(dataplane)
    proxy_listen = env_value(container, PROXY_LISTEN_ENV)
    if proxy_listen:
        try:
            listen = parse_listen(proxy_listen)
        except ListenParseError as exc:
            raise ListenParseError(f"failed parsing {PROXY_LISTEN_ENV} env: {exc}") from exc
        if listen.endpoint is not None:
            proxy_port = listen.endpoint.port
        if listen.ssl_endpoint is not None:
            proxy_ssl_port = listen.ssl_endpoint.port
    admin_listen = env_value(container, ADMIN_LISTEN_ENV)
    if admin_listen:
        try:
            listen = parse_listen(admin_listen)
        except ListenParseError as exc:
            raise ListenParseError(f"failed parsing {ADMIN_LISTEN_ENV} env: {exc}") from exc
        if listen.ssl_endpoint is not None:
            admin_port = listen.ssl_endpoint.port

    namespace, _ = object_key(gateway)
    dataplane_name = meta(dataplane).get("name")
    controlplane_namespace, controlplane_name = object_key(controlplane)
    admin_peers: list[dict[str, Any]] = [_peer(controlplane_namespace, {"app": controlplane_name})]
    if operator_namespace and operator_pod_labels:
        admin_peers.append(_peer(operator_namespace, dict(operator_pod_labels)))
    return {
        "apiVersion": consts.NETWORK_POLICY.api_version,
        "kind": consts.NETWORK_POLICY.kind,
        "metadata": {
            "namespace": namespace,
            "generateName": f"{dataplane_name}-limit-admin-api-",
            "labels": gateway_managed_labels(gateway),
            "ownerReferences": [owner_reference(gateway)],
        },
        "spec": {
            "podSelector": {"matchLabels": {"app": dataplane_name}},
            "policyTypes": ["Ingress"],
            "ingress": [
                {"ports": [_tcp(admin_port)], "from": admin_peers},
                {"ports": [_tcp(proxy_port), _tcp(proxy_ssl_port)]},
                {"ports": [_tcp(consts.DATAPLANE_METRICS_PORT)]},
            ],
        },
    }


def _policy_drift(existing: Mapping[str, Any], desired: Mapping[str, Any]) -> dict[str, Any]:
    """Return the merge patch bringing *existing* in line with *desired*, or ``{}``."""
    patch: dict[str, Any] = {}
    existing_meta = meta(existing)
    desired_meta = meta(desired)

    labels = existing_meta.get("labels") or {}
    missing_labels = {
        k: v for k, v in desired_meta["labels"].items() if labels.get(k) != v
    }
    if missing_labels:
        patch.setdefault("metadata", {})["labels"] = missing_labels
    if existing_meta.get("ownerReferences") != desired_meta["ownerReferences"]:
        patch.setdefault("metadata", {})["ownerReferences"] = desired_meta["ownerReferences"]

    existing_spec = existing.get("spec") or {}
    spec_patch = {
        key: value for key, value in desired["spec"].items() if existing_spec.get(key) != value
    }
    if "podSelector" in spec_patch:
        stale = set((existing_spec.get("podSelector") or {}).get("matchLabels") or {})
        wanted = desired["spec"]["podSelector"]["matchLabels"]
        spec_patch["podSelector"] = {
            "matchLabels": {**{k: None for k in stale - set(wanted)}, **wanted}
        }
    if spec_patch:
        patch["spec"] = spec_patch
    return patch


def ensure_network_policy(
    store: ObjectStore,
    gateway: Mapping[str, Any],
    dataplane: Mapping[str, Any],
    controlplane: Mapping[str, Any],
    operator_namespace: str = "",
    operator_pod_labels: Mapping[str, str] | None = None,
) -> bool:
    """Ensure exactly one up-to-date NetworkPolicy exists for the Gateway.

    Returns True when the policy was created or patched. Duplicates are
    reduced and reported with :class:`DuplicatesReducedError`.
    """
    policies = list_owned(
        store, consts.NETWORK_POLICY, gateway, labels=gateway_managed_labels(gateway)
    )
    if len(policies) > 1:
        reduce_objects(store, consts.NETWORK_POLICY, policies)
        raise DuplicatesReducedError(consts.NETWORK_POLICY.kind, len(policies))

    desired = generate_network_policy(
        gateway, dataplane, controlplane, operator_namespace, operator_pod_labels
    )
    if not policies:
        created = store.create(consts.NETWORK_POLICY, desired)
        LOGGER.info("Created NetworkPolicy %s/%s", *object_key(created))
        return True

    existing = policies[0]
    patch = _policy_drift(existing, desired)
    if not patch:
        return False
    namespace, name = object_key(existing)
    patch.setdefault("metadata", {})["resourceVersion"] = meta(existing).get("resourceVersion")
    store.patch(consts.NETWORK_POLICY, namespace, name, patch)
    LOGGER.info("Updated NetworkPolicy %s/%s", namespace, name)
    return True
