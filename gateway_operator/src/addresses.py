from __future__ import annotations

from collections.abc import Mapping
from typing import Any

from gateway_operator.src.store import object_key

IP_ADDRESS_TYPE = "IPAddress"
HOSTNAME_TYPE = "Hostname"


class AddressError(Exception):
    """The ingress Service cannot provide an address yet."""


def gateway_addresses_from_service(service: Mapping[str, Any]) -> list[dict[str, str]]:
    """Derive Gateway status addresses from the DataPlane's ingress Service.

    LoadBalancer Services contribute one entry per ingress IP and hostname, in
    record order; no ingress records yet is not an error. Any other Service
    type must already have a cluster IP.
    """
    spec = service.get("spec") or {}
    if spec.get("type") == "LoadBalancer":
        addresses: list[dict[str, str]] = []
        ingress = ((service.get("status") or {}).get("loadBalancer") or {}).get("ingress") or []
        for record in ingress:
            if record.get("ip"):
                addresses.append({"type": IP_ADDRESS_TYPE, "value": record["ip"]})
            if record.get("hostname"):
                addresses.append({"type": HOSTNAME_TYPE, "value": record["hostname"]})
        return addresses

    cluster_ip = spec.get("clusterIP")
    if not cluster_ip or cluster_ip == "None":
        namespace, name = object_key(service)
        raise AddressError(f"service {namespace}/{name} doesn't have a ClusterIP yet, not ready")
    return [{"type": IP_ADDRESS_TYPE, "value": cluster_ip}]
