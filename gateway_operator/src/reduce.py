from __future__ import annotations

import logging
from collections.abc import Callable, Iterable, Mapping, Sequence
from typing import Any

from gateway_operator.src import consts
from gateway_operator.src.conditions import ObjectConditions, is_programmed
from gateway_operator.src.consts import Kind
from gateway_operator.src.metrics import METRICS
from gateway_operator.src.store import NotFoundError, ObjectStore, meta, object_key

LOGGER = logging.getLogger(__name__)

Signals = Callable[[Mapping[str, Any]], tuple[int, ...]]


class DuplicatesReducedError(Exception):
    """Raised after duplicates of one role were deleted; the next pass re-lists."""

    def __init__(self, role: str, count: int) -> None:
        super().__init__(f"{role}s found: {count}, expected: 1")
        self.role = role
        self.count = count


# Sorts after every RFC 3339 timestamp, so objects without one are never the oldest.
_NO_TIMESTAMP = "~"


def _status(obj: Mapping[str, Any]) -> Mapping[str, Any]:
    return obj.get("status") or {}


def _rank(obj: Mapping[str, Any], signals: Signals) -> tuple[Any, ...]:
    """Sort key: the smallest key is the survivor.

    Programmed objects come first and compete on age alone; the rest compete
    on their availability signals, then age. Name and UID make the order total.
    """
    metadata = meta(obj)
    age = (
        metadata.get("creationTimestamp") or _NO_TIMESTAMP,
        metadata.get("name") or "",
        metadata.get("uid") or "",
    )
    if is_programmed(ObjectConditions(dict(obj))):
        return (0, (), *age)
    return (1, tuple(-value for value in signals(obj)), *age)


def select_for_deletion(
    candidates: Sequence[Mapping[str, Any]], signals: Signals
) -> list[dict[str, Any]]:
    """Return every candidate except the single survivor."""
    if not candidates:
        return []
    ordered = sorted(candidates, key=lambda obj: _rank(obj, signals))
    return [dict(obj) for obj in ordered[1:]]


def no_signals(obj: Mapping[str, Any]) -> tuple[int, ...]:
    return ()


def workload_signals(obj: Mapping[str, Any]) -> tuple[int, ...]:
    status = _status(obj)
    return (int(status.get("readyReplicas") or 0),)


def deployment_signals(obj: Mapping[str, Any]) -> tuple[int, ...]:
    status = _status(obj)
    return (int(status.get("availableReplicas") or 0), int(status.get("readyReplicas") or 0))


def ready_endpoints_count(endpoint_slices: Iterable[Mapping[str, Any]]) -> int:
    count = 0
    for endpoint_slice in endpoint_slices:
        for endpoint in endpoint_slice.get("endpoints") or []:
            if (endpoint.get("conditions") or {}).get("ready"):
                count += 1
    return count


def service_signals(
    endpoint_slices: Mapping[str, Sequence[Mapping[str, Any]]],
) -> Signals:
    """Signals for Services: LB ingress records, then EndpointSlices, then ready endpoints."""

    def _signals(obj: Mapping[str, Any]) -> tuple[int, ...]:
        ingress = (_status(obj).get("loadBalancer") or {}).get("ingress") or []
        slices = endpoint_slices.get(meta(obj).get("name") or "", [])
        return (len(ingress), len(slices), ready_endpoints_count(slices))

    return _signals


def filter_dataplanes(dataplanes: Sequence[Mapping[str, Any]]) -> list[dict[str, Any]]:
    return select_for_deletion(dataplanes, workload_signals)


def filter_controlplanes(controlplanes: Sequence[Mapping[str, Any]]) -> list[dict[str, Any]]:
    return select_for_deletion(controlplanes, workload_signals)


def filter_network_policies(policies: Sequence[Mapping[str, Any]]) -> list[dict[str, Any]]:
    return select_for_deletion(policies, no_signals)


def filter_deployments(deployments: Sequence[Mapping[str, Any]]) -> list[dict[str, Any]]:
    return select_for_deletion(deployments, deployment_signals)


def filter_services(
    services: Sequence[Mapping[str, Any]],
    endpoint_slices: Mapping[str, Sequence[Mapping[str, Any]]],
) -> list[dict[str, Any]]:
    return select_for_deletion(services, service_signals(endpoint_slices))


def endpoint_slices_by_service(
    store: ObjectStore, namespace: str
) -> dict[str, list[dict[str, Any]]]:
    result: dict[str, list[dict[str, Any]]] = {}
    for endpoint_slice in store.list(consts.ENDPOINT_SLICE, namespace=namespace):
        service = (meta(endpoint_slice).get("labels") or {}).get("kubernetes.io/service-name")
        if service:
            result.setdefault(service, []).append(endpoint_slice)
    return result


_FILTERS: dict[str, Callable[[Sequence[Mapping[str, Any]]], list[dict[str, Any]]]] = {
    consts.DATAPLANE.kind: filter_dataplanes,
    consts.CONTROLPLANE.kind: filter_controlplanes,
    consts.NETWORK_POLICY.kind: filter_network_policies,
    consts.DEPLOYMENT.kind: filter_deployments,
}


def reduce_objects(
    store: ObjectStore, kind: Kind, candidates: Sequence[Mapping[str, Any]]
) -> list[dict[str, Any]]:
    """Delete all but one of *candidates* and return the deleted objects.

    Services are ranked with the EndpointSlices of their namespace. Objects
    that are already gone count as deleted.
    """
    if kind == consts.SERVICE:
        namespace = object_key(candidates[0])[0] if candidates else ""
        doomed = filter_services(candidates, endpoint_slices_by_service(store, namespace))
    else:
        doomed = _FILTERS[kind.kind](candidates)

    for obj in doomed:
        namespace, name = object_key(obj)
        try:
            store.delete(kind, namespace, name)
        except NotFoundError:
            LOGGER.debug("%s %s/%s already deleted", kind.kind, namespace, name)
        METRICS.duplicates_reduced_total.labels(role=kind.kind).inc()
        LOGGER.info("Deleted duplicate %s %s/%s", kind.kind, namespace, name)
    return doomed
