from __future__ import annotations

from typing import Any

from gateway_operator.src import consts
from gateway_operator.src.reduce import (
    filter_dataplanes,
    filter_deployments,
    filter_network_policies,
    filter_services,
    reduce_objects,
)
from gateway_operator.tests.builders import add_gateway, add_owned, make_store, ready_condition


def _obj(
    name: str,
    created: str = "2026-01-01T00:00:00Z",
    status: dict[str, Any] | None = None,
    uid: str = "",
) -> dict[str, Any]:
    return {
        "metadata": {"name": name, "creationTimestamp": created, "uid": uid or name},
        "status": status or {},
    }


def _names(objs: list[dict[str, Any]]) -> list[str]:
    return [obj["metadata"]["name"] for obj in objs]


def test_programmed_object_survives_regardless_of_age() -> None:
    old = _obj("old", "2025-01-01T00:00:00Z", {"readyReplicas": 3})
    programmed = _obj("new", "2026-06-01T00:00:00Z", {"conditions": [ready_condition(consts.PROGRAMMED)]})
    assert _names(filter_dataplanes([old, programmed])) == ["old"]


def test_ready_replicas_then_age_decide_among_unprogrammed() -> None:
    busy = _obj("busy", "2026-02-01T00:00:00Z", {"readyReplicas": 2})
    idle_old = _obj("idle-old", "2025-01-01T00:00:00Z")
    idle_new = _obj("idle-new", "2026-03-01T00:00:00Z")
    assert _names(filter_dataplanes([idle_old, busy, idle_new])) == ["idle-old", "idle-new"]


def test_deployments_prefer_available_replicas() -> None:
    available = _obj("available", "2026-02-01T00:00:00Z", {"availableReplicas": 1})
    ready_only = _obj("ready", "2025-01-01T00:00:00Z", {"readyReplicas": 5})
    assert _names(filter_deployments([ready_only, available])) == ["ready"]


def test_network_policies_keep_the_oldest_and_break_ties_by_name() -> None:
    a = _obj("a")
    b = _obj("b")
    older = _obj("z", "2025-01-01T00:00:00Z")
    assert _names(filter_network_policies([b, a, older])) == ["a", "b"]
    assert _names(filter_network_policies([b, a])) == ["b"]


def test_objects_without_timestamp_never_win_on_age() -> None:
    stamped = _obj("stamped")
    unstamped = {"metadata": {"name": "a", "uid": "u"}}
    assert _names(filter_network_policies([unstamped, stamped])) == ["a"]


def test_services_rank_by_ingress_then_slices_then_ready_endpoints() -> None:
    with_ingress = _obj("lb", "2026-05-01T00:00:00Z", {"loadBalancer": {"ingress": [{"ip": "203.0.113.1"}]}})
    with_endpoints = _obj("eps", "2025-01-01T00:00:00Z")
    slices = {
        "eps": [{"endpoints": [{"conditions": {"ready": True}}, {"conditions": {"ready": False}}]}],
    }
    assert _names(filter_services([with_endpoints, with_ingress], slices)) == ["eps"]

    plain = _obj("plain", "2024-01-01T00:00:00Z")
    assert _names(filter_services([plain, with_endpoints], slices)) == ["plain"]


def test_empty_candidates() -> None:
    assert filter_dataplanes([]) == []


def test_reduce_objects_deletes_all_but_survivor() -> None:
    store = make_store()
    gateway = add_gateway(store)
    for name, created in (("dp-a", "2026-01-02T00:00:00Z"), ("dp-b", "2026-01-01T00:00:00Z")):
        add_owned(store, consts.DATAPLANE, gateway, name, creation_timestamp=created)

    deleted = reduce_objects(store, consts.DATAPLANE, store.list(consts.DATAPLANE))

    assert _names(deleted) == ["dp-a"]
    assert _names(store.list(consts.DATAPLANE)) == ["dp-b"]


def test_reduce_services_reads_endpoint_slices_of_the_namespace() -> None:
    store = make_store()
    gateway = add_gateway(store)
    add_owned(store, consts.SERVICE, gateway, "svc-old", creation_timestamp="2025-01-01T00:00:00Z")
    add_owned(store, consts.SERVICE, gateway, "svc-live", creation_timestamp="2026-01-01T00:00:00Z")
    store.create(
        consts.ENDPOINT_SLICE,
        {
            "metadata": {
                "name": "svc-live-x",
                "namespace": "default",
                "labels": {"kubernetes.io/service-name": "svc-live"},
            },
            "endpoints": [{"conditions": {"ready": True}}],
        },
    )

    deleted = reduce_objects(store, consts.SERVICE, store.list(consts.SERVICE))

    assert _names(deleted) == ["svc-old"]
