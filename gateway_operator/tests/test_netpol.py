from __future__ import annotations

from typing import Any

import pytest

from gateway_operator.src import consts
from gateway_operator.src.netpol import (
    ListenConfig,
    ListenEndpoint,
    ListenParseError,
    ensure_network_policy,
    generate_network_policy,
    parse_listen,
)
from gateway_operator.src.reduce import DuplicatesReducedError
from gateway_operator.src.store import gateway_managed_labels
from gateway_operator.tests.builders import add_gateway, add_owned, make_store


def _dataplane_with_env(store: Any, gateway: dict[str, Any], env: list[dict[str, str]]) -> dict[str, Any]:
    spec = {
        "deployment": {
            "podTemplateSpec": {
                "spec": {"containers": [{"name": consts.DATAPLANE_PROXY_CONTAINER_NAME, "env": env}]}
            }
        }
    }
    return add_owned(store, consts.DATAPLANE, gateway, "dp", spec=spec)


def _ports(policy: dict[str, Any]) -> list[list[int]]:
    return [[port["port"] for port in rule["ports"]] for rule in policy["spec"]["ingress"]]


@pytest.mark.parametrize(
    ("value", "expected"),
    [
        ("0.0.0.0:8000", ListenConfig(endpoint=ListenEndpoint("0.0.0.0", 8000))),
        (
            "0.0.0.0:8000 reuseport backlog=16384, 0.0.0.0:8443 http2 ssl reuseport",
            ListenConfig(ListenEndpoint("0.0.0.0", 8000), ListenEndpoint("0.0.0.0", 8443)),
        ),
        ("[::]:9443 ssl", ListenConfig(ssl_endpoint=ListenEndpoint("::", 9443))),
        ("a:1, b:2", ListenConfig(endpoint=ListenEndpoint("b", 2))),
    ],
)
def test_parse_listen(value: str, expected: ListenConfig) -> None:
    assert parse_listen(value) == expected


@pytest.mark.parametrize("value", ["8000", "host:port", "::1:80", "[::1:80", "a:1,,b:2"])
def test_parse_listen_rejects_malformed_entries(value: str) -> None:
    with pytest.raises(ListenParseError):
        parse_listen(value)


def test_default_policy_layout() -> None:
    store = make_store()
    gateway = add_gateway(store)
    dataplane = add_owned(store, consts.DATAPLANE, gateway, "dp")
    controlplane = add_owned(store, consts.CONTROLPLANE, gateway, "cp")

    policy = generate_network_policy(gateway, dataplane, controlplane)

    assert policy["metadata"]["generateName"] == "dp-limit-admin-api-"
    assert policy["metadata"]["labels"] == gateway_managed_labels(gateway)
    assert policy["spec"]["podSelector"] == {"matchLabels": {"app": "dp"}}
    assert _ports(policy) == [[8444], [8000, 8443], [8100]]
    assert policy["spec"]["ingress"][0]["from"] == [
        {
            "podSelector": {"matchLabels": {"app": "cp"}},
            "namespaceSelector": {"matchLabels": {"kubernetes.io/metadata.name": "default"}},
        }
    ]


def test_listen_env_overrides_ports() -> None:
    store = make_store()
    gateway = add_gateway(store)
    dataplane = _dataplane_with_env(
        store,
        gateway,
        [
            {"name": "KONG_PROXY_LISTEN", "value": "0.0.0.0:9000, 0.0.0.0:9443 ssl"},
            {"name": "KONG_ADMIN_LISTEN", "value": "0.0.0.0:9444 ssl"},
        ],
    )
    controlplane = add_owned(store, consts.CONTROLPLANE, gateway, "cp")

    assert _ports(generate_network_policy(gateway, dataplane, controlplane)) == [
        [9444],
        [9000, 9443],
        [8100],
    ]


def test_unparseable_listen_env_names_the_variable() -> None:
    store = make_store()
    gateway = add_gateway(store)
    dataplane = _dataplane_with_env(store, gateway, [{"name": "KONG_ADMIN_LISTEN", "value": "nope"}])
    controlplane = add_owned(store, consts.CONTROLPLANE, gateway, "cp")

    with pytest.raises(ListenParseError, match="KONG_ADMIN_LISTEN"):
        generate_network_policy(gateway, dataplane, controlplane)


def test_operator_pods_may_reach_admin_api() -> None:
    store = make_store()
    gateway = add_gateway(store)
    dataplane = add_owned(store, consts.DATAPLANE, gateway, "dp")
    controlplane = add_owned(store, consts.CONTROLPLANE, gateway, "cp")

    policy = generate_network_policy(
        gateway, dataplane, controlplane, "operator-system", {"app": "operator"}
    )

    peers = policy["spec"]["ingress"][0]["from"]
    assert len(peers) == 2
    assert peers[1]["namespaceSelector"]["matchLabels"] == {
        "kubernetes.io/metadata.name": "operator-system"
    }


def test_ensure_creates_then_is_idempotent_then_repairs_drift() -> None:
    store = make_store()
    gateway = add_gateway(store)
    dataplane = add_owned(store, consts.DATAPLANE, gateway, "dp")
    controlplane = add_owned(store, consts.CONTROLPLANE, gateway, "cp")

    assert ensure_network_policy(store, gateway, dataplane, controlplane) is True
    assert ensure_network_policy(store, gateway, dataplane, controlplane) is False

    [policy] = store.list(consts.NETWORK_POLICY)
    name = policy["metadata"]["name"]
    store.patch(
        consts.NETWORK_POLICY,
        "default",
        name,
        {"spec": {"podSelector": {"matchLabels": {"app": "dp", "extra": "x"}}, "ingress": []}},
    )

    assert ensure_network_policy(store, gateway, dataplane, controlplane) is True
    repaired = store.get(consts.NETWORK_POLICY, "default", name)
    assert repaired["spec"] == generate_network_policy(gateway, dataplane, controlplane)["spec"]
    assert ensure_network_policy(store, gateway, dataplane, controlplane) is False


def test_ensure_reduces_duplicates() -> None:
    store = make_store()
    gateway = add_gateway(store)
    dataplane = add_owned(store, consts.DATAPLANE, gateway, "dp")
    controlplane = add_owned(store, consts.CONTROLPLANE, gateway, "cp")
    for name in ("np-a", "np-b"):
        add_owned(store, consts.NETWORK_POLICY, gateway, name, labels=gateway_managed_labels(gateway))

    with pytest.raises(DuplicatesReducedError):
        ensure_network_policy(store, gateway, dataplane, controlplane)
    assert len(store.list(consts.NETWORK_POLICY)) == 1
