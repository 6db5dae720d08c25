from __future__ import annotations

from typing import Any

import pytest

from gateway_operator.src import consts
from gateway_operator.src.conditions import GatewayConditions, get_condition
from gateway_operator.src.listeners import (
    count_attached_routes,
    gateway_status_needs_update,
    label_selector_matches,
    set_listeners_programmed,
    supported_kinds_with_resolved_refs,
    validate_listeners,
)
from gateway_operator.tests.builders import (
    FIXED_NOW,
    add_gateway,
    add_tls_secret,
    http_listener,
    make_store,
    tls_secret_data,
)


def _validated(store: Any, listeners: list[dict[str, Any]]) -> GatewayConditions:
    gateway = GatewayConditions(add_gateway(store, listeners=listeners))
    validate_listeners(store, gateway, FIXED_NOW)
    return gateway


def _listener_condition(gateway: GatewayConditions, index: int, condition_type: str) -> dict[str, Any]:
    condition = get_condition(gateway.listener(index), condition_type)
    assert condition is not None
    return condition


def _https(ref: dict[str, Any] | None = None, **extra: Any) -> dict[str, Any]:
    tls: dict[str, Any] = {"mode": "Terminate", "certificateRefs": [ref or {"name": "tls"}]}
    tls.update(extra)
    return http_listener("https", 443, "HTTPS", tls=tls)


def _add_route(
    store: Any, name: str, namespace: str = "default", parent: dict[str, Any] | None = None
) -> None:
    parent_ref = {"name": "gw", **(parent or {})}
    store.create(
        consts.HTTP_ROUTE,
        {"metadata": {"name": name, "namespace": namespace}, "spec": {"parentRefs": [parent_ref]}},
    )


@pytest.mark.parametrize(
    ("selector", "labels", "expected"),
    [
        (None, {}, True),
        ({"matchLabels": {"team": "a"}}, {"team": "a"}, True),
        ({"matchLabels": {"team": "a"}}, {"team": "b"}, False),
        ({"matchExpressions": [{"key": "env", "operator": "In", "values": ["prod"]}]}, {"env": "prod"}, True),
        ({"matchExpressions": [{"key": "env", "operator": "NotIn", "values": ["prod"]}]}, {"env": "prod"}, False),
        ({"matchExpressions": [{"key": "env", "operator": "Exists"}]}, {}, False),
        ({"matchExpressions": [{"key": "env", "operator": "DoesNotExist"}]}, {}, True),
    ],
)
def test_label_selector_matches(selector: Any, labels: dict[str, str], expected: bool) -> None:
    assert label_selector_matches(selector, labels) is expected


def test_single_http_listener_is_accepted_and_resolved() -> None:
    gateway = _validated(make_store(), [http_listener()])

    status = gateway.get_listeners()[0]
    assert status["name"] == "http"
    assert status["supportedKinds"] == [{"group": consts.GATEWAY_API_GROUP, "kind": "HTTPRoute"}]
    assert [c["type"] for c in status["conditions"]] == [
        consts.CONFLICTED,
        consts.ACCEPTED,
        consts.PROGRAMMED,
        consts.RESOLVED_REFS,
    ]
    assert _listener_condition(gateway, 0, consts.CONFLICTED)["status"] == "False"
    assert _listener_condition(gateway, 0, consts.RESOLVED_REFS)["message"] == (
        consts.MESSAGE_LISTENER_REFS_ACCEPTED
    )
    assert get_condition(gateway, consts.ACCEPTED)["status"] == "True"
    assert get_condition(gateway, consts.PROGRAMMED)["reason"] == consts.REASON_PENDING


def test_same_port_different_protocol_conflicts_both_ways() -> None:
    gateway = _validated(
        make_store(), [http_listener("a", 80, "HTTP"), http_listener("b", 80, "HTTPS")]
    )
    for index in (0, 1):
        conflicted = _listener_condition(gateway, index, consts.CONFLICTED)
        assert conflicted["status"] == "True"
        assert conflicted["reason"] == consts.REASON_PROTOCOL_CONFLICT


def test_shared_hostname_conflicts() -> None:
    gateway = _validated(
        make_store(),
        [http_listener("a", 80, hostname="x.example.com"), http_listener("b", 81, hostname="x.example.com")],
    )
    assert _listener_condition(gateway, 0, consts.CONFLICTED)["reason"] == consts.REASON_HOSTNAME_CONFLICT
    assert get_condition(gateway, consts.ACCEPTED)["message"] == (
        "Listener 0 is conflicted. Listener 1 is conflicted."
    )


def test_same_port_and_protocol_without_hostnames_does_not_conflict() -> None:
    gateway = _validated(make_store(), [http_listener("a"), http_listener("b")])
    assert _listener_condition(gateway, 0, consts.CONFLICTED)["status"] == "False"
    assert get_condition(gateway, consts.ACCEPTED)["status"] == "True"


def test_unsupported_protocol_has_no_supported_kinds() -> None:
    gateway = _validated(make_store(), [http_listener("udp", 53, "UDP")])
    accepted = _listener_condition(gateway, 0, consts.ACCEPTED)
    assert accepted["reason"] == consts.REASON_UNSUPPORTED_PROTOCOL
    assert gateway.get_listeners()[0]["supportedKinds"] == []


def test_valid_tls_secret_resolves() -> None:
    store = make_store()
    add_tls_secret(store)
    gateway = _validated(store, [_https()])
    assert _listener_condition(gateway, 0, consts.RESOLVED_REFS)["status"] == "True"


def test_missing_tls_secret() -> None:
    gateway = _validated(make_store(), [_https()])
    resolved = _listener_condition(gateway, 0, consts.RESOLVED_REFS)
    assert resolved["reason"] == consts.REASON_INVALID_CERTIFICATE_REF
    assert resolved["message"] == "Referenced secret default/tls does not exist."


def test_mismatched_keypair_is_invalid() -> None:
    store = make_store()
    add_tls_secret(store, data=tls_secret_data(mismatched_key=True))
    gateway = _validated(store, [_https()])
    resolved = _listener_condition(gateway, 0, consts.RESOLVED_REFS)
    assert resolved["reason"] == consts.REASON_INVALID_CERTIFICATE_REF
    assert "valid TLS certificate" in resolved["message"]


def test_garbage_secret_data_is_invalid() -> None:
    store = make_store()
    add_tls_secret(store, data={"tls.crt": "not-base64!", "tls.key": ""})
    gateway = _validated(store, [_https()])
    assert _listener_condition(gateway, 0, consts.RESOLVED_REFS)["status"] == "False"


def test_passthrough_and_multiple_refs_accumulate_messages() -> None:
    listener = http_listener(
        "https",
        443,
        "HTTPS",
        tls={"mode": "Passthrough", "certificateRefs": [{"name": "a"}, {"name": "b"}]},
    )
    gateway = _validated(make_store(), [listener])
    resolved = _listener_condition(gateway, 0, consts.RESOLVED_REFS)
    assert resolved["reason"] == consts.REASON_TOO_MANY_TLS_SECRETS
    assert resolved["message"] == (
        "Only Terminate mode is supported. Only one certificate per listener is supported."
    )


def test_non_secret_certificate_ref() -> None:
    gateway = _validated(make_store(), [_https({"name": "tls", "group": "example.com", "kind": "Cert"})])
    resolved = _listener_condition(gateway, 0, consts.RESOLVED_REFS)
    assert resolved["reason"] == consts.REASON_INVALID_CERTIFICATE_REF
    assert "core Secret" in resolved["message"]


def test_cross_namespace_secret_requires_reference_grant() -> None:
    store = make_store()
    add_tls_secret(store, namespace="certs")
    gateway = _validated(store, [_https({"name": "tls", "namespace": "certs"})])
    resolved = _listener_condition(gateway, 0, consts.RESOLVED_REFS)
    assert resolved["reason"] == consts.REASON_REF_NOT_PERMITTED

    store.create(
        consts.REFERENCE_GRANT,
        {
            "metadata": {"name": "allow", "namespace": "certs"},
            "spec": {
                "from": [{"group": consts.GATEWAY_API_GROUP, "kind": "Gateway", "namespace": "default"}],
                "to": [{"group": "", "kind": "Secret"}],
            },
        },
    )
    validate_listeners(store, gateway, FIXED_NOW)
    assert _listener_condition(gateway, 0, consts.RESOLVED_REFS)["status"] == "True"


def test_unsupported_route_kind_is_dropped() -> None:
    listener = http_listener(
        allowedRoutes={
            "kinds": [
                {"group": consts.GATEWAY_API_GROUP, "kind": "HTTPRoute"},
                {"group": consts.GATEWAY_API_GROUP, "kind": "TCPRoute"},
            ]
        }
    )
    gateway = _validated(make_store(), [listener])
    assert gateway.get_listeners()[0]["supportedKinds"] == [
        {"group": consts.GATEWAY_API_GROUP, "kind": "HTTPRoute"}
    ]
    resolved = _listener_condition(gateway, 0, consts.RESOLVED_REFS)
    assert resolved["reason"] == consts.REASON_INVALID_ROUTE_KINDS
    assert resolved["message"] == "Route TCPRoute not supported."


def test_attached_routes_honour_namespace_policy_and_section() -> None:
    store = make_store()
    store.create(consts.NAMESPACE, {"metadata": {"name": "default"}})
    store.create(consts.NAMESPACE, {"metadata": {"name": "team", "labels": {"shared": "yes"}}})
    gateway = add_gateway(store)
    _add_route(store, "same")
    _add_route(store, "other-section", parent={"sectionName": "https"})
    _add_route(store, "remote", namespace="team", parent={"namespace": "default"})

    same = http_listener()
    everywhere = http_listener(allowedRoutes={"namespaces": {"from": "All"}})
    selected = http_listener(
        allowedRoutes={"namespaces": {"from": "Selector", "selector": {"matchLabels": {"shared": "yes"}}}}
    )
    nowhere = http_listener(allowedRoutes={"namespaces": {"from": "None"}})

    assert count_attached_routes(store, gateway, same) == 1
    assert count_attached_routes(store, gateway, everywhere) == 2
    assert count_attached_routes(store, gateway, selected) == 1
    assert count_attached_routes(store, gateway, nowhere) == 0


def test_routes_for_another_gateway_are_not_counted() -> None:
    store = make_store()
    gateway = add_gateway(store)
    store.create(
        consts.HTTP_ROUTE,
        {"metadata": {"name": "r", "namespace": "default"}, "spec": {"parentRefs": [{"name": "other"}]}},
    )
    assert count_attached_routes(store, gateway, http_listener()) == 0


def test_listeners_programmed_follows_resolved_refs() -> None:
    gateway = _validated(make_store(), [http_listener(), _https()])
    set_listeners_programmed(gateway, FIXED_NOW)
    assert _listener_condition(gateway, 0, consts.PROGRAMMED)["status"] == "True"
    pending = _listener_condition(gateway, 1, consts.PROGRAMMED)
    assert pending["status"] == "False"
    assert pending["message"] == consts.MESSAGE_LISTENER_REFS_NOT_RESOLVED


def test_status_needs_update_ignores_listener_programmed() -> None:
    store = make_store()
    first = _validated(store, [http_listener()])
    third = GatewayConditions(store.get(consts.GATEWAY, "default", "gw"))
    validate_listeners(store, third, "2026-02-01T00:00:00Z")

    assert not gateway_status_needs_update(first, third)

    set_listeners_programmed(third, FIXED_NOW)
    assert not gateway_status_needs_update(first, third)

    third.listener(0).listener_status["attachedRoutes"] = 4
    assert gateway_status_needs_update(first, third)


def test_status_needs_update_without_previous_accepted() -> None:
    store = make_store()
    validated = _validated(store, [http_listener()])
    empty = GatewayConditions({"metadata": {"generation": 1}, "status": {}})
    assert gateway_status_needs_update(empty, validated)


def test_resolved_refs_without_tls_is_clean() -> None:
    store = make_store()
    gateway = add_gateway(store)
    kinds, condition = supported_kinds_with_resolved_refs(store, gateway, http_listener(), 1, FIXED_NOW)
    assert kinds == [{"group": consts.GATEWAY_API_GROUP, "kind": "HTTPRoute"}]
    assert condition["status"] == "True"
