from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any

from gateway_operator.src import consts
from gateway_operator.src.conditions import (
    FALSE,
    TRUE,
    GatewayConditions,
    condition_message,
    conditions_equal,
    get_condition,
    new_condition,
    set_accepted_on_gateway,
    set_condition,
)
from gateway_operator.src.refs import (
    certificate_ref_target,
    check_reference_grant_for_secret,
    core_secret_ref_error,
    is_tls_secret_valid,
)
from gateway_operator.src.store import NotFoundError, ObjectStore, meta, object_key

LOGGER = logging.getLogger(__name__)

NAMESPACES_FROM_ALL = "All"
NAMESPACES_FROM_SAME = "Same"
NAMESPACES_FROM_SELECTOR = "Selector"
NAMESPACES_FROM_NONE = "None"


def _listeners(gateway: GatewayConditions) -> list[dict[str, Any]]:
    return list((gateway.obj.get("spec") or {}).get("listeners") or [])


def label_selector_matches(selector: Mapping[str, Any] | None, labels: Mapping[str, str]) -> bool:
    """Evaluate a Kubernetes ``LabelSelector`` (matchLabels and matchExpressions)."""
    if selector is None:
        return True
    for key, value in (selector.get("matchLabels") or {}).items():
        if labels.get(key) != value:
            return False
    for expression in selector.get("matchExpressions") or []:
        key = expression.get("key", "")
        operator = expression.get("operator")
        values = expression.get("values") or []
        if operator == "In" and labels.get(key) not in values:
            return False
        if operator == "NotIn" and key in labels and labels[key] in values:
            return False
        if operator == "Exists" and key not in labels:
            return False
        if operator == "DoesNotExist" and key in labels:
            return False
    return True


def init_listeners_status(gateway: GatewayConditions) -> None:
    """Reset ``status.listeners`` to one empty entry per declared listener."""
    gateway.set_listeners(
        [
            {"name": listener.get("name"), "conditions": [], "supportedKinds": [], "attachedRoutes": 0}
            for listener in _listeners(gateway)
        ]
    )


def set_conflicted(gateway: GatewayConditions, now: str | None = None) -> None:
    """Set each listener's Conflicted condition.

    A listener conflicts with another when they share a port with different
    protocols, or when both carry the same hostname. The relation is
    symmetric, so both sides of a pair end up conflicted.
    """
    listeners = _listeners(gateway)
    for i, listener in enumerate(listeners):
        status, reason = FALSE, consts.REASON_NO_CONFLICTS
        for j, other in enumerate(listeners):
            if i == j:
                continue
            if listener.get("port") == other.get("port") and listener.get("protocol") != other.get(
                "protocol"
            ):
                status, reason = TRUE, consts.REASON_PROTOCOL_CONFLICT
                break
            hostname = listener.get("hostname")
            if hostname and hostname == other.get("hostname"):
                status, reason = TRUE, consts.REASON_HOSTNAME_CONFLICT
                break
        set_condition(
            gateway.listener(i),
            new_condition(consts.CONFLICTED, status, reason, "", gateway.generation, now),
        )


def _allowed_route_namespaces(
    store: ObjectStore, gateway: Mapping[str, Any], listener: Mapping[str, Any]
) -> list[str] | None:
    """Namespaces a listener accepts routes from; ``None`` means any namespace."""
    gateway_namespace, _ = object_key(gateway)
    namespaces = (listener.get("allowedRoutes") or {}).get("namespaces") or {}
    policy = namespaces.get("from") or NAMESPACES_FROM_SAME
    if policy == NAMESPACES_FROM_ALL:
        return None
    if policy == NAMESPACES_FROM_NONE:
        return []
    if policy == NAMESPACES_FROM_SELECTOR:
        selector = namespaces.get("selector") or {}
        return [
            meta(namespace).get("name")
            for namespace in store.list(consts.NAMESPACE)
            if label_selector_matches(selector, meta(namespace).get("labels") or {})
        ]
    return [gateway_namespace]


def _parent_ref_matches(
    parent_ref: Mapping[str, Any],
    route_namespace: str,
    gateway: Mapping[str, Any],
    listener_name: str,
) -> bool:
    gateway_namespace, gateway_name = object_key(gateway)
    if (parent_ref.get("group") or consts.GATEWAY_API_GROUP) != consts.GATEWAY_API_GROUP:
        return False
    if (parent_ref.get("kind") or consts.GATEWAY.kind) != consts.GATEWAY.kind:
        return False
    if parent_ref.get("name") != gateway_name:
        return False
    if (parent_ref.get("namespace") or route_namespace) != gateway_namespace:
        return False
    section = parent_ref.get("sectionName")
    return not section or section == listener_name


def _listener_accepts_http_routes(listener: Mapping[str, Any]) -> bool:
    supported = consts.SUPPORTED_ROUTES_BY_PROTOCOL.get(listener.get("protocol") or "")
    if supported is None:
        return False
    kinds = (listener.get("allowedRoutes") or {}).get("kinds") or []
    if not kinds:
        return consts.HTTP_ROUTE.kind in supported
    return any(
        kind.get("kind") == consts.HTTP_ROUTE.kind
        and kind.get("kind") in supported
        and kind.get("group", consts.GATEWAY_API_GROUP) == consts.GATEWAY_API_GROUP
        for kind in kinds
    )


def count_attached_routes(
    store: ObjectStore, gateway: Mapping[str, Any], listener: Mapping[str, Any]
) -> int:
    """Count the HTTPRoutes attached to *listener*.

    The namespace set is recomputed on every call; for the Selector policy
    that means a live Namespace list.
    """
    if not _listener_accepts_http_routes(listener):
        return 0
    namespaces = _allowed_route_namespaces(store, gateway, listener)
    if namespaces is not None and not namespaces:
        return 0

    if namespaces is None:
        routes = store.list(consts.HTTP_ROUTE)
    else:
        routes = [
            route
            for namespace in sorted(set(namespaces))
            for route in store.list(consts.HTTP_ROUTE, namespace=namespace)
        ]

    listener_name = listener.get("name") or ""
    count = 0
    for route in routes:
        route_namespace, _ = object_key(route)
        parent_refs = (route.get("spec") or {}).get("parentRefs") or []
        if any(
            _parent_ref_matches(ref, route_namespace, gateway, listener_name)
            for ref in parent_refs
        ):
            count += 1
    return count


def set_accepted_and_attached_routes(
    store: ObjectStore, gateway: GatewayConditions, now: str | None = None
) -> None:
    """Set listener Accepted conditions, attached-route counts and the Gateway's Accepted."""
    for i, listener in enumerate(_listeners(gateway)):
        if listener.get("protocol") in consts.SUPPORTED_ROUTES_BY_PROTOCOL:
            status, reason = TRUE, consts.REASON_ACCEPTED
        else:
            status, reason = FALSE, consts.REASON_UNSUPPORTED_PROTOCOL
        view = gateway.listener(i)
        set_condition(
            view, new_condition(consts.ACCEPTED, status, reason, "", gateway.generation, now)
        )
        view.listener_status["attachedRoutes"] = count_attached_routes(store, gateway.obj, listener)
    set_accepted_on_gateway(gateway, now)


def init_programmed_and_listeners_status(gateway: GatewayConditions, now: str | None = None) -> None:
    set_condition(
        gateway,
        new_condition(
            consts.PROGRAMMED,
            FALSE,
            consts.REASON_PENDING,
            consts.MESSAGE_DEPENDENCIES_NOT_READY,
            gateway.generation,
            now,
        ),
    )
    for i in range(len(_listeners(gateway))):
        view = gateway.listener(i)
        existing = get_condition(view, consts.PROGRAMMED)
        if existing is None or existing.get("observedGeneration") != gateway.generation:
            set_condition(
                view,
                new_condition(
                    consts.PROGRAMMED, FALSE, consts.REASON_PENDING, "", gateway.generation, now
                ),
            )


def supported_kinds_with_resolved_refs(
    store: ObjectStore,
    gateway: Mapping[str, Any],
    listener: Mapping[str, Any],
    generation: int,
    now: str | None = None,
) -> tuple[list[dict[str, str]], dict[str, Any]]:
    """Compute a listener's supported route kinds and its ResolvedRefs condition.

    Problems found by independent checks accumulate into one message.
    Unexpected store errors while reading the Secret propagate.
    """
    gateway_namespace, _ = object_key(gateway)
    reason = consts.REASON_RESOLVED_REFS
    message = ""

    tls = listener.get("tls")
    if tls is not None:
        if (tls.get("mode") or "Terminate") != "Terminate":
            reason = consts.REASON_INVALID_CERTIFICATE_REF
            message = condition_message(message, "Only Terminate mode is supported")
        refs = tls.get("certificateRefs") or []
        if len(refs) != 1:
            reason = consts.REASON_TOO_MANY_TLS_SECRETS
            message = condition_message(message, "Only one certificate per listener is supported")
        else:
            ref = refs[0]
            valid_group_kind = True
            group_kind_error = core_secret_ref_error(ref)
            if group_kind_error is not None:
                reason = consts.REASON_INVALID_CERTIFICATE_REF
                message = condition_message(message, group_kind_error)
                valid_group_kind = False

            grant_message, granted = check_reference_grant_for_secret(store, gateway, ref)
            if not granted:
                reason = consts.REASON_REF_NOT_PERMITTED
                message = condition_message(message, grant_message)

            if valid_group_kind and granted:
                namespace, name = certificate_ref_target(ref, gateway_namespace)
                try:
                    secret = store.get(consts.SECRET, namespace, name)
                except NotFoundError:
                    reason = consts.REASON_INVALID_CERTIFICATE_REF
                    message = condition_message(
                        message, f"Referenced secret {namespace}/{name} does not exist"
                    )
                else:
                    if not is_tls_secret_valid(secret):
                        reason = consts.REASON_INVALID_CERTIFICATE_REF
                        message = condition_message(
                            message, "Referenced secret does not contain a valid TLS certificate"
                        )

    supported_kinds: list[dict[str, str]] = []
    valid_routes = consts.SUPPORTED_ROUTES_BY_PROTOCOL.get(listener.get("protocol") or "", ())
    allowed_kinds = (listener.get("allowedRoutes") or {}).get("kinds") or []
    if not allowed_kinds:
        supported_kinds = [{"group": consts.GATEWAY_API_GROUP, "kind": kind} for kind in valid_routes]
    else:
        for route_kind in allowed_kinds:
            kind = route_kind.get("kind") or ""
            group = route_kind.get("group", consts.GATEWAY_API_GROUP)
            if kind not in valid_routes or group != consts.GATEWAY_API_GROUP:
                reason = consts.REASON_INVALID_ROUTE_KINDS
                message = condition_message(message, f"Route {kind} not supported")
                continue
            supported_kinds.append({"group": group, "kind": kind})

    if reason == consts.REASON_RESOLVED_REFS:
        condition = new_condition(
            consts.RESOLVED_REFS,
            TRUE,
            reason,
            consts.MESSAGE_LISTENER_REFS_ACCEPTED,
            generation,
            now,
        )
    else:
        condition = new_condition(consts.RESOLVED_REFS, FALSE, reason, message, generation, now)
    return supported_kinds, condition


def set_resolved_refs_and_supported_kinds(
    store: ObjectStore, gateway: GatewayConditions, now: str | None = None
) -> None:
    for i, listener in enumerate(_listeners(gateway)):
        kinds, condition = supported_kinds_with_resolved_refs(
            store, gateway.obj, listener, gateway.generation, now
        )
        view = gateway.listener(i)
        view.listener_status["supportedKinds"] = kinds
        set_condition(view, condition)


def set_listeners_programmed(gateway: GatewayConditions, now: str | None = None) -> None:
    """Mark listeners Programmed, except those whose references are unresolved."""
    for i in range(len(gateway.get_listeners())):
        view = gateway.listener(i)
        resolved = get_condition(view, consts.RESOLVED_REFS)
        if resolved is not None and resolved.get("status") == FALSE:
            condition = new_condition(
                consts.PROGRAMMED,
                FALSE,
                consts.REASON_PENDING,
                consts.MESSAGE_LISTENER_REFS_NOT_RESOLVED,
                gateway.generation,
                now,
            )
        else:
            condition = new_condition(
                consts.PROGRAMMED, TRUE, consts.REASON_PROGRAMMED, "", gateway.generation, now
            )
        set_condition(view, condition)


def validate_listeners(store: ObjectStore, gateway: GatewayConditions, now: str | None = None) -> None:
    """Recompute every listener status entry and the Gateway's Accepted condition."""
    init_listeners_status(gateway)
    set_conflicted(gateway, now)
    set_accepted_and_attached_routes(store, gateway, now)
    init_programmed_and_listeners_status(gateway, now)
    set_resolved_refs_and_supported_kinds(store, gateway, now)


def gateway_status_needs_update(old: GatewayConditions, new: GatewayConditions) -> bool:
    """Report whether the listener-derived part of the status changed.

    Listener Programmed conditions are ignored here; they depend on the
    dependents and are settled later in the pass.
    """
    old_accepted = get_condition(old, consts.ACCEPTED)
    new_accepted = get_condition(new, consts.ACCEPTED)
    if old_accepted is None or new_accepted is None:
        return True
    if not conditions_equal(old_accepted, new_accepted):
        return True

    old_listeners = old.get_listeners()
    new_listeners = new.get_listeners()
    if len(old_listeners) != len(new_listeners):
        return True

    for old_listener, new_listener in zip(old_listeners, new_listeners):
        if (old_listener.get("attachedRoutes") or 0) != (new_listener.get("attachedRoutes") or 0):
            return True
        old_conditions = old_listener.get("conditions") or []
        new_conditions = new_listener.get("conditions") or []
        if len(old_conditions) != len(new_conditions):
            return True
        if (old_listener.get("supportedKinds") or []) != (new_listener.get("supportedKinds") or []):
            return True
        for old_condition, new_condition_ in zip(old_conditions, new_conditions):
            if new_condition_.get("type") == consts.PROGRAMMED:
                if old_condition.get("type") != consts.PROGRAMMED:
                    return True
                continue
            if not conditions_equal(old_condition, new_condition_):
                return True
    return False
