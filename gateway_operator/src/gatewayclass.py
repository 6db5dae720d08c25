from __future__ import annotations

from collections.abc import Mapping
from typing import Any

from gateway_operator.src import consts
from gateway_operator.src.conditions import ObjectConditions, is_accepted
from gateway_operator.src.store import NotFoundError, ObjectStore, meta


class UnsupportedGatewayClassError(Exception):
    """The GatewayClass is missing or belongs to another controller."""


class NotAcceptedGatewayClassError(Exception):
    """The GatewayClass exists but has not been accepted yet."""


class GatewayConfigurationError(ValueError):
    """The GatewayClass ``parametersRef`` cannot be resolved to a GatewayConfiguration."""


def get_gateway_class(store: ObjectStore, name: str, controller_name: str) -> dict[str, Any]:
    """Return the named GatewayClass when this controller manages it and it is accepted."""
    if not name:
        raise UnsupportedGatewayClassError("Gateway does not name a GatewayClass")
    try:
        gateway_class = store.get(consts.GATEWAY_CLASS, None, name)
    except NotFoundError as exc:
        raise UnsupportedGatewayClassError(f"GatewayClass {name} not found") from exc

    actual = (gateway_class.get("spec") or {}).get("controllerName")
    if actual != controller_name:
        raise UnsupportedGatewayClassError(
            f"GatewayClass {name} is managed by {actual!r}, not {controller_name!r}"
        )
    if not is_accepted(ObjectConditions(gateway_class)):
        raise NotAcceptedGatewayClassError(f"GatewayClass {name} is not accepted")
    return gateway_class


def get_gateway_configuration(
    store: ObjectStore, gateway_class: Mapping[str, Any]
) -> dict[str, Any]:
    """Resolve the GatewayConfiguration a GatewayClass points at.

    A class without ``parametersRef`` yields an empty configuration.
    """
    ref = (gateway_class.get("spec") or {}).get("parametersRef")
    if not ref:
        return {"metadata": {}, "spec": {}}

    class_name = meta(gateway_class).get("name")
    if ref.get("group") != consts.OPERATOR_GROUP or ref.get("kind") != consts.GATEWAY_CONFIGURATION.kind:
        raise GatewayConfigurationError(
            f"controller only supports {consts.OPERATOR_GROUP} "
            f"{consts.GATEWAY_CONFIGURATION.kind} resources for GatewayClass parametersRef"
        )
    if not ref.get("namespace") or not ref.get("name"):
        raise GatewayConfigurationError(
            f"GatewayClass {class_name} has invalid ParametersRef: "
            "both namespace and name must be provided"
        )
    return store.get(consts.GATEWAY_CONFIGURATION, ref["namespace"], ref["name"])
