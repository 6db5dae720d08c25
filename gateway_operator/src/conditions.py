from __future__ import annotations

from collections.abc import Iterable
from datetime import UTC, datetime
from typing import Any, Protocol

from gateway_operator.src import consts

TRUE = "True"
FALSE = "False"
UNKNOWN = "Unknown"


def utc_now_rfc3339() -> str:
    """Return the current UTC time as a compact RFC 3339 string (e.g. ``2024-01-15T08:30:00Z``)."""
    return datetime.now(UTC).replace(microsecond=0).isoformat().replace("+00:00", "Z")


class ConditionsAware(Protocol):
    """Anything that carries an ordered list of status conditions."""

    def get_conditions(self) -> list[dict[str, Any]]: ...

    def set_conditions(self, conditions: list[dict[str, Any]]) -> None: ...


class ObjectConditions:
    """Condition view over ``status.conditions`` of a Kubernetes-shaped object."""

    def __init__(self, obj: dict[str, Any]) -> None:
        self.obj = obj

    @property
    def generation(self) -> int:
        return int(self.obj.get("metadata", {}).get("generation") or 0)

    def get_conditions(self) -> list[dict[str, Any]]:
        return list((self.obj.get("status") or {}).get("conditions") or [])

    def set_conditions(self, conditions: list[dict[str, Any]]) -> None:
        self.obj.setdefault("status", {})["conditions"] = conditions


class ListenerConditions:
    """Condition view over one entry of a Gateway's ``status.listeners``."""

    def __init__(self, listener_status: dict[str, Any]) -> None:
        self.listener_status = listener_status

    def get_conditions(self) -> list[dict[str, Any]]:
        return list(self.listener_status.get("conditions") or [])

    def set_conditions(self, conditions: list[dict[str, Any]]) -> None:
        self.listener_status["conditions"] = conditions


class GatewayConditions(ObjectConditions):
    """Gateway view: gateway-level conditions plus per-listener status entries."""

    def get_listeners(self) -> list[dict[str, Any]]:
        return list((self.obj.get("status") or {}).get("listeners") or [])

    def set_listeners(self, listeners: list[dict[str, Any]]) -> None:
        self.obj.setdefault("status", {})["listeners"] = listeners

    def listener(self, index: int) -> ListenerConditions:
        return ListenerConditions(self.obj["status"]["listeners"][index])


def new_condition(
    condition_type: str,
    status: str,
    reason: str,
    message: str = "",
    generation: int = 0,
    now: str | None = None,
) -> dict[str, Any]:
    return {
        "type": condition_type,
        "status": status,
        "reason": reason,
        "message": message,
        "observedGeneration": generation,
        "lastTransitionTime": now or utc_now_rfc3339(),
    }


def get_condition(resource: ConditionsAware, condition_type: str) -> dict[str, Any] | None:
    for condition in resource.get_conditions():
        if condition.get("type") == condition_type:
            return condition
    return None


def set_condition(resource: ConditionsAware, condition: dict[str, Any]) -> None:
    """Insert or replace the condition of the same type, keeping list order.

    ``lastTransitionTime`` is carried over from the replaced condition when the
    status did not change.
    """
    updated: list[dict[str, Any]] = []
    found = False
    for existing in resource.get_conditions():
        if existing.get("type") != condition["type"]:
            updated.append(existing)
            continue
        found = True
        if existing.get("status") == condition["status"] and existing.get("lastTransitionTime"):
            condition = {**condition, "lastTransitionTime": existing["lastTransitionTime"]}
        updated.append(condition)
    if not found:
        updated.append(condition)
    resource.set_conditions(updated)


def is_condition_true(resource: ConditionsAware, condition_type: str) -> bool:
    condition = get_condition(resource, condition_type)
    return condition is not None and condition.get("status") == TRUE


def is_ready(resource: ConditionsAware) -> bool:
    return is_condition_true(resource, consts.READY)


def is_programmed(resource: ConditionsAware) -> bool:
    return is_condition_true(resource, consts.PROGRAMMED)


def is_accepted(resource: ConditionsAware) -> bool:
    return is_condition_true(resource, consts.ACCEPTED)


def _all_other_conditions_true(resource: ConditionsAware) -> bool:
    for condition in resource.get_conditions():
        if condition.get("type") in {consts.PROGRAMMED, consts.READY}:
            continue
        if condition.get("status") != TRUE:
            return False
    return True


def set_programmed(resource: ConditionsAware, generation: int, now: str | None = None) -> None:
    """Set Programmed from every other condition: True only when all of them are True."""
    if _all_other_conditions_true(resource):
        condition = new_condition(
            consts.PROGRAMMED, TRUE, consts.REASON_PROGRAMMED, "", generation, now
        )
    else:
        condition = new_condition(
            consts.PROGRAMMED,
            FALSE,
            consts.REASON_DEPENDENCIES_NOT_READY,
            consts.MESSAGE_DEPENDENCIES_NOT_READY,
            generation,
            now,
        )
    set_condition(resource, condition)


def set_accepted_on_gateway(gateway: GatewayConditions, now: str | None = None) -> None:
    """Derive the Gateway's Accepted condition from its listeners.

    Every listener that is not accepted, or that is conflicted, adds a
    sentence naming its index.
    """
    sentences: list[str] = []
    for index, listener_status in enumerate(gateway.get_listeners()):
        view = ListenerConditions(listener_status)
        accepted = get_condition(view, consts.ACCEPTED)
        if accepted is not None and accepted.get("status") == FALSE:
            sentences.append(f"Listener {index} is not accepted.")
        conflicted = get_condition(view, consts.CONFLICTED)
        if conflicted is not None and conflicted.get("status") == TRUE:
            sentences.append(f"Listener {index} is conflicted.")

    if sentences:
        condition = new_condition(
            consts.ACCEPTED,
            FALSE,
            consts.REASON_LISTENERS_NOT_VALID,
            " ".join(sentences),
            gateway.generation,
            now,
        )
    else:
        condition = new_condition(
            consts.ACCEPTED,
            TRUE,
            consts.REASON_ACCEPTED,
            consts.MESSAGE_ALL_LISTENERS_ACCEPTED,
            gateway.generation,
            now,
        )
    set_condition(gateway, condition)


def condition_message(old: str, new: str) -> str:
    """Append *new* to *old*, each sentence period-terminated and space-separated."""
    if new and not new.endswith("."):
        new += "."
    if not old:
        return new
    return f"{old} {new}"


def conditions_equal(first: dict[str, Any], second: dict[str, Any]) -> bool:
    """Compare two conditions ignoring ``lastTransitionTime``."""
    return all(
        first.get(key) == second.get(key)
        for key in ("type", "status", "reason", "message", "observedGeneration")
    )


def needs_update(current: ConditionsAware, updated: ConditionsAware) -> bool:
    current_conditions = current.get_conditions()
    if len(current_conditions) != len(updated.get_conditions()):
        return True
    for condition in current_conditions:
        other = get_condition(updated, condition.get("type", ""))
        if other is None or not conditions_equal(condition, other):
            return True
    return False


def preserve_transition_times(
    previous: Iterable[dict[str, Any]], conditions: list[dict[str, Any]]
) -> list[dict[str, Any]]:
    """Return *conditions* with ``lastTransitionTime`` taken from *previous* where status is unchanged."""
    by_type = {c.get("type"): c for c in previous}
    result = []
    for condition in conditions:
        old = by_type.get(condition.get("type"))
        if old is not None and old.get("status") == condition.get("status") and old.get(
            "lastTransitionTime"
        ):
            condition = {**condition, "lastTransitionTime": old["lastTransitionTime"]}
        result.append(condition)
    return result
