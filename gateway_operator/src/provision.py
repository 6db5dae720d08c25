from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import Any, Protocol

from gateway_operator.src import consts
from gateway_operator.src.conditions import (
    FALSE,
    TRUE,
    ConditionsAware,
    ObjectConditions,
    is_ready,
    new_condition,
    set_condition,
)
from gateway_operator.src.consts import Kind
from gateway_operator.src.options import ROLLOUT_ONLY_FIELDS, OptionsError, options_equal
from gateway_operator.src.reduce import reduce_objects
from gateway_operator.src.store import (
    ObjectStore,
    StoreError,
    gateway_managed_labels,
    list_owned,
    meta,
    object_key,
    owner_reference,
)

LOGGER = logging.getLogger(__name__)

EXTENSION_NOT_FOUND = "not-found"
EXTENSION_NOT_READY = "not-ready"
EXTENSION_CROSS_NAMESPACE_FORBIDDEN = "cross-namespace-forbidden"


class ExtensionError(Exception):
    """Typed failure reported by an extension processor."""

    def __init__(self, kind: str, message: str) -> None:
        super().__init__(message)
        self.kind = kind


class ExtensionProcessor(Protocol):
    """Applies the extensions a dependent references; True when any were applied."""

    def process(self, obj: Mapping[str, Any]) -> bool: ...


@dataclass(frozen=True)
class DependentRole:
    """A dependent kind provisioned per Gateway, and the Gateway condition reporting it."""

    kind: Kind
    condition_type: str
    options: Callable[[], dict[str, Any]]


@dataclass(frozen=True)
class ProvisionOutcome:
    """Result of one provisioning step.

    ``obj`` is the single live dependent, when there is one. ``failed`` marks
    outcomes the Gateway should retry on a short fixed delay.
    """

    obj: dict[str, Any] | None = None
    ready: bool = False
    failed: bool = False
    error: str | None = None


class Provisioner:
    """Ensures exactly one up-to-date dependent of a role exists for a Gateway.

    Outcomes are reported through the role's condition on the Gateway:
    ResourceCreated, ResourceUpdated, Ready, WaitingToBecomeReady or
    UnableToProvision.
    """

    def __init__(
        self,
        store: ObjectStore,
        extension_processor: ExtensionProcessor | None = None,
        now_fn: Callable[[], str] | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self.store = store
        self.extension_processor = extension_processor
        self.now_fn = now_fn
        self.logger = logger or LOGGER

    def _set(
        self,
        target: ConditionsAware,
        role: DependentRole,
        generation: int,
        status: str,
        reason: str,
        message: str = "",
    ) -> None:
        now = self.now_fn() if self.now_fn else None
        set_condition(
            target, new_condition(role.condition_type, status, reason, message, generation, now)
        )

    def _failed(
        self, target: ConditionsAware, role: DependentRole, generation: int, message: str
    ) -> ProvisionOutcome:
        self._set(target, role, generation, FALSE, consts.REASON_UNABLE_TO_PROVISION, message)
        return ProvisionOutcome(failed=True, error=message)

    def list_dependents(self, role: DependentRole, gateway: Mapping[str, Any]) -> list[dict[str, Any]]:
        return list_owned(self.store, role.kind, gateway, labels=gateway_managed_labels(gateway))

    def _run_extensions(self, obj: Mapping[str, Any]) -> str | None:
        if self.extension_processor is None or not (obj.get("spec") or {}).get("extensions"):
            return None
        try:
            applied = self.extension_processor.process(obj)
        except ExtensionError as exc:
            return f"extension {exc.kind}: {exc}"
        if applied:
            metadata = meta(obj)
            self.logger.debug(
                "Applied extensions to %s %s/%s",
                obj.get("kind"),
                metadata.get("namespace"),
                metadata.get("name") or metadata.get("generateName"),
            )
        return None

    def provision(self, role: DependentRole, gateway: dict[str, Any]) -> ProvisionOutcome:
        """Run one ensure step for *role* and record the outcome on *gateway*."""
        target = ObjectConditions(gateway)
        generation = target.generation
        kind = role.kind.kind
        namespace, gateway_name = object_key(gateway)

        try:
            dependents = self.list_dependents(role, gateway)
        except StoreError as exc:
            return self._failed(
                target, role, generation, f"failed listing associated {kind}s - error: {exc}"
            )

        if len(dependents) > 1:
            message = f"{kind}s found: {len(dependents)}, expected: 1"
            self.logger.error("Reducing %s for Gateway %s/%s: %s", kind, namespace, gateway_name, message)
            try:
                reduce_objects(self.store, role.kind, dependents)
            except StoreError as exc:
                message = f"{message}; failed reducing: {exc}"
            return self._failed(target, role, generation, message)

        try:
            desired = role.options()
        except OptionsError as exc:
            return self._failed(target, role, generation, f"{kind} creation failed - error: {exc}")

        if not dependents:
            obj = {
                "apiVersion": role.kind.api_version,
                "kind": kind,
                "metadata": {
                    "namespace": namespace,
                    "generateName": f"{gateway_name}-",
                    "labels": gateway_managed_labels(gateway),
                    "ownerReferences": [owner_reference(gateway)],
                },
                "spec": desired,
            }
            extension_error = self._run_extensions(obj)
            if extension_error is not None:
                return self._failed(target, role, generation, extension_error)
            try:
                created = self.store.create(role.kind, obj)
            except StoreError as exc:
                return self._failed(
                    target, role, generation, f"{kind} creation failed - error: {exc}"
                )
            self.logger.info(
                "Created %s %s/%s for Gateway %s", kind, namespace, meta(created).get("name"), gateway_name
            )
            self._set(
                target, role, generation, FALSE, consts.REASON_RESOURCE_CREATED,
                consts.MESSAGE_RESOURCE_CREATED,
            )
            return ProvisionOutcome(obj=created)

        current = dependents[0]
        extension_error = self._run_extensions({**current, "spec": desired})
        if extension_error is not None:
            return self._failed(target, role, generation, extension_error)

        if not options_equal(current.get("spec"), desired):
            _, name = object_key(current)
            body = {
                "metadata": {"resourceVersion": meta(current).get("resourceVersion")},
                "spec": _replacement_patch(current.get("spec") or {}, desired),
            }
            try:
                current = self.store.patch(role.kind, namespace, name, body)
            except StoreError as exc:
                return self._failed(
                    target, role, generation, f"failed patching the {kind} {name}: {exc}"
                )
            self.logger.info("Updated %s %s/%s", kind, namespace, name)
            self._set(
                target, role, generation, FALSE, consts.REASON_RESOURCE_UPDATED,
                consts.MESSAGE_RESOURCE_UPDATED,
            )
            return ProvisionOutcome(obj=current)

        if is_ready(ObjectConditions(current)):
            self._set(target, role, generation, TRUE, consts.REASON_READY)
            return ProvisionOutcome(obj=current, ready=True)
        self._set(
            target, role, generation, FALSE, consts.REASON_WAITING_TO_BECOME_READY,
            consts.MESSAGE_WAITING_TO_BECOME_READY,
        )
        return ProvisionOutcome(obj=current)


def _replacement_patch(
    actual: Mapping[str, Any],
    desired: Mapping[str, Any],
    keep: frozenset[str] = ROLLOUT_ONLY_FIELDS,
) -> dict[str, Any]:
    """Merge patch that turns *actual* into *desired*, nulling keys *desired* dropped.

    Top-level keys in *keep* are left untouched.
    """
    patch: dict[str, Any] = {}
    for key in actual:
        if key not in desired and key not in keep:
            patch[key] = None
    for key, value in desired.items():
        old = actual.get(key)
        if isinstance(value, dict) and isinstance(old, dict):
            nested = _replacement_patch(old, value, frozenset())
            if nested:
                patch[key] = nested
        elif old != value:
            patch[key] = value
    return patch
