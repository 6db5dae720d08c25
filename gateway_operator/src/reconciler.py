from __future__ import annotations

import copy
import logging
from collections.abc import Callable, Mapping
from typing import Any

from gateway_operator.src import consts
from gateway_operator.src.addresses import AddressError, gateway_addresses_from_service
from gateway_operator.src.cleanup import CleanupSequencer
from gateway_operator.src.conditions import (
    FALSE,
    TRUE,
    GatewayConditions,
    ObjectConditions,
    get_condition,
    is_accepted,
    is_condition_true,
    new_condition,
    preserve_transition_times,
    set_condition,
    set_programmed,
    utc_now_rfc3339,
)
from gateway_operator.src.gatewayclass import (
    NotAcceptedGatewayClassError,
    UnsupportedGatewayClassError,
    get_gateway_class,
    get_gateway_configuration,
)
from gateway_operator.src.listeners import (
    gateway_status_needs_update,
    set_listeners_programmed,
    validate_listeners,
)
from gateway_operator.src.netpol import ensure_network_policy
from gateway_operator.src.options import controlplane_options, dataplane_options
from gateway_operator.src.provision import (
    DependentRole,
    ExtensionProcessor,
    ProvisionOutcome,
    Provisioner,
)
from gateway_operator.src.result import Result
from gateway_operator.src.store import (
    ConflictError,
    ForbiddenError,
    NotFoundError,
    ObjectStore,
    list_owned,
    meta,
    object_key,
)

LOGGER = logging.getLogger(__name__)

_STATUS_FIELDS = ("conditions", "listeners", "addresses")


class ReconcileError(Exception):
    """The controller reached a state that should not be possible."""


def dataplane_service_labels(service_type: str) -> dict[str, str]:
    return {
        consts.MANAGED_BY_LABEL: consts.DATAPLANE_MANAGED_LABEL_VALUE,
        consts.DATAPLANE_SERVICE_TYPE_LABEL: service_type,
    }


class GatewayReconciler:
    """Drives one Gateway toward its desired state, one level-triggered pass at a time.

    Every step is an idempotent ensure against the object store. A pass
    returns as soon as it wrote something the next pass depends on; the
    resulting watch events (or the returned :class:`Result`) bring the
    Gateway back. Failures visible to users are reported through status
    conditions only.
    """

    def __init__(
        self,
        store: ObjectStore,
        *,
        controller_name: str = consts.DEFAULT_CONTROLLER_NAME,
        default_dataplane_image: str = consts.DEFAULT_DATAPLANE_IMAGE,
        operator_namespace: str = "",
        operator_pod_labels: Mapping[str, str] | None = None,
        extension_processor: ExtensionProcessor | None = None,
        now_fn: Callable[[], str] = utc_now_rfc3339,
        logger: logging.Logger | None = None,
    ) -> None:
        self.store = store
        self.controller_name = controller_name
        self.default_dataplane_image = default_dataplane_image
        self.operator_namespace = operator_namespace
        self.operator_pod_labels = dict(operator_pod_labels or {})
        self.now_fn = now_fn
        self.logger = logger or LOGGER
        self.cleanup_sequencer = CleanupSequencer(store, now_fn, self.logger)
        self.provisioner = Provisioner(store, extension_processor, now_fn, self.logger)

    def reconcile(self, namespace: str, name: str) -> Result:
        try:
            gateway = self.store.get(consts.GATEWAY, namespace, name)
        except NotFoundError:
            self.logger.debug("Gateway %s/%s not found; nothing to do", namespace, name)
            return Result()

        verdict = self.cleanup_sequencer.cleanup(gateway)
        if verdict is not None:
            return verdict

        class_name = (gateway.get("spec") or {}).get("gatewayClassName") or ""
        try:
            gateway_class = get_gateway_class(self.store, class_name, self.controller_name)
        except (UnsupportedGatewayClassError, NotAcceptedGatewayClassError) as exc:
            self.logger.debug("Ignoring Gateway %s/%s: %s", namespace, name, exc)
            return Result()

        finalizer_verdict = self._ensure_finalizers(gateway)
        if finalizer_verdict is not None:
            return finalizer_verdict

        old_gateway = copy.deepcopy(gateway)
        view = GatewayConditions(gateway)
        now = self.now_fn()

        validate_listeners(self.store, view, now)
        if gateway_status_needs_update(GatewayConditions(old_gateway), view):
            self._patch_status(gateway, old_gateway)
            if is_accepted(view):
                self.logger.info("Gateway %s/%s accepted", namespace, name)
            else:
                self.logger.info("Gateway %s/%s not accepted", namespace, name)
            return Result()
        if not is_accepted(view):
            self.logger.debug("Gateway %s/%s is not accepted; halting", namespace, name)
            return Result()

        config = get_gateway_configuration(self.store, gateway_class)

        # DataPlane
        dataplane_role = DependentRole(
            consts.DATAPLANE,
            consts.DATAPLANE_READY,
            lambda: dataplane_options(gateway, config, self.default_dataplane_image),
        )
        dataplane = self.provisioner.provision(dataplane_role, gateway)
        if dataplane.failed:
            self.logger.error(
                "Failed provisioning DataPlane for Gateway %s/%s: %s", namespace, name, dataplane.error
            )
            self._patch_status(gateway, old_gateway)
            return Result(requeue_after=consts.PROVISION_FAIL_RETRY_AFTER)
        if self._was_written(view, consts.DATAPLANE_READY):
            self._patch_status(gateway, old_gateway)
            return Result()
        dataplane_obj = self._require_obj(dataplane, consts.DATAPLANE.kind, namespace, name)

        # DataPlane Services
        ingress_services = list_owned(
            self.store,
            consts.SERVICE,
            dataplane_obj,
            labels=dataplane_service_labels(consts.DATAPLANE_INGRESS_SERVICE_LABEL_VALUE),
        )
        admin_services = list_owned(
            self.store,
            consts.SERVICE,
            dataplane_obj,
            labels=dataplane_service_labels(consts.DATAPLANE_ADMIN_SERVICE_LABEL_VALUE),
        )
        if len(ingress_services) != 1 or len(admin_services) != 1:
            self.logger.info(
                "DataPlane %s/%s has %d ingress and %d admin Services, expected one of each",
                namespace,
                meta(dataplane_obj).get("name"),
                len(ingress_services),
                len(admin_services),
            )
            return Result(requeue=True)

        # ControlPlane
        dataplane_name = meta(dataplane_obj).get("name") or ""
        controlplane_role = DependentRole(
            consts.CONTROLPLANE,
            consts.CONTROLPLANE_READY,
            lambda: controlplane_options(config, dataplane_name, class_name),
        )
        controlplane = self.provisioner.provision(controlplane_role, gateway)
        if controlplane.failed:
            self.logger.error(
                "Failed provisioning ControlPlane for Gateway %s/%s: %s",
                namespace,
                name,
                controlplane.error,
            )
            self._patch_status(gateway, old_gateway)
            return Result(requeue_after=consts.PROVISION_FAIL_RETRY_AFTER)
        if not controlplane.ready:
            set_programmed(view, view.generation, now)
            self._patch_status(gateway, old_gateway)
            self.logger.debug("ControlPlane for Gateway %s/%s is not ready yet", namespace, name)
            return Result()
        controlplane_obj = self._require_obj(controlplane, consts.CONTROLPLANE.kind, namespace, name)

        # NetworkPolicy
        if ensure_network_policy(
            self.store,
            gateway,
            dataplane_obj,
            controlplane_obj,
            self.operator_namespace,
            self.operator_pod_labels,
        ):
            return Result()

        if not is_condition_true(view, consts.DATAPLANE_READY):
            self._patch_status(gateway, old_gateway)
            self.logger.debug("DataPlane for Gateway %s/%s is not ready yet", namespace, name)
            return Result()

        # Addresses and Programmed
        try:
            addresses = gateway_addresses_from_service(ingress_services[0])
        except AddressError as exc:
            addresses = []
            condition = new_condition(
                consts.GATEWAY_SERVICE, FALSE, consts.REASON_SERVICE_ERROR, str(exc), view.generation, now
            )
        else:
            condition = new_condition(
                consts.GATEWAY_SERVICE, TRUE, consts.REASON_READY, "", view.generation, now
            )
        set_condition(view, condition)
        gateway.setdefault("status", {})["addresses"] = addresses

        set_programmed(view, view.generation, now)
        set_listeners_programmed(view, now)
        if self._patch_status(gateway, old_gateway):
            self.logger.info(
                "Gateway %s/%s status updated (Programmed=%s)",
                namespace,
                name,
                (get_condition(view, consts.PROGRAMMED) or {}).get("status"),
            )
        return Result()

    def _ensure_finalizers(self, gateway: dict[str, Any]) -> Result | None:
        """Add the cleanup finalizers; returns a verdict when the pass must end."""
        finalizers = list(meta(gateway).get("finalizers") or [])
        missing = [f for f in consts.GATEWAY_FINALIZERS if f not in finalizers]
        if not missing:
            return None

        namespace, name = object_key(gateway)
        body = {
            "metadata": {
                "finalizers": finalizers + missing,
                "resourceVersion": meta(gateway).get("resourceVersion"),
            }
        }
        try:
            self.store.patch(consts.GATEWAY, namespace, name, body)
        except (ConflictError, NotFoundError, ForbiddenError) as exc:
            self.logger.debug(
                "Expected race while adding finalizers to Gateway %s/%s: %s", namespace, name, exc
            )
            return Result(requeue_after=consts.REQUEUE_WITHOUT_BACKOFF)
        self.logger.info("Added finalizers %s to Gateway %s/%s", ", ".join(missing), namespace, name)
        return Result()

    @staticmethod
    def _was_written(view: ObjectConditions, condition_type: str) -> bool:
        condition = get_condition(view, condition_type) or {}
        return condition.get("reason") in (
            consts.REASON_RESOURCE_CREATED,
            consts.REASON_RESOURCE_UPDATED,
        )

    @staticmethod
    def _require_obj(
        outcome: ProvisionOutcome, kind: str, namespace: str, name: str
    ) -> dict[str, Any]:
        if outcome.obj is None:
            raise ReconcileError(
                f"unexpected error: {kind} for Gateway {namespace}/{name} was provisioned but is missing"
            )
        return outcome.obj

    def _patch_status(self, gateway: dict[str, Any], old_gateway: Mapping[str, Any]) -> bool:
        """Persist the Gateway status when it differs from *old_gateway*; True when written.

        Transition times of conditions whose status did not change are taken
        from the persisted snapshot so unchanged state compares equal.
        """
        old_status = old_gateway.get("status") or {}
        status = gateway.setdefault("status", {})
        status["conditions"] = preserve_transition_times(
            old_status.get("conditions") or [], status.get("conditions") or []
        )
        old_listeners = {
            listener.get("name"): listener.get("conditions") or []
            for listener in old_status.get("listeners") or []
        }
        for listener in status.get("listeners") or []:
            listener["conditions"] = preserve_transition_times(
                old_listeners.get(listener.get("name"), []), listener.get("conditions") or []
            )

        if all(
            (status.get(field) or []) == (old_status.get(field) or []) for field in _STATUS_FIELDS
        ):
            return False
        namespace, name = object_key(gateway)
        body = {"status": {field: status.get(field) or [] for field in _STATUS_FIELDS}}
        self.store.patch_status(consts.GATEWAY, namespace, name, body)
        return True
