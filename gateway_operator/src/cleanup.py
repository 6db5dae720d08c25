from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime
from typing import Any

from gateway_operator.src import consts
from gateway_operator.src.conditions import utc_now_rfc3339
from gateway_operator.src.consts import Kind
from gateway_operator.src.result import Result
from gateway_operator.src.store import (
    ConflictError,
    ForbiddenError,
    NotFoundError,
    ObjectStore,
    StoreError,
    is_terminating,
    list_owned,
    meta,
    object_key,
)

LOGGER = logging.getLogger(__name__)

# Deletion order: each role is drained before the next one is touched.
CLEANUP_ORDER: tuple[tuple[Kind, str], ...] = (
    (consts.CONTROLPLANE, consts.FINALIZER_CLEANUP_CONTROLPLANES),
    (consts.DATAPLANE, consts.FINALIZER_CLEANUP_DATAPLANES),
    (consts.NETWORK_POLICY, consts.FINALIZER_CLEANUP_NETWORK_POLICIES),
)


class CleanupError(Exception):
    """One or more dependents could not be deleted."""


def _parse_timestamp(value: str) -> datetime:
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


class CleanupSequencer:
    """Finalizer-gated, dependency-ordered deletion of a Gateway's dependents."""

    def __init__(
        self,
        store: ObjectStore,
        now_fn: Callable[[], str] = utc_now_rfc3339,
        logger: logging.Logger | None = None,
    ) -> None:
        self.store = store
        self.now_fn = now_fn
        self.logger = logger or LOGGER

    def _delete_live(self, kind: Kind, instances: list[dict[str, Any]]) -> bool:
        deleted = False
        errors: list[str] = []
        for obj in instances:
            namespace, name = object_key(obj)
            try:
                self.store.delete(kind, namespace, name)
            except NotFoundError:
                pass
            except StoreError as exc:
                errors.append(f"{kind.kind} {namespace}/{name}: {exc}")
                continue
            deleted = True
            self.logger.info("Deleted %s %s/%s", kind.kind, namespace, name)
        if errors:
            raise CleanupError("; ".join(errors))
        return deleted

    def cleanup(self, gateway: dict[str, Any]) -> Result | None:
        """Advance deletion of *gateway* by one step.

        Returns ``None`` when the Gateway is not being deleted. Otherwise
        returns the scheduling verdict for this step; a returned verdict
        always ends the pass.
        """
        deletion_timestamp = meta(gateway).get("deletionTimestamp")
        if not deletion_timestamp:
            return None

        namespace, name = object_key(gateway)
        remaining = (_parse_timestamp(deletion_timestamp) - _parse_timestamp(self.now_fn())).total_seconds()
        if remaining > 0:
            return Result(requeue_after=remaining)

        removable: list[str] = []
        for kind, finalizer in CLEANUP_ORDER:
            instances = list_owned(self.store, kind, gateway)
            live = [obj for obj in instances if not is_terminating(obj)]
            if live:
                self.logger.info(
                    "Gateway %s/%s is being deleted; deleting %d owned %s(s)",
                    namespace,
                    name,
                    len(live),
                    kind.kind,
                )
                self._delete_live(kind, live)
                return Result()
            if not instances:
                removable.append(finalizer)

        finalizers = list(meta(gateway).get("finalizers") or [])
        kept = [f for f in finalizers if f not in removable]
        if kept == finalizers:
            return Result()

        body = {
            "metadata": {
                "finalizers": kept,
                "resourceVersion": meta(gateway).get("resourceVersion"),
            }
        }
        try:
            self.store.patch(consts.GATEWAY, namespace, name, body)
        except (NotFoundError, ConflictError, ForbiddenError) as exc:
            self.logger.debug(
                "Expected race while removing finalizers from Gateway %s/%s: %s", namespace, name, exc
            )
            return Result(requeue_after=consts.REQUEUE_WITHOUT_BACKOFF)
        self.logger.info(
            "Removed finalizers %s from Gateway %s/%s",
            ", ".join(f for f in finalizers if f not in kept),
            namespace,
            name,
        )
        return Result(requeue=True)
