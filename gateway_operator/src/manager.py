from __future__ import annotations

import logging
import os
import random
import threading
import time
from collections.abc import Callable, Iterable, Iterator, Mapping
from dataclasses import dataclass
from typing import Any, Protocol

from kubernetes import watch
from kubernetes.client import ApiException

from gateway_operator.src import consts
from gateway_operator.src.consts import Kind
from gateway_operator.src.metrics import METRICS
from gateway_operator.src.reconciler import GatewayReconciler
from gateway_operator.src.refs import certificate_ref_target
from gateway_operator.src.store import (
    ForbiddenError,
    NotFoundError,
    ObjectStore,
    StoreError,
    UnauthorizedError,
    meta,
    object_key,
)
from gateway_operator.src.workqueue import WorkQueue

GatewayKey = tuple[str, str]


class WatchableStore(ObjectStore, Protocol):
    def list_with_version(
        self,
        kind: Kind,
        namespace: str | None = None,
        labels: Mapping[str, str] | None = None,
    ) -> tuple[list[dict[str, Any]], str | None]: ...

    def watch(
        self,
        watcher: watch.Watch,
        kind: Kind,
        namespace: str | None,
        resource_version: str | None,
        timeout_seconds: int,
    ) -> Iterator[tuple[str, dict[str, Any]]]: ...


@dataclass(frozen=True)
class WatchSource:
    """A watched kind and the function mapping its objects to Gateway keys."""

    kind: Kind
    map_fn: Callable[[dict[str, Any]], Iterable[GatewayKey]]


def _owner_names(obj: Mapping[str, Any], kind: Kind) -> list[str]:
    return [
        ref.get("name")
        for ref in meta(obj).get("ownerReferences") or []
        if ref.get("kind") == kind.kind
        and (ref.get("apiVersion") or "").rpartition("/")[0] == kind.group
        and ref.get("name")
    ]


class GatewayControllerManager:
    """Feeds Gateway keys from several watches into one queue drained by workers.

    Each watched kind runs its own list-then-watch loop: the initial list
    enqueues every mapped key, and each event afterwards enqueues the keys
    its object maps to. Workers reconcile one key at a time; the work queue
    guarantees a key is never reconciled by two workers at once.

    ``401`` / ``403`` responses from the Kubernetes API are treated as
    configuration errors (RBAC/auth) and stop the affected watch with a clear
    log message rather than retrying forever.
    """

    def __init__(
        self,
        store: WatchableStore,
        reconciler: GatewayReconciler,
        *,
        namespace: str | None = None,
        workers: int = 2,
        queue: WorkQueue | None = None,
        watch_timeout_seconds: int = 30,
        logger: logging.Logger | None = None,
    ) -> None:
        self.store = store
        self.reconciler = reconciler
        self.namespace = namespace or None
        self.workers = workers
        self.queue = queue or WorkQueue()
        self.watch_timeout_seconds = watch_timeout_seconds
        self.logger = logger or logging.getLogger(__name__)

        self.sources: tuple[WatchSource, ...] = (
            WatchSource(consts.GATEWAY, self.map_gateway),
            WatchSource(consts.DATAPLANE, self.map_owned_by_gateway),
            WatchSource(consts.CONTROLPLANE, self.map_owned_by_gateway),
            WatchSource(consts.NETWORK_POLICY, self.map_owned_by_gateway),
            WatchSource(consts.SERVICE, self.map_dataplane_service),
            WatchSource(consts.HTTP_ROUTE, self.map_http_route),
            WatchSource(consts.GATEWAY_CLASS, self.map_gateway_class),
            WatchSource(consts.GATEWAY_CONFIGURATION, self.map_gateway_configuration),
            WatchSource(consts.SECRET, self.map_secret),
            WatchSource(consts.REFERENCE_GRANT, self.map_all_gateways),
            WatchSource(consts.NAMESPACE, self.map_all_gateways),
        )

        self.ready = threading.Event()
        self._synced: set[Kind] = set()
        self._synced_lock = threading.Lock()
        self._external_stop = threading.Event()
        self._active_watchers: dict[Kind, watch.Watch] = {}
        self._watcher_lock = threading.Lock()

    def _gateways(self) -> list[dict[str, Any]]:
        return self.store.list(consts.GATEWAY, namespace=self.namespace)

    def map_gateway(self, obj: dict[str, Any]) -> list[GatewayKey]:
        return [object_key(obj)]

    def map_owned_by_gateway(self, obj: dict[str, Any]) -> list[GatewayKey]:
        namespace, _ = object_key(obj)
        return [(namespace, name) for name in _owner_names(obj, consts.GATEWAY)]

    def map_dataplane_service(self, obj: dict[str, Any]) -> list[GatewayKey]:
        """Services map through their owning DataPlane to its Gateway."""
        namespace, _ = object_key(obj)
        keys: list[GatewayKey] = []
        for dataplane_name in _owner_names(obj, consts.DATAPLANE):
            try:
                dataplane = self.store.get(consts.DATAPLANE, namespace, dataplane_name)
            except NotFoundError:
                continue
            keys.extend(self.map_owned_by_gateway(dataplane))
        return keys

    def map_http_route(self, obj: dict[str, Any]) -> list[GatewayKey]:
        route_namespace, _ = object_key(obj)
        keys: list[GatewayKey] = []
        for ref in (obj.get("spec") or {}).get("parentRefs") or []:
            if (ref.get("group") or consts.GATEWAY_API_GROUP) != consts.GATEWAY_API_GROUP:
                continue
            if (ref.get("kind") or consts.GATEWAY.kind) != consts.GATEWAY.kind:
                continue
            if ref.get("name"):
                keys.append((ref.get("namespace") or route_namespace, ref["name"]))
        return keys

    def map_gateway_class(self, obj: dict[str, Any]) -> list[GatewayKey]:
        class_name = meta(obj).get("name")
        return [
            object_key(gateway)
            for gateway in self._gateways()
            if (gateway.get("spec") or {}).get("gatewayClassName") == class_name
        ]

    def map_gateway_configuration(self, obj: dict[str, Any]) -> list[GatewayKey]:
        namespace, name = object_key(obj)
        class_names = {
            meta(gateway_class).get("name")
            for gateway_class in self.store.list(consts.GATEWAY_CLASS)
            if (ref := (gateway_class.get("spec") or {}).get("parametersRef"))
            and ref.get("kind") == consts.GATEWAY_CONFIGURATION.kind
            and ref.get("namespace") == namespace
            and ref.get("name") == name
        }
        return [
            object_key(gateway)
            for gateway in self._gateways()
            if (gateway.get("spec") or {}).get("gatewayClassName") in class_names
        ]

    def map_secret(self, obj: dict[str, Any]) -> list[GatewayKey]:
        secret_key = object_key(obj)
        keys: list[GatewayKey] = []
        for gateway in self._gateways():
            gateway_namespace, _ = object_key(gateway)
            for listener in (gateway.get("spec") or {}).get("listeners") or []:
                refs = (listener.get("tls") or {}).get("certificateRefs") or []
                if any(certificate_ref_target(ref, gateway_namespace) == secret_key for ref in refs):
                    keys.append(object_key(gateway))
                    break
        return keys

    def map_all_gateways(self, obj: dict[str, Any]) -> list[GatewayKey]:
        return [object_key(gateway) for gateway in self._gateways()]

    def enqueue_for(self, source: WatchSource, obj: dict[str, Any]) -> None:
        try:
            keys = list(source.map_fn(obj))
        except StoreError:
            self.logger.exception(
                "Failed mapping %s %s/%s to Gateways", source.kind.kind, *object_key(obj)
            )
            METRICS.watch_errors_total.labels(kind=source.kind.kind).inc()
            return
        for key in keys:
            self.queue.add(key)

    def request_stop(self) -> None:
        """Request a cooperative stop and immediately interrupt any open watch stream."""
        self._external_stop.set()
        with self._watcher_lock:
            active = list(self._active_watchers.values())
        for watcher in active:
            watcher.stop()
        self.queue.shut_down()

    def _should_stop(self, stop_event: threading.Event) -> bool:
        return stop_event.is_set() or self._external_stop.is_set()

    def _mark_synced(self, kind: Kind) -> None:
        with self._synced_lock:
            self._synced.add(kind)
            if len(self._synced) == len(self.sources):
                self.ready.set()
                self.logger.info("All %d watches synced", len(self.sources))

    def _list_and_enqueue(self, source: WatchSource) -> str | None:
        namespace = self.namespace if source.kind.namespaced else None
        items, resource_version = self.store.list_with_version(source.kind, namespace)
        for obj in items:
            self.enqueue_for(source, obj)
        return resource_version

    def run_watch(self, source: WatchSource, stop: threading.Event) -> None:
        """List-then-watch loop for one kind until shutdown.

        The initial list is retried with jittered exponential backoff. On
        ``410 Gone`` the kind is re-listed and watched from the fresh
        version; other errors back off (capped at 30 s) and reconnect.
        """
        kind_name = source.kind.kind
        namespace = self.namespace if source.kind.namespaced else None
        resource_version: str | None = None
        startup_backoff_seconds = 1
        while not self._should_stop(stop):
            try:
                resource_version = self._list_and_enqueue(source)
                self._mark_synced(source.kind)
                self.logger.info("Watching %s from resourceVersion %s", kind_name, resource_version)
                break
            except StoreError as exc:
                if _is_access_denied(exc):
                    self.logger.error(
                        "Kubernetes API access denied during initial %s list. "
                        "Check controller RBAC and service account permissions.",
                        kind_name,
                    )
                    return
                self.logger.exception("Initial %s list failed", kind_name)
                METRICS.watch_errors_total.labels(kind=kind_name).inc()
            except Exception:
                self.logger.exception("Unexpected error during initial %s list", kind_name)
                METRICS.watch_errors_total.labels(kind=kind_name).inc()

            jittered = startup_backoff_seconds * (0.5 + random.random())  # noqa: S311
            stop.wait(timeout=jittered)
            startup_backoff_seconds = min(startup_backoff_seconds * 2, 30)

        backoff_seconds = 1
        watch_stream_count = 0
        while not self._should_stop(stop):
            watcher = watch.Watch()
            with self._watcher_lock:
                self._active_watchers[source.kind] = watcher
            try:
                if watch_stream_count > 0:
                    METRICS.watch_reconnects_total.inc()
                watch_stream_count += 1
                stream = self.store.watch(
                    watcher, source.kind, namespace, resource_version, self.watch_timeout_seconds
                )
                for event_type, obj in stream:
                    if self._should_stop(stop):
                        break
                    version = meta(obj).get("resourceVersion")
                    if version:
                        resource_version = version
                    if event_type == "BOOKMARK":
                        continue
                    self.enqueue_for(source, obj)
                backoff_seconds = 1
            except ApiException as exc:
                if exc.status == 410:
                    self.logger.warning("%s watch resource version expired, re-listing", kind_name)
                    try:
                        resource_version = self._list_and_enqueue(source)
                    except StoreError as relist_exc:
                        if _is_access_denied(relist_exc):
                            self.logger.error(
                                "Kubernetes API access denied during %s re-list. "
                                "Check controller RBAC and service account permissions.",
                                kind_name,
                            )
                            return
                        self.logger.exception("Failed to re-list %s after 410", kind_name)
                        METRICS.watch_errors_total.labels(kind=kind_name).inc()
                        resource_version = None
                    continue

                if exc.status in {401, 403}:
                    self.logger.error(
                        "Kubernetes API %s watch denied (status=%s). "
                        "Check controller RBAC and service account permissions.",
                        kind_name,
                        exc.status,
                    )
                    METRICS.watch_errors_total.labels(kind=kind_name).inc()
                    return

                self.logger.exception("Kubernetes API %s watch error", kind_name)
                METRICS.watch_errors_total.labels(kind=kind_name).inc()
                jittered = backoff_seconds * (0.5 + random.random())  # noqa: S311
                stop.wait(timeout=jittered)
                backoff_seconds = min(backoff_seconds * 2, 30)
            except Exception:
                self.logger.exception("Unexpected %s watch error", kind_name)
                METRICS.watch_errors_total.labels(kind=kind_name).inc()
                jittered = backoff_seconds * (0.5 + random.random())  # noqa: S311
                stop.wait(timeout=jittered)
                backoff_seconds = min(backoff_seconds * 2, 30)
            finally:
                watcher.stop()
                with self._watcher_lock:
                    if self._active_watchers.get(source.kind) is watcher:
                        del self._active_watchers[source.kind]

    def process_next(self, timeout: float | None = None) -> bool:
        """Reconcile the next queued key; False when the queue is shut down or *timeout* passed."""
        key = self.queue.get(timeout=timeout)
        if key is None:
            return False
        try:
            self._reconcile_key(key)
        finally:
            self.queue.done(key)
        return True

    def _reconcile_key(self, key: GatewayKey) -> None:
        namespace, name = key
        started = time.monotonic()
        try:
            result = self.reconciler.reconcile(namespace, name)
        except Exception:
            self.logger.exception("Reconciling Gateway %s/%s failed", namespace, name)
            METRICS.reconcile_errors_total.inc()
            METRICS.reconcile_total.labels(result="error").inc()
            METRICS.requeues_total.labels(kind="rate_limited").inc()
            self.queue.add_rate_limited(key)
            return
        finally:
            METRICS.reconcile_duration_seconds.observe(time.monotonic() - started)

        if result.requeue_after is not None:
            self.queue.forget(key)
            self.queue.add_after(key, result.requeue_after)
            METRICS.reconcile_total.labels(result="requeue_after").inc()
            METRICS.requeues_total.labels(kind="after").inc()
        elif result.requeue:
            self.queue.add_rate_limited(key)
            METRICS.reconcile_total.labels(result="requeue").inc()
            METRICS.requeues_total.labels(kind="rate_limited").inc()
        else:
            self.queue.forget(key)
            METRICS.reconcile_total.labels(result="success").inc()

    def run_worker(self) -> None:
        while self.process_next():
            pass

    def run_forever(self, shutdown_event: threading.Event | None = None) -> None:
        """Start every watch and the worker pool; block until shutdown, then drain."""
        stop = shutdown_event or threading.Event()
        self._external_stop.clear()

        watch_threads = [
            threading.Thread(
                target=self.run_watch,
                args=(source, stop),
                name=f"watch-{source.kind.kind.lower()}",
                daemon=True,
            )
            for source in self.sources
        ]
        worker_threads = [
            threading.Thread(target=self.run_worker, name=f"worker-{index}", daemon=True)
            for index in range(self.workers)
        ]
        for thread in watch_threads + worker_threads:
            thread.start()
        self.logger.info(
            "Gateway controller started with %d workers watching %s",
            self.workers,
            self.namespace or "all namespaces",
        )

        while not self._should_stop(stop):
            stop.wait(timeout=1.0)

        self.request_stop()
        for thread in worker_threads:
            thread.join(timeout=30)
        self.ready.clear()


def _is_access_denied(exc: Exception) -> bool:
    return isinstance(exc, (ForbiddenError, UnauthorizedError))


def env_int(
    name: str,
    default: int,
    *,
    minimum: int | None = None,
    maximum: int | None = None,
) -> int:
    raw = os.getenv(name)
    if raw is None:
        value = default
    else:
        try:
            value = int(raw)
        except ValueError as exc:
            raise ValueError(f"{name} must be an integer") from exc

    if minimum is not None and value < minimum:
        raise ValueError(f"{name} must be >= {minimum}, got: {value}")
    if maximum is not None and value > maximum:
        raise ValueError(f"{name} must be <= {maximum}, got: {value}")
    return value


def env_labels(name: str) -> dict[str, str]:
    """Parse a ``k=v,k2=v2`` environment variable into a dict."""
    raw = os.getenv(name, "")
    labels: dict[str, str] = {}
    for part in raw.split(","):
        part = part.strip()
        if not part:
            continue
        key, separator, value = part.partition("=")
        if not separator or not key.strip():
            raise ValueError(f"{name} must be a comma-separated list of key=value pairs, got: {raw!r}")
        labels[key.strip()] = value.strip()
    return labels


def build_manager_from_env(store: WatchableStore) -> GatewayControllerManager:
    """Construct the reconciler and :class:`GatewayControllerManager` from environment variables.

    Environment variables (with defaults):
        ``WATCH_NAMESPACE``        : Namespace to watch; empty watches all namespaces.
        ``CONTROLLER_NAME``        : GatewayClass controller name (``konghq.com/gateway-operator``).
        ``OPERATOR_NAMESPACE``     : Namespace the operator runs in (empty).
        ``POD_LABELS``             : Operator pod labels as ``k=v,...`` (empty).
        ``DEFAULT_DATAPLANE_IMAGE``: Proxy image for DataPlanes (``kong:3.9``).
        ``WORKERS``                : Reconcile worker threads (``2``, 1..64).
    """
    controller_name = os.getenv("CONTROLLER_NAME", consts.DEFAULT_CONTROLLER_NAME).strip()
    if not controller_name:
        raise ValueError("CONTROLLER_NAME must be a non-empty string")
    image = os.getenv("DEFAULT_DATAPLANE_IMAGE", consts.DEFAULT_DATAPLANE_IMAGE).strip()
    if not image:
        raise ValueError("DEFAULT_DATAPLANE_IMAGE must be a non-empty string")

    reconciler = GatewayReconciler(
        store,
        controller_name=controller_name,
        default_dataplane_image=image,
        operator_namespace=os.getenv("OPERATOR_NAMESPACE", "").strip(),
        operator_pod_labels=env_labels("POD_LABELS"),
    )
    return GatewayControllerManager(
        store,
        reconciler,
        namespace=os.getenv("WATCH_NAMESPACE", "").strip() or None,
        workers=env_int("WORKERS", 2, minimum=1, maximum=64),
    )
