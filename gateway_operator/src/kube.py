from __future__ import annotations

import logging
import threading
from collections.abc import Iterator, Mapping
from typing import Any

from kubernetes import client, config, watch
from kubernetes.client import ApiException
from kubernetes.config.config_exception import ConfigException
from kubernetes.dynamic import DynamicClient

from gateway_operator.src.consts import Kind
from gateway_operator.src.store import (
    ConflictError,
    ForbiddenError,
    GoneError,
    NotFoundError,
    StoreError,
    UnauthorizedError,
)

LOGGER = logging.getLogger(__name__)

MERGE_PATCH_CONTENT_TYPE = "application/merge-patch+json"

_STATUS_ERRORS: dict[int, type[StoreError]] = {
    401: UnauthorizedError,
    403: ForbiddenError,
    404: NotFoundError,
    409: ConflictError,
    410: GoneError,
}


def load_kube_configuration() -> None:
    """Load Kubernetes client configuration.

    Attempts in-cluster config first (running inside a pod), falling back
    to the local kubeconfig for development.
    """
    try:
        config.load_incluster_config()
        LOGGER.info("Loaded in-cluster Kubernetes configuration")
    except ConfigException:
        config.load_kube_config()
        LOGGER.info("Loaded local kubeconfig")


def build_dynamic_client() -> DynamicClient:
    """Return a dynamic client using the active kube configuration."""
    return DynamicClient(client.ApiClient())


def translate_api_exception(exc: ApiException) -> StoreError:
    error_class = _STATUS_ERRORS.get(exc.status or 0, StoreError)
    return error_class(f"{exc.status} {exc.reason}: {exc.body or ''}".strip())


def label_selector(labels: Mapping[str, str] | None) -> str | None:
    if not labels:
        return None
    return ",".join(f"{key}={value}" for key, value in sorted(labels.items()))


class KubeObjectStore:
    """Object store backed by the Kubernetes API through the dynamic client.

    Objects go in and come out as plain dicts. API errors are mapped onto
    the store error taxonomy; list responses are stamped with ``apiVersion``
    and ``kind`` since the API server omits them on items.
    """

    def __init__(self, dynamic_client: DynamicClient, logger: logging.Logger | None = None) -> None:
        self.client = dynamic_client
        self.logger = logger or LOGGER
        self._resources: dict[Kind, Any] = {}
        self._resources_lock = threading.Lock()

    def _resource(self, kind: Kind) -> Any:
        with self._resources_lock:
            resource = self._resources.get(kind)
            if resource is None:
                resource = self.client.resources.get(api_version=kind.api_version, kind=kind.kind)
                self._resources[kind] = resource
            return resource

    @staticmethod
    def _namespace(kind: Kind, namespace: str | None) -> str | None:
        return (namespace or None) if kind.namespaced else None

    @staticmethod
    def _stamp(kind: Kind, items: list[dict[str, Any]]) -> list[dict[str, Any]]:
        for item in items:
            item.setdefault("apiVersion", kind.api_version)
            item.setdefault("kind", kind.kind)
        return items

    def get(self, kind: Kind, namespace: str | None, name: str) -> dict[str, Any]:
        try:
            return self._resource(kind).get(
                name=name, namespace=self._namespace(kind, namespace)
            ).to_dict()
        except ApiException as exc:
            raise translate_api_exception(exc) from exc

    def list_with_version(
        self,
        kind: Kind,
        namespace: str | None = None,
        labels: Mapping[str, str] | None = None,
    ) -> tuple[list[dict[str, Any]], str | None]:
        """List objects and return them with the list's ``resourceVersion``."""
        try:
            response = self._resource(kind).get(
                namespace=self._namespace(kind, namespace), label_selector=label_selector(labels)
            ).to_dict()
        except ApiException as exc:
            raise translate_api_exception(exc) from exc
        items = self._stamp(kind, response.get("items") or [])
        return items, (response.get("metadata") or {}).get("resourceVersion")

    def list(
        self,
        kind: Kind,
        namespace: str | None = None,
        labels: Mapping[str, str] | None = None,
    ) -> list[dict[str, Any]]:
        items, _ = self.list_with_version(kind, namespace, labels)
        return items

    def create(self, kind: Kind, obj: dict[str, Any]) -> dict[str, Any]:
        namespace = (obj.get("metadata") or {}).get("namespace")
        try:
            return self._resource(kind).create(
                body=obj, namespace=self._namespace(kind, namespace)
            ).to_dict()
        except ApiException as exc:
            raise translate_api_exception(exc) from exc

    def patch(
        self, kind: Kind, namespace: str | None, name: str, body: dict[str, Any]
    ) -> dict[str, Any]:
        try:
            return self._resource(kind).patch(
                body=body,
                name=name,
                namespace=self._namespace(kind, namespace),
                content_type=MERGE_PATCH_CONTENT_TYPE,
            ).to_dict()
        except ApiException as exc:
            raise translate_api_exception(exc) from exc

    def patch_status(
        self, kind: Kind, namespace: str | None, name: str, body: dict[str, Any]
    ) -> dict[str, Any]:
        try:
            return self._resource(kind).status.patch(
                body=body,
                name=name,
                namespace=self._namespace(kind, namespace),
                content_type=MERGE_PATCH_CONTENT_TYPE,
            ).to_dict()
        except ApiException as exc:
            raise translate_api_exception(exc) from exc

    def delete(self, kind: Kind, namespace: str | None, name: str) -> None:
        try:
            self._resource(kind).delete(name=name, namespace=self._namespace(kind, namespace))
        except ApiException as exc:
            raise translate_api_exception(exc) from exc

    def watch(
        self,
        watcher: watch.Watch,
        kind: Kind,
        namespace: str | None,
        resource_version: str | None,
        timeout_seconds: int,
    ) -> Iterator[tuple[str, dict[str, Any]]]:
        """Stream ``(event_type, object)`` pairs for *kind*.

        ``ApiException`` from the stream (including ``410 Gone``) propagates
        unchanged so the caller can re-list.
        """
        stream = self.client.watch(
            self._resource(kind),
            namespace=self._namespace(kind, namespace),
            resource_version=resource_version,
            timeout=timeout_seconds,
            watcher=watcher,
        )
        for event in stream:
            raw = event.get("raw_object")
            if not isinstance(raw, dict):
                continue
            raw.setdefault("apiVersion", kind.api_version)
            raw.setdefault("kind", kind.kind)
            yield str(event.get("type", "")), raw
