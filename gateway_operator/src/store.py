from __future__ import annotations

import copy
import itertools
import threading
import uuid
from collections.abc import Callable, Mapping
from typing import Any, Protocol

from gateway_operator.src import consts
from gateway_operator.src.conditions import utc_now_rfc3339
from gateway_operator.src.consts import Kind


class StoreError(Exception):
    """Base class for object store failures."""


class NotFoundError(StoreError):
    pass


class ConflictError(StoreError):
    pass


class AlreadyExistsError(ConflictError):
    pass


class ForbiddenError(StoreError):
    pass


class GoneError(StoreError):
    pass


class UnauthorizedError(StoreError):
    pass


class ObjectStore(Protocol):
    """Blocking CRUD access to Kubernetes-shaped objects (plain dicts).

    ``patch`` applies a JSON merge patch; a ``metadata.resourceVersion`` in the
    patch body makes the write conditional on that version.
    """

    def get(self, kind: Kind, namespace: str | None, name: str) -> dict[str, Any]: ...

    def list(
        self,
        kind: Kind,
        namespace: str | None = None,
        labels: Mapping[str, str] | None = None,
    ) -> list[dict[str, Any]]: ...

    def create(self, kind: Kind, obj: dict[str, Any]) -> dict[str, Any]: ...

    def patch(
        self, kind: Kind, namespace: str | None, name: str, body: dict[str, Any]
    ) -> dict[str, Any]: ...

    def patch_status(
        self, kind: Kind, namespace: str | None, name: str, body: dict[str, Any]
    ) -> dict[str, Any]: ...

    def delete(self, kind: Kind, namespace: str | None, name: str) -> None: ...


def merge_patch(target: Any, patch: Any) -> Any:
    """Apply an RFC 7386 JSON merge patch and return the result."""
    if not isinstance(patch, dict):
        return copy.deepcopy(patch)
    result = dict(target) if isinstance(target, dict) else {}
    for key, value in patch.items():
        if value is None:
            result.pop(key, None)
        else:
            result[key] = merge_patch(result.get(key), value)
    return result


def meta(obj: Mapping[str, Any]) -> dict[str, Any]:
    return obj.get("metadata") or {}


def object_key(obj: Mapping[str, Any]) -> tuple[str, str]:
    metadata = meta(obj)
    return metadata.get("namespace") or "", metadata.get("name") or ""


def is_terminating(obj: Mapping[str, Any]) -> bool:
    return bool(meta(obj).get("deletionTimestamp"))


def matches_labels(obj: Mapping[str, Any], labels: Mapping[str, str] | None) -> bool:
    if not labels:
        return True
    current = meta(obj).get("labels") or {}
    return all(current.get(k) == v for k, v in labels.items())


def is_owned_by(obj: Mapping[str, Any], owner_uid: str) -> bool:
    return any(ref.get("uid") == owner_uid for ref in meta(obj).get("ownerReferences") or [])


def owner_reference(owner: Mapping[str, Any]) -> dict[str, Any]:
    """Controller owner reference pointing at *owner*."""
    metadata = meta(owner)
    return {
        "apiVersion": owner.get("apiVersion"),
        "kind": owner.get("kind"),
        "name": metadata.get("name"),
        "uid": metadata.get("uid"),
        "controller": True,
        "blockOwnerDeletion": True,
    }


def list_owned(
    store: ObjectStore,
    kind: Kind,
    owner: Mapping[str, Any],
    labels: Mapping[str, str] | None = None,
) -> list[dict[str, Any]]:
    """List objects of *kind* in the owner's namespace whose owner references point at *owner*.

    Stores that keep an owner index expose ``list_owned_by`` and answer from
    it; any other store is listed and filtered on ``ownerReferences``.
    """
    namespace, _ = object_key(owner)
    owner_uid = meta(owner).get("uid")
    if not owner_uid:
        return []
    indexed = getattr(store, "list_owned_by", None)
    if indexed is not None:
        return indexed(kind, owner_uid, namespace=namespace, labels=labels)
    return [
        obj
        for obj in store.list(kind, namespace=namespace, labels=labels)
        if is_owned_by(obj, owner_uid)
    ]


def gateway_managed_labels(gateway: Mapping[str, Any]) -> dict[str, str]:
    namespace, name = object_key(gateway)
    return {
        consts.MANAGED_BY_LABEL: consts.GATEWAY_MANAGED_LABEL_VALUE,
        consts.MANAGED_BY_NAME_LABEL: name,
        consts.MANAGED_BY_NAMESPACE_LABEL: namespace,
    }


_StoreKey = tuple[str, str, str]


class InMemoryStore:
    """Thread-safe arena of objects keyed by ``(kind, namespace, name)``.

    Ownership is answered through an index from owner UID to object keys
    (``list_owned_by``) rather than by walking references. The store mimics
    the API server parts the controller depends on: ``generateName``,
    resource versions with conflict detection, ``generation`` bumps on spec
    changes and finalizer-gated deletion.
    """

    def __init__(self, now_fn: Callable[[], str] = utc_now_rfc3339) -> None:
        self.now_fn = now_fn
        self._objects: dict[_StoreKey, dict[str, Any]] = {}
        self._owner_index: dict[str, set[_StoreKey]] = {}
        self._versions = itertools.count(1)
        self._lock = threading.Lock()
        # (verb, kind, namespace, name) for every mutating call that succeeded.
        self.writes: list[tuple[str, str, str, str]] = []

    @staticmethod
    def _key(kind: Kind, namespace: str | None, name: str) -> _StoreKey:
        return kind.kind, (namespace or "") if kind.namespaced else "", name

    def _index(self, key: _StoreKey, obj: Mapping[str, Any]) -> None:
        for uids in self._owner_index.values():
            uids.discard(key)
        for ref in meta(obj).get("ownerReferences") or []:
            if ref.get("uid"):
                self._owner_index.setdefault(ref["uid"], set()).add(key)

    def _unindex(self, key: _StoreKey) -> None:
        for uids in self._owner_index.values():
            uids.discard(key)

    def _require(self, key: _StoreKey) -> dict[str, Any]:
        try:
            return self._objects[key]
        except KeyError:
            raise NotFoundError(f"{key[0]} {key[1]}/{key[2]} not found") from None

    def _record(self, verb: str, key: _StoreKey) -> None:
        self.writes.append((verb, *key))

    def list_owned_by(
        self,
        kind: Kind,
        owner_uid: str,
        namespace: str | None = None,
        labels: Mapping[str, str] | None = None,
    ) -> list[dict[str, Any]]:
        with self._lock:
            return [
                copy.deepcopy(self._objects[key])
                for key in sorted(self._owner_index.get(owner_uid, ()))
                if key[0] == kind.kind
                and (namespace is None or not kind.namespaced or key[1] == namespace)
                and matches_labels(self._objects[key], labels)
            ]

    def get(self, kind: Kind, namespace: str | None, name: str) -> dict[str, Any]:
        with self._lock:
            return copy.deepcopy(self._require(self._key(kind, namespace, name)))

    def list(
        self,
        kind: Kind,
        namespace: str | None = None,
        labels: Mapping[str, str] | None = None,
    ) -> list[dict[str, Any]]:
        with self._lock:
            items = [
                copy.deepcopy(obj)
                for (obj_kind, obj_namespace, _), obj in sorted(self._objects.items())
                if obj_kind == kind.kind
                and (namespace is None or not kind.namespaced or obj_namespace == namespace)
                and matches_labels(obj, labels)
            ]
        return items

    def create(self, kind: Kind, obj: dict[str, Any]) -> dict[str, Any]:
        obj = copy.deepcopy(obj)
        metadata = obj.setdefault("metadata", {})
        obj.setdefault("apiVersion", kind.api_version)
        obj.setdefault("kind", kind.kind)
        with self._lock:
            if not metadata.get("name"):
                prefix = metadata.get("generateName")
                if not prefix:
                    raise StoreError("metadata.name or metadata.generateName is required")
                metadata["name"] = f"{prefix}{uuid.uuid4().hex[:5]}"
            key = self._key(kind, metadata.get("namespace"), metadata["name"])
            if key in self._objects:
                raise AlreadyExistsError(f"{kind.kind} {key[1]}/{key[2]} already exists")
            metadata.setdefault("uid", str(uuid.uuid4()))
            metadata.setdefault("creationTimestamp", self.now_fn())
            metadata["generation"] = 1
            metadata["resourceVersion"] = str(next(self._versions))
            self._objects[key] = obj
            self._index(key, obj)
            self._record("create", key)
            return copy.deepcopy(obj)

    def patch(
        self, kind: Kind, namespace: str | None, name: str, body: dict[str, Any]
    ) -> dict[str, Any]:
        with self._lock:
            key = self._key(kind, namespace, name)
            current = self._require(key)
            self._check_version(current, body)
            body = {k: v for k, v in body.items() if k != "status"}
            updated = merge_patch(current, body)
            metadata = updated.setdefault("metadata", {})
            metadata["resourceVersion"] = str(next(self._versions))
            if updated.get("spec") != current.get("spec"):
                metadata["generation"] = int(meta(current).get("generation") or 0) + 1
            self._record("patch", key)
            if metadata.get("deletionTimestamp") and not metadata.get("finalizers"):
                self._objects.pop(key)
                self._unindex(key)
                return copy.deepcopy(updated)
            self._objects[key] = updated
            self._index(key, updated)
            return copy.deepcopy(updated)

    def patch_status(
        self, kind: Kind, namespace: str | None, name: str, body: dict[str, Any]
    ) -> dict[str, Any]:
        with self._lock:
            key = self._key(kind, namespace, name)
            current = self._require(key)
            self._check_version(current, body)
            updated = copy.deepcopy(current)
            updated["status"] = merge_patch(current.get("status") or {}, body.get("status") or {})
            updated["metadata"]["resourceVersion"] = str(next(self._versions))
            self._objects[key] = updated
            self._record("patch_status", key)
            return copy.deepcopy(updated)

    def delete(self, kind: Kind, namespace: str | None, name: str) -> None:
        with self._lock:
            key = self._key(kind, namespace, name)
            current = self._require(key)
            self._record("delete", key)
            if meta(current).get("finalizers"):
                current["metadata"].setdefault("deletionTimestamp", self.now_fn())
                current["metadata"]["resourceVersion"] = str(next(self._versions))
                return
            self._objects.pop(key)
            self._unindex(key)

    @staticmethod
    def _check_version(current: Mapping[str, Any], body: Mapping[str, Any]) -> None:
        expected = meta(body).get("resourceVersion")
        if expected is not None and expected != meta(current).get("resourceVersion"):
            raise ConflictError(
                f"resourceVersion {expected} does not match {meta(current).get('resourceVersion')}"
            )
