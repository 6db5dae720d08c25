from __future__ import annotations

from unittest.mock import MagicMock, patch

import pytest
from kubernetes.client import ApiException

from gateway_operator.src import consts
from gateway_operator.src.kube import (
    MERGE_PATCH_CONTENT_TYPE,
    KubeObjectStore,
    label_selector,
    load_kube_configuration,
    translate_api_exception,
)
from gateway_operator.src.store import (
    ConflictError,
    ForbiddenError,
    GoneError,
    NotFoundError,
    StoreError,
    UnauthorizedError,
)


def _store() -> tuple[KubeObjectStore, MagicMock]:
    dynamic_client = MagicMock()
    resource = MagicMock()
    dynamic_client.resources.get.return_value = resource
    return KubeObjectStore(dynamic_client), resource


def test_load_kube_configuration_in_cluster() -> None:
    with (
        patch("gateway_operator.src.kube.config.load_incluster_config") as mock_incluster,
        patch("gateway_operator.src.kube.config.load_kube_config") as mock_kubeconfig,
    ):
        load_kube_configuration()

    mock_incluster.assert_called_once()
    mock_kubeconfig.assert_not_called()


def test_load_kube_configuration_local_fallback() -> None:
    from kubernetes.config.config_exception import ConfigException

    with (
        patch(
            "gateway_operator.src.kube.config.load_incluster_config",
            side_effect=ConfigException("not in cluster"),
        ),
        patch("gateway_operator.src.kube.config.load_kube_config") as mock_kubeconfig,
    ):
        load_kube_configuration()

    mock_kubeconfig.assert_called_once()


@pytest.mark.parametrize(
    ("status", "error_class"),
    [
        (401, UnauthorizedError),
        (403, ForbiddenError),
        (404, NotFoundError),
        (409, ConflictError),
        (410, GoneError),
        (500, StoreError),
    ],
)
def test_translate_api_exception(status: int, error_class: type[StoreError]) -> None:
    error = translate_api_exception(ApiException(status=status, reason="Reason"))
    assert type(error) is error_class
    assert str(error).startswith(f"{status} Reason")


def test_label_selector_is_sorted() -> None:
    assert label_selector(None) is None
    assert label_selector({"b": "2", "a": "1"}) == "a=1,b=2"


def test_resources_are_discovered_once_per_kind() -> None:
    store, resource = _store()
    resource.get.return_value.to_dict.return_value = {"metadata": {"name": "gw"}}

    store.get(consts.GATEWAY, "default", "gw")
    store.get(consts.GATEWAY, "default", "gw")

    store.client.resources.get.assert_called_once_with(
        api_version=consts.GATEWAY.api_version, kind="Gateway"
    )


def test_list_stamps_items_and_returns_resource_version() -> None:
    store, resource = _store()
    resource.get.return_value.to_dict.return_value = {
        "metadata": {"resourceVersion": "42"},
        "items": [{"metadata": {"name": "dp"}}],
    }

    items, version = store.list_with_version(consts.DATAPLANE, "default", {"app": "x"})

    assert version == "42"
    assert items == [
        {"metadata": {"name": "dp"}, "apiVersion": consts.DATAPLANE.api_version, "kind": "DataPlane"}
    ]
    resource.get.assert_called_once_with(namespace="default", label_selector="app=x")


def test_cluster_scoped_kinds_drop_the_namespace() -> None:
    store, resource = _store()
    resource.get.return_value.to_dict.return_value = {"items": []}

    store.list(consts.GATEWAY_CLASS, namespace="default")

    resource.get.assert_called_once_with(namespace=None, label_selector=None)


def test_patches_use_merge_patch_content_type() -> None:
    store, resource = _store()

    store.patch(consts.GATEWAY, "default", "gw", {"metadata": {"finalizers": []}})
    store.patch_status(consts.GATEWAY, "default", "gw", {"status": {}})

    assert resource.patch.call_args.kwargs["content_type"] == MERGE_PATCH_CONTENT_TYPE
    assert resource.status.patch.call_args.kwargs["content_type"] == MERGE_PATCH_CONTENT_TYPE
    assert resource.status.patch.call_args.kwargs["name"] == "gw"


def test_create_uses_object_namespace() -> None:
    store, resource = _store()
    body = {"metadata": {"generateName": "gw-", "namespace": "edge"}, "spec": {}}

    store.create(consts.DATAPLANE, body)

    resource.create.assert_called_once_with(body=body, namespace="edge")


def test_api_errors_are_translated() -> None:
    store, resource = _store()
    resource.delete.side_effect = ApiException(status=404, reason="Not Found")
    resource.patch.side_effect = ApiException(status=409, reason="Conflict")

    with pytest.raises(NotFoundError):
        store.delete(consts.DATAPLANE, "default", "dp")
    with pytest.raises(ConflictError):
        store.patch(consts.DATAPLANE, "default", "dp", {})


def test_watch_yields_typed_events_and_skips_malformed_ones() -> None:
    store, resource = _store()
    store.client.watch.return_value = iter(
        [
            {"type": "ADDED", "raw_object": {"metadata": {"name": "gw"}}},
            {"type": "ERROR", "raw_object": "garbage"},
        ]
    )
    watcher = MagicMock()

    events = list(store.watch(watcher, consts.GATEWAY, "default", "7", 30))

    assert events == [
        ("ADDED", {"metadata": {"name": "gw"}, "apiVersion": consts.GATEWAY.api_version, "kind": "Gateway"})
    ]
    store.client.watch.assert_called_once_with(
        resource, namespace="default", resource_version="7", timeout=30, watcher=watcher
    )
