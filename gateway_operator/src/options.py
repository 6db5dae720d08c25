from __future__ import annotations

import copy
from collections.abc import Iterable, Mapping, Sequence
from typing import Any

from gateway_operator.src import consts

# Spec fields that only steer rollouts and never count as drift.
ROLLOUT_ONLY_FIELDS = frozenset({"rollout"})


class OptionsError(ValueError):
    """Desired options for a dependent cannot be synthesized."""


def is_empty(value: Any) -> bool:
    return value is None or value == "" or value == [] or value == {}


def _named_items(value: Any) -> bool:
    return (
        isinstance(value, list)
        and bool(value)
        and all(isinstance(item, dict) and item.get("name") for item in value)
    )


def overlay(base: Any, top: Any) -> Any:
    """Lay *top* over *base*; the last non-empty value wins.

    Dicts merge key by key. Lists of named dicts (containers, env vars,
    ports) merge by ``name``, keeping base order and appending new names.
    Any other non-empty value replaces the base value.
    """
    if is_empty(top):
        return copy.deepcopy(base)
    if isinstance(base, dict) and isinstance(top, dict):
        merged = copy.deepcopy(base)
        for key, value in top.items():
            merged[key] = overlay(merged.get(key), value)
        return merged
    if _named_items(base) and _named_items(top):
        merged_items = [copy.deepcopy(item) for item in base]
        positions = {item["name"]: i for i, item in enumerate(merged_items)}
        for item in top:
            if item["name"] in positions:
                index = positions[item["name"]]
                merged_items[index] = overlay(merged_items[index], item)
            else:
                positions[item["name"]] = len(merged_items)
                merged_items.append(copy.deepcopy(item))
        return merged_items
    return copy.deepcopy(top)


class OptionsBuilder:
    """Accumulates option layers and folds them left to right with :func:`overlay`."""

    def __init__(self) -> None:
        self._layers: list[Mapping[str, Any]] = []

    def layer(self, options: Mapping[str, Any] | None) -> OptionsBuilder:
        if options:
            self._layers.append(options)
        return self

    def build(self) -> dict[str, Any]:
        result: dict[str, Any] = {}
        for options in self._layers:
            result = overlay(result, options)
        return result


def readiness_probe() -> dict[str, Any]:
    return {
        "httpGet": {
            "path": consts.DATAPLANE_READINESS_PATH,
            "port": consts.DATAPLANE_METRICS_PORT,
            "scheme": "HTTP",
        },
        "initialDelaySeconds": 5,
        "periodSeconds": 10,
        "timeoutSeconds": 1,
        "successThreshold": 1,
        "failureThreshold": 3,
    }


def dataplane_default_layer(default_image: str) -> dict[str, Any]:
    return {
        "deployment": {
            "podTemplateSpec": {
                "spec": {
                    "containers": [
                        {
                            "name": consts.DATAPLANE_PROXY_CONTAINER_NAME,
                            "image": default_image,
                            "readinessProbe": readiness_probe(),
                        }
                    ]
                }
            }
        }
    }


def _apply_replica_default(options: dict[str, Any]) -> None:
    deployment = options.setdefault("deployment", {})
    if deployment.get("replicas") is None and not deployment.get("scaling"):
        deployment["replicas"] = 1


def ingress_ports_layer(
    listeners: Sequence[Mapping[str, Any]],
    listeners_options: Sequence[Mapping[str, Any]],
) -> dict[str, Any]:
    """Ingress Service ports derived from the Gateway listeners.

    HTTP listeners target the proxy port, HTTPS listeners the proxy TLS port.
    ``listenersOptions`` entries add a node port and must each name a listener.
    """
    names = {listener.get("name") for listener in listeners}
    for index, listener_options in enumerate(listeners_options):
        if listener_options.get("name") not in names:
            raise OptionsError(
                f"GatewayConfiguration.spec.listenersOptions[{index}]: "
                f"name '{listener_options.get('name')}' not in gateway's listeners"
            )
    if not listeners:
        return {}

    node_ports = {
        opts.get("name"): opts.get("nodePort")
        for opts in listeners_options
        if opts.get("nodePort") is not None
    }
    ports: list[dict[str, Any]] = []
    problems: list[str] = []
    for index, listener in enumerate(listeners):
        protocol = listener.get("protocol")
        if protocol == "HTTPS":
            target_port = consts.DATAPLANE_PROXY_SSL_PORT
        elif protocol == "HTTP":
            target_port = consts.DATAPLANE_PROXY_PORT
        else:
            problems.append(f"listener {index} uses unsupported protocol {protocol}")
            continue
        name = listener.get("name") or f"{protocol.lower()}-{index}"
        port: dict[str, Any] = {"name": name, "port": listener.get("port"), "targetPort": target_port}
        if name in node_ports:
            port["nodePort"] = node_ports[name]
        ports.append(port)
    if problems:
        raise OptionsError("; ".join(problems))
    return {"network": {"services": {"ingress": {"ports": ports}}}}


def _extension_kind(extension: Mapping[str, Any]) -> tuple[str, str]:
    return extension.get("group") or "", extension.get("kind") or ""


def merge_extensions(
    defaults: Iterable[Mapping[str, Any]] | None,
    overrides: Iterable[Mapping[str, Any]] | None,
) -> list[dict[str, Any]]:
    """Keep default extensions whose (group, kind) is not overridden, then the overrides."""
    overrides = [dict(extension) for extension in overrides or []]
    overridden = {_extension_kind(extension) for extension in overrides}
    kept = [
        dict(extension)
        for extension in defaults or []
        if _extension_kind(extension) not in overridden
    ]
    return kept + overrides


def _config_spec(config: Mapping[str, Any]) -> Mapping[str, Any]:
    return config.get("spec") or {}


def dataplane_options(
    gateway: Mapping[str, Any], config: Mapping[str, Any], default_image: str
) -> dict[str, Any]:
    """Desired DataPlane spec: defaults, then the template, then listener-derived ports."""
    spec = _config_spec(config)
    template = spec.get("dataPlaneOptions") or {}
    listeners = (gateway.get("spec") or {}).get("listeners") or []
    options = (
        OptionsBuilder()
        .layer(dataplane_default_layer(default_image))
        .layer(template)
        .layer(ingress_ports_layer(listeners, spec.get("listenersOptions") or []))
        .build()
    )
    _apply_replica_default(options)
    extensions = merge_extensions(spec.get("extensions"), template.get("extensions"))
    if extensions:
        options["extensions"] = extensions
    return options


def controlplane_options(
    config: Mapping[str, Any], dataplane_name: str, gateway_class_name: str
) -> dict[str, Any]:
    """Desired ControlPlane spec: the template bound to the Gateway's DataPlane."""
    spec = _config_spec(config)
    template = spec.get("controlPlaneOptions") or {}
    options = (
        OptionsBuilder()
        .layer({"dataplane": dataplane_name, "gatewayClass": gateway_class_name})
        .layer(template)
        .build()
    )
    extensions = merge_extensions(spec.get("extensions"), template.get("extensions"))
    if extensions:
        options["extensions"] = extensions
    return options


def prune_empty(value: Any) -> Any:
    """Drop empty values recursively so missing and empty compare equal."""
    if isinstance(value, dict):
        pruned = {k: prune_empty(v) for k, v in value.items()}
        return {k: v for k, v in pruned.items() if not is_empty(v)}
    if isinstance(value, list):
        return [prune_empty(item) for item in value]
    return value


def options_equal(actual: Mapping[str, Any] | None, desired: Mapping[str, Any]) -> bool:
    def _normalize(options: Mapping[str, Any] | None) -> Any:
        stripped = {k: v for k, v in (options or {}).items() if k not in ROLLOUT_ONLY_FIELDS}
        return prune_empty(stripped)

    return _normalize(actual) == _normalize(desired)
