from __future__ import annotations

import importlib
import inspect
from importlib import metadata
from typing import Any, Dict, Optional

from .plugin_api import API_VERSION, PluginMeta, Transform, as_transform


PLUGIN_GROUPS = {
    "transform": "stagepipe.transform",
    "notifier": "stagepipe.notifier",
}


def _major(version: str) -> str:
    return version.split(".")[0]


def _iter_entry_points(group: str):
    return list(metadata.entry_points(group=group))


class PluginRegistry:
    def __init__(self) -> None:
        self._registry: Dict[str, Dict[str, Any]] = {kind: {} for kind in PLUGIN_GROUPS}

    def register(self, kind: str, name: str, provider: Any) -> None:
        self._registry.setdefault(kind, {})[name] = provider

    def has(self, kind: str, name: str) -> bool:
        return name in self._registry.get(kind, {})

    def discover(self) -> None:
        for kind, group in PLUGIN_GROUPS.items():
            for ep in _iter_entry_points(group):
                self.register(kind, ep.name, ep)

        # Bundled transforms for source checkouts without installed entry points.
        self._register_builtins()

    def get(self, kind: str, name: str) -> Any:
        if kind not in self._registry or name not in self._registry[kind]:
            raise KeyError(f"Plugin not found: {kind}:{name}")
        plugin = _instantiate_plugin(self._registry[kind][name])
        if hasattr(plugin, "meta"):
            _check_compatibility(plugin.meta())
        return plugin

    def transform(self, config: Dict[str, Any], stage_name: str) -> Transform:
        transform_type = config.get("type")
        if not transform_type:
            raise KeyError(f"Stage {stage_name} has no transform type")
        if transform_type == "callable":
            target = config.get("callable")
            if not target:
                raise KeyError(f"Stage {stage_name} callable transform needs 'callable'")
            return as_transform(load_callable(target), name=stage_name)
        return as_transform(self.get("transform", transform_type), name=stage_name)

    def _register_builtins(self) -> None:
        from stagepipe.plugins_builtin.transform_command import CommandTransform
        from stagepipe.plugins_builtin.transform_echo import EchoTransform
        from stagepipe.plugins_builtin.transform_static import StaticTransform

        builtins = {
            "echo": EchoTransform,
            "static": StaticTransform,
            "command": CommandTransform,
        }
        for name, provider in builtins.items():
            if not self.has("transform", name):
                self.register("transform", name, provider)


def _check_compatibility(meta: PluginMeta) -> None:
    if _major(meta.api_version) != _major(API_VERSION):
        raise RuntimeError(
            f"Plugin API version mismatch: host {API_VERSION} vs plugin {meta.api_version}"
        )


def _instantiate_plugin(provider: Any) -> Any:
    obj = provider
    if isinstance(obj, metadata.EntryPoint):
        obj = obj.load()
    if inspect.isclass(obj):
        return obj()
    return obj


def load_callable(path: str) -> Any:
    module_name, _, attr = path.replace(":", ".").rpartition(".")
    if not module_name:
        raise ValueError(f"Invalid callable path: {path}")
    module = importlib.import_module(module_name)
    return getattr(module, attr)


def default_registry(registry: Optional[PluginRegistry] = None) -> PluginRegistry:
    if registry is not None:
        return registry
    registry = PluginRegistry()
    registry.discover()
    return registry
