from __future__ import annotations

import copy
from typing import Any

from stagepipe.core.plugin_api import ExecutionContext, PluginMeta, Transform, TransformResult


class StaticTransform(Transform):
    def meta(self) -> PluginMeta:
        return PluginMeta(
            name="static",
            api_version="1.0.0",
            plugin_version="0.1.0",
            capabilities={
                "plugin_kind": "transform",
                "features": {"description": "Returns a configured value, optionally flagged"},
            },
        )

    async def transform(self, payload: Any, ctx: ExecutionContext) -> Any:
        value = copy.deepcopy(ctx.options.get("value"))
        warnings = ctx.options.get("warnings") or []
        if isinstance(warnings, str):
            warnings = [warnings]
        if warnings:
            return TransformResult(output=value, warnings=tuple(warnings))
        return value
