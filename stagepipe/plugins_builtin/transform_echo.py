from __future__ import annotations

from typing import Any

from stagepipe.core.plugin_api import ExecutionContext, PluginMeta, Transform


class EchoTransform(Transform):
    def meta(self) -> PluginMeta:
        return PluginMeta(
            name="echo",
            api_version="1.0.0",
            plugin_version="0.1.0",
            capabilities={
                "plugin_kind": "transform",
                "features": {"description": "Returns the projected input unchanged"},
            },
        )

    async def transform(self, payload: Any, ctx: ExecutionContext) -> Any:
        key = ctx.options.get("key")
        if key:
            return {key: payload}
        return payload
