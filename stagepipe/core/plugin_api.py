from __future__ import annotations

import asyncio
import inspect
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, Optional, Tuple

API_VERSION = "1.0.0"


@dataclass(frozen=True)
class PluginMeta:
    name: str
    api_version: str
    plugin_version: str
    capabilities: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class TransformResult:
    """Output of a transform that succeeded but flagged the result."""

    output: Any
    warnings: Tuple[str, ...] = ()

    def __post_init__(self) -> None:
        object.__setattr__(self, "warnings", tuple(str(w) for w in self.warnings))


@dataclass
class ExecutionContext:
    correlation_id: str
    started_at: str
    stage: str
    attempt: int = 1
    max_attempts: int = 1
    options: Dict[str, Any] = field(default_factory=dict)
    cancel: Optional[asyncio.Event] = None
    logs_dir: Optional[Path] = None

    @property
    def canceled(self) -> bool:
        return self.cancel is not None and self.cancel.is_set()


class Plugin(ABC):
    @abstractmethod
    def meta(self) -> PluginMeta:
        raise NotImplementedError


class Transform(Plugin):
    @abstractmethod
    async def transform(self, payload: Any, ctx: ExecutionContext) -> Any:
        raise NotImplementedError


class FunctionTransform(Transform):
    """Adapts a plain callable, sync or async, taking ``payload`` or ``(payload, ctx)``."""

    def __init__(self, fn: Callable[..., Any], name: Optional[str] = None) -> None:
        self.fn = fn
        self.name = name or getattr(fn, "__name__", type(fn).__name__)
        self._wants_ctx = _accepts_context(fn)
        self._is_async = inspect.iscoroutinefunction(fn) or inspect.iscoroutinefunction(
            getattr(fn, "__call__", None)
        )

    def meta(self) -> PluginMeta:
        return PluginMeta(
            name=self.name,
            api_version=API_VERSION,
            plugin_version="0.0.0",
            capabilities={"plugin_kind": "transform", "features": {"callable": True}},
        )

    async def transform(self, payload: Any, ctx: ExecutionContext) -> Any:
        args = (payload, ctx) if self._wants_ctx else (payload,)
        if self._is_async:
            return await self.fn(*args)
        result = await asyncio.to_thread(self.fn, *args)
        if inspect.isawaitable(result):
            return await result
        return result


def as_transform(obj: Any, name: Optional[str] = None) -> Transform:
    if isinstance(obj, Transform):
        return obj
    if inspect.isclass(obj) and issubclass(obj, Transform):
        return obj()
    if callable(obj):
        return FunctionTransform(obj, name=name)
    raise TypeError(f"Not a transform: {obj!r}")


def _accepts_context(fn: Callable[..., Any]) -> bool:
    try:
        params = list(inspect.signature(fn).parameters.values())
    except (TypeError, ValueError):
        return False
    if any(p.kind == inspect.Parameter.VAR_POSITIONAL for p in params):
        return True
    positional = [
        p
        for p in params
        if p.kind in (inspect.Parameter.POSITIONAL_ONLY, inspect.Parameter.POSITIONAL_OR_KEYWORD)
    ]
    return len(positional) >= 2
