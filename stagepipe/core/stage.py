from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field

from .cache import stage_cache_key
from .plugin_api import Transform, as_transform

# Run identity in the default input view; it changes every run.
RUN_IDENTITY_KEYS = ("correlationId", "startedAt")


class FailurePolicy(str, Enum):
    FATAL = "fatal"
    WARNING = "warning"


class BackoffStrategy(str, Enum):
    FIXED = "fixed"
    EXPONENTIAL = "exponential"


class BackoffConfig(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)
    strategy: BackoffStrategy = BackoffStrategy.FIXED
    initial_seconds: float = Field(default=1.0, alias="initialSeconds", ge=0)
    factor: float = Field(default=2.0, ge=1)
    max_seconds: float = Field(default=30.0, alias="maxSeconds", ge=0)

    def delay(self, attempt: int) -> float:
        """Seconds to wait before ``attempt`` (the first retry is attempt 2)."""
        if attempt <= 1:
            return 0.0
        if self.strategy == BackoffStrategy.FIXED:
            return self.initial_seconds
        return min(self.initial_seconds * self.factor ** (attempt - 2), self.max_seconds)


class StageConfig(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)
    name: str = Field(min_length=1)
    timeout: Optional[float] = Field(default=30.0, gt=0)
    max_attempts: int = Field(default=1, alias="maxAttempts", ge=1)
    cacheable: bool = False
    ttl_seconds: Optional[int] = Field(default=3600, alias="ttlSeconds", ge=0)
    failure_policy: FailurePolicy = Field(default=FailurePolicy.FATAL, alias="failurePolicy")
    backoff: BackoffConfig = Field(default_factory=BackoffConfig)
    select: Optional[Dict[str, str]] = None
    cache_key: Optional[List[str]] = Field(default=None, alias="cacheKey")
    transform: Dict[str, Any] = Field(default_factory=dict)


@dataclass(frozen=True)
class Stage:
    config: StageConfig
    transform: Transform

    @property
    def name(self) -> str:
        return self.config.name

    @property
    def cacheable(self) -> bool:
        return self.config.cacheable

    @property
    def options(self) -> Dict[str, Any]:
        return {k: v for k, v in self.config.transform.items() if k != "type"}

    def cache_key(self, payload: Any) -> str:
        custom = getattr(self.transform, "cache_key", None)
        if callable(custom):
            return f"{self.name}:{custom(payload)}"
        keyed = payload
        if self.config.cache_key and isinstance(payload, dict):
            keyed = {key: payload.get(key) for key in self.config.cache_key}
        elif not self.config.select and isinstance(payload, dict):
            keyed = {k: v for k, v in payload.items() if k not in RUN_IDENTITY_KEYS}
        return stage_cache_key(self.name, keyed)


def stage(
    name: str,
    transform: Any,
    **policy: Any,
) -> Stage:
    """Build a :class:`Stage` from keyword policy (camelCase or snake_case)."""
    return Stage(config=StageConfig(name=name, **policy), transform=as_transform(transform, name))


@dataclass(frozen=True)
class PipelineSpec:
    name: str
    stages: Tuple[Stage, ...]
    inputs: Dict[str, Any] = field(default_factory=dict)

    def stage_names(self) -> List[str]:
        return [s.name for s in self.stages]
