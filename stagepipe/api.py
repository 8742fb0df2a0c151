from __future__ import annotations

import asyncio
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Union

from .core.artifacts import RunStore, new_correlation_id
from .core.cache import load_cache
from .core.config import (
    ConfigError,
    build_pipeline,
    hash_config,
    normalize_pipeline_config,
    validate_pipeline_config,
)
from .core.diagnostics import Diagnostics
from .core.logging import get_event_logger, get_logger, release_logger
from .core.notifier import load_notifier, notifier_attempts
from .core.outcome import Outcome
from .core.plugin_loader import PluginRegistry, default_registry
from .core.runner import Runner
from .core.stage import PipelineSpec


@dataclass(frozen=True)
class RunResult:
    outcome: Outcome
    run_dir: Optional[Path] = None


def validate(
    config: Mapping[str, Any],
    *,
    registry: Optional[PluginRegistry] = None,
    transforms: Optional[Mapping[str, Any]] = None,
) -> Diagnostics:
    cfg = normalize_pipeline_config(config)
    return validate_pipeline_config(
        cfg, registry=default_registry(registry), overridden=(transforms or {}).keys()
    )


def prepare(
    config: Mapping[str, Any],
    *,
    registry: Optional[PluginRegistry] = None,
    transforms: Optional[Mapping[str, Any]] = None,
) -> PipelineSpec:
    """Validate ``config`` and bind its stages; raises :class:`ConfigError`."""
    registry = default_registry(registry)
    cfg = normalize_pipeline_config(config)
    diagnostics = validate_pipeline_config(
        cfg, registry=registry, overridden=(transforms or {}).keys()
    )
    diagnostics.raise_for_errors(ConfigError)
    return build_pipeline(cfg, registry, transforms)


async def run_async(
    config: Mapping[str, Any],
    inputs: Any,
    *,
    transforms: Optional[Mapping[str, Any]] = None,
    notifier: Any = None,
    cache: Any = None,
    root: Union[Path, str, None] = None,
    registry: Optional[PluginRegistry] = None,
    cancel: Optional[asyncio.Event] = None,
    correlation_id: Optional[str] = None,
) -> RunResult:
    registry = default_registry(registry)
    cfg = normalize_pipeline_config(config)
    spec = prepare(cfg, registry=registry, transforms=transforms)

    cid = correlation_id or new_correlation_id()
    root_path = Path(root) if root is not None else None
    store: Optional[RunStore] = None
    run_dir: Optional[Path] = None
    logs_dir: Optional[Path] = None
    event_logger = None
    if root_path is not None:
        store = RunStore(root_path)
        run_dir = store.create_run(cid)
        logs_dir = run_dir / "logs"
        event_logger = get_event_logger(logs_dir, pipeline=spec.name)

    notifier_config = cfg.get("notifier")
    runner = Runner(
        notifier=load_notifier(
            notifier if notifier is not None else notifier_config, root=root_path, registry=registry
        ),
        cache=cache if cache is not None else load_cache(cfg.get("cache"), root_path),
        notify_attempts=notifier_attempts(notifier_config),
        event_logger=event_logger,
        logs_dir=logs_dir,
    )

    run_logger = get_logger("", logs_dir, correlation_id=cid)
    try:
        outcome = await runner.execute(spec, inputs, cancel=cancel, correlation_id=cid)
    finally:
        if logs_dir is not None:
            release_logger(run_logger, logs_dir)

    if store is not None and run_dir is not None:
        manifest = store.build_manifest(
            outcome,
            pipeline={
                "name": spec.name,
                "stages": spec.stage_names(),
                "config_hash": hash_config(cfg),
            },
        )
        store.write_manifest(run_dir, manifest)
    return RunResult(outcome=outcome, run_dir=run_dir)


def run(config: Mapping[str, Any], inputs: Any, **kwargs: Any) -> RunResult:
    return asyncio.run(run_async(config, inputs, **kwargs))


def delivery_summary(result: RunResult) -> Dict[str, Any]:
    outcome = result.outcome
    return {
        "status": outcome.status.value,
        "correlationId": outcome.correlation_id,
        "delivered": outcome.delivered,
        "deliveryError": outcome.delivery_error,
        "runDir": str(result.run_dir) if result.run_dir is not None else None,
    }
