from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional

import jsonschema
from pydantic import ValidationError

from .cache import fingerprint
from .diagnostics import Diagnostics, ErrorKind, ErrorRecord, InputValidationError, Severity
from .intake import InputField
from .plugin_api import as_transform
from .plugin_loader import PluginRegistry
from .stage import PipelineSpec, Stage, StageConfig

DEFAULT_PIPELINE: Dict[str, Any] = {
    "name": "pipeline",
    "defaults": {},
    "inputs": {},
    "stages": [],
    "notifier": {"type": "log", "attempts": 2},
    "cache": {"type": "memory"},
}

KEY_ALIASES = {
    "max_attempts": "maxAttempts",
    "ttl_seconds": "ttlSeconds",
    "failure_policy": "failurePolicy",
    "cache_key": "cacheKey",
    "initial_seconds": "initialSeconds",
    "max_seconds": "maxSeconds",
    "min_length": "minLength",
    "max_length": "maxLength",
}


class ConfigError(InputValidationError):
    pass


def default_schema_path() -> Path:
    return Path(__file__).resolve().parent.parent / "schemas" / "pipeline.schema.json"


def load_pipeline_config(path: Path) -> Dict[str, Any]:
    data = _load_data(path)
    if not isinstance(data, dict):
        raise ValueError("Pipeline config must be a JSON object")
    if "pipeline" in data and isinstance(data["pipeline"], dict):
        data = data["pipeline"]
    return data


def load_inputs(path: Path) -> Dict[str, Any]:
    data = _load_data(path)
    if not isinstance(data, dict):
        raise ValueError("Inputs must be a JSON object")
    return data


def normalize_pipeline_config(config: Mapping[str, Any]) -> Dict[str, Any]:
    merged = json.loads(json.dumps(DEFAULT_PIPELINE))
    merged = _deep_merge(merged, json.loads(json.dumps(config, default=str)))
    defaults = _policy_keys(merged.get("defaults") or {})
    merged["defaults"] = defaults
    stages: List[Any] = []
    for stage in merged.get("stages") or []:
        if isinstance(stage, dict):
            stage = _deep_merge(json.loads(json.dumps(defaults)), _policy_keys(stage))
        stages.append(stage)
    merged["stages"] = stages
    inputs = merged.get("inputs")
    if isinstance(inputs, dict):
        merged["inputs"] = {
            name: _canonical_keys(rule) if isinstance(rule, dict) else rule
            for name, rule in inputs.items()
        }
    return merged


def validate_pipeline_config(
    config: Mapping[str, Any],
    schema_path: Optional[Path] = None,
    registry: Optional[PluginRegistry] = None,
    overridden: Iterable[str] = (),
) -> Diagnostics:
    """Check a normalized pipeline config; every problem is reported."""
    diagnostics = Diagnostics()
    overridden = set(overridden)
    schema_path = schema_path or default_schema_path()
    with schema_path.open("r", encoding="utf-8") as handle:
        schema = json.load(handle)
    schema["$id"] = schema_path.resolve().as_uri()
    validator = jsonschema.Draft202012Validator(schema)
    for error in sorted(validator.iter_errors(config), key=str):
        diagnostics.add(
            _config_record(
                "E-CONFIG-SCHEMA",
                error.message,
                "/".join(str(x) for x in error.path),
            )
        )

    seen: Dict[str, int] = {}
    for index, stage in enumerate(config.get("stages") or []):
        if not isinstance(stage, dict):
            continue
        name = stage.get("name")
        if isinstance(name, str):
            if name in seen:
                diagnostics.add(
                    _config_record(
                        "E-CONFIG-STAGE-DUP",
                        f"Duplicate stage name '{name}' (first at stages/{seen[name]})",
                        f"stages/{index}/name",
                    )
                )
            else:
                seen[name] = index
        try:
            StageConfig.model_validate(stage)
        except ValidationError as exc:
            for err in exc.errors():
                loc = "/".join(str(x) for x in err.get("loc", ()))
                diagnostics.add(
                    _config_record("E-CONFIG-STAGE", err.get("msg", str(exc)), f"stages/{index}/{loc}")
                )
        if name in overridden:
            continue
        transform_type = (stage.get("transform") or {}).get("type")
        if transform_type is None:
            diagnostics.add(
                _config_record(
                    "E-CONFIG-TRANSFORM",
                    f"Stage '{name}' has no transform",
                    f"stages/{index}/transform",
                )
            )
        elif (
            registry is not None
            and isinstance(transform_type, str)
            and transform_type != "callable"
            and not registry.has("transform", transform_type)
        ):
            diagnostics.add(
                _config_record(
                    "E-CONFIG-TRANSFORM",
                    f"Unknown transform type '{transform_type}'",
                    f"stages/{index}/transform/type",
                )
            )

    for field_name, rule in (config.get("inputs") or {}).items():
        try:
            InputField.model_validate(rule or {})
        except ValidationError as exc:
            for err in exc.errors():
                diagnostics.add(
                    _config_record("E-CONFIG-INPUT", err.get("msg", str(exc)), f"inputs/{field_name}")
                )
    return diagnostics


def build_pipeline(
    config: Mapping[str, Any],
    registry: PluginRegistry,
    transforms: Optional[Mapping[str, Any]] = None,
) -> PipelineSpec:
    """Turn a normalized config into stages bound to their transforms.

    ``transforms`` maps stage names to in-process transforms that take
    precedence over the config's ``transform`` entry.
    """
    overrides = dict(transforms or {})
    stages: List[Stage] = []
    for raw in config.get("stages") or []:
        stage_config = StageConfig.model_validate(raw)
        if stage_config.name in overrides:
            transform = as_transform(overrides.pop(stage_config.name), name=stage_config.name)
        else:
            transform = registry.transform(stage_config.transform, stage_config.name)
        stages.append(Stage(config=stage_config, transform=transform))
    if overrides:
        raise ConfigError(
            [
                _config_record("E-CONFIG-TRANSFORM", f"No stage named '{name}'", "stages")
                for name in sorted(overrides)
            ]
        )
    return PipelineSpec(
        name=str(config.get("name") or "pipeline"),
        stages=tuple(stages),
        inputs=dict(config.get("inputs") or {}),
    )


def hash_config(config: Mapping[str, Any]) -> str:
    return fingerprint(config)


def _config_record(code: str, message: str, location: str) -> ErrorRecord:
    return ErrorRecord(
        code=code,
        message=message,
        severity=Severity.FATAL,
        kind=ErrorKind.VALIDATION,
        location=location,
    )


def _canonical_keys(value: Dict[str, Any]) -> Dict[str, Any]:
    return {KEY_ALIASES.get(key, key): val for key, val in value.items()}


def _policy_keys(value: Dict[str, Any]) -> Dict[str, Any]:
    out = _canonical_keys(value)
    if isinstance(out.get("backoff"), dict):
        out["backoff"] = _canonical_keys(out["backoff"])
    return out


def _deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(base.get(key), dict):
            base[key] = _deep_merge(base[key], value)
        else:
            base[key] = value
    return base


def _load_data(path: Path) -> Any:
    if path.suffix in {".yaml", ".yml"}:
        import yaml  # type: ignore

        with path.open("r", encoding="utf-8") as handle:
            return yaml.safe_load(handle)
    if path.suffix == ".toml":
        import tomllib

        with path.open("rb") as handle:
            return tomllib.load(handle)
    with path.open("r", encoding="utf-8") as handle:
        return json.load(handle)
