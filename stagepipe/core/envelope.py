"""Run context threaded through every stage of a pipeline run.

An :class:`Envelope` is never mutated. Every write path (:func:`merge`,
:func:`with_error`, :func:`with_warnings`) returns a new
envelope that shares nothing mutable with its predecessor, so a retried or
abandoned stage attempt can never alter context another attempt observes.
"""

from __future__ import annotations

import copy
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from types import MappingProxyType
from typing import Any, Dict, Iterable, Mapping, Optional, Tuple

from .diagnostics import ErrorRecord


def _frozen(mapping: Mapping[str, Any]) -> Mapping[str, Any]:
    return MappingProxyType(dict(mapping))


@dataclass(frozen=True)
class StageOutput:
    stage: str
    value: Any
    correlation_id: str
    started_at: str
    cache_hit: bool = False
    attempts: int = 1
    elapsed_s: float = 0.0
    warnings: Tuple[str, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "stage": self.stage,
            "value": copy.deepcopy(self.value),
            "correlationId": self.correlation_id,
            "startedAt": self.started_at,
            "cacheHit": self.cache_hit,
            "attempts": self.attempts,
            "elapsedS": self.elapsed_s,
            "warnings": list(self.warnings),
        }


@dataclass(frozen=True)
class Envelope:
    correlation_id: str
    started_at: datetime
    inputs: Mapping[str, Any] = field(default_factory=lambda: _frozen({}))
    stage_outputs: Mapping[str, StageOutput] = field(default_factory=lambda: _frozen({}))
    errors: Tuple[ErrorRecord, ...] = ()
    warnings: Tuple[str, ...] = ()
    completed_stages: Tuple[str, ...] = ()
    fatal: bool = False

    @property
    def started_at_iso(self) -> str:
        return self.started_at.isoformat()

    def output_values(self) -> Dict[str, Any]:
        return {name: copy.deepcopy(out.value) for name, out in self.stage_outputs.items()}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "correlationId": self.correlation_id,
            "startedAt": self.started_at_iso,
            "inputs": copy.deepcopy(dict(self.inputs)),
            "stageOutputs": {name: out.to_dict() for name, out in self.stage_outputs.items()},
            "errors": [record.to_dict() for record in self.errors],
            "warnings": list(self.warnings),
            "completedStages": list(self.completed_stages),
            "fatal": self.fatal,
        }


def new_envelope(
    inputs: Mapping[str, Any],
    correlation_id: str,
    started_at: Optional[datetime] = None,
) -> Envelope:
    if not correlation_id:
        raise ValueError("correlation_id is required")
    started = started_at or datetime.now(timezone.utc)
    return Envelope(
        correlation_id=correlation_id,
        started_at=started,
        inputs=_frozen(copy.deepcopy(dict(inputs))),
    )


def merge(prior: Envelope, stage_name: str, output: StageOutput) -> Envelope:
    if stage_name in prior.stage_outputs:
        raise ValueError(f"Stage output already recorded: {stage_name}")
    if output.correlation_id != prior.correlation_id or output.started_at != prior.started_at_iso:
        raise ValueError(f"Stage output for {stage_name} belongs to another run")
    outputs = dict(prior.stage_outputs)
    outputs[stage_name] = replace(output, value=copy.deepcopy(output.value))
    return replace(
        prior,
        stage_outputs=_frozen(outputs),
        warnings=prior.warnings + tuple(output.warnings),
        completed_stages=prior.completed_stages + (stage_name,),
    )


def with_error(prior: Envelope, record: ErrorRecord, *, fatal: bool = False) -> Envelope:
    stamped = record.stamped(prior.correlation_id, prior.started_at_iso)
    return replace(prior, errors=prior.errors + (stamped,), fatal=prior.fatal or fatal)


def with_errors(prior: Envelope, records: Iterable[ErrorRecord], *, fatal: bool = False) -> Envelope:
    envelope = prior
    for record in records:
        envelope = with_error(envelope, record, fatal=fatal)
    return envelope


def with_warnings(prior: Envelope, warnings: Iterable[str]) -> Envelope:
    return replace(prior, warnings=prior.warnings + tuple(str(w) for w in warnings))
