from __future__ import annotations

import asyncio
import copy
import logging
import time
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Sequence

from .diagnostics import (
    ErrorKind,
    ErrorRecord,
    PermanentError,
    Severity,
    StageCanceled,
    StageError,
)
from .envelope import Envelope, StageOutput, merge, with_error, with_warnings
from .executor import StageExecutor
from .logging import log_event
from .plugin_api import ExecutionContext
from .stage import FailurePolicy, Stage

logger = logging.getLogger("stagepipe.pipeline")

_MISSING = object()


class SelectError(PermanentError):
    code = "E-STAGE-SELECT"


def project_input(envelope: Envelope, select: Optional[Mapping[str, str]]) -> Dict[str, Any]:
    """Build the reduced view of ``envelope`` a stage is allowed to see.

    Without ``select`` the stage sees the run identity, the caller inputs and
    the output values of earlier stages. With ``select`` each key maps to a
    dotted path into :meth:`Envelope.to_dict`.
    """
    if not select:
        return {
            "correlationId": envelope.correlation_id,
            "startedAt": envelope.started_at_iso,
            "inputs": copy.deepcopy(dict(envelope.inputs)),
            "stageOutputs": envelope.output_values(),
        }
    view = envelope.to_dict()
    payload: Dict[str, Any] = {}
    for key, path in select.items():
        value = resolve_path(view, path)
        if value is _MISSING:
            raise SelectError(f"select path '{path}' for '{key}' not found in envelope")
        payload[key] = value
    return payload


def resolve_path(view: Any, path: str) -> Any:
    current = view
    for part in path.split("."):
        if isinstance(current, Mapping) and part in current:
            current = current[part]
        elif isinstance(current, list) and part.isdigit() and int(part) < len(current):
            current = current[int(part)]
        else:
            return _MISSING
    return current


class Pipeline:
    def __init__(
        self,
        cache: Any = None,
        *,
        event_logger: Any = None,
        logs_dir: Optional[Path] = None,
    ) -> None:
        self.executor = StageExecutor(cache, event_logger=event_logger)
        self.event_logger = event_logger
        self.logs_dir = logs_dir
        self.metrics: List[Dict[str, Any]] = []

    async def run(
        self,
        stages: Sequence[Stage],
        envelope: Envelope,
        *,
        cancel: Optional[asyncio.Event] = None,
    ) -> Envelope:
        _check_unique(stages)
        for stage in stages:
            if envelope.fatal:
                log_event(self.event_logger, "stage.skipped", stage=stage.name)
                continue
            if cancel is not None and cancel.is_set():
                envelope = self._record_failure(envelope, stage, _canceled_before(stage))
                continue

            step_start = time.perf_counter()
            log_event(self.event_logger, "stage.start", stage=stage.name)
            try:
                payload = project_input(envelope, stage.config.select)
                ctx = ExecutionContext(
                    correlation_id=envelope.correlation_id,
                    started_at=envelope.started_at_iso,
                    stage=stage.name,
                    max_attempts=stage.config.max_attempts,
                    options=stage.options,
                    cancel=cancel,
                    logs_dir=self.logs_dir,
                )
                run = await self.executor.execute(stage, payload, ctx)
            except StageError as exc:
                self._record_step(stage, step_start, "failed", exc.attempts, False)
                envelope = self._record_failure(envelope, stage, exc)
                continue

            output = StageOutput(
                stage=stage.name,
                value=run.output,
                correlation_id=envelope.correlation_id,
                started_at=envelope.started_at_iso,
                cache_hit=run.cache_hit,
                attempts=run.attempts,
                elapsed_s=run.elapsed_s,
                warnings=run.warnings,
            )
            envelope = merge(envelope, stage.name, output)
            self._record_step(stage, step_start, "ok", run.attempts, run.cache_hit)
            if run.warnings:
                logger.warning(
                    "[%s] stage %s flagged its output: %s",
                    envelope.correlation_id,
                    stage.name,
                    "; ".join(run.warnings),
                )
            log_event(
                self.event_logger,
                "stage.end",
                stage=stage.name,
                attempts=run.attempts,
                cache_hit=run.cache_hit,
                elapsed_s=run.elapsed_s,
                warnings=list(run.warnings),
            )
        return envelope

    def _record_failure(self, envelope: Envelope, stage: Stage, exc: StageError) -> Envelope:
        canceled = isinstance(exc, StageCanceled)
        fatal = canceled or stage.config.failure_policy == FailurePolicy.FATAL
        if canceled:
            kind = ErrorKind.CANCELED
        elif fatal:
            kind = ErrorKind.POLICY_FATAL
        else:
            kind = ErrorKind.POLICY_WARNING
        record = ErrorRecord(
            code=exc.code,
            message=exc.message,
            severity=Severity.FATAL if fatal else Severity.WARNING,
            kind=kind,
            stage=stage.name,
            attempts=exc.attempts,
            data={"cause": exc.kind.value, **exc.data},
        )
        log_event(
            self.event_logger,
            "stage.error",
            stage=stage.name,
            kind=kind.value,
            cause=exc.kind.value,
            attempts=exc.attempts,
            error=exc.message,
        )
        if fatal:
            logger.error(
                "[%s] stage %s failed fatally: %s", envelope.correlation_id, stage.name, exc.message
            )
            return with_error(envelope, record, fatal=True)
        logger.warning(
            "[%s] stage %s failed, continuing: %s", envelope.correlation_id, stage.name, exc.message
        )
        envelope = with_error(envelope, record)
        return with_warnings(envelope, [f"{stage.name} failed: {exc.message}"])

    def _record_step(self, stage: Stage, start: float, status: str, attempts: int, cache_hit: bool) -> None:
        self.metrics.append(
            {
                "stage": stage.name,
                "status": status,
                "attempts": attempts,
                "cache_hit": cache_hit,
                "elapsed_s": time.perf_counter() - start,
            }
        )


def _canceled_before(stage: Stage) -> StageCanceled:
    return StageCanceled(f"run canceled before stage {stage.name}")


def _check_unique(stages: Sequence[Stage]) -> None:
    seen = set()
    for stage in stages:
        if stage.name in seen:
            raise ValueError(f"Duplicate stage name: {stage.name}")
        seen.add(stage.name)
