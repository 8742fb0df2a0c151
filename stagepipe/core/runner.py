from __future__ import annotations

import asyncio
import inspect
import logging
from dataclasses import replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional

from .artifacts import new_correlation_id
from .diagnostics import ErrorKind, ErrorRecord, Severity
from .envelope import Envelope, new_envelope, with_error, with_errors
from .intake import validate_inputs
from .logging import bind_events, current_run, log_event
from .notifier import DEFAULT_ATTEMPTS, LogNotifier
from .outcome import Outcome, classify
from .pipeline import Pipeline
from .stage import PipelineSpec

logger = logging.getLogger("stagepipe.runner")


class Runner:
    """Drives one pipeline execution end to end and delivers its outcome.

    The runner stamps the correlation id and start time exactly once, rejects
    invalid inputs before any stage runs, and is the only caller of the
    notifier.

    Delivery is at-least-once: a notifier that raises is called again, up to
    ``notify_attempts`` times in total (2 by default), so a notifier whose
    failure happens after it has already delivered may see the same outcome
    twice. Once the attempts are spent the outcome carries
    ``delivered=False`` and the error text; delivery failures are logged and
    never fail the run.
    """

    def __init__(
        self,
        notifier: Any = None,
        cache: Any = None,
        *,
        notify_attempts: int = DEFAULT_ATTEMPTS,
        event_logger: Any = None,
        logs_dir: Optional[Path] = None,
        id_factory: Callable[[], str] = new_correlation_id,
    ) -> None:
        self.notifier = notifier if notifier is not None else LogNotifier()
        self.cache = cache
        self.notify_attempts = max(1, notify_attempts)
        self.event_logger = event_logger
        self.logs_dir = logs_dir
        self.id_factory = id_factory

    async def execute(
        self,
        spec: PipelineSpec,
        inputs: Any,
        *,
        cancel: Optional[asyncio.Event] = None,
        correlation_id: Optional[str] = None,
    ) -> Outcome:
        cid = correlation_id or self.id_factory()
        token = current_run.set(cid)
        try:
            return await self._execute(spec, inputs, cid, cancel)
        finally:
            current_run.reset(token)

    async def _execute(
        self, spec: PipelineSpec, inputs: Any, cid: str, cancel: Optional[asyncio.Event]
    ) -> Outcome:
        started_at = datetime.now(timezone.utc)
        events = bind_events(self.event_logger, correlation_id=cid)
        log_event(events, "pipeline.start", pipeline=spec.name, stages=spec.stage_names())
        logger.info("[%s] starting pipeline %s", cid, spec.name)

        normalized, diagnostics = validate_inputs(inputs, spec.inputs)
        steps: List[Dict[str, Any]] = []
        if diagnostics.has_errors():
            raw = dict(inputs) if isinstance(inputs, Mapping) else {}
            envelope = new_envelope(raw, cid, started_at)
            envelope = with_errors(envelope, diagnostics.errors(), fatal=True)
            logger.warning(
                "[%s] input validation failed with %d error(s)", cid, len(envelope.errors)
            )
        else:
            envelope = new_envelope(normalized, cid, started_at)
            pipeline = Pipeline(self.cache, event_logger=events, logs_dir=self.logs_dir)
            try:
                envelope = await pipeline.run(spec.stages, envelope, cancel=cancel)
            except asyncio.CancelledError:
                envelope = with_error(envelope, _canceled_record(), fatal=True)
                await self._finish(envelope, events, pipeline.metrics)
                raise
            steps = pipeline.metrics

        return await self._finish(envelope, events, steps)

    async def _finish(self, envelope: Envelope, events: Any, steps: List[Dict[str, Any]]) -> Outcome:
        status = classify(envelope)
        outcome = Outcome(status=status, envelope=envelope, steps=tuple(steps))
        log_event(
            events,
            "pipeline.end",
            status=status.value,
            completed_stages=list(envelope.completed_stages),
            errors=len(envelope.errors),
            warnings=len(envelope.warnings),
        )
        logger.info("[%s] pipeline finished: %s", envelope.correlation_id, status.value)
        return await self._deliver(outcome, events)

    async def _deliver(self, outcome: Outcome, events: Any) -> Outcome:
        last_error: Optional[str] = None
        for attempt in range(1, self.notify_attempts + 1):
            try:
                result = self.notifier.notify(outcome, outcome.envelope)
                if inspect.isawaitable(result):
                    await result
            except Exception as exc:
                last_error = f"{type(exc).__name__}: {exc}"
                logger.warning(
                    "[%s] notifier failed (attempt %d/%d): %s",
                    outcome.correlation_id,
                    attempt,
                    self.notify_attempts,
                    last_error,
                )
                log_event(
                    events,
                    "notify.error",
                    kind=ErrorKind.NOTIFIER.value,
                    attempt=attempt,
                    error=last_error,
                )
                continue
            log_event(events, "notify.end", status=outcome.status.value, attempt=attempt)
            return replace(outcome, delivered=True)
        logger.error("[%s] outcome was not delivered: %s", outcome.correlation_id, last_error)
        return replace(outcome, delivered=False, delivery_error=last_error)


def _canceled_record() -> ErrorRecord:
    return ErrorRecord(
        code="E-CANCELED",
        message="run canceled",
        severity=Severity.FATAL,
        kind=ErrorKind.CANCELED,
    )
