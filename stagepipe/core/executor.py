from __future__ import annotations

import asyncio
import copy
import logging
import time
from dataclasses import dataclass, replace
from typing import Any, Optional, Tuple

from .cache import NullCache
from .diagnostics import StageCanceled, StageError, StageTimeout, classify_exception
from .logging import log_event
from .plugin_api import ExecutionContext, TransformResult
from .stage import Stage

logger = logging.getLogger("stagepipe.executor")


@dataclass(frozen=True)
class StageRun:
    output: Any
    warnings: Tuple[str, ...] = ()
    cache_hit: bool = False
    attempts: int = 1
    elapsed_s: float = 0.0
    cache_key: Optional[str] = None


class StageExecutor:
    """Runs one stage: cache lookup, then up to ``max_attempts`` transform calls.

    Only transient failures (including per-attempt timeouts) are retried.
    A set cancel event aborts the in-flight attempt and any pending backoff.
    """

    def __init__(self, cache: Any = None, *, event_logger: Any = None) -> None:
        self.cache = cache if cache is not None else NullCache()
        self.event_logger = event_logger

    async def execute(self, stage: Stage, payload: Any, ctx: ExecutionContext) -> StageRun:
        start = time.perf_counter()
        key: Optional[str] = None
        if stage.cacheable:
            key = stage.cache_key(payload)
            entry = self.cache.get(key)
            if entry is not None:
                output, warnings = _unpack_cached(entry.value)
                logger.info("[%s] cache hit for stage %s", ctx.correlation_id, stage.name)
                log_event(self.event_logger, "stage.cache_hit", stage=stage.name, cache_key=key)
                return StageRun(
                    output=output,
                    warnings=warnings,
                    cache_hit=True,
                    attempts=0,
                    elapsed_s=time.perf_counter() - start,
                    cache_key=key,
                )

        max_attempts = stage.config.max_attempts
        for attempt in range(1, max_attempts + 1):
            if attempt > 1:
                delay = stage.config.backoff.delay(attempt)
                logger.info(
                    "[%s] retrying stage %s (attempt %d/%d) after %.2fs",
                    ctx.correlation_id,
                    stage.name,
                    attempt,
                    max_attempts,
                    delay,
                )
                log_event(
                    self.event_logger,
                    "stage.retry",
                    stage=stage.name,
                    attempt=attempt,
                    max_attempts=max_attempts,
                    delay_s=delay,
                )
                await _backoff(delay, ctx, attempt - 1)
            if ctx.canceled:
                raise _canceled(stage, attempt - 1)

            attempt_ctx = replace(ctx, attempt=attempt, max_attempts=max_attempts)
            try:
                result = await self._attempt(stage, copy.deepcopy(payload), attempt_ctx)
            except StageCanceled as exc:
                exc.attempts = attempt
                raise
            except Exception as exc:
                error = classify_exception(exc)
                error.attempts = attempt
                logger.warning(
                    "[%s] stage %s attempt %d/%d failed (%s): %s",
                    ctx.correlation_id,
                    stage.name,
                    attempt,
                    max_attempts,
                    error.kind.value,
                    error.message,
                )
                if error.retryable and attempt < max_attempts:
                    continue
                if error is exc:
                    raise
                raise error from exc

            output, warnings = _unpack_result(result)
            if key is not None:
                self._store(key, output, warnings, stage, ctx)
            return StageRun(
                output=output,
                warnings=warnings,
                cache_hit=False,
                attempts=attempt,
                elapsed_s=time.perf_counter() - start,
                cache_key=key,
            )
        raise StageError(f"stage {stage.name} made no attempts")  # pragma: no cover

    async def _attempt(self, stage: Stage, payload: Any, ctx: ExecutionContext) -> Any:
        task = asyncio.ensure_future(stage.transform.transform(payload, ctx))
        waiters = {task}
        cancel_waiter: Optional[asyncio.Future] = None
        if ctx.cancel is not None:
            cancel_waiter = asyncio.ensure_future(ctx.cancel.wait())
            waiters.add(cancel_waiter)
        try:
            done, _ = await asyncio.wait(
                waiters, timeout=stage.config.timeout, return_when=asyncio.FIRST_COMPLETED
            )
        finally:
            if cancel_waiter is not None:
                cancel_waiter.cancel()
            if not task.done():
                _discard(task)
        if task in done:
            return task.result()
        if cancel_waiter is not None and cancel_waiter in done:
            raise _canceled(stage, ctx.attempt)
        raise StageTimeout(f"stage {stage.name} timed out after {stage.config.timeout}s")

    def _store(self, key: str, output: Any, warnings: Tuple[str, ...], stage: Stage, ctx) -> None:
        try:
            self.cache.put(key, {"output": output, "warnings": list(warnings)}, stage.config.ttl_seconds)
        except Exception as exc:
            logger.warning("[%s] cache write failed for stage %s: %s", ctx.correlation_id, stage.name, exc)


async def _backoff(delay: float, ctx: ExecutionContext, attempts: int) -> None:
    if delay <= 0:
        return
    if ctx.cancel is None:
        await asyncio.sleep(delay)
        return
    try:
        await asyncio.wait_for(ctx.cancel.wait(), timeout=delay)
    except asyncio.TimeoutError:
        return
    raise _canceled_name(ctx.stage, attempts)


def _canceled(stage: Stage, attempts: int) -> StageCanceled:
    return _canceled_name(stage.name, attempts)


def _canceled_name(name: str, attempts: int) -> StageCanceled:
    error = StageCanceled(f"stage {name} canceled")
    error.attempts = attempts
    return error


def _discard(task: asyncio.Future) -> None:
    task.cancel()
    task.add_done_callback(_retrieve)


def _retrieve(task: asyncio.Future) -> None:
    if not task.cancelled():
        task.exception()


def _unpack_result(result: Any) -> Tuple[Any, Tuple[str, ...]]:
    if isinstance(result, TransformResult):
        return result.output, result.warnings
    return result, ()


def _unpack_cached(value: Any) -> Tuple[Any, Tuple[str, ...]]:
    if isinstance(value, dict) and "output" in value:
        return value["output"], tuple(value.get("warnings") or ())
    return value, ()
