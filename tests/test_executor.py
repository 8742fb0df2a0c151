from __future__ import annotations

import asyncio

import pytest

from stagepipe.core.cache import MemoryCache
from stagepipe.core.diagnostics import (
    PermanentError,
    StageCanceled,
    StageTimeout,
    TransientError,
)
from stagepipe.core.executor import StageExecutor
from stagepipe.core.plugin_api import ExecutionContext, TransformResult
from stagepipe.core.stage import stage

NO_WAIT = {"initialSeconds": 0}


def _ctx(st, cancel=None):
    return ExecutionContext(
        correlation_id="run-1",
        started_at="2026-01-05T09:30:00+00:00",
        stage=st.name,
        max_attempts=st.config.max_attempts,
        options=st.options,
        cancel=cancel,
    )


def _flaky(failures, error):
    calls = []

    async def transform(payload):
        calls.append(payload)
        if len(calls) <= failures:
            raise error(f"failure {len(calls)}")
        return {"design": payload["brief"].upper()}

    return transform, calls


def test_transient_failures_are_retried_until_success():
    fn, calls = _flaky(2, TransientError)
    st = stage("design", fn, maxAttempts=3, backoff=NO_WAIT)

    run = asyncio.run(StageExecutor().execute(st, {"brief": "digest"}, _ctx(st)))

    assert len(calls) == 3
    assert run.attempts == 3
    assert run.output == {"design": "DIGEST"}
    assert not run.cache_hit


def test_retried_output_matches_first_try_output():
    flaky, _ = _flaky(2, TransientError)
    steady, _ = _flaky(0, TransientError)
    retried = stage("design", flaky, maxAttempts=3, backoff=NO_WAIT)
    direct = stage("design", steady)
    executor = StageExecutor()

    first = asyncio.run(executor.execute(retried, {"brief": "x"}, _ctx(retried)))
    second = asyncio.run(executor.execute(direct, {"brief": "x"}, _ctx(direct)))
    assert first.output == second.output


def test_permanent_failure_is_not_retried():
    fn, calls = _flaky(5, PermanentError)
    st = stage("design", fn, maxAttempts=3, backoff=NO_WAIT)

    with pytest.raises(PermanentError) as info:
        asyncio.run(StageExecutor().execute(st, {"brief": "x"}, _ctx(st)))
    assert len(calls) == 1
    assert info.value.attempts == 1


def test_retries_stop_at_max_attempts():
    fn, calls = _flaky(5, TransientError)
    st = stage("design", fn, maxAttempts=2, backoff=NO_WAIT)

    with pytest.raises(TransientError) as info:
        asyncio.run(StageExecutor().execute(st, {"brief": "x"}, _ctx(st)))
    assert len(calls) == 2
    assert info.value.attempts == 2


def test_plain_exceptions_are_classified():
    def malformed(payload):
        raise ValueError("not json")

    st = stage("parse", malformed, maxAttempts=3, backoff=NO_WAIT)
    with pytest.raises(PermanentError) as info:
        asyncio.run(StageExecutor().execute(st, {}, _ctx(st)))
    assert info.value.code == "E-STAGE-MALFORMED"
    assert isinstance(info.value.__cause__, ValueError)

    attempts = []

    def unreachable(payload):
        attempts.append(1)
        if len(attempts) == 1:
            raise ConnectionError("reset by peer")
        return "ok"

    st = stage("fetch", unreachable, maxAttempts=2, backoff=NO_WAIT)
    run = asyncio.run(StageExecutor().execute(st, {}, _ctx(st)))
    assert run.output == "ok"
    assert run.attempts == 2


def test_timeout_counts_as_transient():
    calls = []

    async def slow(payload):
        calls.append(1)
        if len(calls) == 1:
            await asyncio.sleep(5)
        return "done"

    st = stage("slow", slow, timeout=0.05, maxAttempts=2, backoff=NO_WAIT)
    run = asyncio.run(StageExecutor().execute(st, {}, _ctx(st)))
    assert run.output == "done"
    assert run.attempts == 2


def test_timeout_exhausts_attempts():
    async def slow(payload):
        await asyncio.sleep(5)

    st = stage("slow", slow, timeout=0.05, maxAttempts=2, backoff=NO_WAIT)
    with pytest.raises(StageTimeout) as info:
        asyncio.run(StageExecutor().execute(st, {}, _ctx(st)))
    assert info.value.attempts == 2
    assert info.value.code == "E-STAGE-TIMEOUT"


def test_cancel_aborts_in_flight_attempt():
    async def scenario():
        cancel = asyncio.Event()

        async def slow(payload):
            await asyncio.sleep(5)

        st = stage("slow", slow, timeout=10, maxAttempts=3, backoff=NO_WAIT)
        asyncio.get_running_loop().call_later(0.05, cancel.set)
        return await StageExecutor().execute(st, {}, _ctx(st, cancel))

    with pytest.raises(StageCanceled):
        asyncio.run(scenario())


def test_cancel_interrupts_backoff():
    calls = []

    async def scenario():
        cancel = asyncio.Event()

        async def failing(payload):
            calls.append(1)
            raise TransientError("busy")

        st = stage("busy", failing, maxAttempts=3, backoff={"initialSeconds": 5})
        asyncio.get_running_loop().call_later(0.05, cancel.set)
        return await StageExecutor().execute(st, {}, _ctx(st, cancel))

    with pytest.raises(StageCanceled) as info:
        asyncio.run(scenario())
    assert len(calls) == 1
    assert info.value.attempts == 1


def test_cache_hit_skips_transform_and_replays_warnings():
    calls = []

    def validate(payload):
        calls.append(payload)
        return TransformResult(output={"checks": "passed"}, warnings=("formatting nonstandard",))

    st = stage("validate", validate, cacheable=True, ttlSeconds=60)
    executor = StageExecutor(MemoryCache())

    first = asyncio.run(executor.execute(st, {"design": 1}, _ctx(st)))
    second = asyncio.run(executor.execute(st, {"design": 1}, _ctx(st)))
    third = asyncio.run(executor.execute(st, {"design": 2}, _ctx(st)))

    assert len(calls) == 2
    assert not first.cache_hit
    assert second.cache_hit
    assert second.attempts == 0
    assert second.output == first.output
    assert second.warnings == ("formatting nonstandard",)
    assert not third.cache_hit


def test_cache_key_subset():
    calls = []

    def design(payload):
        calls.append(payload)
        return len(calls)

    st = stage("design", design, cacheable=True, cacheKey=["requirements"])
    executor = StageExecutor(MemoryCache())
    asyncio.run(executor.execute(st, {"requirements": "a", "noise": 1}, _ctx(st)))
    run = asyncio.run(executor.execute(st, {"requirements": "a", "noise": 2}, _ctx(st)))
    assert run.cache_hit
    assert len(calls) == 1


def test_cache_key_ignores_run_identity_without_select():
    calls = []

    def design(payload):
        calls.append(payload["correlationId"])
        return len(calls)

    st = stage("design", design, cacheable=True)
    executor = StageExecutor(MemoryCache())
    view = {"inputs": {"brief": "same brief text"}, "stageOutputs": {}}
    asyncio.run(executor.execute(st, dict(view, correlationId="run-1", startedAt="t1"), _ctx(st)))
    run = asyncio.run(executor.execute(st, dict(view, correlationId="run-2", startedAt="t2"), _ctx(st)))
    assert run.cache_hit
    assert calls == ["run-1"]


def test_transform_receives_private_copy_and_context():
    seen = []

    def mutate(payload, ctx):
        seen.append((ctx.attempt, ctx.max_attempts, ctx.correlation_id))
        payload["items"].append("mutated")
        return payload

    st = stage("mutate", mutate, maxAttempts=2)
    payload = {"items": []}
    run = asyncio.run(StageExecutor().execute(st, payload, _ctx(st)))

    assert payload == {"items": []}
    assert run.output == {"items": ["mutated"]}
    assert seen == [(1, 2, "run-1")]
