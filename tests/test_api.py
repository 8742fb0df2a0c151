from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
import sys
import tempfile

import pytest

from stagepipe import run, run_async, validate
from stagepipe.cli import main
from stagepipe.core.cache import MemoryCache
from stagepipe.core.config import ConfigError, load_inputs, load_pipeline_config
from stagepipe.core.outcome import OutcomeStatus

ROOT = Path(__file__).resolve().parents[1]


def _example():
    config = load_pipeline_config(ROOT / "examples" / "pipeline.yaml")
    inputs = load_inputs(ROOT / "examples" / "inputs.json")
    return config, inputs


def test_example_run_writes_run_records():
    config, inputs = _example()
    with tempfile.TemporaryDirectory() as tmpdir:
        result = run(config, inputs, root=Path(tmpdir), correlation_id="run-example")
        outcome = result.outcome

        assert outcome.status == OutcomeStatus.SUCCESS_WITH_WARNINGS
        assert outcome.envelope.warnings == ("formatting nonstandard",)
        assert outcome.envelope.inputs["dest"] == "lead@example.com"
        assert outcome.envelope.output_values()["synthesis"] == {
            "design": {"nodes": ["trigger", "normalize", "notify"]},
            "checks": "passed",
        }

        assert result.run_dir == Path(tmpdir) / "runs" / "run-example"
        manifest = json.loads((result.run_dir / "manifest.json").read_text(encoding="utf-8"))
        assert manifest["status"] == "success_with_warnings"
        assert manifest["correlation_id"] == "run-example"
        assert manifest["completed_stages"] == ["requirements", "design", "validate", "synthesis"]
        assert manifest["delivery"] == {"delivered": True, "error": None}
        assert len(manifest["steps"]) == 4
        assert manifest["host"]["engine"] == "stagepipe"

        events = [
            json.loads(line)
            for line in (result.run_dir / "logs" / "events.jsonl").read_text(encoding="utf-8").splitlines()
        ]
        assert events[0]["event"] == "pipeline.start"
        assert {e["correlation_id"] for e in events} == {"run-example"}
        assert (result.run_dir / "logs" / "stagepipe.log").exists()


def test_failed_run_manifest_has_no_stage_outputs():
    config, _ = _example()
    with tempfile.TemporaryDirectory() as tmpdir:
        result = run(config, {"brief": "short", "dest": "nope"}, root=Path(tmpdir))
        manifest = json.loads((result.run_dir / "manifest.json").read_text(encoding="utf-8"))
    assert result.outcome.status == OutcomeStatus.FAILED
    assert "stage_outputs" not in manifest
    assert sorted(e["code"] for e in manifest["errors"]) == ["E-INPUT-EMAIL", "E-INPUT-LENGTH"]


def test_in_process_transforms_and_shared_cache():
    config = {
        "name": "inline",
        "stages": [
            {"name": "design", "cacheable": True, "select": {"brief": "inputs.brief"}},
            {"name": "review", "failurePolicy": "warning"},
        ],
        "notifier": {"type": "null"},
    }
    calls = []

    def design(payload):
        calls.append(payload)
        return {"brief": payload["brief"]}

    def review(payload):
        raise ValueError("reviewer rejected layout")

    cache = MemoryCache()
    transforms = {"design": design, "review": review}
    first = run(config, {"brief": "anything"}, transforms=transforms, cache=cache)
    second = run(config, {"brief": "anything"}, transforms=transforms, cache=cache)

    assert len(calls) == 1
    assert second.outcome.envelope.stage_outputs["design"].cache_hit
    assert first.run_dir is None
    assert first.outcome.status == OutcomeStatus.SUCCESS_WITH_WARNINGS
    assert first.outcome.envelope.warnings[0].startswith("review failed: ValueError")


def test_concurrent_runs_keep_separate_log_files(tmp_path):
    config = {"name": "isolated", "stages": [{"name": "work"}], "notifier": {"type": "null"}}

    def worker(marker):
        async def work(payload):
            for step in range(3):
                await asyncio.sleep(0.01)
                logging.getLogger("stagepipe.work").info("marker %s step %d", marker, step)
            return marker

        return work

    async def scenario():
        return await asyncio.gather(
            run_async(
                config,
                {},
                transforms={"work": worker("AAA")},
                root=tmp_path / "a",
                correlation_id="run-a",
            ),
            run_async(
                config,
                {},
                transforms={"work": worker("BBB")},
                root=tmp_path / "b",
                correlation_id="run-b",
            ),
        )

    first, second = asyncio.run(scenario())
    first_log = (first.run_dir / "logs" / "stagepipe.log").read_text(encoding="utf-8")
    second_log = (second.run_dir / "logs" / "stagepipe.log").read_text(encoding="utf-8")

    assert "[run-a] starting pipeline" in first_log
    assert "marker AAA step 2" in first_log
    assert "run-b" not in first_log
    assert "BBB" not in first_log
    assert "[run-b] starting pipeline" in second_log
    assert "marker BBB step 2" in second_log
    assert "run-a" not in second_log
    assert "AAA" not in second_log


def test_file_notifier_receives_delivery():
    config, inputs = _example()
    config = dict(config, notifier={"type": "file"})
    with tempfile.TemporaryDirectory() as tmpdir:
        run(config, inputs, root=Path(tmpdir))
        lines = (Path(tmpdir) / "deliveries.jsonl").read_text(encoding="utf-8").splitlines()
    delivery = json.loads(lines[0])
    assert delivery["status"] == "success_with_warnings"
    assert delivery["warnings"] == ["formatting nonstandard"]
    assert set(delivery["stageOutputs"]) == {"requirements", "design", "validate", "synthesis"}


def test_invalid_config_raises():
    with pytest.raises(ConfigError):
        run({"stages": [{"name": "a", "transform": {"type": "nope"}}]}, {})
    assert validate({"stages": []}).has_errors()


def test_cli_validate_run_and_report(monkeypatch, capsys):
    config_path = ROOT / "examples" / "pipeline.yaml"
    inputs_path = ROOT / "examples" / "inputs.json"

    monkeypatch.setattr(sys, "argv", ["stagepipe", "validate", "-c", str(config_path)])
    main()
    assert json.loads(capsys.readouterr().out) == {"status": "ok"}

    with tempfile.TemporaryDirectory() as tmpdir:
        monkeypatch.setattr(
            sys,
            "argv",
            [
                "stagepipe",
                "run",
                "-c",
                str(config_path),
                "-i",
                str(inputs_path),
                "--root",
                tmpdir,
                "--run-id",
                "run-cli",
            ],
        )
        main()
        payload = json.loads(capsys.readouterr().out)
        assert payload["delivery"]["status"] == "success_with_warnings"
        assert payload["run"]["delivered"] is True

        run_dir = Path(tmpdir) / "runs" / "run-cli"
        monkeypatch.setattr(sys, "argv", ["stagepipe", "report", "-r", str(run_dir)])
        main()
        assert json.loads(capsys.readouterr().out)["correlation_id"] == "run-cli"


def test_cli_run_exits_nonzero_on_failed_run(monkeypatch, tmp_path):
    bad_inputs = tmp_path / "inputs.json"
    bad_inputs.write_text('{"brief": "short"}', encoding="utf-8")
    monkeypatch.setattr(
        sys,
        "argv",
        [
            "stagepipe",
            "run",
            "-c",
            str(ROOT / "examples" / "pipeline.yaml"),
            "-i",
            str(bad_inputs),
            "--root",
            str(tmp_path),
        ],
    )
    with pytest.raises(SystemExit) as info:
        main()
    assert info.value.code == 1
