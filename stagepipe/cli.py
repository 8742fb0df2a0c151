from __future__ import annotations

import argparse
import json
import logging
from pathlib import Path

from .api import delivery_summary, run, validate
from .core.config import ConfigError, load_inputs, load_pipeline_config, normalize_pipeline_config
from .core.intake import validate_inputs
from .core.logging import LOG_FORMAT
from .core.notifier import render_delivery


def main() -> None:
    parser = argparse.ArgumentParser(prog="stagepipe")
    parser.add_argument("-v", "--verbose", action="store_true")
    sub = parser.add_subparsers(dest="command", required=True)

    validate_cmd = sub.add_parser("validate")
    validate_cmd.add_argument("-c", "--config", required=True)
    validate_cmd.add_argument("-i", "--inputs", required=False)

    run_cmd = sub.add_parser("run")
    run_cmd.add_argument("-c", "--config", required=True)
    run_cmd.add_argument("-i", "--inputs", required=True)
    run_cmd.add_argument("--root", default=".")
    run_cmd.add_argument("--run-id", required=False)

    report = sub.add_parser("report")
    report.add_argument("-r", "--run", required=True)

    args = parser.parse_args()
    logging.basicConfig(
        level=logging.INFO if args.verbose else logging.WARNING, format=LOG_FORMAT
    )

    if args.command == "report":
        _report(Path(args.run))
        return

    config = load_pipeline_config(Path(args.config))

    if args.command == "validate":
        diagnostics = validate(config)
        if args.inputs:
            rules = normalize_pipeline_config(config).get("inputs")
            _, input_diagnostics = validate_inputs(load_inputs(Path(args.inputs)), rules)
            diagnostics.extend(input_diagnostics)
        if diagnostics.has_errors():
            print(json.dumps(diagnostics.to_list(), indent=2, sort_keys=True))
            raise SystemExit(1)
        print(json.dumps({"status": "ok"}))
        return

    if args.command == "run":
        inputs = load_inputs(Path(args.inputs))
        try:
            result = run(config, inputs, root=Path(args.root), correlation_id=args.run_id)
        except ConfigError as exc:
            print(json.dumps([record.to_dict() for record in exc.records], indent=2, sort_keys=True))
            raise SystemExit(1)
        payload = {
            "delivery": render_delivery(result.outcome),
            "run": delivery_summary(result),
        }
        print(json.dumps(payload, indent=2, sort_keys=True, default=str))
        if not result.outcome.ok:
            raise SystemExit(1)


def _report(run_dir: Path) -> None:
    manifest_path = run_dir / "manifest.json"
    if not manifest_path.exists():
        raise FileNotFoundError(f"manifest.json not found in {run_dir}")
    print(manifest_path.read_text(encoding="utf-8"))


if __name__ == "__main__":
    main()
