from __future__ import annotations

import json
import os
import platform
import secrets
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from .outcome import Outcome, OutcomeStatus
from .version import __version__

MANIFEST_VERSION = "1.0.0"


@dataclass
class RunManifest:
    correlation_id: str
    started_at: str
    finished_at: str
    status: str
    pipeline: Dict[str, Any]
    completed_stages: List[str]
    errors: List[Dict[str, Any]]
    warnings: List[str]
    delivery: Dict[str, Any]
    steps: List[Dict[str, Any]] = field(default_factory=list)
    host: Dict[str, Any] = field(default_factory=dict)
    stage_outputs: Optional[Dict[str, Any]] = None
    manifest_version: str = MANIFEST_VERSION

    def to_dict(self) -> Dict[str, Any]:
        return {key: value for key, value in asdict(self).items() if value is not None}


class RunStore:
    """Lays out ``<root>/runs/<correlation id>/`` with a ``logs/`` directory."""

    def __init__(self, root: Path) -> None:
        self.root = root

    def run_dir(self, correlation_id: str) -> Path:
        return self.root / "runs" / correlation_id

    def create_run(self, correlation_id: str) -> Path:
        run_dir = self.run_dir(correlation_id)
        (run_dir / "logs").mkdir(parents=True, exist_ok=False)
        return run_dir

    def build_manifest(self, outcome: Outcome, pipeline: Dict[str, Any]) -> RunManifest:
        envelope = outcome.envelope
        outputs = None
        if outcome.status != OutcomeStatus.FAILED:
            outputs = {name: out.to_dict() for name, out in envelope.stage_outputs.items()}
        return RunManifest(
            correlation_id=envelope.correlation_id,
            started_at=envelope.started_at_iso,
            finished_at=datetime.now(timezone.utc).isoformat(),
            status=outcome.status.value,
            pipeline=pipeline,
            completed_stages=list(envelope.completed_stages),
            errors=[record.to_dict() for record in envelope.errors],
            warnings=list(envelope.warnings),
            delivery={"delivered": outcome.delivered, "error": outcome.delivery_error},
            steps=[dict(step) for step in outcome.steps],
            host=host_info(),
            stage_outputs=outputs,
        )

    def write_manifest(self, run_dir: Path, manifest: RunManifest) -> Path:
        path = run_dir / "manifest.json"
        path.write_text(
            json.dumps(manifest.to_dict(), indent=2, sort_keys=True, default=str),
            encoding="utf-8",
        )
        return path


def new_correlation_id(prefix: str = "run") -> str:
    stamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%S%fZ")
    return f"{prefix}-{stamp}-{secrets.token_hex(6)}"


def host_info() -> Dict[str, Any]:
    return {
        "engine": "stagepipe",
        "engine_version": __version__,
        "hostname": platform.node(),
        "pid": os.getpid(),
        "platform": platform.platform(),
        "python": platform.python_version(),
    }
