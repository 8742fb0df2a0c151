from __future__ import annotations

import inspect
import json
import logging
import threading
from pathlib import Path
from typing import Any, Dict, Optional, Protocol

from .diagnostics import NotifierError
from .envelope import Envelope
from .outcome import Outcome, OutcomeStatus
from .plugin_loader import load_callable

DEFAULT_ATTEMPTS = 2


class Notifier(Protocol):
    def notify(self, outcome: Outcome, envelope: Envelope) -> Any: ...


def render_delivery(outcome: Outcome) -> Dict[str, Any]:
    """Caller-facing payload; failed runs expose errors but no stage outputs."""
    envelope = outcome.envelope
    payload: Dict[str, Any] = {
        "status": outcome.status.value,
        "correlationId": envelope.correlation_id,
        "startedAt": envelope.started_at_iso,
    }
    if outcome.status == OutcomeStatus.FAILED:
        payload["errors"] = [record.to_dict() for record in envelope.errors]
        return payload
    payload["stageOutputs"] = envelope.output_values()
    payload["completedStages"] = list(envelope.completed_stages)
    if outcome.status == OutcomeStatus.SUCCESS_WITH_WARNINGS:
        payload["warnings"] = list(envelope.warnings)
    return payload


class NullNotifier:
    def notify(self, outcome: Outcome, envelope: Envelope) -> None:
        return


class LogNotifier:
    def __init__(self, logger: Optional[logging.Logger] = None) -> None:
        self.logger = logger or logging.getLogger("stagepipe.notifier")

    def notify(self, outcome: Outcome, envelope: Envelope) -> None:
        payload = json.dumps(render_delivery(outcome), sort_keys=True, default=str)
        if outcome.status == OutcomeStatus.FAILED:
            self.logger.error("run %s failed: %s", envelope.correlation_id, payload)
        elif outcome.status == OutcomeStatus.SUCCESS_WITH_WARNINGS:
            self.logger.warning("run %s completed with warnings: %s", envelope.correlation_id, payload)
        else:
            self.logger.info("run %s completed: %s", envelope.correlation_id, payload)


class FileNotifier:
    def __init__(self, path: Path) -> None:
        self.path = path
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()

    def notify(self, outcome: Outcome, envelope: Envelope) -> None:
        line = json.dumps(render_delivery(outcome), sort_keys=True, ensure_ascii=True, default=str)
        with self._lock:
            with self.path.open("a", encoding="utf-8") as handle:
                handle.write(line + "\n")


class CallableNotifier:
    def __init__(self, fn: Any) -> None:
        self.fn = fn

    async def notify(self, outcome: Outcome, envelope: Envelope) -> None:
        result = self.fn(outcome, envelope)
        if inspect.isawaitable(result):
            result = await result
        if result is False:
            raise NotifierError(f"notifier {self.fn!r} reported a failed delivery")


def load_notifier(config: Any, root: Optional[Path] = None, registry: Any = None) -> Any:
    if not config:
        return LogNotifier()
    if hasattr(config, "notify"):
        return config
    if isinstance(config, str):
        return _as_notifier(load_callable(config))
    if isinstance(config, dict):
        notifier_type = config.get("type", "log")
        if notifier_type == "null":
            return NullNotifier()
        if notifier_type == "log":
            return LogNotifier()
        if notifier_type == "file":
            path = config.get("path")
            if path is None:
                if root is None:
                    raise ValueError("file notifier requires a path or a run root")
                path = root / "deliveries.jsonl"
            return FileNotifier(Path(path))
        if notifier_type == "callable" and config.get("callable"):
            return _as_notifier(load_callable(config["callable"]))
        if registry is not None and registry.has("notifier", notifier_type):
            return _as_notifier(registry.get("notifier", notifier_type))
        raise ValueError(f"Unknown notifier type: {notifier_type}")
    if callable(config):
        return CallableNotifier(config)
    raise ValueError(f"Unsupported notifier config: {config!r}")


def notifier_attempts(config: Any) -> int:
    if isinstance(config, dict):
        return max(1, int(config.get("attempts", DEFAULT_ATTEMPTS)))
    return DEFAULT_ATTEMPTS


def _as_notifier(target: Any) -> Any:
    if inspect.isclass(target):
        target = target()
    if hasattr(target, "notify"):
        return target
    if callable(target):
        return CallableNotifier(target)
    raise ValueError(f"Loaded object is not a notifier: {target!r}")
