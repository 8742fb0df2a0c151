from __future__ import annotations

import asyncio
import json
import os
import shlex
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional

from stagepipe.core.diagnostics import PermanentError, TransientError
from stagepipe.core.plugin_api import ExecutionContext, PluginMeta, Transform

STDERR_TAIL = 500


@dataclass(frozen=True)
class CommandRun:
    cmd: List[str]
    returncode: int
    stdout: bytes
    stderr: bytes
    elapsed_s: float


class CommandTransform(Transform):
    """Runs an external process: projected input as JSON on stdin, JSON on stdout."""

    def meta(self) -> PluginMeta:
        return PluginMeta(
            name="command",
            api_version="1.0.0",
            plugin_version="0.1.0",
            capabilities={
                "plugin_kind": "transform",
                "io": {"stdin": "application/json", "stdout": "application/json"},
                "features": {"env_modes": ["inherit", "clean"]},
            },
        )

    async def transform(self, payload: Any, ctx: ExecutionContext) -> Any:
        options = ctx.options
        cmd = _command(options.get("cmd"))
        run = await run_command(
            cmd,
            json.dumps(payload, sort_keys=True, default=str).encode("utf-8"),
            cwd=options.get("cwd"),
            env=_environment(options),
        )
        if ctx.logs_dir is not None:
            _write_logs(ctx.logs_dir, f"{ctx.stage}.attempt{ctx.attempt}", run)

        if run.returncode != 0:
            tail = run.stderr.decode("utf-8", errors="replace")[-STDERR_TAIL:].strip()
            message = f"command exited with {run.returncode}"
            if tail:
                message = f"{message}: {tail}"
            transient_codes = set(options.get("transient_codes") or [])
            error_cls = TransientError if run.returncode in transient_codes else PermanentError
            raise error_cls(message, data={"returncode": run.returncode})

        text = run.stdout.decode("utf-8", errors="replace")
        if options.get("raw"):
            return text
        try:
            return json.loads(text)
        except ValueError as exc:
            raise PermanentError(
                f"command output is not valid JSON: {exc}", code="E-STAGE-MALFORMED"
            ) from exc


async def run_command(
    cmd: List[str],
    stdin: bytes,
    *,
    cwd: Optional[str] = None,
    env: Optional[Dict[str, str]] = None,
) -> CommandRun:
    start = time.time()
    try:
        proc = await asyncio.create_subprocess_exec(
            *cmd,
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=cwd,
            env=env,
        )
    except FileNotFoundError as exc:
        raise PermanentError(f"command not found: {cmd[0]}") from exc
    try:
        stdout, stderr = await proc.communicate(stdin)
    except asyncio.CancelledError:
        if proc.returncode is None:
            proc.kill()
            await proc.wait()
        raise
    return CommandRun(
        cmd=list(cmd),
        returncode=proc.returncode if proc.returncode is not None else -1,
        stdout=stdout,
        stderr=stderr,
        elapsed_s=time.time() - start,
    )


def _command(value: Any) -> List[str]:
    if isinstance(value, str):
        cmd = shlex.split(value)
    elif isinstance(value, (list, tuple)):
        cmd = [str(part) for part in value]
    else:
        cmd = []
    if not cmd:
        raise PermanentError("command transform requires a non-empty 'cmd'", code="E-STAGE-CONFIG")
    return cmd


def _environment(options: Dict[str, Any]) -> Optional[Dict[str, str]]:
    extra = {str(k): str(v) for k, v in (options.get("env") or {}).items()}
    if options.get("env_mode", "inherit") == "clean":
        env = {"PATH": os.environ.get("PATH", "")}
    else:
        env = os.environ.copy()
    env.update(extra)
    return env


def _write_logs(logs_dir: Path, name: str, run: CommandRun) -> None:
    logs_dir.mkdir(parents=True, exist_ok=True)
    (logs_dir / f"{name}.stdout.log").write_bytes(run.stdout)
    (logs_dir / f"{name}.stderr.log").write_bytes(run.stderr)
