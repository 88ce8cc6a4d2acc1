from __future__ import annotations

import os
import queue
import subprocess
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Literal, Optional

from loguru import logger

from stepstack.core.workspace import Workspace


TimeoutKind = Literal["timeout", "no_output"]


@dataclass(frozen=True)
class ProcessResult:
    argv: list[str]
    exit_code: int
    output: str

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


class ProcessTimeout(Exception):
    def __init__(self, kind: TimeoutKind, seconds: float, output: str) -> None:
        super().__init__(f"{kind} after {seconds:g}s")
        self.kind = kind
        self.seconds = seconds
        self.output = output


def build_env(workspace: Workspace | None) -> dict[str, str]:
    """Environment for child processes.

    Exposes the workspace tool homes so build tools can keep caches there.
    """
    env = dict(os.environ)
    if workspace is not None:
        env["STEPSTACK_TOOLS_HOME"] = str(workspace.primary_home())
        env["STEPSTACK_TOOLCHAIN_HOME"] = str(workspace.secondary_home())
    return env


def run_process(
    argv: list[str],
    *,
    cwd: Path | None = None,
    env: dict[str, str] | None = None,
    timeout: Optional[float] = None,
    no_output_timeout: Optional[float] = None,
) -> ProcessResult:
    """Run argv to completion, combining stdout and stderr.

    Raises ProcessTimeout (after killing the child) when the whole run exceeds
    `timeout` or when no output arrives for `no_output_timeout` seconds.
    Raises OSError if the program cannot be started.
    """

    proc = subprocess.Popen(
        argv,
        cwd=str(cwd) if cwd else None,
        env=env,
        stdout=subprocess.PIPE,
        stderr=subprocess.STDOUT,
        stdin=subprocess.DEVNULL,
        text=True,
        errors="replace",
    )

    lines: queue.Queue[Optional[str]] = queue.Queue()

    def _pump() -> None:
        assert proc.stdout is not None
        for line in proc.stdout:
            lines.put(line)
        lines.put(None)

    reader = threading.Thread(target=_pump, name="stepstack-output", daemon=True)
    reader.start()

    started = time.monotonic()
    last_output = started
    chunks: list[str] = []

    while True:
        kind, remaining = _next_deadline(started, last_output, timeout, no_output_timeout)
        if remaining is not None and remaining <= 0:
            _kill(proc)
            raise ProcessTimeout(kind, _limit(kind, timeout, no_output_timeout), "".join(chunks))
        try:
            line = lines.get(timeout=remaining)
        except queue.Empty:
            continue
        if line is None:
            break
        chunks.append(line)
        last_output = time.monotonic()

    # stdout is closed; the child may still be running.
    wait_for = None if timeout is None else max(0.0, started + timeout - time.monotonic())
    try:
        exit_code = proc.wait(timeout=wait_for)
    except subprocess.TimeoutExpired:
        _kill(proc)
        raise ProcessTimeout("timeout", float(timeout or 0), "".join(chunks))

    reader.join(timeout=1)
    logger.debug(f"process {argv[0]!r} exited with {exit_code} after {time.monotonic() - started:.2f}s")
    return ProcessResult(argv=list(argv), exit_code=exit_code, output="".join(chunks))


def _next_deadline(
    started: float,
    last_output: float,
    timeout: Optional[float],
    no_output_timeout: Optional[float],
) -> tuple[TimeoutKind, Optional[float]]:
    now = time.monotonic()
    candidates: list[tuple[float, TimeoutKind]] = []
    if timeout is not None:
        candidates.append((started + timeout - now, "timeout"))
    if no_output_timeout is not None:
        candidates.append((last_output + no_output_timeout - now, "no_output"))
    if not candidates:
        return "timeout", None
    remaining, kind = min(candidates)
    return kind, remaining


def _limit(kind: TimeoutKind, timeout: Optional[float], no_output_timeout: Optional[float]) -> float:
    value = timeout if kind == "timeout" else no_output_timeout
    return float(value or 0)


def _kill(proc: subprocess.Popen) -> None:
    proc.kill()
    try:
        proc.wait(timeout=5)
    except subprocess.TimeoutExpired:
        logger.warning(f"process {proc.pid} did not exit after kill")
