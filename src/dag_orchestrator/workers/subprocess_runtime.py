"""Run each task as a child process.

The task spec must be an object with an ``argv`` list; optional ``env``
(string map merged over the parent environment) and ``cwd`` are honoured. The
effective spec, including any injected dependency results, is fed to the child
on stdin as JSON. Stdout is parsed as JSON when possible and kept as text
otherwise. A non-zero exit status is a worker failure.
"""

from __future__ import annotations

import contextlib
import json
import os
import re
import shutil
import signal
import subprocess
import tempfile
import threading
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import IO, Final

import structlog

from dag_orchestrator.domain.models import ErrorKind, JSONValue, TaskError, canonical_json
from dag_orchestrator.workers.base import PollResult

logger = structlog.get_logger(__name__)

RUNTIME_NAME: Final[str] = "subprocess"
_STDERR_TAIL_CHARS: Final[int] = 4000
_TASK_ID_ENV: Final[str] = "DAGORCH_TASK_ID"
_TASK_KIND_ENV: Final[str] = "DAGORCH_TASK_KIND"
_REF_PATTERN: Final[re.Pattern[str]] = re.compile(r"^pid-(?P<pid>[0-9]+)-")


@dataclass(frozen=True, slots=True)
class CommandSpec:
    """Validated process invocation extracted from a task spec."""

    argv: tuple[str, ...]
    env: Mapping[str, str]
    cwd: Path | None

    @classmethod
    def from_spec(cls, spec: JSONValue) -> CommandSpec:
        if not isinstance(spec, dict):
            raise ValueError("subprocess task spec must be an object with an 'argv' list")
        argv = spec.get("argv")
        if (
            not isinstance(argv, list)
            or not argv
            or not all(isinstance(item, str) and item for item in argv)
        ):
            raise ValueError("spec.argv must be a non-empty list of non-empty strings")

        env_raw = spec.get("env", {})
        if not isinstance(env_raw, dict) or not all(
            isinstance(value, str) for value in env_raw.values()
        ):
            raise ValueError("spec.env must map strings to strings")

        cwd_raw = spec.get("cwd")
        if cwd_raw is not None and not isinstance(cwd_raw, str):
            raise ValueError("spec.cwd must be a string")

        return cls(
            argv=tuple(argv),
            env=dict(env_raw),
            cwd=None if cwd_raw is None else Path(cwd_raw),
        )


@dataclass(slots=True)
class _Child:
    process: subprocess.Popen[bytes]
    scratch: Path
    stdout: IO[bytes]
    stderr: IO[bytes]
    cancelled: bool = False


class SubprocessWorkerRuntime:
    """One OS process per task; output is captured to scratch files, not pipes."""

    def __init__(self, *, scratch_root: Path | str | None = None) -> None:
        self._scratch_root = None if scratch_root is None else Path(scratch_root)
        self._children: dict[str, _Child] = {}
        self._lock = threading.Lock()

    @property
    def name(self) -> str:
        return RUNTIME_NAME

    def start(self, task_id: str, kind: str, spec: JSONValue) -> str:
        command = CommandSpec.from_spec(spec)
        if self._scratch_root is not None:
            self._scratch_root.mkdir(parents=True, exist_ok=True)
        env = dict(os.environ)
        env.update(command.env)
        env[_TASK_ID_ENV] = task_id
        env[_TASK_KIND_ENV] = kind

        scratch = Path(tempfile.mkdtemp(prefix="dagorch-", dir=self._scratch_root))
        # Until the child is running, any failure unwinds the scratch dir and its files.
        with contextlib.ExitStack() as unwind:
            unwind.callback(shutil.rmtree, scratch, ignore_errors=True)
            stdin_path = scratch / "stdin.json"
            stdin_path.write_text(canonical_json(spec), encoding="utf-8")
            stdout = unwind.enter_context((scratch / "stdout").open("w+b"))
            stderr = unwind.enter_context((scratch / "stderr").open("w+b"))
            with stdin_path.open("rb") as stdin:
                process = subprocess.Popen(
                    list(command.argv),
                    stdin=stdin,
                    stdout=stdout,
                    stderr=stderr,
                    cwd=command.cwd,
                    env=env,
                )
            unwind.pop_all()

        ref = f"pid-{process.pid}-{scratch.name}"
        with self._lock:
            self._children[ref] = _Child(
                process=process, scratch=scratch, stdout=stdout, stderr=stderr
            )
        logger.debug("subprocess_started", task_id=task_id, pid=process.pid, argv=command.argv)
        return ref

    def poll(self, ref: str) -> PollResult:
        with self._lock:
            child = self._children.get(ref)
        if child is None:
            raise KeyError(f"unknown subprocess ref: {ref}")

        exit_code = child.process.poll()
        if exit_code is None:
            return PollResult.running()

        with self._lock:
            self._children.pop(ref, None)
        try:
            stdout_text = _read_all(child.stdout)
            stderr_text = _read_all(child.stderr)
        finally:
            child.stdout.close()
            child.stderr.close()
            shutil.rmtree(child.scratch, ignore_errors=True)

        if exit_code != 0:
            reason = "cancelled" if child.cancelled else f"exited with status {exit_code}"
            return PollResult.failure(
                TaskError(
                    kind=ErrorKind.CANCELLED if child.cancelled else ErrorKind.WORKER_FAILURE,
                    message=f"worker process {reason}",
                    detail={
                        "exit_code": exit_code,
                        "stderr_tail": stderr_text[-_STDERR_TAIL_CHARS:],
                    },
                )
            )
        return PollResult.success(_parse_stdout(stdout_text))

    def cancel(self, ref: str) -> bool:
        with self._lock:
            child = self._children.get(ref)
        if child is None or child.process.poll() is not None:
            return False
        child.cancelled = True
        child.process.terminate()
        return True

    def close(self) -> None:
        """Terminate every child still running and remove scratch space."""
        with self._lock:
            children = list(self._children.values())
            self._children.clear()
        for child in children:
            if child.process.poll() is None:
                child.process.kill()
                child.process.wait()
            child.stdout.close()
            child.stderr.close()
            shutil.rmtree(child.scratch, ignore_errors=True)


def terminate_orphan(ref: str) -> bool:
    """Send SIGTERM to the process named by a ref from an earlier scheduler.

    Returns False when the ref is malformed or the process is already gone.
    """
    match = _REF_PATTERN.match(ref)
    if match is None:
        return False
    pid = int(match.group("pid"))
    try:
        os.kill(pid, signal.SIGTERM)
    except ProcessLookupError:
        return False
    except PermissionError:
        logger.warning("subprocess_orphan_not_permitted", pid=pid, ref=ref)
        return False
    logger.info("subprocess_orphan_terminated", pid=pid, ref=ref)
    return True


def _read_all(stream: IO[bytes]) -> str:
    stream.flush()
    stream.seek(0)
    return stream.read().decode("utf-8", errors="replace")


def _parse_stdout(text: str) -> JSONValue:
    stripped = text.strip()
    if not stripped:
        return None
    try:
        parsed: JSONValue = json.loads(stripped)
    except json.JSONDecodeError:
        return text
    return parsed


__all__ = ["RUNTIME_NAME", "CommandSpec", "SubprocessWorkerRuntime", "terminate_orphan"]
