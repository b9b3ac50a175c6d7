from __future__ import annotations

import io
import os
import subprocess
import threading
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Protocol, TextIO


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def format_duration(seconds: float) -> str:
    total = int(seconds)
    hours = total // 3600
    minutes = (total % 3600) // 60
    secs = total % 60
    if hours > 0:
        return f"{hours}h {minutes}m {secs}s"
    if minutes > 0:
        return f"{minutes}m {secs}s"
    if total == 0 and seconds > 0:
        return f"{int(seconds * 1000)}ms"
    return f"{secs}s"


class YokeError(Exception):
    """Base class for workflow errors surfaced to the operator."""


class CommandError(RuntimeError):
    def __init__(self, argv: list[str], returncode: int, stdout: str, stderr: str):
        detail = (stderr or stdout).strip()
        message = f"command failed: {' '.join(argv)} (exit {returncode})"
        if detail:
            message += f": {detail.splitlines()[-1]}"
        super().__init__(message)
        self.argv = argv
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr


class Runner(Protocol):
    """Runs one external command and returns its stdout.

    Implementations raise CommandError on a non-zero exit and
    FileNotFoundError when the binary is missing.
    """

    def __call__(
        self,
        argv: list[str],
        *,
        cwd: Path | None = None,
        env: dict[str, str] | None = None,
    ) -> str: ...


def run_capture(
    argv: list[str],
    *,
    cwd: Path | None = None,
    env: dict[str, str] | None = None,
) -> str:
    proc = subprocess.run(
        argv,
        cwd=str(cwd) if cwd else None,
        env=env,
        text=True,
        capture_output=True,
        check=False,
    )
    if proc.returncode != 0:
        raise CommandError(argv, proc.returncode, proc.stdout, proc.stderr)
    return proc.stdout


def run_passthrough(
    argv: list[str],
    *,
    cwd: Path | None = None,
    env: dict[str, str] | None = None,
) -> str:
    """Run a command with the operator's terminal attached; returns ""."""
    proc = subprocess.run(
        argv,
        cwd=str(cwd) if cwd else None,
        env=env,
        check=False,
    )
    if proc.returncode != 0:
        raise CommandError(argv, proc.returncode, "", "")
    return ""


def which(cmd: str) -> str | None:
    for p in os.environ.get("PATH", "").split(os.pathsep):
        if not p:
            continue
        candidate = Path(p) / cmd
        if candidate.is_file() and os.access(candidate, os.X_OK):
            return str(candidate)
    return None


def command_exists(cmd: str) -> bool:
    return which(cmd) is not None


def child_env(extra: dict[str, str] | None = None) -> dict[str, str]:
    env = dict(os.environ)
    if extra:
        env.update(extra)
    return env


class SynchronizedBuffer:
    """In-memory text buffer shared by the stdout and stderr pumps."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._buf = io.StringIO()

    def write(self, text: str) -> int:
        with self._lock:
            return self._buf.write(text)

    def getvalue(self) -> str:
        with self._lock:
            return self._buf.getvalue()


class LinePrefixWriter:
    """Writes text to ``dst`` with ``prefix`` at the start of every line."""

    def __init__(self, dst: TextIO, prefix: str, *, lock: threading.Lock | None = None) -> None:
        self.dst = dst
        self.prefix = prefix
        self._lock = lock or threading.Lock()
        self._line_start = True

    def write(self, text: str) -> int:
        with self._lock:
            written = 0
            for chunk in text.splitlines(keepends=True):
                if self._line_start:
                    self.dst.write(self.prefix)
                    self._line_start = False
                self.dst.write(chunk)
                written += len(chunk)
                if chunk.endswith("\n"):
                    self._line_start = True
            self.dst.flush()
            return written


def _pump(stream: TextIO, sinks: tuple[object, ...]) -> None:
    for line in stream:
        for sink in sinks:
            sink.write(line)  # type: ignore[attr-defined]


def stream_capture(
    argv: list[str],
    *,
    cwd: Path,
    env: dict[str, str] | None,
    out: TextIO,
    prefix: str,
) -> tuple[int, str]:
    """Run ``argv``, echo prefixed output to ``out`` and capture it.

    stdout and stderr are pumped by two threads into one
    SynchronizedBuffer. Returns (returncode, captured text).
    """
    captured = SynchronizedBuffer()
    out_lock = threading.Lock()
    stderr_prefix = prefix + "[stderr] " if prefix.strip() else "[agent][stderr] "
    stdout_writer = LinePrefixWriter(out, prefix, lock=out_lock)
    stderr_writer = LinePrefixWriter(out, stderr_prefix, lock=out_lock)

    with subprocess.Popen(
        argv,
        cwd=str(cwd),
        env=env,
        text=True,
        stdin=subprocess.DEVNULL,
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        bufsize=1,
    ) as proc:
        assert proc.stdout is not None
        assert proc.stderr is not None
        pumps = [
            threading.Thread(target=_pump, args=(proc.stdout, (captured, stdout_writer)), daemon=True),
            threading.Thread(target=_pump, args=(proc.stderr, (captured, stderr_writer)), daemon=True),
        ]
        for pump in pumps:
            pump.start()
        returncode = proc.wait()
        for pump in pumps:
            pump.join()

    return returncode, captured.getvalue().strip()


def sleep_seconds(seconds: float) -> None:
    time.sleep(seconds)


def sanitize_comment_line(value: str) -> str:
    """Collapse all whitespace runs to single spaces."""
    return " ".join(value.split())
