from __future__ import annotations

import io
import json
from collections import deque
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import pytest
from rich.console import Console

from yoke.ui import Notes
from yoke.util import CommandError


def issue_row(
    issue_id: str,
    *,
    status: str = "open",
    issue_type: str = "task",
    title: str = "",
    labels: tuple[str, ...] = (),
    comment_count: int = 0,
) -> dict[str, Any]:
    return {
        "id": issue_id,
        "title": title or f"Title {issue_id}",
        "issue_type": issue_type,
        "status": status,
        "labels": list(labels),
        "comment_count": comment_count,
    }


def as_json(payload: Any) -> str:
    return json.dumps(payload)


@dataclass
class Call:
    argv: list[str]
    cwd: Path | None
    env: dict[str, str] | None


class Fail:
    """Scripted reply that raises CommandError."""

    def __init__(self, stderr: str = "scripted failure", returncode: int = 1) -> None:
        self.stderr = stderr
        self.returncode = returncode


@dataclass
class ScriptedRunner:
    """Runner fake answering by the longest matching argv prefix.

    A reply registered as a list is consumed in order; its last entry
    repeats. Unmatched commands return "".
    """

    replies: dict[tuple[str, ...], deque] = field(default_factory=dict)
    calls: list[Call] = field(default_factory=list)

    def on(self, *prefix: str, reply: str | Fail | list[str | Fail] = "") -> ScriptedRunner:
        items = reply if isinstance(reply, list) else [reply]
        self.replies[tuple(prefix)] = deque(items)
        return self

    def __call__(
        self,
        argv: list[str],
        *,
        cwd: Path | None = None,
        env: dict[str, str] | None = None,
    ) -> str:
        self.calls.append(Call(list(argv), cwd, env))
        best: tuple[str, ...] | None = None
        for prefix in self.replies:
            if tuple(argv[: len(prefix)]) == prefix and (best is None or len(prefix) > len(best)):
                best = prefix
        if best is None:
            return ""
        queue = self.replies[best]
        item = queue.popleft() if len(queue) > 1 else queue[0]
        if isinstance(item, Fail):
            raise CommandError(list(argv), item.returncode, "", item.stderr)
        return item

    def argvs(self, *prefix: str) -> list[list[str]]:
        return [c.argv for c in self.calls if tuple(c.argv[: len(prefix)]) == prefix]

    def count(self, *prefix: str) -> int:
        return len(self.argvs(*prefix))


@pytest.fixture
def stdout() -> io.StringIO:
    return io.StringIO()


@pytest.fixture
def stderr() -> io.StringIO:
    return io.StringIO()


@pytest.fixture
def runner() -> ScriptedRunner:
    return ScriptedRunner()


@pytest.fixture
def notes(stdout: io.StringIO) -> Notes:
    return Notes(Console(file=stdout, no_color=True, highlight=False, width=200))
