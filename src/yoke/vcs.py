"""git and GitHub CLI collaborators."""

from __future__ import annotations

import json
from dataclasses import dataclass
from pathlib import Path

from .util import CommandError, Runner, YokeError, command_exists, run_capture


@dataclass(frozen=True)
class PullRequest:
    number: int
    url: str
    is_draft: bool


def parse_open_pr_list(raw: str) -> PullRequest | None:
    trimmed = raw.strip()
    if not trimmed or trimmed in ("null", "[]"):
        return None
    try:
        payload = json.loads(trimmed)
    except json.JSONDecodeError:
        return None
    if not isinstance(payload, list) or not payload or not isinstance(payload[0], dict):
        return None
    first = payload[0]
    try:
        number = int(first.get("number") or 0)
    except (TypeError, ValueError):
        return None
    if number <= 0:
        return None
    return PullRequest(
        number=number,
        url=str(first.get("url") or "").strip(),
        is_draft=bool(first.get("isDraft")),
    )


@dataclass
class Git:
    cwd: Path | None = None
    runner: Runner = run_capture

    def _run(self, *args: str) -> str:
        return self.runner(["git", *args], cwd=self.cwd)

    def repo_root(self) -> Path:
        try:
            out = self._run("rev-parse", "--show-toplevel")
        except (CommandError, FileNotFoundError) as exc:
            raise YokeError("run inside a git repository") from exc
        return Path(out.strip())

    def current_branch(self) -> str:
        try:
            return self._run("rev-parse", "--abbrev-ref", "HEAD").strip()
        except CommandError:
            return ""

    def ref_exists(self, ref: str) -> bool:
        try:
            self._run("show-ref", "--verify", "--quiet", ref)
        except CommandError:
            return False
        return True

    def branch_exists(self, branch: str) -> bool:
        return self.ref_exists(f"refs/heads/{branch}")

    def switch_branch(self, branch: str) -> bool:
        """Switch to ``branch``, creating it first when missing.

        Returns True when the branch was created.
        """
        if self.branch_exists(branch):
            self._run("switch", branch)
            return False
        self._run("switch", "-c", branch)
        return True

    def ensure_branch(self, branch: str) -> None:
        if self.current_branch() == branch:
            return
        self.switch_branch(branch)

    def has_origin_remote(self) -> bool:
        try:
            self._run("remote", "get-url", "origin")
        except CommandError:
            return False
        return True

    def push_head(self) -> None:
        self._run("push", "-u", "origin", "HEAD")


@dataclass
class PullRequests:
    git: Git
    cwd: Path | None = None
    runner: Runner = run_capture

    def _run(self, *args: str) -> str:
        return self.runner(["gh", *args], cwd=self.cwd)

    def available(self) -> bool:
        return command_exists("gh") and self.git.has_origin_remote()

    def open_for_branch(self, branch: str) -> PullRequest | None:
        if not branch.strip() or not self.available():
            return None
        try:
            out = self._run(
                "pr", "list",
                "--head", branch,
                "--state", "open",
                "--json", "number,url,isDraft",
            )
        except CommandError:
            return None
        return parse_open_pr_list(out)

    def create_draft(self, *, base: str, title: str, body_file: Path | None) -> None:
        args = ["pr", "create", "--draft", "--base", base, "--title", title]
        if body_file is not None and body_file.exists():
            args += ["--body-file", str(body_file)]
        else:
            args += ["--body", ""]
        self._run(*args)

    def comment(self, number: int, body: str) -> None:
        self._run("pr", "comment", str(number), "--body", body)

    def mark_ready(self, number: int) -> None:
        self._run("pr", "ready", str(number))
