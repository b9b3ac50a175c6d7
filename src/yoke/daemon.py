"""Daemon loop: review -> write -> claim -> idle, with a progress check per action."""

from __future__ import annotations

import re
from collections.abc import Callable
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Literal

from .claim import Claimer
from .config import ConfigValidationError, YokeConfig
from .issue import branch_for_issue, extract_issue_id
from .status import IN_PROGRESS, IN_REVIEW
from .tracker import Tracker
from .ui import Notes
from .util import (
    CommandError,
    Runner,
    YokeError,
    child_env,
    format_duration,
    run_passthrough,
    sanitize_comment_line,
    sleep_seconds,
)
from .vcs import Git, PullRequests


DEFAULT_POLL_SECONDS = 30.0

Action = Literal["idle", "reviewing", "writing", "claiming"]

_DURATION_PART_RE = re.compile(r"(\d+(?:\.\d*)?|\.\d+)(ns|us|µs|ms|s|m|h)")
_UNIT_SECONDS = {
    "ns": 1e-9,
    "us": 1e-6,
    "µs": 1e-6,
    "ms": 1e-3,
    "s": 1.0,
    "m": 60.0,
    "h": 3600.0,
}


class NoProgressError(YokeError):
    def __init__(self, role: str, issue_id: str, status: str) -> None:
        super().__init__(
            f"{role} command did not advance issue {issue_id} (still {status}); "
            "ensure the command transitions bd state"
        )
        self.role = role
        self.issue_id = issue_id
        self.status = status


def _parse_duration(value: str) -> float | None:
    pos = 0
    total = 0.0
    while pos < len(value):
        match = _DURATION_PART_RE.match(value, pos)
        if match is None:
            return None
        total += float(match.group(1)) * _UNIT_SECONDS[match.group(2)]
        pos = match.end()
    return total


def parse_interval(raw: str) -> float:
    """Parse ``30`` (seconds) or a duration such as ``30s``, ``1m`` or ``1h30m``."""
    value = raw.strip()
    if not value:
        raise ValueError("interval cannot be empty")

    seconds = _parse_duration(value)
    if seconds is not None:
        if seconds <= 0:
            raise ValueError(f"interval must be positive: {raw}")
        return seconds
    if value.isdigit() and int(value) > 0:
        return float(int(value))
    raise ValueError(
        f"invalid interval {raw!r}: use positive seconds (e.g. 30) or duration (e.g. 30s, 1m)"
    )


@dataclass(frozen=True)
class DaemonOptions:
    once: bool = False
    interval: float = DEFAULT_POLL_SECONDS
    max_iterations: int = 0
    writer_cmd: str = ""
    reviewer_cmd: str = ""

    def with_config(self, cfg: YokeConfig) -> DaemonOptions:
        """Fill missing role commands from config and require both."""
        opts = replace(
            self,
            writer_cmd=self.writer_cmd.strip() or cfg.writer_cmd.strip(),
            reviewer_cmd=self.reviewer_cmd.strip() or cfg.review_cmd.strip(),
        )
        if not opts.writer_cmd:
            raise ConfigValidationError(
                "YOKE_WRITER_CMD is empty in .yoke/config.sh (required for yoke daemon)"
            )
        if not opts.reviewer_cmd:
            raise ConfigValidationError(
                "YOKE_REVIEW_CMD is empty in .yoke/config.sh (required for yoke daemon)"
            )
        if self.max_iterations < 0:
            raise ValueError(f"invalid max iterations: {self.max_iterations}")
        return opts


@dataclass(frozen=True)
class IterationResult:
    action: Action
    issue_id: str = ""

    def describe(self) -> str:
        if self.action == "reviewing":
            return f"reviewed {self.issue_id}"
        if self.action == "writing":
            return f"wrote {self.issue_id}"
        if self.action == "claiming":
            return f"claimed {self.issue_id}"
        return "idle"


@dataclass(frozen=True)
class DaemonResult:
    status: str  # "once", "max_iterations"
    iterations: int = 0
    last: IterationResult | None = None


def format_no_consensus_comment(issue_id: str, status: str, max_iterations: int) -> str:
    return "\n".join(
        [
            "## Daemon Notice",
            "",
            f"- Issue: `{sanitize_comment_line(issue_id)}`",
            f"- Status: {sanitize_comment_line(status)}",
            "- Outcome: max daemon iterations reached without writer/reviewer consensus",
            f"- Iterations: {max_iterations}",
            "- PR state: left in draft for manual intervention",
            "",
            "_Posted automatically by `yoke daemon`._",
        ]
    )


def focused_issue_id(tracker: Tracker, git: Git, prefix: str) -> str:
    """Issue named by the current branch when it is in progress."""
    branch_issue = extract_issue_id(git.current_branch(), prefix)
    if not branch_issue:
        return ""
    try:
        status = tracker.issue_status(branch_issue)
    except (CommandError, YokeError):
        return ""
    return branch_issue if status == IN_PROGRESS else ""


class Daemon:
    def __init__(
        self,
        tracker: Tracker,
        git: Git,
        prs: PullRequests,
        cfg: YokeConfig,
        root: Path,
        options: DaemonOptions,
        *,
        claimer: Claimer | None = None,
        shell_runner: Runner = run_passthrough,
        sleep: Callable[[float], None] = sleep_seconds,
        notes: Notes | None = None,
    ) -> None:
        self.tracker = tracker
        self.git = git
        self.prs = prs
        self.cfg = cfg
        self.root = root
        self.options = options.with_config(cfg)
        self.notes = notes or Notes()
        self.claimer = claimer or Claimer(
            tracker, git, cfg, root, notes=self.notes.scoped("[claim] ")
        )
        self.shell_runner = shell_runner
        self.sleep = sleep

    # -- selection -----------------------------------------------------------

    def focused_issue_id(self) -> str:
        return focused_issue_id(self.tracker, self.git, self.cfg.bd_prefix)

    def focused_or_in_progress_issue_id(self) -> str:
        return self.focused_issue_id() or self.tracker.first_issue_by_status(IN_PROGRESS)

    def ensure_issue_branch(self, issue_id: str) -> None:
        self.git.ensure_branch(branch_for_issue(issue_id))

    # -- actions -------------------------------------------------------------

    def run_role_command(self, role: str, issue_id: str, command: str) -> None:
        before = self.tracker.issue_status(issue_id)
        self.notes.note(f"Daemon running {role} command for {issue_id}")
        env = child_env(
            {
                "ISSUE_ID": issue_id,
                "ROOT_DIR": str(self.root),
                "BD_PREFIX": self.cfg.bd_prefix,
                "YOKE_ROLE": role,
            }
        )
        self.shell_runner(["bash", "-lc", command], cwd=self.root, env=env)
        after = self.tracker.issue_status(issue_id)
        if after == before:
            raise NoProgressError(role, issue_id, after)
        self.notes.note(f"Daemon observed {issue_id} status transition: {before} -> {after}")

    def claim_next(self, issue_id: str) -> str:
        """Claim ``issue_id`` and return the id whose status moved."""
        self.notes.note(f"Daemon claiming next issue: {issue_id}")
        container_before = self.tracker.issue_status(issue_id)
        result = self.claimer.claim(issue_id)
        if result.container_complete:
            checked, before = issue_id, container_before
        else:
            checked, before = result.claimed_id, result.previous_status
        after = self.tracker.issue_status(checked)
        if not result.container_complete and before == after == IN_PROGRESS:
            self.notes.note(f"Daemon resumed in-progress issue {checked}")
            return checked
        if after == before:
            raise NoProgressError("claim", checked, after)
        self.notes.note(f"Daemon observed {checked} status transition: {before} -> {after}")
        return checked

    def run_iteration(self) -> IterationResult:
        reviewable = self.tracker.first_reviewable_issue_id()
        if reviewable:
            self.run_role_command("reviewer", reviewable, self.options.reviewer_cmd)
            return IterationResult("reviewing", reviewable)

        in_progress = self.focused_or_in_progress_issue_id()
        if in_progress:
            self.ensure_issue_branch(in_progress)
            self.run_role_command("writer", in_progress, self.options.writer_cmd)
            return IterationResult("writing", in_progress)

        next_id = self.tracker.next_issue_id()
        if next_id:
            self.claim_next(next_id)
            return IterationResult("claiming", next_id)

        return IterationResult("idle")

    # -- termination ---------------------------------------------------------

    def unresolved_issue(self) -> tuple[str, str]:
        reviewable = self.tracker.first_reviewable_issue_id()
        if reviewable:
            return reviewable, IN_REVIEW
        in_progress = self.tracker.first_issue_by_status(IN_PROGRESS)
        if in_progress:
            return in_progress, IN_PROGRESS
        return "", ""

    def notify_max_iterations_reached(self) -> None:
        max_iterations = self.options.max_iterations
        issue_id, status = self.unresolved_issue()
        if not issue_id:
            return
        self.notes.warn(
            f"max iterations ({max_iterations}) reached before consensus on {issue_id} (status: {status})"
        )
        self.notes.warn("leaving PR in draft/open state for manual intervention")

        pr = self.prs.open_for_branch(branch_for_issue(issue_id))
        if pr is None:
            return
        if not pr.is_draft:
            self.notes.warn(f"PR #{pr.number} is already ready (not draft) for {issue_id}")
            return
        try:
            self.prs.comment(pr.number, format_no_consensus_comment(issue_id, status, max_iterations))
        except CommandError as exc:
            self.notes.warn(f"failed to post no-consensus PR comment: {exc}")
            return
        self.notes.note(f"Posted no-consensus daemon comment to PR #{pr.number}")

    def run(self) -> DaemonResult:
        opts = self.options
        self.notes.note("Daemon started.")
        self.notes.note(f"  poll interval: {format_duration(opts.interval)}")
        self.notes.note(f"  mode: {'once' if opts.once else 'continuous'}")
        if opts.max_iterations > 0:
            self.notes.note(f"  max iterations: {opts.max_iterations}")

        iteration = 0
        while True:
            iteration += 1
            result = self.run_iteration()

            if opts.once:
                self.notes.success(f"Daemon completed single iteration: {result.describe()}")
                return DaemonResult("once", iterations=iteration, last=result)
            if opts.max_iterations > 0 and iteration >= opts.max_iterations:
                self.notify_max_iterations_reached()
                self.notes.note(f"Daemon reached max iterations ({opts.max_iterations}); exiting.")
                return DaemonResult("max_iterations", iterations=iteration, last=result)

            if result.action == "idle":
                self.sleep(opts.interval)
