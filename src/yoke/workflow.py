"""Writer submit and reviewer review transitions."""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Literal

from .config import DEFAULT_CHECK_CMD, ConfigValidationError, YokeConfig
from .issue import branch_for_issue, extract_issue_id
from .status import BLOCKED, CLOSED, IN_PROGRESS, REVIEW_QUEUE_LABEL
from .tracker import Tracker
from .ui import Notes
from .util import (
    CommandError,
    Runner,
    YokeError,
    child_env,
    run_passthrough,
    sanitize_comment_line,
)
from .vcs import Git, PullRequests


APPROVE_CLOSE_REASON = "approved-by-yoke-review"

ReviewAction = Literal["approve", "reject"]


class WorkflowError(YokeError):
    pass


@dataclass(frozen=True)
class Handoff:
    done: str
    remaining: str
    decision: str = ""
    uncertain: str = ""


def format_issue_handoff_comment(handoff: Handoff, checks: str) -> str:
    lines = [
        "Writer handoff:",
        f"- Done: {sanitize_comment_line(handoff.done)}",
        f"- Remaining: {sanitize_comment_line(handoff.remaining)}",
        f"- Checks: `{sanitize_comment_line(checks)}` passed",
    ]
    if handoff.decision.strip():
        lines.append(f"- Decision: {sanitize_comment_line(handoff.decision)}")
    if handoff.uncertain.strip():
        lines.append(f"- Uncertain: {sanitize_comment_line(handoff.uncertain)}")
    return "\n".join(lines)


def format_writer_pr_comment(issue_id: str, handoff: Handoff, checks: str) -> str:
    lines = [
        "## Writer -> Reviewer Handoff",
        "",
        f"- Issue: `{sanitize_comment_line(issue_id)}`",
        f"- Done: {sanitize_comment_line(handoff.done)}",
        f"- Remaining: {sanitize_comment_line(handoff.remaining)}",
    ]
    if handoff.decision.strip():
        lines.append(f"- Decision: {sanitize_comment_line(handoff.decision)}")
    if handoff.uncertain.strip():
        lines.append(f"- Uncertain: {sanitize_comment_line(handoff.uncertain)}")
    lines += [
        f"- Checks: `{sanitize_comment_line(checks)}` passed",
        "",
        "_Posted automatically by `yoke submit`._",
    ]
    return "\n".join(lines)


def format_reviewer_pr_comment(
    issue_id: str,
    action: str | None,
    reject_reason: str = "",
    note: str = "",
    ran_agent: bool = False,
) -> str:
    decision = (action or "").strip() or "note"
    lines = [
        "## Reviewer Update",
        "",
        f"- Issue: `{sanitize_comment_line(issue_id)}`",
        f"- Decision: {sanitize_comment_line(decision)}",
    ]
    if decision == "reject" and reject_reason.strip():
        lines.append(f"- Reject reason: {sanitize_comment_line(reject_reason)}")
    if note.strip():
        lines.append(f"- Note: {sanitize_comment_line(note)}")
    if ran_agent:
        lines.append("- Reviewer command: executed")
    lines += ["", "_Posted automatically by `yoke review`._"]
    return "\n".join(lines)


def _is_executable(path: Path) -> bool:
    return path.is_file() and os.access(path, os.X_OK)


class Workflow:
    """Issue transitions performed by ``yoke submit`` and ``yoke review``.

    ``runner`` executes commands that need the operator's terminal (checks,
    the reviewer command, ``bd show``); tracker, git and gh calls go through
    their own collaborators.
    """

    def __init__(
        self,
        tracker: Tracker,
        git: Git,
        prs: PullRequests,
        cfg: YokeConfig,
        root: Path,
        *,
        runner: Runner = run_passthrough,
        notes: Notes | None = None,
    ) -> None:
        self.tracker = tracker
        self.git = git
        self.prs = prs
        self.cfg = cfg
        self.root = root
        self.runner = runner
        self.notes = notes or Notes()

    def current_branch_issue(self) -> str:
        return extract_issue_id(self.git.current_branch(), self.cfg.bd_prefix)

    def issue_title(self, issue_id: str) -> str:
        try:
            title = self.tracker.show_issue(issue_id).title
        except (CommandError, YokeError):
            return issue_id
        return title or issue_id

    def run_checks(self, check_cmd: str) -> None:
        command = check_cmd.strip() or DEFAULT_CHECK_CMD
        if command == "skip":
            self.notes.note("Skipping checks (YOKE_CHECK_CMD=skip).")
            return
        resolved = Path(command)
        if not resolved.is_absolute():
            resolved = self.root / resolved
        if _is_executable(resolved):
            self.notes.note(f"Running checks via {resolved}")
            self.runner([str(resolved)], cwd=self.root)
            return
        self.notes.note(f"Running checks: {command}")
        self.runner(["bash", "-lc", command], cwd=self.root)

    # -- pull requests -------------------------------------------------------

    def create_pr_if_needed(self, issue_id: str, title: str) -> None:
        if not self.prs.available():
            self.notes.note("gh or origin remote not available; skipping PR creation.")
            return
        branch = self.git.current_branch()
        if not branch:
            raise WorkflowError("could not determine current branch")
        existing = self.prs.open_for_branch(branch)
        if existing is not None:
            self.notes.note(f"PR #{existing.number} already exists for {branch}.")
            return
        template = Path(self.cfg.pr_template)
        if not template.is_absolute():
            template = self.root / template
        self.prs.create_draft(
            base=self.cfg.base_branch,
            title=f"[{issue_id}] {title}",
            body_file=template,
        )

    def _post_pr_comment(self, issue_id: str, body: str, what: str) -> None:
        pr = self.prs.open_for_branch(branch_for_issue(issue_id))
        if pr is None:
            self.notes.warn(f"no open PR found for issue branch; skipping {what} PR comment")
            return
        try:
            self.prs.comment(pr.number, body)
        except CommandError as exc:
            self.notes.warn(f"failed to post {what} PR comment: {exc}")
            return
        self.notes.note(f"Posted {what} comment to PR #{pr.number}")

    def ensure_pr_ready(self, issue_id: str) -> None:
        pr = self.prs.open_for_branch(branch_for_issue(issue_id))
        if pr is None:
            self.notes.warn("no open PR found for issue branch; skipping ready-for-review transition")
            return
        if not pr.is_draft:
            return
        try:
            self.prs.mark_ready(pr.number)
        except CommandError as exc:
            raise WorkflowError(f"failed to mark PR #{pr.number} ready after approval: {exc}") from exc
        self.notes.note(f"Marked PR #{pr.number} ready for review")

    # -- transitions ---------------------------------------------------------

    def submit(
        self,
        issue_id: str | None,
        handoff: Handoff,
        *,
        checks: str | None = None,
        push: bool = True,
        create_pr: bool = True,
        pr_comment: bool = True,
    ) -> str:
        """Hand an in-progress issue to review; returns the issue id."""
        if not handoff.done.strip():
            raise ValueError("--done is required")
        if not handoff.remaining.strip():
            raise ValueError("--remaining is required")
        issue = (issue_id or "").strip() or self.current_branch_issue()
        if not issue:
            raise WorkflowError(
                f"could not infer issue id from branch; pass {self.cfg.bd_prefix}-xxxx explicitly"
            )

        check_command = (checks or "").strip() or self.cfg.check_cmd
        self.run_checks(check_command)

        self.tracker.add_comment(issue, format_issue_handoff_comment(handoff, check_command))
        self.tracker.update_status(issue, BLOCKED, add_labels=[REVIEW_QUEUE_LABEL])

        if push:
            if self.git.has_origin_remote():
                self.git.push_head()
            else:
                self.notes.note("No origin remote; skipping push.")
        if create_pr:
            self.create_pr_if_needed(issue, self.issue_title(issue))
        if pr_comment:
            self._post_pr_comment(
                issue, format_writer_pr_comment(issue, handoff, check_command), "writer handoff"
            )

        self.notes.success(f"Submitted {issue} for review.")
        self.notes.note(f"Reviewer: yoke review {issue}")
        return issue

    def run_reviewer_command(self, issue_id: str) -> None:
        if not self.cfg.review_cmd.strip():
            raise ConfigValidationError("YOKE_REVIEW_CMD is empty in .yoke/config.sh")
        self.notes.note(f"Running reviewer agent for {issue_id}")
        env = child_env(
            {
                "ISSUE_ID": issue_id,
                "ROOT_DIR": str(self.root),
                "BD_PREFIX": self.cfg.bd_prefix,
                "YOKE_ROLE": "reviewer",
            }
        )
        self.runner(["bash", "-lc", self.cfg.review_cmd], cwd=self.root, env=env)

    def review(
        self,
        issue_id: str | None = None,
        *,
        action: ReviewAction | None = None,
        reject_reason: str = "",
        note: str = "",
        run_agent: bool = False,
        pr_comment: bool = True,
    ) -> str:
        issue = (issue_id or "").strip() or self.tracker.first_reviewable_issue_id()
        if not issue:
            raise WorkflowError("no reviewable issue found")

        if run_agent:
            self.run_reviewer_command(issue)
        if note.strip():
            self.tracker.add_comment(issue, note)

        if action == "approve":
            self.tracker.close_issue(issue, APPROVE_CLOSE_REASON)
            status = self.tracker.issue_status(issue)
            if status != CLOSED:
                raise WorkflowError(f"bd close did not close {issue} (current status: {status})")
            self.ensure_pr_ready(issue)
            self.notes.success(f"Approved {issue}")
        elif action == "reject":
            if reject_reason.strip():
                self.tracker.add_comment(issue, f"Reviewer rejection: {reject_reason}")
            self.tracker.update_status(issue, IN_PROGRESS, remove_labels=[REVIEW_QUEUE_LABEL])
            status = self.tracker.issue_status(issue)
            if status != IN_PROGRESS:
                raise WorkflowError(
                    f"bd update did not return {issue} to in_progress (current status: {status})"
                )
            self.notes.success(f"Rejected {issue}")
        else:
            self.runner(["bd", "show", issue], cwd=self.root)
            self.notes.note("Next:")
            self.notes.note(f"  yoke review {issue} --approve")
            self.notes.note(f'  yoke review {issue} --reject "reason"')

        if pr_comment and (action or note.strip()):
            self._post_pr_comment(
                issue,
                format_reviewer_pr_comment(issue, action, reject_reason, note, run_agent),
                "reviewer",
            )
        return issue
