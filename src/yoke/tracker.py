from __future__ import annotations

from collections.abc import Callable, Iterable
from dataclasses import dataclass
from pathlib import Path

from .issue import (
    Comment,
    DependencyEdge,
    Issue,
    first_matching_issue_id,
    parse_comments,
    parse_created_issue_id,
    parse_dependency_edges,
    parse_issue_list,
    parse_issue_show,
)
from .status import BLOCKED, CLOSED, IN_REVIEW, OPEN, REVIEW_QUEUE_LABEL
from .util import Runner, YokeError, run_capture


TRACKER_BINARY = "bd"
SCAN_LIMIT = 20


def has_open_blocking_edges(
    edges: Iterable[DependencyEdge],
    status_of: Callable[[str], str],
    issue_id: str = "",
) -> bool:
    """True when any ``blocks`` edge points at an issue that is not closed.

    With ``issue_id`` set, edges owned by another issue are ignored.
    ``status_of`` is only consulted for the remaining blocking edges.
    """
    for edge in edges:
        if not edge.is_blocking:
            continue
        if issue_id and edge.issue_id and edge.issue_id != issue_id:
            continue
        if status_of(edge.depends_on_id) != CLOSED:
            return True
    return False


@dataclass
class Tracker:
    """Thin client over the ``bd`` command line.

    Reads return parsed records; writes return nothing. Command failures
    propagate as CommandError.
    """

    prefix: str
    cwd: Path | None = None
    runner: Runner = run_capture
    binary: str = TRACKER_BINARY

    def _run(self, *args: str) -> str:
        return self.runner([self.binary, *args], cwd=self.cwd)

    # -- reads ---------------------------------------------------------------

    def list_issues(
        self,
        status: str,
        *,
        ready_only: bool = False,
        label: str | None = None,
        limit: int = 0,
    ) -> list[Issue]:
        args = ["list", "--status", status]
        if label:
            args += ["--label", label]
        args += ["--json", "--limit", str(limit)]
        if ready_only:
            args.append("--ready")
        return parse_issue_list(self._run(*args))

    def list_children(self, parent_id: str) -> list[Issue]:
        return parse_issue_list(self._run("children", parent_id, "--json"))

    def list_dependencies(self, issue_id: str) -> list[DependencyEdge]:
        return parse_dependency_edges(
            self._run("dep", "list", issue_id, "--json"),
            issue_id=issue_id,
        )

    def list_comments(self, issue_id: str) -> list[Comment]:
        return parse_comments(self._run("comments", issue_id, "--json"))

    def show_issue(self, issue_id: str) -> Issue:
        return parse_issue_show(self._run("show", issue_id, "--json"))

    def issue_status(self, issue_id: str) -> str:
        status = self.show_issue(issue_id).status
        if not status:
            raise YokeError(f"issue payload for {issue_id} is missing status")
        return status

    def has_open_blocking_dependencies(self, issue_id: str) -> bool:
        return has_open_blocking_edges(
            self.list_dependencies(issue_id),
            self.issue_status,
            issue_id,
        )

    def collect_descendants(self, root_id: str) -> list[Issue]:
        """Depth-first walk of ``children`` below ``root_id``."""
        visited: set[str] = set()
        descendants: list[Issue] = []
        stack: list[list[Issue]] = [list(reversed(self.list_children(root_id)))]
        while stack:
            pending = stack[-1]
            if not pending:
                stack.pop()
                continue
            child = pending.pop()
            if not child.id or child.id in visited:
                continue
            visited.add(child.id)
            descendants.append(child)
            stack.append(list(reversed(self.list_children(child.id))))
        return descendants

    def first_issue_by_status(self, status: str) -> str:
        if status.strip().lower() == IN_REVIEW:
            return self.first_reviewable_issue_id()
        issues = self.list_issues(status, limit=SCAN_LIMIT)
        return first_matching_issue_id(issues, self.prefix, status)

    def next_issue_id(self) -> str:
        issues = self.list_issues(OPEN, ready_only=True, limit=SCAN_LIMIT)
        return first_matching_issue_id(issues, self.prefix, OPEN)

    def first_reviewable_issue_id(self) -> str:
        issues = self.list_issues(BLOCKED, label=REVIEW_QUEUE_LABEL, limit=SCAN_LIMIT)
        return first_matching_issue_id(issues, self.prefix, IN_REVIEW)

    # -- writes --------------------------------------------------------------

    def create_issue(
        self,
        issue_type: str,
        title: str,
        description: str,
        priority: str,
        *,
        parent_id: str = "",
        acceptance_criteria: list[str] | None = None,
    ) -> str:
        args = [
            "create",
            "--type", issue_type,
            "--title", title,
            "--description", description,
            "--priority", priority,
        ]
        if parent_id:
            args += ["--parent", parent_id]
        if acceptance_criteria:
            args += ["--acceptance", "\n".join(acceptance_criteria)]
        args.append("--json")
        output = self._run(*args)
        try:
            return parse_created_issue_id(output)
        except ValueError as exc:
            raise YokeError(f"parse created issue id: {exc}") from exc

    def create_dependency(self, blocked_id: str, blocker_id: str) -> None:
        self._run("dep", "add", blocked_id, blocker_id)

    def update_status(
        self,
        issue_id: str,
        status: str | None = None,
        *,
        add_labels: Iterable[str] = (),
        remove_labels: Iterable[str] = (),
    ) -> None:
        args = ["update", issue_id]
        if status:
            args += ["--status", status]
        for label in add_labels:
            args += ["--add-label", label]
        for label in remove_labels:
            args += ["--remove-label", label]
        self._run(*args)

    def close_issue(self, issue_id: str, reason: str) -> None:
        self._run("close", issue_id, "--reason", reason)

    def add_comment(self, issue_id: str, text: str) -> None:
        self._run("comments", "add", issue_id, text)
