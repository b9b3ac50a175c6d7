"""Tests for the epic improvement cycle."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path

import pytest

from yoke.backend import AgentRunError
from yoke.config import YokeConfig
from yoke.improvement import (
    CLARIFIED_CLOSE_REASON,
    IMPROVEMENT_COMPLETE_LABEL,
    IMPROVEMENT_RUNNING_LABEL,
    ClarificationContext,
    EpicImprover,
    ImprovementError,
    build_clarification_block,
    build_pass_prompt,
    clarification_ready_for_auto_close,
    render_report,
    role_for_pass,
    sanitize_path_segment,
    validate_pass_limit,
)
from yoke.issue import Comment, Issue
from yoke.ui import Notes


def _issue(issue_id: str, title: str = "", status: str = "open", comments: int = 0, **kw) -> Issue:
    return Issue(
        id=issue_id,
        title=title or f"Title {issue_id}",
        issue_type=kw.get("issue_type", "task"),
        raw_status=status,
        labels=frozenset(kw.get("labels", ())),
        comment_count=comments,
    )


EPIC = _issue("bd-e", "Search epic", issue_type="epic")


@dataclass
class FakeTracker:
    descendants: list[Issue] = field(default_factory=list)
    comments: dict[str, list[Comment]] = field(default_factory=dict)
    closed: list[tuple[str, str]] = field(default_factory=list)
    label_updates: list[tuple[tuple[str, ...], tuple[str, ...]]] = field(default_factory=list)
    posted: list[tuple[str, str]] = field(default_factory=list)

    def collect_descendants(self, root_id: str) -> list[Issue]:
        return list(self.descendants)

    def list_comments(self, issue_id: str) -> list[Comment]:
        return self.comments.get(issue_id, [])

    def close_issue(self, issue_id: str, reason: str) -> None:
        self.closed.append((issue_id, reason))

    def update_status(self, issue_id, status=None, *, add_labels=(), remove_labels=()) -> None:
        self.label_updates.append((tuple(add_labels), tuple(remove_labels)))

    def add_comment(self, issue_id: str, text: str) -> None:
        self.posted.append((issue_id, text))


@dataclass
class FakeAgent:
    fail_on_pass: int = 0
    calls: list[dict] = field(default_factory=list)

    def __call__(self, agent_id, root, prompt, *, extra_env=None, stream_prefix=""):
        self.calls.append(
            {"agent": agent_id, "prompt": prompt, "env": extra_env or {}, "prefix": stream_prefix}
        )
        pass_number = int((extra_env or {}).get("YOKE_EPIC_IMPROVEMENT_PASS", "0"))
        if pass_number and pass_number == self.fail_on_pass:
            raise AgentRunError(agent_id, 2, "half a report")
        if pass_number:
            return f"report for pass {pass_number}"
        return "final summary"


def _improver(
    tracker: FakeTracker, agent: FakeAgent, tmp_path: Path, notes: Notes
) -> EpicImprover:
    cfg = YokeConfig(
        path=tmp_path / ".yoke" / "config.sh", writer_agent="codex", reviewer_agent="claude"
    )
    return EpicImprover(
        tracker,  # type: ignore[arg-type]
        cfg,
        tmp_path,
        agent_runner=agent,
        notes=notes,
        clock=lambda: "2024-01-01T00:00:00Z",
    )


def test_role_for_pass_alternates() -> None:
    assert [role_for_pass(n) for n in range(1, 6)] == [
        "writer", "reviewer", "writer", "reviewer", "writer",
    ]


def test_sanitize_path_segment() -> None:
    assert sanitize_path_segment(" bd-1/a b:c\\d ") == "bd-1_a_b_c_d"
    assert sanitize_path_segment("  ") == "unknown"


def test_validate_pass_limit() -> None:
    assert validate_pass_limit(0) == 0
    assert validate_pass_limit(5) == 5
    for bad in (-1, 6):
        with pytest.raises(ValueError):
            validate_pass_limit(bad)


def test_clarification_ready_for_auto_close() -> None:
    assert clarification_ready_for_auto_close(_issue("bd-1", "Clarification needed: which db?", comments=1))
    assert not clarification_ready_for_auto_close(_issue("bd-1", "Clarification needed: x"))
    assert not clarification_ready_for_auto_close(
        _issue("bd-1", "Clarification needed: x", status="closed", comments=2)
    )
    assert not clarification_ready_for_auto_close(_issue("bd-1", "Implement db", comments=3))


def test_clarification_block_defaults() -> None:
    block = build_clarification_block(
        [
            ClarificationContext(
                "bd-c",
                "Clarification needed: db",
                [Comment(1, "bd-c", "", "use sqlite", "")],
            )
        ]
    )
    assert block == "- bd-c: Clarification needed: db\n  - [unknown @ unknown-time] use sqlite"


def test_pass_prompt_without_clarifications() -> None:
    prompt = build_pass_prompt("Improve $EPIC_ID now", "bd-e", 2, 5, "reviewer", [])
    assert "You are the reviewer agent for epic bd-e." in prompt
    assert "pass 2 of 5" in prompt
    assert "No clarification-task comments were found." in prompt
    assert prompt.endswith("Improve bd-e now")


def test_render_report_marks_errors() -> None:
    ok = render_report("H", "bd-e", "codex", "out", None, role="writer", timestamp="t")
    assert "- Role: `writer`" in ok
    assert "- Exit: success" in ok
    failed = render_report("H", "bd-e", "codex", "out", RuntimeError("boom"), timestamp="t")
    assert "- Exit: error (`boom`)" in failed
    assert "Role" not in failed


def test_zero_passes_skips_everything(tmp_path: Path, notes: Notes) -> None:
    tracker, agent = FakeTracker(), FakeAgent()
    assert _improver(tracker, agent, tmp_path, notes).run(EPIC, 0) is None
    assert agent.calls == []
    assert tracker.label_updates == []


def test_completed_label_without_clarifications_skips(tmp_path: Path, notes: Notes) -> None:
    tracker, agent = FakeTracker(), FakeAgent()
    epic = _issue("bd-e", issue_type="epic", labels=[IMPROVEMENT_COMPLETE_LABEL])
    assert _improver(tracker, agent, tmp_path, notes).run(epic, 3) is None
    assert agent.calls == []


def test_two_pass_cycle_writes_reports_and_posts_summary(tmp_path: Path, notes: Notes) -> None:
    clarification = _issue("bd-c", "Clarification needed: auth?", comments=1)
    tracker = FakeTracker(
        descendants=[clarification, _issue("bd-t")],
        comments={"bd-c": [Comment(1, "bd-c", "sam", "use oauth", "2024-01-01")]},
    )
    agent = FakeAgent()

    reports_dir = _improver(tracker, agent, tmp_path, notes).run(EPIC, 2)

    assert reports_dir == tmp_path / ".yoke" / "epic-improvement-reports" / "bd-e"
    assert sorted(p.name for p in reports_dir.iterdir()) == [
        "pass-01-writer.md", "pass-02-reviewer.md", "summary.md",
    ]
    assert [c["agent"] for c in agent.calls] == ["codex", "claude", "claude"]
    assert agent.calls[0]["prefix"] == "[claim][pass 1/2 writer] "
    assert agent.calls[0]["env"]["YOKE_ROLE"] == "writer"
    assert agent.calls[0]["env"]["ISSUE_ID"] == "bd-e"
    assert "[sam @ 2024-01-01] use oauth" in agent.calls[0]["prompt"]
    assert agent.calls[2]["env"]["YOKE_EPIC_IMPROVEMENT_SUMMARY"] == "1"
    assert "report for pass 2" in agent.calls[2]["prompt"]

    [(epic_id, comment)] = tracker.posted
    assert epic_id == "bd-e"
    assert comment.startswith("## Epic Improvement Cycle Complete")
    assert "final summary" in comment
    assert tracker.label_updates == [
        ((IMPROVEMENT_RUNNING_LABEL,), ()),
        ((IMPROVEMENT_COMPLETE_LABEL,), (IMPROVEMENT_RUNNING_LABEL,)),
    ]
    summary = (reports_dir / "summary.md").read_text()
    assert "# Epic Improvement Summary" in summary
    assert "2024-01-01T00:00:00Z" in summary


def test_completed_label_reruns_when_clarified(tmp_path: Path, notes: Notes) -> None:
    tracker = FakeTracker(
        descendants=[_issue("bd-c", "Clarification needed: x", comments=1)],
        comments={"bd-c": [Comment(1, "bd-c", "sam", "answer", "t")]},
    )
    agent = FakeAgent()
    epic = _issue("bd-e", issue_type="epic", labels=[IMPROVEMENT_COMPLETE_LABEL])
    assert _improver(tracker, agent, tmp_path, notes).run(epic, 1) is not None
    assert len(agent.calls) == 2


def test_failed_pass_keeps_report_and_raises(tmp_path: Path, notes: Notes) -> None:
    tracker, agent = FakeTracker(), FakeAgent(fail_on_pass=2)
    improver = _improver(tracker, agent, tmp_path, notes)

    with pytest.raises(ImprovementError, match=r"pass 2 \(reviewer\) failed"):
        improver.run(EPIC, 3)

    report = (improver.reports_dir("bd-e") / "pass-02-reviewer.md").read_text()
    assert "- Exit: error" in report
    assert "half a report" in report
    assert len(agent.calls) == 2
    assert tracker.posted == []


def test_close_clarified_tasks(tmp_path: Path, notes: Notes) -> None:
    tracker = FakeTracker(
        descendants=[
            _issue("bd-c1", "Clarification needed: a", comments=1),
            _issue("bd-c2", "Clarification needed: b"),
            _issue("bd-t", comments=4),
        ]
    )
    assert _improver(tracker, FakeAgent(), tmp_path, notes).close_clarified_tasks("bd-e") == 1
    assert tracker.closed == [("bd-c1", CLARIFIED_CLOSE_REASON)]
