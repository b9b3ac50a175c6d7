"""Epic improvement cycle run before a child task of an epic is claimed.

Writer and reviewer agents alternate over the epic for a fixed number of
passes, each pass leaving a markdown report under
``.yoke/epic-improvement-reports/<epic>/``. The reviewer agent then
summarizes the passes and the summary is posted to the epic.
Clarification tasks that users answered in comments feed every pass and
are closed once the cycle has consumed them.
"""

from __future__ import annotations

from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from pathlib import Path

from .backend import AgentRunError, AgentRunner, run_agent_prompt
from .config import YokeConfig
from .issue import Comment, Issue
from .prompt import EPIC_IMPROVEMENT, load_template, truncate_for_prompt
from .status import CLOSED, has_label
from .tracker import Tracker
from .ui import Notes
from .util import CommandError, YokeError, sanitize_comment_line, utc_now_iso


EPIC_PASS_COUNT = 5
MIN_EPIC_PASS_COUNT = 0

IMPROVEMENT_COMPLETE_LABEL = "yoke:epic-improvement-complete"
IMPROVEMENT_RUNNING_LABEL = "yoke:epic-improvement-running"

MAX_SUMMARY_COMMENT_CHARS = 12000
MAX_SUMMARY_INPUT_CHARS_PER_PASS = 12000
MAX_CLARIFICATION_COMMENT_CHARS = 2000

CLARIFICATION_TITLE_PREFIX = "clarification needed:"
CLARIFIED_CLOSE_REASON = "clarified-by-comment"

REPORTS_DIR = Path(".yoke") / "epic-improvement-reports"


class ImprovementError(YokeError):
    pass


@dataclass(frozen=True)
class ClarificationContext:
    issue_id: str
    title: str
    comments: list[Comment] = field(default_factory=list)


@dataclass(frozen=True)
class PassReport:
    pass_number: int
    role: str
    agent_id: str
    output: str


def role_for_pass(pass_number: int) -> str:
    return "writer" if pass_number % 2 == 1 else "reviewer"


def sanitize_path_segment(value: str) -> str:
    trimmed = value.strip()
    if not trimmed:
        return "unknown"
    for ch in ("/", "\\", " ", ":"):
        trimmed = trimmed.replace(ch, "_")
    return trimmed


def validate_pass_limit(pass_limit: int) -> int:
    if pass_limit < MIN_EPIC_PASS_COUNT or pass_limit > EPIC_PASS_COUNT:
        raise ValueError(
            f"improvement pass limit must be between {MIN_EPIC_PASS_COUNT} and {EPIC_PASS_COUNT}"
        )
    return pass_limit


def is_clarification_title(title: str) -> bool:
    return title.strip().lower().startswith(CLARIFICATION_TITLE_PREFIX)


def clarification_ready_for_auto_close(issue: Issue) -> bool:
    if not is_clarification_title(issue.title):
        return False
    if issue.comment_count <= 0:
        return False
    return issue.status != CLOSED


# -- prompt and report rendering ----------------------------------------------


def build_clarification_block(clarifications: Sequence[ClarificationContext]) -> str:
    lines: list[str] = []
    for item in clarifications:
        lines.append(f"- {item.issue_id}: {item.title.strip()}")
        for comment in item.comments:
            author = comment.author.strip() or "unknown"
            timestamp = comment.created_at.strip() or "unknown-time"
            text = truncate_for_prompt(comment.text, MAX_CLARIFICATION_COMMENT_CHARS)
            lines.append(f"  - [{author} @ {timestamp}] {text}")
    return "\n".join(lines).strip()


def build_pass_prompt(
    protocol: str,
    epic_id: str,
    pass_number: int,
    total: int,
    role: str,
    clarifications: Sequence[ClarificationContext],
) -> str:
    block = build_clarification_block(clarifications) or "No clarification-task comments were found."
    body = protocol.replace("$EPIC_ID", epic_id)
    return (
        f"You are the {role} agent for epic {epic_id}.\n"
        f"This is epic improvement pass {pass_number} of {total}.\n"
        'Clarification context (resolved by user comments on "Clarification needed" tasks):\n'
        f"\n{block}\n\n"
        "Apply the following improvement protocol exactly and emit the report "
        "in the specified report format:\n"
        f"\n{body}"
    ).strip()


def build_summary_prompt(epic: Issue, reports: Sequence[PassReport]) -> str:
    parts = [
        f"Epic: {epic.id}\n",
        f"Title: {epic.title.strip()}\n\n",
        f"Summarize the {len(reports)} pass report(s) below into one concise final report.\n",
        "Use sections:\n",
        "1) Improvements made\n",
        "2) Remaining risks/questions\n",
        "3) Most critical dependency chains\n",
        "4) Recommended next implementation steps\n\n",
    ]
    for report in reports:
        parts.append(f"## Pass {report.pass_number} ({report.role} via {report.agent_id})\n")
        parts.append(truncate_for_prompt(report.output, MAX_SUMMARY_INPUT_CHARS_PER_PASS))
        parts.append("\n\n")
    return "".join(parts)


def render_report(
    heading: str,
    epic_id: str,
    agent_id: str,
    output: str,
    error: BaseException | None,
    *,
    role: str | None = None,
    timestamp: str | None = None,
) -> str:
    lines = [f"# {heading}", "", f"- Epic: `{epic_id}`"]
    if role is not None:
        lines.append(f"- Role: `{role}`")
    lines.append(f"- Agent: `{agent_id}`")
    lines.append(f"- Timestamp: `{timestamp or utc_now_iso()}`")
    lines.append(f"- Exit: error (`{error}`)" if error is not None else "- Exit: success")
    lines += ["", "## Output", "", output]
    return "\n".join(lines) + "\n"


def format_summary_comment(epic: Issue, summary: str, pass_count: int, reports_dir: Path) -> str:
    return "\n".join(
        [
            "## Epic Improvement Cycle Complete",
            "",
            f"- Epic: `{sanitize_comment_line(epic.id)}`",
            f"- Passes: {pass_count}",
            "- Process: writer/reviewer alternating",
            "",
            "### Agent Summary",
            truncate_for_prompt(summary, MAX_SUMMARY_COMMENT_CHARS),
            "",
            f"_Local reports saved at: `{sanitize_comment_line(str(reports_dir))}`_",
        ]
    )


# -- the cycle ----------------------------------------------------------------


class EpicImprover:
    def __init__(
        self,
        tracker: Tracker,
        cfg: YokeConfig,
        root: Path,
        *,
        agent_runner: AgentRunner = run_agent_prompt,
        notes: Notes | None = None,
        clock: Callable[[], str] = utc_now_iso,
    ) -> None:
        self.tracker = tracker
        self.cfg = cfg
        self.root = root
        self.agent_runner = agent_runner
        self.notes = notes or Notes(prefix="[claim] ")
        self.clock = clock

    def reports_dir(self, epic_id: str) -> Path:
        return self.root / REPORTS_DIR / sanitize_path_segment(epic_id)

    def collect_clarification_context(self, epic_id: str) -> list[ClarificationContext]:
        context: list[ClarificationContext] = []
        for issue in self.tracker.collect_descendants(epic_id):
            if not clarification_ready_for_auto_close(issue):
                continue
            try:
                comments = self.tracker.list_comments(issue.id)
            except (CommandError, YokeError) as exc:
                raise ImprovementError(f"load comments for {issue.id}: {exc}") from exc
            if comments:
                context.append(ClarificationContext(issue.id, issue.title, comments))
        return context

    def close_clarified_tasks(self, epic_id: str) -> int:
        closed = 0
        for issue in self.tracker.collect_descendants(epic_id):
            if not clarification_ready_for_auto_close(issue):
                continue
            self.notes.note(f"Auto-closing clarification task with comments: {issue.id}")
            self.tracker.close_issue(issue.id, CLARIFIED_CLOSE_REASON)
            closed += 1
        return closed

    def _agent_env(self, epic_id: str, role: str, extra: dict[str, str]) -> dict[str, str]:
        return {
            "ISSUE_ID": epic_id,
            "ROOT_DIR": str(self.root),
            "BD_PREFIX": self.cfg.bd_prefix,
            "YOKE_ROLE": role,
            **extra,
        }

    def _run_agent(
        self,
        agent_id: str,
        prompt: str,
        env: dict[str, str],
        prefix: str,
    ) -> tuple[str, YokeError | OSError | None]:
        try:
            return self.agent_runner(agent_id, self.root, prompt, extra_env=env, stream_prefix=prefix), None
        except AgentRunError as exc:
            return exc.output, exc
        except (YokeError, OSError) as exc:
            return "", exc

    def run(self, epic: Issue, pass_limit: int = EPIC_PASS_COUNT) -> Path | None:
        """Run the cycle for ``epic``; returns the reports directory, or None when skipped."""
        validate_pass_limit(pass_limit)
        if pass_limit == 0:
            self.notes.note("Epic improvement cycle disabled (0 passes); skipping.")
            return None

        template = load_template(EPIC_IMPROVEMENT, self.root)
        if not template.body.strip():
            raise ImprovementError("epic improvement prompt template is empty")

        self.notes.note("Checking for clarification tasks with comments before starting passes.")
        clarifications = self.collect_clarification_context(epic.id)
        if has_label(epic.labels, IMPROVEMENT_COMPLETE_LABEL):
            if not clarifications:
                self.notes.note("Epic improvement cycle already complete (label present); skipping rerun.")
                return None
            self.notes.note(
                "Epic improvement already marked complete, but found "
                f"{len(clarifications)} clarification task(s) with comments; re-running improvement cycle."
            )
        if clarifications:
            self.notes.note(
                f"Found {len(clarifications)} clarification task(s) with comments; "
                "injecting context into prompts."
            )
        else:
            self.notes.note("No clarification tasks with comments found.")

        reports_dir = self.reports_dir(epic.id)
        self.notes.note(f"Starting epic improvement cycle for {epic.id} ({pass_limit} pass(es)).")
        reports_dir.mkdir(parents=True, exist_ok=True)
        self.tracker.update_status(epic.id, add_labels=[IMPROVEMENT_RUNNING_LABEL])

        reports: list[PassReport] = []
        for pass_number in range(1, pass_limit + 1):
            role = role_for_pass(pass_number)
            agent_id = template.agent or self.cfg.agent_for_role(role)
            self.notes.note(
                f"Improvement pass {pass_number}/{pass_limit} starting (role={role}, agent={agent_id})."
            )
            prompt = build_pass_prompt(
                template.body, epic.id, pass_number, pass_limit, role, clarifications
            )
            output, error = self._run_agent(
                agent_id,
                prompt,
                self._agent_env(epic.id, role, {"YOKE_EPIC_IMPROVEMENT_PASS": str(pass_number)}),
                f"[claim][pass {pass_number}/{pass_limit} {role}] ",
            )
            report_path = reports_dir / f"pass-{pass_number:02d}-{role}.md"
            report_path.write_text(
                render_report(
                    f"Epic Improvement Pass {pass_number}",
                    epic.id,
                    agent_id,
                    output,
                    error,
                    role=role,
                    timestamp=self.clock(),
                ),
                encoding="utf-8",
            )
            self.notes.note(f"Saved improvement pass report: {report_path}")
            if error is not None:
                raise ImprovementError(
                    f"epic improvement pass {pass_number} ({role}) failed: {error} "
                    f"(report: {report_path})"
                ) from error
            reports.append(PassReport(pass_number, role, agent_id, output))

        summary_agent = template.agent or self.cfg.agent_for_role("reviewer")
        self.notes.note(f"Generating final improvement summary with reviewer agent {summary_agent}.")
        summary, error = self._run_agent(
            summary_agent,
            build_summary_prompt(epic, reports),
            self._agent_env(epic.id, "reviewer", {"YOKE_EPIC_IMPROVEMENT_SUMMARY": "1"}),
            "[claim][summary] ",
        )
        summary_path = reports_dir / "summary.md"
        summary_path.write_text(
            render_report(
                "Epic Improvement Summary",
                epic.id,
                summary_agent,
                summary,
                error,
                timestamp=self.clock(),
            ),
            encoding="utf-8",
        )
        self.notes.note(f"Saved improvement summary report: {summary_path}")
        if error is not None:
            raise ImprovementError(
                f"epic improvement summary failed: {error} (report: {summary_path})"
            ) from error

        self.tracker.add_comment(epic.id, format_summary_comment(epic, summary, pass_limit, reports_dir))
        self.tracker.update_status(
            epic.id,
            add_labels=[IMPROVEMENT_COMPLETE_LABEL],
            remove_labels=[IMPROVEMENT_RUNNING_LABEL],
        )
        self.notes.success(f"Completed epic improvement cycle for {epic.id}; reports saved in {reports_dir}")
        return reports_dir
