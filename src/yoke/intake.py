"""Intake plans: an epic plus child tasks created in one batch.

A plan is parsed strictly, validated field by field, and its local
dependency refs are checked for unknown refs, duplicate relations and
cycles before a single tracker command is issued.
"""

from __future__ import annotations

import json
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .issue import BLOCKS, EPIC, TASK, DependencyEdge
from .prompt import INTAKE_PLAN, load_template, render
from .util import CommandError, YokeError


SPLIT_OVERSIZED_WORK_CONSTRAINT = (
    "Split oversized work into smaller tasks instead of targeting fixed task-count bounds."
)


class IntakeEpic(BaseModel):
    model_config = ConfigDict(extra="forbid")

    title: str = ""
    description: str = ""
    priority: str = ""


class IntakeTask(BaseModel):
    model_config = ConfigDict(extra="forbid")

    ref: str = ""
    title: str = ""
    description: str = ""
    acceptance_criteria: list[str] | None = None
    local_dependency_refs: list[str] = Field(default_factory=list)


class IntakePlan(BaseModel):
    model_config = ConfigDict(extra="forbid")

    epic: IntakeEpic = Field(default_factory=IntakeEpic)
    tasks: list[IntakeTask] | None = None


class IntakePlanParseError(YokeError, ValueError):
    pass


class IntakePlanValidationError(YokeError, ValueError):
    def __init__(self, path: str, reason: str) -> None:
        super().__init__(f"intake plan validation failed at {path}: {reason}")
        self.path = path
        self.reason = reason


class DependencyGraphError(YokeError, ValueError):
    pass


class UnknownDependencyRefError(DependencyGraphError):
    def __init__(self, ref: str, task_index: int, dep_index: int) -> None:
        super().__init__(
            f"unknown local dependency ref {ref!r} at "
            f"tasks[{task_index}].local_dependency_refs[{dep_index}]"
        )
        self.ref = ref
        self.task_index = task_index
        self.dep_index = dep_index


class DuplicateDependencyError(DependencyGraphError):
    def __init__(self, blocked_ref: str, blocker_ref: str) -> None:
        super().__init__(f"duplicate dependency relation {blocked_ref!r} depends on {blocker_ref!r}")
        self.blocked_ref = blocked_ref
        self.blocker_ref = blocker_ref


class DependencyCycleError(DependencyGraphError):
    def __init__(self, ref: str) -> None:
        super().__init__(f"cycle detected involving local task ref {ref!r}")
        self.ref = ref


class IntakeApplyError(YokeError):
    pass


# -- parsing and field validation ---------------------------------------------


def parse_intake_plan(raw: str) -> IntakePlan:
    """Parse one JSON plan document, rejecting unknown fields and trailing JSON."""
    decoder = json.JSONDecoder()
    text = raw.lstrip()
    try:
        payload, end = decoder.raw_decode(text)
    except json.JSONDecodeError as exc:
        raise IntakePlanParseError(f"parse generated intake plan: {exc}") from exc
    if text[end:].strip():
        raise IntakePlanParseError("parse generated intake plan: unexpected trailing JSON")
    try:
        plan = IntakePlan.model_validate(payload)
    except ValidationError as exc:
        raise IntakePlanParseError(f"parse generated intake plan: {exc}") from exc
    validate_intake_plan(plan)
    return plan


def load_intake_plan(path: Path) -> IntakePlan:
    return parse_intake_plan(path.read_text(encoding="utf-8"))


def _require_text(value: str, path: str) -> None:
    if not value.strip():
        raise IntakePlanValidationError(path, "must be non-empty")


def validate_intake_plan(plan: IntakePlan) -> None:
    """Raise IntakePlanValidationError for the first invalid field."""
    _require_text(plan.epic.title, "epic.title")
    _require_text(plan.epic.description, "epic.description")
    _require_text(plan.epic.priority, "epic.priority")
    if plan.tasks is None:
        raise IntakePlanValidationError("tasks", "is required")
    if not plan.tasks:
        raise IntakePlanValidationError("tasks", "must contain at least 1 task")

    seen_refs: set[str] = set()
    for i, task in enumerate(plan.tasks):
        task_path = f"tasks[{i}]"
        _require_text(task.ref, f"{task_path}.ref")
        ref = task.ref.strip()
        if ref in seen_refs:
            raise IntakePlanValidationError(f"{task_path}.ref", f"duplicate ref {ref!r}")
        seen_refs.add(ref)
        _require_text(task.title, f"{task_path}.title")
        _require_text(task.description, f"{task_path}.description")
        if task.acceptance_criteria is None:
            raise IntakePlanValidationError(f"{task_path}.acceptance_criteria", "is required")
        if not task.acceptance_criteria:
            raise IntakePlanValidationError(
                f"{task_path}.acceptance_criteria", "must contain at least 1 item"
            )
        for j, criterion in enumerate(task.acceptance_criteria):
            _require_text(criterion, f"{task_path}.acceptance_criteria[{j}]")
        for j, dep_ref in enumerate(task.local_dependency_refs):
            _require_text(dep_ref, f"{task_path}.local_dependency_refs[{j}]")


# -- dependency graph ---------------------------------------------------------

_UNVISITED = 0
_IN_PROGRESS = 1
_DONE = 2


def _detect_cycle(refs: Sequence[str], graph: dict[str, list[str]]) -> None:
    state = {ref: _UNVISITED for ref in refs}
    for root in refs:
        if state[root] != _UNVISITED:
            continue
        state[root] = _IN_PROGRESS
        stack = [(root, iter(graph[root]))]
        while stack:
            ref, blockers = stack[-1]
            for blocker in blockers:
                mark = state[blocker]
                if mark == _IN_PROGRESS:
                    raise DependencyCycleError(blocker)
                if mark == _UNVISITED:
                    state[blocker] = _IN_PROGRESS
                    stack.append((blocker, iter(graph[blocker])))
                    break
            else:
                state[ref] = _DONE
                stack.pop()


def validate_and_linearize(plan: IntakePlan) -> list[DependencyEdge]:
    """Check local dependency refs and return the edges in declaration order.

    Each returned edge reads ``issue_id`` (blocked ref) depends on
    ``depends_on_id`` (blocker ref). Nothing is returned unless the whole
    graph is valid.
    """
    tasks = plan.tasks or []
    refs = [task.ref.strip() for task in tasks]
    known = set(refs)

    edges: list[DependencyEdge] = []
    seen_pairs: set[tuple[str, str]] = set()
    for i, task in enumerate(tasks):
        blocked = task.ref.strip()
        for j, raw_ref in enumerate(task.local_dependency_refs):
            blocker = raw_ref.strip()
            if blocker not in known:
                raise UnknownDependencyRefError(blocker, i, j)
            if (blocked, blocker) in seen_pairs:
                raise DuplicateDependencyError(blocked, blocker)
            seen_pairs.add((blocked, blocker))
            edges.append(DependencyEdge(issue_id=blocked, depends_on_id=blocker, type=BLOCKS))

    graph: dict[str, list[str]] = {ref: [] for ref in refs}
    for edge in edges:
        graph[edge.issue_id].append(edge.depends_on_id)
    _detect_cycle(refs, graph)
    return edges


# -- apply --------------------------------------------------------------------


class IssueWriter(Protocol):
    def create_issue(
        self,
        issue_type: str,
        title: str,
        description: str,
        priority: str,
        *,
        parent_id: str = "",
        acceptance_criteria: list[str] | None = None,
    ) -> str: ...

    def create_dependency(self, blocked_id: str, blocker_id: str) -> None: ...


@dataclass(frozen=True)
class IntakeApplyResult:
    epic_id: str
    task_ids: list[str] = field(default_factory=list)


def apply_intake_plan(plan: IntakePlan, tracker: IssueWriter) -> IntakeApplyResult:
    """Create the epic, its tasks, then the ``blocks`` dependencies between them."""
    validate_intake_plan(plan)
    edges = validate_and_linearize(plan)
    tasks = plan.tasks or []

    epic_id = tracker.create_issue(
        EPIC,
        plan.epic.title,
        plan.epic.description,
        plan.epic.priority,
    )

    task_ids: list[str] = []
    ids_by_ref: dict[str, str] = {}
    for i, task in enumerate(tasks):
        try:
            task_id = tracker.create_issue(
                TASK,
                task.title,
                task.description,
                plan.epic.priority,
                parent_id=epic_id,
                acceptance_criteria=list(task.acceptance_criteria or []),
            )
        except (CommandError, YokeError, OSError) as exc:
            raise IntakeApplyError(f"create task at tasks[{i}]: {exc}") from exc
        task_ids.append(task_id)
        ids_by_ref[task.ref.strip()] = task_id

    for edge in edges:
        try:
            tracker.create_dependency(ids_by_ref[edge.issue_id], ids_by_ref[edge.depends_on_id])
        except (CommandError, YokeError, OSError) as exc:
            raise IntakeApplyError(
                f"create dependency {edge.issue_id} depends on {edge.depends_on_id}: {exc}"
            ) from exc

    return IntakeApplyResult(epic_id=epic_id, task_ids=task_ids)


def format_apply_summary(result: IntakeApplyResult) -> str:
    lines = [f"Created epic: {result.epic_id}", "Created child tasks:"]
    lines += [f"{i}. {task_id}" for i, task_id in enumerate(result.task_ids, start=1)]
    return "\n".join(lines)


# -- generation ---------------------------------------------------------------


def build_intake_plan_prompt(
    idea: str,
    constraints: Iterable[str] = (),
    *,
    repo_root: Path | None = None,
) -> str:
    idea_text = idea.strip()
    if not idea_text:
        raise ValueError("idea text must be non-empty")

    lines: list[str] = []
    for constraint in [*constraints, SPLIT_OVERSIZED_WORK_CONSTRAINT]:
        text = constraint.strip()
        if text and f"- {text}" not in lines:
            lines.append(f"- {text}")

    template = load_template(INTAKE_PLAN, repo_root)
    return render(
        template,
        {
            "{{IDEA_TEXT}}": idea_text,
            "{{GENERATION_CONSTRAINTS}}": "\n".join(lines),
        },
    ).strip()


def generate_intake_plan(
    idea: str,
    constraints: Iterable[str],
    generator: Callable[[str], str],
    *,
    repo_root: Path | None = None,
) -> IntakePlan:
    """Render the intake prompt, hand it to ``generator`` and parse its reply."""
    prompt = build_intake_plan_prompt(idea, constraints, repo_root=repo_root)
    return parse_intake_plan(generator(prompt))
