"""Tests for intake plan parsing, dependency validation and apply."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from pathlib import Path

import pytest

from conftest import Fail, ScriptedRunner
from yoke.intake import (
    SPLIT_OVERSIZED_WORK_CONSTRAINT,
    DependencyCycleError,
    DuplicateDependencyError,
    IntakeApplyError,
    IntakePlan,
    IntakePlanParseError,
    IntakePlanValidationError,
    UnknownDependencyRefError,
    apply_intake_plan,
    build_intake_plan_prompt,
    format_apply_summary,
    generate_intake_plan,
    load_intake_plan,
    parse_intake_plan,
    validate_and_linearize,
    validate_intake_plan,
)
from yoke.tracker import Tracker


def _task(ref: str, deps: list[str] | None = None, **overrides) -> dict:
    task = {
        "ref": ref,
        "title": f"Task {ref}",
        "description": f"Do {ref}",
        "acceptance_criteria": [f"{ref} works"],
        "local_dependency_refs": deps or [],
    }
    task.update(overrides)
    return task


def _plan_dict(*tasks: dict, **epic_overrides) -> dict:
    epic = {"title": "Epic", "description": "Big idea", "priority": "2"}
    epic.update(epic_overrides)
    return {"epic": epic, "tasks": list(tasks)}


def _plan(*tasks: dict) -> IntakePlan:
    return IntakePlan.model_validate(_plan_dict(*tasks))


@dataclass
class FakeWriter:
    created: list[dict] = field(default_factory=list)
    deps: list[tuple[str, str]] = field(default_factory=list)
    fail_on_title: str = ""

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
        if title == self.fail_on_title:
            raise OSError("bd create failed")
        issue_id = f"bd-{len(self.created) + 1}"
        self.created.append(
            {
                "id": issue_id,
                "type": issue_type,
                "title": title,
                "priority": priority,
                "parent": parent_id,
                "acceptance": acceptance_criteria,
            }
        )
        return issue_id

    def create_dependency(self, blocked_id: str, blocker_id: str) -> None:
        self.deps.append((blocked_id, blocker_id))

    @property
    def call_count(self) -> int:
        return len(self.created) + len(self.deps)


# -- parsing ------------------------------------------------------------------


def test_parse_valid_plan() -> None:
    plan = parse_intake_plan(json.dumps(_plan_dict(_task("a"), _task("b", ["a"]))))
    assert plan.epic.title == "Epic"
    assert [t.ref for t in plan.tasks or []] == ["a", "b"]


def test_parse_rejects_trailing_json() -> None:
    raw = json.dumps(_plan_dict(_task("a"))) + "\n{}"
    with pytest.raises(IntakePlanParseError, match="unexpected trailing JSON"):
        parse_intake_plan(raw)


def test_parse_allows_trailing_whitespace() -> None:
    assert parse_intake_plan(json.dumps(_plan_dict(_task("a"))) + "\n\n").tasks


def test_parse_rejects_unknown_fields() -> None:
    payload = _plan_dict(_task("a", extra="nope"))
    with pytest.raises(IntakePlanParseError, match="parse generated intake plan"):
        parse_intake_plan(json.dumps(payload))


def test_parse_rejects_invalid_json() -> None:
    with pytest.raises(IntakePlanParseError):
        parse_intake_plan("not json")


def test_load_intake_plan(tmp_path: Path) -> None:
    path = tmp_path / "plan.json"
    path.write_text(json.dumps(_plan_dict(_task("a"))))
    assert load_intake_plan(path).epic.priority == "2"


# -- field validation ---------------------------------------------------------


@pytest.mark.parametrize(
    ("payload", "path", "reason"),
    [
        (_plan_dict(_task("a"), title=" "), "epic.title", "must be non-empty"),
        (_plan_dict(_task("a"), description=""), "epic.description", "must be non-empty"),
        (_plan_dict(_task("a"), priority=""), "epic.priority", "must be non-empty"),
        ({"epic": {"title": "E", "description": "D", "priority": "1"}}, "tasks", "is required"),
        (_plan_dict(), "tasks", "must contain at least 1 task"),
        (_plan_dict(_task("")), "tasks[0].ref", "must be non-empty"),
        (_plan_dict(_task("a"), _task("a")), "tasks[1].ref", "duplicate ref 'a'"),
        (_plan_dict(_task("a", title="")), "tasks[0].title", "must be non-empty"),
        (_plan_dict(_task("a", description=" ")), "tasks[0].description", "must be non-empty"),
        (_plan_dict(_task("a", acceptance_criteria=None)), "tasks[0].acceptance_criteria", "is required"),
        (
            _plan_dict(_task("a", acceptance_criteria=[])),
            "tasks[0].acceptance_criteria",
            "must contain at least 1 item",
        ),
        (
            _plan_dict(_task("a", acceptance_criteria=["ok", " "])),
            "tasks[0].acceptance_criteria[1]",
            "must be non-empty",
        ),
        (
            _plan_dict(_task("a"), _task("b", [""])),
            "tasks[1].local_dependency_refs[0]",
            "must be non-empty",
        ),
    ],
)
def test_validation_reports_path(payload: dict, path: str, reason: str) -> None:
    plan = IntakePlan.model_validate(payload)
    with pytest.raises(IntakePlanValidationError) as raised:
        validate_intake_plan(plan)
    assert raised.value.path == path
    assert raised.value.reason == reason
    assert str(raised.value) == f"intake plan validation failed at {path}: {reason}"


# -- dependency graph ---------------------------------------------------------


def test_linearize_returns_edges_in_declaration_order() -> None:
    plan = _plan(_task("a"), _task("b", ["a"]), _task("c", ["a", "b"]))
    edges = validate_and_linearize(plan)
    assert [(e.issue_id, e.depends_on_id, e.type) for e in edges] == [
        ("b", "a", "blocks"),
        ("c", "a", "blocks"),
        ("c", "b", "blocks"),
    ]


def test_linearize_without_dependencies() -> None:
    assert validate_and_linearize(_plan(_task("a"), _task("b"))) == []


def test_unknown_dependency_ref() -> None:
    with pytest.raises(UnknownDependencyRefError) as raised:
        validate_and_linearize(_plan(_task("a"), _task("b", ["a", "zzz"])))
    assert str(raised.value) == (
        "unknown local dependency ref 'zzz' at tasks[1].local_dependency_refs[1]"
    )


def test_duplicate_dependency() -> None:
    with pytest.raises(DuplicateDependencyError, match="'b' depends on 'a'"):
        validate_and_linearize(_plan(_task("a"), _task("b", ["a", " a "])))


def test_cycle_detected() -> None:
    plan = _plan(_task("a", ["c"]), _task("b", ["a"]), _task("c", ["b"]))
    with pytest.raises(DependencyCycleError, match="cycle detected involving local task ref"):
        validate_and_linearize(plan)


def test_self_dependency_is_a_cycle() -> None:
    with pytest.raises(DependencyCycleError, match="'a'"):
        validate_and_linearize(_plan(_task("a", ["a"])))


def test_diamond_is_not_a_cycle() -> None:
    plan = _plan(_task("a"), _task("b", ["a"]), _task("c", ["a"]), _task("d", ["b", "c"]))
    assert len(validate_and_linearize(plan)) == 4


def test_deep_chain_does_not_recurse() -> None:
    tasks = [_task("t0")] + [_task(f"t{i}", [f"t{i - 1}"]) for i in range(1, 3000)]
    assert len(validate_and_linearize(_plan(*tasks))) == 2999


# -- apply --------------------------------------------------------------------


def test_apply_creates_epic_tasks_then_dependencies() -> None:
    writer = FakeWriter()
    result = apply_intake_plan(_plan(_task("a"), _task("b", ["a"])), writer)

    assert result.epic_id == "bd-1"
    assert result.task_ids == ["bd-2", "bd-3"]
    epic, first, second = writer.created
    assert epic["type"] == "epic" and epic["parent"] == ""
    assert first["type"] == "task" and first["parent"] == "bd-1"
    assert second["priority"] == "2"
    assert second["acceptance"] == ["b works"]
    assert writer.deps == [("bd-3", "bd-2")]


@pytest.mark.parametrize(
    "plan",
    [
        _plan(_task("a", ["missing"])),
        _plan(_task("a", ["b"]), _task("b", ["a"])),
        _plan(_task("a"), _task("a")),
        _plan(_task("a"), _task("b", ["a", "a"])),
    ],
)
def test_invalid_plan_issues_no_tracker_calls(plan: IntakePlan) -> None:
    writer = FakeWriter()
    with pytest.raises(ValueError):
        apply_intake_plan(plan, writer)
    assert writer.call_count == 0


def test_task_creation_failure_names_index() -> None:
    writer = FakeWriter(fail_on_title="Task b")
    with pytest.raises(IntakeApplyError, match=r"create task at tasks\[1\]"):
        apply_intake_plan(_plan(_task("a"), _task("b")), writer)


def test_apply_through_tracker_commands(runner: ScriptedRunner) -> None:
    runner.on(
        "bd", "create",
        reply=['{"id": "bd-e1"}', '{"id": "bd-t1"}', '{"id": "bd-t2"}'],
    )
    tracker = Tracker("bd", runner=runner)

    result = apply_intake_plan(_plan(_task("a"), _task("b", ["a"])), tracker)

    assert result.task_ids == ["bd-t1", "bd-t2"]
    assert runner.count("bd", "create") == 3
    assert runner.argvs("bd", "dep", "add") == [["bd", "dep", "add", "bd-t2", "bd-t1"]]
    task_argv = runner.argvs("bd", "create")[1]
    assert task_argv[task_argv.index("--parent") + 1] == "bd-e1"


def test_dependency_failure_is_wrapped(runner: ScriptedRunner) -> None:
    runner.on("bd", "create", reply=['{"id": "bd-e1"}', '{"id": "bd-t1"}', '{"id": "bd-t2"}'])
    runner.on("bd", "dep", "add", reply=Fail("no such issue"))
    with pytest.raises(IntakeApplyError, match="create dependency b depends on a"):
        apply_intake_plan(_plan(_task("a"), _task("b", ["a"])), Tracker("bd", runner=runner))


def test_format_apply_summary() -> None:
    writer = FakeWriter()
    result = apply_intake_plan(_plan(_task("a"), _task("b")), writer)
    assert format_apply_summary(result) == (
        "Created epic: bd-1\nCreated child tasks:\n1. bd-2\n2. bd-3"
    )


# -- generation ---------------------------------------------------------------


def test_build_prompt_renders_idea_and_constraints() -> None:
    prompt = build_intake_plan_prompt("  Add search  ", ["Keep it small", " ", "Keep it small"])
    assert "Add search" in prompt
    assert prompt.count("- Keep it small") == 1
    assert f"- {SPLIT_OVERSIZED_WORK_CONSTRAINT}" in prompt
    assert "{{IDEA_TEXT}}" not in prompt


def test_build_prompt_requires_idea() -> None:
    with pytest.raises(ValueError, match="idea text must be non-empty"):
        build_intake_plan_prompt("   ")


def test_build_prompt_uses_repo_override(tmp_path: Path) -> None:
    path = tmp_path / ".yoke" / "prompts" / "intake-plan.md"
    path.parent.mkdir(parents=True)
    path.write_text("IDEA={{IDEA_TEXT}}\n{{GENERATION_CONSTRAINTS}}\n")
    prompt = build_intake_plan_prompt("x", repo_root=tmp_path)
    assert prompt == f"IDEA=x\n- {SPLIT_OVERSIZED_WORK_CONSTRAINT}"


def test_generate_intake_plan_parses_generator_reply() -> None:
    prompts: list[str] = []

    def generator(prompt: str) -> str:
        prompts.append(prompt)
        return json.dumps(_plan_dict(_task("a")))

    plan = generate_intake_plan("Build it", [], generator)
    assert plan.tasks is not None and plan.tasks[0].ref == "a"
    assert "Build it" in prompts[0]


def test_generate_intake_plan_rejects_invalid_reply() -> None:
    with pytest.raises(IntakePlanValidationError, match="tasks"):
        generate_intake_plan("Build it", [], lambda prompt: json.dumps(_plan_dict()))
