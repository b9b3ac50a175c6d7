from __future__ import annotations

from pathlib import Path

import pytest

from conftest import Fail, ScriptedRunner
from yoke import vcs
from yoke.util import YokeError
from yoke.vcs import Git, PullRequests, parse_open_pr_list


def test_parse_open_pr_list() -> None:
    pr = parse_open_pr_list('[{"number": 12, "url": "https://x/pr/12", "isDraft": true}]')
    assert pr is not None
    assert (pr.number, pr.url, pr.is_draft) == (12, "https://x/pr/12", True)


@pytest.mark.parametrize("raw", ["", "null", "[]", "{bad", '[{"number": 0}]', '{"number": 3}'])
def test_parse_open_pr_list_none(raw: str) -> None:
    assert parse_open_pr_list(raw) is None


def test_switch_branch_existing(runner: ScriptedRunner) -> None:
    created = Git(runner=runner).switch_branch("yoke/bd-1")
    assert not created
    assert runner.argvs("git", "switch") == [["git", "switch", "yoke/bd-1"]]


def test_switch_branch_creates_missing(runner: ScriptedRunner) -> None:
    runner.on("git", "show-ref", reply=Fail())
    assert Git(runner=runner).switch_branch("yoke/bd-1")
    assert runner.argvs("git", "switch") == [["git", "switch", "-c", "yoke/bd-1"]]


def test_ensure_branch_noop_when_current(runner: ScriptedRunner) -> None:
    runner.on("git", "rev-parse", "--abbrev-ref", reply="yoke/bd-1\n")
    Git(runner=runner).ensure_branch("yoke/bd-1")
    assert runner.count("git", "switch") == 0


def test_repo_root_outside_git(runner: ScriptedRunner) -> None:
    runner.on("git", "rev-parse", "--show-toplevel", reply=Fail("not a git repository"))
    with pytest.raises(YokeError, match="git repository"):
        Git(runner=runner).repo_root()


def test_current_branch_failure_is_empty(runner: ScriptedRunner) -> None:
    runner.on("git", "rev-parse", reply=Fail())
    assert Git(runner=runner).current_branch() == ""


class TestPullRequests:
    def _prs(self, runner: ScriptedRunner, monkeypatch: pytest.MonkeyPatch) -> PullRequests:
        monkeypatch.setattr(vcs, "command_exists", lambda cmd: True)
        return PullRequests(Git(runner=runner), runner=runner)

    def test_open_for_branch(self, runner: ScriptedRunner, monkeypatch: pytest.MonkeyPatch) -> None:
        runner.on("gh", "pr", "list", reply='[{"number": 4, "url": "u", "isDraft": false}]')
        pr = self._prs(runner, monkeypatch).open_for_branch("yoke/bd-1")
        assert pr is not None and pr.number == 4 and not pr.is_draft
        [argv] = runner.argvs("gh", "pr", "list")
        assert argv[argv.index("--head") + 1] == "yoke/bd-1"

    def test_open_for_branch_without_origin(
        self, runner: ScriptedRunner, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        runner.on("git", "remote", reply=Fail())
        assert self._prs(runner, monkeypatch).open_for_branch("yoke/bd-1") is None
        assert runner.count("gh") == 0

    def test_create_draft_uses_template_when_present(
        self, runner: ScriptedRunner, monkeypatch: pytest.MonkeyPatch, tmp_path: Path
    ) -> None:
        prs = self._prs(runner, monkeypatch)
        template = tmp_path / "tpl.md"
        prs.create_draft(base="main", title="[bd-1] T", body_file=template)
        template.write_text("body")
        prs.create_draft(base="main", title="[bd-1] T", body_file=template)
        first, second = runner.argvs("gh", "pr", "create")
        assert first[-2:] == ["--body", ""]
        assert second[-2:] == ["--body-file", str(template)]

    def test_comment_and_ready(self, runner: ScriptedRunner, monkeypatch: pytest.MonkeyPatch) -> None:
        prs = self._prs(runner, monkeypatch)
        prs.comment(3, "hi")
        prs.mark_ready(3)
        assert [c.argv for c in runner.calls] == [
            ["gh", "pr", "comment", "3", "--body", "hi"],
            ["gh", "pr", "ready", "3"],
        ]
