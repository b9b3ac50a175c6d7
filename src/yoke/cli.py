"""CLI entry point for yoke."""

from __future__ import annotations

import argparse
import sys
from collections.abc import Sequence
from dataclasses import replace
from pathlib import Path

from rich.console import Console
from rich.table import Table
from rich.text import Text

from . import __version__
from .backend import run_agent_prompt
from .claim import Claimer
from .config import (
    YokeConfig,
    agent_availability_status,
    detect_available_agents,
    load_config,
    normalize_agent_id,
    write_config,
)
from .daemon import DEFAULT_POLL_SECONDS, Daemon, DaemonOptions, focused_issue_id, parse_interval
from .improvement import EPIC_PASS_COUNT
from .intake import apply_intake_plan, format_apply_summary, generate_intake_plan, load_intake_plan
from .issue import normalize_prefix
from .tracker import Tracker
from .ui import Notes, add_output_mode_argument, make_console, render_table, resolve_output_mode
from .util import CommandError, YokeError, command_exists, run_capture
from .vcs import Git, PullRequests
from .workflow import Handoff, Workflow


CHECKS_SCRIPT = """#!/usr/bin/env bash
set -euo pipefail
echo "No checks configured. Edit .yoke/checks.sh."
"""


class _Parser(argparse.ArgumentParser):
    """ArgumentParser that raises instead of exiting, so errors share one exit path."""

    def error(self, message: str) -> None:  # type: ignore[override]
        raise ValueError(f"{self.prog}: {message}")


def _value_or(value: str, fallback: str) -> str:
    return value if value.strip() else fallback


def _command_status(value: str) -> str:
    return "configured" if value.strip() else "unset"


def _availability(available: bool) -> str:
    return "available" if available else "missing"


def _require_bd() -> None:
    if not command_exists("bd"):
        raise YokeError("missing required command: bd")


def _context() -> tuple[Path, YokeConfig, Git]:
    git = Git(runner=run_capture)
    root = git.repo_root()
    git = Git(cwd=root, runner=run_capture)
    return root, load_config(root), git


def _tracker(root: Path, cfg: YokeConfig) -> Tracker:
    return Tracker(cfg.bd_prefix, cwd=root, runner=run_capture)


def _pull_requests(root: Path, git: Git) -> PullRequests:
    return PullRequests(git, cwd=root, runner=run_capture)


# -- commands -----------------------------------------------------------------


def cmd_init(argv: list[str], notes: Notes) -> int:
    p = _Parser(prog="yoke init")
    p.add_argument("--writer-agent")
    p.add_argument("--reviewer-agent")
    p.add_argument("--bd-prefix")
    args = p.parse_args(argv)

    writer_override = reviewer_override = ""
    if args.writer_agent is not None:
        writer_override = normalize_agent_id(args.writer_agent) or ""
        if not writer_override:
            raise ValueError(f"unsupported writer agent: {args.writer_agent}")
    if args.reviewer_agent is not None:
        reviewer_override = normalize_agent_id(args.reviewer_agent) or ""
        if not reviewer_override:
            raise ValueError(f"unsupported reviewer agent: {args.reviewer_agent}")

    root, cfg, _git = _context()
    for sub in (Path(".yoke") / "prompts", Path(".github"), Path("docs")):
        (root / sub).mkdir(parents=True, exist_ok=True)

    available = detect_available_agents()
    prefix = normalize_prefix(args.bd_prefix if args.bd_prefix is not None else cfg.bd_prefix)
    writer = writer_override or cfg.writer_agent
    reviewer = reviewer_override or cfg.reviewer_agent
    if not writer and available:
        writer = available[0].id
    if not reviewer:
        reviewer = writer or (available[0].id if available else "")

    cfg = replace(cfg, bd_prefix=prefix, writer_agent=writer, reviewer_agent=reviewer)
    write_config(cfg)

    checks = root / ".yoke" / "checks.sh"
    if not checks.exists():
        checks.write_text(CHECKS_SCRIPT, encoding="utf-8")
        checks.chmod(0o755)
        notes.note("Created .yoke/checks.sh")

    notes.success("Initialized yoke scaffold.")
    if not available:
        notes.warn(
            "No supported coding agents detected (codex, claude). Configure manually in .yoke/config.sh."
        )
    notes.note(f"BD prefix: {_value_or(cfg.bd_prefix, 'unset')}")
    notes.note(f"Writer agent: {_value_or(cfg.writer_agent, 'unset')}")
    notes.note(f"Reviewer agent: {_value_or(cfg.reviewer_agent, 'unset')}")
    notes.note(f"Writer command: {_command_status(cfg.writer_cmd)}")
    notes.note(f"Reviewer command: {_command_status(cfg.review_cmd)}")
    return 0


def cmd_doctor(argv: list[str], console: Console) -> int:
    _Parser(prog="yoke doctor").parse_args(argv)
    _root, cfg, _git = _context()

    rows: list[tuple[str, str]] = []
    failures = 0
    for name in ("git", "bd"):
        ok = command_exists(name)
        failures += 0 if ok else 1
        rows.append((name, "ok" if ok else "missing"))
    rows.append(("gh", "ok" if command_exists("gh") else "missing (PR automation disabled)"))
    rows.append(("config", f"ok {cfg.path}" if cfg.path.exists() else f"missing ({cfg.path})"))
    rows.append(("bd prefix", cfg.bd_prefix))
    for role, agent in (("writer agent", cfg.writer_agent), ("reviewer agent", cfg.reviewer_agent)):
        rows.append((role, f"{agent} ({agent_availability_status(agent)})" if agent else "unset"))
    rows.append(("writer command", _command_status(cfg.writer_cmd)))
    rows.append(("reviewer command", _command_status(cfg.review_cmd)))
    render_table(console, headers=("Check", "Result"), rows=rows, title="yoke doctor")

    if failures:
        raise YokeError("doctor failed")
    return 0


def cmd_status(argv: list[str], console: Console) -> int:
    _Parser(prog="yoke status").parse_args(argv)
    root, cfg, git = _context()
    bd_available = command_exists("bd")

    focus = nxt = "unavailable"
    if bd_available:
        tracker = _tracker(root, cfg)
        focus = _value_or(focused_issue_id(tracker, git, cfg.bd_prefix), "none")
        nxt = _value_or(tracker.next_issue_id(), "none")

    rows = [
        ("repo_root", str(root)),
        ("current_branch", _value_or(git.current_branch(), "unknown")),
        ("bd_prefix", cfg.bd_prefix),
        ("writer_agent", _value_or(cfg.writer_agent, "unset")),
        ("writer_agent_status", agent_availability_status(cfg.writer_agent)),
        ("writer_command", _command_status(cfg.writer_cmd)),
        ("reviewer_agent", _value_or(cfg.reviewer_agent, "unset")),
        ("reviewer_agent_status", agent_availability_status(cfg.reviewer_agent)),
        ("reviewer_command", _command_status(cfg.review_cmd)),
        ("bd_focus", focus),
        ("bd_next", nxt),
        ("tool_git", _availability(command_exists("git"))),
        ("tool_bd", _availability(bd_available)),
        ("tool_gh", _availability(command_exists("gh"))),
    ]
    render_table(console, headers=("Key", "Value"), rows=rows)
    return 0


def cmd_daemon(argv: list[str], notes: Notes) -> int:
    p = _Parser(prog="yoke daemon")
    p.add_argument("--once", action="store_true")
    p.add_argument("--interval", default=None)
    p.add_argument("--max-iterations", type=int, default=0)
    p.add_argument("--writer-cmd", default="")
    p.add_argument("--reviewer-cmd", default="")
    args = p.parse_args(argv)
    if args.max_iterations < 0:
        raise ValueError(f"invalid --max-iterations value: {args.max_iterations}")

    options = DaemonOptions(
        once=args.once,
        interval=parse_interval(args.interval) if args.interval is not None else DEFAULT_POLL_SECONDS,
        max_iterations=args.max_iterations,
        writer_cmd=args.writer_cmd,
        reviewer_cmd=args.reviewer_cmd,
    )
    _require_bd()
    root, cfg, git = _context()
    daemon = Daemon(
        _tracker(root, cfg),
        git,
        _pull_requests(root, git),
        cfg,
        root,
        options,
        notes=notes,
    )
    daemon.run()
    return 0


def cmd_claim(argv: list[str], notes: Notes) -> int:
    p = _Parser(prog="yoke claim")
    p.add_argument("issue", nargs="?", default=None)
    p.add_argument("--improvement-passes", type=int, default=EPIC_PASS_COUNT)
    args = p.parse_args(argv)

    root, cfg, git = _context()
    _require_bd()
    claim_notes = notes.scoped("[claim] ")
    claim_notes.note(f"Epic improvement pass limit set to {args.improvement_passes}.")
    claimer = Claimer(
        _tracker(root, cfg),
        git,
        cfg,
        root,
        pass_limit=args.improvement_passes,
        notes=claim_notes,
    )
    claimer.claim(args.issue)
    return 0


def cmd_submit(argv: list[str], notes: Notes) -> int:
    p = _Parser(prog="yoke submit")
    p.add_argument("issue", nargs="?", default=None)
    p.add_argument("--done", required=True)
    p.add_argument("--remaining", required=True)
    p.add_argument("--decision", default="")
    p.add_argument("--uncertain", default="")
    p.add_argument("--checks", default=None)
    p.add_argument("--no-push", action="store_true")
    p.add_argument("--no-pr", action="store_true")
    p.add_argument("--no-pr-comment", action="store_true")
    args = p.parse_args(argv)

    root, cfg, git = _context()
    _require_bd()
    workflow = Workflow(_tracker(root, cfg), git, _pull_requests(root, git), cfg, root, notes=notes)
    workflow.submit(
        args.issue,
        Handoff(
            done=args.done,
            remaining=args.remaining,
            decision=args.decision,
            uncertain=args.uncertain,
        ),
        checks=args.checks,
        push=not args.no_push,
        create_pr=not args.no_pr,
        pr_comment=not args.no_pr_comment,
    )
    return 0


def cmd_review(argv: list[str], notes: Notes) -> int:
    p = _Parser(prog="yoke review")
    p.add_argument("issue", nargs="?", default=None)
    decision = p.add_mutually_exclusive_group()
    decision.add_argument("--approve", action="store_true")
    decision.add_argument("--reject", metavar="REASON", default=None)
    p.add_argument("--note", default="")
    p.add_argument("--agent", action="store_true")
    p.add_argument("--no-pr-comment", action="store_true")
    args = p.parse_args(argv)

    action = "approve" if args.approve else ("reject" if args.reject is not None else None)
    root, cfg, git = _context()
    _require_bd()
    workflow = Workflow(_tracker(root, cfg), git, _pull_requests(root, git), cfg, root, notes=notes)
    workflow.review(
        args.issue,
        action=action,
        reject_reason=args.reject or "",
        note=args.note,
        run_agent=args.agent,
        pr_comment=not args.no_pr_comment,
    )
    return 0


def cmd_intake(argv: list[str], console: Console, notes: Notes) -> int:
    p = _Parser(prog="yoke intake")
    sub = p.add_subparsers(dest="action", required=True, parser_class=_Parser)
    apply_p = sub.add_parser("apply")
    apply_p.add_argument("plan", type=Path)
    gen_p = sub.add_parser("generate")
    gen_p.add_argument("idea", nargs="+")
    gen_p.add_argument("--constraint", action="append", default=[])
    gen_p.add_argument("--apply", action="store_true")
    args = p.parse_args(argv)

    root, cfg, _git = _context()
    if args.action == "apply":
        plan = load_intake_plan(args.plan)
    else:
        agent_id = cfg.agent_for_role("writer")
        idea = " ".join(args.idea)

        def generator(prompt: str) -> str:
            return run_agent_prompt(
                agent_id,
                root,
                prompt,
                extra_env={"ROOT_DIR": str(root), "BD_PREFIX": cfg.bd_prefix, "YOKE_ROLE": "writer"},
                stream_prefix="[intake] ",
            )

        plan = generate_intake_plan(idea, args.constraint, generator, repo_root=root)
        if not args.apply:
            console.print(Text(plan.model_dump_json(indent=2)))
            return 0

    _require_bd()
    result = apply_intake_plan(plan, _tracker(root, cfg))
    notes.success(format_apply_summary(result))
    return 0


def _print_help(console: Console) -> None:
    help_text = Text()
    help_text.append("yoke", style="bold")
    help_text.append(f" {__version__}", style="dim")
    help_text.append(" - writer/reviewer workflow over bd, git and gh")
    console.print(help_text)
    console.print()

    cmds = Table(show_header=False, expand=False, show_edge=False, pad_edge=False, box=None)
    cmds.add_column("Command", style="bold cyan")
    cmds.add_column("Description")
    cmds.add_row("yoke init", "Scaffold .yoke/ and write .yoke/config.sh")
    cmds.add_row("yoke doctor", "Check required tools and config")
    cmds.add_row("yoke status", "Show repo, agent and queue status")
    cmds.add_row("yoke daemon", "Run the writer/reviewer loop")
    cmds.add_row("yoke claim [id]", "Claim an issue (epics resolve to a child task)")
    cmds.add_row("yoke submit [id]", "Hand work to review")
    cmds.add_row("yoke review [id]", "Approve, reject or annotate a reviewable issue")
    cmds.add_row("yoke intake apply <plan>", "Create an epic and tasks from a plan file")
    cmds.add_row("yoke intake generate <idea>", "Generate an intake plan with the writer agent")
    console.print(cmds)
    console.print()

    opts = Table(show_header=False, expand=False, show_edge=False, pad_edge=False, box=None)
    opts.add_column("Option", style="bold")
    opts.add_column("Description", style="dim")
    opts.add_row("--output auto|plain|rich", "Output mode (default: auto)")
    opts.add_row("--version", "Show version")
    console.print(opts)


def run(argv: Sequence[str], *, is_tty: bool | None = None) -> int:
    pre = argparse.ArgumentParser(add_help=False)
    add_output_mode_argument(pre)
    known, rest = pre.parse_known_args(list(argv))
    mode = resolve_output_mode(known.output, is_tty=is_tty)
    console = make_console(mode)
    err_console = make_console(mode, stderr=True)
    notes = Notes(console)

    if "--version" in rest:
        console.print(Text(f"yoke {__version__}", style="bold"))
        return 0
    if not rest or rest[0] in ("-h", "--help", "help"):
        _print_help(console)
        return 0

    command, args = rest[0], rest[1:]
    try:
        if command == "init":
            return cmd_init(args, notes)
        if command == "doctor":
            return cmd_doctor(args, console)
        if command == "status":
            return cmd_status(args, console)
        if command == "daemon":
            return cmd_daemon(args, notes)
        if command == "claim":
            return cmd_claim(args, notes)
        if command == "submit":
            return cmd_submit(args, notes)
        if command == "review":
            return cmd_review(args, notes)
        if command == "intake":
            return cmd_intake(args, console, notes)
        raise ValueError(f"unknown command: {command}")
    except (YokeError, CommandError, ValueError, OSError) as exc:
        err_console.print(Text(f"yoke: {exc}", style="red"), soft_wrap=True)
        return 1


def main(argv: list[str] | None = None) -> None:
    raw = argv if argv is not None else sys.argv[1:]
    sys.exit(run(raw))


if __name__ == "__main__":
    main()
