from __future__ import annotations

import ast
import os
import re
from collections.abc import Mapping
from dataclasses import dataclass, replace
from pathlib import Path

from .issue import DEFAULT_PREFIX, normalize_prefix
from .util import YokeError, which


DEFAULT_BASE_BRANCH = "main"
DEFAULT_CHECK_CMD = ".yoke/checks.sh"
DEFAULT_PR_TEMPLATE = ".github/pull_request_template.md"
DEFAULT_CONFIG_PATH = ".yoke/config.sh"
CONFIG_ENV_VAR = "YOKE_CONFIG"

_ASSIGN_RE = re.compile(r"^([A-Z0-9_]+)\s*=\s*(.+)$")


@dataclass(frozen=True)
class AgentSpec:
    id: str
    name: str
    binaries: tuple[str, ...]


SUPPORTED_AGENTS: tuple[AgentSpec, ...] = (
    AgentSpec(id="codex", name="OpenAI Codex", binaries=("codex",)),
    AgentSpec(id="claude", name="Anthropic Claude Code", binaries=("claude", "claude-code")),
)


@dataclass(frozen=True)
class DetectedAgent:
    id: str
    name: str
    binary: str


@dataclass(frozen=True)
class YokeConfig:
    path: Path
    base_branch: str = DEFAULT_BASE_BRANCH
    check_cmd: str = DEFAULT_CHECK_CMD
    bd_prefix: str = DEFAULT_PREFIX
    writer_agent: str = ""
    writer_cmd: str = ""
    reviewer_agent: str = ""
    review_cmd: str = ""
    pr_template: str = DEFAULT_PR_TEMPLATE

    def agent_for_role(self, role: str) -> str:
        """Agent id for ``writer`` or ``reviewer``; reviewers fall back to the writer."""
        if role == "writer" and self.writer_agent.strip():
            return self.writer_agent
        if role == "reviewer":
            if self.reviewer_agent.strip():
                return self.reviewer_agent
            if self.writer_agent.strip():
                return self.writer_agent
        raise ConfigValidationError(
            f"no {role} agent configured; run yoke init or set agent config in .yoke/config.sh"
        )


class ConfigValidationError(YokeError, ValueError):
    pass


_FIELDS_BY_KEY = {
    "YOKE_BASE_BRANCH": "base_branch",
    "YOKE_CHECK_CMD": "check_cmd",
    "YOKE_BD_PREFIX": "bd_prefix",
    "YOKE_WRITER_AGENT": "writer_agent",
    "YOKE_WRITER_CMD": "writer_cmd",
    "YOKE_REVIEWER_AGENT": "reviewer_agent",
    "YOKE_REVIEW_CMD": "review_cmd",
    "YOKE_PR_TEMPLATE": "pr_template",
}


def parse_shell_value(raw: str) -> str:
    value = raw.strip()
    if not value:
        return ""
    if len(value) >= 2 and value.startswith('"') and value.endswith('"'):
        try:
            unquoted = ast.literal_eval(value)
        except (ValueError, SyntaxError):
            return value.strip('"')
        return unquoted if isinstance(unquoted, str) else value.strip('"')
    if len(value) >= 2 and value.startswith("'") and value.endswith("'"):
        return value.strip("'")
    idx = value.find(" #")
    if idx >= 0:
        value = value[:idx]
    return value.strip()


def config_path(repo_root: Path, env: Mapping[str, str] | None = None) -> Path:
    env = os.environ if env is None else env
    raw = env.get(CONFIG_ENV_VAR) or DEFAULT_CONFIG_PATH
    path = Path(raw)
    if not path.is_absolute():
        path = repo_root / path
    return path


def load_config(repo_root: Path, env: Mapping[str, str] | None = None) -> YokeConfig:
    path = config_path(repo_root, env)
    cfg = YokeConfig(path=path)
    if not path.exists():
        return cfg

    values: dict[str, str] = {}
    for line in path.read_text(encoding="utf-8").splitlines():
        line = line.strip()
        if not line or line.startswith("#"):
            continue
        match = _ASSIGN_RE.match(line)
        if not match:
            continue
        field_name = _FIELDS_BY_KEY.get(match.group(1))
        if field_name:
            values[field_name] = parse_shell_value(match.group(2))

    cfg = replace(cfg, **values)
    try:
        prefix = normalize_prefix(cfg.bd_prefix)
    except ValueError as exc:
        raise ConfigValidationError(f"{path}: {exc}") from exc
    return replace(cfg, bd_prefix=prefix)


def _quote(value: str) -> str:
    escaped = value.replace("\\", "\\\\").replace('"', '\\"')
    return f'"{escaped}"'


def render_config(cfg: YokeConfig) -> str:
    return f"""# shellcheck shell=bash

# Base branch for PRs created by yoke.
YOKE_BASE_BRANCH={_quote(cfg.base_branch)}

# Check command or executable path. Set to "skip" to bypass.
YOKE_CHECK_CMD={_quote(cfg.check_cmd)}

# Prefix used for bd issue IDs (example: bd-a1b2).
YOKE_BD_PREFIX={_quote(cfg.bd_prefix)}

# Selected coding agent for writing (codex or claude).
YOKE_WRITER_AGENT={_quote(cfg.writer_agent)}

# Optional writer command for yoke daemon loops.
# Runs with ISSUE_ID, ROOT_DIR, BD_PREFIX, and YOKE_ROLE=writer.
# Expected behavior: implement the issue and transition state via yoke submit.
YOKE_WRITER_CMD={_quote(cfg.writer_cmd)}

# Selected coding agent for reviewing (codex or claude).
YOKE_REVIEWER_AGENT={_quote(cfg.reviewer_agent)}

# Optional reviewer agent command. Runs when using: yoke review --agent
# and yoke daemon. Runs with ISSUE_ID, ROOT_DIR, BD_PREFIX, and YOKE_ROLE=reviewer.
# Expected behavior for daemon mode: execute yoke review --approve or --reject.
YOKE_REVIEW_CMD={_quote(cfg.review_cmd)}

# Pull request template path.
YOKE_PR_TEMPLATE={_quote(cfg.pr_template)}
"""


def write_config(cfg: YokeConfig) -> None:
    cfg.path.parent.mkdir(parents=True, exist_ok=True)
    cfg.path.write_text(render_config(cfg), encoding="utf-8")


def normalize_agent_id(value: str) -> str | None:
    lowered = value.strip().lower()
    for spec in SUPPORTED_AGENTS:
        if lowered == spec.id or lowered in (b.lower() for b in spec.binaries):
            return spec.id
    return None


def detect_available_agents() -> list[DetectedAgent]:
    found: list[DetectedAgent] = []
    for spec in SUPPORTED_AGENTS:
        for binary in spec.binaries:
            if which(binary):
                found.append(DetectedAgent(id=spec.id, name=spec.name, binary=binary))
                break
    return found


def agent_binary(agent_id: str) -> tuple[str, str]:
    """Return (normalized id, binary on PATH) for ``agent_id``."""
    normalized = normalize_agent_id(agent_id)
    if normalized is None:
        raise ConfigValidationError(f"unsupported agent id: {agent_id}")
    for spec in SUPPORTED_AGENTS:
        if spec.id != normalized:
            continue
        for binary in spec.binaries:
            if which(binary):
                return normalized, binary
    raise ConfigValidationError(f"agent {normalized} is not available on PATH")


def agent_availability_status(agent_id: str) -> str:
    if not agent_id.strip():
        return "unset"
    normalized = normalize_agent_id(agent_id)
    for spec in SUPPORTED_AGENTS:
        if spec.id != normalized:
            continue
        for binary in spec.binaries:
            if which(binary):
                return f"available via {binary}"
        return "not detected"
    return "unknown"
