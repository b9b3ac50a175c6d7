"""Prompt templates: built-in defaults, optional repo overrides with YAML frontmatter."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml


EPIC_IMPROVEMENT = "epic-improvement-cycle"
INTAKE_PLAN = "intake-plan"

_BUILTIN_TEMPLATES: dict[str, str] = {
    EPIC_IMPROVEMENT: """\
Improve epic $EPIC_ID before implementation starts.

1. Read the epic and every child task with `bd show` and `bd children`.
2. Tighten titles, descriptions and acceptance criteria so each task is
   independently implementable and verifiable.
3. Split tasks that are too large; merge tasks that only make sense together.
4. Add missing `blocks` dependencies with `bd dep add <blocked> <blocker>`;
   remove dependencies that do not reflect real ordering constraints.
5. When a requirement cannot be resolved from the repository, create a child
   task titled "Clarification needed: <question>" instead of guessing.
6. Do not write application code.

Report format:

## Changes
- one line per tracker change

## Open questions
- one line per clarification task created
""",
    INTAKE_PLAN: """\
Turn the idea below into an epic and child tasks for the bd tracker.

Idea:
{{IDEA_TEXT}}

Constraints:
{{GENERATION_CONSTRAINTS}}

Respond with a single JSON document and nothing else:

{
  "epic": {"title": "...", "description": "...", "priority": "..."},
  "tasks": [
    {
      "ref": "short-unique-ref",
      "title": "...",
      "description": "...",
      "acceptance_criteria": ["..."],
      "local_dependency_refs": ["ref of a task that must finish first"]
    }
  ]
}

Every task needs a unique non-empty "ref". "local_dependency_refs" may only
name refs of other tasks in this document and must not form a cycle.
""",
}


@dataclass(frozen=True)
class PromptTemplate:
    name: str
    body: str
    meta: dict[str, Any] = field(default_factory=dict)
    source: str = "builtin"

    @property
    def agent(self) -> str | None:
        raw = self.meta.get("agent")
        if isinstance(raw, str) and raw.strip():
            return raw.strip()
        return None


def _split_frontmatter(text: str) -> tuple[dict, str]:
    """Split optional YAML frontmatter from markdown body."""
    if not text.startswith("---"):
        return {}, text
    parts = text.split("---", 2)
    if len(parts) < 3:
        return {}, text
    try:
        meta = yaml.safe_load(parts[1]) or {}
    except yaml.YAMLError:
        return {}, text
    if not isinstance(meta, dict):
        return {}, text
    return meta, parts[2].lstrip("\n")


def override_path(repo_root: Path, name: str) -> Path:
    return repo_root / ".yoke" / "prompts" / f"{name}.md"


def load_template(name: str, repo_root: Path | None = None) -> PromptTemplate:
    """Return the repo override for ``name`` when present, else the built-in."""
    if repo_root is not None:
        path = override_path(repo_root, name)
        if path.is_file():
            meta, body = _split_frontmatter(path.read_text(encoding="utf-8"))
            return PromptTemplate(name=name, body=body, meta=meta, source=str(path))
    try:
        body = _BUILTIN_TEMPLATES[name]
    except KeyError:
        raise ValueError(f"unknown prompt template: {name!r}") from None
    return PromptTemplate(name=name, body=body)


def render(template: PromptTemplate, values: dict[str, str]) -> str:
    body = template.body
    for key, value in values.items():
        body = body.replace(key, value)
    return body


def truncate_for_prompt(value: str, max_chars: int) -> str:
    trimmed = value.strip()
    if max_chars <= 0 or len(trimmed) <= max_chars:
        return trimmed
    return trimmed[:max_chars] + "\n...[truncated]..."
