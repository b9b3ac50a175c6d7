"""Backend runners for the Codex and Claude coding-agent CLIs."""

from __future__ import annotations

import sys
from pathlib import Path
from typing import Protocol, TextIO

from .config import agent_binary
from .util import YokeError, child_env, stream_capture


class AgentRunError(YokeError):
    """An agent exited non-zero. ``output`` holds whatever it printed."""

    def __init__(self, agent_id: str, returncode: int, output: str) -> None:
        super().__init__(f"agent {agent_id} exited with status {returncode}")
        self.agent_id = agent_id
        self.returncode = returncode
        self.output = output


class AgentRunner(Protocol):
    def __call__(
        self,
        agent_id: str,
        root: Path,
        prompt: str,
        *,
        extra_env: dict[str, str] | None = None,
        stream_prefix: str = "",
    ) -> str: ...


class Backend:
    name: str

    def build_argv(self, binary: str, prompt: str, root: Path) -> list[str]:
        raise NotImplementedError

    def run(
        self,
        binary: str,
        prompt: str,
        root: Path,
        *,
        env: dict[str, str] | None = None,
        out: TextIO | None = None,
        prefix: str = "",
    ) -> tuple[int, str]:
        return stream_capture(
            self.build_argv(binary, prompt, root),
            cwd=root,
            env=env,
            out=out or sys.stdout,
            prefix=prefix,
        )


class CodexBackend(Backend):
    name = "codex"

    def build_argv(self, binary: str, prompt: str, root: Path) -> list[str]:
        return [binary, "exec", "--full-auto", "--cd", str(root), prompt]


class ClaudeBackend(Backend):
    name = "claude"

    def build_argv(self, binary: str, prompt: str, root: Path) -> list[str]:
        return [binary, "--print", "--permission-mode", "bypassPermissions", prompt]


_BACKENDS: dict[str, Backend] = {
    "codex": CodexBackend(),
    "claude": ClaudeBackend(),
}


def get_backend(name: str) -> Backend:
    b = _BACKENDS.get(name)
    if b is None:
        raise ValueError(f"unknown backend: {name!r} (available: {list(_BACKENDS)})")
    return b


def run_agent_prompt(
    agent_id: str,
    root: Path,
    prompt: str,
    *,
    extra_env: dict[str, str] | None = None,
    stream_prefix: str = "",
    out: TextIO | None = None,
) -> str:
    """Run one prompt through the agent configured as ``agent_id``.

    Output is echoed to ``out`` with ``stream_prefix`` on every line and
    returned trimmed. A non-zero exit raises AgentRunError.
    """
    normalized, binary = agent_binary(agent_id)
    backend = get_backend(normalized)
    returncode, output = backend.run(
        binary,
        prompt,
        root,
        env=child_env(extra_env),
        out=out,
        prefix=stream_prefix,
    )
    if returncode != 0:
        raise AgentRunError(normalized, returncode, output)
    return output
