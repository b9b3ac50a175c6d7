from __future__ import annotations

import argparse
import sys
from collections.abc import Sequence
from typing import Literal

from rich.console import Console
from rich.table import Table
from rich.text import Text

OUTPUT_CHOICES = ("auto", "plain", "rich")
OutputMode = Literal["plain", "rich"]


def add_output_mode_argument(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--output",
        choices=OUTPUT_CHOICES,
        help="Output mode: auto (default), plain, or rich.",
    )


def _stream_is_tty(stream: object) -> bool:
    probe = getattr(stream, "isatty", None)
    if not callable(probe):
        return False
    try:
        return bool(probe())
    except (OSError, ValueError):
        return False


def resolve_output_mode(
    requested: str | None = None,
    *,
    is_tty: bool | None = None,
) -> OutputMode:
    selected = (requested or "auto").strip().lower() or "auto"
    if selected not in OUTPUT_CHOICES:
        expected = ", ".join(OUTPUT_CHOICES)
        raise ValueError(f"invalid --output value {requested!r}; expected one of: {expected}")

    if selected == "auto":
        tty = _stream_is_tty(sys.stdout) if is_tty is None else bool(is_tty)
        return "rich" if tty else "plain"
    return "rich" if selected == "rich" else "plain"


def make_console(mode: OutputMode, *, stderr: bool = False) -> Console:
    return Console(
        file=sys.stderr if stderr else sys.stdout,
        force_terminal=mode == "rich",
        no_color=mode != "rich",
        highlight=False,
    )


def render_table(
    console: Console,
    *,
    headers: Sequence[str],
    rows: Sequence[Sequence[object]],
    title: str | None = None,
) -> None:
    table = Table(title=title)
    for header in headers:
        table.add_column(str(header))
    for row in rows:
        table.add_row(*(str(value or "") for value in row))
    console.print(table)


class Notes:
    """Operator-facing progress lines.

    Messages are printed as plain ``Text`` so bracketed prefixes such as
    ``[claim]`` are not parsed as rich markup.
    """

    def __init__(self, console: Console | None = None, *, prefix: str = "") -> None:
        self.console = console or Console(highlight=False)
        self.prefix = prefix

    def scoped(self, prefix: str) -> Notes:
        return Notes(self.console, prefix=prefix)

    def note(self, message: str) -> None:
        self.console.print(Text(self.prefix + message), soft_wrap=True)

    def warn(self, message: str) -> None:
        self.console.print(Text("warning: " + message, style="yellow"), soft_wrap=True)

    def success(self, message: str) -> None:
        self.console.print(Text(self.prefix + message, style="green"), soft_wrap=True)
