from __future__ import annotations

import io

import pytest

from yoke.util import CommandError, LinePrefixWriter, format_duration, sanitize_comment_line


def test_line_prefix_writer_prefixes_each_line() -> None:
    out = io.StringIO()
    writer = LinePrefixWriter(out, "[p] ")
    writer.write("one\ntw")
    writer.write("o\nthree\n")
    assert out.getvalue() == "[p] one\n[p] two\n[p] three\n"


@pytest.mark.parametrize(
    ("seconds", "expected"),
    [(30, "30s"), (90, "1m 30s"), (3725, "1h 2m 5s"), (0.25, "250ms"), (0, "0s")],
)
def test_format_duration(seconds: float, expected: str) -> None:
    assert format_duration(seconds) == expected


def test_sanitize_comment_line_collapses_whitespace() -> None:
    assert sanitize_comment_line("  a\n\tb   c ") == "a b c"


def test_command_error_message_uses_last_stderr_line() -> None:
    err = CommandError(["bd", "show", "x"], 2, "", "warn\nnot found\n")
    assert str(err) == "command failed: bd show x (exit 2): not found"
    assert err.returncode == 2
