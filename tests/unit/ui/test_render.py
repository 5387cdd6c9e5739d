"""Plain-text renderer used by the CLI."""

from __future__ import annotations

import io

import pytest

from dag_orchestrator.ui.render import CLIRenderer


class _TTY(io.StringIO):
    def isatty(self) -> bool:
        return True


def test_table_pads_columns_and_skips_empty_tables() -> None:
    stream = io.StringIO()
    renderer = CLIRenderer(stream=stream)

    renderer.table(["A", "BB"], [])
    renderer.table(["A", "BB"], [["x", "y"], ["long", "z"]], title="Rows:")

    assert stream.getvalue().splitlines() == [
        "",
        "Rows:",
        "  A     BB",
        "  ----  --",
        "  x     y",
        "  long  z",
    ]


def test_counts_and_next_steps() -> None:
    stream = io.StringIO()
    renderer = CLIRenderer(stream=stream)

    renderer.counts({"pending": 1, "failed": 0})
    renderer.next_steps([])
    renderer.next_steps(["dagorch run"])

    assert stream.getvalue().splitlines() == [
        "pending=1  failed=0",
        "",
        "Next steps:",
        "  $ dagorch run",
    ]


def test_colors_only_on_a_terminal(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("NO_COLOR", raising=False)

    assert CLIRenderer(stream=_TTY()).status("failed") == "\033[31mfailed\033[0m"
    assert CLIRenderer(stream=_TTY()).status("unknown") == "unknown"
    assert CLIRenderer(stream=io.StringIO()).status("failed") == "failed"
    assert CLIRenderer(stream=_TTY(), no_color=True).status("failed") == "failed"

    monkeypatch.setenv("NO_COLOR", "1")
    assert CLIRenderer(stream=_TTY()).status("failed") == "failed"


def test_simple_lines() -> None:
    stream = io.StringIO()
    renderer = CLIRenderer(stream=stream)

    renderer.heading("Title")
    renderer.kv("Key", 3)
    renderer.items(["one", "two"])
    renderer.warning("careful")

    assert stream.getvalue().splitlines() == [
        "Title",
        "Key: 3",
        "  - one",
        "  - two",
        "  Warning: careful",
    ]
