"""Plain-text output for the ``dagorch`` CLI.

Color is never emitted when ``NO_COLOR`` is set, ``--no-color`` is passed or
stdout is not a terminal. Machine-readable output goes through ``--json`` in
:mod:`dag_orchestrator.ui.cli` and never through this module.
"""

from __future__ import annotations

import os
import sys
from typing import TYPE_CHECKING, Final, TextIO

if TYPE_CHECKING:
    from collections.abc import Mapping, Sequence

_RESET: Final[str] = "\033[0m"
_STATUS_COLORS: Final[dict[str, str]] = {
    "complete": "\033[32m",
    "running": "\033[36m",
    "ready": "\033[36m",
    "failed": "\033[31m",
    "skipped": "\033[33m",
    "blocked": "\033[33m",
}


def _color_allowed(no_color_flag: bool, stream: TextIO) -> bool:
    if no_color_flag:
        return False
    if os.environ.get("NO_COLOR", ""):
        return False
    return hasattr(stream, "isatty") and stream.isatty()


class CLIRenderer:
    """Deterministic line-oriented renderer.

    Every method writes complete lines to ``stream`` (stdout by default,
    resolved at call time so pytest's ``capsys`` sees the output).
    """

    def __init__(
        self,
        *,
        no_color: bool = False,
        verbose: bool = False,
        stream: TextIO | None = None,
    ) -> None:
        self.verbose = verbose
        self._stream = stream
        self._color = _color_allowed(no_color, self._out())

    def heading(self, text: str) -> None:
        self._write(text)

    def kv(self, key: str, value: object) -> None:
        self._write(f"{key}: {value}")

    def text(self, line: str) -> None:
        self._write(line)

    def blank(self) -> None:
        self._write("")

    def section(self, title: str) -> None:
        self._write(f"\n{title}")

    def warning(self, text: str) -> None:
        self._write(f"  Warning: {text}")

    def items(self, entries: Sequence[str], *, prefix: str = "- ") -> None:
        for entry in entries:
            self._write(f"  {prefix}{entry}")

    def counts(self, counts: Mapping[str, int]) -> None:
        """One ``status=count`` line, zero counts included, in the given order."""
        parts = [f"{self.status(status)}={count}" for status, count in counts.items()]
        self._write("  ".join(parts))

    def status(self, value: str) -> str:
        if not self._color or value not in _STATUS_COLORS:
            return value
        return f"{_STATUS_COLORS[value]}{value}{_RESET}"

    def table(
        self,
        headers: Sequence[str],
        rows: Sequence[Sequence[str]],
        *,
        title: str | None = None,
    ) -> None:
        """ASCII table padded to the widest cell per column; nothing for no rows."""
        if not rows:
            return

        widths = [len(header) for header in headers]
        for row in rows:
            for index, cell in enumerate(row[: len(headers)]):
                widths[index] = max(widths[index], len(str(cell)))

        def _pad(cells: Sequence[str]) -> str:
            padded = [
                (str(cells[index]) if index < len(cells) else "").ljust(width)
                for index, width in enumerate(widths)
            ]
            return "  ".join(padded).rstrip()

        if title:
            self.section(title)
        self._write(f"  {_pad(list(headers))}")
        self._write(f"  {'  '.join('-' * width for width in widths)}")
        for row in rows:
            self._write(f"  {_pad(list(row))}")

    def next_steps(self, steps: Sequence[str]) -> None:
        if not steps:
            return
        self.section("Next steps:")
        for step in steps:
            self._write(f"  $ {step}")

    def _out(self) -> TextIO:
        return self._stream if self._stream is not None else sys.stdout

    def _write(self, line: str) -> None:
        print(line, file=self._out())


def create_renderer(*, no_color: bool = False, verbose: bool = False) -> CLIRenderer:
    return CLIRenderer(no_color=no_color, verbose=verbose)


__all__ = ["CLIRenderer", "create_renderer"]
