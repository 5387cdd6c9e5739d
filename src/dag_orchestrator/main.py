"""Process boundary for the ``dagorch`` script and ``python -m dag_orchestrator``.

Every way out of the CLI becomes one of the :class:`ExitCode` values. Errors
caused by bad configuration or bad task input (anywhere in the exception chain)
print a one-line ``error:`` message; anything else prints a traceback.
"""

from __future__ import annotations

import sys
import traceback
from collections.abc import Iterator, Sequence
from enum import IntEnum


class ExitCode(IntEnum):
    SUCCESS = 0
    RUN_FAILED = 1
    CONFIG_ERROR = 2
    INTERNAL_ERROR = 4


def cli_entrypoint(argv: Sequence[str] | None = None) -> int:
    from dag_orchestrator.ui import cli

    try:
        code: object = cli.run_cli(argv)
    except SystemExit as exc:
        # argparse: 0 after --help, 2 on usage errors.
        code = exc.code
    except Exception as exc:  # noqa: BLE001 - last stop before the shell.
        if _is_input_error(exc):
            sys.stderr.write(f"error: {str(exc).strip() or type(exc).__name__}\n")
            return ExitCode.CONFIG_ERROR
        traceback.print_exception(exc, file=sys.stderr)
        return ExitCode.INTERNAL_ERROR

    if code is None:
        return ExitCode.SUCCESS
    try:
        return ExitCode(code)
    except ValueError:
        if isinstance(code, str) and code.strip():
            sys.stderr.write(code.strip() + "\n")
        return ExitCode.INTERNAL_ERROR


def _is_input_error(exc: BaseException) -> bool:
    from dag_orchestrator.config.loader import ConfigLoadError
    from dag_orchestrator.config.schema import ConfigValidationError
    from dag_orchestrator.domain.errors import StructuralError

    input_errors = (
        ConfigLoadError,
        ConfigValidationError,
        StructuralError,
        FileNotFoundError,
        NotADirectoryError,
        PermissionError,
    )
    return any(isinstance(item, input_errors) for item in _chain(exc))


def _chain(exc: BaseException) -> Iterator[BaseException]:
    seen: set[int] = set()
    current: BaseException | None = exc
    while current is not None and id(current) not in seen:
        seen.add(id(current))
        yield current
        if current.__cause__ is not None:
            current = current.__cause__
        elif not current.__suppress_context__:
            current = current.__context__
        else:
            current = None


__all__ = ["ExitCode", "cli_entrypoint"]
