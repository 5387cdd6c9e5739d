"""Command-line surface: argparse router and plain-text renderer."""

from dag_orchestrator.ui.cli import CLIError, build_parser, build_scheduler, main, run_cli
from dag_orchestrator.ui.render import CLIRenderer, create_renderer

__all__ = [
    "CLIError",
    "CLIRenderer",
    "build_parser",
    "build_scheduler",
    "create_renderer",
    "main",
    "run_cli",
]
