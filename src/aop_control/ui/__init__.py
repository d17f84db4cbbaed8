"""UI package exports for the CLI router and its renderer."""

from aop_control.ui.cli import CLIError, build_parser, run_cli
from aop_control.ui.render import CLIRenderer, create_renderer

__all__ = [
    "CLIError",
    "CLIRenderer",
    "build_parser",
    "create_renderer",
    "run_cli",
]
