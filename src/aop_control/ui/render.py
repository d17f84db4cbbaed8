"""Output rendering for the aop CLI.

File: src/aop_control/ui/render.py

Purpose
- Thin rendering layer over a ``rich`` console: headings, key/value pairs, tables and
  status lines.
- Respect the NO_COLOR environment variable and the --no-color CLI flag.
"""

from __future__ import annotations

import json
import os
import sys
from collections.abc import Mapping, Sequence
from typing import TextIO

from rich.console import Console
from rich.table import Table
from rich.text import Text


def _color_allowed(no_color_flag: bool, stream: TextIO) -> bool:
    if no_color_flag:
        return False
    if os.environ.get("NO_COLOR", ""):
        return False
    return hasattr(stream, "isatty") and stream.isatty()


class CLIRenderer:
    """CLI output renderer; plain text whenever color is off or stdout is not a TTY."""

    def __init__(
        self, *, no_color: bool = False, verbose: bool = False, stream: TextIO | None = None
    ) -> None:
        target = stream if stream is not None else sys.stdout
        self.verbose = verbose
        self._color = _color_allowed(no_color, target)
        self._console = Console(
            file=target,
            no_color=not self._color,
            highlight=False,
            soft_wrap=True,
            force_terminal=self._color or None,
        )

    def heading(self, text: str) -> None:
        self._console.print(Text(text, style="bold"))

    def kv(self, key: str, value: object) -> None:
        line = Text()
        line.append(f"{key}: ", style="cyan")
        line.append("-" if value is None else str(value))
        self._console.print(line)

    def text(self, line: str) -> None:
        self._console.print(Text(line))

    def blank(self) -> None:
        self._console.print()

    def section(self, title: str) -> None:
        self._console.print()
        self._console.print(Text(title, style="bold"))

    def warning(self, text: str) -> None:
        self._console.print(Text(f"  Warning: {text}", style="yellow"))

    def items(self, entries: Sequence[str], *, prefix: str = "- ") -> None:
        for entry in entries:
            self._console.print(Text(f"  {prefix}{entry}"))

    def table(
        self,
        headers: Sequence[str],
        rows: Sequence[Sequence[object]],
        *,
        title: str | None = None,
    ) -> None:
        if not rows:
            return
        if title:
            self.section(title)
        table = Table(show_edge=False, box=None, pad_edge=False, header_style="bold")
        for header in headers:
            table.add_column(header)
        for row in rows:
            table.add_row(*("-" if cell is None else str(cell) for cell in row))
        self._console.print(table)

    def ok(self, label: str) -> None:
        self._console.print(Text(f"  OK  {label}", style="green"))

    def fail(self, label: str) -> None:
        self._console.print(Text(f"  FAIL  {label}", style="red"))

    def json(self, payload: Mapping[str, object] | Sequence[object]) -> None:
        """Deterministic JSON, written without any styling."""

        self._console.file.write(
            json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False)
            + "\n"
        )


def create_renderer(
    *, no_color: bool = False, verbose: bool = False, stream: TextIO | None = None
) -> CLIRenderer:
    return CLIRenderer(no_color=no_color, verbose=verbose, stream=stream)


__all__ = ["CLIRenderer", "create_renderer"]
