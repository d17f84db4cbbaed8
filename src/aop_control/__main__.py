"""Module entrypoint for ``python -m aop_control``."""

from __future__ import annotations

from aop_control.main import cli_entrypoint

if __name__ == "__main__":
    raise SystemExit(cli_entrypoint())
