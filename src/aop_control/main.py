"""Executable CLI entrypoint for ``aop_control``."""

from __future__ import annotations

import sys
import traceback
from enum import IntEnum
from typing import TYPE_CHECKING

from aop_control.config.loader import ConfigLoadError
from aop_control.config.schema import ConfigValidationError
from aop_control.errors import (
    InvalidTransitionError,
    MutationBusyError,
    SecurityViolation,
    ValidationError,
)

if TYPE_CHECKING:
    from collections.abc import Sequence


class ExitCode(IntEnum):
    """Process exit-code contract."""

    SUCCESS = 0
    CONFIG_ERROR = 2
    VALIDATION_ERROR = 3
    SECURITY_VIOLATION = 4
    CONFLICT = 5
    INTERNAL_ERROR = 70


_KNOWN_CODES = frozenset(int(code) for code in ExitCode)


def cli_entrypoint(argv: Sequence[str] | None = None) -> int:
    """Entrypoint used by ``python -m aop_control`` and the ``aop`` script."""

    try:
        from aop_control.ui.cli import run_cli

        return _normalize_exit_code(run_cli(argv))
    except SystemExit as exc:
        return _normalize_exit_code(exc.code)
    except KeyboardInterrupt:
        _write_stderr("interrupted")
        return 130
    except Exception as exc:  # noqa: BLE001 - CLI boundary normalization.
        exit_code = route_exception(exc)
        _emit_failure(exc, exit_code)
        return int(exit_code)


def route_exception(exc: BaseException) -> ExitCode:
    """Map an exception (or anything in its cause chain) to an exit code."""

    for item in _iter_exception_chain(exc):
        if isinstance(item, SecurityViolation):
            return ExitCode.SECURITY_VIOLATION
    for item in _iter_exception_chain(exc):
        if isinstance(item, (ConfigLoadError, ConfigValidationError)):
            return ExitCode.CONFIG_ERROR
        if isinstance(item, (InvalidTransitionError, MutationBusyError)):
            return ExitCode.CONFLICT
        # Model constructors raise plain ValueError for malformed fields.
        if isinstance(item, (ValidationError, ValueError)):
            return ExitCode.VALIDATION_ERROR
    return ExitCode.INTERNAL_ERROR


def _normalize_exit_code(raw_code: object) -> int:
    if isinstance(raw_code, int) and raw_code in _KNOWN_CODES:
        return raw_code
    if raw_code is None:
        return int(ExitCode.SUCCESS)
    if isinstance(raw_code, str) and raw_code.strip():
        _write_stderr(raw_code.strip())
    return int(ExitCode.INTERNAL_ERROR)


def _iter_exception_chain(exc: BaseException) -> list[BaseException]:
    seen: set[int] = set()
    items: list[BaseException] = []
    current: BaseException | None = exc
    while current is not None:
        marker = id(current)
        if marker in seen:
            break
        seen.add(marker)
        items.append(current)
        if current.__cause__ is not None:
            current = current.__cause__
            continue
        if current.__context__ is not None and not current.__suppress_context__:
            current = current.__context__
            continue
        break
    return items


def _emit_failure(exc: BaseException, exit_code: ExitCode) -> None:
    if exit_code is ExitCode.INTERNAL_ERROR:
        traceback.print_exception(type(exc), exc, exc.__traceback__, file=sys.stderr)
        return
    _write_stderr(f"error: {str(exc).strip() or exc.__class__.__name__}")


def _write_stderr(message: str) -> None:
    sys.stderr.write(message.rstrip("\n") + "\n")


__all__ = ["ExitCode", "cli_entrypoint", "route_exception"]
