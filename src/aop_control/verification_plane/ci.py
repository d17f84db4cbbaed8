"""
aop-control - shadow CI command execution

File: src/aop_control/verification_plane/ci.py

Purpose
- Portable command contract (``CommandSpec`` / ``CommandResult``) and the async
  ``CommandExecutor`` protocol used to run a project's tests inside a shadow copy.
- CI command detection for a project root.

Functional requirements
- Timeouts kill the child process and report ``timed_out`` instead of raising.
- Captured output is newline-normalized, truncated and redacted before it is stored.
"""

from __future__ import annotations

import asyncio
import json
import os
import shlex
import time
from collections.abc import Mapping, Sequence
from contextlib import suppress
from dataclasses import dataclass, field
from pathlib import Path
from typing import Final, Protocol, runtime_checkable

from aop_control.security.redaction import redact_text

DEFAULT_MAX_OUTPUT_CHARS: Final[int] = 200_000


@dataclass(slots=True)
class CommandSpec:
    """Portable command invocation contract."""

    argv: tuple[str, ...]
    cwd: str | None = None
    env: Mapping[str, str] = field(default_factory=dict)
    stdin_text: str | None = None
    timeout_seconds: float | None = None
    allowed_exit_codes: tuple[int, ...] = (0,)
    inherit_env: bool = True
    label: str | None = None

    def __post_init__(self) -> None:
        argv = tuple(self.argv)
        if not argv or any(not isinstance(item, str) or not item for item in argv):
            raise ValueError("CommandSpec.argv: must be a non-empty sequence of strings")
        self.argv = argv
        if self.timeout_seconds is not None and self.timeout_seconds <= 0:
            raise ValueError("CommandSpec.timeout_seconds: must be > 0")
        self.allowed_exit_codes = tuple(self.allowed_exit_codes) or (0,)
        self.env = {str(key): str(value) for key, value in sorted(self.env.items())}

    @property
    def display(self) -> str:
        return self.label or shlex.join(self.argv)

    def resolved_timeout(self, default_timeout_seconds: float | None = None) -> float | None:
        if self.timeout_seconds is not None:
            return self.timeout_seconds
        return default_timeout_seconds

    def build_env(self) -> dict[str, str] | None:
        if self.inherit_env:
            env = dict(os.environ)
            env.update(self.env)
            return env
        return dict(self.env)

    def to_dict(self) -> dict[str, object]:
        return {
            "argv": list(self.argv),
            "cwd": self.cwd,
            "timeout_seconds": self.timeout_seconds,
            "allowed_exit_codes": list(self.allowed_exit_codes),
            "label": self.label,
        }


@dataclass(slots=True)
class CommandResult:
    """Deterministic command execution outcome."""

    argv: tuple[str, ...]
    exit_code: int | None
    stdout: str
    stderr: str
    duration_ms: int
    timed_out: bool = False
    error: str | None = None

    def __post_init__(self) -> None:
        if self.timed_out and self.exit_code is not None:
            raise ValueError("CommandResult.exit_code: must be None when timed_out is true")
        if self.duration_ms < 0:
            raise ValueError("CommandResult.duration_ms: must be >= 0")

    def is_success(self, spec: CommandSpec | None = None) -> bool:
        if self.timed_out or self.error is not None or self.exit_code is None:
            return False
        if spec is None:
            return self.exit_code == 0
        return self.exit_code in spec.allowed_exit_codes

    def summary(self, *, tail_chars: int = 2_000) -> str:
        """One block of text suitable for ``Mutation.test_result``."""

        combined = "\n".join(part for part in (self.stdout.strip(), self.stderr.strip()) if part)
        if len(combined) > tail_chars:
            combined = combined[-tail_chars:]
        if self.timed_out:
            head = self.error or "command timed out"
        elif self.error is not None:
            head = f"command failed to start: {self.error}"
        else:
            head = f"exit code {self.exit_code}"
        return f"{head}\n{combined}".rstrip()

    def to_dict(self) -> dict[str, object]:
        return {
            "argv": list(self.argv),
            "exit_code": self.exit_code,
            "stdout": self.stdout,
            "stderr": self.stderr,
            "duration_ms": self.duration_ms,
            "timed_out": self.timed_out,
            "error": self.error,
        }


@runtime_checkable
class CommandExecutor(Protocol):
    """Pluggable async command execution interface."""

    async def run(self, spec: CommandSpec) -> CommandResult: ...


class LocalSubprocessExecutor(CommandExecutor):
    """Async local subprocess executor with deterministic capture/timeout behavior."""

    def __init__(
        self,
        *,
        default_timeout_seconds: float | None = None,
        max_output_chars: int | None = DEFAULT_MAX_OUTPUT_CHARS,
    ) -> None:
        if default_timeout_seconds is not None and default_timeout_seconds <= 0:
            raise ValueError("default_timeout_seconds must be > 0")
        if max_output_chars is not None and max_output_chars <= 0:
            raise ValueError("max_output_chars must be > 0")
        self._default_timeout_seconds = default_timeout_seconds
        self._max_output_chars = max_output_chars

    async def run(self, spec: CommandSpec) -> CommandResult:
        started_ns = time.monotonic_ns()
        timeout = spec.resolved_timeout(self._default_timeout_seconds)

        try:
            process = await asyncio.create_subprocess_exec(
                *spec.argv,
                cwd=spec.cwd,
                env=spec.build_env(),
                stdin=(
                    asyncio.subprocess.PIPE
                    if spec.stdin_text is not None
                    else asyncio.subprocess.DEVNULL
                ),
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            return CommandResult(
                argv=spec.argv,
                exit_code=None,
                stdout="",
                stderr="",
                duration_ms=_elapsed_ms(started_ns),
                error=redact_text(str(exc)),
            )

        stdin_bytes = spec.stdin_text.encode("utf-8") if spec.stdin_text is not None else None

        try:
            stdout_bytes, stderr_bytes = await _communicate_with_timeout(
                process=process,
                stdin_bytes=stdin_bytes,
                timeout_seconds=timeout,
            )
            timed_out = False
            error_text: str | None = None
            exit_code = process.returncode
        except _CommandTimeoutError as exc:
            stdout_bytes = exc.stdout
            stderr_bytes = exc.stderr
            timed_out = True
            timeout_value = timeout if timeout is not None else 0.0
            error_text = f"command timed out after {timeout_value:.3f}s"
            exit_code = None

        return CommandResult(
            argv=spec.argv,
            exit_code=exit_code,
            stdout=redact_text(
                _truncate_text(_normalize_output_text(stdout_bytes), self._max_output_chars)
            ),
            stderr=redact_text(
                _truncate_text(_normalize_output_text(stderr_bytes), self._max_output_chars)
            ),
            duration_ms=_elapsed_ms(started_ns),
            timed_out=timed_out,
            error=error_text,
        )


def parse_ci_command(command: str | Sequence[str] | None) -> tuple[str, ...] | None:
    """Normalize a configured CI command (string or argv list); blank means none."""

    if command is None:
        return None
    if isinstance(command, str):
        argv = tuple(shlex.split(command))
    else:
        argv = tuple(str(item) for item in command if str(item).strip())
    return argv or None


def detect_ci_command(project_root: Path) -> CommandSpec | None:
    """Infer a test command from the project's manifest files, or ``None``."""

    pyproject = project_root / "pyproject.toml"
    if (
        (pyproject.is_file() and "pytest" in _read_text(pyproject))
        or (project_root / "pytest.ini").is_file()
        or (project_root / "tests").is_dir()
    ):
        return CommandSpec(argv=("pytest", "-q"), label="pytest -q")

    package_json = project_root / "package.json"
    if package_json.is_file():
        try:
            parsed = json.loads(_read_text(package_json) or "{}")
        except json.JSONDecodeError:
            parsed = {}
        scripts = parsed.get("scripts") if isinstance(parsed, dict) else None
        test_script = scripts.get("test") if isinstance(scripts, dict) else None
        if isinstance(test_script, str) and test_script.strip():
            return CommandSpec(argv=("npm", "test"), label="npm test")

    if (project_root / "Cargo.toml").is_file():
        return CommandSpec(argv=("cargo", "test", "--quiet"), label="cargo test --quiet")
    return None


def _read_text(path: Path) -> str:
    try:
        return path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError):
        return ""


@dataclass(slots=True)
class _CommandTimeoutError(Exception):
    stdout: bytes
    stderr: bytes


async def _communicate_with_timeout(
    *,
    process: asyncio.subprocess.Process,
    stdin_bytes: bytes | None,
    timeout_seconds: float | None,
) -> tuple[bytes, bytes]:
    try:
        if timeout_seconds is None:
            return await process.communicate(stdin_bytes)
        return await asyncio.wait_for(process.communicate(stdin_bytes), timeout=timeout_seconds)
    except TimeoutError as exc:
        with suppress(ProcessLookupError):
            process.kill()
        stdout_bytes, stderr_bytes = await process.communicate()
        raise _CommandTimeoutError(stdout=stdout_bytes, stderr=stderr_bytes) from exc
    except asyncio.CancelledError:
        with suppress(ProcessLookupError):
            process.kill()
        await process.communicate()
        raise


def _elapsed_ms(started_ns: int) -> int:
    delta_ns = time.monotonic_ns() - started_ns
    if delta_ns < 0:
        return 0
    return delta_ns // 1_000_000


def _normalize_output_text(raw: bytes) -> str:
    text = raw.decode("utf-8", errors="replace")
    return text.replace("\r\n", "\n").replace("\r", "\n")


def _truncate_text(text: str, max_chars: int | None) -> str:
    if max_chars is None or len(text) <= max_chars:
        return text
    omitted = len(text) - max_chars
    return f"{text[:max_chars]}\n...[truncated {omitted} chars]"


__all__ = [
    "CommandExecutor",
    "CommandResult",
    "CommandSpec",
    "LocalSubprocessExecutor",
    "detect_ci_command",
    "parse_ci_command",
]
