from __future__ import annotations

import json
import sys
from typing import TYPE_CHECKING

import pytest

from aop_control.verification_plane.ci import (
    CommandResult,
    CommandSpec,
    LocalSubprocessExecutor,
    detect_ci_command,
    parse_ci_command,
)
from aop_control.verification_plane.similarity import (
    TokenDistanceScorer,
    TokenOverlapScorer,
    cosine_similarity,
    semantic_distance,
    tokenize,
)

if TYPE_CHECKING:
    from pathlib import Path


def test_tokenize_splits_camel_case_and_drops_short_tokens() -> None:
    assert tokenize("parseHTTPRequest a b2 x") == ["parse", "httprequest", "b2"]
    assert tokenize("greetingHelper_v2") == ["greeting", "helper", "v2"]


def test_cosine_similarity_bounds() -> None:
    assert cosine_similarity("add greeting helper", "add greeting helper") == pytest.approx(1.0)
    assert cosine_similarity("alpha beta", "gamma delta") == 0.0
    assert cosine_similarity("", "anything") == 0.0


def test_distance_is_complement_of_similarity() -> None:
    text_a = "rename the login handler"
    text_b = "rename login controller"
    assert semantic_distance(text_a, text_b) == pytest.approx(
        1.0 - cosine_similarity(text_a, text_b)
    )
    assert TokenDistanceScorer().distance("x", "") == 1.0
    assert TokenOverlapScorer().score("same words", "same words") == pytest.approx(1.0)


def test_parse_ci_command() -> None:
    assert parse_ci_command("pytest -q -k 'not slow'") == ("pytest", "-q", "-k", "not slow")
    assert parse_ci_command(["npm", "", "test"]) == ("npm", "test")
    assert parse_ci_command("   ") is None
    assert parse_ci_command(None) is None


def test_detect_ci_command(tmp_path: Path) -> None:
    assert detect_ci_command(tmp_path) is None

    (tmp_path / "Cargo.toml").write_text("[package]\n", encoding="utf-8")
    cargo = detect_ci_command(tmp_path)
    assert cargo is not None and cargo.argv == ("cargo", "test", "--quiet")

    (tmp_path / "package.json").write_text(
        json.dumps({"scripts": {"test": "vitest"}}), encoding="utf-8"
    )
    npm = detect_ci_command(tmp_path)
    assert npm is not None and npm.argv == ("npm", "test")

    (tmp_path / "tests").mkdir()
    python = detect_ci_command(tmp_path)
    assert python is not None and python.display == "pytest -q"


def test_package_json_without_test_script_is_ignored(tmp_path: Path) -> None:
    (tmp_path / "package.json").write_text("{not json", encoding="utf-8")
    assert detect_ci_command(tmp_path) is None


def test_command_spec_validation() -> None:
    with pytest.raises(ValueError):
        CommandSpec(argv=())
    with pytest.raises(ValueError):
        CommandSpec(argv=("x",), timeout_seconds=0)
    spec = CommandSpec(argv=["make", "test"], allowed_exit_codes=(0, 5))  # type: ignore[arg-type]
    assert spec.argv == ("make", "test")
    assert CommandResult(("make",), 5, "", "", 1).is_success(spec)
    assert not CommandResult(("make",), 5, "", "", 1).is_success()


def test_command_result_summary_keeps_tail() -> None:
    result = CommandResult(("t",), 1, "a" * 50, "boom", 3)
    summary = result.summary(tail_chars=10)
    assert summary.startswith("exit code 1\n")
    assert summary.endswith("boom")
    with pytest.raises(ValueError):
        CommandResult(("t",), 0, "", "", 1, timed_out=True)


@pytest.mark.asyncio
async def test_local_executor_captures_output(tmp_path: Path) -> None:
    executor = LocalSubprocessExecutor(default_timeout_seconds=30)
    spec = CommandSpec(
        argv=(sys.executable, "-c", "import sys; print('out'); print('err', file=sys.stderr)"),
        cwd=str(tmp_path),
    )
    result = await executor.run(spec)

    assert result.exit_code == 0
    assert result.stdout.strip() == "out"
    assert result.stderr.strip() == "err"
    assert result.is_success(spec)


@pytest.mark.asyncio
async def test_local_executor_reports_timeout(tmp_path: Path) -> None:
    executor = LocalSubprocessExecutor()
    spec = CommandSpec(
        argv=(sys.executable, "-c", "import time; time.sleep(10)"),
        cwd=str(tmp_path),
        timeout_seconds=0.2,
    )
    result = await executor.run(spec)

    assert result.timed_out
    assert result.exit_code is None
    assert not result.is_success(spec)


@pytest.mark.asyncio
async def test_local_executor_reports_missing_binary(tmp_path: Path) -> None:
    result = await LocalSubprocessExecutor().run(
        CommandSpec(argv=("definitely-not-a-real-binary-aop",), cwd=str(tmp_path))
    )
    assert result.error is not None
    assert result.exit_code is None
