from __future__ import annotations

from typing import TYPE_CHECKING

import pytest

from aop_control.errors import ValidationError
from aop_control.verification_plane.compliance import CompliancePolicy

if TYPE_CHECKING:
    from pathlib import Path


@pytest.fixture
def policy() -> CompliancePolicy:
    return CompliancePolicy.default()


def test_default_policy_allows_python(policy: CompliancePolicy) -> None:
    assert policy.check(domain="core", file_path="src/app.py", diff_content="+x = 1") is None


def test_disallowed_extension(policy: CompliancePolicy) -> None:
    message = policy.check(domain="core", file_path="run.sh", diff_content="+echo hi")
    assert message == "File extension '.sh' is not allowed by compliance rules."


def test_conflict_markers_are_rejected(policy: CompliancePolicy) -> None:
    message = policy.check(
        domain="core", file_path="app.py", diff_content="+<<<<<<< HEAD\n+x = 1\n"
    )
    assert message == "Diff contains unresolved conflict markers."


@pytest.mark.parametrize(
    ("domain", "diff"),
    [
        ("auth", "+if debug: bypass()"),
        ("Auth", "+DISABLE_AUTH = True"),
        ("database", "+DROP TABLE users;"),
        ("database", "+TRUNCATE sessions;"),
    ],
)
def test_domain_rules_are_case_insensitive(
    policy: CompliancePolicy, domain: str, diff: str
) -> None:
    assert policy.check(domain=domain, file_path="app.py", diff_content=diff) is not None


def test_domain_rule_does_not_leak_to_other_domains(policy: CompliancePolicy) -> None:
    assert policy.check(domain="frontend", file_path="app.py", diff_content="+bypass") is None


def test_policy_from_file(tmp_path: Path) -> None:
    path = tmp_path / "policy.yaml"
    path.write_text(
        "allowed_extensions: [sh]\n"
        "domains:\n"
        "  ops:\n"
        "    forbidden_patterns: ['rm -rf']\n"
        "    message: 'Destructive shell command.'\n",
        encoding="utf-8",
    )
    policy = CompliancePolicy.load(path)

    assert policy.check(domain="ops", file_path="run.sh", diff_content="+ls") is None
    assert (
        policy.check(domain="OPS", file_path="run.sh", diff_content="+RM -RF /")
        == "Destructive shell command."
    )
    assert policy.check(domain="ops", file_path="app.py", diff_content="+x") is not None


@pytest.mark.parametrize(
    "text",
    [
        "- just a list\n",
        "allowed_extensions: []\n",
        "allowed_extensions: [py]\ndomains:\n  auth: nope\n",
        "allowed_extensions: [py]\ndomains:\n  auth:\n    forbidden_patterns: [x]\n",
        "allowed_extensions: [py\n",
    ],
)
def test_malformed_policies_are_rejected(text: str) -> None:
    with pytest.raises(ValidationError):
        CompliancePolicy.from_yaml(text)


def test_missing_policy_file_is_rejected(tmp_path: Path) -> None:
    with pytest.raises(ValidationError, match="unreadable"):
        CompliancePolicy.load(tmp_path / "absent.yaml")
