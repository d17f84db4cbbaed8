"""Compliance rules applied to a mutation before it may touch a shadow copy.

Rules are data: a YAML policy lists the allowed file extensions, the merge conflict markers
that must not appear in a diff, and per-domain forbidden substrings. The packaged
``compliance_policy.yaml`` is the default; a project may point ``pipeline.compliance_policy_path``
at its own file.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from importlib import resources
from pathlib import Path, PurePosixPath
from typing import Final

import yaml

from aop_control.errors import ValidationError

DEFAULT_POLICY_RESOURCE: Final[str] = "compliance_policy.yaml"
CONFLICT_MARKER_MESSAGE: Final[str] = "Diff contains unresolved conflict markers."
COMPLIANCE_PASSED_MESSAGE: Final[str] = "Compliance checks passed."


@dataclass(frozen=True, slots=True)
class DomainRule:
    domain: str
    forbidden_patterns: tuple[str, ...]
    message: str


@dataclass(frozen=True, slots=True)
class CompliancePolicy:
    allowed_extensions: frozenset[str]
    conflict_markers: tuple[str, ...] = ("<<<<<<<", ">>>>>>>")
    domain_rules: Mapping[str, DomainRule] = field(default_factory=dict)

    @classmethod
    def default(cls) -> CompliancePolicy:
        text = resources.files("aop_control.verification_plane").joinpath(
            DEFAULT_POLICY_RESOURCE
        ).read_text(encoding="utf-8")
        return cls.from_yaml(text, source=DEFAULT_POLICY_RESOURCE)

    @classmethod
    def load(cls, path: Path | None) -> CompliancePolicy:
        if path is None:
            return cls.default()
        try:
            text = path.read_text(encoding="utf-8")
        except OSError as exc:
            raise ValidationError(f"compliance policy {path}: unreadable ({exc})") from exc
        return cls.from_yaml(text, source=str(path))

    @classmethod
    def from_yaml(cls, text: str, *, source: str = "<string>") -> CompliancePolicy:
        try:
            data = yaml.safe_load(text)
        except yaml.YAMLError as exc:
            raise ValidationError(f"compliance policy {source}: invalid YAML ({exc})") from exc
        if not isinstance(data, dict):
            raise ValidationError(
                f"compliance policy {source}: root must be a mapping, got {type(data).__name__}"
            )
        return cls.from_mapping(data, source=source)

    @classmethod
    def from_mapping(cls, data: Mapping[str, object], *, source: str) -> CompliancePolicy:
        extensions = _string_list(data.get("allowed_extensions"), f"{source}.allowed_extensions")
        if not extensions:
            raise ValidationError(f"{source}.allowed_extensions: must not be empty")
        markers = _string_list(
            data.get("conflict_markers", ["<<<<<<<", ">>>>>>>"]), f"{source}.conflict_markers"
        )

        raw_domains = data.get("domains", {})
        if not isinstance(raw_domains, dict):
            raise ValidationError(f"{source}.domains: expected mapping")
        rules: dict[str, DomainRule] = {}
        for name, payload in sorted(raw_domains.items()):
            path = f"{source}.domains.{name}"
            if not isinstance(payload, dict):
                raise ValidationError(f"{path}: expected mapping")
            message = payload.get("message")
            if not isinstance(message, str) or not message.strip():
                raise ValidationError(f"{path}.message: is required")
            domain = str(name).strip().lower()
            rules[domain] = DomainRule(
                domain=domain,
                forbidden_patterns=tuple(
                    item.lower()
                    for item in _string_list(
                        payload.get("forbidden_patterns"), f"{path}.forbidden_patterns"
                    )
                ),
                message=message.strip(),
            )

        return cls(
            allowed_extensions=frozenset(item.lower().lstrip(".") for item in extensions),
            conflict_markers=tuple(markers),
            domain_rules=rules,
        )

    def check(self, *, domain: str, file_path: str, diff_content: str) -> str | None:
        """Return the first violation message, or ``None`` when compliant."""

        extension = PurePosixPath(file_path.replace("\\", "/")).suffix.lstrip(".").lower()
        if extension not in self.allowed_extensions:
            return f"File extension '.{extension}' is not allowed by compliance rules."

        lowered = diff_content.lower()
        if any(marker.lower() in lowered for marker in self.conflict_markers):
            return CONFLICT_MARKER_MESSAGE

        rule = self.domain_rules.get(domain.strip().lower())
        if rule is not None and any(pattern in lowered for pattern in rule.forbidden_patterns):
            return rule.message
        return None


def _string_list(value: object, path: str) -> list[str]:
    if value is None:
        return []
    if not isinstance(value, list) or any(not isinstance(item, str) for item in value):
        raise ValidationError(f"{path}: expected a list of strings")
    return [item for item in value if item.strip()]


__all__ = [
    "COMPLIANCE_PASSED_MESSAGE",
    "CompliancePolicy",
    "DomainRule",
]
