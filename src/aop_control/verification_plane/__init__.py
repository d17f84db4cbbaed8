"""
aop-control - verification plane public API.

File: src/aop_control/verification_plane/__init__.py

Purpose
- Export the mutation pipeline, mutation records service, compliance policy and the
  revision flow used by the control and integration planes.

Functional requirements
- Importing this package must not import ``aop_control.control_plane.control_scope``;
  restart-apply depends on this plane, never the reverse.
"""

from aop_control.verification_plane.ci import (
    CommandExecutor,
    CommandResult,
    CommandSpec,
    LocalSubprocessExecutor,
    detect_ci_command,
    parse_ci_command,
)
from aop_control.verification_plane.compliance import CompliancePolicy, DomainRule
from aop_control.verification_plane.mutations import MutationService, intent_hash
from aop_control.verification_plane.pipeline import (
    PIPELINE_STEPS,
    MutationPipeline,
    PipelineRunResult,
    PipelineSettings,
    resolve_target_file,
)
from aop_control.verification_plane.revision import (
    RevisionGenerator,
    RevisionResult,
    RevisionService,
)
from aop_control.verification_plane.similarity import (
    DistanceScorer,
    SimilarityScorer,
    TokenDistanceScorer,
    TokenOverlapScorer,
    semantic_distance,
)

__all__ = [
    "CommandExecutor",
    "CommandResult",
    "CommandSpec",
    "CompliancePolicy",
    "DistanceScorer",
    "DomainRule",
    "LocalSubprocessExecutor",
    "MutationPipeline",
    "MutationService",
    "PIPELINE_STEPS",
    "PipelineRunResult",
    "PipelineSettings",
    "RevisionGenerator",
    "RevisionResult",
    "RevisionService",
    "SimilarityScorer",
    "TokenDistanceScorer",
    "TokenOverlapScorer",
    "detect_ci_command",
    "intent_hash",
    "parse_ci_command",
    "resolve_target_file",
    "semantic_distance",
]
