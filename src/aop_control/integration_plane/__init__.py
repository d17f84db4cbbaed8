"""
aop-control - integration plane

File: src/aop_control/integration_plane/__init__.py

Purpose
- Integration plane: conflict detection and resolution between agent proposals, and
  sandboxed read-only access to the target project.

Functional requirements
- Must not import ``aop_control.control_plane.restart_apply``; restart-apply depends on
  this package.
"""

from aop_control.integration_plane.conflict_resolution import (
    CONFLICT_RESOLUTION_STEP,
    DEFAULT_DISTANCE_THRESHOLD,
    ConflictResolver,
    ExecutionOutcome,
    Resolution,
    conflict_description,
    summary_status,
)
from aop_control.integration_plane.content_access import (
    ContentAccess,
    DirectoryListing,
    DirEntry,
    FileContent,
    SearchMatch,
    SearchResult,
)

__all__ = [
    "CONFLICT_RESOLUTION_STEP",
    "ConflictResolver",
    "ContentAccess",
    "DEFAULT_DISTANCE_THRESHOLD",
    "DirEntry",
    "DirectoryListing",
    "ExecutionOutcome",
    "FileContent",
    "Resolution",
    "SearchMatch",
    "SearchResult",
    "conflict_description",
    "summary_status",
]
