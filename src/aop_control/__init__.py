"""
aop-control - control plane for multi-tier agent coding runs.

Purpose
- Package root. Exposes version metadata only; importing the package has no side effects
  (no config loading, no logging setup).

Planes
- persistence: SQLite state DB and repositories (tasks, mutations, budget requests, audit log).
- control_plane: task graph snapshots, scope control, budget arbitration, execution runtime.
- verification_plane: mutation pipeline, compliance policy, CI detection, revision flow.
- integration_plane: conflict resolution and sandboxed content access.
"""

from __future__ import annotations

__version__ = "0.1.0"

__all__ = ["__version__"]
