"""Utility exports for filesystem, hashing, and concurrency helpers."""

from aop_control.utils.concurrency import (
    CancellationToken,
    run_with_timeout,
)
from aop_control.utils.fs import (
    atomic_write,
    copy_tree_filtered,
    is_within,
    remove_tree,
)
from aop_control.utils.hashing import sha256_bytes, sha256_text

__all__ = [
    "CancellationToken",
    "atomic_write",
    "copy_tree_filtered",
    "is_within",
    "remove_tree",
    "run_with_timeout",
    "sha256_bytes",
    "sha256_text",
]
