"""Deterministic SHA-256 helpers for intents and patches."""

from __future__ import annotations

import hashlib

__all__ = [
    "sha256_bytes",
    "sha256_text",
]


def sha256_bytes(data: bytes) -> str:
    """Return SHA-256 hex digest for raw bytes."""

    return hashlib.sha256(data).hexdigest()


def sha256_text(text: str, *, encoding: str = "utf-8") -> str:
    """Return SHA-256 hex digest for text encoded with ``encoding``."""

    return sha256_bytes(text.encode(encoding))
