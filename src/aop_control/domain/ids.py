"""Canonical ID generation for persisted control-core entities."""

from __future__ import annotations

import secrets
import time
from collections.abc import Callable
from typing import Final

CROCKFORD_BASE32_ALPHABET: Final[str] = "0123456789ABCDEFGHJKMNPQRSTVWXYZ"
ULID_LENGTH: Final[int] = 26
ULID_RANDOM_BYTES: Final[int] = 10
ULID_MAX_TIMESTAMP_MS: Final[int] = (1 << 48) - 1
_PREFIX_SEPARATOR: Final[str] = "-"

# Stable entity ID prefixes.
TASK_ID_PREFIX: Final[str] = "task"
MUTATION_ID_PREFIX: Final[str] = "mut"
BUDGET_REQUEST_ID_PREFIX: Final[str] = "breq"

_RandBytes = Callable[[int], bytes]

__all__ = [
    "BUDGET_REQUEST_ID_PREFIX",
    "MUTATION_ID_PREFIX",
    "TASK_ID_PREFIX",
    "generate_budget_request_id",
    "generate_mutation_id",
    "generate_prefixed_id",
    "generate_task_id",
    "generate_ulid",
    "short_id",
]


def generate_ulid(
    *,
    timestamp_ms: int | None = None,
    randbytes: _RandBytes | None = None,
) -> str:
    """Generate a ULID as a 26-character uppercase Crockford Base32 string.

    ULIDs sort by creation time, so ``ORDER BY id`` breaks ``created_at`` ties stably.
    """
    ts_ms = _resolve_timestamp_ms(timestamp_ms)
    provider = secrets.token_bytes if randbytes is None else randbytes
    random_bytes = bytes(provider(ULID_RANDOM_BYTES))
    if len(random_bytes) != ULID_RANDOM_BYTES:
        raise ValueError(f"randbytes must return exactly {ULID_RANDOM_BYTES} bytes")
    ulid_value = (ts_ms << 80) | int.from_bytes(random_bytes, "big")
    return _encode_crockford_base32(ulid_value, ULID_LENGTH)


def generate_prefixed_id(prefix: str, *, timestamp_ms: int | None = None) -> str:
    """Generate a stable prefixed ID in the form ``<prefix>-<ulid>``."""
    if not prefix or _PREFIX_SEPARATOR in prefix:
        raise ValueError(f"invalid id prefix: {prefix!r}")
    return f"{prefix}{_PREFIX_SEPARATOR}{generate_ulid(timestamp_ms=timestamp_ms)}"


def generate_task_id() -> str:
    return generate_prefixed_id(TASK_ID_PREFIX)


def generate_mutation_id() -> str:
    return generate_prefixed_id(MUTATION_ID_PREFIX)


def generate_budget_request_id() -> str:
    return generate_prefixed_id(BUDGET_REQUEST_ID_PREFIX)


def short_id(id_str: str) -> str:
    """Return the last 8 characters of an ID for compact display."""
    if len(id_str) <= 8:
        return id_str
    return id_str[-8:]


def _resolve_timestamp_ms(timestamp_ms: int | None) -> int:
    resolved = time.time_ns() // 1_000_000 if timestamp_ms is None else timestamp_ms
    if not 0 <= resolved <= ULID_MAX_TIMESTAMP_MS:
        raise ValueError(
            f"timestamp_ms out of range: expected 0..{ULID_MAX_TIMESTAMP_MS}, got {resolved}"
        )
    return resolved


def _encode_crockford_base32(value: int, length: int) -> str:
    mask = 0b11111
    chars = ["0"] * length
    working = value
    for index in range(length - 1, -1, -1):
        chars[index] = CROCKFORD_BASE32_ALPHABET[working & mask]
        working >>= 5

    if working != 0:
        raise ValueError(f"value does not fit into {length} Crockford Base32 characters")
    return "".join(chars)
