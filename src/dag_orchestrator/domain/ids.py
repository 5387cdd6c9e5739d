"""Identifiers for tasks and scheduler runs.

Generated ids are ``<kind>-<ulid>``: a 48-bit millisecond timestamp followed by
80 random bits, rendered as 26 Crockford base32 characters so ids created later
sort later. Caller-supplied task ids are free-form within ``_TASK_ID_RE``.
"""

from __future__ import annotations

import re
import secrets
import time
from collections.abc import Callable
from typing import Final

CROCKFORD_BASE32_ALPHABET: Final[str] = "0123456789ABCDEFGHJKMNPQRSTVWXYZ"
ULID_LENGTH: Final[int] = 26
ULID_MAX_TIMESTAMP_MS: Final[int] = (1 << 48) - 1
_RANDOM_BYTES: Final[int] = 10
_RANDOM_BITS: Final[int] = _RANDOM_BYTES * 8

TASK_ID_PREFIX: Final[str] = "task"
RUN_ID_PREFIX: Final[str] = "run"

_TASK_ID_RE: Final[re.Pattern[str]] = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._:/@+-]{0,127}$")

Entropy = Callable[[int], bytes]


def generate_ulid(*, timestamp_ms: int | None = None, randbytes: Entropy | None = None) -> str:
    if timestamp_ms is None:
        timestamp_ms = time.time_ns() // 1_000_000
    if not 0 <= timestamp_ms <= ULID_MAX_TIMESTAMP_MS:
        raise ValueError(f"timestamp_ms out of range: {timestamp_ms}")

    entropy = bytes((randbytes or secrets.token_bytes)(_RANDOM_BYTES))
    if len(entropy) != _RANDOM_BYTES:
        raise ValueError(f"randbytes must return exactly {_RANDOM_BYTES} bytes")

    value = (timestamp_ms << _RANDOM_BITS) | int.from_bytes(entropy, "big")
    digits: list[str] = []
    for _ in range(ULID_LENGTH):
        value, digit = divmod(value, 32)
        digits.append(CROCKFORD_BASE32_ALPHABET[digit])
    return "".join(reversed(digits))


def generate_task_id(*, timestamp_ms: int | None = None, randbytes: Entropy | None = None) -> str:
    return f"{TASK_ID_PREFIX}-{generate_ulid(timestamp_ms=timestamp_ms, randbytes=randbytes)}"


def generate_run_id(*, timestamp_ms: int | None = None, randbytes: Entropy | None = None) -> str:
    return f"{RUN_ID_PREFIX}-{generate_ulid(timestamp_ms=timestamp_ms, randbytes=randbytes)}"


def validate_task_id(id_str: object) -> str:
    """Return ``id_str`` if it is usable as a task id, else raise ``ValueError``.

    Task ids start with an alphanumeric, contain no whitespace and are at most
    128 characters, so they stay safe in file names, log fields and CLI output.
    """
    if not isinstance(id_str, str):
        raise ValueError(f"task id must be a string, got {type(id_str).__name__}")
    if not _TASK_ID_RE.fullmatch(id_str):
        raise ValueError(f"invalid task id {id_str!r}")
    return id_str


__all__ = [
    "CROCKFORD_BASE32_ALPHABET",
    "RUN_ID_PREFIX",
    "TASK_ID_PREFIX",
    "ULID_LENGTH",
    "ULID_MAX_TIMESTAMP_MS",
    "Entropy",
    "generate_run_id",
    "generate_task_id",
    "generate_ulid",
    "validate_task_id",
]
