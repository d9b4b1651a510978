"""Checks for identifiers that end up in remote shell commands and paths.

Sandbox IDs are interpolated into Redis keys and provider URLs; repository
names become directory names and tmux session names inside the sandbox.
Anything outside these character sets is rejected rather than escaped.
"""

from __future__ import annotations

import re

SANDBOX_ID_PATTERN = re.compile(r"^[A-Za-z0-9_-]+$")
REPOSITORY_NAME_PATTERN = re.compile(r"^[A-Za-z0-9._-]+$")

_UNSAFE_NAME_CHARS = re.compile(r"[^A-Za-z0-9._-]")


class ValidationError(ValueError):
    """An identifier failed validation. Maps to HTTP 400."""


def _require(value: str, pattern: re.Pattern[str], label: str) -> str:
    if not value:
        raise ValidationError(f"Invalid {label}: cannot be empty")
    if pattern.fullmatch(value) is None:
        raise ValidationError(f"Invalid {label}: contains unsafe characters")
    return value


def validate_id(value: str, id_type: str = "ID") -> str:
    """Return value unchanged if it is a non-empty [A-Za-z0-9_-] identifier.

    Raises:
        ValidationError: If value is empty or has any other character
    """
    return _require(value, SANDBOX_ID_PATTERN, id_type)


def validate_sandbox_id(sandbox_id: str) -> str:
    return validate_id(sandbox_id, "sandbox_id")


def validate_repository_name(name: str) -> str:
    """Like validate_id, but dots are allowed; "." and ".." are not."""
    if name in (".", ".."):
        raise ValidationError("Invalid repository name: cannot be empty")
    return _require(name, REPOSITORY_NAME_PATTERN, "repository name")


def sanitize_repository_name(name: str) -> str:
    """Map a free-form name onto the repository name character set."""
    cleaned = _UNSAFE_NAME_CHARS.sub("-", name.strip()).strip(".")
    return cleaned or "workspace"
