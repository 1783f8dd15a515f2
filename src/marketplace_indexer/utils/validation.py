"""Input validation and log sanitisation helpers."""

from __future__ import annotations

import re

_REPO_RE = re.compile(r"^[A-Za-z0-9_.-]+/[A-Za-z0-9_.-]+$")

# GitHub token formats plus generic bearer/basic credentials
_SECRET_PATTERNS = [
    (re.compile(r"\b(ghp|gho|ghu|ghs|ghr)_[A-Za-z0-9]{20,}\b"), "[REDACTED_GITHUB_TOKEN]"),
    (re.compile(r"\bgithub_pat_[A-Za-z0-9_]{20,}\b"), "[REDACTED_GITHUB_TOKEN]"),
    (re.compile(r"(?i)\b(bearer|token)\s+[A-Za-z0-9._\-]{16,}"), r"\1 [REDACTED]"),
    (re.compile(r"(?i)(authorization[\"']?\s*[:=]\s*[\"']?)[^\s\"',]+"), r"\1[REDACTED]"),
]


def sanitize_log_message(message: str) -> str:
    """Redact credentials from a log message."""
    for pattern, replacement in _SECRET_PATTERNS:
        message = pattern.sub(replacement, message)
    return message


def is_valid_repo(repo: str) -> bool:
    """Check that ``repo`` looks like ``owner/name``."""
    return bool(_REPO_RE.match(repo or ""))


def validate_repo(repo: str) -> str:
    """Return the stripped repo identifier or raise ValueError."""
    value = (repo or "").strip().strip("/")
    if value.endswith(".git"):
        value = value[: -len(".git")]
    if not is_valid_repo(value):
        raise ValueError(f"Invalid repository identifier: {repo!r} (expected owner/name)")
    return value
