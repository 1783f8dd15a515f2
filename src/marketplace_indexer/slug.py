"""Repository identifier to URL slug mapping."""

from __future__ import annotations

from typing import Iterable, Optional, Protocol, TypeVar


class _HasRepo(Protocol):
    repo: str


T = TypeVar("T", bound=_HasRepo)


def to_slug(repo: str) -> str:
    """Map ``owner/name`` to its URL-safe slug.

    Not reversible: case is lost and ``-`` is ambiguous. Look records up by
    slug with :func:`find_by_slug` instead of decoding.

    >>> to_slug("Owner/Repo-Name")
    'owner-repo-name'
    """
    return repo.replace("/", "-").lower()


def repo_key(repo: str) -> str:
    """Identity key for a repository (GitHub names are case-insensitive)."""
    return repo.strip().lower()


def find_by_slug(records: Iterable[T], slug: str) -> Optional[T]:
    """Return the first record whose repo maps to ``slug``."""
    wanted = slug.lower()
    for record in records:
        if to_slug(record.repo) == wanted:
            return record
    return None
