"""Exception hierarchy for the discovery pipeline.

Per-candidate errors (search hits that fail to fetch or validate) are caught by
the pipeline and turned into report entries. Storage and configuration errors
abort the run.
"""

from __future__ import annotations

from typing import Optional


class IndexerError(Exception):
    """Base class for all marketplace indexer errors."""


class ConfigurationError(IndexerError):
    """Required configuration (credentials, backend location) is missing or invalid."""


class MaxRetriesError(IndexerError):
    """An operation kept failing after every retry attempt."""

    def __init__(self, message: str, attempts: int = 0, last_error: Optional[Exception] = None):
        super().__init__(message)
        self.attempts = attempts
        self.last_error = last_error


# ---------------------------------------------------------------------------
# External API errors
# ---------------------------------------------------------------------------


class SearchRateLimited(IndexerError):
    """The GitHub API quota is exhausted and the reset is too far away to wait for."""

    def __init__(self, message: str, reset_at: Optional[float] = None):
        super().__init__(message)
        self.reset_at = reset_at


class SearchTransient(IndexerError):
    """A recoverable API failure (5xx, network error)."""


class RepoCheckFailed(SearchTransient):
    """Repository reachability could not be determined."""


class DescriptorFetchFailed(SearchTransient):
    """Descriptor download failed for a reason other than not-found."""


# ---------------------------------------------------------------------------
# Per-repository terminal errors
# ---------------------------------------------------------------------------


class CandidateError(IndexerError):
    """A terminal failure for a single candidate repository."""

    def __init__(self, repo: str, message: str):
        super().__init__(f"{repo}: {message}")
        self.repo = repo
        self.reason = message


class DescriptorNotAccessible(CandidateError):
    """The descriptor file exists on neither the primary nor the fallback branch."""


class DescriptorMalformed(CandidateError):
    """The descriptor is not valid JSON."""


class SchemaViolation(CandidateError):
    """The descriptor parsed but does not have the required shape."""

    def __init__(self, repo: str, errors: list[str]):
        super().__init__(repo, "; ".join(errors))
        self.errors = errors


class RepoVanished(CandidateError):
    """The repository was deleted or made private after it was discovered."""


# ---------------------------------------------------------------------------
# Storage errors
# ---------------------------------------------------------------------------


class SlugConflict(IndexerError):
    """Two distinct repositories normalise to the same slug."""

    def __init__(self, slug: str, existing_repo: str, incoming_repo: str):
        super().__init__(
            f"Slug '{slug}' is claimed by both {existing_repo} and {incoming_repo}"
        )
        self.slug = slug
        self.existing_repo = existing_repo
        self.incoming_repo = incoming_repo


class StorageError(IndexerError):
    """Base class for persistence backend failures."""


class StorageReadFailure(StorageError):
    """A collection snapshot could not be loaded."""


class StorageWriteFailure(StorageError):
    """A collection snapshot could not be replaced. Prior content is untouched."""


class RunLocked(StorageError):
    """Another reconciliation run holds the lock."""
