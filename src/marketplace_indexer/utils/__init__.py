"""Indexer utility modules."""

from marketplace_indexer.utils.retry import with_retry, RetryConfig
from marketplace_indexer.utils.validation import (
    is_valid_repo,
    sanitize_log_message,
    validate_repo,
)

__all__ = [
    # Retry utilities
    "with_retry",
    "RetryConfig",
    # Validation utilities
    "is_valid_repo",
    "sanitize_log_message",
    "validate_repo",
]
