"""API client integrations."""

from .github_client import GitHubClient, RepoMetadata, SearchHit, SearchOutcome
from .descriptor_fetcher import DescriptorFetcher

__all__ = [
    "GitHubClient",
    "RepoMetadata",
    "SearchHit",
    "SearchOutcome",
    "DescriptorFetcher",
]
