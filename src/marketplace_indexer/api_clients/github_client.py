"""GitHub API client wrapper with sync and async support."""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional

import requests
from github import Auth, Github, GithubException, RateLimitExceededException
from github import UnknownObjectException

from marketplace_indexer.config import Settings, get_settings
from marketplace_indexer.errors import (
    ConfigurationError,
    MaxRetriesError,
    RepoCheckFailed,
    RepoVanished,
    SearchRateLimited,
    SearchTransient,
)
from marketplace_indexer.descriptor import (
    DESCRIPTOR_DIR,
    DESCRIPTOR_FILENAME,
    DESCRIPTOR_PATH,
    is_descriptor_path,
)
from marketplace_indexer.rate_limit import RateBudget
from marketplace_indexer.utils.retry import with_retry

logger = logging.getLogger(__name__)

SEARCH_QUERY = f"filename:{DESCRIPTOR_FILENAME} path:{DESCRIPTOR_DIR}"

# Statuses meaning "the repository is gone or hidden from us"
_INACCESSIBLE_STATUSES = {403, 404, 410, 451}


@dataclass(frozen=True)
class SearchHit:
    """A candidate descriptor found by code search."""

    repo: str
    path: str


@dataclass
class SearchOutcome:
    """Result of a (possibly truncated) code search."""

    hits: List[SearchHit] = field(default_factory=list)
    pages_fetched: int = 0
    raw_results: int = 0
    truncated: bool = False
    truncation_reason: Optional[str] = None

    @property
    def repos(self) -> List[str]:
        return [hit.repo for hit in self.hits]

    def truncate(self, reason: str) -> None:
        self.truncated = True
        self.truncation_reason = reason


@dataclass
class RepoMetadata:
    description: str = ""
    stars: Optional[int] = None


class GitHubClient:
    """Wrapper for GitHub API with sync and async support.

    Async methods are suffixed with '_async' (e.g., is_accessible_async).
    PyGithub has no native async support, so async methods use
    asyncio.to_thread() to run sync calls in a thread pool.

    Every API call first passes the shared :class:`RateBudget`, and quota
    headers from each response are fed back into it.
    """

    def __init__(
        self,
        token: Optional[str] = None,
        budget: Optional[RateBudget] = None,
        settings: Optional[Settings] = None,
        client: Optional[Github] = None,
        retry_attempts: int = 3,
        retry_base_delay: float = 1.0,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.time,
    ):
        self.settings = settings or get_settings()
        self._clock = clock
        self.token = token if token is not None else self.settings.github_token
        self.budget = budget or RateBudget(
            max_concurrency=self.settings.max_concurrency,
            max_wait=self.settings.rate_limit_max_wait,
            reserve=self.settings.rate_limit_reserve,
        )
        if client is not None:
            self.client = client
        else:
            auth = Auth.Token(self.token) if self.token else None
            self.client = Github(
                auth=auth,
                base_url=self.settings.github_api_url,
                per_page=self.settings.search_per_page,
                timeout=int(self.settings.request_timeout),
            )
        self._repo_cache: Dict[str, object] = {}
        self._get_page = with_retry(
            max_retries=retry_attempts,
            base_delay=retry_base_delay,
            retry_on=(SearchTransient,),
            sleep=sleep,
        )(self._get_page_once)

    def is_configured(self) -> bool:
        """Check if an API token is configured (required for code search)."""
        return bool(self.token)

    # -------------------------------------------------------------------------
    # Code search
    # -------------------------------------------------------------------------

    def search_marketplaces(
        self,
        max_pages: Optional[int] = None,
        per_page: Optional[int] = None,
        limit: Optional[int] = None,
        deadline: Optional[float] = None,
    ) -> SearchOutcome:
        """Search for marketplace descriptors, one page at a time.

        Rate limiting and exhausted retries never raise: the outcome is
        returned with what was collected so far and marked truncated.

        Args:
            max_pages: Page cap (default from settings, at most 10)
            per_page: Results per page (default from settings, at most 100)
            limit: Stop once this many distinct repositories are collected
            deadline: Epoch time after which no further page is requested

        Raises:
            ConfigurationError: no API token configured
        """
        if not self.is_configured():
            raise ConfigurationError(
                "GitHub code search requires a token; set GITHUB_TOKEN"
            )

        max_pages = max_pages or self.settings.search_max_pages
        per_page = per_page or self.settings.search_per_page
        outcome = SearchOutcome()
        seen: dict[str, int] = {}
        results = self.client.search_code(SEARCH_QUERY)

        for page in range(max_pages):
            if limit is not None and len(outcome.hits) >= limit:
                outcome.truncate(f"candidate limit of {limit} reached")
                break
            if deadline is not None and self._clock() >= deadline:
                outcome.truncate("time budget exhausted during search")
                break

            try:
                items = self._fetch_search_page(results, page)
            except SearchRateLimited as e:
                logger.warning("Search stopped on page %d: %s", page + 1, e)
                outcome.truncate(f"rate limited on page {page + 1}: {e}")
                break
            except MaxRetriesError as e:
                logger.warning("Search stopped on page %d: %s", page + 1, e)
                outcome.truncate(f"page {page + 1} failed after retries: {e.last_error}")
                break
            except GithubException as e:
                logger.error("Search page %d rejected: %s", page + 1, e)
                outcome.truncate(f"page {page + 1} rejected with status {e.status}")
                break

            outcome.pages_fetched += 1
            outcome.raw_results += len(items)
            for item in items:
                repo = item.repository.full_name
                if not is_descriptor_path(item.path):
                    continue
                key = repo.lower()
                hit = SearchHit(repo=repo, path=item.path.strip("/"))
                if key in seen:
                    # A repo can ship nested descriptors too; the root one wins
                    index = seen[key]
                    if hit.path == DESCRIPTOR_PATH and outcome.hits[index].path != DESCRIPTOR_PATH:
                        outcome.hits[index] = hit
                    continue
                seen[key] = len(outcome.hits)
                outcome.hits.append(hit)
                if limit is not None and len(outcome.hits) >= limit:
                    break

            logger.info(
                "Search page %d: %d results, %d candidates so far",
                page + 1,
                len(items),
                len(outcome.hits),
                extra={"page": page + 1, "count": len(outcome.hits)},
            )
            if len(items) < per_page:
                break
        else:
            outcome.truncate(
                f"search result cap of {max_pages * per_page} reached"
            )

        if limit is not None and len(outcome.hits) > limit:
            outcome.hits = outcome.hits[:limit]
        return outcome

    def _fetch_search_page(self, results, page: int) -> list:
        """Fetch one page, waiting out a short rate limit once."""
        for attempt in range(2):
            self.budget.wait_sync()
            try:
                return self._get_page(results, page)
            except RateLimitExceededException as e:
                reset_at = _reset_time(e)
                self.budget.mark_exhausted(reset_at)
                if attempt == 0 and reset_at is not None:
                    continue
                raise SearchRateLimited(
                    f"GitHub search rate limit hit (status {e.status})",
                    reset_at=reset_at,
                ) from e
        raise SearchRateLimited("GitHub search rate limit persisted after waiting")

    def _get_page_once(self, results, page: int) -> list:
        try:
            items = list(results.get_page(page))
        except RateLimitExceededException:
            raise
        except GithubException as e:
            if e.status is not None and e.status >= 500:
                raise SearchTransient(f"GitHub search returned {e.status}") from e
            raise
        except requests.exceptions.RequestException as e:
            raise SearchTransient(f"GitHub search request failed: {e}") from e
        self._record_rate_limit()
        return items

    # -------------------------------------------------------------------------
    # Repository lookups
    # -------------------------------------------------------------------------

    def is_accessible(self, repo: str) -> bool:
        """Check that a repository exists and is public.

        Returns False for confirmed-gone repositories (404, 451, private).

        Raises:
            RepoCheckFailed: the check itself failed (5xx, network, rate limit)
        """
        try:
            self.budget.wait_sync()
            gh_repo = self.client.get_repo(repo)
        except RateLimitExceededException as e:
            self.budget.mark_exhausted(_reset_time(e))
            raise RepoCheckFailed(f"{repo}: rate limited during reachability check") from e
        except SearchRateLimited as e:
            raise RepoCheckFailed(f"{repo}: {e}") from e
        except UnknownObjectException:
            return False
        except GithubException as e:
            if e.status in _INACCESSIBLE_STATUSES:
                return False
            raise RepoCheckFailed(f"{repo}: GitHub returned {e.status}") from e
        except requests.exceptions.RequestException as e:
            raise RepoCheckFailed(f"{repo}: {e}") from e

        self._record_rate_limit()
        if getattr(gh_repo, "private", False) is True:
            return False
        self._repo_cache[repo.lower()] = gh_repo
        return True

    def require_accessible(self, repo: str) -> None:
        """Like :meth:`is_accessible`, but raise for a confirmed-gone repository.

        Raises:
            RepoVanished: deleted, private or renamed since discovery
            RepoCheckFailed: the check itself failed
        """
        if not self.is_accessible(repo):
            raise RepoVanished(repo, "repository is not accessible (deleted, private or renamed)")

    def get_repo_metadata(self, repo: str) -> RepoMetadata:
        """Description and star count, best-effort (never raises)."""
        gh_repo = self._repo_cache.get(repo.lower())
        if gh_repo is None:
            try:
                self.budget.wait_sync()
                gh_repo = self.client.get_repo(repo)
                self._record_rate_limit()
            except (GithubException, SearchRateLimited, requests.exceptions.RequestException) as e:
                logger.debug("Metadata lookup failed for %s: %s", repo, e)
                return RepoMetadata()
            self._repo_cache[repo.lower()] = gh_repo

        description = getattr(gh_repo, "description", None)
        stars = getattr(gh_repo, "stargazers_count", None)
        return RepoMetadata(
            description=description if isinstance(description, str) else "",
            stars=stars if isinstance(stars, int) else None,
        )

    def get_description(self, repo: str) -> str:
        """Repository description, or "" on any failure."""
        return self.get_repo_metadata(repo).description

    def get_stars(self, repo: str) -> Optional[int]:
        """Star count, or None on any failure."""
        return self.get_repo_metadata(repo).stars

    def _record_rate_limit(self) -> None:
        """Feed the last response's quota headers into the shared budget.

        Only called after a successful request, when PyGithub already holds
        the values from the response headers.
        """
        quota = getattr(self.client, "rate_limiting", None)
        if not (
            isinstance(quota, tuple)
            and len(quota) == 2
            and all(isinstance(v, int) for v in quota)
            and quota[0] >= 0
        ):
            return
        reset = getattr(self.client, "rate_limiting_resettime", None)
        remaining, limit = quota
        self.budget.update(
            remaining, reset if isinstance(reset, (int, float)) else None, limit
        )

    # -------------------------------------------------------------------------
    # Async Methods (using asyncio.to_thread for compatibility)
    # -------------------------------------------------------------------------

    async def search_marketplaces_async(self, **kwargs) -> SearchOutcome:
        """Search for marketplace descriptors (async).

        Pages are still fetched sequentially; each page depends on the last.
        """
        return await asyncio.to_thread(lambda: self.search_marketplaces(**kwargs))

    async def is_accessible_async(self, repo: str) -> bool:
        """Check repository reachability (async)."""
        return await asyncio.to_thread(self.is_accessible, repo)

    async def require_accessible_async(self, repo: str) -> None:
        """Require repository reachability (async)."""
        await asyncio.to_thread(self.require_accessible, repo)

    async def get_description_async(self, repo: str) -> str:
        """Get repository description (async)."""
        return await asyncio.to_thread(self.get_description, repo)

    async def get_repo_metadata_async(self, repo: str) -> RepoMetadata:
        """Get repository description and stars (async)."""
        return await asyncio.to_thread(self.get_repo_metadata, repo)


def _reset_time(error: GithubException) -> Optional[float]:
    headers = getattr(error, "headers", None) or {}
    for key, value in headers.items():
        if key.lower() == "x-ratelimit-reset":
            try:
                return float(value)
            except (TypeError, ValueError):
                return None
        if key.lower() == "retry-after":
            try:
                return time.time() + float(value)
            except (TypeError, ValueError):
                return None
    return None
