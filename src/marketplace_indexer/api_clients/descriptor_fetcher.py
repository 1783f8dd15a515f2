"""Raw descriptor download with branch fallback."""

from __future__ import annotations

import logging
from typing import Optional

import httpx

from marketplace_indexer.config import Settings, get_settings
from marketplace_indexer.errors import DescriptorFetchFailed, DescriptorNotAccessible
from marketplace_indexer.descriptor import DESCRIPTOR_PATH

logger = logging.getLogger(__name__)


class DescriptorFetcher:
    """Downloads descriptor files from raw.githubusercontent.com.

    Raw downloads do not count against the REST API quota, so they bypass the
    shared rate budget.

    Usage:
        async with DescriptorFetcher() as fetcher:
            content = await fetcher.fetch("acme/tools")
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.settings = settings or get_settings()
        self.base_url = self.settings.raw_content_url.rstrip("/")
        self.primary_branch = self.settings.primary_branch
        self.fallback_branch = self.settings.fallback_branch
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            timeout=self.settings.request_timeout,
            follow_redirects=True,
            headers={"User-Agent": "marketplace-indexer"},
        )

    async def __aenter__(self) -> "DescriptorFetcher":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    def _fallback_for(self, branch: str) -> Optional[str]:
        fallback = (
            self.fallback_branch if branch != self.fallback_branch else self.primary_branch
        )
        return fallback if fallback != branch else None

    async def fetch(
        self, repo: str, branch: Optional[str] = None, path: str = DESCRIPTOR_PATH
    ) -> str:
        """Fetch raw descriptor content.

        Tries ``branch`` (default: the primary branch) and, on 404, exactly one
        fallback branch.

        Raises:
            DescriptorNotAccessible: the file is on neither branch
            DescriptorFetchFailed: any other HTTP or transport failure
        """
        first = branch or self.primary_branch
        refs = [first]
        fallback = self._fallback_for(first)
        if fallback:
            refs.append(fallback)

        for ref in refs:
            content = await self._get(repo, ref, path)
            if content is not None:
                if ref != first:
                    logger.debug("Fetched %s from fallback branch %s", repo, ref)
                return content

        raise DescriptorNotAccessible(
            repo, f"{path} not found on branch {' or '.join(repr(r) for r in refs)}"
        )

    async def _get(self, repo: str, ref: str, path: str) -> Optional[str]:
        """Return file content, or None on 404."""
        url = f"{self.base_url}/{repo}/{ref}/{path.lstrip('/')}"
        try:
            response = await self._client.get(url)
        except httpx.HTTPError as e:
            raise DescriptorFetchFailed(f"{repo}: request for {url} failed: {e}") from e

        if response.status_code == 404:
            return None
        if response.status_code >= 400:
            raise DescriptorFetchFailed(
                f"{repo}: {url} returned HTTP {response.status_code}"
            )
        return response.text
