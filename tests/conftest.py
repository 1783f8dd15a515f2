"""Shared fixtures for marketplace indexer tests."""

import json
from unittest.mock import MagicMock

import httpx
import pytest
from github import UnknownObjectException

from marketplace_indexer.api_clients import DescriptorFetcher, GitHubClient
from marketplace_indexer.config import Settings
from marketplace_indexer.descriptor import DESCRIPTOR_PATH
from marketplace_indexer.rate_limit import RateBudget


def descriptor(name="Acme Tools", plugins=None, **fields) -> str:
    """Serialise a marketplace descriptor."""
    data = {"name": name, **fields}
    data["plugins"] = plugins if plugins is not None else [
        {"name": "formatter", "source": "./plugins/formatter", "description": "Formats code"}
    ]
    return json.dumps(data)


def search_item(repo: str, path: str = DESCRIPTOR_PATH):
    """A PyGithub ContentFile lookalike as returned by code search."""
    item = MagicMock()
    item.repository.full_name = repo
    item.path = path
    return item


@pytest.fixture
def make_descriptor():
    return descriptor


@pytest.fixture
def settings(tmp_path):
    """Settings isolated from the environment and .env files."""
    return Settings(
        _env_file=None,
        github_token="ghp_testtoken",
        data_dir=tmp_path / "data",
        fetch_stars=False,
        max_concurrency=3,
    )


@pytest.fixture
def sleeps():
    """Records every sleep requested instead of sleeping."""
    return []


@pytest.fixture
def budget(sleeps):
    return RateBudget(max_concurrency=3, max_wait=60, reserve=0, sleep=sleeps.append)


@pytest.fixture
def mock_github():
    """A mocked ``github.Github`` whose repos are public unless listed as gone."""
    client = MagicMock()
    client.rate_limiting = (-1, -1)
    client.rate_limiting_resettime = 0
    client.gone = set()

    def get_repo(full_name):
        if full_name.lower() in client.gone:
            raise UnknownObjectException(404, {"message": "Not Found"}, {})
        repo = MagicMock()
        repo.private = False
        repo.description = f"{full_name} on GitHub"
        repo.stargazers_count = 7
        return repo

    client.get_repo.side_effect = get_repo
    return client


@pytest.fixture
def search_pages(mock_github):
    """Install code search pages on ``mock_github``.

    Call with a list of pages; each page is a list of hits, or an exception
    instance raised when that page is requested. A hit is a repo name, or a
    ``(repo, path)`` tuple for a descriptor outside the default location.
    """

    def install(pages):
        results = MagicMock()

        def get_page(index):
            if index >= len(pages):
                return []
            page = pages[index]
            if isinstance(page, Exception):
                raise page
            return [
                search_item(*hit) if isinstance(hit, tuple) else search_item(hit)
                for hit in page
            ]

        results.get_page.side_effect = get_page
        mock_github.search_code.return_value = results
        return results

    return install


@pytest.fixture
def github(settings, budget, mock_github, sleeps):
    return GitHubClient(
        settings=settings,
        budget=budget,
        client=mock_github,
        retry_base_delay=0.01,
        sleep=sleeps.append,
    )


class RawContent:
    """In-memory raw.githubusercontent.com served through httpx.MockTransport."""

    def __init__(self):
        self.files = {}
        self.statuses = {}
        self.requests = []
        self.on_request = None

    def add(self, repo, content, branch="main", path=DESCRIPTOR_PATH):
        self.files[(repo, branch, path)] = content

    def fail(self, repo, status):
        self.statuses[repo] = status

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(str(request.url))
        if self.on_request is not None:
            self.on_request(request)
        owner, name, branch, *rest = request.url.path.strip("/").split("/")
        repo = f"{owner}/{name}"
        if repo in self.statuses:
            return httpx.Response(self.statuses[repo])
        content = self.files.get((repo, branch, "/".join(rest)))
        if content is None:
            return httpx.Response(404, text="404: Not Found")
        return httpx.Response(200, text=content)


@pytest.fixture
def raw_content():
    return RawContent()


@pytest.fixture
def fetcher(settings, raw_content):
    client = httpx.AsyncClient(transport=httpx.MockTransport(raw_content.handler))
    return DescriptorFetcher(settings=settings, client=client)
