"""Tests for the discovery pipeline runner."""

import json
from datetime import datetime, timezone

import pytest
from github import GithubException, RateLimitExceededException

from marketplace_indexer.api_clients import GitHubClient
from marketplace_indexer.errors import ConfigurationError, StorageReadFailure
from marketplace_indexer.models import Marketplace, Plugin
from marketplace_indexer.pipeline import DiscoveryPipeline, FailureStage
from marketplace_indexer.storage import MemoryStore

EARLIER = datetime(2025, 1, 1, tzinfo=timezone.utc)


def _stored(repo, source="auto", plugins=()):
    marketplace = Marketplace(
        repo=repo,
        source=source,
        plugin_count=len(plugins),
        discovered_at=EARLIER,
        last_updated=EARLIER,
    )
    slug = marketplace.slug
    return marketplace.to_record(), [
        Plugin(
            id=f"{slug}/{name}",
            name=name,
            source=f"./{name}",
            marketplace=slug,
            marketplace_url=f"https://github.com/{repo}",
            install_command=f"/plugin install {name}@{slug}",
        ).to_record()
        for name in plugins
    ]


def _store(*entries):
    return MemoryStore(
        {
            "marketplaces": [m for m, _ in entries],
            "plugins": [p for _, plugins in entries for p in plugins],
        }
    )


@pytest.fixture
def pipeline_factory(settings, github, fetcher):
    def build(store, **kwargs):
        return DiscoveryPipeline(
            settings=settings, github=github, fetcher=fetcher, store=store, **kwargs
        )

    return build


class TestDiscoveryPipeline:
    """Tests for DiscoveryPipeline.run."""

    @pytest.mark.asyncio
    async def test_end_to_end(self, pipeline_factory, search_pages, raw_content, make_descriptor):
        """A stored marketplace with 3 plugins, now listing 2, ends with those 2."""
        store = _store(_stored("acme/tools", plugins=["a", "b", "c"]))
        search_pages([["acme/tools", "new/market"]])
        raw_content.add(
            "acme/tools",
            make_descriptor(plugins=[{"name": "a", "source": "./a"}, {"name": "d", "source": "./d"}]),
        )
        raw_content.add("new/market", make_descriptor(description="Fresh"), branch="master")

        report = await pipeline_factory(store).run()

        assert report.candidates == 2
        assert report.validated == 2
        assert report.added == 1
        assert report.updated == 1
        assert report.total == 2
        assert report.failures == []
        plugin_ids = [p["id"] for p in store.load("plugins")]
        assert plugin_ids == ["acme-tools/a", "acme-tools/d", "new-market/formatter"]
        marketplaces = {m["repo"]: m for m in store.load("marketplaces")}
        assert marketplaces["acme/tools"]["pluginCount"] == 2
        assert marketplaces["acme/tools"]["discoveredAt"].startswith("2025-01-01")
        assert marketplaces["new/market"]["description"] == "Fresh"

    @pytest.mark.asyncio
    async def test_failed_candidate_removed_manual_kept(
        self, pipeline_factory, search_pages, raw_content
    ):
        store = _store(
            _stored("broken/market", plugins=["x"]),
            _stored("curated/list", source="manual", plugins=["y"]),
        )
        search_pages([["broken/market", "curated/list"]])
        raw_content.add("broken/market", "{ not json")
        raw_content.add("curated/list", json.dumps({"name": "c", "plugins": []}))

        report = await pipeline_factory(store).run()

        assert report.removed == 1
        assert [m["repo"] for m in store.load("marketplaces")] == ["curated/list"]
        assert [p["id"] for p in store.load("plugins")] == ["curated-list/y"]
        stages = {f.repo: f.stage for f in report.failures}
        assert stages == {"broken/market": FailureStage.PARSE, "curated/list": FailureStage.SCHEMA}

    @pytest.mark.asyncio
    async def test_missing_descriptor_is_confirmed_failure(
        self, pipeline_factory, search_pages
    ):
        store = _store(_stored("gone/market", plugins=["x"]))
        search_pages([["gone/market"]])

        report = await pipeline_factory(store).run()

        assert report.removed == 1
        assert report.failures[0].stage is FailureStage.FETCH
        assert not report.failures[0].transient
        assert store.load("marketplaces") == []

    @pytest.mark.asyncio
    async def test_transient_failures_never_delete(
        self, pipeline_factory, search_pages, raw_content, mock_github, make_descriptor
    ):
        store = _store(_stored("flaky/fetch", plugins=["x"]), _stored("flaky/api", plugins=["y"]))
        search_pages([["flaky/fetch", "flaky/api"]])
        raw_content.fail("flaky/fetch", 503)
        raw_content.add("flaky/api", make_descriptor())

        mock_github.get_repo.side_effect = GithubException(502, {}, {})

        report = await pipeline_factory(store).run()

        assert report.removed == 0
        assert report.total == 2
        assert all(f.transient for f in report.failures)
        assert len(store.load("plugins")) == 2

    @pytest.mark.asyncio
    async def test_unseen_marketplace_kept(self, pipeline_factory, search_pages):
        store = _store(_stored("quiet/market", plugins=["x"]))
        search_pages([[]])

        report = await pipeline_factory(store).run()

        assert report.removed == 0
        assert report.total == 1

    @pytest.mark.asyncio
    async def test_vanished_repo_removed(
        self, pipeline_factory, search_pages, raw_content, mock_github, make_descriptor
    ):
        store = _store(_stored("acme/tools", plugins=["x"]))
        search_pages([["acme/tools"]])
        raw_content.add("acme/tools", make_descriptor())
        mock_github.gone.add("acme/tools")

        report = await pipeline_factory(store).run()

        assert report.removed == 1
        assert report.failures[0].stage is FailureStage.ACCESS

    @pytest.mark.asyncio
    async def test_flag_policy(self, settings, github, fetcher, search_pages):
        settings.removal_policy = "flag"
        store = _store(_stored("gone/market", plugins=["x"]))
        search_pages([["gone/market"]])

        report = await DiscoveryPipeline(
            settings=settings, github=github, fetcher=fetcher, store=store
        ).run()

        assert report.flagged == 1
        assert store.load("marketplaces")[0]["stale"] is True
        assert len(store.load("plugins")) == 1

    @pytest.mark.asyncio
    async def test_dry_run_writes_nothing(
        self, pipeline_factory, search_pages, raw_content, make_descriptor
    ):
        store = _store()
        search_pages([["acme/tools"]])
        raw_content.add("acme/tools", make_descriptor())

        report = await pipeline_factory(store, dry_run=True).run()

        assert report.dry_run
        assert report.added == 1
        assert store.writes == []

    @pytest.mark.asyncio
    async def test_rate_limited_search_reconciles_partial_results(
        self, pipeline_factory, search_pages, raw_content, make_descriptor
    ):
        store = _store(_stored("later/page", plugins=["x"]))
        search_pages([["acme/tools"] + [f"filler/{i}" for i in range(99)], RateLimitExceededException(403, {}, {})])
        raw_content.add("acme/tools", make_descriptor())

        report = await pipeline_factory(store).run()

        assert report.truncated
        assert any("rate limited" in r for r in report.truncation_reasons)
        # Never reached by search, so not deleted
        assert "later/page" in [m["repo"] for m in store.load("marketplaces")]
        assert report.added == 1

    @pytest.mark.asyncio
    async def test_limit(self, pipeline_factory, search_pages, raw_content, make_descriptor):
        store = _store()
        search_pages([["a/one", "b/two", "c/three"]])
        for repo in ("a/one", "b/two", "c/three"):
            raw_content.add(repo, make_descriptor())

        report = await pipeline_factory(store, limit=2).run()

        assert report.candidates == 2
        assert report.processed == 2
        assert report.added == 2

    @pytest.mark.asyncio
    async def test_time_budget_stops_between_batches(
        self, settings, budget, mock_github, fetcher, search_pages, raw_content, make_descriptor
    ):
        now = [0.0]

        def clock():
            return now[0]

        github = GitHubClient(settings=settings, budget=budget, client=mock_github, clock=clock)
        store = _store(_stored("b/two", plugins=["x"]))
        search_pages([["a/one", "b/two"]])
        raw_content.add("a/one", make_descriptor())

        def advance(request):
            now[0] = 100.0

        raw_content.on_request = advance

        report = await DiscoveryPipeline(
            settings=settings,
            github=github,
            fetcher=fetcher,
            store=store,
            time_budget=10,
            batch_size=1,
            clock=clock,
        ).run()

        assert report.processed == 1
        assert report.truncated
        assert any("time budget" in r for r in report.truncation_reasons)
        # Unprocessed candidate is not treated as failed
        assert [m["repo"] for m in store.load("marketplaces")] == ["a/one", "b/two"]

    @pytest.mark.asyncio
    async def test_verbose_reports_duplicate_names(
        self, pipeline_factory, search_pages, raw_content, make_descriptor
    ):
        store = _store()
        search_pages([["acme/tools"]])
        raw_content.add(
            "acme/tools",
            make_descriptor(plugins=[{"name": "a", "source": "./1"}, {"name": "a", "source": "./2"}]),
        )

        report = await pipeline_factory(store, verbose=True).run()

        assert len(report.diagnostics) == 1
        assert [p["source"] for p in store.load("plugins")] == ["./2"]

    @pytest.mark.asyncio
    async def test_stars_fetched_when_enabled(
        self, settings, github, fetcher, search_pages, raw_content, make_descriptor
    ):
        settings.fetch_stars = True
        store = _store()
        search_pages([["acme/tools"]])
        raw_content.add("acme/tools", make_descriptor())

        await DiscoveryPipeline(settings=settings, github=github, fetcher=fetcher, store=store).run()

        record = store.load("marketplaces")[0]
        assert record["stars"] == 7
        assert "starsFetchedAt" in record

    @pytest.mark.asyncio
    async def test_slug_conflict_reported(
        self, pipeline_factory, search_pages, raw_content, make_descriptor
    ):
        store = _store(_stored("a-b/c", plugins=["x"]))
        search_pages([["a/b-c"]])
        raw_content.add("a/b-c", make_descriptor())

        report = await pipeline_factory(store).run()

        assert len(report.conflicts) == 1
        assert report.conflicts[0].rejected_repo == "a/b-c"
        assert [m["repo"] for m in store.load("marketplaces")] == ["a-b/c"]

    @pytest.mark.asyncio
    async def test_slug_conflict_in_one_run_keeps_winner_plugins(
        self, pipeline_factory, search_pages, raw_content, make_descriptor
    ):
        store = _store()
        search_pages([["a-b/c", "a/b-c"]])
        raw_content.add("a-b/c", make_descriptor(plugins=[{"name": "from-ab-c", "source": "./x"}]))
        raw_content.add("a/b-c", make_descriptor(plugins=[{"name": "from-a-bc", "source": "./y"}]))

        report = await pipeline_factory(store).run()

        assert [m["repo"] for m in store.load("marketplaces")] == ["a-b/c"]
        assert [(p["id"], p["marketplaceUrl"]) for p in store.load("plugins")] == [
            ("a-b-c/from-ab-c", "https://github.com/a-b/c")
        ]
        assert [c.rejected_repo for c in report.conflicts] == ["a/b-c"]

    @pytest.mark.asyncio
    async def test_nested_descriptor_fetched_from_its_path(
        self, pipeline_factory, search_pages, raw_content, make_descriptor
    ):
        nested = "plugins/.claude-plugin/marketplace.json"
        store = _store(_stored("acme/tools", plugins=["x"]))
        search_pages([[("acme/tools", nested)]])
        raw_content.add("acme/tools", make_descriptor(), path=nested)

        report = await pipeline_factory(store).run()

        assert report.failures == []
        assert report.removed == 0
        assert report.updated == 1
        assert [p["id"] for p in store.load("plugins")] == ["acme-tools/formatter"]
        assert all(url.endswith(nested) for url in raw_content.requests)

    @pytest.mark.asyncio
    async def test_requires_token(self, settings, mock_github, fetcher):
        github = GitHubClient(token="", settings=settings, client=mock_github)
        pipeline = DiscoveryPipeline(settings=settings, github=github, fetcher=fetcher, store=MemoryStore())
        with pytest.raises(ConfigurationError):
            await pipeline.run()

    @pytest.mark.asyncio
    async def test_unreadable_store_aborts_before_search(
        self, pipeline_factory, mock_github
    ):
        store = MemoryStore({"marketplaces": [{"repo": "a/b"}, {"repo": "A/B"}]})
        with pytest.raises(StorageReadFailure):
            await pipeline_factory(store).run()
        mock_github.search_code.assert_not_called()

    @pytest.mark.asyncio
    async def test_report_is_serialisable(
        self, pipeline_factory, search_pages, raw_content
    ):
        search_pages([["broken/market"]])
        raw_content.add("broken/market", "nope")

        report = await pipeline_factory(_store()).run()

        data = report.model_dump(mode="json")
        assert data["failures"][0] == {
            "repo": "broken/market",
            "stage": "parse",
            "errors": data["failures"][0]["errors"],
            "transient": False,
        }
        assert data["finished_at"] is not None
