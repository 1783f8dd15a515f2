"""Discovery pipeline orchestration.

One run: search -> fetch -> validate -> extract -> (stars) -> reconcile ->
report. The runner is the only place that knows about dry runs and run
budgets; every other component behaves identically either way.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Optional

from marketplace_indexer.api_clients import DescriptorFetcher, GitHubClient, SearchHit
from marketplace_indexer.config import Settings, get_settings
from marketplace_indexer.errors import (
    CandidateError,
    ConfigurationError,
    DescriptorFetchFailed,
    DescriptorNotAccessible,
)
from marketplace_indexer.models import Marketplace, Plugin
from marketplace_indexer.pipeline.extractor import extract_plugins
from marketplace_indexer.pipeline.report import FailureStage, RunReport, SlugConflictEntry
from marketplace_indexer.pipeline.validator import MarketplaceValidator
from marketplace_indexer.rate_limit import RateBudget
from marketplace_indexer.slug import repo_key
from marketplace_indexer.storage.backends import SnapshotStore, get_store
from marketplace_indexer.storage.reconciler import ReconcileResult, Reconciler

logger = logging.getLogger(__name__)


@dataclass
class _RunState:
    """Accumulated per-candidate outcomes for one run."""

    discovered: list[Marketplace] = field(default_factory=list)
    plugins_by_repo: dict[str, list[Plugin]] = field(default_factory=dict)
    # Repos with a confirmed outcome (validated or terminally failed)
    confirmed: set[str] = field(default_factory=set)


class DiscoveryPipeline:
    """Runs one discovery pass and reconciles it into storage.

    Usage:
        pipeline = DiscoveryPipeline(settings, limit=50, dry_run=True)
        report = await pipeline.run()
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        github: Optional[GitHubClient] = None,
        fetcher: Optional[DescriptorFetcher] = None,
        store: Optional[SnapshotStore] = None,
        reconciler: Optional[Reconciler] = None,
        budget: Optional[RateBudget] = None,
        limit: Optional[int] = None,
        time_budget: Optional[float] = None,
        dry_run: bool = False,
        verbose: bool = False,
        batch_size: Optional[int] = None,
        clock: Callable[[], float] = time.time,
    ):
        """Initialize the pipeline.

        Args:
            settings: Configuration (default: cached environment settings)
            github: Search and reachability client
            fetcher: Descriptor downloader; created and closed per run if omitted
            store: Snapshot store used when no reconciler is given
            reconciler: Merges results into storage
            budget: API quota gate for a GitHub client created here
            limit: Maximum number of candidates to process
            time_budget: Seconds after which no new page or batch is started
            dry_run: Compute everything but skip persistence
            verbose: Record per-plugin diagnostics (duplicate names) in the report
            batch_size: Candidates fetched and validated per batch
            clock: Time source (epoch seconds)
        """
        self.settings = settings or get_settings()
        self.github = github or GitHubClient(
            settings=self.settings, budget=budget, clock=clock
        )
        # Search, reachability checks and fan-out all draw from one budget
        self.budget = self.github.budget
        self.fetcher = fetcher
        self.reconciler = reconciler or Reconciler(
            store or get_store(self.settings),
            removal_policy=self.settings.removal_policy,
        )
        self.validator = MarketplaceValidator(github=self.github, budget=self.budget)
        self.limit = limit
        self.time_budget = time_budget
        self.dry_run = dry_run
        self.verbose = verbose
        self.batch_size = batch_size or max(1, self.settings.max_concurrency * 4)
        self._clock = clock

    def run_sync(self) -> RunReport:
        """Run the pipeline from synchronous code."""
        return asyncio.run(self.run())

    async def run(self) -> RunReport:
        """Execute one full run.

        Raises:
            ConfigurationError: no GitHub token configured
            StorageReadFailure: existing collections could not be loaded
            StorageWriteFailure: a collection could not be written
        """
        if not self.github.is_configured():
            raise ConfigurationError(
                "GITHUB_TOKEN is not set; a discovery run needs GitHub code search"
            )
        report = RunReport(dry_run=self.dry_run)
        deadline = self._clock() + self.time_budget if self.time_budget else None

        # Load first so a broken store aborts before any API quota is spent
        snapshot = self.reconciler.load()

        outcome = await self.github.search_marketplaces_async(
            limit=self.limit, deadline=deadline
        )
        report.candidates = len(outcome.hits)
        if outcome.truncated:
            report.truncate(outcome.truncation_reason or "search truncated")
        logger.info(
            "Search found %d candidate marketplaces over %d pages",
            len(outcome.hits),
            outcome.pages_fetched,
            extra={"stage": "search", "count": len(outcome.hits)},
        )

        state = _RunState()
        owns_fetcher = self.fetcher is None
        fetcher = self.fetcher or DescriptorFetcher(settings=self.settings)
        try:
            await self._process(outcome.hits, fetcher, state, report, deadline)
        finally:
            if owns_fetcher:
                await fetcher.aclose()

        if self.settings.fetch_stars and state.discovered:
            state.discovered = await self._attach_stars(state.discovered)

        result = self.reconciler.merge(
            snapshot,
            state.discovered,
            state.plugins_by_repo,
            state.confirmed,
        )
        if self.dry_run:
            logger.info("Dry run: skipping persistence", extra={"stage": "persist"})
        else:
            self.reconciler.persist(result)

        self._fill_report(report, result)
        report.finish()
        logger.info(
            "Run finished: %d added, %d updated, %d removed, %d flagged, %d total",
            report.added,
            report.updated,
            report.removed,
            report.flagged,
            report.total,
            extra={"stage": "report", "count": report.total},
        )
        return report

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------

    async def _process(
        self,
        hits: list[SearchHit],
        fetcher: DescriptorFetcher,
        state: _RunState,
        report: RunReport,
        deadline: Optional[float],
    ) -> None:
        for start in range(0, len(hits), self.batch_size):
            if self.limit is not None and report.processed >= self.limit:
                report.truncate(f"candidate limit of {self.limit} reached")
                break
            if deadline is not None and self._clock() >= deadline:
                report.truncate(
                    f"time budget exhausted after {report.processed} of "
                    f"{len(hits)} candidates"
                )
                break

            batch = hits[start : start + self.batch_size]
            if self.limit is not None:
                batch = batch[: self.limit - report.processed]
            await self._process_batch(batch, fetcher, state, report)
            report.processed += len(batch)

    async def _process_batch(
        self,
        batch: list[SearchHit],
        fetcher: DescriptorFetcher,
        state: _RunState,
        report: RunReport,
    ) -> None:
        fetched = await asyncio.gather(*(self._fetch(hit, fetcher, report) for hit in batch))
        contents = {repo: raw for repo, raw in fetched if raw is not None}
        for repo, raw in fetched:
            if raw is None and repo is not None:
                state.confirmed.add(repo)

        results = await self.validator.validate_all(contents.items())
        diagnostics = report.diagnostics if self.verbose else None
        for result in results:
            if not result.valid:
                report.add_failure(result.repo, result.stage, result.errors, result.transient)
                if not result.transient:
                    state.confirmed.add(result.repo)
                continue

            marketplace = result.marketplace
            state.confirmed.add(result.repo)
            try:
                plugins = extract_plugins(marketplace, contents[result.repo], diagnostics)
            except CandidateError as e:
                report.add_failure(result.repo, FailureStage.EXTRACT, [e.reason])
                continue
            report.validated += 1
            state.discovered.append(marketplace)
            state.plugins_by_repo[repo_key(marketplace.repo)] = plugins

    async def _fetch(
        self, hit: SearchHit, fetcher: DescriptorFetcher, report: RunReport
    ) -> tuple[Optional[str], Optional[str]]:
        """Fetch one descriptor.

        Returns:
            ``(repo, content)`` on success; ``(repo, None)`` for a terminal
            failure; ``(None, None)`` for a transient one
        """
        async with self.budget.slot():
            try:
                return hit.repo, await fetcher.fetch(hit.repo, path=hit.path)
            except DescriptorNotAccessible as e:
                report.add_failure(hit.repo, FailureStage.FETCH, [e.reason])
                return hit.repo, None
            except DescriptorFetchFailed as e:
                logger.warning("Fetch failed for %s: %s", hit.repo, e, extra={"repo": hit.repo})
                report.add_failure(hit.repo, FailureStage.FETCH, [str(e)], transient=True)
                return None, None

    async def _attach_stars(self, marketplaces: list[Marketplace]) -> list[Marketplace]:
        """Best-effort star counts; a failed lookup leaves ``stars`` unset."""

        async def lookup(marketplace: Marketplace) -> Marketplace:
            async with self.budget.slot():
                metadata = await self.github.get_repo_metadata_async(marketplace.repo)
            if metadata.stars is None:
                return marketplace
            return marketplace.model_copy(
                update={
                    "stars": metadata.stars,
                    "stars_fetched_at": datetime.now(timezone.utc),
                }
            )

        return list(await asyncio.gather(*(lookup(m) for m in marketplaces)))

    # ------------------------------------------------------------------
    # Report
    # ------------------------------------------------------------------

    def _fill_report(self, report: RunReport, result: ReconcileResult) -> None:
        counts = result.counts()
        report.added = counts["added"]
        report.updated = counts["updated"]
        report.removed = counts["removed"]
        report.flagged = counts["flagged"]
        report.total = counts["total"]
        report.plugins_total = len(result.plugins)
        report.conflicts = [
            SlugConflictEntry(
                slug=c.slug, existing_repo=c.existing_repo, rejected_repo=c.incoming_repo
            )
            for c in result.conflicts
        ]
