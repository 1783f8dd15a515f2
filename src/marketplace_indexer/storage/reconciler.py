"""Merge freshly discovered marketplaces into the persisted collections.

Per existing marketplace the outcome is one of:

- replaced: rediscovered and revalidated this run (its plugins are regenerated)
- kept: manual, or not confirmed-failed this run
- removed / flagged: an auto entry whose repository was found by search this
  run but failed validation (``delete`` or ``flag`` removal policy)

Not safe for concurrent use: callers serialise runs (see ``storage.lock``).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Iterable, Literal, Mapping, Optional

from pydantic import ValidationError

from marketplace_indexer.errors import SlugConflict, StorageReadFailure, StorageWriteFailure
from marketplace_indexer.models import Marketplace, MarketplaceSource, Plugin
from marketplace_indexer.slug import repo_key
from marketplace_indexer.storage.backends import MARKETPLACES, PLUGINS, SnapshotStore

logger = logging.getLogger(__name__)

RemovalPolicy = Literal["delete", "flag"]


class _Decision(Enum):
    KEEP = "keep"
    REMOVE = "remove"
    FLAG = "flag"


@dataclass
class Snapshot:
    """Loaded persisted state."""

    marketplaces: list[Marketplace] = field(default_factory=list)
    plugins: list[Plugin] = field(default_factory=list)


@dataclass
class ReconcileResult:
    """Merged collections plus what changed."""

    marketplaces: list[Marketplace] = field(default_factory=list)
    plugins: list[Plugin] = field(default_factory=list)
    added: list[str] = field(default_factory=list)
    updated: list[str] = field(default_factory=list)
    removed: list[str] = field(default_factory=list)
    flagged: list[str] = field(default_factory=list)
    conflicts: list[SlugConflict] = field(default_factory=list)
    persisted: bool = False

    @property
    def total(self) -> int:
        return len(self.marketplaces)

    def counts(self) -> dict[str, int]:
        return {
            "added": len(self.added),
            "updated": len(self.updated),
            "removed": len(self.removed),
            "flagged": len(self.flagged),
            "total": self.total,
        }


class Reconciler:
    """Load, merge and store the marketplace and plugin collections."""

    def __init__(self, store: SnapshotStore, removal_policy: RemovalPolicy = "delete"):
        if removal_policy not in ("delete", "flag"):
            raise ValueError(f"Unknown removal policy: {removal_policy}")
        self.store = store
        self.removal_policy = removal_policy

    # ------------------------------------------------------------------
    # Load
    # ------------------------------------------------------------------

    def load(self) -> Snapshot:
        """Read both collections.

        Raises:
            StorageReadFailure: a collection is unreadable or holds invalid records
        """
        raw_marketplaces = self.store.load(MARKETPLACES)
        raw_plugins = self.store.load(PLUGINS)
        try:
            marketplaces = [Marketplace.model_validate(r) for r in raw_marketplaces]
            plugins = [Plugin.model_validate(r) for r in raw_plugins]
        except ValidationError as e:
            raise StorageReadFailure(f"Stored records are invalid: {e}") from e

        seen: set[str] = set()
        slug_owner: dict[str, str] = {}
        for marketplace in marketplaces:
            key = repo_key(marketplace.repo)
            if key in seen:
                raise StorageReadFailure(
                    f"Stored marketplaces contain {marketplace.repo} more than once"
                )
            seen.add(key)
            owner = slug_owner.setdefault(marketplace.slug, marketplace.repo)
            if repo_key(owner) != key:
                conflict = SlugConflict(marketplace.slug, owner, marketplace.repo)
                raise StorageReadFailure(f"Stored marketplaces are inconsistent: {conflict}")
        return Snapshot(marketplaces=marketplaces, plugins=plugins)

    # ------------------------------------------------------------------
    # Merge
    # ------------------------------------------------------------------

    def merge(
        self,
        snapshot: Snapshot,
        discovered: Iterable[Marketplace],
        plugins_by_repo: Mapping[str, list[Plugin]],
        all_discovered_repos: Iterable[str],
        now: Optional[datetime] = None,
    ) -> ReconcileResult:
        """Merge this run's results into a loaded snapshot. Pure; writes nothing.

        Args:
            snapshot: Current persisted state
            discovered: Marketplaces validated successfully this run
            plugins_by_repo: Freshly extracted plugins per repo; only the
                plugins of accepted repos are stored
            all_discovered_repos: Repos with a confirmed outcome this run
                (validated or confirmed-failed); an auto entry absent from
                ``discovered`` is only dropped when its repo is in this set
            now: Timestamp for ``last_updated`` / ``discovered_at``
        """
        now = now or datetime.now(timezone.utc)
        result = ReconcileResult()
        existing = {repo_key(m.repo): m for m in snapshot.marketplaces}
        seen = {repo_key(repo) for repo in all_discovered_repos}

        accepted = self._accept(existing, discovered, result)
        seen.update(accepted)

        merged: list[Marketplace] = []
        removed_slugs: set[str] = set()
        for key, old in existing.items():
            fresh = accepted.get(key)
            if fresh is not None:
                merged.append(_refresh(old, fresh, now))
                result.updated.append(fresh.repo)
                continue

            decision = self._decide_absent(old, key in seen)
            if decision is _Decision.KEEP:
                merged.append(old)
            elif decision is _Decision.FLAG:
                merged.append(old.model_copy(update={"stale": True}))
                result.flagged.append(old.repo)
            else:
                removed_slugs.add(old.slug)
                result.removed.append(old.repo)
                logger.info(
                    "Removing %s: found by search but failed validation",
                    old.repo,
                    extra={"repo": old.repo},
                )

        for key, fresh in accepted.items():
            if key not in existing:
                merged.append(
                    fresh.model_copy(update={"discovered_at": now, "last_updated": now})
                )
                result.added.append(fresh.repo)

        result.marketplaces = sorted(merged, key=lambda m: repo_key(m.repo))
        result.plugins = _merge_plugins(
            snapshot.plugins,
            accepted=accepted,
            removed=removed_slugs,
            plugins_by_repo={repo_key(r): p for r, p in plugins_by_repo.items()},
        )
        for name in ("added", "updated", "removed", "flagged"):
            getattr(result, name).sort(key=str.lower)
        return result

    def _accept(
        self,
        existing: dict[str, Marketplace],
        discovered: Iterable[Marketplace],
        result: ReconcileResult,
    ) -> dict[str, Marketplace]:
        """Filter out discovered records whose slug belongs to another repo."""
        slug_owner = {m.slug: (key, m.repo) for key, m in existing.items()}
        accepted: dict[str, Marketplace] = {}
        for fresh in sorted(discovered, key=lambda m: repo_key(m.repo)):
            key = repo_key(fresh.repo)
            owner = slug_owner.get(fresh.slug)
            if owner is not None and owner[0] != key:
                conflict = SlugConflict(fresh.slug, owner[1], fresh.repo)
                logger.error("%s; keeping %s", conflict, owner[1], extra={"slug": fresh.slug})
                result.conflicts.append(conflict)
                continue
            slug_owner[fresh.slug] = (key, fresh.repo)
            accepted[key] = fresh
        return accepted

    def _decide_absent(self, old: Marketplace, seen_this_run: bool) -> _Decision:
        """Outcome for an existing entry that did not validate this run."""
        if old.source is MarketplaceSource.MANUAL:
            return _Decision.KEEP
        if old.source is MarketplaceSource.AUTO:
            if not seen_this_run:
                return _Decision.KEEP
            return _Decision.REMOVE if self.removal_policy == "delete" else _Decision.FLAG
        raise ValueError(f"Unknown marketplace source: {old.source!r}")

    # ------------------------------------------------------------------
    # Persist
    # ------------------------------------------------------------------

    def persist(self, result: ReconcileResult) -> None:
        """Replace both collections, each as one atomic write.

        Plugins are written first. If the marketplace write then fails, the
        previous plugin snapshot is written back before the error propagates,
        so neither collection changes.

        Raises:
            StorageWriteFailure: nothing was persisted
        """
        previous_plugins = self.store.load(PLUGINS)
        self.store.replace(PLUGINS, [p.to_record() for p in result.plugins])
        try:
            self.store.replace(MARKETPLACES, [m.to_record() for m in result.marketplaces])
        except StorageWriteFailure:
            logger.error(
                "Marketplace write to %s failed; restoring previous plugins",
                self.store.describe(),
            )
            self.store.replace(PLUGINS, previous_plugins)
            raise
        result.persisted = True
        logger.info(
            "Persisted %d marketplaces and %d plugins to %s",
            len(result.marketplaces),
            len(result.plugins),
            self.store.describe(),
        )

    def run(
        self,
        discovered: Iterable[Marketplace],
        plugins_by_repo: Mapping[str, list[Plugin]],
        all_discovered_repos: Iterable[str],
        now: Optional[datetime] = None,
    ) -> ReconcileResult:
        """Load, merge and persist in one call."""
        result = self.merge(
            self.load(), discovered, plugins_by_repo, all_discovered_repos, now
        )
        self.persist(result)
        return result


def _refresh(old: Marketplace, fresh: Marketplace, now: datetime) -> Marketplace:
    """Replace ``old`` with ``fresh``, carrying over what the run cannot know."""
    update: dict = {
        "discovered_at": old.discovered_at or now,
        "last_updated": now,
    }
    if old.is_manual:
        update["source"] = MarketplaceSource.MANUAL
    if fresh.stars is None and old.stars is not None:
        update["stars"] = old.stars
        update["stars_fetched_at"] = old.stars_fetched_at
    return fresh.model_copy(update=update)


def _merge_plugins(
    existing: list[Plugin],
    accepted: Mapping[str, Marketplace],
    removed: set[str],
    plugins_by_repo: Mapping[str, list[Plugin]],
) -> list[Plugin]:
    touched = {m.slug for m in accepted.values()}
    merged = {
        p.id: p for p in existing if p.marketplace not in touched and p.marketplace not in removed
    }
    for key in sorted(accepted):
        for plugin in plugins_by_repo.get(key, []):
            merged[plugin.id] = plugin
    return sorted(merged.values(), key=lambda p: p.id)
