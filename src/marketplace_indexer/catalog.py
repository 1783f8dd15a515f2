"""Read-only accessors over the persisted collections.

This is the query surface the web front end relies on.
"""

from __future__ import annotations

from typing import Optional

from marketplace_indexer.models import Marketplace, Plugin
from marketplace_indexer.slug import find_by_slug
from marketplace_indexer.storage.backends import MARKETPLACES, PLUGINS, SnapshotStore


class Catalog:
    """Query marketplaces and plugins from a snapshot store.

    Collections are loaded lazily on first access; call ``refresh`` to
    reload.
    """

    def __init__(self, store: SnapshotStore):
        self.store = store
        self._marketplaces: Optional[list[Marketplace]] = None
        self._plugins: Optional[list[Plugin]] = None

    def refresh(self) -> None:
        self._marketplaces = None
        self._plugins = None

    @property
    def marketplaces(self) -> list[Marketplace]:
        if self._marketplaces is None:
            self._marketplaces = [
                Marketplace.model_validate(r) for r in self.store.load(MARKETPLACES)
            ]
        return self._marketplaces

    @property
    def plugins(self) -> list[Plugin]:
        if self._plugins is None:
            self._plugins = [Plugin.model_validate(r) for r in self.store.load(PLUGINS)]
        return self._plugins

    # -- marketplaces -------------------------------------------------------

    def list_marketplaces(self, include_empty: bool = False) -> list[Marketplace]:
        """All marketplaces sorted by repo; empty ones only on request."""
        items = [m for m in self.marketplaces if include_empty or m.plugin_count > 0]
        return sorted(items, key=lambda m: m.repo.lower())

    def get_marketplace_by_slug(self, slug: str) -> Optional[Marketplace]:
        return find_by_slug(self.marketplaces, slug)

    def list_by_category(self, category: str) -> list[Marketplace]:
        return [m for m in self.list_marketplaces() if category in m.categories]

    def list_categories(self) -> list[str]:
        """Every category used by a listed marketplace, sorted."""
        return sorted({c for m in self.list_marketplaces() for c in m.categories})

    # -- plugins ------------------------------------------------------------

    def list_plugins(self) -> list[Plugin]:
        return sorted(self.plugins, key=lambda p: p.id)

    def get_plugin(self, plugin_id: str) -> Optional[Plugin]:
        for plugin in self.plugins:
            if plugin.id == plugin_id:
                return plugin
        return None

    def list_plugins_by_marketplace(self, slug: str) -> list[Plugin]:
        wanted = slug.lower()
        return [p for p in self.list_plugins() if p.marketplace == wanted]

    def list_plugins_by_category(self, category: str) -> list[Plugin]:
        return [p for p in self.list_plugins() if p.category == category]

    def search_plugins(self, query: str) -> list[Plugin]:
        """Case-insensitive match on name, description and keywords."""
        needle = query.strip().lower()
        if not needle:
            return self.list_plugins()
        return [
            p
            for p in self.list_plugins()
            if needle in p.name.lower()
            or needle in p.description.lower()
            or any(needle in k.lower() for k in p.keywords or [])
        ]
