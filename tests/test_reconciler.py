"""Tests for storage reconciliation."""

import os
from datetime import datetime, timezone
from unittest.mock import patch

import pytest

from marketplace_indexer.errors import StorageReadFailure, StorageWriteFailure
from marketplace_indexer.models import Marketplace, MarketplaceSource, Plugin
from marketplace_indexer.storage import JsonFileStore, MemoryStore, Reconciler, Snapshot

EARLIER = datetime(2025, 1, 1, tzinfo=timezone.utc)
NOW = datetime(2025, 6, 1, tzinfo=timezone.utc)


def _marketplace(repo, source=MarketplaceSource.AUTO, **fields):
    fields.setdefault("discovered_at", EARLIER)
    fields.setdefault("last_updated", EARLIER)
    return Marketplace(repo=repo, source=source, **fields)


def _plugin(slug, name, **fields):
    fields.setdefault("marketplace_url", f"https://github.com/{slug}")
    return Plugin(
        id=f"{slug}/{name}",
        name=name,
        source=f"./{name}",
        marketplace=slug,
        install_command=f"/plugin install {name}@{slug}",
        **fields,
    )


def _store(marketplaces=(), plugins=()):
    return MemoryStore(
        {
            "marketplaces": [m.to_record() for m in marketplaces],
            "plugins": [p.to_record() for p in plugins],
        }
    )


class TestMerge:
    """Tests for Reconciler.merge decisions."""

    def test_new_marketplace_added(self):
        reconciler = Reconciler(MemoryStore())
        fresh = Marketplace(repo="acme/tools", plugin_count=1)
        result = reconciler.merge(
            Snapshot(), [fresh], {"acme/tools": [_plugin("acme-tools", "fmt")]}, ["acme/tools"], NOW
        )
        assert result.added == ["acme/tools"]
        assert result.marketplaces[0].discovered_at == NOW
        assert result.marketplaces[0].last_updated == NOW
        assert [p.id for p in result.plugins] == ["acme-tools/fmt"]

    def test_rediscovered_marketplace_updated(self):
        old = _marketplace("acme/tools", description="old")
        reconciler = Reconciler(MemoryStore())
        fresh = Marketplace(repo="acme/tools", description="new")
        result = reconciler.merge(Snapshot([old]), [fresh], {}, ["acme/tools"], NOW)
        assert result.updated == ["acme/tools"]
        merged = result.marketplaces[0]
        assert merged.description == "new"
        assert merged.discovered_at == EARLIER
        assert merged.last_updated == NOW

    def test_manual_entry_never_removed(self):
        """A manual entry survives even when its repo fails validation."""
        manual = _marketplace("curated/list", source=MarketplaceSource.MANUAL)
        reconciler = Reconciler(MemoryStore())
        result = reconciler.merge(Snapshot([manual]), [], {}, ["curated/list"], NOW)
        assert result.marketplaces == [manual]
        assert result.removed == []

    def test_manual_source_kept_on_update(self):
        manual = _marketplace("curated/list", source=MarketplaceSource.MANUAL)
        reconciler = Reconciler(MemoryStore())
        fresh = Marketplace(repo="curated/list", plugin_count=4)
        result = reconciler.merge(Snapshot([manual]), [fresh], {}, ["curated/list"], NOW)
        assert result.marketplaces[0].source is MarketplaceSource.MANUAL
        assert result.marketplaces[0].plugin_count == 4

    def test_failed_auto_entry_removed(self):
        """Found by search but invalid: the auto entry and its plugins go."""
        old = _marketplace("gone/market")
        plugins = [_plugin("gone-market", "a"), _plugin("keep-me", "b")]
        reconciler = Reconciler(MemoryStore())
        result = reconciler.merge(Snapshot([old], plugins), [], {}, ["gone/market"], NOW)
        assert result.marketplaces == []
        assert result.removed == ["gone/market"]
        assert [p.id for p in result.plugins] == ["keep-me/b"]

    def test_unseen_auto_entry_kept(self):
        """Not found by this run's search at all: left untouched."""
        old = _marketplace("quiet/market")
        plugins = [_plugin("quiet-market", "a")]
        reconciler = Reconciler(MemoryStore())
        result = reconciler.merge(Snapshot([old], plugins), [], {}, [], NOW)
        assert result.marketplaces == [old]
        assert result.plugins == plugins
        assert result.removed == []

    def test_flag_policy_keeps_failed_entry(self):
        old = _marketplace("gone/market")
        plugins = [_plugin("gone-market", "a")]
        reconciler = Reconciler(MemoryStore(), removal_policy="flag")
        result = reconciler.merge(Snapshot([old], plugins), [], {}, ["gone/market"], NOW)
        assert result.flagged == ["gone/market"]
        assert result.marketplaces[0].stale is True
        assert result.plugins == plugins

    def test_revalidated_entry_clears_stale(self):
        old = _marketplace("acme/tools", stale=True)
        reconciler = Reconciler(MemoryStore(), removal_policy="flag")
        result = reconciler.merge(
            Snapshot([old]), [Marketplace(repo="acme/tools")], {}, ["acme/tools"], NOW
        )
        assert result.marketplaces[0].stale is False

    def test_unknown_policy(self):
        with pytest.raises(ValueError):
            Reconciler(MemoryStore(), removal_policy="archive")

    def test_plugins_replaced_wholesale(self):
        """Three stored plugins, two in the fresh descriptor: two remain."""
        old = _marketplace("acme/tools", plugin_count=3)
        stored = [_plugin("acme-tools", n) for n in ("a", "b", "c")]
        fresh_plugins = [_plugin("acme-tools", n) for n in ("a", "d")]
        reconciler = Reconciler(MemoryStore())
        result = reconciler.merge(
            Snapshot([old], stored),
            [Marketplace(repo="acme/tools", plugin_count=2)],
            {"acme/tools": fresh_plugins},
            ["acme/tools"],
            NOW,
        )
        assert [p.id for p in result.plugins] == ["acme-tools/a", "acme-tools/d"]

    def test_slug_conflict_rejects_incoming(self):
        existing = _marketplace("a-b/c")
        reconciler = Reconciler(MemoryStore())
        result = reconciler.merge(
            Snapshot([existing]),
            [Marketplace(repo="a/b-c")],
            {"a/b-c": [_plugin("a-b-c", "intruder")]},
            ["a/b-c"],
            NOW,
        )
        assert [m.repo for m in result.marketplaces] == ["a-b/c"]
        assert len(result.conflicts) == 1
        conflict = result.conflicts[0]
        assert conflict.slug == "a-b-c"
        assert conflict.existing_repo == "a-b/c"
        assert conflict.incoming_repo == "a/b-c"
        assert result.plugins == []

    def test_slug_conflict_between_new_repos(self):
        reconciler = Reconciler(MemoryStore())
        result = reconciler.merge(
            Snapshot(), [Marketplace(repo="a/b-c"), Marketplace(repo="a-b/c")], {}, [], NOW
        )
        assert [m.repo for m in result.marketplaces] == ["a-b/c"]
        assert result.conflicts[0].incoming_repo == "a/b-c"

    def test_slug_conflict_stores_only_accepted_repo_plugins(self):
        """Plugins of the rejected repo never land under the shared slug."""
        reconciler = Reconciler(MemoryStore())
        kept = _plugin("a-b-c", "from-ab-c", marketplace_url="https://github.com/a-b/c")
        rejected = _plugin("a-b-c", "from-a-bc", marketplace_url="https://github.com/a/b-c")
        result = reconciler.merge(
            Snapshot(),
            [Marketplace(repo="a/b-c"), Marketplace(repo="a-b/c")],
            {"a/b-c": [rejected], "a-b/c": [kept]},
            ["a/b-c", "a-b/c"],
            NOW,
        )
        assert [m.repo for m in result.marketplaces] == ["a-b/c"]
        assert [(p.id, p.marketplace_url) for p in result.plugins] == [
            ("a-b-c/from-ab-c", "https://github.com/a-b/c")
        ]

    def test_case_change_is_an_update(self):
        old = _marketplace("Acme/Tools")
        reconciler = Reconciler(MemoryStore())
        result = reconciler.merge(
            Snapshot([old]), [Marketplace(repo="acme/tools")], {}, ["acme/tools"], NOW
        )
        assert result.conflicts == []
        assert result.updated == ["acme/tools"]
        assert result.total == 1

    def test_stars_carried_over(self):
        old = _marketplace("acme/tools", stars=12, stars_fetched_at=EARLIER)
        reconciler = Reconciler(MemoryStore())
        result = reconciler.merge(
            Snapshot([old]), [Marketplace(repo="acme/tools")], {}, ["acme/tools"], NOW
        )
        assert result.marketplaces[0].stars == 12
        assert result.marketplaces[0].stars_fetched_at == EARLIER

    def test_deterministic_order(self):
        reconciler = Reconciler(MemoryStore())
        fresh = [Marketplace(repo=r) for r in ("zed/m", "Alpha/m", "beta/m")]
        result = reconciler.merge(Snapshot(), fresh, {}, [], NOW)
        assert [m.repo for m in result.marketplaces] == ["Alpha/m", "beta/m", "zed/m"]
        assert result.added == ["Alpha/m", "beta/m", "zed/m"]


class TestLoadAndPersist:
    """Tests for the storage round trip."""

    def test_end_to_end_stale_plugins_replaced(self, tmp_path):
        store = JsonFileStore(tmp_path)
        old = _marketplace("acme/tools", plugin_count=3)
        store.replace("marketplaces", [old.to_record()])
        store.replace("plugins", [_plugin("acme-tools", n).to_record() for n in ("a", "b", "c")])

        reconciler = Reconciler(store)
        result = reconciler.run(
            [Marketplace(repo="acme/tools", plugin_count=2)],
            {"acme/tools": [_plugin("acme-tools", n) for n in ("a", "d")]},
            ["acme/tools"],
            NOW,
        )

        assert result.persisted
        stored_plugins = store.load("plugins")
        assert [p["id"] for p in stored_plugins] == ["acme-tools/a", "acme-tools/d"]
        stored = store.load("marketplaces")
        assert stored[0]["pluginCount"] == 2
        assert stored[0]["discoveredAt"].startswith("2025-01-01")

    def test_load_rejects_invalid_records(self):
        store = MemoryStore({"marketplaces": [{"description": "no repo"}]})
        with pytest.raises(StorageReadFailure):
            Reconciler(store).load()

    def test_load_rejects_duplicate_repos(self):
        store = MemoryStore({"marketplaces": [{"repo": "acme/tools"}, {"repo": "Acme/Tools"}]})
        with pytest.raises(StorageReadFailure):
            Reconciler(store).load()

    def test_load_rejects_slug_collision(self):
        store = MemoryStore(
            {
                "marketplaces": [
                    {"repo": "a-b/c", "source": "manual"},
                    {"repo": "a/b-c", "source": "manual"},
                ]
            }
        )
        with pytest.raises(StorageReadFailure) as exc_info:
            Reconciler(store).load()
        assert "a-b-c" in str(exc_info.value)

    def test_failed_marketplace_write_restores_plugins(self, tmp_path):
        store = JsonFileStore(tmp_path)
        store.replace("marketplaces", [_marketplace("old/one").to_record()])
        old_plugins = [_plugin("old-one", "a").to_record()]
        store.replace("plugins", old_plugins)
        reconciler = Reconciler(store)
        result = reconciler.merge(
            reconciler.load(),
            [Marketplace(repo="new/one", plugin_count=1)],
            {"new/one": [_plugin("new-one", "b")]},
            ["new/one"],
            NOW,
        )

        real_replace = os.replace
        calls = []

        def replace_second_fails(src, dst):
            calls.append(dst)
            if len(calls) == 2:
                raise OSError("disk full")
            real_replace(src, dst)

        with patch("marketplace_indexer.storage.backends.os.replace", side_effect=replace_second_fails):
            with pytest.raises(StorageWriteFailure):
                reconciler.persist(result)

        assert len(calls) == 3
        assert not result.persisted
        assert store.load("plugins") == old_plugins
        assert [m["repo"] for m in store.load("marketplaces")] == ["old/one"]

    def test_failed_write_leaves_previous_state(self, tmp_path):
        store = JsonFileStore(tmp_path)
        store.replace("marketplaces", [_marketplace("old/one").to_record()])
        reconciler = Reconciler(store)
        result = reconciler.merge(
            reconciler.load(), [Marketplace(repo="new/one")], {}, ["new/one"], NOW
        )
        with patch("marketplace_indexer.storage.backends.os.replace", side_effect=OSError("read-only")):
            with pytest.raises(StorageWriteFailure):
                reconciler.persist(result)
        assert not result.persisted
        assert [m["repo"] for m in store.load("marketplaces")] == ["old/one"]

    def test_merge_does_not_write(self):
        store = MemoryStore()
        reconciler = Reconciler(store)
        reconciler.merge(reconciler.load(), [Marketplace(repo="acme/tools")], {}, [], NOW)
        assert store.writes == []
