"""Marketplace Indexer - discovery and indexing of plugin marketplaces on GitHub."""

__version__ = "0.1.0"

from .config import Settings, get_settings
from .catalog import Catalog
from .models import Marketplace, MarketplaceSource, Plugin, PluginAuthor
from .slug import to_slug
from .pipeline import DiscoveryPipeline, MarketplaceValidator, RunReport, extract_plugins
from .storage import Reconciler, get_store

__all__ = [
    "Settings",
    "get_settings",
    "Catalog",
    "Marketplace",
    "MarketplaceSource",
    "Plugin",
    "PluginAuthor",
    "to_slug",
    "DiscoveryPipeline",
    "MarketplaceValidator",
    "RunReport",
    "extract_plugins",
    "Reconciler",
    "get_store",
]
