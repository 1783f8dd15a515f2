"""Pydantic models for persisted marketplace and plugin records.

Records are serialised in camelCase (``pluginCount``, ``discoveredAt``) because
the web front end reads the JSON snapshots directly.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

from marketplace_indexer.slug import to_slug

GITHUB_URL = "https://github.com"


class MarketplaceSource(str, Enum):
    """Where a marketplace record came from."""

    MANUAL = "manual"
    AUTO = "auto"


class _Record(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, extra="ignore"
    )

    def to_record(self) -> dict[str, Any]:
        """Serialise for persistence; absent optionals are omitted."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class Marketplace(_Record):
    """A discovered (or manually curated) plugin marketplace."""

    repo: str = Field(..., min_length=3)
    slug: str = ""
    description: str = ""
    plugin_count: int = Field(0, ge=0)
    categories: list[str] = Field(default_factory=list)
    discovered_at: Optional[datetime] = None
    last_updated: Optional[datetime] = None
    source: MarketplaceSource = MarketplaceSource.AUTO
    stars: Optional[int] = None
    stars_fetched_at: Optional[datetime] = None
    stale: bool = False

    @model_validator(mode="before")
    @classmethod
    def _derive_slug(cls, data: Any) -> Any:
        # slug is never trusted from input
        if isinstance(data, dict) and isinstance(data.get("repo"), str):
            data = {**data, "slug": to_slug(data["repo"])}
        return data

    @field_validator("categories")
    @classmethod
    def _normalise_categories(cls, value: list[str]) -> list[str]:
        return sorted({c.strip() for c in value if c and c.strip()})

    @field_validator("description", mode="before")
    @classmethod
    def _none_description(cls, value: Any) -> Any:
        return "" if value is None else value

    @property
    def url(self) -> str:
        return marketplace_url(self.repo)

    @property
    def is_manual(self) -> bool:
        return self.source == MarketplaceSource.MANUAL


class PluginAuthor(_Record):
    """Plugin author metadata."""

    name: Optional[str] = None
    email: Optional[str] = None
    url: Optional[str] = None


# Component fields are usually path lists; hooks/mcpServers may be inline config
ComponentPaths = Union[list[str], dict[str, Any]]


class Plugin(_Record):
    """One installable plugin extracted from a marketplace descriptor."""

    id: str
    name: str = Field(..., min_length=1)
    description: str = ""
    version: Optional[str] = None
    author: Optional[PluginAuthor] = None
    homepage: Optional[str] = None
    repository: Optional[str] = None
    license: Optional[str] = None
    keywords: Optional[list[str]] = None
    source: str
    marketplace: str
    marketplace_url: str
    category: Optional[str] = None
    commands: Optional[ComponentPaths] = None
    agents: Optional[ComponentPaths] = None
    hooks: Optional[ComponentPaths] = None
    mcp_servers: Optional[ComponentPaths] = None
    install_command: str


def plugin_id(marketplace_slug: str, plugin_name: str) -> str:
    """Stable plugin identifier: ``<marketplace-slug>/<plugin-name>``."""
    return f"{marketplace_slug}/{plugin_name}"


def install_command(plugin_name: str, marketplace_slug: str) -> str:
    """Install directive shown next to each plugin."""
    return f"/plugin install {plugin_name}@{marketplace_slug}"


def marketplace_url(repo: str) -> str:
    return f"{GITHUB_URL}/{repo}"
