"""Parsing and shape checking of ``.claude-plugin/marketplace.json``.

The descriptor is untrusted external JSON. It is parsed into the permissive
models below (unknown keys allowed, metadata optional) and only converted to
:class:`~marketplace_indexer.models.Marketplace` / ``Plugin`` records once every
check has passed.
"""

from __future__ import annotations

import json
from typing import Any, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

DESCRIPTOR_DIR = ".claude-plugin"
DESCRIPTOR_FILENAME = "marketplace.json"
DESCRIPTOR_PATH = f"{DESCRIPTOR_DIR}/{DESCRIPTOR_FILENAME}"

# Locator key required for each object-style plugin source kind
_SOURCE_LOCATORS = {
    "github": "repo",
    "git": "url",
    "url": "url",
    "npm": "package",
    "pip": "package",
    "path": "path",
}


class DescriptorAuthor(BaseModel):
    model_config = ConfigDict(extra="allow")

    name: Optional[str] = None
    email: Optional[str] = None
    url: Optional[str] = None


class DescriptorPluginEntry(BaseModel):
    """A plugin entry as listed in the descriptor."""

    model_config = ConfigDict(
        extra="allow", populate_by_name=True, str_strip_whitespace=True
    )

    name: str = Field(..., min_length=1)
    source: Union[str, dict[str, Any]]
    description: Optional[str] = None
    version: Optional[str] = None
    author: Optional[DescriptorAuthor] = None
    homepage: Optional[str] = None
    repository: Optional[str] = None
    license: Optional[str] = None
    keywords: Optional[list[str]] = None
    category: Optional[str] = None
    categories: Optional[list[str]] = None
    commands: Optional[Union[str, list[str], dict[str, Any]]] = None
    agents: Optional[Union[str, list[str], dict[str, Any]]] = None
    hooks: Optional[Union[str, list[str], dict[str, Any]]] = None
    mcp_servers: Optional[Union[str, list[str], dict[str, Any]]] = Field(
        None, alias="mcpServers"
    )

    @field_validator("source", mode="before")
    @classmethod
    def _check_source(cls, value: Any) -> Any:
        if isinstance(value, str):
            if not value.strip():
                raise ValueError("source must not be empty")
            return value.strip()
        if isinstance(value, dict):
            kind = str(value.get("source") or "").strip().lower()
            if not kind:
                raise ValueError("source object needs a 'source' kind")
            locator = _SOURCE_LOCATORS.get(kind)
            if locator and not str(value.get(locator) or "").strip():
                raise ValueError(f"'{kind}' source needs a '{locator}' value")
            return value
        raise ValueError("source must be a path string or a source object")

    @field_validator("author", mode="before")
    @classmethod
    def _coerce_author(cls, value: Any) -> Any:
        # "author": "Jane Doe" is common in the wild
        if isinstance(value, str):
            return {"name": value} if value.strip() else None
        return value

    @property
    def source_path(self) -> str:
        """The plugin source as a single string."""
        if isinstance(self.source, str):
            return self.source
        kind = str(self.source.get("source")).strip().lower()
        locator = _SOURCE_LOCATORS.get(kind)
        value = str(self.source.get(locator) or "").strip() if locator else ""
        if kind in ("path", "url", "git"):
            return value
        if value:
            return f"{kind}:{value}"
        return kind

    @property
    def primary_category(self) -> Optional[str]:
        """Declared category, else the first entry of ``categories``."""
        if self.category:
            return self.category
        for candidate in self.categories or []:
            if candidate and candidate.strip():
                return candidate.strip()
        return None


class DescriptorMetadata(BaseModel):
    model_config = ConfigDict(extra="allow")

    description: Optional[str] = None
    version: Optional[str] = None


class DescriptorDocument(BaseModel):
    """Root object of a marketplace descriptor."""

    model_config = ConfigDict(extra="allow", str_strip_whitespace=True)

    name: str = Field(..., min_length=1)
    description: Optional[str] = None
    owner: Optional[Union[str, dict[str, Any]]] = None
    metadata: Optional[DescriptorMetadata] = None
    plugins: list[DescriptorPluginEntry]

    @field_validator("plugins", mode="before")
    @classmethod
    def _require_plugins(cls, value: Any) -> Any:
        if isinstance(value, list) and not value:
            raise ValueError("must list at least one plugin")
        return value

    @property
    def effective_description(self) -> str:
        if self.description:
            return self.description
        if self.metadata and self.metadata.description:
            return self.metadata.description.strip()
        return ""

    @property
    def categories(self) -> list[str]:
        """Sorted, deduplicated primary categories of all entries."""
        return sorted(
            {entry.primary_category for entry in self.plugins if entry.primary_category}
        )


def parse_json(raw_content: str) -> tuple[Any, Optional[str]]:
    """Parse raw descriptor text.

    Returns:
        ``(data, None)`` on success, ``(None, message)`` for malformed JSON
    """
    try:
        return json.loads(raw_content), None
    except json.JSONDecodeError as e:
        return None, f"Invalid JSON: {e.msg} (line {e.lineno}, column {e.colno})"


def check_shape(data: Any) -> tuple[Optional[DescriptorDocument], list[str]]:
    """Check parsed JSON against the descriptor shape.

    Every violation is reported, not only the first one.
    """
    if not isinstance(data, dict):
        return None, ["Descriptor must be a JSON object"]
    try:
        return DescriptorDocument.model_validate(data), []
    except ValidationError as e:
        return None, [_format_error(err) for err in e.errors()]


def _format_error(error: dict[str, Any]) -> str:
    location = ".".join(str(part) for part in error.get("loc", ())) or "<root>"
    message = str(error.get("msg", "invalid value"))
    if message.startswith("Value error, "):
        message = message[len("Value error, "):]
    return f"{location}: {message}"


def is_descriptor_path(path: str) -> bool:
    """True for ``marketplace.json`` directly inside a ``.claude-plugin`` directory."""
    parts = path.strip("/").split("/")
    return len(parts) >= 2 and parts[-1] == DESCRIPTOR_FILENAME and parts[-2] == DESCRIPTOR_DIR
