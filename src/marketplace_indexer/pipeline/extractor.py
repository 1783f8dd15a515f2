"""Plugin record extraction from validated descriptors."""

from __future__ import annotations

import logging
from typing import Any, Optional

from marketplace_indexer.descriptor import DescriptorPluginEntry, check_shape, parse_json
from marketplace_indexer.errors import DescriptorMalformed, SchemaViolation
from marketplace_indexer.models import (
    Marketplace,
    Plugin,
    PluginAuthor,
    install_command,
    marketplace_url,
    plugin_id,
)

logger = logging.getLogger(__name__)


def extract_plugins(
    marketplace: Marketplace,
    raw_content: str,
    diagnostics: Optional[list[str]] = None,
) -> list[Plugin]:
    """Build one plugin record per descriptor entry.

    The raw content is parsed again rather than reusing the validator's
    document, so extraction can be retried on its own. When two entries share
    a name the later one replaces the earlier one (at the earlier one's
    position); if ``diagnostics`` is given, a note is appended for each
    replacement.

    Raises:
        DescriptorMalformed: content is not valid JSON
        SchemaViolation: content does not have the descriptor shape
    """
    data, parse_error = parse_json(raw_content)
    if parse_error:
        raise DescriptorMalformed(marketplace.repo, parse_error)
    document, errors = check_shape(data)
    if errors:
        raise SchemaViolation(marketplace.repo, errors)

    plugins: dict[str, Plugin] = {}
    for entry in document.plugins:
        plugin = _build_plugin(marketplace, entry)
        if plugin.id in plugins and diagnostics is not None:
            diagnostics.append(
                f"{marketplace.repo}: duplicate plugin name '{entry.name}', "
                f"later entry replaces earlier one for id {plugin.id}"
            )
        plugins[plugin.id] = plugin

    logger.debug(
        "Extracted %d plugins from %s",
        len(plugins),
        marketplace.repo,
        extra={"repo": marketplace.repo, "count": len(plugins)},
    )
    return list(plugins.values())


def _build_plugin(marketplace: Marketplace, entry: DescriptorPluginEntry) -> Plugin:
    fields: dict[str, Any] = {
        "id": plugin_id(marketplace.slug, entry.name),
        "name": entry.name,
        "description": entry.description or "",
        "source": entry.source_path,
        "marketplace": marketplace.slug,
        "marketplace_url": marketplace_url(marketplace.repo),
        "install_command": install_command(entry.name, marketplace.slug),
    }

    optional = {
        "version": entry.version,
        "homepage": entry.homepage,
        "repository": entry.repository,
        "license": entry.license,
        "keywords": entry.keywords,
        "category": entry.primary_category,
        "commands": _component_paths(entry.commands),
        "agents": _component_paths(entry.agents),
        "hooks": _component_paths(entry.hooks),
        "mcp_servers": _component_paths(entry.mcp_servers),
    }
    fields.update({key: value for key, value in optional.items() if value is not None})

    if entry.author is not None:
        author = PluginAuthor(
            name=entry.author.name, email=entry.author.email, url=entry.author.url
        )
        if author.to_record():
            fields["author"] = author

    return Plugin(**fields)


def _component_paths(value: Any) -> Any:
    """Normalise a component field: a single path becomes a one-item list."""
    if value is None:
        return None
    if isinstance(value, str):
        return [value] if value.strip() else None
    return value
