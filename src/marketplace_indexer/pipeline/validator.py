"""Marketplace descriptor validation."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Iterable, Optional

from marketplace_indexer.descriptor import DescriptorDocument, check_shape, parse_json
from marketplace_indexer.errors import RepoCheckFailed, RepoVanished
from marketplace_indexer.models import Marketplace, MarketplaceSource
from marketplace_indexer.pipeline.report import FailureStage
from marketplace_indexer.rate_limit import RateBudget

if TYPE_CHECKING:
    from marketplace_indexer.api_clients import GitHubClient

logger = logging.getLogger(__name__)


@dataclass
class ValidationResult:
    """Outcome of validating one descriptor."""

    repo: str
    valid: bool
    marketplace: Optional[Marketplace] = None
    errors: list[str] = field(default_factory=list)
    stage: Optional[FailureStage] = None
    transient: bool = False

    @classmethod
    def failure(
        cls,
        repo: str,
        stage: FailureStage,
        errors: list[str],
        transient: bool = False,
    ) -> "ValidationResult":
        return cls(repo=repo, valid=False, errors=errors, stage=stage, transient=transient)


def check_descriptor(
    raw_content: str,
) -> tuple[Optional[DescriptorDocument], list[str], Optional[FailureStage]]:
    """Parse and shape-check descriptor text, without network access.

    Returns:
        ``(document, [], None)`` on success, else ``(None, errors, stage)``
    """
    data, parse_error = parse_json(raw_content)
    if parse_error:
        return None, [parse_error], FailureStage.PARSE
    document, errors = check_shape(data)
    if errors:
        return None, errors, FailureStage.SCHEMA
    return document, [], None


def build_marketplace(
    repo: str, document: DescriptorDocument, fallback_description: str = ""
) -> Marketplace:
    """Construct the marketplace record for a validated descriptor."""
    return Marketplace(
        repo=repo,
        description=document.effective_description or fallback_description,
        plugin_count=len(document.plugins),
        categories=document.categories,
        source=MarketplaceSource.AUTO,
    )


class MarketplaceValidator:
    """Validates fetched descriptors.

    Steps run in order and stop at the first failing step:

    1. JSON parse
    2. shape check (all violations collected)
    3. repository reachability via the shared GitHub client
    4. marketplace record construction

    Validations share no mutable state, so ``validate_all`` runs them
    concurrently, bounded by the rate budget's fan-out slots.
    """

    def __init__(
        self,
        github: Optional["GitHubClient"] = None,
        budget: Optional[RateBudget] = None,
        check_access: bool = True,
    ):
        """Initialize the validator.

        Args:
            github: Client used for reachability checks and description fallback
            budget: Shared budget whose slots bound ``validate_all``
            check_access: Skip step 3 when False (offline validation)
        """
        if check_access and github is None:
            raise ValueError("A GitHub client is required when check_access is enabled")
        self.github = github
        self.budget = budget or (github.budget if github is not None else RateBudget())
        self.check_access = check_access

    async def validate(self, repo: str, raw_content: str) -> ValidationResult:
        """Validate one descriptor for ``repo``."""
        document, errors, stage = check_descriptor(raw_content)
        if document is None:
            logger.info(
                "%s failed %s validation: %s",
                repo,
                stage.value,
                "; ".join(errors),
                extra={"repo": repo, "stage": stage.value},
            )
            return ValidationResult.failure(repo, stage, errors)

        fallback_description = ""
        if self.check_access:
            try:
                await self.github.require_accessible_async(repo)
            except RepoCheckFailed as e:
                logger.warning("Could not check %s: %s", repo, e, extra={"repo": repo})
                return ValidationResult.failure(
                    repo,
                    FailureStage.ACCESS,
                    [f"Could not verify repository accessibility: {e}"],
                    transient=True,
                )
            except RepoVanished as e:
                logger.info("%s", e, extra={"repo": repo, "stage": "access"})
                return ValidationResult.failure(repo, FailureStage.ACCESS, [e.reason])
            if not document.effective_description:
                fallback_description = await self.github.get_description_async(repo)

        marketplace = build_marketplace(repo, document, fallback_description)
        return ValidationResult(repo=repo, valid=True, marketplace=marketplace)

    async def _validate_bounded(self, repo: str, raw_content: str) -> ValidationResult:
        async with self.budget.slot():
            return await self.validate(repo, raw_content)

    async def validate_all(
        self, items: Iterable[tuple[str, str]]
    ) -> list[ValidationResult]:
        """Validate many ``(repo, raw_content)`` pairs concurrently.

        Results are sorted by repo.
        """
        results = await asyncio.gather(
            *(self._validate_bounded(repo, raw) for repo, raw in items)
        )
        return sorted(results, key=lambda r: r.repo.lower())
