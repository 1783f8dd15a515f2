"""Discovery pipeline stages and the runner that chains them."""

from .extractor import extract_plugins
from .report import CandidateFailure, FailureStage, RunReport, SlugConflictEntry
from .runner import DiscoveryPipeline
from .validator import (
    MarketplaceValidator,
    ValidationResult,
    build_marketplace,
    check_descriptor,
)

__all__ = [
    "extract_plugins",
    "CandidateFailure",
    "FailureStage",
    "RunReport",
    "SlugConflictEntry",
    "DiscoveryPipeline",
    "MarketplaceValidator",
    "ValidationResult",
    "build_marketplace",
    "check_descriptor",
]
