"""Run report models."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field


class FailureStage(str, Enum):
    """Pipeline stage at which a candidate failed."""

    FETCH = "fetch"
    PARSE = "parse"
    SCHEMA = "schema"
    ACCESS = "access"
    EXTRACT = "extract"


class CandidateFailure(BaseModel):
    """A search hit that did not make it into the index."""

    repo: str
    stage: FailureStage
    errors: list[str] = Field(default_factory=list)
    transient: bool = Field(
        False,
        description="Could not be checked (outage); existing data is left untouched",
    )


class SlugConflictEntry(BaseModel):
    """Two distinct repositories competing for one slug."""

    slug: str
    existing_repo: str
    rejected_repo: str


class RunReport(BaseModel):
    """Summary of one discovery run."""

    started_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    finished_at: Optional[datetime] = None
    dry_run: bool = False

    candidates: int = Field(0, description="Distinct repositories found by search")
    processed: int = Field(0, description="Candidates fetched and validated this run")
    validated: int = Field(0, description="Candidates that passed validation")

    added: int = 0
    updated: int = 0
    removed: int = 0
    flagged: int = Field(0, description="Failed entries kept as stale (flag policy)")
    total: int = 0
    plugins_total: int = 0

    failures: list[CandidateFailure] = Field(default_factory=list)
    conflicts: list[SlugConflictEntry] = Field(default_factory=list)
    truncated: bool = False
    truncation_reasons: list[str] = Field(default_factory=list)
    diagnostics: list[str] = Field(default_factory=list)

    def truncate(self, reason: str) -> None:
        self.truncated = True
        if reason not in self.truncation_reasons:
            self.truncation_reasons.append(reason)

    def add_failure(
        self,
        repo: str,
        stage: FailureStage,
        errors: list[str],
        transient: bool = False,
    ) -> None:
        self.failures.append(
            CandidateFailure(repo=repo, stage=stage, errors=errors, transient=transient)
        )

    def finish(self) -> None:
        """Sort entries for reproducible output and stamp the end time."""
        self.failures.sort(key=lambda f: (f.repo.lower(), f.stage.value))
        self.conflicts.sort(key=lambda c: (c.slug, c.rejected_repo.lower()))
        self.finished_at = datetime.now(timezone.utc)

    @property
    def duration_seconds(self) -> Optional[float]:
        if self.finished_at is None:
            return None
        return (self.finished_at - self.started_at).total_seconds()

    @property
    def succeeded(self) -> bool:
        """True when no candidate failed and nothing was truncated."""
        return not self.failures and not self.truncated and not self.conflicts
