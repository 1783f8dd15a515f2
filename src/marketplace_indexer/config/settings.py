"""Settings and configuration management."""

from functools import lru_cache
from pathlib import Path
from typing import Literal, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from marketplace_indexer.errors import ConfigurationError


DEFAULT_DATA_DIR = Path("data")


class Settings(BaseSettings):
    """Application settings."""

    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", case_sensitive=False, extra="ignore"
    )

    # GitHub
    github_token: Optional[str] = Field(
        None, description="GitHub personal access token (required for code search)"
    )
    github_api_url: str = Field(
        "https://api.github.com", description="GitHub REST API base URL"
    )
    raw_content_url: str = Field(
        "https://raw.githubusercontent.com",
        description="Base URL for raw file downloads",
    )
    primary_branch: str = Field("main", description="Branch tried first for descriptors")
    fallback_branch: str = Field(
        "master", description="Branch tried when the primary branch has no descriptor"
    )

    # Search and rate limiting
    search_max_pages: int = Field(10, ge=1, le=10, description="Code search page cap")
    search_per_page: int = Field(100, ge=1, le=100, description="Results per search page")
    max_concurrency: int = Field(
        5, ge=1, description="Concurrent descriptor fetches/validations"
    )
    rate_limit_max_wait: float = Field(
        60.0,
        ge=0,
        description="Longest wait (seconds) for a rate limit reset before truncating",
    )
    rate_limit_reserve: int = Field(
        5, ge=0, description="Requests held back from the quota as a safety margin"
    )
    request_timeout: float = Field(30.0, gt=0, description="HTTP timeout in seconds")
    fetch_stars: bool = Field(True, description="Fetch star counts for marketplaces")

    # Storage
    storage_backend: Literal["file", "blob"] = Field(
        "file", description="Persistence backend: 'file' or 'blob'"
    )
    data_dir: Path = Field(
        default_factory=lambda: DEFAULT_DATA_DIR,
        description="Directory holding marketplaces.json and plugins.json",
    )
    blob_base_url: Optional[str] = Field(
        None, description="Base URL of the blob store (storage_backend=blob)"
    )
    blob_token: Optional[str] = Field(None, description="Blob store write token")

    # Reconciliation
    removal_policy: Literal["delete", "flag"] = Field(
        "delete",
        description="What to do with auto entries that failed revalidation",
    )

    # Logging
    log_level: str = Field("INFO", description="Logging level")
    log_format: str = Field("text", description="Log format: 'text' or 'json'")
    sanitize_logs: bool = Field(True, description="Sanitize sensitive data from logs")

    @property
    def has_github_token(self) -> bool:
        """Check if a GitHub token is configured."""
        return bool(self.github_token)

    def require_github_token(self) -> str:
        """Return the GitHub token or raise ConfigurationError."""
        if not self.github_token:
            raise ConfigurationError(
                "GITHUB_TOKEN is not set. GitHub code search requires an "
                "authenticated token; export GITHUB_TOKEN or add it to .env."
            )
        return self.github_token

    def validate_storage(self) -> None:
        """Check that the configured storage backend has what it needs."""
        if self.storage_backend == "blob":
            missing = [
                name
                for name, value in (
                    ("BLOB_BASE_URL", self.blob_base_url),
                    ("BLOB_TOKEN", self.blob_token),
                )
                if not value
            ]
            if missing:
                raise ConfigurationError(
                    f"storage_backend=blob requires {', '.join(missing)}"
                )


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
