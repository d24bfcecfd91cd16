"""Application settings models."""

from __future__ import annotations

from functools import lru_cache
from pydantic import ConfigDict, Field
from pydantic_settings import BaseSettings


DEFAULT_USER_AGENTS: list[str] = [
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/124.0.0.0 Safari/537.36",
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/124.0.0.0 Safari/537.36",
    "Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/124.0.0.0 Safari/537.36",
]


class InspectorSettings(BaseSettings):
    """Page inspection limits.

    Environment variables follow the ``INSPECT_`` prefix, e.g.
    ``INSPECT_FETCH_CONCURRENCY`` or ``INSPECT_FETCH_TIMEOUT``. Delays and
    timeouts are expressed in seconds.
    """

    fetch_concurrency: int = Field(default=3, ge=1)
    question_concurrency: int = Field(default=5, ge=1)
    fetch_timeout: float = Field(default=15.0, gt=0)
    min_text_length: int = 200
    max_text_length: int = 50_000
    min_delay: float = Field(default=0.3, ge=0)
    max_delay: float = Field(default=0.9, ge=0)
    max_expanded_urls: int = 25
    max_redirects: int = 5
    user_agents: list[str] = Field(default_factory=lambda: list(DEFAULT_USER_AGENTS))

    model_config = ConfigDict(extra="ignore", env_prefix="INSPECT_")

    @property
    def max_body_chars(self) -> int:
        """Streaming limit for a single response body."""
        return self.max_text_length * 2


class StorageSettings(BaseSettings):
    """Location of persisted research runs (``RUNS_BASE_DIR``)."""

    base_dir: str = "runs"

    model_config = ConfigDict(extra="ignore", env_prefix="RUNS_")


class RunSettings(BaseSettings):
    """Run-level budgets (``RESEARCH_`` prefix)."""

    max_pages: int = Field(default=200, ge=1)
    min_pages_for_synthesis: int = 20

    model_config = ConfigDict(extra="ignore", env_prefix="RESEARCH_")


class Settings(BaseSettings):
    """Top level settings loaded from ``.env``.

    Nested models keep their own prefixes (``INSPECT_``, ``RUNS_``,
    ``RESEARCH_``) so they can be tuned independently.
    """

    debug: bool = False

    inspector: InspectorSettings = Field(default_factory=InspectorSettings)
    storage: StorageSettings = Field(default_factory=StorageSettings)
    run: RunSettings = Field(default_factory=RunSettings)

    model_config = ConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        case_sensitive=False,
        extra="ignore",
    )


@lru_cache(maxsize=1)
def get_settings() -> "Settings":
    """Return cached application settings."""

    return Settings()
