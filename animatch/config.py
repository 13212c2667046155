"""
AniMatch — Application Configuration

Loads all configuration from environment variables (and an optional .env file)
using Pydantic Settings.  A cached ``get_settings()`` helper is provided so that
FastAPI dependency-injection (and every matching component) receives the same
validated instance without re-parsing the environment on every call.
"""

from __future__ import annotations

from functools import lru_cache

from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# Hard per-commit ceiling of the replicated document store.
STORE_BATCH_CEILING = 500


class Settings(BaseSettings):
    """Central configuration for the AniMatch matching core."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ------------------------------------------------------------------ #
    # Document store backend
    # ------------------------------------------------------------------ #
    STORE_BACKEND: str = "sql"  # "sql" or "memory"
    DATABASE_URL: str = "sqlite+aiosqlite:///./animatch.db"

    # ------------------------------------------------------------------ #
    # Matching policy
    # ------------------------------------------------------------------ #
    MATCH_THRESHOLD: int = 3          # common favorites needed to propose a match
    FREE_MATCH_QUOTA: int = 2         # new matches before a free user cools down
    COOLDOWN_SECONDS: int = 7 * 24 * 60 * 60
    MAX_FAVORITES_FREE: int = 5
    MAX_FAVORITES_PREMIUM: int = 10

    # ------------------------------------------------------------------ #
    # Fan-out and batching
    # ------------------------------------------------------------------ #
    INDEX_SCAN_BATCH_SIZE: int = 10
    CANDIDATE_FETCH_CONCURRENCY: int = 10
    MAX_BATCH_OPERATIONS: int = 100

    # ------------------------------------------------------------------ #
    # Transient store failure retries
    # ------------------------------------------------------------------ #
    STORE_RETRY_ATTEMPTS: int = 3
    STORE_RETRY_WAIT_MIN_SECONDS: float = 0.2
    STORE_RETRY_WAIT_MAX_SECONDS: float = 2.0

    # ------------------------------------------------------------------ #
    # Runtime environment
    # ------------------------------------------------------------------ #
    ENVIRONMENT: str = "development"
    LOG_LEVEL: str = "INFO"

    # ------------------------------------------------------------------ #
    # Derived helpers
    # ------------------------------------------------------------------ #
    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT == "production"

    @field_validator(
        "MATCH_THRESHOLD",
        "FREE_MATCH_QUOTA",
        "COOLDOWN_SECONDS",
        "MAX_FAVORITES_FREE",
        "MAX_FAVORITES_PREMIUM",
        "INDEX_SCAN_BATCH_SIZE",
        "CANDIDATE_FETCH_CONCURRENCY",
        "STORE_RETRY_ATTEMPTS",
    )
    @classmethod
    def _must_be_positive(cls, v: int) -> int:
        if v <= 0:
            raise ValueError(f"Value must be positive, got {v}")
        return v

    @field_validator("STORE_BACKEND")
    @classmethod
    def _known_backend(cls, v: str) -> str:
        v = v.lower()
        if v not in ("sql", "memory"):
            raise ValueError(f"STORE_BACKEND must be 'sql' or 'memory', got {v!r}")
        return v

    @model_validator(mode="after")
    def _batch_below_ceiling(self) -> "Settings":
        # Each pair needs two writes, so a chunk must hold at least one pair.
        if not 2 <= self.MAX_BATCH_OPERATIONS < STORE_BATCH_CEILING:
            raise ValueError(
                "MAX_BATCH_OPERATIONS must be between 2 and "
                f"{STORE_BATCH_CEILING - 1}, got {self.MAX_BATCH_OPERATIONS}"
            )
        return self


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return a cached, validated ``Settings`` instance.

    Using ``@lru_cache`` guarantees the .env file is read and validated
    exactly once per process lifetime.  Import this function anywhere you
    need access to configuration::

        from animatch.config import get_settings
        settings = get_settings()
    """
    return Settings()
