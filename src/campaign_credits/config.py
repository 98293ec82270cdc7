"""Library settings loaded from environment variables (prefix CAMPAIGN_CREDITS_)."""
from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    # Storage
    mongo_uri: Optional[str] = Field(
        default=None, description="MongoDB URI; the in-memory backend is used when unset"
    )
    mongo_db: str = Field(default="campaign_credits", description="MongoDB database name")

    # Logging
    ledger_log_path: Optional[Path] = Field(
        default=Path("logs/credit_ledger.log"),
        description="Line-delimited JSON mirror of ledger activity; disabled when empty",
    )

    # Caching
    cache_ttl_seconds: int = Field(default=300, description="TTL of cached account snapshots")

    # Credits
    low_credit_threshold: int = Field(default=10, ge=0)
    default_validity_days: int = Field(
        default=30, gt=0, description="Activation window of a purchase when none is given"
    )
    expiry_warning_days: int = Field(default=7, gt=0)

    # Pacing
    issues_rejection_ratio: float = Field(
        default=0.10,
        ge=0,
        le=1,
        description="Share of target reviews rejected above which a campaign has issues",
    )

    model_config = SettingsConfigDict(
        env_prefix="CAMPAIGN_CREDITS_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @field_validator("ledger_log_path", mode="before")
    @classmethod
    def _blank_log_path_disables_mirror(cls, value):
        if isinstance(value, str) and not value.strip():
            return None
        return value


@lru_cache
def get_settings() -> Settings:
    return Settings()
