# votestream/config.py
from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Runtime settings, read from ``VOTESTREAM_*`` environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="VOTESTREAM_",
        env_file=".env",
        extra="ignore",
    )

    redis_url: str = "redis://localhost:6379/0"
    sqlite_path: str = "votes_store.db"

    stream_name: str = "voto_stream"
    group_name: str = "voto_group"
    channel_name: str = "votes_updated"
    totals_key: str = "votes:total"
    candidates_key: str = "candidates"

    consumer_prefix: str = "consumer-votes"
    reclaim_min_idle_ms: int = Field(default=5 * 60 * 1000, ge=0)
    reclaim_interval_seconds: float = Field(default=30.0, ge=0)
    pending_page_size: int = Field(default=50, ge=1)
    read_batch_size: int = Field(default=10, ge=1)
    read_block_ms: int = Field(default=2000, ge=1)
    shutdown_timeout_seconds: float = 10.0

    log_level: str = "INFO"


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()


def reset_settings() -> None:
    get_settings.cache_clear()
