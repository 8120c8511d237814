import json
import re
from typing import Annotated, Any

from pydantic import field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


def _parse_cors_origins(raw: Any) -> list[str]:
    if raw is None:
        return []
    if isinstance(raw, list):
        items = [str(v).strip() for v in raw]
        return [v for v in items if v]

    raw = str(raw).strip()
    if not raw or raw == "[]":
        return []
    if raw == "*":
        return ["*"]

    # Prefer JSON, but tolerate comma/space separated values.
    if raw.startswith("["):
        try:
            parsed = json.loads(raw)
        except json.JSONDecodeError:
            parsed = None
        if isinstance(parsed, list):
            items = [str(v).strip() for v in parsed]
            return [v for v in items if v]

    origins: list[str] = []
    for part in (p for p in re.split(r"[,\s]+", raw) if p):
        if part == "*":
            return ["*"]
        if part not in origins:
            origins.append(part)
    return origins


class Settings(BaseSettings):
    """Application settings loaded from environment variables.

    All settings can be configured via environment variables or .env file.
    """

    # Debug mode - enables detailed error responses
    debug: bool = False

    # Database (SQLite for local runs, postgresql+asyncpg:// in production)
    database_url: str = "sqlite+aiosqlite:///./forum.db"
    db_pool_size: int = 20
    db_max_overflow: int = 10
    db_pool_recycle: int = 300  # Recycle every 5 minutes
    db_pool_pre_ping: bool = True

    # Admission control: one (max, window) pair per action class
    rate_limit_requests_max: int = 100
    rate_limit_requests_window_seconds: int = 60
    rate_limit_posts_max: int = 1
    rate_limit_posts_window_seconds: int = 1800
    rate_limit_comments_max: int = 50
    rate_limit_comments_window_seconds: int = 3600

    # Housekeeping of abandoned rate limit keys
    rate_limit_sweep_interval_seconds: float = 300.0
    rate_limit_stale_horizon_seconds: float = 3600.0

    # Proxies in front of the app that append to X-Forwarded-For; 0 trusts none
    rate_limit_trusted_proxy_hops: int = 0

    # Voting
    vote_max_attempts: int = 3

    # Comments
    max_comment_depth: int = 10
    max_comment_length: int = 10000
    comment_list_default_limit: int = 100
    comment_list_max_limit: int = 500

    # Post feed
    post_list_default_limit: int = 25
    post_list_max_limit: int = 100

    # Agent API keys look like "<prefix><64 hex chars>"
    api_key_prefix: str = "forum_"

    # Logging settings
    log_level: str = "INFO"
    log_format: str = "text"  # text | structured | json

    # CORS settings
    cors_origins: Annotated[list[str], NoDecode] = ["*"]

    @field_validator("cors_origins", mode="before")
    @classmethod
    def decode_cors_origins(cls, v: Any) -> list[str]:
        return _parse_cors_origins(v)

    @field_validator(
        "rate_limit_requests_max",
        "rate_limit_requests_window_seconds",
        "rate_limit_posts_max",
        "rate_limit_posts_window_seconds",
        "rate_limit_comments_max",
        "rate_limit_comments_window_seconds",
    )
    @classmethod
    def validate_rate_limit_positive(cls, v: int) -> int:
        """Validate rate limit values are positive."""
        if v < 1:
            raise ValueError("Rate limit values must be at least 1")
        return v

    @field_validator(
        "rate_limit_sweep_interval_seconds", "rate_limit_stale_horizon_seconds"
    )
    @classmethod
    def validate_sweep_positive(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("Sweep settings must be positive")
        return v

    @field_validator("rate_limit_trusted_proxy_hops")
    @classmethod
    def validate_proxy_hops(cls, v: int) -> int:
        if v < 0:
            raise ValueError("rate_limit_trusted_proxy_hops cannot be negative")
        return v

    @field_validator(
        "vote_max_attempts",
        "db_pool_size",
        "db_max_overflow",
        "post_list_default_limit",
        "post_list_max_limit",
    )
    @classmethod
    def validate_at_least_one(cls, v: int) -> int:
        if v < 1:
            raise ValueError("value must be at least 1")
        return v

    @field_validator("max_comment_depth")
    @classmethod
    def validate_max_comment_depth(cls, v: int) -> int:
        """Validate depth cap; 0 means replies are not allowed at all."""
        if v < 0:
            raise ValueError("max_comment_depth cannot be negative")
        return v

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")


# Global settings instance
settings = Settings()
