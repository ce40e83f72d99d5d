# FILE: bookcovers/config.py
"""
Configuration management for the book cover engine
Loads from environment variables with validation
"""
import os
from typing import List, Optional
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


PROVIDER_NAMES = ("GOOGLE_BOOKS", "OPEN_LIBRARY", "LONGITOOD")


class Settings(BaseSettings):
    """Application settings loaded from environment"""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        populate_by_name=True,
    )

    # Backend server
    backend_host: str = Field(default="0.0.0.0", alias="BACKEND_HOST")
    backend_port: int = Field(default=8000, alias="BACKEND_PORT")
    environment: str = Field(default="development", alias="ENVIRONMENT")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")
    logs_dir: str = Field(default="./logs", alias="LOGS_DIR")

    # Local disk cover cache
    cover_cache_enabled: bool = Field(default=True, alias="COVER_CACHE_ENABLED")
    cover_cache_dir: str = Field(default="./data/book-covers", alias="COVER_CACHE_DIR")
    cover_cache_dir_name: str = Field(
        default="book-covers",
        alias="COVER_CACHE_DIR_NAME",
        description="Web path segment under which cached files are served"
    )
    cover_cache_max_age_days: int = Field(default=30, alias="COVER_CACHE_MAX_AGE_DAYS")
    placeholder_path: str = Field(
        default="/images/placeholder-book-cover.svg",
        alias="PLACEHOLDER_PATH"
    )

    # Object storage (S3 compatible)
    s3_enabled: bool = Field(default=False, alias="S3_ENABLED")
    s3_bucket_name: Optional[str] = Field(default=None, alias="S3_BUCKET_NAME")
    s3_endpoint_url: Optional[str] = Field(default=None, alias="S3_ENDPOINT_URL")
    s3_region: str = Field(default="us-east-1", alias="S3_REGION")
    s3_access_key_id: Optional[str] = Field(default=None, alias="S3_ACCESS_KEY_ID")
    s3_secret_access_key: Optional[str] = Field(default=None, alias="S3_SECRET_ACCESS_KEY")
    s3_cdn_url: Optional[str] = Field(default=None, alias="S3_CDN_URL")
    s3_cover_prefix: str = Field(default="images/book-covers/", alias="S3_COVER_PREFIX")

    # Cover providers
    google_books_api_key: Optional[str] = Field(default=None, alias="GOOGLE_BOOKS_API_KEY")
    google_books_base_url: str = Field(
        default="https://www.googleapis.com/books/v1",
        alias="GOOGLE_BOOKS_BASE_URL"
    )
    open_library_covers_url: str = Field(
        default="https://covers.openlibrary.org",
        alias="OPEN_LIBRARY_COVERS_URL"
    )
    longitood_base_url: str = Field(
        default="https://bookcover.longitood.com",
        alias="LONGITOOD_BASE_URL"
    )
    http_user_agent: str = Field(default="BookCoverEngine/1.0", alias="HTTP_USER_AGENT")

    # Resolution policy
    provider_order: List[str] = Field(
        default=["GOOGLE_BOOKS", "OPEN_LIBRARY", "LONGITOOD"],
        alias="PROVIDER_ORDER",
        description="Quality-priority order used when any provider is acceptable"
    )
    provider_fallback_enabled: bool = Field(
        default=True,
        alias="PROVIDER_FALLBACK_ENABLED",
        description="Fall back to the other providers when a requested provider fails"
    )
    provider_timeout_seconds: float = Field(default=10.0, alias="PROVIDER_TIMEOUT_SECONDS")
    request_timeout_seconds: float = Field(default=30.0, alias="REQUEST_TIMEOUT_SECONDS")
    cache_read_timeout_seconds: float = Field(default=2.0, alias="CACHE_READ_TIMEOUT_SECONDS")
    io_worker_threads: int = Field(default=8, alias="IO_WORKER_THREADS")
    background_shutdown_timeout_seconds: float = Field(
        default=10.0,
        alias="BACKGROUND_SHUTDOWN_TIMEOUT_SECONDS"
    )

    # Circuit breaker
    circuit_breaker_threshold: int = Field(default=3, alias="CIRCUIT_BREAKER_THRESHOLD")
    circuit_breaker_cooldown_seconds: int = Field(default=60, alias="CIRCUIT_BREAKER_COOLDOWN_SECONDS")

    # Dimension rules
    min_valid_dimension: int = Field(
        default=1,
        alias="MIN_VALID_DIMENSION",
        description="Dimensions at or below this value mean 'unknown'"
    )
    min_cached_dimension: int = Field(
        default=150,
        alias="MIN_CACHED_DIMENSION",
        description="Cached images must exceed this on both sides to get the locality bonus"
    )
    min_acceptable_dimension: int = Field(
        default=200,
        alias="MIN_ACCEPTABLE_DIMENSION",
        description="Both sides must reach this for a provider result to end the search"
    )
    default_dimension: int = Field(default=512, alias="DEFAULT_DIMENSION")
    high_res_pixel_threshold: int = Field(default=480_000, alias="HIGH_RES_PIXEL_THRESHOLD")

    # Cleanup / quarantine
    cleanup_prefix: str = Field(default="images/book-covers/", alias="CLEANUP_PREFIX")
    cleanup_quarantine_prefix: str = Field(
        default="images/non-covers-pages/",
        alias="CLEANUP_QUARANTINE_PREFIX"
    )
    cleanup_default_batch_limit: int = Field(default=100, alias="CLEANUP_DEFAULT_BATCH_LIMIT")
    cleanup_white_pixel_ratio: float = Field(
        default=0.9,
        alias="CLEANUP_WHITE_PIXEL_RATIO",
        description="Share of near-white pixels above which an image looks like a scanned page"
    )
    cleanup_white_threshold: int = Field(default=235, alias="CLEANUP_WHITE_THRESHOLD")
    cleanup_max_aspect_ratio: float = Field(default=1.2, alias="CLEANUP_MAX_ASPECT_RATIO")
    cleanup_min_aspect_ratio: float = Field(default=0.4, alias="CLEANUP_MIN_ASPECT_RATIO")
    cleanup_min_dimension: int = Field(default=50, alias="CLEANUP_MIN_DIMENSION")
    placeholder_signatures: List[str] = Field(
        default=[],
        alias="PLACEHOLDER_SIGNATURES",
        description="SHA-256 hex digests of known provider placeholder images"
    )

    # Provenance
    provenance_export_enabled: bool = Field(default=True, alias="PROVENANCE_EXPORT_ENABLED")
    provenance_buffer_size: int = Field(default=100, alias="PROVENANCE_BUFFER_SIZE")

    # Validators
    @field_validator("provider_order")
    @classmethod
    def validate_provider_order(cls, v):
        normalized = [p.strip().upper() for p in v]
        unknown = [p for p in normalized if p not in PROVIDER_NAMES]
        if unknown:
            raise ValueError(f"provider_order contains unknown providers: {unknown}")
        if len(set(normalized)) != len(normalized):
            raise ValueError("provider_order must not repeat providers")
        return normalized

    @field_validator(
        "provider_timeout_seconds",
        "request_timeout_seconds",
        "cache_read_timeout_seconds",
        "background_shutdown_timeout_seconds",
    )
    @classmethod
    def validate_timeouts(cls, v):
        if v <= 0:
            raise ValueError("timeouts must be greater than zero")
        return v

    @field_validator("cleanup_white_pixel_ratio")
    @classmethod
    def validate_white_pixel_ratio(cls, v):
        if not 0.0 < v <= 1.0:
            raise ValueError("cleanup_white_pixel_ratio must be in (0, 1]")
        return v

    @field_validator("io_worker_threads", "circuit_breaker_threshold")
    @classmethod
    def validate_positive(cls, v):
        if v < 1:
            raise ValueError("value must be at least 1")
        return v

    @field_validator("placeholder_signatures")
    @classmethod
    def validate_signatures(cls, v):
        return [s.strip().lower() for s in v if s and s.strip()]

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        # Ensure directories exist
        for dir_path in [self.logs_dir, self.cover_cache_dir]:
            os.makedirs(dir_path, exist_ok=True)

    @property
    def s3_configured(self) -> bool:
        return self.s3_enabled and bool(self.s3_bucket_name)


_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """Get or create singleton settings instance"""
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings


def reload_settings():
    """Reload settings (useful for testing)"""
    global _settings
    _settings = None
    return get_settings()
