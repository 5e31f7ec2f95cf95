"""Configuration management for the drawings tile worker."""

from pydantic import AliasChoices, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Config(BaseSettings):
    """Drawings worker configuration from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Database
    database_url: str | None = Field(
        default=None,
        description="Full SQLAlchemy URL; takes precedence over the db_* components",
    )
    db_host: str | None = None
    db_port: int = 5432
    db_name: str = "postgres"
    db_user: str | None = None
    db_password: str | None = None

    # Tile storage (Cloudflare R2 through the S3 API)
    drawings_tiles_storage: str = Field(
        default="r2",
        description="Tile storage provider. Only 'r2' is supported.",
    )
    r2_account_id: str | None = None
    r2_endpoint: str | None = Field(
        default=None,
        description="R2 endpoint URL (defaults to https://<account>.r2.cloudflarestorage.com)",
    )
    r2_access_key_id: str | None = None
    r2_secret_access_key: str | None = None
    r2_bucket: str = "project-files"
    r2_region: str = "auto"
    r2_force_path_style: bool = False

    drawings_tiles_base_url: str | None = Field(
        default=None,
        validation_alias=AliasChoices(
            "drawings_tiles_base_url",
            "next_public_drawings_tiles_base_url",
        ),
        description="Public base URL that tile paths are appended to",
    )
    drawings_tiles_debug: bool = Field(
        default=False, description="Enable debug logs for storage and tiling"
    )

    # Worker Configuration
    worker_poll_interval: float = 5.0
    worker_batch_size: int = Field(default=5, description="Max jobs claimed per poll cycle")
    worker_max_retries: int = 3
    worker_claim_lease_seconds: int = Field(
        default=1_800,
        description="Seconds before a claimed job that never finished can be claimed again",
    )
    worker_retry_permanent_errors: bool = Field(
        default=True,
        description="Retry content errors with backoff like transient errors",
    )
    worker_log_level: str = Field(default="INFO", description="Logging level")
    worker_local_dev: bool = Field(
        default=False, description="Human-readable colored logs instead of JSON"
    )

    # Tiling
    tile_upload_concurrency: int = Field(
        default=8, description="Tiles encoded and uploaded per concurrent batch"
    )
    pdf_render_dpi: int = Field(default=100, description="DPI for PDF page extraction")

    # Health server
    port: int = 8080

    @field_validator("worker_batch_size", "tile_upload_concurrency", "worker_max_retries")
    @classmethod
    def validate_positive(cls, v: int) -> int:
        """Validate counts that size pools and batches."""
        if v < 1:
            raise ValueError("value must be at least 1")
        return v


_config: Config | None = None


class _LazyConfig:
    """Proxy that lazily loads config on first attribute access."""

    def __getattr__(self, name: str):
        global _config
        if _config is None:
            _config = Config()
        return getattr(_config, name)


def reset_config() -> None:
    """Drop the cached config so the next access re-reads the environment."""
    global _config
    _config = None


config = _LazyConfig()
