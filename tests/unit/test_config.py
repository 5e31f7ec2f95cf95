"""Unit tests for environment-driven configuration."""

import pytest
from pydantic import ValidationError

from config import Config, config, reset_config


@pytest.fixture
def clean_env(monkeypatch):
    for name in (
        "DATABASE_URL",
        "DRAWINGS_TILES_BASE_URL",
        "NEXT_PUBLIC_DRAWINGS_TILES_BASE_URL",
        "WORKER_BATCH_SIZE",
        "WORKER_POLL_INTERVAL",
        "TILE_UPLOAD_CONCURRENCY",
    ):
        monkeypatch.delenv(name, raising=False)
    yield monkeypatch
    reset_config()


class TestConfig:
    def test_defaults(self, clean_env):
        cfg = Config(_env_file=None)

        assert cfg.worker_poll_interval == 5.0
        assert cfg.worker_batch_size == 5
        assert cfg.worker_max_retries == 3
        assert cfg.worker_claim_lease_seconds == 1800
        assert cfg.worker_retry_permanent_errors is True
        assert cfg.tile_upload_concurrency == 8
        assert cfg.pdf_render_dpi == 100
        assert cfg.drawings_tiles_storage == "r2"
        assert cfg.port == 8080

    def test_base_url_primary_name(self, clean_env):
        clean_env.setenv("DRAWINGS_TILES_BASE_URL", "https://tiles.example.com")
        assert Config(_env_file=None).drawings_tiles_base_url == "https://tiles.example.com"

    def test_base_url_public_fallback(self, clean_env):
        clean_env.setenv("NEXT_PUBLIC_DRAWINGS_TILES_BASE_URL", "https://public.example.com")
        assert Config(_env_file=None).drawings_tiles_base_url == "https://public.example.com"

    def test_base_url_primary_wins(self, clean_env):
        clean_env.setenv("DRAWINGS_TILES_BASE_URL", "https://tiles.example.com")
        clean_env.setenv("NEXT_PUBLIC_DRAWINGS_TILES_BASE_URL", "https://public.example.com")
        assert Config(_env_file=None).drawings_tiles_base_url == "https://tiles.example.com"

    def test_reads_numeric_env(self, clean_env):
        clean_env.setenv("WORKER_POLL_INTERVAL", "0.5")
        clean_env.setenv("WORKER_BATCH_SIZE", "10")

        cfg = Config(_env_file=None)

        assert cfg.worker_poll_interval == 0.5
        assert cfg.worker_batch_size == 10

    def test_rejects_zero_concurrency(self, clean_env):
        clean_env.setenv("TILE_UPLOAD_CONCURRENCY", "0")
        with pytest.raises(ValidationError):
            Config(_env_file=None)


class TestLazyConfig:
    def test_reloads_after_reset(self, clean_env):
        clean_env.setenv("WORKER_BATCH_SIZE", "7")
        reset_config()
        assert config.worker_batch_size == 7

        clean_env.setenv("WORKER_BATCH_SIZE", "9")
        assert config.worker_batch_size == 7

        reset_config()
        assert config.worker_batch_size == 9
