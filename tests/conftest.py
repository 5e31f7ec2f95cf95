"""Shared fixtures for drawings worker tests."""

from __future__ import annotations

import io
import os
import threading

import pytest
from PIL import Image, ImageDraw
from sqlmodel import Session, SQLModel, create_engine

import models  # noqa: F401
from clients.storage import ObjectStore
from config import reset_config
from jobs.types import WorkerDeps
from utils.storage_utils import PDFS_PREFIX, TILES_PREFIX

TILES_BASE_URL = "https://tiles.example.com"


@pytest.fixture(autouse=True, scope="session")
def test_env_vars():
    """Provide required config env vars for tests."""
    env_vars = {
        "DATABASE_URL": "sqlite://",
        "DRAWINGS_TILES_STORAGE": "r2",
        "R2_ACCOUNT_ID": "test-account",
        "R2_ACCESS_KEY_ID": "test-key",
        "R2_SECRET_ACCESS_KEY": "test-secret",
        "R2_BUCKET": "test-bucket",
        "DRAWINGS_TILES_BASE_URL": TILES_BASE_URL,
    }
    original = {k: os.environ.get(k) for k in env_vars}
    os.environ.update(env_vars)
    reset_config()
    yield
    # Restore original values
    for k, v in original.items():
        if v is None:
            os.environ.pop(k, None)
        else:
            os.environ[k] = v
    reset_config()


class FakeStorageClient:
    """Dict-backed stand-in for R2StorageClient."""

    def __init__(self, bucket_name: str = "test-bucket") -> None:
        self.bucket_name = bucket_name
        self.objects: dict[str, bytes] = {}
        self.metadata: dict[str, dict[str, str | None]] = {}
        self.upload_calls = 0
        self.download_calls = 0
        self.delete_calls: list[list[str]] = []
        self.fail_uploads_for: set[str] = set()
        self.fail_deletes = False
        self._lock = threading.Lock()

    def upload_from_bytes(self, data, key, content_type="application/octet-stream", cache_control=None):
        with self._lock:
            self.upload_calls += 1
            if key in self.fail_uploads_for:
                raise OSError(f"Upload failed for {key}: simulated")
            self.objects[key] = bytes(data)
            self.metadata[key] = {"content_type": content_type, "cache_control": cache_control}
        return f"s3://{self.bucket_name}/{key}"

    def download_to_bytes(self, key):
        self.download_calls += 1
        if key not in self.objects:
            raise FileNotFoundError(f"Remote file not found: s3://{self.bucket_name}/{key}")
        return self.objects[key]

    def delete_keys(self, keys):
        self.delete_calls.append(list(keys))
        if self.fail_deletes:
            raise OSError("Delete failed: simulated")
        for key in keys:
            self.objects.pop(key, None)

    @property
    def call_count(self) -> int:
        return self.upload_calls + self.download_calls + len(self.delete_calls)

    def keys_under(self, prefix: str) -> list[str]:
        return sorted(key for key in self.objects if key.startswith(prefix))


@pytest.fixture
def storage_client():
    return FakeStorageClient()


@pytest.fixture
def tiles_store(storage_client):
    return ObjectStore(storage_client, TILES_PREFIX, public_base_url=TILES_BASE_URL)


@pytest.fixture
def pdfs_store(storage_client):
    return ObjectStore(storage_client, PDFS_PREFIX)


@pytest.fixture
def worker_deps(tiles_store, pdfs_store):
    return WorkerDeps(tiles_store=tiles_store, pdfs_store=pdfs_store, tile_upload_concurrency=4)


@pytest.fixture
def engine(tmp_path):
    """File-backed SQLite engine so worker threads share one database."""
    engine = create_engine(
        f"sqlite:///{tmp_path / 'worker.db'}",
        connect_args={"check_same_thread": False},
    )
    SQLModel.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return lambda: Session(engine)


@pytest.fixture
def session(engine):
    with Session(engine) as session:
        yield session


def make_png_bytes(width: int, height: int, mode: str = "RGB") -> bytes:
    """Render a small drawing-like PNG."""
    color = 255 if mode in ("L", "1", "P") else (255, 255, 255)
    img = Image.new(mode, (width, height), color=color)
    draw = ImageDraw.Draw(img)
    ink = 0 if mode in ("L", "1", "P") else (0, 0, 0)
    draw.rectangle((width // 8, height // 8, width * 7 // 8, height * 7 // 8), outline=ink)
    draw.line((0, 0, width - 1, height - 1), fill=ink)
    buffer = io.BytesIO()
    img.save(buffer, format="PNG")
    return buffer.getvalue()


def make_pdf_bytes(page_count: int, size: tuple[int, int] = (200, 150)) -> bytes:
    """Build a multi-page PDF from blank Pillow pages."""
    pages = []
    for index in range(page_count):
        img = Image.new("RGB", size, color=(255, 255, 255))
        ImageDraw.Draw(img).text((10, 10), f"Page {index + 1}", fill=(0, 0, 0))
        pages.append(img)
    buffer = io.BytesIO()
    pages[0].save(buffer, format="PDF", save_all=True, append_images=pages[1:])
    return buffer.getvalue()


@pytest.fixture
def png_bytes():
    return make_png_bytes(600, 400)


@pytest.fixture
def pdf_bytes():
    return make_pdf_bytes(3)


@pytest.fixture
def png_factory():
    return make_png_bytes


@pytest.fixture
def pdf_factory():
    return make_pdf_bytes
