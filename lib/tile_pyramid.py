"""Deep Zoom tile pyramid generation for rendered drawing pages.

Level ``max_level`` is the full-resolution image; each level below halves the
previous one (rounding up) until level 0, which is a single pixel-ish tile.
Tiles are fixed 256px squares with no overlap; the last column and row of a
level are clipped to whatever pixels remain.
"""

from __future__ import annotations

import io
import json
import logging
import math
import time
from collections.abc import Iterator
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass

from PIL import Image, UnidentifiedImageError
from pydantic import BaseModel, ConfigDict, Field

from utils.job_errors import ContentError
from utils.log_utils import log_storage_upload, log_tiles_level

logger = logging.getLogger(__name__)

TILE_SIZE = 256
TILE_OVERLAP = 0
TILE_FORMAT = "png"
THUMBNAIL_SIZE = 256
DEFAULT_UPLOAD_CONCURRENCY = 8
PNG_COMPRESS_LEVEL = 9
DEEPZOOM_XMLNS = "http://schemas.microsoft.com/deepzoom/2008"

# No pixel-count ceiling: drawing pages are legitimately enormous.
Image.MAX_IMAGE_PIXELS = None


class ManifestSize(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    width: int = Field(alias="Width")
    height: int = Field(alias="Height")


class ManifestImage(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    xmlns: str = DEEPZOOM_XMLNS
    format: str = Field(default=TILE_FORMAT, alias="Format")
    overlap: int = Field(default=TILE_OVERLAP, alias="Overlap")
    tile_size: int = Field(default=TILE_SIZE, alias="TileSize")
    size: ManifestSize = Field(alias="Size")
    levels: int = Field(alias="Levels")


class TileManifest(BaseModel):
    """Deep Zoom descriptor persisted on the sheet version and uploaded as manifest.json."""

    model_config = ConfigDict(populate_by_name=True)

    image: ManifestImage = Field(alias="Image")

    @classmethod
    def build(cls, width: int, height: int, levels: int) -> "TileManifest":
        return cls(
            image=ManifestImage(size=ManifestSize(width=width, height=height), levels=levels)
        )

    def to_document(self) -> dict:
        return self.model_dump(by_alias=True)


@dataclass(frozen=True)
class LevelSpec:
    level: int
    width: int
    height: int

    @property
    def cols(self) -> int:
        return math.ceil(self.width / TILE_SIZE)

    @property
    def rows(self) -> int:
        return math.ceil(self.height / TILE_SIZE)

    @property
    def tile_count(self) -> int:
        return self.cols * self.rows


@dataclass(frozen=True)
class TileRect:
    level: int
    col: int
    row: int
    x: int
    y: int
    width: int
    height: int

    @property
    def box(self) -> tuple[int, int, int, int]:
        return (self.x, self.y, self.x + self.width, self.y + self.height)


@dataclass(frozen=True)
class TilePyramid:
    """Result of a pyramid run, ready to be persisted by the caller."""

    manifest: TileManifest
    levels: int
    width: int
    height: int
    base_path: str
    base_url: str
    thumbnail_url: str
    manifest_path: str
    tile_count: int


def compute_max_level(width: int, height: int) -> int:
    """ceil(log2(max side)); 0 for a 1x1 image."""
    if width < 1 or height < 1:
        raise ContentError(f"Invalid image dimensions: {width}x{height}")
    longest = max(width, height)
    # Integer form of ceil(log2(n)) avoids float error at exact powers of two.
    return (longest - 1).bit_length()


def level_dimensions(width: int, height: int, level: int, max_level: int) -> tuple[int, int]:
    divisor = 2 ** (max_level - level)
    return (
        max(1, math.ceil(width / divisor)),
        max(1, math.ceil(height / divisor)),
    )


def plan_levels(width: int, height: int) -> list[LevelSpec]:
    """All pyramid levels, coarsest first."""
    max_level = compute_max_level(width, height)
    levels = []
    for level in range(max_level + 1):
        level_width, level_height = level_dimensions(width, height, level, max_level)
        levels.append(LevelSpec(level=level, width=level_width, height=level_height))
    return levels


def iter_tile_rects(spec: LevelSpec) -> Iterator[TileRect]:
    """Tile regions of a level, row-major, clipped at the right and bottom edges."""
    for row in range(spec.rows):
        y = row * TILE_SIZE
        tile_height = min(TILE_SIZE, spec.height - y)
        for col in range(spec.cols):
            x = col * TILE_SIZE
            tile_width = min(TILE_SIZE, spec.width - x)
            yield TileRect(
                level=spec.level,
                col=col,
                row=row,
                x=x,
                y=y,
                width=tile_width,
                height=tile_height,
            )


def tile_path(base_path: str, level: int, col: int, row: int) -> str:
    return f"{base_path}/tiles/{level}/{col}_{row}.{TILE_FORMAT}"


def decode_image(image_bytes: bytes) -> Image.Image:
    """Decode source bytes into a mode Pillow can resample smoothly."""
    if not image_bytes:
        raise ContentError("Source image is empty")
    try:
        image = Image.open(io.BytesIO(image_bytes))
        image.load()
    except (UnidentifiedImageError, OSError, SyntaxError) as e:
        raise ContentError(f"Failed to decode source image: {e}") from e

    width, height = image.size
    if not width or not height:
        raise ContentError("Failed to get image dimensions")

    # Palette and 1-bit images only resample with NEAREST.
    if image.mode in ("RGB", "RGBA", "L"):
        return image
    if image.mode in ("LA", "PA", "RGBa", "La") or "transparency" in image.info:
        return image.convert("RGBA")
    return image.convert("RGB")


def encode_png(image: Image.Image) -> bytes:
    buffer = io.BytesIO()
    image.save(buffer, format="PNG", compress_level=PNG_COMPRESS_LEVEL)
    return buffer.getvalue()


def _chunks(items: list, size: int) -> Iterator[list]:
    for start in range(0, len(items), size):
        yield items[start : start + size]


class TilePyramidGenerator:
    """Builds and uploads a full pyramid, thumbnail and manifest for one image.

    Stateless between runs: every call regenerates everything.
    """

    def __init__(self, store, *, concurrency: int = DEFAULT_UPLOAD_CONCURRENCY) -> None:
        if concurrency < 1:
            raise ValueError("concurrency must be at least 1")
        self.store = store
        self.concurrency = concurrency

    def generate(self, image_bytes: bytes, base_path: str) -> TilePyramid:
        # Resolve the public URL first so missing config fails before any upload.
        base_url = self.store.build_base_url(base_path)

        image = decode_image(image_bytes)
        width, height = image.size
        levels = plan_levels(width, height)
        max_level = levels[-1].level
        logger.info(
            f"[tiles.plan] {width}x{height}px → {len(levels)} levels "
            f"({sum(spec.tile_count for spec in levels):,} tiles)"
        )

        tile_count = 0
        with ThreadPoolExecutor(
            max_workers=self.concurrency, thread_name_prefix="tile-upload"
        ) as executor:
            for spec in levels:
                start = time.time()
                level_image = self._render_level(image, spec)
                tile_count += self._upload_level(executor, level_image, spec, base_path)
                del level_image
                log_tiles_level(
                    logger,
                    spec.level,
                    max_level,
                    spec.width,
                    spec.height,
                    spec.cols,
                    spec.rows,
                    int((time.time() - start) * 1000),
                )

        thumbnail_path = f"{base_path}/thumbnail.png"
        self._upload(thumbnail_path, encode_png(self._render_thumbnail(image)), "image/png")

        manifest = TileManifest.build(width, height, len(levels))
        manifest_path = f"{base_path}/manifest.json"
        self._upload(
            manifest_path,
            json.dumps(manifest.to_document()).encode("utf-8"),
            "application/json",
        )

        return TilePyramid(
            manifest=manifest,
            levels=len(levels),
            width=width,
            height=height,
            base_path=base_path,
            base_url=base_url,
            thumbnail_url=f"{base_url}/thumbnail.png",
            manifest_path=manifest_path,
            tile_count=tile_count,
        )

    def _render_level(self, image: Image.Image, spec: LevelSpec) -> Image.Image:
        if (spec.width, spec.height) == image.size:
            return image
        return image.resize((spec.width, spec.height), Image.Resampling.LANCZOS)

    def _render_thumbnail(self, image: Image.Image) -> Image.Image:
        thumbnail = image.copy()
        thumbnail.thumbnail((THUMBNAIL_SIZE, THUMBNAIL_SIZE), Image.Resampling.LANCZOS)
        return thumbnail

    def _upload_level(
        self,
        executor: ThreadPoolExecutor,
        level_image: Image.Image,
        spec: LevelSpec,
        base_path: str,
    ) -> int:
        rects = list(iter_tile_rects(spec))
        for batch in _chunks(rects, self.concurrency):
            futures = [
                executor.submit(self._upload_tile, level_image, rect, base_path)
                for rect in batch
            ]
            # Wait for the whole batch; the first failure fails the pyramid.
            for future in futures:
                future.result()
        return len(rects)

    def _upload_tile(self, level_image: Image.Image, rect: TileRect, base_path: str) -> None:
        tile = level_image.crop(rect.box)
        self._upload(
            tile_path(base_path, rect.level, rect.col, rect.row),
            encode_png(tile),
            "image/png",
        )

    def _upload(self, path: str, data: bytes, content_type: str) -> None:
        start = time.time()
        self.store.upload(path, data, content_type)
        log_storage_upload(
            logger, path, size_bytes=len(data), duration_ms=int((time.time() - start) * 1000)
        )


def generate_tile_pyramid(
    image_bytes: bytes,
    *,
    base_path: str,
    store,
    concurrency: int = DEFAULT_UPLOAD_CONCURRENCY,
) -> TilePyramid:
    """Generate and upload a full pyramid for ``image_bytes`` under ``base_path``."""
    return TilePyramidGenerator(store, concurrency=concurrency).generate(image_bytes, base_path)
