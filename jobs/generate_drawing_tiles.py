"""Tile job handler - turns a sheet version's temp PNG into a Deep Zoom pyramid."""

from __future__ import annotations

import logging
import time
from datetime import UTC, datetime

from pydantic import Field
from sqlmodel import Session

from jobs.drawing_set_status import check_drawing_set_completion
from jobs.types import ClaimedJob, JobOutcome, JobPayload, WorkerDeps
from lib.tile_pyramid import TilePyramid, generate_tile_pyramid
from models import SheetVersion
from utils.job_errors import ContentError
from utils.log_utils import log_phase, log_storage_download, log_tiles_generated
from utils.storage_utils import build_tiles_base_path, parse_page_index_from_path

logger = logging.getLogger(__name__)


class GenerateDrawingTilesPayload(JobPayload):
    """Input payload for generate_drawing_tiles jobs."""

    sheet_version_id: str = Field(..., min_length=1, description="Id of the sheet version")


def resolve_page_index(version: SheetVersion, temp_png_path: str | None) -> int:
    """Prefer the row's page_index; fall back to the temp path's page-<N>.png suffix."""
    from_path = parse_page_index_from_path(temp_png_path)
    if version.page_index is not None:
        if from_path is not None and from_path != version.page_index:
            logger.warning(
                f"[tiles.page_index.mismatch] sv-{version.id[:8]} row={version.page_index} "
                f"path={from_path}; using row value"
            )
        return version.page_index
    if from_path is None:
        raise ContentError(
            "Sheet version missing page_index and could not infer from temp PNG path"
        )
    return from_path


def _apply_pyramid(
    version: SheetVersion,
    pyramid: TilePyramid,
    *,
    source_hash: str,
    page_index: int,
) -> None:
    version.tile_manifest = pyramid.manifest.to_document()
    version.tile_base_url = pyramid.base_url
    version.source_hash = source_hash
    version.tile_levels = pyramid.levels
    version.tiles_generated_at = datetime.now(UTC)
    version.thumbnail_url = pyramid.thumbnail_url
    version.image_width = pyramid.width
    version.image_height = pyramid.height
    version.tile_manifest_path = pyramid.manifest_path
    version.tiles_base_path = pyramid.base_path
    if version.page_index is None:
        version.page_index = page_index


def run_generate_drawing_tiles(
    session: Session,
    payload: GenerateDrawingTilesPayload,
    job: ClaimedJob,
    deps: WorkerDeps,
) -> JobOutcome:
    sheet_version_id = payload.sheet_version_id

    version = session.get(SheetVersion, sheet_version_id)
    if not version:
        raise ContentError(f"Sheet version {sheet_version_id} not found")

    if version.is_tiled:
        logger.info(f"[tiles.skip] sv-{sheet_version_id[:8]} already has tiles")
        return JobOutcome(skipped=True)

    metadata = version.extracted_metadata or {}
    temp_png_path = metadata.get("temp_png_path")
    source_hash = metadata.get("source_hash")

    if not temp_png_path:
        raise ContentError("Sheet version missing temp PNG path - was PDF extraction completed?")

    page_index = resolve_page_index(version, temp_png_path)

    if not source_hash:
        raise ContentError("Sheet version missing source hash")

    org_id = version.org_id
    base_path = build_tiles_base_path(org_id, source_hash, page_index)
    store = deps.tiles_store

    start = time.time()
    png_bytes = store.download(temp_png_path)
    log_storage_download(
        logger,
        temp_png_path,
        size_bytes=len(png_bytes),
        duration_ms=int((time.time() - start) * 1000),
        org_id=org_id,
        sheet_version_id=sheet_version_id,
    )

    start = time.time()
    pyramid = generate_tile_pyramid(
        png_bytes,
        base_path=base_path,
        store=store,
        concurrency=deps.tile_upload_concurrency,
    )
    del png_bytes
    log_tiles_generated(
        logger,
        pyramid.width,
        pyramid.height,
        pyramid.levels,
        pyramid.tile_count,
        int((time.time() - start) * 1000),
        org_id=org_id,
        sheet_version_id=sheet_version_id,
    )

    _apply_pyramid(version, pyramid, source_hash=source_hash, page_index=page_index)
    session.add(version)
    session.commit()

    outcome = JobOutcome(metrics={"levels": pyramid.levels, "tiles": pyramid.tile_count})

    # Tiles are durable now; nothing below may fail the job.
    try:
        with log_phase(logger, "Deleting temp PNG", sheet_version_id=sheet_version_id):
            store.delete([temp_png_path])
    except Exception as e:
        outcome.record_failure("temp_png_cleanup", e)

    try:
        check_drawing_set_completion(session, org_id)
    except Exception as e:
        session.rollback()
        outcome.record_failure("drawing_set_completion", e)

    return outcome
