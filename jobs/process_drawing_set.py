"""Drawing set extraction job: PDF pages to temp PNGs, sheet rows and tile jobs."""

from __future__ import annotations

import hashlib
import logging
import time
from datetime import UTC, datetime

from pydantic import Field
from sqlmodel import Session, select

from jobs.types import ClaimedJob, JobOutcome, JobPayload, JobType, WorkerDeps
from lib.pdf_converter import get_pdf_page_count, iter_pdf_pages_as_png
from models import (
    DrawingRevision,
    DrawingSet,
    DrawingSetStatus,
    DrawingSheet,
    OutboxJob,
    SheetVersion,
)
from utils.job_errors import ContentError
from utils.log_utils import log_pdf_converted, log_storage_download
from utils.storage_utils import build_temp_page_path

logger = logging.getLogger(__name__)

SOURCE_HASH_LENGTH = 16
TEMP_PNG_CACHE_CONTROL = "public, max-age=3600"
INITIAL_REVISION_LABEL = "Initial"


class ProcessDrawingSetPayload(JobPayload):
    """Input payload for process_drawing_set jobs."""

    drawing_set_id: str = Field(..., min_length=1)
    project_id: str = Field(..., min_length=1)
    source_file_id: str = Field(..., min_length=1)
    storage_path: str = Field(..., min_length=1, description="PDF path in the pdfs namespace")


def compute_source_hash(pdf_bytes: bytes) -> str:
    return hashlib.sha256(pdf_bytes).hexdigest()[:SOURCE_HASH_LENGTH]


def _upload_pages(
    pdf_bytes: bytes,
    *,
    org_id: str,
    source_hash: str,
    deps: WorkerDeps,
    drawing_set_id: str,
) -> dict[int, str]:
    """Render and upload every page; returns temp paths keyed by page index."""
    temp_paths: dict[int, str] = {}
    for page in iter_pdf_pages_as_png(pdf_bytes, dpi=deps.pdf_render_dpi):
        path = build_temp_page_path(org_id, source_hash, page.index)
        try:
            deps.tiles_store.upload(
                path, page.png_bytes, "image/png", cache_control=TEMP_PNG_CACHE_CONTROL
            )
        except OSError as e:
            logger.warning(
                f"[pdf.page_upload_failed] page {page.index} set-{drawing_set_id[:8]}: {e}"
            )
            continue
        temp_paths[page.index] = path
    return temp_paths


def run_process_drawing_set(
    session: Session,
    payload: ProcessDrawingSetPayload,
    job: ClaimedJob,
    deps: WorkerDeps,
) -> JobOutcome:
    drawing_set = session.get(DrawingSet, payload.drawing_set_id)
    if not drawing_set:
        raise ContentError(f"Drawing set {payload.drawing_set_id} not found")

    existing_sheet = session.exec(
        select(DrawingSheet.id).where(DrawingSheet.drawing_set_id == drawing_set.id).limit(1)
    ).first()
    if existing_sheet is not None:
        logger.info(f"[drawing_set.skip] set-{drawing_set.id[:8]} already has sheets")
        return JobOutcome(skipped=True)

    org_id = drawing_set.org_id
    title = drawing_set.title or "Drawing set"

    start = time.time()
    pdf_bytes = deps.pdfs_store.download(payload.storage_path)
    log_storage_download(
        logger,
        payload.storage_path,
        size_bytes=len(pdf_bytes),
        duration_ms=int((time.time() - start) * 1000),
        org_id=org_id,
        drawing_set_id=drawing_set.id,
    )

    page_count = get_pdf_page_count(pdf_bytes)
    if page_count < 1:
        raise ContentError("PDF has no pages")

    source_hash = compute_source_hash(pdf_bytes)

    start = time.time()
    temp_paths = _upload_pages(
        pdf_bytes,
        org_id=org_id,
        source_hash=source_hash,
        deps=deps,
        drawing_set_id=drawing_set.id,
    )
    del pdf_bytes
    log_pdf_converted(
        logger,
        page_count,
        len(temp_paths),
        int((time.time() - start) * 1000),
        org_id=org_id,
        drawing_set_id=drawing_set.id,
    )

    now = datetime.now(UTC)
    revision = DrawingRevision(
        org_id=org_id,
        project_id=payload.project_id,
        drawing_set_id=drawing_set.id,
        revision_label=INITIAL_REVISION_LABEL,
        issued_date=now,
        notes="Initial upload",
    )
    session.add(revision)
    session.flush()

    version_ids: list[str] = []
    for page_index in range(page_count):
        label = f"{title} - Page {page_index + 1}"
        sheet = DrawingSheet(
            org_id=org_id,
            project_id=payload.project_id,
            drawing_set_id=drawing_set.id,
            sheet_number=label,
            sheet_title=label,
            sort_order=page_index,
            current_revision_id=revision.id,
        )
        session.add(sheet)
        session.flush()

        version = SheetVersion(
            org_id=org_id,
            drawing_sheet_id=sheet.id,
            drawing_revision_id=revision.id,
            file_id=payload.source_file_id,
            page_index=page_index,
            extracted_metadata={
                "temp_png_path": temp_paths.get(page_index),
                "source_hash": source_hash,
                "page_index": page_index,
            },
        )
        session.add(version)
        session.flush()
        version_ids.append(version.id)

    for version_id in version_ids:
        session.add(
            OutboxJob(
                org_id=org_id,
                job_type=JobType.GENERATE_DRAWING_TILES.value,
                payload={"sheetVersionId": version_id},
                run_at=now,
            )
        )

    drawing_set.status = DrawingSetStatus.PROCESSING
    drawing_set.total_pages = page_count
    drawing_set.processed_pages = 0
    session.add(drawing_set)
    session.commit()

    logger.info(
        f"[drawing_set.extracted] set-{drawing_set.id[:8]} {len(version_ids)} sheets, "
        f"{len(version_ids)} tile jobs queued"
    )
    return JobOutcome(metrics={"pages": page_count})
