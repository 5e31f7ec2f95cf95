"""Drawing set completion: flip a set to ready once every sheet has tiles."""

from __future__ import annotations

import logging
from datetime import UTC, datetime

from sqlmodel import Session, select

from models import DrawingSet, DrawingSetStatus, DrawingSheet, SheetVersion
from utils.log_utils import log_status_updated

logger = logging.getLogger(__name__)


def _sheet_ids(session: Session, drawing_set_id: str) -> list[str]:
    return list(
        session.exec(
            select(DrawingSheet.id).where(DrawingSheet.drawing_set_id == drawing_set_id)
        ).all()
    )


def _tiled_sheet_ids(session: Session, sheet_ids: list[str]) -> set[str]:
    if not sheet_ids:
        return set()
    return set(
        session.exec(
            select(SheetVersion.drawing_sheet_id)
            .where(
                SheetVersion.drawing_sheet_id.in_(sheet_ids),
                SheetVersion.tile_manifest.is_not(None),
            )
            .distinct()
        ).all()
    )


def check_drawing_set_completion(session: Session, org_id: str) -> list[str]:
    """
    Re-evaluate every processing drawing set in an org.

    A set is ready when each of its sheets has at least one version with a
    tile manifest. Sets with no sheets are left alone.

    Returns:
        Ids of the sets that were flipped to ready
    """
    sets = session.exec(
        select(DrawingSet).where(
            DrawingSet.org_id == org_id,
            DrawingSet.status == DrawingSetStatus.PROCESSING,
        )
    ).all()

    ready_ids: list[str] = []
    for drawing_set in sets:
        sheet_ids = _sheet_ids(session, drawing_set.id)
        if not sheet_ids:
            continue

        tiled = _tiled_sheet_ids(session, sheet_ids)
        if len(tiled) < len(sheet_ids):
            logger.debug(
                f"[drawing_set.waiting] set-{drawing_set.id[:8]} "
                f"{len(tiled)}/{len(sheet_ids)} sheets tiled"
            )
            continue

        drawing_set.status = DrawingSetStatus.READY
        drawing_set.processed_pages = len(sheet_ids)
        drawing_set.processed_at = datetime.now(UTC)
        session.add(drawing_set)
        ready_ids.append(drawing_set.id)

    if ready_ids:
        session.commit()
        for set_id in ready_ids:
            log_status_updated(
                logger,
                "drawing_set",
                set_id,
                old_status=DrawingSetStatus.PROCESSING.value,
                new_status=DrawingSetStatus.READY.value,
            )

    return ready_ids
