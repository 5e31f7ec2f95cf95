"""Job types and shared job-handler types for the drawings worker."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel


class JobType(str, Enum):
    PROCESS_DRAWING_SET = "process_drawing_set"
    GENERATE_DRAWING_TILES = "generate_drawing_tiles"


class JobPayload(BaseModel):
    """Base for outbox payloads, which are written with camelCase keys."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
        frozen=True,
    )


@dataclass(frozen=True)
class ClaimedJob:
    """Snapshot of an outbox row taken at claim time."""

    id: str
    job_type: str
    payload: dict[str, Any]
    retry_count: int
    run_at: datetime
    org_id: str | None = None


@dataclass(frozen=True)
class SideEffectFailure:
    step: str
    error: BaseException


@dataclass
class JobOutcome:
    """What a handler reports back to the poller.

    Best-effort steps that failed are listed in ``side_effect_failures``; they
    are reported by the poller but never fail the job.
    """

    skipped: bool = False
    metrics: dict[str, Any] = field(default_factory=dict)
    side_effect_failures: list[SideEffectFailure] = field(default_factory=list)

    def record_failure(self, step: str, error: BaseException) -> None:
        self.side_effect_failures.append(SideEffectFailure(step=step, error=error))


@dataclass(frozen=True)
class WorkerDeps:
    """Long-lived collaborators built once at startup and shared by every job."""

    tiles_store: Any
    pdfs_store: Any
    tile_upload_concurrency: int = 8
    pdf_render_dpi: int = 100


__all__ = [
    "ClaimedJob",
    "JobOutcome",
    "JobPayload",
    "JobType",
    "SideEffectFailure",
    "WorkerDeps",
]
