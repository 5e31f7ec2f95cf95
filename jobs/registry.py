"""Job registry for drawings worker jobs."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, Generic, TypeVar

from pydantic import BaseModel
from sqlmodel import Session

from jobs.generate_drawing_tiles import (
    GenerateDrawingTilesPayload,
    run_generate_drawing_tiles,
)
from jobs.process_drawing_set import ProcessDrawingSetPayload, run_process_drawing_set
from jobs.types import ClaimedJob, JobOutcome, JobType, WorkerDeps

PayloadT = TypeVar("PayloadT", bound=BaseModel)


@dataclass(frozen=True)
class JobSpec(Generic[PayloadT]):
    job_type: str
    payload_model: type[PayloadT]
    handler: Callable[[Session, PayloadT, ClaimedJob, WorkerDeps], JobOutcome]
    log_context: Callable[[PayloadT], dict[str, str | None]] | None = None


JOB_SPECS: dict[str, JobSpec[Any]] = {
    JobType.PROCESS_DRAWING_SET.value: JobSpec(
        job_type=JobType.PROCESS_DRAWING_SET.value,
        payload_model=ProcessDrawingSetPayload,
        handler=run_process_drawing_set,
        log_context=lambda payload: {"drawing_set_id": payload.drawing_set_id},
    ),
    JobType.GENERATE_DRAWING_TILES.value: JobSpec(
        job_type=JobType.GENERATE_DRAWING_TILES.value,
        payload_model=GenerateDrawingTilesPayload,
        handler=run_generate_drawing_tiles,
        log_context=lambda payload: {"sheet_version_id": payload.sheet_version_id},
    ),
}

_missing = {job_type.value for job_type in JobType} - JOB_SPECS.keys()
if _missing:
    raise RuntimeError(f"Job types without a handler: {sorted(_missing)}")


def registered_job_types() -> list[str]:
    return list(JOB_SPECS.keys())
