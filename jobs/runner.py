"""Job runner for claimed outbox jobs."""

from __future__ import annotations

from collections.abc import Callable

import clients.db as db
from jobs.registry import JOB_SPECS
from jobs.types import ClaimedJob, JobOutcome, WorkerDeps
from utils.log_utils import log_job_completed, log_job_started


class JobRunner:
    def __init__(self, deps: WorkerDeps, *, logger, session_factory: Callable | None = None) -> None:
        self.deps = deps
        self.logger = logger
        self.session_factory = session_factory or db.get_session

    def run(self, job: ClaimedJob) -> JobOutcome:
        spec = JOB_SPECS.get(job.job_type)
        if not spec:
            raise ValueError(f"Unsupported job type: {job.job_type}")

        payload = spec.payload_model.model_validate(job.payload)
        log_fields = spec.log_context(payload) if spec.log_context else {}
        start_time = log_job_started(
            self.logger,
            job.job_type,
            job.id,
            org_id=job.org_id,
            retry_count=job.retry_count,
            **log_fields,
        )

        with self.session_factory() as session:
            outcome = spec.handler(session, payload, job, self.deps)

        log_job_completed(
            self.logger,
            job.job_type,
            job.id,
            start_time,
            skipped=outcome.skipped,
            **outcome.metrics,
        )
        return outcome
