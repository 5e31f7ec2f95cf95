"""Outbox poller: claims due jobs, runs them concurrently, records results."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta

from sqlalchemy import and_, or_
from sqlmodel import Session, select

from jobs.types import ClaimedJob, JobOutcome
from models import JobStatus, OutboxJob
from utils.job_errors import format_job_error, is_permanent_job_error
from utils.log_utils import (
    log_job_failed_terminal,
    log_job_retry_scheduled,
    log_jobs_claimed,
    log_side_effect_failed,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RetryDecision:
    status: JobStatus
    retry_count: int
    run_at: datetime

    @property
    def will_retry(self) -> bool:
        return self.status == JobStatus.PENDING


def plan_retry(
    retry_count: int,
    run_at: datetime,
    *,
    now: datetime,
    max_retries: int,
    permanent: bool = False,
    retry_permanent: bool = True,
) -> RetryDecision:
    """
    Decide what happens to a job after a failed attempt.

    The attempt counter always increments. Below ``max_retries`` the job goes
    back to pending after ``2^retry_count`` minutes; otherwise it is failed and
    its ``run_at`` is left alone.
    """
    new_count = retry_count + 1
    if new_count < max_retries and (retry_permanent or not permanent):
        return RetryDecision(
            status=JobStatus.PENDING,
            retry_count=new_count,
            run_at=now + timedelta(minutes=2**new_count),
        )
    return RetryDecision(status=JobStatus.FAILED, retry_count=new_count, run_at=run_at)


def claim_jobs(
    session: Session,
    *,
    job_types: list[str],
    limit: int,
    now: datetime,
    lease_seconds: int,
) -> list[ClaimedJob]:
    """
    Claim up to ``limit`` due jobs in one transaction.

    Pending jobs whose ``run_at`` has passed are eligible, as are processing
    jobs whose lease expired (their worker died mid-run). Rows locked by
    another worker are skipped.
    """
    lease_cutoff = now - timedelta(seconds=lease_seconds)
    statement = (
        select(OutboxJob)
        .where(
            OutboxJob.job_type.in_(job_types),
            or_(
                and_(OutboxJob.status == JobStatus.PENDING, OutboxJob.run_at <= now),
                and_(
                    OutboxJob.status == JobStatus.PROCESSING,
                    OutboxJob.locked_at <= lease_cutoff,
                ),
            ),
        )
        .order_by(OutboxJob.run_at)
        .limit(limit)
        .with_for_update(skip_locked=True)
    )
    rows = session.exec(statement).all()

    claimed = []
    for row in rows:
        row.status = JobStatus.PROCESSING
        row.locked_at = now
        session.add(row)
        claimed.append(
            ClaimedJob(
                id=row.id,
                job_type=row.job_type,
                payload=dict(row.payload or {}),
                retry_count=row.retry_count,
                run_at=row.run_at,
                org_id=row.org_id,
            )
        )
    session.commit()
    return claimed


def mark_job_completed(session: Session, job_id: str) -> None:
    row = session.get(OutboxJob, job_id)
    if not row:
        raise ValueError(f"Outbox job {job_id} not found")
    row.status = JobStatus.COMPLETED
    row.last_error = None
    row.locked_at = None
    session.add(row)
    session.commit()


def mark_job_failed(
    session: Session,
    job_id: str,
    error: BaseException,
    *,
    now: datetime,
    max_retries: int,
    retry_permanent: bool = True,
) -> RetryDecision:
    row = session.get(OutboxJob, job_id)
    if not row:
        raise ValueError(f"Outbox job {job_id} not found")

    decision = plan_retry(
        row.retry_count,
        row.run_at,
        now=now,
        max_retries=max_retries,
        permanent=is_permanent_job_error(error),
        retry_permanent=retry_permanent,
    )
    row.status = decision.status
    row.retry_count = decision.retry_count
    row.run_at = decision.run_at
    row.last_error = format_job_error(error)
    row.locked_at = None
    session.add(row)
    session.commit()
    return decision


class JobPoller:
    """Runs poll cycles until asked to stop. Cycles never overlap."""

    def __init__(
        self,
        runner,
        *,
        session_factory: Callable[[], Session],
        job_types: list[str],
        batch_size: int = 5,
        poll_interval: float = 5.0,
        max_retries: int = 3,
        lease_seconds: int = 1_800,
        retry_permanent_errors: bool = True,
        logger: logging.Logger = logger,
    ) -> None:
        self.runner = runner
        self.session_factory = session_factory
        self.job_types = job_types
        self.batch_size = batch_size
        self.poll_interval = poll_interval
        self.max_retries = max_retries
        self.lease_seconds = lease_seconds
        self.retry_permanent_errors = retry_permanent_errors
        self.logger = logger

    def run_forever(self, stop_event: threading.Event) -> None:
        while not stop_event.is_set():
            try:
                self.run_cycle()
            except Exception as e:
                self.logger.exception(f"[poll.cycle.failed] {format_job_error(e)}")
            stop_event.wait(self.poll_interval)

    def run_cycle(self) -> int:
        """Claim one batch, run it to completion and record every result."""
        with self.session_factory() as session:
            jobs = claim_jobs(
                session,
                job_types=self.job_types,
                limit=self.batch_size,
                now=datetime.now(UTC),
                lease_seconds=self.lease_seconds,
            )
        if not jobs:
            return 0

        log_jobs_claimed(self.logger, len(jobs))

        with ThreadPoolExecutor(max_workers=len(jobs), thread_name_prefix="job") as executor:
            futures = [(job, executor.submit(self.runner.run, job)) for job in jobs]

        for job, future in futures:
            error = future.exception()
            try:
                if error is None:
                    self._record_success(job, future.result())
                else:
                    self._record_failure(job, error)
            except Exception as e:
                # The lease will hand the job back out if this write never landed.
                self.logger.exception(
                    f"[job.record.failed] {job.job_type} job-{job.id[:8]}: {format_job_error(e)}"
                )
        return len(jobs)

    def _record_success(self, job: ClaimedJob, outcome: JobOutcome) -> None:
        with self.session_factory() as session:
            mark_job_completed(session, job.id)
        for failure in outcome.side_effect_failures:
            log_side_effect_failed(self.logger, job.job_type, job.id, failure.step, failure.error)

    def _record_failure(self, job: ClaimedJob, error: BaseException) -> None:
        with self.session_factory() as session:
            decision = mark_job_failed(
                session,
                job.id,
                error,
                now=datetime.now(UTC),
                max_retries=self.max_retries,
                retry_permanent=self.retry_permanent_errors,
            )
        if decision.will_retry:
            log_job_retry_scheduled(
                self.logger,
                job.job_type,
                job.id,
                error,
                decision.retry_count,
                decision.run_at,
                permanent=is_permanent_job_error(error),
            )
        else:
            log_job_failed_terminal(
                self.logger, job.job_type, job.id, error, decision.retry_count
            )
