"""Unit tests for outbox claiming, retry planning and poll cycles."""

import logging
import threading
from datetime import UTC, datetime, timedelta
from unittest.mock import MagicMock

import pytest

from jobs.poller import JobPoller, claim_jobs, mark_job_failed, plan_retry
from jobs.types import JobOutcome
from models import JobStatus, OutboxJob
from utils.job_errors import ContentError

NOW = datetime(2024, 5, 1, 12, 0, tzinfo=UTC)
JOB_TYPES = ["process_drawing_set", "generate_drawing_tiles"]


def _naive(value: datetime) -> datetime:
    """SQLite hands timestamps back without tzinfo."""
    return value.replace(tzinfo=None)


def _add_job(session, **fields) -> str:
    values = {
        "job_type": "generate_drawing_tiles",
        "payload": {"sheetVersionId": "sv-1"},
        "run_at": NOW - timedelta(minutes=1),
    }
    values.update(fields)
    job = OutboxJob(**values)
    session.add(job)
    session.commit()
    return job.id


class StubRunner:
    def __init__(self, results: dict[str, object] | None = None) -> None:
        self.results = results or {}
        self.seen: list[str] = []
        self._lock = threading.Lock()

    def run(self, job):
        with self._lock:
            self.seen.append(job.id)
        result = self.results.get(job.id, JobOutcome())
        if isinstance(result, BaseException):
            raise result
        return result


def _poller(session_factory, runner, **overrides) -> JobPoller:
    options = {
        "session_factory": session_factory,
        "job_types": JOB_TYPES,
        "batch_size": 5,
        "poll_interval": 0.01,
        "max_retries": 3,
        "lease_seconds": 1800,
    }
    options.update(overrides)
    return JobPoller(runner, **options)


class TestPlanRetry:
    def test_first_failure_retries_in_two_minutes(self):
        decision = plan_retry(0, NOW, now=NOW, max_retries=3)

        assert decision.status == JobStatus.PENDING
        assert decision.retry_count == 1
        assert decision.run_at == NOW + timedelta(minutes=2)
        assert decision.will_retry

    def test_second_failure_backs_off_four_minutes(self):
        decision = plan_retry(1, NOW, now=NOW, max_retries=3)

        assert decision.retry_count == 2
        assert decision.run_at == NOW + timedelta(minutes=4)

    def test_third_failure_is_terminal(self):
        original_run_at = NOW - timedelta(hours=1)
        decision = plan_retry(2, original_run_at, now=NOW, max_retries=3)

        assert decision.status == JobStatus.FAILED
        assert decision.retry_count == 3
        assert decision.run_at == original_run_at
        assert not decision.will_retry

    def test_permanent_errors_retry_by_default(self):
        decision = plan_retry(0, NOW, now=NOW, max_retries=3, permanent=True)
        assert decision.status == JobStatus.PENDING

    def test_permanent_errors_fail_fast_when_opted_in(self):
        decision = plan_retry(
            0, NOW, now=NOW, max_retries=3, permanent=True, retry_permanent=False
        )
        assert decision.status == JobStatus.FAILED
        assert decision.retry_count == 1


class TestClaimJobs:
    def test_claims_due_pending_jobs(self, session):
        job_id = _add_job(session)

        claimed = claim_jobs(session, job_types=JOB_TYPES, limit=5, now=NOW, lease_seconds=1800)

        assert [job.id for job in claimed] == [job_id]
        assert claimed[0].payload == {"sheetVersionId": "sv-1"}
        session.expire_all()
        row = session.get(OutboxJob, job_id)
        assert row.status == JobStatus.PROCESSING
        assert _naive(row.locked_at) == _naive(NOW)

    def test_skips_future_jobs(self, session):
        _add_job(session, run_at=NOW + timedelta(minutes=5))
        assert claim_jobs(session, job_types=JOB_TYPES, limit=5, now=NOW, lease_seconds=1800) == []

    def test_skips_unregistered_types(self, session):
        _add_job(session, job_type="send_email")
        assert claim_jobs(session, job_types=JOB_TYPES, limit=5, now=NOW, lease_seconds=1800) == []

    def test_skips_finished_jobs(self, session):
        _add_job(session, status=JobStatus.COMPLETED)
        _add_job(session, status=JobStatus.FAILED)
        assert claim_jobs(session, job_types=JOB_TYPES, limit=5, now=NOW, lease_seconds=1800) == []

    def test_respects_limit_in_run_at_order(self, session):
        ids = [_add_job(session, run_at=NOW - timedelta(minutes=m)) for m in (1, 3, 2)]

        claimed = claim_jobs(session, job_types=JOB_TYPES, limit=2, now=NOW, lease_seconds=1800)

        assert [job.id for job in claimed] == [ids[1], ids[2]]

    def test_claimed_jobs_are_not_claimed_twice(self, session):
        _add_job(session)
        claim_jobs(session, job_types=JOB_TYPES, limit=5, now=NOW, lease_seconds=1800)

        assert claim_jobs(session, job_types=JOB_TYPES, limit=5, now=NOW, lease_seconds=1800) == []

    def test_reclaims_jobs_with_expired_lease(self, session):
        stale = _add_job(
            session, status=JobStatus.PROCESSING, locked_at=NOW - timedelta(seconds=3600)
        )
        _add_job(session, status=JobStatus.PROCESSING, locked_at=NOW - timedelta(seconds=60))

        claimed = claim_jobs(session, job_types=JOB_TYPES, limit=5, now=NOW, lease_seconds=1800)

        assert [job.id for job in claimed] == [stale]


class TestMarkJobFailed:
    def test_first_failure_schedules_retry(self, session):
        job_id = _add_job(session)

        decision = mark_job_failed(
            session, job_id, OSError("network blip"), now=NOW, max_retries=3
        )

        session.expire_all()
        row = session.get(OutboxJob, job_id)
        assert decision.will_retry
        assert row.status == JobStatus.PENDING
        assert row.retry_count == 1
        assert _naive(row.run_at) == _naive(NOW + timedelta(minutes=2))
        assert row.last_error == "OSError: network blip"

    def test_third_failure_marks_failed(self, session):
        original_run_at = NOW - timedelta(minutes=1)
        job_id = _add_job(session, retry_count=2, run_at=original_run_at)

        mark_job_failed(session, job_id, ContentError("bad png"), now=NOW, max_retries=3)

        session.expire_all()
        row = session.get(OutboxJob, job_id)
        assert row.status == JobStatus.FAILED
        assert row.retry_count == 3
        assert _naive(row.run_at) == _naive(original_run_at)
        assert row.last_error == "ContentError: bad png"


class TestJobPoller:
    def test_cycle_completes_successful_jobs(self, session, session_factory):
        job_id = _add_job(session)
        runner = StubRunner()

        assert _poller(session_factory, runner).run_cycle() == 1

        session.expire_all()
        row = session.get(OutboxJob, job_id)
        assert runner.seen == [job_id]
        assert row.status == JobStatus.COMPLETED
        assert row.last_error is None

    def test_cycle_with_nothing_due(self, session_factory):
        runner = StubRunner()
        assert _poller(session_factory, runner).run_cycle() == 0
        assert runner.seen == []

    def test_jobs_settle_independently(self, session, session_factory):
        ok_id = _add_job(session)
        bad_id = _add_job(session)
        runner = StubRunner({bad_id: OSError("upload failed")})

        assert _poller(session_factory, runner).run_cycle() == 2

        session.expire_all()
        assert session.get(OutboxJob, ok_id).status == JobStatus.COMPLETED
        bad = session.get(OutboxJob, bad_id)
        assert bad.status == JobStatus.PENDING
        assert bad.retry_count == 1
        assert bad.last_error == "OSError: upload failed"

    def test_batch_size_caps_claims(self, session, session_factory):
        for _ in range(4):
            _add_job(session)
        runner = StubRunner()

        assert _poller(session_factory, runner, batch_size=3).run_cycle() == 3
        assert len(runner.seen) == 3

    def test_side_effect_failures_are_logged_not_failed(self, session, session_factory, caplog):
        job_id = _add_job(session)
        outcome = JobOutcome()
        outcome.record_failure("temp_png_cleanup", OSError("delete failed"))
        runner = StubRunner({job_id: outcome})

        with caplog.at_level(logging.WARNING):
            _poller(session_factory, runner).run_cycle()

        session.expire_all()
        assert session.get(OutboxJob, job_id).status == JobStatus.COMPLETED
        assert "[job.side_effect.failed]" in caplog.text
        assert "temp_png_cleanup" in caplog.text

    def test_permanent_error_fails_fast_when_configured(self, session, session_factory):
        job_id = _add_job(session)
        runner = StubRunner({job_id: ContentError("Sheet version missing source hash")})

        _poller(session_factory, runner, retry_permanent_errors=False).run_cycle()

        session.expire_all()
        assert session.get(OutboxJob, job_id).status == JobStatus.FAILED

    def test_run_forever_stops_on_event(self, session_factory):
        stop_event = threading.Event()
        poller = _poller(session_factory, StubRunner())
        poller.run_cycle = MagicMock(side_effect=lambda: stop_event.set())

        poller.run_forever(stop_event)

        poller.run_cycle.assert_called_once()

    def test_run_forever_survives_cycle_errors(self, session_factory):
        stop_event = threading.Event()
        poller = _poller(session_factory, StubRunner())
        calls = []

        def cycle():
            calls.append(1)
            if len(calls) == 1:
                raise RuntimeError("claim failed")
            stop_event.set()

        poller.run_cycle = cycle
        poller.run_forever(stop_event)

        assert len(calls) == 2

    def test_record_errors_do_not_stop_other_jobs(self, session, session_factory):
        first = _add_job(session)
        second = _add_job(session)
        poller = _poller(session_factory, StubRunner())
        recorded = []
        original = poller._record_success

        def flaky_record(job, outcome):
            if job.id == first:
                raise RuntimeError("db write failed")
            recorded.append(job.id)
            original(job, outcome)

        poller._record_success = flaky_record
        poller.run_cycle()

        assert recorded == [second]


@pytest.mark.parametrize("retry_count,expected_minutes", [(0, 2), (1, 4)])
def test_backoff_is_exponential(retry_count, expected_minutes):
    decision = plan_retry(retry_count, NOW, now=NOW, max_retries=3)
    assert decision.run_at - NOW == timedelta(minutes=expected_minutes)
