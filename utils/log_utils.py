"""Logging utilities for the drawings tile worker.

Provides consistent, readable logging with bracket notation and short-id context.
Format: [event.name] context | human message
"""

import contextlib
import json
import logging
import os
import sys
import time
from collections.abc import Generator
from datetime import datetime

import psutil

DEBUG_LOGGERS = ("clients.storage", "lib.tile_pyramid", "jobs.generate_drawing_tiles")


class GCPJsonFormatter(logging.Formatter):
    """Format logs as JSON with severity field for Cloud Logging."""

    LEVEL_TO_SEVERITY = {
        logging.DEBUG: "DEBUG",
        logging.INFO: "INFO",
        logging.WARNING: "WARNING",
        logging.ERROR: "ERROR",
        logging.CRITICAL: "CRITICAL",
    }

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "severity": self.LEVEL_TO_SEVERITY.get(record.levelno, "INFO"),
            "message": record.getMessage(),
            "logger": record.name,
            "timestamp": self.formatTime(record, self.datefmt),
        }
        if record.exc_info:
            log_entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(log_entry)


class LocalDevFormatter(logging.Formatter):
    """Human-readable format for local development."""

    LEVEL_COLORS = {
        logging.DEBUG: "\033[36m",  # Cyan
        logging.INFO: "\033[32m",  # Green
        logging.WARNING: "\033[33m",  # Yellow
        logging.ERROR: "\033[31m",  # Red
        logging.CRITICAL: "\033[35m",  # Magenta
    }
    RESET = "\033[0m"

    def format(self, record: logging.LogRecord) -> str:
        color = self.LEVEL_COLORS.get(record.levelno, "")
        level = record.levelname[:4]
        timestamp = self.formatTime(record, "%H:%M:%S")
        message = record.getMessage()

        formatted = f"{color}{timestamp} {level}{self.RESET} {message}"

        if record.exc_info:
            formatted += f"\n{self.formatException(record.exc_info)}"

        return formatted


def parse_log_level(level_str: str) -> int:
    """Convert string log level to logging constant.

    Args:
        level_str: Log level string (DEBUG, INFO, WARNING, ERROR, CRITICAL)

    Returns:
        logging level constant (defaults to INFO for invalid input)
    """
    level_map = {
        "DEBUG": logging.DEBUG,
        "INFO": logging.INFO,
        "WARNING": logging.WARNING,
        "ERROR": logging.ERROR,
        "CRITICAL": logging.CRITICAL,
    }
    return level_map.get(level_str.upper(), logging.INFO)


def configure_logging(
    level: str | int = logging.INFO,
    *,
    local_dev: bool = False,
    debug: bool = False,
) -> None:
    """
    Configure logging with appropriate format for the environment.

    - Local dev: Human-readable colored output
    - Production: Cloud Logging compatible JSON

    Args:
        level: Logging level as string ("DEBUG", "INFO", etc.) or int constant
        local_dev: Use the colored formatter instead of JSON
        debug: Enable DEBUG output for the storage and tiling loggers
    """
    if isinstance(level, str):
        level = parse_log_level(level)

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(LocalDevFormatter() if local_dev else GCPJsonFormatter())

    logging.basicConfig(level=level, handlers=[handler], force=True)

    # Suppress noisy library logs (even at DEBUG level)
    for noisy_logger in [
        "PIL",
        "PIL.PngImagePlugin",
        "urllib3",
        "botocore",
        "boto3",
        "s3transfer",
        "sqlalchemy.engine",
    ]:
        logging.getLogger(noisy_logger).setLevel(logging.WARNING)

    if debug:
        for name in DEBUG_LOGGERS:
            logging.getLogger(name).setLevel(logging.DEBUG)


def format_size(size_bytes: int) -> str:
    """Format byte size as human-readable string.

    Args:
        size_bytes: Size in bytes

    Returns:
        Formatted string (e.g., "1.2mb", "500kb", "50b")
    """
    if size_bytes >= 1024 * 1024:
        return f"{size_bytes / (1024 * 1024):.1f}mb"
    elif size_bytes >= 1024:
        return f"{size_bytes / 1024:.1f}kb"
    else:
        return f"{size_bytes}b"


def format_duration(duration_ms: int) -> str:
    """Format duration as human-readable string.

    Args:
        duration_ms: Duration in milliseconds

    Returns:
        Formatted string (e.g., "15.2s", "250ms")
    """
    if duration_ms >= 1000:
        return f"{duration_ms / 1000:.1f}s"
    else:
        return f"{duration_ms}ms"


def _short(value) -> str:
    text = str(value)
    return text[:8] if len(text) > 8 else text


def format_context(
    org_id: str | None = None,
    drawing_set_id: str | None = None,
    sheet_version_id: str | None = None,
    job_id: str | None = None,
) -> str:
    """Format hierarchical context IDs.

    Returns:
        Formatted string (e.g., "org-123 > set-456 > sv-789 > job-abc")
    """
    parts = []
    if org_id:
        parts.append(f"org-{_short(org_id)}")
    if drawing_set_id:
        parts.append(f"set-{_short(drawing_set_id)}")
    if sheet_version_id:
        parts.append(f"sv-{_short(sheet_version_id)}")
    if job_id:
        parts.append(f"job-{_short(job_id)}")
    return " > ".join(parts)


def get_memory_mb() -> float | None:
    """Get current process memory usage in MB, or None if it cannot be read."""
    try:
        return psutil.Process(os.getpid()).memory_info().rss / (1024 * 1024)
    except psutil.Error:
        return None


@contextlib.contextmanager
def log_phase(
    logger: logging.Logger,
    phase_name: str,
    **context_kwargs,
) -> Generator[None, None, None]:
    """Context manager for logging phase timing at DEBUG level.

    Usage:
        with log_phase(logger, "Downloading temp PNG", sheet_version_id=sv_id):
            png_bytes = store.download(path)

    Output at DEBUG level:
        Downloading temp PNG... (sv-12345678)
        Downloading temp PNG done (2.3s)
    """
    context = format_context(**context_kwargs)
    context_str = f" ({context})" if context else ""

    logger.debug(f"{phase_name}...{context_str}")
    start_time = time.time()

    try:
        yield
    finally:
        duration_ms = int((time.time() - start_time) * 1000)
        logger.debug(f"{phase_name} done ({format_duration(duration_ms)})")


def log_jobs_claimed(logger: logging.Logger, count: int) -> None:
    logger.info(f"[jobs.claimed] {count} job{'s' if count != 1 else ''}")


def log_job_started(
    logger: logging.Logger,
    job_type: str,
    job_id: str,
    org_id: str | None = None,
    drawing_set_id: str | None = None,
    sheet_version_id: str | None = None,
    retry_count: int = 0,
) -> float:
    """Log job started and return start time for duration calculation."""
    context = format_context(
        org_id=org_id,
        drawing_set_id=drawing_set_id,
        sheet_version_id=sheet_version_id,
        job_id=job_id,
    )
    attempt = f" (attempt {retry_count + 1})" if retry_count else ""
    logger.info(f"[job.started] {job_type}{attempt} | {context}")
    return time.time()


def log_job_completed(
    logger: logging.Logger,
    job_type: str,
    job_id: str,
    start_time: float,
    **metrics,
) -> None:
    """Log job completed with metrics.

    Args:
        logger: Logger instance
        job_type: Job type string
        job_id: Outbox job id
        start_time: Start time from log_job_started()
        **metrics: Additional metrics to log (levels, tiles, pages, skipped)
    """
    duration_ms = int((time.time() - start_time) * 1000)

    metric_parts = []
    if metrics.get("skipped"):
        metric_parts.append("skipped (already done)")
    if "levels" in metrics:
        metric_parts.append(f"{metrics['levels']} levels")
    if "tiles" in metrics:
        metric_parts.append(f"{metrics['tiles']:,} tiles")
    if "pages" in metrics:
        metric_parts.append(f"{metrics['pages']} pages")

    duration_str = format_duration(duration_ms)
    memory_mb = get_memory_mb()
    if memory_mb is not None:
        metric_parts.append(f"{duration_str}, {memory_mb:.0f}mb")
    else:
        metric_parts.append(duration_str)

    logger.info(
        f"[job.completed] {job_type} job-{_short(job_id)} | {' | '.join(metric_parts)}"
    )


def log_job_retry_scheduled(
    logger: logging.Logger,
    job_type: str,
    job_id: str,
    error: BaseException,
    retry_count: int,
    run_at: datetime,
    permanent: bool = False,
) -> None:
    """Log a failed attempt that has been rescheduled."""
    kind = "permanent" if permanent else "transient"
    logger.error(f"[job.retry.scheduled] {job_type} job-{_short(job_id)} ({kind})")
    logger.error(f"  → {type(error).__name__}: {str(error)}")
    logger.error(f"  → retry {retry_count} at {run_at.isoformat()}")


def log_job_failed_terminal(
    logger: logging.Logger,
    job_type: str,
    job_id: str,
    error: BaseException,
    retry_count: int,
) -> None:
    """Log a job that will not be retried again."""
    logger.error(f"[job.failed.terminal] {job_type} job-{_short(job_id)}")
    logger.error(f"  → {type(error).__name__}: {str(error)}")
    logger.error(f"  → giving up after {retry_count} attempts")


def log_side_effect_failed(
    logger: logging.Logger,
    job_type: str,
    job_id: str,
    step: str,
    error: BaseException,
) -> None:
    logger.warning(
        f"[job.side_effect.failed] {job_type} job-{_short(job_id)} {step}: "
        f"{type(error).__name__}: {str(error)}"
    )


def log_status_updated(
    logger: logging.Logger,
    resource_type: str,
    resource_id: str,
    old_status: str | None = None,
    new_status: str | None = None,
) -> None:
    """Log status update."""
    short_id = _short(resource_id)

    if old_status and new_status:
        logger.info(f"[status.updated] {resource_type} {short_id}: {old_status} → {new_status}")
    elif new_status:
        logger.info(f"[status.updated] {resource_type} {short_id} → {new_status}")
    else:
        logger.info(f"[status.updated] {resource_type} {short_id}")


def log_storage_download(
    logger: logging.Logger,
    path: str,
    size_bytes: int | None = None,
    duration_ms: int | None = None,
    **context_kwargs,
) -> None:
    """Log storage download operation."""
    filename = path.split("/")[-1] if "/" in path else path

    details = []
    if size_bytes is not None:
        details.append(format_size(size_bytes))
    if duration_ms is not None:
        details.append(format_duration(duration_ms))

    context = format_context(**context_kwargs)

    parts = [f"[storage.download] {filename}"]
    if details:
        parts.append(f"({', '.join(details)})")
    if context:
        parts.append(f"| {context}")

    logger.info(" ".join(parts))


def log_storage_upload(
    logger: logging.Logger,
    path: str,
    size_bytes: int | None = None,
    duration_ms: int | None = None,
) -> None:
    """Log storage upload operation (DEBUG, tiles upload by the thousand)."""
    details = []
    if size_bytes is not None:
        details.append(format_size(size_bytes))
    if duration_ms is not None:
        details.append(format_duration(duration_ms))

    detail_str = f" ({', '.join(details)})" if details else ""

    logger.debug(f"[storage.upload] {path}{detail_str}")


def log_tiles_level(
    logger: logging.Logger,
    level: int,
    max_level: int,
    width: int,
    height: int,
    cols: int,
    rows: int,
    duration_ms: int,
) -> None:
    logger.info(
        f"[tiles.level] {level}/{max_level} {width}x{height}px → "
        f"{cols}x{rows} tiles ({format_duration(duration_ms)})"
    )


def log_tiles_generated(
    logger: logging.Logger,
    width: int,
    height: int,
    levels: int,
    tile_count: int,
    duration_ms: int,
    **context_kwargs,
) -> None:
    memory_mb = get_memory_mb()
    duration_str = format_duration(duration_ms)
    timing = f"{duration_str}, peak {memory_mb:.0f}mb" if memory_mb is not None else duration_str
    msg = (
        f"[tiles.generated] {width}x{height}px → {levels} levels, "
        f"{tile_count:,} tiles ({timing})"
    )
    context = format_context(**context_kwargs)
    if context:
        msg += f" | {context}"
    logger.info(msg)


def log_pdf_converted(
    logger: logging.Logger,
    page_count: int,
    rendered_count: int,
    duration_ms: int,
    **context_kwargs,
) -> None:
    """Log PDF page extraction completion."""
    msg = (
        f"[pdf.converted] {page_count} pages → {rendered_count} pngs "
        f"({format_duration(duration_ms)})"
    )
    context = format_context(**context_kwargs)
    if context:
        msg += f" | {context}"
    logger.info(msg)


def log_worker_starting(logger: logging.Logger, version: str | None = None) -> None:
    if version:
        logger.info(f"[worker.starting] drawings-worker v{version}")
    else:
        logger.info("[worker.starting] drawings-worker")


def log_worker_config(
    logger: logging.Logger,
    db_target: str,
    storage_bucket: str,
    tiles_base_url: str | None,
    job_types: list[str],
    batch_size: int,
    poll_interval: float,
    max_retries: int,
    upload_concurrency: int,
) -> None:
    """Log worker configuration."""
    logger.info("[worker.config]")
    logger.info(f"  → db: {db_target}")
    logger.info(f"  → storage: r2/{storage_bucket} (public: {tiles_base_url})")
    logger.info(f"  → jobs: {','.join(job_types)}")
    logger.info(
        f"  → limits: {batch_size} jobs/cycle every {poll_interval:g}s, "
        f"{upload_concurrency} concurrent uploads, {max_retries} retries"
    )


def log_connection_established(
    logger: logging.Logger,
    service: str,
    details: str | None = None,
) -> None:
    if details:
        logger.info(f"[{service}.connected] {details}")
    else:
        logger.info(f"[{service}.connected]")


def log_worker_ready(logger: logging.Logger) -> None:
    logger.info("[worker.ready] polling for jobs")


def log_worker_shutdown(logger: logging.Logger) -> None:
    logger.info("[worker.shutdown] graceful shutdown initiated")
