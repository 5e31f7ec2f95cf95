"""Drawings worker entrypoint - polls the outbox for drawing set and tile jobs."""

import logging
import signal
import sys
import threading
import time
from http.server import BaseHTTPRequestHandler, HTTPServer

from sqlalchemy import text

from clients.db import close_engine, get_engine, get_session
from clients.storage import create_pdfs_store, create_storage_client, create_tiles_store
from config import config
from jobs.poller import JobPoller
from jobs.registry import registered_job_types
from jobs.runner import JobRunner
from jobs.types import WorkerDeps
from utils.job_errors import ConfigurationError
from utils.log_utils import (
    configure_logging,
    log_connection_established,
    log_worker_config,
    log_worker_ready,
    log_worker_shutdown,
    log_worker_starting,
)

logger = logging.getLogger(__name__)

# Set by signal handlers; the poll loop finishes its current cycle and exits
stop_event = threading.Event()


class HealthCheckHandler(BaseHTTPRequestHandler):
    """Simple HTTP handler for platform health checks."""

    def do_GET(self):
        if self.path == "/health" or self.path == "/":
            self.send_response(200)
            self.send_header("Content-type", "text/plain")
            self.end_headers()
            self.wfile.write(b"OK")
        else:
            self.send_response(404)
            self.end_headers()

    def log_message(self, format, *args):
        """Suppress default logging to avoid noise."""
        pass


def start_health_server(port: int):
    server = HTTPServer(("0.0.0.0", port), HealthCheckHandler)
    logger.info(f"[health.server] listening on port {port}")
    server.serve_forever()


def signal_handler(signum, frame):
    """Handle shutdown signals (SIGINT, SIGTERM)."""
    logger.info(f"[worker.signal] received signal {signum}, finishing current cycle...")
    stop_event.set()


def validate_database_connectivity() -> bool:
    """
    Validate database connectivity with a trivial query.

    Raises:
        Exception: If database connection fails
    """
    try:
        with get_engine().connect() as connection:
            connection.execute(text("SELECT 1"))
        return True
    except ConfigurationError:
        raise
    except Exception as e:
        logger.error(f"[db.connection.failed] {type(e).__name__}: {e}")
        raise


def connect_with_retry(connection_func, max_retries: int = 3, base_delay: float = 1.0) -> bool:
    """
    Attempt connection with exponential backoff retry logic.

    Args:
        connection_func: Function to call for connection attempt
        max_retries: Maximum number of retry attempts
        base_delay: Base delay in seconds for exponential backoff

    Returns:
        bool: True if connection succeeded

    Raises:
        Exception: If all retries fail
    """
    for attempt in range(max_retries):
        try:
            connection_func()
            return True
        except ConfigurationError:
            raise
        except Exception:
            if attempt == max_retries - 1:
                logger.error(f"[connection.failed] max attempts ({max_retries}) reached")
                raise

            delay = base_delay * (2**attempt)
            logger.warning(
                f"[connection.retry] attempt {attempt + 1}/{max_retries} (retry in {delay:.1f}s)"
            )
            time.sleep(delay)

    return False


def build_worker_deps() -> WorkerDeps:
    """Build the shared storage gateways; fails fast on bad storage config."""
    if not config.drawings_tiles_base_url:
        raise ConfigurationError(
            "Missing DRAWINGS_TILES_BASE_URL or NEXT_PUBLIC_DRAWINGS_TILES_BASE_URL"
        )
    storage_client = create_storage_client(config)
    return WorkerDeps(
        tiles_store=create_tiles_store(storage_client, config),
        pdfs_store=create_pdfs_store(storage_client),
        tile_upload_concurrency=config.tile_upload_concurrency,
        pdf_render_dpi=config.pdf_render_dpi,
    )


def _db_target() -> str:
    if config.database_url:
        return get_engine().url.render_as_string(hide_password=True)
    return f"{config.db_host}:{config.db_port}/{config.db_name}"


def main():
    """Main worker entrypoint."""
    configure_logging(
        config.worker_log_level,
        local_dev=config.worker_local_dev,
        debug=config.drawings_tiles_debug,
    )

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    log_worker_starting(logger)

    health_thread = threading.Thread(
        target=start_health_server,
        args=(config.port,),
        name="HealthServer",
        daemon=True,
    )
    health_thread.start()

    try:
        deps = build_worker_deps()
        job_types = registered_job_types()

        connect_with_retry(validate_database_connectivity, max_retries=config.worker_max_retries)
        db_target = _db_target()
        log_connection_established(logger, "db", db_target)

        log_worker_config(
            logger,
            db_target=db_target,
            storage_bucket=config.r2_bucket,
            tiles_base_url=config.drawings_tiles_base_url,
            job_types=job_types,
            batch_size=config.worker_batch_size,
            poll_interval=config.worker_poll_interval,
            max_retries=config.worker_max_retries,
            upload_concurrency=config.tile_upload_concurrency,
        )

        runner = JobRunner(deps, logger=logger)
        poller = JobPoller(
            runner,
            session_factory=get_session,
            job_types=job_types,
            batch_size=config.worker_batch_size,
            poll_interval=config.worker_poll_interval,
            max_retries=config.worker_max_retries,
            lease_seconds=config.worker_claim_lease_seconds,
            retry_permanent_errors=config.worker_retry_permanent_errors,
        )

        log_worker_ready(logger)
        poller.run_forever(stop_event)

    except ConfigurationError as e:
        logger.error(f"[worker.config.invalid] {e}")
        sys.exit(1)
    except Exception as e:
        logger.error(f"[worker.fatal] {type(e).__name__}: {e}", exc_info=True)
        sys.exit(1)
    finally:
        log_worker_shutdown(logger)
        close_engine()
        logger.info("[db.closed] connection pool closed")
        logger.info("[worker.stopped]")


if __name__ == "__main__":
    main()
