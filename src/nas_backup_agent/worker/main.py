"""Entry point of the detached worker process.

Runs one job from a job file written by the supervisor, reporting through
the status file only. Nothing is printed: stdio is the null device.
"""

import json
import logging
from pathlib import Path

from .. import __util__
from ..__logger__ import PACKAGE_LOGGER
from ..config import ConfigError, parse_config
from ..core.models import JobSpec
from ..core.pipeline import BackupPipeline
from ..platform import choose_backend
from ..shareutil import ShareSession
from .status import StatusWriter

logger = logging.getLogger(__name__)


def read_job_file(job_path) -> dict:
    """Read the job file and delete it right away, it holds credentials."""
    job_path = Path(job_path)
    try:
        with open(job_path, encoding="utf-8") as f:
            return json.load(f)
    finally:
        try:
            job_path.unlink()
        except OSError as e:
            logger.warning("Could not delete job file %s: %s", job_path, e)


def _attach_file_log(path: Path) -> logging.Handler:
    handler = logging.FileHandler(path, encoding="utf-8")
    handler.setFormatter(
        logging.Formatter("[%(asctime)s] %(levelname)s %(message)s", "%Y-%m-%d %H:%M:%S")
    )
    package_logger = logging.getLogger(PACKAGE_LOGGER)
    package_logger.addHandler(handler)
    package_logger.setLevel(logging.DEBUG)
    return handler


def run_worker(job_path, backend_factory=choose_backend, session_factory=ShareSession) -> int:
    """Run the job described by ``job_path``.

    Returns:
        Process exit code: 0 on success, 1 on failure
    """
    payload = read_job_file(job_path)
    handler = _attach_file_log(Path(payload["log"]))
    writer = StatusWriter(Path(payload["status"]))
    try:
        config = parse_config(payload["config"])
        job = JobSpec.from_dict(payload["job"])
        writer.heartbeat_interval = config.worker.heartbeat_interval
        writer.start()
        logger.info("Worker started for %s backup of %s", job.kind.value, job.hostname)

        backend = backend_factory(job.platform, config)
        session = session_factory(
            backend.share,
            job.target,
            attempts=config.share.reconnect_attempts,
            delay=config.share.reconnect_delay,
        )
        pipeline = BackupPipeline(backend, config, job, session, report=writer.update)
        outcome = pipeline.run()
        writer.finish(outcome.manifest_path)
        logger.info("Worker finished")
        return 0
    except __util__.BackupError as e:
        logger.error("Worker failed: %s", e)
        writer.fail(str(e), type(e).__name__)
        return 1
    except ConfigError as e:
        logger.error("Worker failed: %s", e)
        writer.fail(str(e))
        return 1
    except Exception as e:
        logger.exception("Unexpected worker failure")
        writer.fail(f"Unexpected worker failure: {e}")
        return 1
    finally:
        writer.stop()
        handler.close()
        logging.getLogger(PACKAGE_LOGGER).removeHandler(handler)
