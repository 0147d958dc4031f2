"""
Per-job logger.
Each job gets its own logger writing to <workspace>/job.log; records also
propagate to the run-wide handlers (system.log / errors.log).
"""

import logging
from pathlib import Path

from ultransc.core.constants import JOB_LOG_NAME, LOG_FORMAT


def open_job_logger(job_id: str, workspace: Path) -> logging.Logger:
    log = logging.getLogger(f"ultransc.job.{job_id}")
    log.setLevel(logging.DEBUG)
    # A resumed job in the same process must not stack handlers
    close_job_logger(log)
    handler = logging.FileHandler(workspace / JOB_LOG_NAME, encoding="utf-8")
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    log.addHandler(handler)
    return log


def close_job_logger(log: logging.Logger):
    for handler in list(log.handlers):
        log.removeHandler(handler)
        handler.close()
