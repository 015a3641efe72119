"""Loguru setup shared by the API and worker processes.

Log lines emitted while a worker executes a job carry the job id and
class through job_context(); outside a job the field shows "-".
"""

import os
import sys
from contextlib import contextmanager
from pathlib import Path
from typing import TYPE_CHECKING, Iterator, Optional

from loguru import logger

if TYPE_CHECKING:
    from course_jobs.queue.job import Job

CONSOLE_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | <level>{level: <8}</level> | "
    "<magenta>{extra[job]}</magenta> | <cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - "
    "<level>{message}</level>"
)
FILE_FORMAT = "{time:YYYY-MM-DD HH:mm:ss} | {level: <8} | {extra[job]} | {name}:{function}:{line} - {message}"


def configure_logging(
    component: str = "api",
    level: Optional[str] = None,
    log_dir: Optional[str] = None,
) -> Path:
    """Route logs to stderr and a rotating per-component file.

    Args:
        component: Process role, names the log file (api, worker)
        level: Minimum level, defaults to LOG_LEVEL or INFO
        log_dir: Log directory, defaults to LOG_DIR or ./logs

    Returns:
        Path of the log file
    """
    level = level or os.getenv("LOG_LEVEL", "INFO")
    directory = Path(log_dir or os.getenv("LOG_DIR", "logs"))

    logger.remove()
    logger.configure(extra={"job": "-"})
    logger.add(sys.stderr, format=CONSOLE_FORMAT, level=level, colorize=True)

    directory.mkdir(parents=True, exist_ok=True)
    log_file = directory / f"course_jobs_{component}.log"
    logger.add(
        log_file,
        format=FILE_FORMAT,
        level=level,
        rotation="10 MB",
        retention="7 days",
        compression="zip",
    )
    return log_file


@contextmanager
def job_context(job: "Job") -> Iterator[None]:
    """Tag every log line inside the block with the job being executed."""
    with logger.contextualize(job=f"{job.job_class}:{job.job_id}"):
        yield


__all__ = ["logger", "configure_logging", "job_context"]
