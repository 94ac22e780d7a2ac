import logging
from pathlib import Path
from typing import Tuple, Union

import coloredlogs

LOGGER_NAME = "graphci"
LOG_FORMAT = "%(asctime)s %(name)s %(levelname)s %(message)s"

logger = logging.getLogger(LOGGER_NAME)


def setup_logging(level: Union[str, int] = "INFO") -> logging.Logger:
    """Install the colored console handler on the `graphci` logger."""
    logger.setLevel(logging.DEBUG)

    # coloredlogs installs its own StreamHandler on `logger`; `level` is the
    # threshold of that handler, the logger itself stays at DEBUG so job
    # file loggers below are unaffected.
    coloredlogs.install(level=level, logger=logger, fmt=LOG_FORMAT)
    return logger


def get_job_logger(log_dir: Path, run_id: str, job_id: str) -> Tuple[logging.Logger, str]:
    """Creates a dedicated file logger for one job of one run."""
    job_log_dir = Path(log_dir) / run_id
    job_log_dir.mkdir(parents=True, exist_ok=True)
    safe_name = job_id.replace("/", "_")
    log_file_path = job_log_dir / f"{safe_name}.log"

    job_logger = logging.getLogger(f"{LOGGER_NAME}.job.{run_id}.{safe_name}")
    job_logger.setLevel(logging.DEBUG)
    # Step output is bulky; keep it out of the console handler on the parent.
    job_logger.propagate = False

    fh = logging.FileHandler(log_file_path, encoding="utf-8")
    fh.setLevel(logging.DEBUG)
    fh.setFormatter(logging.Formatter("%(asctime)s - %(levelname)s - %(message)s"))
    job_logger.addHandler(fh)

    return job_logger, str(log_file_path)


def close_job_logger(job_logger: logging.Logger) -> None:
    for handler in list(job_logger.handlers):
        handler.close()
        job_logger.removeHandler(handler)
