from __future__ import annotations

import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path

LOG_FORMAT = "%(asctime)s [%(levelname)s] [%(name)s] %(message)s"


def setup_logging(level: str, logfile: str, max_bytes: int = 0, backup_count: int = 0):
    Path(logfile).parent.mkdir(parents=True, exist_ok=True)

    log_level = getattr(logging, level.upper(), logging.INFO)
    root = logging.getLogger()
    root.setLevel(log_level)

    # Re-running setup (CLI then serve, tests) must not stack handlers.
    for h in list(root.handlers):
        root.removeHandler(h)
        h.close()

    fmt = logging.Formatter(LOG_FORMAT)

    if max_bytes > 0:
        fh: logging.Handler = RotatingFileHandler(
            logfile, maxBytes=max_bytes, backupCount=backup_count, encoding="utf-8"
        )
    else:
        fh = logging.FileHandler(logfile, encoding="utf-8")
    fh.setLevel(log_level)
    fh.setFormatter(fmt)
    root.addHandler(fh)

    ch = logging.StreamHandler()
    ch.setLevel(log_level)
    ch.setFormatter(fmt)
    root.addHandler(ch)

    # requests retries are already logged by the transport.
    logging.getLogger("urllib3").setLevel(max(log_level, logging.WARNING))

    for logger_name in ("uvicorn", "uvicorn.error", "uvicorn.access"):
        logger = logging.getLogger(logger_name)
        logger.handlers.clear()
        logger.setLevel(log_level)
        logger.propagate = True

    root.info("logging_initialized level=%s file=%s", logging.getLevelName(log_level), logfile)
