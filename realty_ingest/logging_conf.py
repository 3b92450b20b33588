"""Logging configuration built around structlog JSON logging."""

from __future__ import annotations

import logging
import logging.config
import os
from pathlib import Path
from typing import Iterable

import structlog

_LOGGING_INITIALISED = False


def _default_log_dir() -> Path:
    env_root = os.environ.get("REALTY_INGEST_HOME")
    if env_root:
        return Path(env_root).expanduser().resolve() / "logs"
    return Path(__file__).resolve().parents[1] / "logs"


def configure_logging(verbose: bool = False) -> structlog.BoundLogger:
    """Configure structlog + stdlib handlers and return application logger."""

    global _LOGGING_INITIALISED
    log_dir = _default_log_dir()
    engine_log = log_dir / "engine.log"
    error_log = log_dir / "error.log"
    (log_dir / "segments").mkdir(parents=True, exist_ok=True)

    if not _LOGGING_INITIALISED:
        level = "DEBUG" if verbose else "INFO"
        logging.config.dictConfig(
            {
                "version": 1,
                "disable_existing_loggers": False,
                "formatters": {
                    "plain": {
                        "()": "pythonjsonlogger.jsonlogger.JsonFormatter",
                        "fmt": "%(asctime)s %(levelname)s %(name)s %(threadName)s %(message)s",
                    }
                },
                "handlers": {
                    "console": {
                        "class": "logging.StreamHandler",
                        "level": level,
                        "formatter": "plain",
                    },
                    "engine_file": {
                        "class": "logging.FileHandler",
                        "level": "INFO",
                        "filename": str(engine_log),
                        "formatter": "plain",
                        "encoding": "utf-8",
                    },
                    "error_file": {
                        "class": "logging.FileHandler",
                        "level": "ERROR",
                        "filename": str(error_log),
                        "formatter": "plain",
                        "encoding": "utf-8",
                    },
                },
                "loggers": {
                    "realty_ingest": {
                        "handlers": ["console", "engine_file", "error_file"],
                        "level": level,
                        "propagate": False,
                    },
                    # httpx logs every request at INFO
                    "httpx": {"level": "WARNING"},
                    "apscheduler": {"level": "WARNING"},
                },
            }
        )

        structlog.configure(
            processors=[
                structlog.contextvars.merge_contextvars,
                structlog.processors.TimeStamper(fmt="iso"),
                structlog.stdlib.add_log_level,
                structlog.processors.StackInfoRenderer(),
                structlog.processors.format_exc_info,
                structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
            ],
            logger_factory=structlog.stdlib.LoggerFactory(),
            cache_logger_on_first_use=True,
        )
        _LOGGING_INITIALISED = True
    return structlog.get_logger("realty_ingest")


def segment_logger(segment_slug: str, verbose: bool = False) -> structlog.BoundLogger:
    """Return a logger bound to one segment, mirrored into its own log file."""

    configure_logging(verbose)
    segment_log_path = _default_log_dir() / "segments" / f"{segment_slug}.log"
    segment_log_path.parent.mkdir(parents=True, exist_ok=True)

    logger_name = f"realty_ingest.segment.{segment_slug}"
    py_logger = logging.getLogger(logger_name)
    if not any(
        isinstance(handler, logging.FileHandler) and handler.baseFilename == str(segment_log_path)
        for handler in py_logger.handlers
    ):
        file_handler = logging.FileHandler(segment_log_path, encoding="utf-8")
        global_logger = logging.getLogger("realty_ingest")
        if global_logger.handlers:
            file_handler.setFormatter(global_logger.handlers[0].formatter)
        file_handler.setLevel(logging.INFO)
        py_logger.addHandler(file_handler)

    return structlog.get_logger(logger_name).bind(segment=segment_slug)


def tail_log(path: Path, line_count: int = 100) -> list[str]:
    """Return the last N lines from a log file."""

    if not path.exists():
        return []
    with path.open("r", encoding="utf-8", errors="ignore") as stream:
        lines = stream.readlines()
    return lines[-line_count:]


def engine_log_path() -> Path:
    return _default_log_dir() / "engine.log"


def segment_log_path(segment_slug: str) -> Path:
    return _default_log_dir() / "segments" / f"{segment_slug}.log"


def available_segment_logs() -> Iterable[Path]:
    """Yield available segment log file paths."""

    segments_dir = _default_log_dir() / "segments"
    if not segments_dir.exists():
        return []
    return sorted(p for p in segments_dir.glob("*.log"))


__all__ = [
    "available_segment_logs",
    "configure_logging",
    "engine_log_path",
    "segment_log_path",
    "segment_logger",
    "tail_log",
]
