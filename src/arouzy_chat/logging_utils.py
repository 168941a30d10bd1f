# logging_utils.py
import logging
import sys
from pathlib import Path
from typing import Any

from loguru import logger

LOG_ROTATION_SIZE = "10 MB"
LOG_RETENTION_MAX_FILES = 20
DEFAULT_LOG_FILENAME = "chat-server.log"

# Third-party loggers that are routed through loguru explicitly; uvicorn
# installs its own handlers on these unless told otherwise.
_INTERCEPTED_LOGGERS = ("uvicorn", "uvicorn.error", "uvicorn.access", "fastapi")


class InterceptHandler(logging.Handler):
    """Redirect stdlib logging to loguru."""

    def emit(self, record: logging.LogRecord) -> None:
        try:
            level = logger.level(record.levelname).name
        except (ValueError, TypeError):
            level = record.levelno

        frame = logging.currentframe()
        depth = 2
        while frame and frame.f_code.co_filename == logging.__file__:
            frame = frame.f_back  # type: ignore[assignment]
            depth += 1

        logger.opt(depth=depth, exception=record.exc_info).log(
            level, record.getMessage()
        )


def _parse_retention(retention: str | None) -> str | int:
    """A bare number means "keep N files"; anything else is a loguru rule."""
    if retention is None:
        return LOG_RETENTION_MAX_FILES
    if retention.strip().isdigit():
        return int(retention)
    return retention


def configure_logging(
    log_dir: Path | None,
    console_level: str = "INFO",
    console_json: bool = False,
    rotation: str | None = None,
    retention: str | None = None,
) -> Path | None:
    """
    Initialize console logging and an optional rotated JSON file sink.

    Args:
        log_dir: Target directory for `chat-server.log`; enables file sink when set.
        console_level: Console level string (e.g., INFO/DEBUG).
        console_json: Emit console as JSON when True; otherwise colored text.
        rotation: loguru rotation rule (e.g., '10 MB', '1 day', '12:00').
        retention: loguru retention rule (e.g., '1 week') or a number of files.

    Returns:
        Path of the log file when a file sink was added.
    """
    logger.remove()

    console_kwargs: dict[str, Any] = {
        "level": console_level.upper(),
        "serialize": console_json,
        "enqueue": True,
        "backtrace": False,
        "diagnose": False,
    }
    if not console_json:
        console_kwargs["format"] = (
            "<green>{time:HH:mm:ss}</green> | <level>{level: <8}</level> | {message}"
        )
    logger.add(sys.stderr, **console_kwargs)

    log_file: Path | None = None
    if log_dir is not None:
        log_dir_path = Path(log_dir)
        try:
            log_dir_path.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            logger.error(f"Failed to create log directory {log_dir_path}: {exc}")
        else:
            log_file = log_dir_path / DEFAULT_LOG_FILENAME
            logger.add(
                log_file,
                level="DEBUG",
                serialize=True,
                rotation=rotation or LOG_ROTATION_SIZE,
                retention=_parse_retention(retention),
                enqueue=True,
                backtrace=False,
                diagnose=False,
            )
            logger.info(
                f"File logging enabled at {log_file} (rotation/retention active)"
            )

    logging.basicConfig(handlers=[InterceptHandler()], level=logging.NOTSET, force=True)
    for name in _INTERCEPTED_LOGGERS:
        std_logger = logging.getLogger(name)
        std_logger.handlers = [InterceptHandler()]
        std_logger.propagate = False
    logging.captureWarnings(True)
    return log_file
