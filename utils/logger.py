"""
Unified logging built on Loguru.

Console output is short and colourised; files keep full detail and rotate
automatically. Standard-library ``logging`` records (uvicorn, fastapi) are
routed into Loguru through ``InterceptHandler``.
"""
import sys
import logging
from pathlib import Path
from typing import Union

from loguru import logger


class InterceptHandler(logging.Handler):
    def emit(self, record: logging.LogRecord) -> None:
        try:
            level = logger.level(record.levelname).name
        except ValueError:
            level = record.levelno

        # Walk out of the logging module so file/line point at the caller.
        frame, depth = logging.currentframe(), 2
        while frame.f_code.co_filename == logging.__file__:
            frame = frame.f_back
            depth += 1

        logger.opt(depth=depth, exception=record.exc_info).log(level, record.getMessage())


def setup_logger(log_dir: Union[str, Path] = "logs", level: str = "INFO", to_files: bool = True):
    """
    Configure the global logger.

    :param log_dir: directory for ``app.log`` and ``error.log``
    :param level: console log level
    :param to_files: disable to keep output on stderr only (CLI client commands)
    """
    logger.remove()

    logger.add(
        sys.stderr,
        level=level,
        format="<green>{time:HH:mm:ss}</green> | <level>{level: <8}</level> | <cyan>{name}</cyan>:<cyan>{line}</cyan> - <level>{message}</level>"
    )

    if to_files:
        Path(log_dir).mkdir(parents=True, exist_ok=True)

        logger.add(
            f"{log_dir}/app.log",
            rotation="00:00",
            retention="10 days",
            compression="zip",
            enqueue=True,
            level="DEBUG",
            format="{time:YYYY-MM-DD HH:mm:ss.SSS} | {level: <8} | {name}:{line} | {extra} | {message}"
        )

        logger.add(
            f"{log_dir}/error.log",
            rotation="10 MB",
            retention="30 days",
            level="ERROR",
            backtrace=True,
            diagnose=True
        )

    logging.basicConfig(handlers=[InterceptHandler()], level=0, force=True)

    for logger_name in ("uvicorn", "uvicorn.access", "uvicorn.error", "fastapi"):
        mod_logger = logging.getLogger(logger_name)
        mod_logger.handlers = [InterceptHandler()]
        mod_logger.propagate = False

    logger.debug("Logging configured (Loguru)")

    return logger
