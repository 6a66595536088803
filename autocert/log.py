"""Process-wide logging setup for the autocert CLI."""
import logging
import sys


LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

_NOISY_LOGGERS = ("httpcore", "httpx", "aiohttp.access", "hpack")


def configure_logging(level: str = "INFO") -> None:
    """
    Configure unified logging for the process.

    Replaces existing root handlers so uvicorn, aiohttp and autocert loggers
    share one stream and format.
    """
    logging.basicConfig(
        level=_to_level(level),
        format=LOG_FORMAT,
        datefmt=DATE_FORMAT,
        handlers=[logging.StreamHandler(sys.stderr)],
        force=True,
    )

    # uvicorn runs with log_config=None, so route its loggers to the root handler
    for name in ("uvicorn", "uvicorn.error", "uvicorn.access"):
        uvicorn_logger = logging.getLogger(name)
        uvicorn_logger.handlers.clear()
        uvicorn_logger.propagate = True

    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def set_log_level(level: str) -> None:
    """Change the root log level at runtime."""
    logging.getLogger().setLevel(_to_level(level))
    logging.getLogger("autocert").debug("[AUTOCERT] Log level set to %s", level.upper())


def _to_level(level: str) -> int:
    value = logging.getLevelName(level.strip().upper())
    if not isinstance(value, int):
        raise ValueError(f"unknown log level: {level!r}")
    return value
