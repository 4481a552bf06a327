"""Console logging configuration."""

from __future__ import annotations

import sys

from loguru import logger

DEFAULT_FORMAT = (
    "<dim>{time:HH:mm:ss.SSS}</dim> "
    "<level>{level:<8}</level> "
    "<blue>[{extra[module]}]</blue> "
    "{message}"
)

# Every record carries a module tag; event log entries override it via bind().
logger.configure(extra={"module": "CORE"})

# Remove loguru defaults; add a fallback sink so logging works before configure().
logger.remove()
_fallback_id: int | None = logger.add(sys.stderr, level="INFO", format=DEFAULT_FORMAT)


def configure(
    level: str = "INFO",
    fmt: str = "",
    json_format: bool = False,
    file: str = "",
    rotation: str = "10 MB",
    retention: str = "7 days",
) -> None:
    """Reconfigure logging sinks. Called once at startup from K11App.__init__.

    Idempotent: removes all previous sinks and adds fresh ones.
    Before this is called, the fallback sink ensures basic stderr logging.
    """
    global _fallback_id
    logger.remove()  # remove ALL sinks including fallback
    _fallback_id = None

    if json_format:
        logger.add(sys.stderr, level=level, serialize=True)
    else:
        logger.add(sys.stderr, level=level, format=fmt or DEFAULT_FORMAT)

    if file:
        kw: dict = {"level": level, "rotation": rotation, "retention": retention}
        if json_format:
            kw["serialize"] = True
        else:
            kw["format"] = fmt or "{time:YYYY-MM-DD HH:mm:ss.SSS} | {level:<8} | [{extra[module]}] {message}"
        logger.add(file, **kw)
