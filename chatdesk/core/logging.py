from __future__ import annotations

import logging
import sys

from chatdesk.core.config import get_settings


_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"
_UVICORN_LOGGERS = ("uvicorn", "uvicorn.error", "uvicorn.access")


def configure_logging(level: str | None = None) -> None:
    # Install a single stream handler so repeated app factories do not duplicate output.
    resolved = (level or get_settings().log_level or "INFO").upper()
    root = logging.getLogger()
    root.setLevel(resolved)
    if not any(getattr(handler, "_chatdesk", False) for handler in root.handlers):
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(logging.Formatter(_LOG_FORMAT))
        handler._chatdesk = True  # type: ignore[attr-defined]
        root.addHandler(handler)
    # Align server loggers with the app level so request logs are not lost or doubled.
    for name in _UVICORN_LOGGERS:
        server_logger = logging.getLogger(name)
        server_logger.setLevel(resolved)
        server_logger.propagate = True
        server_logger.handlers.clear()
