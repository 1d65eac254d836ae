from __future__ import annotations

import logging
import sys


_LOG_FORMAT = "%(asctime)s level=%(levelname)s logger=%(name)s %(message)s"
_NOISY_LOGGERS = ("httpx", "httpcore", "sqlalchemy.engine", "arq.worker")


def configure_logging(level: str = "INFO") -> None:
    # Configure the root logger once; repeated calls only adjust the level.
    resolved = logging.getLevelName(level.upper())
    if not isinstance(resolved, int):
        resolved = logging.INFO
    root = logging.getLogger()
    if not any(getattr(handler, "_timeledger", False) for handler in root.handlers):
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(logging.Formatter(_LOG_FORMAT))
        handler._timeledger = True  # type: ignore[attr-defined]
        root.addHandler(handler)
    root.setLevel(resolved)
    # Keep per-request client logs out of INFO output.
    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(resolved, logging.WARNING))
