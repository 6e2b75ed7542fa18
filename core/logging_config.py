from __future__ import annotations

import logging
import sys

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def configure_logging(level: str = "INFO") -> logging.Logger:
    root = logging.getLogger()
    root.setLevel(level.upper())

    # uvicorn reloads call this again
    for handler in list(root.handlers):
        if getattr(handler, "_homestage", False):
            root.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    handler._homestage = True  # type: ignore[attr-defined]
    root.addHandler(handler)
    return root
