# common/logging_conf.py
import logging
import os
from typing import Optional

_DEFAULT_FMT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"

# Client libraries that log every connection at INFO/DEBUG.
_NOISY = ("pika", "urllib3")


def setup_logging(level: Optional[str] = None) -> None:
    """
    Initialize root logging once. Level can be 'DEBUG', 'INFO', etc.
    Falls back to LOG_LEVEL env or INFO. Calling again only adjusts the level.
    """
    lvl_name = (level or os.getenv("LOG_LEVEL") or "INFO").upper()
    lvl = getattr(logging, lvl_name, logging.INFO)
    if getattr(setup_logging, "_inited", False):
        logging.getLogger().setLevel(lvl)
        return
    logging.basicConfig(level=lvl, format=_DEFAULT_FMT)
    for name in _NOISY:
        logging.getLogger(name).setLevel(logging.WARNING)
    setup_logging._inited = True  # type: ignore[attr-defined]
