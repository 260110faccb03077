"""Logging helpers shared by the server entry points."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Union

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
LOG_FILENAME = "character_chat.log"


def setup_logging(log_dir: Union[str, Path], level: int = logging.INFO) -> Path:
    """Send records to the console and to ``<log_dir>/character_chat.log``.

    Calling it again replaces the handlers installed by the previous call
    instead of stacking duplicates.
    """
    directory = Path(log_dir)
    directory.mkdir(parents=True, exist_ok=True)
    log_path = directory / LOG_FILENAME

    root = logging.getLogger()
    for handler in list(root.handlers):
        if getattr(handler, "_character_chat", False):
            root.removeHandler(handler)
            handler.close()

    formatter = logging.Formatter(LOG_FORMAT)
    for handler in (logging.StreamHandler(), logging.FileHandler(log_path, encoding="utf-8")):
        handler.setFormatter(formatter)
        handler._character_chat = True  # type: ignore[attr-defined]
        root.addHandler(handler)
    root.setLevel(level)

    logging.getLogger(__name__).debug("Logging to %s", log_path)
    return log_path
