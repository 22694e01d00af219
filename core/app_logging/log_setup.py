"""
core/app_logging/log_setup.py
=============================

Root logger wiring for the service process. Modules only ever call
``logging.getLogger(__name__)``; handlers and levels are installed here once,
from the ``[Logging]`` config section.
"""

from __future__ import annotations

import logging
import logging.handlers
import threading
from pathlib import Path

from core.config.config_service import LoggingConfig

_CONFIGURED_MARK = "_signflow_handler"
_lock = threading.Lock()


def configure_logging(cfg: LoggingConfig) -> logging.Logger:
    """Install console (and optional rotating file) handlers on the root logger.

    Calling it again replaces the handlers installed by a previous call, so a
    config reload does not duplicate output.
    """
    with _lock:
        root = logging.getLogger()
        for handler in list(root.handlers):
            if getattr(handler, _CONFIGURED_MARK, False):
                root.removeHandler(handler)
                handler.close()

        formatter = logging.Formatter(cfg.format)

        console = logging.StreamHandler()
        console.setFormatter(formatter)
        setattr(console, _CONFIGURED_MARK, True)
        root.addHandler(console)

        if cfg.file:
            path = Path(cfg.file).expanduser()
            path.parent.mkdir(parents=True, exist_ok=True)
            file_handler = logging.handlers.RotatingFileHandler(
                path, maxBytes=5 * 1024 * 1024, backupCount=5, encoding="utf-8"
            )
            file_handler.setFormatter(formatter)
            setattr(file_handler, _CONFIGURED_MARK, True)
            root.addHandler(file_handler)

        root.setLevel(logging.getLevelName(cfg.level.upper()))
        return root
