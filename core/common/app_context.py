# core/common/app_context.py
"""
Runtime context & service registry for the signflow process.

Holds the loaded configuration and the services built from it, so entry
points share one instance of each. Nothing here knows about the signing
feature; ``main.py`` registers what it builds.
"""

from __future__ import annotations

import threading
from typing import Any, Dict, Optional

from core.config.config_service import AppConfig, ConfigService


class AppContext:
    """Central runtime context (process wide)."""

    config_service: Optional[ConfigService] = None
    services: Dict[str, Any] = {}
    _lock = threading.RLock()

    @classmethod
    def init(cls, config_service: ConfigService) -> None:
        with cls._lock:
            cls.config_service = config_service

    @classmethod
    def config(cls) -> AppConfig:
        if cls.config_service is None:
            raise RuntimeError("AppContext.init() has not been called")
        return cls.config_service.config

    # ---------- Dynamic registration ---------------------------------
    @classmethod
    def register_service(cls, name: str, instance: Any) -> None:
        with cls._lock:
            cls.services[name] = instance

    @classmethod
    def service(cls, name: str) -> Any:
        with cls._lock:
            try:
                return cls.services[name]
            except KeyError:
                raise KeyError(f"Service {name!r} is not registered") from None

    @classmethod
    def reset(cls) -> None:
        with cls._lock:
            cls.config_service = None
            cls.services = {}
