"""
core/tests/test_config_service.py

Layering and typing of the configuration service.
Uses unittest to avoid external test dependencies.
"""

from __future__ import annotations

import tempfile
import unittest
from pathlib import Path

from core.config.config_service import ConfigService


class TestConfigService(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.addCleanup(self._tmp.cleanup)
        self.tmp = Path(self._tmp.name)

    def _ini(self, text: str) -> Path:
        path = self.tmp / "deploy.ini"
        path.write_text(text, encoding="utf-8")
        return path

    def test_defaults(self) -> None:
        cfg = ConfigService(environ={}).config
        self.assertEqual(cfg.composition.max_attempts, 5)
        self.assertEqual(cfg.tokens.token_bytes, 32)
        self.assertTrue(cfg.workflow.allow_parallel)
        self.assertIsInstance(cfg.database.path, Path)

    def test_file_overrides_defaults(self) -> None:
        path = self._ini("[Composition]\nworkers = 6\n\n[Workflow]\nallow_parallel = no\n")
        svc = ConfigService(path, environ={})
        self.assertEqual(svc.config.composition.workers, 6)
        self.assertFalse(svc.config.workflow.allow_parallel)
        self.assertEqual(svc.meta_source("Composition", "workers")["layer"], "file")
        self.assertEqual(svc.meta_source("Composition", "max_attempts")["layer"], "defaults.ini")

    def test_environment_wins(self) -> None:
        path = self._ini("[Tokens]\nttl_hours = 48\n")
        env = {
            "SIGNFLOW_TOKENS__TTL_HOURS": "12",
            "SIGNFLOW_LOGGING__LEVEL": "debug",
            "SIGNFLOW_IGNORED": "x",
        }
        svc = ConfigService(path, environ=env)
        self.assertEqual(svc.config.tokens.ttl_hours, 12.0)
        self.assertEqual(svc.config.logging.level, "debug")
        self.assertEqual(svc.meta_source("Tokens", "ttl_hours"), {"layer": "env", "source": "os.environ"})

    def test_config_file_from_environment(self) -> None:
        path = self._ini("[Sweep]\ninterval_seconds = 5\n")
        svc = ConfigService(environ={"SIGNFLOW_CONFIG": str(path)})
        self.assertEqual(svc.config.sweep.interval_seconds, 5.0)

    def test_missing_file_is_an_error(self) -> None:
        with self.assertRaises(FileNotFoundError):
            ConfigService(self.tmp / "absent.ini", environ={})

    def test_get_casts(self) -> None:
        svc = ConfigService(environ={})
        self.assertEqual(svc.get("Composition", "workers", cast=int), 2)
        self.assertIsNone(svc.get("Composition", "nonexistent"))


if __name__ == "__main__":
    unittest.main()
