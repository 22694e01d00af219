from __future__ import annotations

import pytest

from core.config.config_service import AppConfig
from signing.adapters.event_sink import InMemoryEventSink
from signing.services.engine import build_engine
from signing.tests.helpers import FakeClock, FlakyStore


@pytest.fixture
def config(tmp_path):
    cfg = AppConfig.defaults()
    cfg.database.path = tmp_path / "signflow.db"
    cfg.storage.artifacts_dir = tmp_path / "artifacts"
    cfg.security.signature_key_file = tmp_path / "signature.key"
    cfg.composition.max_attempts = 4
    cfg.composition.backoff_base_seconds = 1.0
    cfg.composition.backoff_max_seconds = 30.0
    cfg.composition.timeout_seconds = 30.0
    cfg.workflow.reminder_interval_hours = 24.0
    return cfg


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def events():
    return InMemoryEventSink()


@pytest.fixture
def store(config):
    return FlakyStore(config.storage.artifacts_dir)


@pytest.fixture
def engine(config, clock, events, store):
    eng = build_engine(config, clock=clock, events=events, store=store)
    yield eng
    eng.close()
