"""Shared fixtures for pricesync tests."""

from __future__ import annotations

from collections.abc import Generator
from pathlib import Path

import pytest

from pricesync.core.config import ConfigStore, EngineConfig
from pricesync.engine.service import PriceSyncEngine
from pricesync.server.database import Database
from tests.fakes import TENANT, FakeErpClient, RecordingPublisher


@pytest.fixture
def db(tmp_path: Path) -> Generator[Database, None, None]:
    """Create a test database with one ERP-enabled tenant."""
    database = Database(tmp_path / "test.db")
    database.create_tenant(TENANT, "Acme Store")
    yield database
    database.close()


@pytest.fixture
def erp() -> FakeErpClient:
    return FakeErpClient()


@pytest.fixture
def config() -> ConfigStore:
    """Engine config without batch stagger so tests run fast."""
    return ConfigStore(EngineConfig(batch_stagger=0.0, request_timeout=2.0, job_timeout=10.0))


@pytest.fixture
def publisher() -> RecordingPublisher:
    return RecordingPublisher()


@pytest.fixture
def engine(
    db: Database,
    erp: FakeErpClient,
    config: ConfigStore,
    publisher: RecordingPublisher,
) -> PriceSyncEngine:
    """Engine wired to the fake ERP (not started)."""
    return PriceSyncEngine(db, erp, config, publisher)
