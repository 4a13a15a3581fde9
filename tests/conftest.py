"""Shared test fixtures for the bid-ask rebalancer."""

from collections.abc import AsyncIterator
from pathlib import Path

import pytest
import pytest_asyncio
from fakes import FakeClock, FakeSleep, PositionFactory, make_position

from rebalancer.config import (
    AppSettings,
    FeeClaimSettings,
    RebalanceSettings,
    RegimeSettings,
    TrackerSettings,
)
from rebalancer.data.database import TrackerDatabase
from rebalancer.data.store import TrackerStore


@pytest.fixture
def mock_settings() -> AppSettings:
    """Return AppSettings with test defaults (paper mode, no delays)."""
    return AppSettings(
        log_level="DEBUG",
        mode="paper",
        rebalance=RebalanceSettings(
            monitor_interval=1.0,
            settle_delay=0.0,
            inter_position_delay=0.0,
        ),
        regime=RegimeSettings(),
        tracker=TrackerSettings(db_path=":memory:"),
        fee_claim=FeeClaimSettings(inter_claim_delay=0.0),
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def fake_sleep() -> FakeSleep:
    return FakeSleep()


@pytest_asyncio.fixture
async def database(tmp_path: Path) -> AsyncIterator[TrackerDatabase]:
    """Connected TrackerDatabase on a temporary file."""
    async with TrackerDatabase(str(tmp_path / "tracker.db")) as db:
        yield db


@pytest.fixture
def store(database: TrackerDatabase) -> TrackerStore:
    return TrackerStore(database)


@pytest.fixture
def position_factory() -> PositionFactory:
    """Factory building positions with one bucket per ascending price."""
    return make_position
