"""
Shared fixtures for the roadsense test suite.

Fixtures:
- clock:        manually advanced monotonic clock for flush intervals
- processor:    stub processor with a settable roughness value
- store:        MemoryStore
- flaky_store:  MemoryStore whose operations can be switched to fail
- make_engine:  factory for engines wired to the fixtures above
- fixes:        factory for location fixes along a straight northbound road
- synthetic_drive: recorded drive dict from the synthetic generator
"""

import logging
import threading

import pytest

from roadsense.config import SurveyConfig
from roadsense.engine import SurveySessionEngine
from roadsense.errors import StorageError
from roadsense.geo import offset_position
from roadsense.models import LocationFix, SurveyMode
from roadsense.store import MemoryStore
from roadsense.synthetic import generate_drive

logging.basicConfig(
    level=logging.DEBUG,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)

ORIGIN = (-6.2000, 106.8166)


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line("markers", "unit: Unit tests (fast, isolated)")
    config.addinivalue_line("markers", "integration: End-to-end tests (engine, store, CLI)")


def pytest_collection_modifyitems(config, items):
    """Everything not marked integration is a unit test."""
    for item in items:
        if "integration" not in item.keywords:
            item.add_marker(pytest.mark.unit)


class FakeClock:
    def __init__(self, t: float = 0.0):
        self.t = t

    def __call__(self) -> float:
        return self.t

    def advance(self, seconds: float):
        self.t += seconds


class StubProcessor:
    """Stands in for VibrationSignalProcessor with a directly settable output."""

    def __init__(self, roughness: float = 0.0):
        self.roughness = roughness
        self.linear_acceleration = (0.0, 0.0, 0.0)
        self.history = []

    def process_reading(self, reading) -> float:
        return self.roughness


class FlakyStore(MemoryStore):
    """MemoryStore with switchable outages and a record of telemetry batches."""

    def __init__(self):
        super().__init__()
        self.fail_telemetry = False
        self.fail_segments = False
        self.fail_sessions = False
        self.batches = []
        self.batch_written = threading.Event()

    def create_session(self, session):
        if self.fail_sessions:
            raise StorageError("simulated outage")
        return super().create_session(session)

    def update_session(self, session):
        if self.fail_sessions:
            raise StorageError("simulated outage")
        super().update_session(session)

    def insert_telemetry_batch(self, session_id, samples):
        if self.fail_telemetry:
            raise StorageError("simulated outage")
        super().insert_telemetry_batch(session_id, samples)
        self.batches.append(len(samples))
        self.batch_written.set()

    def insert_segment(self, segment):
        if self.fail_segments:
            raise StorageError("simulated outage")
        return super().insert_segment(segment)


class FixFactory:
    """Location fixes at given distances north of a fixed origin."""

    def __init__(self):
        self.t_ms = 1_000_000

    def __call__(self, distance_m: float, accuracy: float = 5.0, speed: float = 10.0,
                 east_m: float = 0.0) -> LocationFix:
        self.t_ms += 1000
        lat, lon = offset_position(ORIGIN[0], ORIGIN[1], distance_m, east_m)
        return LocationFix(timestamp_ms=self.t_ms, lat=lat, lon=lon, altitude=10.0,
                           speed=speed, accuracy_m=accuracy)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def processor():
    return StubProcessor()


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def flaky_store():
    return FlakyStore()


@pytest.fixture
def config():
    return SurveyConfig()


@pytest.fixture
def fixes():
    return FixFactory()


@pytest.fixture
def make_engine(store, processor, clock, config):
    """Build engines; every engine built is closed at teardown."""
    engines = []

    def _make(mode=SurveyMode.GENERAL, store=store, processor=processor, config=config):
        engine = SurveySessionEngine(store, processor=processor, config=config,
                                     mode=mode, clock=clock)
        engines.append(engine)
        return engine

    yield _make
    for engine in engines:
        engine.close()


@pytest.fixture
def engine(make_engine):
    return make_engine()


@pytest.fixture
def synthetic_drive():
    return generate_drive(seed=7)
