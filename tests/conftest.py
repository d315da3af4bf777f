"""Pytest configuration and fixtures."""

import sys

import pytest
import structlog

from airwatch.models import Sensor, Station
from airwatch.services import SessionStorage


@pytest.fixture(autouse=True)
def reset_logging():
    """Keep log output off stdout and undo CLI logging configuration."""
    structlog.configure(logger_factory=structlog.PrintLoggerFactory(file=sys.stderr))
    yield
    structlog.reset_defaults()


@pytest.fixture(autouse=True)
def clear_env(monkeypatch):
    """Keep configuration overrides from the outer environment out of tests."""
    for name in ("AIRWATCH_STORAGE_DIR", "AIRWATCH_MAX_SESSIONS", "AIRWATCH_DEBUG",
                 "AIRWATCH_DEDUPLICATE", "AIRWATCH_MAX_WORKERS", "AIRWATCH_TREND_THRESHOLD"):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def storage_dir(tmp_path):
    """Empty history directory."""
    return tmp_path / "history"


@pytest.fixture
def storage(storage_dir):
    """Session store over an empty history directory."""
    return SessionStorage(storage_dir=storage_dir)


@pytest.fixture
def stations():
    """Two stations in Warsaw and one in Krakow."""
    return [
        Station(station_id=114, name="Warszawa-Marszałkowska", latitude=52.2250,
                longitude=21.0122, address="ul. Marszałkowska", city_name="Warszawa"),
        Station(station_id=117, name="Warszawa-Targówek", latitude=52.2911,
                longitude=21.0427, address="ul. Kondratowicza", city_name="Warszawa"),
        Station(station_id=400, name="Kraków-Bujaka", latitude=50.0109,
                longitude=19.9492, address="ul. Bujaka", city_name="Kraków"),
    ]


@pytest.fixture
def sensors():
    """PM10 and NO2 sensors of station 114, PM10 sensor of station 117."""
    return [
        Sensor(id=642, station_id=114,
               param={"paramName": "pył zawieszony PM10", "paramFormula": "PM10",
                      "paramCode": "PM10", "idParam": 3}),
        Sensor(id=644, station_id=114,
               param={"paramName": "dwutlenek azotu", "paramFormula": "NO2",
                      "paramCode": "NO2", "idParam": 6}),
        Sensor(id=700, station_id=117,
               param={"paramName": "pył zawieszony PM10", "paramFormula": "PM10",
                      "paramCode": "PM10", "idParam": 3}),
    ]


@pytest.fixture
def session_id(storage, stations):
    """Session with stations stored and no sensors."""
    return storage.create_session("Marszałkowska 1, Warszawa", 10.0, 52.23, 21.01, stations)
