"""Data models for the station history and aggregation system."""

from .station import Station
from .sensor import Sensor, SensorParam, Measurement, TimestampParseError, TIMESTAMP_FORMAT
from .session import (
    Session,
    SessionLocation,
    AirQualitySnapshot,
    IndexEntry,
    SessionIndex,
    MAX_SESSIONS,
    NO_RADIUS,
)
from .aggregation import (
    AggregationGrid,
    AggregationResult,
    SensorStatistics,
    Trend,
    PreconditionFailure,
    FlowState,
)
from .app_configuration import AppConfiguration, StorageSettings, AggregationSettings

__all__ = [
    "Station",
    "Sensor",
    "SensorParam",
    "Measurement",
    "TimestampParseError",
    "TIMESTAMP_FORMAT",
    "Session",
    "SessionLocation",
    "AirQualitySnapshot",
    "IndexEntry",
    "SessionIndex",
    "MAX_SESSIONS",
    "NO_RADIUS",
    "AggregationGrid",
    "AggregationResult",
    "SensorStatistics",
    "Trend",
    "PreconditionFailure",
    "FlowState",
    "AppConfiguration",
    "StorageSettings",
    "AggregationSettings",
]
