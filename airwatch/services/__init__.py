"""Core services for the station history and aggregation system."""

from .session_storage import (
    SessionStorage,
    StorageError,
    StorageIOError,
    StorageParseError,
    SessionNotFoundError,
)
from .data_aggregator import (
    DataAggregator,
    MeasurementCache,
    AggregationPreconditionError,
    AggregationCancelled,
)
from .visualization_flow import VisualizationFlow
from .station_locator import StationSearchError, rank_stations, haversine_km

__all__ = [
    "SessionStorage",
    "StorageError",
    "StorageIOError",
    "StorageParseError",
    "SessionNotFoundError",
    "DataAggregator",
    "MeasurementCache",
    "AggregationPreconditionError",
    "AggregationCancelled",
    "VisualizationFlow",
    "StationSearchError",
    "rank_stations",
    "haversine_km",
]
