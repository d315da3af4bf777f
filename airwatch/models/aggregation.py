"""Aggregation result models: hourly grid, per-sensor statistics and trend."""

from datetime import date
from enum import Enum
from typing import Dict, List, Tuple
from pydantic import BaseModel, Field, computed_field


# date -> sensor display name -> hour of day (0..23) -> accumulated value
AggregationGrid = Dict[date, Dict[str, Dict[int, float]]]


class Trend(str, Enum):
    """Coarse direction of a sensor's values over the selected window."""

    STABLE = "stable"
    INCREASING = "increasing"
    DECREASING = "decreasing"
    INSUFFICIENT_DATA = "insufficient data for trend analysis"
    NO_DATA = "no data"


class PreconditionFailure(str, Enum):
    """Why a visualization request could not start aggregating."""

    NO_SENSOR_SELECTED = "no sensor selected"
    NO_DATE_SELECTED = "no date selected"
    NO_CHART_MODE_SELECTED = "no chart mode selected"


class FlowState(str, Enum):
    """States of the interactive visualization flow."""

    IDLE = "idle"
    SENSORS_AND_DATES_SELECTED = "sensors_and_dates_selected"
    AGGREGATING = "aggregating"
    READY = "ready"


class SensorStatistics(BaseModel):
    """Summary statistics of one sensor over the selected dates."""

    model_config = {
        "extra": "forbid"
    }

    sensor_name: str
    min_value: float = 0.0
    max_value: float = 0.0
    average: float = 0.0
    trend: Trend = Trend.NO_DATA
    points: List[Tuple[float, float]] = Field(
        default_factory=list,
        description="Included (x, value) points ready for plotting"
    )

    @computed_field
    @property
    def point_count(self) -> int:
        return len(self.points)

    def __str__(self) -> str:
        return (
            f"{self.sensor_name}: min={self.min_value:.2f} max={self.max_value:.2f} "
            f"avg={self.average:.2f} trend={self.trend.value}"
        )


class AggregationResult(BaseModel):
    """Grid and statistics produced by one visualization request."""

    session_id: str
    station_id: int
    selected_dates: List[date] = Field(default_factory=list)
    grid: AggregationGrid = Field(default_factory=dict)
    statistics: List[SensorStatistics] = Field(default_factory=list)

    @computed_field
    @property
    def is_empty(self) -> bool:
        return not self.grid

    def get_statistics(self, sensor_name: str) -> SensorStatistics:
        """Statistics of one sensor by display name."""
        for stats in self.statistics:
            if stats.sensor_name == sensor_name:
                return stats
        raise KeyError(sensor_name)
