"""DataAggregator service for merging sensor history into hourly grids and statistics."""

import asyncio
import statistics
import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import date, datetime
from typing import Any, Dict, Iterable, Iterator, List, NamedTuple, Optional, Sequence, Tuple

import structlog

from ..models import (
    AggregationGrid,
    AggregationResult,
    AggregationSettings,
    Measurement,
    PreconditionFailure,
    SensorStatistics,
    Trend,
    TimestampParseError,
)
from .session_storage import SessionStorage


logger = structlog.get_logger(__name__)


class AggregationPreconditionError(Exception):
    """A visualization request is missing a required selection."""

    def __init__(self, reason: PreconditionFailure):
        self.reason = reason
        super().__init__(reason.value)


class AggregationCancelled(Exception):
    """Aggregation was cancelled between per-sensor computations."""


class _Contribution(NamedTuple):
    key: Tuple[int, datetime]
    day: date
    sensor_name: str
    hour: int
    value: float


class MeasurementCache:
    """Measurements fetched during the current interaction, keyed by sensor id.

    A fetch replaces what was cached for that sensor. The cache is not
    persisted; the aggregator reads it next to the stored session history.
    """

    def __init__(self):
        """Initialize an empty cache."""
        self._measurements: Dict[int, List[Measurement]] = {}
        self._names: Dict[int, str] = {}
        self._lock = threading.Lock()

    def put(self, sensor_id: int, measurements: Iterable[Measurement],
            sensor_name: Optional[str] = None) -> None:
        """Store the latest fetch for a sensor."""
        with self._lock:
            self._measurements[sensor_id] = list(measurements)
            if sensor_name:
                self._names[sensor_id] = sensor_name

    def get(self, sensor_id: int) -> List[Measurement]:
        with self._lock:
            return list(self._measurements.get(sensor_id, []))

    def sensor_name(self, sensor_id: int) -> Optional[str]:
        with self._lock:
            return self._names.get(sensor_id)

    def sensor_ids(self) -> List[int]:
        with self._lock:
            return sorted(self._measurements)

    def clear(self) -> None:
        """Drop all cached measurements; sensor names are kept."""
        with self._lock:
            self._measurements.clear()

    def __contains__(self, sensor_id: object) -> bool:
        with self._lock:
            return sensor_id in self._measurements

    def __len__(self) -> int:
        with self._lock:
            return len(self._measurements)


def linear_regression_slope(points: Sequence[Tuple[float, float]]) -> float:
    """Ordinary least-squares slope of value against x."""
    xs = [x for x, _ in points]
    ys = [y for _, y in points]
    try:
        return statistics.linear_regression(xs, ys).slope
    except statistics.StatisticsError:
        # Fewer than two points or all x equal
        return 0.0


def classify_trend(points: Sequence[Tuple[float, float]], threshold: float = 0.01) -> Trend:
    """Classify the regression slope of the points into a trend."""
    if len(points) < 2:
        return Trend.INSUFFICIENT_DATA

    slope = linear_regression_slope(points)
    if abs(slope) < threshold:
        return Trend.STABLE
    elif slope > 0:
        return Trend.INCREASING
    else:
        return Trend.DECREASING


def calculate_sensor_statistics(grid: AggregationGrid,
                                sensor_name: str,
                                selected_dates: Iterable[date],
                                settings: Optional[AggregationSettings] = None) -> SensorStatistics:
    """Compute min, max, average, trend and plot points of one sensor.

    With a single selected date the points are the hours of that day whose
    value is non-zero, x being the hour. With several dates every hour of
    every selected date is a point (missing hours count as 0) and x is
    ``days_since_earliest * 24 + hour``. Both zero rules can be changed in
    ``AggregationSettings``.
    """
    settings = settings or AggregationSettings()
    dates = sorted(set(selected_dates))
    points: List[Tuple[float, float]] = []

    if len(dates) == 1:
        hourly = grid.get(dates[0], {}).get(sensor_name, {})
        for hour in range(24):
            value = hourly.get(hour, 0.0)
            if value != 0.0 or settings.single_day_include_zero:
                points.append((float(hour), value))
    elif dates:
        earliest = dates[0]
        for day in dates:
            hourly = grid.get(day, {}).get(sensor_name, {})
            x_base = (day - earliest).days * 24
            for hour in range(24):
                value = hourly.get(hour, 0.0)
                if value != 0.0 or settings.multi_day_include_zero:
                    points.append((float(x_base + hour), value))

    if not points:
        return SensorStatistics(sensor_name=sensor_name, trend=Trend.NO_DATA)

    values = [value for _, value in points]
    return SensorStatistics(
        sensor_name=sensor_name,
        min_value=min(values),
        max_value=max(values),
        average=sum(values) / len(values),
        trend=classify_trend(points, settings.trend_threshold),
        points=points
    )


class DataAggregator:
    """Service merging stored and freshly fetched measurements of a station."""

    def __init__(self, storage: SessionStorage,
                 settings: Optional[AggregationSettings] = None):
        """Initialize the data aggregator."""
        self.storage = storage
        self.settings = settings or AggregationSettings()

        # Performance tracking
        self.last_aggregation_duration_ms = 0.0
        self.aggregation_count = 0
        self.skipped_timestamps = 0
        self._counter_lock = threading.Lock()

    def aggregate_data(self,
                       session_id: str,
                       station_id: int,
                       selected_sensor_ids: Iterable[int],
                       selected_dates: Iterable[date],
                       cache: Optional[MeasurementCache] = None) -> AggregationGrid:
        """Build the date -> sensor name -> hour grid for the selections.

        Stored measurements of the selected sensors of ``station_id`` come
        first, then the cached fresh measurements of the selected sensors.
        Both accumulate into the same cells; unless ``deduplicate`` is set a
        reading present in both sources is counted twice.
        """
        selected_ids = set(selected_sensor_ids)
        dates = set(selected_dates)
        fmt = self.settings.timestamp_format

        history: List[_Contribution] = []
        session_names: Dict[int, str] = {}

        session = self.storage.load_session(session_id)
        if session is None:
            logger.info("No session data found", session_id=session_id)
        else:
            for sensor in session.sensors:
                session_names[sensor.id] = sensor.display_name
                if sensor.id not in selected_ids or sensor.station_id != station_id:
                    continue
                history.extend(self._contributions(
                    sensor.id, sensor.display_name, sensor.measurements, dates, fmt,
                    fresh=False
                ))

        fresh: List[_Contribution] = []
        if cache is not None:
            for sensor_id in cache.sensor_ids():
                if sensor_id not in selected_ids:
                    continue
                name = (cache.sensor_name(sensor_id) or
                        session_names.get(sensor_id) or
                        f"sensor {sensor_id}")
                fresh.extend(self._contributions(
                    sensor_id, name, cache.get(sensor_id), dates, fmt,
                    fresh=True
                ))

        if self.settings.deduplicate:
            merged: Dict[Tuple[int, datetime], _Contribution] = {}
            for contribution in history + fresh:
                merged[contribution.key] = contribution
            contributions = list(merged.values())
        else:
            contributions = history + fresh

        grid: Dict[date, Dict[str, Dict[int, float]]] = {}
        for c in contributions:
            hourly = grid.setdefault(c.day, {}).setdefault(c.sensor_name, {})
            hourly[c.hour] = hourly.get(c.hour, 0.0) + c.value

        if not grid:
            logger.info("No data aggregated for selected dates and sensors",
                       session_id=session_id,
                       station_id=station_id)
        else:
            logger.debug("Aggregated data",
                        session_id=session_id,
                        dates=len(grid),
                        sensors=len(selected_ids),
                        history_readings=len(history),
                        fresh_readings=len(fresh))

        return {
            day: {
                name: dict(sorted(hours.items()))
                for name, hours in sorted(grid[day].items())
            }
            for day in sorted(grid)
        }

    def calculate_statistics(self,
                             grid: AggregationGrid,
                             selected_dates: Iterable[date],
                             cancel_event: Optional[threading.Event] = None) -> List[SensorStatistics]:
        """Compute statistics for every sensor in the grid.

        Sensors are independent and run on a thread pool. ``cancel_event``
        is checked before each sensor; once set, AggregationCancelled is
        raised and sensors not yet started are skipped.
        """
        dates = sorted(set(selected_dates))
        names = sorted({name for sensors in grid.values() for name in sensors})
        if not names:
            return []

        def compute(name: str) -> SensorStatistics:
            if cancel_event is not None and cancel_event.is_set():
                raise AggregationCancelled(f"Cancelled before statistics of {name}")
            return calculate_sensor_statistics(grid, name, dates, self.settings)

        workers = min(self.settings.max_workers, len(names))
        if workers == 1:
            return [compute(name) for name in names]

        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="sensor-stats") as executor:
            futures = [executor.submit(compute, name) for name in names]
            try:
                return [future.result() for future in futures]
            except AggregationCancelled:
                for future in futures:
                    future.cancel()
                raise

    def analyze(self,
                session_id: str,
                station_id: int,
                selected_sensor_ids: Iterable[int],
                selected_dates: Iterable[date],
                cache: Optional[MeasurementCache] = None,
                cancel_event: Optional[threading.Event] = None) -> AggregationResult:
        """Aggregate and compute statistics in one blocking call."""
        start_time = datetime.now()
        dates = sorted(set(selected_dates))

        grid = self.aggregate_data(session_id, station_id, selected_sensor_ids, dates, cache)
        if cancel_event is not None and cancel_event.is_set():
            raise AggregationCancelled("Cancelled after merging measurements")

        result = AggregationResult(
            session_id=session_id,
            station_id=station_id,
            selected_dates=dates,
            grid=grid,
            statistics=self.calculate_statistics(grid, dates, cancel_event)
        )

        with self._counter_lock:
            self.last_aggregation_duration_ms = (datetime.now() - start_time).total_seconds() * 1000
            self.aggregation_count += 1

        logger.info("Aggregation completed",
                   session_id=session_id,
                   station_id=station_id,
                   sensors=len(result.statistics),
                   duration_ms=round(self.last_aggregation_duration_ms, 2))
        return result

    async def analyze_async(self,
                            session_id: str,
                            station_id: int,
                            selected_sensor_ids: Iterable[int],
                            selected_dates: Iterable[date],
                            cache: Optional[MeasurementCache] = None,
                            cancel_event: Optional[threading.Event] = None) -> AggregationResult:
        """Run analyze() on a worker thread; cancelling the task cancels the work."""
        cancel_event = cancel_event or threading.Event()
        try:
            return await asyncio.to_thread(
                self.analyze,
                session_id,
                station_id,
                list(selected_sensor_ids),
                list(selected_dates),
                cache,
                cancel_event
            )
        except asyncio.CancelledError:
            cancel_event.set()
            raise

    def get_aggregation_stats(self) -> Dict[str, Any]:
        """Get aggregation performance statistics."""
        return {
            "aggregation_count": self.aggregation_count,
            "last_aggregation_duration_ms": self.last_aggregation_duration_ms,
            "skipped_timestamps": self.skipped_timestamps,
            "settings": self.settings.model_dump()
        }

    def _contributions(self,
                       sensor_id: int,
                       sensor_name: str,
                       measurements: Iterable[Measurement],
                       dates: set,
                       fmt: str,
                       fresh: bool) -> Iterator[_Contribution]:
        """Turn measurements into grid contributions for the selected dates."""
        skip_zero = self.settings.skip_zero_fresh if fresh else self.settings.skip_zero_history

        for measurement in measurements:
            try:
                moment = measurement.parse_timestamp(fmt)
            except TimestampParseError as e:
                with self._counter_lock:
                    self.skipped_timestamps += 1
                logger.warning("Invalid date format in measurement",
                              sensor_id=sensor_id,
                              source="fresh" if fresh else "history",
                              error=str(e))
                continue

            day = moment.date()
            if day not in dates:
                continue

            value = measurement.value
            if value is None:
                # Absent readings never count from history; fresh ones count as 0
                if not fresh or skip_zero:
                    continue
                value = 0.0
            elif value == 0.0 and skip_zero:
                continue

            yield _Contribution((sensor_id, moment), day, sensor_name, moment.hour, value)


# Export the main component
__all__ = [
    "DataAggregator",
    "MeasurementCache",
    "AggregationPreconditionError",
    "AggregationCancelled",
    "calculate_sensor_statistics",
    "classify_trend",
    "linear_regression_slope",
]
