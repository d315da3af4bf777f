"""Interactive visualization flow gating aggregation on the user's selections."""

import threading
from datetime import date
from typing import Callable, Iterable, Optional, Set

import structlog

from ..models import AggregationResult, FlowState, PreconditionFailure
from .data_aggregator import (
    AggregationCancelled,
    AggregationPreconditionError,
    DataAggregator,
    MeasurementCache,
)


logger = structlog.get_logger(__name__)

# Called once per selected sensor before merging; fills the measurement cache
FetchCallback = Callable[[int, MeasurementCache], None]


class VisualizationFlow:
    """State machine for one station view.

    IDLE -> SENSORS_AND_DATES_SELECTED -> AGGREGATING -> READY

    A request only enters AGGREGATING when at least one sensor, at least one
    date and a chart mode are selected; otherwise the flow stays in
    SENSORS_AND_DATES_SELECTED and AggregationPreconditionError names the
    missing selection.
    """

    def __init__(self,
                 aggregator: DataAggregator,
                 session_id: str,
                 station_id: int,
                 cache: Optional[MeasurementCache] = None):
        self.aggregator = aggregator
        self.session_id = session_id
        self.station_id = station_id
        self.cache = cache or MeasurementCache()

        self.state = FlowState.IDLE
        self.selected_sensor_ids: Set[int] = set()
        self.selected_dates: Set[date] = set()
        self.chart_mode_selected = False
        self.result: Optional[AggregationResult] = None

        self._lock = threading.Lock()
        self._cancel_event: Optional[threading.Event] = None

    # Selection -----------------------------------------------------------

    def select_sensor(self, sensor_id: int, selected: bool = True) -> None:
        """Check or uncheck one sensor."""
        with self._lock:
            self._ensure_not_aggregating()
            if selected:
                self.selected_sensor_ids.add(sensor_id)
            else:
                self.selected_sensor_ids.discard(sensor_id)
            self._selection_changed()

    def select_sensors(self, sensor_ids: Iterable[int]) -> None:
        """Replace the sensor selection."""
        with self._lock:
            self._ensure_not_aggregating()
            self.selected_sensor_ids = set(sensor_ids)
            self._selection_changed()

    def toggle_date(self, day: date) -> bool:
        """Add or remove a calendar date; returns True when now selected."""
        with self._lock:
            self._ensure_not_aggregating()
            if day in self.selected_dates:
                self.selected_dates.remove(day)
                selected = False
            else:
                self.selected_dates.add(day)
                selected = True
            self._selection_changed()
            return selected

    def select_dates(self, dates: Iterable[date]) -> None:
        """Replace the date selection."""
        with self._lock:
            self._ensure_not_aggregating()
            self.selected_dates = set(dates)
            self._selection_changed()

    def set_chart_mode(self, selected: bool) -> None:
        """Acknowledge (or withdraw) the chart type choice."""
        with self._lock:
            self._ensure_not_aggregating()
            self.chart_mode_selected = selected
            self._selection_changed()

    def reset(self) -> None:
        """Clear all selections and results."""
        with self._lock:
            self._ensure_not_aggregating()
            self.selected_sensor_ids.clear()
            self.selected_dates.clear()
            self.chart_mode_selected = False
            self.result = None
            self.cache.clear()
            self.state = FlowState.IDLE

    # Aggregation ---------------------------------------------------------

    def check_preconditions(self) -> Optional[PreconditionFailure]:
        """Return the first missing selection, or None when ready."""
        if not self.selected_sensor_ids:
            return PreconditionFailure.NO_SENSOR_SELECTED
        if not self.selected_dates:
            return PreconditionFailure.NO_DATE_SELECTED
        if not self.chart_mode_selected:
            return PreconditionFailure.NO_CHART_MODE_SELECTED
        return None

    def run(self, fetch: Optional[FetchCallback] = None) -> AggregationResult:
        """Validate selections, refresh the cache and aggregate.

        ``fetch`` is called once per selected sensor with the cleared cache
        so the caller can load fresh measurements (network or stored
        history) before merging.
        """
        sensor_ids, dates, cancel_event = self._begin()
        try:
            if fetch is not None:
                for sensor_id in sorted(sensor_ids):
                    fetch(sensor_id, self.cache)

            result = self.aggregator.analyze(
                self.session_id,
                self.station_id,
                sensor_ids,
                dates,
                cache=self.cache,
                cancel_event=cancel_event
            )
        except AggregationCancelled:
            self._abort("cancelled")
            raise
        except Exception:
            self._abort("failed")
            raise

        return self._finish(result)

    async def run_async(self) -> AggregationResult:
        """Like run() without a fetch step, aggregating on a worker thread."""
        sensor_ids, dates, cancel_event = self._begin()
        try:
            result = await self.aggregator.analyze_async(
                self.session_id,
                self.station_id,
                sensor_ids,
                dates,
                cache=self.cache,
                cancel_event=cancel_event
            )
        except BaseException:
            self._abort("interrupted")
            raise

        return self._finish(result)

    def cancel(self) -> None:
        """Ask an in-flight aggregation to stop before its next sensor."""
        if self._cancel_event is not None:
            self._cancel_event.set()

    # Internals -----------------------------------------------------------

    def _begin(self):
        with self._lock:
            self._ensure_not_aggregating()
            self.state = FlowState.SENSORS_AND_DATES_SELECTED

            failure = self.check_preconditions()
            if failure is not None:
                logger.info("Visualization request rejected",
                           session_id=self.session_id,
                           reason=failure.value)
                raise AggregationPreconditionError(failure)

            self.state = FlowState.AGGREGATING
            self.result = None
            self.cache.clear()
            # One event per run, so cancelling never leaks into a later run
            self._cancel_event = threading.Event()
            return set(self.selected_sensor_ids), sorted(self.selected_dates), self._cancel_event

    def _finish(self, result: AggregationResult) -> AggregationResult:
        with self._lock:
            self.result = result
            self.state = FlowState.READY
        return result

    def _abort(self, reason: str) -> None:
        with self._lock:
            self.state = FlowState.SENSORS_AND_DATES_SELECTED
        logger.warning("Aggregation did not complete",
                      session_id=self.session_id,
                      reason=reason)

    def _selection_changed(self) -> None:
        if self.state in (FlowState.IDLE, FlowState.READY):
            self.state = FlowState.SENSORS_AND_DATES_SELECTED

    def _ensure_not_aggregating(self) -> None:
        if self.state == FlowState.AGGREGATING:
            raise RuntimeError("Cannot change the visualization while aggregating")


__all__ = [
    "VisualizationFlow",
    "FetchCallback",
]
