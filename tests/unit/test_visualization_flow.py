"""Unit tests for the visualization state machine."""

import asyncio
import threading

import pytest
from datetime import date

from airwatch.models import FlowState, Measurement, PreconditionFailure, Trend
from airwatch.services import (
    AggregationPreconditionError,
    DataAggregator,
    VisualizationFlow,
)


DAY = date(2024, 3, 1)
PM10 = "pył zawieszony PM10"


@pytest.fixture
def flow(storage, session_id, sensors):
    storage.add_sensors(session_id, sensors)
    storage.add_measurements(session_id, [
        Measurement(sensor_id=642, timestamp="2024-03-01 08:00:00", value=10.0),
        Measurement(sensor_id=642, timestamp="2024-03-01 10:00:00", value=20.0),
    ])
    return VisualizationFlow(DataAggregator(storage), session_id, 114)


class TestSelections:
    """Test selection state transitions."""

    def test_starts_idle(self, flow):
        assert flow.state == FlowState.IDLE
        assert flow.check_preconditions() == PreconditionFailure.NO_SENSOR_SELECTED

    def test_selecting_moves_out_of_idle(self, flow):
        flow.select_sensor(642)
        assert flow.state == FlowState.SENSORS_AND_DATES_SELECTED

    def test_toggle_date(self, flow):
        assert flow.toggle_date(DAY) is True
        assert flow.toggle_date(DAY) is False
        assert flow.selected_dates == set()

    def test_unselect_sensor(self, flow):
        flow.select_sensors([642, 644])
        flow.select_sensor(644, selected=False)
        assert flow.selected_sensor_ids == {642}

    def test_reset(self, flow):
        flow.select_sensor(642)
        flow.toggle_date(DAY)
        flow.set_chart_mode(True)

        flow.reset()

        assert flow.state == FlowState.IDLE
        assert flow.selected_sensor_ids == set()
        assert flow.chart_mode_selected is False


class TestPreconditions:
    """Test gating of aggregation on selections."""

    @pytest.mark.parametrize("sensors, dates, chart_mode, reason", [
        ([], [], False, PreconditionFailure.NO_SENSOR_SELECTED),
        ([], [DAY], True, PreconditionFailure.NO_SENSOR_SELECTED),
        ([642], [], True, PreconditionFailure.NO_DATE_SELECTED),
        ([642], [DAY], False, PreconditionFailure.NO_CHART_MODE_SELECTED),
    ])
    def test_missing_selection(self, flow, sensors, dates, chart_mode, reason):
        flow.select_sensors(sensors)
        flow.select_dates(dates)
        flow.set_chart_mode(chart_mode)

        with pytest.raises(AggregationPreconditionError) as exc_info:
            flow.run()

        assert exc_info.value.reason == reason
        assert flow.state == FlowState.SENSORS_AND_DATES_SELECTED
        assert flow.result is None

    def test_rejected_from_idle(self, flow):
        with pytest.raises(AggregationPreconditionError):
            flow.run()
        assert flow.state == FlowState.SENSORS_AND_DATES_SELECTED


class TestRun:
    """Test aggregation through the flow."""

    def select_all(self, flow):
        flow.select_sensor(642)
        flow.toggle_date(DAY)
        flow.set_chart_mode(True)

    def test_run_reaches_ready(self, flow):
        self.select_all(flow)

        result = flow.run()

        assert flow.state == FlowState.READY
        assert flow.result is result
        stats = result.get_statistics(PM10)
        assert stats.average == 15.0
        assert stats.trend == Trend.INCREASING

    def test_fetch_fills_cache(self, flow):
        self.select_all(flow)
        calls = []

        def fetch(sensor_id, cache):
            calls.append(sensor_id)
            cache.put(sensor_id, [
                Measurement(sensor_id=sensor_id, timestamp="2024-03-01 12:00:00", value=30.0)
            ], PM10)

        result = flow.run(fetch)

        assert calls == [642]
        assert result.grid[DAY][PM10] == {8: 10.0, 10: 20.0, 12: 30.0}

    def test_cache_cleared_between_runs(self, flow):
        self.select_all(flow)
        flow.cache.put(642, [
            Measurement(sensor_id=642, timestamp="2024-03-01 12:00:00", value=30.0)
        ])

        result = flow.run()

        assert 12 not in result.grid[DAY][PM10]

    def test_selection_change_leaves_ready(self, flow):
        self.select_all(flow)
        flow.run()

        flow.toggle_date(date(2024, 3, 2))

        assert flow.state == FlowState.SENSORS_AND_DATES_SELECTED

    def test_failed_fetch_returns_to_selected(self, flow):
        self.select_all(flow)

        def fetch(sensor_id, cache):
            raise ConnectionError("service unavailable")

        with pytest.raises(ConnectionError):
            flow.run(fetch)

        assert flow.state == FlowState.SENSORS_AND_DATES_SELECTED

    def test_selection_locked_while_aggregating(self, flow):
        self.select_all(flow)

        def fetch(sensor_id, cache):
            with pytest.raises(RuntimeError):
                flow.select_sensor(644)

        flow.run(fetch)
        assert flow.selected_sensor_ids == {642}

    @pytest.mark.asyncio
    async def test_run_async(self, flow):
        self.select_all(flow)

        result = await flow.run_async()

        assert flow.state == FlowState.READY
        assert result.get_statistics(PM10).max_value == 20.0

    @pytest.mark.asyncio
    async def test_cancelled_run_stays_cancelled(self, flow, monkeypatch):
        """A later run does not revive the worker of a cancelled one."""
        self.select_all(flow)
        events = []
        started = threading.Event()
        release = threading.Event()
        analyze = flow.aggregator.analyze

        def blocking_analyze(session_id, station_id, sensor_ids, dates,
                             cache=None, cancel_event=None):
            events.append(cancel_event)
            if len(events) == 1:
                started.set()
                release.wait(timeout=5.0)
            return analyze(session_id, station_id, sensor_ids, dates,
                           cache=cache, cancel_event=cancel_event)

        monkeypatch.setattr(flow.aggregator, "analyze", blocking_analyze)

        task = asyncio.create_task(flow.run_async())
        assert await asyncio.to_thread(started.wait, 5.0)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert flow.state == FlowState.SENSORS_AND_DATES_SELECTED

        result = flow.run()
        release.set()

        assert result.get_statistics(PM10).average == 15.0
        assert events[0] is not events[1]
        assert events[0].is_set()
        assert not events[1].is_set()
