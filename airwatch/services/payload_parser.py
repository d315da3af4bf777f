"""Parsing of decoded monitoring-service payloads into record models.

The network layer hands over already decoded JSON. Top-level shape errors
raise PayloadError; individual malformed entries are skipped and logged.
"""

from typing import Any, Dict, List

import structlog
from pydantic import ValidationError

from ..models import AirQualitySnapshot, Measurement, Sensor, Station


logger = structlog.get_logger(__name__)


class PayloadError(ValueError):
    """Payload does not have the expected top-level structure."""


def parse_stations(payload: Any) -> List[Station]:
    """Parse the station list payload."""
    if not isinstance(payload, list):
        raise PayloadError("Stations response is not a JSON array")

    stations: List[Station] = []
    for entry in payload:
        if not isinstance(entry, dict):
            logger.warning("Skipping non-object station entry")
            continue
        city = entry.get("city") or {}
        try:
            stations.append(Station(
                station_id=entry.get("id"),
                name=entry.get("stationName"),
                latitude=entry.get("gegrLat") or 0.0,
                longitude=entry.get("gegrLon") or 0.0,
                address=entry.get("addressStreet"),
                city_name=city.get("name") if isinstance(city, dict) else None
            ))
        except ValidationError as e:
            logger.warning("Skipping malformed station", station=entry.get("id"), error=str(e))

    return stations


def parse_sensors(payload: Any) -> List[Sensor]:
    """Parse the sensor list payload of one station."""
    if not isinstance(payload, list):
        raise PayloadError("Sensors response is not a JSON array")

    sensors: List[Sensor] = []
    for entry in payload:
        if not isinstance(entry, dict):
            logger.warning("Skipping non-object sensor entry")
            continue
        try:
            sensors.append(Sensor(
                id=entry.get("id"),
                station_id=entry.get("stationId"),
                param=entry.get("param") or {}
            ))
        except ValidationError as e:
            logger.warning("Skipping malformed sensor", sensor=entry.get("id"), error=str(e))

    return sensors


def parse_measurements(sensor_id: int, payload: Any) -> List[Measurement]:
    """Parse the ``{"values": [{"date": ..., "value": ...}]}`` payload of a sensor."""
    if not isinstance(payload, dict):
        raise PayloadError("Measurement response is not a JSON object")

    values = payload.get("values") or []
    if not isinstance(values, list):
        raise PayloadError("Measurement values are not a JSON array")

    measurements: List[Measurement] = []
    for entry in values:
        if not isinstance(entry, dict):
            continue
        try:
            measurements.append(Measurement(
                sensor_id=sensor_id,
                timestamp=entry.get("date"),
                value=entry.get("value")
            ))
        except ValidationError as e:
            logger.warning("Skipping malformed measurement", sensor_id=sensor_id, error=str(e))

    return measurements


def parse_air_quality(payload: Any) -> AirQualitySnapshot:
    """Parse the air-quality index payload of a station."""
    if not isinstance(payload, dict):
        raise PayloadError("Air quality response is not a JSON object")

    level: Dict[str, Any] = payload.get("stIndexLevel") or {}
    return AirQualitySnapshot(
        calculated_at=payload.get("stCalcDate"),
        index_level_name=level.get("indexLevelName") if isinstance(level, dict) else None
    )


__all__ = [
    "PayloadError",
    "parse_stations",
    "parse_sensors",
    "parse_measurements",
    "parse_air_quality",
]
