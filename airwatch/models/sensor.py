"""Sensor and Measurement data models."""

from datetime import datetime
from typing import Any, List, Optional
from pydantic import BaseModel, Field, field_validator, computed_field


TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M:%S"


class TimestampParseError(ValueError):
    """Raised when a measurement timestamp does not match TIMESTAMP_FORMAT."""

    def __init__(self, raw: str):
        self.raw = raw
        super().__init__(f"Invalid measurement timestamp: {raw!r}")


class Measurement(BaseModel):
    """Single reading of a sensor.

    The timestamp is kept verbatim as received so that a malformed value can
    be persisted and later skipped during aggregation. ``value`` is ``None``
    when the monitoring service reported no reading for that hour.
    """

    model_config = {
        "populate_by_name": True,
        "extra": "ignore"
    }

    sensor_id: Optional[int] = Field(default=None, alias="sensorId", description="Owning sensor")
    timestamp: str = Field(alias="date", description="Reading time, YYYY-MM-DD HH:MM:SS")
    value: Optional[float] = Field(default=None, description="Reading, None when absent")

    @field_validator('timestamp', mode='before')
    @classmethod
    def stringify_timestamp(cls, v: Any) -> Any:
        """Store datetimes in the persisted text format."""
        if isinstance(v, datetime):
            return v.strftime(TIMESTAMP_FORMAT)
        return "" if v is None else v

    @property
    def is_absent(self) -> bool:
        """True when the reading carries no value."""
        return self.value is None

    def parse_timestamp(self, fmt: str = TIMESTAMP_FORMAT) -> datetime:
        """Parse the timestamp, raising TimestampParseError when malformed."""
        try:
            return datetime.strptime(self.timestamp, fmt)
        except (TypeError, ValueError):
            raise TimestampParseError(self.timestamp)

    def to_record(self) -> dict[str, Any]:
        """Serialize as stored under a sensor (no sensor id)."""
        return {"date": self.timestamp, "value": self.value}


class SensorParam(BaseModel):
    """Measured parameter metadata."""

    model_config = {
        "populate_by_name": True,
        "extra": "ignore"
    }

    param_name: str = Field(default="", alias="paramName")
    param_formula: str = Field(default="", alias="paramFormula")
    param_code: str = Field(default="", alias="paramCode")
    param_id: int = Field(default=0, alias="idParam")

    @field_validator('param_name', 'param_formula', 'param_code', mode='before')
    @classmethod
    def none_to_empty(cls, v: Any) -> Any:
        return "" if v is None else v


class Sensor(BaseModel):
    """Sensor of a station with its accumulated measurements."""

    model_config = {
        "populate_by_name": True,
        "extra": "ignore"
    }

    id: int = Field(description="Sensor identifier, globally unique")
    station_id: int = Field(alias="stationId", description="Owning station")
    param: SensorParam = Field(default_factory=SensorParam)
    measurements: List[Measurement] = Field(
        default_factory=list,
        description="Append-only readings, may contain repeats from refetches"
    )

    @computed_field
    @property
    def display_name(self) -> str:
        """Name used as the aggregation grid key."""
        return self.param.param_name or f"sensor {self.id}"

    @property
    def param_name(self) -> str:
        return self.param.param_name

    @property
    def param_formula(self) -> str:
        return self.param.param_formula

    @property
    def param_code(self) -> str:
        return self.param.param_code

    @property
    def param_id(self) -> int:
        return self.param.param_id

    def catalog_entry(self) -> "Sensor":
        """Copy of this sensor without measurements."""
        return self.model_copy(update={"measurements": []})

    def measurements_with_ids(self) -> List[Measurement]:
        """Measurements with the sensor id filled in."""
        return [m.model_copy(update={"sensor_id": self.id}) for m in self.measurements]

    def to_record(self) -> dict[str, Any]:
        """Serialize using the persisted field names."""
        return {
            "id": self.id,
            "stationId": self.station_id,
            "param": self.param.model_dump(by_alias=True),
            "measurements": [m.to_record() for m in self.measurements]
        }

    def __str__(self) -> str:
        """String representation for logging."""
        return f"Sensor {self.id} {self.display_name} ({len(self.measurements)} readings)"
