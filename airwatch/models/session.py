"""Session, index and air-quality data models for the history store."""

import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional
from pydantic import BaseModel, Field, field_validator, computed_field

from .station import Station
from .sensor import Sensor


MAX_SESSIONS = 100
NO_RADIUS = -1.0


def generate_session_id() -> str:
    """Generate a fresh opaque session identifier."""
    return str(uuid.uuid4())


def session_filename(session_id: str) -> str:
    """Deterministic file name of a session record."""
    return f"session_{session_id}.json"


class SessionLocation(BaseModel):
    """Searched location: raw input text and its geocoded coordinates."""

    model_config = {
        "populate_by_name": True,
        "extra": "ignore"
    }

    input: str = Field(default="", description="Location text as typed by the user")
    latitude: float = Field(default=0.0)
    longitude: float = Field(default=0.0)

    @computed_field
    @property
    def has_coordinates(self) -> bool:
        """Coordinates of (0, 0) mean geocoding did not resolve the input."""
        return self.latitude != 0.0 and self.longitude != 0.0


class AirQualitySnapshot(BaseModel):
    """Air-quality index of a station at a given calculation time."""

    model_config = {
        "populate_by_name": True,
        "extra": "ignore"
    }

    calculated_at: str = Field(default="", alias="stCalcDate")
    index_level_name: str = Field(default="", alias="indexLevelName")

    @field_validator('calculated_at', 'index_level_name', mode='before')
    @classmethod
    def none_to_empty(cls, v: Any) -> Any:
        return "" if v is None else v

    def to_record(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True)


class Session(BaseModel):
    """Persisted state of one search interaction."""

    model_config = {
        "populate_by_name": True,
        "extra": "ignore"
    }

    id: str = Field(alias="session_id", description="Opaque unique identifier")
    created_at: str = Field(alias="timestamp", description="ISO-8601 creation time")
    location: SessionLocation = Field(default_factory=SessionLocation)
    radius_km: float = Field(default=NO_RADIUS, alias="radius", description="-1 when no radius filter")
    stations: List[Station] = Field(default_factory=list, description="Ordered by relevance at save time")
    sensors: List[Sensor] = Field(default_factory=list, description="Unique by sensor id")
    air_quality: Optional[AirQualitySnapshot] = Field(default=None, alias="airQuality")

    @field_validator('radius_km', mode='before')
    @classmethod
    def none_radius(cls, v: Any) -> Any:
        return NO_RADIUS if v is None else v

    @field_validator('air_quality', mode='before')
    @classmethod
    def empty_air_quality(cls, v: Any) -> Any:
        """An empty object is stored by some writers for 'no snapshot'."""
        return None if v == {} else v

    @computed_field
    @property
    def has_radius(self) -> bool:
        return self.radius_km > 0

    @property
    def sensor_ids(self) -> List[int]:
        return [sensor.id for sensor in self.sensors]

    def get_sensor(self, sensor_id: int) -> Optional[Sensor]:
        """Find a sensor by id."""
        for sensor in self.sensors:
            if sensor.id == sensor_id:
                return sensor
        return None

    def station_sensors(self, station_id: int) -> List[Sensor]:
        """Sensors belonging to one station, in stored order."""
        return [sensor for sensor in self.sensors if sensor.station_id == station_id]

    @property
    def measurement_count(self) -> int:
        return sum(len(sensor.measurements) for sensor in self.sensors)

    def to_record(self) -> Dict[str, Any]:
        """Serialize using the persisted layout."""
        record: Dict[str, Any] = {
            "session_id": self.id,
            "timestamp": self.created_at,
            "location": {
                "input": self.location.input,
                "latitude": self.location.latitude,
                "longitude": self.location.longitude
            },
            "radius": self.radius_km,
            "stations": [station.to_record() for station in self.stations],
            "sensors": [sensor.to_record() for sensor in self.sensors]
        }
        if self.air_quality is not None:
            record["airQuality"] = self.air_quality.to_record()
        return record

    def index_entry(self) -> "IndexEntry":
        """Summary of this session for the history index."""
        return IndexEntry(
            session_id=self.id,
            created_at=self.created_at,
            location_text=self.location.input,
            radius_km=self.radius_km,
            file_reference=session_filename(self.id)
        )


class IndexEntry(BaseModel):
    """History index entry pointing at one session file."""

    model_config = {
        "populate_by_name": True,
        "extra": "ignore"
    }

    session_id: str
    created_at: str = Field(alias="timestamp")
    location_text: str = Field(default="", alias="location")
    radius_km: float = Field(default=NO_RADIUS, alias="radius")
    file_reference: str = Field(alias="file")

    @field_validator('radius_km', mode='before')
    @classmethod
    def none_radius(cls, v: Any) -> Any:
        return NO_RADIUS if v is None else v

    def describe(self) -> str:
        """One-line description used when browsing history."""
        description = f"{self.location_text} (Date: {self.created_at}"
        if self.radius_km > 0:
            description += f", Radius: {self.radius_km:.2f} km)"
        else:
            description += ")"
        return description

    def to_record(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True)


class SessionIndex(BaseModel):
    """Bounded, newest-first catalog of sessions."""

    model_config = {
        "extra": "ignore"
    }

    sessions: List[IndexEntry] = Field(default_factory=list)

    def prepend(self, entry: IndexEntry, max_sessions: int = MAX_SESSIONS) -> Optional[IndexEntry]:
        """Insert at the front and return the evicted tail entry, if any."""
        self.sessions.insert(0, entry)
        if len(self.sessions) > max_sessions:
            return self.sessions.pop()
        return None

    def to_record(self) -> Dict[str, Any]:
        return {"sessions": [entry.to_record() for entry in self.sessions]}


def now_timestamp() -> str:
    """Local creation timestamp in ISO-8601 with seconds precision."""
    return datetime.now().replace(microsecond=0).isoformat()
