"""Station data model for point-in-time monitoring station snapshots."""

from typing import Any, List
from pydantic import BaseModel, Field, field_validator, computed_field


NOT_COMPUTED = -1.0


class Station(BaseModel):
    """Monitoring station as seen at search time."""

    model_config = {
        "populate_by_name": True,
        "extra": "ignore"
    }

    station_id: int = Field(alias="stationId", description="Station identifier")
    name: str = Field(default="", alias="stationName", description="Station name")
    latitude: float = Field(default=0.0, alias="lat", description="WGS84 latitude")
    longitude: float = Field(default=0.0, alias="lon", description="WGS84 longitude")
    address: str = Field(default="", description="Street address")
    city_name: str = Field(default="", alias="cityName", description="City the station belongs to")
    distance_km: float = Field(
        default=NOT_COMPUTED,
        alias="distance",
        description="Distance from the searched location, -1 when not computed"
    )

    @field_validator('latitude', 'longitude', mode='before')
    @classmethod
    def parse_coordinate(cls, v: Any) -> Any:
        """Accept numeric strings such as '52.2297' and treat blanks as 0."""
        if isinstance(v, str):
            v = v.strip()
            return float(v) if v else 0.0
        return v

    @field_validator('address', 'city_name', 'name', mode='before')
    @classmethod
    def none_to_empty(cls, v: Any) -> Any:
        """Monitoring payloads use null for unknown text fields."""
        return "" if v is None else v

    @computed_field
    @property
    def has_distance(self) -> bool:
        """True when a distance to the searched location was computed."""
        return self.distance_km >= 0

    def with_distance(self, distance_km: float) -> "Station":
        """Return a copy with the distance set."""
        return self.model_copy(update={"distance_km": distance_km})

    def to_record(self) -> dict[str, Any]:
        """Serialize using the persisted field names."""
        return {
            "stationId": self.station_id,
            "stationName": self.name,
            "lat": self.latitude,
            "lon": self.longitude,
            "address": self.address,
            "cityName": self.city_name,
            "distance": self.distance_km
        }

    def __str__(self) -> str:
        """String representation for logging."""
        if self.has_distance:
            return f"Station {self.station_id} {self.name} ({self.distance_km:.2f} km)"
        return f"Station {self.station_id} {self.name}"


class StationSearchResult(BaseModel):
    """Stations chosen for a search, ordered by relevance."""

    city: str = Field(description="City parsed from the location text")
    stations: List[Station] = Field(default_factory=list)
    matched_city: bool = Field(default=False, description="True when stations of the city itself were found")
    nearby_cities: List[str] = Field(default_factory=list)

    @computed_field
    @property
    def status(self) -> str:
        """Status line shown after a search."""
        if self.matched_city:
            return f"Found stations in: {self.city}"
        message = f"No stations found in: {self.city}"
        if self.nearby_cities:
            message += f"\nFound nearby stations in: {', '.join(self.nearby_cities)}"
        elif not self.stations:
            message += "\nNo stations within the given radius."
        return message
