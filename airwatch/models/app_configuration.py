"""AppConfiguration data model for storage and aggregation settings."""

from typing import Dict, Any
from pydantic import BaseModel, Field, field_validator, computed_field

from .session import MAX_SESSIONS
from .sensor import TIMESTAMP_FORMAT


class StorageSettings(BaseModel):
    """Where and how session history is persisted."""

    storage_dir: str = Field(
        default="history",
        description="Directory holding the index and session files"
    )
    index_filename: str = Field(
        default="history_index.json",
        description="Name of the history index file"
    )
    max_sessions: int = Field(
        default=MAX_SESSIONS,
        ge=1,
        le=10000,
        description="Sessions kept before the oldest is evicted"
    )
    write_retries: int = Field(
        default=0,
        ge=0,
        le=5,
        description="Extra attempts for a failed atomic write"
    )

    @field_validator('index_filename')
    @classmethod
    def validate_index_filename(cls, v: str) -> str:
        """Index file must be a bare JSON file name."""
        if "/" in v or "\\" in v:
            raise ValueError("index_filename must not contain a path separator")
        if not v.endswith(".json"):
            raise ValueError("index_filename must end with .json")
        return v


class AggregationSettings(BaseModel):
    """Merge and statistics behaviour of the aggregator.

    The defaults reproduce the historical behaviour of the client: persisted
    zeros are treated as absent, fresh zeros contribute, overlapping readings
    are counted twice, and the multi-day series keeps empty hours.
    """

    skip_zero_history: bool = Field(default=True, description="Ignore persisted readings equal to 0")
    skip_zero_fresh: bool = Field(default=False, description="Ignore fresh readings equal to 0 or absent")
    deduplicate: bool = Field(
        default=False,
        description="Count each (sensor, timestamp) once across both sources"
    )
    single_day_include_zero: bool = Field(default=False, description="Keep empty hours for one date")
    multi_day_include_zero: bool = Field(default=True, description="Keep empty hours across dates")
    trend_threshold: float = Field(
        default=0.01,
        gt=0.0,
        le=1000.0,
        description="Slopes below this magnitude are classified as stable"
    )
    max_workers: int = Field(default=4, ge=1, le=64, description="Threads for per-sensor statistics")
    timestamp_format: str = Field(default=TIMESTAMP_FORMAT)

    @computed_field
    @property
    def is_historical_behaviour(self) -> bool:
        """True when all merge switches are at their defaults."""
        return (
            self.skip_zero_history and
            not self.skip_zero_fresh and
            not self.deduplicate and
            not self.single_day_include_zero and
            self.multi_day_include_zero
        )


class AppConfiguration(BaseModel):
    """Complete application configuration."""

    model_config = {
        "validate_assignment": True,
        "extra": "forbid",
        "json_schema_extra": {
            "example": {
                "storage": {"storage_dir": "history", "max_sessions": 100},
                "aggregation": {"deduplicate": False, "trend_threshold": 0.01},
                "enable_debug_logging": False
            }
        }
    }

    storage: StorageSettings = Field(
        default_factory=StorageSettings,
        description="Session store settings"
    )
    aggregation: AggregationSettings = Field(
        default_factory=AggregationSettings,
        description="Aggregation and statistics settings"
    )
    enable_debug_logging: bool = Field(
        default=False,
        description="Enable debug level logging"
    )

    def export_dict(self) -> Dict[str, Any]:
        """Export configuration as dictionary for YAML/JSON serialization."""
        data = self.model_dump(mode='json')
        data["aggregation"].pop("is_historical_behaviour", None)
        return data
