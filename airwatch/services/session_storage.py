"""SessionStorage service for file-based session history management."""

import json
import os
import re
import threading
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, List, Optional, Type, TypeVar, Union

import structlog
from pydantic import BaseModel, ValidationError

from ..models import (
    Session,
    SessionLocation,
    SessionIndex,
    IndexEntry,
    Station,
    Sensor,
    Measurement,
    AirQualitySnapshot,
    StorageSettings,
    MAX_SESSIONS,
    NO_RADIUS,
)
from ..models.session import generate_session_id, session_filename, now_timestamp


logger = structlog.get_logger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)

_SESSION_ID_PATTERN = re.compile(r"[A-Za-z0-9_-]+")


class StorageError(Exception):
    """Base error for session store failures."""

    def __init__(self, message: str, path: Optional[Path] = None):
        self.message = message
        self.path = path
        super().__init__(self.message)


class StorageIOError(StorageError):
    """A history file could not be read or written."""


class StorageParseError(StorageError):
    """A history file does not contain the expected structure."""


class SessionNotFoundError(StorageError):
    """No session file exists for the requested id."""


class SessionStorage:
    """File-backed store of search sessions and a bounded history index.

    Layout of ``storage_dir``:

    - ``history_index.json``: ``{"sessions": [...]}``, newest first, capped at
      ``max_sessions`` entries.
    - ``session_<id>.json``: one full session record per search.

    Every read-modify-write of a session file runs under a per-session lock
    and every write replaces the target atomically (temp file, fsync,
    ``os.replace``), so readers never see a half-written file. The locks are
    in-process only.

    Public operations never raise storage errors: failures are logged,
    remembered in ``last_error`` and turned into a neutral return value.
    """

    def __init__(self,
                 storage_dir: Union[str, Path] = "history",
                 max_sessions: int = MAX_SESSIONS,
                 index_filename: str = "history_index.json",
                 write_retries: int = 0):
        """Initialize session storage."""
        self.storage_dir = Path(storage_dir)
        self.index_path = self.storage_dir / index_filename
        self.max_sessions = max_sessions
        self.write_retries = write_retries

        # Locking
        self._index_lock = threading.RLock()
        self._locks_guard = threading.Lock()
        self._session_locks: Dict[str, threading.RLock] = {}

        # Performance tracking
        self.read_count = 0
        self.write_count = 0
        self.failure_count = 0
        self.last_operation_duration_ms = 0.0
        self.last_error: Optional[StorageError] = None

        self._ensure_storage_dir()

    @classmethod
    def from_settings(cls, settings: StorageSettings) -> "SessionStorage":
        """Create a store from the storage section of the configuration."""
        return cls(
            storage_dir=settings.storage_dir,
            max_sessions=settings.max_sessions,
            index_filename=settings.index_filename,
            write_retries=settings.write_retries
        )

    # ------------------------------------------------------------------
    # Write operations
    # ------------------------------------------------------------------

    def create_session(self,
                       location: str,
                       radius: Optional[float],
                       latitude: float,
                       longitude: float,
                       stations: Iterable[Union[Station, Dict[str, Any]]]) -> str:
        """Persist a new session and register it at the front of the index.

        If the session file cannot be written the failure is logged and the
        index is still updated; later reads of that session return no data.
        When the index grows past ``max_sessions`` the oldest entry is dropped
        and its session file deleted.
        """
        start_time = datetime.now()
        session_id = generate_session_id()

        session = Session(
            id=session_id,
            created_at=now_timestamp(),
            location=SessionLocation(input=location, latitude=latitude, longitude=longitude),
            radius_km=NO_RADIUS if radius is None else radius,
            stations=list(self._coerce(Station, stations, "station"))
        )

        with self._session_lock(session_id):
            try:
                self._write_session(session)
                logger.info("Wrote session file",
                           session_id=session_id,
                           stations=len(session.stations))
            except StorageError as e:
                self._report("write session file", e, session_id=session_id)

        self._update_index(session.index_entry())
        self._track(start_time)

        return session_id

    def add_sensors(self, session_id: str,
                    sensors: Iterable[Union[Sensor, Dict[str, Any]]]) -> bool:
        """Merge a station's sensor catalog into a session by sensor id.

        Sensors already present are left untouched, including their
        measurements. New sensors are appended without measurements.
        """
        start_time = datetime.now()
        try:
            with self._session_lock(session_id):
                session = self._read_session(session_id)
                known_ids = set(session.sensor_ids)

                added = 0
                for sensor in self._coerce(Sensor, sensors, "sensor"):
                    if sensor.id in known_ids:
                        continue
                    session.sensors.append(sensor.catalog_entry())
                    known_ids.add(sensor.id)
                    added += 1

                if added:
                    self._write_session(session)

            logger.info("Updated session sensors",
                       session_id=session_id,
                       added=added,
                       total=len(session.sensors))
            return added > 0

        except StorageError as e:
            self._report("add sensors", e, session_id=session_id)
            return False
        finally:
            self._track(start_time)

    def add_measurements(self, session_id: str,
                         measurements: Iterable[Union[Measurement, Dict[str, Any]]]) -> bool:
        """Append measurements to the matching sensors of a session.

        Measurements are appended as given; repeating a fetch stores the same
        readings again. Returns False when no sensor of the session matched.
        """
        start_time = datetime.now()
        try:
            by_sensor: Dict[int, List[Measurement]] = {}
            for measurement in self._coerce(Measurement, measurements, "measurement"):
                if measurement.sensor_id is None:
                    logger.warning("Skipping measurement without sensor id",
                                  session_id=session_id,
                                  timestamp=measurement.timestamp)
                    continue
                by_sensor.setdefault(measurement.sensor_id, []).append(measurement)

            with self._session_lock(session_id):
                session = self._read_session(session_id)

                matched = 0
                for sensor in session.sensors:
                    group = by_sensor.get(sensor.id)
                    if group:
                        sensor.measurements.extend(group)
                        matched += 1

                if not matched:
                    logger.info("No sensors matched the provided measurements",
                               session_id=session_id,
                               sensor_ids=sorted(by_sensor))
                    return False

                self._write_session(session)

            logger.info("Updated session measurements",
                       session_id=session_id,
                       sensors=matched)
            return True

        except StorageError as e:
            self._report("add measurements", e, session_id=session_id)
            return False
        finally:
            self._track(start_time)

    def set_air_quality(self, session_id: str,
                        snapshot: Union[AirQualitySnapshot, Dict[str, Any]]) -> bool:
        """Replace the session's air-quality snapshot."""
        start_time = datetime.now()
        try:
            snapshot = self._validate(AirQualitySnapshot, snapshot)
        except ValidationError as e:
            self._report("set air quality", StorageParseError(f"Invalid air quality snapshot: {e}"),
                         session_id=session_id)
            return False

        try:
            with self._session_lock(session_id):
                session = self._read_session(session_id)
                session.air_quality = snapshot
                self._write_session(session)

            logger.info("Updated session air quality",
                       session_id=session_id,
                       index_level=snapshot.index_level_name)
            return True

        except StorageError as e:
            self._report("set air quality", e, session_id=session_id)
            return False
        finally:
            self._track(start_time)

    # ------------------------------------------------------------------
    # Read operations
    # ------------------------------------------------------------------

    def list_sessions(self) -> List[IndexEntry]:
        """Return index entries, newest first."""
        with self._index_lock:
            if not self.index_path.exists():
                return []
            try:
                return list(self._read_index().sessions)
            except StorageError as e:
                self._report("read index file", e)
                return []

    def load_session(self, session_id: str) -> Optional[Session]:
        """Return the full session record, or None when missing or malformed."""
        try:
            with self._session_lock(session_id):
                return self._read_session(session_id)
        except StorageError as e:
            self._report("load session", e, session_id=session_id)
            return None

    def session_exists(self, session_id: str) -> bool:
        """Check whether a session file exists for the id."""
        if not self._is_valid_session_id(session_id):
            return False
        return self._session_path(session_id).is_file()

    def get_station_sensors(self, session_id: str, station_id: int) -> List[Sensor]:
        """Sensor catalog of one station from the stored session."""
        session = self.load_session(session_id)
        if session is None:
            return []

        sensors = [sensor.catalog_entry() for sensor in session.station_sensors(station_id)]
        if not sensors:
            logger.info("No stored sensors for station",
                       session_id=session_id,
                       station_id=station_id)
        return sensors

    def get_sensor_measurements(self, session_id: str, sensor_id: int) -> List[Measurement]:
        """Stored measurements of one sensor with the sensor id filled in."""
        session = self.load_session(session_id)
        if session is None:
            return []

        sensor = session.get_sensor(sensor_id)
        if sensor is None or not sensor.measurements:
            logger.info("No stored measurements for sensor",
                       session_id=session_id,
                       sensor_id=sensor_id)
            return []
        return sensor.measurements_with_ids()

    def get_air_quality(self, session_id: str) -> Optional[AirQualitySnapshot]:
        """Stored air-quality snapshot of a session."""
        session = self.load_session(session_id)
        return session.air_quality if session else None

    def get_storage_stats(self) -> Dict[str, Any]:
        """Get storage performance and size statistics."""
        stats: Dict[str, Any] = {
            "storage_dir": str(self.storage_dir),
            "max_sessions": self.max_sessions,
            "read_count": self.read_count,
            "write_count": self.write_count,
            "failure_count": self.failure_count,
            "last_operation_duration_ms": self.last_operation_duration_ms,
            "last_error": str(self.last_error) if self.last_error else None
        }

        entries = self.list_sessions()
        stats["index_entries"] = len(entries)

        measurement_count = 0
        for entry in entries:
            session = self.load_session(entry.session_id)
            if session:
                measurement_count += session.measurement_count
        stats["measurement_count"] = measurement_count

        try:
            files = list(self.storage_dir.glob("session_*.json"))
            stats["session_files"] = len(files)
            stats["storage_size_mb"] = sum(f.stat().st_size for f in files) / (1024 * 1024)
        except OSError as e:
            logger.warning("Failed to measure storage size", error=str(e))
            stats["session_files"] = 0
            stats["storage_size_mb"] = 0.0

        return stats

    def export_session_data(self, session_id: str, output_path: Union[str, Path]) -> bool:
        """Export one session record to a JSON file."""
        session = self.load_session(session_id)
        if session is None:
            return False

        output_file = Path(output_path)
        try:
            logger.info("Exporting session data", session_id=session_id, output_path=str(output_file))
            output_file.parent.mkdir(parents=True, exist_ok=True)
            self._atomic_write_json(output_file, session.to_record())

            logger.info("Session data exported successfully",
                       output_path=str(output_file),
                       size_mb=output_file.stat().st_size / (1024 * 1024))
            return True

        except (StorageError, OSError) as e:
            error = e if isinstance(e, StorageError) else StorageIOError(str(e), path=output_file)
            self._report("export session data", error, session_id=session_id)
            return False

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _ensure_storage_dir(self) -> None:
        """Create the storage directory if it does not exist."""
        if self.storage_dir.exists():
            return
        try:
            self.storage_dir.mkdir(parents=True, exist_ok=True)
            logger.info("Created history directory", storage_dir=str(self.storage_dir))
        except OSError as e:
            self._report("create history directory",
                         StorageIOError(str(e), path=self.storage_dir))

    @contextmanager
    def _session_lock(self, session_id: str) -> Iterator[None]:
        """Serialize access to one session file.

        Invalid ids never get a lock, and the lock of an id whose file is
        missing is dropped again.
        """
        if not self._is_valid_session_id(session_id):
            raise SessionNotFoundError(f"Invalid session id: {session_id!r}")

        with self._locks_guard:
            lock = self._session_locks.setdefault(session_id, threading.RLock())
        try:
            with lock:
                yield
        except SessionNotFoundError:
            self._drop_session_lock(session_id)
            raise

    def _drop_session_lock(self, session_id: str) -> None:
        with self._locks_guard:
            self._session_locks.pop(session_id, None)

    def _is_valid_session_id(self, session_id: str) -> bool:
        return bool(session_id) and bool(_SESSION_ID_PATTERN.fullmatch(session_id))

    def _session_path(self, session_id: str) -> Path:
        return self.storage_dir / session_filename(session_id)

    def _read_json(self, path: Path) -> Any:
        """Read and decode one JSON file."""
        try:
            with open(path, 'r', encoding='utf-8') as f:
                data = json.load(f)
        except FileNotFoundError:
            raise SessionNotFoundError(f"File not found: {path.name}", path=path)
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise StorageParseError(f"Failed to parse {path.name}: {e}", path=path)
        except OSError as e:
            raise StorageIOError(f"Failed to read {path.name}: {e}", path=path)

        self.read_count += 1
        return data

    def _read_session(self, session_id: str) -> Session:
        """Read and validate a session file; call with the session lock held."""
        path = self._session_path(session_id)
        data = self._read_json(path)
        if not isinstance(data, dict):
            raise StorageParseError(f"Session file is not a JSON object: {path.name}", path=path)

        try:
            return Session.model_validate(data)
        except ValidationError as e:
            raise StorageParseError(f"Malformed session file {path.name}: {e}", path=path)

    def _write_session(self, session: Session) -> None:
        self._atomic_write_json(self._session_path(session.id), session.to_record())

    def _read_index(self) -> SessionIndex:
        """Read and validate the index file."""
        data = self._read_json(self.index_path)
        if not isinstance(data, dict):
            raise StorageParseError("Index file is not a JSON object", path=self.index_path)

        try:
            return SessionIndex.model_validate(data)
        except ValidationError as e:
            raise StorageParseError(f"Malformed index file: {e}", path=self.index_path)

    def _update_index(self, entry: IndexEntry) -> None:
        """Prepend an entry, enforce the cap and delete the evicted session file."""
        with self._index_lock:
            index = SessionIndex()
            if self.index_path.exists():
                try:
                    index = self._read_index()
                except StorageError as e:
                    logger.warning("Index file unreadable, starting a new index", error=str(e))

            evicted = index.prepend(entry, self.max_sessions)

            try:
                self._atomic_write_json(self.index_path, index.to_record())
                logger.debug("Updated index file", entries=len(index.sessions))
            except StorageError as e:
                self._report("write index file", e)
                return

            if evicted is not None:
                self._remove_session_file(evicted)

    def _remove_session_file(self, entry: IndexEntry) -> None:
        """Delete the file of an evicted session."""
        path = self.storage_dir / Path(entry.file_reference).name

        try:
            with self._session_lock(entry.session_id):
                path.unlink(missing_ok=True)
                logger.info("Removed old session file", session_id=entry.session_id, file=path.name)
        except SessionNotFoundError as e:
            logger.warning("Evicted index entry has an invalid session id",
                          session_id=entry.session_id,
                          error=str(e))
            return
        except OSError as e:
            self._report("remove old session file",
                         StorageIOError(str(e), path=path),
                         session_id=entry.session_id)

        self._drop_session_lock(entry.session_id)

    def _atomic_write_json(self, path: Path, payload: Dict[str, Any]) -> None:
        """Write JSON via temp file, fsync and os.replace, retrying on OSError."""
        attempts = self.write_retries + 1
        last_error: Optional[OSError] = None

        for attempt in range(1, attempts + 1):
            tmp = path.with_name(f".{path.name}.{os.getpid()}.{threading.get_ident()}.tmp")
            try:
                with open(tmp, 'w', encoding='utf-8') as f:
                    json.dump(payload, f, indent=2, ensure_ascii=False)
                    f.flush()
                    os.fsync(f.fileno())
                os.replace(tmp, path)
                self.write_count += 1
                return

            except OSError as e:
                last_error = e
                logger.warning("Write attempt failed",
                              file=path.name,
                              attempt=attempt,
                              attempts=attempts,
                              error=str(e))
                try:
                    tmp.unlink(missing_ok=True)
                except OSError as cleanup_error:
                    logger.debug("Failed to remove temp file", file=tmp.name, error=str(cleanup_error))

        raise StorageIOError(f"Failed to write {path.name}: {last_error}", path=path)

    def _coerce(self, model: Type[ModelT], items: Iterable[Any], kind: str) -> Iterator[ModelT]:
        """Yield valid records, skipping and logging malformed ones."""
        for item in items:
            try:
                yield self._validate(model, item)
            except ValidationError as e:
                logger.warning(f"Skipping malformed {kind}", error=str(e))

    @staticmethod
    def _validate(model: Type[ModelT], item: Any) -> ModelT:
        if isinstance(item, model):
            return item.model_copy(deep=True)
        return model.model_validate(item)

    def _report(self, operation: str, error: StorageError, **context: Any) -> None:
        """Record and log a storage failure."""
        self.failure_count += 1
        self.last_error = error
        logger.error(f"Failed to {operation}", error=str(error), **context)

    def _track(self, start_time: datetime) -> None:
        self.last_operation_duration_ms = (datetime.now() - start_time).total_seconds() * 1000


# Export the main component
__all__ = [
    "SessionStorage",
    "StorageError",
    "StorageIOError",
    "StorageParseError",
    "SessionNotFoundError",
]
