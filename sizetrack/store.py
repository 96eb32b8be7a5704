"""
Durable Store Module
====================

Persistence sink for learned size profiles, tracking records and the
per-detection log. The engine only talks to the async `BaseStore`
interface; two implementations are provided:

- InMemoryStore: dictionaries, for tests and store-less sessions
- SQLiteStore: a local SQLite file, queries run in a worker thread so the
  event loop is never blocked by disk I/O

Tables: learned_objects (one row per class), object_tracking (one row per
class, colour and session) and object_detections (append-only log).

References:
- sqlite3: https://docs.python.org/3/library/sqlite3.html
- asyncio.to_thread: https://docs.python.org/3/library/asyncio-task.html#asyncio.to_thread
"""

import asyncio
import logging
import sqlite3
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from .config import StoreConfig

logger = logging.getLogger(__name__)


@dataclass
class ProfileRecord:
    """Persisted learned size profile (one row per object class)."""
    id: str
    object_type: str
    avg_width_cm: float
    avg_height_cm: float
    detection_count: int = 1
    confidence_threshold: float = 0.7
    last_seen: Optional[float] = None


@dataclass
class TrackingRecord:
    """
    Persisted dwell-time record, unique per (object_type, color, session_id).

    Timestamps are epoch seconds.
    """
    object_type: str
    color: str
    session_id: str
    first_seen: float
    last_seen: float
    total_time_seconds: int
    detection_count: int
    avg_confidence: float
    id: Optional[str] = None


@dataclass
class DetectionRecord:
    """One measured detection, appended for offline calibration."""
    object_type: str
    confidence: float
    width_cm: float
    height_cm: float
    pixel_width: float
    pixel_height: float
    distance_cm: float
    learned_size: bool


def _new_id() -> str:
    return uuid.uuid4().hex


def _to_iso(timestamp: Optional[float]) -> Optional[str]:
    if timestamp is None:
        return None
    return datetime.fromtimestamp(timestamp, tz=timezone.utc).isoformat()


def _from_iso(value: Optional[str]) -> Optional[float]:
    if value is None:
        return None
    return datetime.fromisoformat(value).timestamp()


class BaseStore(ABC):
    """
    Abstract interface of the durable store.

    All methods are coroutines. Implementations may raise on I/O failure;
    callers in the engine treat every call as best-effort.
    """

    @abstractmethod
    async def load_profiles(self) -> List[ProfileRecord]:
        """Return every stored profile."""
        raise NotImplementedError

    @abstractmethod
    async def find_profile(self, object_type: str) -> Optional[ProfileRecord]:
        """Return the stored profile for a class, or None."""
        raise NotImplementedError

    @abstractmethod
    async def create_profile(
        self,
        object_type: str,
        width_cm: float,
        height_cm: float,
        confidence_threshold: float = 0.7
    ) -> ProfileRecord:
        """Insert a new profile with detection_count = 1."""
        raise NotImplementedError

    @abstractmethod
    async def update_profile(
        self,
        profile_id: str,
        width_cm: float,
        height_cm: float,
        detection_count: int
    ) -> None:
        """Overwrite the averages and count of an existing profile."""
        raise NotImplementedError

    @abstractmethod
    async def find_tracking_record(
        self,
        object_type: str,
        color: str,
        session_id: str
    ) -> Optional[TrackingRecord]:
        """Return the tracking record for a key within a session, or None."""
        raise NotImplementedError

    @abstractmethod
    async def insert_tracking_record(self, record: TrackingRecord) -> TrackingRecord:
        """Insert a tracking record and return it with its id set."""
        raise NotImplementedError

    @abstractmethod
    async def update_tracking_record(
        self,
        record_id: str,
        last_seen: float,
        total_time_seconds: int,
        detection_count: int,
        avg_confidence: float
    ) -> None:
        """Update the time/count fields of an existing tracking record."""
        raise NotImplementedError

    @abstractmethod
    async def insert_detection(self, record: DetectionRecord) -> None:
        """Append a measured detection to the detection log."""
        raise NotImplementedError

    async def close(self) -> None:
        """Release resources held by the store."""


class InMemoryStore(BaseStore):
    """
    Dictionary-backed store.

    Keeps everything for the lifetime of the process. Useful for tests and
    for running the engine without a database.
    """

    def __init__(self):
        self.profiles: Dict[str, ProfileRecord] = {}
        self.tracking: Dict[Tuple[str, str, str], TrackingRecord] = {}
        self.detections: List[DetectionRecord] = []

    async def load_profiles(self) -> List[ProfileRecord]:
        return [replace(p) for p in self.profiles.values()]

    async def find_profile(self, object_type: str) -> Optional[ProfileRecord]:
        profile = self.profiles.get(object_type)
        return replace(profile) if profile is not None else None

    async def create_profile(
        self,
        object_type: str,
        width_cm: float,
        height_cm: float,
        confidence_threshold: float = 0.7
    ) -> ProfileRecord:
        if object_type in self.profiles:
            raise ValueError(f"Profile already exists for '{object_type}'")
        profile = ProfileRecord(
            id=_new_id(),
            object_type=object_type,
            avg_width_cm=width_cm,
            avg_height_cm=height_cm,
            detection_count=1,
            confidence_threshold=confidence_threshold,
            last_seen=datetime.now(timezone.utc).timestamp(),
        )
        self.profiles[object_type] = profile
        return replace(profile)

    async def update_profile(
        self,
        profile_id: str,
        width_cm: float,
        height_cm: float,
        detection_count: int
    ) -> None:
        for profile in self.profiles.values():
            if profile.id == profile_id:
                profile.avg_width_cm = width_cm
                profile.avg_height_cm = height_cm
                profile.detection_count = detection_count
                profile.last_seen = datetime.now(timezone.utc).timestamp()
                return
        raise KeyError(f"No profile with id {profile_id}")

    async def find_tracking_record(
        self,
        object_type: str,
        color: str,
        session_id: str
    ) -> Optional[TrackingRecord]:
        record = self.tracking.get((object_type, color, session_id))
        return replace(record) if record is not None else None

    async def insert_tracking_record(self, record: TrackingRecord) -> TrackingRecord:
        key = (record.object_type, record.color, record.session_id)
        if key in self.tracking:
            raise ValueError(f"Tracking record already exists for {key}")
        stored = replace(record, id=_new_id())
        self.tracking[key] = stored
        return replace(stored)

    async def update_tracking_record(
        self,
        record_id: str,
        last_seen: float,
        total_time_seconds: int,
        detection_count: int,
        avg_confidence: float
    ) -> None:
        for record in self.tracking.values():
            if record.id == record_id:
                record.last_seen = last_seen
                record.total_time_seconds = total_time_seconds
                record.detection_count = detection_count
                record.avg_confidence = avg_confidence
                return
        raise KeyError(f"No tracking record with id {record_id}")

    async def insert_detection(self, record: DetectionRecord) -> None:
        self.detections.append(replace(record))


SCHEMA = """
CREATE TABLE IF NOT EXISTS learned_objects (
    id TEXT PRIMARY KEY,
    object_type TEXT NOT NULL UNIQUE,
    avg_width_cm REAL NOT NULL,
    avg_height_cm REAL NOT NULL,
    detection_count INTEGER NOT NULL DEFAULT 1,
    confidence_threshold REAL NOT NULL DEFAULT 0.7,
    last_seen TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS object_tracking (
    id TEXT PRIMARY KEY,
    object_type TEXT NOT NULL,
    color TEXT NOT NULL,
    session_id TEXT NOT NULL,
    first_seen TEXT NOT NULL,
    last_seen TEXT NOT NULL,
    total_time_seconds INTEGER NOT NULL DEFAULT 0,
    detection_count INTEGER NOT NULL DEFAULT 0,
    avg_confidence REAL NOT NULL,
    UNIQUE (object_type, color, session_id)
);

CREATE TABLE IF NOT EXISTS object_detections (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    object_type TEXT NOT NULL,
    confidence REAL NOT NULL,
    actual_width_cm REAL,
    actual_height_cm REAL,
    pixel_width REAL NOT NULL,
    pixel_height REAL NOT NULL,
    distance_cm REAL,
    learned_size INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL
);
"""


class SQLiteStore(BaseStore):
    """
    SQLite-backed store.

    A single connection is opened with check_same_thread=False and every
    query runs through asyncio.to_thread; an internal lock keeps queries
    from overlapping on that connection. A cancelled caller keeps the lock
    until its worker thread has finished with the connection.
    """

    def __init__(self, db_path: str):
        """
        Open (and if needed create) the database.

        Args:
            db_path: Path of the SQLite file, or ":memory:"
        """
        self.db_path = db_path
        if db_path != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)

        self._conn = sqlite3.connect(db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._conn.executescript(SCHEMA)
        self._conn.commit()
        self._lock = asyncio.Lock()
        logger.info(f"Opened SQLite store at {db_path}")

    async def _run(self, sql: str, params: tuple = ()) -> List[sqlite3.Row]:
        def execute():
            cur = self._conn.execute(sql, params)
            rows = cur.fetchall()
            self._conn.commit()
            return rows

        async with self._lock:
            future = asyncio.ensure_future(asyncio.to_thread(execute))
            try:
                return await asyncio.shield(future)
            except asyncio.CancelledError:
                # The worker still owns the connection until it returns
                await asyncio.wait([future])
                raise

    @staticmethod
    def _profile_from_row(row: sqlite3.Row) -> ProfileRecord:
        return ProfileRecord(
            id=row["id"],
            object_type=row["object_type"],
            avg_width_cm=row["avg_width_cm"],
            avg_height_cm=row["avg_height_cm"],
            detection_count=row["detection_count"],
            confidence_threshold=row["confidence_threshold"],
            last_seen=_from_iso(row["last_seen"]),
        )

    @staticmethod
    def _tracking_from_row(row: sqlite3.Row) -> TrackingRecord:
        return TrackingRecord(
            id=row["id"],
            object_type=row["object_type"],
            color=row["color"],
            session_id=row["session_id"],
            first_seen=_from_iso(row["first_seen"]),
            last_seen=_from_iso(row["last_seen"]),
            total_time_seconds=row["total_time_seconds"],
            detection_count=row["detection_count"],
            avg_confidence=row["avg_confidence"],
        )

    async def load_profiles(self) -> List[ProfileRecord]:
        rows = await self._run("SELECT * FROM learned_objects")
        return [self._profile_from_row(r) for r in rows]

    async def find_profile(self, object_type: str) -> Optional[ProfileRecord]:
        rows = await self._run(
            "SELECT * FROM learned_objects WHERE object_type = ?", (object_type,)
        )
        return self._profile_from_row(rows[0]) if rows else None

    async def create_profile(
        self,
        object_type: str,
        width_cm: float,
        height_cm: float,
        confidence_threshold: float = 0.7
    ) -> ProfileRecord:
        profile = ProfileRecord(
            id=_new_id(),
            object_type=object_type,
            avg_width_cm=width_cm,
            avg_height_cm=height_cm,
            detection_count=1,
            confidence_threshold=confidence_threshold,
            last_seen=datetime.now(timezone.utc).timestamp(),
        )
        await self._run(
            """INSERT INTO learned_objects(id,object_type,avg_width_cm,avg_height_cm,
                                           detection_count,confidence_threshold,last_seen)
               VALUES(?,?,?,?,?,?,?)""",
            (profile.id, object_type, width_cm, height_cm, 1,
             confidence_threshold, _to_iso(profile.last_seen)),
        )
        return profile

    async def update_profile(
        self,
        profile_id: str,
        width_cm: float,
        height_cm: float,
        detection_count: int
    ) -> None:
        await self._run(
            """UPDATE learned_objects
               SET avg_width_cm = ?, avg_height_cm = ?, detection_count = ?, last_seen = ?
               WHERE id = ?""",
            (width_cm, height_cm, detection_count,
             datetime.now(timezone.utc).isoformat(), profile_id),
        )

    async def find_tracking_record(
        self,
        object_type: str,
        color: str,
        session_id: str
    ) -> Optional[TrackingRecord]:
        rows = await self._run(
            """SELECT * FROM object_tracking
               WHERE object_type = ? AND color = ? AND session_id = ?""",
            (object_type, color, session_id),
        )
        return self._tracking_from_row(rows[0]) if rows else None

    async def insert_tracking_record(self, record: TrackingRecord) -> TrackingRecord:
        stored = replace(record, id=_new_id())
        await self._run(
            """INSERT INTO object_tracking(id,object_type,color,session_id,first_seen,last_seen,
                                           total_time_seconds,detection_count,avg_confidence)
               VALUES(?,?,?,?,?,?,?,?,?)""",
            (stored.id, stored.object_type, stored.color, stored.session_id,
             _to_iso(stored.first_seen), _to_iso(stored.last_seen),
             stored.total_time_seconds, stored.detection_count, stored.avg_confidence),
        )
        return stored

    async def update_tracking_record(
        self,
        record_id: str,
        last_seen: float,
        total_time_seconds: int,
        detection_count: int,
        avg_confidence: float
    ) -> None:
        await self._run(
            """UPDATE object_tracking
               SET last_seen = ?, total_time_seconds = ?, detection_count = ?, avg_confidence = ?
               WHERE id = ?""",
            (_to_iso(last_seen), total_time_seconds, detection_count,
             avg_confidence, record_id),
        )

    async def insert_detection(self, record: DetectionRecord) -> None:
        await self._run(
            """INSERT INTO object_detections(object_type,confidence,actual_width_cm,
                                             actual_height_cm,pixel_width,pixel_height,
                                             distance_cm,learned_size,created_at)
               VALUES(?,?,?,?,?,?,?,?,?)""",
            (record.object_type, record.confidence, record.width_cm, record.height_cm,
             record.pixel_width, record.pixel_height, record.distance_cm,
             int(record.learned_size), datetime.now(timezone.utc).isoformat()),
        )

    async def close(self) -> None:
        async with self._lock:
            self._conn.close()
        logger.info(f"Closed SQLite store at {self.db_path}")


def open_store(config: StoreConfig) -> BaseStore:
    """
    Create the store selected by the configuration.

    Args:
        config: Store section of the engine configuration

    Returns:
        InMemoryStore or SQLiteStore
    """
    if config.backend == "sqlite":
        return SQLiteStore(config.db_path)
    if config.backend == "memory":
        return InMemoryStore()
    raise ValueError(f"Unknown store backend: {config.backend}")
