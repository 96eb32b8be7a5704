"""
Unit tests for the durable store and best-effort writes.
"""

import asyncio
import sqlite3

import pytest

from pathlib import Path
import sys
sys.path.insert(0, str(Path(__file__).parent.parent))

from sizetrack.config import StoreConfig
from sizetrack.persistence import best_effort, policy_from_config
from sizetrack.store import (
    DetectionRecord,
    InMemoryStore,
    SQLiteStore,
    TrackingRecord,
    open_store,
)


def _tracking_record(session_id="session-1", color="red"):
    return TrackingRecord(
        object_type="cup",
        color=color,
        session_id=session_id,
        first_seen=1_700_000_000.0,
        last_seen=1_700_000_004.0,
        total_time_seconds=4,
        detection_count=5,
        avg_confidence=0.8,
    )


def _detection_record():
    return DetectionRecord(
        object_type="bottle",
        confidence=0.9,
        width_cm=6.3,
        height_cm=24.4,
        pixel_width=50.0,
        pixel_height=180.0,
        distance_cm=79,
        learned_size=False,
    )


@pytest.fixture(params=["memory", "sqlite"])
def store(request, tmp_path):
    """Each store implementation, freshly created."""
    if request.param == "memory":
        yield InMemoryStore()
    else:
        sqlite_store = SQLiteStore(str(tmp_path / "store.db"))
        yield sqlite_store
        asyncio.run(sqlite_store.close())


class TestProfiles:
    """Tests for learned profile rows."""

    def test_create_and_find(self, store):
        """Test a created profile can be found and loaded."""
        async def scenario():
            created = await store.create_profile("bottle", 6.3, 24.4, 0.7)
            found = await store.find_profile("bottle")
            return created, found, await store.load_profiles()

        created, found, loaded = asyncio.run(scenario())

        assert created.detection_count == 1
        assert found.id == created.id
        assert found.avg_width_cm == pytest.approx(6.3)
        assert [p.object_type for p in loaded] == ["bottle"]

    def test_find_missing(self, store):
        """Test lookup of an unknown class."""
        assert asyncio.run(store.find_profile("nothing")) is None

    def test_update(self, store):
        """Test averages and count are overwritten."""
        async def scenario():
            created = await store.create_profile("cup", 8.0, 9.5)
            await store.update_profile(created.id, 8.4, 9.9, 6)
            return await store.find_profile("cup")

        profile = asyncio.run(scenario())
        assert profile.avg_width_cm == pytest.approx(8.4)
        assert profile.avg_height_cm == pytest.approx(9.9)
        assert profile.detection_count == 6
        assert profile.last_seen is not None

    def test_duplicate_class_rejected(self, store):
        """Test one row per class."""
        async def scenario():
            await store.create_profile("cup", 8.0, 9.5)
            await store.create_profile("cup", 8.0, 9.5)

        with pytest.raises((ValueError, sqlite3.IntegrityError)):
            asyncio.run(scenario())


class TestTrackingRecords:
    """Tests for tracking rows."""

    def test_insert_and_find(self, store):
        """Test an inserted record is found by its key."""
        async def scenario():
            inserted = await store.insert_tracking_record(_tracking_record())
            return inserted, await store.find_tracking_record("cup", "red", "session-1")

        inserted, found = asyncio.run(scenario())

        assert inserted.id is not None
        assert found.id == inserted.id
        assert found.first_seen == pytest.approx(1_700_000_000.0)
        assert found.total_time_seconds == 4

    def test_scoped_by_session(self, store):
        """Test records of another session are not found."""
        async def scenario():
            await store.insert_tracking_record(_tracking_record("session-1"))
            return await store.find_tracking_record("cup", "red", "session-2")

        assert asyncio.run(scenario()) is None

    def test_update(self, store):
        """Test time and count fields are updated."""
        async def scenario():
            inserted = await store.insert_tracking_record(_tracking_record())
            await store.update_tracking_record(inserted.id, 1_700_000_010.0, 9, 11, 0.75)
            return await store.find_tracking_record("cup", "red", "session-1")

        record = asyncio.run(scenario())
        assert record.last_seen == pytest.approx(1_700_000_010.0)
        assert record.total_time_seconds == 9
        assert record.detection_count == 11
        assert record.avg_confidence == pytest.approx(0.75)
        assert record.first_seen == pytest.approx(1_700_000_000.0)

    def test_duplicate_key_rejected(self, store):
        """Test (class, colour, session) is unique."""
        async def scenario():
            await store.insert_tracking_record(_tracking_record())
            await store.insert_tracking_record(_tracking_record())

        with pytest.raises((ValueError, sqlite3.IntegrityError)):
            asyncio.run(scenario())


class TestDetectionLog:
    """Tests for the detection log."""

    def test_memory_log(self):
        """Test detections are appended in order."""
        store = InMemoryStore()
        asyncio.run(store.insert_detection(_detection_record()))
        assert len(store.detections) == 1
        assert store.detections[0].distance_cm == 79

    def test_sqlite_log(self, tmp_path):
        """Test detections are written to object_detections."""
        db_path = tmp_path / "log.db"
        store = SQLiteStore(str(db_path))
        asyncio.run(store.insert_detection(_detection_record()))
        asyncio.run(store.close())

        with sqlite3.connect(db_path) as conn:
            rows = conn.execute(
                "SELECT object_type, distance_cm, learned_size FROM object_detections"
            ).fetchall()
        assert rows == [("bottle", 79.0, 0)]


class TestSQLiteFile:
    """Tests specific to the SQLite backend."""

    def test_profiles_survive_reopen(self, tmp_path):
        """Test rows persist across connections."""
        db_path = str(tmp_path / "nested" / "profiles.db")

        first = SQLiteStore(db_path)
        asyncio.run(first.create_profile("laptop", 30.0, 21.0))
        asyncio.run(first.close())

        second = SQLiteStore(db_path)
        profiles = asyncio.run(second.load_profiles())
        asyncio.run(second.close())

        assert [p.object_type for p in profiles] == ["laptop"]

    def test_cancelled_write_finishes_before_close(self, tmp_path):
        """Test close() waits for the worker of a cancelled query."""
        db_path = str(tmp_path / "cancel.db")

        async def scenario():
            sqlite_store = SQLiteStore(db_path)
            task = asyncio.create_task(sqlite_store.insert_detection(_detection_record()))
            await asyncio.sleep(0)
            task.cancel()
            await sqlite_store.close()
            return task

        task = asyncio.run(scenario())
        assert task.cancelled()

        with sqlite3.connect(db_path) as conn:
            count = conn.execute("SELECT COUNT(*) FROM object_detections").fetchone()[0]
        assert count == 1

    def test_open_store(self, tmp_path):
        """Test backend selection."""
        assert isinstance(open_store(StoreConfig()), InMemoryStore)

        sqlite_store = open_store(StoreConfig(backend="sqlite", db_path=str(tmp_path / "x.db")))
        assert isinstance(sqlite_store, SQLiteStore)
        asyncio.run(sqlite_store.close())

        with pytest.raises(ValueError):
            open_store(StoreConfig(backend="redis"))


class TestBestEffort:
    """Tests for best-effort store writes."""

    def test_success(self):
        """Test the operation result is returned."""
        async def operation():
            return 42

        assert asyncio.run(best_effort("answer", operation)) == 42

    def test_failure_returns_none(self, caplog):
        """Test failures are logged, not raised."""
        async def operation():
            raise OSError("disk full")

        assert asyncio.run(best_effort("Profile update", operation)) is None
        assert "Profile update failed" in caplog.text
        assert "disk full" in caplog.text

    def test_retries_with_fresh_awaitable(self):
        """Test each retry calls the operation again."""
        attempts = []

        async def operation():
            attempts.append(1)
            if len(attempts) < 3:
                raise ConnectionError("busy")
            return "ok"

        result = asyncio.run(
            best_effort("flaky", operation, retry_attempts=2, retry_backoff_s=0.001)
        )
        assert result == "ok"
        assert len(attempts) == 3

    def test_gives_up_after_retries(self):
        """Test the write is dropped after the last attempt."""
        attempts = []

        async def operation():
            attempts.append(1)
            raise ConnectionError("down")

        result = asyncio.run(
            best_effort("down", operation, retry_attempts=1, retry_backoff_s=0.001)
        )
        assert result is None
        assert len(attempts) == 2

    def test_cancellation_propagates(self):
        """Test cancellation is never swallowed."""
        async def operation():
            raise asyncio.CancelledError()

        with pytest.raises(asyncio.CancelledError):
            asyncio.run(best_effort("cancelled", operation))

    def test_policy_from_config(self):
        """Test retry settings are taken from the store section."""
        policy = policy_from_config(StoreConfig(retry_attempts=3, retry_backoff_s=0.1))
        assert policy == {"retry_attempts": 3, "retry_backoff_s": 0.1}
