"""
Object Tracking Module
======================

Cross-frame identity and dwell-time bookkeeping.

An identity is the pair (object class, colour name): two red cups in view at
the same time share one identity, a red cup and a blue cup do not. For each
identity the tracker keeps first/last sighting, detection count, a running
mean of detector confidence and the cumulative number of seconds it has been
in view.

Lifecycle:
- observe() creates or refreshes an identity and marks it active
- tick() (once per second) adds one dwell second to active identities and
  deactivates those unseen for longer than the inactivity timeout
- flush() (every ten seconds) upserts identities with enough dwell time to
  the durable store, scoped by session id
- reset() drops every identity (e.g. when the camera stops)

All methods must be called from the same event loop; the identity table is
not locked.
"""

import logging
import time
from dataclasses import dataclass, replace
from typing import Callable, Dict, List, Optional, Tuple

from .config import TrackingConfig
from .persistence import best_effort
from .store import BaseStore, TrackingRecord

logger = logging.getLogger(__name__)

TrackingKey = Tuple[str, str]


@dataclass
class TrackedIdentity:
    """
    Dwell-time record for one (class, colour) pair.

    Attributes:
        object_class: Detector label
        color_name: Colour bucket of the object
        first_seen: Epoch seconds of the first observation
        last_seen: Epoch seconds of the latest observation
        total_active_seconds: Seconds accumulated while active
        detection_count: Number of observations
        is_active: False once unseen for longer than the inactivity timeout
        avg_confidence: Mean detector confidence over all observations
    """
    object_class: str
    color_name: str
    first_seen: float
    last_seen: float
    total_active_seconds: int = 0
    detection_count: int = 0
    is_active: bool = True
    avg_confidence: float = 0.0

    @property
    def key(self) -> TrackingKey:
        return (self.object_class, self.color_name)


def format_tracking_key(key: TrackingKey) -> str:
    """Render a tracking key as 'class-colour'."""
    return f"{key[0]}-{key[1]}"


class ObjectTracker:
    """
    Tracks recurring (class, colour) identities and their dwell time.
    """

    def __init__(
        self,
        config: Optional[TrackingConfig] = None,
        clock: Callable[[], float] = time.time,
        session_id: Optional[str] = None
    ):
        """
        Initialize the tracker.

        Args:
            config: Tracker timing (defaults if None)
            clock: Returns the current time in epoch seconds
            session_id: Scope of persisted records (generated if None)
        """
        self.config = config or TrackingConfig()
        self.clock = clock
        self.session_id = session_id or f"session-{int(clock() * 1000)}"
        self._identities: Dict[TrackingKey, TrackedIdentity] = {}

    @property
    def identities(self) -> List[TrackedIdentity]:
        """Snapshot of all identities, in first-seen order."""
        return [replace(i) for i in self._identities.values()]

    @property
    def active_count(self) -> int:
        return sum(1 for i in self._identities.values() if i.is_active)

    def __len__(self) -> int:
        return len(self._identities)

    def get(self, object_class: str, color_name: str) -> Optional[TrackedIdentity]:
        """Snapshot of one identity, or None."""
        identity = self._identities.get((object_class, color_name))
        return replace(identity) if identity is not None else None

    def observe(self, object_class: str, color_name: str,
                confidence: float) -> TrackedIdentity:
        """
        Record a sighting of (object_class, color_name).

        Args:
            object_class: Detector label
            color_name: Colour bucket of the detection
            confidence: Detector confidence in [0, 1]

        Returns:
            Snapshot of the identity after the update
        """
        now = self.clock()
        key = (object_class, color_name)
        identity = self._identities.get(key)

        if identity is None:
            identity = TrackedIdentity(
                object_class=object_class,
                color_name=color_name,
                first_seen=now,
                last_seen=now,
                total_active_seconds=0,
                detection_count=1,
                is_active=True,
                avg_confidence=confidence,
            )
            self._identities[key] = identity
            logger.debug(f"New identity {format_tracking_key(key)}")
        else:
            count = identity.detection_count
            identity.avg_confidence = (identity.avg_confidence * count + confidence) / (count + 1)
            identity.detection_count = count + 1
            identity.last_seen = now
            identity.is_active = True

        return replace(identity)

    def tick(self) -> None:
        """
        Aging tick, run once per tick_interval_s.

        Active identities unseen for more than the inactivity timeout become
        inactive; the others gain one dwell second.
        """
        now = self.clock()
        timeout = self.config.inactivity_timeout_s

        for key, identity in self._identities.items():
            if not identity.is_active:
                continue
            if now - identity.last_seen > timeout:
                identity.is_active = False
                logger.debug(
                    f"Identity {format_tracking_key(key)} inactive after "
                    f"{identity.total_active_seconds}s in view"
                )
            else:
                identity.total_active_seconds += 1

    async def flush(
        self,
        store: BaseStore,
        retry_attempts: int = 0,
        retry_backoff_s: float = 0.5
    ) -> int:
        """
        Upsert every identity with enough dwell time into the store.

        Works on a snapshot taken before the first await, so observe(),
        tick() and reset() may interleave freely. Failures are logged per
        record and never touch the in-memory identities.

        Args:
            store: Durable store
            retry_attempts: Extra attempts per failed record
            retry_backoff_s: Delay before the first retry

        Returns:
            Number of records written
        """
        threshold = self.config.persist_min_active_s
        candidates = [
            replace(i) for i in self._identities.values()
            if i.total_active_seconds >= threshold
        ]
        session_id = self.session_id

        written = 0
        for identity in candidates:
            result = await best_effort(
                f"Tracking upsert for {format_tracking_key(identity.key)}",
                lambda identity=identity: self._upsert(store, identity, session_id),
                retry_attempts=retry_attempts,
                retry_backoff_s=retry_backoff_s,
            )
            if result:
                written += 1

        if candidates:
            logger.debug(f"Flushed {written}/{len(candidates)} tracking records")
        return written

    @staticmethod
    async def _upsert(store: BaseStore, identity: TrackedIdentity,
                      session_id: str) -> bool:
        existing = await store.find_tracking_record(
            identity.object_class, identity.color_name, session_id
        )
        if existing is not None:
            await store.update_tracking_record(
                existing.id,
                last_seen=identity.last_seen,
                total_time_seconds=identity.total_active_seconds,
                detection_count=identity.detection_count,
                avg_confidence=identity.avg_confidence,
            )
        else:
            await store.insert_tracking_record(TrackingRecord(
                object_type=identity.object_class,
                color=identity.color_name,
                session_id=session_id,
                first_seen=identity.first_seen,
                last_seen=identity.last_seen,
                total_time_seconds=identity.total_active_seconds,
                detection_count=identity.detection_count,
                avg_confidence=identity.avg_confidence,
            ))
        return True

    def reset(self) -> None:
        """Drop every identity. Learned size profiles are not affected."""
        if self._identities:
            logger.info(f"Tracking reset, {len(self._identities)} identities cleared")
        self._identities.clear()
