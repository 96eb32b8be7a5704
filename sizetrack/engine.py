"""
Measurement Engine
==================

Per-frame orchestrator. For every frame the raw detections are:
1. filtered (excluded classes such as "person" are dropped)
2. measured by the SizeEstimator (size in cm, distance in cm)
3. colour-sampled and fed to the ObjectTracker (identity, dwell time)
and returned as EnrichedDetection objects for a renderer or logger.

Three periodic activities share one asyncio event loop:
- the detection cycle (default once per second)
- the aging tick (once per second)
- the persistence flush (every ten seconds)
Both state tables (learned profiles, tracked identities) are only mutated
from that loop, so no locks guard them. Store writes are scheduled as
background tasks: the enriched output of a frame never waits on the store,
and stop() leaves in-flight writes running.

References:
- asyncio tasks: https://docs.python.org/3/library/asyncio-task.html
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Callable, Coroutine, Dict, List, Optional, Protocol, Sequence, Set, Tuple

import numpy as np

from .color_naming import UNKNOWN_COLOR, UNKNOWN_HEX, DominantColor, sample_dominant_color
from .config import EngineConfig, create_default_config, validate_config
from .object_detection import RawDetection
from .object_tracking import ObjectTracker, format_tracking_key
from .persistence import best_effort, policy_from_config
from .size_estimation import LearnedProfile, SizeEstimator
from .store import BaseStore, DetectionRecord
from .video_input import Frame

logger = logging.getLogger(__name__)

ColorSampler = Callable[[np.ndarray, Tuple[float, float, float, float]], DominantColor]


class Detector(Protocol):
    def detect(self, image: np.ndarray) -> List[RawDetection]: ...


class FrameSource(Protocol):
    def read(self) -> Optional[Frame]: ...


@dataclass
class EnrichedDetection:
    """
    A detection with measurement and tracking information.

    Attributes:
        detection_id: Unique id within the session ("<ms>-<index>")
        label: Class label
        confidence: Detection confidence (0-1)
        bbox: Bounding box as (x, y, width, height) in pixels
        width_cm: Estimated real-world width
        height_cm: Estimated real-world height
        distance_cm: Estimated distance from the camera
        tracking_key: Identity as "class-colour"
        dwell_seconds: Seconds the identity has been in view
        is_active: Whether the identity is currently active
        color_name: Palette name of the object colour
        color_hex: Average colour as a hex string
        learned: True if the size came from a learned profile
        is_vehicle: True for vehicle classes
    """
    detection_id: str
    label: str
    confidence: float
    bbox: Tuple[float, float, float, float]
    width_cm: float
    height_cm: float
    distance_cm: int
    tracking_key: str
    dwell_seconds: int
    is_active: bool
    color_name: str = UNKNOWN_COLOR
    color_hex: str = UNKNOWN_HEX
    learned: bool = False
    is_vehicle: bool = False


class MeasurementEngine:
    """
    Size estimation + dwell-time tracking for a stream of detections.

    The engine owns one SizeEstimator and one ObjectTracker; several engines
    can run side by side as independent sessions.
    """

    def __init__(
        self,
        config: Optional[EngineConfig] = None,
        store: Optional[BaseStore] = None,
        clock: Callable[[], float] = time.time,
        color_sampler: ColorSampler = sample_dominant_color,
        session_id: Optional[str] = None
    ):
        """
        Initialize the engine.

        Args:
            config: Engine configuration (defaults if None)
            store: Durable store; None disables persistence
            clock: Returns the current time in epoch seconds
            color_sampler: Maps (frame, bbox) to a DominantColor
            session_id: Scope of persisted tracking rows (generated if None)
        """
        self.config = config or create_default_config()
        validate_config(self.config)
        self.store = store
        self.clock = clock
        self.color_sampler = color_sampler

        self.estimator = SizeEstimator(
            self.config.sizing, clock=clock, on_profile_change=self._on_profile_change
        )
        self.tracker = ObjectTracker(self.config.tracking, clock=clock, session_id=session_id)

        self._write_policy = policy_from_config(self.config.store)
        self._background: Set[asyncio.Task] = set()
        self._profile_locks: Dict[str, asyncio.Lock] = {}
        self._aging_task: Optional[asyncio.Task] = None
        self._flush_task: Optional[asyncio.Task] = None
        self._frame_task: Optional[asyncio.Task] = None
        self._flush_in_flight: Optional[asyncio.Task] = None

    @property
    def session_id(self) -> str:
        return self.tracker.session_id

    @property
    def is_running(self) -> bool:
        return self._aging_task is not None

    @property
    def pending_writes(self) -> int:
        """Number of store writes still in flight."""
        return len(self._background)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """
        Load stored profiles and start the aging and flush ticks.

        Must be awaited from the event loop that will drive the engine.
        """
        if self.is_running:
            return

        if self.store is not None:
            records = await best_effort(
                "Profile load", self.store.load_profiles, **self._write_policy
            )
            if records:
                loaded = self.estimator.load_profiles(records)
                logger.info(f"Loaded {loaded} learned profiles from store")

        self._aging_task = asyncio.create_task(self._aging_loop())
        self._flush_task = asyncio.create_task(self._flush_loop())
        logger.info(f"Engine started (session {self.session_id})")

    async def stop(self) -> None:
        """
        Stop the detection cycle and both ticks, then reset tracking.

        Store writes already in flight are left to complete on their own;
        use drain() to wait for them.
        """
        current = asyncio.current_task()
        tasks = [
            t for t in (self._frame_task, self._aging_task, self._flush_task)
            if t is not None and t is not current
        ]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

        self._frame_task = None
        self._aging_task = None
        self._flush_task = None
        self.tracker.reset()
        logger.info("Engine stopped")

    async def drain(self) -> None:
        """Wait until every background store write has finished."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    async def close(self) -> None:
        """Stop, wait for pending writes and close the store."""
        await self.stop()
        await self.drain()
        if self.store is not None:
            await self.store.close()

    async def _aging_loop(self) -> None:
        interval = self.config.tracking.tick_interval_s
        while True:
            await asyncio.sleep(interval)
            self.tracker.tick()

    async def _flush_loop(self) -> None:
        interval = self.config.tracking.flush_interval_s
        while True:
            await asyncio.sleep(interval)
            if self.store is None:
                continue
            if self._flush_in_flight is not None and not self._flush_in_flight.done():
                logger.warning("Previous tracking flush still running, skipping this one")
                continue
            self._flush_in_flight = self._spawn(
                self.tracker.flush(self.store, **self._write_policy)
            )

    async def flush(self) -> int:
        """
        Persist tracked identities now.

        Returns:
            Number of tracking records written
        """
        if self.store is None:
            return 0
        return await self.tracker.flush(self.store, **self._write_policy)

    # ------------------------------------------------------------------
    # Per-frame processing
    # ------------------------------------------------------------------

    async def process_frame(
        self,
        frame: Optional[np.ndarray],
        detections: Sequence[RawDetection]
    ) -> List[EnrichedDetection]:
        """
        Measure and track the detections of one frame.

        Args:
            frame: Frame the detections come from (BGR), used for colour
                sampling; None tracks every detection under "unknown"
            detections: Raw detector output for the frame

        Returns:
            Enriched detections, excluded classes removed
        """
        cfg = self.config
        stamp = int(self.clock() * 1000)
        enriched = []

        for index, det in enumerate(detections):
            if det.label in cfg.excluded_classes:
                continue

            _, _, pixel_width, pixel_height = det.bbox
            estimate = self.estimator.estimate(
                pixel_width, pixel_height, det.label, det.confidence
            )

            if frame is not None:
                color = self.color_sampler(frame, det.bbox)
            else:
                color = DominantColor(UNKNOWN_COLOR, UNKNOWN_HEX)
            identity = self.tracker.observe(det.label, color.name, det.confidence)

            if self.store is not None and cfg.store.log_detections:
                record = DetectionRecord(
                    object_type=det.label,
                    confidence=det.confidence,
                    width_cm=estimate.width_cm,
                    height_cm=estimate.height_cm,
                    pixel_width=pixel_width,
                    pixel_height=pixel_height,
                    distance_cm=estimate.distance_cm,
                    learned_size=estimate.learned,
                )
                self._spawn(best_effort(
                    f"Detection log for '{det.label}'",
                    lambda record=record: self.store.insert_detection(record),
                    **self._write_policy,
                ))

            enriched.append(EnrichedDetection(
                detection_id=f"{stamp}-{index}",
                label=det.label,
                confidence=det.confidence,
                bbox=det.bbox,
                width_cm=estimate.width_cm,
                height_cm=estimate.height_cm,
                distance_cm=estimate.distance_cm,
                tracking_key=format_tracking_key(identity.key),
                dwell_seconds=identity.total_active_seconds,
                is_active=identity.is_active,
                color_name=color.name,
                color_hex=color.hex,
                learned=estimate.learned,
                is_vehicle=det.label in cfg.vehicle_classes,
            ))

        return enriched

    async def run(
        self,
        source: FrameSource,
        detector: Detector,
        on_frame: Optional[Callable[[Frame, List[EnrichedDetection]], None]] = None,
        max_frames: Optional[int] = None
    ) -> int:
        """
        Detection cycle: read, detect, enrich, once per frame_interval_s.

        Frame reads and inference run in worker threads so the aging and
        flush ticks keep running while they are in progress.

        Args:
            source: Frame source (read() returns None at end of stream)
            detector: Object detector
            on_frame: Called with each frame and its enriched detections
            max_frames: Stop after this many frames (None = until end of stream)

        Returns:
            Number of frames processed
        """
        loop = asyncio.get_running_loop()
        interval = self.config.frame_interval_s
        processed = 0

        while max_frames is None or processed < max_frames:
            started = loop.time()

            frame = await asyncio.to_thread(source.read)
            if frame is None:
                logger.info("Frame source exhausted")
                break

            detections = await asyncio.to_thread(detector.detect, frame.image)
            enriched = await self.process_frame(frame.image, detections)
            processed += 1

            if on_frame is not None:
                on_frame(frame, enriched)

            await asyncio.sleep(max(0.0, interval - (loop.time() - started)))

        return processed

    def start_frame_cycle(
        self,
        source: FrameSource,
        detector: Detector,
        on_frame: Optional[Callable[[Frame, List[EnrichedDetection]], None]] = None,
        max_frames: Optional[int] = None
    ) -> asyncio.Task:
        """Run the detection cycle as a task that stop() cancels."""
        self._frame_task = asyncio.create_task(
            self.run(source, detector, on_frame=on_frame, max_frames=max_frames)
        )
        return self._frame_task

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def _spawn(self, coro: Coroutine) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    def _on_profile_change(self, profile: LearnedProfile, created: bool) -> None:
        if self.store is None:
            return
        self._spawn(self._persist_profile(profile))

    async def _persist_profile(self, profile: LearnedProfile) -> None:
        """
        Write one profile snapshot to the store.

        Writes for the same class are serialised so a profile is created at
        most once and updates land in order.
        """
        object_class = profile.object_class
        lock = self._profile_locks.setdefault(object_class, asyncio.Lock())

        async with lock:
            current = self.estimator.get_profile(object_class)
            store_id = current.store_id if current is not None else profile.store_id

            if store_id is None:
                existing = await best_effort(
                    f"Profile lookup for '{object_class}'",
                    lambda: self.store.find_profile(object_class),
                    **self._write_policy,
                )
                if existing is not None:
                    store_id = existing.id
                    self.estimator.attach_store_id(object_class, store_id)

            if store_id is None:
                created = await best_effort(
                    f"Profile create for '{object_class}'",
                    lambda: self.store.create_profile(
                        object_class, profile.avg_width_cm, profile.avg_height_cm,
                        profile.confidence_threshold,
                    ),
                    **self._write_policy,
                )
                if created is None:
                    return
                self.estimator.attach_store_id(object_class, created.id)
                if profile.detection_count <= 1:
                    return
                store_id = created.id

            await best_effort(
                f"Profile update for '{object_class}'",
                lambda: self.store.update_profile(
                    store_id, profile.avg_width_cm, profile.avg_height_cm,
                    profile.detection_count,
                ),
                **self._write_policy,
            )
