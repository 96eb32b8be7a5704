"""
Size Estimation Module
======================

Estimates the real-world size and camera distance of detected objects from a
single (monocular) bounding box, and learns a per-class size profile from the
detections it sees.

Two estimation paths:
1. Cold start - canonical size for the class, scaled by a perspective factor
   derived from the apparent size of the bounding box
2. Learned - running average of the sizes previously estimated for the class,
   used once the class profile holds enough samples

In both paths the distance follows from the pinhole camera model:
    distance = real_size * focal_length / pixel_size

References:
- Pinhole camera model: https://en.wikipedia.org/wiki/Pinhole_camera_model
- Triangle similarity for distance: R. Hartley and A. Zisserman,
  "Multiple View Geometry in Computer Vision", Ch. 6
- Incremental mean: D. Knuth, "The Art of Computer Programming", Vol. 2, 4.2.2
"""

import logging
import math
import time
from dataclasses import dataclass, replace
from typing import Callable, Dict, Iterable, Optional, Tuple

import numpy as np

from .config import SizingConfig
from .store import ProfileRecord

logger = logging.getLogger(__name__)


@dataclass
class LearnedProfile:
    """
    Running size average for one object class.

    Attributes:
        object_class: Detector label this profile describes
        avg_width_cm: Incremental mean of the width samples
        avg_height_cm: Incremental mean of the height samples
        detection_count: Number of samples in the mean
        confidence_threshold: Confidence needed to create the profile
        last_seen: Epoch seconds of the last contributing sample
        store_id: Id of the persisted row, once known
    """
    object_class: str
    avg_width_cm: float
    avg_height_cm: float
    detection_count: int = 0
    confidence_threshold: float = 0.7
    last_seen: Optional[float] = None
    store_id: Optional[str] = None


@dataclass
class SizeEstimate:
    """
    Result of a size/distance estimate.

    Attributes:
        width_cm: Estimated real-world width
        height_cm: Estimated real-world height
        distance_cm: Estimated distance from the camera, clamped to the working range
        learned: True if the size came from a learned profile
    """
    width_cm: float
    height_cm: float
    distance_cm: int
    learned: bool = False


# Called with (profile snapshot, created) after every learning update
ProfileListener = Callable[[LearnedProfile, bool], None]


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def perspective_factor(
    pixel_width: float,
    pixel_height: float,
    reference_px: float = 100.0,
    scale_px: float = 200.0,
    min_factor: float = 0.5,
    max_factor: float = 1.5
) -> float:
    """
    Scale factor applied to canonical sizes on the cold-start path.

    Objects covering more of the screen are assumed larger/closer:
        factor = clamp(1 + (sqrt(w * h) - reference) / scale, min, max)

    Args:
        pixel_width: Bounding box width in pixels
        pixel_height: Bounding box height in pixels
        reference_px: Apparent size giving a factor of exactly 1.0
        scale_px: Apparent size change per unit of factor
        min_factor: Lower clamp
        max_factor: Upper clamp

    Returns:
        Perspective factor in [min_factor, max_factor]
    """
    size_index = np.sqrt(max(pixel_width, 0.0) * max(pixel_height, 0.0))
    factor = 1.0 + (size_index - reference_px) / scale_px
    return float(np.clip(factor, min_factor, max_factor))


def pinhole_distance(
    width_cm: float,
    height_cm: float,
    pixel_width: float,
    pixel_height: float,
    focal_length_px: float = 600.0,
    min_distance_cm: float = 20.0,
    max_distance_cm: float = 300.0
) -> int:
    """
    Distance from the camera by triangle similarity.

    The distances implied by width and by height are averaged, rounded to the
    nearest centimetre and clamped to the working range of the camera.

    Args:
        width_cm: Real-world width of the object
        height_cm: Real-world height of the object
        pixel_width: Bounding box width in pixels (must be > 0)
        pixel_height: Bounding box height in pixels (must be > 0)
        focal_length_px: Camera focal length in pixels
        min_distance_cm: Near bound
        max_distance_cm: Far bound

    Returns:
        Distance in whole centimetres
    """
    distance_from_width = width_cm * focal_length_px / pixel_width
    distance_from_height = height_cm * focal_length_px / pixel_height
    distance = _round_half_up((distance_from_width + distance_from_height) / 2)
    return int(np.clip(distance, min_distance_cm, max_distance_cm))


class SizeEstimator:
    """
    Per-class size/distance estimator with online learning.

    The estimator owns the map of learned profiles. Every call to estimate()
    may update that map; profile changes are reported to an optional listener
    (the engine uses it to persist profiles without waiting on the store).
    """

    def __init__(
        self,
        config: Optional[SizingConfig] = None,
        clock: Callable[[], float] = time.time,
        on_profile_change: Optional[ProfileListener] = None
    ):
        """
        Initialize the estimator.

        Args:
            config: Sizing parameters (defaults if None)
            clock: Returns the current time in epoch seconds
            on_profile_change: Listener called after each profile create/update
        """
        self.config = config or SizingConfig()
        self.clock = clock
        self.on_profile_change = on_profile_change
        self._profiles: Dict[str, LearnedProfile] = {}

    @property
    def profiles(self) -> Dict[str, LearnedProfile]:
        """Snapshot of the learned profiles keyed by class."""
        return {name: replace(p) for name, p in self._profiles.items()}

    def get_profile(self, object_class: str) -> Optional[LearnedProfile]:
        """Snapshot of one profile, or None."""
        profile = self._profiles.get(object_class)
        return replace(profile) if profile is not None else None

    def load_profiles(self, records: Iterable[ProfileRecord]) -> int:
        """
        Seed the profile map from persisted rows.

        Rows for classes already present in memory are skipped so that
        samples learned during this session are never overwritten.

        Returns:
            Number of profiles loaded
        """
        loaded = 0
        for record in records:
            if record.object_type in self._profiles:
                continue
            self._profiles[record.object_type] = LearnedProfile(
                object_class=record.object_type,
                avg_width_cm=record.avg_width_cm,
                avg_height_cm=record.avg_height_cm,
                detection_count=record.detection_count,
                confidence_threshold=record.confidence_threshold,
                last_seen=record.last_seen,
                store_id=record.id,
            )
            loaded += 1
        return loaded

    def attach_store_id(self, object_class: str, store_id: str) -> None:
        """Remember the persisted row id of a profile."""
        profile = self._profiles.get(object_class)
        if profile is not None:
            profile.store_id = store_id

    def _learned_profile(self, object_class: str) -> Optional[LearnedProfile]:
        profile = self._profiles.get(object_class)
        if profile is None or profile.detection_count == 0:
            return None
        if profile.detection_count > self.config.learned_min_count:
            return profile
        return None

    def _cold_start_size(self, pixel_width: float, pixel_height: float,
                         object_class: str) -> Tuple[float, float]:
        cfg = self.config
        base_width, base_height = cfg.base_size(object_class)
        factor = perspective_factor(
            pixel_width, pixel_height,
            reference_px=cfg.perspective_reference_px,
            scale_px=cfg.perspective_scale_px,
            min_factor=cfg.perspective_min,
            max_factor=cfg.perspective_max,
        )
        return base_width * factor, base_height * factor

    def estimate(
        self,
        pixel_width: float,
        pixel_height: float,
        object_class: str,
        confidence: float
    ) -> SizeEstimate:
        """
        Estimate real-world size and distance, then learn from the result.

        Never raises for numeric input: a box with a non-positive side is
        unmeasurable and yields the class size at the far end of the range,
        without any learning update.

        Args:
            pixel_width: Bounding box width in pixels
            pixel_height: Bounding box height in pixels
            object_class: Detector label
            confidence: Detector confidence in [0, 1]

        Returns:
            SizeEstimate for this detection
        """
        cfg = self.config
        learned = self._learned_profile(object_class)

        measurable = (
            math.isfinite(pixel_width) and math.isfinite(pixel_height)
            and pixel_width > 0 and pixel_height > 0
        )
        if not measurable:
            logger.debug(
                f"Unmeasurable box for '{object_class}': {pixel_width}x{pixel_height}px"
            )
            if learned is not None:
                width_cm, height_cm = learned.avg_width_cm, learned.avg_height_cm
            else:
                base_width, base_height = cfg.base_size(object_class)
                width_cm = base_width * cfg.perspective_min
                height_cm = base_height * cfg.perspective_min
            return SizeEstimate(
                width_cm=width_cm,
                height_cm=height_cm,
                distance_cm=int(cfg.max_distance_cm),
                learned=learned is not None,
            )

        if learned is not None:
            width_cm, height_cm = learned.avg_width_cm, learned.avg_height_cm
        else:
            width_cm, height_cm = self._cold_start_size(pixel_width, pixel_height, object_class)

        distance_cm = pinhole_distance(
            width_cm, height_cm, pixel_width, pixel_height,
            focal_length_px=cfg.focal_length_px,
            min_distance_cm=cfg.min_distance_cm,
            max_distance_cm=cfg.max_distance_cm,
        )

        self._learn(object_class, width_cm, height_cm, confidence)

        return SizeEstimate(
            width_cm=width_cm,
            height_cm=height_cm,
            distance_cm=distance_cm,
            learned=learned is not None,
        )

    def _learn(self, object_class: str, width_cm: float, height_cm: float,
               confidence: float) -> None:
        """
        Fold one size sample into the class profile.

        - No profile and confidence above the threshold: create with count 1
        - Profile exists: incremental mean, whatever the confidence
        - Otherwise: nothing
        """
        now = self.clock()
        profile = self._profiles.get(object_class)

        if profile is None:
            if not confidence > self.config.confidence_threshold:
                return
            profile = LearnedProfile(
                object_class=object_class,
                avg_width_cm=width_cm,
                avg_height_cm=height_cm,
                detection_count=1,
                confidence_threshold=self.config.confidence_threshold,
                last_seen=now,
            )
            self._profiles[object_class] = profile
            logger.info(
                f"Learned profile created for '{object_class}': "
                f"{width_cm:.1f}x{height_cm:.1f}cm"
            )
            created = True
        else:
            count = profile.detection_count
            profile.avg_width_cm = (profile.avg_width_cm * count + width_cm) / (count + 1)
            profile.avg_height_cm = (profile.avg_height_cm * count + height_cm) / (count + 1)
            profile.detection_count = count + 1
            profile.last_seen = now
            created = False

        if self.on_profile_change is not None:
            self.on_profile_change(replace(profile), created)
