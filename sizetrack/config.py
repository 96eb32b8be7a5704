"""
Engine Configuration Module
===========================

Holds every tuning constant used by the size estimator, the object tracker
and the persistence layer. Values can be loaded from / saved to a JSON file
or created with defaults.

The defaults are empirical values: a 600 px focal length for a typical
640x480 webcam, a 3 s inactivity timeout and a 20-300 cm working range.

References:
- OpenCV Camera Calibration: https://docs.opencv.org/4.x/dc/dbb/tutorial_py_calibration.html
"""

import json
from dataclasses import dataclass, field, asdict
from pathlib import Path
from typing import Dict, Tuple


# Canonical real-world sizes (width_cm, height_cm) for common COCO classes
DEFAULT_BASE_SIZES: Dict[str, Tuple[float, float]] = {
    "cell phone": (7.5, 15.5),
    "bottle": (6.5, 25.0),
    "cup": (8.0, 9.5),
    "laptop": (30.0, 21.0),
    "book": (15.0, 23.0),
    "car": (180.0, 150.0),
    "motorcycle": (80.0, 120.0),
    "mouse": (6.0, 11.0),
    "keyboard": (45.0, 15.0),
    "banana": (3.0, 18.0),
    "apple": (8.0, 8.5),
    "orange": (7.5, 7.5),
}

DEFAULT_VEHICLE_CLASSES = ("car", "motorcycle", "bus", "truck", "bicycle")

STORE_BACKENDS = ("memory", "sqlite")


@dataclass
class SizingConfig:
    """
    Parameters of the size/distance estimator.

    Attributes:
        focal_length_px: Focal length of the camera in pixels
        confidence_threshold: Minimum confidence to create a learned profile
        learned_min_count: Profiles with more samples than this are trusted
        min_distance_cm: Near bound of the distance estimate
        max_distance_cm: Far bound of the distance estimate
        perspective_reference_px: Apparent size (sqrt of bbox area) at factor 1.0
        perspective_scale_px: Pixels of apparent size per unit of factor
        perspective_min: Lower bound of the perspective factor
        perspective_max: Upper bound of the perspective factor
        default_size_cm: Fallback (width, height) for classes not in base_sizes
        base_sizes: Canonical (width, height) per class for the cold start

    Reference: Pinhole camera geometry, distance = real_size * f / pixel_size
    """
    focal_length_px: float = 600.0
    confidence_threshold: float = 0.7
    learned_min_count: int = 3
    min_distance_cm: float = 20.0
    max_distance_cm: float = 300.0
    perspective_reference_px: float = 100.0
    perspective_scale_px: float = 200.0
    perspective_min: float = 0.5
    perspective_max: float = 1.5
    default_size_cm: Tuple[float, float] = (10.0, 10.0)
    base_sizes: Dict[str, Tuple[float, float]] = field(
        default_factory=lambda: dict(DEFAULT_BASE_SIZES)
    )

    def base_size(self, object_class: str) -> Tuple[float, float]:
        """Canonical size for a class, or the generic default."""
        return self.base_sizes.get(object_class, self.default_size_cm)


@dataclass
class TrackingConfig:
    """
    Timing of the tracker lifecycle.

    Attributes:
        inactivity_timeout_s: Idle time after which an identity is inactive
        tick_interval_s: Period of the aging tick (one dwell second per tick)
        flush_interval_s: Period of the persistence flush
        persist_min_active_s: Identities below this dwell time are not persisted
    """
    inactivity_timeout_s: float = 3.0
    tick_interval_s: float = 1.0
    flush_interval_s: float = 10.0
    persist_min_active_s: int = 2


@dataclass
class StoreConfig:
    """
    Durable store settings.

    Attributes:
        backend: "memory" or "sqlite"
        db_path: SQLite database file (sqlite backend only)
        retry_attempts: Extra attempts after a failed write (0 = no retry)
        retry_backoff_s: Delay before the first retry, doubled on each retry
        log_detections: Also append every measured detection to the store
    """
    backend: str = "memory"
    db_path: str = "data/sizetrack.db"
    retry_attempts: int = 0
    retry_backoff_s: float = 0.5
    log_detections: bool = True


@dataclass
class EngineConfig:
    """
    Top-level configuration for the measurement engine.

    Attributes:
        sizing: Size estimator parameters
        tracking: Tracker timing
        store: Persistence settings
        frame_interval_s: Period of the detection cycle
        excluded_classes: Labels dropped before measurement
        vehicle_classes: Labels flagged as vehicles in the output
    """
    sizing: SizingConfig = field(default_factory=SizingConfig)
    tracking: TrackingConfig = field(default_factory=TrackingConfig)
    store: StoreConfig = field(default_factory=StoreConfig)
    frame_interval_s: float = 1.0
    excluded_classes: Tuple[str, ...] = ("person",)
    vehicle_classes: Tuple[str, ...] = DEFAULT_VEHICLE_CLASSES


def validate_config(config: EngineConfig) -> None:
    """
    Check a configuration for values the engine cannot run with.

    Raises:
        ValueError: If any parameter is out of range
    """
    sizing = config.sizing
    tracking = config.tracking

    if sizing.focal_length_px <= 0:
        raise ValueError("focal_length_px must be positive")
    if sizing.perspective_scale_px <= 0:
        raise ValueError("perspective_scale_px must be positive")
    if not 0 <= sizing.min_distance_cm <= sizing.max_distance_cm:
        raise ValueError("min_distance_cm must be in [0, max_distance_cm]")
    if not 0 < sizing.perspective_min <= sizing.perspective_max:
        raise ValueError("perspective_min must be in (0, perspective_max]")
    if sizing.learned_min_count < 0:
        raise ValueError("learned_min_count must be >= 0")
    for name, size in sizing.base_sizes.items():
        if len(size) != 2 or size[0] <= 0 or size[1] <= 0:
            raise ValueError(f"Invalid base size for '{name}': {size}")

    if tracking.tick_interval_s <= 0 or tracking.flush_interval_s <= 0:
        raise ValueError("tick_interval_s and flush_interval_s must be positive")
    if tracking.inactivity_timeout_s <= 0:
        raise ValueError("inactivity_timeout_s must be positive")

    if config.frame_interval_s <= 0:
        raise ValueError("frame_interval_s must be positive")
    # A slower cadence would let an object in plain view time out between frames
    if config.frame_interval_s > tracking.inactivity_timeout_s / 3:
        raise ValueError(
            "frame_interval_s must not exceed inactivity_timeout_s / 3 "
            f"({tracking.inactivity_timeout_s / 3:.2f}s)"
        )

    if config.store.backend not in STORE_BACKENDS:
        raise ValueError(f"Unknown store backend: {config.store.backend}")
    if config.store.retry_attempts < 0:
        raise ValueError("retry_attempts must be >= 0")


def create_default_config(
    focal_length_px: float = 600.0,
    frame_interval_s: float = 1.0,
    store_backend: str = "memory",
    db_path: str = "data/sizetrack.db"
) -> EngineConfig:
    """
    Create a configuration with the default tuning values.

    Args:
        focal_length_px: Camera focal length in pixels (default: 600)
        frame_interval_s: Detection cycle period in seconds
        store_backend: "memory" or "sqlite"
        db_path: SQLite file used by the sqlite backend

    Returns:
        EngineConfig with default parameters
    """
    config = EngineConfig(
        sizing=SizingConfig(focal_length_px=focal_length_px),
        store=StoreConfig(backend=store_backend, db_path=db_path),
        frame_interval_s=frame_interval_s,
    )
    validate_config(config)
    return config


def load_config_from_json(config_path: str) -> EngineConfig:
    """
    Load an engine configuration from a JSON file.

    The file may contain any subset of the sections "sizing", "tracking"
    and "store" plus the top-level keys "frame_interval_s",
    "excluded_classes" and "vehicle_classes". Missing keys keep their
    defaults. "base_sizes" entries are merged over the built-in table.

    Args:
        config_path: Path to the JSON configuration file

    Returns:
        Validated EngineConfig

    Raises:
        FileNotFoundError: If config file doesn't exist
        ValueError: If config file contains unknown keys or bad values
    """
    path = Path(config_path)
    if not path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    with open(path, 'r') as f:
        data = json.load(f)

    if not isinstance(data, dict):
        raise ValueError("Configuration root must be a JSON object")

    sizing_data = dict(data.get("sizing", {}))
    base_sizes = dict(DEFAULT_BASE_SIZES)
    for name, size in sizing_data.pop("base_sizes", {}).items():
        base_sizes[name] = tuple(size)
    if "default_size_cm" in sizing_data:
        sizing_data["default_size_cm"] = tuple(sizing_data["default_size_cm"])

    try:
        config = EngineConfig(
            sizing=SizingConfig(base_sizes=base_sizes, **sizing_data),
            tracking=TrackingConfig(**data.get("tracking", {})),
            store=StoreConfig(**data.get("store", {})),
            frame_interval_s=float(data.get("frame_interval_s", 1.0)),
            excluded_classes=tuple(data.get("excluded_classes", ("person",))),
            vehicle_classes=tuple(data.get("vehicle_classes", DEFAULT_VEHICLE_CLASSES)),
        )
    except TypeError as e:
        # Unexpected keyword -> unknown key in the file
        raise ValueError(f"Invalid configuration: {e}") from e

    validate_config(config)
    return config


def save_config_to_json(config: EngineConfig, output_path: str) -> None:
    """
    Save an engine configuration to a JSON file.

    Args:
        config: EngineConfig object to save
        output_path: Path for the output JSON file
    """
    data = asdict(config)
    data["sizing"]["base_sizes"] = {
        name: list(size) for name, size in config.sizing.base_sizes.items()
    }
    data["sizing"]["default_size_cm"] = list(config.sizing.default_size_cm)
    data["excluded_classes"] = list(config.excluded_classes)
    data["vehicle_classes"] = list(config.vehicle_classes)

    with open(output_path, 'w') as f:
        json.dump(data, f, indent=4)
