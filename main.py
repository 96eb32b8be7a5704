#!/usr/bin/env python3
"""
Object Size & Dwell-Time Engine - Main Entry Point
==================================================

Runs the measurement engine on a webcam or video file with the YOLOv8-nano
detector and prints the enriched detections of every processed frame.

Usage:
    python main.py --webcam 0
    python main.py --video desk.mp4 --db data/sizetrack.db --max-frames 60
    python main.py --webcam 0 --config engine.json --log-level DEBUG

References:
- OpenCV Python Tutorials: https://docs.opencv.org/4.x/d6/d00/tutorial_py_root.html
- YOLOv8: https://docs.ultralytics.com/
"""

import argparse
import asyncio
import logging
import sys
from typing import List

from sizetrack.config import (
    EngineConfig,
    create_default_config,
    load_config_from_json,
    validate_config,
)
from sizetrack.engine import EnrichedDetection, MeasurementEngine
from sizetrack.object_detection import YoloDetector
from sizetrack.store import open_store
from sizetrack.video_input import Frame, VideoSource, open_video_file, open_webcam


def parse_args():
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        description="Object size, distance and dwell-time estimation",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
    # Live webcam, in-memory store
    python main.py --webcam 0

    # Video file, persist profiles and tracking to SQLite
    python main.py --video desk.mp4 --db data/sizetrack.db

    # Custom tuning values
    python main.py --webcam 0 --config engine.json
        """,
    )

    # Input sources
    input_group = parser.add_mutually_exclusive_group(required=True)
    input_group.add_argument("--webcam", type=int, metavar="INDEX", help="Webcam index")
    input_group.add_argument("--video", type=str, help="Path to a video file")

    # Configuration
    parser.add_argument("--config", type=str, help="Path to engine configuration JSON file")
    parser.add_argument(
        "--db", type=str, help="SQLite database for profiles and tracking (default: in-memory)"
    )
    parser.add_argument("--model", type=str, help="Path to yolov8n.onnx")
    parser.add_argument(
        "--confidence",
        type=float,
        default=0.5,
        help="Detector confidence threshold (default: 0.5)",
    )
    parser.add_argument(
        "--interval",
        type=float,
        help="Seconds between processed frames (default: from config, 1.0)",
    )
    parser.add_argument(
        "--max-frames", type=int, help="Stop after this many frames (default: until end)"
    )
    parser.add_argument(
        "--log-level",
        type=str,
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level (default: INFO)",
    )

    return parser.parse_args()


def setup_config(args) -> EngineConfig:
    """Load or create the engine configuration and apply CLI overrides."""
    if args.config:
        print(f"Loading configuration from: {args.config}")
        config = load_config_from_json(args.config)
    else:
        config = create_default_config()

    if args.interval is not None:
        config.frame_interval_s = args.interval
    if args.db:
        config.store.backend = "sqlite"
        config.store.db_path = args.db

    validate_config(config)
    return config


def setup_video_source(args) -> VideoSource:
    """Set up the frame source based on arguments."""
    if args.video:
        print(f"Opening video file: {args.video}")
        return open_video_file(args.video)
    print(f"Opening webcam: {args.webcam}")
    return open_webcam(args.webcam)


def print_detections(frame: Frame, detections: List[EnrichedDetection]) -> None:
    """Print one line per enriched detection."""
    for det in detections:
        if det.width_cm >= 100:
            size = f"{det.width_cm / 100:.1f}m x {det.height_cm / 100:.1f}m"
        else:
            size = f"{det.width_cm:.1f}cm x {det.height_cm:.1f}cm"
        state = "active" if det.is_active else "inactive"
        source = "learned" if det.learned else "estimated"
        vehicle = " [vehicle]" if det.is_vehicle else ""
        print(
            f"Frame {frame.frame_number}: {det.label}{vehicle} ({det.confidence:.0%}) "
            f"{size} ({source}) @ {det.distance_cm}cm | {det.tracking_key} "
            f"{det.dwell_seconds}s {state}"
        )


async def run(args, config: EngineConfig) -> int:
    """Run the engine until the source ends, max frames, or Ctrl+C."""
    source = setup_video_source(args)
    if not source.open():
        print("Error: Could not open video source")
        return 0

    detector = YoloDetector(model_path=args.model, confidence_threshold=args.confidence)
    if not detector.available:
        print("Error: detector model could not be loaded")
        source.close()
        return 0

    engine = MeasurementEngine(config, store=open_store(config.store))
    await engine.start()
    print(f"Session: {engine.session_id}")
    print()

    processed = 0
    try:
        processed = await engine.start_frame_cycle(
            source, detector, on_frame=print_detections, max_frames=args.max_frames
        )
    except asyncio.CancelledError:
        print("\nInterrupted by user")
    finally:
        # Persist dwell times before stop() clears them
        await engine.flush()
        await engine.close()
        source.close()

    return processed


def main():
    """Main entry point."""
    args = parse_args()
    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    print("=" * 60)
    print("  Object Size & Dwell-Time Engine")
    print("=" * 60)
    print()

    try:
        config = setup_config(args)
    except (FileNotFoundError, ValueError) as e:
        print(f"Error: {e}")
        sys.exit(1)

    print(f"Focal length: {config.sizing.focal_length_px:.1f} px")
    print(f"Frame interval: {config.frame_interval_s:.2f} s")
    print(f"Store: {config.store.backend}")
    print()

    try:
        processed = asyncio.run(run(args, config))
    except KeyboardInterrupt:
        print("\nInterrupted by user")
        processed = 0

    print(f"\nProcessed {processed} frames")
    print("Done!")


if __name__ == "__main__":
    main()
