"""
Unit tests for object detection module.
"""

import pytest
import numpy as np
from pathlib import Path

import sys
sys.path.insert(0, str(Path(__file__).parent.parent))

from sizetrack.object_detection import (
    COCO_CLASSES,
    RawDetection,
    YoloDetector,
    decode_yolo_output,
    letterbox,
)

BOTTLE_ID = COCO_CLASSES.index("bottle")
CUP_ID = COCO_CLASSES.index("cup")


def make_output(anchors):
    """
    Build a [1, 84, N] YOLOv8 output.

    Args:
        anchors: List of (cx, cy, w, h, class_id, score)
    """
    output = np.zeros((1, 4 + len(COCO_CLASSES), len(anchors)), dtype=np.float32)
    for i, (cx, cy, w, h, class_id, score) in enumerate(anchors):
        output[0, :4, i] = (cx, cy, w, h)
        output[0, 4 + class_id, i] = score
    return output


class TestRawDetection:
    """Tests for RawDetection dataclass."""

    def test_raw_detection_creation(self):
        """Test creating a RawDetection."""
        det = RawDetection(label="cup", confidence=0.8, bbox=(10.0, 20.0, 30.0, 40.0))

        assert det.label == "cup"
        assert det.confidence == 0.8
        assert det.bbox == (10.0, 20.0, 30.0, 40.0)


class TestLetterbox:
    """Tests for letterbox preprocessing."""

    def test_landscape_frame(self):
        """Test a 640x480 frame is padded top and bottom."""
        image = np.full((480, 640, 3), 255, dtype=np.uint8)

        tensor, scale, pad_x, pad_y = letterbox(image, 640)

        assert tensor.shape == (1, 3, 640, 640)
        assert tensor.dtype == np.float32
        assert scale == pytest.approx(1.0)
        assert pad_x == 0
        assert pad_y == 80
        assert tensor[0, :, 0, 0].max() == 0.0
        assert tensor[0, :, 320, 320].min() == pytest.approx(1.0)

    def test_downscaled_frame(self):
        """Test large frames are scaled to fit."""
        image = np.zeros((960, 1280, 3), dtype=np.uint8)

        tensor, scale, pad_x, pad_y = letterbox(image, 640)

        assert tensor.shape == (1, 3, 640, 640)
        assert scale == pytest.approx(0.5)
        assert (pad_x, pad_y) == (0, 80)


class TestDecodeYoloOutput:
    """Tests for YOLOv8 output decoding."""

    def test_single_detection(self):
        """Test one confident anchor becomes one detection."""
        output = make_output([(320, 320, 100, 50, BOTTLE_ID, 0.9)])

        detections = decode_yolo_output(output, (640, 640), 1.0, 0, 0)

        assert len(detections) == 1
        det = detections[0]
        assert det.label == "bottle"
        assert det.confidence == pytest.approx(0.9)
        assert det.bbox == (270.0, 295.0, 100.0, 50.0)

    def test_low_scores_dropped(self):
        """Test anchors below the threshold are discarded."""
        output = make_output([(320, 320, 100, 50, BOTTLE_ID, 0.1)])
        assert decode_yolo_output(output, (640, 640), 1.0, 0, 0) == []

    def test_nms_suppresses_overlap(self):
        """Test overlapping boxes keep only the best."""
        output = make_output([
            (320, 320, 100, 50, BOTTLE_ID, 0.9),
            (322, 321, 100, 50, BOTTLE_ID, 0.8),
            (100, 100, 40, 40, CUP_ID, 0.7),
        ])

        detections = decode_yolo_output(output, (640, 640), 1.0, 0, 0)

        assert sorted(d.label for d in detections) == ["bottle", "cup"]
        bottle = next(d for d in detections if d.label == "bottle")
        assert bottle.confidence == pytest.approx(0.9)

    def test_letterbox_coordinates_restored(self):
        """Test boxes are mapped back through scale and padding."""
        output = make_output([(320, 320, 100, 50, CUP_ID, 0.9)])

        detections = decode_yolo_output(output, (1280, 960), 0.5, 0, 80)

        assert detections[0].bbox == (540.0, 430.0, 200.0, 100.0)

    def test_boxes_clipped_to_image(self):
        """Test boxes running off the image are clipped."""
        output = make_output([(630, 630, 100, 100, CUP_ID, 0.9)])

        detections = decode_yolo_output(output, (640, 640), 1.0, 0, 0)

        x, y, w, h = detections[0].bbox
        assert x + w <= 640
        assert y + h <= 640


class TestYoloDetector:
    """Tests for the ONNX Runtime detector wrapper."""

    def test_missing_model(self, tmp_path):
        """Test a missing model leaves the detector unavailable."""
        detector = YoloDetector(model_path=str(tmp_path / "missing.onnx"), download=False)

        assert not detector.available
        image = np.zeros((480, 640, 3), dtype=np.uint8)
        assert detector.detect(image) == []

    def test_truncated_model(self, tmp_path):
        """Test a model file that is too small is rejected."""
        model_path = tmp_path / "yolov8n.onnx"
        model_path.write_bytes(b"\x00" * 10)

        detector = YoloDetector(model_path=str(model_path), download=False)

        assert not detector.available

    def test_thresholds(self, tmp_path):
        """Test detector thresholds are kept."""
        detector = YoloDetector(
            model_path=str(tmp_path / "missing.onnx"),
            confidence_threshold=0.3,
            nms_threshold=0.6,
            download=False,
        )
        assert detector.confidence_threshold == 0.3
        assert detector.nms_threshold == 0.6
