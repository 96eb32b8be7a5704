"""
Unit tests for color naming module.
"""

import numpy as np
import pytest

from pathlib import Path
import sys
sys.path.insert(0, str(Path(__file__).parent.parent))

from sizetrack.color_naming import (
    UNKNOWN_COLOR,
    UNKNOWN_HEX,
    classify_color,
    rgb_to_hex,
    sample_dominant_color,
)


class TestClassifyColor:
    """Tests for RGB to palette name."""

    @pytest.mark.parametrize("rgb,name", [
        ((0, 0, 0), "black"),
        ((20, 20, 30), "black"),
        ((255, 255, 255), "white"),
        ((128, 128, 128), "gray"),
        ((120, 128, 130), "gray"),
        ((255, 0, 0), "red"),
        ((255, 0, 40), "red"),
        ((255, 128, 0), "orange"),
        ((255, 255, 0), "yellow"),
        ((0, 255, 0), "green"),
        ((0, 255, 255), "cyan"),
        ((0, 0, 255), "blue"),
        ((128, 0, 255), "purple"),
        ((255, 0, 128), "pink"),
    ])
    def test_palette(self, rgb, name):
        """Test representative colours of every bucket."""
        assert classify_color(rgb) == name

    def test_rgb_to_hex(self):
        """Test hex rendering."""
        assert rgb_to_hex((255, 0, 16)) == "#ff0010"


class TestSampleDominantColor:
    """Tests for region colour sampling on BGR frames."""

    @pytest.fixture
    def frame(self):
        """Black 480x640 BGR frame with a red and a blue patch."""
        image = np.zeros((480, 640, 3), dtype=np.uint8)
        image[100:200, 100:200] = (0, 0, 255)
        image[300:400, 400:500] = (255, 0, 0)
        return image

    def test_red_patch(self, frame):
        """Test a patch is read in BGR order."""
        color = sample_dominant_color(frame, (100, 100, 100, 100))
        assert color.name == "red"
        assert color.hex == "#ff0000"

    def test_blue_patch(self, frame):
        """Test a second patch in the same frame."""
        color = sample_dominant_color(frame, (400, 300, 100, 100))
        assert color.name == "blue"

    def test_box_clipped_to_frame(self, frame):
        """Test a box running past the frame edge is clipped."""
        frame[400:, 600:] = (0, 255, 0)
        color = sample_dominant_color(frame, (600, 400, 200, 200))
        assert color.name == "green"

    def test_box_outside_frame(self, frame):
        """Test a box with no overlap gives unknown."""
        color = sample_dominant_color(frame, (700, 500, 50, 50))
        assert color.name == UNKNOWN_COLOR
        assert color.hex == UNKNOWN_HEX

    def test_empty_box(self, frame):
        """Test a zero-sized box gives unknown."""
        assert sample_dominant_color(frame, (10, 10, 0, 0)).name == UNKNOWN_COLOR

    def test_grayscale_frame(self):
        """Test single-channel frames are supported."""
        image = np.full((100, 100), 128, dtype=np.uint8)
        color = sample_dominant_color(image, (0, 0, 50, 50))
        assert color.name == "gray"
        assert color.hex == "#808080"
