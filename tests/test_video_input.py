"""
Unit tests for video input module.
"""

import pytest
import numpy as np
import cv2
from pathlib import Path

import sys
sys.path.insert(0, str(Path(__file__).parent.parent))

from sizetrack.video_input import Frame, VideoSource, open_video_file, open_webcam


@pytest.fixture
def video_path(tmp_path):
    """Write a short 10-frame MJPG video."""
    path = tmp_path / "clip.avi"
    writer = cv2.VideoWriter(str(path), cv2.VideoWriter_fourcc(*"MJPG"), 10.0, (160, 120))
    if not writer.isOpened():
        pytest.skip("No video encoder available")
    for i in range(10):
        image = np.full((120, 160, 3), i * 20, dtype=np.uint8)
        writer.write(image)
    writer.release()
    return str(path)


class TestFrame:
    """Tests for Frame dataclass."""

    def test_frame_creation(self):
        """Test creating a Frame."""
        image = np.zeros((480, 640, 3), dtype=np.uint8)
        frame = Frame(image=image, timestamp=33.0, frame_number=1)

        assert frame.image.shape == (480, 640, 3)
        assert frame.timestamp == 33.0
        assert frame.frame_number == 1


class TestVideoSource:
    """Tests for VideoSource class."""

    def test_read_before_open(self):
        """Test reading an unopened source returns None."""
        source = VideoSource("nothing.avi")
        assert source.read() is None

    def test_open_missing_file(self):
        """Test opening a file that does not exist fails cleanly."""
        source = VideoSource("/nonexistent/clip.avi")
        assert not source.open()
        source.close()

    def test_read_frames(self, video_path):
        """Test every frame is read with sequential numbers."""
        source = open_video_file(video_path)
        assert source.open()

        frames = list(source.frames())
        source.close()

        assert len(frames) == 10
        assert [f.frame_number for f in frames] == list(range(1, 11))
        assert frames[0].image.shape == (120, 160, 3)
        assert source.read() is None

    def test_properties(self, video_path):
        """Test fps and frame size come from the capture."""
        with VideoSource(video_path) as source:
            assert source.frame_size == (160, 120)
            assert source.fps == pytest.approx(10.0)

    def test_context_manager(self, video_path):
        """Test the capture is released on exit."""
        with VideoSource(video_path) as source:
            assert source.read() is not None
        assert source.cap is None


class TestFactories:
    """Tests for source factory functions."""

    def test_open_video_file_missing(self):
        """Test a missing file raises."""
        with pytest.raises(FileNotFoundError):
            open_video_file("/nonexistent/clip.mp4")

    def test_open_webcam(self):
        """Test webcam sources default to 640x480."""
        source = open_webcam(2)
        assert source.source == 2
        assert source.resolution == (640, 480)
