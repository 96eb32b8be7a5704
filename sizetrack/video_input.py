"""
Video/Camera Input Module
=========================

Single-camera frame source for the measurement engine: a webcam index or a
video file, read through OpenCV.

References:
- OpenCV VideoCapture: https://docs.opencv.org/4.x/dd/d43/tutorial_py_video_display.html
"""

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Generator, Optional, Tuple, Union

import cv2
import numpy as np

logger = logging.getLogger(__name__)


@dataclass
class Frame:
    """
    One captured frame.

    Attributes:
        image: Frame in BGR format
        timestamp: Position in the stream in milliseconds
        frame_number: Sequential frame number (1-based)
    """
    image: np.ndarray
    timestamp: float
    frame_number: int


class VideoSource:
    """
    Frame source backed by cv2.VideoCapture.

    Reference: OpenCV VideoCapture documentation
    https://docs.opencv.org/4.x/d8/dfe/classcv_1_1VideoCapture.html
    """

    def __init__(
        self,
        source: Union[str, int],
        resolution: Optional[Tuple[int, int]] = None
    ):
        """
        Initialize the video source.

        Args:
            source: Path to a video file or a webcam index
            resolution: Requested capture (width, height) for webcams
        """
        self.source = source
        self.resolution = resolution
        self.cap: Optional[cv2.VideoCapture] = None
        self.frame_count = 0
        self._fps: float = 30.0
        self._frame_width: int = 0
        self._frame_height: int = 0

    def open(self) -> bool:
        """
        Open the capture.

        Returns:
            True if the source opened successfully
        """
        self.cap = cv2.VideoCapture(self.source)
        if not self.cap.isOpened():
            logger.error(f"Could not open video source: {self.source}")
            return False

        if self.resolution is not None:
            self.cap.set(cv2.CAP_PROP_FRAME_WIDTH, self.resolution[0])
            self.cap.set(cv2.CAP_PROP_FRAME_HEIGHT, self.resolution[1])

        self._fps = self.cap.get(cv2.CAP_PROP_FPS) or 30.0
        self._frame_width = int(self.cap.get(cv2.CAP_PROP_FRAME_WIDTH))
        self._frame_height = int(self.cap.get(cv2.CAP_PROP_FRAME_HEIGHT))
        return True

    def read(self) -> Optional[Frame]:
        """
        Read the next frame.

        Returns:
            Frame, or None at end of stream / if not opened
        """
        if self.cap is None:
            return None

        ok, image = self.cap.read()
        if not ok:
            return None

        self.frame_count += 1
        return Frame(
            image=image,
            timestamp=self.cap.get(cv2.CAP_PROP_POS_MSEC),
            frame_number=self.frame_count
        )

    def frames(self) -> Generator[Frame, None, None]:
        """Yield frames until the stream ends."""
        while True:
            frame = self.read()
            if frame is None:
                break
            yield frame

    def close(self) -> None:
        """Release the capture."""
        if self.cap is not None:
            self.cap.release()
            self.cap = None

    @property
    def fps(self) -> float:
        return self._fps

    @property
    def frame_size(self) -> Tuple[int, int]:
        """Frame dimensions (width, height)."""
        return (self._frame_width, self._frame_height)

    def __enter__(self):
        self.open()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()


def open_video_file(path: str) -> VideoSource:
    """
    Create a source for a video file.

    Raises:
        FileNotFoundError: If the file doesn't exist
    """
    if not Path(path).exists():
        raise FileNotFoundError(f"Video not found: {path}")
    return VideoSource(path)


def open_webcam(index: int = 0, resolution: Tuple[int, int] = (640, 480)) -> VideoSource:
    """Create a source for a webcam (640x480 by default)."""
    return VideoSource(index, resolution=resolution)
