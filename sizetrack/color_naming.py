"""
Color Naming Module
===================

Maps the average colour of a detection to one of a small fixed palette of
names. The name is only used to tell apart objects of the same class in the
tracker, so the palette is deliberately coarse.

Classification works in HSL space:
- lightness < 0.15 -> black, lightness > 0.85 -> white
- chroma (max - min) < 0.1 -> gray
- otherwise the hue picks one of eight named ranges

References:
- HSL and HSV: https://en.wikipedia.org/wiki/HSL_and_HSV
"""

import math
from dataclasses import dataclass
from typing import Sequence, Tuple

import numpy as np

UNKNOWN_COLOR = "unknown"
UNKNOWN_HEX = "#808080"

# Upper hue bound (exclusive, degrees) -> name. Red wraps around 0/360.
HUE_BUCKETS: Tuple[Tuple[int, str], ...] = (
    (15, "red"),
    (45, "orange"),
    (70, "yellow"),
    (150, "green"),
    (200, "cyan"),
    (260, "blue"),
    (300, "purple"),
    (345, "pink"),
    (361, "red"),
)

DARK_LIGHTNESS = 0.15
LIGHT_LIGHTNESS = 0.85
GRAY_CHROMA = 0.1


@dataclass
class DominantColor:
    """
    Average colour of an image region.

    Attributes:
        name: Palette name (e.g. "red", "gray")
        hex: RGB hex string, e.g. "#ff0000"
    """
    name: str
    hex: str


def rgb_to_hex(rgb: Sequence[int]) -> str:
    r, g, b = (int(c) for c in rgb)
    return f"#{r:02x}{g:02x}{b:02x}"


def classify_color(rgb: Sequence[int]) -> str:
    """
    Name an RGB colour.

    Args:
        rgb: (r, g, b) with components in [0, 255]

    Returns:
        One of black, white, gray, red, orange, yellow, green, cyan, blue,
        purple, pink
    """
    r, g, b = (float(c) / 255.0 for c in rgb)
    c_max = max(r, g, b)
    c_min = min(r, g, b)
    lightness = (c_max + c_min) / 2

    if lightness < DARK_LIGHTNESS:
        return "black"
    if lightness > LIGHT_LIGHTNESS:
        return "white"

    delta = c_max - c_min
    if delta < GRAY_CHROMA:
        return "gray"

    if c_max == r:
        hue = ((g - b) / delta) % 6
    elif c_max == g:
        hue = (b - r) / delta + 2
    else:
        hue = (r - g) / delta + 4
    degrees = int(math.floor(hue * 60 + 0.5)) % 360

    for upper, name in HUE_BUCKETS:
        if degrees < upper:
            return name
    return "red"


def sample_dominant_color(
    frame: np.ndarray,
    bbox: Tuple[float, float, float, float],
    stride: int = 10
) -> DominantColor:
    """
    Average colour of a bounding box region and its palette name.

    Only every `stride`-th pixel is sampled, which is plenty for a coarse
    palette and keeps the cost independent of box size.

    Args:
        frame: Image in BGR format (H x W x 3), as delivered by OpenCV
        bbox: (x, y, width, height) in pixels
        stride: Sampling step over the flattened region

    Returns:
        DominantColor; "unknown" if the box does not overlap the frame
    """
    if frame.ndim == 2:
        frame = np.repeat(frame[:, :, np.newaxis], 3, axis=2)

    x, y, w, h = bbox
    height, width = frame.shape[:2]

    x1 = max(0, int(x))
    y1 = max(0, int(y))
    x2 = min(width, int(x + w))
    y2 = min(height, int(y + h))

    if x2 <= x1 or y2 <= y1:
        return DominantColor(UNKNOWN_COLOR, UNKNOWN_HEX)

    region = frame[y1:y2, x1:x2].reshape(-1, frame.shape[2])
    samples = region[::max(1, stride), :3].astype(np.float64)
    b, g, r = np.round(samples.mean(axis=0)).astype(int)

    rgb = (int(r), int(g), int(b))
    return DominantColor(classify_color(rgb), rgb_to_hex(rgb))
