"""
Object Size & Dwell-Time Engine
===============================

Monocular size/distance estimation and cross-frame dwell-time tracking
for detections coming out of an object detector.

Each frame's detections are enriched with:
- an estimated real-world size (cm) and distance from the camera (cm)
- a tracking identity keyed by (class, colour name)
- the cumulative number of seconds that identity has been in view

References:
- Pinhole camera model: https://en.wikipedia.org/wiki/Pinhole_camera_model
- Multiple View Geometry in Computer Vision, Hartley & Zisserman
"""

__version__ = "1.0.0"
