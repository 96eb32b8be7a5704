"""
Object Detection Module
=======================

Thin adapter around a YOLOv8-nano COCO detector running on ONNX Runtime.
Produces the raw per-frame detections consumed by the measurement engine:
class label, confidence and an (x, y, width, height) pixel box.

Any object with a `detect(frame) -> List[RawDetection]` method can be used
in its place.

References:
- YOLOv8: https://docs.ultralytics.com/
- ONNX Runtime: https://onnxruntime.ai/docs/api/python/
- Letterbox resize: https://github.com/ultralytics/ultralytics (LetterBox transform)
- COCO classes: https://cocodataset.org/#explore
"""

import logging
import urllib.request
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Tuple

import cv2
import numpy as np

# ONNX Runtime is only needed when the YOLO model is actually used
try:
    import onnxruntime as ort
    ONNX_AVAILABLE = True
except ImportError:
    ONNX_AVAILABLE = False

logger = logging.getLogger(__name__)

# Minimum file size in bytes to consider a model file valid
MIN_MODEL_SIZE_BYTES = 1000

DEFAULT_CONFIDENCE_THRESHOLD = 0.5
DEFAULT_NMS_THRESHOLD = 0.45
YOLO_INPUT_SIZE = 640
YOLO_MODEL_URL = "https://github.com/ultralytics/assets/releases/download/v8.3.0/yolov8n.onnx"

# COCO class names (80 classes)
COCO_CLASSES = [
    "person", "bicycle", "car", "motorcycle", "airplane", "bus", "train", "truck",
    "boat", "traffic light", "fire hydrant", "stop sign", "parking meter", "bench",
    "bird", "cat", "dog", "horse", "sheep", "cow", "elephant", "bear", "zebra",
    "giraffe", "backpack", "umbrella", "handbag", "tie", "suitcase", "frisbee",
    "skis", "snowboard", "sports ball", "kite", "baseball bat", "baseball glove",
    "skateboard", "surfboard", "tennis racket", "bottle", "wine glass", "cup",
    "fork", "knife", "spoon", "bowl", "banana", "apple", "sandwich", "orange",
    "broccoli", "carrot", "hot dog", "pizza", "donut", "cake", "chair", "couch",
    "potted plant", "bed", "dining table", "toilet", "tv", "laptop", "mouse",
    "remote", "keyboard", "cell phone", "microwave", "oven", "toaster", "sink",
    "refrigerator", "book", "clock", "vase", "scissors", "teddy bear", "hair drier",
    "toothbrush"
]


@dataclass
class RawDetection:
    """
    One detector output for a single frame.

    Attributes:
        label: Class label
        confidence: Detection confidence (0-1)
        bbox: Bounding box as (x, y, width, height) in pixels
    """
    label: str
    confidence: float
    bbox: Tuple[float, float, float, float]


def letterbox(image: np.ndarray, input_size: int = YOLO_INPUT_SIZE
              ) -> Tuple[np.ndarray, float, int, int]:
    """
    Resize keeping aspect ratio and pad to a square network input.

    Args:
        image: Input image (BGR format)
        input_size: Side of the square input

    Returns:
        (NCHW float32 tensor in [0, 1], scale, pad_x, pad_y)
    """
    h, w = image.shape[:2]
    scale = min(input_size / w, input_size / h)
    new_w = int(w * scale)
    new_h = int(h * scale)

    resized = cv2.resize(image, (new_w, new_h))

    padded = np.zeros((input_size, input_size, 3), dtype=np.uint8)
    pad_x = (input_size - new_w) // 2
    pad_y = (input_size - new_h) // 2
    padded[pad_y:pad_y + new_h, pad_x:pad_x + new_w] = resized

    # BGR to RGB, normalize to [0, 1], HWC to CHW, add batch dimension
    tensor = cv2.cvtColor(padded, cv2.COLOR_BGR2RGB).astype(np.float32) / 255.0
    tensor = np.expand_dims(np.transpose(tensor, (2, 0, 1)), axis=0)
    return tensor, scale, pad_x, pad_y


def decode_yolo_output(
    output: np.ndarray,
    image_size: Tuple[int, int],
    scale: float,
    pad_x: int,
    pad_y: int,
    class_names: List[str] = COCO_CLASSES,
    confidence_threshold: float = DEFAULT_CONFIDENCE_THRESHOLD,
    nms_threshold: float = DEFAULT_NMS_THRESHOLD
) -> List[RawDetection]:
    """
    Turn a raw YOLOv8 output tensor into detections in image coordinates.

    Args:
        output: Network output of shape [1, 4 + num_classes, num_anchors]
        image_size: Original image (width, height)
        scale: Letterbox scale used for the input
        pad_x: Horizontal letterbox padding
        pad_y: Vertical letterbox padding
        class_names: Label per class index
        confidence_threshold: Minimum class score
        nms_threshold: IoU threshold for non-maximum suppression

    Returns:
        Detections after NMS
    """
    w, h = image_size
    # [1, 84, N] -> [N, 84]
    predictions = np.transpose(output[0])
    class_scores = predictions[:, 4:]
    class_ids = np.argmax(class_scores, axis=1)
    confidences = class_scores[np.arange(len(class_ids)), class_ids]

    keep = confidences >= confidence_threshold
    predictions = predictions[keep]
    class_ids = class_ids[keep]
    confidences = confidences[keep]

    boxes = []
    for cx, cy, bw, bh in predictions[:, :4]:
        # Padded input coordinates back to the original image
        cx = (cx - pad_x) / scale
        cy = (cy - pad_y) / scale
        bw = bw / scale
        bh = bh / scale

        x1 = max(0, min(int(cx - bw / 2), w))
        y1 = max(0, min(int(cy - bh / 2), h))
        box_w = max(1, min(int(bw), w - x1))
        box_h = max(1, min(int(bh), h - y1))
        boxes.append([x1, y1, box_w, box_h])

    if not boxes:
        return []

    indices = cv2.dnn.NMSBoxes(
        boxes, [float(c) for c in confidences], confidence_threshold, nms_threshold
    )

    detections = []
    for idx in np.array(indices).flatten():
        x, y, bw, bh = boxes[idx]
        class_id = int(class_ids[idx])
        label = class_names[class_id] if class_id < len(class_names) else str(class_id)
        detections.append(RawDetection(
            label=label,
            confidence=float(confidences[idx]),
            bbox=(float(x), float(y), float(bw), float(bh)),
        ))
    return detections


class YoloDetector:
    """
    YOLOv8-nano detector on ONNX Runtime (CPU).

    YOLOv8n is the smallest YOLOv8 variant (~3.2M parameters), fast enough
    for one detection per second on any CPU. The model is downloaded on
    first use if it is not present.

    Reference: https://docs.ultralytics.com/
    """

    def __init__(
        self,
        model_path: Optional[str] = None,
        confidence_threshold: float = DEFAULT_CONFIDENCE_THRESHOLD,
        nms_threshold: float = DEFAULT_NMS_THRESHOLD,
        download: bool = True
    ):
        """
        Initialize the detector.

        Args:
            model_path: Path to yolov8n.onnx (default: models/yolov8n.onnx)
            confidence_threshold: Minimum class score
            nms_threshold: IoU threshold for NMS
            download: Fetch the model if the file is missing
        """
        default_path = Path(__file__).parent.parent / "models" / "yolov8n.onnx"
        self.model_path = Path(model_path) if model_path else default_path
        self.confidence_threshold = confidence_threshold
        self.nms_threshold = nms_threshold
        self.download = download

        self._session: Optional[object] = None
        self._input_name: Optional[str] = None
        self._init_session()

    @property
    def available(self) -> bool:
        """True if the model loaded and detect() will run inference."""
        return self._session is not None

    def _init_session(self) -> None:
        if not ONNX_AVAILABLE:
            logger.error("ONNX Runtime not available. Install with: pip install onnxruntime")
            return

        if not self.model_path.exists() and self.download:
            logger.info(f"Downloading YOLOv8n ONNX model to {self.model_path}...")
            self.model_path.parent.mkdir(parents=True, exist_ok=True)
            try:
                urllib.request.urlretrieve(YOLO_MODEL_URL, str(self.model_path))
            except OSError as e:
                logger.error(f"Failed to download YOLOv8n model: {e}")
                return

        if not self.model_path.exists() or self.model_path.stat().st_size <= MIN_MODEL_SIZE_BYTES:
            logger.error(f"YOLOv8n model not available at {self.model_path}")
            return

        try:
            self._session = ort.InferenceSession(
                str(self.model_path),
                providers=['CPUExecutionProvider']
            )
            self._input_name = self._session.get_inputs()[0].name
        except Exception as e:
            logger.error(f"Failed to load YOLOv8n model: {e}")
            self._session = None

    def detect(self, image: np.ndarray) -> List[RawDetection]:
        """
        Detect objects in a frame.

        Args:
            image: Input image (BGR format)

        Returns:
            Detections in image pixel coordinates; empty if no model is loaded
        """
        if self._session is None:
            return []

        h, w = image.shape[:2]
        tensor, scale, pad_x, pad_y = letterbox(image, YOLO_INPUT_SIZE)
        outputs = self._session.run(None, {self._input_name: tensor})

        return decode_yolo_output(
            outputs[0], (w, h), scale, pad_x, pad_y,
            confidence_threshold=self.confidence_threshold,
            nms_threshold=self.nms_threshold,
        )
