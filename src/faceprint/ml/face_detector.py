"""Face detection on canonical canvases.

The detector graph is expected to ship with box decoding and NMS baked in and
to expose three outputs: boxes ``[N, 4]`` (x1, y1, x2, y2 in input pixels),
scores ``[N]`` and five-point landmarks ``[N, 10]``. A leading batch axis is
accepted and squeezed.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Protocol

import numpy as np

from faceprint.errors import ExtractionFailed

if TYPE_CHECKING:
    from numpy.typing import NDArray
    from onnxruntime import InferenceSession

logger = logging.getLogger(__name__)

INPUT_MEAN: float = 127.5
INPUT_STD: float = 128.0


@dataclass(frozen=True)
class RawDetection:
    """Raw face detection result.

    Coordinates are in pixel space of the canvas the detector ran on.
    """

    bbox: NDArray[np.float32]
    score: float
    landmarks: NDArray[np.float32]


class FaceDetector(Protocol):
    """Protocol for face detection models."""

    @property
    def model_name(self) -> str:
        """Return the model identifier string."""
        ...

    def detect(self, image: NDArray[np.uint8]) -> list[RawDetection]:
        """Detect faces in an image.

        Args:
            image: HxWx3 RGB uint8 array.

        Returns:
            Detections above the score threshold, best first.
        """
        ...


def to_detector_input(image: NDArray[np.uint8]) -> NDArray[np.float32]:
    """HxWx3 uint8 RGB -> 1x3xHxW float32, centered and scaled."""
    tensor = (image.astype(np.float32) - INPUT_MEAN) / INPUT_STD
    return np.ascontiguousarray(tensor.transpose(2, 0, 1)[np.newaxis, ...])


def _squeeze_batch(array: NDArray[np.float32], ndim: int) -> NDArray[np.float32]:
    if array.ndim == ndim + 1:
        if array.shape[0] != 1:
            raise ExtractionFailed(f"Detector returned a batch of {array.shape[0]}, expected 1")
        return array[0]
    return array


class OnnxFaceDetector:
    """Runs a post-processed detector graph through ONNX Runtime."""

    def __init__(self, model_name: str, session: InferenceSession, score_threshold: float = 0.5) -> None:
        self._model_name = model_name
        self._session = session
        self._input_name = session.get_inputs()[0].name
        self._score_threshold = score_threshold

    @property
    def model_name(self) -> str:
        return self._model_name

    def detect(self, image: NDArray[np.uint8]) -> list[RawDetection]:
        outputs = self._session.run(None, {self._input_name: to_detector_input(image)})
        if len(outputs) < 3:
            raise ExtractionFailed(f"{self._model_name} returned {len(outputs)} outputs, expected 3")

        boxes = _squeeze_batch(np.asarray(outputs[0], dtype=np.float32), 2).reshape(-1, 4)
        scores = _squeeze_batch(np.asarray(outputs[1], dtype=np.float32), 1).reshape(-1)
        landmarks = _squeeze_batch(np.asarray(outputs[2], dtype=np.float32), 2).reshape(-1, 5, 2)
        if not len(boxes) == len(scores) == len(landmarks):
            raise ExtractionFailed(
                f"{self._model_name} output lengths disagree: "
                f"{len(boxes)} boxes, {len(scores)} scores, {len(landmarks)} landmark sets"
            )

        keep = np.flatnonzero(scores >= self._score_threshold)
        order = keep[np.argsort(-scores[keep], kind="stable")]
        logger.debug("%s: %d candidates, %d above threshold", self._model_name, len(scores), len(order))
        return [
            RawDetection(bbox=boxes[i], score=float(scores[i]), landmarks=landmarks[i])
            for i in order
        ]
