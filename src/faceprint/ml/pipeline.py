"""Detection capability: canvas in, single-face descriptor out.

The orchestrator only depends on :class:`FaceCapability`; the ONNX-backed
implementation below is what the service wires in, and tests substitute a
deterministic stub.
"""

from __future__ import annotations

import logging
from contextlib import ExitStack, contextmanager
from dataclasses import dataclass
from typing import TYPE_CHECKING, Protocol

from faceprint.errors import ModelInitFailed
from faceprint.ml.face_detector import OnnxFaceDetector
from faceprint.ml.face_recognizer import OnnxFaceRecognizer
from faceprint.ml.registry import ModelTask, get_spec

if TYPE_CHECKING:
    from collections.abc import Iterator

    import numpy as np
    from numpy.typing import NDArray
    from onnxruntime import InferenceSession

    from faceprint.config import Settings
    from faceprint.ml.model_manager import ModelManager
    from faceprint.ml.preprocessing import CanonicalCanvas

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FaceDetection:
    """One detected face: its descriptor plus where it was found."""

    descriptor: tuple[float, ...]
    landmarks: NDArray[np.float32]
    box: NDArray[np.float32]
    score: float


class FaceCapability(Protocol):
    """Single-face detection -> landmarks -> descriptor, as one call."""

    def load(self) -> None:
        """Prepare the backing models.

        Raises:
            ModelInitFailed: If any model cannot be loaded.
        """
        ...

    def detect(self, canvas: CanonicalCanvas) -> FaceDetection | None:
        """Return the most confident face on ``canvas``, or None if there is none."""
        ...


class OnnxFacePipeline:
    """FaceCapability backed by ONNX detector and recognizer sessions.

    Sessions are leased from the model manager for the duration of each
    detection and never kept in between, so idle eviction frees them and
    continuous use keeps them alive.
    """

    def __init__(self, settings: Settings, model_manager: ModelManager) -> None:
        self._model_manager = model_manager
        self._detection_model = settings.face_detection_model
        self._recognition_model = settings.face_recognition_model
        self._threshold = settings.detection_threshold
        self._ready = False

    def load(self) -> None:
        try:
            get_spec(self._detection_model, ModelTask.FACE_DETECTION)
            get_spec(self._recognition_model, ModelTask.FACE_RECOGNITION)
            self._model_manager.preload((self._detection_model, self._recognition_model))
        except Exception as exc:
            raise ModelInitFailed(f"Failed to load face models: {exc}") from exc
        if not self._ready:
            self._ready = True
            logger.info(
                "Face pipeline ready (detection=%s, recognition=%s)", self._detection_model, self._recognition_model
            )

    def detect(self, canvas: CanonicalCanvas) -> FaceDetection | None:
        with self._sessions() as (detector_session, recognizer_session):
            detector = OnnxFaceDetector(self._detection_model, detector_session, score_threshold=self._threshold)
            detections = detector.detect(canvas.pixels)
            if not detections:
                return None

            best = detections[0]
            recognizer = OnnxFaceRecognizer(self._recognition_model, recognizer_session)
            embedding = recognizer.get_embedding(canvas.pixels, best.landmarks)

        return FaceDetection(
            descriptor=tuple(float(v) for v in embedding),
            landmarks=best.landmarks,
            box=best.bbox,
            score=best.score,
        )

    @contextmanager
    def _sessions(self) -> Iterator[tuple[InferenceSession, InferenceSession]]:
        with ExitStack() as stack:
            try:
                detector_session = stack.enter_context(self._model_manager.lease(self._detection_model))
                recognizer_session = stack.enter_context(self._model_manager.lease(self._recognition_model))
            except Exception as exc:
                raise ModelInitFailed(f"Failed to load face models: {exc}") from exc
            yield detector_session, recognizer_session
