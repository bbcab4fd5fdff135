"""Face recognition (embedding) models.

Faces are aligned to the ArcFace 112x112 five-point template before being
embedded, so descriptors from differently posed canvases are comparable.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Protocol

import cv2
import numpy as np

from faceprint.errors import ExtractionFailed

if TYPE_CHECKING:
    from numpy.typing import NDArray
    from onnxruntime import InferenceSession

ALIGNED_SIZE: int = 112

# Eye centers, nose tip and mouth corners for a 112x112 crop.
ARCFACE_TEMPLATE: NDArray[np.float32] = np.array(
    [
        [38.2946, 51.6963],
        [73.5318, 51.5014],
        [56.0252, 71.7366],
        [41.5493, 92.3655],
        [70.7299, 92.2041],
    ],
    dtype=np.float32,
)


class FaceRecognizer(Protocol):
    """Protocol for face recognition (embedding) models."""

    @property
    def model_name(self) -> str:
        """Return the model identifier string."""
        ...

    def get_embedding(self, image: NDArray[np.uint8], landmarks: NDArray[np.float32]) -> NDArray[np.float32]:
        """Embed the face located by ``landmarks`` in ``image``.

        Args:
            image: HxWx3 RGB uint8 array.
            landmarks: 5x2 float32 array of facial landmarks in image pixels.

        Returns:
            L2-normalized embedding vector.
        """
        ...


def align_face(image: NDArray[np.uint8], landmarks: NDArray[np.float32]) -> NDArray[np.uint8]:
    """Warp the face onto the ArcFace template with a similarity transform."""
    src = np.asarray(landmarks, dtype=np.float32).reshape(5, 2)
    transform, _ = cv2.estimateAffinePartial2D(src, ARCFACE_TEMPLATE)
    if transform is None:
        raise ExtractionFailed("Could not estimate face alignment from landmarks")

    aligned = cv2.warpAffine(
        image.copy(),
        transform,
        (ALIGNED_SIZE, ALIGNED_SIZE),
        borderMode=cv2.BORDER_CONSTANT,
        borderValue=(0, 0, 0),
    )
    return np.asarray(aligned, dtype=np.uint8)


def to_recognizer_input(face: NDArray[np.uint8]) -> NDArray[np.float32]:
    tensor = (face.astype(np.float32) - 127.5) / 127.5
    return np.ascontiguousarray(tensor.transpose(2, 0, 1)[np.newaxis, ...])


class OnnxFaceRecognizer:
    """Runs an ArcFace-style embedding graph through ONNX Runtime."""

    def __init__(self, model_name: str, session: InferenceSession) -> None:
        self._model_name = model_name
        self._session = session
        self._input_name = session.get_inputs()[0].name

    @property
    def model_name(self) -> str:
        return self._model_name

    def get_embedding(self, image: NDArray[np.uint8], landmarks: NDArray[np.float32]) -> NDArray[np.float32]:
        face = align_face(image, landmarks)
        outputs = self._session.run(None, {self._input_name: to_recognizer_input(face)})
        embedding = np.asarray(outputs[0], dtype=np.float32).reshape(-1)

        norm = float(np.linalg.norm(embedding))
        if embedding.size == 0 or not np.isfinite(norm) or norm == 0.0:
            raise ExtractionFailed(f"{self._model_name} produced a degenerate embedding")
        return embedding / norm
