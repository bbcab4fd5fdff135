"""Shared fixtures: in-memory test images and a deterministic face capability."""

from __future__ import annotations

import io
import threading
from collections.abc import Callable, Iterator, Sequence

import numpy as np
import pytest
from PIL import Image

from faceprint.config import Settings
from faceprint.ml.inference import InferencePool
from faceprint.ml.pipeline import FaceDetection
from faceprint.ml.preprocessing import CanonicalCanvas

ImageFactory = Callable[..., bytes]


def encode_image(
    width: int,
    height: int,
    color: tuple[int, ...] = (200, 30, 30),
    mode: str = "RGB",
    fmt: str = "PNG",
) -> bytes:
    buf = io.BytesIO()
    Image.new(mode, (width, height), color).save(buf, format=fmt)
    return buf.getvalue()


class StubCapability:
    """Face capability keyed by filename.

    ``outcomes`` maps a filename to a descriptor sequence (face found), None
    (no face) or an exception instance (raised from ``detect``).
    """

    def __init__(self) -> None:
        self.outcomes: dict[str, Sequence[float] | BaseException | None] = {}
        self.load_error: BaseException | None = None
        self.load_calls = 0
        self.detect_calls: list[str] = []
        self.on_detect: Callable[[CanonicalCanvas], None] | None = None
        self._lock = threading.Lock()

    def load(self) -> None:
        self.load_calls += 1
        if self.load_error is not None:
            raise self.load_error

    def detect(self, canvas: CanonicalCanvas) -> FaceDetection | None:
        with self._lock:
            self.detect_calls.append(canvas.filename)
        if self.on_detect is not None:
            self.on_detect(canvas)
        outcome = self.outcomes.get(canvas.filename)
        if isinstance(outcome, BaseException):
            raise outcome
        if outcome is None:
            return None
        return FaceDetection(
            descriptor=tuple(float(v) for v in outcome),
            landmarks=np.zeros((5, 2), dtype=np.float32),
            box=np.array([10, 10, 100, 100], dtype=np.float32),
            score=0.99,
        )


@pytest.fixture()
def make_image() -> ImageFactory:
    """Factory producing encoded image bytes of a given size and color."""
    return encode_image


@pytest.fixture()
def capability() -> StubCapability:
    return StubCapability()


@pytest.fixture()
def pool() -> Iterator[InferencePool]:
    inference_pool = InferencePool(Settings(max_concurrent=1, queue_timeout=5.0))
    yield inference_pool
    inference_pool.shutdown()
