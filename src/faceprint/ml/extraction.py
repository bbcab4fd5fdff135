"""Batch descriptor extraction.

Each image of a batch is normalized and passed through the face capability,
one image at a time and in input order. Per-image problems become
:class:`FailureRecord` entries; only two conditions end a batch early:

* the capability cannot be loaded (:class:`ModelInitFailed`), and
* no image yielded a descriptor (:class:`NoFacesDetected`).
"""

from __future__ import annotations

import asyncio
import logging
import threading
from dataclasses import dataclass
from enum import StrEnum
from typing import TYPE_CHECKING

from faceprint.errors import DecodeError, ModelInitFailed, NoFacesDetected
from faceprint.ml.preprocessing import DEFAULT_CANVAS_SIZE, DEFAULT_FILL_COLOR, RGB, normalize

if TYPE_CHECKING:
    from collections.abc import Sequence

    from faceprint.ml.inference import InferencePool
    from faceprint.ml.pipeline import FaceCapability
    from faceprint.ml.preprocessing import CanonicalCanvas, SourceImage

logger = logging.getLogger(__name__)


class FailureReason(StrEnum):
    DECODE_FAILED = "decode_failed"
    NO_FACE_DETECTED = "no_face_detected"
    EXTRACTION_ERROR = "extraction_error"


@dataclass(frozen=True)
class Descriptor:
    """Face embedding extracted from one source image."""

    filename: str
    vector: tuple[float, ...]

    def __len__(self) -> int:
        return len(self.vector)


@dataclass(frozen=True)
class FailureRecord:
    """Why one source image did not yield a descriptor."""

    filename: str
    reason: FailureReason
    detail: str | None = None

    @property
    def message(self) -> str:
        """Single-line description suitable for showing to the uploader."""
        if self.reason is FailureReason.NO_FACE_DETECTED:
            return f"No face detected in {self.filename}"
        return f"{self.filename}: {self.detail or self.reason.value}"


@dataclass(frozen=True)
class BatchResult:
    descriptors: tuple[Descriptor, ...]
    failures: tuple[FailureRecord, ...]
    cancelled: bool = False

    @property
    def processed(self) -> int:
        """Number of images that produced either a descriptor or a failure."""
        return len(self.descriptors) + len(self.failures)


class CancellationToken:
    """Thread-safe flag asking a running batch to stop after the current image."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()


def _one_line(exc: BaseException) -> str:
    text = " ".join(str(exc).split())
    return text or type(exc).__name__


class FaceExtractor:
    """Runs batches of source images through normalization and face extraction."""

    def __init__(
        self,
        capability: FaceCapability,
        pool: InferencePool,
        *,
        target_size: int = DEFAULT_CANVAS_SIZE,
        fill_color: RGB = DEFAULT_FILL_COLOR,
        max_pixels: int | None = None,
    ) -> None:
        self._capability = capability
        self._pool = pool
        self._target_size = target_size
        self._fill_color = fill_color
        self._max_pixels = max_pixels

    async def extract_batch(
        self,
        images: Sequence[SourceImage],
        cancel_token: CancellationToken | None = None,
    ) -> BatchResult:
        """Extract one descriptor per image, recording failures instead of raising.

        Raises:
            NoFacesDetected: If the batch is empty or no image yielded a
                descriptor. Not raised for a cancelled batch.
            ModelInitFailed: If the face capability cannot be loaded.
            TimeoutError: If no inference slot frees up in time. This aborts
                the whole batch: descriptors already extracted for earlier
                images are discarded, and the caller should retry the batch.
        """
        if not images:
            raise NoFacesDetected()

        await self._load_capability()

        outcomes: list[Descriptor | FailureRecord] = []
        cancelled = False
        for image in images:
            if cancel_token is not None and cancel_token.cancelled:
                cancelled = True
                logger.info("Batch cancelled after %d of %d images", len(outcomes), len(images))
                break
            outcomes.append(await self._process(image))

        descriptors = tuple(o for o in outcomes if isinstance(o, Descriptor))
        failures = tuple(o for o in outcomes if isinstance(o, FailureRecord))
        logger.info(
            "Batch done: %d processed, %d descriptors, %d failures%s",
            len(outcomes),
            len(descriptors),
            len(failures),
            " (cancelled)" if cancelled else "",
        )

        if not descriptors and not cancelled:
            raise NoFacesDetected(failures)
        return BatchResult(descriptors=descriptors, failures=failures, cancelled=cancelled)

    async def _load_capability(self) -> None:
        try:
            await self._pool.run(self._capability.load)
        except (ModelInitFailed, TimeoutError):
            raise
        except Exception as exc:
            raise ModelInitFailed(_one_line(exc)) from exc

    async def _process(self, image: SourceImage) -> Descriptor | FailureRecord:
        try:
            canvas = await asyncio.to_thread(self._normalize, image)
        except DecodeError as exc:
            logger.warning("Could not decode %s: %s", image.filename, exc)
            return FailureRecord(image.filename, FailureReason.DECODE_FAILED, _one_line(exc))

        try:
            detection = await self._pool.run(self._capability.detect, canvas)
        except (ModelInitFailed, TimeoutError):
            raise
        except Exception as exc:
            logger.warning("Face extraction failed for %s", image.filename, exc_info=True)
            return FailureRecord(image.filename, FailureReason.EXTRACTION_ERROR, _one_line(exc))

        if detection is None:
            logger.warning("No face detected in %s", image.filename)
            return FailureRecord(image.filename, FailureReason.NO_FACE_DETECTED)
        return Descriptor(filename=image.filename, vector=tuple(detection.descriptor))

    def _normalize(self, image: SourceImage) -> CanonicalCanvas:
        return normalize(image, self._target_size, self._fill_color, max_pixels=self._max_pixels)
