"""Exception hierarchy for Faceprint."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Sequence

    from faceprint.ml.extraction import FailureRecord


class FaceprintError(Exception):
    """Base class for all Faceprint errors."""


class DecodeError(FaceprintError, ValueError):
    """Source bytes could not be decoded into pixel data."""


class ExtractionFailed(FaceprintError):
    """The detection pipeline failed on a single canvas."""


class ModelInitFailed(FaceprintError):
    """The detection capability could not be initialized.

    Fatal for the whole batch: raised before any image is processed.
    """


class NoFacesDetected(FaceprintError):
    """No descriptor could be extracted from any image of a batch.

    ``detail`` holds one line per failed image, in input order. It is empty
    when the batch itself was empty.
    """

    def __init__(self, failures: Sequence[FailureRecord] = ()) -> None:
        self.failures = tuple(failures)
        self.detail = "\n".join(record.message for record in self.failures)
        super().__init__("No valid face descriptors extracted.")

    def __str__(self) -> str:
        if not self.detail:
            return str(self.args[0])
        return f"{self.args[0]}\n{self.detail}"
