"""Models the face pipeline can run, and how they are reported to clients.

Detectors must be exported with box decoding and NMS in the graph (outputs:
boxes, scores, five-point landmarks). Recognizers take a 112x112 aligned
face and return one embedding.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from faceprint.config import Settings


class ModelTask(StrEnum):
    FACE_DETECTION = "face_detection"
    FACE_RECOGNITION = "face_recognition"


class ModelStatus(StrEnum):
    ACTIVE = "active"
    AVAILABLE = "available"
    REQUIRES_LICENSE = "requires_license"


INSIGHTFACE_LICENSE = "Non-commercial (InsightFace)"


@dataclass(frozen=True)
class ModelSpec:
    """Where to fetch one ONNX model and what it is for."""

    name: str
    task: ModelTask
    repo_id: str
    filename: str
    license: str
    subfolder: str | None = None

    @property
    def insightface(self) -> bool:
        return self.license == INSIGHTFACE_LICENSE

    @property
    def hub_path(self) -> str:
        return f"{self.repo_id}/{self.subfolder}/{self.filename}" if self.subfolder else f"{self.repo_id}/{self.filename}"


_RETINAFACE_REPO = "danielcopper/recognizex-models"

_DETECTORS = (
    ModelSpec("retinaface_resnet34", ModelTask.FACE_DETECTION, _RETINAFACE_REPO, "retinaface_resnet34.onnx", "MIT"),
    ModelSpec("retinaface_mobilenetv2", ModelTask.FACE_DETECTION, _RETINAFACE_REPO, "retinaface_mobilenetv2.onnx", "MIT"),
)

_RECOGNIZERS = (
    ModelSpec("auraface_v1", ModelTask.FACE_RECOGNITION, "fal/AuraFace-v1", "glintr100.onnx", "Apache-2.0"),
    ModelSpec(
        "w600k_r50",
        ModelTask.FACE_RECOGNITION,
        "public-data/insightface",
        "w600k_r50.onnx",
        INSIGHTFACE_LICENSE,
        subfolder="models/buffalo_l",
    ),
)

MODEL_REGISTRY: dict[str, ModelSpec] = {spec.name: spec for spec in (*_DETECTORS, *_RECOGNIZERS)}


def get_spec(model_name: str, task: ModelTask | None = None) -> ModelSpec:
    """Look up ``model_name``, optionally requiring it to serve ``task``."""
    spec = MODEL_REGISTRY.get(model_name)
    if spec is None:
        raise KeyError(f"Unknown model: {model_name}")
    if task is not None and spec.task is not task:
        raise ValueError(f"Model '{model_name}' is a {spec.task} model, not {task}")
    return spec


def model_status(spec: ModelSpec, settings: Settings) -> ModelStatus:
    """Status of ``spec`` under the current configuration."""
    if spec.name in (settings.face_detection_model, settings.face_recognition_model):
        return ModelStatus.ACTIVE
    if spec.insightface and not settings.accept_insightface_license:
        return ModelStatus.REQUIRES_LICENSE
    return ModelStatus.AVAILABLE
