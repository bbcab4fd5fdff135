"""ONNX session cache shared by every batch.

Sessions are handed out as leases. A leased session is never evicted, and
returning a lease marks the session as just used, so only models that have
not served a detection for ``model_ttl`` seconds are dropped. Callers must
not keep a session past its lease: after eviction the next lease reloads it.
"""

from __future__ import annotations

import logging
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Protocol

from huggingface_hub import hf_hub_download
from onnxruntime import GraphOptimizationLevel, InferenceSession, SessionOptions
from onnxruntime.capi.onnxruntime_pybind11_state import ExecutionMode

from faceprint.ml.registry import get_spec

if TYPE_CHECKING:
    from collections.abc import Iterable, Iterator
    from contextlib import AbstractContextManager

    from faceprint.config import Settings

logger = logging.getLogger(__name__)

Provider = str | tuple[str, dict[str, object]]


class ModelManager(Protocol):
    """What the face pipeline and the service need from a session cache."""

    def preload(self, model_names: Iterable[str]) -> None: ...

    def lease(self, model_name: str) -> AbstractContextManager[InferenceSession]: ...

    def loaded_models(self) -> list[str]: ...

    def evict_idle(self) -> list[str]: ...

    def shutdown(self) -> None: ...


def execution_providers(settings: Settings) -> list[Provider]:
    """ONNX Runtime providers for the configured device, CPU always last."""
    if settings.device == "cuda":
        cuda_options: dict[str, object] = {
            "device_id": 0,
            "gpu_mem_limit": settings.gpu_mem_limit,
            "arena_extend_strategy": "kSameAsRequested",
        }
        return [("CUDAExecutionProvider", cuda_options), "CPUExecutionProvider"]
    if settings.device == "openvino":
        return [("OpenVINOExecutionProvider", {"device_type": "CPU"}), "CPUExecutionProvider"]
    return ["CPUExecutionProvider"]


def session_options(settings: Settings) -> SessionOptions:
    opts = SessionOptions()
    opts.intra_op_num_threads = settings.intra_op_threads
    opts.inter_op_num_threads = settings.inter_op_threads
    opts.execution_mode = ExecutionMode.ORT_SEQUENTIAL
    opts.enable_mem_pattern = True
    opts.enable_mem_reuse = True
    if settings.device == "openvino":
        # OpenVINO does its own graph optimization
        opts.graph_optimization_level = GraphOptimizationLevel.ORT_DISABLE_ALL
    return opts


@dataclass
class _Entry:
    session: InferenceSession
    last_used: float
    leases: int = 0


class OnnxModelManager:
    """Downloads models from the HuggingFace Hub and leases out cached sessions."""

    def __init__(self, settings: Settings) -> None:
        self._settings = settings
        self._models_dir = Path(settings.models_dir)
        self._providers = execution_providers(settings)
        self._options = session_options(settings)

        self._lock = threading.Lock()
        self._entries: dict[str, _Entry] = {}
        self._paths: dict[str, Path] = {}

    def model_path(self, model_name: str) -> Path:
        """Local path of ``model_name``, downloading it on first use.

        Raises:
            KeyError: If the model is not registered.
            RuntimeError: If the model needs the InsightFace license and it
                has not been accepted.
        """
        spec = get_spec(model_name)
        if spec.insightface and not self._settings.accept_insightface_license:
            raise RuntimeError(f"Model '{model_name}' requires FACEPRINT_ACCEPT_INSIGHTFACE_LICENSE=true")

        known = self._paths.get(model_name)
        if known is not None and known.exists():
            return known

        self._models_dir.mkdir(parents=True, exist_ok=True)
        path = Path(
            hf_hub_download(
                repo_id=spec.repo_id,
                filename=spec.filename,
                subfolder=spec.subfolder,
                local_dir=str(self._models_dir),
            )
        )
        self._paths[model_name] = path
        logger.info("Fetched %s from %s", model_name, spec.hub_path)
        return path

    def preload(self, model_names: Iterable[str]) -> None:
        """Make sure every model in ``model_names`` has a live session."""
        for name in model_names:
            with self.lease(name):
                pass

    @contextmanager
    def lease(self, model_name: str) -> Iterator[InferenceSession]:
        """Borrow the session for ``model_name``, creating it if needed."""
        entry = self._checkout(model_name)
        try:
            yield entry.session
        finally:
            with self._lock:
                entry.leases -= 1
                entry.last_used = time.monotonic()

    def loaded_models(self) -> list[str]:
        with self._lock:
            return list(self._entries)

    def evict_idle(self) -> list[str]:
        """Drop sessions idle for longer than ``model_ttl``; return their names.

        Sessions currently leased are kept regardless of age. A TTL of 0
        disables eviction.
        """
        ttl = self._settings.model_ttl
        if ttl == 0:
            return []

        cutoff = time.monotonic() - ttl
        with self._lock:
            idle = [name for name, e in self._entries.items() if e.leases == 0 and e.last_used < cutoff]
            for name in idle:
                del self._entries[name]
        for name in idle:
            logger.info("Evicted idle session for %s", name)
        return idle

    def shutdown(self) -> None:
        with self._lock:
            self._entries.clear()
        logger.info("All model sessions cleared")

    def _checkout(self, model_name: str) -> _Entry:
        with self._lock:
            entry = self._entries.get(model_name)
            if entry is not None:
                entry.leases += 1
                return entry

        session = InferenceSession(
            str(self.model_path(model_name)),
            sess_options=self._options,
            providers=self._providers,
        )

        with self._lock:
            # A concurrent checkout may have won the race while we loaded.
            entry = self._entries.setdefault(model_name, _Entry(session=session, last_used=time.monotonic()))
            entry.leases += 1
        if entry.session is session:
            logger.info("Loaded session for %s", model_name)
        return entry
