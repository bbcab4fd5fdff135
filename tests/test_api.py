"""Tests for the Faceprint HTTP API."""

from __future__ import annotations

import asyncio
import os
from pathlib import Path
from typing import TYPE_CHECKING
from unittest.mock import MagicMock, patch

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Callable

    from conftest import StubCapability

import httpx
import pytest
from fastapi import FastAPI, status

from faceprint.config import get_settings
from faceprint.errors import ModelInitFailed
from faceprint.main import _evict_idle_models, create_app, init_state
from faceprint.ml.extraction import FaceExtractor
from faceprint.ml.inference import InferencePool


def _init_app_state(app: FastAPI, capability: StubCapability | None = None, **env_overrides: str) -> None:
    """Manually initialize app state (ASGITransport does not trigger lifespan)."""
    with patch.dict(os.environ, env_overrides):
        settings = get_settings()
    init_state(app, settings)
    if capability is not None:
        app.state.extractor = FaceExtractor(
            capability,
            app.state.inference_pool,
            target_size=settings.canvas_size,
            fill_color=settings.fill_color,
        )


async def _make_client(app: FastAPI) -> AsyncIterator[httpx.AsyncClient]:
    async with httpx.AsyncClient(
        transport=httpx.ASGITransport(app=app),
        base_url="http://testserver",
    ) as ac:
        yield ac
    pool: InferencePool = app.state.inference_pool
    pool.shutdown()


@pytest.fixture()
def app(capability: StubCapability) -> FastAPI:
    """Create a fresh app instance with default settings and a stub face capability."""
    application = create_app()
    _init_app_state(application, capability)
    return application


@pytest.fixture()
async def client(app: FastAPI) -> AsyncIterator[httpx.AsyncClient]:
    """Async HTTP client for testing the app."""
    async for ac in _make_client(app):
        yield ac


@pytest.fixture()
def photo(make_image: Callable[..., bytes]) -> bytes:
    return make_image(120, 90, fmt="JPEG")


def _files(*items: tuple[str, bytes]) -> list[tuple[str, tuple[str, bytes, str]]]:
    return [("files", (name, data, "image/jpeg")) for name, data in items]


class TestHealthEndpoint:
    async def test_health_returns_ok(self, client: httpx.AsyncClient) -> None:
        response = await client.get("/api/v1/health")
        assert response.status_code == status.HTTP_200_OK
        data = response.json()
        assert data["status"] == "ok"
        assert data["gpu"] is False
        assert data["models_loaded"] == []
        assert data["concurrent_requests"] == 0
        assert data["queue_depth"] == 0

    async def test_health_gpu_true_when_cuda(self) -> None:
        cuda_app = create_app()
        _init_app_state(cuda_app, FACEPRINT_DEVICE="cuda")
        async for ac in _make_client(cuda_app):
            response = await ac.get("/api/v1/health")
            assert response.status_code == status.HTTP_200_OK
            assert response.json()["gpu"] is True

    async def test_health_lists_live_sessions(self, tmp_path: Path) -> None:
        app = create_app()
        _init_app_state(app, FACEPRINT_MODELS_DIR=str(tmp_path))
        with (
            patch("faceprint.ml.model_manager.hf_hub_download", return_value=str(tmp_path / "model.onnx")),
            patch("faceprint.ml.model_manager.InferenceSession"),
        ):
            app.state.model_manager.preload(["retinaface_resnet34", "auraface_v1"])
        async for ac in _make_client(app):
            response = await ac.get("/api/v1/health")
            assert response.json()["models_loaded"] == ["retinaface_resnet34", "auraface_v1"]


class TestExtractDescriptorsEndpoint:
    async def test_returns_descriptors_and_failures(
        self, client: httpx.AsyncClient, capability: StubCapability, photo: bytes
    ) -> None:
        capability.outcomes = {"me.jpg": [0.6, 0.8], "also-me.jpg": [0.8, 0.6]}

        response = await client.post(
            "/api/v1/extract-descriptors",
            files=_files(("me.jpg", photo), ("blank.jpg", b""), ("also-me.jpg", photo)),
        )

        assert response.status_code == status.HTTP_200_OK
        data = response.json()
        assert [d["filename"] for d in data["descriptors"]] == ["me.jpg", "also-me.jpg"]
        assert data["descriptors"][0]["vector"] == [0.6, 0.8]
        assert len(data["failures"]) == 1
        failure = data["failures"][0]
        assert failure["filename"] == "blank.jpg"
        assert failure["reason"] == "decode_failed"
        assert failure["message"].startswith("blank.jpg: ")
        assert data["cancelled"] is False

    async def test_no_faces_returns_422_with_per_file_lines(self, client: httpx.AsyncClient, photo: bytes) -> None:
        response = await client.post(
            "/api/v1/extract-descriptors",
            files=_files(("a.jpg", photo), ("b.jpg", photo), ("c.jpg", photo)),
        )

        assert response.status_code == status.HTTP_422_UNPROCESSABLE_ENTITY
        lines = response.json()["detail"].split("\n")
        assert lines[0] == "No valid face descriptors extracted."
        assert lines[1:] == ["No face detected in a.jpg", "No face detected in b.jpg", "No face detected in c.jpg"]

    async def test_only_first_three_files_processed(
        self, client: httpx.AsyncClient, capability: StubCapability, photo: bytes
    ) -> None:
        capability.outcomes = {name: [1.0] for name in ("1.jpg", "2.jpg", "3.jpg", "4.jpg")}

        response = await client.post(
            "/api/v1/extract-descriptors",
            files=_files(("1.jpg", photo), ("2.jpg", photo), ("3.jpg", photo), ("4.jpg", photo)),
        )

        assert response.status_code == status.HTTP_200_OK
        assert [d["filename"] for d in response.json()["descriptors"]] == ["1.jpg", "2.jpg", "3.jpg"]
        assert capability.detect_calls == ["1.jpg", "2.jpg", "3.jpg"]

    async def test_oversized_file_returns_413(self, capability: StubCapability, photo: bytes) -> None:
        app = create_app()
        _init_app_state(app, capability, FACEPRINT_MAX_FILE_SIZE="16")
        async for ac in _make_client(app):
            response = await ac.post("/api/v1/extract-descriptors", files=_files(("big.jpg", photo)))
            assert response.status_code == status.HTTP_413_REQUEST_ENTITY_TOO_LARGE
            assert "big.jpg" in response.json()["detail"]
        assert capability.detect_calls == []

    async def test_model_init_failure_returns_503(
        self, client: httpx.AsyncClient, capability: StubCapability, photo: bytes
    ) -> None:
        capability.load_error = ModelInitFailed("weights unavailable")

        response = await client.post("/api/v1/extract-descriptors", files=_files(("a.jpg", photo)))

        assert response.status_code == status.HTTP_503_SERVICE_UNAVAILABLE
        assert "weights unavailable" in response.json()["detail"]

    async def test_missing_files_is_rejected(self, client: httpx.AsyncClient) -> None:
        response = await client.post("/api/v1/extract-descriptors")
        assert response.status_code == status.HTTP_422_UNPROCESSABLE_ENTITY


class TestModelsEndpoint:
    async def test_models_returns_list(self, client: httpx.AsyncClient) -> None:
        response = await client.get("/api/v1/models")
        assert response.status_code == status.HTTP_200_OK
        data = response.json()
        assert "models" in data
        assert len(data["models"]) == 4

    async def test_default_models_are_active(self, client: httpx.AsyncClient) -> None:
        response = await client.get("/api/v1/models")
        models = response.json()["models"]
        active_names = {m["name"] for m in models if m["status"] == "active"}
        assert active_names == {"retinaface_resnet34", "auraface_v1"}

    async def test_insightface_models_require_license(self, client: httpx.AsyncClient) -> None:
        response = await client.get("/api/v1/models")
        models = {m["name"]: m for m in response.json()["models"]}
        assert models["w600k_r50"]["status"] == "requires_license"
        assert models["retinaface_mobilenetv2"]["status"] == "available"

    async def test_insightface_available_when_accepted(self) -> None:
        app = create_app()
        _init_app_state(app, FACEPRINT_ACCEPT_INSIGHTFACE_LICENSE="true")
        async for ac in _make_client(app):
            response = await ac.get("/api/v1/models")
            models = response.json()["models"]
            w600k = next(m for m in models if m["name"] == "w600k_r50")
            assert w600k["status"] == "available"


class TestAuthentication:
    async def test_no_auth_required_by_default(self, client: httpx.AsyncClient) -> None:
        response = await client.get("/api/v1/health")
        assert response.status_code == status.HTTP_200_OK

    async def test_auth_required_when_api_key_set(self) -> None:
        app = create_app()
        _init_app_state(app, FACEPRINT_API_KEY="test-secret-key")
        async for ac in _make_client(app):
            response = await ac.get("/api/v1/health")
            assert response.status_code == status.HTTP_401_UNAUTHORIZED

    async def test_auth_passes_with_correct_key(self) -> None:
        app = create_app()
        _init_app_state(app, FACEPRINT_API_KEY="test-secret-key")
        async for ac in _make_client(app):
            response = await ac.get(
                "/api/v1/health",
                headers={"Authorization": "Bearer test-secret-key"},
            )
            assert response.status_code == status.HTTP_200_OK

    async def test_auth_fails_with_wrong_key(self) -> None:
        app = create_app()
        _init_app_state(app, FACEPRINT_API_KEY="test-secret-key")
        async for ac in _make_client(app):
            response = await ac.get(
                "/api/v1/health",
                headers={"Authorization": "Bearer wrong-key"},
            )
            assert response.status_code == status.HTTP_401_UNAUTHORIZED


class TestIdleModelEvictor:
    async def test_failed_sweep_is_logged_and_eviction_continues(self, caplog: pytest.LogCaptureFixture) -> None:
        manager = MagicMock()
        manager.evict_idle.side_effect = [RuntimeError("sweep failed"), [], []]

        evictor = asyncio.create_task(_evict_idle_models(manager, 0))
        async with asyncio.timeout(5):
            while manager.evict_idle.call_count < 3:
                await asyncio.sleep(0)

        assert not evictor.done()
        evictor.cancel()
        with pytest.raises(asyncio.CancelledError):
            await evictor
        assert "Idle model eviction failed" in caplog.text
        assert "sweep failed" in caplog.text
