"""Tests for the inference worker HTTP API."""

from __future__ import annotations

import io
import json
import os
from typing import TYPE_CHECKING
from unittest.mock import patch

if TYPE_CHECKING:
    from collections.abc import AsyncIterator
    from pathlib import Path

import httpx
import pytest
from conftest import FakeGraph
from fastapi import FastAPI, status
from PIL import Image

from mobilenet_worker.config import get_settings
from mobilenet_worker.main import create_app, lifespan
from mobilenet_worker.ml.inference import InferencePool
from mobilenet_worker.ml.model_manager import OnnxModelManager
from mobilenet_worker.worker import InferenceWorker


def _init_app_state(
    app: FastAPI,
    feature_extractor: FakeGraph,
    classifier_head: FakeGraph,
    **env_overrides: str,
) -> None:
    """Manually initialize app state (ASGITransport does not trigger lifespan)."""
    with patch.dict(os.environ, env_overrides):
        settings = get_settings()
    manager = OnnxModelManager(settings)
    manager.get_session = lambda name: feature_extractor  # type: ignore[method-assign]
    manager.load_classifier_head = lambda path: classifier_head  # type: ignore[method-assign]
    pool = InferencePool(settings)
    app.state.settings = settings
    app.state.model_manager = manager
    app.state.inference_pool = pool
    app.state.worker = InferenceWorker(settings, manager, pool)


async def _make_client(app: FastAPI) -> AsyncIterator[httpx.AsyncClient]:
    async with httpx.AsyncClient(
        transport=httpx.ASGITransport(app=app),
        base_url="http://testserver",
    ) as ac:
        yield ac
    pool: InferencePool = app.state.inference_pool
    pool.shutdown()


def _image_file(width: int = 320, height: int = 240) -> dict[str, tuple[str, io.BytesIO, str]]:
    buf = io.BytesIO()
    Image.new("RGB", (width, height), (120, 60, 30)).save(buf, format="PNG")
    buf.seek(0)
    return {"file": ("photo.png", buf, "image/png")}


@pytest.fixture()
def env(tmp_path: Path, model_dir: Path) -> dict[str, str]:
    return {
        "MOBILENET_WORKER_MODELS_DIR": str(tmp_path / "cache"),
        "MOBILENET_WORKER_MODEL_DIR": str(model_dir),
    }


@pytest.fixture()
def app(env: dict[str, str], feature_extractor: FakeGraph, classifier_head: FakeGraph) -> FastAPI:
    """Create a fresh app instance with default settings."""
    application = create_app()
    _init_app_state(application, feature_extractor, classifier_head, **env)
    return application


@pytest.fixture()
async def client(app: FastAPI) -> AsyncIterator[httpx.AsyncClient]:
    """Async HTTP client for testing the app."""
    async for ac in _make_client(app):
        yield ac


@pytest.fixture()
async def loaded_client(client: httpx.AsyncClient) -> httpx.AsyncClient:
    response = await client.post("/api/v1/load", json={})
    assert response.status_code == status.HTTP_200_OK
    return client


class TestHealthEndpoint:
    async def test_health_before_load(self, client: httpx.AsyncClient) -> None:
        response = await client.get("/api/v1/health")
        assert response.status_code == status.HTTP_200_OK
        data = response.json()
        assert data["status"] == "ok"
        assert data["ready"] is False
        assert isinstance(data["models_loaded"], list)
        assert data["concurrent_requests"] == 0
        assert data["queue_depth"] == 0

    async def test_health_after_load(self, loaded_client: httpx.AsyncClient) -> None:
        response = await loaded_client.get("/api/v1/health")
        assert response.json()["ready"] is True


class TestLoadEndpoint:
    async def test_load_default_dir(self, client: httpx.AsyncClient, model_dir: Path) -> None:
        response = await client.post("/api/v1/load", json={})
        assert response.status_code == status.HTTP_200_OK
        assert response.json() == {"status": "ready", "model_dir": str(model_dir), "labels": 2}

    async def test_load_explicit_dir(self, client: httpx.AsyncClient, tmp_path: Path) -> None:
        other = tmp_path / "flowers"
        other.mkdir()
        (other / "labels.json").write_text(json.dumps({"Labels": ["rose", "tulip", "daisy"]}))
        response = await client.post("/api/v1/load", json={"model_dir": str(other)})
        assert response.status_code == status.HTTP_200_OK
        assert response.json()["labels"] == 3

    async def test_missing_dir_returns_502(self, client: httpx.AsyncClient, tmp_path: Path) -> None:
        response = await client.post("/api/v1/load", json={"model_dir": str(tmp_path / "missing")})
        assert response.status_code == status.HTTP_502_BAD_GATEWAY

    async def test_malformed_labels_return_422(self, client: httpx.AsyncClient, tmp_path: Path) -> None:
        broken = tmp_path / "broken"
        broken.mkdir()
        (broken / "labels.json").write_text(json.dumps({"Labels": []}))
        response = await client.post("/api/v1/load", json={"model_dir": str(broken)})
        assert response.status_code == 422
        assert "labels.json" in response.json()["detail"]


class TestPredictEndpoint:
    async def test_predict_before_load_returns_409(self, client: httpx.AsyncClient) -> None:
        response = await client.post("/api/v1/predict", files=_image_file())
        assert response.status_code == status.HTTP_409_CONFLICT

    async def test_predict_returns_ranked_labels(self, loaded_client: httpx.AsyncClient) -> None:
        response = await loaded_client.post("/api/v1/predict", files=_image_file())
        assert response.status_code == status.HTTP_200_OK
        data = response.json()
        assert [p["label"] for p in data] == ["dog", "cat"]
        assert data[0]["confidence"] >= data[1]["confidence"]

    async def test_predict_top_k_query(self, loaded_client: httpx.AsyncClient) -> None:
        response = await loaded_client.post("/api/v1/predict", params={"top_k": 1}, files=_image_file())
        assert response.status_code == status.HTTP_200_OK
        assert len(response.json()) == 1

    async def test_predict_rejects_zero_top_k(self, loaded_client: httpx.AsyncClient) -> None:
        response = await loaded_client.post("/api/v1/predict", params={"top_k": 0}, files=_image_file())
        assert response.status_code == 422

    async def test_predict_best(self, loaded_client: httpx.AsyncClient) -> None:
        response = await loaded_client.post("/api/v1/predict/best", files=_image_file(240, 320))
        assert response.status_code == status.HTTP_200_OK
        data = response.json()
        assert data["label"] == "dog"
        assert data["confidence"] == pytest.approx(0.8)

    async def test_undecodable_image_returns_400(self, loaded_client: httpx.AsyncClient) -> None:
        fake_image = io.BytesIO(b"fake image data")
        response = await loaded_client.post(
            "/api/v1/predict",
            files={"file": ("test.jpg", fake_image, "image/jpeg")},
        )
        assert response.status_code == status.HTTP_400_BAD_REQUEST

    async def test_oversized_file_returns_413(
        self, env: dict[str, str], feature_extractor: FakeGraph, classifier_head: FakeGraph
    ) -> None:
        app = create_app()
        _init_app_state(app, feature_extractor, classifier_head, MOBILENET_WORKER_MAX_FILE_SIZE="16", **env)
        async for ac in _make_client(app):
            await ac.post("/api/v1/load", json={})
            response = await ac.post("/api/v1/predict", files=_image_file())
            assert response.status_code == 413


class TestModelsEndpoint:
    async def test_models_empty_before_load(self, client: httpx.AsyncClient) -> None:
        response = await client.get("/api/v1/models")
        assert response.status_code == status.HTTP_200_OK
        assert response.json() == {"models": []}

    async def test_models_after_load(self, loaded_client: httpx.AsyncClient, model_dir: Path) -> None:
        response = await loaded_client.get("/api/v1/models")
        models = {m["task"]: m for m in response.json()["models"]}
        assert models["feature_extraction"]["name"] == "mobilenet_v1_1.0_224"
        assert models["classification"]["source"] == str(model_dir)


class TestLifespan:
    async def test_lifespan_builds_unloaded_worker(self, env: dict[str, str]) -> None:
        app = create_app()
        with patch.dict(os.environ, env):
            async with lifespan(app):
                assert app.state.worker.ready is False
                assert app.state.model_manager.get_loaded_models() == []

    async def test_load_on_startup(
        self, env: dict[str, str], feature_extractor: FakeGraph, classifier_head: FakeGraph
    ) -> None:
        app = create_app()
        with (
            patch.dict(os.environ, {**env, "MOBILENET_WORKER_LOAD_ON_STARTUP": "true"}),
            patch.object(OnnxModelManager, "get_session", return_value=feature_extractor),
            patch.object(OnnxModelManager, "load_classifier_head", return_value=classifier_head),
        ):
            async with lifespan(app):
                assert app.state.worker.ready is True
                assert app.state.worker.labels == ("cat", "dog")


class TestQueueTimeout:
    @staticmethod
    def _saturate(app: FastAPI, monkeypatch: pytest.MonkeyPatch) -> None:
        async def timed_out(*args: object) -> None:
            raise TimeoutError

        monkeypatch.setattr(app.state.inference_pool, "run", timed_out)

    async def test_load_returns_503(
        self, app: FastAPI, client: httpx.AsyncClient, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        self._saturate(app, monkeypatch)
        response = await client.post("/api/v1/load", json={})
        assert response.status_code == status.HTTP_503_SERVICE_UNAVAILABLE

    @pytest.mark.parametrize("path", ["/api/v1/predict", "/api/v1/predict/best"])
    async def test_predict_returns_503(
        self, app: FastAPI, loaded_client: httpx.AsyncClient, monkeypatch: pytest.MonkeyPatch, path: str
    ) -> None:
        self._saturate(app, monkeypatch)
        response = await loaded_client.post(path, files=_image_file())
        assert response.status_code == status.HTTP_503_SERVICE_UNAVAILABLE
        assert response.json()["detail"] == "Inference queue is full"
