"""API route definitions."""

from __future__ import annotations

from typing import TYPE_CHECKING, Annotated

from fastapi import APIRouter, HTTPException, Query, Request, UploadFile, status

from mobilenet_worker.api.schemas import (
    ErrorResponse,
    HealthResponse,
    LoadRequest,
    LoadResponse,
    ModelInfo,
    ModelsResponse,
    Prediction,
)
from mobilenet_worker.errors import AssetFetchError, AssetParseError, WorkerNotReadyError
from mobilenet_worker.ml.model_manager import FEATURE_EXTRACTOR, MODEL_REGISTRY, ModelTask
from mobilenet_worker.ml.preprocessing import decode_bitmap

if TYPE_CHECKING:
    from PIL import Image

    from mobilenet_worker.config import Settings
    from mobilenet_worker.ml.inference import InferencePool
    from mobilenet_worker.ml.model_manager import ModelManager
    from mobilenet_worker.worker import InferenceWorker

router = APIRouter(prefix="/api/v1")

# Starlette names these codes differently across releases.
_CONTENT_TOO_LARGE = 413
_UNPROCESSABLE_CONTENT = 422

_PREDICT_RESPONSES: dict[int | str, dict[str, object]] = {
    status.HTTP_400_BAD_REQUEST: {"model": ErrorResponse},
    status.HTTP_409_CONFLICT: {"model": ErrorResponse},
    _CONTENT_TOO_LARGE: {"model": ErrorResponse},
    status.HTTP_503_SERVICE_UNAVAILABLE: {"model": ErrorResponse},
}


def _get_settings(request: Request) -> Settings:
    settings: Settings = request.app.state.settings
    return settings


def _get_inference_pool(request: Request) -> InferencePool:
    pool: InferencePool = request.app.state.inference_pool
    return pool


def _get_worker(request: Request) -> InferenceWorker:
    worker: InferenceWorker = request.app.state.worker
    return worker


def _get_model_manager(request: Request) -> ModelManager:
    manager: ModelManager = request.app.state.model_manager
    return manager


async def _read_bitmap(file: UploadFile, settings: Settings) -> Image.Image:
    data = await file.read(settings.max_file_size + 1)
    if len(data) > settings.max_file_size:
        raise HTTPException(
            status_code=_CONTENT_TOO_LARGE,
            detail=f"File exceeds {settings.max_file_size} bytes",
        )
    try:
        return decode_bitmap(data, settings.max_image_pixels)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc


def _not_ready(exc: WorkerNotReadyError) -> HTTPException:
    return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc))


def _busy() -> HTTPException:
    return HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Inference queue is full")


@router.post(
    "/load",
    response_model=LoadResponse,
    responses={
        _UNPROCESSABLE_CONTENT: {"model": ErrorResponse},
        status.HTTP_502_BAD_GATEWAY: {"model": ErrorResponse},
        status.HTTP_503_SERVICE_UNAVAILABLE: {"model": ErrorResponse},
    },
    summary="Load the feature extractor, classifier head and labels",
)
async def load(request: Request, body: LoadRequest) -> LoadResponse:
    """Load (or reload) the models from a model directory."""
    worker = _get_worker(request)
    try:
        await worker.load(body.model_dir)
    except AssetFetchError as exc:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(exc)) from exc
    except AssetParseError as exc:
        raise HTTPException(status_code=_UNPROCESSABLE_CONTENT, detail=str(exc)) from exc
    except TimeoutError as exc:
        raise _busy() from exc
    return LoadResponse(model_dir=worker.model_dir or "", labels=len(worker.labels))


@router.post(
    "/predict",
    response_model=list[Prediction],
    responses=_PREDICT_RESPONSES,
    summary="Classify an image and return the top-k labels",
)
async def predict(
    request: Request,
    file: UploadFile,
    top_k: Annotated[int | None, Query(ge=1)] = None,
) -> list[Prediction]:
    """Return the top-k labels for an uploaded image, highest confidence first."""
    bitmap = await _read_bitmap(file, _get_settings(request))
    try:
        results = await _get_worker(request).predict(bitmap, top_k)
    except WorkerNotReadyError as exc:
        raise _not_ready(exc) from exc
    except TimeoutError as exc:
        raise _busy() from exc
    return [Prediction(label=r.label, confidence=r.confidence) for r in results]


@router.post(
    "/predict/best",
    response_model=Prediction,
    responses=_PREDICT_RESPONSES,
    summary="Classify an image and return the best label",
)
async def predict_best(request: Request, file: UploadFile) -> Prediction:
    """Return the single highest-confidence label for an uploaded image."""
    bitmap = await _read_bitmap(file, _get_settings(request))
    try:
        result = await _get_worker(request).predict_best(bitmap)
    except WorkerNotReadyError as exc:
        raise _not_ready(exc) from exc
    except TimeoutError as exc:
        raise _busy() from exc
    return Prediction(label=result.label, confidence=result.confidence)


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Health check",
)
async def health(request: Request) -> HealthResponse:
    """Return service health status."""
    pool = _get_inference_pool(request)
    return HealthResponse(
        status="ok",
        ready=_get_worker(request).ready,
        models_loaded=_get_model_manager(request).get_loaded_models(),
        concurrent_requests=pool.active_count,
        queue_depth=pool.queue_depth,
    )


@router.get(
    "/models",
    response_model=ModelsResponse,
    summary="List the models held by the worker",
)
async def list_models(request: Request) -> ModelsResponse:
    """Return the feature extractor and classifier head of the loaded session."""
    worker = _get_worker(request)
    if not worker.ready:
        return ModelsResponse(models=[])

    spec = MODEL_REGISTRY[FEATURE_EXTRACTOR]
    return ModelsResponse(
        models=[
            ModelInfo(name=spec.name, task=str(spec.task), source=f"{spec.repo_id}/{spec.filename}"),
            ModelInfo(name="classifier_head", task=str(ModelTask.CLASSIFICATION), source=worker.model_dir or ""),
        ]
    )
