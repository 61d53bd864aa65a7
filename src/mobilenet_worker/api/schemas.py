"""Pydantic request/response schemas for the inference worker API."""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field


class LoadRequest(BaseModel):
    """Request body for loading (or reloading) the classifier."""

    model_config = ConfigDict(protected_namespaces=())

    model_dir: str | None = Field(
        default=None,
        description="Local directory or http(s) URL holding model.onnx and labels.json; "
        "defaults to the configured model directory",
    )


class LoadResponse(BaseModel):
    """Response after a successful load."""

    model_config = ConfigDict(protected_namespaces=())

    status: str = "ready"
    model_dir: str
    labels: int = Field(description="Number of classes in the loaded label set")


class Prediction(BaseModel):
    """A single label with its classifier score."""

    label: str
    confidence: float = Field(description="Raw score of the classifier head (not necessarily a probability)")


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = "ok"
    ready: bool
    models_loaded: list[str]
    concurrent_requests: int
    queue_depth: int


class ModelInfo(BaseModel):
    """Information about a model held by the worker."""

    name: str
    task: str = Field(description="Model task: 'feature_extraction' or 'classification'")
    source: str


class ModelsResponse(BaseModel):
    """Response for the models listing endpoint."""

    models: list[ModelInfo]


class ErrorResponse(BaseModel):
    """Standard error response."""

    detail: str
