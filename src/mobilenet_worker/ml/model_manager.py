"""Model manager: download and load the ONNX graphs and label set.

Handles downloading the truncated MobileNet feature extractor from
HuggingFace, fetching remote model directories over HTTP, creating ONNX
InferenceSessions, and parsing the label asset.
"""

from __future__ import annotations

import json
import logging
import threading
from dataclasses import dataclass
from enum import StrEnum
from pathlib import Path
from typing import TYPE_CHECKING, Protocol
from urllib.parse import urlsplit

import httpx
from huggingface_hub import hf_hub_download
from huggingface_hub.errors import HfHubHTTPError
from onnxruntime import InferenceSession, SessionOptions
from onnxruntime.capi.onnxruntime_pybind11_state import ExecutionMode
from pydantic import BaseModel, Field, ValidationError

from mobilenet_worker.errors import AssetFetchError, AssetParseError

if TYPE_CHECKING:
    from mobilenet_worker.config import Settings

logger = logging.getLogger(__name__)

MODEL_FILENAME = "model.onnx"
LABELS_FILENAME = "labels.json"


# ---------------------------------------------------------------------------
# Protocol (kept for test mocking)
# ---------------------------------------------------------------------------


class ModelManager(Protocol):
    """Protocol for model lifecycle management."""

    def ensure_downloaded(self, model_name: str) -> Path:
        """Ensure a registry model is downloaded and return its file path."""
        ...

    def get_session(self, model_name: str) -> InferenceSession:
        """Return a cached or newly created InferenceSession for a registry model."""
        ...

    def resolve_model_dir(self, model_dir: str) -> Path:
        """Return a local directory holding the classifier head and its labels."""
        ...

    def load_classifier_head(self, path: Path) -> InferenceSession:
        """Create a fresh InferenceSession for a retrained classifier head."""
        ...

    def load_labels(self, path: Path) -> tuple[str, ...]:
        """Parse a label asset into an ordered tuple of class names."""
        ...

    def get_loaded_models(self) -> list[str]:
        """Return names of currently loaded models."""
        ...

    def shutdown(self) -> None:
        """Clear all cached sessions."""
        ...


# ---------------------------------------------------------------------------
# Model registry
# ---------------------------------------------------------------------------


class ModelTask(StrEnum):
    FEATURE_EXTRACTION = "feature_extraction"
    CLASSIFICATION = "classification"


@dataclass(frozen=True)
class ModelSpec:
    """Static metadata for a single ONNX model."""

    name: str
    repo_id: str
    filename: str
    subfolder: str | None
    task: ModelTask
    output_name: str
    input_size: int


FEATURE_EXTRACTOR = "mobilenet_v1_1.0_224"

MODEL_REGISTRY: dict[str, ModelSpec] = {
    # MobileNet v1 truncated at the last pointwise activation; the exported
    # graph exposes conv_pw_13_relu as its output.
    FEATURE_EXTRACTOR: ModelSpec(
        name=FEATURE_EXTRACTOR,
        repo_id="spriteful/mobilenet-worker-models",
        filename="mobilenet_v1_1.0_224_conv_pw_13_relu.onnx",
        subfolder=None,
        task=ModelTask.FEATURE_EXTRACTION,
        output_name="conv_pw_13_relu",
        input_size=224,
    ),
}


class LabelFile(BaseModel):
    """Schema of labels.json: ``{"Labels": ["cat", "dog", ...]}``."""

    labels: list[str] = Field(alias="Labels", min_length=1)


def is_remote(location: str) -> bool:
    """Return True if ``location`` is an http(s) URL."""
    return urlsplit(location).scheme in ("http", "https")


# ---------------------------------------------------------------------------
# Concrete implementation
# ---------------------------------------------------------------------------


class OnnxModelManager:
    """Downloads and loads ONNX inference sessions and label assets."""

    def __init__(self, settings: Settings) -> None:
        self._settings = settings
        self._models_dir = Path(settings.models_dir)
        self._models_dir.mkdir(parents=True, exist_ok=True)

        self._lock = threading.Lock()
        self._sessions: dict[str, InferenceSession] = {}
        self._model_paths: dict[str, Path] = {}

        self._providers = ["CPUExecutionProvider"]
        self._session_options = self._build_session_options()

    # -- Public API ---------------------------------------------------------

    def ensure_downloaded(self, model_name: str) -> Path:
        """Download a registry model from HuggingFace if not already present locally."""
        spec = self._get_spec(model_name)

        if model_name in self._model_paths:
            path = self._model_paths[model_name]
            if path.exists():
                return path

        try:
            downloaded = Path(
                hf_hub_download(
                    repo_id=spec.repo_id,
                    filename=spec.filename,
                    subfolder=spec.subfolder,
                    local_dir=str(self._models_dir),
                )
            )
        except (HfHubHTTPError, httpx.HTTPError, OSError) as exc:
            raise AssetFetchError(f"{spec.repo_id}/{spec.filename}", str(exc)) from exc
        self._model_paths[model_name] = downloaded
        logger.info("Downloaded %s to %s", model_name, downloaded)
        return downloaded

    def get_session(self, model_name: str) -> InferenceSession:
        """Return a cached InferenceSession, creating one if needed."""
        with self._lock:
            cached = self._sessions.get(model_name)
            if cached is not None:
                return cached

        model_path = self.ensure_downloaded(model_name)
        session = self._create_session(model_path)

        with self._lock:
            # Double-check: another thread may have created it while we loaded.
            existing = self._sessions.get(model_name)
            if existing is not None:
                return existing
            self._sessions[model_name] = session
            logger.info("Loaded session for %s", model_name)
            return session

    def resolve_model_dir(self, model_dir: str) -> Path:
        """Return a local directory for ``model_dir``, fetching it first if it is a URL."""
        if not is_remote(model_dir):
            return Path(model_dir)

        parts = urlsplit(model_dir)
        cache_dir = self._models_dir.resolve()
        local_dir = (cache_dir / parts.netloc / parts.path.strip("/")).resolve()
        if cache_dir not in local_dir.parents:
            raise AssetFetchError(model_dir, f"resolves outside the model cache {cache_dir}")
        local_dir.mkdir(parents=True, exist_ok=True)
        base = model_dir.rstrip("/")
        with httpx.Client(timeout=self._settings.http_timeout, follow_redirects=True) as client:
            for filename in (MODEL_FILENAME, LABELS_FILENAME):
                self._fetch(client, f"{base}/{filename}", local_dir / filename)
        return local_dir

    def load_classifier_head(self, path: Path) -> InferenceSession:
        """Create a fresh session for the retrained classifier head at ``path``."""
        session = self._create_session(path)
        logger.info("Loaded classifier head from %s", path)
        return session

    def load_labels(self, path: Path) -> tuple[str, ...]:
        """Parse a ``{"Labels": [...]}`` asset into an ordered tuple of class names."""
        try:
            raw = path.read_bytes()
        except OSError as exc:
            raise AssetFetchError(str(path), str(exc)) from exc

        try:
            label_file = LabelFile.model_validate(json.loads(raw))
        except (json.JSONDecodeError, UnicodeDecodeError, ValidationError) as exc:
            raise AssetParseError(str(path), str(exc)) from exc

        logger.info("Loaded %d labels from %s", len(label_file.labels), path)
        return tuple(label_file.labels)

    def get_loaded_models(self) -> list[str]:
        """Return names of registry models with active sessions."""
        with self._lock:
            return list(self._sessions.keys())

    def shutdown(self) -> None:
        """Clear all cached sessions."""
        with self._lock:
            self._sessions.clear()
            logger.info("All model sessions cleared")

    # -- Internal -----------------------------------------------------------

    @staticmethod
    def _get_spec(model_name: str) -> ModelSpec:
        try:
            return MODEL_REGISTRY[model_name]
        except KeyError:
            raise KeyError(f"Unknown model: {model_name}") from None

    def _create_session(self, path: Path) -> InferenceSession:
        if not path.is_file():
            raise AssetFetchError(str(path), "file not found")
        try:
            return InferenceSession(
                str(path),
                sess_options=self._session_options,
                providers=self._providers,
            )
        except Exception as exc:  # noqa: BLE001 - onnxruntime raises pybind-generated types
            raise AssetParseError(str(path), str(exc)) from exc

    @staticmethod
    def _fetch(client: httpx.Client, url: str, dest: Path) -> None:
        try:
            response = client.get(url)
            response.raise_for_status()
        except httpx.HTTPError as exc:
            raise AssetFetchError(url, str(exc)) from exc
        dest.write_bytes(response.content)
        logger.info("Fetched %s to %s", url, dest)

    def _build_session_options(self) -> SessionOptions:
        opts = SessionOptions()
        opts.intra_op_num_threads = self._settings.intra_op_threads
        opts.inter_op_num_threads = self._settings.inter_op_threads
        opts.execution_mode = ExecutionMode.ORT_SEQUENTIAL
        opts.enable_mem_pattern = True
        opts.enable_mem_reuse = True
        return opts
