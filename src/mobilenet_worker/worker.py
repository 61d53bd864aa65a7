"""The inference worker: load models once, then serve single-image predictions.

Example::

    worker = InferenceWorker(settings, OnnxModelManager(settings), InferencePool(settings))
    await worker.load("./my-model-dir")
    predictions = await worker.predict(bitmap)  # bitmap is consumed

``load`` and ``predict`` run on the inference pool, so the event loop is never
blocked by downloads, session creation or graph execution.
"""

from __future__ import annotations

import logging
from enum import StrEnum
from pathlib import Path
from typing import TYPE_CHECKING

from mobilenet_worker.errors import WorkerNotReadyError
from mobilenet_worker.ml.image_classifier import ClassifierSession
from mobilenet_worker.ml.model_manager import FEATURE_EXTRACTOR, LABELS_FILENAME, MODEL_FILENAME, MODEL_REGISTRY
from mobilenet_worker.ml.preprocessing import PillowCanvas

if TYPE_CHECKING:
    from collections.abc import Callable

    from mobilenet_worker.config import Settings
    from mobilenet_worker.ml.image_classifier import ClassificationResult
    from mobilenet_worker.ml.inference import InferencePool
    from mobilenet_worker.ml.model_manager import ModelManager
    from mobilenet_worker.ml.preprocessing import Bitmap, Canvas

logger = logging.getLogger(__name__)


class WorkerState(StrEnum):
    UNINITIALIZED = "uninitialized"
    READY = "ready"


class InferenceWorker:
    """Owns the loaded classifier session and exposes async load/predict."""

    def __init__(
        self,
        settings: Settings,
        model_manager: ModelManager,
        pool: InferencePool,
        canvas_factory: Callable[[int], Canvas] = PillowCanvas,
    ) -> None:
        self._settings = settings
        self._model_manager = model_manager
        self._pool = pool
        self._canvas_factory = canvas_factory
        self._session: ClassifierSession | None = None
        self._model_dir: str | None = None

    @property
    def state(self) -> WorkerState:
        return WorkerState.READY if self._session is not None else WorkerState.UNINITIALIZED

    @property
    def ready(self) -> bool:
        return self._session is not None

    @property
    def model_dir(self) -> str | None:
        """Model directory of the current session, if loaded."""
        return self._model_dir

    @property
    def labels(self) -> tuple[str, ...]:
        return self._require_session().labels

    async def load(self, model_dir: str | None = None) -> None:
        """Load the feature extractor, classifier head and labels.

        Calling again reloads from ``model_dir``. If loading fails the worker
        keeps whatever session it had before.

        Raises:
            AssetFetchError: If an asset cannot be retrieved.
            AssetParseError: If an asset is malformed.
        """
        model_dir = model_dir or self._settings.model_dir
        logger.info("Loading classifier from %s", model_dir)
        session = await self._pool.run(self._build_session, model_dir)
        self._session = session
        self._model_dir = model_dir
        logger.info("Worker ready (%d labels)", len(session.labels))

    async def predict(self, bitmap: Bitmap, top_k: int | None = None) -> list[ClassificationResult]:
        """Return the top-k predictions for ``bitmap``, highest confidence first.

        Ownership of ``bitmap`` passes to the worker; it is closed once read.

        Raises:
            WorkerNotReadyError: If no load has completed successfully.
            TimeoutError: If no inference slot frees up within the queue timeout.
        """
        session = self._claim(bitmap)
        k = top_k if top_k is not None else self._settings.top_k
        try:
            return await self._pool.run(session.classify, bitmap, k)
        except TimeoutError:
            bitmap.close()
            raise

    async def predict_best(self, bitmap: Bitmap) -> ClassificationResult:
        """Return the single highest-confidence prediction for ``bitmap``."""
        session = self._claim(bitmap)
        try:
            return await self._pool.run(session.classify_best, bitmap)
        except TimeoutError:
            bitmap.close()
            raise

    # -- Internal -----------------------------------------------------------

    def _require_session(self) -> ClassifierSession:
        if self._session is None:
            raise WorkerNotReadyError("Worker is not loaded; call load() first")
        return self._session

    def _claim(self, bitmap: Bitmap) -> ClassifierSession:
        try:
            return self._require_session()
        except WorkerNotReadyError:
            bitmap.close()
            raise

    def _build_session(self, model_dir: str) -> ClassifierSession:
        local_dir = self._model_manager.resolve_model_dir(model_dir)
        labels_path = Path(self._settings.labels_path) if self._settings.labels_path else local_dir / LABELS_FILENAME
        labels = self._model_manager.load_labels(labels_path)

        spec = MODEL_REGISTRY[FEATURE_EXTRACTOR]
        feature_extractor = self._model_manager.get_session(FEATURE_EXTRACTOR)
        classifier_head = self._model_manager.load_classifier_head(local_dir / MODEL_FILENAME)
        return ClassifierSession(
            labels=labels,
            feature_extractor=feature_extractor,
            classifier_head=classifier_head,
            canvas=self._canvas_factory(spec.input_size),
            feature_output=spec.output_name,
        )
