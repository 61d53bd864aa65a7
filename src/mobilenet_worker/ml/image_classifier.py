"""Image classification on top of a truncated MobileNet feature extractor.

A ``ClassifierSession`` is the loaded state of the worker: the label set,
the feature extractor graph, the retrained classifier head, and the canvas
used to crop incoming bitmaps. It is immutable once built and is only read
while serving predictions.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Protocol

import numpy as np

from mobilenet_worker.ml.arena import TensorArena
from mobilenet_worker.ml.preprocessing import crop_and_resize

if TYPE_CHECKING:
    from numpy.typing import NDArray

    from mobilenet_worker.ml.preprocessing import Bitmap, Canvas

logger = logging.getLogger(__name__)

DEFAULT_TOP_K: int = 5


@dataclass(frozen=True)
class ClassificationResult:
    """A single classification prediction.

    ``confidence`` is the raw score of the classifier head's final layer.
    """

    label: str
    confidence: float


class GraphSession(Protocol):
    """The subset of ``onnxruntime.InferenceSession`` used for inference."""

    def get_inputs(self) -> Sequence[Any]: ...

    def get_outputs(self) -> Sequence[Any]: ...

    def run(self, output_names: list[str] | None, input_feed: dict[str, Any]) -> Sequence[Any]: ...


def top_k(scores: NDArray[np.floating[Any]], labels: Sequence[str], k: int) -> list[ClassificationResult]:
    """Return the ``k`` highest-scoring classes, highest first.

    Ties keep class-index order. ``k`` is clamped to the number of scores.

    Raises:
        ValueError: If ``k`` is less than 1.
    """
    if k < 1:
        raise ValueError(f"k must be >= 1, got {k}")

    flat = np.asarray(scores).reshape(-1)
    k = min(k, flat.size)
    indices = np.argsort(-flat, kind="stable")[:k]
    return [ClassificationResult(label=labels[i], confidence=float(flat[i])) for i in indices]


class ClassifierSession:
    """Loaded models and labels, threaded into every prediction."""

    def __init__(
        self,
        labels: Sequence[str],
        feature_extractor: GraphSession,
        classifier_head: GraphSession,
        canvas: Canvas,
        feature_output: str | None = None,
    ) -> None:
        self._labels = tuple(labels)
        self._feature_extractor = feature_extractor
        self._classifier_head = classifier_head
        self._canvas = canvas

        self._feature_input: str = feature_extractor.get_inputs()[0].name
        self._feature_output: str = feature_output or feature_extractor.get_outputs()[0].name
        self._head_input: str = classifier_head.get_inputs()[0].name
        self._head_output: str = classifier_head.get_outputs()[0].name

    @property
    def labels(self) -> tuple[str, ...]:
        return self._labels

    def classify(
        self,
        bitmap: Bitmap,
        k: int = DEFAULT_TOP_K,
        arena_factory: Callable[[], TensorArena] = TensorArena,
    ) -> list[ClassificationResult]:
        """Classify a bitmap and return the top ``k`` labels, highest confidence first.

        The bitmap is consumed. Buffers created during the call are released
        before returning, including when the backend raises.
        """
        if k < 1:
            bitmap.close()
            raise ValueError(f"k must be >= 1, got {k}")

        with arena_factory() as arena:
            batch = arena.keep(crop_and_resize(bitmap, self._canvas))
            embeddings = arena.keep(
                self._feature_extractor.run([self._feature_output], {self._feature_input: batch})[0]
            )
            scores = arena.keep(self._classifier_head.run([self._head_output], {self._head_input: embeddings})[0])
            results = top_k(scores, self._labels, k)

        logger.debug("Top prediction: %s (%.4f)", results[0].label, results[0].confidence)
        return results

    def classify_best(
        self,
        bitmap: Bitmap,
        arena_factory: Callable[[], TensorArena] = TensorArena,
    ) -> ClassificationResult:
        """Classify a bitmap and return only the highest-scoring label."""
        return self.classify(bitmap, 1, arena_factory)[0]
