"""Shared fakes for the ONNX graphs, canvas and bitmaps."""

from __future__ import annotations

import json
from pathlib import Path
from types import SimpleNamespace
from typing import TYPE_CHECKING, Any

import numpy as np
import pytest

if TYPE_CHECKING:
    from collections.abc import Callable

    from numpy.typing import NDArray


class FakeGraph:
    """Stands in for an onnxruntime.InferenceSession with a single input and output."""

    def __init__(
        self,
        fn: Callable[[NDArray[np.float32]], Any],
        input_name: str = "input",
        output_name: str = "output",
    ) -> None:
        self._fn = fn
        self.input_name = input_name
        self.output_name = output_name
        self.calls: list[tuple[list[str] | None, dict[str, Any]]] = []

    def get_inputs(self) -> list[SimpleNamespace]:
        return [SimpleNamespace(name=self.input_name)]

    def get_outputs(self) -> list[SimpleNamespace]:
        return [SimpleNamespace(name=self.output_name)]

    def run(self, output_names: list[str] | None, input_feed: dict[str, Any]) -> list[Any]:
        self.calls.append((output_names, input_feed))
        return [self._fn(input_feed[self.input_name])]


class FakeBitmap:
    """Minimal transferable bitmap: dimensions and a close flag."""

    def __init__(self, width: int, height: int) -> None:
        self.width = width
        self.height = height
        self.closed = False

    def close(self) -> None:
        self.closed = True


class FakeCanvas:
    """Records draw calls and returns a constant pixel grid."""

    def __init__(self, size: int = 224, value: int = 255) -> None:
        self.size = size
        self.value = value
        self.draws: list[tuple[float, float, float, float]] = []

    def draw(self, bitmap: Any, x: float, y: float, width: float, height: float) -> None:
        self.draws.append((x, y, width, height))

    def pixels(self) -> NDArray[np.uint8]:
        return np.full((self.size, self.size, 3), self.value, dtype=np.uint8)


def mean_features(batch: NDArray[np.float32]) -> NDArray[np.float32]:
    """Collapse a (1, H, W, 3) batch to (1, 3) channel means."""
    return batch.mean(axis=(1, 2))


def fixed_scores(*scores: float) -> Callable[[NDArray[np.float32]], NDArray[np.float32]]:
    """Head that ignores its input and always returns ``scores``."""
    row = np.array([scores], dtype=np.float32)
    return lambda _embeddings: row.copy()


@pytest.fixture()
def feature_extractor() -> FakeGraph:
    return FakeGraph(mean_features, input_name="input_1", output_name="conv_pw_13_relu")


@pytest.fixture()
def classifier_head() -> FakeGraph:
    """Two-class head that always scores class 1 ("dog") highest."""
    return FakeGraph(fixed_scores(0.2, 0.8), input_name="embeddings", output_name="scores")


@pytest.fixture()
def model_dir(tmp_path: Path) -> Path:
    """A local model directory with a cat/dog label file and a placeholder graph."""
    directory = tmp_path / "model"
    directory.mkdir()
    (directory / "labels.json").write_text(json.dumps({"Labels": ["cat", "dog"]}))
    (directory / "model.onnx").write_bytes(b"placeholder")
    return directory
