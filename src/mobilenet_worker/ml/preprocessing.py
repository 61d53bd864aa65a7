"""Image preprocessing pipeline.

Turns a host bitmap into the normalized input tensor expected by the
MobileNet feature extractor:

    bitmap -> scale shortest side to 224 -> center crop -> [-1, 1] -> (1, 224, 224, 3)

Drawing primitives are injected through the ``Canvas`` protocol so the
pipeline does not depend on any particular imaging backend. ``PillowCanvas``
is the default implementation.
"""

from __future__ import annotations

import io
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Protocol

import numpy as np
from PIL import Image, ImageOps

if TYPE_CHECKING:
    from numpy.typing import NDArray

logger = logging.getLogger(__name__)

# MobileNet v1 1.0/224 input resolution
IMAGE_SIZE: int = 224

# Must match the normalization used when the classifier head was retrained.
_PIXEL_SCALE: float = 127.0


class Bitmap(Protocol):
    """A transferable image handle. Closed once it has been consumed."""

    @property
    def width(self) -> int: ...

    @property
    def height(self) -> int: ...

    def close(self) -> None: ...


class Canvas(Protocol):
    """Fixed-size RGB drawing surface."""

    @property
    def size(self) -> int:
        """Return the edge length of the square canvas in pixels."""
        ...

    def draw(self, bitmap: Any, x: float, y: float, width: float, height: float) -> None:
        """Draw ``bitmap`` scaled to ``width`` x ``height`` with its top-left corner at (x, y).

        Replaces the previous canvas contents. Parts of the bitmap that fall
        outside the canvas are clipped.
        """
        ...

    def pixels(self) -> NDArray[np.uint8]:
        """Return the canvas contents as a size x size x 3 RGB uint8 array."""
        ...


class PillowCanvas:
    """Canvas backed by a Pillow RGB image."""

    def __init__(self, size: int = IMAGE_SIZE) -> None:
        self._size = size
        self._image = Image.new("RGB", (size, size))

    @property
    def size(self) -> int:
        return self._size

    def draw(self, bitmap: Image.Image, x: float, y: float, width: float, height: float) -> None:
        scaled = bitmap.convert("RGB").resize(
            (max(1, round(width)), max(1, round(height))),
            Image.Resampling.BILINEAR,
        )
        surface = Image.new("RGB", (self._size, self._size))
        surface.paste(scaled, (round(x), round(y)))
        self._image = surface

    def pixels(self) -> NDArray[np.uint8]:
        return np.asarray(self._image, dtype=np.uint8)


@dataclass(frozen=True)
class CropGeometry:
    """Placement of a bitmap scaled so its shortest side matches the canvas.

    ``offset_x``/``offset_y`` are measured from the top-left corner of the
    scaled bitmap to the top-left corner of the centered crop window.
    """

    scale: float
    width: float
    height: float
    offset_x: float
    offset_y: float


def compute_crop(width: int, height: int, image_size: int = IMAGE_SIZE) -> CropGeometry:
    """Compute the scale and centered-crop offsets for a ``width`` x ``height`` bitmap.

    Raises:
        ValueError: If either dimension is not positive.
    """
    if width <= 0 or height <= 0:
        raise ValueError(f"Bitmap has no pixels ({width}x{height})")

    scale = image_size / min(height, width)
    scaled_width = scale * width
    scaled_height = scale * height
    if width > height:
        offset_x, offset_y = (scaled_width - image_size) / 2, 0.0
    else:
        offset_x, offset_y = 0.0, (scaled_height - image_size) / 2
    return CropGeometry(
        scale=scale,
        width=scaled_width,
        height=scaled_height,
        offset_x=offset_x,
        offset_y=offset_y,
    )


def normalize(pixels: NDArray[np.uint8]) -> NDArray[np.float32]:
    """Map pixel values from [0, 255] to [-1, 1]."""
    return pixels.astype(np.float32) / np.float32(_PIXEL_SCALE) - np.float32(1.0)


def crop_and_resize(bitmap: Bitmap, canvas: Canvas) -> NDArray[np.float32]:
    """Center-crop ``bitmap`` to the canvas and return a batch of one input tensor.

    The bitmap is closed before returning, whether or not drawing succeeds;
    callers must not reuse it.

    Returns:
        Float32 array of shape (1, size, size, 3) with values in [-1, 1].
    """
    size = canvas.size
    try:
        geometry = compute_crop(bitmap.width, bitmap.height, size)
        canvas.draw(bitmap, -geometry.offset_x, -geometry.offset_y, geometry.width, geometry.height)
    finally:
        bitmap.close()

    logger.debug(
        "Cropped bitmap (scale=%.4f, offset=(%.1f, %.1f))",
        geometry.scale,
        geometry.offset_x,
        geometry.offset_y,
    )
    return normalize(canvas.pixels()).reshape(1, size, size, 3)


def decode_bitmap(image_bytes: bytes, max_pixels: int) -> Image.Image:
    """Decode raw image bytes into an upright RGB Pillow image.

    Args:
        image_bytes: Raw file bytes (any format Pillow supports).
        max_pixels: Largest accepted width * height.

    Returns:
        Decoded RGB image. The caller owns it and hands it to the worker.

    Raises:
        ValueError: If the image cannot be decoded or exceeds the pixel limit.
    """
    try:
        image = Image.open(io.BytesIO(image_bytes))
    except (OSError, Image.DecompressionBombError) as exc:
        raise ValueError("Unsupported or corrupt image data") from exc

    if image.width * image.height > max_pixels:
        image.close()
        raise ValueError(f"Image exceeds {max_pixels} pixels ({image.width}x{image.height})")

    with image:
        try:
            upright = ImageOps.exif_transpose(image)
            return upright.convert("RGB")
        except OSError as exc:
            raise ValueError("Unsupported or corrupt image data") from exc
