"""Per-call ownership of intermediate inference buffers.

Every array produced while serving one prediction (input tensor, feature
activation, head scores) is registered with a ``TensorArena``. Leaving the
arena drops all of them at once, on success and on error, so repeated
predictions do not accumulate buffers.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, TypeVar

if TYPE_CHECKING:
    from types import TracebackType

logger = logging.getLogger(__name__)

T = TypeVar("T")


class TensorArena:
    """Holds references to intermediate buffers until the scope exits."""

    def __init__(self) -> None:
        self._buffers: list[object] = []
        self._nbytes: int = 0

    def keep(self, buffer: T) -> T:
        """Register ``buffer`` with the arena and return it unchanged."""
        self._buffers.append(buffer)
        self._nbytes += int(getattr(buffer, "nbytes", 0))
        return buffer

    @property
    def live_count(self) -> int:
        """Number of buffers currently owned by the arena."""
        return len(self._buffers)

    @property
    def nbytes(self) -> int:
        """Total size of the owned buffers, for buffers that report one."""
        return self._nbytes

    def release(self) -> None:
        """Drop every owned buffer."""
        if self._buffers:
            logger.debug("Releasing %d buffers (%d bytes)", len(self._buffers), self._nbytes)
        self._buffers.clear()
        self._nbytes = 0

    def __enter__(self) -> TensorArena:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.release()
